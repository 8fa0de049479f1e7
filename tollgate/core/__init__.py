"""Core permission engine components."""
