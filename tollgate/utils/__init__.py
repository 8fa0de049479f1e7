"""Shared helpers for tollgate."""
