"""Command line interface for tollgate."""
