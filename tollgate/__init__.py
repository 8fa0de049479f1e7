"""Command authorization engine for coding-agent tool calls."""

__version__ = "0.3.0"

__all__ = ["__version__"]
