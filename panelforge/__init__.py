"""Generate interactive panels from natural language requests."""

__version__ = "0.3.0"
