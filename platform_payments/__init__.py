"""Payment processing and reconciliation engine for multi-tenant booking platforms."""

__version__ = "0.1.0"
