"""SignFlow — field-based multi-party document signing."""

__version__ = "0.1.0"
