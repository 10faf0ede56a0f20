"""Schema-driven form state: value store, extraction, initialization and validation."""

__version__ = "1.0.0"
