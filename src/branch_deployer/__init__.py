"""Single-worker branch deployment dispatcher."""

__version__ = "0.1.0"
