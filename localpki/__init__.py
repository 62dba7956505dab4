"""LocalPKI - self-signed certificate lifecycle engine."""

__version__ = "1.0.0"
