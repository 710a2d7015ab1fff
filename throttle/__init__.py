"""Per-identity token-bucket request throttling for ASGI applications."""

__version__ = "0.1.0"
