"""Open and build untrusted code inside isolated Docker sandboxes."""

__version__ = "0.2.0"
