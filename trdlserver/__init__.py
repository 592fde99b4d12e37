"""Task manager, request backend, non-atomic TUF store and release publisher for a trusted delivery server."""

__version__ = "0.1.0"