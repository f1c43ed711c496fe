"""HTTP server for a remote changeset store."""

from .app import create_app

__all__ = ["create_app"]
