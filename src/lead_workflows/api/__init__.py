"""HTTP API package for the workflow engine."""

from .app import create_app

__all__ = ["create_app"]
