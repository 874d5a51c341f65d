"""HTTP surface for the evidence pipeline."""

from .app import create_app

__all__ = ["create_app"]
