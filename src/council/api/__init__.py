"""HTTP API for triggering and inspecting runs."""

from .server import create_app

__all__ = ["create_app"]
