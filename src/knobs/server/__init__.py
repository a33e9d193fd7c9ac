# Copyright (c) Syntropy Systems
"""knobs reporting server."""

from .app import create_app

__all__ = ["create_app"]
