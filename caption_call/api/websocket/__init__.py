"""
WebSocket API module.

Provides the WebSocket router for the live caption feed.
"""
from .router import router

__all__ = ["router"]
