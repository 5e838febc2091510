"""
Session runtime module.

Provides the CallSessionRuntime that wires signaling, captions and
transcription for one local participant.
"""
from .runtime import CallSessionRuntime

__all__ = ["CallSessionRuntime"]
