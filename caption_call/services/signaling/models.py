"""
Call Session Models

The Session is the one owned record of "who am I talking to and how far
along is the call". CallState values are also what the API reports.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class CallState(str, Enum):
    IDLE = "idle"
    CALLING = "calling"
    RINGING_INCOMING = "ringing_incoming"
    CONNECTED = "connected"
    ENDED = "ended"


class CallStatus(str, Enum):
    """Transient, self-clearing notices surfaced to the user."""
    REJECTED = "rejected"


@dataclass
class Session:
    local_identity: str
    remote_identity: Optional[str] = None
    state: CallState = CallState.IDLE
    started_at: Optional[float] = None

    def reset(self, local_identity: Optional[str] = None):
        """Return to Idle, optionally under a new identity."""
        if local_identity is not None:
            self.local_identity = local_identity
        self.remote_identity = None
        self.state = CallState.IDLE
        self.started_at = None
