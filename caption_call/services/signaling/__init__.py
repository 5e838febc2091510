"""
Signaling - call lifecycle for one local identity.
"""
from caption_call.services.signaling.exceptions import (
    AlreadyInCallError,
    CallNotFoundError,
    InvalidTargetError,
    SignalingError,
)
from caption_call.services.signaling.identity import generate_peer_id
from caption_call.services.signaling.machine import CallSignalingMachine
from caption_call.services.signaling.models import CallState, CallStatus, Session

__all__ = [
    "AlreadyInCallError",
    "CallNotFoundError",
    "CallSignalingMachine",
    "CallState",
    "CallStatus",
    "InvalidTargetError",
    "Session",
    "SignalingError",
    "generate_peer_id",
]
