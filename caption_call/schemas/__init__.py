from .signal_messages import (
    SignalMessage,
    SignalMessageBase,
    SubtitleMessage,
    CallRejectedMessage,
    CallCancelledMessage,
    ConnectionProbeMessage,
    ConnectionProbeAckMessage,
    parse_signal_message,
)
from .session import (
    StartCallRequest,
    LanguageRequest,
    CaptionDisplay,
    SessionSnapshot,
)

__all__ = [
    "SignalMessage",
    "SignalMessageBase",
    "SubtitleMessage",
    "CallRejectedMessage",
    "CallCancelledMessage",
    "ConnectionProbeMessage",
    "ConnectionProbeAckMessage",
    "parse_signal_message",
    "StartCallRequest",
    "LanguageRequest",
    "CaptionDisplay",
    "SessionSnapshot",
]
