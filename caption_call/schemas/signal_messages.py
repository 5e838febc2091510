"""
Signal Message Schemas

Pydantic models for the messages exchanged between peers over the signal
channel. Each message is one JSON object discriminated by ``type``.
"""

from typing import Annotated, Any, Dict, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# =============================================================================
# Signal Message Models
# =============================================================================

class SignalMessageBase(BaseModel):
    """Base model for all signal channel messages."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    type: str

    def to_wire(self) -> Dict[str, Any]:
        """Serialize to the JSON-ready dict sent over the channel."""
        return self.model_dump(by_alias=True)


class SubtitleMessage(SignalMessageBase):
    """A caption fragment from the remote speaker."""
    type: Literal["subtitle"] = "subtitle"
    text: str
    language: str
    is_final: bool = Field(False, alias="isFinal")


class CallRejectedMessage(SignalMessageBase):
    """Callee declined the call."""
    type: Literal["call_rejected"] = "call_rejected"


class CallCancelledMessage(SignalMessageBase):
    """Caller withdrew the call before it was answered."""
    type: Literal["call_cancelled"] = "call_cancelled"


class ConnectionProbeMessage(SignalMessageBase):
    """Channel liveness probe."""
    type: Literal["connection_test"] = "connection_test"


class ConnectionProbeAckMessage(SignalMessageBase):
    """Answer to a connection probe."""
    type: Literal["connection_test_response"] = "connection_test_response"


SignalMessage = Annotated[
    Union[
        SubtitleMessage,
        CallRejectedMessage,
        CallCancelledMessage,
        ConnectionProbeMessage,
        ConnectionProbeAckMessage,
    ],
    Field(discriminator="type"),
]

_signal_message_adapter: TypeAdapter = TypeAdapter(SignalMessage)


def parse_signal_message(data: Any) -> SignalMessageBase:
    """
    Decode a wire payload into a signal message.

    Raises:
        pydantic.ValidationError: if the payload is not a known message.
    """
    return _signal_message_adapter.validate_python(data)
