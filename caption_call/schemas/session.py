"""
Session API Schemas

Request and response models for the session control endpoints.
"""

from typing import Optional
from pydantic import BaseModel, Field


class StartCallRequest(BaseModel):
    target_id: str = Field(..., min_length=1)


class LanguageRequest(BaseModel):
    language: str


class CaptionDisplay(BaseModel):
    mine: str = ""
    remote: str = ""


class SessionSnapshot(BaseModel):
    """Current state of the local session as seen by a UI."""
    local_id: str
    remote_id: Optional[str] = None
    state: str
    language: str
    captions_enabled: bool
    captions: CaptionDisplay
    status: Optional[str] = None
    incoming_from: Optional[str] = None
