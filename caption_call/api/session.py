"""
Session API - Endpoints for call control

Implements:
- Session snapshot
- Dial / accept / reject / cancel / end
- Language selection
- Audio ingestion for the transcription engine
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from caption_call.api.deps import get_runtime
from caption_call.schemas.session import LanguageRequest, SessionSnapshot, StartCallRequest
from caption_call.services.session import CallSessionRuntime
from caption_call.services.signaling import (
    AlreadyInCallError,
    CallNotFoundError,
    InvalidTargetError,
    SignalingError,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/session", response_model=SessionSnapshot)
async def get_session(runtime: CallSessionRuntime = Depends(get_runtime)):
    """Current identity, call state and captions."""
    return runtime.snapshot()


@router.post("/session/call", response_model=SessionSnapshot)
async def start_call(
    req: StartCallRequest,
    runtime: CallSessionRuntime = Depends(get_runtime),
):
    """
    Dial another peer by identity.

    Fails with:
    - 400 for an empty target or the local identity
    - 409 when a call is already in progress
    """
    try:
        await runtime.machine.call_user(req.target_id)
    except InvalidTargetError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AlreadyInCallError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except SignalingError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return runtime.snapshot()


@router.post("/session/accept", response_model=SessionSnapshot)
async def accept_call(runtime: CallSessionRuntime = Depends(get_runtime)):
    try:
        await runtime.machine.accept()
    except CallNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return runtime.snapshot()


@router.post("/session/reject", response_model=SessionSnapshot)
async def reject_call(runtime: CallSessionRuntime = Depends(get_runtime)):
    try:
        await runtime.machine.reject()
    except CallNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return runtime.snapshot()


@router.post("/session/cancel", response_model=SessionSnapshot)
async def cancel_call(runtime: CallSessionRuntime = Depends(get_runtime)):
    """Withdraw an unanswered call. A no-op outside of Calling."""
    await runtime.machine.cancel()
    return runtime.snapshot()


@router.post("/session/end", response_model=SessionSnapshot)
async def end_call(runtime: CallSessionRuntime = Depends(get_runtime)):
    """Hang up. The response carries the fresh local identity."""
    await runtime.machine.end()
    return runtime.snapshot()


@router.put("/session/language", response_model=SessionSnapshot)
async def set_language(
    req: LanguageRequest,
    runtime: CallSessionRuntime = Depends(get_runtime),
):
    try:
        runtime.set_language(req.language)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return runtime.snapshot()


@router.post("/session/audio")
async def post_audio_chunk(request: Request, runtime: CallSessionRuntime = Depends(get_runtime)):
    # Raw PCM16 mono 16 kHz in the request body
    data = await request.body()
    accepted = runtime.push_audio(data)
    return {"status": "ok" if accepted else "ignored", "len": len(data)}
