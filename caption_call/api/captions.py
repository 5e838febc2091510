"""
Captions API - turn live captioning on or off.

Enabling also clears the abort latch that disables captioning after
repeated engine failures.
"""
from fastapi import APIRouter, Depends

from caption_call.api.deps import get_runtime
from caption_call.schemas.session import SessionSnapshot
from caption_call.services.session import CallSessionRuntime

router = APIRouter()


@router.post("/captions/enable", response_model=SessionSnapshot)
async def enable_captions(runtime: CallSessionRuntime = Depends(get_runtime)):
    runtime.enable_captions()
    return runtime.snapshot()


@router.post("/captions/disable", response_model=SessionSnapshot)
async def disable_captions(runtime: CallSessionRuntime = Depends(get_runtime)):
    runtime.disable_captions()
    return runtime.snapshot()
