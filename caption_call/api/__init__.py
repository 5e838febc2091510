from fastapi import APIRouter

from caption_call.api import captions
from caption_call.api import session

router = APIRouter()

# Include session and captions routers
router.include_router(session.router)
router.include_router(captions.router)
