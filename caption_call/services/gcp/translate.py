"""
GCP Translation Backend

Google Cloud Translation v3 behind the blocking ``translate(text, source,
target)`` call that the caption translator runs in an executor. A failed
request or an answer without translations raises; the caller decides what
to show instead.
"""

import logging
from typing import Optional

from google.cloud import translate

from caption_call.config.settings import settings
from caption_call.services.gcp.credentials import ensure_credentials

logger = logging.getLogger(__name__)


class EmptyTranslationError(RuntimeError):
    """The service answered without any translation."""


class GCPTranslationBackend:
    """One caption fragment per ``translate_text`` request."""

    def __init__(
        self,
        project_id: Optional[str] = None,
        location: str = "global",
        client: Optional[translate.TranslationServiceClient] = None,
    ):
        project_id = project_id or settings.GOOGLE_PROJECT_ID
        if not project_id:
            raise RuntimeError("GOOGLE_PROJECT_ID is not set")
        self.parent = f"projects/{project_id}/locations/{location}"
        if client is None:
            ensure_credentials()
            client = translate.TranslationServiceClient()
        self._client = client
        logger.info(f"🌐 Translation backend ready ({self.parent})")

    def translate(self, text: str, source: str, target: str) -> str:
        response = self._client.translate_text(
            request={
                "parent": self.parent,
                "contents": [text],
                "mime_type": "text/plain",
                "source_language_code": source,
                "target_language_code": target,
            }
        )
        if not response.translations:
            raise EmptyTranslationError(f"No translation returned for {source}->{target}")
        return response.translations[0].translated_text
