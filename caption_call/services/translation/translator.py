"""
Caption Translator - fail-safe translation call for remote captions.

Wraps a blocking translation backend so that:
- the call runs in the default executor and never blocks the event loop
- a slow backend is cut off after ``timeout`` seconds
- any failure (or an empty result) yields the untranslated text

Callers never see an exception from ``translate``.
"""

import asyncio
import logging
import time
from typing import Optional

from caption_call.config.settings import settings
from caption_call.services.metrics import translation_fallbacks, translation_latency
from caption_call.services.protocols import TranslationBackendProtocol

logger = logging.getLogger(__name__)


class CaptionTranslator:
    """Async, fallback-on-failure facade over a translation backend."""

    def __init__(
        self,
        backend: Optional[TranslationBackendProtocol],
        timeout: Optional[float] = None,
    ):
        self._backend = backend
        self.timeout = settings.TRANSLATION_TIMEOUT_SEC if timeout is None else timeout

    @property
    def available(self) -> bool:
        return self._backend is not None

    async def translate(self, text: str, source_lang: str, target_lang: str) -> str:
        """Translate ``text``; return it unchanged if translation is not possible."""
        if not text.strip() or source_lang == target_lang:
            return text

        if self._backend is None:
            translation_fallbacks.labels(reason="unavailable").inc()
            return text

        loop = asyncio.get_running_loop()
        started = time.perf_counter()
        try:
            translated = await asyncio.wait_for(
                loop.run_in_executor(None, self._backend.translate, text, source_lang, target_lang),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Translation {source_lang}->{target_lang} timed out after {self.timeout}s")
            translation_fallbacks.labels(reason="timeout").inc()
            return text
        except Exception as e:
            logger.warning(f"Translation {source_lang}->{target_lang} failed: {e}")
            translation_fallbacks.labels(reason="error").inc()
            return text
        finally:
            translation_latency.labels(
                language_pair=f"{source_lang}-{target_lang}"
            ).observe(time.perf_counter() - started)

        if not translated:
            translation_fallbacks.labels(reason="empty").inc()
            return text
        return translated


def create_translation_backend() -> Optional[TranslationBackendProtocol]:
    """
    Build the Google Cloud translation backend.

    Returns None when the backend cannot be configured; remote captions are
    then shown untranslated.
    """
    from caption_call.services.gcp.translate import GCPTranslationBackend

    try:
        return GCPTranslationBackend()
    except Exception as e:
        logger.warning(f"⚠️ Translation unavailable, captions will not be translated: {e}")
        return None
