"""
Application-wide constants for caption and signaling timing.

This file centralizes the thresholds that shape call signaling and
caption reconciliation so they stay consistent across services.

Note: Environment-dependent settings (Redis, Google credentials, ports) belong
in settings.py. This file is for operational parameters that rarely change
between environments.
"""

# ==============================================================================
# CAPTION DISPLAY
# ==============================================================================

# Number of trailing words shown in a caption overlay
DISPLAY_WINDOW_WORDS: int = 20

# Local caption is cleared (and the engine restarted) after this much silence
LOCAL_SILENCE_EXPIRY_SEC: float = 5.0

# Remote caption lifetime after an accepted partial fragment
REMOTE_PARTIAL_EXPIRY_SEC: float = 5.0

# Remote caption lifetime after an accepted final fragment (shown longer)
REMOTE_FINAL_EXPIRY_SEC: float = 7.0

# ==============================================================================
# CALL SIGNALING
# ==============================================================================

# A call that closes before connecting within this window was rejected
REJECT_DETECTION_THRESHOLD_SEC: float = 0.5

# Callee closes a rejected call this long after answering with an empty stream
REJECT_CLOSE_DELAY_SEC: float = 0.1

# How long a transient status (e.g. "rejected") stays visible
STATUS_DISPLAY_SEC: float = 3.0

# Round-trip timeout for a signal channel connection probe
CONNECTION_PROBE_TIMEOUT_SEC: float = 5.0

# An outbound call nobody answers is closed after this long
UNANSWERED_CALL_TIMEOUT_SEC: float = 30.0

# Short-lived signal connections (reject/cancel notices) give up after this
BEST_EFFORT_SEND_TIMEOUT_SEC: float = 3.0

# Peer identity length and alphabet
PEER_ID_LENGTH: int = 7
PEER_ID_ALPHABET: str = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"

# ==============================================================================
# TRANSCRIPTION ENGINE LIFECYCLE
# ==============================================================================

# Delay before restarting the engine after it ends on its own
ENGINE_END_RESTART_DELAY_SEC: float = 0.1

# Back-off between stop and start for an explicit restart
ENGINE_RESTART_BACKOFF_SEC: float = 0.2

# Delay before the first engine start once a call connects
TRANSCRIPTION_START_DELAY_SEC: float = 1.0

# Consecutive "aborted" errors that disable captioning until re-enabled
MAX_CONSECUTIVE_ABORTS: int = 5

# Engine error code for routine cancellation
ABORTED_ERROR_CODE: str = "aborted"

# ==============================================================================
# LANGUAGES
# ==============================================================================

# Session language code -> transcription engine locale
LANGUAGE_LOCALES: dict[str, str] = {
    "tr": "tr-TR",
    "en": "en-US",
    "es": "es-ES",
    "fr": "fr-FR",
    "de": "de-DE",
    "it": "it-IT",
    "pt": "pt-BR",
    "ru": "ru-RU",
    "ja": "ja-JP",
    "ko": "ko-KR",
    "zh": "zh-CN",
    "ar": "ar-SA",
}

# Locale used when a language code has no mapping
FALLBACK_LOCALE: str = "tr-TR"

SUPPORTED_LANGUAGES: frozenset[str] = frozenset(LANGUAGE_LOCALES)


def locale_for(language: str) -> str:
    """Map a session language code to the engine locale."""
    return LANGUAGE_LOCALES.get(language, FALLBACK_LOCALE)
