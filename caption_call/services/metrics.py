"""Prometheus metrics instrumentation for captioning and call signaling.

Exposes metrics for monitoring caption reconciliation, translation and
transcription engine health. Metrics are exposed via HTTP on the port
configured by METRICS_PORT.

Metrics exported:
- caption_fragments_total: Counter of caption updates by direction and outcome
- caption_translation_latency_seconds: Histogram of translation call time
- caption_translation_fallbacks_total: Counter of translations that fell back to source text
- transcription_aborts_total: Counter of routine "aborted" engine errors
- transcription_latch_trips_total: Counter of captioning disabled by the abort latch
- call_outcomes_total: Counter of call attempts by outcome

Usage:
    from caption_call.services.metrics import start_metrics_server, caption_fragments

    start_metrics_server(port=8001)
    caption_fragments.labels(direction='remote', outcome='duplicate').inc()
"""

from prometheus_client import Histogram, Counter, start_http_server
import logging

logger = logging.getLogger(__name__)

# Reconciliation outcomes
caption_fragments = Counter(
    'caption_fragments_total',
    'Caption updates seen by the reconciler',
    labelnames=['direction', 'outcome']  # outcome: accepted, duplicate, regression
)

# Translation
translation_latency = Histogram(
    'caption_translation_latency_seconds',
    'Time spent in the translation call',
    labelnames=['language_pair']
)

translation_fallbacks = Counter(
    'caption_translation_fallbacks_total',
    'Translations that fell back to the untranslated text',
    labelnames=['reason']  # reason: error, timeout, empty, unavailable
)

# Transcription engine
transcription_aborts = Counter(
    'transcription_aborts_total',
    'Routine aborted errors from the transcription engine'
)

transcription_latch_trips = Counter(
    'transcription_latch_trips_total',
    'Times captioning was disabled after consecutive aborts'
)

# Signaling
call_outcomes = Counter(
    'call_outcomes_total',
    'Call attempts by outcome',
    labelnames=['outcome']  # connected, rejected, unanswered, unavailable, cancelled, declined, busy, ended
)


def start_metrics_server(port: int = 8001):
    """Start Prometheus metrics HTTP server."""
    try:
        start_http_server(port)
        logger.info(f"✅ Metrics server started on port {port}")
    except Exception as e:
        logger.error(f"❌ Failed to start metrics server: {e}")
