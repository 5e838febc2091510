"""Google Cloud adapters for speech recognition and translation."""
