import secrets
from typing import Optional

from caption_call.config.constants import PEER_ID_ALPHABET, PEER_ID_LENGTH


def generate_peer_id(previous: Optional[str] = None, length: int = PEER_ID_LENGTH) -> str:
    """Random alphanumeric peer identity, never equal to ``previous``."""
    while True:
        peer_id = "".join(secrets.choice(PEER_ID_ALPHABET) for _ in range(length))
        if peer_id != previous:
            return peer_id
