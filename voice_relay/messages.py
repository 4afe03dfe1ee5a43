"""
Listener wire messages.

Audio goes out as binary frames carrying encoder output verbatim. Metadata
goes out as JSON text frames:

    {"type": "speaker", "speaker": <string|null>}
    {"type": "user_count", "count": <integer>}
    {"type": "status", "speaker": <string|null>}   (once, on connect)
"""

import json
from typing import Optional


def speaker_event(speaker: Optional[str]) -> dict:
    return {"type": "speaker", "speaker": speaker}


def user_count_event(count: int) -> dict:
    return {"type": "user_count", "count": int(count)}


def status_event(speaker: Optional[str]) -> dict:
    return {"type": "status", "speaker": speaker}


def encode(event: dict) -> str:
    return json.dumps(event, separators=(",", ":"))
