"""Server-sent event framing for the orchestration state stream."""

from __future__ import annotations

import json
from typing import Any


def format_sse(event: str, payload: dict[str, Any], *, event_id: int | None = None) -> str:
    data = json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)
    head = f"id: {event_id}\n" if event_id is not None else ""
    return f"{head}event: {event}\ndata: {data}\n\n"
