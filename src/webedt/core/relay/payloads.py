from __future__ import annotations

import json
from typing import Any

WORKER_SESSION_ID_FIELD = "sessionId"
DISPLAY_FIELDS = ("message", "content", "text")

NOT_JSON = object()


def parse_payload(data: str) -> Any:
    """Decode an event payload, or return ``NOT_JSON`` when it is not JSON."""
    try:
        return json.loads(data)
    except ValueError:
        return NOT_JSON


def worker_session_id(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    value = payload.get(WORKER_SESSION_ID_FIELD)
    if isinstance(value, str) and value:
        return value
    return None


def display_content(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    for field in DISPLAY_FIELDS:
        value = payload.get(field)
        if value:
            return value if isinstance(value, str) else json.dumps(value)
    return None


def event_type_hint(payload: Any) -> str | None:
    if isinstance(payload, dict) and isinstance(payload.get("type"), str) and payload["type"]:
        return payload["type"]
    return None


def split_user_request(user_request: str | list[dict[str, Any]] | None) -> tuple[str, list[dict[str, Any]] | None]:
    """Return the prompt text and any inline images from a user request.

    Structured requests are lists of content blocks; text blocks are joined
    with newlines and base64 image blocks become image attachments.
    """
    if user_request is None:
        return "", None
    if isinstance(user_request, str):
        return user_request, None

    texts: list[str] = []
    images: list[dict[str, Any]] = []
    for index, block in enumerate(user_request):
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text" and isinstance(block.get("text"), str):
            texts.append(block["text"])
        elif block.get("type") == "image":
            source = block.get("source") or {}
            images.append(
                {
                    "id": str(block.get("id") or f"image-{index}"),
                    "data": source.get("data", ""),
                    "mediaType": source.get("media_type", ""),
                    "fileName": str(block.get("fileName") or f"image-{index}"),
                }
            )
    return "\n".join(texts), images or None
