from __future__ import annotations

import json
from typing import Any, Dict, Optional, Tuple

from flask import Response, jsonify

from .limits import UsageSnapshot
from .models import AccountProfile


def cors_headers(origin: Optional[str]) -> Dict[str, str]:
    """Headers letting the local UI, served from another origin, read us."""
    return {
        "Access-Control-Allow-Origin": origin or "*",
        "Access-Control-Allow-Methods": "GET, POST",
        "Access-Control-Allow-Headers": "Content-Type",
    }


def json_error(message: str, status: int) -> Tuple[Response, int]:
    return jsonify({"error": {"message": message}}), status


def to_jsonable(payload: Any) -> Any:
    if isinstance(payload, (UsageSnapshot, AccountProfile)):
        return payload.to_dict()
    return payload


def sse_message(topic: str, payload: Any) -> str:
    return f"event: {topic}\ndata: {json.dumps(to_jsonable(payload))}\n\n"
