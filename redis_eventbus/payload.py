"""Outbound payload encoding.

Strings are published verbatim and everything else is JSON encoded.
Deliveries are handed to listeners as the raw text received from Redis;
listeners decode structured payloads themselves.
"""

import json
from typing import Any

from pydantic import BaseModel


def encode_payload(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
