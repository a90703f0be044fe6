"""Canonical JSON serialisation and content hashing for discovered items."""

from __future__ import annotations

import hashlib
import json
from typing import Any


def stable_json(value: Any) -> str:
    """Serialise ``value`` with recursively sorted keys and a fixed encoding.

    Non-finite floats are rejected so that a hash never depends on how a
    particular JSON library spells ``NaN``.
    """

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def compute_raw_hash(raw_payload: Any) -> str:
    return sha256(stable_json(raw_payload))


__all__ = ["compute_raw_hash", "sha256", "stable_json"]
