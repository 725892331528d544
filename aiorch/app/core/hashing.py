############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# hashing.py: Content normalization and hashing helpers
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Content normalization and sha256 content hashes."""

import hashlib
import json
import re
import unicodedata
from typing import Any

_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """NFC-normalize, trim, and collapse internal whitespace runs."""
    text = unicodedata.normalize("NFC", text)
    return _WHITESPACE.sub(" ", text).strip()


def normalize_payload(payload: Any) -> str:
    """Canonical JSON rendering: sorted keys, compact separators, normalized strings."""
    return json.dumps(_normalize(payload), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return normalize_text(value)
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


def content_hash(payload: Any) -> str:
    """sha256 hex digest of the normalized payload.

    Strings hash by their normalized text, so the same message edited only
    in whitespace maps to the same embedding.
    """
    if isinstance(payload, str):
        data = normalize_text(payload)
    else:
        data = normalize_payload(payload)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
