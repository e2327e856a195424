"""
Request fingerprinting for deduplication.

A fingerprint is the SHA-256 of a canonical JSON document built from the
fields that make two generation requests equivalent: the caller identity,
the project name, the specifications and the assets. Keys are sorted and
separators fixed so the digest is stable across processes and hosts.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Optional

from .models import GenerationRequest

ANONYMOUS_USER = "anonymous"


def canonical_payload(request: GenerationRequest, user_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "user": user_id or ANONYMOUS_USER,
        "project": request.project_name,
        "specifications": request.specifications.model_dump(mode="json"),
        "assets": request.assets.model_dump(mode="json"),
    }


def compute_fingerprint(request: GenerationRequest, user_id: Optional[str] = None) -> str:
    """
    Compute the deduplication key for a generation request.

    Args:
        request: The validated generation request
        user_id: Caller identity; ``None`` or empty maps to ``"anonymous"``

    Returns:
        64-character lowercase hex digest
    """
    serialized = json.dumps(
        canonical_payload(request, user_id),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()
