from __future__ import annotations

import json
from hashlib import sha256
from typing import Any


def canonical_payload(content: Any) -> str:
    """Return a stable text encoding of *content* for hashing.

    Mappings are encoded with sorted keys so dict ordering never changes the
    result.  Content that JSON cannot encode (for example a circular
    structure) falls back to ``repr()`` so hashing never fails a pass.
    """
    try:
        return json.dumps(content, sort_keys=True, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return repr(content)


def fingerprint(content: Any) -> str:
    """Return a SHA-256 hex digest of the rendered dashboard content.

    Label or annotation edits bump ``resourceVersion`` without changing this
    digest.
    """
    return sha256(canonical_payload(content).encode("utf-8", errors="replace")).hexdigest()
