"""
Cache/dedupe key derivation.
"""

import hashlib
import json
from typing import Any, Dict, Optional


def make_fingerprint(operation: str, identity: str, params: Optional[Dict[str, Any]] = None) -> str:
    """Build the lookup key for ``operation`` run by ``identity`` with ``params``.

    Parameters are canonicalised (sorted keys, compact separators) before
    hashing so that logically equal requests share a key.
    """
    if not params:
        return f"{operation}:{identity}"

    canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.md5(canonical.encode()).hexdigest()
    return f"{operation}:{identity}:{digest}"
