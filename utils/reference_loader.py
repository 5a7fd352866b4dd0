"""Utilities for loading shared reference datasets.

The extraction engine relies on structured reference data – the supplier
keyword table and the bootstrap pattern set – that should not be
hard-coded inside the engine.  This module centralises loading and
lightweight caching of those datasets which are stored under
``resources/reference_data`` as JSON documents.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_REFERENCE_CACHE: Dict[str, Dict[str, Any]] = {}
_CACHE_LOCK = threading.Lock()


def _reference_base_path() -> Path:
    return Path(__file__).resolve().parent.parent / "resources" / "reference_data"


def load_reference_dataset(name: str, base_path: Optional[Path] = None) -> Dict[str, Any]:
    """Return the JSON payload for ``name`` from the reference store.

    Parameters
    ----------
    name:
        The logical dataset name. The loader will look for
        ``resources/reference_data/{name}.json``.
    base_path:
        Optional directory overriding the bundled reference store.
        Payloads loaded from an explicit directory are not cached.
    """

    key = str(name).strip()
    if not key:
        raise ValueError("reference dataset name must be a non-empty string")

    if base_path is None:
        with _CACHE_LOCK:
            if key in _REFERENCE_CACHE:
                return copy.deepcopy(_REFERENCE_CACHE[key])

    base = Path(base_path) if base_path is not None else _reference_base_path()
    path = base / f"{key}.json"

    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except FileNotFoundError:
        logger.warning("Reference dataset '%s' not found at %s", key, path)
        payload = {}
    except json.JSONDecodeError:
        logger.exception("Reference dataset '%s' could not be decoded", key)
        payload = {}

    if not isinstance(payload, dict):
        logger.warning(
            "Reference dataset '%s' is not an object; defaulting to empty dict", key
        )
        payload = {}

    if base_path is None:
        with _CACHE_LOCK:
            _REFERENCE_CACHE[key] = payload
    return copy.deepcopy(payload)


def clear_reference_cache() -> None:
    with _CACHE_LOCK:
        _REFERENCE_CACHE.clear()
