"""Load the bootstrap pattern library into a pattern store."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from engines.errors import PatternNotFoundError
from models.extraction import Pattern
from repositories.pattern_store import PatternStore
from utils.reference_loader import load_reference_dataset

logger = logging.getLogger(__name__)

DEFAULT_SEED_SAMPLE_SIZE = 20


def seed_statistics(confidence: Optional[float], sample_size: int) -> Dict[str, int]:
    """Translate a historical confidence into initial usage/success counts.

    ``0.95`` over a sample of 20 becomes 19 successes out of 20 uses so the
    bootstrap set enters the store already proven.
    """

    if confidence is None:
        return {"usage_count": 0, "success_count": 0}
    bounded = min(1.0, max(0.0, float(confidence)))
    usage = max(1, int(sample_size))
    return {"usage_count": usage, "success_count": int(round(bounded * usage))}


def load_seed_patterns(name: str = "seed_patterns") -> List[Pattern]:
    payload = load_reference_dataset(name)
    sample_size = int(payload.get("seed_sample_size") or DEFAULT_SEED_SAMPLE_SIZE)
    patterns: List[Pattern] = []
    for entry in payload.get("patterns", []):
        record: Dict[str, Any] = dict(entry)
        confidence = record.pop("confidence", None)
        record.update(seed_statistics(confidence, sample_size))
        record.setdefault("source", "seed")
        try:
            patterns.append(Pattern.from_dict(record))
        except (KeyError, TypeError, ValueError):
            logger.exception("Skipping invalid seed pattern %s", record.get("pattern_id"))
    return patterns


def seed_pattern_store(store: PatternStore, patterns: Optional[List[Pattern]] = None) -> int:
    """Insert seed patterns that are not in ``store`` yet and return how many.

    Seeds carry stable ids so repeated start-ups never duplicate them, and a
    seed an operator has deactivated stays deactivated.
    """

    seeds = load_seed_patterns() if patterns is None else patterns
    created = 0
    for pattern in seeds:
        try:
            store.get_pattern(pattern.pattern_id)
            continue
        except PatternNotFoundError:
            pass
        store.create_pattern(pattern)
        created += 1
    logger.info("Seeded %d of %d bootstrap patterns", created, len(seeds))
    return created


__all__ = ["load_seed_patterns", "seed_pattern_store", "seed_statistics"]
