"""Apply learned patterns to text and rank the resulting candidates.

Confidence for a candidate is derived from the originating pattern's
history rather than from the match itself::

    evidence    = min(usage, min_sample_size) / min_sample_size
    reliability = success_rate * (unproven_weight + (1 - unproven_weight) * evidence)
    confidence  = success_weight * reliability + supplier_bonus
    confidence *= 1 - min(max_ambiguity_penalty, ambiguity_penalty * (distinct - 1))

``supplier_bonus`` is only granted to patterns scoped to a supplier that
was actually resolved for the document.  ``distinct`` is the number of
different values the same pattern produced in the text.  The result is
clamped to ``[0, 1]``.

Candidates are ranked in two tiers: patterns with at least
``min_sample_size`` uses and a nonzero success rate come first, so a
young pattern never outranks an established one however high its early
rate.  Within a tier candidates sort by confidence, usage, pattern id and
span start.
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from engines.errors import MalformedPatternError, NormalizationError
from models.extraction import UNKNOWN_SUPPLIER, ExtractionCandidate, Pattern
from repositories.pattern_store import PatternStore
from utils.normalizers import normalize_value

logger = logging.getLogger(__name__)

_CompiledOrError = Union["re.Pattern[str]", MalformedPatternError]


def _setting(settings: Any, name: str, default: Any) -> Any:
    value = getattr(settings, name, None) if settings is not None else None
    return default if value is None else value


def compute_confidence(
    success_rate: float,
    usage_count: int,
    *,
    supplier_exact: bool = False,
    distinct_values: int = 1,
    settings: Any = None,
) -> float:
    """Score a candidate from its pattern's reliability statistics."""

    min_sample = max(1, int(_setting(settings, "min_sample_size", 5)))
    unproven_weight = float(_setting(settings, "unproven_weight", 0.6))
    success_weight = float(_setting(settings, "success_weight", 0.9))
    bonus = float(_setting(settings, "supplier_bonus", 0.1))
    penalty_step = float(_setting(settings, "ambiguity_penalty", 0.15))
    max_penalty = float(_setting(settings, "max_ambiguity_penalty", 0.45))

    rate = min(1.0, max(0.0, float(success_rate)))
    evidence = min(max(0, int(usage_count)), min_sample) / min_sample
    reliability = rate * (unproven_weight + (1.0 - unproven_weight) * evidence)

    confidence = success_weight * reliability
    if supplier_exact:
        confidence += bonus
    if distinct_values > 1:
        penalty = min(max_penalty, penalty_step * (distinct_values - 1))
        confidence *= 1.0 - penalty
    return min(1.0, max(0.0, confidence))


class PatternMatcher:
    """Evaluate active patterns for one field against a text."""

    def __init__(self, store: PatternStore, settings: Any = None) -> None:
        self.store = store
        if settings is None:
            from config.settings import settings as app_settings

            settings = app_settings
        self.settings = settings
        self._compiled: Dict[str, Tuple[Tuple[int, str], _CompiledOrError]] = {}
        self._cache_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Compilation cache
    # ------------------------------------------------------------------
    def compile(self, pattern: Pattern) -> "re.Pattern[str]":
        """Return the compiled rule body, compiling lazily.

        One entry is kept per pattern id, tagged with the version and rule
        text it was built from, so an edited rule is never served from a
        stale compilation and replaces the old entry.  Failures are cached
        too.
        """

        tag = (pattern.version, pattern.regex)
        with self._cache_lock:
            entry = self._compiled.get(pattern.pattern_id)
        cached = entry[1] if entry is not None and entry[0] == tag else None
        if cached is None:
            cached = self._compile_uncached(pattern)
            with self._cache_lock:
                self._compiled[pattern.pattern_id] = (tag, cached)
            if isinstance(cached, MalformedPatternError):
                logger.warning("%s", cached)
        if isinstance(cached, MalformedPatternError):
            raise cached
        return cached

    @staticmethod
    def _compile_uncached(pattern: Pattern) -> _CompiledOrError:
        try:
            compiled = re.compile(pattern.regex, re.MULTILINE)
        except (re.error, TypeError, ValueError, OverflowError) as exc:
            return MalformedPatternError(pattern.pattern_id, str(exc))
        if compiled.groups < 1:
            return MalformedPatternError(pattern.pattern_id, "rule has no capture group")
        return compiled

    def validate(self, pattern: Pattern) -> "re.Pattern[str]":
        """Compile ``pattern`` without touching the cache.

        Used for rules that are not (yet) stored, such as trial runs,
        manual additions and imports.
        """

        compiled = self._compile_uncached(pattern)
        if isinstance(compiled, MalformedPatternError):
            raise compiled
        return compiled

    @property
    def cache_size(self) -> int:
        with self._cache_lock:
            return len(self._compiled)

    def invalidate(self, pattern_id: str) -> None:
        with self._cache_lock:
            self._compiled.pop(pattern_id, None)

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._compiled.clear()

    # ------------------------------------------------------------------
    # Pattern selection
    # ------------------------------------------------------------------
    def collect_patterns(
        self,
        field_name: str,
        supplier_candidates: Sequence[str],
        patterns: Optional[Iterable[Pattern]] = None,
    ) -> List[Pattern]:
        """Select active patterns for ``field_name`` in supplier order.

        ``patterns`` is an optional pre-fetched snapshot; otherwise the
        store is queried.  A candidate list of only ``UNKNOWN`` selects the
        patterns of every supplier.
        """

        if patterns is None:
            pool = self.store.list_active_patterns(field_name=field_name)
        else:
            pool = [pattern for pattern in patterns if pattern.field_name == field_name]
        pool = [pattern for pattern in pool if pattern.is_active]

        resolved = [name for name in supplier_candidates if name and name != UNKNOWN_SUPPLIER]
        if not resolved:
            return pool

        selected: List[Pattern] = []
        for supplier in dict.fromkeys(resolved):
            selected.extend(pattern for pattern in pool if pattern.supplier == supplier)
        include_generic = bool(_setting(self.settings, "include_generic_patterns", True))
        if include_generic or UNKNOWN_SUPPLIER in supplier_candidates:
            selected.extend(pattern for pattern in pool if pattern.is_generic)
        return selected

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------
    @staticmethod
    def _value_group(compiled: "re.Pattern[str]") -> Union[int, str]:
        return "value" if "value" in compiled.groupindex else 1

    def apply_pattern(
        self,
        pattern: Pattern,
        text: str,
        compiled: Optional["re.Pattern[str]"] = None,
    ) -> List[Tuple[str, Any, Tuple[int, int]]]:
        """Return ``(raw, normalised, span)`` for each distinct value found.

        Raises :class:`MalformedPatternError` when the rule cannot be
        compiled.  Matches failing normalisation are dropped.  A
        precompiled rule bypasses the cache.
        """

        if compiled is None:
            compiled = self.compile(pattern)
        group = self._value_group(compiled)
        found: Dict[Any, Tuple[str, Any, Tuple[int, int]]] = {}
        for match in compiled.finditer(text):
            raw = match.group(group)
            if raw is None:
                continue
            try:
                value = normalize_value(pattern.value_type, raw, self.settings)
            except NormalizationError as exc:
                logger.debug("Discarding match for pattern %s: %s", pattern.pattern_id, exc)
                continue
            if value not in found:
                found[value] = (raw, value, match.span(group))
        return list(found.values())

    def match(
        self,
        text: str,
        field_name: str,
        supplier_candidates: Sequence[str],
        *,
        patterns: Optional[Iterable[Pattern]] = None,
        warnings: Optional[List[str]] = None,
    ) -> List[ExtractionCandidate]:
        """Return ranked candidates for ``field_name`` found in ``text``."""

        if not text or not text.strip():
            return []

        candidates_in = list(supplier_candidates or [UNKNOWN_SUPPLIER])
        resolved = {name for name in candidates_in if name != UNKNOWN_SUPPLIER}
        selected = self.collect_patterns(field_name, candidates_in, patterns)
        if not selected:
            return []

        min_sample = max(1, int(_setting(self.settings, "min_sample_size", 5)))
        results: List[ExtractionCandidate] = []
        for pattern in selected:
            try:
                values = self.apply_pattern(pattern, text)
            except MalformedPatternError as exc:
                if warnings is not None:
                    warnings.append(str(exc))
                continue
            if not values:
                continue

            confidence = compute_confidence(
                pattern.success_rate,
                pattern.usage_count,
                supplier_exact=pattern.supplier in resolved,
                distinct_values=len(values),
                settings=self.settings,
            )
            for raw, value, span in values:
                results.append(
                    ExtractionCandidate(
                        field_name=field_name,
                        pattern_id=pattern.pattern_id,
                        supplier=pattern.supplier,
                        raw_value=raw,
                        value=value,
                        confidence=confidence,
                        span=span,
                        usage_count=pattern.usage_count,
                        proven=pattern.is_proven(min_sample) and pattern.success_rate > 0,
                    )
                )

        results.sort(
            key=lambda item: (
                not item.proven,
                -item.confidence,
                -item.usage_count,
                item.pattern_id,
                item.span[0],
            )
        )
        return results


__all__ = ["PatternMatcher", "compute_confidence"]
