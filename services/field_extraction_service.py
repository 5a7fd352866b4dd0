"""Per-document field extraction over the learned pattern library.

The service resolves the document's supplier once, takes a single snapshot
of active patterns from the store and asks the matcher for ranked
candidates for every requested field.  The top candidate wins when its
confidence reaches the acceptance threshold; otherwise the field is
reported as not found.  Nothing is mutated here, so documents may be
processed in parallel.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Iterable, List, Optional, Sequence

from engines.pattern_matcher import PatternMatcher
from engines.supplier_resolver import SupplierResolver
from models.extraction import (
    DEFAULT_VALUE_TYPES,
    UNKNOWN_SUPPLIER,
    DocumentExtractionOutcome,
    ExtractionCandidate,
    FieldExtractionResult,
    Pattern,
)
from repositories.pattern_store import PatternStore

logger = logging.getLogger(__name__)


def _unique_fields(required_fields: Optional[Iterable[str]]) -> List[str]:
    if required_fields is None:
        return list(DEFAULT_VALUE_TYPES)
    if isinstance(required_fields, str):
        required_fields = [required_fields]
    ordered: List[str] = []
    for name in required_fields:
        key = str(name or "").strip()
        if key and key not in ordered:
            ordered.append(key)
    return ordered


class FieldExtractionService:
    """Assemble a :class:`DocumentExtractionOutcome` for raw document text."""

    def __init__(
        self,
        store: PatternStore,
        resolver: SupplierResolver,
        matcher: Optional[PatternMatcher] = None,
        settings: Any = None,
    ) -> None:
        if settings is None:
            from config.settings import settings as app_settings

            settings = app_settings
        self.settings = settings
        self.store = store
        self.resolver = resolver
        self.matcher = matcher or PatternMatcher(store, settings)

    @property
    def acceptance_threshold(self) -> float:
        value = getattr(self.settings, "acceptance_threshold", None)
        return 0.5 if value is None else float(value)

    def _snapshot(self, supplier_candidates: Sequence[str]) -> List[Pattern]:
        resolved = [name for name in supplier_candidates if name != UNKNOWN_SUPPLIER]
        if not resolved:
            return self.store.list_active_patterns()
        return self.store.list_active_patterns(supplier=[*resolved, UNKNOWN_SUPPLIER])

    def _select(self, field_name: str, ranked: List[ExtractionCandidate]) -> FieldExtractionResult:
        if not ranked:
            return FieldExtractionResult.not_found(field_name)
        winner = ranked[0]
        if winner.confidence >= self.acceptance_threshold:
            return FieldExtractionResult.from_candidate(winner, rejected_candidates=len(ranked) - 1)
        logger.debug(
            "Best candidate for %s below threshold (%.3f < %.3f)",
            field_name,
            winner.confidence,
            self.acceptance_threshold,
        )
        return FieldExtractionResult.not_found(field_name, rejected_candidates=len(ranked))

    def extract_fields(
        self,
        text: str,
        required_fields: Optional[Iterable[str]] = None,
        supplier_hint: Optional[str] = None,
    ) -> DocumentExtractionOutcome:
        """Extract ``required_fields`` from ``text`` in the order requested.

        Never raises for missing or low-confidence fields.  Store failures
        propagate as :class:`~engines.errors.StoreUnavailableError`.
        """

        fields = _unique_fields(required_fields)
        text = text or ""
        supplier_candidates = self.resolver.resolve_with_hint(text, supplier_hint)
        outcome = DocumentExtractionOutcome(
            supplier=supplier_candidates[0],
            supplier_candidates=list(supplier_candidates),
        )

        if not text.strip():
            outcome.fields = [FieldExtractionResult.not_found(name) for name in fields]
            outcome.warnings.append("Document text is empty")
            return outcome

        snapshot = self._snapshot(supplier_candidates)
        warnings: List[str] = []
        for field_name in fields:
            ranked = self.matcher.match(
                text,
                field_name,
                supplier_candidates,
                patterns=snapshot,
                warnings=warnings,
            )
            outcome.fields.append(self._select(field_name, ranked))

        found = [result.confidence for result in outcome.fields if result.found]
        outcome.overall_confidence = sum(found) / len(found) if found else 0.0
        outcome.warnings.extend(dict.fromkeys(warnings))

        logger.info(
            "Extracted %d/%d fields for supplier %s (confidence %.3f)",
            len(found),
            len(fields),
            outcome.supplier,
            outcome.overall_confidence,
        )
        return outcome

    def extract_batch(
        self,
        texts: Sequence[str],
        required_fields: Optional[Iterable[str]] = None,
        max_workers: Optional[int] = None,
    ) -> List[DocumentExtractionOutcome]:
        """Extract every document in ``texts`` concurrently, preserving order."""

        documents = list(texts or [])
        if not documents:
            return []
        fields = _unique_fields(required_fields)
        workers = max_workers or getattr(self.settings, "batch_max_workers", None) or 4
        workers = max(1, min(int(workers), len(documents)))
        if workers == 1:
            return [self.extract_fields(text, fields) for text in documents]
        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(executor.map(lambda text: self.extract_fields(text, fields), documents))

    def preview_candidates(
        self, text: str, field_name: str, supplier_hint: Optional[str] = None
    ) -> List[ExtractionCandidate]:
        """Return every ranked candidate for ``field_name`` without selecting one."""

        if not text or not text.strip():
            return []
        supplier_candidates = self.resolver.resolve_with_hint(text, supplier_hint)
        return self.matcher.match(
            text,
            field_name,
            supplier_candidates,
            patterns=self._snapshot(supplier_candidates),
        )


__all__ = ["FieldExtractionService"]
