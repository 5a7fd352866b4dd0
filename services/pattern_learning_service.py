"""Feedback loop that keeps pattern reliability statistics honest.

Every adjudicated extraction outcome is folded back into the store:

* a confirmed value reinforces the winning pattern (usage and success +1);
* a rejected value penalises it (usage +1 only);
* a corrected value penalises the winner and then either reinforces an
  existing pattern that already yields the corrected value from the same
  text, or synthesises a new pattern scoped to the resolved supplier.

Patterns whose success rate drops under ``deactivation_floor`` after at
least ``min_sample_size`` uses are deactivated.  The service also exposes
the pattern administration operations used by the HTTP layer: manual
addition, rule edits, removal, trial runs, statistics, and JSON
export/import.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import pandas as pd

from engines.errors import MalformedPatternError, NormalizationError, PatternNotFoundError
from engines.pattern_matcher import PatternMatcher
from engines.pattern_synthesizer import PatternSynthesizer
from engines.supplier_resolver import SupplierResolver
from models.extraction import (
    UNKNOWN_SUPPLIER,
    FieldExtractionResult,
    Pattern,
    PatternImportResult,
    PatternLearningResult,
    PatternLearningStatistics,
    PatternLearningType,
    PatternMatchExample,
    PatternMergeStrategy,
    PatternRecommendation,
    PatternTestResult,
    ValueType,
    default_value_type,
    new_pattern_id,
)
from repositories.pattern_store import PatternStore
from services.event_bus import (
    PATTERN_ACCURACY_CHANGED,
    PATTERN_DEACTIVATED,
    PATTERN_LEARNED,
    PATTERN_REINFORCED,
    EventBus,
    get_event_bus,
)
from utils.normalizers import normalize_value, values_equal

logger = logging.getLogger(__name__)

Outcome = Union[bool, str, None]

EXPORT_FORMAT_VERSION = 1


def _rate(success: int, usage: int) -> float:
    return min(1.0, success / usage) if usage > 0 else 0.0


def _recommend(rate: float, total: int) -> tuple:
    if total == 0:
        return PatternRecommendation.REVIEW, "No sample texts were supplied"
    if rate >= 0.9:
        return PatternRecommendation.APPROVE, f"Pattern matched {rate:.0%} of samples"
    if rate >= 0.7:
        return PatternRecommendation.REVIEW, f"Pattern matched {rate:.0%} of samples; review failures"
    if rate >= 0.4:
        return PatternRecommendation.IMPROVE, f"Pattern matched only {rate:.0%} of samples"
    return PatternRecommendation.REJECT, f"Pattern matched {rate:.0%} of samples"


class PatternLearningService:
    """Apply extraction feedback to the pattern store."""

    def __init__(
        self,
        store: PatternStore,
        matcher: Optional[PatternMatcher] = None,
        resolver: Optional[SupplierResolver] = None,
        synthesizer: Optional[PatternSynthesizer] = None,
        settings: Any = None,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        if settings is None:
            from config.settings import settings as app_settings

            settings = app_settings
        self.settings = settings
        self.store = store
        self.matcher = matcher or PatternMatcher(store, settings)
        self.resolver = resolver
        self.synthesizer = synthesizer or PatternSynthesizer(settings)
        self.event_bus = event_bus or get_event_bus()
        self._corrections_processed = 0
        self._counter_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Settings helpers
    # ------------------------------------------------------------------
    @property
    def min_sample_size(self) -> int:
        value = getattr(self.settings, "min_sample_size", None)
        return 5 if value is None else int(value)

    @property
    def deactivation_floor(self) -> float:
        value = getattr(self.settings, "deactivation_floor", None)
        return 0.3 if value is None else float(value)

    @property
    def corrections_processed(self) -> int:
        with self._counter_lock:
            return self._corrections_processed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _publish(self, event_name: str, pattern: Pattern, **extra: Any) -> None:
        payload = {
            "pattern_id": pattern.pattern_id,
            "supplier": pattern.supplier,
            "field_name": pattern.field_name,
            "usage_count": pattern.usage_count,
            "success_count": pattern.success_count,
            "success_rate": pattern.success_rate,
            "is_active": pattern.is_active,
        }
        payload.update(extra)
        self.event_bus.publish(event_name, payload)

    def _apply_stats(
        self,
        pattern_id: str,
        success: bool,
        confidence: Optional[float] = None,
    ) -> tuple:
        """Update statistics and return ``(pattern, previous_rate, deactivated)``."""

        success_delta = 1 if success else 0
        updated = self.store.update_stats(
            pattern_id, 1, success_delta, confidence=confidence
        )
        previous_rate = _rate(
            updated.success_count - success_delta, updated.usage_count - 1
        )
        if success:
            self._publish(PATTERN_REINFORCED, updated)
        if abs(updated.success_rate - previous_rate) > 1e-12:
            self._publish(
                PATTERN_ACCURACY_CHANGED,
                updated,
                previous_rate=previous_rate,
                new_rate=updated.success_rate,
            )
        deactivated = self._enforce_floor(updated)
        if deactivated:
            updated = updated.copy(is_active=False)
        return updated, previous_rate, deactivated

    def _enforce_floor(self, pattern: Pattern) -> bool:
        if not pattern.is_active:
            return False
        if pattern.usage_count < self.min_sample_size:
            return False
        if pattern.success_rate >= self.deactivation_floor:
            return False
        deactivated = self.store.deactivate(pattern.pattern_id)
        self.matcher.invalidate(pattern.pattern_id)
        logger.info(
            "Deactivated pattern %s (%s/%s): success rate %.2f after %d uses",
            pattern.pattern_id,
            pattern.supplier,
            pattern.field_name,
            pattern.success_rate,
            pattern.usage_count,
        )
        self._publish(PATTERN_DEACTIVATED, deactivated, reason="success_rate_below_floor")
        return True

    def _value_type_for(self, field_result: FieldExtractionResult) -> ValueType:
        if field_result.pattern_id:
            try:
                return self.store.get_pattern(field_result.pattern_id).value_type
            except PatternNotFoundError:
                logger.debug("Winning pattern %s no longer exists", field_result.pattern_id)
        return default_value_type(field_result.field_name)

    def _scope_supplier(
        self,
        field_result: FieldExtractionResult,
        text: Optional[str],
        supplier: Optional[str],
    ) -> str:
        explicit = str(supplier or "").strip()
        if explicit:
            return explicit
        if text and self.resolver is not None:
            resolved = self.resolver.resolve_best(text)
            if resolved != UNKNOWN_SUPPLIER:
                return resolved
        return field_result.supplier or UNKNOWN_SUPPLIER

    def _validate_rule(self, pattern: Pattern) -> "re.Pattern[str]":
        return self.matcher.validate(pattern)

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------
    def record_outcome(
        self,
        field_result: FieldExtractionResult,
        outcome: Outcome,
        *,
        text: Optional[str] = None,
        supplier: Optional[str] = None,
    ) -> PatternLearningResult:
        """Fold one adjudicated outcome into the pattern statistics.

        ``outcome`` is ``True`` when the extracted value was correct,
        ``False`` when it was wrong and no correction is available, or the
        corrected value as a string.
        """

        if outcome is True:
            return self.learn_from_success(field_result)
        if outcome is False or outcome is None:
            return self.learn_from_failure(field_result)

        corrected = str(outcome)
        if field_result.found:
            value_type = self._value_type_for(field_result)
            if values_equal(value_type, field_result.value, corrected, self.settings):
                return self.learn_from_success(field_result)
        return self.learn_from_correction(field_result, corrected, text=text, supplier=supplier)

    def learn_from_success(self, field_result: FieldExtractionResult) -> PatternLearningResult:
        if not field_result.pattern_id:
            return PatternLearningResult(
                success=False,
                explanation=f"No pattern produced {field_result.field_name}; nothing to reinforce",
            )
        updated, previous_rate, _ = self._apply_stats(
            field_result.pattern_id, True, confidence=field_result.confidence or None
        )
        return PatternLearningResult(
            success=True,
            learning_type=PatternLearningType.PATTERN_REINFORCED,
            pattern=updated,
            previous_accuracy=previous_rate,
            new_accuracy=updated.success_rate,
            explanation=f"Pattern {updated.pattern_id} confirmed for {updated.field_name}",
        )

    def learn_from_failure(self, field_result: FieldExtractionResult) -> PatternLearningResult:
        if not field_result.pattern_id:
            return PatternLearningResult(
                success=False,
                explanation=f"No pattern produced {field_result.field_name}; nothing to penalise",
            )
        updated, previous_rate, deactivated = self._apply_stats(
            field_result.pattern_id, False, confidence=field_result.confidence or None
        )
        result = PatternLearningResult(
            success=True,
            learning_type=(
                PatternLearningType.PATTERN_DEACTIVATED
                if deactivated
                else PatternLearningType.PATTERN_CORRECTED
            ),
            pattern=updated,
            previous_accuracy=previous_rate,
            new_accuracy=updated.success_rate,
            explanation=f"Pattern {updated.pattern_id} marked incorrect for {updated.field_name}",
            requires_review=True,
        )
        if deactivated:
            result.deactivated_pattern_ids.append(updated.pattern_id)
        return result

    def learn_from_correction(
        self,
        field_result: FieldExtractionResult,
        corrected_value: str,
        *,
        text: Optional[str] = None,
        supplier: Optional[str] = None,
    ) -> PatternLearningResult:
        """Penalise the winner, then reuse or synthesise a pattern for the value."""

        with self._counter_lock:
            self._corrections_processed += 1

        field_name = field_result.field_name
        value_type = self._value_type_for(field_result)
        result = PatternLearningResult(success=False)

        if field_result.pattern_id:
            penalised, previous_rate, deactivated = self._apply_stats(
                field_result.pattern_id, False, confidence=field_result.confidence or None
            )
            result.previous_accuracy = previous_rate
            result.new_accuracy = penalised.success_rate
            result.pattern = penalised
            result.learning_type = PatternLearningType.PATTERN_CORRECTED
            if deactivated:
                result.learning_type = PatternLearningType.PATTERN_DEACTIVATED
                result.deactivated_pattern_ids.append(penalised.pattern_id)

        if not text or not text.strip():
            result.warnings.append("Source text is required to learn from a correction")
            result.requires_review = True
            result.success = bool(field_result.pattern_id)
            result.explanation = "Winning pattern penalised; no new pattern learned"
            return result

        try:
            expected = normalize_value(value_type, corrected_value, self.settings)
        except NormalizationError as exc:
            result.warnings.append(str(exc))
            result.requires_review = True
            result.success = bool(field_result.pattern_id)
            result.explanation = "Corrected value could not be normalised"
            return result

        scope = self._scope_supplier(field_result, text, supplier)
        reused = self._reuse_existing(text, scope, field_name, expected, field_result.pattern_id)
        if reused is not None:
            updated, previous_rate, _ = self._apply_stats(reused.pattern_id, True)
            result.success = True
            result.learning_type = PatternLearningType.PATTERN_CORRECTED
            result.pattern = updated
            result.previous_accuracy = previous_rate
            result.new_accuracy = updated.success_rate
            result.explanation = (
                f"Existing pattern {updated.pattern_id} already yields the corrected value"
            )
            return result

        synthesized = self.synthesizer.synthesize(
            text,
            corrected_value,
            supplier=scope,
            field_name=field_name,
            value_type=value_type,
        )
        if synthesized is None:
            result.warnings.append(
                f"Could not derive a pattern for the corrected {field_name} value"
            )
            result.requires_review = True
            result.success = bool(field_result.pattern_id)
            result.explanation = "Correction recorded without a new pattern"
            return result

        self.store.create_pattern(synthesized)
        logger.info(
            "Learned pattern %s for %s/%s from correction",
            synthesized.pattern_id,
            scope,
            field_name,
        )
        self._publish(PATTERN_LEARNED, synthesized, source="correction")
        result.success = True
        result.learning_type = PatternLearningType.NEW_PATTERN
        result.pattern = synthesized
        result.new_accuracy = synthesized.success_rate
        result.explanation = f"New pattern learned for {scope}/{field_name}"
        return result

    def _reuse_existing(
        self,
        text: str,
        supplier: str,
        field_name: str,
        expected: Any,
        exclude_id: Optional[str],
    ) -> Optional[Pattern]:
        for pattern in self.store.list_active_patterns(supplier=supplier, field_name=field_name):
            if pattern.pattern_id == exclude_id:
                continue
            try:
                values = self.matcher.apply_pattern(pattern, text)
            except MalformedPatternError:
                continue
            if any(
                values_equal(pattern.value_type, value, expected, self.settings)
                for _, value, _ in values
            ):
                return pattern
        return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_pattern_accuracy(self, supplier: str, field_name: str) -> float:
        """Usage weighted success rate of the active patterns for the scope."""

        patterns = self.store.list_active_patterns(supplier=supplier, field_name=field_name)
        usage = sum(pattern.usage_count for pattern in patterns)
        success = sum(pattern.success_count for pattern in patterns)
        return _rate(success, usage)

    def get_patterns_for_supplier(
        self, supplier: str, *, include_inactive: bool = False
    ) -> List[Pattern]:
        patterns = self.store.list_patterns(supplier=supplier, include_inactive=include_inactive)
        return sorted(
            patterns,
            key=lambda item: (item.field_name, -item.success_rate, -item.usage_count, item.pattern_id),
        )

    def get_patterns_for_field(
        self, field_name: str, supplier: Optional[str] = None
    ) -> List[Pattern]:
        patterns = self.store.list_active_patterns(supplier=supplier, field_name=field_name)
        return sorted(
            patterns, key=lambda item: (-item.success_rate, -item.usage_count, item.pattern_id)
        )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------
    def add_pattern(
        self,
        supplier: str,
        field_name: str,
        regex: str,
        value_type: Optional[Union[ValueType, str]] = None,
        *,
        description: str = "",
        example_match: str = "",
        source: str = "manual",
    ) -> Pattern:
        """Validate and persist a hand-written pattern."""

        pattern = Pattern(
            pattern_id=new_pattern_id(),
            supplier=supplier or UNKNOWN_SUPPLIER,
            field_name=field_name,
            regex=regex,
            value_type=value_type or default_value_type(field_name),
            description=description,
            example_match=example_match,
            source=source,
        )
        self._validate_rule(pattern)
        self.store.create_pattern(pattern)
        logger.info("Added pattern %s for %s/%s", pattern.pattern_id, pattern.supplier, field_name)
        self._publish(PATTERN_LEARNED, pattern, source=source)
        return pattern

    def update_pattern_rule(
        self,
        pattern_id: str,
        regex: str,
        value_type: Optional[Union[ValueType, str]] = None,
    ) -> Pattern:
        current = self.store.get_pattern(pattern_id)
        candidate = current.copy(
            regex=regex,
            value_type=ValueType.coerce(value_type) if value_type else current.value_type,
            version=current.version + 1,
        )
        self._validate_rule(candidate)
        updated = self.store.update_rule(
            pattern_id, regex, ValueType.coerce(value_type) if value_type else None
        )
        self.matcher.invalidate(pattern_id)
        return updated

    def remove_pattern(self, pattern_id: str, deactivate_only: bool = True) -> bool:
        if deactivate_only:
            pattern = self.store.deactivate(pattern_id)
            self.matcher.invalidate(pattern_id)
            self._publish(PATTERN_DEACTIVATED, pattern, reason="removed")
            return True
        if not self.store.delete_pattern(pattern_id):
            raise PatternNotFoundError(pattern_id)
        self.matcher.invalidate(pattern_id)
        logger.info("Deleted pattern %s", pattern_id)
        return True

    def test_pattern(
        self,
        pattern: Union[Pattern, str],
        texts: Sequence[str],
        expected_values: Optional[Sequence[Optional[str]]] = None,
        *,
        value_type: Optional[Union[ValueType, str]] = None,
    ) -> PatternTestResult:
        """Trial-run a pattern against sample texts without touching the store."""

        if isinstance(pattern, str):
            pattern = Pattern(
                pattern_id=f"trial-{new_pattern_id()}",
                supplier=UNKNOWN_SUPPLIER,
                field_name="trial",
                regex=pattern,
                value_type=value_type or ValueType.TEXT,
            )
        samples = list(texts or [])
        result = PatternTestResult(total_tests=len(samples))

        try:
            compiled = self._validate_rule(pattern)
        except MalformedPatternError as exc:
            result.failure_examples = [
                PatternMatchExample(source_text=text, matched=False, error_message=str(exc))
                for text in samples
            ]
            result.recommendation = PatternRecommendation.REJECT
            result.recommendation_reason = f"Pattern does not compile: {exc}"
            return result

        for index, text in enumerate(samples):
            values = self.matcher.apply_pattern(pattern, text or "", compiled=compiled)
            expected = None
            if expected_values is not None and index < len(expected_values):
                expected = expected_values[index]
            if not values:
                result.failure_examples.append(
                    PatternMatchExample(source_text=text, matched=False, error_message="No match")
                )
                continue
            value = values[0][1]
            if expected is not None and not values_equal(
                pattern.value_type, value, expected, self.settings
            ):
                result.failure_examples.append(
                    PatternMatchExample(
                        source_text=text,
                        matched=True,
                        extracted_value=value,
                        error_message=f"Expected {expected!r}",
                    )
                )
                continue
            result.successful_matches += 1
            result.success_examples.append(
                PatternMatchExample(source_text=text, matched=True, extracted_value=value)
            )

        result.recommendation, result.recommendation_reason = _recommend(
            result.success_rate, result.total_tests
        )
        return result

    def get_learning_statistics(self) -> PatternLearningStatistics:
        patterns = self.store.list_patterns()
        stats = PatternLearningStatistics(corrections_processed=self.corrections_processed)
        if not patterns:
            return stats

        frame = pd.DataFrame(
            [
                {
                    "supplier": pattern.supplier,
                    "field_name": pattern.field_name,
                    "is_active": pattern.is_active,
                    "usage_count": pattern.usage_count,
                    "success_rate": pattern.success_rate,
                }
                for pattern in patterns
            ]
        )
        active = frame[frame["is_active"]]
        proven = active[active["usage_count"] > 0]

        stats.total_patterns = int(len(frame))
        stats.active_patterns = int(len(active))
        stats.suppliers_with_patterns = int(active["supplier"].nunique())
        stats.average_pattern_accuracy = (
            float(proven["success_rate"].mean()) if not proven.empty else 0.0
        )
        stats.patterns_by_supplier = {
            str(key): int(value) for key, value in active.groupby("supplier").size().items()
        }
        stats.patterns_by_field = {
            str(key): int(value) for key, value in active.groupby("field_name").size().items()
        }
        return stats

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------
    def export_patterns(self, supplier: Optional[str] = None) -> str:
        patterns = self.store.list_patterns(supplier=supplier)
        payload = {
            "format_version": EXPORT_FORMAT_VERSION,
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "supplier": supplier,
            "patterns": [pattern.to_dict() for pattern in patterns],
        }
        return json.dumps(payload, indent=2)

    def _find_existing(self, incoming: Pattern) -> Optional[Pattern]:
        try:
            return self.store.get_pattern(incoming.pattern_id)
        except PatternNotFoundError:
            pass
        for pattern in self.store.list_patterns(
            supplier=incoming.supplier, field_name=incoming.field_name
        ):
            if pattern.regex == incoming.regex:
                return pattern
        return None

    def _replace(self, existing: Pattern, incoming: Pattern) -> None:
        self.store.replace_pattern(incoming.copy(pattern_id=existing.pattern_id))
        self.matcher.invalidate(existing.pattern_id)

    def import_patterns(
        self,
        payload: Union[str, Dict[str, Any], Iterable[Dict[str, Any]]],
        merge_strategy: Union[PatternMergeStrategy, str] = PatternMergeStrategy.SKIP_EXISTING,
    ) -> PatternImportResult:
        """Import patterns exported by :meth:`export_patterns`."""

        strategy = PatternMergeStrategy(merge_strategy)
        result = PatternImportResult()
        try:
            data = json.loads(payload) if isinstance(payload, str) else payload
        except json.JSONDecodeError as exc:
            result.failed_patterns = 1
            result.errors.append(f"Invalid JSON payload: {exc}")
            return result

        if isinstance(data, dict):
            entries = data.get("patterns", [])
        elif isinstance(data, (list, tuple)):
            entries = list(data)
        else:
            entries = None
        if not isinstance(entries, list):
            result.failed_patterns = 1
            result.errors.append("Payload must be an object with a patterns list or a list of patterns")
            return result
        result.total_patterns = len(entries)

        for entry in entries:
            try:
                incoming = Pattern.from_dict(dict(entry))
                self._validate_rule(incoming)
            except (KeyError, TypeError, ValueError, MalformedPatternError) as exc:
                result.failed_patterns += 1
                label = entry.get("pattern_id") if isinstance(entry, dict) else None
                result.errors.append(f"Rejected pattern {label!r}: {exc}")
                continue

            existing = self._find_existing(incoming)
            if existing is None:
                self.store.create_pattern(incoming)
                result.imported_patterns += 1
                continue

            if strategy == PatternMergeStrategy.SKIP_EXISTING:
                result.skipped_patterns += 1
                result.messages.append(f"Skipped existing pattern {existing.pattern_id}")
            elif strategy == PatternMergeStrategy.OVERWRITE_EXISTING:
                self._replace(existing, incoming)
                result.imported_patterns += 1
                result.messages.append(f"Overwrote pattern {existing.pattern_id}")
            elif strategy == PatternMergeStrategy.MERGE_BY_ACCURACY:
                if incoming.success_rate > existing.success_rate:
                    self._replace(existing, incoming)
                    result.imported_patterns += 1
                    result.messages.append(
                        f"Replaced pattern {existing.pattern_id} with a more accurate import"
                    )
                else:
                    result.skipped_patterns += 1
                    result.messages.append(f"Kept more accurate pattern {existing.pattern_id}")
            else:
                versioned = incoming.copy(
                    pattern_id=new_pattern_id(), version=existing.version + 1
                )
                self.store.create_pattern(versioned)
                result.imported_patterns += 1
                result.messages.append(
                    f"Created {versioned.pattern_id} as a new version of {existing.pattern_id}"
                )

        logger.info(
            "Imported %d/%d patterns (%d skipped, %d failed) using %s",
            result.imported_patterns,
            result.total_patterns,
            result.skipped_patterns,
            result.failed_patterns,
            strategy.value,
        )
        return result


__all__ = ["PatternLearningService"]
