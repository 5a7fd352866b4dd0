from __future__ import annotations

"""Data model for pattern based field extraction.

Patterns are the only long-lived entities: they live in a pattern store
and are referenced from extraction results by id only.  Candidates,
field results and document outcomes are value objects created fresh for
every extraction call and owned by the caller afterwards.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

UNKNOWN_SUPPLIER = "UNKNOWN"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_timezone(value: datetime) -> datetime:
    """Normalise datetimes to timezone aware UTC values."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return _ensure_timezone(value)
    return _ensure_timezone(datetime.fromisoformat(str(value)))


def new_pattern_id() -> str:
    return uuid.uuid4().hex


def serialise_value(value: Any) -> Any:
    """Render a normalised value in a JSON friendly form."""

    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


class ValueType(str, Enum):
    """Closed set of value types a pattern may declare."""

    TEXT = "text"
    CURRENCY = "currency"
    DATE = "date"
    INTEGER = "integer"

    @classmethod
    def coerce(cls, value: Any) -> "ValueType":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        if not text:
            return cls.TEXT
        return cls(text)


class FieldName:
    """Canonical field taxonomy for bills, invoices and statements."""

    ACCOUNT_NUMBER = "account_number"
    AMOUNT_DUE = "amount_due"
    TOTAL_AMOUNT = "total_amount"
    DUE_DATE = "due_date"
    BILL_DATE = "bill_date"
    INVOICE_DATE = "invoice_date"
    BILLING_ADDRESS = "billing_address"
    INVOICE_NUMBER = "invoice_number"
    METER_NUMBER = "meter_number"
    PHONE_NUMBER = "phone_number"
    MONTHLY_CHARGES = "monthly_charges"


DEFAULT_VALUE_TYPES: Dict[str, ValueType] = {
    FieldName.ACCOUNT_NUMBER: ValueType.TEXT,
    FieldName.AMOUNT_DUE: ValueType.CURRENCY,
    FieldName.TOTAL_AMOUNT: ValueType.CURRENCY,
    FieldName.MONTHLY_CHARGES: ValueType.CURRENCY,
    FieldName.DUE_DATE: ValueType.DATE,
    FieldName.BILL_DATE: ValueType.DATE,
    FieldName.INVOICE_DATE: ValueType.DATE,
    FieldName.BILLING_ADDRESS: ValueType.TEXT,
    FieldName.INVOICE_NUMBER: ValueType.TEXT,
    FieldName.METER_NUMBER: ValueType.TEXT,
    FieldName.PHONE_NUMBER: ValueType.TEXT,
}


def default_value_type(field_name: str) -> ValueType:
    return DEFAULT_VALUE_TYPES.get(field_name, ValueType.TEXT)


class ExtractionMethod(str, Enum):
    PATTERN = "pattern"
    NONE = "none"


@dataclass
class Pattern:
    """A learned extraction rule for one supplier and one field."""

    pattern_id: str
    supplier: str
    field_name: str
    regex: str
    value_type: ValueType = ValueType.TEXT
    usage_count: int = 0
    success_count: int = 0
    min_confidence: Optional[float] = None
    max_confidence: Optional[float] = None
    last_used: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    is_active: bool = True
    version: int = 1
    description: str = ""
    example_match: str = ""
    source: str = "manual"

    def __post_init__(self) -> None:
        self.value_type = ValueType.coerce(self.value_type)
        self.supplier = str(self.supplier or UNKNOWN_SUPPLIER).strip() or UNKNOWN_SUPPLIER
        if self.usage_count < 0 or self.success_count < 0:
            raise ValueError("usage and success counts must be non-negative")
        if self.success_count > self.usage_count:
            raise ValueError("success count cannot exceed usage count")

    @property
    def success_rate(self) -> float:
        if self.usage_count <= 0:
            return 0.0
        return min(1.0, self.success_count / self.usage_count)

    @property
    def is_generic(self) -> bool:
        return self.supplier == UNKNOWN_SUPPLIER

    def is_proven(self, min_sample_size: int) -> bool:
        return self.usage_count >= min_sample_size

    def copy(self, **changes: Any) -> "Pattern":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern_id": self.pattern_id,
            "supplier": self.supplier,
            "field_name": self.field_name,
            "regex": self.regex,
            "value_type": self.value_type.value,
            "usage_count": self.usage_count,
            "success_count": self.success_count,
            "success_rate": round(self.success_rate, 6),
            "min_confidence": self.min_confidence,
            "max_confidence": self.max_confidence,
            "last_used": self.last_used.isoformat() if self.last_used else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "is_active": self.is_active,
            "version": self.version,
            "description": self.description,
            "example_match": self.example_match,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Pattern":
        created_at = _parse_timestamp(payload.get("created_at")) or _utcnow()
        return cls(
            pattern_id=str(payload.get("pattern_id") or new_pattern_id()),
            supplier=str(payload.get("supplier") or UNKNOWN_SUPPLIER),
            field_name=str(payload["field_name"]),
            regex=str(payload["regex"]),
            value_type=ValueType.coerce(payload.get("value_type")),
            usage_count=int(payload.get("usage_count") or 0),
            success_count=int(payload.get("success_count") or 0),
            min_confidence=payload.get("min_confidence"),
            max_confidence=payload.get("max_confidence"),
            last_used=_parse_timestamp(payload.get("last_used")),
            created_at=created_at,
            is_active=bool(payload.get("is_active", True)),
            version=int(payload.get("version") or 1),
            description=str(payload.get("description") or ""),
            example_match=str(payload.get("example_match") or ""),
            source=str(payload.get("source") or "manual"),
        )


@dataclass(frozen=True)
class ExtractionCandidate:
    """Ephemeral result of applying one pattern to a text."""

    field_name: str
    pattern_id: str
    supplier: str
    raw_value: str
    value: Any
    confidence: float
    span: Tuple[int, int]
    usage_count: int = 0
    proven: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field_name": self.field_name,
            "pattern_id": self.pattern_id,
            "supplier": self.supplier,
            "raw_value": self.raw_value,
            "value": serialise_value(self.value),
            "confidence": round(self.confidence, 6),
            "span": list(self.span),
            "proven": self.proven,
        }


@dataclass
class FieldExtractionResult:
    """The accepted candidate for one field of one document, or not found."""

    field_name: str
    value: Any = None
    raw_value: Optional[str] = None
    confidence: float = 0.0
    method: ExtractionMethod = ExtractionMethod.NONE
    pattern_id: Optional[str] = None
    supplier: Optional[str] = None
    span: Optional[Tuple[int, int]] = None
    rejected_candidates: int = 0

    @property
    def found(self) -> bool:
        return self.method == ExtractionMethod.PATTERN and self.pattern_id is not None

    @classmethod
    def not_found(cls, field_name: str, rejected_candidates: int = 0) -> "FieldExtractionResult":
        return cls(field_name=field_name, rejected_candidates=rejected_candidates)

    @classmethod
    def from_candidate(
        cls, candidate: ExtractionCandidate, rejected_candidates: int = 0
    ) -> "FieldExtractionResult":
        return cls(
            field_name=candidate.field_name,
            value=candidate.value,
            raw_value=candidate.raw_value,
            confidence=candidate.confidence,
            method=ExtractionMethod.PATTERN,
            pattern_id=candidate.pattern_id,
            supplier=candidate.supplier,
            span=candidate.span,
            rejected_candidates=rejected_candidates,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field_name": self.field_name,
            "value": serialise_value(self.value),
            "raw_value": self.raw_value,
            "confidence": round(self.confidence, 6),
            "method": self.method.value,
            "pattern_id": self.pattern_id,
            "supplier": self.supplier,
            "span": list(self.span) if self.span else None,
            "found": self.found,
        }


@dataclass
class DocumentExtractionOutcome:
    """Aggregate extraction result for one document."""

    supplier: str
    supplier_candidates: List[str] = field(default_factory=list)
    fields: List[FieldExtractionResult] = field(default_factory=list)
    overall_confidence: float = 0.0
    warnings: List[str] = field(default_factory=list)

    @property
    def missing_fields(self) -> List[str]:
        return [result.field_name for result in self.fields if not result.found]

    @property
    def has_missing_fields(self) -> bool:
        return any(not result.found for result in self.fields)

    def field(self, field_name: str) -> Optional[FieldExtractionResult]:
        for result in self.fields:
            if result.field_name == field_name:
                return result
        return None

    def values(self) -> Dict[str, Any]:
        return {result.field_name: result.value for result in self.fields if result.found}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "supplier": self.supplier,
            "supplier_candidates": list(self.supplier_candidates),
            "fields": [result.to_dict() for result in self.fields],
            "overall_confidence": round(self.overall_confidence, 6),
            "missing_fields": self.missing_fields,
            "warnings": list(self.warnings),
        }


# ----------------------------------------------------------------------
# Learning reports
# ----------------------------------------------------------------------


class PatternLearningType(str, Enum):
    NEW_PATTERN = "new_pattern"
    PATTERN_REINFORCED = "pattern_reinforced"
    PATTERN_CORRECTED = "pattern_corrected"
    PATTERN_DEACTIVATED = "pattern_deactivated"


@dataclass
class PatternLearningResult:
    success: bool
    learning_type: Optional[PatternLearningType] = None
    pattern: Optional[Pattern] = None
    previous_accuracy: float = 0.0
    new_accuracy: float = 0.0
    explanation: str = ""
    warnings: List[str] = field(default_factory=list)
    requires_review: bool = False
    deactivated_pattern_ids: List[str] = field(default_factory=list)

    @property
    def accuracy_improvement(self) -> float:
        return self.new_accuracy - self.previous_accuracy

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "learning_type": self.learning_type.value if self.learning_type else None,
            "pattern": self.pattern.to_dict() if self.pattern else None,
            "previous_accuracy": round(self.previous_accuracy, 6),
            "new_accuracy": round(self.new_accuracy, 6),
            "accuracy_improvement": round(self.accuracy_improvement, 6),
            "explanation": self.explanation,
            "warnings": list(self.warnings),
            "requires_review": self.requires_review,
            "deactivated_pattern_ids": list(self.deactivated_pattern_ids),
        }


class PatternRecommendation(str, Enum):
    APPROVE = "approve"
    REVIEW = "review"
    IMPROVE = "improve"
    REJECT = "reject"


@dataclass
class PatternMatchExample:
    source_text: str
    matched: bool
    extracted_value: Any = None
    error_message: Optional[str] = None


@dataclass
class PatternTestResult:
    total_tests: int = 0
    successful_matches: int = 0
    success_examples: List[PatternMatchExample] = field(default_factory=list)
    failure_examples: List[PatternMatchExample] = field(default_factory=list)
    recommendation: PatternRecommendation = PatternRecommendation.REVIEW
    recommendation_reason: str = ""

    @property
    def success_rate(self) -> float:
        return self.successful_matches / self.total_tests if self.total_tests else 0.0


@dataclass
class PatternLearningStatistics:
    total_patterns: int = 0
    active_patterns: int = 0
    suppliers_with_patterns: int = 0
    average_pattern_accuracy: float = 0.0
    corrections_processed: int = 0
    patterns_by_supplier: Dict[str, int] = field(default_factory=dict)
    patterns_by_field: Dict[str, int] = field(default_factory=dict)
    generated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_patterns": self.total_patterns,
            "active_patterns": self.active_patterns,
            "suppliers_with_patterns": self.suppliers_with_patterns,
            "average_pattern_accuracy": round(self.average_pattern_accuracy, 6),
            "corrections_processed": self.corrections_processed,
            "patterns_by_supplier": dict(self.patterns_by_supplier),
            "patterns_by_field": dict(self.patterns_by_field),
            "generated_at": self.generated_at.isoformat(),
        }


class PatternMergeStrategy(str, Enum):
    SKIP_EXISTING = "skip_existing"
    OVERWRITE_EXISTING = "overwrite_existing"
    MERGE_BY_ACCURACY = "merge_by_accuracy"
    CREATE_NEW_VERSION = "create_new_version"


@dataclass
class PatternImportResult:
    total_patterns: int = 0
    imported_patterns: int = 0
    skipped_patterns: int = 0
    failed_patterns: int = 0
    messages: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed_patterns == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "total_patterns": self.total_patterns,
            "imported_patterns": self.imported_patterns,
            "skipped_patterns": self.skipped_patterns,
            "failed_patterns": self.failed_patterns,
            "messages": list(self.messages),
            "errors": list(self.errors),
        }


__all__ = [
    "DEFAULT_VALUE_TYPES",
    "DocumentExtractionOutcome",
    "ExtractionCandidate",
    "ExtractionMethod",
    "FieldExtractionResult",
    "FieldName",
    "Pattern",
    "PatternImportResult",
    "PatternLearningResult",
    "PatternLearningStatistics",
    "PatternLearningType",
    "PatternMatchExample",
    "PatternMergeStrategy",
    "PatternRecommendation",
    "PatternTestResult",
    "UNKNOWN_SUPPLIER",
    "ValueType",
    "default_value_type",
    "new_pattern_id",
    "serialise_value",
]
