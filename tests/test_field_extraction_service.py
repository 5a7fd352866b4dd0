import sys
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from engines.errors import StoreUnavailableError
from engines.pattern_matcher import compute_confidence
from engines.supplier_resolver import SupplierResolver
from models.extraction import Pattern, ValueType
from repositories.pattern_store import InMemoryPatternStore
from services.field_extraction_service import FieldExtractionService


def _settings(**overrides):
    values = dict(
        acceptance_threshold=0.5,
        min_sample_size=5,
        success_weight=0.9,
        supplier_bonus=0.1,
        unproven_weight=0.6,
        ambiguity_penalty=0.15,
        max_ambiguity_penalty=0.45,
        include_generic_patterns=True,
        date_dayfirst=True,
        date_min_year=1900,
        date_max_year=2100,
        batch_max_workers=4,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def _patterns():
    return [
        Pattern(
            pattern_id="acme-account",
            supplier="Acme",
            field_name="account_number",
            regex=r"Account No:\s*([\d-]+)",
            usage_count=10,
            success_count=9,
        ),
        Pattern(
            pattern_id="acme-amount",
            supplier="Acme",
            field_name="amount_due",
            regex=r"Amount Due:\s*RM\s*([\d,.]+)",
            value_type=ValueType.CURRENCY,
            usage_count=20,
            success_count=20,
        ),
        Pattern(
            pattern_id="tnb-meter",
            supplier="TNB Berhad",
            field_name="meter_number",
            regex=r"Meter No:\s*(\d+)",
            usage_count=10,
            success_count=8,
        ),
    ]


def _service(store=None, **overrides):
    store = store or InMemoryPatternStore(_patterns())
    resolver = SupplierResolver({"Acme": {"acme"}, "TNB Berhad": {"tnb"}})
    return FieldExtractionService(store, resolver, settings=_settings(**overrides))


def test_account_number_scenario_end_to_end():
    service = _service()

    outcome = service.extract_fields(
        "ACME Corp\nAccount No: 123-456-789\nAmount Due: RM 1,200.00",
        ["account_number", "amount_due"],
    )

    assert outcome.supplier == "Acme"
    account = outcome.field("account_number")
    assert account.found
    assert account.value == "123-456-789"
    assert account.pattern_id == "acme-account"
    assert account.confidence == pytest.approx(0.91)
    assert outcome.field("amount_due").value == Decimal("1200.00")
    assert outcome.overall_confidence == pytest.approx((0.91 + 1.0) / 2)
    assert outcome.missing_fields == []


def test_acceptance_threshold_is_inclusive():
    exact = compute_confidence(0.9, 10, supplier_exact=True, settings=_settings())
    text = "acme\nAccount No: 42"

    accepted = _service(acceptance_threshold=exact).extract_fields(text, ["account_number"])
    assert accepted.field("account_number").found

    rejected = _service(acceptance_threshold=min(1.0, exact + 1e-6)).extract_fields(
        text, ["account_number"]
    )
    result = rejected.field("account_number")
    assert not result.found
    assert result.value is None
    assert result.rejected_candidates == 1
    assert rejected.overall_confidence == 0.0
    assert rejected.has_missing_fields


def test_missing_fields_do_not_drag_overall_confidence():
    outcome = _service().extract_fields(
        "acme\nAccount No: 42", ["account_number", "due_date", "account_number"]
    )

    assert [result.field_name for result in outcome.fields] == ["account_number", "due_date"]
    assert outcome.missing_fields == ["due_date"]
    assert outcome.overall_confidence == pytest.approx(outcome.field("account_number").confidence)


def test_unknown_supplier_tries_every_supplier():
    outcome = _service().extract_fields("Meter No: 5551234\nAccount No: 9", ["meter_number", "account_number"])

    assert outcome.supplier == "UNKNOWN"
    assert outcome.field("meter_number").value == "5551234"
    assert outcome.field("meter_number").confidence == pytest.approx(0.72)
    assert outcome.field("account_number").pattern_id == "acme-account"


def test_supplier_hint_takes_precedence():
    outcome = _service().extract_fields("Meter No: 5551234", ["meter_number"], supplier_hint="TNB Berhad")
    assert outcome.supplier == "TNB Berhad"
    assert outcome.field("meter_number").confidence == pytest.approx(0.82)


def test_empty_text_reports_every_field_missing():
    outcome = _service().extract_fields("   ", ["account_number", "amount_due"])
    assert outcome.missing_fields == ["account_number", "amount_due"]
    assert outcome.overall_confidence == 0.0
    assert outcome.warnings == ["Document text is empty"]


def test_malformed_pattern_surfaces_as_warning():
    store = InMemoryPatternStore(_patterns())
    store.create_pattern(
        Pattern(pattern_id="broken", supplier="Acme", field_name="account_number", regex="(unclosed")
    )

    outcome = _service(store).extract_fields("acme Account No: 1", ["account_number"])

    assert outcome.field("account_number").found
    assert len(outcome.warnings) == 1
    assert "broken" in outcome.warnings[0]


class _CountingStore(InMemoryPatternStore):
    def __init__(self, patterns):
        super().__init__(patterns)
        self.list_calls = 0

    def list_patterns(self, *args, **kwargs):
        self.list_calls += 1
        return super().list_patterns(*args, **kwargs)


def test_one_store_snapshot_per_document():
    store = _CountingStore(_patterns())
    service = _service(store)

    service.extract_fields("acme Account No: 1", ["account_number", "amount_due", "meter_number"])

    assert store.list_calls == 1


class _BrokenStore(InMemoryPatternStore):
    def list_patterns(self, *args, **kwargs):
        raise StoreUnavailableError("database offline")


def test_store_failures_propagate():
    with pytest.raises(StoreUnavailableError):
        _service(_BrokenStore()).extract_fields("acme Account No: 1", ["account_number"])


def test_extract_batch_preserves_document_order():
    service = _service()
    texts = [f"acme\nAccount No: {index}" for index in range(12)]

    outcomes = service.extract_batch(texts, ["account_number"], max_workers=4)

    assert [o.field("account_number").value for o in outcomes] == [str(i) for i in range(12)]
    assert service.extract_batch([], ["account_number"]) == []


def test_preview_candidates_lists_all_ranked_matches():
    store = InMemoryPatternStore(_patterns())
    store.create_pattern(
        Pattern(
            pattern_id="acme-account-loose",
            supplier="Acme",
            field_name="account_number",
            regex=r"No:\s*(\d+)",
            usage_count=2,
            success_count=1,
        )
    )

    candidates = _service(store).preview_candidates("acme Account No: 77", "account_number")

    assert [c.pattern_id for c in candidates] == ["acme-account", "acme-account-loose"]
    assert candidates[0].confidence > candidates[1].confidence


def test_outcome_serialises_to_plain_types():
    payload = _service().extract_fields(
        "acme Amount Due: RM 12.50", ["amount_due"]
    ).to_dict()

    assert payload["fields"][0]["value"] == "12.50"
    assert payload["fields"][0]["method"] == "pattern"
    assert payload["supplier"] == "Acme"
