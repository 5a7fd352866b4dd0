import logging
import sys
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from engines.errors import MalformedPatternError
from engines.pattern_matcher import PatternMatcher, compute_confidence
from models.extraction import Pattern, ValueType
from repositories.pattern_store import InMemoryPatternStore


def _settings(**overrides):
    values = dict(
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
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def _pattern(pattern_id, regex, supplier="Acme", field_name="account_number", usage=10, success=9, **kwargs):
    return Pattern(
        pattern_id=pattern_id,
        supplier=supplier,
        field_name=field_name,
        regex=regex,
        usage_count=usage,
        success_count=success,
        **kwargs,
    )


def _matcher(*patterns, **overrides):
    store = InMemoryPatternStore(patterns)
    return PatternMatcher(store, _settings(**overrides)), store


def test_account_number_scenario():
    matcher, _ = _matcher(_pattern("acct", r"Account No:\s*([\d-]+)"))

    candidates = matcher.match("Account No: 123-456-789", "account_number", ["Acme"])

    assert len(candidates) == 1
    top = candidates[0]
    assert top.value == "123-456-789"
    assert top.pattern_id == "acct"
    assert top.span == (12, 23)
    assert top.confidence == pytest.approx(0.91)


def test_confidence_is_monotone_in_success_rate():
    scores = [
        compute_confidence(rate, 10, supplier_exact=True, settings=_settings())
        for rate in (0.0, 0.25, 0.5, 0.75, 1.0)
    ]
    assert scores == sorted(scores)
    assert len(set(scores)) == len(scores)


def test_unproven_pattern_ranks_below_proven_pattern():
    matcher, _ = _matcher(
        _pattern("proven", r"Account No:\s*(\d+)", usage=10, success=3),
        _pattern("unproven", r"Account No:\s*(\d+)", usage=0, success=0),
    )

    candidates = matcher.match("Account No: 42", "account_number", ["Acme"])

    assert [c.pattern_id for c in candidates] == ["proven", "unproven"]
    assert candidates[1].confidence == pytest.approx(0.1)


def test_ordering_is_deterministic_with_id_tie_break():
    matcher, _ = _matcher(
        _pattern("b", r"No:\s*(\d+)"),
        _pattern("a", r"Account No:\s*(\d+)"),
        _pattern("c", r"Account No:\s*(\d+)", usage=20, success=18),
    )
    text = "Account No: 42"

    first = matcher.match(text, "account_number", ["Acme"])
    second = matcher.match(text, "account_number", ["Acme"])

    assert [c.pattern_id for c in first] == ["c", "a", "b"]
    assert first == second


def test_empty_text_and_no_patterns_yield_nothing():
    matcher, _ = _matcher(_pattern("acct", r"Account No:\s*(\d+)"))
    assert matcher.match("", "account_number", ["Acme"]) == []
    assert matcher.match("   \n", "account_number", ["Acme"]) == []
    assert matcher.match("Account No: 1", "due_date", ["Acme"]) == []


def test_inactive_patterns_are_excluded():
    matcher, store = _matcher(_pattern("acct", r"Account No:\s*(\d+)"))
    store.deactivate("acct")
    assert matcher.match("Account No: 1", "account_number", ["Acme"]) == []


def test_malformed_pattern_fails_closed_with_warning(caplog):
    matcher, _ = _matcher(
        _pattern("broken", r"Account No:\s*(\d+"),
        _pattern("nogroup", r"Account No:\s*\d+"),
        _pattern("good", r"Account No:\s*(\d+)"),
    )
    warnings = []

    with caplog.at_level(logging.WARNING):
        first = matcher.match("Account No: 7", "account_number", ["Acme"], warnings=warnings)
        matcher.match("Account No: 7", "account_number", ["Acme"])

    assert [c.pattern_id for c in first] == ["good"]
    assert any("broken" in message for message in warnings)
    assert any("nogroup" in message for message in warnings)
    broken_logs = [r for r in caplog.records if "broken" in r.getMessage()]
    assert len(broken_logs) == 1


def test_compile_raises_for_malformed_rule():
    matcher, _ = _matcher()
    with pytest.raises(MalformedPatternError):
        matcher.compile(_pattern("x", "([a-"))


def test_rule_edit_invalidates_compiled_form():
    matcher, store = _matcher(_pattern("acct", r"Account No:\s*(\d+)"))
    assert matcher.match("Acc: 55", "account_number", ["Acme"]) == []

    store.update_rule("acct", r"Acc:\s*(\d+)")

    candidates = matcher.match("Acc: 55", "account_number", ["Acme"])
    assert [c.value for c in candidates] == ["55"]


def test_unknown_candidates_try_every_supplier():
    matcher, _ = _matcher(
        _pattern("tnb", r"Account No:\s*(\d+)", supplier="TNB Berhad"),
        _pattern("maxis", r"Acct:\s*(\d+)", supplier="Maxis"),
    )

    candidates = matcher.match("Account No: 1\nAcct: 2", "account_number", ["UNKNOWN"])

    assert {c.pattern_id for c in candidates} == {"tnb", "maxis"}
    assert all(c.confidence == pytest.approx(0.81) for c in candidates)


def test_generic_patterns_follow_resolved_supplier_patterns():
    generic = _pattern("generic", r"\b(\d{6})\b", supplier="UNKNOWN", usage=10, success=10)
    scoped = _pattern("scoped", r"Account No:\s*(\d+)", supplier="Acme")
    other = _pattern("other", r"Account No:\s*(\d+)", supplier="Other")
    matcher, _ = _matcher(generic, scoped, other)

    selected = matcher.collect_patterns("account_number", ["Acme"])
    assert [p.pattern_id for p in selected] == ["scoped", "generic"]

    matcher_no_generic, _ = _matcher(generic, scoped, other, include_generic_patterns=False)
    selected = matcher_no_generic.collect_patterns("account_number", ["Acme"])
    assert [p.pattern_id for p in selected] == ["scoped"]


def test_repeated_value_collapses_and_distinct_values_are_penalised():
    matcher, _ = _matcher(_pattern("amt", r"RM\s*([\d.]+)", field_name="amount_due", value_type=ValueType.CURRENCY))

    repeated = matcher.match("RM 10.00 ... RM 10.00", "amount_due", ["Acme"])
    assert len(repeated) == 1
    assert repeated[0].value == Decimal("10.00")
    assert repeated[0].span == (3, 8)

    ambiguous = matcher.match("RM 10.00 ... RM 12.00", "amount_due", ["Acme"])
    assert len(ambiguous) == 2
    assert ambiguous[0].confidence == pytest.approx(repeated[0].confidence * 0.85)


def test_normalisation_failure_discards_only_that_match():
    matcher, _ = _matcher(
        _pattern("due", r"Due:\s*(\S+)", field_name="due_date", value_type=ValueType.DATE)
    )

    candidates = matcher.match("Due: soon\nDue: 15/03/2024", "due_date", ["Acme"])

    assert [c.raw_value for c in candidates] == ["15/03/2024"]


def test_named_value_group_takes_precedence():
    matcher, _ = _matcher(_pattern("named", r"(Account) No:\s*(?P<value>\d+)"))
    candidates = matcher.match("Account No: 99", "account_number", ["Acme"])
    assert [c.value for c in candidates] == ["99"]


def test_young_pattern_never_outranks_proven_pattern():
    matcher, _ = _matcher(
        _pattern("young", r"Account No:\s*(\d+)", usage=2, success=2),
        _pattern("established", r"Account No:\s*(\d+)", usage=20, success=8),
    )

    candidates = matcher.match("Account No: 42", "account_number", ["Acme"])

    assert [c.pattern_id for c in candidates] == ["established", "young"]
    assert candidates[0].proven is True
    assert candidates[1].proven is False
    assert candidates[1].confidence > candidates[0].confidence


def test_synthesised_pattern_ranks_below_weaker_proven_pattern():
    matcher, _ = _matcher(
        _pattern("learned", r"Account No:\s*(\d+)", usage=1, success=1, source="correction"),
        _pattern("steady", r"Account No:\s*(\d+)", usage=10, success=4),
    )

    candidates = matcher.match("Account No: 42", "account_number", ["Acme"])

    assert [c.pattern_id for c in candidates] == ["steady", "learned"]
    assert candidates[1].confidence == pytest.approx(0.712)


def test_proven_pattern_with_no_successes_is_not_tiered_first():
    matcher, _ = _matcher(
        _pattern("failing", r"Account No:\s*(\d+)", usage=10, success=0),
        _pattern("young", r"Account No:\s*(\d+)", usage=1, success=1),
    )

    candidates = matcher.match("Account No: 42", "account_number", ["Acme"])

    assert [c.pattern_id for c in candidates] == ["young", "failing"]
    assert not any(c.proven for c in candidates)


def test_compiled_cache_keeps_one_entry_per_pattern():
    matcher, store = _matcher(_pattern("acct", r"Account No:\s*(\d+)"))
    matcher.match("Account No: 1", "account_number", ["Acme"])
    assert matcher.cache_size == 1

    for rule in (r"Acc:\s*(\d+)", r"Acct:\s*(\d+)", r"A/C:\s*(\d+)"):
        store.update_rule("acct", rule)
        matcher.match("Acc: 1", "account_number", ["Acme"])

    assert matcher.cache_size == 1


def test_validate_does_not_populate_cache():
    matcher, _ = _matcher()

    compiled = matcher.validate(_pattern("trial", r"No:\s*(\d+)"))
    assert compiled.groups == 1
    with pytest.raises(MalformedPatternError):
        matcher.validate(_pattern("trial", r"No:\s*(\d+"))

    assert matcher.cache_size == 0
