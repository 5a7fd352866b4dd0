import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

sys.path.append(str(Path(__file__).resolve().parents[1]))

from api.routers.extraction import router as extraction_router
from engines.pattern_matcher import PatternMatcher
from engines.pattern_synthesizer import PatternSynthesizer
from engines.supplier_resolver import SupplierResolver
from models.extraction import Pattern
from repositories.pattern_store import InMemoryPatternStore
from services.event_bus import EventBus
from services.field_extraction_service import FieldExtractionService
from services.pattern_learning_service import PatternLearningService


def _settings():
    return SimpleNamespace(
        acceptance_threshold=0.5,
        min_sample_size=5,
        deactivation_floor=0.3,
        success_weight=0.9,
        supplier_bonus=0.1,
        unproven_weight=0.6,
        ambiguity_penalty=0.15,
        max_ambiguity_penalty=0.45,
        include_generic_patterns=True,
        date_dayfirst=True,
        date_min_year=1900,
        date_max_year=2100,
        synthesis_context_tokens=4,
        synthesis_max_context_chars=40,
        batch_max_workers=2,
    )


@pytest.fixture
def store():
    return InMemoryPatternStore(
        [
            Pattern(
                pattern_id="wrong",
                supplier="Acme",
                field_name="account_number",
                regex=r"Ref:\s*([\d-]+)",
                usage_count=10,
                success_count=9,
            )
        ]
    )


@pytest.fixture
def client(store):
    settings = _settings()
    resolver = SupplierResolver({"Acme": {"acme"}})
    matcher = PatternMatcher(store, settings)
    app = FastAPI()
    app.include_router(extraction_router)
    app.state.extraction_service = FieldExtractionService(store, resolver, matcher, settings)
    app.state.learning_service = PatternLearningService(
        store,
        matcher=matcher,
        resolver=resolver,
        synthesizer=PatternSynthesizer(settings),
        settings=settings,
        event_bus=EventBus(),
    )
    return TestClient(app)


def test_services_missing_returns_503():
    app = FastAPI()
    app.include_router(extraction_router)
    client = TestClient(app)

    assert client.post("/extraction/extract", json={"text": "x"}).status_code == 503
    assert client.get("/extraction/statistics").status_code == 503


def test_extract_then_correct_then_extract_again(client):
    text = "ACME\nAccount No: 123-456-789\nRef: 555-000-111"

    response = client.post("/extraction/extract", json={"text": text, "fields": ["account_number"]})
    assert response.status_code == 200
    body = response.json()
    assert body["supplier"] == "Acme"
    field = body["fields"][0]
    assert field["value"] == "555-000-111"
    assert field["found"] is True

    feedback = client.post(
        "/extraction/feedback",
        json={"field_result": field, "outcome": "123-456-789", "text": text},
    )
    assert feedback.status_code == 200
    learned = feedback.json()
    assert learned["learning_type"] == "new_pattern"
    assert learned["pattern"]["supplier"] == "Acme"

    again = client.post(
        "/extraction/extract",
        json={"text": "acme\nAccount No: 987-654-321", "fields": ["account_number"]},
    )
    assert again.json()["fields"][0]["value"] == "987-654-321"

    listing = client.get("/extraction/patterns", params={"supplier": "Acme"}).json()
    assert listing["count"] == 2


def test_confirmation_feedback_reinforces(client, store):
    response = client.post(
        "/extraction/feedback",
        json={
            "field_result": {"field_name": "account_number", "value": "1", "pattern_id": "wrong"},
            "outcome": True,
        },
    )
    assert response.status_code == 200
    assert response.json()["learning_type"] == "pattern_reinforced"
    assert store.get_pattern("wrong").usage_count == 11


def test_feedback_for_unknown_pattern_returns_404(client):
    response = client.post(
        "/extraction/feedback",
        json={
            "field_result": {"field_name": "account_number", "value": "1", "pattern_id": "ghost"},
            "outcome": False,
        },
    )
    assert response.status_code == 404


def test_create_pattern_and_reject_malformed_rule(client):
    created = client.post(
        "/extraction/patterns",
        json={"supplier": "Acme", "field_name": "amount_due", "regex": r"Total:\s*RM\s*([\d.]+)"},
    )
    assert created.status_code == 201
    assert created.json()["value_type"] == "currency"

    malformed = client.post(
        "/extraction/patterns",
        json={"supplier": "Acme", "field_name": "amount_due", "regex": r"Total:\s*(\d+"},
    )
    assert malformed.status_code == 422


def test_delete_pattern_endpoints(client, store):
    response = client.delete("/extraction/patterns/wrong")
    assert response.json() == {"pattern_id": "wrong", "deactivated": True, "deleted": False}
    assert not store.get_pattern("wrong").is_active

    assert client.delete("/extraction/patterns/wrong", params={"deactivate_only": False}).status_code == 200
    assert client.delete("/extraction/patterns/wrong", params={"deactivate_only": False}).status_code == 404


def test_trial_run_endpoint(client):
    response = client.post(
        "/extraction/patterns/test",
        json={"regex": r"No:\s*(\d+)", "texts": ["No: 1", "No: 2", "nothing"]},
    )
    body = response.json()
    assert body["successful_matches"] == 2
    assert body["recommendation"] == "improve"
    assert body["failures"][0]["error"] == "No match"


def test_trial_run_with_malformed_rule_is_rejected(client):
    response = client.post(
        "/extraction/patterns/test",
        json={"regex": r"No:\s*(\d+", "texts": ["No: 1", "No: 2"]},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["recommendation"] == "reject"
    assert "does not compile" in body["recommendation_reason"]
    assert len(body["failures"]) == 2


def test_statistics_export_and_import(client):
    stats = client.get("/extraction/statistics").json()
    assert stats["total_patterns"] == 1

    exported = client.get("/extraction/patterns/export")
    assert exported.headers["content-type"].startswith("application/json")

    imported = client.post(
        "/extraction/patterns/import",
        json={"payload": exported.text, "merge_strategy": "create_new_version"},
    )
    assert imported.status_code == 200
    assert imported.json()["imported_patterns"] == 1
    assert client.get("/extraction/statistics").json()["total_patterns"] == 2
