"""Extraction, feedback and pattern administration endpoints."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field, field_validator

from engines.errors import (
    ConcurrentUpdateConflict,
    ExtractionEngineError,
    MalformedPatternError,
    PatternNotFoundError,
    StoreUnavailableError,
)
from models.extraction import (
    ExtractionMethod,
    FieldExtractionResult,
    PatternMergeStrategy,
    ValueType,
)
from services.field_extraction_service import FieldExtractionService
from services.pattern_learning_service import PatternLearningService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/extraction", tags=["Extraction"])


def get_extraction_service(request: Request) -> FieldExtractionService:
    service = getattr(request.app.state, "extraction_service", None)
    if not service:
        raise HTTPException(status_code=503, detail="Extraction service is not available.")
    return service


def get_learning_service(request: Request) -> PatternLearningService:
    service = getattr(request.app.state, "learning_service", None)
    if not service:
        raise HTTPException(status_code=503, detail="Learning service is not available.")
    return service


def _http_error(exc: ExtractionEngineError) -> HTTPException:
    if isinstance(exc, PatternNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, MalformedPatternError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, ConcurrentUpdateConflict):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, StoreUnavailableError):
        return HTTPException(status_code=503, detail=str(exc))
    logger.exception("Unhandled extraction engine error")
    return HTTPException(status_code=500, detail=str(exc))


class ExtractRequest(BaseModel):
    text: str = Field(..., description="Raw document text produced by OCR or a text layer.")
    fields: Optional[List[str]] = Field(
        default=None, description="Fields to extract; defaults to the full field taxonomy."
    )
    supplier_hint: Optional[str] = None


class FieldResultPayload(BaseModel):
    field_name: str
    value: Optional[Any] = None
    raw_value: Optional[str] = None
    confidence: float = 0.0
    pattern_id: Optional[str] = None
    supplier: Optional[str] = None

    def to_result(self) -> FieldExtractionResult:
        return FieldExtractionResult(
            field_name=self.field_name,
            value=self.value,
            raw_value=self.raw_value,
            confidence=self.confidence,
            method=ExtractionMethod.PATTERN if self.pattern_id else ExtractionMethod.NONE,
            pattern_id=self.pattern_id,
            supplier=self.supplier,
        )


class FeedbackRequest(BaseModel):
    field_result: FieldResultPayload
    outcome: Union[bool, str] = Field(
        ..., description="true/false for confirmed/rejected values, or the corrected value."
    )
    text: Optional[str] = None
    supplier: Optional[str] = None


class PatternCreateRequest(BaseModel):
    supplier: str = "UNKNOWN"
    field_name: str
    regex: str
    value_type: Optional[str] = None
    description: str = ""
    example_match: str = ""

    @field_validator("value_type", mode="before")
    @classmethod
    def _check_value_type(cls, value: Any) -> Optional[str]:
        if value in (None, ""):
            return None
        return ValueType.coerce(value).value


class PatternTestRequest(BaseModel):
    regex: str
    texts: List[str]
    expected_values: Optional[List[Optional[str]]] = None
    value_type: Optional[str] = None


class PatternImportRequest(BaseModel):
    payload: Union[Dict[str, Any], List[Dict[str, Any]], str]
    merge_strategy: PatternMergeStrategy = PatternMergeStrategy.SKIP_EXISTING


@router.post("/extract")
def extract(
    req: ExtractRequest, service: FieldExtractionService = Depends(get_extraction_service)
) -> Dict[str, Any]:
    try:
        outcome = service.extract_fields(req.text, req.fields, supplier_hint=req.supplier_hint)
    except ExtractionEngineError as exc:
        raise _http_error(exc) from exc
    return outcome.to_dict()


@router.post("/feedback")
def feedback(
    req: FeedbackRequest, service: PatternLearningService = Depends(get_learning_service)
) -> Dict[str, Any]:
    try:
        result = service.record_outcome(
            req.field_result.to_result(), req.outcome, text=req.text, supplier=req.supplier
        )
    except ExtractionEngineError as exc:
        raise _http_error(exc) from exc
    return result.to_dict()


@router.get("/patterns")
def list_patterns(
    supplier: Optional[str] = Query(default=None),
    field_name: Optional[str] = Query(default=None),
    include_inactive: bool = Query(default=False),
    service: PatternLearningService = Depends(get_learning_service),
) -> Dict[str, Any]:
    try:
        patterns = service.store.list_patterns(
            supplier=supplier, field_name=field_name, include_inactive=include_inactive
        )
    except ExtractionEngineError as exc:
        raise _http_error(exc) from exc
    return {"patterns": [pattern.to_dict() for pattern in patterns], "count": len(patterns)}


@router.post("/patterns", status_code=201)
def create_pattern(
    req: PatternCreateRequest, service: PatternLearningService = Depends(get_learning_service)
) -> Dict[str, Any]:
    try:
        pattern = service.add_pattern(
            req.supplier,
            req.field_name,
            req.regex,
            req.value_type,
            description=req.description,
            example_match=req.example_match,
        )
    except ExtractionEngineError as exc:
        raise _http_error(exc) from exc
    return pattern.to_dict()


@router.post("/patterns/test")
def trial_pattern(
    req: PatternTestRequest, service: PatternLearningService = Depends(get_learning_service)
) -> Dict[str, Any]:
    result = service.test_pattern(
        req.regex, req.texts, req.expected_values, value_type=req.value_type
    )
    return {
        "total_tests": result.total_tests,
        "successful_matches": result.successful_matches,
        "success_rate": result.success_rate,
        "recommendation": result.recommendation.value,
        "recommendation_reason": result.recommendation_reason,
        "failures": [
            {"source_text": example.source_text, "error": example.error_message}
            for example in result.failure_examples
        ],
    }


@router.delete("/patterns/{pattern_id}")
def delete_pattern(
    pattern_id: str,
    deactivate_only: bool = Query(default=True),
    service: PatternLearningService = Depends(get_learning_service),
) -> Dict[str, Any]:
    try:
        service.remove_pattern(pattern_id, deactivate_only=deactivate_only)
    except ExtractionEngineError as exc:
        raise _http_error(exc) from exc
    return {"pattern_id": pattern_id, "deactivated": deactivate_only, "deleted": not deactivate_only}


@router.get("/statistics")
def statistics(
    service: PatternLearningService = Depends(get_learning_service),
) -> Dict[str, Any]:
    try:
        return service.get_learning_statistics().to_dict()
    except ExtractionEngineError as exc:
        raise _http_error(exc) from exc


@router.get("/patterns/export")
def export_patterns(
    supplier: Optional[str] = Query(default=None),
    service: PatternLearningService = Depends(get_learning_service),
) -> Response:
    try:
        body = service.export_patterns(supplier)
    except ExtractionEngineError as exc:
        raise _http_error(exc) from exc
    return Response(content=body, media_type="application/json")


@router.post("/patterns/import")
def import_patterns(
    req: PatternImportRequest, service: PatternLearningService = Depends(get_learning_service)
) -> Dict[str, Any]:
    try:
        result = service.import_patterns(req.payload, req.merge_strategy)
    except ExtractionEngineError as exc:
        raise _http_error(exc) from exc
    return result.to_dict()
