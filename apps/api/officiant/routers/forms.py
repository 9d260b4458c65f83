"""Form submission and email rule endpoints."""

import logging
from dataclasses import asdict

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from officiant.core.deps import get_email_engine, get_persistence
from officiant.schemas.email_rules import (
    CacheInvalidateResponse,
    FormSubmitRequest,
    FormSubmitResponse,
    RuleTestRequest,
    RuleTestResponse,
)
from officiant.services import form_submission_service
from officiant.services.email_processing_service import EmailRuleEngine
from officiant.services.field_resolver import MAPPED_FIELDS_KEY
from officiant.services.persistence import PersistenceService
from officiant.services.submission_metadata import attach_metadata

logger = logging.getLogger(__name__)

router = APIRouter(tags=["forms"])


@router.post("/forms/{form_id}/submit", response_model=FormSubmitResponse)
async def submit_form(
    form_id: str,
    body: FormSubmitRequest,
    background_tasks: BackgroundTasks,
    persistence: PersistenceService = Depends(get_persistence),
    engine: EmailRuleEngine = Depends(get_email_engine),
):
    """
    Store a submission and queue rule emails.

    Email processing runs after the response is sent; its outcome never
    changes this response.
    """
    form = await persistence.get_form(form_id)
    if form is None:
        raise HTTPException(status_code=404, detail="Form not found")

    result = await form_submission_service.create_submission(persistence, form, body.data)
    background_tasks.add_task(
        engine.process_submission,
        form.id,
        result.data,
        submission_id=result.submission_id,
        lead_id=result.lead_id,
    )
    return FormSubmitResponse(
        submission_id=result.submission_id,
        lead_id=result.lead_id,
        booking_id=result.booking_id,
    )


@router.post("/forms/{form_id}/email-rules/test", response_model=RuleTestResponse)
async def test_email_rules(
    form_id: str,
    body: RuleTestRequest,
    persistence: PersistenceService = Depends(get_persistence),
    engine: EmailRuleEngine = Depends(get_email_engine),
):
    """Dry run: show which rules match the given data and what they would send."""
    form = await persistence.get_form(form_id)
    if form is None:
        raise HTTPException(status_code=404, detail="Form not found")

    data = body.data if MAPPED_FIELDS_KEY in body.data else attach_metadata(form, body.data)
    previews = await engine.dry_run(form.id, data)
    response = RuleTestResponse(
        form_id=form.id,
        matched_count=sum(1 for p in previews if p.matched),
        rules=[asdict(p) for p in previews],
    )
    if body.conditions is not None:
        enhanced, _ = await engine.prepare_data(form.id, data)
        evaluation = await engine.batch_processor.evaluator.evaluate(
            [c.model_dump() for c in body.conditions], form.id, enhanced
        )
        response.conditions_match = evaluation.matches
        response.condition_details = [d.to_dict() for d in evaluation.details]
    return response


@router.post("/forms/{form_id}/field-cache/invalidate", response_model=CacheInvalidateResponse)
async def invalidate_form_cache(
    form_id: str,
    engine: EmailRuleEngine = Depends(get_email_engine),
):
    """Drop cached field definitions and resolved values after a form is edited."""
    engine.invalidate(form_id)
    logger.info("Field caches invalidated for form %s", form_id)
    return CacheInvalidateResponse(form_id=form_id)


@router.post("/field-cache/invalidate", response_model=CacheInvalidateResponse)
async def invalidate_all_caches(engine: EmailRuleEngine = Depends(get_email_engine)):
    engine.invalidate()
    logger.info("All field caches invalidated")
    return CacheInvalidateResponse()
