from __future__ import annotations

from fastapi import APIRouter, Path, Request

from src.automation.schemas.common import ErrorResponse
from src.automation.schemas.rules import JobOut
from src.automation.services import rules_service
from src.automation.state import get_state

router = APIRouter(prefix="/api/jobs", tags=["Jobs"])


@router.get(
    "/{job_id}",
    response_model=JobOut,
    responses={404: {"model": ErrorResponse}},
    summary="Get job",
    description="Fetch a rule execution job with its per-entity outcomes.",
    operation_id="get_job",
)
def get_job(request: Request, job_id: str = Path(..., description="Job id (Mongo ObjectId string).")) -> JobOut:
    """Get a job by id."""
    return rules_service.get_job(get_state(request.app), job_id)
