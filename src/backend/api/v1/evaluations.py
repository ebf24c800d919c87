"""
Evaluation submission endpoint.

Students submit ratings and optional comments. The stored record carries
no reference to the student; the response includes a receipt the student
can keep.
"""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from api.deps import get_client_ip, get_submission_service
from schemas.evaluation import EvaluationSubmitRequest, EvaluationSubmitResponse
from services.evaluation_submission import EvaluationSubmissionService

router = APIRouter()


@router.post("", response_model=EvaluationSubmitResponse, status_code=status.HTTP_201_CREATED)
async def submit_evaluation(
    request: Request,
    payload: EvaluationSubmitRequest,
    service: Annotated[EvaluationSubmissionService, Depends(get_submission_service)],
    x_student_id: Annotated[Optional[str], Header()] = None,
) -> EvaluationSubmitResponse:
    """
    Submit an anonymous evaluation.

    X-Student-Id, when supplied by the authenticating gateway, must match
    the enrollment's student.
    """
    outcome = await service.submit_evaluation(
        enrollment_id=payload.enrollment_id,
        ratings=payload.ratings,
        comments=payload.comments,
        raw_ip=get_client_ip(request),
        student_id=x_student_id,
        payload_extras=payload.extra_fields(),
    )

    if not outcome.success:
        detail: str | dict = outcome.message
        if outcome.errors:
            detail = {"message": outcome.message, "errors": outcome.errors}
        raise HTTPException(status_code=outcome.status_code, detail=detail)

    return EvaluationSubmitResponse(success=True, message=outcome.message, receipt=outcome.receipt)
