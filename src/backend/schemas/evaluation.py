"""
Evaluation submission schemas.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class EvaluationSubmitRequest(BaseModel):
    """
    Evaluation submission payload.

    Ratings are validated by the submission service rather than here so that
    every rating problem is reported with its criterion name. Unknown fields
    are kept and screened for identity-bearing keys before anything is
    stored.
    """

    model_config = ConfigDict(extra="allow")

    enrollment_id: str = Field(..., min_length=1)
    ratings: dict[str, Any]
    comments: Optional[str] = None

    def extra_fields(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class EvaluationSubmitResponse(BaseModel):
    """Result of a successful submission."""

    success: bool
    message: str
    receipt: Optional[str] = Field(
        None,
        description="Keep this to verify your submission later. It cannot be used to find your evaluation.",
    )
