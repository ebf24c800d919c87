"""
Document models for EvalShield.

These Pydantic models define the document structure kept in the document
store (in-memory or Cosmos DB). Documents are flat; relationships are held
as plain id strings.

Container Strategy:
- evaluations: Anonymous evaluation records (partition: /teacher_id)
- enrollments: Enrollment markers with the has_evaluated flag (partition: /id)

An evaluation record never references the student who submitted it, and an
enrollment marker never references the evaluation it produced.
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

# ============================================================================
# Rating Criteria
# ============================================================================

TEACHER_CRITERIA = (
    "diction",
    "grammar",
    "personality",
    "disposition",
    "dynamic",
    "fairness",
)

LEARNING_CRITERIA = (
    "motivation",
    "critical_thinking",
    "organization",
    "interest",
    "explanation",
    "clarity",
    "integration",
    "mastery",
    "methodology",
    "values",
    "grading",
    "synthesis",
    "reasonableness",
)

CLASSROOM_CRITERIA = (
    "attendance",
    "policies",
    "discipline",
    "authority",
    "prayers",
    "punctuality",
)

RATING_CATEGORIES: dict[str, tuple[str, ...]] = {
    "teacher": TEACHER_CRITERIA,
    "learning": LEARNING_CRITERIA,
    "classroom": CLASSROOM_CRITERIA,
}

RATING_MIN = 1
RATING_MAX = 5


# ============================================================================
# Base Document Model
# ============================================================================


class StoreDocument(BaseModel):
    """
    Base class for stored documents.

    All documents have:
    - id: Unique identifier
    - _ts / _etag: system properties (Cosmos DB only), kept as extra fields
    """

    model_config = ConfigDict(extra="allow", use_enum_values=True)

    id: str = Field(default_factory=lambda: str(uuid4()))


# ============================================================================
# Encrypted Field
# ============================================================================


class EncryptedValue(BaseModel):
    """
    Persisted form of an envelope-encrypted field.

    All binary parts are base64 strings. auth_tag holds 32 bytes: the value
    tag followed by the key-wrap tag. Instances are never mutated; a
    re-encryption produces a new value.
    """

    model_config = ConfigDict(frozen=True)

    ciphertext: str
    iv: str
    auth_tag: str
    wrapped_data_key: str
    data_key_iv: str
    format_version: str = "1.0"


# ============================================================================
# Evaluation Documents
# ============================================================================


class TeacherRatings(BaseModel):
    diction: int
    grammar: int
    personality: int
    disposition: int
    dynamic: int
    fairness: int


class LearningRatings(BaseModel):
    motivation: int
    critical_thinking: int
    organization: int
    interest: int
    explanation: int
    clarity: int
    integration: int
    mastery: int
    methodology: int
    values: int
    grading: int
    synthesis: int
    reasonableness: int


class ClassroomRatings(BaseModel):
    attendance: int
    policies: int
    discipline: int
    authority: int
    prayers: int
    punctuality: int


class EvaluationRatings(BaseModel):
    """All three rating categories of one evaluation."""

    teacher: TeacherRatings
    learning: LearningRatings
    classroom: ClassroomRatings


class AnonymousEvaluationDocument(StoreDocument):
    """
    Anonymous evaluation record.

    Partition key: /teacher_id

    Holds no student id, enrollment id or exact submission time. Records are
    inserted once and never updated.
    """

    anonymous_token: str
    course_id: str
    teacher_id: str
    program_id: Optional[str] = None
    school_year: Optional[str] = None

    ratings: EvaluationRatings
    comments: Optional[EncryptedValue] = None

    ip_address: Optional[str] = None  # truncated fragment only
    submitted_at: datetime  # rounded down to the hour
    mixing_pool: str


# ============================================================================
# Enrollment Documents
# ============================================================================


class EnrollmentDocument(StoreDocument):
    """
    Enrollment marker.

    Partition key: /id

    Records that a student is allowed to evaluate a course/teacher pair and
    whether they already did. Once has_evaluated is set it stays set.
    """

    student_id: str
    course_id: str
    teacher_id: str
    program_id: Optional[str] = None
    school_year: Optional[str] = None

    has_evaluated: bool = False
    receipt_hash: Optional[str] = None
    submission_token_used: bool = False
