"""
Anonymization toolkit for evaluation submissions.

Removes every link between a stored evaluation and the student who wrote it:
- anonymous tokens (one-way, unique per submission)
- IP truncation, timestamp rounding and mixing pools against correlation
- random submission delays against response-time correlation
- comment sanitization (see comment_sanitizer)
- receipts the student can keep without the system storing a link
- k-anonymity / statistical-safety gates and Laplace noise for aggregates

All functions are stateless apart from reading the clock and the CSPRNG.
"""

import asyncio
import hashlib
import hmac
import ipaddress
import math
import re
import secrets
import time
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from core.exceptions import InputError
from services.comment_sanitizer import CommentSanitizer

logger = structlog.get_logger(__name__)

_system_random = secrets.SystemRandom()

# Fields that directly identify a student and must never reach storage
FORBIDDEN_IDENTITY_FIELDS = frozenset(
    {
        "student_id",
        "student_number",
        "student_name",
        "full_name",
        "email",
        "student_email",
        "name",
        "phone",
    }
)

# Session keys that survive minimization
SESSION_ALLOWED_KEYS = ("student_id",)

# Keeps ln(1 - 2|u|) finite
_LAPLACE_U_BOUND = 0.5 - 1e-12

_HEX_GROUP = re.compile(r"^[0-9a-fA-F]{1,4}$")


# =============================================================================
# Result Models
# =============================================================================


class CommentSanitizationResult(BaseModel):
    valid: bool
    sanitized: Optional[str] = None
    error: Optional[str] = None


class StatisticalSafetyResult(BaseModel):
    is_safe: bool
    count: int
    min_required: int
    message: str


class SubmissionValidationResult(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)


class NoisedStatistics(BaseModel):
    """Noised aggregates for a group of ratings."""

    count: int
    mean: float
    epsilon: float
    noise_applied: bool = True


# =============================================================================
# Tokens and Receipts
# =============================================================================


def _token_material(enrollment_id: str) -> str:
    enrollment_hash = hashlib.sha256(str(enrollment_id).encode("utf-8")).hexdigest()
    return f"{enrollment_hash}-{time.time_ns()}-{secrets.token_hex(32)}"


def generate_anonymous_token(enrollment_id: str) -> str:
    """
    Generate a one-way anonymous token for an evaluation record.

    Combines a hash of the enrollment id, the nanosecond clock and 256 bits
    of entropy under SHA-512, so the token is unique per call and cannot be
    traced back to the enrollment.

    Returns:
        128 hex characters
    """
    return hashlib.sha512(_token_material(enrollment_id).encode("utf-8")).hexdigest()


def generate_submission_token(enrollment_id: str) -> str:
    """Shorter one-time submission token (64 hex characters)."""
    return hashlib.sha256(_token_material(enrollment_id).encode("utf-8")).hexdigest()


def generate_receipt_hash(anonymous_token: str, timestamp: datetime, secret: str) -> str:
    """
    Receipt returned to the student after submitting.

    The student can prove they submitted at a given time; the system keeps
    only this hash on the enrollment, never the token. The token and
    timestamp are both stored on the evaluation record, so the hash is keyed
    with a server-side secret that is never stored next to them. Without it
    the receipt cannot be recomputed from a record and joined to an
    enrollment.
    """
    if not secret:
        raise InputError("Receipt secret is required")
    material = f"{anonymous_token}-{timestamp.isoformat()}"
    return hmac.new(secret.encode("utf-8"), material.encode("utf-8"), hashlib.sha256).hexdigest()[:16]


def unkeyed_receipt_hash(anonymous_token: str, timestamp: datetime) -> str:
    """Receipt digest computable from a stored record alone. Used to detect linkable receipts."""
    material = f"{anonymous_token}-{timestamp.isoformat()}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]


def verify_receipt(receipt: str, anonymous_token: str, timestamp: datetime, secret: str) -> bool:
    """Constant-time check of a receipt against its token and timestamp."""
    expected = generate_receipt_hash(anonymous_token, timestamp, secret)
    return hmac.compare_digest(expected, receipt or "")


# =============================================================================
# IP and Time Obfuscation
# =============================================================================


def anonymize_ip_address(raw: Any) -> Optional[str]:
    """
    Truncate an IP address so it no longer identifies a single host.

    - IPv4: last octet zeroed (192.168.1.55 -> 192.168.1.0)
    - IPv6: first three groups kept (2001:db8:1:2::1 -> 2001:db8:1::0)
    - anything unrecognized: None, so an ambiguous address is never stored
    """
    if isinstance(raw, (list, tuple)):
        raw = raw[0] if raw else None
    if not isinstance(raw, str):
        return None

    candidate = raw.split(",")[0].strip()
    if not candidate:
        return None

    if "." in candidate and ":" not in candidate:
        parts = candidate.split(".")
        if len(parts) != 4 or not all(part.isdigit() and int(part) <= 255 for part in parts):
            return None
        return f"{parts[0]}.{parts[1]}.{parts[2]}.0"

    if ":" in candidate:
        # IPv4-mapped / embedded IPv4 addresses are not truncated safely
        if "." in candidate:
            return None
        try:
            ipaddress.IPv6Address(candidate)
        except ValueError:
            return None
        groups = candidate.split(":")
        if len(groups) < 3 or not all(_HEX_GROUP.match(group) for group in groups[:3]):
            return None
        return f"{groups[0]}:{groups[1]}:{groups[2]}::0"

    return None


def _as_utc(ts: Optional[datetime]) -> datetime:
    if ts is None:
        return datetime.now(timezone.utc)
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def get_safe_submission_timestamp(ts: Optional[datetime] = None) -> datetime:
    """Round a timestamp down to the hour (naive input is taken as UTC)."""
    return _as_utc(ts).replace(minute=0, second=0, microsecond=0)


def get_mixing_pool_id(ts: Optional[datetime] = None, window_minutes: int = 15) -> str:
    """
    Hash of the window_minutes bucket containing ts.

    Submissions in the same bucket share a pool id, so arrival order inside
    a bucket cannot single out one submission.
    """
    if window_minutes <= 0:
        raise InputError("window_minutes must be positive")

    ts = _as_utc(ts).astimezone(timezone.utc)
    epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
    bucket_seconds = window_minutes * 60
    elapsed = math.floor((ts - epoch).total_seconds())
    bucket_start = epoch + timedelta(seconds=elapsed - elapsed % bucket_seconds)
    return hashlib.sha256(bucket_start.isoformat().encode("utf-8")).hexdigest()


def calculate_submission_delay(min_seconds: float = 2, max_seconds: float = 8) -> int:
    """Uniform random delay in milliseconds from the system CSPRNG."""
    if min_seconds < 0 or max_seconds < min_seconds:
        raise InputError("Invalid submission delay range")
    return int(round(_system_random.uniform(min_seconds, max_seconds) * 1000))


async def wait_submission_delay(delay_ms: int) -> None:
    """Suspend the calling request for delay_ms without blocking the loop."""
    await asyncio.sleep(delay_ms / 1000)


# =============================================================================
# Comment and Payload Validation
# =============================================================================


def sanitize_comment_for_anonymity(text: Optional[str], max_length: Optional[int] = None) -> CommentSanitizationResult:
    """Reject self-identifying comments and normalize writing style."""
    verdict = CommentSanitizer(max_length=max_length).evaluate(text)
    return CommentSanitizationResult(valid=verdict.valid, sanitized=verdict.sanitized, error=verdict.error)


def validate_anonymous_submission(payload: Mapping[str, Any]) -> SubmissionValidationResult:
    """
    Check a submission payload before anything is stored.

    Identity-bearing fields are refused outright; a string comments field
    is re-checked against the identity patterns.
    """
    errors: list[str] = []

    for key in payload:
        if str(key).lower() in FORBIDDEN_IDENTITY_FIELDS:
            errors.append(f"Forbidden identity field: {key}")

    comments = payload.get("comments")
    if isinstance(comments, str) and comments:
        verdict = CommentSanitizer().evaluate(comments)
        if not verdict.valid and verdict.error:
            errors.append(verdict.error)

    return SubmissionValidationResult(is_valid=not errors, errors=errors)


# =============================================================================
# Aggregate Release Gates
# =============================================================================


def check_k_anonymity(group_size: int, k: int = 5) -> bool:
    """A group may be shown only if it holds at least k individuals."""
    return group_size >= k


def check_statistical_safety(total: int, min_required: int = 10) -> StatisticalSafetyResult:
    if total >= min_required:
        message = "Sufficient responses for statistical display"
    else:
        message = f"Insufficient responses ({total}/{min_required}). Results hidden to protect anonymity."
    return StatisticalSafetyResult(
        is_safe=total >= min_required,
        count=total,
        min_required=min_required,
        message=message,
    )


def _laplace_noise(scale: float) -> float:
    u = _system_random.uniform(-0.5, 0.5)
    u = max(-_LAPLACE_U_BOUND, min(_LAPLACE_U_BOUND, u))
    return -scale * math.copysign(1.0, u) * math.log(1 - 2 * abs(u))


def add_differential_privacy_noise(
    value: float,
    epsilon: float = 0.1,
    sensitivity: float = 1.0,
    lower: Optional[float] = 0.0,
    upper: Optional[float] = None,
) -> float:
    """
    Add Laplace noise with scale = sensitivity / epsilon.

    The result is clamped to [lower, upper]; pass lower=None to allow
    negative values.
    """
    if epsilon <= 0:
        raise InputError("epsilon must be positive")
    if sensitivity < 0:
        raise InputError("sensitivity must not be negative")

    noised = value + _laplace_noise(sensitivity / epsilon)
    if lower is not None:
        noised = max(lower, noised)
    if upper is not None:
        noised = min(upper, noised)
    return noised


def noised_count(count: int, epsilon: float, minimum: int = 0) -> int:
    """Laplace-noised count (sensitivity 1), rounded and floored at minimum."""
    return max(minimum, round(add_differential_privacy_noise(count, epsilon)))


def noised_mean(values: Iterable[float], epsilon: float) -> float:
    """
    Laplace-noised mean of 1-5 ratings.

    The sensitivity is the rating range divided by the group size.
    """
    values = list(values)
    if not values:
        raise InputError("Cannot compute statistics for an empty group")
    mean = math.fsum(values) / len(values)
    noised = add_differential_privacy_noise(
        mean,
        epsilon,
        sensitivity=4 / len(values),
        lower=1.0,
        upper=5.0,
    )
    return round(noised, 2)


def generate_noised_statistics(values: Iterable[float], epsilon: float = 0.1) -> NoisedStatistics:
    """
    Noised count and mean of a list of ratings.

    Two values are released, so each is drawn at epsilon / 2 and the pair
    costs epsilon in total under sequential composition.
    """
    values = list(values)
    if not values:
        raise InputError("Cannot compute statistics for an empty group")

    share = epsilon / 2
    return NoisedStatistics(
        count=noised_count(len(values), share, minimum=1),
        mean=noised_mean(values, share),
        epsilon=epsilon,
    )


# =============================================================================
# Audit Logs and Sessions
# =============================================================================


def create_privacy_safe_audit_log(
    action: str,
    category: str,
    metadata: Optional[Mapping[str, Any]] = None,
) -> dict[str, Any]:
    """Audit-log entry with identity fields removed and a random audit token."""
    safe_metadata = {
        key: value
        for key, value in (metadata or {}).items()
        if str(key).lower() not in FORBIDDEN_IDENTITY_FIELDS
    }
    return {
        "action": action,
        "category": category,
        "metadata": safe_metadata,
        "audit_token": secrets.token_hex(16),
        "timestamp": get_safe_submission_timestamp().isoformat(),
    }


def clear_sensitive_session_data(
    session: Mapping[str, Any],
    keep: Iterable[str] = SESSION_ALLOWED_KEYS,
) -> dict[str, Any]:
    """Minimized copy of a session holding only the allowed keys."""
    minimized = {key: session[key] for key in keep if key in session}
    minimized["last_activity"] = datetime.now(timezone.utc).isoformat()
    return minimized
