"""
Privacy Audit Engine.

Runs an ordered checklist over the privacy protections of the evaluation
pipeline and reports issues (missing or broken protections) and warnings
(observations). Each check inspects one of:
- configuration (master key, delay range, DP budget, k threshold)
- stored record shape (identifiers, tokens, IPs, timestamps, comments)
- live behaviour of a toolkit function against a known probe input

A check that raises is recorded as a WARNING-level warning; the audit as a
whole never fails with an exception.
"""

import re
from collections import Counter
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from core.config import Settings
from core.config import settings as default_settings
from core.encrypted_fields import DECRYPTION_ERROR_SENTINEL, is_encrypted, safe_decrypt
from core.encryption import FORMAT_VERSION, EnvelopeCipher
from repositories.enrollment_repository import EnrollmentRepository
from repositories.evaluation_repository import EvaluationRepository
from services.anonymization import (
    FORBIDDEN_IDENTITY_FIELDS,
    SESSION_ALLOWED_KEYS,
    anonymize_ip_address,
    calculate_submission_delay,
    check_k_anonymity,
    clear_sensitive_session_data,
    create_privacy_safe_audit_log,
    generate_anonymous_token,
    get_safe_submission_timestamp,
    unkeyed_receipt_hash,
    validate_anonymous_submission,
)
from services.comment_sanitizer import CommentSanitizer
from services.dp_budget import DPBudgetTracker

logger = structlog.get_logger(__name__)

_TOKEN_PATTERN = re.compile(r"^[0-9a-f]{128}$")
_LEGACY_TOKEN_PATTERN = re.compile(r"^[0-9a-f]{64}$")
_AUDIT_TOKEN_PATTERN = re.compile(r"^[0-9a-f]{32}$")

# Keys that would link an evaluation back to a student
_LINKING_FIELDS = FORBIDDEN_IDENTITY_FIELDS | {"enrollment_id", "user_id"}


# =============================================================================
# Result Models
# =============================================================================


class IssueSeverity(str, Enum):
    CRITICAL = "CRITICAL"
    WARNING = "WARNING"


class WarningLevel(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"


class AuditStatus(str, Enum):
    PASSED = "passed"
    WARNING = "warning"
    FAILED = "failed"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AuditIssue(BaseModel):
    severity: IssueSeverity
    title: str
    description: str
    recommendation: str
    timestamp: datetime = Field(default_factory=_now)


class AuditWarning(BaseModel):
    level: WarningLevel
    title: str
    description: str
    recommendation: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


class AuditSummary(BaseModel):
    total_evaluations: int = 0
    evaluations_checked: int = 0
    issues_found: int = 0
    warnings_found: int = 0


class AuditResults(BaseModel):
    timestamp: datetime = Field(default_factory=_now)
    status: AuditStatus = AuditStatus.PASSED
    summary: AuditSummary = Field(default_factory=AuditSummary)
    checks_run: list[str] = Field(default_factory=list)
    issues: list[AuditIssue] = Field(default_factory=list)
    warnings: list[AuditWarning] = Field(default_factory=list)


class AuditConclusion(BaseModel):
    status: str  # pass | advisory | fail
    label: str
    message: str
    color: str


class AuditReport(BaseModel):
    report_generated: datetime = Field(default_factory=_now)
    results: AuditResults
    conclusion: AuditConclusion


# =============================================================================
# Auditor
# =============================================================================


class PrivacyAuditor:
    """Ordered privacy checklist over configuration, data and behaviour."""

    def __init__(
        self,
        evaluations: EvaluationRepository,
        enrollments: EnrollmentRepository,
        cipher: EnvelopeCipher,
        tracker: Optional[DPBudgetTracker],
        settings: Optional[Settings] = None,
        sample_size: int = 100,
    ):
        self.evaluations = evaluations
        self.enrollments = enrollments
        self.cipher = cipher
        self.tracker = tracker
        self.settings = settings or default_settings
        self.sample_size = sample_size
        self.sanitizer = CommentSanitizer(max_length=self.settings.COMMENT_MAX_LENGTH)

        self.results = AuditResults()
        self._evaluation_docs: list[dict[str, Any]] = []
        self._enrollment_docs: list[dict[str, Any]] = []

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def add_issue(self, severity: IssueSeverity, title: str, description: str, recommendation: str) -> None:
        self.results.issues.append(
            AuditIssue(severity=severity, title=title, description=description, recommendation=recommendation)
        )

    def add_warning(
        self,
        level: WarningLevel,
        title: str,
        description: str,
        recommendation: Optional[str] = None,
    ) -> None:
        self.results.warnings.append(
            AuditWarning(level=level, title=title, description=description, recommendation=recommendation)
        )

    @property
    def _sample(self) -> list[dict[str, Any]]:
        return self._evaluation_docs[: self.sample_size]

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def _checks(self) -> list[tuple[str, Callable[[], Awaitable[None]]]]:
        return [
            ("encryption_configuration", self.check_encryption_configuration),
            ("direct_identifiers", self.check_direct_identifiers),
            ("anonymous_token_strength", self.check_anonymous_tokens),
            ("submission_timing", self.check_submission_timing),
            ("ip_anonymization", self.check_ip_anonymization),
            ("enrollment_decoupling", self.check_enrollment_decoupling),
            ("timestamp_rounding", self.check_timestamp_rounding),
            ("session_minimization", self.check_session_minimization),
            ("dp_budget_tracking", self.check_dp_budget),
            ("k_anonymity", self.check_k_anonymity_enforcement),
            ("audit_log_hygiene", self.check_audit_log_hygiene),
            ("pre_storage_validation", self.check_pre_storage_validation),
            ("comment_encryption", self.check_comment_encryption),
            ("stylometric_sanitization", self.check_stylometric_sanitization),
        ]

    async def run_full_audit(self) -> AuditResults:
        """Run every check in order and derive the overall status."""
        self.results = AuditResults()
        logger.info("privacy_audit_started")

        try:
            self._evaluation_docs = await self.evaluations.list_raw()
            self._enrollment_docs = await self.enrollments.list_raw()
        except Exception as e:
            logger.exception("privacy_audit_data_load_failed")
            self._evaluation_docs, self._enrollment_docs = [], []
            self.add_warning(
                WarningLevel.WARNING,
                "Stored data unavailable",
                f"Stored records could not be loaded ({type(e).__name__}); data checks ran on no records.",
                "Verify document store connectivity and re-run the audit.",
            )

        for name, check in self._checks():
            try:
                await check()
            except Exception as e:
                logger.exception("privacy_audit_check_failed", check=name)
                self.add_warning(
                    WarningLevel.WARNING,
                    f"Check failed: {name}",
                    f"The check raised {type(e).__name__} and could not complete.",
                    "Investigate the failure and re-run the audit.",
                )
            self.results.checks_run.append(name)

        self.results.summary = AuditSummary(
            total_evaluations=len(self._evaluation_docs),
            evaluations_checked=len(self._sample),
            issues_found=len(self.results.issues),
            warnings_found=len(self.results.warnings),
        )

        if self.results.issues:
            self.results.status = AuditStatus.FAILED
        elif any(w.level == WarningLevel.WARNING for w in self.results.warnings):
            self.results.status = AuditStatus.WARNING
        else:
            self.results.status = AuditStatus.PASSED

        logger.info(
            "privacy_audit_completed",
            status=self.results.status.value,
            issues=self.results.summary.issues_found,
            warnings=self.results.summary.warnings_found,
        )
        return self.results

    def generate_conclusion(self) -> AuditConclusion:
        issues = self.results.issues
        if not issues:
            if any(w.level == WarningLevel.WARNING for w in self.results.warnings):
                return AuditConclusion(
                    status="advisory",
                    label="GOOD",
                    message="No critical issues found, but some warnings exist. Review recommendations.",
                    color="yellow",
                )
            return AuditConclusion(
                status="pass",
                label="EXCELLENT",
                message="All privacy checks passed. Student identities are fully protected.",
                color="green",
            )

        critical_count = sum(1 for issue in issues if issue.severity == IssueSeverity.CRITICAL)
        if critical_count:
            return AuditConclusion(
                status="fail",
                label="CRITICAL",
                message=f"{critical_count} critical privacy issues found. Immediate action required!",
                color="red",
            )
        return AuditConclusion(
            status="advisory",
            label="ATTENTION NEEDED",
            message="Privacy issues detected. Please address the recommendations.",
            color="orange",
        )

    def generate_report(self) -> AuditReport:
        """Wrap the latest results with a timestamp and a conclusion."""
        return AuditReport(results=self.results, conclusion=self.generate_conclusion())

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    async def check_encryption_configuration(self) -> None:
        if not self.cipher.is_configured():
            self.add_issue(
                IssueSeverity.CRITICAL,
                "Field encryption not configured",
                "ENCRYPTION_MASTER_KEY is missing or is not 64 hex characters. Comments cannot be stored.",
                "Generate a key with generate_master_key() and set ENCRYPTION_MASTER_KEY.",
            )
            return

        probe = "privacy audit probe"
        if self.cipher.decrypt_value(self.cipher.encrypt_value(probe)) != probe:
            self.add_issue(
                IssueSeverity.CRITICAL,
                "Encryption round-trip failed",
                "A probe value did not decrypt to its original plaintext.",
                "Verify the master key and the cryptography installation.",
            )

    async def check_direct_identifiers(self) -> None:
        with_identifiers = 0
        without_token = 0
        for doc in self._evaluation_docs:
            if any(doc.get(field) is not None for field in _LINKING_FIELDS):
                with_identifiers += 1
            if not doc.get("anonymous_token"):
                without_token += 1

        if with_identifiers:
            self.add_issue(
                IssueSeverity.CRITICAL,
                "Direct identifiers in evaluation records",
                f"{with_identifiers} evaluation records carry student or enrollment identifiers.",
                "Remove identifying fields from stored evaluations and fix the submission path.",
            )
        if without_token:
            self.add_issue(
                IssueSeverity.CRITICAL,
                "Evaluation records without anonymous token",
                f"{without_token} evaluation records have no anonymous token.",
                "Every record must be created with generate_anonymous_token().",
            )

    async def check_anonymous_tokens(self) -> None:
        tokens = [doc.get("anonymous_token") for doc in self._evaluation_docs if doc.get("anonymous_token")]

        legacy = sum(1 for token in tokens if _LEGACY_TOKEN_PATTERN.match(str(token)))
        malformed = sum(
            1
            for token in tokens
            if not _TOKEN_PATTERN.match(str(token)) and not _LEGACY_TOKEN_PATTERN.match(str(token))
        )
        if legacy:
            self.add_warning(
                WarningLevel.WARNING,
                "Legacy anonymous tokens",
                f"{legacy} records use 64-character (SHA-256) tokens.",
                "New submissions use SHA-512 tokens; legacy records need no action.",
            )
        if malformed:
            self.add_issue(
                IssueSeverity.WARNING,
                "Weak anonymous tokens",
                f"{malformed} records have tokens that are not 128 hex characters.",
                "Generate tokens only with generate_anonymous_token().",
            )

        duplicates = sum(count - 1 for count in Counter(tokens).values() if count > 1)
        if duplicates:
            self.add_issue(
                IssueSeverity.CRITICAL,
                "Duplicate anonymous tokens",
                f"{duplicates} duplicate anonymous tokens found.",
                "Tokens must include high-resolution time and random entropy.",
            )

        first = generate_anonymous_token("audit-probe")
        second = generate_anonymous_token("audit-probe")
        if first == second or not (_TOKEN_PATTERN.match(first) and _TOKEN_PATTERN.match(second)):
            self.add_issue(
                IssueSeverity.CRITICAL,
                "Anonymous token generation is predictable",
                "Two tokens for the same enrollment were equal or not 128 hex characters.",
                "Restore SHA-512 token generation with time and random entropy.",
            )

    async def check_submission_timing(self) -> None:
        min_seconds = self.settings.SUBMISSION_DELAY_MIN_SECONDS
        max_seconds = self.settings.SUBMISSION_DELAY_MAX_SECONDS

        if max_seconds == 0:
            self.add_warning(
                WarningLevel.WARNING,
                "Submission timing jitter disabled",
                "SUBMISSION_DELAY_MAX_SECONDS is 0; response time may reveal processing details.",
                "Use a delay range such as 2 to 8 seconds.",
            )
            return
        if not 0 <= min_seconds < max_seconds:
            self.add_issue(
                IssueSeverity.WARNING,
                "Invalid submission delay range",
                f"Delay range {min_seconds}s to {max_seconds}s is not valid.",
                "Set 0 <= SUBMISSION_DELAY_MIN_SECONDS < SUBMISSION_DELAY_MAX_SECONDS.",
            )
            return

        delay = calculate_submission_delay(min_seconds, max_seconds)
        if not min_seconds * 1000 <= delay <= max_seconds * 1000:
            self.add_issue(
                IssueSeverity.WARNING,
                "Submission delay out of range",
                f"A probe delay of {delay}ms fell outside the configured range.",
                "Check calculate_submission_delay().",
            )

    async def check_ip_anonymization(self) -> None:
        if anonymize_ip_address("192.168.1.55") != "192.168.1.0" or anonymize_ip_address("not-an-ip") is not None:
            self.add_issue(
                IssueSeverity.CRITICAL,
                "IP anonymization incorrect",
                "anonymize_ip_address() did not truncate or reject the probe addresses.",
                "Restore last-octet truncation and reject unrecognized formats.",
            )

        exposed = sum(
            1
            for doc in self._evaluation_docs
            if doc.get("ip_address") and not str(doc["ip_address"]).endswith((".0", "::0"))
        )
        if exposed:
            self.add_issue(
                IssueSeverity.CRITICAL,
                "Full IP addresses stored",
                f"{exposed} evaluation records carry IP addresses that are not truncated.",
                "Purge or truncate stored addresses; store only anonymize_ip_address() output.",
            )

    async def check_enrollment_decoupling(self) -> None:
        linked = sum(1 for doc in self._enrollment_docs if doc.get("evaluation_id"))
        if linked:
            self.add_issue(
                IssueSeverity.CRITICAL,
                "Enrollments linked to evaluations",
                f"{linked} enrollment records reference an evaluation id.",
                "Remove evaluation_id from enrollments; track only has_evaluated.",
            )

        receipts = {doc["receipt_hash"] for doc in self._enrollment_docs if doc.get("receipt_hash")}
        derivable = 0
        if receipts:
            for doc in self._evaluation_docs:
                token, submitted_at = doc.get("anonymous_token"), doc.get("submitted_at")
                if isinstance(submitted_at, str):
                    submitted_at = datetime.fromisoformat(submitted_at)
                if token and isinstance(submitted_at, datetime):
                    if unkeyed_receipt_hash(token, submitted_at) in receipts:
                        derivable += 1
        if derivable:
            self.add_issue(
                IssueSeverity.CRITICAL,
                "Receipts derivable from stored evaluations",
                f"{derivable} evaluation records reproduce an enrollment receipt hash from their own fields.",
                "Key receipts with RECEIPT_SECRET so they cannot be recomputed from a record.",
            )

        evaluated = [doc for doc in self._enrollment_docs if doc.get("has_evaluated")]
        if evaluated:
            with_receipt = sum(1 for doc in evaluated if doc.get("receipt_hash"))
            rate = with_receipt / len(evaluated)
            if rate < 1:
                self.add_warning(
                    WarningLevel.INFO,
                    "Receipt adoption",
                    f"{rate:.0%} of evaluated enrollments carry a receipt hash.",
                    "Enrollments evaluated before receipts existed have none.",
                )

    async def check_timestamp_rounding(self) -> None:
        probe = datetime(2024, 5, 17, 10, 37, 12, 345000, tzinfo=timezone.utc)
        if get_safe_submission_timestamp(probe) != datetime(2024, 5, 17, 10, tzinfo=timezone.utc):
            self.add_issue(
                IssueSeverity.WARNING,
                "Timestamp rounding incorrect",
                "get_safe_submission_timestamp() did not round the probe down to the hour.",
                "Zero minutes, seconds and microseconds before storing.",
            )

        unrounded = 0
        for doc in self._sample:
            value = doc.get("submitted_at")
            if isinstance(value, str):
                value = datetime.fromisoformat(value)
            if isinstance(value, datetime) and (value.minute or value.second or value.microsecond):
                unrounded += 1
        if unrounded:
            self.add_issue(
                IssueSeverity.WARNING,
                "Precise submission timestamps stored",
                f"{unrounded} sampled records have timestamps not rounded to the hour.",
                "Store get_safe_submission_timestamp() output only.",
            )

    async def check_session_minimization(self) -> None:
        probe = {
            "student_id": "probe",
            "full_name": "Probe Student",
            "email": "probe@example.edu",
            "enrollments": ["e1", "e2"],
        }
        minimized = clear_sensitive_session_data(probe)
        allowed = set(SESSION_ALLOWED_KEYS) | {"last_activity"}
        if not set(minimized).issubset(allowed):
            self.add_issue(
                IssueSeverity.WARNING,
                "Session data not minimized",
                f"Session keeps {sorted(set(minimized) - allowed)} after minimization.",
                "Keep only the keys required to authorize a submission.",
            )

    async def check_dp_budget(self) -> None:
        if self.tracker is None:
            self.add_issue(
                IssueSeverity.CRITICAL,
                "Differential privacy budget tracking inactive",
                "No DP budget tracker is available; repeated queries could average away noise.",
                "Route every statistical read through DPBudgetTracker.execute_query().",
            )
            return

        config = self.tracker.config
        if config.query_epsilon > config.total_budget:
            self.add_issue(
                IssueSeverity.WARNING,
                "DP budget misconfigured",
                f"Per-query epsilon {config.query_epsilon} exceeds the window budget {config.total_budget}.",
                "Lower DP_QUERY_EPSILON or raise DP_TOTAL_BUDGET.",
            )
        if config.total_budget > 10:
            self.add_warning(
                WarningLevel.WARNING,
                "Weak privacy budget",
                f"A window budget of {config.total_budget} gives little privacy protection.",
                "Use a total budget of 1.0 or less per window.",
            )

        status = self.tracker.get_budget_status()
        if status.budget_exhausted:
            self.add_warning(
                WarningLevel.WARNING,
                "DP budget exhausted",
                f"No statistical queries are possible until {status.window_end.isoformat()}.",
                "Wait for the window to rotate; reset only in an emergency.",
            )

    async def check_k_anonymity_enforcement(self) -> None:
        k = self.settings.K_ANONYMITY_THRESHOLD
        if k < 5:
            self.add_issue(
                IssueSeverity.WARNING,
                "k-anonymity threshold too low",
                f"K_ANONYMITY_THRESHOLD is {k}; small groups could be re-identified.",
                "Use a threshold of at least 5.",
            )
        if check_k_anonymity(k - 1, k) or not check_k_anonymity(k, k):
            self.add_issue(
                IssueSeverity.CRITICAL,
                "k-anonymity gate incorrect",
                "check_k_anonymity() did not enforce the configured threshold.",
                "Restore the group_size >= k comparison.",
            )

        sizes = Counter(doc.get("teacher_id") for doc in self._evaluation_docs if doc.get("teacher_id"))
        suppressed = sum(1 for size in sizes.values() if not check_k_anonymity(size, k))
        if suppressed:
            self.add_warning(
                WarningLevel.INFO,
                "Groups below k-anonymity threshold",
                f"{suppressed} teachers have fewer than {k} evaluations; their statistics are suppressed.",
            )

    async def check_audit_log_hygiene(self) -> None:
        entry = create_privacy_safe_audit_log(
            "audit_probe",
            "privacy_audit",
            {"student_id": "probe", "email": "probe@example.edu", "course_id": "c-1"},
        )
        leaked = [key for key in entry["metadata"] if key.lower() in FORBIDDEN_IDENTITY_FIELDS]
        if leaked or not _AUDIT_TOKEN_PATTERN.match(str(entry.get("audit_token", ""))):
            self.add_issue(
                IssueSeverity.CRITICAL,
                "Audit logs carry identity fields",
                "The probe audit-log entry kept identity fields or lacked an audit token.",
                "Build audit entries only with create_privacy_safe_audit_log().",
            )

    async def check_pre_storage_validation(self) -> None:
        probe = validate_anonymous_submission({"student_number": "21-1234-567", "comments": "Good class"})
        if probe.is_valid:
            self.add_issue(
                IssueSeverity.CRITICAL,
                "Pre-storage validation missing",
                "A payload containing student_number passed validation.",
                "Reject every field in FORBIDDEN_IDENTITY_FIELDS before storage.",
            )

        if not self.cipher.is_configured():
            return

        identifying = 0
        unreadable = 0
        for doc in self._sample:
            if not is_encrypted(doc.get("comments")):
                continue
            text = safe_decrypt(doc["comments"], self.cipher)
            if text == DECRYPTION_ERROR_SENTINEL:
                unreadable += 1
            elif self.sanitizer.find_identity_patterns(text):
                identifying += 1

        if identifying:
            self.add_issue(
                IssueSeverity.WARNING,
                "Stored comments contain identifying patterns",
                f"{identifying} sampled comments match identity patterns.",
                "Review and purge the affected comments.",
            )
        if unreadable:
            self.add_warning(
                WarningLevel.WARNING,
                "Undecryptable comments",
                f"{unreadable} sampled comments cannot be decrypted with the current master key.",
                "Re-wrap data keys after a master key rotation.",
            )

    async def check_comment_encryption(self) -> None:
        plaintext = 0
        malformed = 0
        outdated = 0
        for doc in self._evaluation_docs:
            comments = doc.get("comments")
            if not comments:
                continue
            if isinstance(comments, str):
                plaintext += 1
            elif not is_encrypted(comments):
                malformed += 1
            elif comments.get("format_version") != FORMAT_VERSION:
                outdated += 1

        if plaintext:
            self.add_issue(
                IssueSeverity.CRITICAL,
                "Plaintext comments stored",
                f"{plaintext} evaluation comments are stored without encryption.",
                "Encrypt existing comments and require encryption on submission.",
            )
        if malformed:
            self.add_issue(
                IssueSeverity.WARNING,
                "Malformed encrypted comments",
                f"{malformed} evaluation comments are not valid encrypted values.",
                "Inspect the affected records.",
            )
        if outdated:
            self.add_warning(
                WarningLevel.INFO,
                "Older encryption format",
                f"{outdated} comments use a format version other than {FORMAT_VERSION}.",
            )

    async def check_stylometric_sanitization(self) -> None:
        normalization_probes = {
            "Great class!!!!": "Great class!",
            "Why though???": "Why though?",
            "Well......": "Well...",
            "Too   many    spaces": "Too many spaces",
        }
        for text, expected in normalization_probes.items():
            verdict = self.sanitizer.evaluate(text)
            if not verdict.valid or verdict.sanitized != expected:
                self.add_issue(
                    IssueSeverity.WARNING,
                    "Stylometric normalization incomplete",
                    f"Punctuation or spacing was not normalized for probe {text!r}.",
                    "Collapse repeated punctuation and whitespace in comments.",
                )
                break

        for text in ("my student number is 21-1234-567", "Reach me at jdoe@example.edu"):
            if self.sanitizer.evaluate(text).valid:
                self.add_issue(
                    IssueSeverity.CRITICAL,
                    "Self-identifying comments accepted",
                    "A comment containing a student id or email address passed sanitization.",
                    "Restore the identity patterns in the comment sanitizer.",
                )
                break

        ordinary = "Great teacher, very organized"
        if self.sanitizer.evaluate(ordinary).sanitized != ordinary:
            self.add_issue(
                IssueSeverity.WARNING,
                "Sanitizer alters ordinary feedback",
                "Ordinary feedback was changed by sanitization.",
                "Narrow the sanitizer rules.",
            )


async def run_privacy_audit(
    evaluations: EvaluationRepository,
    enrollments: EnrollmentRepository,
    cipher: EnvelopeCipher,
    tracker: Optional[DPBudgetTracker],
    settings: Optional[Settings] = None,
) -> AuditReport:
    """Run the full audit and return its report."""
    auditor = PrivacyAuditor(evaluations, enrollments, cipher, tracker, settings)
    await auditor.run_full_audit()
    return auditor.generate_report()
