import enum
import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Enum, Integer, JSON, String, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import Timestamped
from shared.exceptions import ErrorType


class Severity(enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class Impact(enum.Enum):
    MINIMAL = "MINIMAL"
    MODERATE = "MODERATE"
    SEVERE = "SEVERE"
    CRITICAL = "CRITICAL"


class EntityType(enum.Enum):
    WALLET = "WALLET"
    TRANSACTION = "TRANSACTION"
    BLOCK = "BLOCK"
    USER = "USER"
    SYSTEM = "SYSTEM"
    EXTERNAL_API = "EXTERNAL_API"


class IncidentStatus(enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    IGNORED = "IGNORED"
    ESCALATED = "ESCALATED"


class RetryStrategy(enum.Enum):
    IMMEDIATE = "IMMEDIATE"
    FIXED_DELAY = "FIXED_DELAY"
    EXPONENTIAL_BACKOFF = "EXPONENTIAL_BACKOFF"
    NO_RETRY = "NO_RETRY"


FIXED_RETRY_DELAY_MS = 60_000
BACKOFF_BASE_MS = 1_000
BACKOFF_CAP_MS = 300_000
DEFAULT_MAX_RETRIES = 3

# error type -> (impact, severity)
_ASSESSMENT = {
    ErrorType.RPC_ERROR: (Impact.CRITICAL, Severity.CRITICAL),
    ErrorType.SWEEP_FAIL: (Impact.SEVERE, Severity.HIGH),
    ErrorType.TX_FAIL: (Impact.SEVERE, Severity.HIGH),
    ErrorType.GAS_FAIL: (Impact.SEVERE, Severity.HIGH),
    ErrorType.WALLET_ERROR: (Impact.SEVERE, Severity.HIGH),
    ErrorType.TIMEOUT_ERROR: (Impact.MODERATE, Severity.MEDIUM),
}


def assess_impact(error_type: ErrorType):
    """Return (impact, severity) for an error type"""
    return _ASSESSMENT.get(error_type, (Impact.MINIMAL, Severity.LOW))


def _values(enum_cls):
    return [e.value for e in enum_cls]


class SystemIncident(Timestamped):
    """
    A persisted failure, carrying its own retry and escalation state.

    Automatic retries move the incident PENDING -> PENDING until
    ``retry_count`` reaches ``max_retries``, at which point it is escalated
    and left for an operator. Escalation is sticky for the retry path.
    """
    __tablename__ = "system_incidents"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    error_type: Mapped[ErrorType] = mapped_column(
        Enum(ErrorType, values_callable=_values), nullable=False, index=True)
    severity: Mapped[Severity] = mapped_column(
        Enum(Severity, values_callable=_values), nullable=False, default=Severity.LOW, index=True)
    impact: Mapped[Impact] = mapped_column(
        Enum(Impact, values_callable=_values), nullable=False, default=Impact.MINIMAL)
    entity_type: Mapped[EntityType] = mapped_column(
        Enum(EntityType, values_callable=_values), nullable=False, default=EntityType.SYSTEM)
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    stack_trace: Mapped[str | None] = mapped_column(Text, nullable=True)
    service: Mapped[str] = mapped_column(String(64), nullable=False, default="deposit_sweeper")

    status: Mapped[IncidentStatus] = mapped_column(
        Enum(IncidentStatus, values_callable=_values), nullable=False, default=IncidentStatus.PENDING, index=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_MAX_RETRIES)
    retry_strategy: Mapped[RetryStrategy] = mapped_column(
        Enum(RetryStrategy, values_callable=_values), nullable=False, default=RetryStrategy.EXPONENTIAL_BACKOFF)
    next_retry_at: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True, index=True)

    is_escalated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escalated_at: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True)
    escalated_to: Mapped[str | None] = mapped_column(String(128), nullable=True)
    escalation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    resolution: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    resolved_at: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    first_occurred_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=datetime.datetime.utcnow)
    last_occurred_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=datetime.datetime.utcnow)

    __table_args__ = (
        Index("ix_incidents_entity", "entity_type", "entity_id"),
    )

    @classmethod
    def create(cls, error_type: ErrorType, error_message: str,
               entity_type: EntityType = EntityType.SYSTEM, entity_id: str = None,
               context: dict = None, stack_trace: str = None, service: str = "deposit_sweeper",
               retry_strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF,
               max_retries: int = DEFAULT_MAX_RETRIES) -> 'SystemIncident':
        now = datetime.datetime.utcnow()
        impact, severity = assess_impact(error_type)
        incident = cls(
            error_type=error_type,
            severity=severity,
            impact=impact,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            error_message=error_message,
            context=context or {},
            stack_trace=stack_trace,
            service=service,
            status=IncidentStatus.PENDING,
            retry_count=0,
            max_retries=max_retries,
            retry_strategy=retry_strategy,
            is_escalated=False,
            first_occurred_at=now,
            last_occurred_at=now,
        )
        incident.schedule_next_retry(now)
        return incident

    def retry_delay_ms(self) -> Optional[int]:
        if self.retry_strategy == RetryStrategy.NO_RETRY:
            return None
        if self.retry_strategy == RetryStrategy.IMMEDIATE:
            return 0
        if self.retry_strategy == RetryStrategy.FIXED_DELAY:
            return FIXED_RETRY_DELAY_MS
        return min(BACKOFF_BASE_MS * 2 ** (self.retry_count or 0), BACKOFF_CAP_MS)

    def schedule_next_retry(self, now: datetime.datetime = None):
        delay = self.retry_delay_ms()
        if delay is None:
            self.next_retry_at = None
            return
        now = now or datetime.datetime.utcnow()
        self.next_retry_at = now + datetime.timedelta(milliseconds=delay)

    def needs_retry(self, now: datetime.datetime = None) -> bool:
        if self.status != IncidentStatus.PENDING or self.is_escalated:
            return False
        if self.retry_strategy == RetryStrategy.NO_RETRY:
            return False
        if self.retry_count >= self.max_retries:
            return False
        now = now or datetime.datetime.utcnow()
        return self.next_retry_at is None or self.next_retry_at <= now

    def increment_retry(self, error_message: str = None):
        """Count a failed retry; escalates once max_retries is reached"""
        now = datetime.datetime.utcnow()
        self.retry_count = (self.retry_count or 0) + 1
        self.last_occurred_at = now
        if error_message:
            self.error_message = error_message

        if self.retry_count >= self.max_retries:
            self.escalate(f"Max retries ({self.max_retries}) exceeded")
        else:
            self.status = IncidentStatus.PENDING
            self.schedule_next_retry(now)

    def escalate(self, reason: str, escalated_to: str = "admin"):
        self.status = IncidentStatus.ESCALATED
        self.is_escalated = True
        self.escalated_at = datetime.datetime.utcnow()
        self.escalated_to = escalated_to
        self.escalation_reason = reason
        self.next_retry_at = None

    def resolve(self, resolved_by: str = "system", resolution: str = "FIXED", notes: str = None):
        self.status = IncidentStatus.RESOLVED
        self.resolution = resolution
        self.resolved_by = resolved_by
        self.resolved_at = datetime.datetime.utcnow()
        self.resolution_notes = notes
        self.next_retry_at = None

    def ignore(self, resolved_by: str, notes: str = None):
        self.status = IncidentStatus.IGNORED
        self.resolution = "IGNORED"
        self.resolved_by = resolved_by
        self.resolved_at = datetime.datetime.utcnow()
        self.resolution_notes = notes
        self.next_retry_at = None

    def __repr__(self):
        return f"<SystemIncident {self.id}: {self.error_type.value} {self.status.value}>"
