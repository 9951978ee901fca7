"""
Dunning data model.

Pydantic models for sequences, steps, payment failures, the per-customer
dunning state machine, execution records, lifecycle events and the payloads
exchanged with injected callbacks.
"""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def generate_state_id() -> str:
    """Generate a unique dunning state ID."""
    return f"dun_{uuid4().hex}"


def generate_failure_id() -> str:
    """Generate a unique payment failure ID."""
    return f"pf_{uuid4().hex}"


# ============================================================================
# Enumerations
# ============================================================================


class DunningAction(str, Enum):
    """Actions a dunning step can take."""

    NOTIFY = "notify"
    RETRY_PAYMENT = "retry_payment"
    LIMIT_FEATURES = "limit_features"
    SUSPEND = "suspend"
    CANCEL = "cancel"
    CUSTOM = "custom"


class NotificationChannel(str, Enum):
    """Notification delivery channels."""

    EMAIL = "email"
    SMS = "sms"
    IN_APP = "in_app"
    WEBHOOK = "webhook"
    PUSH = "push"


class AccessLevel(str, Enum):
    """Product access granted to a customer during dunning."""

    FULL = "full"
    LIMITED = "limited"
    READ_ONLY = "read_only"
    NONE = "none"


class DunningStatus(str, Enum):
    """Dunning process status."""

    ACTIVE = "active"
    RECOVERED = "recovered"
    EXHAUSTED = "exhausted"
    CANCELED = "canceled"
    PAUSED = "paused"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {DunningStatus.RECOVERED, DunningStatus.EXHAUSTED, DunningStatus.CANCELED}
)


class DunningEndReason(str, Enum):
    """Why a dunning process ended."""

    PAYMENT_RECOVERED = "payment_recovered"
    MAX_RETRIES = "max_retries"
    MANUALLY_CANCELED = "manually_canceled"
    # Set by hosts through cancel_dunning(end_reason=...)
    SUBSCRIPTION_CANCELED = "subscription_canceled"


class PaymentFailureCategory(str, Enum):
    """Payment failure reason categories used for retry decisions."""

    CARD_DECLINED = "card_declined"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    CARD_EXPIRED = "card_expired"
    INVALID_CARD = "invalid_card"
    PROCESSING_ERROR = "processing_error"
    AUTHENTICATION_REQUIRED = "authentication_required"
    FRAUD_SUSPECTED = "fraud_suspected"
    VELOCITY_EXCEEDED = "velocity_exceeded"
    UNKNOWN = "unknown"


class DunningEventType(str, Enum):
    """Lifecycle event types."""

    STARTED = "dunning.started"
    STEP_EXECUTED = "dunning.step_executed"
    PAYMENT_RETRIED = "dunning.payment_retried"
    NOTIFICATION_SENT = "dunning.notification_sent"
    ACCESS_LIMITED = "dunning.access_limited"
    SUSPENDED = "dunning.suspended"
    PAYMENT_RECOVERED = "dunning.payment_recovered"
    EXHAUSTED = "dunning.exhausted"
    PAUSED = "dunning.paused"
    RESUMED = "dunning.resumed"
    CANCELED = "dunning.canceled"


# ============================================================================
# Payment failure
# ============================================================================


class PaymentFailure(BaseModel):
    """One failed charge. Immutable once recorded."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_failure_id, description="Unique failure ID")
    customer_id: str = Field(description="Customer identifier")
    subscription_id: str = Field(description="Subscription identifier")
    invoice_id: str | None = Field(None, description="Invoice identifier, if any")
    amount: int = Field(ge=0, description="Failed amount in minor units (cents)")
    currency: str = Field("usd", description="Currency code")
    category: PaymentFailureCategory = Field(PaymentFailureCategory.UNKNOWN)
    error_code: str = Field("", description="Raw provider error code")
    error_message: str = Field("", description="Human-readable error message")
    provider: str = Field("unknown", description="Payment provider name")
    failed_at: datetime = Field(default_factory=utc_now)
    retry_count: int = Field(0, ge=0, description="Retry attempts so far")
    next_retry_at: datetime | None = None
    is_recoverable: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("failed_at")
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        """Naive timestamps are taken to be UTC."""
        return as_utc(v)


# ============================================================================
# Sequences and steps
# ============================================================================

StepCondition = Callable[..., bool | Awaitable[bool]]
CustomAction = Callable[..., Awaitable[None] | None]


class DunningStep(BaseModel):
    """One stage of a dunning sequence."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, description="Step ID, unique within the sequence")
    name: str = Field("", description="Display name")
    days_after_failure: int = Field(ge=0, description="Offset in days from the failure")
    hours_offset: int | None = Field(None, ge=0, le=23, description="Hour of day to fire at")
    actions: tuple[DunningAction, ...] = Field(default=())
    notification_channels: tuple[NotificationChannel, ...] = Field(default=())
    notification_template_id: str | None = None
    access_level: AccessLevel | None = Field(
        None, description="Access level applied by limit_features"
    )
    is_final: bool = False
    custom_action: CustomAction | None = Field(None, exclude=True)
    condition: StepCondition | None = Field(None, exclude=True)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_action_requirements(self) -> "DunningStep":
        if DunningAction.LIMIT_FEATURES in self.actions and self.access_level is None:
            raise ValueError(f"step {self.id!r}: limit_features requires access_level")
        if DunningAction.CUSTOM in self.actions and self.custom_action is None:
            raise ValueError(f"step {self.id!r}: custom action requires custom_action")
        return self

    @property
    def template_id(self) -> str:
        return self.notification_template_id or f"dunning-{self.id}"


class DunningSequence(BaseModel):
    """A named, ordered dunning policy."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str = ""
    description: str | None = None
    steps: tuple[DunningStep, ...] = Field(default=())
    max_duration_days: int = Field(28, ge=0)
    is_active: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_unique_step_ids(self) -> "DunningSequence":
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"sequence {self.id!r}: duplicate step id {step.id!r}")
            seen.add(step.id)
        return self

    def step_at(self, index: int) -> DunningStep | None:
        """Step at ``index`` or None when out of range."""
        if 0 <= index < len(self.steps):
            return self.steps[index]
        return None


# ============================================================================
# State machine
# ============================================================================


class ExecutedStep(BaseModel):
    """Audit record of one step execution. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    step_name: str = ""
    executed_at: datetime
    actions_taken: tuple[DunningAction, ...] = ()
    payment_retried: bool = False
    payment_succeeded: bool | None = None
    transaction_id: str | None = None
    notifications_sent: tuple[NotificationChannel, ...] = ()
    error: str | None = None


class DunningState(BaseModel):
    """Per-customer dunning state machine instance."""

    id: str = Field(default_factory=generate_state_id)
    customer_id: str
    subscription_id: str
    sequence_id: str
    current_step_index: int = Field(0, ge=0)
    current_step_id: str
    status: DunningStatus = DunningStatus.ACTIVE
    initial_failure: PaymentFailure
    failures: list[PaymentFailure] = Field(default_factory=list)
    executed_steps: list[ExecutedStep] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utc_now)
    last_step_at: datetime | None = None
    next_step_at: datetime | None = None
    ended_at: datetime | None = None
    end_reason: DunningEndReason | None = None
    total_retry_attempts: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == DunningStatus.ACTIVE

    @property
    def latest_failure(self) -> PaymentFailure:
        return self.failures[-1] if self.failures else self.initial_failure

    @property
    def amount_owed(self) -> int:
        """Total owed across every accumulated failure, in minor units."""
        return sum(failure.amount for failure in self.failures)


class ScheduledStep(BaseModel):
    """A step scheduled for execution by the external scheduler."""

    model_config = ConfigDict(frozen=True)

    state_id: str
    step_id: str
    scheduled_at: datetime

    @field_validator("scheduled_at")
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        return as_utc(v)


# ============================================================================
# Execution context
# ============================================================================


class CustomerSnapshot(BaseModel):
    """Customer details available to step handlers."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str | None = None
    name: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_state(cls, state: DunningState) -> "CustomerSnapshot":
        email = state.metadata.get("customer_email")
        name = state.metadata.get("customer_name")
        extra = state.metadata.get("customer")
        return cls(
            id=state.customer_id,
            email=email if isinstance(email, str) else None,
            name=name if isinstance(name, str) else None,
            metadata=extra if isinstance(extra, dict) else {},
        )


class SubscriptionSnapshot(BaseModel):
    """Subscription details available to step handlers."""

    model_config = ConfigDict(frozen=True)

    id: str
    plan_id: str | None = None
    status: str = "past_due"
    current_period_end: datetime | None = None

    @classmethod
    def from_state(cls, state: DunningState) -> "SubscriptionSnapshot":
        plan_id = state.metadata.get("plan_id")
        return cls(
            id=state.subscription_id,
            plan_id=plan_id if isinstance(plan_id, str) else None,
        )


class DunningContext(BaseModel):
    """Everything a step needs to run, built once per execution."""

    model_config = ConfigDict(frozen=True)

    state: DunningState
    step: DunningStep
    latest_failure: PaymentFailure
    customer: CustomerSnapshot
    subscription: SubscriptionSnapshot
    days_since_failure: int
    amount_owed: int
    currency: str


# ============================================================================
# Callback payloads
# ============================================================================


class NotificationRecipient(BaseModel):
    model_config = ConfigDict(frozen=True)

    customer_id: str
    email: str | None = None
    phone: str | None = None
    user_id: str | None = None


class NotificationVariables(BaseModel):
    """Template variables for a dunning notification."""

    model_config = ConfigDict(frozen=True)

    amount: int
    currency: str
    days_since_failure: int
    customer_name: str | None = None
    update_payment_url: str | None = None
    invoice_url: str | None = None
    support_url: str | None = None


class DunningNotification(BaseModel):
    """Request handed to the notification callback."""

    model_config = ConfigDict(frozen=True)

    channel: NotificationChannel
    template_id: str
    recipient: NotificationRecipient
    variables: NotificationVariables
    context: DunningContext


class NotificationResult(BaseModel):
    """Outcome reported by the notification callback."""

    model_config = ConfigDict(frozen=True)

    success: bool
    channel: NotificationChannel
    external_id: str | None = None
    error: str | None = None
    sent_at: datetime = Field(default_factory=utc_now)


class RetryResult(BaseModel):
    """Outcome reported by the payment retry callback."""

    model_config = ConfigDict(frozen=True)

    success: bool
    transaction_id: str | None = None
    failure: PaymentFailure | None = None
    attempted_at: datetime = Field(default_factory=utc_now)
    provider_response: dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Events
# ============================================================================


class DunningEvent(BaseModel):
    """Notification of a dunning lifecycle transition."""

    model_config = ConfigDict(frozen=True)

    type: DunningEventType
    customer_id: str
    subscription_id: str
    dunning_state_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    data: dict[str, Any] = Field(default_factory=dict)
