"""
Dunning manager configuration.

Holds the sequence catalog, the injected callbacks and the links passed to
notification templates. Build it directly, or from environment settings with
``DunningManagerConfig.from_settings``.
"""

from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from dunning.exceptions import DunningConfigurationError
from dunning.models import (
    AccessLevel,
    DunningContext,
    DunningEvent,
    DunningNotification,
    NotificationResult,
    RetryResult,
    utc_now,
)
from dunning.sequences import SequenceCatalog
from dunning.settings import DunningSettings, get_settings

RetryPaymentCallback = Callable[[DunningContext], RetryResult | Awaitable[RetryResult]]
AccessUpdateCallback = Callable[[str, AccessLevel], Awaitable[None] | None]
CancelSubscriptionCallback = Callable[[str, str], Awaitable[None] | None]
NotificationCallback = Callable[
    [DunningNotification], NotificationResult | Awaitable[NotificationResult]
]
EventCallback = Callable[[DunningEvent], Awaitable[None] | None]
TierResolver = Callable[[str], int | None | Awaitable[int | None]]


class DunningUrls(BaseModel):
    """Links rendered into dunning notifications"""

    model_config = ConfigDict(frozen=True)

    update_payment: str | None = Field(None, description="Update payment method URL")
    view_invoice: str | None = Field(None, description="Invoice URL")
    support: str | None = Field(None, description="Support URL")


class DunningManagerConfig(BaseModel):
    """Complete dunning manager configuration"""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    sequences: SequenceCatalog = Field(default_factory=SequenceCatalog)
    default_sequence_id: str = Field("standard-saas", description="Fallback sequence ID")
    tier_resolver: TierResolver | None = Field(
        None, description="Maps a customer ID to a plan tier for sequence selection"
    )

    on_retry_payment: RetryPaymentCallback | None = None
    on_access_update: AccessUpdateCallback | None = None
    on_cancel_subscription: CancelSubscriptionCallback | None = None
    on_notification: NotificationCallback | None = None
    on_event: EventCallback | None = None

    urls: DunningUrls = Field(default_factory=DunningUrls)
    timezone: str = Field("UTC", description="Timezone used to pin step hours")
    clock: Callable[[], datetime] = Field(utc_now, description="Source of the current time")

    @field_validator("sequences", mode="before")
    @classmethod
    def coerce_sequences(cls, v: Any) -> SequenceCatalog:
        if isinstance(v, SequenceCatalog):
            return v
        if isinstance(v, Iterable):
            return SequenceCatalog(v)
        raise ValueError("sequences must be a SequenceCatalog or an iterable of sequences")

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @model_validator(mode="after")
    def validate_default_sequence(self) -> "DunningManagerConfig":
        if self.default_sequence_id not in self.sequences:
            raise DunningConfigurationError(
                f"Default dunning sequence {self.default_sequence_id!r} is not registered",
                sequence_id=self.default_sequence_id,
                context={"registered": list(self.sequences)},
            )
        return self

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @classmethod
    def from_settings(
        cls, settings: DunningSettings | None = None, **overrides: Any
    ) -> "DunningManagerConfig":
        """Create configuration from settings, with callbacks passed as keyword overrides"""
        settings = settings or get_settings()

        config_dict: dict[str, Any] = {
            "default_sequence_id": settings.default_sequence,
            "timezone": settings.timezone,
            "urls": DunningUrls(
                update_payment=settings.urls.update_payment,
                view_invoice=settings.urls.view_invoice,
                support=settings.urls.support,
            ),
        }
        config_dict.update(overrides)

        return cls(**config_dict)
