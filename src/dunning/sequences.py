"""
Built-in dunning sequences and the sequence catalog.

Four policies ship by default, selected by plan tier:

- ``lenient`` (45 days) for enterprise plans
- ``standard-saas`` (28 days) for pro plans
- ``aggressive`` (14 days) for starter plans
- ``minimal`` (7 days) for free and trial plans
"""

from collections.abc import Iterable, Iterator, Mapping
from types import MappingProxyType

from dunning.exceptions import SequenceNotFoundError
from dunning.models import (
    AccessLevel,
    DunningAction,
    DunningSequence,
    DunningStep,
    NotificationChannel,
)

NOTIFY = DunningAction.NOTIFY
RETRY = DunningAction.RETRY_PAYMENT
LIMIT = DunningAction.LIMIT_FEATURES
SUSPEND = DunningAction.SUSPEND
CANCEL = DunningAction.CANCEL

EMAIL = NotificationChannel.EMAIL
SMS = NotificationChannel.SMS
IN_APP = NotificationChannel.IN_APP


STANDARD_SAAS_SEQUENCE = DunningSequence(
    id="standard-saas",
    name="Standard SaaS Dunning",
    description="Standard 28-day dunning sequence for SaaS applications",
    max_duration_days=28,
    steps=(
        DunningStep(
            id="immediate-retry",
            name="Immediate Retry",
            days_after_failure=0,
            actions=(RETRY, NOTIFY),
            notification_channels=(EMAIL,),
            notification_template_id="dunning-payment-failed",
        ),
        DunningStep(
            id="day-1-reminder",
            name="Day 1 Reminder",
            days_after_failure=1,
            hours_offset=10,
            actions=(RETRY, NOTIFY),
            notification_channels=(EMAIL,),
            notification_template_id="dunning-reminder",
        ),
        DunningStep(
            id="day-3-warning",
            name="Day 3 Warning",
            days_after_failure=3,
            hours_offset=10,
            actions=(RETRY, NOTIFY),
            notification_channels=(EMAIL,),
            notification_template_id="dunning-warning",
        ),
        DunningStep(
            id="day-7-limit",
            name="Day 7 Feature Limit",
            days_after_failure=7,
            hours_offset=10,
            actions=(RETRY, NOTIFY, LIMIT),
            notification_channels=(EMAIL, IN_APP),
            notification_template_id="dunning-feature-limit",
            access_level=AccessLevel.LIMITED,
        ),
        DunningStep(
            id="day-14-suspend",
            name="Day 14 Suspension",
            days_after_failure=14,
            hours_offset=10,
            actions=(RETRY, NOTIFY, SUSPEND, LIMIT),
            notification_channels=(EMAIL, IN_APP),
            notification_template_id="dunning-suspension",
            access_level=AccessLevel.READ_ONLY,
        ),
        DunningStep(
            id="day-21-final-warning",
            name="Day 21 Final Warning",
            days_after_failure=21,
            hours_offset=10,
            actions=(NOTIFY,),
            notification_channels=(EMAIL,),
            notification_template_id="dunning-final-warning",
        ),
        DunningStep(
            id="day-28-cancel",
            name="Day 28 Cancellation",
            days_after_failure=28,
            hours_offset=10,
            actions=(NOTIFY, CANCEL, LIMIT),
            notification_channels=(EMAIL,),
            notification_template_id="dunning-canceled",
            access_level=AccessLevel.NONE,
            is_final=True,
        ),
    ),
)

AGGRESSIVE_SEQUENCE = DunningSequence(
    id="aggressive",
    name="Aggressive Dunning",
    description="Aggressive 14-day dunning sequence",
    max_duration_days=14,
    steps=(
        DunningStep(
            id="immediate",
            name="Immediate Retry",
            days_after_failure=0,
            actions=(RETRY, NOTIFY),
            notification_channels=(EMAIL,),
            notification_template_id="dunning-payment-failed",
        ),
        DunningStep(
            id="day-1",
            name="Day 1",
            days_after_failure=1,
            actions=(RETRY, NOTIFY),
            notification_channels=(EMAIL, SMS),
            notification_template_id="dunning-urgent",
        ),
        DunningStep(
            id="day-3-limit",
            name="Day 3 Limit",
            days_after_failure=3,
            actions=(RETRY, NOTIFY, LIMIT),
            notification_channels=(EMAIL, IN_APP),
            notification_template_id="dunning-feature-limit",
            access_level=AccessLevel.LIMITED,
        ),
        DunningStep(
            id="day-7-suspend",
            name="Day 7 Suspend",
            days_after_failure=7,
            actions=(RETRY, NOTIFY, SUSPEND, LIMIT),
            notification_channels=(EMAIL, SMS, IN_APP),
            notification_template_id="dunning-suspension",
            access_level=AccessLevel.READ_ONLY,
        ),
        DunningStep(
            id="day-14-cancel",
            name="Day 14 Cancel",
            days_after_failure=14,
            actions=(NOTIFY, CANCEL, LIMIT),
            notification_channels=(EMAIL,),
            notification_template_id="dunning-canceled",
            access_level=AccessLevel.NONE,
            is_final=True,
        ),
    ),
)

LENIENT_SEQUENCE = DunningSequence(
    id="lenient",
    name="Lenient Dunning",
    description="Lenient 45-day dunning sequence for enterprise customers",
    max_duration_days=45,
    steps=(
        DunningStep(
            id="immediate",
            name="Immediate Retry",
            days_after_failure=0,
            actions=(RETRY, NOTIFY),
            notification_channels=(EMAIL,),
            notification_template_id="dunning-payment-failed-enterprise",
        ),
        DunningStep(
            id="day-3",
            name="Day 3 Reminder",
            days_after_failure=3,
            actions=(RETRY, NOTIFY),
            notification_channels=(EMAIL,),
            notification_template_id="dunning-reminder-enterprise",
        ),
        DunningStep(
            id="day-7",
            name="Day 7 Reminder",
            days_after_failure=7,
            actions=(RETRY, NOTIFY),
            notification_channels=(EMAIL,),
            notification_template_id="dunning-reminder-enterprise",
        ),
        DunningStep(
            id="day-14",
            name="Day 14 Warning",
            days_after_failure=14,
            actions=(RETRY, NOTIFY),
            notification_channels=(EMAIL, IN_APP),
            notification_template_id="dunning-warning-enterprise",
        ),
        DunningStep(
            id="day-21-limit",
            name="Day 21 Feature Limit",
            days_after_failure=21,
            actions=(RETRY, NOTIFY, LIMIT),
            notification_channels=(EMAIL, IN_APP),
            notification_template_id="dunning-feature-limit-enterprise",
            access_level=AccessLevel.LIMITED,
        ),
        DunningStep(
            id="day-30-suspend",
            name="Day 30 Suspension",
            days_after_failure=30,
            actions=(RETRY, NOTIFY, SUSPEND, LIMIT),
            notification_channels=(EMAIL, IN_APP),
            notification_template_id="dunning-suspension-enterprise",
            access_level=AccessLevel.READ_ONLY,
        ),
        DunningStep(
            id="day-40-final",
            name="Day 40 Final Warning",
            days_after_failure=40,
            actions=(NOTIFY,),
            notification_channels=(EMAIL,),
            notification_template_id="dunning-final-warning-enterprise",
        ),
        DunningStep(
            id="day-45-cancel",
            name="Day 45 Cancel",
            days_after_failure=45,
            actions=(NOTIFY, CANCEL, LIMIT),
            notification_channels=(EMAIL,),
            notification_template_id="dunning-canceled-enterprise",
            access_level=AccessLevel.NONE,
            is_final=True,
        ),
    ),
)

MINIMAL_SEQUENCE = DunningSequence(
    id="minimal",
    name="Minimal Dunning",
    description="Minimal 7-day dunning sequence",
    max_duration_days=7,
    steps=(
        DunningStep(
            id="immediate",
            name="Immediate Retry",
            days_after_failure=0,
            actions=(RETRY, NOTIFY),
            notification_channels=(EMAIL,),
            notification_template_id="dunning-payment-failed",
        ),
        DunningStep(
            id="day-3",
            name="Day 3",
            days_after_failure=3,
            actions=(RETRY, NOTIFY),
            notification_channels=(EMAIL,),
            notification_template_id="dunning-reminder",
        ),
        DunningStep(
            id="day-7-cancel",
            name="Day 7 Cancel",
            days_after_failure=7,
            actions=(NOTIFY, CANCEL, LIMIT),
            notification_channels=(EMAIL,),
            notification_template_id="dunning-canceled",
            access_level=AccessLevel.NONE,
            is_final=True,
        ),
    ),
)

DEFAULT_SEQUENCES: tuple[DunningSequence, ...] = (
    STANDARD_SAAS_SEQUENCE,
    AGGRESSIVE_SEQUENCE,
    LENIENT_SEQUENCE,
    MINIMAL_SEQUENCE,
)


def sequence_for_tier(tier: int) -> DunningSequence:
    """
    Pick a built-in sequence for a plan tier.

    Args:
        tier: Plan tier (0=free, 1=starter, 2=pro, 3=enterprise)
    """
    if tier >= 3:
        return LENIENT_SEQUENCE
    if tier >= 2:
        return STANDARD_SAAS_SEQUENCE
    if tier >= 1:
        return AGGRESSIVE_SEQUENCE
    return MINIMAL_SEQUENCE


class SequenceCatalog(Mapping[str, DunningSequence]):
    """Immutable mapping of sequence id to sequence."""

    def __init__(self, sequences: Iterable[DunningSequence] = DEFAULT_SEQUENCES) -> None:
        registry: dict[str, DunningSequence] = {}
        for sequence in sequences:
            registry[sequence.id] = sequence
        self._sequences = MappingProxyType(registry)

    def __getitem__(self, sequence_id: str) -> DunningSequence:
        return self._sequences[sequence_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._sequences)

    def __len__(self) -> int:
        return len(self._sequences)

    def __repr__(self) -> str:
        return f"SequenceCatalog({list(self._sequences)!r})"

    def require(self, sequence_id: str) -> DunningSequence:
        """Return the sequence or raise SequenceNotFoundError."""
        try:
            return self._sequences[sequence_id]
        except KeyError:
            raise SequenceNotFoundError(
                f"Dunning sequence {sequence_id!r} is not registered",
                sequence_id=sequence_id,
            ) from None

    def for_tier(self, tier: int) -> DunningSequence:
        """Registered sequence matching the built-in tier policy."""
        return self.require(sequence_for_tier(tier).id)

    def with_sequences(self, *sequences: DunningSequence) -> "SequenceCatalog":
        """New catalog with ``sequences`` added or replacing same-id entries."""
        return SequenceCatalog([*self._sequences.values(), *sequences])
