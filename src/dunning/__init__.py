"""
Dunning orchestration.

Automates recovery from failed subscription payments:
- Time-phased dunning sequences (notify, retry, limit, suspend, cancel)
- Per-customer dunning state machine with recovery and exhaustion
- Pluggable storage (in-memory and SQLAlchemy)
- Lifecycle events for observers
- Payment retry strategy and a scheduled-step runner
"""

from dunning.config import DunningManagerConfig, DunningUrls
from dunning.events import DunningEventBus
from dunning.exceptions import (
    DunningConfigurationError,
    DunningError,
    DuplicateActiveDunningError,
    SequenceNotFoundError,
)
from dunning.executor import StepExecutor
from dunning.manager import DunningManager, create_dunning_manager
from dunning.models import (
    AccessLevel,
    DunningAction,
    DunningContext,
    DunningEndReason,
    DunningEvent,
    DunningEventType,
    DunningNotification,
    DunningSequence,
    DunningState,
    DunningStatus,
    DunningStep,
    ExecutedStep,
    NotificationChannel,
    NotificationResult,
    PaymentFailure,
    PaymentFailureCategory,
    RetryResult,
    ScheduledStep,
)
from dunning.retry import PaymentRetrier, PaymentRetryCalculator, RetryStrategy
from dunning.scheduler import DunningScheduler, create_cron_handler
from dunning.sequences import (
    AGGRESSIVE_SEQUENCE,
    LENIENT_SEQUENCE,
    MINIMAL_SEQUENCE,
    STANDARD_SAAS_SEQUENCE,
    SequenceCatalog,
    sequence_for_tier,
)
from dunning.sql_storage import SQLAlchemyDunningStorage
from dunning.storage import DunningStorage, InMemoryDunningStorage

__all__ = [
    # Configuration
    "DunningManagerConfig",
    "DunningUrls",
    # Manager
    "DunningManager",
    "create_dunning_manager",
    "StepExecutor",
    "DunningEventBus",
    "DunningScheduler",
    "create_cron_handler",
    # Storage
    "DunningStorage",
    "InMemoryDunningStorage",
    "SQLAlchemyDunningStorage",
    # Sequences
    "SequenceCatalog",
    "sequence_for_tier",
    "STANDARD_SAAS_SEQUENCE",
    "AGGRESSIVE_SEQUENCE",
    "LENIENT_SEQUENCE",
    "MINIMAL_SEQUENCE",
    # Retry
    "PaymentRetrier",
    "PaymentRetryCalculator",
    "RetryStrategy",
    # Models
    "AccessLevel",
    "DunningAction",
    "DunningContext",
    "DunningEndReason",
    "DunningEvent",
    "DunningEventType",
    "DunningNotification",
    "DunningSequence",
    "DunningState",
    "DunningStatus",
    "DunningStep",
    "ExecutedStep",
    "NotificationChannel",
    "NotificationResult",
    "PaymentFailure",
    "PaymentFailureCategory",
    "RetryResult",
    "ScheduledStep",
    # Exceptions
    "DunningError",
    "DunningConfigurationError",
    "DuplicateActiveDunningError",
    "SequenceNotFoundError",
]
