"""
Dunning step executor.

Runs the actions of one step against the injected callbacks and produces the
immutable ``ExecutedStep`` audit record. Every action in ``DunningAction`` has
a handler; the executor refuses to start if one is missing.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from dunning.config import DunningManagerConfig
from dunning.events import DunningEventBus, maybe_await
from dunning.exceptions import DunningConfigurationError
from dunning.models import (
    AccessLevel,
    DunningAction,
    DunningContext,
    DunningEventType,
    DunningNotification,
    ExecutedStep,
    NotificationChannel,
    NotificationRecipient,
    NotificationResult,
    NotificationVariables,
)

logger = structlog.get_logger(__name__)

CANCEL_REASON = "dunning_exhausted"


@dataclass
class _StepOutcome:
    """Mutable accumulator for one step run, frozen into an ExecutedStep."""

    actions_taken: list[DunningAction] = field(default_factory=list)
    payment_retried: bool = False
    payment_succeeded: bool | None = None
    transaction_id: str | None = None
    notifications_sent: list[NotificationChannel] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def freeze(self, context: DunningContext, executed_at: datetime) -> ExecutedStep:
        return ExecutedStep(
            step_id=context.step.id,
            step_name=context.step.name,
            executed_at=executed_at,
            actions_taken=tuple(self.actions_taken),
            payment_retried=self.payment_retried,
            payment_succeeded=self.payment_succeeded,
            transaction_id=self.transaction_id,
            notifications_sent=tuple(self.notifications_sent),
            error="; ".join(self.errors) or None,
        )


# A handler returns True when the action actually ran and should be recorded.
ActionHandler = Callable[[DunningContext, _StepOutcome], Awaitable[bool]]


class StepExecutor:
    """Executes dunning step actions in order."""

    def __init__(self, config: DunningManagerConfig, event_bus: DunningEventBus):
        self.config = config
        self.event_bus = event_bus
        self._handlers: dict[DunningAction, ActionHandler] = {
            DunningAction.NOTIFY: self._notify,
            DunningAction.RETRY_PAYMENT: self._retry_payment,
            DunningAction.LIMIT_FEATURES: self._limit_features,
            DunningAction.SUSPEND: self._suspend,
            DunningAction.CANCEL: self._cancel,
            DunningAction.CUSTOM: self._custom,
        }
        missing = set(DunningAction) - set(self._handlers)
        if missing:
            raise DunningConfigurationError(
                "No handler registered for dunning actions",
                context={"actions": sorted(a.value for a in missing)},
            )

    async def execute(self, context: DunningContext) -> ExecutedStep:
        """
        Run every action of ``context.step``.

        A failing action is logged and recorded on ``ExecutedStep.error``;
        the remaining actions still run. A successful payment retry stops
        the step immediately.
        """
        step = context.step
        outcome = _StepOutcome()

        for action in step.actions:
            try:
                ran = await self._handlers[action](context, outcome)
            except Exception as e:
                logger.exception(
                    "dunning.action.failed",
                    dunning_id=context.state.id,
                    customer_id=context.customer.id,
                    step_id=step.id,
                    action=action.value,
                )
                outcome.errors.append(f"{action.value}: {e}")
                continue

            if ran:
                outcome.actions_taken.append(action)
            if outcome.payment_succeeded:
                logger.info(
                    "dunning.step.short_circuited",
                    dunning_id=context.state.id,
                    step_id=step.id,
                    transaction_id=outcome.transaction_id,
                )
                break

        executed = outcome.freeze(context, self.config.clock())

        await self._emit(
            context,
            DunningEventType.STEP_EXECUTED,
            step_id=step.id,
            step_name=step.name,
            actions_taken=[a.value for a in executed.actions_taken],
        )

        logger.info(
            "dunning.step.executed",
            dunning_id=context.state.id,
            customer_id=context.customer.id,
            step_id=step.id,
            actions_taken=[a.value for a in executed.actions_taken],
            payment_succeeded=executed.payment_succeeded,
            error=executed.error,
        )
        return executed

    # ------------------------------------------------------------------
    # Action handlers
    # ------------------------------------------------------------------

    async def _notify(self, context: DunningContext, outcome: _StepOutcome) -> bool:
        if self.config.on_notification is None:
            return False

        for channel in context.step.notification_channels:
            result = await self._send_notification(context, channel)
            if not result.success:
                logger.warning(
                    "dunning.notification.failed",
                    dunning_id=context.state.id,
                    channel=channel.value,
                    error=result.error,
                )
                continue

            outcome.notifications_sent.append(channel)
            await self._emit(
                context,
                DunningEventType.NOTIFICATION_SENT,
                channel=channel.value,
                template_id=context.step.template_id,
                external_id=result.external_id,
            )
        return True

    async def _send_notification(
        self, context: DunningContext, channel: NotificationChannel
    ) -> NotificationResult:
        notification = self.build_notification(context, channel)
        try:
            return await maybe_await(self.config.on_notification(notification))
        except Exception as e:
            logger.exception(
                "dunning.notification.error",
                dunning_id=context.state.id,
                channel=channel.value,
            )
            return NotificationResult(
                success=False, channel=channel, error=str(e), sent_at=self.config.clock()
            )

    def build_notification(
        self, context: DunningContext, channel: NotificationChannel
    ) -> DunningNotification:
        """Notification request for one channel."""
        urls = self.config.urls
        return DunningNotification(
            channel=channel,
            template_id=context.step.template_id,
            recipient=NotificationRecipient(
                customer_id=context.customer.id,
                email=context.customer.email,
            ),
            variables=NotificationVariables(
                amount=context.amount_owed,
                currency=context.currency,
                days_since_failure=context.days_since_failure,
                customer_name=context.customer.name,
                update_payment_url=urls.update_payment,
                invoice_url=urls.view_invoice,
                support_url=urls.support,
            ),
            context=context,
        )

    async def _retry_payment(self, context: DunningContext, outcome: _StepOutcome) -> bool:
        if self.config.on_retry_payment is None:
            return False

        result = await maybe_await(self.config.on_retry_payment(context))
        outcome.payment_retried = True
        outcome.payment_succeeded = result.success
        outcome.transaction_id = result.transaction_id

        await self._emit(
            context,
            DunningEventType.PAYMENT_RETRIED,
            success=result.success,
            transaction_id=result.transaction_id,
        )
        return True

    async def _limit_features(self, context: DunningContext, outcome: _StepOutcome) -> bool:
        access_level = context.step.access_level
        if self.config.on_access_update is None or access_level is None:
            return False

        await maybe_await(self.config.on_access_update(context.customer.id, access_level))
        await self._emit(
            context, DunningEventType.ACCESS_LIMITED, access_level=access_level.value
        )
        return True

    async def _suspend(self, context: DunningContext, outcome: _StepOutcome) -> bool:
        if self.config.on_access_update is None:
            return False

        await maybe_await(
            self.config.on_access_update(context.customer.id, AccessLevel.READ_ONLY)
        )
        await self._emit(context, DunningEventType.SUSPENDED)
        return True

    async def _cancel(self, context: DunningContext, outcome: _StepOutcome) -> bool:
        if self.config.on_cancel_subscription is None:
            return False

        await maybe_await(
            self.config.on_cancel_subscription(context.subscription.id, CANCEL_REASON)
        )
        return True

    async def _custom(self, context: DunningContext, outcome: _StepOutcome) -> bool:
        if context.step.custom_action is None:
            return False

        await maybe_await(context.step.custom_action(context))
        return True

    async def _emit(
        self, context: DunningContext, event_type: DunningEventType, **data: Any
    ) -> None:
        await self.event_bus.emit(
            event_type,
            customer_id=context.customer.id,
            subscription_id=context.subscription.id,
            dunning_state_id=context.state.id,
            timestamp=self.config.clock(),
            **data,
        )
