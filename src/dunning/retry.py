"""
Payment retry strategy.

Maps provider error codes to failure categories, decides whether and when a
failed payment should be retried, and wraps a raw charge callback into an
``on_retry_payment`` callback that respects those decisions.
"""

from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import UTC, datetime, timedelta, tzinfo
from types import MappingProxyType

import structlog
from pydantic import BaseModel, ConfigDict, Field

from dunning.events import maybe_await
from dunning.models import DunningContext, PaymentFailure, PaymentFailureCategory, RetryResult
from dunning.settings import get_settings

logger = structlog.get_logger(__name__)

Category = PaymentFailureCategory


# ============================================================================
# Provider error codes
# ============================================================================


class ErrorCodeMapping(BaseModel):
    """Provider error code to failure category mapping"""

    model_config = ConfigDict(frozen=True)

    provider: str
    codes: dict[str, PaymentFailureCategory]


STRIPE_ERROR_CODES = ErrorCodeMapping(
    provider="stripe",
    codes={
        "card_declined": Category.CARD_DECLINED,
        "generic_decline": Category.CARD_DECLINED,
        "do_not_honor": Category.CARD_DECLINED,
        "transaction_not_allowed": Category.CARD_DECLINED,
        "insufficient_funds": Category.INSUFFICIENT_FUNDS,
        "expired_card": Category.CARD_EXPIRED,
        "invalid_expiry_month": Category.CARD_EXPIRED,
        "invalid_expiry_year": Category.CARD_EXPIRED,
        "invalid_number": Category.INVALID_CARD,
        "invalid_cvc": Category.INVALID_CARD,
        "incorrect_number": Category.INVALID_CARD,
        "incorrect_cvc": Category.INVALID_CARD,
        "processing_error": Category.PROCESSING_ERROR,
        "try_again_later": Category.PROCESSING_ERROR,
        "bank_not_supported": Category.PROCESSING_ERROR,
        "authentication_required": Category.AUTHENTICATION_REQUIRED,
        "card_not_supported": Category.AUTHENTICATION_REQUIRED,
        "fraudulent": Category.FRAUD_SUSPECTED,
        "merchant_blacklist": Category.FRAUD_SUSPECTED,
        "stolen_card": Category.FRAUD_SUSPECTED,
        "lost_card": Category.FRAUD_SUSPECTED,
        "rate_limit": Category.VELOCITY_EXCEEDED,
    },
)

PADDLE_ERROR_CODES = ErrorCodeMapping(
    provider="paddle",
    codes={
        "declined": Category.CARD_DECLINED,
        "insufficient_funds": Category.INSUFFICIENT_FUNDS,
        "card_expired": Category.CARD_EXPIRED,
        "invalid_card": Category.INVALID_CARD,
        "processing_error": Category.PROCESSING_ERROR,
        "authentication_required": Category.AUTHENTICATION_REQUIRED,
        "fraud": Category.FRAUD_SUSPECTED,
    },
)

# iyzico reports numeric bank response codes
IYZICO_ERROR_CODES = ErrorCodeMapping(
    provider="iyzico",
    codes={
        "10051": Category.INSUFFICIENT_FUNDS,
        "10054": Category.CARD_EXPIRED,
        "10057": Category.CARD_DECLINED,
        "10005": Category.INVALID_CARD,
        "10012": Category.INVALID_CARD,
        "10041": Category.FRAUD_SUSPECTED,
        "10043": Category.FRAUD_SUSPECTED,
        "10058": Category.CARD_DECLINED,
        "10034": Category.FRAUD_SUSPECTED,
    },
)

DEFAULT_ERROR_CODE_MAPPINGS: tuple[ErrorCodeMapping, ...] = (
    STRIPE_ERROR_CODES,
    PADDLE_ERROR_CODES,
    IYZICO_ERROR_CODES,
)


# ============================================================================
# Retry strategies
# ============================================================================


class RetryStrategy(BaseModel):
    """Retry policy for one failure category"""

    model_config = ConfigDict(frozen=True)

    category: PaymentFailureCategory
    should_retry: bool = Field(description="Whether this category is retried at all")
    initial_delay_hours: float = Field(0, ge=0)
    max_retries: int = Field(0, ge=0)
    backoff_multiplier: float = Field(1, ge=1)
    max_delay_hours: float = Field(0, ge=0)
    optimal_retry_hours: tuple[int, ...] = Field(default=(), description="Preferred hours of day")
    optimal_retry_days: tuple[int, ...] = Field(
        default=(), description="Preferred weekdays, 0=Sunday"
    )


def _no_retry(category: PaymentFailureCategory) -> RetryStrategy:
    return RetryStrategy(category=category, should_retry=False)


UNKNOWN_STRATEGY = RetryStrategy(
    category=Category.UNKNOWN,
    should_retry=True,
    initial_delay_hours=24,
    max_retries=2,
    backoff_multiplier=2,
    max_delay_hours=72,
)

DEFAULT_RETRY_STRATEGIES: tuple[RetryStrategy, ...] = (
    RetryStrategy(
        category=Category.CARD_DECLINED,
        should_retry=True,
        initial_delay_hours=24,
        max_retries=4,
        backoff_multiplier=2,
        max_delay_hours=168,
        optimal_retry_hours=(10, 14, 18),
        optimal_retry_days=(1, 2, 3, 4, 5),
    ),
    RetryStrategy(
        category=Category.INSUFFICIENT_FUNDS,
        should_retry=True,
        initial_delay_hours=72,
        max_retries=4,
        backoff_multiplier=1.5,
        max_delay_hours=168,
        optimal_retry_days=(0, 1, 2, 3),
    ),
    _no_retry(Category.CARD_EXPIRED),
    _no_retry(Category.INVALID_CARD),
    RetryStrategy(
        category=Category.PROCESSING_ERROR,
        should_retry=True,
        initial_delay_hours=1,
        max_retries=5,
        backoff_multiplier=2,
        max_delay_hours=24,
    ),
    # 3DS needs the customer
    _no_retry(Category.AUTHENTICATION_REQUIRED),
    _no_retry(Category.FRAUD_SUSPECTED),
    RetryStrategy(
        category=Category.VELOCITY_EXCEEDED,
        should_retry=True,
        initial_delay_hours=6,
        max_retries=3,
        backoff_multiplier=2,
        max_delay_hours=48,
    ),
    UNKNOWN_STRATEGY,
)

RECOMMENDATIONS: Mapping[PaymentFailureCategory, str] = MappingProxyType(
    {
        Category.CARD_DECLINED: "The payment was declined. We'll retry automatically.",
        Category.INSUFFICIENT_FUNDS: "There were insufficient funds. We'll retry around payday.",
        Category.CARD_EXPIRED: "Your card has expired. Please update your payment method.",
        Category.INVALID_CARD: (
            "The card information is invalid. Please update your payment method."
        ),
        Category.PROCESSING_ERROR: "A temporary processing error occurred. We'll retry shortly.",
        Category.AUTHENTICATION_REQUIRED: (
            "Additional authentication is required. Please complete the payment manually."
        ),
        Category.FRAUD_SUSPECTED: (
            "The payment was flagged. Please contact your bank or use a different card."
        ),
        Category.VELOCITY_EXCEEDED: "Too many payment attempts. We'll retry later.",
    }
)


def _weekday(moment: datetime) -> int:
    """Day of week with 0=Sunday."""
    return moment.isoweekday() % 7


def _nearest(current: int, values: tuple[int, ...]) -> int:
    """Closest value to ``current``; ties go to the earlier entry."""
    return min(values, key=lambda value: abs(current - value))


class PaymentRetryCalculator:
    """Decides whether and when a failed payment is retried."""

    def __init__(
        self,
        strategies: Iterable[RetryStrategy] = DEFAULT_RETRY_STRATEGIES,
        error_mappings: Iterable[ErrorCodeMapping] = DEFAULT_ERROR_CODE_MAPPINGS,
        tz: tzinfo = UTC,
    ):
        self.strategies = {strategy.category: strategy for strategy in strategies}
        self.error_mappings = {
            mapping.provider.lower(): {code.lower(): cat for code, cat in mapping.codes.items()}
            for mapping in error_mappings
        }
        self.tz = tz

    def categorize_error(self, provider: str, error_code: str) -> PaymentFailureCategory:
        """Category for a provider error code, ``unknown`` when unmapped."""
        codes = self.error_mappings.get(provider.lower(), {})
        return codes.get(error_code.lower(), Category.UNKNOWN)

    def get_strategy(self, category: PaymentFailureCategory) -> RetryStrategy:
        return self.strategies.get(category, UNKNOWN_STRATEGY)

    def should_retry(self, failure: PaymentFailure) -> bool:
        strategy = self.get_strategy(failure.category)

        if not strategy.should_retry:
            logger.debug(
                "dunning.retry.category_not_retryable",
                failure_id=failure.id,
                category=failure.category.value,
            )
            return False

        if failure.retry_count >= strategy.max_retries:
            logger.debug(
                "dunning.retry.max_retries_reached",
                failure_id=failure.id,
                category=failure.category.value,
                retry_count=failure.retry_count,
                max_retries=strategy.max_retries,
            )
            return False

        return True

    def calculate_next_retry(self, failure: PaymentFailure) -> datetime | None:
        """
        Next retry time for ``failure``, or None when it should not be retried.

        Delay grows by ``backoff_multiplier`` per previous retry, is capped at
        ``max_delay_hours`` and is then moved to the nearest preferred hour
        and weekday. The result is never earlier than the raw backoff time.
        """
        if not self.should_retry(failure):
            return None

        strategy = self.get_strategy(failure.category)
        delay_hours = min(
            strategy.initial_delay_hours * strategy.backoff_multiplier**failure.retry_count,
            strategy.max_delay_hours,
        )
        retry_at = failure.failed_at + timedelta(hours=delay_hours)
        retry_at = self._optimize(retry_at, strategy)

        logger.debug(
            "dunning.retry.next_retry_calculated",
            failure_id=failure.id,
            category=failure.category.value,
            retry_count=failure.retry_count,
            delay_hours=delay_hours,
            next_retry=retry_at.isoformat(),
        )
        return retry_at

    def _optimize(self, base: datetime, strategy: RetryStrategy) -> datetime:
        if not strategy.optimal_retry_hours and not strategy.optimal_retry_days:
            return base

        optimized = base.astimezone(self.tz)

        if strategy.optimal_retry_hours:
            hour = _nearest(optimized.hour, strategy.optimal_retry_hours)
            if hour != optimized.hour:
                rolled_back = hour < optimized.hour
                optimized = optimized.replace(hour=hour, minute=0, second=0, microsecond=0)
                if rolled_back:
                    optimized += timedelta(days=1)

        if strategy.optimal_retry_days:
            current = _weekday(optimized)
            day = _nearest(current, strategy.optimal_retry_days)
            if day != current:
                days_to_add = (day - current + 7) % 7
                optimized += timedelta(days=days_to_add or 7)

        return max(optimized, base)

    def is_recoverable(self, category: PaymentFailureCategory) -> bool:
        return self.get_strategy(category).should_retry

    def get_recommendation(self, category: PaymentFailureCategory) -> str:
        """Customer-facing explanation for a failure category."""
        return RECOMMENDATIONS.get(category, "An error occurred. We'll retry the payment.")


ChargeCallback = Callable[[DunningContext], RetryResult | Awaitable[RetryResult]]


class PaymentRetrier:
    """
    Guards a raw charge callback with the retry policy.

    Instances are callable and can be passed directly as
    ``DunningManagerConfig.on_retry_payment``.
    """

    def __init__(
        self,
        retry_payment: ChargeCallback,
        calculator: PaymentRetryCalculator | None = None,
        max_session_retries: int | None = None,
    ):
        self.retry_payment = retry_payment
        self.calculator = calculator or PaymentRetryCalculator()
        if max_session_retries is None:
            max_session_retries = get_settings().retry.max_session_retries
        self.max_session_retries = max_session_retries

    async def __call__(self, context: DunningContext) -> RetryResult:
        return await self.retry(context)

    async def retry(self, context: DunningContext) -> RetryResult:
        """
        Retry the latest failed payment of a dunning process.

        Unrecoverable failures and exhausted sessions are refused without
        calling the provider. A raising charge callback counts as a failed
        attempt.
        """
        failure = context.latest_failure

        if not self.calculator.should_retry(failure):
            logger.info(
                "dunning.retry.skipped_unrecoverable",
                failure_id=failure.id,
                category=failure.category.value,
                reason=self.calculator.get_recommendation(failure.category),
            )
            return RetryResult(success=False, failure=failure)

        if context.state.total_retry_attempts >= self.max_session_retries:
            logger.warning(
                "dunning.retry.session_limit_reached",
                customer_id=context.customer.id,
                total_attempts=context.state.total_retry_attempts,
                max_attempts=self.max_session_retries,
            )
            return RetryResult(success=False, failure=failure)

        logger.info(
            "dunning.retry.attempt",
            failure_id=failure.id,
            customer_id=context.customer.id,
            amount=failure.amount,
            retry_count=failure.retry_count,
        )

        try:
            result = await maybe_await(self.retry_payment(context))
        except Exception:
            logger.exception("dunning.retry.error", failure_id=failure.id)
            return RetryResult(success=False, failure=failure)

        if result.success:
            logger.info(
                "dunning.retry.succeeded",
                failure_id=failure.id,
                transaction_id=result.transaction_id,
            )
        else:
            logger.info(
                "dunning.retry.failed",
                failure_id=failure.id,
                new_failure_id=result.failure.id if result.failure else None,
            )
        return result

    def get_next_retry_time(self, failure: PaymentFailure) -> datetime | None:
        return self.calculator.calculate_next_retry(failure)

    def is_recoverable(self, failure: PaymentFailure) -> bool:
        return self.calculator.is_recoverable(failure.category)

    def categorize_error(self, provider: str, error_code: str) -> PaymentFailureCategory:
        return self.calculator.categorize_error(provider, error_code)
