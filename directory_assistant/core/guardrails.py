"""
Admission guardrails: rate limits and spending limits.

Enforcement Order:
1. Rate limits - minute, hour, day windows per requester identifier
2. Budget limits - cumulative spend for the current day and calendar month

A request must pass every gate before any costly work starts. When the
counter store or the usage ledger cannot be read the guard fails open and
admits the request in degraded mode.
"""

import logging
import math
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Callable, Optional

from directory_assistant.config.loader import AssistantSettings
from directory_assistant.storage.counters import WINDOWS
from directory_assistant.storage.repository import UsageRepository

logger = logging.getLogger(__name__)


class DenialReason(Enum):
    """Why a request was refused."""
    RATE_LIMITED = auto()     # Wait for the window to roll over
    BUDGET_EXCEEDED = auto()  # Spending cap reached, contact support


class AssistantError(Exception):
    """Base class for errors surfaced to the person asking.

    ``str(error)`` is a plain message safe to show in the chat.
    """


class AssistantDisabled(AssistantError):
    """Raised when the assistant is switched off in settings."""
    def __init__(self, message: str = (
            "El asistente virtual está temporalmente no disponible. Inténtalo más tarde.")):
        super().__init__(message)


class RateLimited(AssistantError):
    """Raised when a rate-limit window is exhausted."""
    def __init__(self, window: str, retry_after: datetime, now: Optional[datetime] = None):
        self.window = window
        self.retry_after = retry_after
        now = now or datetime.now(timezone.utc)
        super().__init__(
            "Has alcanzado el límite de preguntas. "
            f"Inténtalo nuevamente en {_format_wait(retry_after - now)}."
        )


class BudgetExceeded(AssistantError):
    """Raised when the daily or monthly spending cap is reached."""
    def __init__(self, period: str):
        self.period = period
        super().__init__(
            "El asistente alcanzó su límite de uso por ahora. "
            "Si necesitas ayuda, contacta a soporte."
        )


def _format_wait(delta) -> str:
    """Render a wait as whole minutes up to an hour, whole hours beyond."""
    minutes = max(1, math.ceil(delta.total_seconds() / 60))
    if minutes <= 60:
        return f"{minutes} minuto{'s' if minutes > 1 else ''}"
    hours = math.ceil(minutes / 60)
    return f"{hours} hora{'s' if hours > 1 else ''}"


@dataclass(frozen=True)
class AdmissionDecision:
    """Result of running every admission gate for one request."""
    allowed: bool
    reason: Optional[DenialReason] = None
    window: Optional[str] = None
    retry_after: Optional[datetime] = None
    degraded: bool = False

    def raise_for_denial(self, now: Optional[datetime] = None) -> None:
        """Raise the typed error matching a denial; no-op when allowed."""
        if self.allowed:
            return
        if self.reason == DenialReason.RATE_LIMITED:
            raise RateLimited(self.window, self.retry_after, now)
        raise BudgetExceeded(self.window)


@dataclass(frozen=True)
class BudgetState:
    """Current spend against the configured caps."""
    spent_today: float
    spent_month: float
    daily_budget: float
    monthly_budget: float

    @property
    def exceeded_period(self) -> Optional[str]:
        if self.spent_today >= self.daily_budget:
            return "day"
        if self.spent_month >= self.monthly_budget:
            return "month"
        return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RateGuard:
    """Budget and rate guard shared by every conversation session.

    Args:
        counter_store: SQLiteCounterStore or InMemoryCounterStore
        usage_repository: Ledger the daily and monthly spend is summed from
        clock: Returns the current aware UTC time
    """

    def __init__(
        self,
        counter_store,
        usage_repository: UsageRepository,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.counter_store = counter_store
        self.usage_repository = usage_repository
        self.clock = clock

    def budget_state(self, settings: AssistantSettings, now: datetime) -> BudgetState:
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        month_start = day_start.replace(day=1)
        return BudgetState(
            spent_today=self.usage_repository.total_cost_since(day_start),
            spent_month=self.usage_repository.total_cost_since(month_start),
            daily_budget=settings.daily_budget_usd,
            monthly_budget=settings.monthly_budget_usd
        )

    def admit(self, identifier: str, settings: AssistantSettings) -> AdmissionDecision:
        """Run the rate and budget gates for one request.

        On admission one slot of every window has been taken. A budget
        denial hands those slots back, so only admitted requests count.

        Args:
            identifier: Authenticated user id or network address
            settings: Settings read for this request

        Returns:
            AdmissionDecision
        """
        now = self.clock()
        limits = {window: settings.rate_limits[window] for window in WINDOWS}

        try:
            counters = self.counter_store.acquire(identifier, limits, now)
        except sqlite3.Error as exc:
            logger.warning(
                "rate limit store unavailable, admitting in degraded mode "
                "identifier=%s error=%s", identifier, exc
            )
            return AdmissionDecision(allowed=True, degraded=True)

        if not counters.allowed:
            logger.info(
                "rate limit reached identifier=%s window=%s reset_at=%s",
                identifier, counters.window, counters.reset_at.isoformat()
            )
            return AdmissionDecision(
                allowed=False,
                reason=DenialReason.RATE_LIMITED,
                window=counters.window,
                retry_after=counters.reset_at
            )

        try:
            budget = self.budget_state(settings, now)
        except sqlite3.Error as exc:
            logger.warning(
                "usage ledger unavailable for budget check, admitting in degraded mode "
                "identifier=%s error=%s", identifier, exc
            )
            return AdmissionDecision(allowed=True, degraded=True)

        period = budget.exceeded_period
        if period is not None:
            logger.warning(
                "budget exceeded period=%s spent_today=%.6f spent_month=%.6f",
                period, budget.spent_today, budget.spent_month
            )
            self._release(identifier, now)
            return AdmissionDecision(
                allowed=False,
                reason=DenialReason.BUDGET_EXCEEDED,
                window=period
            )

        return AdmissionDecision(allowed=True)

    def _release(self, identifier: str, now: datetime) -> None:
        try:
            self.counter_store.release(identifier, WINDOWS, now)
        except sqlite3.Error as exc:
            logger.warning("could not release rate limit slots identifier=%s error=%s", identifier, exc)
