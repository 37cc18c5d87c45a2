"""
Roster window selection.

Bounds which requests are worth polling for replies to the roster
periods that are currently relevant, so polling cost doesn't grow with
the full request history.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Sequence, Union

from leavetrack.config import get_settings
from leavetrack.db.orm_models import RosterPeriod
from leavetrack.db.roster_store import RosterStore
from leavetrack.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CheckWindow:
    """Inclusive date range of request start dates to poll."""
    start: date
    end: date
    source: str  # relevant, fallback, default

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


def _as_date(value: Union[date, datetime]) -> date:
    return value.date() if isinstance(value, datetime) else value


def select_check_window(
    periods: Sequence[RosterPeriod],
    now: Union[date, datetime],
    lookback_days: int = 90,
    fallback_count: int = 3,
) -> CheckWindow:
    """
    Pick the polling window from the active roster periods.

    A period is relevant when it contains today, started within the
    lookback, or ends after the lookback start. The window spans the
    earliest relevant start to the latest relevant end. With no relevant
    period the last `fallback_count` periods are used; with no periods
    at all, the lookback itself.
    """
    today = _as_date(now)
    lookback_start = today - timedelta(days=lookback_days)

    relevant = [
        p for p in periods
        if (p.start_period <= today <= p.end_period)
        or p.start_period >= lookback_start
        or p.end_period >= lookback_start
    ]

    if relevant:
        return CheckWindow(
            start=min(p.start_period for p in relevant),
            end=max(p.end_period for p in relevant),
            source="relevant",
        )

    if periods:
        ordered = sorted(periods, key=lambda p: p.start_period)
        recent = ordered[-fallback_count:] if fallback_count > 0 else ordered
        return CheckWindow(
            start=min(p.start_period for p in recent),
            end=max(p.end_period for p in recent),
            source="fallback",
        )

    return CheckWindow(start=lookback_start, end=today, source="default")


class RosterWindowSelector:
    """select_check_window() fed from the roster period table."""

    def __init__(self, store: RosterStore, lookback_days: int = None, fallback_count: int = None):
        settings = get_settings()
        self.store = store
        self.lookback_days = lookback_days if lookback_days is not None else settings.reply_check_window_days
        self.fallback_count = fallback_count if fallback_count is not None else settings.reply_check_fallback_periods

    def select_check_window(self, now: Union[date, datetime]) -> CheckWindow:
        periods = self.store.active_periods()
        window = select_check_window(periods, now, self.lookback_days, self.fallback_count)
        logger.info(
            f"Reply check window {window.start}..{window.end} "
            f"({window.source}, {len(periods)} active periods)"
        )
        return window
