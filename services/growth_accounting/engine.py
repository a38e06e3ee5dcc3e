"""
Growth accounting over a per-user, per-day activity stream.

Everything here is pure: events go in, result models come out. Periods are
identified by their first day (Monday for weeks, the 1st for months).

Month over month, the active users of month t split into
    active(t) = retained(t) + new(t) + resurrected(t)
and the active users of month t-1 split into
    active(t-1) = retained(t) - churned(t)
with churned stored as a non-positive number. The value-weighted (MRR style)
decomposition adds expansion and contraction so that
    amount(t) = retained + new + resurrected + expansion
    amount(t-1) = retained - contraction - churned
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set

from shared.models import LTVCohortResult, MAUResult, MRRResult

PeriodAmounts = Dict[date, Dict[str, float]]


@dataclass(frozen=True)
class ActivityEvent:
    """One unit of activity: ``amount`` done by ``user_id`` on ``day`` (UTC)."""

    user_id: str
    day: date
    amount: float = 1


class Granularity(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


def week_start(day: date) -> date:
    """Monday of the ISO week containing ``day``."""
    return day - timedelta(days=day.weekday())


def month_start(day: date) -> date:
    return day.replace(day=1)


def add_months(period: date, months: int) -> date:
    index = period.year * 12 + period.month - 1 + months
    return date(index // 12, index % 12 + 1, 1)


def months_between(start: date, end: date) -> int:
    return (end.year - start.year) * 12 + end.month - start.month


TRUNCATE: Dict[Granularity, Callable[[date], date]] = {
    Granularity.DAY: lambda day: day,
    Granularity.WEEK: week_start,
    Granularity.MONTH: month_start,
}


def roll_up(events: Iterable[ActivityEvent], granularity: Granularity) -> PeriodAmounts:
    """Sum amounts per (period, user)."""
    truncate = TRUNCATE[granularity]
    periods: PeriodAmounts = defaultdict(lambda: defaultdict(float))
    for event in events:
        periods[truncate(event.day)][event.user_id] += event.amount
    return {period: dict(users) for period, users in periods.items()}


def first_periods(events: Iterable[ActivityEvent], granularity: Granularity) -> Dict[str, date]:
    """Cohort of every user: the period of their earliest positive-amount day."""
    first_days: Dict[str, date] = {}
    for event in events:
        if event.amount <= 0:
            continue
        current = first_days.get(event.user_id)
        if current is None or event.day < current:
            first_days[event.user_id] = event.day

    truncate = TRUNCATE[granularity]
    return {user: truncate(day) for user, day in first_days.items()}


def decomposition_months(monthly: PeriodAmounts) -> List[date]:
    """Months with activity plus the month after each, which carries its churn."""
    months: Set[date] = set(monthly)
    months.update(add_months(month, 1) for month in monthly)
    return sorted(months)


def _positive(amounts: Dict[str, float]) -> Dict[str, float]:
    return {user: amount for user, amount in amounts.items() if amount > 0}


def _active(amounts: Dict[str, float]) -> Set[str]:
    return set(_positive(amounts))


def mau_decomposition(events: Iterable[ActivityEvent]) -> List[MAUResult]:
    """Active user decomposition for each month, ascending."""
    events = list(events)
    monthly = roll_up(events, Granularity.MONTH)
    first = first_periods(events, Granularity.MONTH)

    results = []
    for month in decomposition_months(monthly):
        current = _active(monthly.get(month, {}))
        previous = _active(monthly.get(add_months(month, -1), {}))

        new = {user for user in current if first[user] == month}
        results.append(
            MAUResult(
                period=month,
                active=len(current),
                retained=len(current & previous),
                new=len(new),
                resurrected=len(current - previous - new),
                churned=-len(previous - current),
            )
        )
    return results


def mrr_decomposition(events: Iterable[ActivityEvent]) -> List[MRRResult]:
    """Value-weighted decomposition for each month, ascending."""
    events = list(events)
    monthly = roll_up(events, Granularity.MONTH)
    first = first_periods(events, Granularity.MONTH)

    results = []
    for month in decomposition_months(monthly):
        current = _positive(monthly.get(month, {}))
        previous = _positive(monthly.get(add_months(month, -1), {}))
        row = MRRResult(period=month, amount=sum(current.values()))

        for user, amount in current.items():
            prior = previous.get(user)
            if prior is not None:
                row.retained += min(amount, prior)
            if first.get(user) == month:
                row.new += amount
            elif prior is None:
                row.resurrected += amount
            elif amount > prior:
                row.expansion += amount - prior
            elif amount < prior:
                row.contraction -= prior - amount

        for user, prior in previous.items():
            if user not in current:
                row.churned -= prior

        results.append(row)
    return results


def safe_ratio(numerator: float, cohort_size: Optional[int]) -> Optional[float]:
    """``numerator / cohort_size``, or None for an empty or unknown cohort."""
    if not cohort_size:
        return None
    return numerator / cohort_size


def ltv_cohorts(
    events: Iterable[ActivityEvent], granularity: Granularity = Granularity.WEEK
) -> List[LTVCohortResult]:
    """Cumulative value of each cohort, ordered by cohort then offset.

    A cohort has a row for every period in which any member was active; the
    offset 0 row defines the cohort size.
    """
    if granularity == Granularity.DAY:
        raise ValueError("Cohorts are weekly or monthly")

    events = list(events)
    periods = roll_up(events, granularity)
    first = first_periods(events, granularity)

    members: Dict[date, Dict[date, List[float]]] = defaultdict(lambda: defaultdict(list))
    for period, users in periods.items():
        for user, amount in users.items():
            cohort = first.get(user)
            if cohort is not None and period >= cohort:
                members[cohort][period].append(amount)

    results = []
    for cohort in sorted(members):
        cohort_size = None
        cumulative = 0.0
        for period in sorted(members[cohort]):
            amounts = members[cohort][period]
            if granularity == Granularity.WEEK:
                offset = (period - cohort).days // 7
            else:
                offset = months_between(cohort, period)

            active_users = sum(1 for amount in amounts if amount > 0)
            if offset == 0:
                cohort_size = active_users
            incremental = sum(amounts)
            cumulative += incremental

            results.append(
                LTVCohortResult(
                    cohort_period=cohort,
                    active_period=period,
                    periods_since_cohort_start=offset,
                    active_users=active_users,
                    cohort_size=cohort_size or 0,
                    retained_pct=safe_ratio(active_users, cohort_size),
                    incremental_amount=incremental,
                    cumulative_amount=cumulative,
                    cumulative_amount_per_user=safe_ratio(cumulative, cohort_size),
                )
            )
    return results
