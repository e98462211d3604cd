"""Overdue fine arithmetic.

Days are counted on calendar dates: a loan due on the 10th and returned on
the 15th is five days late whatever the hour of return.
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Union

CENT = Decimal("0.01")

DateLike = Union[date, datetime]


def _as_date(value: DateLike) -> date:
    return value.date() if isinstance(value, datetime) else value


def overdue_days(due_date: DateLike, reference_date: DateLike, grace_period_days: int = 0) -> int:
    if grace_period_days < 0:
        raise ValueError("grace_period_days must not be negative")
    late = (_as_date(reference_date) - _as_date(due_date)).days - grace_period_days
    return max(0, late)


def compute_fine(
    due_date: DateLike,
    reference_date: DateLike,
    daily_rate,
    grace_period_days: int = 0,
    max_fine_amount=None,
) -> Decimal:
    """Fine owed at ``reference_date`` for a loan due at ``due_date``.

    ``reference_date`` is the return date of a returned loan, or the
    current time for an open one.
    """
    rate = Decimal(str(daily_rate))
    if rate < 0:
        raise ValueError("daily_rate must not be negative")

    days = overdue_days(due_date, reference_date, grace_period_days)
    amount = rate * days
    if max_fine_amount is not None:
        amount = min(amount, Decimal(str(max_fine_amount)))
    return amount.quantize(CENT)


def fine_for_policy(due_date: DateLike, reference_date: DateLike, policy) -> Decimal:
    return compute_fine(
        due_date,
        reference_date,
        policy.daily_fine_rate,
        policy.grace_period_days,
        policy.max_fine_amount,
    )


def money(value: Optional[object]) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENT)
