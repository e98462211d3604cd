from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from flask import current_app


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class LendingPolicy:
    max_books_per_member: int = 5
    borrow_period_days: int = 14
    daily_fine_rate: Decimal = Decimal("5.00")
    grace_period_days: int = 0
    max_fine_amount: Optional[Decimal] = None
    max_renewals_allowed: int = 2
    extension_days: int = 7
    extension_grace_days: int = 7
    lost_book_fine: Decimal = Decimal("500.00")
    damaged_book_fine: Decimal = Decimal("200.00")

    @classmethod
    def from_config(cls, config) -> "LendingPolicy":
        max_fine = config.get("MAX_FINE_AMOUNT")
        policy = cls(
            max_books_per_member=int(config.get("MAX_BOOKS_PER_MEMBER", 5)),
            borrow_period_days=int(config.get("BORROW_PERIOD_DAYS", 14)),
            daily_fine_rate=_money(config.get("DAILY_FINE_RATE", "5.00")),
            grace_period_days=int(config.get("GRACE_PERIOD_DAYS", 0)),
            max_fine_amount=_money(max_fine) if max_fine is not None else None,
            max_renewals_allowed=int(config.get("MAX_RENEWALS_ALLOWED", 2)),
            extension_days=int(config.get("EXTENSION_DAYS", 7)),
            extension_grace_days=int(config.get("EXTENSION_GRACE_DAYS", 7)),
            lost_book_fine=_money(config.get("LOST_BOOK_FINE", "500.00")),
            damaged_book_fine=_money(config.get("DAMAGED_BOOK_FINE", "200.00")),
        )
        policy.validate()
        return policy

    def validate(self) -> None:
        if self.max_books_per_member < 1:
            raise ValueError("MAX_BOOKS_PER_MEMBER must be at least 1")
        if self.borrow_period_days < 1:
            raise ValueError("BORROW_PERIOD_DAYS must be at least 1")
        if self.daily_fine_rate < 0:
            raise ValueError("DAILY_FINE_RATE must not be negative")
        if self.grace_period_days < 0:
            raise ValueError("GRACE_PERIOD_DAYS must not be negative")
        if self.max_fine_amount is not None and self.max_fine_amount < 0:
            raise ValueError("MAX_FINE_AMOUNT must not be negative")
        if self.max_renewals_allowed < 0:
            raise ValueError("MAX_RENEWALS_ALLOWED must not be negative")


def current_policy() -> LendingPolicy:
    return current_app.extensions["lending_policy"]
