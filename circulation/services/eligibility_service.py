from __future__ import annotations

from dataclasses import dataclass, asdict
from decimal import Decimal
from typing import Optional

from circulation.clock import now
from circulation.errors import (
    CirculationError,
    HasOverdueBooks,
    HasUnpaidFines,
    LimitExceeded,
)
from circulation.policy import current_policy
from circulation.repositories.loan_repo import LoanRepo
from circulation.services.fine_service import FineService


@dataclass(frozen=True)
class MemberBorrowProfile:
    member_id: int
    current_borrowed_count: int
    max_allowed: int
    outstanding_fines_total: Decimal
    overdue_count: int

    @property
    def remaining(self) -> int:
        return max(0, self.max_allowed - self.current_borrowed_count)

    def to_dict(self):
        data = asdict(self)
        data["outstanding_fines_total"] = float(self.outstanding_fines_total)
        data["remaining"] = self.remaining
        return data


@dataclass(frozen=True)
class EligibilityResult:
    allowed: bool
    error: Optional[CirculationError] = None

    @property
    def code(self) -> Optional[str]:
        return self.error.code if self.error else None

    @property
    def message(self) -> str:
        return self.error.message if self.error else "Member may borrow"

    def raise_for_denial(self) -> None:
        if self.error is not None:
            raise self.error


OK = EligibilityResult(allowed=True)


def can_borrow(profile: MemberBorrowProfile, requested_quantity: int = 1) -> EligibilityResult:
    """First failing rule wins; the order is part of the contract."""
    if requested_quantity < 1:
        raise ValueError("requested_quantity must be at least 1")

    # 1) limit
    if profile.current_borrowed_count + requested_quantity > profile.max_allowed:
        return EligibilityResult(False, LimitExceeded(
            f"Borrowing {requested_quantity} more would exceed the limit of "
            f"{profile.max_allowed} books ({profile.current_borrowed_count} on loan)",
            current=profile.current_borrowed_count,
            max_allowed=profile.max_allowed,
            requested=requested_quantity,
        ))

    # 2) fines
    if profile.outstanding_fines_total > 0:
        return EligibilityResult(False, HasUnpaidFines(
            f"Outstanding fines of {profile.outstanding_fines_total} must be paid first",
            outstanding=float(profile.outstanding_fines_total),
        ))

    # 3) overdue loans
    if profile.overdue_count > 0:
        return EligibilityResult(False, HasOverdueBooks(
            f"{profile.overdue_count} overdue book(s) must be returned first",
            overdue=profile.overdue_count,
        ))

    return OK


class EligibilityService:
    @staticmethod
    def build_profile(member_id: int) -> MemberBorrowProfile:
        """Read straight from the session; persistence errors propagate and
        the request is denied rather than evaluated against a blank profile."""
        at = now()
        return MemberBorrowProfile(
            member_id=member_id,
            current_borrowed_count=LoanRepo.count_open(member_id),
            max_allowed=current_policy().max_books_per_member,
            outstanding_fines_total=FineService.outstanding_total(member_id, at),
            overdue_count=len(LoanRepo.find_overdue(at, member_id)),
        )

    @staticmethod
    def check(member_id: int, requested_quantity: int = 1) -> EligibilityResult:
        return can_borrow(EligibilityService.build_profile(member_id), requested_quantity)
