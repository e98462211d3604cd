from datetime import timedelta
from typing import List, Optional

from flask import current_app

from circulation import events
from circulation.clock import now
from circulation.errors import (
    InvalidTransition,
    LoanNotFound,
    RenewalLimitExceeded,
    TooOverdueToExtend,
)
from circulation.extensions import db
from circulation.models.fine import FineKind
from circulation.models.loan import Loan, LoanStatus
from circulation.policy import current_policy
from circulation.repositories.loan_repo import LoanRepo
from circulation.services.eligibility_service import EligibilityService
from circulation.services.fine_service import FineService
from circulation.services.inventory_service import InventoryService, merge_items


class LoanService:
    @staticmethod
    def _load(loan_id: int, member_id: Optional[int] = None) -> Loan:
        """Lock the loan row. Someone else's loan looks like a missing one."""
        loan = LoanRepo.get_for_update(loan_id)
        if not loan or (member_id is not None and loan.member_id != member_id):
            raise LoanNotFound(loan_id=loan_id)
        return loan

    @staticmethod
    def _require_open(loan: Loan, action: str) -> None:
        if loan.status != LoanStatus.BORROWED:
            raise InvalidTransition(
                f"Cannot {action} a loan that is {loan.status}",
                loan_id=loan.id,
                status=loan.status,
            )

    @staticmethod
    def get_loan(loan_id: int, member_id: Optional[int] = None) -> Loan:
        loan = LoanRepo.get(loan_id)
        if not loan or (member_id is not None and loan.member_id != member_id):
            raise LoanNotFound(loan_id=loan_id)
        return loan

    @staticmethod
    def list_member_loans(member_id: int) -> List[Loan]:
        return LoanRepo.list_by_member(member_id)

    @staticmethod
    def list_overdue(member_id: int = None) -> List[Loan]:
        return LoanRepo.find_overdue(now(), member_id)

    @staticmethod
    def borrow(member_id: int, items) -> List[Loan]:
        """Lend copies of one or more titles, all of them or none.

        ``items`` is ``{title_id: quantity}`` or a list of pairs.
        """
        merged = merge_items(items)
        requested = sum(merged.values())

        EligibilityService.check(member_id, requested).raise_for_denial()

        InventoryService.reserve_many(merged)

        policy = current_policy()
        borrowed_at = now()
        due_date = borrowed_at + timedelta(days=policy.borrow_period_days)

        loans = []
        for title_id, quantity in sorted(merged.items()):
            for _ in range(quantity):
                loans.append(LoanRepo.add(Loan(
                    member_id=member_id,
                    title_id=title_id,
                    borrowed_at=borrowed_at,
                    due_date=due_date,
                    status=LoanStatus.BORROWED,
                    renewal_count=0,
                    max_renewals=policy.max_renewals_allowed,
                )))

        # single commit: reservation and loans together
        db.session.commit()

        current_app.logger.info(
            f"[loan] member={member_id} borrowed loans={[l.id for l in loans]} due={due_date.date()}"
        )
        for loan in loans:
            events.emit(
                events.loan_borrowed,
                loan_id=loan.id,
                member_id=member_id,
                title_id=loan.title_id,
                due_date=loan.due_date,
            )
        return loans

    @staticmethod
    def return_loan(loan_id: int, member_id: Optional[int] = None) -> Loan:
        loan = LoanService._load(loan_id, member_id)
        LoanService._require_open(loan, "return")

        returned_at = now()
        loan.returned_at = returned_at
        loan.status = LoanStatus.RETURNED

        fine = FineService.finalize(loan, returned_at)
        InventoryService.release(loan.title_id, 1)

        db.session.commit()

        current_app.logger.info(
            f"[loan] loan={loan.id} returned fine={loan.fine_amount}"
        )
        events.emit(events.loan_returned, loan_id=loan.id, member_id=loan.member_id,
                    title_id=loan.title_id, returned_at=returned_at)
        if fine is not None:
            events.emit(events.fine_finalized, fine_id=fine.id, loan_id=loan.id,
                        amount=fine.total_amount, kind=fine.kind)
        return loan

    @staticmethod
    def extend(loan_id: int, days: int = None, member_id: Optional[int] = None) -> Loan:
        policy = current_policy()
        days = policy.extension_days if days is None else int(days)
        if days <= 0:
            raise ValueError("days must be positive")

        loan = LoanService._load(loan_id, member_id)
        LoanService._require_open(loan, "extend")

        if loan.renewal_count >= loan.max_renewals:
            raise RenewalLimitExceeded(
                renewal_count=loan.renewal_count,
                max_renewals=loan.max_renewals,
            )

        if loan.fine is not None and loan.fine.is_accruing:
            FineService.require_not_in_payment(
                [loan.fine.id], "The fine of this loan is part of a payment in progress"
            )

        late_by = loan.days_past_due(now())
        if late_by > policy.extension_grace_days:
            raise TooOverdueToExtend(
                f"Loan is {late_by} days overdue; extensions are allowed up to "
                f"{policy.extension_grace_days} days past due",
                days_overdue=late_by,
            )

        loan.due_date = loan.due_date + timedelta(days=days)
        loan.renewal_count += 1

        # an accruing fine follows the new due date
        if loan.fine is not None and loan.fine.is_accruing:
            loan.fine.due_date = loan.due_date

        db.session.commit()

        current_app.logger.info(
            f"[loan] loan={loan.id} extended by {days}d to {loan.due_date.date()} "
            f"({loan.renewal_count}/{loan.max_renewals})"
        )
        events.emit(events.loan_extended, loan_id=loan.id, member_id=loan.member_id,
                    due_date=loan.due_date, renewal_count=loan.renewal_count)
        return loan

    @staticmethod
    def _report(loan_id: int, status: str, amount=None, member_id: Optional[int] = None) -> Loan:
        loan = LoanService._load(loan_id, member_id)
        LoanService._require_open(loan, f"report as {status}")

        kind = FineKind.LOST if status == LoanStatus.LOST else FineKind.DAMAGED
        fine = FineService.assess_fixed(loan, kind, amount)
        # the copy stays out of circulation until restocked or written off
        loan.status = status

        db.session.commit()

        current_app.logger.info(
            f"[loan] loan={loan.id} reported {status} fine={fine.total_amount}"
        )
        signal = events.loan_lost if status == LoanStatus.LOST else events.loan_damaged
        events.emit(signal, loan_id=loan.id, member_id=loan.member_id, title_id=loan.title_id)
        events.emit(events.fine_finalized, fine_id=fine.id, loan_id=loan.id,
                    amount=fine.total_amount, kind=fine.kind)
        return loan

    @staticmethod
    def report_lost(loan_id: int, amount=None, member_id: Optional[int] = None) -> Loan:
        return LoanService._report(loan_id, LoanStatus.LOST, amount, member_id)

    @staticmethod
    def report_damaged(loan_id: int, amount=None, member_id: Optional[int] = None) -> Loan:
        return LoanService._report(loan_id, LoanStatus.DAMAGED, amount, member_id)
