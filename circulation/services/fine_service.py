from __future__ import annotations

from datetime import date, datetime, time, timedelta
from decimal import Decimal, InvalidOperation
from typing import Iterable, List, Optional

from flask import current_app

from circulation import events
from circulation.clock import now
from circulation.errors import FineNotFound, InvalidTransition
from circulation.extensions import db
from circulation.models.fine import Fine, FineKind, FineStatus
from circulation.models.loan import Loan
from circulation.policy import current_policy
from circulation.repositories.fine_repo import FineRepo
from circulation.repositories.loan_repo import LoanRepo
from circulation.repositories.payment_repo import PaymentRepo
from circulation.services.accrual import CENT, fine_for_policy, money, overdue_days

SEARCH_SORT_FIELDS = ("id", "due_date", "total_amount", "created_at", "member_id")
MAX_PAGE_SIZE = 100


def _optional_amount(value, name: str) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{name} must be a number")
    if not amount.is_finite() or amount < 0:
        raise ValueError(f"{name} must be a non-negative number")
    return amount


def _optional_date(value, name: str) -> Optional[date]:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValueError(f"{name} must be a date (YYYY-MM-DD)")


class FineService:
    @staticmethod
    def require_not_in_payment(fine_ids, message: str) -> None:
        in_flight = PaymentRepo.pending_fine_ids(fine_ids)
        if in_flight:
            raise InvalidTransition(message, fine_ids=sorted(in_flight))

    @staticmethod
    def _new_overdue_fine(loan: Loan, at: datetime) -> Fine:
        policy = current_policy()
        return Fine(
            loan_id=loan.id,
            member_id=loan.member_id,
            kind=FineKind.OVERDUE,
            due_date=loan.due_date,
            daily_rate=policy.daily_fine_rate,
            grace_days=policy.grace_period_days,
            max_amount=policy.max_fine_amount,
            status=FineStatus.OVERDUE,
            calculated_at=at,
        )

    @staticmethod
    def _snapshot(fine: Fine, at: datetime) -> None:
        fine.days_overdue = overdue_days(fine.due_date, at, fine.grace_days)
        fine.total_amount = fine.current_amount(at)
        fine.calculated_at = at

    @staticmethod
    def refresh_accruing_fines(member_id: int = None) -> int:
        """Create or update the accruing fine of every open overdue loan.

        Keeps fine rows (and their ids) in step with the clock so they can be
        listed and paid. Returns the number of rows created or updated.
        Does not commit.
        """
        at = now()
        policy = current_policy()
        changed = 0

        for loan in LoanRepo.find_overdue(at, member_id):
            if fine_for_policy(loan.due_date, at, policy) <= 0 and loan.fine is None:
                # still inside the grace period
                continue

            fine = loan.fine
            if fine is None:
                fine = FineService._new_overdue_fine(loan, at)
                FineRepo.add(fine)
                fine.loan = loan
            elif not fine.is_accruing:
                continue
            elif fine.due_date != loan.due_date:
                fine.due_date = loan.due_date

            FineService._snapshot(fine, at)
            changed += 1

        return changed

    @staticmethod
    def finalize(loan: Loan, returned_at: datetime) -> Optional[Fine]:
        """Fix the overdue fine of a loan being returned. Does not commit."""
        fine = loan.fine
        policy = current_policy()

        if fine is not None and not fine.is_accruing:
            # paid or waived while the loan was open: settled amount stands
            return fine

        if fine is None:
            amount = fine_for_policy(loan.due_date, returned_at, policy)
            if amount <= 0:
                return None
            fine = FineService._new_overdue_fine(loan, returned_at)
            FineRepo.add(fine)
            fine.loan = loan

        fine.due_date = loan.due_date
        FineService._snapshot(fine, returned_at)
        fine.return_date = returned_at

        if fine.total_amount <= 0:
            # extended out of its overdue window. Fine rows are never
            # deleted, payment_fines may point at them.
            fine.status = FineStatus.WAIVED
            fine.waived_at = returned_at
            fine.waived_by = "system"
            fine.waived_reason = "Returned within the extended due date"
            loan.fine_amount = Decimal("0.00")
            return None

        fine.status = FineStatus.PENDING
        loan.fine_amount = fine.total_amount
        return fine

    @staticmethod
    def assess_fixed(loan: Loan, kind: str, amount=None) -> Fine:
        """Lost/damaged fine, replaces any daily accrual. Does not commit."""
        policy = current_policy()
        if amount is None:
            amount = policy.lost_book_fine if kind == FineKind.LOST else policy.damaged_book_fine
        amount = money(amount)
        if amount < 0:
            raise ValueError("amount must not be negative")

        at = now()
        fine = loan.fine
        if fine is not None and not fine.is_payable:
            raise InvalidTransition(
                "The fine of this loan is already settled",
                fine_id=fine.id,
            )
        if fine is None:
            fine = Fine(
                loan_id=loan.id,
                member_id=loan.member_id,
                due_date=loan.due_date,
            )
            FineRepo.add(fine)
            fine.loan = loan
        else:
            FineService.require_not_in_payment(
                [fine.id], "The fine of this loan is part of a payment in progress"
            )

        fine.kind = kind
        fine.return_date = None
        fine.days_overdue = overdue_days(loan.due_date, at, policy.grace_period_days)
        fine.daily_rate = policy.daily_fine_rate
        fine.grace_days = policy.grace_period_days
        fine.max_amount = None
        fine.total_amount = amount
        fine.status = FineStatus.PENDING
        fine.calculated_at = at

        loan.fine_amount = amount
        return fine

    @staticmethod
    def list_fines(member_id: int = None, status: str = None) -> List[Fine]:
        if status and status not in FineStatus.ALL:
            raise ValueError(f"Unknown fine status: {status}")
        if member_id is None:
            return FineRepo.list_all(status)
        return FineRepo.list_by_member(member_id, status)

    @staticmethod
    def outstanding_total(member_id: int, at: datetime = None) -> Decimal:
        """Unsettled fines plus live accrual of overdue loans with no fine row yet."""
        at = at or now()
        policy = current_policy()

        total = sum((f.current_amount(at) for f in FineRepo.list_unsettled(member_id)), Decimal("0.00"))
        for loan in LoanRepo.find_overdue(at, member_id):
            if loan.fine is None:
                total += fine_for_policy(loan.due_date, at, policy)
        return total.quantize(CENT)

    @staticmethod
    def waive(fine_ids: Iterable[int], reason: str, waived_by: str) -> List[Fine]:
        reason = (reason or "").strip()
        if not reason:
            raise ValueError("A reason is required to waive fines")

        ids = sorted(set(int(i) for i in fine_ids))
        if not ids:
            raise ValueError("fine_ids must not be empty")

        fines = FineRepo.get_many_for_update(ids)
        found = {f.id for f in fines}
        missing = [i for i in ids if i not in found]
        if missing:
            raise FineNotFound(fine_ids=missing)

        not_payable = [f.id for f in fines if not f.is_payable]
        if not_payable:
            raise InvalidTransition("Only unpaid fines can be waived", fine_ids=not_payable)

        FineService.require_not_in_payment(ids, "Some fines are part of a payment in progress")

        at = now()
        total = Decimal("0.00")
        for f in fines:
            f.days_overdue = f.current_days_overdue(at)
            f.total_amount = f.current_amount(at)
            f.status = FineStatus.WAIVED
            f.waived_at = at
            f.waived_by = waived_by
            f.waived_reason = reason
            f.calculated_at = at
            total += f.total_amount

        db.session.commit()
        current_app.logger.info(f"[fines] waived ids={ids} total={total} by={waived_by}")
        events.emit(events.fines_waived, fine_ids=ids, total=total, waived_by=waived_by)
        return fines

    @staticmethod
    def search(
        member_id: int = None,
        status: str = None,
        date_from: str = None,
        date_to: str = None,
        min_amount=None,
        max_amount=None,
        title: str = None,
        page: int = 0,
        size: int = 10,
        sort_by: str = "id",
        sort_direction: str = "DESC",
    ) -> dict:
        """Filtered page of fines; ``page`` counts from 0.

        ``date_from``/``date_to`` are ISO dates matched against the due date,
        both inclusive. Amount bounds apply to the stored total, so accruing
        fines should be refreshed first.
        """
        if status and status not in FineStatus.ALL:
            raise ValueError(f"Unknown fine status: {status}")
        if sort_by not in SEARCH_SORT_FIELDS:
            raise ValueError(f"sort_by must be one of {', '.join(SEARCH_SORT_FIELDS)}")
        direction = (sort_direction or "DESC").upper()
        if direction not in ("ASC", "DESC"):
            raise ValueError("sort_direction must be ASC or DESC")
        if page < 0:
            raise ValueError("page must not be negative")
        if not 1 <= size <= MAX_PAGE_SIZE:
            raise ValueError(f"size must be between 1 and {MAX_PAGE_SIZE}")

        low = _optional_amount(min_amount, "min_amount")
        high = _optional_amount(max_amount, "max_amount")
        if low is not None and high is not None and low > high:
            raise ValueError("min_amount must not exceed max_amount")

        start = _optional_date(date_from, "date_from")
        end = _optional_date(date_to, "date_to")
        if start and end and start > end:
            raise ValueError("date_from must not be after date_to")

        result = FineRepo.search(
            member_id=member_id,
            status=status,
            due_from=datetime.combine(start, time.min) if start else None,
            due_before=datetime.combine(end + timedelta(days=1), time.min) if end else None,
            min_amount=low,
            max_amount=high,
            title=(title or "").strip() or None,
            sort_by=sort_by,
            descending=direction == "DESC",
            page=page + 1,
            per_page=size,
        )

        at = now()
        return {
            "content": [f.to_dict(at) for f in result.items],
            "total_elements": result.total,
            "total_pages": result.pages,
            "size": size,
            "number": page,
            "first": page == 0,
            "last": page >= result.pages - 1,
            "empty": not result.items,
        }

    @staticmethod
    def _by_month(fines: List[Fine], at: datetime) -> List[dict]:
        """Totals grouped by the month each fine fell due."""
        months = {}
        for f in fines:
            bucket = months.setdefault(
                (f.due_date.year, f.due_date.month),
                {"total": Decimal("0.00"), "paid": Decimal("0.00"), "waived": Decimal("0.00"), "days": []},
            )
            amount = f.current_amount(at)
            bucket["total"] += amount
            if f.status == FineStatus.PAID:
                bucket["paid"] += amount
            elif f.status == FineStatus.WAIVED:
                bucket["waived"] += amount
            if f.kind == FineKind.OVERDUE:
                bucket["days"].append(f.current_days_overdue(at))

        return [
            {
                "year": year,
                "month": month,
                "total_fines": float(b["total"]),
                "total_paid": float(b["paid"]),
                "total_waived": float(b["waived"]),
                "average_days_overdue": round(sum(b["days"]) / len(b["days"]), 2) if b["days"] else 0,
            }
            for (year, month), b in sorted(months.items())
        ]

    @staticmethod
    def statistics(member_id: int = None) -> dict:
        at = now()
        fines = FineService.list_fines(member_id)

        outstanding = Decimal("0.00")
        paid = Decimal("0.00")
        waived = Decimal("0.00")
        days = []
        for f in fines:
            amount = f.current_amount(at)
            if f.status in FineStatus.PAYABLE:
                outstanding += amount
            elif f.status == FineStatus.PAID:
                paid += amount
            elif f.status == FineStatus.WAIVED:
                waived += amount
            if f.kind == FineKind.OVERDUE:
                days.append(f.current_days_overdue(at))

        overdue_loans = LoanRepo.find_overdue(at, member_id)
        total_amounts = outstanding + paid + waived
        payments = PaymentRepo.list_all() if member_id is None else PaymentRepo.list_by_member(member_id)

        return {
            "total_outstanding_fines": float(outstanding),
            "total_paid_fines": float(paid),
            "total_waived_fines": float(waived),
            "total_overdue_books": len(overdue_loans),
            "average_days_overdue": round(sum(days) / len(days), 2) if days else 0,
            "average_fine_amount": float((total_amounts / len(fines)).quantize(CENT)) if fines else 0,
            "fine_count": len(fines),
            "fines_by_month": FineService._by_month(fines, at),
            "payment_history": [
                {
                    "payment_id": p.id,
                    "date": (p.resolved_at or p.created_at).isoformat(),
                    "amount": float(p.amount),
                    "method": p.method,
                    "status": p.status,
                    "fine_count": len(p.items),
                }
                for p in payments
            ],
        }
