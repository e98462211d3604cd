from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Iterable, List, Optional

from flask import current_app

from circulation import events
from circulation.clock import now
from circulation.errors import (
    AmountMismatch,
    CirculationError,
    FineNotFound,
    GatewayDeclined,
    GatewayTimeout,
    InvalidTransition,
    PaymentNotFound,
)
from circulation.extensions import db
from circulation.gateway import call_with_timeout, get_gateway
from circulation.models.fine import FineStatus
from circulation.models.payment import Payment, PaymentFine, PaymentMethod, PaymentStatus
from circulation.repositories.fine_repo import FineRepo
from circulation.repositories.payment_repo import PaymentRepo
from circulation.services.accrual import CENT, money


@dataclass(frozen=True)
class PaymentResult:
    success: bool
    status: str
    payment_id: Optional[int] = None
    transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    code: Optional[str] = None
    message: str = ""

    @classmethod
    def of(cls, payment: Payment) -> "PaymentResult":
        return cls(
            success=payment.status == PaymentStatus.COMPLETED,
            status=payment.status,
            payment_id=payment.id,
            transaction_id=payment.transaction_id,
            amount=Decimal(str(payment.amount)),
            code=payment.failure_code,
            message=payment.gateway_message or "",
        )

    @property
    def pending(self) -> bool:
        return self.status == PaymentStatus.PENDING

    def to_dict(self):
        return {
            "success": self.success,
            "status": self.status,
            "payment_id": self.payment_id,
            "transaction_id": self.transaction_id,
            "amount": float(self.amount) if self.amount is not None else None,
            "code": self.code,
            "message": self.message,
        }


def _parse_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError("expected_total must be a number")
    # rejected, not rounded
    if not amount.is_finite() or amount != amount.quantize(CENT):
        raise ValueError("expected_total must have at most two decimal places")
    return money(amount)


class PaymentService:
    @staticmethod
    def _load_payable_fines(member_id: int, fine_ids: List[int]):
        fines = FineRepo.get_many_for_update(fine_ids)
        by_id = {f.id: f for f in fines}

        missing = [i for i in fine_ids if i not in by_id or by_id[i].member_id != member_id]
        if missing:
            raise FineNotFound(fine_ids=missing)

        settled = [f.id for f in fines if not f.is_payable]
        if settled:
            raise InvalidTransition(
                "Some fines have already been paid or waived",
                fine_ids=settled,
            )

        in_flight = PaymentRepo.pending_fine_ids(fine_ids)
        if in_flight:
            raise InvalidTransition(
                "Some fines are already being processed",
                fine_ids=sorted(in_flight),
            )
        return fines

    @staticmethod
    def pay(
        member_id: int,
        fine_ids: Iterable[int],
        method: str,
        expected_total,
        customer_info: Optional[dict] = None,
    ) -> PaymentResult:
        """Settle a set of fines with one gateway transaction.

        Either every fine ends up PAID under the same payment or none of
        them changes. ``expected_total`` is what the member was shown; it is
        checked against the amounts at submission time.
        """
        if method not in PaymentMethod.ALL:
            raise ValueError(f"Unsupported payment method: {method}")

        ids = [int(i) for i in fine_ids]
        if not ids:
            raise ValueError("fine_ids must not be empty")
        if len(set(ids)) != len(ids):
            raise ValueError("fine_ids must not contain duplicates")
        ids.sort()
        expected = _parse_amount(expected_total)

        try:
            fines = PaymentService._load_payable_fines(member_id, ids)

            at = now()
            amounts = {f.id: f.current_amount(at) for f in fines}
            total = sum(amounts.values(), Decimal("0.00"))
            if total != expected:
                raise AmountMismatch(
                    f"Current total is {total}, not {expected}",
                    expected_total=float(expected),
                    current_total=float(total),
                )
            if total <= 0:
                raise ValueError("Nothing to pay for the selected fines")
        except (CirculationError, ValueError):
            # nothing written, release row locks
            db.session.rollback()
            raise

        payment = Payment(
            member_id=member_id,
            amount=total,
            method=method,
            status=PaymentStatus.PENDING,
            created_at=at,
            items=[PaymentFine(fine_id=i, amount=amounts[i]) for i in ids],
        )
        PaymentRepo.add(payment)
        db.session.commit()

        current_app.logger.info(
            f"[payment] payment={payment.id} member={member_id} fines={ids} amount={total} method={method}"
        )

        gateway = get_gateway()
        try:
            response = call_with_timeout(gateway.initiate, total, method, customer_info or {})
        except GatewayTimeout as e:
            return PaymentService._fail(payment, e)
        except Exception as e:
            current_app.logger.exception(f"[payment] payment={payment.id} gateway error: {e}")
            return PaymentService._fail(payment, GatewayDeclined(f"Payment gateway error: {e}"))

        payment.transaction_id = response.transaction_id
        return PaymentService._apply_outcome(payment, response.status, response.message)

    @staticmethod
    def resolve(transaction_id: str, status: str, message: str = "") -> PaymentResult:
        """Gateway webhook: final word on a payment that was left PENDING."""
        payment = PaymentRepo.get_by_transaction(transaction_id)
        if not payment:
            raise PaymentNotFound(transaction_id=transaction_id)
        if payment.is_terminal:
            # repeated delivery
            db.session.rollback()
            return PaymentResult.of(payment)
        if status == PaymentStatus.PENDING:
            raise ValueError("Webhook status must be terminal")
        return PaymentService._apply_outcome(payment, status, message)

    @staticmethod
    def _apply_outcome(payment: Payment, status: str, message: str) -> PaymentResult:
        if status == PaymentStatus.COMPLETED:
            return PaymentService._reconcile(payment, message)

        if status == PaymentStatus.PENDING:
            payment.gateway_message = message or "Awaiting gateway confirmation"
            db.session.commit()
            current_app.logger.info(
                f"[payment] payment={payment.id} pending txn={payment.transaction_id}"
            )
            return PaymentResult.of(payment)

        if status == PaymentStatus.CANCELLED:
            return PaymentService._fail(
                payment,
                GatewayDeclined(message or "Payment cancelled at the gateway"),
                status=PaymentStatus.CANCELLED,
            )

        return PaymentService._fail(payment, GatewayDeclined(message or None))

    @staticmethod
    def _fail(payment: Payment, error: CirculationError, status: str = PaymentStatus.FAILED) -> PaymentResult:
        payment.status = status
        payment.failure_code = error.code
        payment.gateway_message = error.message
        payment.resolved_at = now()
        db.session.commit()

        current_app.logger.warning(
            f"[payment] payment={payment.id} {status} code={error.code} message={error.message}"
        )
        events.emit(events.payment_failed, payment_id=payment.id, member_id=payment.member_id,
                    status=status, code=error.code)
        return PaymentResult.of(payment)

    @staticmethod
    def _reconcile(payment: Payment, message: str = "") -> PaymentResult:
        """Mark the whole fine set PAID, or refund if it cannot be committed as a whole."""
        items = {item.fine_id: Decimal(str(item.amount)) for item in payment.items}
        fines = FineRepo.get_many_for_update(sorted(items))
        by_id = {f.id: f for f in fines}

        conflicts = []
        for fine_id, amount in items.items():
            fine = by_id.get(fine_id)
            if fine is None or not fine.is_payable:
                conflicts.append(fine_id)
            elif not fine.is_accruing and Decimal(str(fine.total_amount)) != amount:
                conflicts.append(fine_id)

        if conflicts:
            return PaymentService._refund(payment, conflicts)

        at = now()
        for fine_id, amount in items.items():
            fine = by_id[fine_id]
            fine.days_overdue = fine.current_days_overdue(at)
            fine.total_amount = amount
            fine.status = FineStatus.PAID
            fine.payment_id = payment.id
            fine.paid_at = at
            fine.calculated_at = at
            loan = fine.loan
            loan.fine_amount = amount
            loan.fine_paid = True

        payment.status = PaymentStatus.COMPLETED
        payment.gateway_message = message or "Payment completed"
        payment.failure_code = None
        payment.resolved_at = at
        db.session.commit()

        current_app.logger.info(
            f"[payment] payment={payment.id} completed txn={payment.transaction_id} fines={sorted(items)}"
        )
        events.emit(events.payment_completed, payment_id=payment.id, member_id=payment.member_id,
                    amount=payment.amount, fine_ids=sorted(items))
        return PaymentResult.of(payment)

    @staticmethod
    def _refund(payment: Payment, conflicts: List[int]) -> PaymentResult:
        current_app.logger.error(
            f"[payment] payment={payment.id} fines changed during payment {conflicts}; refunding"
        )
        try:
            call_with_timeout(get_gateway().refund, payment.transaction_id, Decimal(str(payment.amount)))
        except Exception as e:
            current_app.logger.exception(f"[payment] payment={payment.id} refund request failed: {e}")

        payment.status = PaymentStatus.REFUNDED
        payment.failure_code = InvalidTransition.code
        payment.gateway_message = "Fines changed while the payment was processed; amount refunded"
        payment.resolved_at = now()
        db.session.commit()

        events.emit(events.payment_failed, payment_id=payment.id, member_id=payment.member_id,
                    status=PaymentStatus.REFUNDED, code=InvalidTransition.code)
        return PaymentResult.of(payment)

    @staticmethod
    def expire_stale_payments() -> int:
        """Fail payments the gateway never confirmed."""
        timeout = int(current_app.config.get("PAYMENT_PENDING_TIMEOUT", 900))
        cutoff = now() - timedelta(seconds=timeout)
        stale = PaymentRepo.find_stale_pending(cutoff)
        for payment in stale:
            PaymentService._fail(
                payment,
                GatewayTimeout(f"No gateway confirmation within {timeout} seconds"),
            )
        return len(stale)

    @staticmethod
    def get_payment(payment_id: int, member_id: Optional[int] = None) -> Payment:
        payment = PaymentRepo.get(payment_id)
        if not payment or (member_id is not None and payment.member_id != member_id):
            raise PaymentNotFound(payment_id=payment_id)
        return payment

    @staticmethod
    def list_payments(member_id: int) -> List[Payment]:
        return PaymentRepo.list_by_member(member_id)

    @staticmethod
    def receipt(payment_id: int, member_id: Optional[int] = None) -> str:
        payment = PaymentService.get_payment(payment_id, member_id)
        if payment.status != PaymentStatus.COMPLETED:
            raise InvalidTransition("Receipts are only issued for completed payments")

        lines = [
            "LIBRARY FINE PAYMENT RECEIPT",
            "============================",
            "",
            f"Transaction ID: {payment.transaction_id}",
            f"Payment ID: {payment.id}",
            f"Date: {payment.resolved_at.isoformat(sep=' ', timespec='seconds')}",
            f"Status: {payment.status}",
            f"Member ID: {payment.member_id}",
            f"Method: {payment.method.upper()}",
            "",
            "Fine Details:",
            "------------",
        ]
        for index, item in enumerate(payment.items, start=1):
            fine = item.fine
            loan = fine.loan if fine else None
            title = loan.title.title if loan and loan.title else f"Loan #{fine.loan_id if fine else '-'}"
            lines.append(f"{index}. {title}")
            lines.append(f"   Days Overdue: {fine.days_overdue if fine else '-'}")
            lines.append(f"   Fine Amount: {money(item.amount)}")
        lines += ["", f"Total Amount Paid: {money(payment.amount)}", ""]
        return "\n".join(lines)
