import time
from decimal import Decimal

import pytest

from circulation.errors import AmountMismatch, FineNotFound, GatewayDeclined, GatewayTimeout, InvalidTransition
from circulation.extensions import db
from circulation.gateway import SimulatedGateway
from circulation.models.fine import Fine, FineStatus
from circulation.models.payment import Payment, PaymentStatus
from circulation.services.fine_service import FineService
from circulation.services.loan_service import LoanService
from circulation.services.payment_service import PaymentService


def _late_fines(clock, make_title, count=1, member_id=1, days_late=5):
    """Borrow ``count`` books and return them ``days_late`` days after the due date."""
    loans = LoanService.borrow(member_id, {make_title().id: 1 for _ in range(count)})
    clock.advance(days=14 + days_late)
    fines = []
    for loan in loans:
        LoanService.return_loan(loan.id)
        fines.append(Fine.query.filter_by(loan_id=loan.id).one())
    return fines


def _snapshot(fine_ids):
    return {
        f.id: (f.status, f.total_amount, f.payment_id)
        for f in Fine.query.filter(Fine.id.in_(fine_ids)).all()
    }


def test_completed_payment_marks_every_fine_paid(app, clock, make_title):
    a, b = _late_fines(clock, make_title, count=2)

    result = PaymentService.pay(1, [a.id, b.id], "card", Decimal("50.00"))

    assert result.success
    assert result.status == PaymentStatus.COMPLETED
    for fine in (a, b):
        assert fine.status == FineStatus.PAID
        assert fine.payment_id == result.payment_id
        assert fine.loan.fine_paid
    assert a.loan.fine_amount == Decimal("25.00")
    assert db.session.get(Payment, result.payment_id).fine_ids == sorted([a.id, b.id])


def test_amount_mismatch_changes_nothing(app, clock, make_title):
    a, b = _late_fines(clock, make_title, count=2, days_late=10)
    before = _snapshot([a.id, b.id])

    with pytest.raises(AmountMismatch):
        PaymentService.pay(1, [a.id, b.id], "card", 90)

    assert _snapshot([a.id, b.id]) == before
    assert Payment.query.count() == 0


def test_declined_payment_leaves_fines_pending(app, clock, make_title, gateway):
    gateway.decline_methods = ("wallet",)
    a, = _late_fines(clock, make_title)
    before = _snapshot([a.id])

    result = PaymentService.pay(1, [a.id], "wallet", 25)

    assert not result.success
    assert result.status == PaymentStatus.FAILED
    assert result.code == GatewayDeclined.code
    assert _snapshot([a.id]) == before


def test_gateway_timeout_fails_payment(app, clock, make_title, gateway):
    app.config["PAYMENT_GATEWAY_TIMEOUT"] = 0.05
    gateway.delay = 0.5
    a, = _late_fines(clock, make_title)

    result = PaymentService.pay(1, [a.id], "card", 25)

    assert result.status == PaymentStatus.FAILED
    assert result.code == GatewayTimeout.code
    assert a.status == FineStatus.PENDING
    time.sleep(0.5)


def test_gateway_exception_fails_payment(app, clock, make_title):
    class BrokenGateway(SimulatedGateway):
        def initiate(self, amount, method, customer_info):
            raise ConnectionError("gateway down")

    app.extensions["payment_gateway"] = BrokenGateway()
    a, = _late_fines(clock, make_title)

    result = PaymentService.pay(1, [a.id], "card", 25)

    assert result.status == PaymentStatus.FAILED
    assert a.status == FineStatus.PENDING


def test_retry_after_failure(app, clock, make_title, gateway):
    gateway.decline_methods = ("upi",)
    a, = _late_fines(clock, make_title)

    assert PaymentService.pay(1, [a.id], "upi", 25).status == PaymentStatus.FAILED
    assert PaymentService.pay(1, [a.id], "card", 25).success
    assert a.status == FineStatus.PAID


def test_settled_fine_cannot_be_paid_again(app, clock, make_title):
    a, = _late_fines(clock, make_title)
    PaymentService.pay(1, [a.id], "card", 25)

    with pytest.raises(InvalidTransition):
        PaymentService.pay(1, [a.id], "card", 25)


def test_cannot_pay_someone_elses_fine(app, clock, make_title):
    a, = _late_fines(clock, make_title, member_id=2)
    with pytest.raises(FineNotFound):
        PaymentService.pay(1, [a.id], "card", 25)


def test_duplicate_and_unknown_methods_rejected(app, clock, make_title):
    a, = _late_fines(clock, make_title)
    with pytest.raises(ValueError):
        PaymentService.pay(1, [a.id, a.id], "card", 50)
    with pytest.raises(ValueError):
        PaymentService.pay(1, [a.id], "cheque", 25)


def test_pending_payment_resolved_by_webhook(app, clock, make_title, gateway):
    gateway.pending_methods = ("netbanking",)
    a, = _late_fines(clock, make_title)

    result = PaymentService.pay(1, [a.id], "netbanking", 25)
    assert result.pending
    assert a.status == FineStatus.PENDING

    # fines held by a payment in flight are not offered twice
    with pytest.raises(InvalidTransition):
        PaymentService.pay(1, [a.id], "card", 25)

    done = PaymentService.resolve(result.transaction_id, PaymentStatus.COMPLETED)
    assert done.success
    assert a.status == FineStatus.PAID
    assert a.payment_id == result.payment_id

    # repeated delivery is harmless
    assert PaymentService.resolve(result.transaction_id, PaymentStatus.FAILED).success


def test_stale_pending_payment_expires(app, clock, make_title, gateway):
    gateway.pending_methods = ("netbanking",)
    a, = _late_fines(clock, make_title)
    result = PaymentService.pay(1, [a.id], "netbanking", 25)

    clock.advance(seconds=app.config["PAYMENT_PENDING_TIMEOUT"] + 1)
    assert PaymentService.expire_stale_payments() == 1

    payment = db.session.get(Payment, result.payment_id)
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_code == GatewayTimeout.code
    assert a.status == FineStatus.PENDING


def test_accruing_fine_is_payable_at_live_amount(app, clock, make_title):
    t = make_title()
    loan = LoanService.borrow(1, {t.id: 1})[0]
    clock.advance(days=14 + 3)
    FineService.refresh_accruing_fines(1)
    db.session.commit()
    fine = Fine.query.filter_by(loan_id=loan.id).one()
    assert fine.status == FineStatus.OVERDUE

    # the member was shown yesterday's amount
    clock.advance(days=1)
    with pytest.raises(AmountMismatch):
        PaymentService.pay(1, [fine.id], "card", 15)

    result = PaymentService.pay(1, [fine.id], "card", 20)
    assert result.success
    assert fine.total_amount == Decimal("20.00")

    # settled amount stands when the book comes back
    clock.advance(days=2)
    LoanService.return_loan(loan.id)
    assert fine.status == FineStatus.PAID
    assert fine.total_amount == Decimal("20.00")


def test_fine_changed_while_pending_is_refunded(app, clock, make_title, gateway):
    gateway.pending_methods = ("netbanking",)
    t = make_title()
    loan = LoanService.borrow(1, {t.id: 1})[0]
    clock.advance(days=14 + 3)
    FineService.refresh_accruing_fines(1)
    db.session.commit()
    fine = Fine.query.filter_by(loan_id=loan.id).one()

    result = PaymentService.pay(1, [fine.id], "netbanking", 15)
    assert result.pending

    clock.advance(days=2)
    LoanService.return_loan(loan.id)
    assert fine.total_amount == Decimal("25.00")

    done = PaymentService.resolve(result.transaction_id, PaymentStatus.COMPLETED)
    assert done.status == PaymentStatus.REFUNDED
    assert fine.status == FineStatus.PENDING
    assert fine.payment_id is None
    assert gateway.refunds == [(result.transaction_id, Decimal("15.00"))]


def test_receipt_lists_fines(app, clock, make_title):
    a, = _late_fines(clock, make_title)
    result = PaymentService.pay(1, [a.id], "card", 25)

    text = PaymentService.receipt(result.payment_id, member_id=1)
    assert "LIBRARY FINE PAYMENT RECEIPT" in text
    assert result.transaction_id in text
    assert "Total Amount Paid: 25.00" in text


def test_total_with_more_than_two_decimals_is_rejected(app, clock, make_title):
    a, = _late_fines(clock, make_title)

    with pytest.raises(ValueError) as excinfo:
        PaymentService.pay(1, [a.id], "card", "24.996")
    assert not isinstance(excinfo.value, AmountMismatch)
    with pytest.raises(ValueError):
        PaymentService.pay(1, [a.id], "card", 25.001)
    assert Payment.query.count() == 0

    # trailing zeros are still an exact amount
    assert PaymentService.pay(1, [a.id], "card", "25.000").success


def _accruing_fine_in_pending_payment(clock, make_title, gateway):
    gateway.pending_methods = ("netbanking",)
    loan = LoanService.borrow(1, {make_title().id: 1})[0]
    clock.advance(days=15)
    FineService.refresh_accruing_fines(1)
    db.session.commit()
    fine = Fine.query.filter_by(loan_id=loan.id).one()
    result = PaymentService.pay(1, [fine.id], "netbanking", 5)
    assert result.pending
    return loan, fine, result


def test_extend_refused_while_fine_is_being_paid(app, clock, make_title, gateway):
    loan, fine, result = _accruing_fine_in_pending_payment(clock, make_title, gateway)

    with pytest.raises(InvalidTransition):
        LoanService.extend(loan.id, 7)

    LoanService.return_loan(loan.id)
    assert db.session.get(Fine, fine.id) is not None
    assert db.session.get(Payment, result.payment_id).fine_ids == [fine.id]

    done = PaymentService.resolve(result.transaction_id, PaymentStatus.COMPLETED)
    assert done.success
    assert fine.status == FineStatus.PAID


def test_report_lost_refused_while_fine_is_being_paid(app, clock, make_title, gateway):
    loan, fine, result = _accruing_fine_in_pending_payment(clock, make_title, gateway)

    with pytest.raises(InvalidTransition):
        LoanService.report_lost(loan.id)
    db.session.rollback()
    assert loan.status == "borrowed"
    assert fine.kind == "overdue"

    assert PaymentService.resolve(result.transaction_id, PaymentStatus.COMPLETED).success


def test_fine_cleared_by_extension_is_kept_for_its_payments(app, clock, make_title, gateway):
    gateway.decline_methods = ("wallet",)
    loan = LoanService.borrow(1, {make_title().id: 1})[0]
    clock.advance(days=15)
    FineService.refresh_accruing_fines(1)
    db.session.commit()
    fine = Fine.query.filter_by(loan_id=loan.id).one()
    failed = PaymentService.pay(1, [fine.id], "wallet", 5)
    assert failed.status == PaymentStatus.FAILED

    LoanService.extend(loan.id, 7)
    LoanService.return_loan(loan.id)

    fine = db.session.get(Fine, fine.id)
    assert fine.status == FineStatus.WAIVED
    assert fine.total_amount == 0
    assert fine.waived_by == "system"
    assert loan.fine_amount == 0
    assert db.session.get(Payment, failed.payment_id).fine_ids == [fine.id]
