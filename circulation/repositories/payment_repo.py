from datetime import datetime

from circulation.models.payment import Payment, PaymentFine, PaymentStatus
from circulation.extensions import db

class PaymentRepo:
    @staticmethod
    def get(payment_id: int):
        return db.session.get(Payment, payment_id)

    @staticmethod
    def get_for_update(payment_id: int):
        return Payment.query.filter_by(id=payment_id).with_for_update().first()

    @staticmethod
    def get_by_transaction(transaction_id: str):
        return Payment.query.filter_by(transaction_id=transaction_id).with_for_update().first()

    @staticmethod
    def list_by_member(member_id: int):
        return Payment.query.filter_by(member_id=member_id).order_by(Payment.id.desc()).all()

    @staticmethod
    def list_all():
        return Payment.query.order_by(Payment.id.desc()).all()

    @staticmethod
    def add(payment: Payment):
        db.session.add(payment)
        return payment

    @staticmethod
    def pending_fine_ids(fine_ids):
        """Fine ids already held by a payment that has not resolved yet."""
        rows = (
            db.session.query(PaymentFine.fine_id)
            .join(Payment, Payment.id == PaymentFine.payment_id)
            .filter(
                Payment.status == PaymentStatus.PENDING,
                PaymentFine.fine_id.in_(list(fine_ids)),
            )
            .all()
        )
        return {r.fine_id for r in rows}

    @staticmethod
    def find_stale_pending(older_than: datetime):
        return Payment.query.filter(
            Payment.status == PaymentStatus.PENDING,
            Payment.created_at < older_than
        ).all()
