from circulation.extensions import db


class PaymentStatus:
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"

    TERMINAL = (COMPLETED, FAILED, REFUNDED, CANCELLED)


class PaymentMethod:
    CARD = "card"
    UPI = "upi"
    NETBANKING = "netbanking"
    WALLET = "wallet"
    CASH = "cash"

    ALL = (CARD, UPI, NETBANKING, WALLET, CASH)


class PaymentFine(db.Model):
    """Fine set of a payment with the amount validated when it was created."""

    __tablename__ = "payment_fines"

    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), primary_key=True)
    fine_id = db.Column(db.Integer, db.ForeignKey("fines.id"), primary_key=True)
    amount = db.Column(db.Numeric(10, 2), nullable=False)

    fine = db.relationship("Fine")


class Payment(db.Model):
    __tablename__ = "payments"
    __table_args__ = (
        db.CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
    )

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, nullable=False, index=True)

    amount = db.Column(db.Numeric(10, 2), nullable=False)
    method = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=PaymentStatus.PENDING, index=True)

    transaction_id = db.Column(db.String(64), unique=True, nullable=True, index=True)
    gateway_message = db.Column(db.String(500), nullable=True)
    failure_code = db.Column(db.String(50), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False)
    resolved_at = db.Column(db.DateTime, nullable=True)

    items = db.relationship(
        "PaymentFine",
        backref="payment",
        cascade="all, delete-orphan",
        order_by="PaymentFine.fine_id",
    )

    @property
    def fine_ids(self):
        return [item.fine_id for item in self.items]

    @property
    def is_terminal(self) -> bool:
        return self.status in PaymentStatus.TERMINAL

    def to_dict(self):
        return {
            "id": self.id,
            "member_id": self.member_id,
            "amount": float(self.amount),
            "method": self.method,
            "status": self.status,
            "transaction_id": self.transaction_id,
            "failure_code": self.failure_code,
            "message": self.gateway_message,
            "fine_ids": self.fine_ids,
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }
