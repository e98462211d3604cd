from datetime import datetime
from decimal import Decimal

from circulation.extensions import db
from circulation.services.accrual import compute_fine, overdue_days


class FineStatus:
    OVERDUE = "OVERDUE"   # loan still open, amount follows the clock
    PENDING = "PENDING"   # finalized, waiting for payment
    PAID = "PAID"
    WAIVED = "WAIVED"

    PAYABLE = (OVERDUE, PENDING)
    SETTLED = (PAID, WAIVED)
    ALL = (OVERDUE, PENDING, PAID, WAIVED)


class FineKind:
    OVERDUE = "overdue"
    LOST = "lost"
    DAMAGED = "damaged"


class Fine(db.Model):
    __tablename__ = "fines"
    __table_args__ = (
        db.CheckConstraint("total_amount >= 0", name="ck_fines_amount_non_negative"),
    )

    id = db.Column(db.Integer, primary_key=True)

    loan_id = db.Column(db.Integer, db.ForeignKey("loans.id"), unique=True, nullable=False, index=True)
    member_id = db.Column(db.Integer, nullable=False, index=True)

    kind = db.Column(db.String(20), nullable=False, default=FineKind.OVERDUE)

    due_date = db.Column(db.DateTime, nullable=False)
    return_date = db.Column(db.DateTime, nullable=True)

    days_overdue = db.Column(db.Integer, nullable=False, default=0)
    daily_rate = db.Column(db.Numeric(10, 2), nullable=False, default=5)
    grace_days = db.Column(db.Integer, nullable=False, default=0)
    max_amount = db.Column(db.Numeric(10, 2), nullable=True)
    total_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)

    status = db.Column(db.String(20), nullable=False, default=FineStatus.PENDING, index=True)

    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True, index=True)
    paid_at = db.Column(db.DateTime, nullable=True)

    waived_at = db.Column(db.DateTime, nullable=True)
    waived_by = db.Column(db.String(100), nullable=True)
    waived_reason = db.Column(db.String(500), nullable=True)

    calculated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    loan = db.relationship("Loan", backref=db.backref("fine", uselist=False))

    @property
    def is_accruing(self) -> bool:
        return self.status == FineStatus.OVERDUE and self.kind == FineKind.OVERDUE

    @property
    def is_payable(self) -> bool:
        return self.status in FineStatus.PAYABLE

    def current_amount(self, now: datetime) -> Decimal:
        """Live amount for an accruing fine, stored total otherwise."""
        if not self.is_accruing:
            return Decimal(str(self.total_amount))
        return compute_fine(
            self.due_date,
            now,
            Decimal(str(self.daily_rate)),
            self.grace_days,
            Decimal(str(self.max_amount)) if self.max_amount is not None else None,
        )

    def current_days_overdue(self, now: datetime) -> int:
        if not self.is_accruing:
            return self.days_overdue
        return overdue_days(self.due_date, now, self.grace_days)

    def to_dict(self, now: datetime):
        loan = self.loan
        return {
            "id": self.id,
            "loan_id": self.loan_id,
            "member_id": self.member_id,
            "title_id": loan.title_id if loan else None,
            "title": loan.title.title if loan and loan.title else None,
            "kind": self.kind,
            "due_date": self.due_date.isoformat(),
            "return_date": self.return_date.isoformat() if self.return_date else None,
            "days_overdue": self.current_days_overdue(now),
            "daily_rate": float(self.daily_rate),
            "total_amount": float(self.current_amount(now)),
            "status": self.status,
            "payment_id": self.payment_id,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "waived_reason": self.waived_reason,
            "calculated_at": self.calculated_at.isoformat(),
        }
