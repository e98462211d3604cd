from datetime import datetime
from decimal import Decimal

from circulation.extensions import db
from circulation.policy import current_policy
from circulation.services.accrual import fine_for_policy


class LoanStatus:
    BORROWED = "borrowed"
    RETURNED = "returned"
    LOST = "lost"
    DAMAGED = "damaged"

    ALL = (BORROWED, RETURNED, LOST, DAMAGED)


class Loan(db.Model):
    """One physical copy lent to one member.

    There is no stored "overdue" status: a loan is overdue while it is
    ``borrowed`` and the clock is past ``due_date``.
    """

    __tablename__ = "loans"
    __table_args__ = (
        db.CheckConstraint("fine_amount >= 0", name="ck_loans_fine_non_negative"),
        db.CheckConstraint("renewal_count >= 0", name="ck_loans_renewals_non_negative"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # identifiers only, members live with the identity provider
    member_id = db.Column(db.Integer, nullable=False, index=True)
    title_id = db.Column(db.Integer, db.ForeignKey("titles.id"), nullable=False, index=True)

    borrowed_at = db.Column(db.DateTime, nullable=False)
    due_date = db.Column(db.DateTime, nullable=False)
    returned_at = db.Column(db.DateTime, nullable=True)

    status = db.Column(db.String(20), nullable=False, default=LoanStatus.BORROWED, index=True)

    renewal_count = db.Column(db.Integer, nullable=False, default=0)
    max_renewals = db.Column(db.Integer, nullable=False, default=2)

    fine_amount = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    fine_paid = db.Column(db.Boolean, nullable=False, default=False)

    # lost/damaged copy restocked or written off
    copy_resolved_at = db.Column(db.DateTime, nullable=True)
    copy_resolution = db.Column(db.String(20), nullable=True)

    title = db.relationship("Title", backref="loans")

    @property
    def is_open(self) -> bool:
        return self.status == LoanStatus.BORROWED

    def is_overdue(self, now: datetime) -> bool:
        return self.status == LoanStatus.BORROWED and now > self.due_date

    def days_past_due(self, now: datetime) -> int:
        if now <= self.due_date:
            return 0
        return (now.date() - self.due_date.date()).days

    def current_fine(self, now: datetime) -> Decimal:
        """Fine as of ``now``: the fine row if any, else live accrual while overdue."""
        if self.fine is not None:
            return self.fine.current_amount(now)
        if not self.is_overdue(now):
            return Decimal("0.00")
        return fine_for_policy(self.due_date, now, current_policy())

    def to_dict(self, now: datetime = None):
        data = {
            "id": self.id,
            "member_id": self.member_id,
            "title_id": self.title_id,
            "title": self.title.title if self.title else None,
            "borrowed_at": self.borrowed_at.isoformat(),
            "due_date": self.due_date.isoformat(),
            "returned_at": self.returned_at.isoformat() if self.returned_at else None,
            "status": self.status,
            "renewal_count": self.renewal_count,
            "max_renewals": self.max_renewals,
            "fine_amount": float(self.fine_amount or 0),
            "fine_paid": bool(self.fine_paid),
        }
        if now is not None:
            data["is_overdue"] = self.is_overdue(now)
            data["current_fine"] = float(self.current_fine(now))
        return data
