from datetime import datetime

from sqlalchemy import func

from circulation.models.loan import Loan, LoanStatus
from circulation.extensions import db

class LoanRepo:
    @staticmethod
    def get(loan_id: int):
        return db.session.get(Loan, loan_id)

    @staticmethod
    def get_for_update(loan_id: int):
        return Loan.query.filter_by(id=loan_id).with_for_update().first()

    @staticmethod
    def list_by_member(member_id: int):
        return Loan.query.filter_by(member_id=member_id).order_by(Loan.id.desc()).all()

    @staticmethod
    def list_all():
        return Loan.query.order_by(Loan.id.desc()).all()

    @staticmethod
    def add(loan: Loan):
        db.session.add(loan)
        return loan

    @staticmethod
    def list_open(member_id: int = None):
        q = Loan.query.filter(Loan.status == LoanStatus.BORROWED)
        if member_id is not None:
            q = q.filter(Loan.member_id == member_id)
        return q.order_by(Loan.due_date.asc()).all()

    @staticmethod
    def count_open(member_id: int) -> int:
        return (
            db.session.query(func.count(Loan.id))
            .filter(Loan.member_id == member_id, Loan.status == LoanStatus.BORROWED)
            .scalar()
        ) or 0

    @staticmethod
    def find_overdue(now: datetime, member_id: int = None):
        q = Loan.query.filter(
            Loan.status == LoanStatus.BORROWED,
            Loan.due_date < now
        )
        if member_id is not None:
            q = q.filter(Loan.member_id == member_id)
        return q.order_by(Loan.due_date.asc()).all()
