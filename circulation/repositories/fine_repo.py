from circulation.models.fine import Fine, FineStatus
from circulation.models.loan import Loan
from circulation.models.title import Title
from circulation.extensions import db

class FineRepo:
    @staticmethod
    def get(fine_id: int):
        return db.session.get(Fine, fine_id)

    @staticmethod
    def get_by_loan(loan_id: int):
        return Fine.query.filter_by(loan_id=loan_id).first()

    @staticmethod
    def get_many_for_update(fine_ids):
        return (
            Fine.query
            .filter(Fine.id.in_(list(fine_ids)))
            .order_by(Fine.id.asc())
            .with_for_update()
            .all()
        )

    @staticmethod
    def list_by_member(member_id: int, status: str = None):
        q = Fine.query.filter(Fine.member_id == member_id)
        if status:
            q = q.filter(Fine.status == status)
        return q.order_by(Fine.id.desc()).all()

    @staticmethod
    def list_all(status: str = None):
        q = Fine.query
        if status:
            q = q.filter(Fine.status == status)
        return q.order_by(Fine.id.desc()).all()

    @staticmethod
    def list_unsettled(member_id: int = None):
        q = Fine.query.filter(Fine.status.in_(FineStatus.PAYABLE))
        if member_id is not None:
            q = q.filter(Fine.member_id == member_id)
        return q.all()

    @staticmethod
    def search(member_id=None, status=None, due_from=None, due_before=None,
               min_amount=None, max_amount=None, title=None,
               sort_by="id", descending=True, page=1, per_page=10):
        """Filtered, sorted page of fines. ``due_before`` is exclusive."""
        q = Fine.query
        if member_id is not None:
            q = q.filter(Fine.member_id == member_id)
        if status:
            q = q.filter(Fine.status == status)
        if due_from is not None:
            q = q.filter(Fine.due_date >= due_from)
        if due_before is not None:
            q = q.filter(Fine.due_date < due_before)
        if min_amount is not None:
            q = q.filter(Fine.total_amount >= min_amount)
        if max_amount is not None:
            q = q.filter(Fine.total_amount <= max_amount)
        if title:
            q = (
                q.join(Loan, Loan.id == Fine.loan_id)
                .join(Title, Title.id == Loan.title_id)
                .filter(Title.title.ilike(f"%{title}%"))
            )

        column = getattr(Fine, sort_by)
        q = q.order_by(column.desc() if descending else column.asc(), Fine.id.desc())
        return q.paginate(page=page, per_page=per_page, error_out=False)

    @staticmethod
    def add(fine: Fine):
        db.session.add(fine)
        return fine
