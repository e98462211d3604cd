# circulation/tasks/late_check.py
from flask import current_app

from circulation.clock import now
from circulation.extensions import db
from circulation.repositories.loan_repo import LoanRepo
from circulation.services.fine_service import FineService
from circulation.services.payment_service import PaymentService


def run_late_check(member_id: int = None) -> dict:
    """
    Periodic maintenance inside an app context.
    - overdue: status borrowed and due_date passed -> accruing fine refreshed
    - payments left PENDING past PAYMENT_PENDING_TIMEOUT -> FAILED
    """
    overdue = LoanRepo.find_overdue(now(), member_id)
    fines_changed = FineService.refresh_accruing_fines(member_id)
    db.session.commit()

    # each expiry commits on its own
    payments_expired = PaymentService.expire_stale_payments()

    return {
        "overdue": len(overdue),
        "fines_changed": fines_changed,
        "payments_expired": payments_expired,
    }


def run_late_check_job(app):
    with app.app_context():
        try:
            stats = run_late_check()
            current_app.logger.info(
                f"[late_check] overdue={stats['overdue']} fines_changed={stats['fines_changed']} "
                f"payments_expired={stats['payments_expired']}"
            )
            return stats
        except Exception as e:
            db.session.rollback()
            current_app.logger.exception(f"[late_check] failed: {e}")
            return None
