from circulation.models.title import Title
from circulation.models.loan import Loan, LoanStatus
from circulation.models.fine import Fine, FineStatus, FineKind
from circulation.models.payment import Payment, PaymentFine, PaymentStatus, PaymentMethod

__all__ = [
    "Title",
    "Loan",
    "LoanStatus",
    "Fine",
    "FineStatus",
    "FineKind",
    "Payment",
    "PaymentFine",
    "PaymentStatus",
    "PaymentMethod",
]
