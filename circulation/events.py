"""Signals sent after a circulation transition has been committed.

Receivers get the Flask app as sender plus keyword payload. Nothing is sent
for a rolled back transaction.
"""
from blinker import Namespace
from flask import current_app

_signals = Namespace()

loan_borrowed = _signals.signal("loan-borrowed")
loan_returned = _signals.signal("loan-returned")
loan_extended = _signals.signal("loan-extended")
loan_lost = _signals.signal("loan-lost")
loan_damaged = _signals.signal("loan-damaged")
copy_restocked = _signals.signal("copy-restocked")
copy_written_off = _signals.signal("copy-written-off")
fine_finalized = _signals.signal("fine-finalized")
fines_waived = _signals.signal("fines-waived")
payment_completed = _signals.signal("payment-completed")
payment_failed = _signals.signal("payment-failed")
inventory_inconsistency = _signals.signal("inventory-inconsistency")

ALL_SIGNALS = (
    loan_borrowed,
    loan_returned,
    loan_extended,
    loan_lost,
    loan_damaged,
    copy_restocked,
    copy_written_off,
    fine_finalized,
    fines_waived,
    payment_completed,
    payment_failed,
    inventory_inconsistency,
)


def connect_logging(app):
    """Log every committed transition through the app logger.

    Receivers are owned by the app and connected weakly, so they go away
    together with it.
    """
    receivers = []
    for sig in ALL_SIGNALS:
        def receiver(sender, _name=sig.name, **payload):
            details = " ".join(f"{k}={v}" for k, v in sorted(payload.items()))
            sender.logger.info(f"[event] {_name} {details}")

        sig.connect(receiver, sender=app)
        receivers.append(receiver)
    app.extensions["event_receivers"] = receivers
    return receivers


def emit(signal, **payload):
    signal.send(current_app._get_current_object(), **payload)
