import hmac

from flask import Blueprint, Response, current_app, request, jsonify
from flask_jwt_extended import jwt_required

from circulation.services.payment_service import PaymentService
from circulation.utils.auth import current_member_id, scoped_member_id
from circulation.utils.responses import json_error

payment_bp = Blueprint("payments", __name__)


@payment_bp.post("/")
@jwt_required()
def pay():
    data = request.get_json(silent=True) or {}
    try:
        result = PaymentService.pay(
            current_member_id(),
            data["fine_ids"],
            data["payment_method"],
            data["total_amount"],
            data.get("customer_info"),
        )
    except KeyError as e:
        return json_error(f"{e.args[0]} is required")
    except (TypeError, ValueError) as e:
        return json_error(e)

    if result.success:
        return jsonify(result.to_dict()), 201
    if result.pending:
        return jsonify(result.to_dict()), 202
    return jsonify(result.to_dict()), 402


@payment_bp.get("/my")
@jwt_required()
def my_payments():
    rows = PaymentService.list_payments(current_member_id())
    return jsonify({"success": True, "data": [p.to_dict() for p in rows]})


@payment_bp.get("/<int:payment_id>")
@jwt_required()
def get_payment(payment_id: int):
    try:
        p = PaymentService.get_payment(payment_id, scoped_member_id())
        return jsonify({"success": True, "data": p.to_dict()})
    except ValueError as e:
        return json_error(e)


@payment_bp.get("/<int:payment_id>/receipt")
@jwt_required()
def receipt(payment_id: int):
    try:
        text = PaymentService.receipt(payment_id, scoped_member_id())
    except ValueError as e:
        return json_error(e)
    return Response(
        text,
        mimetype="text/plain",
        headers={"Content-Disposition": f"attachment; filename=receipt-{payment_id}.txt"},
    )


@payment_bp.post("/webhook")
def webhook():
    secret = current_app.config.get("PAYMENT_WEBHOOK_SECRET") or ""
    if not secret:
        current_app.logger.warning("[payment] webhook call refused: PAYMENT_WEBHOOK_SECRET is not set")
        return jsonify({"success": False, "message": "Webhook is not configured"}), 403
    if not hmac.compare_digest(request.headers.get("X-Webhook-Secret", ""), secret):
        return jsonify({"success": False, "message": "Forbidden"}), 403

    data = request.get_json(silent=True) or {}
    try:
        result = PaymentService.resolve(
            data["transaction_id"],
            data["status"],
            data.get("message", ""),
        )
    except KeyError as e:
        return json_error(f"{e.args[0]} is required")
    except ValueError as e:
        return json_error(e)
    return jsonify(result.to_dict())
