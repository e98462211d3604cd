from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required

from circulation.clock import now
from circulation.services.eligibility_service import EligibilityService, can_borrow
from circulation.services.loan_service import LoanService
from circulation.utils.auth import admin_required, current_member_id, is_admin, scoped_member_id
from circulation.utils.responses import json_error

loan_bp = Blueprint("loans", __name__)


def _borrow_items(data: dict):
    """Either {"items": [{"title_id": 1, "quantity": 2}, ...]} or {"title_id": 1}."""
    if "items" in data:
        return [(int(i["title_id"]), int(i.get("quantity", 1))) for i in data["items"]]
    return [(int(data["title_id"]), int(data.get("quantity", 1)))]


@loan_bp.post("/")
@jwt_required()
def borrow():
    data = request.get_json(silent=True) or {}
    try:
        items = _borrow_items(data)
    except (KeyError, TypeError):
        return json_error("title_id is required")
    except ValueError as e:
        return json_error(e)

    try:
        loans = LoanService.borrow(current_member_id(), items)
        at = now()
        return jsonify({"success": True, "data": [l.to_dict(at) for l in loans]}), 201
    except ValueError as e:
        return json_error(e)


@loan_bp.get("/my")
@jwt_required()
def my_loans():
    at = now()
    loans = LoanService.list_member_loans(current_member_id())
    return jsonify({"success": True, "data": [l.to_dict(at) for l in loans]})


@loan_bp.get("/overdue")
@admin_required
def overdue_loans():
    at = now()
    return jsonify({"success": True, "data": [l.to_dict(at) for l in LoanService.list_overdue()]})


@loan_bp.get("/eligibility")
@jwt_required()
def eligibility():
    try:
        quantity = int(request.args.get("quantity", 1))
        profile = EligibilityService.build_profile(current_member_id())
        result = can_borrow(profile, quantity)
    except ValueError as e:
        return json_error(e)
    return jsonify({
        "success": True,
        "data": {
            "allowed": result.allowed,
            "code": result.code,
            "message": result.message,
            "profile": profile.to_dict(),
        }
    })


@loan_bp.get("/<int:loan_id>")
@jwt_required()
def get_loan(loan_id: int):
    try:
        loan = LoanService.get_loan(loan_id, scoped_member_id())
        return jsonify({"success": True, "data": loan.to_dict(now())})
    except ValueError as e:
        return json_error(e)


@loan_bp.post("/<int:loan_id>/return")
@jwt_required()
def return_loan(loan_id: int):
    try:
        loan = LoanService.return_loan(loan_id, scoped_member_id())
        return jsonify({"success": True, "data": loan.to_dict(now())})
    except ValueError as e:
        return json_error(e)


@loan_bp.post("/<int:loan_id>/extend")
@jwt_required()
def extend_loan(loan_id: int):
    data = request.get_json(silent=True) or {}
    try:
        days = data.get("days")
        loan = LoanService.extend(loan_id, int(days) if days is not None else None, scoped_member_id())
        return jsonify({"success": True, "data": loan.to_dict(now())})
    except (TypeError, ValueError) as e:
        return json_error(e)


@loan_bp.post("/<int:loan_id>/lost")
@jwt_required()
def report_lost(loan_id: int):
    data = request.get_json(silent=True) or {}
    try:
        # appraised amounts are set by staff only
        amount = data.get("amount") if is_admin() else None
        loan = LoanService.report_lost(loan_id, amount, scoped_member_id())
        return jsonify({"success": True, "data": loan.to_dict(now())})
    except ValueError as e:
        return json_error(e)


@loan_bp.post("/<int:loan_id>/damaged")
@admin_required
def report_damaged(loan_id: int):
    data = request.get_json(silent=True) or {}
    try:
        loan = LoanService.report_damaged(loan_id, data.get("amount"))
        return jsonify({"success": True, "data": loan.to_dict(now())})
    except ValueError as e:
        return json_error(e)
