from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required, get_jwt_identity

from circulation.clock import now
from circulation.extensions import db
from circulation.services.fine_service import FineService
from circulation.utils.auth import admin_required, current_member_id, is_admin
from circulation.utils.responses import json_error

fine_bp = Blueprint("fines", __name__)


@fine_bp.get("/my")
@jwt_required()
def my_fines():
    member_id = current_member_id()
    try:
        # accruing fines get ids before they are listed
        FineService.refresh_accruing_fines(member_id)
        db.session.commit()
        rows = FineService.list_fines(member_id, request.args.get("status"))
    except ValueError as e:
        return json_error(e)

    at = now()
    return jsonify({
        "success": True,
        "data": [f.to_dict(at) for f in rows],
        "outstanding_total": float(FineService.outstanding_total(member_id, at)),
    })


@fine_bp.get("/all")
@admin_required
def all_fines():
    try:
        rows = FineService.list_fines(None, request.args.get("status"))
    except ValueError as e:
        return json_error(e)
    at = now()
    return jsonify({"success": True, "data": [f.to_dict(at) for f in rows]})


@fine_bp.get("/search")
@admin_required
def search_fines():
    args = request.args
    try:
        page = int(args.get("page", 0))
        size = int(args.get("size", 10))
        member_id = args.get("member_id", type=int)

        FineService.refresh_accruing_fines(member_id)
        db.session.commit()

        data = FineService.search(
            member_id=member_id,
            status=args.get("status"),
            date_from=args.get("date_from"),
            date_to=args.get("date_to"),
            min_amount=args.get("min_amount"),
            max_amount=args.get("max_amount"),
            title=args.get("title"),
            page=page,
            size=size,
            sort_by=args.get("sort_by", "id"),
            sort_direction=args.get("sort_direction", "DESC"),
        )
    except ValueError as e:
        return json_error(e)
    return jsonify({"success": True, "data": data})


@fine_bp.get("/statistics")
@jwt_required()
def statistics():
    member_id = current_member_id()
    if is_admin():
        member_id = request.args.get("member_id", type=int)
    return jsonify({"success": True, "data": FineService.statistics(member_id)})


@fine_bp.post("/waive")
@admin_required
def waive():
    data = request.get_json(silent=True) or {}
    try:
        fines = FineService.waive(
            data.get("fine_ids") or [],
            data.get("reason"),
            waived_by=str(get_jwt_identity()),
        )
    except (TypeError, ValueError) as e:
        return json_error(e)
    at = now()
    return jsonify({"success": True, "data": [f.to_dict(at) for f in fines]})


@fine_bp.post("/recalculate")
@admin_required
def recalculate():
    member_id = request.args.get("member_id", type=int)
    updated = FineService.refresh_accruing_fines(member_id)
    db.session.commit()
    return jsonify({"success": True, "updated_count": updated})
