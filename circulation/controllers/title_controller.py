from flask import Blueprint, request, jsonify

from circulation.services.inventory_service import InventoryService
from circulation.utils.auth import admin_required
from circulation.utils.responses import json_error

title_bp = Blueprint("titles", __name__)


@title_bp.get("/")
def list_titles():
    titles = InventoryService.list_titles()
    return jsonify({"success": True, "data": [t.to_dict() for t in titles]})


@title_bp.get("/<int:title_id>")
def get_title(title_id: int):
    try:
        return jsonify({"success": True, "data": InventoryService.get_title(title_id).to_dict()})
    except ValueError as e:
        return json_error(e, 404)


@title_bp.post("/")
@admin_required
def create_title():
    data = request.get_json(silent=True) or {}
    try:
        t = InventoryService.add_title(data)
        return jsonify({"success": True, "data": t.to_dict()}), 201
    except ValueError as e:
        return json_error(e)


@title_bp.post("/<int:title_id>/copies")
@admin_required
def adjust_copies(title_id: int):
    data = request.get_json(silent=True) or {}
    try:
        delta = int(data["delta"])
        t = InventoryService.adjust_total(title_id, delta)
        return jsonify({"success": True, "data": t.to_dict()})
    except (KeyError, TypeError):
        return json_error("delta is required")
    except ValueError as e:
        return json_error(e)


@title_bp.post("/loans/<int:loan_id>/restock")
@admin_required
def restock_copy(loan_id: int):
    try:
        loan = InventoryService.restock(loan_id)
        return jsonify({"success": True, "data": InventoryService.get_title(loan.title_id).to_dict()})
    except ValueError as e:
        return json_error(e)


@title_bp.post("/loans/<int:loan_id>/write-off")
@admin_required
def write_off_copy(loan_id: int):
    try:
        loan = InventoryService.write_off(loan_id)
        return jsonify({"success": True, "data": InventoryService.get_title(loan.title_id).to_dict()})
    except ValueError as e:
        return json_error(e)
