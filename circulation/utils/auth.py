from functools import wraps

from flask import jsonify
from flask_jwt_extended import get_jwt, get_jwt_identity, verify_jwt_in_request


def current_member_id() -> int:
    return int(get_jwt_identity())


def is_admin() -> bool:
    return (get_jwt() or {}).get("role") == "admin"


def scoped_member_id():
    """Member filter for loan/fine/payment lookups; admins see everything."""
    return None if is_admin() else current_member_id()


def admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        verify_jwt_in_request()
        if not is_admin():
            return jsonify({"success": False, "message": "Forbidden"}), 403
        return view(*args, **kwargs)
    return wrapped
