from flask import jsonify

from circulation.errors import CirculationError
from circulation.extensions import db


def json_error(error, code=400):
    """JSON failure body; a CirculationError brings its own code and status."""
    db.session.rollback()
    if isinstance(error, CirculationError):
        return jsonify(error.to_dict()), error.status_code
    return jsonify({"success": False, "message": str(error)}), code
