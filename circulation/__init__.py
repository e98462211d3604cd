from flask import Flask, jsonify
from sqlalchemy.exc import SQLAlchemyError

from circulation.config import Config
from circulation.extensions import db, migrate, jwt
from circulation.errors import CirculationError
from circulation.gateway import SimulatedGateway
from circulation.policy import LendingPolicy
from circulation import events


def register_error_handlers(app):
    @app.errorhandler(CirculationError)
    def _circulation_error(e):
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(SQLAlchemyError)
    def _persistence_error(e):
        # nothing was committed, the request can be retried as a whole
        db.session.rollback()
        app.logger.exception(f"[db] persistence failure: {e}")
        return jsonify({
            "success": False,
            "code": "storage_unavailable",
            "message": "Service temporarily unavailable, please retry"
        }), 503


def create_app(config_object=Config, clock=None, gateway=None):
    app = Flask(__name__)
    app.config.from_object(config_object)

    # 1) extensions
    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)

    # 2) collaborators: policy, clock, payment gateway
    app.extensions["lending_policy"] = LendingPolicy.from_config(app.config)
    if clock is not None:
        app.extensions["clock"] = clock
    if gateway is None:
        declined = [m.strip() for m in app.config.get("SIMULATED_GATEWAY_DECLINE", "").split(",") if m.strip()]
        gateway = SimulatedGateway(decline_methods=declined)
    app.extensions["payment_gateway"] = gateway

    # 3) blueprints
    from circulation.controllers.title_controller import title_bp
    from circulation.controllers.loan_controller import loan_bp
    from circulation.controllers.fine_controller import fine_bp
    from circulation.controllers.payment_controller import payment_bp
    app.register_blueprint(title_bp, url_prefix="/titles")
    app.register_blueprint(loan_bp, url_prefix="/loans")
    app.register_blueprint(fine_bp, url_prefix="/fines")
    app.register_blueprint(payment_bp, url_prefix="/payments")

    register_error_handlers(app)
    events.connect_logging(app)

    @app.get("/health")
    def health():
        return jsonify({"ok": True})

    # Scheduler (fine accrual + stale payments)
    if app.config.get("SCHEDULER_ENABLED"):
        from circulation.tasks.scheduler import start_scheduler
        start_scheduler(app)

    return app
