# gule/main.py
import logging
import time

from flask import Flask, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from gule.auth import init_auth, require_auth
from gule.blueprints import IdConverter
from gule.blueprints.admin import admin_bp
from gule.blueprints.auth import auth_bp
from gule.blueprints.escrow import escrow_bp
from gule.blueprints.notifications import notifications_bp
from gule.blueprints.orders import orders_bp
from gule.blueprints.products import products_bp
from gule.blueprints.reviews import reviews_bp
from gule.config import Config
from gule.database import Base, SessionLocal, close_db, engine
from gule.errors import InternalError, MarketplaceError
from gule.models import UserType
from gule.observability import (
    check_database_health,
    check_escrow_backlog,
    configure_logging,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
)
from gule.observability.logging_config import ensure_request_id
from gule.services.account_service import AccountService

app = Flask(__name__)
Config.configure_app(app)
configure_logging(app)
init_auth(app)
app.url_map.converters["id"] = IdConverter

for blueprint in (auth_bp, products_bp, orders_bp, reviews_bp, escrow_bp, notifications_bp, admin_bp):
    app.register_blueprint(blueprint)

logger = logging.getLogger(__name__)


def init_database():
    """Create tables and the configured super admin."""
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables initialized successfully")
    session = SessionLocal()
    try:
        AccountService(session).bootstrap_super_admin()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Super admin bootstrap failed")
    finally:
        session.close()


init_database()


def _error_response(error: MarketplaceError):
    return jsonify({"success": False, "error": error.to_dict()}), error.status_code


def _rollback_request_session():
    db = g.get("db")
    if db is not None:
        db.rollback()


@app.errorhandler(MarketplaceError)
def handle_marketplace_error(error: MarketplaceError):
    _rollback_request_session()
    increment_counter("api_errors_total", labels={"code": error.code})
    if error.status_code >= 500:
        logger.error("Request failed: %s", error.message)
    else:
        logger.info("Request rejected: %s %s", error.code, error.message)
    return _error_response(error)


@app.errorhandler(HTTPException)
def handle_http_error(error: HTTPException):
    payload = {"code": (error.name or "HTTP_ERROR").upper().replace(" ", "_"), "message": error.description}
    return jsonify({"success": False, "error": payload}), error.code


@app.errorhandler(Exception)
def handle_unexpected_error(error: Exception):
    _rollback_request_session()
    logger.exception("Unhandled error")
    message = str(error) if Config.DEBUG else "Something went wrong"
    return _error_response(InternalError(message))


@app.before_request
def before_request_logging():
    g.identity = None
    g.request_started_at = time.perf_counter()
    g.request_id = ensure_request_id()
    increment_counter(
        "http_requests_total",
        labels={
            "method": request.method,
            "endpoint": request.endpoint or request.path,
        },
    )


@app.after_request
def after_request_logging(response):
    started = getattr(g, 'request_started_at', None)
    if started is not None:
        duration_ms = (time.perf_counter() - started) * 1000
        observe_latency(
            "http_request_latency_ms",
            duration_ms,
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
    response.headers[Config.REQUEST_ID_HEADER] = g.get("request_id", "")
    if response.status_code >= 500:
        increment_counter(
            "http_errors_total",
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
        logger.error("Request finished with error status %s", response.status_code)
    else:
        logger.info("Request finished", extra={"status_code": response.status_code})
    return response


@app.teardown_appcontext
def teardown_db(exception):
    close_db(exception)


@app.route('/health', methods=['GET'])
def health():
    db_status = check_database_health()
    overall = "UP" if db_status.get("status") == "UP" else "DEGRADED"
    status_code = 200 if overall == "UP" else 503
    return jsonify({
        "status": overall,
        "components": {
            "database": db_status,
            "escrow": check_escrow_backlog() if overall == "UP" else {"status": "UNKNOWN"},
        }
    }), status_code


@app.route('/api/admin/metrics', methods=['GET'])
@require_auth(UserType.ADMIN)
def admin_metrics():
    return jsonify({"success": True, "data": get_metrics_snapshot()})
