"""Glue shared by the three Flask services."""
import logging

from flask import request

from .database import DBSession
from .errors import register_error_handlers, validation_error

logger = logging.getLogger(__name__)


def init_app(app):
    register_error_handlers(app)

    @app.before_request
    def log_request():
        logger.info("%s %s", request.method, request.path)

    @app.teardown_appcontext
    def remove_session(exception=None):
        DBSession.remove()

    return app


def json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def query_int(name, default, minimum=0, maximum=None):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise validation_error([f"{name} must be an integer"])
    if value < minimum or (maximum is not None and value > maximum):
        raise validation_error([f"{name} is out of range"])
    return value
