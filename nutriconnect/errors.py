import logging

from flask import jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """An error that maps onto the ``{success: false, error, message}`` envelope.

    ``extra`` is merged into the response body (validation details, the list
    of valid statuses and so on).
    """

    def __init__(self, message, status_code=500, code="server_error", **extra):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.extra = extra

    def to_dict(self):
        body = {"success": False, "error": self.code, "message": self.message}
        body.update(self.extra)
        return body


def validation_error(details, message="Request validation failed", **extra):
    return ServiceError(message, 400, "validation_error", details=details, **extra)


def not_found(message, code):
    return ServiceError(message, 404, code)


def register_error_handlers(app):
    @app.errorhandler(ServiceError)
    def handle_service_error(error):
        if error.status_code >= 500:
            logger.error("%s %s failed: %s", app.name, error.code, error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        if error.code == 404:
            return jsonify({
                "success": False,
                "error": "endpoint_not_found",
                "message": "API endpoint not found",
            }), 404
        return jsonify({
            "success": False,
            "error": error.name.lower().replace(" ", "_"),
            "message": error.description,
        }), error.code

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        logger.exception("Unhandled error")
        return jsonify({
            "success": False,
            "error": "server_error",
            "message": "An internal server error occurred",
        }), 500
