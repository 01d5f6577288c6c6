"""
Flask routes for event ingestion.

    POST /events                   accept one event or a list (202)
    GET  /users/<user_id>/journey  stored events, most recent first
    GET  /stats                    buffer and ingestion statistics
    GET  /health                   503 while the service refuses events

202 means buffered, not yet persisted.
"""

import logging
from typing import Optional

from flask import Blueprint, Flask, Response, jsonify, request

from ingest_sdk.errors import (
    BufferFullError,
    EventValidationError,
    IngestionClosedError,
    StorageError,
)
from ingest_sdk.ingestion import IngestionService
from ingest_sdk.validation import parse_limit, parse_timestamp

logger = logging.getLogger(__name__)


def _error(status: int, error: str, message: str) -> Response:
    response = jsonify({"error": error, "message": message})
    response.status_code = status
    return response


def create_ingest_blueprint(service: IngestionService, name: str = "ingest") -> Blueprint:
    """
    Build a blueprint whose routes delegate to an IngestionService.

    Args:
        service: The ingestion entry point
        name: Blueprint name, for registering more than one

    Returns:
        Blueprint to register on a Flask app
    """
    bp = Blueprint(name, __name__)

    @bp.route("/events", methods=["POST"])
    def ingest_events():
        body = request.get_json(silent=True)
        if body is None:
            return _error(400, "Bad Request", "Request body must be JSON")

        try:
            event_ids = service.ingest(body)
        except EventValidationError as e:
            return _error(400, "Bad Request", str(e))
        except BufferFullError as e:
            if isinstance(e, IngestionClosedError):
                message = "Event ingestion is shutting down"
            else:
                message = "Event ingestion temporarily unavailable due to high load"
            response = jsonify({
                "error": "Service Unavailable",
                "message": message,
                "retryAfter": e.retry_after,
            })
            response.status_code = 503
            response.headers["Retry-After"] = str(e.retry_after)
            return response

        response = jsonify({
            "message": "Events accepted for processing",
            "count": len(event_ids),
            "eventIds": event_ids,
        })
        response.status_code = 202
        return response

    @bp.route("/users/<user_id>/journey", methods=["GET"])
    def user_journey(user_id: str):
        start = end = limit = None

        if request.args.get("from"):
            start = parse_timestamp(request.args["from"])
            if start is None:
                return _error(400, "Bad Request", 'Invalid "from" date format. Use ISO 8601 format')
        if request.args.get("to"):
            end = parse_timestamp(request.args["to"])
            if end is None:
                return _error(400, "Bad Request", 'Invalid "to" date format. Use ISO 8601 format')
        if request.args.get("limit"):
            limit = parse_limit(request.args["limit"])
            if limit is None:
                return _error(
                    400, "Bad Request", 'Invalid "limit" parameter. Must be a number between 1 and 1000'
                )

        try:
            events = service.get_user_journey(user_id, start=start, end=end, limit=limit)
        except StorageError as e:
            logger.error(f"Journey query failed for user {user_id}: {e}")
            return _error(500, "Internal Server Error", "An error occurred while fetching user journey")

        return jsonify({
            "userId": user_id,
            "count": len(events),
            "events": [event.to_dict() for event in events],
        })

    @bp.route("/stats", methods=["GET"])
    def stats():
        return jsonify(service.get_stats())

    @bp.route("/health", methods=["GET"])
    def health():
        buffer_stats = service.get_buffer_stats()
        healthy = service.can_accept()
        if not service.accepting:
            status = "shutting_down"
        else:
            status = "ok" if healthy else "degraded"
        response = jsonify({
            "status": status,
            "queueLength": buffer_stats.queue_length,
            "bufferUtilization": buffer_stats.buffer_utilization,
            "activeFlushes": buffer_stats.active_flushes,
        })
        response.status_code = 200 if healthy else 503
        return response

    return bp


def create_app(service: IngestionService, app: Optional[Flask] = None) -> Flask:
    """
    Create (or extend) a Flask app with the ingestion routes.

    The service is stored in app.extensions["ingest"] so shutdown hooks can
    find it.
    """
    if app is None:
        app = Flask(__name__)
    app.register_blueprint(create_ingest_blueprint(service))
    app.extensions["ingest"] = service
    return app
