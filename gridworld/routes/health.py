"""
Health check routes.

Registered under /api.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify

from gridworld.db import DatabaseError
from gridworld.routes import get_services

logger = logging.getLogger("gridworld.routes.health")

bp = Blueprint("health", __name__)


@bp.route("/health", methods=["GET"])
def health():
    services = get_services()
    return jsonify({
        "ok": True,
        "queue": services["queue"].snapshot(),
        "provider_configured": services["provider"].is_configured(),
        "config": services["config"].to_dict(),
    })


@bp.route("/db-check", methods=["GET"])
def db_check():
    db = get_services()["db"]
    try:
        if not db.verify_connection():
            return jsonify({"ok": False, "error": "db_query_failed", "db": db.backend}), 503
        version = db.current_version()
        return jsonify({"ok": True, "db": db.backend, "schema_version": version})
    except DatabaseError as e:
        logger.warning("[DB] db_check failed: %s", e)
        return jsonify({"ok": False, "error": "db_query_failed", "db": db.backend}), 503
