"""
Chunk Routes Blueprint
----------------------
Registered under /api.

GET  /api/chunk?x=&y=&prompt=   status of one chunk, starting generation if needed
GET  /api/chunks/status         [{x, y, status}] for one prompt or all
GET  /api/prompts               completed-chunk summary per prompt
POST /api/chunks/reset          delete rows + asset files (one prompt or all)
POST /api/clear-error           lift the billing halt
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from gridworld.routes import get_services
from gridworld.services.chunk_store import (
    STATUS_BILLING_ERROR,
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_GENERATING,
)
from gridworld.utils import log_event, parse_int, prompt_hash

logger = logging.getLogger("gridworld.routes.chunks")

bp = Blueprint("chunks", __name__)

BILLING_ROW_MESSAGE = "API billing error - out of credits"


def _billing_error(message: str):
    return jsonify({"error": message, "status": STATUS_BILLING_ERROR}), 402


@bp.route("/chunk", methods=["GET"])
def get_chunk():
    services = get_services()
    store = services["store"]
    queue = services["queue"]

    x = parse_int(request.args.get("x"))
    y = parse_int(request.args.get("y"))
    prompt = request.args.get("prompt") or services["config"].DEFAULT_PROMPT

    if x is None or y is None:
        return jsonify({"error": "x and y must be integers"}), 400

    if not services["provider"].is_configured():
        return jsonify({"error": "WORLDLABS_API_KEY not configured", "status": STATUS_ERROR}), 503

    if queue.is_halted:
        return _billing_error(queue.halt_reason)

    existing = store.get(x, y, prompt)
    if existing:
        if existing.status == STATUS_COMPLETED:
            return jsonify({"status": STATUS_COMPLETED, "spzUrl": existing.asset_path})
        if existing.status == STATUS_GENERATING:
            return jsonify({"status": STATUS_GENERATING})
        if existing.status == STATUS_BILLING_ERROR:
            return _billing_error(BILLING_ROW_MESSAGE)
        if existing.status == STATUS_ERROR:
            logger.info("[Chunk] Retrying failed chunk (%s,%s) [%s]", x, y, prompt_hash(prompt))
            store.delete(x, y, prompt)

    if not store.insert_if_absent(x, y, prompt):
        # Another request won the race
        return jsonify({"status": STATUS_GENERATING})

    queue.enqueue(x, y, prompt)
    return jsonify({"status": "started"})


@bp.route("/chunks/status", methods=["GET"])
def chunks_status():
    prompt = request.args.get("prompt") or None
    return jsonify(get_services()["store"].list_statuses(prompt))


@bp.route("/prompts", methods=["GET"])
def prompts():
    return jsonify(get_services()["store"].list_prompt_summaries())


@bp.route("/chunks/reset", methods=["POST"])
def reset_chunks():
    services = get_services()
    store = services["store"]
    assets = services["assets"]
    queue = services["queue"]

    body = request.get_json(silent=True) or {}
    log_event("chunks/reset:incoming", body)
    prompt = body.get("prompt") or None

    if prompt:
        logger.info("[Reset] Clearing chunks for prompt [%s]: %r", prompt_hash(prompt), prompt)
        dropped = queue.discard(prompt)
        deleted = store.delete_prompt(prompt)
        files = assets.delete_for_prompt(prompt)
    else:
        logger.info("[Reset] Clearing ALL chunks")
        dropped = queue.discard()
        deleted = store.delete_all()
        files = assets.delete_all()

    logger.info("[Reset] Removed %s rows, %s files, %s queued jobs", deleted, files, dropped)
    return jsonify({"ok": True, "deleted": deleted, "files": files})


@bp.route("/clear-error", methods=["POST"])
def clear_error():
    cleared = get_services()["queue"].clear_halt()
    if cleared:
        logger.info("[Queue] Removed %s billing_error rows", cleared)
    return jsonify({"ok": True, "apiError": None})
