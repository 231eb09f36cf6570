"""Flask entrypoint for the gridworld chunk server.

Builds the app, wires the services (database, chunk store, asset storage,
provider client, generation queue) and registers all blueprints.

Run:
    python -m gridworld.app
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from gridworld.config import Config, config as default_config
from gridworld.db import Database, DatabaseError
from gridworld.routes import EXTENSION_KEY, register_blueprints
from gridworld.services.asset_storage import AssetStorage
from gridworld.services.chunk_store import ChunkStore
from gridworld.services.continuity import ContinuitySeeder
from gridworld.services.generation_queue import GenerationQueue
from gridworld.services.worldlabs_service import WorldLabsClient

logger = logging.getLogger("gridworld.app")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _error_response(code: str, message: str, status: int):
    return jsonify({"ok": False, "error": {"code": code, "message": message}}), status


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        code = (e.name or "error").upper().replace(" ", "_")
        return _error_response(code, e.description or e.name, e.code or 500)

    @app.errorhandler(DatabaseError)
    def _database_error(e: DatabaseError):
        logger.error("[DB] Request failed: %s", e)
        return _error_response("DATABASE_ERROR", "Database error", 500)

    @app.errorhandler(Exception)
    def _unhandled_error(e: Exception):
        logger.exception("[APP] Unhandled error: %s", e)
        return _error_response("INTERNAL_ERROR", "Internal server error", 500)


def create_app(
    cfg: Optional[Config] = None,
    *,
    db: Optional[Database] = None,
    assets: Optional[AssetStorage] = None,
    provider: Optional[WorldLabsClient] = None,
    queue: Optional[GenerationQueue] = None,
) -> Flask:
    cfg = cfg or default_config
    _configure_logging(cfg.LOG_LEVEL)

    app = Flask(__name__)

    if cfg.ALLOW_ALL_ORIGINS:
        origins = [re.compile(r".*")]
    else:
        origins = cfg.ALLOWED_ORIGINS

    CORS(
        app,
        resources={r"/api/*": {"origins": origins}},
        allow_headers=["Content-Type", "X-Requested-With"],
        expose_headers=["Content-Type"],
        methods=["GET", "POST", "OPTIONS"],
    )

    for warning in cfg.validate():
        logger.warning("[CONFIG] %s", warning)

    # ─────────────────────────────────────────────────────────────
    # Storage: schema migrations, then drop rows no worker owns anymore
    # ─────────────────────────────────────────────────────────────
    db = db or Database.from_config(cfg)
    db.migrate()
    store = ChunkStore(db)
    store.purge_stale()

    assets = assets or AssetStorage(cfg.CHUNKS_DIR)
    provider = provider or WorldLabsClient.from_config(cfg)
    if queue is None:
        seeder = ContinuitySeeder(store, provider.download)
        queue = GenerationQueue.from_config(cfg, store, provider, assets, seeder)

    app.extensions[EXTENSION_KEY] = {
        "config": cfg,
        "db": db,
        "store": store,
        "assets": assets,
        "provider": provider,
        "queue": queue,
    }

    register_blueprints(app)
    _register_error_handlers(app)

    return app


if __name__ == "__main__":
    app = create_app()
    default_config.log_summary()
    try:
        app.run(host=default_config.HOST, port=default_config.PORT, debug=default_config.DEBUG, use_reloader=False)
    finally:
        app.extensions[EXTENSION_KEY]["queue"].shutdown()
