"""
Routes package for the gridworld server.
Contains Flask Blueprints for the chunk API, asset files and health checks.
"""

import logging

from flask import current_app

__all__ = [
    "get_services",
    "register_blueprints",
]

logger = logging.getLogger("gridworld.routes")

EXTENSION_KEY = "gridworld"


def get_services() -> dict:
    """Services wired up by create_app() (config, db, store, assets, provider, queue)."""
    return current_app.extensions[EXTENSION_KEY]


def _log_route_map(app):
    """Log all registered routes at startup for debugging."""
    routes = []
    for rule in app.url_map.iter_rules():
        if rule.endpoint == "static":
            continue
        methods = ",".join(sorted(m for m in rule.methods if m not in ("HEAD", "OPTIONS")))
        routes.append(f"  {methods:8s} {rule.rule}")

    routes.sort(key=lambda x: x.split()[-1])
    logger.debug("[ROUTES] Registered endpoints:\n%s", "\n".join(routes))
    logger.info("[ROUTES] Total: %s endpoints", len(routes))


def register_blueprints(app):
    """Register all blueprints with the Flask app."""
    from gridworld.routes.assets import bp as assets_bp
    from gridworld.routes.chunks import bp as chunks_bp
    from gridworld.routes.health import bp as health_bp

    app.register_blueprint(chunks_bp, url_prefix="/api")
    app.register_blueprint(health_bp, url_prefix="/api")
    app.register_blueprint(assets_bp, url_prefix="/chunks")

    _log_route_map(app)
