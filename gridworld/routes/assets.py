"""
Asset Routes Blueprint
----------------------
Registered under /chunks. Serves downloaded .spz files from CHUNKS_DIR.
"""

from __future__ import annotations

from flask import Blueprint, abort, send_from_directory

from gridworld.routes import get_services
from gridworld.services.asset_storage import ASSET_EXTENSION

bp = Blueprint("assets", __name__)


@bp.route("/<path:filename>", methods=["GET"])
def chunk_file(filename: str):
    if not filename.endswith(ASSET_EXTENSION) or filename.startswith("."):
        abort(404)
    assets = get_services()["assets"]
    return send_from_directory(
        assets.root,
        filename,
        mimetype="application/octet-stream",
        max_age=3600,
    )
