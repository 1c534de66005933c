from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from .logging_utils import vault_log
from .storage_csal import registered_provider_types


bp = Blueprint("diagnostics", __name__, url_prefix="/api/diagnostics")


def _client_ip() -> str:
    ip = (
        request.headers.get("X-Forwarded-For")
        or request.headers.get("X-Real-IP")
        or request.remote_addr
        or ""
    )
    return str(ip).split(",")[0].strip()


def _state() -> dict:
    return current_app.extensions["shelfvault"]


def _reject_unauthorized():
    """Return an error response, or ``None`` when the caller may proceed."""

    if not bool(current_app.config.get("DIAGNOSTICS_ENABLED")):
        return jsonify({"error": "diagnostics disabled"}), 404

    token_expected = str(current_app.config.get("DIAGNOSTICS_TOKEN") or "").strip()
    if not token_expected:
        return None

    token_provided = str(request.headers.get("X-Diag-Token") or "").strip()
    if not token_provided:
        auth = str(request.headers.get("Authorization") or "").strip()
        if auth.lower().startswith("bearer "):
            token_provided = auth.split(" ", 1)[1].strip()

    if token_provided != token_expected:
        vault_log(
            "system",
            "warn",
            "diagnostics_token_rejected",
            component="diagnostics",
            ip=_client_ip()[:64],
            path=request.path[:256],
        )
        return jsonify({"error": "invalid token"}), 401
    return None


@bp.get("/storage")
def storage_status():
    rejected = _reject_unauthorized()
    if rejected is not None:
        return rejected

    state = _state()
    return jsonify(
        {
            "providers": [cfg.describe() for cfg in state["providers"]],
            "health": state["health"].snapshot(),
            "registered_types": registered_provider_types(),
        }
    )


@bp.get("/shards")
def shard_status():
    rejected = _reject_unauthorized()
    if rejected is not None:
        return rejected

    library = _state()["library"]
    counts = library.shard_counts()
    failed = [index for index, count in counts.items() if count is None]
    return jsonify(
        {
            "shard_count": library.router.shard_count,
            "books": {str(index): count for index, count in counts.items()},
            "failed_shards": failed,
        }
    )


@bp.get("/shards/<path:key>")
def shard_for_key(key: str):
    rejected = _reject_unauthorized()
    if rejected is not None:
        return rejected

    router = _state()["router"]
    shard = router.shard_index_for(key)
    return jsonify({"key": key, "shard": shard, "shard_count": router.shard_count})
