import sys
import traceback
from typing import Any, Mapping, Optional

from flask import Flask, current_app, request
from werkzeug.exceptions import HTTPException

from .config import load_config, load_storage_configs
from .diagnostics import bp as diagnostics_bp
from .library import BookLibrary
from .logging_utils import configure_log_root, vault_log, vault_log_exception
from .models import create_all_shard_schemas
from .provider_health import ProviderHealthTracker
from .sharding import MetadataRouter, router_from_urls
from .storage_gateway import CascadingStorageGateway


EXTENSION_KEY = "shelfvault"


def create_app(config_overrides: Optional[Mapping[str, Any]] = None) -> Flask:
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    if config_overrides:
        app.config.from_mapping(dict(config_overrides))

    configure_log_root(app.config.get("LOG_ROOT"))

    # Misconfigured shards must stop startup rather than degrade silently.
    router = router_from_urls(
        app.config.get("SHARD_DB_URLS") or [],
        shard_count=int(app.config.get("SHARD_COUNT") or 0),
    )
    if app.config.get("SHARD_CREATE_SCHEMA", True):
        create_all_shard_schemas(router)

    health = ProviderHealthTracker(
        failure_threshold=int(app.config.get("HEALTH_FAILURE_THRESHOLD") or 3),
        recovery_seconds=float(app.config.get("HEALTH_RECOVERY_SECONDS") or 300.0),
    )
    gateway = CascadingStorageGateway(
        health=health,
        timeout_seconds=float(app.config.get("PROVIDER_TIMEOUT_SECONDS") or 60.0),
    )
    providers = load_storage_configs(app.config)
    library = BookLibrary(router, gateway, providers)

    app.extensions[EXTENSION_KEY] = {
        "router": router,
        "health": health,
        "gateway": gateway,
        "providers": providers,
        "library": library,
    }

    app.register_blueprint(diagnostics_bp)

    @app.errorhandler(Exception)
    def _handle_uncaught(err):  # pragma: no cover - error wiring
        if isinstance(err, HTTPException):
            return err
        try:
            traceback.print_exc(file=sys.stderr)
        except Exception:
            pass
        vault_log_exception(
            "system",
            "uncaught_exception",
            component="flask",
            exc=err,
            path=str(getattr(request, "path", "") or "")[:512],
            method=str(getattr(request, "method", "") or "")[:32],
        )
        return ("Internal Server Error", 500)

    vault_log(
        "system",
        "info",
        "system_startup",
        component="app",
        shards=router.shard_count,
        providers=[cfg.provider_id for cfg in providers],
    )
    return app


def _state(app: Optional[Flask] = None) -> dict:
    target = app or current_app
    return target.extensions[EXTENSION_KEY]


def get_router(app: Optional[Flask] = None) -> MetadataRouter:
    return _state(app)["router"]


def get_gateway(app: Optional[Flask] = None) -> CascadingStorageGateway:
    return _state(app)["gateway"]


def get_library(app: Optional[Flask] = None) -> BookLibrary:
    return _state(app)["library"]
