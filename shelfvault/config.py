import os
from typing import Any, Dict, List, Mapping

from dotenv import load_dotenv

from .storage_csal import ProviderConfig


load_dotenv()


DEFAULT_SHARD_COUNT = 10

# (provider tag, mandatory env keys, optional env keys); keys share the
# upper-cased tag as prefix.
# Order here is the default cascade order; priority defaults to position + 1.
PROVIDER_ENV_KEYS = (
    (
        "gdrive",
        ("GDRIVE_ACCESS_TOKEN",),
        (
            "GDRIVE_FOLDER_ID",
            "GDRIVE_CLIENT_ID",
            "GDRIVE_CLIENT_SECRET",
            "GDRIVE_REFRESH_TOKEN",
        ),
    ),
    ("dropbox", ("DROPBOX_ACCESS_TOKEN",), ("DROPBOX_PATH",)),
    ("onedrive", ("ONEDRIVE_ACCESS_TOKEN",), ("ONEDRIVE_FOLDER_ID",)),
    ("pcloud", ("PCLOUD_ACCESS_TOKEN",), ("PCLOUD_FOLDER_ID",)),
    ("box", ("BOX_ACCESS_TOKEN",), ("BOX_FOLDER_ID",)),
    ("yandex", ("YANDEX_ACCESS_TOKEN",), ("YANDEX_PATH",)),
    ("koofr", ("KOOFR_ACCESS_TOKEN",), ("KOOFR_MOUNT_ID", "KOOFR_PATH")),
    (
        "b2",
        ("B2_KEY_ID", "B2_APPLICATION_KEY", "B2_BUCKET_ID"),
        ("B2_BUCKET_NAME",),
    ),
    ("mega", ("MEGA_EMAIL", "MEGA_PASSWORD"), ("MEGA_FOLDER",)),
    ("github", ("GITHUB_TOKEN", "GITHUB_OWNER"), ("GITHUB_REPO",)),
)


def _get_float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    text = value.strip().lower()
    return text in {"1", "true", "yes", "on"}


def _shard_db_urls(count: int) -> List[str]:
    # Missing URLs stay as empty strings; the router rejects them at startup.
    return [os.getenv(f"SHARD_DB_URL_{i}", "").strip() for i in range(1, count + 1)]


def _provider_env() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for provider_type, required, optional in PROVIDER_ENV_KEYS:
        for key in required + optional:
            values[key] = os.getenv(key, "")
        prefix = provider_type.upper()
        values[f"{prefix}_PRIORITY"] = os.getenv(f"{prefix}_PRIORITY", "")
    return values


def load_config() -> Dict[str, Any]:
    shard_count = _get_int_env("SHARD_COUNT", DEFAULT_SHARD_COUNT)
    config: Dict[str, Any] = {
        "SECRET_KEY": os.getenv("APP_SECRET_KEY", "change-me"),
        "SHARD_COUNT": shard_count,
        "SHARD_DB_URLS": _shard_db_urls(shard_count),
        "SHARD_CREATE_SCHEMA": _get_bool_env("SHARD_CREATE_SCHEMA", True),
        "PROVIDER_TIMEOUT_SECONDS": _get_float_env("PROVIDER_TIMEOUT_SECONDS", 60.0),
        "HEALTH_FAILURE_THRESHOLD": _get_int_env("HEALTH_FAILURE_THRESHOLD", 3),
        "HEALTH_RECOVERY_SECONDS": _get_float_env("HEALTH_RECOVERY_SECONDS", 300.0),
        "LOG_ROOT": os.getenv("SHELFVAULT_LOG_ROOT", "/var/log/shelfvault"),
        "DIAGNOSTICS_ENABLED": _get_bool_env("DIAGNOSTICS_ENABLED", False),
        "DIAGNOSTICS_TOKEN": os.getenv("DIAGNOSTICS_TOKEN", ""),
    }
    config.update(_provider_env())
    return config


def load_storage_configs(config: Mapping[str, Any]) -> List[ProviderConfig]:
    """Build the ordered provider cascade from a config mapping.

    A provider is only included when all of its mandatory credentials are
    present. ``<PROVIDER>_PRIORITY`` overrides the default position-based
    priority.
    """

    configs: List[ProviderConfig] = []
    for position, (provider_type, required, optional) in enumerate(PROVIDER_ENV_KEYS):
        if not all(str(config.get(key) or "").strip() for key in required):
            continue

        prefix = provider_type.upper() + "_"
        options: Dict[str, str] = {}
        for key in required + optional:
            value = str(config.get(key) or "").strip()
            if value:
                options[key[len(prefix):].lower()] = value

        priority = position + 1
        raw_priority = str(config.get(f"{prefix}PRIORITY") or "").strip()
        if raw_priority:
            try:
                priority = int(raw_priority)
            except ValueError:
                pass

        configs.append(
            ProviderConfig(
                provider_type=provider_type,
                priority=priority,
                options=options,
            )
        )
    return configs
