# qx7/config.py
from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from typing import Any, Dict, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict


_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_csv(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return tuple(p.strip() for p in raw.split(",") if p.strip())


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a simple top-level mapping from YAML.

    Constraints:
      - Ignore if path missing.
      - Only accept dict at top-level.
      - Lists are kept (cors_origins); other non-scalars are coerced via str().
    """
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        _log.warning("failed to load YAML config from %s", path, exc_info=True)
        return {}
    if not isinstance(doc, dict):
        return {}
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if isinstance(v, (str, int, float, bool)) or v is None:
            out[str(k)] = v
        elif isinstance(v, list):
            out[str(k)] = tuple(str(x) for x in v)
        else:
            out[str(k)] = str(v)
    return out


# ---------------------------------------------------------------------------
# Settings model (single immutable snapshot)
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Core / identity --------------------------------------------------

    debug: bool = False
    version: str = "dev"
    app_name: str = "Qx7 Visitor Identity"

    # Indicates how this config reached the process (defaults/yaml)
    config_origin: str = "defaults"

    # --- HTTP surface -----------------------------------------------------

    base_path: str = "/api/v1/estore"
    host: str = "127.0.0.1"
    port: int = 3000
    enable_docs: bool = False

    cors_allow_all: bool = False
    cors_origins: Tuple[str, ...] = ()

    # --- Caching headers --------------------------------------------------

    # Step 1 JSON responses are private and short-lived.
    etag_max_age_s: int = 3600
    # Step 2 pixel is cached for ten years and expires a year out.
    pixel_max_age_s: int = 315_360_000
    pixel_expires_s: int = 31_536_000

    # --- Outbound analytics -----------------------------------------------

    analytics_enabled: bool = True
    analytics_url: str = "https://bio.analytickz.com/events"
    analytics_timeout_s: float = 5.0

    # --- Observability ----------------------------------------------------

    metrics_enabled: bool = True
    log_level: str = "INFO"

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #

    def config_hash(self) -> str:
        """
        Stable hash of the current settings, safe to expose on /version.
        """
        payload = self.model_dump(mode="json")
        canon = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(("qx7:settings|" + canon).encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def _load_settings() -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority:
      1. Settings defaults (in-code).
      2. YAML file pointed to by QX7_CONFIG_PATH.
      3. Environment variables (QX7_*), with bounds.
    """
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    # 1) YAML overlay
    yaml_path = os.environ.get("QX7_CONFIG_PATH", "").strip()
    yaml_doc = _load_yaml_mapping(yaml_path)
    if yaml_doc:
        tmp = dict(merged)
        tmp.update(yaml_doc)
        merged = Settings(**tmp).model_dump()  # enforces extra="forbid"
        origin = "yaml"

    # 2) Environment overrides
    def _env_override(name: str, key: str, parser, bounds=None) -> None:
        old = merged.get(key)
        new = parser(name, old)
        if bounds is not None and isinstance(new, (int, float)):
            lo, hi = bounds
            if new < lo or new > hi:
                return
        merged[key] = new

    _env_override("QX7_DEBUG", "debug", _env_bool)
    merged["version"] = os.environ.get("QX7_VERSION", merged["version"])

    # HTTP
    merged["base_path"] = os.environ.get("QX7_BASE_PATH", merged["base_path"])
    merged["host"] = os.environ.get("QX7_HOST", merged["host"])
    # PORT is honoured for parity with common PaaS conventions
    _env_override("PORT", "port", _env_int, bounds=(1, 65535))
    _env_override("QX7_PORT", "port", _env_int, bounds=(1, 65535))
    _env_override("QX7_ENABLE_DOCS", "enable_docs", _env_bool)

    _env_override("QX7_CORS_ALLOW_ALL", "cors_allow_all", _env_bool)
    merged["cors_origins"] = _env_csv("QX7_CORS_ORIGINS", tuple(merged["cors_origins"]))

    # Caching
    _env_override("QX7_ETAG_MAX_AGE_S", "etag_max_age_s", _env_int, bounds=(0, 315_360_000))
    _env_override("QX7_PIXEL_MAX_AGE_S", "pixel_max_age_s", _env_int, bounds=(0, 315_360_000))
    _env_override("QX7_PIXEL_EXPIRES_S", "pixel_expires_s", _env_int, bounds=(0, 315_360_000))

    # Analytics
    _env_override("QX7_ANALYTICS_ENABLE", "analytics_enabled", _env_bool)
    merged["analytics_url"] = os.environ.get("QX7_ANALYTICS_URL", merged["analytics_url"])
    _env_override("QX7_ANALYTICS_TIMEOUT_S", "analytics_timeout_s", _env_float, bounds=(0.1, 60.0))

    # Observability
    _env_override("QX7_METRICS_ENABLE", "metrics_enabled", _env_bool)
    merged["log_level"] = os.environ.get("QX7_LOG_LEVEL", merged["log_level"]).upper()

    merged["config_origin"] = origin
    return Settings(**merged)


# ---------------------------------------------------------------------------
# Reloadable wrapper
# ---------------------------------------------------------------------------


class ReloadableSettings:
    """
    Thread-safe holder of the current Settings snapshot.

      - get(): returns the immutable snapshot.
      - refresh(): reloads from YAML and environment.
      - set(): in-memory overrides of known fields; unknown keys are ignored.
    """

    def __init__(self, initial: Optional[Settings] = None) -> None:
        self._lock = threading.RLock()
        self._settings = initial or _load_settings()

    def get(self) -> Settings:
        with self._lock:
            return self._settings

    def refresh(self) -> Settings:
        with self._lock:
            self._settings = _load_settings()
            return self._settings

    def set(self, **overrides: Any) -> Settings:
        with self._lock:
            data = self._settings.model_dump()
            for key, value in overrides.items():
                if key in data:
                    data[key] = value
            self._settings = Settings(**data)
            return self._settings


def make_reloadable_settings() -> ReloadableSettings:
    return ReloadableSettings(_load_settings())
