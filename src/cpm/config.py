from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import logging
import os
import sys


DEFAULT_CURRENCY = "PHP"
LOGIN_ROUTE = "/login"
DEFAULT_ROUTE = "/dashboard"
PRICES_ROUTE = "/prices"


@dataclass(frozen=True)
class AppPaths:
    base_dir: Path
    db_path: Path
    logs_dir: Path


def _windows_appdata() -> Path:
    return Path(os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming")))


def _mac_app_support() -> Path:
    return Path.home() / "Library" / "Application Support"


def get_app_paths(app_name: str = "CoffeePriceManager") -> AppPaths:
    if sys.platform.startswith("win"):
        base = _windows_appdata() / app_name
    elif sys.platform == "darwin":
        base = _mac_app_support() / app_name
    else:
        base = Path.home() / f".{app_name.lower()}"

    logs = base / "logs"
    db = base / "prices.db"

    base.mkdir(parents=True, exist_ok=True)
    logs.mkdir(parents=True, exist_ok=True)

    return AppPaths(base_dir=base, db_path=db, logs_dir=logs)


@dataclass(frozen=True)
class Settings:
    db_path: Path
    logs_dir: Path
    currency: str = DEFAULT_CURRENCY
    store: str = "sqlite"
    rest_url: Optional[str] = None
    rest_key: Optional[str] = None
    rest_user_id: Optional[int] = None
    bootstrap_admin_pin: Optional[str] = None
    log_level: int = logging.INFO


def load_settings(env: Mapping[str, str] | None = None, paths: AppPaths | None = None) -> Settings:
    """Build settings from CPM_* environment variables on top of the per-OS app paths."""
    env = os.environ if env is None else env
    paths = paths or get_app_paths()

    db_path = Path(env["CPM_DB_PATH"]) if env.get("CPM_DB_PATH") else paths.db_path
    store = (env.get("CPM_STORE") or "sqlite").strip().lower()
    if store not in {"sqlite", "rest"}:
        raise ValueError(f"CPM_STORE must be 'sqlite' or 'rest', got '{store}'.")
    if store == "rest" and not env.get("CPM_REST_URL"):
        raise ValueError("CPM_REST_URL is required when CPM_STORE=rest.")

    level_name = (env.get("CPM_LOG_LEVEL") or "INFO").strip().upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    return Settings(
        db_path=db_path,
        logs_dir=paths.logs_dir,
        currency=(env.get("CPM_CURRENCY") or DEFAULT_CURRENCY).strip().upper(),
        store=store,
        rest_url=env.get("CPM_REST_URL") or None,
        rest_key=env.get("CPM_REST_KEY") or None,
        rest_user_id=int(env["CPM_REST_USER_ID"]) if env.get("CPM_REST_USER_ID") else None,
        bootstrap_admin_pin=(env.get("CPM_BOOTSTRAP_ADMIN_PIN") or "").strip() or None,
        log_level=level,
    )
