from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("rlsmanager")


def _env_int(name: str, fallback: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return fallback
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"[config] Invalid integer for {name}: {raw!r}, using {fallback}")
        return fallback


@dataclass(frozen=True)
class Default:
    """
    Process-wide settings for the RLS manager.

    Built once by ``load_defaults_from_env`` and handed to every component
    through its constructor.
    """
    account_id: str = ""
    region: Optional[str] = None
    log_level: str = "INFO"
    ingestion_poll_interval_sec: float = 5.0
    s3_key_prefix: str = "RLS-Datasets"
    redis_namespace: str = "rlsmanager"
    permission_delete_workers: int = 8


def load_defaults_from_env() -> Default:
    account_id = os.getenv("RLS_MANAGER_ACCOUNT_ID") or os.getenv("AWS_ACCOUNT_ID") or ""
    region = (
            os.getenv("RLS_MANAGER_REGION")
            or os.getenv("AWS_REGION")
            or os.getenv("AWS_DEFAULT_REGION")
            or None
    )
    log_level = (os.getenv("RLS_MANAGER_LOG_LEVEL") or "INFO").strip().upper()
    poll = os.getenv("RLS_MANAGER_INGESTION_POLL_INTERVAL")
    try:
        poll_interval = float(poll) if poll else 5.0
    except ValueError:
        logger.warning(f"[config] Invalid RLS_MANAGER_INGESTION_POLL_INTERVAL: {poll!r}, using 5")
        poll_interval = 5.0

    return Default(
        account_id=account_id,
        region=region,
        log_level=log_level,
        ingestion_poll_interval_sec=poll_interval,
        s3_key_prefix=os.getenv("RLS_MANAGER_S3_KEY_PREFIX", "RLS-Datasets"),
        redis_namespace=os.getenv("RLS_MANAGER_REDIS_NAMESPACE", "rlsmanager"),
        permission_delete_workers=_env_int("RLS_MANAGER_PERMISSION_DELETE_WORKERS", 8),
    )


def configure_logging(level: str) -> None:
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))


default = load_defaults_from_env()
configure_logging(default.log_level)
