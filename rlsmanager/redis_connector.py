from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

import redis
from rlsmanager.config.defaults import logger

load_dotenv()


@dataclass(frozen=True)
class RedisOptions:
    """
    Connection settings of the admin store.

    ``from_env`` reads RLS_MANAGER_REDIS_URL (redis:// or rediss://) or, when
    it is unset, RLS_MANAGER_REDIS_HOST / _PORT / _DB / _PASSWORD.
    """
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    use_ssl: bool = False
    decode_responses: bool = False

    @classmethod
    def from_env(cls) -> "RedisOptions":
        decode = os.getenv("RLS_MANAGER_REDIS_DECODE_RESPONSES", "false").strip().lower() in ("1", "true", "yes", "on")
        url = os.getenv("RLS_MANAGER_REDIS_URL")
        if url:
            u = urlparse(url)
            return cls(
                host=u.hostname or "localhost",
                port=u.port or 6379,
                db=int((u.path or "/0").lstrip("/") or 0),
                password=u.password,
                use_ssl=u.scheme.lower() == "rediss",
                decode_responses=decode,
            )
        return cls(
            host=os.getenv("RLS_MANAGER_REDIS_HOST", "localhost"),
            port=int(os.getenv("RLS_MANAGER_REDIS_PORT", "6379")),
            db=int(os.getenv("RLS_MANAGER_REDIS_DB", "0")),
            password=os.getenv("RLS_MANAGER_REDIS_PASSWORD") or None,
            decode_responses=decode,
        )

    def client_kwargs(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "db": self.db,
            "password": self.password,
            "ssl": self.use_ssl,
            "decode_responses": self.decode_responses,
        }


def create_redis_client(options: Optional[RedisOptions] = None) -> redis.Redis:
    opts = options or RedisOptions.from_env()
    logger.info(f"[redis-connector] Connecting to {opts.host}:{opts.port} db={opts.db} ssl={opts.use_ssl}")
    return redis.Redis(**opts.client_kwargs())
