from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Optional, Tuple

import boto3
from botocore.config import Config

from rlsmanager.config.defaults import logger


class ClientRegistry:
    """
    Lazily creates and caches one boto3 client per (service, region).

    Pass an instance to every component that talks to AWS; tests hand in a
    registry whose ``factory`` returns mocks.
    """

    def __init__(
        self,
        factory: Optional[Callable[..., Any]] = None,
        config: Optional[Config] = None,
    ):
        self._factory = factory or boto3.client
        self._config = config or Config(retries={"max_attempts": 5, "mode": "standard"})
        self._clients: Dict[Tuple[str, str], Any] = {}
        self._lock = threading.Lock()

    def get(self, service: str, region: str) -> Any:
        key = (service, region)
        with self._lock:
            client = self._clients.get(key)
            if client is None:
                logger.debug(f"[clients] Creating {service} client for region {region}")
                client = self._factory(service, region_name=region, config=self._config)
                self._clients[key] = client
            return client

    def s3(self, region: str) -> Any:
        return self.get("s3", region)

    def glue(self, region: str) -> Any:
        return self.get("glue", region)

    def quicksight(self, region: str) -> Any:
        return self.get("quicksight", region)

    def clear(self) -> None:
        with self._lock:
            self._clients.clear()
