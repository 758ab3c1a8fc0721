from __future__ import annotations

import json
import uuid
from typing import Any, Dict, Iterable, List, Optional

import redis
from rlsmanager.config.defaults import logger
from rlsmanager.data_classes import DataSetRecord, Permission, PublishHistory, RLSDataSetVisibility
from rlsmanager.redis_connector import RedisOptions, create_redis_client


def _decode(v: Any) -> Optional[str]:
    if v is None:
        return None
    if isinstance(v, bytes):
        return v.decode("utf-8")
    return str(v)


def _data_set_key(ns: str, arn: str) -> str:
    return f"{ns}:dataset:{arn}"


def _data_sets_index_key(ns: str) -> str:
    return f"{ns}:datasets"


def _permission_key(ns: str, permission_id: str) -> str:
    return f"{ns}:permission:{permission_id}"


def _permissions_index_key(ns: str, data_set_arn: str) -> str:
    return f"{ns}:dataset:{data_set_arn}:permissions"


def _visibility_key(ns: str, visibility_id: str) -> str:
    return f"{ns}:visibility:{visibility_id}"


def _visibility_index_key(ns: str, data_set_arn: str) -> str:
    return f"{ns}:dataset:{data_set_arn}:visibility"


def _history_key(ns: str, data_set_arn: str, version: int) -> str:
    return f"{ns}:history:{data_set_arn}:{version}"


def _history_index_key(ns: str, data_set_arn: str) -> str:
    return f"{ns}:dataset:{data_set_arn}:history"


def _matches(doc: Dict[str, Any], equals: Dict[str, Any]) -> bool:
    return all(doc.get(k) == v for k, v in equals.items())


class RedisCatalog:
    """
    Redis-backed administrative store for the RLS manager:
      * dataset:{arn} -> DataSetRecord JSON          (index: datasets)
      * permission:{id} -> Permission JSON           (index: dataset:{arn}:permissions)
      * visibility:{id} -> RLSDataSetVisibility JSON (index: dataset:{arn}:visibility)
      * history:{arn}:{version} -> PublishHistory    (index: dataset:{arn}:history)

    Every call commits on its own; there are no cross-call transactions.
    """

    def __init__(
        self,
        options: Optional[RedisOptions] = None,
        client: Optional[redis.Redis] = None,
        namespace: str = "rlsmanager",
    ):
        self.r = client if client is not None else create_redis_client(options)
        self.ns = namespace

    # ------------- helpers -------------

    def _get_json(self, key: str) -> Optional[Dict[str, Any]]:
        raw = _decode(self.r.get(key))
        if raw is None:
            return None
        return json.loads(raw)

    def _members(self, key: str) -> List[str]:
        return sorted(_decode(m) for m in self.r.smembers(key))

    def _load_many(self, keys: Iterable[str]) -> List[Dict[str, Any]]:
        docs = []
        for key in keys:
            doc = self._get_json(key)
            if doc is not None:
                docs.append(doc)
        return docs

    # ------------- datasets -------------

    def get_data_set(self, data_set_arn: str) -> Optional[DataSetRecord]:
        try:
            doc = self._get_json(_data_set_key(self.ns, data_set_arn))
        except redis.RedisError as e:
            logger.error(f"[redis-catalog] get_data_set error: {e}")
            raise
        return DataSetRecord.from_dict(doc) if doc else None

    def create_data_set(self, record: DataSetRecord) -> DataSetRecord:
        try:
            with self.r.pipeline() as pipe:
                pipe.set(_data_set_key(self.ns, record.data_set_arn), json.dumps(record.to_dict()))
                pipe.sadd(_data_sets_index_key(self.ns), record.data_set_arn)
                pipe.execute()
        except redis.RedisError as e:
            logger.error(f"[redis-catalog] create_data_set error: {e}")
            raise
        logger.debug(f"[redis-catalog] Dataset record created: {record.data_set_arn}")
        return record

    def update_data_set(self, data_set_arn: str, **changes: Any) -> DataSetRecord:
        """Apply ``changes`` to an existing record. Raises KeyError when the record does not exist."""
        key = _data_set_key(self.ns, data_set_arn)
        try:
            doc = self._get_json(key)
            if doc is None:
                raise KeyError(f"Dataset record not found: {data_set_arn}")
            doc.update(changes)
            self.r.set(key, json.dumps(doc))
        except redis.RedisError as e:
            logger.error(f"[redis-catalog] update_data_set error: {e}")
            raise
        return DataSetRecord.from_dict(doc)

    def delete_data_set(self, data_set_arn: str) -> bool:
        try:
            with self.r.pipeline() as pipe:
                pipe.delete(_data_set_key(self.ns, data_set_arn))
                pipe.srem(_data_sets_index_key(self.ns), data_set_arn)
                deleted, _ = pipe.execute()
        except redis.RedisError as e:
            logger.error(f"[redis-catalog] delete_data_set error: {e}")
            raise
        return bool(deleted)

    def list_data_sets(self, **equals: Any) -> List[DataSetRecord]:
        """All dataset records whose fields equal every keyword given (AND)."""
        return self.list_data_sets_any([equals] if equals else [])

    def list_data_sets_any(self, filters: List[Dict[str, Any]]) -> List[DataSetRecord]:
        """Records matching at least one AND-group in ``filters`` (OR of ANDs). No filters -> all."""
        try:
            arns = self._members(_data_sets_index_key(self.ns))
            docs = self._load_many(_data_set_key(self.ns, a) for a in arns)
        except redis.RedisError as e:
            logger.error(f"[redis-catalog] list_data_sets error: {e}")
            raise
        if filters:
            docs = [d for d in docs if any(_matches(d, f) for f in filters)]
        return [DataSetRecord.from_dict(d) for d in docs]

    # ------------- permissions -------------

    def list_permissions(self, data_set_arn: str) -> List[Permission]:
        try:
            ids = self._members(_permissions_index_key(self.ns, data_set_arn))
            docs = self._load_many(_permission_key(self.ns, i) for i in ids)
        except redis.RedisError as e:
            logger.error(f"[redis-catalog] list_permissions error: {e}")
            raise
        return [Permission.from_dict(d) for d in docs]

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        try:
            doc = self._get_json(_permission_key(self.ns, permission_id))
        except redis.RedisError as e:
            logger.error(f"[redis-catalog] get_permission error: {e}")
            raise
        return Permission.from_dict(doc) if doc else None

    def create_permission(self, permission: Permission) -> Permission:
        if not permission.id:
            permission.id = str(uuid.uuid4())
        try:
            with self.r.pipeline() as pipe:
                pipe.set(_permission_key(self.ns, permission.id), json.dumps(permission.to_dict()))
                pipe.sadd(_permissions_index_key(self.ns, permission.data_set_arn), permission.id)
                pipe.execute()
        except redis.RedisError as e:
            logger.error(f"[redis-catalog] create_permission error: {e}")
            raise
        return permission

    def update_permission(self, permission_id: str, **changes: Any) -> Permission:
        key = _permission_key(self.ns, permission_id)
        try:
            doc = self._get_json(key)
            if doc is None:
                raise KeyError(f"Permission not found: {permission_id}")
            doc.update(changes)
            self.r.set(key, json.dumps(doc))
        except redis.RedisError as e:
            logger.error(f"[redis-catalog] update_permission error: {e}")
            raise
        return Permission.from_dict(doc)

    def delete_permission(self, permission_id: str) -> bool:
        try:
            current = self.get_permission(permission_id)
            if current is None:
                return False
            with self.r.pipeline() as pipe:
                pipe.delete(_permission_key(self.ns, permission_id))
                pipe.srem(_permissions_index_key(self.ns, current.data_set_arn), permission_id)
                pipe.execute()
        except redis.RedisError as e:
            logger.error(f"[redis-catalog] delete_permission error: {e}")
            raise
        return True

    # ------------- visibility -------------

    def list_visibility(self, data_set_arn: str) -> List[RLSDataSetVisibility]:
        try:
            ids = self._members(_visibility_index_key(self.ns, data_set_arn))
            docs = self._load_many(_visibility_key(self.ns, i) for i in ids)
        except redis.RedisError as e:
            logger.error(f"[redis-catalog] list_visibility error: {e}")
            raise
        return [RLSDataSetVisibility.from_dict(d) for d in docs]

    def create_visibility(self, visibility: RLSDataSetVisibility) -> RLSDataSetVisibility:
        if not visibility.id:
            visibility.id = str(uuid.uuid4())
        try:
            with self.r.pipeline() as pipe:
                pipe.set(_visibility_key(self.ns, visibility.id), json.dumps(visibility.to_dict()))
                pipe.sadd(_visibility_index_key(self.ns, visibility.data_set_arn), visibility.id)
                pipe.execute()
        except redis.RedisError as e:
            logger.error(f"[redis-catalog] create_visibility error: {e}")
            raise
        return visibility

    def update_visibility(self, visibility_id: str, **changes: Any) -> RLSDataSetVisibility:
        key = _visibility_key(self.ns, visibility_id)
        try:
            doc = self._get_json(key)
            if doc is None:
                raise KeyError(f"Visibility record not found: {visibility_id}")
            doc.update(changes)
            self.r.set(key, json.dumps(doc))
        except redis.RedisError as e:
            logger.error(f"[redis-catalog] update_visibility error: {e}")
            raise
        return RLSDataSetVisibility.from_dict(doc)

    def delete_visibility(self, visibility_id: str) -> bool:
        key = _visibility_key(self.ns, visibility_id)
        try:
            doc = self._get_json(key)
            if doc is None:
                return False
            with self.r.pipeline() as pipe:
                pipe.delete(key)
                pipe.srem(_visibility_index_key(self.ns, doc["data_set_arn"]), visibility_id)
                pipe.execute()
        except redis.RedisError as e:
            logger.error(f"[redis-catalog] delete_visibility error: {e}")
            raise
        return True

    # ------------- publish history -------------

    def create_publish_history(self, history: PublishHistory) -> PublishHistory:
        """Store an immutable version record. Raises ValueError if that version already exists."""
        if not history.id:
            history.id = str(uuid.uuid4())
        key = _history_key(self.ns, history.data_set_arn, history.version)
        try:
            # SET NX keeps an existing record untouched
            if not self.r.set(key, json.dumps(history.to_dict()), nx=True):
                raise ValueError(
                    f"Publish history v{history.version} already exists for {history.data_set_arn}"
                )
            self.r.sadd(_history_index_key(self.ns, history.data_set_arn), str(history.version))
        except redis.RedisError as e:
            logger.error(f"[redis-catalog] create_publish_history error: {e}")
            raise
        return history

    def get_publish_history(self, data_set_arn: str, version: int) -> Optional[PublishHistory]:
        try:
            doc = self._get_json(_history_key(self.ns, data_set_arn, version))
        except redis.RedisError as e:
            logger.error(f"[redis-catalog] get_publish_history error: {e}")
            raise
        return PublishHistory.from_dict(doc) if doc else None

    def list_publish_history(self, data_set_arn: str) -> List[PublishHistory]:
        """History records for a dataset, newest version first."""
        try:
            versions = sorted((int(v) for v in self._members(_history_index_key(self.ns, data_set_arn))), reverse=True)
            docs = self._load_many(_history_key(self.ns, data_set_arn, v) for v in versions)
        except redis.RedisError as e:
            logger.error(f"[redis-catalog] list_publish_history error: {e}")
            raise
        return [PublishHistory.from_dict(d) for d in docs]
