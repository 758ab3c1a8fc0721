"""
Shared pytest fixtures.

Provides an in-memory Redis fake for the admin store, a RedisCatalog bound
to it, in-memory S3/Glue/QuickSight clients behind a ClientRegistry, and
silences the package logger during tests.
"""

from __future__ import annotations

import copy
import io
import itertools
import logging
import threading
from typing import Any, Dict

import pytest
from botocore.exceptions import ClientError

from rlsmanager.clients.client_registry import ClientRegistry
from rlsmanager.redis_catalog import RedisCatalog


class FakePipeline:
    """Buffers commands and executes them sequentially."""

    def __init__(self, store: "FakeRedis"):
        self._store = store
        self._cmds: list = []

    def __enter__(self):
        return self

    def __exit__(self, *args):
        pass

    def set(self, key, value, **kwargs):
        self._cmds.append(("set", (key, value), kwargs))

    def get(self, key):
        self._cmds.append(("get", (key,), {}))

    def sadd(self, key, *values):
        self._cmds.append(("sadd", (key,) + values, {}))

    def srem(self, key, *values):
        self._cmds.append(("srem", (key,) + values, {}))

    def delete(self, *keys):
        self._cmds.append(("delete", keys, {}))

    def execute(self):
        results = [getattr(self._store, name)(*args, **kwargs) for name, args, kwargs in self._cmds]
        self._cmds = []
        return results


class FakeRedis:
    """Minimal in-memory Redis mock (strings and sets only)."""

    def __init__(self):
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key):
        v = self._data.get(key)
        return v if isinstance(v, str) else None

    def set(self, key, value, nx=False, ex=None, **kwargs):
        with self._lock:
            if nx and key in self._data:
                return None
            self._data[key] = str(value)
            return True

    def delete(self, *keys):
        with self._lock:
            count = 0
            for k in keys:
                if k in self._data:
                    del self._data[k]
                    count += 1
            return count

    def exists(self, key):
        return 1 if key in self._data else 0

    def sadd(self, key, *values):
        with self._lock:
            s = self._data.setdefault(key, set())
            before = len(s)
            s.update(values)
            return len(s) - before

    def srem(self, key, *values):
        with self._lock:
            s = self._data.get(key)
            if not isinstance(s, set):
                return 0
            removed = len([v for v in values if v in s])
            s.difference_update(values)
            return removed

    def smembers(self, key):
        s = self._data.get(key)
        return set(s) if isinstance(s, set) else set()

    def pipeline(self):
        return FakePipeline(self)


# ---------------------------------------------------------------------------
# In-memory AWS clients (only the calls the manager makes)
# ---------------------------------------------------------------------------

def _client_error(code: str, op: str, message: str = "") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, op)


class _Paginator:
    def __init__(self, fn):
        self._fn = fn

    def paginate(self, **kwargs):
        yield self._fn(**kwargs)


class FakeS3:
    """Versioned bucket store: key -> list of (version_id, body), oldest first."""

    def __init__(self, buckets=("rls-bucket",)):
        self.buckets = {b: {} for b in buckets}
        self._seq = itertools.count(1)

    def _bucket(self, name, op):
        if name not in self.buckets:
            raise _client_error("NoSuchBucket", op)
        return self.buckets[name]

    def head_bucket(self, Bucket):
        self._bucket(Bucket, "HeadBucket")
        return {}

    def put_object(self, Bucket, Key, Body, **kwargs):
        vid = f"v{next(self._seq)}"
        self._bucket(Bucket, "PutObject").setdefault(Key, []).append((vid, bytes(Body)))
        return {"VersionId": vid}

    def get_object(self, Bucket, Key, VersionId=None):
        versions = self._bucket(Bucket, "GetObject").get(Key)
        if not versions:
            raise _client_error("NoSuchKey", "GetObject")
        if VersionId is None:
            return {"Body": io.BytesIO(versions[-1][1])}
        for vid, body in versions:
            if vid == VersionId:
                return {"Body": io.BytesIO(body)}
        raise _client_error("NoSuchVersion", "GetObject")

    def copy_object(self, Bucket, Key, CopySource, **kwargs):
        body = self.get_object(CopySource["Bucket"], CopySource["Key"], CopySource.get("VersionId"))["Body"].read()
        return self.put_object(Bucket, Key, body)

    def delete_objects(self, Bucket, Delete):
        bucket = self._bucket(Bucket, "DeleteObjects")
        for obj in Delete["Objects"]:
            bucket.pop(obj["Key"], None)
        return {}

    def _list_objects(self, Bucket, Prefix=""):
        keys = sorted(k for k in self._bucket(Bucket, "ListObjectsV2") if k.startswith(Prefix))
        return {"Contents": [{"Key": k} for k in keys]} if keys else {"KeyCount": 0}

    def _list_versions(self, Bucket, Prefix=""):
        out = []
        for key, versions in self._bucket(Bucket, "ListObjectVersions").items():
            if not key.startswith(Prefix):
                continue
            for i, (vid, body) in enumerate(versions):
                out.append({
                    "Key": key,
                    "VersionId": vid,
                    "LastModified": f"2026-01-01T00:00:{i:02d}+00:00",
                    "Size": len(body),
                    "IsLatest": i == len(versions) - 1,
                })
        return {"Versions": out}

    def get_paginator(self, name):
        return _Paginator({"list_objects_v2": self._list_objects, "list_object_versions": self._list_versions}[name])

    def latest_text(self, bucket, key):
        return self.buckets[bucket][key][-1][1].decode("utf-8")


class FakeGlue:
    def __init__(self, databases=("rls_db",)):
        self.databases = {d: {} for d in databases}

    def _db(self, name, op):
        if name not in self.databases:
            raise _client_error("EntityNotFoundException", op)
        return self.databases[name]

    def get_database(self, Name, **kwargs):
        self._db(Name, "GetDatabase")
        return {"Database": {"Name": Name}}

    def get_table(self, DatabaseName, Name, **kwargs):
        table = self._db(DatabaseName, "GetTable").get(Name)
        if table is None:
            raise _client_error("EntityNotFoundException", "GetTable")
        return {"Table": table}

    def create_table(self, DatabaseName, TableInput, **kwargs):
        db = self._db(DatabaseName, "CreateTable")
        if TableInput["Name"] in db:
            raise _client_error("AlreadyExistsException", "CreateTable")
        db[TableInput["Name"]] = TableInput

    def update_table(self, DatabaseName, TableInput, **kwargs):
        db = self._db(DatabaseName, "UpdateTable")
        if TableInput["Name"] not in db:
            raise _client_error("EntityNotFoundException", "UpdateTable")
        db[TableInput["Name"]] = TableInput

    def delete_table(self, DatabaseName, Name, **kwargs):
        db = self._db(DatabaseName, "DeleteTable")
        if Name not in db:
            raise _client_error("EntityNotFoundException", "DeleteTable")
        del db[Name]


class FakeQuickSight:
    """
    Datasets keyed by id. SPICE writes start an ingestion whose status
    sequence comes from ``ingestion_statuses`` (default: completes at once).
    """

    def __init__(self, region="eu-west-1", account_id="111122223333"):
        self.region = region
        self.account_id = account_id
        self.data_sources = {"athena-src"}
        self.data_sets: Dict[str, Dict[str, Any]] = {}
        self.permissions: Dict[str, list] = {}
        self.ingestion_statuses = ["COMPLETED"]
        self._ingestions: Dict[str, list] = {}
        self._seq = itertools.count(1)
        self.writes: list = []

    def arn(self, data_set_id):
        return f"arn:aws:quicksight:{self.region}:{self.account_id}:dataset/{data_set_id}"

    def add_data_set(self, data_set_id, import_mode="SPICE", **extra):
        self.data_sets[data_set_id] = {
            "Arn": self.arn(data_set_id),
            "DataSetId": data_set_id,
            "Name": data_set_id,
            "ImportMode": import_mode,
            "PhysicalTableMap": {"pt": {"RelationalTable": {"Name": data_set_id}}},
            "LogicalTableMap": {"lt": {"Alias": data_set_id, "Source": {"PhysicalTableId": "pt"}}},
            **extra,
        }
        return self.arn(data_set_id)

    def _write_response(self, data_set_id, status):
        resp = {"Arn": self.arn(data_set_id), "DataSetId": data_set_id, "Status": status}
        if self.data_sets[data_set_id].get("ImportMode") == "SPICE":
            ingestion_id = f"ing-{next(self._seq)}"
            self._ingestions[ingestion_id] = list(self.ingestion_statuses)
            resp["IngestionId"] = ingestion_id
            resp["Status"] = 201
        return resp

    def describe_data_source(self, AwsAccountId, DataSourceId):
        if DataSourceId not in self.data_sources:
            raise _client_error("ResourceNotFoundException", "DescribeDataSource")
        return {"DataSource": {"DataSourceId": DataSourceId}}

    def describe_data_set(self, AwsAccountId, DataSetId):
        if DataSetId not in self.data_sets:
            raise _client_error("ResourceNotFoundException", "DescribeDataSet")
        return {"DataSet": copy.deepcopy(self.data_sets[DataSetId])}

    def create_data_set(self, AwsAccountId, **params):
        data_set_id = params["DataSetId"]
        if data_set_id in self.data_sets:
            raise _client_error("ResourceExistsException", "CreateDataSet")
        self.data_sets[data_set_id] = {"Arn": self.arn(data_set_id), **copy.deepcopy(params)}
        self.writes.append(("create", data_set_id))
        return self._write_response(data_set_id, 201)

    def update_data_set(self, AwsAccountId, **params):
        data_set_id = params["DataSetId"]
        if data_set_id not in self.data_sets:
            raise _client_error("ResourceNotFoundException", "UpdateDataSet")
        kept = {k: v for k, v in self.data_sets[data_set_id].items() if k in ("Arn", "Tags", "UseAs")}
        self.data_sets[data_set_id] = {**kept, **copy.deepcopy(params)}
        self.writes.append(("update", data_set_id))
        return self._write_response(data_set_id, 200)

    def delete_data_set(self, AwsAccountId, DataSetId):
        if DataSetId not in self.data_sets:
            raise _client_error("ResourceNotFoundException", "DeleteDataSet")
        del self.data_sets[DataSetId]
        self.writes.append(("delete", DataSetId))

    def describe_ingestion(self, AwsAccountId, DataSetId, IngestionId):
        statuses = self._ingestions[IngestionId]
        status = statuses.pop(0) if len(statuses) > 1 else statuses[0]
        return {"Ingestion": {"IngestionId": IngestionId, "IngestionStatus": status}}

    def describe_data_set_permissions(self, AwsAccountId, DataSetId):
        return {"Permissions": list(self.permissions.get(DataSetId, []))}

    def update_data_set_permissions(self, AwsAccountId, DataSetId, GrantPermissions=(), RevokePermissions=()):
        current = {p["Principal"]: set(p["Actions"]) for p in self.permissions.get(DataSetId, [])}
        for r in RevokePermissions:
            current[r["Principal"]] = current.get(r["Principal"], set()) - set(r["Actions"])
        for g in GrantPermissions:
            current[g["Principal"]] = current.get(g["Principal"], set()) | set(g["Actions"])
        self.permissions[DataSetId] = [
            {"Principal": p, "Actions": sorted(a)} for p, a in sorted(current.items()) if a
        ]


class FakeAws:
    def __init__(self):
        self.s3 = FakeS3()
        self.glue = FakeGlue()
        self.quicksight = FakeQuickSight()
        self.registry = ClientRegistry(factory=lambda service, **kw: getattr(self, service))


@pytest.fixture(autouse=True, scope="session")
def _suppress_test_log_noise():
    """Error-path tests log expected failures; keep test output clean."""
    logging.getLogger("rlsmanager").setLevel(logging.CRITICAL)
    yield
    logging.getLogger("rlsmanager").setLevel(logging.NOTSET)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def catalog(fake_redis) -> RedisCatalog:
    return RedisCatalog(client=fake_redis)


@pytest.fixture
def aws() -> FakeAws:
    return FakeAws()
