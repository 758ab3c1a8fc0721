from __future__ import annotations

from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from rlsmanager.config.defaults import logger
from rlsmanager.data_classes import ObjectVersion

_NOT_FOUND_CODES = ("404", "NoSuchKey", "NotFound", "NoSuchVersion")


class S3Storage:
    """
    Versioned-object access to the RLS bucket.

    - put_text(): plain overwrite; on a versioning-enabled bucket this creates a new version
    - list_versions(): versions of one exact key, newest first
    - copy_version(): re-copies an old version onto the same key (rollback)
    - delete_prefix(): removes every object under a prefix, in batches of 1000
    """

    def __init__(self, bucket_name: str, client: Any):
        self.bucket_name = bucket_name
        self.client = client

    def _call(self, method: str, **kwargs: Any) -> Any:
        return getattr(self.client, method)(Bucket=self.bucket_name, **kwargs)

    def head_bucket(self) -> None:
        self._call("head_bucket")

    def exists(self, key: str) -> bool:
        try:
            self._call("head_object", Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _NOT_FOUND_CODES:
                return False
            raise

    # -------------------------
    # Objects
    # -------------------------
    def put_text(self, key: str, text: str, content_type: str = "text/csv") -> Optional[str]:
        resp = self._call(
            "put_object",
            Key=key,
            Body=text.encode("utf-8"),
            ContentType=content_type,
        )
        version_id = resp.get("VersionId")
        logger.debug(f"[s3-storage] put s3://{self.bucket_name}/{key} version={version_id}")
        return version_id

    def get_text(self, key: str, version_id: Optional[str] = None) -> str:
        kwargs: Dict[str, Any] = {"Key": key}
        if version_id:
            kwargs["VersionId"] = version_id
        try:
            resp = self._call("get_object", **kwargs)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in _NOT_FOUND_CODES:
                raise FileNotFoundError(f"File not found: {key} (version {version_id})") from e
            raise
        return resp["Body"].read().decode("utf-8")

    def copy_version(self, key: str, version_id: str, content_type: str = "text/csv") -> Optional[str]:
        resp = self._call(
            "copy_object",
            Key=key,
            CopySource={"Bucket": self.bucket_name, "Key": key, "VersionId": version_id},
            ContentType=content_type,
            MetadataDirective="REPLACE",
        )
        new_version = resp.get("VersionId")
        logger.info(f"[s3-storage] Restored {key} from version {version_id} as {new_version}")
        return new_version

    # -------------------------
    # Versions
    # -------------------------
    def list_versions(self, key: str) -> List[ObjectVersion]:
        paginator = self.client.get_paginator("list_object_versions")
        versions: List[ObjectVersion] = []
        for page in paginator.paginate(Bucket=self.bucket_name, Prefix=key):
            for v in page.get("Versions", []):
                # Prefix matches siblings like "<key>.bak"; keep the exact key only
                if v.get("Key") != key:
                    continue
                last_modified = v.get("LastModified")
                versions.append(ObjectVersion(
                    version_id=v.get("VersionId"),
                    last_modified=last_modified.isoformat() if hasattr(last_modified, "isoformat") else last_modified,
                    size=int(v.get("Size") or 0),
                    is_latest=bool(v.get("IsLatest")),
                ))
        versions.sort(key=lambda ov: ov.last_modified or "", reverse=True)
        return versions

    # -------------------------
    # Delete
    # -------------------------
    def delete_prefix(self, prefix: str) -> int:
        prefix = prefix if prefix.endswith("/") else f"{prefix}/"

        paginator = self.client.get_paginator("list_objects_v2")
        keys = []
        for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
            for obj in page.get("Contents", []):
                keys.append({"Key": obj["Key"]})

        if not keys:
            logger.info(f"[s3-storage] Nothing to delete under s3://{self.bucket_name}/{prefix}")
            return 0

        # Batch delete in chunks of 1000 (S3 limit)
        for i in range(0, len(keys), 1000):
            chunk = keys[i:i + 1000]
            resp = self._call("delete_objects", Delete={"Objects": chunk, "Quiet": True})
            errors = resp.get("Errors") or []
            if errors:
                first = errors[0]
                raise ClientError(
                    {"Error": {"Code": first.get("Code", "InternalError"), "Message": first.get("Message", "")}},
                    "DeleteObjects",
                )
        logger.info(f"[s3-storage] Deleted {len(keys)} object(s) under s3://{self.bucket_name}/{prefix}")
        return len(keys)
