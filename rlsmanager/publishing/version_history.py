from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from botocore.exceptions import ClientError

from rlsmanager.config.defaults import Default, logger
from rlsmanager.data_classes import ObjectVersion, PublishHistory, PublishStatus, StepResult
from rlsmanager.errors import result_from_exception
from rlsmanager.publishing.table_publisher import csv_key_for
from rlsmanager.redis_catalog import RedisCatalog
from rlsmanager.storage.s3_storage import S3Storage


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class VersionHistory:
    """
    Publish history of a dataset's managed CSV.

    Every publish attempt leaves an immutable PublishHistory record in the
    admin store; the CSV bytes themselves live as S3 object versions, which
    is what ``rollback`` restores from.
    """

    def __init__(self, redis_catalog: RedisCatalog, config: Default):
        self._catalog = redis_catalog
        self._config = config

    def record(
        self,
        data_set_arn: str,
        version: int,
        status: PublishStatus,
        s3_key: Optional[str] = None,
        s3_version_id: Optional[str] = None,
        permission_count: int = 0,
        csv_snapshot: Optional[str] = None,
        error_message: Optional[str] = None,
        published_by: Optional[str] = None,
    ) -> PublishHistory:
        history = PublishHistory(
            data_set_arn=data_set_arn,
            version=version,
            published_at=utc_now_iso(),
            status=status.value,
            s3_key=s3_key,
            s3_version_id=s3_version_id,
            permission_count=permission_count,
            csv_snapshot=csv_snapshot,
            error_message=error_message,
            published_by=published_by,
        )
        self._catalog.create_publish_history(history)
        logger.info(f"[versions] Recorded v{version} ({status.value}) for {data_set_arn}")
        return history

    def history(self, data_set_arn: str) -> List[PublishHistory]:
        return self._catalog.list_publish_history(data_set_arn)

    # ── storage versions ───────────────────────────────────────────── #

    def list_versions(self, storage: S3Storage, data_set_id: str) -> List[ObjectVersion]:
        return storage.list_versions(csv_key_for(data_set_id, self._config.s3_key_prefix))

    def get_version_content(self, storage: S3Storage, data_set_id: str, version_id: str) -> str:
        return storage.get_text(csv_key_for(data_set_id, self._config.s3_key_prefix), version_id)

    def rollback(self, storage: S3Storage, data_set_id: str, version_id: str) -> StepResult:
        """Copy an older version of the managed CSV back on top as the latest version."""
        key = csv_key_for(data_set_id, self._config.s3_key_prefix)
        try:
            content = storage.get_text(key, version_id)
            new_version_id = storage.copy_version(key, version_id, content_type="text/csv")
        except FileNotFoundError as e:
            return StepResult.failure(404, str(e), error_type="NoSuchKey")
        except ClientError as e:
            logger.error(f"[versions] Rollback of {key} to {version_id} failed: {e}")
            return result_from_exception(e, "Rollback failed")
        return StepResult.success(
            f"Restored version {version_id} of {key}",
            new_version_id=new_version_id,
            csv_content=content,
            s3_key=key,
        )
