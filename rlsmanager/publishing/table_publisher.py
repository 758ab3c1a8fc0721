from __future__ import annotations

from typing import Iterable, List, Optional

from botocore.exceptions import ClientError

from rlsmanager.catalog.glue_catalog import GlueCatalog, build_table_input, table_name_for
from rlsmanager.clients.client_registry import ClientRegistry
from rlsmanager.config.defaults import Default, logger
from rlsmanager.data_classes import StepResult, ToolResources
from rlsmanager.errors import NoValidColumnsFound, is_error, result_from_exception
from rlsmanager.storage.s3_storage import S3Storage


def normalize_columns(headers: Iterable[Optional[str]]) -> List[str]:
    """Drop blank names and duplicates, keeping first-seen order."""
    seen = set()
    columns: List[str] = []
    for h in headers:
        name = (h or "").strip()
        if not name or name in seen:
            continue
        seen.add(name)
        columns.append(name)
    if not columns:
        raise NoValidColumnsFound("No valid CSV Headers found")
    return columns


def csv_key_for(data_set_id: str, prefix: str = "RLS-Datasets") -> str:
    return f"{prefix}/{data_set_id}/QS_RLS_Managed_{data_set_id}.csv"


class TablePublisher:
    """Uploads the managed CSV and keeps the Glue table over it in step with the CSV header."""

    def __init__(self, registry: ClientRegistry, config: Default):
        self._registry = registry
        self._config = config

    def upload_csv(
        self,
        resources: ToolResources,
        data_set_id: str,
        csv_content: str,
        csv_headers: Iterable[Optional[str]],
    ) -> StepResult:
        try:
            columns = normalize_columns(csv_headers)
            key = csv_key_for(data_set_id, self._config.s3_key_prefix)
            storage = S3Storage(resources.s3_bucket_name, self._registry.s3(resources.region))
            version_id = storage.put_text(key, csv_content, content_type="text/csv")
        except (ClientError, NoValidColumnsFound) as e:
            logger.error(f"[publish] CSV upload failed: {e}")
            return result_from_exception(e)
        return StepResult.success(
            f"CSV uploaded to s3://{resources.s3_bucket_name}/{key}",
            csv_columns=columns,
            s3_key=key,
            s3_version_id=version_id,
        )

    def publish_table(self, resources: ToolResources, data_set_id: str, columns: List[str]) -> StepResult:
        """Create the Glue table, or update its columns if it already exists."""
        catalog = GlueCatalog(self._registry.glue(resources.region), self._config.account_id)
        table_input = build_table_input(
            data_set_id, resources.s3_bucket_name, columns, self._config.s3_key_prefix,
        )
        db = resources.glue_database_name
        name = table_name_for(data_set_id)
        try:
            if catalog.get_table(db, name) is None:
                try:
                    catalog.create_table(db, table_input)
                    return StepResult.success(f"Glue Table {name} created", table_name=name, created=True)
                except ClientError as e:
                    # someone else created it between the lookup and the create
                    if not is_error(e, "AlreadyExistsException"):
                        raise
                    logger.info(f"[publish] Glue table {name} appeared concurrently; updating instead")
            try:
                catalog.update_table(db, table_input)
            except ClientError as e:
                # deleted between the lookup and the update
                if not is_error(e, "EntityNotFoundException"):
                    raise
                catalog.create_table(db, table_input)
                return StepResult.success(f"Glue Table {name} created", table_name=name, created=True)
        except ClientError as e:
            logger.error(f"[publish] Glue table publish failed: {e}")
            return result_from_exception(e)
        return StepResult.success(f"Glue Table {name} updated", table_name=name, created=False)
