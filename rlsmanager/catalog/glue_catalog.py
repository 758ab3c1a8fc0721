from __future__ import annotations

from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from rlsmanager.config.defaults import logger
from rlsmanager.errors import is_error

TABLE_PREFIX = "qs-rls-"

INPUT_FORMAT = "org.apache.hadoop.mapred.TextInputFormat"
OUTPUT_FORMAT = "org.apache.hadoop.hive.ql.io.HiveIgnoreKeyTextOutputFormat"
CSV_SERDE = "org.apache.hadoop.hive.serde2.OpenCSVSerde"


def table_name_for(data_set_id: str) -> str:
    return f"{TABLE_PREFIX}{data_set_id}"


def build_table_input(
    data_set_id: str,
    bucket: str,
    columns: List[str],
    key_prefix: str = "RLS-Datasets",
) -> Dict[str, Any]:
    """Glue TableInput for the managed CSV: one string column per header, header row skipped."""
    return {
        "Name": table_name_for(data_set_id),
        "Description": f"QS-RLS Table created for DataSetId: {data_set_id}",
        "TableType": "EXTERNAL_TABLE",
        "Parameters": {"classification": "csv", "skip.header.line.count": "1"},
        "StorageDescriptor": {
            "Columns": [{"Name": c, "Type": "string"} for c in columns],
            "Location": f"s3://{bucket}/{key_prefix}/{data_set_id}/",
            "InputFormat": INPUT_FORMAT,
            "OutputFormat": OUTPUT_FORMAT,
            "SerdeInfo": {
                "SerializationLibrary": CSV_SERDE,
                "Parameters": {
                    "separatorChar": ",",
                    "quoteChar": "\"",
                    "skip.header.line.count": "1",
                },
            },
        },
    }


class GlueCatalog:
    """Glue Data Catalog access scoped to one account (``catalog_id``)."""

    def __init__(self, client: Any, catalog_id: Optional[str] = None):
        self.client = client
        self.catalog_id = catalog_id

    def _ids(self) -> Dict[str, str]:
        return {"CatalogId": self.catalog_id} if self.catalog_id else {}

    def get_database(self, name: str) -> Dict[str, Any]:
        return self.client.get_database(Name=name, **self._ids())["Database"]

    def get_table(self, database: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self.client.get_table(DatabaseName=database, Name=name, **self._ids())["Table"]
        except ClientError as e:
            if is_error(e, "EntityNotFoundException"):
                return None
            raise

    def create_table(self, database: str, table_input: Dict[str, Any]) -> None:
        self.client.create_table(DatabaseName=database, TableInput=table_input, **self._ids())
        logger.info(f"[glue-catalog] Created table {database}.{table_input['Name']}")

    def update_table(self, database: str, table_input: Dict[str, Any]) -> None:
        self.client.update_table(DatabaseName=database, TableInput=table_input, **self._ids())
        logger.info(f"[glue-catalog] Updated table {database}.{table_input['Name']}")

    def delete_table(self, database: str, name: str) -> bool:
        """Delete a table; returns False when it was already absent."""
        try:
            self.client.delete_table(DatabaseName=database, Name=name, **self._ids())
        except ClientError as e:
            if is_error(e, "EntityNotFoundException"):
                logger.info(f"[glue-catalog] Table {database}.{name} already absent")
                return False
            raise
        logger.info(f"[glue-catalog] Deleted table {database}.{name}")
        return True
