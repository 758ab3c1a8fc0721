from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from rlsmanager.config.defaults import logger
from rlsmanager.errors import is_error


def data_set_id_from_arn(arn: str) -> str:
    """arn:aws:quicksight:<region>:<account>:dataset/<id> -> <id>"""
    return arn.rsplit("/", 1)[-1]


def data_set_arn(region: str, account_id: str, data_set_id: str) -> str:
    return f"arn:aws:quicksight:{region}:{account_id}:dataset/{data_set_id}"


def data_source_arn(region: str, account_id: str, data_source_id: str) -> str:
    return f"arn:aws:quicksight:{region}:{account_id}:datasource/{data_source_id}"


@dataclass
class DataSetWriteResult:
    arn: str
    data_set_id: str
    status: int
    ingestion_id: Optional[str] = None

    @property
    def pending(self) -> bool:
        return bool(self.ingestion_id)


def _write_result(resp: Dict[str, Any]) -> DataSetWriteResult:
    status = resp.get("Status") or resp.get("ResponseMetadata", {}).get("HTTPStatusCode") or 200
    return DataSetWriteResult(
        arn=resp.get("Arn", ""),
        data_set_id=resp.get("DataSetId", ""),
        status=int(status),
        ingestion_id=resp.get("IngestionId") or None,
    )


class QuickSightService:
    """QuickSight dataset, data source, ingestion and permission calls for one account."""

    def __init__(self, client: Any, account_id: str):
        self.client = client
        self.account_id = account_id

    # -------------------------
    # Data sources
    # -------------------------
    def describe_data_source(self, data_source_id: str) -> Dict[str, Any]:
        resp = self.client.describe_data_source(AwsAccountId=self.account_id, DataSourceId=data_source_id)
        return resp["DataSource"]

    # -------------------------
    # Datasets
    # -------------------------
    def describe_data_set(self, data_set_id: str) -> Dict[str, Any]:
        resp = self.client.describe_data_set(AwsAccountId=self.account_id, DataSetId=data_set_id)
        return resp["DataSet"]

    def data_set_exists(self, data_set_id: str) -> bool:
        try:
            self.describe_data_set(data_set_id)
            return True
        except ClientError as e:
            if is_error(e, "ResourceNotFoundException"):
                return False
            raise

    def create_data_set(self, params: Dict[str, Any]) -> DataSetWriteResult:
        resp = self.client.create_data_set(AwsAccountId=self.account_id, **params)
        result = _write_result(resp)
        logger.info(f"[quicksight] Created dataset {result.arn} (status {result.status})")
        return result

    def update_data_set(self, params: Dict[str, Any]) -> DataSetWriteResult:
        resp = self.client.update_data_set(AwsAccountId=self.account_id, **params)
        result = _write_result(resp)
        logger.info(f"[quicksight] Updated dataset {result.arn} (status {result.status})")
        return result

    def delete_data_set(self, data_set_id: str) -> bool:
        """Delete a dataset; returns False when it was already absent."""
        try:
            self.client.delete_data_set(AwsAccountId=self.account_id, DataSetId=data_set_id)
        except ClientError as e:
            if is_error(e, "ResourceNotFoundException"):
                logger.info(f"[quicksight] Dataset {data_set_id} already absent")
                return False
            raise
        logger.info(f"[quicksight] Deleted dataset {data_set_id}")
        return True

    # -------------------------
    # Ingestions
    # -------------------------
    def describe_ingestion(self, data_set_id: str, ingestion_id: str) -> Dict[str, Any]:
        resp = self.client.describe_ingestion(
            AwsAccountId=self.account_id,
            DataSetId=data_set_id,
            IngestionId=ingestion_id,
        )
        return resp["Ingestion"]

    # -------------------------
    # Permissions
    # -------------------------
    def describe_data_set_permissions(self, data_set_id: str) -> List[Dict[str, Any]]:
        resp = self.client.describe_data_set_permissions(AwsAccountId=self.account_id, DataSetId=data_set_id)
        return resp.get("Permissions") or []

    def update_data_set_permissions(
        self,
        data_set_id: str,
        grants: List[Dict[str, Any]],
        revokes: List[Dict[str, Any]],
    ) -> None:
        kwargs: Dict[str, Any] = {}
        if grants:
            kwargs["GrantPermissions"] = grants
        if revokes:
            kwargs["RevokePermissions"] = revokes
        if not kwargs:
            return
        self.client.update_data_set_permissions(
            AwsAccountId=self.account_id,
            DataSetId=data_set_id,
            **kwargs,
        )
