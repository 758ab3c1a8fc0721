from __future__ import annotations

import uuid
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import ClientError

from rlsmanager.config.defaults import Default, logger
from rlsmanager.data_classes import StepResult, ToolResources
from rlsmanager.errors import error_message, is_error, result_from_exception
from rlsmanager.publishing.data_set_definition import (
    RLS_TAG,
    build_bind_params,
    build_remove_params,
    build_rules_data_set_params,
    current_rls_arn,
)
from rlsmanager.quicksight.quicksight_service import (
    DataSetWriteResult,
    QuickSightService,
    data_set_id_from_arn,
)

_NOT_API_MANAGEABLE = "not supported through API"


def _failure(e: ClientError, prefix: str) -> StepResult:
    if _NOT_API_MANAGEABLE in error_message(e):
        return StepResult.failure(400, f"{prefix}: {error_message(e)}", error_type="NotManageable")
    return result_from_exception(e, prefix)


def _write_step(result: DataSetWriteResult, message: str) -> StepResult:
    payload: Dict[str, Any] = {"arn": result.arn, "data_set_id": result.data_set_id}
    if result.pending:
        return StepResult.success(
            f"{message}; ingestion {result.ingestion_id} started",
            status=201,
            ingestion_id=result.ingestion_id,
            **payload,
        )
    return StepResult.success(message, **payload)


class RlsDataSetManager:
    """
    Manages the QuickSight side of RLS:

    - ``upsert_rules_data_set``: create or refresh the SPICE dataset reading the Glue table
    - ``bind_rls`` / ``remove_rls``: attach or detach that rules dataset on a target dataset

    Every method returns a StepResult: 200 when QuickSight is done, 201 when an
    ingestion was started (``payload["ingestion_id"]``), an error status otherwise.
    """

    def __init__(
        self,
        quicksight: QuickSightService,
        config: Default,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self._qs = quicksight
        self._config = config
        self._new_id = id_factory or (lambda: str(uuid.uuid4()))

    # ── rules dataset ──────────────────────────────────────────────── #

    def upsert_rules_data_set(
        self,
        resources: ToolResources,
        target_data_set_id: str,
        columns: List[str],
        rls_tool_managed: bool = False,
        rls_data_set_arn: Optional[str] = None,
    ) -> StepResult:
        def params_for(rules_id: str, physical_table_id: Optional[str] = None) -> Dict[str, Any]:
            return build_rules_data_set_params(
                target_data_set_id=target_data_set_id,
                rules_data_set_id=rules_id,
                region=resources.region,
                account_id=self._config.account_id,
                glue_database_name=resources.glue_database_name,
                qs_data_source_name=resources.qs_data_source_name,
                columns=columns,
                physical_table_id=physical_table_id or self._new_id(),
            )

        try:
            existing = None
            if rls_tool_managed and rls_data_set_arn:
                existing = self._describe_or_none(data_set_id_from_arn(rls_data_set_arn))
                if existing is None:
                    logger.warning(
                        f"[publish] RLS dataset {rls_data_set_arn} no longer exists in QuickSight; creating a new one"
                    )

            if existing is not None:
                tables = list((existing.get("PhysicalTableMap") or {}).keys())
                params = params_for(existing["DataSetId"], tables[0] if len(tables) == 1 else None)
                result = self._qs.update_data_set(params)
                return _write_step(result, f"RLS DataSet {result.arn} updated")

            params = params_for(f"RLS-{self._new_id()}")
            params["Tags"] = [dict(RLS_TAG)]
            params["UseAs"] = "RLS_RULES"
            result = self._qs.create_data_set(params)
            return _write_step(result, f"RLS DataSet {result.arn} created")
        except ClientError as e:
            logger.error(f"[publish] RLS dataset upsert failed: {e}")
            return _failure(e, "Error creating or updating RLS DataSet")

    def _describe_or_none(self, data_set_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self._qs.describe_data_set(data_set_id)
        except ClientError as e:
            if is_error(e, "ResourceNotFoundException"):
                return None
            raise

    # ── binding ────────────────────────────────────────────────────── #

    def bind_rls(self, target_data_set_id: str, rls_data_set_arn: str) -> StepResult:
        try:
            definition = self._qs.describe_data_set(target_data_set_id)
            if current_rls_arn(definition) == rls_data_set_arn:
                if self._qs.data_set_exists(data_set_id_from_arn(rls_data_set_arn)):
                    logger.info(f"[publish] {target_data_set_id} already bound to {rls_data_set_arn}")
                    return StepResult.success(
                        f"RLS already configured on DataSet {target_data_set_id}",
                        already_configured=True,
                        data_set_id=target_data_set_id,
                    )
                logger.warning(f"[publish] Bound RLS dataset {rls_data_set_arn} is missing; re-binding")

            result = self._qs.update_data_set(build_bind_params(definition, rls_data_set_arn))
        except ClientError as e:
            logger.error(f"[publish] Binding RLS to {target_data_set_id} failed: {e}")
            return _failure(e, f"Error setting RLS on DataSet {target_data_set_id}")
        return _write_step(result, f"RLS DataSet {rls_data_set_arn} bound to DataSet {target_data_set_id}")

    def remove_rls(self, target_data_set_id: str) -> StepResult:
        try:
            definition = self._qs.describe_data_set(target_data_set_id)
            result = self._qs.update_data_set(build_remove_params(definition))
        except ClientError as e:
            logger.error(f"[delete] Removing RLS from {target_data_set_id} failed: {e}")
            return _failure(e, f"Error removing RLS from DataSet {target_data_set_id}")
        return _write_step(result, f"RLS removed from DataSet {target_data_set_id}")
