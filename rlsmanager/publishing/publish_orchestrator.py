from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import redis
from botocore.exceptions import BotoCoreError, ClientError

from rlsmanager.clients.client_registry import ClientRegistry
from rlsmanager.codec.csv_codec import csv_header_columns, generate_csv
from rlsmanager.codec.field_types import parse_field_types
from rlsmanager.config.defaults import Default, logger
from rlsmanager.data_classes import (
    DataSetRecord,
    PublishStatus,
    RlsStatus,
    StepResult,
    StepStatus,
    ToolResources,
)
from rlsmanager.errors import ValidationError, result_from_exception
from rlsmanager.pipeline_context import PipelineContext
from rlsmanager.publishing.ingestion_monitor import IngestionMonitor
from rlsmanager.publishing.resource_validator import ResourceValidator, require_resources
from rlsmanager.publishing.rls_data_set_manager import RlsDataSetManager
from rlsmanager.publishing.table_publisher import TablePublisher
from rlsmanager.publishing.version_history import VersionHistory, utc_now_iso
from rlsmanager.quicksight.quicksight_service import QuickSightService, data_set_id_from_arn
from rlsmanager.rbac.visibility import VisibilityManager
from rlsmanager.redis_catalog import RedisCatalog

_STORE_ERRORS = (redis.RedisError, KeyError)


@dataclass
class PublishRequest:
    resources: ToolResources
    data_set_arn: str
    # Pre-rendered CSV (e.g. a restored version); rendered from stored permissions when None
    csv_content: Optional[str] = None
    published_by: Optional[str] = None


@dataclass
class _RunState:
    record: Optional[DataSetRecord] = None
    version: int = 0
    csv_content: Optional[str] = None
    permission_count: int = 0
    s3_key: Optional[str] = None
    s3_version_id: Optional[str] = None
    extras: Dict[str, Any] = field(default_factory=dict)


class PublishOrchestrator:
    """
    Pushes a dataset's permissions through S3, Glue and QuickSight.

    Phases (reported as step0..step5):
      0. validate the regional resources
      1. render the CSV and upload it to S3
      2. create/update the Glue table over it
      3. upsert the QuickSight rules dataset (wait for ingestion), apply
         visibility grants, register the rules dataset in the admin store
      4. bind the rules dataset to the target dataset (wait for ingestion)
      5. commit the new RLS state to the target's admin record

    Phases run in order and the first failure ends the run. Nothing already
    done in S3, Glue or QuickSight is undone.
    """

    def __init__(
        self,
        registry: ClientRegistry,
        redis_catalog: RedisCatalog,
        config: Default,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._registry = registry
        self._catalog = redis_catalog
        self._config = config
        self._sleep = sleep
        self._history = VersionHistory(redis_catalog, config)

    def publish(self, request: PublishRequest, context: Optional[PipelineContext] = None) -> StepResult:
        ctx = context or PipelineContext()
        state = _RunState()
        ctx.log("Launching the RLS publish. This might take a couple of minutes...")
        try:
            result = self._run(request, ctx, state)
        except (BotoCoreError, redis.RedisError) as e:
            result = result_from_exception(e, "Unexpected error during publish")
            result.status = 500
            ctx.log(result.message, "ERROR", 500, result.error_type)
        finally:
            ctx.separator()
        if state.record is not None:
            self._record_history(request, state, result, ctx)
        return result

    # ── phases ─────────────────────────────────────────────────────── #

    def _run(self, request: PublishRequest, ctx: PipelineContext, state: _RunState) -> StepResult:
        resources = request.resources
        qs = QuickSightService(self._registry.quicksight(resources.region), self._config.account_id)
        monitor = IngestionMonitor(qs, ctx, self._config.ingestion_poll_interval_sec, self._sleep)

        # step0 ---------------------------------------------------------
        ctx.separator()
        ctx.report_step("step0", StepStatus.LOADING)
        ctx.log("Validating RLS Tool Resources")
        try:
            require_resources(resources)
            state.record = self._load_target(request.data_set_arn)
        except ValidationError as e:
            return self._fail(ctx, "step0", result_from_exception(e), "Error validating RLS Resources.")
        except _STORE_ERRORS as e:
            return self._fail(ctx, "step0", result_from_exception(e), "Error reading the DataSet from RLS Manager.")
        record = state.record
        state.version = (record.current_version or 0) + 1

        res = ResourceValidator(self._registry, self._config).validate(resources)
        if not res.ok:
            return self._fail(ctx, "step0", res, "Error validating RLS Resources.")
        ctx.log(res.message)
        ctx.report_step("step0", StepStatus.SUCCESS)

        # step1 ---------------------------------------------------------
        ctx.separator()
        ctx.report_step("step1", StepStatus.LOADING)
        ctx.log("Uploading new CSV file to S3.")
        try:
            self._render_csv(request, record, state)
        except _STORE_ERRORS as e:
            return self._fail(ctx, "step1", result_from_exception(e), "Error reading permissions.")
        except ValidationError as e:
            return self._fail(ctx, "step1", result_from_exception(e), "Error reading the DataSet field types.")

        publisher = TablePublisher(self._registry, self._config)
        res = publisher.upload_csv(resources, record.data_set_id, state.csv_content, csv_header_columns(state.csv_content))
        if not res.ok:
            if res.error_type == "NoValidColumnsFound":
                return self._fail(ctx, "step1", res, "No valid columns found in the CSV file.")
            return self._fail(ctx, "step1", res, "Error uploading CSV file to S3.")
        columns = res.payload["csv_columns"]
        state.s3_key = res.payload["s3_key"]
        state.s3_version_id = res.payload.get("s3_version_id")
        ctx.log(res.message)
        ctx.report_step("step1", StepStatus.SUCCESS)

        # step2 ---------------------------------------------------------
        ctx.separator()
        ctx.report_step("step2", StepStatus.LOADING)
        ctx.log("Creating / Updating Glue Table.")
        res = publisher.publish_table(resources, record.data_set_id, columns)
        if not res.ok:
            return self._fail(ctx, "step2", res, "Error Creating or Updating the Glue Table.")
        ctx.log(res.message)
        ctx.report_step("step2", StepStatus.SUCCESS)

        # step3 ---------------------------------------------------------
        ctx.separator()
        ctx.report_step("step3", StepStatus.LOADING)
        ctx.log("Creating / Updating QuickSight Row Level Security DataSet.")
        if record.rls_tool_managed and record.rls_data_set_id:
            ctx.log(f"RLS DataSet ARN indicated in RLS Tool: {record.rls_data_set_id}. Checking also if really exists.")
        else:
            ctx.log(
                f"No previous RLS DataSet set for DataSet to be Secured with ID: {record.data_set_id}. "
                "Proceeding to create a new RLS DataSet."
            )
        manager = RlsDataSetManager(qs, self._config)
        res = manager.upsert_rules_data_set(
            resources,
            record.data_set_id,
            columns,
            rls_tool_managed=record.rls_tool_managed,
            rls_data_set_arn=record.rls_data_set_id,
        )
        if not res.ok:
            return self._fail(ctx, "step3", res, "Error Creating or Updating the RLS DataSet.")
        rls_arn = res.payload.get("arn")
        if not rls_arn:
            return self._fail(
                ctx, "step3",
                StepResult.failure(404, "QuickSight returned an empty RLS DataSet ARN", "MissingReturnValues"),
                "Error Creating or Updating the RLS DataSet.",
            )
        state.extras["rls_data_set_arn"] = rls_arn
        ctx.log(res.message)
        ctx.log(f"RLS DataSet ARN after checks: {rls_arn}")

        if res.status == 201:
            ctx.log("Checking RLS DataSet Ingestion Status...")
            res = monitor.wait(res.payload["data_set_id"], res.payload["ingestion_id"])
            if not res.ok:
                return self._fail(ctx, "step3", res, "RLS DataSet ingestion did not complete.")
            ctx.log("RLS DataSet created/updated successfully.")

        self._apply_visibility(qs, record.data_set_arn, rls_arn, ctx)

        ctx.log("Creating / Updating RLS DataSet in RLS Manager.")
        try:
            self._register_rules_data_set(rls_arn, record.data_set_id, resources.region, ctx)
        except _STORE_ERRORS as e:
            return self._fail(ctx, "step3", result_from_exception(e), "Error saving the RLS DataSet in RLS Manager.")
        ctx.report_step("step3", StepStatus.SUCCESS)

        # step4 ---------------------------------------------------------
        ctx.separator()
        ctx.report_step("step4", StepStatus.LOADING)
        ctx.log(
            f"Adding the new RLS DataSet to the Main DataSet in QuickSight. Updating the Main DataSet "
            f"with id: {record.data_set_id} with RLS DataSet with ARN: {rls_arn}"
        )
        res = manager.bind_rls(record.data_set_id, rls_arn)
        if not res.ok:
            return self._fail(ctx, "step4", res, "Error Updating the DataSet to be Secured.")
        ctx.log(res.message)
        if res.status == 201:
            ctx.log("Checking DataSet to be Secured Ingestion Status...")
            res = monitor.wait(record.data_set_id, res.payload["ingestion_id"])
            if not res.ok:
                return self._fail(ctx, "step4", res, "DataSet to be Secured ingestion did not complete.")
            ctx.log("DataSet to be Secured updated successfully.")
        ctx.report_step("step4", StepStatus.SUCCESS)

        # step5 ---------------------------------------------------------
        ctx.separator()
        ctx.report_step("step5", StepStatus.LOADING)
        ctx.log("Updating RLS Tool Database")
        ctx.log(f"Updating DataSet {record.data_set_id} in RLS Tool with new RLS Info.")
        try:
            self._commit_target(record, rls_arn, state, ctx)
        except _STORE_ERRORS as e:
            res = result_from_exception(e)
            return self._fail(
                ctx, "step5", res,
                "QuickSight is already updated but the RLS Manager record could not be saved; "
                "the two are now out of sync.",
            )
        ctx.log("DataSet updated correctly.")
        ctx.report_step("step5", StepStatus.SUCCESS)

        message = (
            f"All Steps Completed. RLS Set in QuickSight for DataSet {record.data_set_id} "
            f"with RLS DataSet with ARN: {rls_arn}."
        )
        ctx.log(message)
        return StepResult.success(message, rls_data_set_arn=rls_arn, version=state.version)

    # ── helpers ────────────────────────────────────────────────────── #

    def _fail(self, ctx: PipelineContext, step: str, result: StepResult, message: str) -> StepResult:
        ctx.log(f"{message} {result.message}", "ERROR", result.status, result.error_type)
        ctx.report_step(step, StepStatus.ERROR)
        return result

    def _load_target(self, data_set_arn: str) -> DataSetRecord:
        if not data_set_arn:
            raise ValidationError("DataSet ARN is required")
        record = self._catalog.get_data_set(data_set_arn)
        if record is None:
            raise ValidationError(f"DataSet not found in RLS Manager: {data_set_arn}")
        if record.is_rls:
            raise ValidationError(f"{data_set_arn} is an RLS DataSet and cannot be secured itself")
        return record

    def _render_csv(self, request: PublishRequest, record: DataSetRecord, state: _RunState) -> None:
        if request.csv_content is not None:
            state.csv_content = request.csv_content
            state.permission_count = max(0, len([ln for ln in request.csv_content.split("\n") if ln.strip()]) - 1)
            return
        permissions = self._catalog.list_permissions(record.data_set_arn)
        state.permission_count = len(permissions)
        state.csv_content = generate_csv(permissions, parse_field_types(record.field_types))

    def _apply_visibility(self, qs: QuickSightService, data_set_arn: str, rls_arn: str, ctx: PipelineContext) -> None:
        try:
            counts = VisibilityManager(self._catalog, qs).apply(data_set_arn, rls_arn)
        except (BotoCoreError, ClientError, redis.RedisError, KeyError) as e:
            ctx.log(f"Error applying visibility permissions: {e}", "WARNING")
            return
        if counts["grants"] or counts["revokes"]:
            ctx.log(
                f"RLS dataset visibility permissions applied ({counts['grants']} grant(s), "
                f"{counts['revokes']} revoke(s))."
            )
        else:
            ctx.log("No visibility permission changes for this RLS dataset.")

    def _register_rules_data_set(self, rls_arn: str, target_data_set_id: str, region: str, ctx: PipelineContext) -> None:
        if self._catalog.get_data_set(rls_arn) is not None:
            ctx.log(f"RLS DataSet {rls_arn} already exists. Updating it.")
            self._catalog.update_data_set(rls_arn, tool_created=True)
            ctx.log("RLS DataSet correctly updated.")
            return
        ctx.log(f"RLS DataSet {rls_arn} does not exist in RLS Tool. Creating it.")
        self._catalog.create_data_set(DataSetRecord(
            data_set_arn=rls_arn,
            data_set_id=data_set_id_from_arn(rls_arn),
            name=f"Managed-RLS for DataSetId: {target_data_set_id}",
            rls_enabled=RlsStatus.DISABLED.value,
            import_mode="SPICE",
            data_set_region=region,
            api_manageable=True,
            tool_created=True,
            rls_tool_managed=False,
            glue_s3_id=target_data_set_id,
            is_rls=True,
            new_data_prep=True,
        ))
        ctx.log("RLS DataSet correctly created.")

    def _commit_target(self, record: DataSetRecord, rls_arn: str, state: _RunState, ctx: PipelineContext) -> None:
        latest = self._catalog.get_data_set(record.data_set_arn)
        if latest is not None and latest.rls_data_set_id not in (record.rls_data_set_id, rls_arn):
            ctx.log(
                f"DataSet {record.data_set_id} RLS binding changed during this publish "
                f"({record.rls_data_set_id} -> {latest.rls_data_set_id}); overwriting with {rls_arn}.",
                "WARNING",
            )
        self._catalog.update_data_set(
            record.data_set_arn,
            rls_tool_managed=True,
            rls_data_set_id=rls_arn,
            rls_enabled=RlsStatus.ENABLED.value,
            current_version=state.version,
            last_published_version=state.version,
            last_published_at=utc_now_iso(),
        )
        state.extras["committed"] = True

    def _record_history(
        self,
        request: PublishRequest,
        state: _RunState,
        result: StepResult,
        ctx: PipelineContext,
    ) -> None:
        status = PublishStatus.SUCCESS if result.ok else PublishStatus.FAILED
        try:
            if not state.extras.get("committed"):
                self._catalog.update_data_set(state.record.data_set_arn, current_version=state.version)
            self._history.record(
                data_set_arn=state.record.data_set_arn,
                version=state.version,
                status=status,
                s3_key=state.s3_key,
                s3_version_id=state.s3_version_id,
                permission_count=state.permission_count,
                csv_snapshot=state.csv_content,
                error_message=None if result.ok else result.message,
                published_by=request.published_by,
            )
        except (redis.RedisError, KeyError, ValueError) as e:
            logger.warning(f"[publish] Could not record publish history v{state.version}: {e}")
            ctx.log(f"Could not record publish history: {e}", "WARNING")
