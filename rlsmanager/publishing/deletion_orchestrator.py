from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import redis
from botocore.exceptions import BotoCoreError, ClientError

from rlsmanager.catalog.glue_catalog import GlueCatalog, table_name_for
from rlsmanager.clients.client_registry import ClientRegistry
from rlsmanager.config.defaults import Default
from rlsmanager.data_classes import DataSetRecord, RlsStatus, StepResult, StepStatus, ToolResources
from rlsmanager.errors import ValidationError, error_name, result_from_exception
from rlsmanager.pipeline_context import PipelineContext
from rlsmanager.publishing.ingestion_monitor import IngestionMonitor
from rlsmanager.publishing.resource_validator import require_resources
from rlsmanager.publishing.rls_data_set_manager import RlsDataSetManager
from rlsmanager.quicksight.quicksight_service import QuickSightService, data_set_arn, data_set_id_from_arn
from rlsmanager.rbac.permission_manager import PermissionManager
from rlsmanager.redis_catalog import RedisCatalog
from rlsmanager.storage.s3_storage import S3Storage


@dataclass
class DeletionRequest:
    resources: ToolResources
    # Full ARN or bare dataset id of the rules dataset
    rls_data_set: str
    keep_s3: bool = False
    keep_permissions: bool = False


class _StepFailed(Exception):
    def __init__(self, result: StepResult):
        super().__init__(result.message)
        self.result = result


class DeletionOrchestrator:
    """
    Removes a rules dataset and everything hanging off it.

    Steps (reported as step0..step6):
      0. validate identifiers
      1. find the datasets bound to the rules dataset
      2. detach RLS from each of them in QuickSight (waiting on ingestions)
      3. delete the rules dataset in QuickSight (already gone is fine)
      4. drop its admin record, clear the bound datasets' RLS fields and,
         unless kept, their permissions
      5. delete the Glue table (already gone is fine)
      6. unless kept, delete the S3 objects

    A failing step stops the run with status 500; earlier steps stay done.
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
        self._permissions = PermissionManager(redis_catalog, max_workers=config.permission_delete_workers)

    def delete(self, request: DeletionRequest, context: Optional[PipelineContext] = None) -> StepResult:
        ctx = context or PipelineContext()
        try:
            self._run(request, ctx)
        except _StepFailed as failed:
            return failed.result
        except (BotoCoreError, redis.RedisError) as e:
            result = result_from_exception(e, "Unexpected error during deletion")
            ctx.log(result.message, "ERROR", 500, result.error_type)
            return StepResult.failure(500, result.message, result.error_type)
        finally:
            ctx.separator()
        ctx.log("DataSet Deletion Completed")
        return StepResult.success("DataSet Deletion Completed")

    # ── phases ─────────────────────────────────────────────────────── #

    def _run(self, request: DeletionRequest, ctx: PipelineContext) -> None:
        resources = request.resources

        # step0 ---------------------------------------------------------
        ctx.report_step("step0", StepStatus.LOADING)
        ctx.log("Delete started.")
        try:
            require_resources(resources, need_data_source=False)
            if not request.rls_data_set:
                raise ReferenceError("RLS DataSet ARN is required")
        except (ValidationError, ReferenceError) as e:
            self._fail(ctx, "step0", result_from_exception(e), status=400)
        rls_arn = self._resolve_arn(resources.region, request.rls_data_set)
        rls_id = data_set_id_from_arn(rls_arn)
        qs = QuickSightService(self._registry.quicksight(resources.region), self._config.account_id)
        ctx.report_step("step0", StepStatus.SUCCESS)

        # step1 ---------------------------------------------------------
        ctx.separator()
        ctx.report_step("step1", StepStatus.LOADING)
        ctx.log("Listing DataSets with RLS set with RLS DataSet indicated.")
        try:
            bound = self._catalog.list_data_sets(rls_data_set_id=rls_arn)
        except redis.RedisError as e:
            self._fail(ctx, "step1", result_from_exception(e, "Error listing DataSets with RLS set"))
        ctx.log(f"DataSets with RLS set with RLS DataSet indicated: {len(bound)}")
        ctx.report_step("step1", StepStatus.SUCCESS)

        # step2 ---------------------------------------------------------
        ctx.separator()
        ctx.report_step("step2", StepStatus.LOADING)
        self._detach_all(qs, bound, ctx)
        ctx.report_step("step2", StepStatus.SUCCESS)

        # step3 ---------------------------------------------------------
        ctx.separator()
        ctx.report_step("step3", StepStatus.LOADING)
        ctx.log(f"Deleting RLS DataSet from QS: {rls_arn}")
        try:
            if qs.delete_data_set(rls_id):
                ctx.log("RLS DataSet deleted from QS.")
            else:
                ctx.log("Resource is already not present in QuickSight.")
        except ClientError as e:
            self._fail(ctx, "step3", result_from_exception(e, "Error deleting RLS DataSet from QS"))
        ctx.report_step("step3", StepStatus.SUCCESS)

        # step4 ---------------------------------------------------------
        ctx.separator()
        ctx.report_step("step4", StepStatus.LOADING)
        glue_s3_id = self._forget_rules_data_set(rls_arn, ctx)
        self._clear_bound(bound, request.keep_permissions, ctx)
        ctx.report_step("step4", StepStatus.SUCCESS)

        # step5 ---------------------------------------------------------
        ctx.separator()
        ctx.log("Remove GlueTable for RLS DataSet")
        ctx.report_step("step5", StepStatus.LOADING)
        try:
            glue = GlueCatalog(self._registry.glue(resources.region), self._config.account_id)
            name = table_name_for(glue_s3_id)
            if glue.delete_table(resources.glue_database_name, name):
                ctx.log(f"Glue Table {name} deleted.")
            else:
                ctx.log(f"Glue Table {name} was already deleted.")
        except ClientError as e:
            self._fail(ctx, "step5", result_from_exception(e, "Error deleting Glue Table"))
        ctx.report_step("step5", StepStatus.SUCCESS)

        # step6 ---------------------------------------------------------
        ctx.separator()
        ctx.report_step("step6", StepStatus.LOADING)
        if request.keep_s3:
            ctx.log("Keeping S3 objects as requested.")
        else:
            prefix = f"{self._config.s3_key_prefix}/{glue_s3_id}/"
            ctx.log(f"Deleting S3 objects under s3://{resources.s3_bucket_name}/{prefix}")
            try:
                storage = S3Storage(resources.s3_bucket_name, self._registry.s3(resources.region))
                deleted = storage.delete_prefix(prefix)
            except ClientError as e:
                self._fail(ctx, "step6", result_from_exception(e, "Error deleting S3 objects"))
            ctx.log(f"Deleted {deleted} S3 object(s).")
        ctx.report_step("step6", StepStatus.SUCCESS)

    # ── helpers ────────────────────────────────────────────────────── #

    def _fail(self, ctx: PipelineContext, step: str, result: StepResult, status: int = 500) -> None:
        failed = StepResult.failure(status, result.message, result.error_type)
        ctx.log(failed.message, "ERROR", failed.status, failed.error_type)
        ctx.report_step(step, StepStatus.ERROR)
        raise _StepFailed(failed)

    def _resolve_arn(self, region: str, value: str) -> str:
        if value.startswith("arn:"):
            return value
        return data_set_arn(region, self._config.account_id, value)

    def _detach_all(self, qs: QuickSightService, bound: List[DataSetRecord], ctx: PipelineContext) -> None:
        if not bound:
            ctx.log("No DataSets with RLS set with RLS DataSet selected.")
            return
        ctx.log("Removing RLS DataSet from other DataSets in RLS Tool.")
        manager = RlsDataSetManager(qs, self._config)
        monitor = IngestionMonitor(qs, ctx, self._config.ingestion_poll_interval_sec, self._sleep)
        for ds in bound:
            res = manager.remove_rls(ds.data_set_id)
            if not res.ok:
                self._fail(ctx, "step2", StepResult.failure(
                    res.status, f"Failed to remove RLS from DataSet {ds.data_set_id}. {res.message}", res.error_type,
                ))
            if res.status == 201:
                res = monitor.wait(ds.data_set_id, res.payload["ingestion_id"])
                if not res.ok:
                    self._fail(ctx, "step2", res)
            ctx.log(f"RLS correctly removed from DataSet {ds.data_set_id}")

    def _forget_rules_data_set(self, rls_arn: str, ctx: PipelineContext) -> str:
        ctx.log(f"Deleting RLS DataSet from RLS Tool: {rls_arn}")
        try:
            record = self._catalog.get_data_set(rls_arn)
            if record is None:
                self._fail(ctx, "step4", StepResult.failure(
                    500, "Error fetching RLS DataSet details from the RLS Tool. Empty Response.", "NotFound",
                ))
            if not record.glue_s3_id:
                self._fail(ctx, "step4", StepResult.failure(
                    500, "Error fetching RLS DataSet glueS3Id from the RLS Tool.", "MissingGlueS3Id",
                ))
            ctx.log(f"RLS DataSet glueS3Id: {record.glue_s3_id}")
            self._catalog.delete_data_set(rls_arn)
        except redis.RedisError as e:
            self._fail(ctx, "step4", result_from_exception(e, "Error deleting RLS DataSet from the RLS Tool"))
        ctx.log("RLS DataSet correctly deleted from RLS Tool.")
        return record.glue_s3_id

    def _clear_bound(self, bound: List[DataSetRecord], keep_permissions: bool, ctx: PipelineContext) -> None:
        if bound:
            ctx.log("Removing RLS DataSet from other DataSets in RLS Tool, if any.")
        for ds in bound:
            ctx.log(f"Removing RLS DataSet from DataSet with Id: {ds.data_set_id}")
            try:
                self._catalog.update_data_set(
                    ds.data_set_arn,
                    rls_data_set_id=None,
                    rls_enabled=RlsStatus.DISABLED.value,
                    rls_tool_managed=False,
                    tool_created=False,
                )
                ctx.log(f"DataSet {ds.data_set_id} updated correctly.")
                if keep_permissions:
                    ctx.log(f"Keeping permissions for DataSet {ds.data_set_id}")
                    continue
                ctx.log(f"Removing all permission linked to DataSet {ds.data_set_id}")
                removed = self._permissions.delete_for_data_set(ds.data_set_arn)
            except (redis.RedisError, KeyError) as e:
                self._fail(ctx, "step4", StepResult.failure(500, f"{error_name(e)}: {e}", error_name(e)))
            ctx.log(f"Successfully removed {removed} permission(s) for DataSet {ds.data_set_id}")
