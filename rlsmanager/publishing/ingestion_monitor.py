from __future__ import annotations

import time
from typing import Callable

from botocore.exceptions import ClientError

from rlsmanager.data_classes import StepResult
from rlsmanager.errors import result_from_exception
from rlsmanager.pipeline_context import PipelineContext
from rlsmanager.quicksight.quicksight_service import QuickSightService

IN_PROGRESS = frozenset({"QUEUED", "INITIALIZED", "RUNNING"})
COMPLETED = "COMPLETED"
FAILED = frozenset({"FAILED", "CANCELLED"})


class IngestionMonitor:
    """
    Polls one SPICE ingestion until it reaches a terminal state.

    Waits ``poll_interval`` seconds before every check, including the first,
    and has no retry ceiling; the caller owns any overall timeout.
    """

    def __init__(
        self,
        quicksight: QuickSightService,
        context: PipelineContext,
        poll_interval: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._qs = quicksight
        self._ctx = context
        self._interval = poll_interval
        self._sleep = sleep

    def wait(self, data_set_id: str, ingestion_id: str) -> StepResult:
        self._ctx.log(f"Waiting for ingestion {ingestion_id} on DataSet {data_set_id}")
        while True:
            self._ctx.log(f"Waiting {self._interval:g} seconds...")
            self._sleep(self._interval)
            try:
                ingestion = self._qs.describe_ingestion(data_set_id, ingestion_id)
            except ClientError as e:
                result = result_from_exception(e, "Error checking ingestion status")
                self._ctx.log(result.message, "ERROR", result.status, result.error_type)
                return result

            status = ingestion.get("IngestionStatus", "")
            self._ctx.log(f"Ingestion status: {status}")

            if status in IN_PROGRESS:
                continue

            if status == COMPLETED:
                rows = (ingestion.get("RowInfo") or {}).get("RowsIngested")
                message = f"Ingestion {ingestion_id} completed" + (f" ({rows} rows)" if rows is not None else "")
                self._ctx.log(message)
                return StepResult.success(message, ingestion_id=ingestion_id)

            if status in FAILED:
                info = ingestion.get("ErrorInfo") or {}
                result = StepResult.failure(
                    500,
                    f"Error: {info.get('Message', '')}",
                    error_type=f"QuickSightIngestion_{status}_{info.get('Type', 'UNKNOWN')}",
                )
            else:
                result = StepResult.failure(
                    500,
                    f"Unknown ingestion status: {status!r}",
                    error_type="UnknownIngestionStatus",
                )
            self._ctx.log(result.message, "ERROR", result.status, result.error_type)
            return result
