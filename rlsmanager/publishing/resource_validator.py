from __future__ import annotations

from botocore.exceptions import ClientError

from rlsmanager.catalog.glue_catalog import GlueCatalog
from rlsmanager.clients.client_registry import ClientRegistry
from rlsmanager.config.defaults import Default, logger
from rlsmanager.data_classes import StepResult, ToolResources
from rlsmanager.errors import ValidationError, result_from_exception
from rlsmanager.quicksight.quicksight_service import QuickSightService
from rlsmanager.storage.s3_storage import S3Storage


def _missing(value) -> bool:
    return not value or value == "-"


def require_resources(resources: ToolResources, need_data_source: bool = True) -> None:
    """Raise ValidationError naming the first missing resource identifier."""
    if _missing(resources.region):
        raise ValidationError("Region is required")
    if _missing(resources.s3_bucket_name):
        raise ValidationError(f"No S3 bucket configured for region {resources.region}")
    if _missing(resources.glue_database_name):
        raise ValidationError(f"No Glue database configured for region {resources.region}")
    if need_data_source and _missing(resources.qs_data_source_name):
        raise ValidationError(f"No QuickSight data source configured for region {resources.region}")


class ResourceValidator:
    """Checks that the bucket, the Glue database and the QuickSight data source of a region are reachable."""

    def __init__(self, registry: ClientRegistry, config: Default):
        self._registry = registry
        self._config = config

    def validate(self, resources: ToolResources) -> StepResult:
        try:
            require_resources(resources)
            region = resources.region
            S3Storage(resources.s3_bucket_name, self._registry.s3(region)).head_bucket()
            GlueCatalog(self._registry.glue(region), self._config.account_id).get_database(
                resources.glue_database_name
            )
            QuickSightService(self._registry.quicksight(region), self._config.account_id).describe_data_source(
                resources.qs_data_source_name
            )
        except (ClientError, ValidationError) as e:
            logger.warning(f"[validate] Resource validation failed: {e}")
            return result_from_exception(e)
        return StepResult.success("RLS Tool Resources correctly validated.")
