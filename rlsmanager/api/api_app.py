from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from rlsmanager.clients.client_registry import ClientRegistry
from rlsmanager.codec.csv_codec import generate_csv_for_data_set, parse_rls_csv
from rlsmanager.codec.field_types import parse_field_types
from rlsmanager.config.defaults import Default, default
from rlsmanager.data_classes import PermissionLevel, Principal, RLSDataSetVisibility, StepResult, ToolResources
from rlsmanager.errors import ValidationError
from rlsmanager.pipeline_context import PipelineContext
from rlsmanager.publishing.deletion_orchestrator import DeletionOrchestrator, DeletionRequest
from rlsmanager.publishing.publish_orchestrator import PublishOrchestrator, PublishRequest
from rlsmanager.publishing.resource_validator import ResourceValidator
from rlsmanager.publishing.version_history import VersionHistory
from rlsmanager.rbac.permission_manager import PermissionManager
from rlsmanager.redis_catalog import RedisCatalog
from rlsmanager.storage.s3_storage import S3Storage

router = APIRouter(prefix="", tags=["API"])
logger = logging.getLogger(__name__)


class Services:
    """Long-lived collaborators shared by the request handlers."""

    def __init__(self, config: Default, registry: ClientRegistry, catalog: RedisCatalog):
        self.config = config
        self.registry = registry
        self.catalog = catalog


@lru_cache(maxsize=1)
def get_services() -> Services:
    return Services(default, ClientRegistry(), RedisCatalog(namespace=default.redis_namespace))


# ── request models ─────────────────────────────────────────────────── #

class ResourcesModel(BaseModel):
    region: str
    s3_bucket_name: str
    glue_database_name: str
    qs_data_source_name: Optional[str] = None

    def to_resources(self) -> ToolResources:
        return ToolResources(
            region=self.region,
            s3_bucket_name=self.s3_bucket_name,
            glue_database_name=self.glue_database_name,
            qs_data_source_name=self.qs_data_source_name,
        )


class PublishPayload(BaseModel):
    resources: ResourcesModel
    data_set_arn: str
    csv_content: Optional[str] = None
    published_by: Optional[str] = None


class DeletePayload(BaseModel):
    resources: ResourcesModel
    rls_data_set_arn: str
    keep_s3: bool = False
    keep_permissions: bool = False


class PrincipalModel(BaseModel):
    name: str
    arn: str


class ParsePayload(BaseModel):
    content: str
    users: List[PrincipalModel] = []
    groups: List[PrincipalModel] = []
    field_types: Dict[str, str] = {}


class ImportPayload(ParsePayload):
    data_set_arn: str
    replace: bool = False


class PermissionPayload(BaseModel):
    data_set_arn: str
    user_group_arn: str
    field: str
    rls_values: str = "*"


class PermissionChanges(BaseModel):
    field: Optional[str] = None
    rls_values: Optional[str] = None
    status: Optional[str] = None


class VisibilityPayload(BaseModel):
    data_set_arn: str
    user_group_arn: str
    permission_level: str = PermissionLevel.VIEWER.value


class RollbackPayload(BaseModel):
    region: str
    bucket: str
    data_set_id: str
    version_id: str


def _permissions(services: Services) -> PermissionManager:
    return PermissionManager(services.catalog, max_workers=services.config.permission_delete_workers)


def _respond(result: StepResult, context: Optional[PipelineContext] = None) -> JSONResponse:
    body: Dict[str, Any] = result.to_dict()
    if context is not None:
        body.update(context.to_dict())
    return JSONResponse(status_code=result.status, content=body)


# ── health ─────────────────────────────────────────────────────────── #

@router.get("/healthz")
def healthz() -> Dict[str, bool]:
    return {"ok": True}


@router.get("/api/v1/healthz")
def api_healthz() -> Dict[str, bool]:
    return {"ok": True}


# ── pipelines ──────────────────────────────────────────────────────── #

@router.post("/api/v1/resources/validate")
def api_validate_resources(
        payload: ResourcesModel = Body(...),
        services: Services = Depends(get_services),
):
    result = ResourceValidator(services.registry, services.config).validate(payload.to_resources())
    return _respond(result)


@router.post("/api/v1/publish")
def api_publish(
        payload: PublishPayload = Body(...),
        services: Services = Depends(get_services),
):
    ctx = PipelineContext()
    orchestrator = PublishOrchestrator(services.registry, services.catalog, services.config)
    result = orchestrator.publish(
        PublishRequest(
            resources=payload.resources.to_resources(),
            data_set_arn=payload.data_set_arn,
            csv_content=payload.csv_content,
            published_by=payload.published_by,
        ),
        ctx,
    )
    return _respond(result, ctx)


@router.post("/api/v1/rls-datasets/delete")
def api_delete_rls_data_set(
        payload: DeletePayload = Body(...),
        services: Services = Depends(get_services),
):
    ctx = PipelineContext()
    orchestrator = DeletionOrchestrator(services.registry, services.catalog, services.config)
    result = orchestrator.delete(
        DeletionRequest(
            resources=payload.resources.to_resources(),
            rls_data_set=payload.rls_data_set_arn,
            keep_s3=payload.keep_s3,
            keep_permissions=payload.keep_permissions,
        ),
        ctx,
    )
    return _respond(result, ctx)


# ── CSV ────────────────────────────────────────────────────────────── #

@router.get("/api/v1/datasets/csv", response_class=PlainTextResponse)
def api_export_csv(
        data_set_arn: str = Query(...),
        services: Services = Depends(get_services),
):
    try:
        return generate_csv_for_data_set(services.catalog, data_set_arn)
    except ValidationError as e:
        raise HTTPException(status_code=404, detail=str(e))


def _parse(payload: ParsePayload):
    return parse_rls_csv(
        payload.content,
        users=[Principal(u.name, u.arn) for u in payload.users],
        groups=[Principal(g.name, g.arn) for g in payload.groups],
        field_types=parse_field_types(payload.field_types),
    )


@router.post("/api/v1/datasets/csv/parse")
def api_parse_csv(payload: ParsePayload = Body(...)):
    result = _parse(payload)
    return {
        "format": result.format.value,
        "permissions": [p.__dict__ for p in result.permissions],
        "errors": result.errors,
        "warnings": result.warnings,
        "skipped_rows": result.skipped_rows,
    }


@router.post("/api/v1/datasets/csv/import")
def api_import_csv(
        payload: ImportPayload = Body(...),
        services: Services = Depends(get_services),
):
    result = _parse(payload)
    try:
        counts = _permissions(services).import_parsed(payload.data_set_arn, result, replace=payload.replace)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "format": result.format.value,
        "errors": result.errors,
        "warnings": result.warnings,
        "skipped_rows": result.skipped_rows,
        **counts,
    }


# ── permissions ────────────────────────────────────────────────────── #

@router.get("/api/v1/datasets")
def api_list_data_sets(
        is_rls: Optional[bool] = Query(None),
        services: Services = Depends(get_services),
):
    filters = {} if is_rls is None else {"is_rls": is_rls}
    return {"data": [r.to_dict() for r in services.catalog.list_data_sets(**filters)]}


@router.get("/api/v1/datasets/permissions")
def api_list_permissions(
        data_set_arn: str = Query(...),
        services: Services = Depends(get_services),
):
    permissions = _permissions(services).list_for_data_set(data_set_arn)
    return {"data": [p.to_dict() for p in permissions]}


@router.post("/api/v1/datasets/permissions", status_code=201)
def api_add_permission(
        payload: PermissionPayload = Body(...),
        services: Services = Depends(get_services),
):
    try:
        permission = _permissions(services).add(
            payload.data_set_arn, payload.user_group_arn, payload.field, payload.rls_values
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"data": permission.to_dict()}


@router.put("/api/v1/datasets/permissions/{permission_id}")
def api_update_permission(
        permission_id: str,
        payload: PermissionChanges = Body(...),
        services: Services = Depends(get_services),
):
    changes = {k: v for k, v in payload.model_dump().items() if v is not None}
    try:
        permission = _permissions(services).update(permission_id, **changes)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Permission not found: {permission_id}")
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"data": permission.to_dict()}


@router.delete("/api/v1/datasets/permissions/{permission_id}")
def api_remove_permission(
        permission_id: str,
        services: Services = Depends(get_services),
):
    if not _permissions(services).remove(permission_id):
        raise HTTPException(status_code=404, detail=f"Permission not found: {permission_id}")
    return {"ok": True}


# ── visibility ─────────────────────────────────────────────────────── #

@router.get("/api/v1/rls-datasets/visibility")
def api_list_visibility(
        data_set_arn: str = Query(...),
        services: Services = Depends(get_services),
):
    return {"data": [v.to_dict() for v in services.catalog.list_visibility(data_set_arn)]}


@router.post("/api/v1/rls-datasets/visibility", status_code=201)
def api_create_visibility(
        payload: VisibilityPayload = Body(...),
        services: Services = Depends(get_services),
):
    level = payload.permission_level.upper()
    if level not in {lvl.value for lvl in PermissionLevel}:
        raise HTTPException(status_code=400, detail=f"Unknown permission level: {payload.permission_level}")
    record = services.catalog.get_data_set(payload.data_set_arn)
    if record is None or record.is_rls:
        raise HTTPException(status_code=404, detail=f"Secured dataset not found: {payload.data_set_arn}")
    visibility = services.catalog.create_visibility(RLSDataSetVisibility(
        data_set_arn=payload.data_set_arn,
        user_group_arn=payload.user_group_arn,
        permission_level=level,
        rls_data_set_arn=record.rls_data_set_id,
    ))
    return {"data": visibility.to_dict()}


@router.delete("/api/v1/rls-datasets/visibility/{visibility_id}")
def api_delete_visibility(
        visibility_id: str,
        services: Services = Depends(get_services),
):
    if not services.catalog.delete_visibility(visibility_id):
        raise HTTPException(status_code=404, detail=f"Visibility record not found: {visibility_id}")
    return {"ok": True}


# ── versions ───────────────────────────────────────────────────────── #

@router.get("/api/v1/datasets/history")
def api_publish_history(
        data_set_arn: str = Query(...),
        services: Services = Depends(get_services),
):
    history = VersionHistory(services.catalog, services.config).history(data_set_arn)
    return {"data": [h.to_dict() for h in history]}


@router.get("/api/v1/datasets/history/version")
def api_publish_history_version(
        data_set_arn: str = Query(...),
        version: int = Query(...),
        services: Services = Depends(get_services),
):
    entry = services.catalog.get_publish_history(data_set_arn, version)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"No publish v{version} for {data_set_arn}")
    return {"data": entry.to_dict()}


@router.get("/api/v1/datasets/versions")
def api_list_versions(
        region: str = Query(...),
        bucket: str = Query(...),
        data_set_id: str = Query(...),
        services: Services = Depends(get_services),
):
    storage = S3Storage(bucket, services.registry.s3(region))
    versions = VersionHistory(services.catalog, services.config).list_versions(storage, data_set_id)
    return {"data": [v.__dict__ for v in versions]}


@router.get("/api/v1/datasets/versions/content", response_class=PlainTextResponse)
def api_version_content(
        region: str = Query(...),
        bucket: str = Query(...),
        data_set_id: str = Query(...),
        version_id: str = Query(...),
        services: Services = Depends(get_services),
):
    storage = S3Storage(bucket, services.registry.s3(region))
    try:
        return VersionHistory(services.catalog, services.config).get_version_content(storage, data_set_id, version_id)
    except FileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/api/v1/datasets/versions/rollback")
def api_rollback(
        payload: RollbackPayload = Body(...),
        services: Services = Depends(get_services),
):
    storage = S3Storage(payload.bucket, services.registry.s3(payload.region))
    result = VersionHistory(services.catalog, services.config).rollback(storage, payload.data_set_id, payload.version_id)
    if not result.ok:
        logger.warning(f"[versions] Rollback failed: {result.message}")
    return _respond(result)
