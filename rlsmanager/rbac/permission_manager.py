# rlsmanager/rbac/permission_manager.py

from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional

from rlsmanager.config.defaults import logger
from rlsmanager.data_classes import ParseResult, Permission, PermissionStatus
from rlsmanager.errors import ValidationError
from rlsmanager.redis_catalog import RedisCatalog


class PermissionManager:
    """
    Business-logic layer for row-filter permissions.

    Permissions always belong to a data dataset. Rules datasets
    (``is_rls=True``) are never edited directly; they are reached through
    the data dataset that references them.
    """

    def __init__(self, redis_catalog: Optional[RedisCatalog] = None, max_workers: int = 8):
        self._catalog = redis_catalog or RedisCatalog()
        self._max_workers = max_workers

    def _require_editable(self, data_set_arn: str) -> None:
        record = self._catalog.get_data_set(data_set_arn)
        if record is None:
            raise ValidationError(f"Dataset not found: {data_set_arn}")
        if record.is_rls:
            raise ValidationError(f"Permissions cannot be edited on rules dataset {data_set_arn}")

    # ── CRUD ────────────────────────────────────────────────────────── #

    def list_for_data_set(self, data_set_arn: str) -> List[Permission]:
        return self._catalog.list_permissions(data_set_arn)

    def add(self, data_set_arn: str, user_group_arn: str, field: str, rls_values: str) -> Permission:
        if not user_group_arn:
            raise ValidationError("user_group_arn is required")
        if not field:
            raise ValidationError("field is required")
        self._require_editable(data_set_arn)
        permission = self._catalog.create_permission(Permission(
            data_set_arn=data_set_arn,
            user_group_arn=user_group_arn,
            field=field,
            rls_values=rls_values or "*",
            status=PermissionStatus.PENDING.value,
        ))
        logger.debug(f"Permission created: {permission.id} ({user_group_arn} / {field})")
        return permission

    def update(self, permission_id: str, **changes) -> Permission:
        allowed = {"field", "rls_values", "status"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Unsupported permission fields: {sorted(unknown)}")
        return self._catalog.update_permission(permission_id, **changes)

    def remove(self, permission_id: str) -> bool:
        return self._catalog.delete_permission(permission_id)

    # ── bulk ────────────────────────────────────────────────────────── #

    def import_parsed(self, data_set_arn: str, parsed: ParseResult, replace: bool = False) -> Dict[str, int]:
        """
        Store the resolved rows of a parsed CSV as PENDING permissions.

        Unresolved rows (unknown user/group names) are skipped. With
        ``replace=True`` the dataset's existing permissions are deleted first.
        """
        if not parsed.ok:
            raise ValidationError("; ".join(parsed.errors))
        self._require_editable(data_set_arn)

        removed = self.delete_for_data_set(data_set_arn) if replace else 0
        created = skipped = 0
        for p in parsed.permissions:
            if not p.is_resolved:
                skipped += 1
                continue
            self._catalog.create_permission(Permission(
                data_set_arn=data_set_arn,
                user_group_arn=p.user_group_arn,
                field=p.field,
                rls_values=p.rls_values,
            ))
            created += 1
        logger.info(f"Imported {created} permission(s) into {data_set_arn} (skipped {skipped}, removed {removed})")
        return {"created": created, "skipped": skipped, "removed": removed}

    def delete_for_data_set(self, data_set_arn: str) -> int:
        """Delete every permission of a dataset in parallel. The first failure is raised."""
        permissions = self._catalog.list_permissions(data_set_arn)
        if not permissions:
            return 0
        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            futures = [pool.submit(self._catalog.delete_permission, p.id) for p in permissions]
            try:
                for f in futures:
                    f.result()
            except Exception:
                for f in futures:
                    f.cancel()
                raise
        logger.debug(f"Deleted {len(permissions)} permission(s) of {data_set_arn}")
        return len(permissions)
