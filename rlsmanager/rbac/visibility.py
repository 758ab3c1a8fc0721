from __future__ import annotations

from typing import Any, Dict, FrozenSet, List, Tuple

from rlsmanager.config.defaults import logger
from rlsmanager.quicksight.quicksight_service import QuickSightService, data_set_id_from_arn
from rlsmanager.rbac.permissions import actions_for
from rlsmanager.redis_catalog import RedisCatalog


def plan_permission_changes(
    current: List[Dict[str, Any]],
    desired: Dict[str, FrozenSet[str]],
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """
    Grants and revokes that turn ``current`` (QuickSight ``Permissions`` entries)
    into exactly ``desired`` (principal -> action set).
    """
    have: Dict[str, FrozenSet[str]] = {}
    for entry in current:
        principal = entry.get("Principal")
        if principal:
            have[principal] = have.get(principal, frozenset()) | frozenset(entry.get("Actions") or [])

    grants: List[Dict[str, Any]] = []
    revokes: List[Dict[str, Any]] = []
    for principal in sorted(desired):
        wanted = desired[principal]
        existing = have.get(principal, frozenset())
        missing = wanted - existing
        surplus = existing - wanted
        if missing:
            grants.append({"Principal": principal, "Actions": sorted(wanted)})
        if surplus:
            revokes.append({"Principal": principal, "Actions": sorted(surplus)})
    for principal in sorted(set(have) - set(desired)):
        revokes.append({"Principal": principal, "Actions": sorted(have[principal])})
    return grants, revokes


class VisibilityManager:
    """Applies the visibility records of a secured dataset to its current rules dataset in QuickSight."""

    def __init__(self, redis_catalog: RedisCatalog, quicksight: QuickSightService):
        self._catalog = redis_catalog
        self._qs = quicksight

    def apply(self, data_set_arn: str, rls_data_set_arn: str) -> Dict[str, int]:
        records = self._catalog.list_visibility(data_set_arn)
        if not records:
            logger.info(f"[visibility] No visibility records for {data_set_arn}; leaving permissions as they are")
            return {"grants": 0, "revokes": 0}

        desired: Dict[str, FrozenSet[str]] = {}
        for rec in records:
            desired[rec.user_group_arn] = desired.get(rec.user_group_arn, frozenset()) | actions_for(rec.permission_level)

        data_set_id = data_set_id_from_arn(rls_data_set_arn)
        current = self._qs.describe_data_set_permissions(data_set_id)
        grants, revokes = plan_permission_changes(current, desired)
        logger.info(f"[visibility] {rls_data_set_arn}: {len(grants)} grant(s), {len(revokes)} revoke(s)")
        self._qs.update_data_set_permissions(data_set_id, grants, revokes)
        for rec in records:
            if rec.rls_data_set_arn != rls_data_set_arn:
                self._catalog.update_visibility(rec.id, rls_data_set_arn=rls_data_set_arn)
        return {"grants": len(grants), "revokes": len(revokes)}
