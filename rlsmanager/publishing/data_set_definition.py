"""
Pure builders for QuickSight ``UpdateDataSet``/``CreateDataSet`` payloads.

``UpdateDataSet`` replaces the whole dataset definition, so every structural
field read from ``DescribeDataSet`` has to be sent back. A dataset uses one
of two representations:

* legacy: ``LogicalTableMap`` with the RLS binding in the top-level
  ``RowLevelPermissionDataSet``
* new data prep: ``DataPrepConfiguration`` + ``SemanticModelConfiguration``
  with the binding inside each semantic table's
  ``RowLevelPermissionConfiguration``

None of the functions here mutate their input.
"""
from __future__ import annotations

import copy
import uuid
from typing import Any, Dict, List, Optional

from rlsmanager.catalog.glue_catalog import table_name_for
from rlsmanager.quicksight.quicksight_service import data_source_arn

# Fields returned by DescribeDataSet that UpdateDataSet accepts back unchanged
CARRIED_FIELDS = (
    "Name",
    "PhysicalTableMap",
    "ImportMode",
    "ColumnGroups",
    "FieldFolders",
    "RowLevelPermissionTagConfiguration",
    "ColumnLevelPermissionRules",
    "DataSetUsageConfiguration",
    "DatasetParameters",
    "PerformanceConfiguration",
)

RLS_TAG = {"Key": "RLS-Manager", "Value": "True"}


def rls_binding(rls_data_set_arn: str) -> Dict[str, str]:
    return {
        "Arn": rls_data_set_arn,
        "PermissionPolicy": "GRANT_ACCESS",
        "FormatVersion": "VERSION_2",
        "Status": "ENABLED",
    }


def is_new_data_prep(definition: Dict[str, Any]) -> bool:
    return bool(definition.get("DataPrepConfiguration"))


def current_rls_arn(definition: Dict[str, Any]) -> Optional[str]:
    """ARN of the rules dataset the definition is bound to, if any."""
    top = definition.get("RowLevelPermissionDataSet") or {}
    if top.get("Arn"):
        return top["Arn"]
    table_map = (definition.get("SemanticModelConfiguration") or {}).get("TableMap") or {}
    for table in table_map.values():
        binding = (table.get("RowLevelPermissionConfiguration") or {}).get("RowLevelPermissionDataSet") or {}
        if binding.get("Arn") and binding.get("Status", "ENABLED") == "ENABLED":
            return binding["Arn"]
    return None


def _core_params(definition: Dict[str, Any]) -> Dict[str, Any]:
    params: Dict[str, Any] = {"DataSetId": definition["DataSetId"]}
    for key in CARRIED_FIELDS:
        if definition.get(key) is not None:
            params[key] = copy.deepcopy(definition[key])
    return params


def _legacy_params(definition: Dict[str, Any], rls_data_set_arn: Optional[str]) -> Dict[str, Any]:
    params = _core_params(definition)
    if definition.get("LogicalTableMap") is not None:
        params["LogicalTableMap"] = copy.deepcopy(definition["LogicalTableMap"])
    if rls_data_set_arn:
        params["RowLevelPermissionDataSet"] = rls_binding(rls_data_set_arn)
    return params


def _new_data_prep_params(definition: Dict[str, Any], rls_data_set_arn: Optional[str]) -> Dict[str, Any]:
    params = _core_params(definition)
    params["DataPrepConfiguration"] = copy.deepcopy(definition["DataPrepConfiguration"])

    semantic = copy.deepcopy(definition.get("SemanticModelConfiguration") or {})
    for table in (semantic.get("TableMap") or {}).values():
        rls_config = table.get("RowLevelPermissionConfiguration") or {}
        if rls_data_set_arn:
            rls_config["RowLevelPermissionDataSet"] = rls_binding(rls_data_set_arn)
        else:
            rls_config.pop("RowLevelPermissionDataSet", None)
        if rls_config:
            table["RowLevelPermissionConfiguration"] = rls_config
        else:
            table.pop("RowLevelPermissionConfiguration", None)
    if semantic:
        params["SemanticModelConfiguration"] = semantic
    return params


def build_bind_params(definition: Dict[str, Any], rls_data_set_arn: str) -> Dict[str, Any]:
    """UpdateDataSet payload that binds ``rls_data_set_arn`` as the dataset's RLS rules."""
    if is_new_data_prep(definition):
        return _new_data_prep_params(definition, rls_data_set_arn)
    return _legacy_params(definition, rls_data_set_arn)


def build_remove_params(definition: Dict[str, Any]) -> Dict[str, Any]:
    """UpdateDataSet payload identical to ``definition`` minus its RLS binding."""
    if is_new_data_prep(definition):
        return _new_data_prep_params(definition, None)
    return _legacy_params(definition, None)


def build_rules_data_set_params(
    target_data_set_id: str,
    rules_data_set_id: str,
    region: str,
    account_id: str,
    glue_database_name: str,
    qs_data_source_name: str,
    columns: List[str],
    physical_table_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Create/Update payload for the SPICE rules dataset over the Glue table."""
    return {
        "DataSetId": rules_data_set_id,
        "Name": f"Managed-RLS for DataSetId: {target_data_set_id}",
        "ImportMode": "SPICE",
        "PhysicalTableMap": {
            physical_table_id or str(uuid.uuid4()): {
                "RelationalTable": {
                    "DataSourceArn": data_source_arn(region, account_id, qs_data_source_name),
                    "Catalog": "AwsDataCatalog",
                    "Schema": glue_database_name,
                    "Name": table_name_for(target_data_set_id),
                    "InputColumns": [{"Name": c, "Type": "STRING"} for c in columns],
                }
            }
        },
    }
