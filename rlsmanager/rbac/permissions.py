from typing import Dict, FrozenSet, List

from rlsmanager.data_classes import PermissionLevel

OWNER_ACTIONS: List[str] = [
    "quicksight:DeleteDataSet",
    "quicksight:UpdateDataSetPermissions",
    "quicksight:PutDataSetRefreshProperties",
    "quicksight:CreateRefreshSchedule",
    "quicksight:CancelIngestion",
    "quicksight:PassDataSet",
    "quicksight:ListRefreshSchedules",
    "quicksight:UpdateRefreshSchedule",
    "quicksight:DeleteRefreshSchedule",
    "quicksight:DescribeDataSetRefreshProperties",
    "quicksight:DescribeDataSet",
    "quicksight:CreateIngestion",
    "quicksight:DescribeRefreshSchedule",
    "quicksight:ListIngestions",
    "quicksight:DescribeDataSetPermissions",
    "quicksight:UpdateDataSet",
    "quicksight:DeleteDataSetRefreshProperties",
    "quicksight:DescribeIngestion",
]

VIEWER_ACTIONS: List[str] = [
    "quicksight:DescribeRefreshSchedule",
    "quicksight:ListIngestions",
    "quicksight:DescribeDataSetPermissions",
    "quicksight:PassDataSet",
    "quicksight:ListRefreshSchedules",
    "quicksight:DescribeDataSet",
    "quicksight:DescribeIngestion",
]

# Mapping each PermissionLevel to the QuickSight dataset actions it grants
LEVEL_ACTIONS: Dict[PermissionLevel, List[str]] = {
    PermissionLevel.OWNER: OWNER_ACTIONS,
    PermissionLevel.VIEWER: VIEWER_ACTIONS,
}


def actions_for(level: str) -> FrozenSet[str]:
    """Actions for a level name (``OWNER``/``VIEWER``, case-insensitive); unknown levels get viewer rights."""
    try:
        resolved = PermissionLevel(str(level).upper())
    except ValueError:
        resolved = PermissionLevel.VIEWER
    return frozenset(LEVEL_ACTIONS[resolved])
