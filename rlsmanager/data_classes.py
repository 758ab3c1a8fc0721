from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional


WILDCARD = "*"


class RlsStatus(str, Enum):
    ENABLED = "ENABLED"
    DISABLED = "DISABLED"


class PermissionStatus(str, Enum):
    PENDING = "PENDING"
    PUBLISHED = "PUBLISHED"
    FAILED = "FAILED"
    MANUAL = "MANUAL"


class PermissionLevel(str, Enum):
    OWNER = "OWNER"
    VIEWER = "VIEWER"


class PublishStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class StepStatus(str, Enum):
    LOADING = "LOADING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class PrincipalType(str, Enum):
    USER = "USER"
    GROUP = "GROUP"


class CsvFormat(str, Enum):
    GROUP_NAME = "GROUP_NAME"  # GroupName,field1,...
    USER_NAME = "USER_NAME"  # UserName,field1,...
    ARN = "ARN"  # UserARN,GroupARN,field1,...
    UNKNOWN = "UNKNOWN"


def _record_from_dict(cls, data: Dict[str, Any]):
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


def _record_to_dict(obj) -> Dict[str, Any]:
    out = asdict(obj)
    for k, v in out.items():
        if isinstance(v, Enum):
            out[k] = v.value
    return out


@dataclass
class Permission:
    """One row-filter rule: ``user_group_arn`` may see rows where ``field`` is in ``rls_values``."""
    data_set_arn: str
    user_group_arn: str
    field: str
    rls_values: str
    status: str = PermissionStatus.PENDING.value
    id: Optional[str] = None

    @property
    def is_wildcard(self) -> bool:
        return self.field == WILDCARD and self.rls_values == WILDCARD

    def to_dict(self) -> Dict[str, Any]:
        return _record_to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Permission":
        return _record_from_dict(cls, data)


@dataclass
class DataSetRecord:
    """Administrative mirror of a BI dataset (either a data dataset or a rules dataset)."""
    data_set_arn: str
    data_set_id: str
    name: str = ""
    rls_enabled: str = RlsStatus.DISABLED.value
    rls_tool_managed: bool = False
    rls_data_set_id: Optional[str] = None
    is_rls: bool = False
    tool_created: bool = False
    api_manageable: bool = True
    new_data_prep: bool = False
    import_mode: Optional[str] = None
    data_set_region: Optional[str] = None
    # field name -> BI column type, in dataset column order
    field_types: Dict[str, str] = field(default_factory=dict)
    glue_s3_id: Optional[str] = None
    current_version: int = 0
    last_published_version: Optional[int] = None
    last_published_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _record_to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataSetRecord":
        return _record_from_dict(cls, data)


@dataclass
class PublishHistory:
    data_set_arn: str
    version: int
    published_at: str
    status: str
    s3_key: Optional[str] = None
    s3_version_id: Optional[str] = None
    permission_count: int = 0
    csv_snapshot: Optional[str] = None
    error_message: Optional[str] = None
    published_by: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _record_to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PublishHistory":
        return _record_from_dict(cls, data)


@dataclass
class RLSDataSetVisibility:
    """
    Who may see or administer the rules dataset that secures ``data_set_arn``.

    Keyed by the secured dataset so grants survive the rules dataset being
    recreated under a new id; ``rls_data_set_arn`` is the rules dataset the
    grant was last applied to.
    """
    data_set_arn: str
    user_group_arn: str
    permission_level: str = PermissionLevel.VIEWER.value
    rls_data_set_arn: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _record_to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RLSDataSetVisibility":
        return _record_from_dict(cls, data)


@dataclass
class Principal:
    """A BI user or group as listed by the identity service."""
    name: str
    arn: str


@dataclass
class ParsedPermission:
    user_group_arn: str
    user_group_name: str
    user_group_type: str
    field: str
    rls_values: str
    is_resolved: bool = True


@dataclass
class ParseResult:
    permissions: List[ParsedPermission] = field(default_factory=list)
    format: CsvFormat = CsvFormat.UNKNOWN
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    # data rows dropped before producing any permission
    skipped_rows: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class ToolResources:
    """The regional infrastructure a publish or delete run works against."""
    region: str
    s3_bucket_name: str
    glue_database_name: str
    qs_data_source_name: Optional[str] = None


@dataclass
class ObjectVersion:
    version_id: str
    last_modified: Optional[str] = None
    size: int = 0
    is_latest: bool = False


@dataclass
class StepResult:
    """
    Outcome of one pipeline phase.

    ``status`` is an HTTP-style code; ``payload`` carries phase outputs
    (ARNs, ingestion ids, column lists) on success.
    """
    status: int
    message: str
    error_type: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @classmethod
    def success(cls, message: str, status: int = 200, **payload: Any) -> "StepResult":
        return cls(status=status, message=message, payload=payload)

    @classmethod
    def failure(cls, status: int, message: str, error_type: Optional[str] = None) -> "StepResult":
        return cls(status=status, message=message, error_type=error_type)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"status": self.status, "message": self.message}
        if self.error_type:
            out["errorType"] = self.error_type
        out.update(self.payload)
        return out
