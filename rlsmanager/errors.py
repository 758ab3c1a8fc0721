from __future__ import annotations

from typing import Dict, Optional, Tuple

from botocore.exceptions import ClientError

from rlsmanager.data_classes import StepResult


class ValidationError(ValueError):
    """A required argument or resource is missing or malformed."""


class NoValidColumnsFound(ValidationError):
    """The CSV header produced no usable column after filtering."""


# Service error name (without the trailing "Exception") -> (status, description)
ERROR_STATUS_MAP: Dict[str, Tuple[int, str]] = {
    # QuickSight
    "AccessDenied": (403, "Access denied"),
    "ResourceNotFound": (404, "Resource not found"),
    "Throttling": (429, "Request throttled"),
    "InvalidParameterValue": (400, "Invalid parameter value"),
    "Conflict": (409, "Conflicting update"),
    "LimitExceeded": (409, "Limit exceeded"),
    "ResourceExists": (409, "Resource already exists"),
    "ResourceUnavailable": (503, "Resource unavailable"),
    "UnsupportedUserEdition": (403, "Unsupported QuickSight edition"),
    "PreconditionNotMet": (400, "Precondition not met"),
    "InternalFailure": (500, "Internal failure"),
    # S3
    "NoSuchBucket": (404, "Bucket does not exist"),
    "NoSuchKey": (404, "Object does not exist"),
    "NotFound": (404, "Not found"),
    "404": (404, "Not found"),
    "Forbidden": (403, "Access denied"),
    "403": (403, "Access denied"),
    "InvalidRequest": (400, "Invalid request"),
    # Glue
    "EntityNotFound": (404, "Catalog entity not found"),
    "AlreadyExists": (409, "Catalog entity already exists"),
    "InvalidInput": (400, "Invalid input"),
    "OperationTimeout": (408, "Operation timed out"),
    "ConcurrentModification": (409, "Concurrent modification"),
    "ResourceNumberLimitExceeded": (409, "Resource limit exceeded"),
    "InternalService": (500, "Internal service error"),
    # local
    "ValidationError": (400, "Validation error"),
    "ReferenceError": (400, "Missing reference"),
    "NoValidColumnsFound": (404, "No valid CSV headers found"),
    "IngestionFailed": (500, "Ingestion failed"),
    "UnknownIngestionStatus": (500, "Unknown ingestion status"),
}


def error_name(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code") or "ClientError")
    return type(exc).__name__


def error_message(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Message") or exc)
    return str(exc)


def _lookup_key(name: str) -> str:
    if name.endswith("Exception") and name != "Exception":
        return name[: -len("Exception")]
    return name


def status_for(name: str) -> int:
    return ERROR_STATUS_MAP.get(_lookup_key(name), (500, ""))[0]


def is_error(exc: BaseException, *names: str) -> bool:
    """True when ``exc`` is a service error whose name matches one of ``names`` (suffix-insensitive)."""
    wanted = {_lookup_key(n) for n in names}
    return _lookup_key(error_name(exc)) in wanted


def result_from_exception(exc: BaseException, prefix: Optional[str] = None) -> StepResult:
    name = error_name(exc)
    msg = error_message(exc)
    if prefix:
        msg = f"{prefix}: {msg}"
    return StepResult.failure(status_for(name), msg, error_type=name)
