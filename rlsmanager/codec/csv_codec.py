"""
CSV dialect used by QuickSight row-level security rule datasets.

Three header dialects are recognised on import:

    UserARN,GroupARN,<field>,...   (ARN)        identity already resolved
    GroupName,<field>,...          (GROUP_NAME) resolved against known groups
    UserName,<field>,...           (USER_NAME)  resolved against known users

Export always writes the ARN dialect. An empty cell means "all values" for
that field; a principal allowed everything on every field is stored as a
single ``field="*", rls_values="*"`` permission.
"""
from __future__ import annotations

import dataclasses
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from rlsmanager.codec.field_types import is_date_type, non_date_fields, parse_field_types
from rlsmanager.config.defaults import logger
from rlsmanager.data_classes import (
    WILDCARD,
    CsvFormat,
    ParsedPermission,
    ParseResult,
    Permission,
    PrincipalType,
    Principal,
)
from rlsmanager.errors import ValidationError

USER_ARN_COLUMN = "UserARN"
GROUP_ARN_COLUMN = "GroupARN"

T = TypeVar("T")


# --------------------------------------------------------------------------- #
# Tokenizer
# --------------------------------------------------------------------------- #

def parse_csv_line(line: str) -> List[str]:
    """Split one CSV line on commas outside double quotes. Quotes toggle state and are dropped."""
    cells: List[str] = []
    current: List[str] = []
    in_quotes = False
    for ch in line:
        if ch == '"':
            in_quotes = not in_quotes
        elif ch == "," and not in_quotes:
            cells.append("".join(current))
            current = []
        else:
            current.append(ch)
    cells.append("".join(current))
    return cells


def _cell(value: str) -> str:
    if value == WILDCARD:
        return ""
    if "," in value:
        return f'"{value}"'
    return value


def csv_header_columns(csv_text: str) -> List[str]:
    first = csv_text.split("\n", 1)[0].rstrip("\r")
    return [c.strip() for c in parse_csv_line(first)] if first else []


# --------------------------------------------------------------------------- #
# Consolidation
# --------------------------------------------------------------------------- #

def _principal_key(p) -> Tuple[str, ...]:
    if p.user_group_arn:
        return (p.user_group_arn,)
    # unresolved rows carry no ARN; keep distinct names apart
    return (getattr(p, "user_group_type", ""), getattr(p, "user_group_name", ""))


def consolidate_wildcards(permissions: Sequence[T], fields: Iterable[str]) -> List[T]:
    """
    Collapse a principal's rows into one ``*``/``*`` row when they cover every
    field in ``fields`` and every value is a wildcard. Other principals are
    returned unchanged, in first-seen order.
    """
    wanted = set(fields)
    grouped: Dict[Tuple[str, ...], List[T]] = {}
    for p in permissions:
        grouped.setdefault(_principal_key(p), []).append(p)

    out: List[T] = []
    for items in grouped.values():
        covered = {p.field for p in items}
        all_wildcard = all(p.rls_values in (WILDCARD, "") for p in items)
        if wanted and covered == wanted and all_wildcard:
            out.append(dataclasses.replace(items[0], field=WILDCARD, rls_values=WILDCARD))
        else:
            out.extend(items)
    return out


# --------------------------------------------------------------------------- #
# Serialize
# --------------------------------------------------------------------------- #

def _select_fields(permissions: Sequence[Permission], field_types: Dict[str, str]) -> List[str]:
    referenced = {p.field for p in permissions if p.field != WILDCARD}
    if not referenced:
        return non_date_fields(field_types)

    known = [f for f in field_types if f in referenced]
    unknown = sorted(referenced - set(field_types))
    return [f for f in known + unknown if not is_date_type(field_types.get(f))]


def generate_csv(permissions: Sequence[Permission], field_types: Optional[Dict[str, str]] = None) -> str:
    """
    Render permissions as ``UserARN,GroupARN,<fields...>`` with one row per principal.

    Principals are sorted by ARN; the same permission set always renders to the same text.
    """
    if not permissions:
        return ""
    field_types = field_types or {}

    ordered = sorted(permissions, key=lambda p: (p.user_group_arn, p.field, p.rls_values))
    fields = _select_fields(ordered, field_types)

    by_principal: Dict[str, List[Permission]] = {}
    for p in ordered:
        by_principal.setdefault(p.user_group_arn, []).append(p)

    lines = [",".join([USER_ARN_COLUMN, GROUP_ARN_COLUMN] + fields)]
    for arn, perms in by_principal.items():
        view_all = any(p.is_wildcard for p in perms)
        values = {p.field: p.rls_values for p in perms if p.field != WILDCARD}

        user_arn = arn if ":user/" in arn else ""
        group_arn = arn if ":group/" in arn else ""
        if not user_arn and not group_arn:
            logger.warning(f"[csv-codec] Principal is neither user nor group: {arn!r}")

        cells = [user_arn, group_arn]
        for f in fields:
            cells.append("" if view_all else _cell(values.get(f, "")))
        lines.append(",".join(cells))

    return "\n".join(lines)


def generate_csv_for_data_set(catalog, data_set_arn: str) -> str:
    """Serialize the stored permissions of one dataset using its stored field types."""
    record = catalog.get_data_set(data_set_arn)
    if record is None:
        raise ValidationError(f"Dataset not found: {data_set_arn}")
    if record.is_rls:
        raise ValidationError(f"{data_set_arn} is a rules dataset and has no permissions of its own")
    permissions = catalog.list_permissions(data_set_arn)
    return generate_csv(permissions, parse_field_types(record.field_types))


# --------------------------------------------------------------------------- #
# Parse
# --------------------------------------------------------------------------- #

def detect_format(header: Sequence[str]) -> Tuple[CsvFormat, int]:
    """Return the dialect and the index of the first field column."""
    first = header[0].strip().lower() if header else ""
    second = header[1].strip().lower() if len(header) > 1 else ""
    if first == "userarn" and second == "grouparn":
        return CsvFormat.ARN, 2
    if first in ("groupname", "group"):
        return CsvFormat.GROUP_NAME, 1
    if first in ("username", "user"):
        return CsvFormat.USER_NAME, 1
    return CsvFormat.UNKNOWN, 0


def _name_from_arn(arn: str) -> str:
    parts = arn.split("/")
    return "/".join(parts[2:]) if len(parts) > 2 else arn


def parse_rls_csv(
    content: str,
    users: Sequence[Principal] = (),
    groups: Sequence[Principal] = (),
    field_types: Optional[Dict[str, str]] = None,
) -> ParseResult:
    result = ParseResult()
    field_types = field_types or {}

    lines = [ln.rstrip("\r") for ln in content.split("\n") if ln.strip()]
    if len(lines) < 2:
        result.errors.append("CSV must have at least a header row and one data row")
        return result

    header = [h.strip() for h in parse_csv_line(lines[0])]
    fmt, field_start = detect_format(header)
    result.format = fmt
    if fmt is CsvFormat.UNKNOWN:
        result.errors.append(
            "Unrecognized CSV format. First column should be 'UserARN', 'GroupARN', "
            f"'GroupName', or 'UserName'. Found: '{header[0]}'"
        )
        return result

    fields = header[field_start:]
    if not fields:
        result.errors.append("No field columns found in CSV")
        return result

    dated = [f"{f} ({field_types[f]})" for f in fields if is_date_type(field_types.get(f))]
    if dated:
        result.warnings.append(
            f"Date fields detected in CSV: {', '.join(dated)}. QuickSight RLS does not support "
            "date fields. These permissions may not work correctly."
        )

    lookup = {
        CsvFormat.USER_NAME: ({u.name.lower(): u for u in users}, PrincipalType.USER, "user"),
        CsvFormat.GROUP_NAME: ({g.name.lower(): g for g in groups}, PrincipalType.GROUP, "group"),
    }

    parsed: List[ParsedPermission] = []
    for i, line in enumerate(lines[1:], start=1):
        row = f"Row {i + 1}"
        cells = [c.strip() for c in parse_csv_line(line)]
        if len(cells) < len(header):
            result.warnings.append(f"{row}: Not enough columns (expected {len(header)}, got {len(cells)})")
            result.skipped_rows += 1
            continue

        if fmt is CsvFormat.ARN:
            user_arn, group_arn = cells[0], cells[1]
            if not user_arn and not group_arn:
                result.warnings.append(f"{row}: Both UserARN and GroupARN are empty")
                result.skipped_rows += 1
                continue
            if user_arn and group_arn:
                result.warnings.append(f"{row}: Both UserARN and GroupARN are set")
                result.skipped_rows += 1
                continue
            arn = user_arn or group_arn
            ptype = PrincipalType.USER if user_arn else PrincipalType.GROUP
            name, resolved = _name_from_arn(arn), True
        else:
            known, ptype, label = lookup[fmt]
            name = cells[0]
            if not name:
                result.warnings.append(f"{row}: Empty {label} name")
                result.skipped_rows += 1
                continue
            match = known.get(name.lower())
            if match is None:
                result.warnings.append(f"{row}: Could not find {label} '{name}' in QuickSight")
                arn, resolved = "", False
            else:
                arn, name, resolved = match.arn, match.name, True

        for j, f in enumerate(fields):
            value = cells[field_start + j]
            parsed.append(ParsedPermission(
                user_group_arn=arn,
                user_group_name=name,
                user_group_type=ptype.value,
                field=f,
                rls_values=value if value else WILDCARD,
                is_resolved=resolved,
            ))

    result.permissions = consolidate_wildcards(parsed, fields)
    if not result.permissions:
        result.errors.append("No valid permissions found in CSV")
    logger.debug(
        f"[csv-codec] Parsed {len(result.permissions)} permission(s) as {fmt.value} "
        f"with {len(result.warnings)} warning(s), {result.skipped_rows} row(s) skipped"
    )
    return result
