from __future__ import annotations

import json
from typing import Dict, List, Optional, Union

from rlsmanager.errors import ValidationError

# The BI RLS engine cannot filter on these column types
DATE_TYPES = frozenset({"DATE", "DATETIME", "TIMESTAMP"})


def is_date_type(field_type: Optional[str]) -> bool:
    return bool(field_type) and field_type.upper() in DATE_TYPES


def parse_field_types(raw: Union[None, str, Dict[str, str]]) -> Dict[str, str]:
    """
    Accept a field-type map either as a dict or as its JSON text (as stored by the sync routine).

    Raises ValidationError when the text is not a JSON object.
    """
    if not raw:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Field types are not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError("Field types must be a JSON object of field -> type")
    return {str(k): str(v) for k, v in data.items()}


def non_date_fields(field_types: Dict[str, str]) -> List[str]:
    return [f for f, t in field_types.items() if not is_date_type(t)]
