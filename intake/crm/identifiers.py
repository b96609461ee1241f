"""Identifier extraction for CRM create responses.

The CRM names its primary key differently per object type (``id`` on most,
``customer_id`` / ``customers_id`` on some customer payloads, ``task_id`` on
calendar tasks ...).  Each object type lists its candidate keys in priority
order; the first key holding a string or number wins.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Optional, Union

from intake.errors import ContractViolation

Identifier = Union[str, int]


class CRMObject(Enum):
    CUSTOMER = ("customer", "customers", ("id", "customer_id", "customers_id"))
    ESTIMATE = ("estimate", "estimates", ("id", "estimate_id", "estimates_id"))
    CALENDAR_TASK = (
        "calendar task",
        "calendar-tasks",
        ("id", "task_id", "calendar_task_id"),
    )

    def __init__(self, label: str, endpoint: str, id_keys: tuple[str, ...]) -> None:
        self.label = label
        self.endpoint = endpoint
        self.id_keys = id_keys


def extract_identifier(record: Any, obj: CRMObject) -> Optional[Identifier]:
    """Return the first usable identifier in ``record``, or None."""
    if not isinstance(record, Mapping):
        return None
    for key in obj.id_keys:
        value = record.get(key)
        # bool is an int subclass; a flag is never an id
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str) and value.strip():
            return value
    return None


def require_identifier(record: Any, obj: CRMObject) -> Identifier:
    """Like extract_identifier, but a missing id breaks the integration contract."""
    identifier = extract_identifier(record, obj)
    if identifier is None:
        raise ContractViolation(
            f"CRM {obj.label} response did not include an identifier "
            f"(looked for {', '.join(obj.id_keys)})"
        )
    return identifier
