"""Condition predicates evaluated against a live contact snapshot."""

from typing import Any, Callable, Dict

from errors import ConditionError
from models import ConditionConfig, ConditionOperator, ContactSnapshot

_MISSING = object()


def resolve_field(contact: ContactSnapshot, path: str) -> Any:
    """Look up a dotted path ("company", "fields.company", "email").

    Missing keys resolve to None. Traversing into a non-mapping value raises
    ConditionError, since no contact could ever satisfy such a path.
    """
    current: Any = contact.as_document()
    for part in path.split("."):
        if current is None:
            return None
        if not isinstance(current, dict):
            raise ConditionError(f"Field path {path!r} does not resolve on contact {contact.id}")
        current = current.get(part, _MISSING)
        if current is _MISSING:
            return None
    return current


def _is_set(value: Any) -> bool:
    return value is not None and value != "" and value != [] and value != {}


def _as_number(value: Any, path: str | None) -> float:
    if isinstance(value, bool):
        raise ConditionError(f"Field {path!r} holds a boolean, not a number")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConditionError(f"Field {path!r} value {value!r} is not numeric") from exc


def _contains(field_value: Any, expected: Any, path: str | None) -> bool:
    if field_value is None:
        return False
    if isinstance(field_value, (list, tuple, set)):
        return expected in field_value
    if isinstance(field_value, str):
        return str(expected) in field_value
    raise ConditionError(f"Field {path!r} value {field_value!r} does not support contains")


def _compare(field_value: Any, expected: Any, path: str | None, greater: bool) -> bool:
    if field_value is None:
        return False
    left = _as_number(field_value, path)
    right = _as_number(expected, "value")
    return left > right if greater else left < right


_Predicate = Callable[[ContactSnapshot, Any, Any, str | None], bool]

_PREDICATES: Dict[ConditionOperator, _Predicate] = {
    ConditionOperator.EQUALS: lambda c, f, v, p: f == v,
    ConditionOperator.NOT_EQUALS: lambda c, f, v, p: f != v,
    ConditionOperator.CONTAINS: lambda c, f, v, p: _contains(f, v, p),
    ConditionOperator.NOT_CONTAINS: lambda c, f, v, p: not _contains(f, v, p),
    ConditionOperator.GREATER_THAN: lambda c, f, v, p: _compare(f, v, p, greater=True),
    ConditionOperator.LESS_THAN: lambda c, f, v, p: _compare(f, v, p, greater=False),
    ConditionOperator.IS_SET: lambda c, f, v, p: _is_set(f),
    ConditionOperator.IS_NOT_SET: lambda c, f, v, p: not _is_set(f),
    ConditionOperator.HAS_TAG: lambda c, f, v, p: str(v) in c.tags,
    ConditionOperator.NOT_HAS_TAG: lambda c, f, v, p: str(v) not in c.tags,
    ConditionOperator.IN_SEGMENT: lambda c, f, v, p: str(v) in c.segment_ids,
    ConditionOperator.NOT_IN_SEGMENT: lambda c, f, v, p: str(v) not in c.segment_ids,
}


def evaluate_condition(config: ConditionConfig, contact: ContactSnapshot) -> bool:
    """Evaluate a condition step's predicate. Pure: no I/O, no mutation.

    Raises ConditionError when the field cannot be compared with the operator.
    """
    field_value = resolve_field(contact, config.field) if config.field else None
    return _PREDICATES[config.operator](contact, field_value, config.value, config.field)
