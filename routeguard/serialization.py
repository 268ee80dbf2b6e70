"""
Dataclass <-> JSON conversion for persisted routeguard records.

State backends only store JSON objects. Records written to the decision
store or to an append-only log mix in ``SerializableMixin``:

    @dataclass
    class CircuitRecord(SerializableMixin):
        resource_id: str
        state: CircuitState = CircuitState.CLOSED

    CircuitRecord("agent:a").to_dict()   # {"resource_id": "agent:a", "state": "closed", ...}
    CircuitRecord.from_dict(row)          # keys the class does not know are dropped

Rows written by an older release may lack newer fields (the dataclass
default applies) or carry removed ones (ignored), so loading stays
forward and backward compatible.
"""

from __future__ import annotations

import functools
import logging
import types
import typing
from dataclasses import fields, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T", bound="SerializableMixin")

_NONE = type(None)


def serialize_value(value: Any) -> Any:
    """Convert ``value`` into something ``json.dumps`` accepts.

    Naive datetimes are taken to be UTC. Tuples become lists.
    """
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return (value if value.tzinfo else value.replace(tzinfo=timezone.utc)).isoformat()
    if isinstance(value, SerializableMixin):
        return value.to_dict()
    if isinstance(value, dict):
        return {key: serialize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(item) for item in value]
    return value


def _load_enum(value: Any, enum_type: Type[Enum]) -> Any:
    try:
        return enum_type(value)
    except ValueError:
        member = enum_type.__members__.get(str(value))
        if member is None:
            logger.debug(f"Unknown {enum_type.__name__} value {value!r} kept as-is")
            return value
        return member


def deserialize_value(value: Any, annotation: Any) -> Any:
    """Rebuild a value stored by :func:`serialize_value` for ``annotation``.

    ``Optional[X]`` loads as ``X``. ``list[X]``/``tuple[X, ...]`` load
    element-wise. Anything not understood is returned unchanged.
    """
    if value is None:
        return None

    origin = typing.get_origin(annotation)
    args = typing.get_args(annotation)
    if origin in (typing.Union, types.UnionType):
        members = [arg for arg in args if arg is not _NONE]
        return deserialize_value(value, members[0]) if len(members) == 1 else value
    if origin in (list, tuple):
        if not isinstance(value, list):
            return value
        item_type = args[0] if args else Any
        loaded = [deserialize_value(item, item_type) for item in value]
        return tuple(loaded) if origin is tuple else loaded
    if origin is not None or not isinstance(annotation, type):
        return value

    if issubclass(annotation, Enum):
        return _load_enum(value, annotation)
    if annotation is datetime and isinstance(value, str):
        return datetime.fromisoformat(value)
    if issubclass(annotation, SerializableMixin) and isinstance(value, dict):
        return annotation.from_dict(value)
    return value


@functools.lru_cache(maxsize=None)
def _field_types(cls: type) -> Dict[str, Any]:
    """Resolved annotations of the init fields of ``cls``."""
    try:
        hints = typing.get_type_hints(cls)
    except (NameError, TypeError) as e:
        logger.debug(f"Unresolvable annotations on {cls.__name__}: {e}")
        hints = {}
    return {f.name: hints.get(f.name, Any) for f in fields(cls) if f.init}


class SerializableMixin:
    """JSON round-tripping for dataclass records.

    Fields whose name starts with an underscore are not persisted.
    """

    def to_dict(self) -> Dict[str, Any]:
        if not is_dataclass(self):
            raise TypeError(f"{type(self).__name__} must be a dataclass")
        return {
            f.name: serialize_value(getattr(self, f.name))
            for f in fields(self)
            if not f.name.startswith("_")
        }

    @classmethod
    def from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
        if not is_dataclass(cls):
            raise TypeError(f"{cls.__name__} must be a dataclass")
        kwargs = {
            name: deserialize_value(data[name], annotation)
            for name, annotation in _field_types(cls).items()
            if name in data
        }
        return cls(**kwargs)


__all__ = [
    "SerializableMixin",
    "serialize_value",
    "deserialize_value",
]
