# carriage/core/codec/serde.py
"""JSON codec for context payloads.

Values that JSON cannot carry natively are wrapped in tagged envelopes so
they survive a trip through the queue:

- ``{'__datetime__': True, 'value': iso}`` (also ``__date__``, ``__time__``)
- ``{'__pydantic_model__': True, 'module', 'qualname', 'data'}``
- ``{'__dataclass__': True, 'module', 'qualname', 'data'}``

Models and dataclasses must be importable by the worker, so classes defined
in ``__main__`` or inside functions are refused at serialization time.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import json
from importlib import import_module
from typing import Any, Dict, List, Mapping, Optional, Sequence, Type, Union, cast

from pydantic import BaseModel

from carriage.core.logging import get_logger

logger = get_logger('serde')


Json = Union[None, bool, int, float, str, List['Json'], Dict[str, 'Json']]
"""
Union type for JSON-serializable values.
"""


class SerializationError(Exception):
    """
    Raised when a value cannot be converted to or restored from JSON.
    """

    pass


# Resolved classes keyed by "module:qualname".
_MODEL_CACHE: Dict[str, Type[BaseModel]] = {}
_DATACLASS_CACHE: Dict[str, type] = {}


def clear_serde_caches() -> None:
    """Clear module-level rehydration caches."""
    _MODEL_CACHE.clear()
    _DATACLASS_CACHE.clear()


def _qualified_class_path(cls: type) -> tuple[str, str]:
    """
    Module and qualname of ``cls``, refusing classes a worker cannot import.
    """
    module_name = cls.__module__
    qualname = cls.__qualname__

    if module_name in ('__main__', '__mp_main__'):
        raise SerializationError(
            f"Cannot serialize '{qualname}' because it is defined in '__main__'. "
            'Move the class to an importable module so workers can load it.'
        )

    if '<locals>' in qualname:
        raise SerializationError(
            f"Cannot serialize '{qualname}' because it is defined inside a function. "
            'Move the class to module level so workers can load it.'
        )

    return module_name, qualname


def _envelope(tag: str, cls: type, data: Json) -> Dict[str, Json]:
    module, qualname = _qualified_class_path(cls)
    return {tag: True, 'module': module, 'qualname': qualname, 'data': data}


def to_jsonable(value: Any) -> Json:
    """
    Convert ``value`` into plain JSON data, tagging non-native types.

    Args:
        value: The value to convert.

    Returns:
        A JSON-serializable value. For more information, see `Json` Union type.

    Raises:
        SerializationError: If a value of an unsupported type is found.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value

    # datetime is a subclass of date: check it first.
    if isinstance(value, dt.datetime):
        return {'__datetime__': True, 'value': value.isoformat()}
    if isinstance(value, dt.date):
        return {'__date__': True, 'value': value.isoformat()}
    if isinstance(value, dt.time):
        return {'__time__': True, 'value': value.isoformat()}

    if isinstance(value, BaseModel):
        return _envelope('__pydantic_model__', type(value), value.model_dump(mode='json'))

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        # Field by field so nested models keep their envelopes.
        field_data: Dict[str, Json] = {
            f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)
        }
        return _envelope('__dataclass__', type(value), field_data)

    if isinstance(value, Mapping):
        mapping = cast(Mapping[object, object], value)
        return {str(key): to_jsonable(item) for key, item in mapping.items()}

    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [to_jsonable(item) for item in cast(Sequence[object], value)]

    if isinstance(value, (set, frozenset)):
        return [to_jsonable(item) for item in cast(Any, value)]

    raise SerializationError(f'Cannot serialize value of type {type(value).__name__}')


def dumps_json(value: Any) -> str:
    """
    Serialize a value to a compact JSON string.
    """
    return json.dumps(
        to_jsonable(value),
        ensure_ascii=False,
        separators=(',', ':'),
        allow_nan=False,
    )


def loads_json(s: Optional[str]) -> Json:
    """
    Parse a JSON string; an empty or missing string yields None.
    """
    return json.loads(s) if s else None


def _resolve_class(module_name: str, qualname: str) -> Any:
    try:
        module = import_module(module_name)
    except ImportError as e:
        raise SerializationError(
            f"Could not import module '{module_name}'. "
            f'Was it moved without leaving a re-export? Error: {e}'
        )

    resolved: Any = module
    for part in qualname.split('.'):
        resolved = getattr(resolved, part)
    return resolved


def _rehydrate_model(value: Dict[str, Json]) -> BaseModel:
    cache_key = f"{value.get('module')}:{value.get('qualname')}"
    try:
        cls = _MODEL_CACHE.get(cache_key)
        if cls is None:
            resolved = _resolve_class(cast(str, value['module']), cast(str, value['qualname']))
            if not (isinstance(resolved, type) and issubclass(resolved, BaseModel)):
                raise SerializationError(f'{cache_key} is not a BaseModel')
            cls = resolved
            _MODEL_CACHE[cache_key] = cls
        return cls.model_validate(value.get('data'))
    except SerializationError:
        raise
    except Exception as e:
        logger.error(f'Failed to rehydrate pydantic model {cache_key}: {type(e).__name__}: {e}')
        raise SerializationError(f'Failed to rehydrate {cache_key}: {e}')


def _rehydrate_dataclass(value: Dict[str, Json]) -> Any:
    cache_key = f"{value.get('module')}:{value.get('qualname')}"
    data = value.get('data')
    if not isinstance(data, dict):
        raise SerializationError(f'Dataclass data must be a dict, got {type(data).__name__}')

    try:
        dc_cls = _DATACLASS_CACHE.get(cache_key)
        if dc_cls is None:
            resolved = _resolve_class(cast(str, value['module']), cast(str, value['qualname']))
            if not (isinstance(resolved, type) and dataclasses.is_dataclass(resolved)):
                raise SerializationError(f'{cache_key} is not a dataclass')
            dc_cls = resolved
            _DATACLASS_CACHE[cache_key] = dc_cls

        fields = {f.name: f for f in dataclasses.fields(dc_cls)}
        init_kwargs: Dict[str, Any] = {}
        late: Dict[str, Any] = {}
        for name, raw in data.items():
            field_def = fields.get(name)
            if field_def is None:
                continue  # field removed since the payload was written
            target = init_kwargs if field_def.init else late
            target[name] = rehydrate_value(raw)

        instance = dc_cls(**init_kwargs)
        for name, field_value in late.items():
            object.__setattr__(instance, name, field_value)
        return instance
    except SerializationError:
        raise
    except Exception as e:
        logger.error(f'Failed to rehydrate dataclass {cache_key}: {type(e).__name__}: {e}')
        raise SerializationError(f'Failed to rehydrate dataclass {cache_key}: {e}')


def rehydrate_value(value: Json) -> Any:
    """
    Recursively restore tagged envelopes produced by ``to_jsonable``.

    Raises:
        SerializationError: If a model or dataclass cannot be restored.
    """
    if isinstance(value, dict):
        if value.get('__pydantic_model__'):
            return _rehydrate_model(value)
        if value.get('__dataclass__'):
            return _rehydrate_dataclass(value)
        if value.get('__datetime__'):
            return dt.datetime.fromisoformat(cast(str, value['value']))
        if value.get('__date__'):
            return dt.date.fromisoformat(cast(str, value['value']))
        if value.get('__time__'):
            return dt.time.fromisoformat(cast(str, value['value']))
        return {k: rehydrate_value(v) for k, v in value.items()}

    if isinstance(value, list):
        return [rehydrate_value(item) for item in value]

    return value
