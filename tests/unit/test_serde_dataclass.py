"""Unit tests for the payload codec: tagged envelopes and class resolution."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any

import pytest
from pydantic import BaseModel

from carriage.core.codec.serde import (
    SerializationError,
    clear_serde_caches,
    dumps_json,
    loads_json,
    rehydrate_value,
    to_jsonable,
)

pytestmark = pytest.mark.unit


class Address(BaseModel):
    street: str
    city: str


@dataclass
class Invoice:
    number: str
    issued_at: dt.datetime
    billing: Address
    tags: list[str] = field(default_factory=list)


@dataclass
class Counter:
    start: int
    seen: int = field(default=0, init=False)


class TestEnvelopes:
    def test_dataclass_envelope(self) -> None:
        invoice = Invoice('INV-1', dt.datetime(2024, 1, 2, 3, 4), Address(street='1 Main', city='Oslo'))
        data = to_jsonable(invoice)
        assert isinstance(data, dict)
        assert data['__dataclass__'] is True
        assert data['qualname'] == 'Invoice'
        fields = data['data']
        assert isinstance(fields, dict)
        assert fields['issued_at'] == {'__datetime__': True, 'value': '2024-01-02T03:04:00'}
        billing = fields['billing']
        assert isinstance(billing, dict)
        assert billing['__pydantic_model__'] is True

    def test_dataclass_restored_with_nested_values(self) -> None:
        invoice = Invoice('INV-1', dt.datetime(2024, 1, 2), Address(street='1 Main', city='Oslo'), ['x'])
        restored = rehydrate_value(loads_json(dumps_json(invoice)))
        assert restored == invoice

    def test_non_init_fields_restored(self) -> None:
        counter = Counter(5)
        counter.seen = 3
        restored = rehydrate_value(to_jsonable(counter))
        assert restored.start == 5
        assert restored.seen == 3

    def test_removed_fields_ignored(self) -> None:
        payload: Any = to_jsonable(Counter(1))
        payload['data']['gone'] = 'old'
        assert rehydrate_value(payload).start == 1

    def test_dates_and_times(self) -> None:
        values = [dt.date(2024, 5, 1), dt.time(12, 30)]
        assert rehydrate_value(to_jsonable(values)) == values


class TestRefusals:
    def test_local_class_refused(self) -> None:
        @dataclass
        class Local:
            x: int

        with pytest.raises(SerializationError, match='inside a function'):
            to_jsonable(Local(1))

    def test_main_module_refused(self) -> None:
        @dataclass
        class FromMain:
            x: int

        FromMain.__module__ = '__main__'
        FromMain.__qualname__ = 'FromMain'
        with pytest.raises(SerializationError, match="'__main__'"):
            to_jsonable(FromMain(1))

    def test_unsupported_type(self) -> None:
        with pytest.raises(SerializationError, match='bytes'):
            to_jsonable(b'raw')

    def test_nan_rejected(self) -> None:
        with pytest.raises(ValueError):
            dumps_json(float('nan'))

    def test_unknown_module(self) -> None:
        clear_serde_caches()
        with pytest.raises(SerializationError, match='Could not import'):
            rehydrate_value(
                {'__dataclass__': True, 'module': 'no.such.module', 'qualname': 'X', 'data': {}}
            )

    def test_not_a_dataclass(self) -> None:
        with pytest.raises(SerializationError, match='is not a dataclass'):
            rehydrate_value(
                {'__dataclass__': True, 'module': __name__, 'qualname': 'Address', 'data': {}}
            )

    def test_model_validation_failure(self) -> None:
        with pytest.raises(SerializationError, match='Failed to rehydrate'):
            rehydrate_value(
                {
                    '__pydantic_model__': True,
                    'module': __name__,
                    'qualname': 'Address',
                    'data': {'street': 'only'},
                }
            )


class TestJsonHelpers:
    def test_dumps_is_compact(self) -> None:
        assert dumps_json({'a': [1, 2]}) == '{"a":[1,2]}'

    def test_loads_empty(self) -> None:
        assert loads_json('') is None
        assert loads_json(None) is None

    def test_mapping_keys_become_strings(self) -> None:
        assert to_jsonable({1: 'one'}) == {'1': 'one'}
