#  Licensed to the Apache Software Foundation (ASF) under one
#  or more contributor license agreements.  See the NOTICE file
#  distributed with this work for additional information
#  regarding copyright ownership.  The ASF licenses this file
#  to you under the Apache License, Version 2.0 (the
#  "License"); you may not use this file except in compliance
#  with the License.  You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing,
#  software distributed under the License is distributed on an
#  "AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY
#  KIND, either express or implied.  See the License for the
#  specific language governing permissions and limitations
#  under the License.
# pylint: disable=W0123
from typing import Type

import pytest

from icemeta.types import (
    BinaryType,
    BooleanType,
    DateType,
    DecimalType,
    DoubleType,
    FixedType,
    FloatType,
    IcebergType,
    IntegerType,
    ListType,
    LongType,
    MapType,
    NestedField,
    PrimitiveType,
    StringType,
    StructType,
    TimestampType,
    TimestamptzType,
    TimeType,
    UUIDType,
)

non_parameterized_types = [
    (1, BooleanType),
    (2, IntegerType),
    (3, LongType),
    (4, FloatType),
    (5, DoubleType),
    (6, DateType),
    (7, TimeType),
    (8, TimestampType),
    (9, TimestamptzType),
    (10, StringType),
    (11, UUIDType),
    (12, BinaryType),
]


def _parse_type(type_string: str) -> IcebergType:
    return NestedField.model_validate({"id": 1, "name": "col", "type": type_string, "required": False}).field_type


@pytest.mark.parametrize("input_index, input_type", non_parameterized_types)
def test_repr_primitive_types(input_index: int, input_type: Type[PrimitiveType]) -> None:
    assert isinstance(eval(repr(input_type())), input_type)


@pytest.mark.parametrize("input_index, input_type", non_parameterized_types)
def test_primitive_types_are_singletons(input_index: int, input_type: Type[PrimitiveType]) -> None:
    assert input_type() is input_type()


@pytest.mark.parametrize(
    "input_type, result",
    [
        (BooleanType(), True),
        (LongType(), True),
        (DecimalType(9, 2), True),
        (FixedType(16), True),
        (StructType(), False),
        (ListType(element_id=1, element_type=StringType()), False),
        (MapType(key_id=1, key_type=StringType(), value_id=2, value_type=IntegerType()), False),
    ],
)
def test_is_primitive(input_type: IcebergType, result: bool) -> None:
    assert input_type.is_primitive == result


@pytest.mark.parametrize(
    "type_string, expected",
    [
        ("boolean", BooleanType()),
        ("int", IntegerType()),
        ("long", LongType()),
        ("bigint", LongType()),
        ("float", FloatType()),
        ("double", DoubleType()),
        ("date", DateType()),
        ("time", TimeType()),
        ("timestamp", TimestampType()),
        ("timestamptz", TimestamptzType()),
        ("string", StringType()),
        ("uuid", UUIDType()),
        ("binary", BinaryType()),
        ("fixed[22]", FixedType(22)),
        ("decimal(19, 25)", DecimalType(19, 25)),
        ("decimal(10,2)", DecimalType(10, 2)),
    ],
)
def test_parse_type_string(type_string: str, expected: IcebergType) -> None:
    assert _parse_type(type_string) == expected


def test_bigint_is_written_as_long() -> None:
    field = NestedField(field_id=1, name="id", field_type=_parse_type("bigint"), required=True)
    assert field.model_dump_json() == '{"id":1,"name":"id","type":"long","required":true}'


def test_parse_unknown_type() -> None:
    with pytest.raises(ValueError) as exc_info:
        _parse_type("varchar")
    assert "Unknown type: varchar" in str(exc_info.value)


def test_decimal_type() -> None:
    type_var = DecimalType(precision=9, scale=2)
    assert type_var.precision == 9
    assert type_var.scale == 2
    assert str(type_var) == "decimal(9, 2)"
    assert repr(type_var) == "DecimalType(precision=9, scale=2)"
    assert type_var == DecimalType(9, 2)
    assert type_var != DecimalType(9, 3)


def test_fixed_type() -> None:
    type_var = FixedType(length=5)
    assert len(type_var) == 5
    assert str(type_var) == "fixed[5]"
    assert repr(type_var) == "FixedType(length=5)"
    assert type_var == FixedType(5)
    assert type_var != FixedType(6)


def test_struct_type() -> None:
    type_var = StructType(
        NestedField(1, "optional_field", IntegerType(), required=True),
        NestedField(2, "required_field", FixedType(5), required=False),
        NestedField(
            3,
            "required_field",
            StructType(
                NestedField(4, "optional_field", DecimalType(8, 2), required=True),
                NestedField(5, "required_field", LongType(), required=False),
            ),
            required=False,
        ),
    )
    assert len(type_var.fields) == 3
    assert str(type_var) == str(eval(repr(type_var)))
    assert type_var == eval(repr(type_var))
    assert type_var != StructType(NestedField(1, "optional_field", IntegerType(), required=True))
    assert type_var.field(2) == NestedField(2, "required_field", FixedType(5), required=False)
    assert type_var.field(99) is None
    assert type_var.field_by_name("OPTIONAL_FIELD", case_sensitive=False) == type_var.fields[0]
    assert type_var.field_by_name("OPTIONAL_FIELD") is None


def test_list_type() -> None:
    type_var = ListType(
        element_id=1,
        element_type=StructType(
            NestedField(2, "optional_field", DecimalType(8, 2), required=True),
            NestedField(3, "required_field", LongType(), required=False),
        ),
        element_required=False,
    )
    assert isinstance(type_var.element_field.field_type, StructType)
    assert type_var.element_field.field_id == 1
    assert type_var.element_field.name == "element"
    assert not type_var.element_field.required
    assert type_var != ListType(element_id=1, element_type=StringType(), element_required=False)


def test_map_type() -> None:
    type_var = MapType(key_id=1, key_type=DoubleType(), value_id=2, value_type=UUIDType(), value_required=False)
    assert isinstance(type_var.key_field.field_type, DoubleType)
    assert type_var.key_field.field_id == 1
    assert type_var.key_field.required
    assert isinstance(type_var.value_field.field_type, UUIDType)
    assert type_var.value_field.field_id == 2
    assert not type_var.value_field.required
    assert type_var != MapType(key_id=1, key_type=LongType(), value_id=2, value_type=UUIDType(), value_required=False)


def test_nested_field() -> None:
    field_var = NestedField(1, "optional_field1", StringType(), required=False, doc="the first field")
    assert field_var.optional
    assert field_var.field_id == 1
    assert str(field_var) == "1: optional_field1: optional string (the first field)"


def test_deserialize_nested_types() -> None:
    payload = """{
        "id": 4,
        "name": "qux",
        "required": true,
        "type": {
            "type": "map",
            "key-id": 5,
            "key": "string",
            "value-id": 6,
            "value": {"type": "list", "element-id": 7, "element": "bigint", "element-required": false},
            "value-required": true
        }
    }"""
    field = NestedField.model_validate_json(payload)
    assert field == NestedField(
        field_id=4,
        name="qux",
        field_type=MapType(
            key_id=5,
            key_type=StringType(),
            value_id=6,
            value_type=ListType(element_id=7, element_type=LongType(), element_required=False),
            value_required=True,
        ),
        required=True,
    )
