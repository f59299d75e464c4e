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
"""Data types used in describing table schemas.

Every column carries one of these types. Primitive types are singletons and serialize to
their plain string name (`long`, `decimal(10, 2)`, `fixed[16]`); nested types serialize to a
JSON object and carry the ids of their own children (struct fields, list elements, map keys
and values).

Example:
    >>> str(StructType(
    ...     NestedField(1, "id", LongType(), True),
    ...     NestedField(2, "data", StringType(), False)
    ... ))
    'struct<1: id: required long, 2: data: optional string>'
"""
from __future__ import annotations

import re
from functools import cached_property
from typing import (
    Any,
    ClassVar,
    Dict,
    Literal,
    Optional,
    Tuple,
    Type,
)

from pydantic import (
    Field,
    PrivateAttr,
    SerializeAsAny,
    ValidatorFunctionWrapHandler,
    model_serializer,
    model_validator,
)

from icemeta.typedef import IcemetaBaseModel, IcemetaRootModel
from icemeta.utils.singleton import Singleton

_DECIMAL = re.compile(r"^decimal\(\s*(\d+)\s*,\s*(\d+)\s*\)$")
_FIXED = re.compile(r"^fixed\[(\d+)\]$")


def _primitive_from_string(name: str) -> PrimitiveType:
    if name in _PRIMITIVES_BY_NAME:
        return _PRIMITIVES_BY_NAME[name]()
    if decimal := _DECIMAL.match(name):
        return DecimalType(int(decimal.group(1)), int(decimal.group(2)))
    if fixed := _FIXED.match(name):
        return FixedType(int(fixed.group(1)))
    raise ValueError(f"Unknown type: {name}")


class IcebergType(IcemetaBaseModel):
    """Base type for all column types."""

    @model_validator(mode="wrap")
    @classmethod
    def handle_primitive_type(cls, v: Any, handler: ValidatorFunctionWrapHandler) -> IcebergType:
        # Primitives arrive as plain strings, nested types as dicts tagged with "type"
        if isinstance(v, str):
            return _primitive_from_string(v)
        if isinstance(v, dict) and cls == IcebergType:
            tag = v.get("type")
            nested = _NESTED_BY_NAME.get(tag, NestedField) if isinstance(tag, str) else NestedField
            return nested(**v)
        return handler(v)

    @property
    def is_primitive(self) -> bool:
        return isinstance(self, PrimitiveType)


class PrimitiveType(IcemetaRootModel[str], IcebergType, Singleton):
    """Base class for all primitive types, equal instances are the same object."""

    root: Any = Field()

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    def __str__(self) -> str:
        return self.root


class FixedType(PrimitiveType):
    """A fixed length byte array.

    Example:
        >>> FixedType(8)
        FixedType(length=8)
        >>> FixedType(19) == FixedType(25)
        False
    """

    root: int = Field()

    def __init__(self, length: int) -> None:
        super().__init__(root=length)

    @model_serializer
    def ser_model(self) -> str:
        return str(self)

    def __len__(self) -> int:
        return self.root

    def __str__(self) -> str:
        return f"fixed[{self.root}]"

    def __repr__(self) -> str:
        return f"FixedType(length={self.root})"

    def __getnewargs__(self) -> Tuple[int]:
        """Singletons are keyed by their arguments, pickle has to pass them to __new__."""
        return (self.root,)


class DecimalType(PrimitiveType):
    """A fixed point decimal with a precision and a scale.

    A decimal can only be widened to a larger precision while keeping its scale.

    Example:
        >>> DecimalType(32, 3)
        DecimalType(precision=32, scale=3)
        >>> str(DecimalType(10, 2))
        'decimal(10, 2)'
    """

    root: Tuple[int, int]

    def __init__(self, precision: int, scale: int) -> None:
        super().__init__(root=(precision, scale))

    @model_serializer
    def ser_model(self) -> str:
        return str(self)

    @property
    def precision(self) -> int:
        return self.root[0]

    @property
    def scale(self) -> int:
        return self.root[1]

    def __repr__(self) -> str:
        return f"DecimalType(precision={self.precision}, scale={self.scale})"

    def __str__(self) -> str:
        return f"decimal({self.precision}, {self.scale})"

    def __hash__(self) -> int:
        return hash(self.root)

    def __getnewargs__(self) -> Tuple[int, int]:
        return self.root

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, DecimalType) and self.root == other.root


class NestedField(IcebergType):
    """A field of a struct, a map key, a map value, or a list element.

    The field id is the identity of the column: names, positions and docs may change
    over the life of a table, the id never does.

    Example:
        >>> str(NestedField(
        ...     field_id=2,
        ...     name='bar',
        ...     field_type=LongType(),
        ...     required=True,
        ...     doc="Just a long"
        ... ))
        '2: bar: required long (Just a long)'
    """

    field_id: int = Field(alias="id")
    name: str = Field()
    field_type: SerializeAsAny[IcebergType] = Field(alias="type")
    required: bool = Field(default=True)
    doc: Optional[str] = Field(default=None, repr=False)

    def __init__(
        self,
        field_id: Optional[int] = None,
        name: Optional[str] = None,
        field_type: Optional[IcebergType] = None,
        required: bool = True,
        doc: Optional[str] = None,
        **data: Any,
    ):
        # Positional arguments for Python callers, the aliases when parsing JSON
        data.setdefault("id", field_id)
        data.setdefault("name", name)
        data.setdefault("type", field_type)
        data.setdefault("required", required)
        data.setdefault("doc", doc)
        super().__init__(**data)

    def __str__(self) -> str:
        """Render as `id: name: required|optional type (doc)`."""
        requirement = "required" if self.required else "optional"
        doc = f" ({self.doc})" if self.doc else ""
        return f"{self.field_id}: {self.name}: {requirement} {self.field_type}{doc}"

    @property
    def optional(self) -> bool:
        return not self.required


class StructType(IcebergType):
    """An ordered tuple of named fields, also the top level of a schema."""

    type: Literal["struct"] = Field(default="struct")
    fields: Tuple[NestedField, ...] = Field(default_factory=tuple)
    _hash: int = PrivateAttr()

    def __init__(self, *fields: NestedField, **data: Any):
        if fields:
            data["fields"] = fields
        super().__init__(**data)
        self._hash = hash(self.fields)

    def field(self, field_id: int) -> Optional[NestedField]:
        return next((field for field in self.fields if field.field_id == field_id), None)

    def field_by_name(self, name: str, case_sensitive: bool = True) -> Optional[NestedField]:
        if case_sensitive:
            return next((field for field in self.fields if field.name == name), None)
        lowered = name.lower()
        return next((field for field in self.fields if field.name.lower() == lowered), None)

    def __str__(self) -> str:
        return "struct<" + ", ".join(str(field) for field in self.fields) + ">"

    def __repr__(self) -> str:
        return "StructType(fields=(" + ", ".join(repr(field) for field in self.fields) + ",))"

    def __len__(self) -> int:
        return len(self.fields)

    def __hash__(self) -> int:
        return self._hash

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, StructType) and self.fields == other.fields


class ListType(IcebergType):
    """A list with an element field carrying its own id.

    Example:
        >>> ListType(element_id=3, element_type=StringType(), element_required=True)
        ListType(type='list', element_id=3, element_type=StringType(), element_required=True)
    """

    type: Literal["list"] = Field(default="list")
    element_id: int = Field(alias="element-id")
    element_type: SerializeAsAny[IcebergType] = Field(alias="element")
    element_required: bool = Field(alias="element-required", default=True)
    _hash: int = PrivateAttr()

    def __init__(
        self,
        element_id: Optional[int] = None,
        element_type: Optional[IcebergType] = None,
        element_required: bool = True,
        **data: Any,
    ):
        data.setdefault("element-id", element_id)
        data.setdefault("element", element_type)
        data.setdefault("element-required", element_required)
        super().__init__(**data)
        self._hash = hash((self.element_id, self.element_type, self.element_required))

    @cached_property
    def element_field(self) -> NestedField:
        """The element viewed as a field named `element`."""
        return NestedField(self.element_id, "element", self.element_type, self.element_required)

    def __str__(self) -> str:
        return f"list<{self.element_type}>"

    def __hash__(self) -> int:
        return self._hash

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, ListType) and self.element_field == other.element_field


class MapType(IcebergType):
    """A map whose key and value each carry their own id. Keys are always required."""

    type: Literal["map"] = Field(default="map")
    key_id: int = Field(alias="key-id")
    key_type: SerializeAsAny[IcebergType] = Field(alias="key")
    value_id: int = Field(alias="value-id")
    value_type: SerializeAsAny[IcebergType] = Field(alias="value")
    value_required: bool = Field(alias="value-required", default=True)
    _hash: int = PrivateAttr()

    def __init__(
        self,
        key_id: Optional[int] = None,
        key_type: Optional[IcebergType] = None,
        value_id: Optional[int] = None,
        value_type: Optional[IcebergType] = None,
        value_required: bool = True,
        **data: Any,
    ):
        data.setdefault("key-id", key_id)
        data.setdefault("key", key_type)
        data.setdefault("value-id", value_id)
        data.setdefault("value", value_type)
        data.setdefault("value-required", value_required)
        super().__init__(**data)
        self._hash = hash((self.key_id, self.key_type, self.value_id, self.value_type, self.value_required))

    @cached_property
    def key_field(self) -> NestedField:
        return NestedField(self.key_id, "key", self.key_type, True)

    @cached_property
    def value_field(self) -> NestedField:
        return NestedField(self.value_id, "value", self.value_type, self.value_required)

    def __str__(self) -> str:
        return f"map<{self.key_type}, {self.value_type}>"

    def __hash__(self) -> int:
        return self._hash

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, MapType):
            return False
        return self.key_field == other.key_field and self.value_field == other.value_field


class BooleanType(PrimitiveType):
    root: Literal["boolean"] = Field(default="boolean")


class IntegerType(PrimitiveType):
    """A 32-bit signed integer, can be promoted to a long.

    Attributes:
        max (int): The maximum allowed value (`2147483647`).
        min (int): The minimum allowed value (`-2147483648`).
    """

    root: Literal["int"] = Field(default="int")

    max: ClassVar[int] = 2**31 - 1
    min: ClassVar[int] = -(2**31)


class LongType(PrimitiveType):
    """A 64-bit signed integer, also accepted as `bigint` when parsing.

    Example:
        >>> str(LongType())
        'long'
    """

    root: Literal["long"] = Field(default="long")

    max: ClassVar[int] = 2**63 - 1
    min: ClassVar[int] = -(2**63)


class FloatType(PrimitiveType):
    """A 32-bit IEEE 754 float, can be promoted to a double."""

    root: Literal["float"] = Field(default="float")


class DoubleType(PrimitiveType):
    root: Literal["double"] = Field(default="double")


class DateType(PrimitiveType):
    """A calendar date without a timezone or time, stored as days from 1970-01-01."""

    root: Literal["date"] = Field(default="date")


class TimeType(PrimitiveType):
    """A time of day in microseconds, without a date or timezone."""

    root: Literal["time"] = Field(default="time")


class TimestampType(PrimitiveType):
    """A timestamp without timezone, stored as microseconds from epoch."""

    root: Literal["timestamp"] = Field(default="timestamp")


class TimestamptzType(PrimitiveType):
    """A timestamp stored as UTC microseconds from epoch."""

    root: Literal["timestamptz"] = Field(default="timestamptz")


class StringType(PrimitiveType):
    root: Literal["string"] = Field(default="string")


class UUIDType(PrimitiveType):
    root: Literal["uuid"] = Field(default="uuid")


class BinaryType(PrimitiveType):
    root: Literal["binary"] = Field(default="binary")


_PRIMITIVES_BY_NAME: Dict[str, Type[PrimitiveType]] = {
    primitive.model_fields["root"].default: primitive
    for primitive in (
        BooleanType,
        IntegerType,
        LongType,
        FloatType,
        DoubleType,
        DateType,
        TimeType,
        TimestampType,
        TimestamptzType,
        StringType,
        UUIDType,
        BinaryType,
    )
}
_PRIMITIVES_BY_NAME["bigint"] = LongType

_NESTED_BY_NAME: Dict[str, Type[IcebergType]] = {
    "struct": StructType,
    "list": ListType,
    "map": MapType,
}
