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
"""Partition and sort transforms.

The set of transforms is closed: identity, bucket[N], truncate[W], year, month, day, hour
and void. Each one serializes to its string form and is parsed back with `parse_transform`,
any other string is rejected.
"""
import base64
import re
import struct
from abc import ABC, abstractmethod
from enum import IntEnum
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    Optional,
    Type,
    TypeVar,
)
from typing import Literal as LiteralType
from uuid import UUID

import mmh3
from pydantic import Field

from icemeta.exceptions import ValidationError
from icemeta.typedef import IcemetaRootModel
from icemeta.types import (
    BinaryType,
    DateType,
    DecimalType,
    FixedType,
    IcebergType,
    IntegerType,
    LongType,
    StringType,
    TimestampType,
    TimestamptzType,
    TimeType,
    UUIDType,
)
from icemeta.utils import datetime
from icemeta.utils.decimal import decimal_to_bytes, truncate_decimal
from icemeta.utils.singleton import Singleton

S = TypeVar("S")
T = TypeVar("T")

_WITH_ARGUMENT = re.compile(r"^(bucket|truncate)\[(\d+)\]$")


def parse_transform(v: Any) -> Any:
    """Turn the string form of a transform into an instance, anything else is passed through."""
    if not isinstance(v, str):
        return v
    if v in _SIMPLE_TRANSFORMS:
        return _SIMPLE_TRANSFORMS[v]()
    if matched := _WITH_ARGUMENT.match(v):
        kind, argument = matched.groups()
        return BucketTransform(int(argument)) if kind == "bucket" else TruncateTransform(int(argument))
    raise ValidationError(f"Unknown transform: {v}")


def _argument_of(root: str) -> int:
    matched = _WITH_ARGUMENT.match(root)
    if matched is None:
        raise ValidationError(f"Transform has no argument: {root}")
    return int(matched.group(2))


class Transform(IcemetaRootModel[str], ABC, Generic[S, T]):
    """Transform base class for concrete transforms.

    A transform maps a source column value to a partition (or sort) value. This class is
    not used directly, use one of the concrete subclasses or `parse_transform`.
    """

    root: str = Field()

    @abstractmethod
    def transform(self, source: IcebergType) -> Callable[[Optional[S]], Optional[T]]:
        """Return a function applying this transform to values of the source type."""

    @abstractmethod
    def can_transform(self, source: IcebergType) -> bool:
        ...

    @abstractmethod
    def result_type(self, source: IcebergType) -> IcebergType:
        ...

    @property
    def preserves_order(self) -> bool:
        return False

    def satisfies_order_of(self, other: Any) -> bool:
        return self == other

    def to_human_string(self, _: IcebergType, value: Optional[S]) -> str:
        return "null" if value is None else str(value)

    @property
    def dedup_name(self) -> str:
        return self.root

    @property
    def name_prefix(self) -> str:
        """Prefix of the default partition field name, `bucket_16` for bucket[16]."""
        return self.root.replace("[", "_").replace("]", "")

    def __str__(self) -> str:
        return self.root

    def __eq__(self, other: Any) -> bool:
        """Transforms are equal when their string forms are."""
        return isinstance(other, Transform) and self.root == other.root

    def __hash__(self) -> int:
        return hash(self.root)


def _null_safe(func: Callable[[Any], Any]) -> Callable[[Any], Any]:
    return lambda v: None if v is None else func(v)


def _hash_long(v: int) -> int:
    return mmh3.hash(struct.pack("<q", v))


def _hash_uuid(v: UUID) -> int:
    return mmh3.hash(v.bytes)


_BUCKET_HASHES: Dict[Type[IcebergType], Callable[[Any], int]] = {
    IntegerType: _hash_long,
    LongType: _hash_long,
    DateType: _hash_long,
    TimeType: _hash_long,
    TimestampType: _hash_long,
    TimestamptzType: _hash_long,
    DecimalType: lambda v: mmh3.hash(decimal_to_bytes(v)),
    StringType: mmh3.hash,
    FixedType: mmh3.hash,
    BinaryType: mmh3.hash,
    UUIDType: _hash_uuid,
}


class BucketTransform(Transform[S, int]):
    """Hash the source value with 32-bit murmur3 and take it modulo the number of buckets.

    Args:
      num_buckets (int): The number of buckets.
    """

    root: str = Field()

    def __init__(self, num_buckets: int, **data: Any) -> None:
        if num_buckets <= 0:
            raise ValidationError(f"Number of buckets must be positive: {num_buckets}")
        super().__init__(f"bucket[{num_buckets}]", **data)

    @property
    def num_buckets(self) -> int:
        return _argument_of(self.root)

    def result_type(self, source: IcebergType) -> IcebergType:
        return IntegerType()

    def can_transform(self, source: IcebergType) -> bool:
        return type(source) in _BUCKET_HASHES

    def transform(self, source: IcebergType, bucket: bool = True) -> Callable[[Optional[Any]], Optional[int]]:
        """Return the bucket function, or the raw hash function when `bucket` is False."""
        hash_func = _BUCKET_HASHES.get(type(source))
        if hash_func is None:
            raise ValueError(f"Unknown type {source}")
        if not bucket:
            return hash_func
        num_buckets = self.num_buckets
        return _null_safe(lambda v: (hash_func(v) & IntegerType.max) % num_buckets)

    def __repr__(self) -> str:
        return f"BucketTransform(num_buckets={self.num_buckets})"


class TimeResolution(IntEnum):
    HOUR = 0
    DAY = 1
    MONTH = 2
    YEAR = 3


class TimeTransform(Transform[S, int], Singleton):
    """Base of the transforms that cut a date or timestamp down to a time unit since the epoch.

    Timestamps are always accepted, dates only when the unit is a day or coarser.
    """

    @property
    @abstractmethod
    def granularity(self) -> TimeResolution:
        ...

    @abstractmethod
    def _from_micros(self, micros: int) -> int:
        ...

    @abstractmethod
    def _to_human(self, ordinal: int) -> str:
        ...

    def _from_days(self, days: int) -> int:
        raise ValueError(f"Cannot apply {self} transform to a date")

    def transform(self, source: IcebergType) -> Callable[[Optional[S]], Optional[int]]:
        if not self.can_transform(source):
            raise ValueError(f"Cannot apply {self} transform for type: {source}")
        return _null_safe(self._from_days if isinstance(source, DateType) else self._from_micros)

    def can_transform(self, source: IcebergType) -> bool:
        if isinstance(source, DateType):
            return self.granularity >= TimeResolution.DAY
        return isinstance(source, (TimestampType, TimestamptzType))

    def result_type(self, source: IcebergType) -> IcebergType:
        return IntegerType()

    def satisfies_order_of(self, other: Transform[S, T]) -> bool:
        return isinstance(other, TimeTransform) and self.granularity <= other.granularity

    def to_human_string(self, _: IcebergType, value: Optional[S]) -> str:
        return self._to_human(value) if isinstance(value, int) else "null"

    @property
    def dedup_name(self) -> str:
        return "time"

    @property
    def preserves_order(self) -> bool:
        return True


class YearTransform(TimeTransform[S]):
    """Years since 1970.

    Example:
        >>> YearTransform().transform(TimestampType())(1512151975038194)
        47
    """

    root: LiteralType["year"] = Field(default="year")  # noqa: F821

    @property
    def granularity(self) -> TimeResolution:
        return TimeResolution.YEAR

    def _from_days(self, days: int) -> int:
        return datetime.days_to_years(days)

    def _from_micros(self, micros: int) -> int:
        return datetime.micros_to_years(micros)

    def _to_human(self, ordinal: int) -> str:
        return datetime.to_human_year(ordinal)

    def __repr__(self) -> str:
        return "YearTransform()"


class MonthTransform(TimeTransform[S]):
    """Months since 1970-01.

    Example:
        >>> MonthTransform().transform(DateType())(17501)
        575
    """

    root: LiteralType["month"] = Field(default="month")  # noqa: F821

    @property
    def granularity(self) -> TimeResolution:
        return TimeResolution.MONTH

    def _from_days(self, days: int) -> int:
        return datetime.days_to_months(days)

    def _from_micros(self, micros: int) -> int:
        return datetime.micros_to_months(micros)

    def _to_human(self, ordinal: int) -> str:
        return datetime.to_human_month(ordinal)

    def __repr__(self) -> str:
        return "MonthTransform()"


class DayTransform(TimeTransform[S]):
    """Days since 1970-01-01, the result is a date."""

    root: LiteralType["day"] = Field(default="day")  # noqa: F821

    @property
    def granularity(self) -> TimeResolution:
        return TimeResolution.DAY

    def _from_days(self, days: int) -> int:
        return days

    def _from_micros(self, micros: int) -> int:
        return datetime.micros_to_days(micros)

    def _to_human(self, ordinal: int) -> str:
        return datetime.to_human_day(ordinal)

    def result_type(self, source: IcebergType) -> IcebergType:
        return DateType()

    def __repr__(self) -> str:
        return "DayTransform()"


class HourTransform(TimeTransform[S]):
    """Hours since 1970-01-01 00:00, timestamps only.

    Example:
        >>> HourTransform().transform(TimestampType())(1512151975038194)
        420042
    """

    root: LiteralType["hour"] = Field(default="hour")  # noqa: F821

    @property
    def granularity(self) -> TimeResolution:
        return TimeResolution.HOUR

    def _from_micros(self, micros: int) -> int:
        return datetime.micros_to_hours(micros)

    def _to_human(self, ordinal: int) -> str:
        return datetime.to_human_hour(ordinal)

    def __repr__(self) -> str:
        return "HourTransform()"


def _human_string(value: Any, source_type: IcebergType) -> str:
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ISO-8859-1")
    if isinstance(value, int) and isinstance(source_type, DateType):
        return datetime.to_human_day(value)
    return str(value)


class IdentityTransform(Transform[S, S]):
    """Pass the source value through unchanged.

    Example:
        >>> IdentityTransform().transform(StringType())('hello-world')
        'hello-world'
    """

    root: LiteralType["identity"] = Field(default="identity")  # noqa: F821

    def transform(self, source: IcebergType) -> Callable[[Optional[S]], Optional[S]]:
        return lambda v: v

    def can_transform(self, source: IcebergType) -> bool:
        return source.is_primitive

    def result_type(self, source: IcebergType) -> IcebergType:
        return source

    @property
    def preserves_order(self) -> bool:
        return True

    def satisfies_order_of(self, other: Transform[S, T]) -> bool:
        return other.preserves_order

    def to_human_string(self, source_type: IcebergType, value: Optional[S]) -> str:
        return "null" if value is None else _human_string(value, source_type)

    def __repr__(self) -> str:
        return "IdentityTransform()"


def _truncate_number(width: int) -> Callable[[int], int]:
    return lambda v: v - v % width


def _truncate_sequence(width: int) -> Callable[[Any], Any]:
    return lambda v: v[:width]


def _truncate_decimal(width: int) -> Callable[[Any], Any]:
    return lambda v: truncate_decimal(v, width)


_TRUNCATIONS: Dict[Type[IcebergType], Callable[[int], Callable[[Any], Any]]] = {
    IntegerType: _truncate_number,
    LongType: _truncate_number,
    StringType: _truncate_sequence,
    BinaryType: _truncate_sequence,
    DecimalType: _truncate_decimal,
}


class TruncateTransform(Transform[S, S]):
    """Truncate numbers down to a multiple of the width, strings and binary to at most width.

    Args:
      width (int): The truncate width, should be positive.
    """

    root: str = Field()

    def __init__(self, width: int, **data: Any):
        if width <= 0:
            raise ValidationError(f"Truncate width must be positive: {width}")
        super().__init__(f"truncate[{width}]", **data)

    @property
    def width(self) -> int:
        return _argument_of(self.root)

    def can_transform(self, source: IcebergType) -> bool:
        return type(source) in _TRUNCATIONS

    def result_type(self, source: IcebergType) -> IcebergType:
        return source

    @property
    def preserves_order(self) -> bool:
        return True

    def transform(self, source: IcebergType) -> Callable[[Optional[S]], Optional[S]]:
        truncation = _TRUNCATIONS.get(type(source))
        if truncation is None:
            raise ValueError(f"Cannot truncate for type: {source}")
        return _null_safe(truncation(self.width))

    def satisfies_order_of(self, other: Transform[S, T]) -> bool:
        if isinstance(other, TruncateTransform):
            return self.width >= other.width
        return self == other

    def to_human_string(self, source_type: IcebergType, value: Optional[S]) -> str:
        return "null" if value is None else _human_string(value, StringType())

    def __repr__(self) -> str:
        return f"TruncateTransform(width={self.width})"


class VoidTransform(Transform[S, None], Singleton):
    """Always produce null, the tombstone of a dropped partition field."""

    root: LiteralType["void"] = Field(default="void")  # noqa: F821

    def transform(self, source: IcebergType) -> Callable[[Optional[S]], Optional[T]]:
        return lambda v: None

    def can_transform(self, _: IcebergType) -> bool:
        return True

    def result_type(self, source: IcebergType) -> IcebergType:
        return source

    @property
    def name_prefix(self) -> str:
        return "null"

    def to_human_string(self, _: IcebergType, value: Optional[S]) -> str:
        return "null"

    def __repr__(self) -> str:
        return "VoidTransform()"


_SIMPLE_TRANSFORMS: Dict[str, Type[Transform[Any, Any]]] = {
    "identity": IdentityTransform,
    "void": VoidTransform,
    "year": YearTransform,
    "month": MonthTransform,
    "day": DayTransform,
    "hour": HourTransform,
}

