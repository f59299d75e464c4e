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
"""Sort orders: the advisory order of rows within the data files of a table.

Nothing checks that data files follow the order, writers use it when they can. Order id 0
is reserved for the unsorted order, which every table implicitly has.
"""
from enum import Enum
from typing import (
    Annotated,
    Any,
    Dict,
    List,
    Optional,
)

from pydantic import (
    BeforeValidator,
    Field,
    PlainSerializer,
    WithJsonSchema,
    model_validator,
)

from icemeta.exceptions import ValidationError
from icemeta.schema import Schema
from icemeta.transforms import IdentityTransform, Transform, parse_transform
from icemeta.typedef import IcemetaBaseModel


class SortDirection(Enum):
    ASC = "asc"
    DESC = "desc"

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"SortDirection.{self.name}"


class NullOrder(Enum):
    """Where nulls go, `nulls-first` or `nulls-last`."""

    NULLS_FIRST = "nulls-first"
    NULLS_LAST = "nulls-last"

    def __str__(self) -> str:
        return self.name.replace("_", " ")

    def __repr__(self) -> str:
        return f"NullOrder.{self.name}"


DEFAULT_NULL_ORDERS = {SortDirection.ASC: NullOrder.NULLS_FIRST, SortDirection.DESC: NullOrder.NULLS_LAST}


class SortField(IcemetaBaseModel):
    """One key of a sort order.

    Args:
      source_id (int): Id of the source column in the table schema.
      transform (Transform): Applied to the source value before comparing, same transforms as partitioning.
      direction (SortDirection): Ascending unless given.
      null_order (NullOrder): Nulls first when ascending and last when descending, unless given.
    """

    source_id: int = Field(alias="source-id")
    transform: Annotated[  # type: ignore
        Transform,
        BeforeValidator(parse_transform),
        PlainSerializer(str, return_type=str),
        WithJsonSchema({"type": "string"}, mode="serialization"),
    ] = Field()
    direction: SortDirection = Field()
    null_order: NullOrder = Field(alias="null-order")

    def __init__(
        self,
        source_id: Optional[int] = None,
        transform: Optional[Transform[Any, Any]] = None,
        direction: Optional[SortDirection] = None,
        null_order: Optional[NullOrder] = None,
        **data: Any,
    ):
        positional = {"source-id": source_id, "transform": transform, "direction": direction, "null-order": null_order}
        data.update({key: value for key, value in positional.items() if value is not None})
        super().__init__(**data)

    @model_validator(mode="before")
    @classmethod
    def default_direction_and_null_order(cls, values: Dict[str, Any]) -> Dict[str, Any]:
        direction = SortDirection(values["direction"]) if values.get("direction") else SortDirection.ASC
        values["direction"] = direction
        if not values.get("null-order") and not values.get("null_order"):
            values["null-order"] = DEFAULT_NULL_ORDERS[direction]
        return values

    def __str__(self) -> str:
        """Render as `3 ASC NULLS FIRST`, or `bucket[4](3) ASC NULLS FIRST` for other transforms."""
        key = str(self.source_id) if isinstance(self.transform, IdentityTransform) else f"{self.transform}({self.source_id})"
        return f"{key} {self.direction} {self.null_order}"


INITIAL_SORT_ORDER_ID = 1


class SortOrder(IcemetaBaseModel):
    """An ordered list of sort fields, the first field is the most significant.

    Args:
      order_id (int): Id of the order, historical orders keep theirs.
      fields (List[SortField]): The sort keys.
    """

    order_id: int = Field(alias="order-id", default=INITIAL_SORT_ORDER_ID)
    fields: List[SortField] = Field(default_factory=list)

    def __init__(self, *fields: SortField, **data: Any):
        if fields:
            data["fields"] = fields
        super().__init__(**data)

    @property
    def is_unsorted(self) -> bool:
        return not self.fields

    def __str__(self) -> str:
        if not self.fields:
            return "[]"
        return "[\n" + "".join(f"  {field}\n" for field in self.fields) + "]"

    def __repr__(self) -> str:
        arguments = [repr(field) for field in self.fields] + [f"order_id={self.order_id}"]
        return f"SortOrder({', '.join(arguments)})"

    def check_compatible(self, schema: Schema) -> None:
        """Check that every sort key can be computed from a column of `schema`."""
        for field in self.fields:
            source = schema._lazy_id_to_field.get(field.source_id)
            if source is None:
                raise ValidationError(f"Cannot find source column for sort field: {field}")
            if not field.transform.can_transform(source.field_type):
                raise ValidationError(f"Invalid source type {source.field_type} for transform: {field.transform}")


UNSORTED_SORT_ORDER_ID = 0
UNSORTED_SORT_ORDER = SortOrder(order_id=UNSORTED_SORT_ORDER_ID)


def assign_fresh_sort_order_ids(
    sort_order: SortOrder, old_schema: Schema, fresh_schema: Schema, sort_order_id: int = INITIAL_SORT_ORDER_ID
) -> SortOrder:
    """Rebind a sort order written against `old_schema` to the ids of `fresh_schema`, by column name."""
    if sort_order.is_unsorted:
        return UNSORTED_SORT_ORDER

    def rebind(field: SortField) -> SortField:
        column_name = old_schema.find_column_name(field.source_id)
        if column_name is None:
            raise ValidationError(f"Could not find in old schema: {field}")
        source_id = fresh_schema.find_field(column_name).field_id
        return SortField(source_id, field.transform, field.direction, field.null_order)

    return SortOrder(*[rebind(field) for field in sort_order.fields], order_id=sort_order_id)
