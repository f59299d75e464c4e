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
"""Partition specs: how the rows of a table are grouped by transformed column values.

A spec is an ordered list of partition fields. Each one names a source column by id, a
transform and the name of the produced partition value. Specs are never edited in place:
evolving the partitioning of a table adds a spec with a new id, older specs keep describing
the data that was written under them. Removed fields stay behind as `void` tombstones in their
position, so that field ids are never reused.
"""
from typing import (
    Annotated,
    Any,
    Callable,
    List,
    Optional,
    Tuple,
)

from pydantic import (
    BeforeValidator,
    Field,
    PlainSerializer,
    WithJsonSchema,
)

from icemeta.exceptions import NotFoundError, ValidationError
from icemeta.schema import Schema
from icemeta.transforms import Transform, VoidTransform, parse_transform
from icemeta.typedef import IcemetaBaseModel
from icemeta.types import IcebergType, NestedField, StructType

INITIAL_PARTITION_SPEC_ID = 0
PARTITION_FIELD_ID_START: int = 1000


class PartitionField(IcemetaBaseModel):
    """One partition value, derived from a source column by a transform.

    Attributes:
        source_id(int): Id of the source column in the table schema.
        field_id(int): Id of the partition field, unique across all specs of the table.
        transform(Transform): Produces the partition value from the source value.
        name(str): Name of the partition value.
    """

    source_id: int = Field(alias="source-id")
    field_id: int = Field(alias="field-id")
    transform: Annotated[  # type: ignore
        Transform,
        BeforeValidator(parse_transform),
        PlainSerializer(str, return_type=str),
        WithJsonSchema({"type": "string"}, mode="serialization"),
    ] = Field()
    name: str = Field()

    def __init__(
        self,
        source_id: Optional[int] = None,
        field_id: Optional[int] = None,
        transform: Optional[Transform[Any, Any]] = None,
        name: Optional[str] = None,
        **data: Any,
    ):
        positional = {"source-id": source_id, "field-id": field_id, "transform": transform, "name": name}
        data.update({key: value for key, value in positional.items() if value is not None})
        super().__init__(**data)

    @property
    def is_void(self) -> bool:
        return isinstance(self.transform, VoidTransform)

    def __str__(self) -> str:
        """Render as `field-id: name: transform(source-id)`."""
        return f"{self.field_id}: {self.name}: {self.transform}({self.source_id})"


class PartitionSpec(IcemetaBaseModel):
    """An ordered list of partition fields identified by a spec id.

    Attributes:
        spec_id(int): Changes with every evolution of the partitioning.
        fields(Tuple[PartitionField, ...]): The partition fields, in order.
    """

    spec_id: int = Field(alias="spec-id", default=INITIAL_PARTITION_SPEC_ID)
    fields: Tuple[PartitionField, ...] = Field(default_factory=tuple)

    def __init__(self, *fields: PartitionField, **data: Any):
        if fields:
            data["fields"] = fields
        super().__init__(**data)

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, PartitionSpec) and (self.spec_id, self.fields) == (other.spec_id, other.fields)

    def __str__(self) -> str:
        if not self.fields:
            return "[]"
        return "[\n" + "".join(f"  {field}\n" for field in self.fields) + "]"

    def __repr__(self) -> str:
        arguments = [repr(field) for field in self.fields] + [f"spec_id={self.spec_id}"]
        return f"PartitionSpec({', '.join(arguments)})"

    def is_unpartitioned(self) -> bool:
        """True when no partition field produces a value, tombstones do not count."""
        return not self.active_fields

    @property
    def active_fields(self) -> Tuple[PartitionField, ...]:
        return tuple(field for field in self.fields if not field.is_void)

    @property
    def last_assigned_field_id(self) -> int:
        return max((field.field_id for field in self.fields), default=PARTITION_FIELD_ID_START - 1)

    def fields_by_source_id(self, source_id: int) -> List[PartitionField]:
        return [field for field in self.fields if field.source_id == source_id]

    def compatible_with(self, other: "PartitionSpec") -> bool:
        """Whether both specs partition the same way, ignoring spec and field ids."""

        def layout(spec: PartitionSpec) -> List[Tuple[int, str, str]]:
            return [(field.source_id, str(field.transform), field.name) for field in spec.fields]

        return self == other or layout(self) == layout(other)

    def check_compatible(self, schema: Schema) -> None:
        """Check that every active field of the spec can be derived from the given schema.

        Void tombstones are skipped, the column they were derived from may have been dropped since.

        Raises:
            ValidationError: When a source column is missing or the transform cannot be applied to it.
        """
        for field in self.active_fields:
            source = schema._lazy_id_to_field.get(field.source_id)
            if source is None:
                raise ValidationError(f"Cannot find source column for partition field: {field}")
            if not field.transform.can_transform(source.field_type):
                raise ValidationError(f"Invalid source type {source.field_type} for transform: {field.transform}")

    def partition_type(self, schema: Schema, resolve_column: Optional[Callable[[int], NestedField]] = None) -> StructType:
        """The struct of partition values this spec produces for rows of `schema`.

        Every partition value is optional: transforms map null to null, and fields added by a
        later spec are null for data written before.

        Args:
            schema: The schema the source columns are looked up in.
            resolve_column: Looks up a column by id in the history of the table. The source
                column of a tombstone may have been deleted after the field was removed.

        Raises:
            NotFoundError: When the source column of a field cannot be found.
        """

        def source_type(field: PartitionField) -> IcebergType:
            source = schema._lazy_id_to_field.get(field.source_id)
            if source is None and field.is_void and resolve_column is not None:
                source = resolve_column(field.source_id)
            if source is None:
                raise NotFoundError(f"Cannot find source column for partition field: {field}")
            return source.field_type

        return StructType(
            *(
                NestedField(field.field_id, field.name, field.transform.result_type(source_type(field)), False)
                for field in self.fields
            )
        )


UNPARTITIONED_PARTITION_SPEC = PartitionSpec(spec_id=0)


def assign_fresh_partition_spec_ids(
    spec: PartitionSpec,
    old_schema: Schema,
    fresh_schema: Schema,
    next_partition_field_id: Callable[[], int],
    spec_id: int = INITIAL_PARTITION_SPEC_ID,
) -> PartitionSpec:
    """Rebind a spec written against `old_schema` to the ids of `fresh_schema`, by column name."""

    def rebind(field: PartitionField) -> PartitionField:
        column_name = old_schema.find_column_name(field.source_id)
        if column_name is None:
            raise ValidationError(f"Could not find in old schema: {field}")
        source_id = fresh_schema.find_field(column_name).field_id
        return PartitionField(source_id, next_partition_field_id(), field.transform, field.name)

    return PartitionSpec(*[rebind(field) for field in spec.fields], spec_id=spec_id)
