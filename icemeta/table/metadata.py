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
"""The table metadata document and the checks every version of it has to pass.

Only format version 2 is read and written. A metadata document keeps every schema,
partition spec and sort order the table ever had, next to the ids of the current ones.
"""
from __future__ import annotations

import datetime
import itertools
import json
import uuid
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Literal,
    Optional,
    Union,
)

from pydantic import Field, model_validator

from icemeta.exceptions import NotFoundError, ValidationError
from icemeta.partitioning import (
    INITIAL_PARTITION_SPEC_ID,
    PARTITION_FIELD_ID_START,
    PartitionSpec,
    assign_fresh_partition_spec_ids,
)
from icemeta.schema import INITIAL_SCHEMA_ID, Schema, assign_fresh_schema_ids
from icemeta.table.sorting import (
    UNSORTED_SORT_ORDER,
    UNSORTED_SORT_ORDER_ID,
    SortOrder,
    assign_fresh_sort_order_ids,
)
from icemeta.typedef import EMPTY_DICT, IcemetaBaseModel, Properties
from icemeta.types import NestedField
from icemeta.utils.datetime import datetime_to_millis

FORMAT_VERSION = "format-version"
SUPPORTED_TABLE_FORMAT_VERSION = 2


def _now_millis() -> int:
    return datetime_to_millis(datetime.datetime.now().astimezone())


def _next_id(ids: Iterable[int], floor: int) -> int:
    return max(ids, default=floor) + 1


class MetadataLogEntry(IcemetaBaseModel):
    """A previous metadata file of the table, in order of creation."""

    metadata_file: str = Field(alias="metadata-file")
    timestamp_ms: int = Field(alias="timestamp-ms")


class TableMetadataV2(IcemetaBaseModel):
    """One immutable version in the chain of metadata files of a table.

    Every id counter only goes up, and the current schema, default spec and default sort
    order must be present in their lists.
    """

    format_version: Literal[2] = Field(alias="format-version", default=2)
    location: str = Field()
    """Base location of the table, metadata files are written under `{location}/metadata`."""
    table_uuid: uuid.UUID = Field(alias="table-uuid", default_factory=uuid.uuid4)
    last_updated_ms: int = Field(alias="last-updated-ms", default_factory=_now_millis)
    last_column_id: int = Field(alias="last-column-id")
    """Highest column id ever assigned, new columns are numbered from here."""
    schemas: List[Schema] = Field(default_factory=list)
    current_schema_id: int = Field(alias="current-schema-id", default=INITIAL_SCHEMA_ID)
    partition_specs: List[PartitionSpec] = Field(alias="partition-specs", default_factory=list)
    default_spec_id: int = Field(alias="default-spec-id", default=INITIAL_PARTITION_SPEC_ID)
    last_partition_id: int = Field(alias="last-partition-id", default=PARTITION_FIELD_ID_START - 1)
    """Highest partition field id ever assigned, across all specs."""
    properties: Dict[str, str] = Field(default_factory=dict)
    metadata_log: List[MetadataLogEntry] = Field(alias="metadata-log", default_factory=list)
    """Earlier metadata files, oldest first. Each commit appends the file it replaced."""
    sort_orders: List[SortOrder] = Field(alias="sort-orders", default_factory=list)
    default_sort_order_id: int = Field(alias="default-sort-order-id", default=UNSORTED_SORT_ORDER_ID)

    @model_validator(mode="after")
    def check_current_references(self) -> TableMetadataV2:
        if self.schema_by_id(self.current_schema_id) is None:
            raise ValidationError(f"current-schema-id {self.current_schema_id} can't be found in the schemas")
        if self.spec_by_id(self.default_spec_id) is None:
            raise ValidationError(f"default-spec-id {self.default_spec_id} can't be found")
        # the unsorted order does not have to be listed
        if self.default_sort_order_id != UNSORTED_SORT_ORDER_ID and self.sort_order_by_id(self.default_sort_order_id) is None:
            raise ValidationError(f"default-sort-order-id {self.default_sort_order_id} can't be found in the sort orders")
        return self

    @model_validator(mode="after")
    def check_id_counters(self) -> TableMetadataV2:
        highest_column_id = max((schema.highest_field_id for schema in self.schemas), default=0)
        if highest_column_id > self.last_column_id:
            raise ValidationError(
                f"last-column-id {self.last_column_id} is lower than the highest assigned column id {highest_column_id}"
            )
        highest_partition_id = max(
            (spec.last_assigned_field_id for spec in self.partition_specs), default=PARTITION_FIELD_ID_START - 1
        )
        if highest_partition_id > self.last_partition_id:
            raise ValidationError(
                f"last-partition-id {self.last_partition_id} is lower than "
                f"the highest assigned partition field id {highest_partition_id}"
            )
        return self

    def schema(self) -> Schema:
        """The current schema."""
        return self.schemas_by_id()[self.current_schema_id]

    def schemas_by_id(self) -> Dict[int, Schema]:
        return {schema.schema_id: schema for schema in self.schemas}

    def schema_by_id(self, schema_id: int) -> Optional[Schema]:
        return self.schemas_by_id().get(schema_id)

    def spec(self) -> PartitionSpec:
        """The spec that new data files are written with."""
        return self.specs()[self.default_spec_id]

    def specs(self) -> Dict[int, PartitionSpec]:
        return {spec.spec_id: spec for spec in self.partition_specs}

    def spec_by_id(self, spec_id: int) -> Optional[PartitionSpec]:
        return self.specs().get(spec_id)

    def sort_order(self) -> SortOrder:
        return self.sort_order_by_id(self.default_sort_order_id) or UNSORTED_SORT_ORDER

    def sort_order_by_id(self, sort_order_id: int) -> Optional[SortOrder]:
        return next((order for order in self.sort_orders if order.order_id == sort_order_id), None)

    def resolve_column_by_id(self, field_id: int) -> NestedField:
        """Find a column by id in the current schema, falling back to the historical schemas, newest first.

        Raises:
            NotFoundError: When no schema of the table ever had a column with this id.
        """
        historical = sorted(self.schemas, key=lambda schema: schema.schema_id, reverse=True)
        for schema in [self.schema(), *historical]:
            if field := schema._lazy_id_to_field.get(field_id):
                return field
        raise NotFoundError(f"Could not find column with id {field_id} in any schema of the table")

    def new_schema_id(self) -> int:
        return _next_id((schema.schema_id for schema in self.schemas), INITIAL_SCHEMA_ID - 1)

    def new_partition_spec_id(self) -> int:
        return _next_id((spec.spec_id for spec in self.partition_specs), INITIAL_PARTITION_SPEC_ID - 1)

    def new_sort_order_id(self) -> int:
        # order id 0 is reserved for the unsorted order
        return _next_id((order.order_id for order in self.sort_orders), UNSORTED_SORT_ORDER_ID)


TableMetadata = TableMetadataV2


def new_table_metadata(
    schema: Schema,
    partition_spec: PartitionSpec,
    sort_order: SortOrder,
    location: str,
    properties: Properties = EMPTY_DICT,
    table_uuid: Optional[uuid.UUID] = None,
) -> TableMetadata:
    """Create the first metadata of a table, renumbering all ids from the start."""
    fresh_schema: Schema = assign_fresh_schema_ids(schema)  # type: ignore
    partition_field_ids = itertools.count(PARTITION_FIELD_ID_START)
    fresh_spec = assign_fresh_partition_spec_ids(partition_spec, schema, fresh_schema, partition_field_ids.__next__)
    fresh_order = assign_fresh_sort_order_ids(sort_order, schema, fresh_schema)

    return TableMetadataV2(
        location=location,
        table_uuid=table_uuid or uuid.uuid4(),
        schemas=[fresh_schema],
        current_schema_id=fresh_schema.schema_id,
        last_column_id=fresh_schema.highest_field_id,
        partition_specs=[fresh_spec],
        default_spec_id=fresh_spec.spec_id,
        last_partition_id=fresh_spec.last_assigned_field_id,
        sort_orders=[fresh_order],
        default_sort_order_id=fresh_order.order_id,
        properties=dict(properties),
    )


class TableMetadataUtil:
    """Entry points for parsing table metadata of any supported format version."""

    @staticmethod
    def parse_raw(data: Union[str, bytes]) -> TableMetadata:
        return TableMetadataUtil.parse_obj(json.loads(data))

    @staticmethod
    def parse_obj(data: Dict[str, Any]) -> TableMetadata:
        if FORMAT_VERSION not in data:
            raise ValidationError(f"Missing format-version in TableMetadata: {data}")
        if (format_version := data[FORMAT_VERSION]) != SUPPORTED_TABLE_FORMAT_VERSION:
            raise ValidationError(f"Unknown format version: {format_version}")
        return TableMetadataV2.model_validate(data)
