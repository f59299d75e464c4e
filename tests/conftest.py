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
# pylint:disable=redefined-outer-name
"""This contains global pytest configurations.

Fixtures contained in this file will be automatically used if provided as an argument
to any pytest function.
"""
import uuid
from typing import Any, Dict

import pytest

from icemeta.catalog.memory import InMemoryCatalog
from icemeta.partitioning import UNPARTITIONED_PARTITION_SPEC
from icemeta.schema import Schema
from icemeta.table import Table, TableProperties
from icemeta.table.sorting import UNSORTED_SORT_ORDER
from icemeta.types import (
    BooleanType,
    DecimalType,
    FloatType,
    IntegerType,
    ListType,
    LongType,
    MapType,
    NestedField,
    StringType,
    StructType,
    TimestamptzType,
)

# Commits in tests should not sleep between attempts
NO_WAIT_PROPERTIES = {
    TableProperties.COMMIT_MIN_RETRY_WAIT_MS: "0",
    TableProperties.COMMIT_MAX_RETRY_WAIT_MS: "0",
}


@pytest.fixture(scope="session")
def table_schema_simple() -> Schema:
    return Schema(
        NestedField(field_id=1, name="foo", field_type=StringType(), required=False),
        NestedField(field_id=2, name="bar", field_type=IntegerType(), required=True),
        NestedField(field_id=3, name="baz", field_type=BooleanType(), required=False),
        schema_id=1,
        identifier_field_ids=[2],
    )


@pytest.fixture(scope="session")
def table_schema_nested() -> Schema:
    return Schema(
        NestedField(field_id=1, name="foo", field_type=StringType(), required=False),
        NestedField(field_id=2, name="bar", field_type=IntegerType(), required=True),
        NestedField(field_id=3, name="baz", field_type=BooleanType(), required=False),
        NestedField(
            field_id=4,
            name="qux",
            field_type=ListType(element_id=5, element_type=StringType(), element_required=True),
            required=True,
        ),
        NestedField(
            field_id=6,
            name="quux",
            field_type=MapType(key_id=7, key_type=StringType(), value_id=8, value_type=IntegerType(), value_required=True),
            required=True,
        ),
        NestedField(
            field_id=9,
            name="location",
            field_type=StructType(
                NestedField(field_id=10, name="latitude", field_type=FloatType(), required=False),
                NestedField(field_id=11, name="longitude", field_type=FloatType(), required=False),
            ),
            required=False,
        ),
        schema_id=1,
        identifier_field_ids=[2],
    )


@pytest.fixture(scope="session")
def events_schema() -> Schema:
    """The schema the `events` table is created with, the ids match the ones the table assigns."""
    return Schema(
        NestedField(field_id=1, name="id", field_type=LongType(), required=True),
        NestedField(field_id=2, name="ts", field_type=TimestamptzType(), required=False),
        NestedField(field_id=3, name="category", field_type=StringType(), required=False),
        NestedField(field_id=4, name="amount", field_type=DecimalType(10, 2), required=False),
        NestedField(field_id=5, name="count", field_type=IntegerType(), required=False),
        NestedField(
            field_id=6,
            name="location",
            field_type=StructType(
                NestedField(field_id=7, name="lat", field_type=FloatType(), required=False),
                NestedField(field_id=8, name="long", field_type=FloatType(), required=False),
            ),
            required=False,
        ),
    )


@pytest.fixture
def catalog() -> InMemoryCatalog:
    in_memory_catalog = InMemoryCatalog("test", warehouse=f"memory://{uuid.uuid4()}")
    in_memory_catalog.create_namespace("default")
    return in_memory_catalog


@pytest.fixture
def table(catalog: InMemoryCatalog, events_schema: Schema) -> Table:
    return catalog.create_table(
        identifier="default.events",
        schema=events_schema,
        partition_spec=UNPARTITIONED_PARTITION_SPEC,
        sort_order=UNSORTED_SORT_ORDER,
        properties=NO_WAIT_PROPERTIES,
    )


@pytest.fixture(scope="session")
def example_table_metadata_v2() -> Dict[str, Any]:
    return {
        "format-version": 2,
        "table-uuid": "9c12d441-03fe-4693-9a96-a0705ddf69c1",
        "location": "memory://bucket/test/location",
        "last-updated-ms": 1602638573590,
        "last-column-id": 3,
        "current-schema-id": 1,
        "schemas": [
            {"type": "struct", "schema-id": 0, "fields": [{"id": 1, "name": "x", "required": True, "type": "long"}]},
            {
                "type": "struct",
                "schema-id": 1,
                "identifier-field-ids": [1, 2],
                "fields": [
                    {"id": 1, "name": "x", "required": True, "type": "long"},
                    {"id": 2, "name": "y", "required": True, "type": "long", "doc": "comment"},
                    {"id": 3, "name": "z", "required": True, "type": "long"},
                ],
            },
        ],
        "default-spec-id": 1,
        "partition-specs": [
            {"spec-id": 0, "fields": [{"name": "x", "transform": "identity", "source-id": 1, "field-id": 1000}]},
            {
                "spec-id": 1,
                "fields": [
                    {"name": "x", "transform": "void", "source-id": 1, "field-id": 1000},
                    {"name": "y_bucket", "transform": "bucket[16]", "source-id": 2, "field-id": 1001},
                ],
            },
        ],
        "last-partition-id": 1001,
        "default-sort-order-id": 3,
        "sort-orders": [
            {"order-id": 0, "fields": []},
            {
                "order-id": 3,
                "fields": [
                    {"transform": "identity", "source-id": 2, "direction": "asc", "null-order": "nulls-first"},
                    {"transform": "bucket[4]", "source-id": 3, "direction": "desc", "null-order": "nulls-last"},
                ],
            },
        ],
        "properties": {"read.split.target.size": "134217728"},
        "metadata-log": [{"metadata-file": "memory://bucket/.../v1.json", "timestamp-ms": 1515100}],
    }
