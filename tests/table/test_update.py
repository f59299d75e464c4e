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
import uuid
from typing import Any, Dict

import pytest

from icemeta.exceptions import CommitFailedException, ValidationError
from icemeta.schema import Schema
from icemeta.table.metadata import MetadataLogEntry, TableMetadata, TableMetadataUtil
from icemeta.table.update import (
    AddSchemaUpdate,
    AssertCurrentSchemaId,
    AssertDefaultSortOrderId,
    AssertDefaultSpecId,
    AssertLastAssignedFieldId,
    AssertLastAssignedPartitionId,
    AssertTableUUID,
    RemovePropertiesUpdate,
    SetCurrentSchemaUpdate,
    SetDefaultSpecUpdate,
    SetLocationUpdate,
    SetPropertiesUpdate,
    update_table_metadata,
)
from icemeta.types import LongType, NestedField


@pytest.fixture
def base_metadata(example_table_metadata_v2: Dict[str, Any]) -> TableMetadata:
    return TableMetadataUtil.parse_obj(example_table_metadata_v2)


def test_requirements_that_hold(base_metadata: TableMetadata) -> None:
    AssertTableUUID(uuid=uuid.UUID("9c12d441-03fe-4693-9a96-a0705ddf69c1")).validate(base_metadata)
    AssertCurrentSchemaId(current_schema_id=1).validate(base_metadata)
    AssertLastAssignedFieldId(last_assigned_field_id=3).validate(base_metadata)
    AssertLastAssignedPartitionId(last_assigned_partition_id=1001).validate(base_metadata)
    AssertDefaultSpecId(default_spec_id=1).validate(base_metadata)
    AssertDefaultSortOrderId(default_sort_order_id=3).validate(base_metadata)


def test_assert_table_uuid_fails(base_metadata: TableMetadata) -> None:
    other = uuid.uuid4()
    with pytest.raises(CommitFailedException, match=f"Table UUID does not match: {other}"):
        AssertTableUUID(uuid=other).validate(base_metadata)


def test_assert_current_schema_id_fails(base_metadata: TableMetadata) -> None:
    with pytest.raises(CommitFailedException, match="current schema id has changed: expected 0, found 1"):
        AssertCurrentSchemaId(current_schema_id=0).validate(base_metadata)


def test_assert_last_assigned_field_id_fails(base_metadata: TableMetadata) -> None:
    with pytest.raises(CommitFailedException, match="last assigned field id has changed: expected 2, found 3"):
        AssertLastAssignedFieldId(last_assigned_field_id=2).validate(base_metadata)


def test_assert_last_assigned_partition_id_fails(base_metadata: TableMetadata) -> None:
    with pytest.raises(CommitFailedException, match="last assigned partition id has changed: expected 1000, found 1001"):
        AssertLastAssignedPartitionId(last_assigned_partition_id=1000).validate(base_metadata)


def test_assert_default_spec_id_fails(base_metadata: TableMetadata) -> None:
    with pytest.raises(CommitFailedException, match="default spec id has changed: expected 0, found 1"):
        AssertDefaultSpecId(default_spec_id=0).validate(base_metadata)


def test_assert_default_sort_order_id_fails(base_metadata: TableMetadata) -> None:
    with pytest.raises(CommitFailedException, match="default sort order id has changed: expected 0, found 3"):
        AssertDefaultSortOrderId(default_sort_order_id=0).validate(base_metadata)


def test_requirement_without_table() -> None:
    with pytest.raises(CommitFailedException, match="current table metadata is missing"):
        AssertCurrentSchemaId(current_schema_id=0).validate(None)


def test_update_without_changes_returns_the_base(base_metadata: TableMetadata) -> None:
    updated = update_table_metadata(
        base_metadata,
        (SetLocationUpdate(location=base_metadata.location), RemovePropertiesUpdate(removals=["not-there"])),
        "memory://bucket/test/location/metadata/00001.metadata.json",
    )

    assert updated == base_metadata


def test_update_properties_and_log(base_metadata: TableMetadata) -> None:
    previous_location = "memory://bucket/test/location/metadata/00001.metadata.json"
    updated = update_table_metadata(
        base_metadata,
        (
            SetPropertiesUpdate(updates={"owner": "analytics"}),
            RemovePropertiesUpdate(removals=["read.split.target.size"]),
        ),
        previous_location,
    )

    assert updated.properties == {"owner": "analytics"}
    assert updated.metadata_log[-1] == MetadataLogEntry(
        metadata_file=previous_location, timestamp_ms=base_metadata.last_updated_ms
    )
    assert updated.last_updated_ms > base_metadata.last_updated_ms
    # the base is left untouched
    assert base_metadata.properties == {"read.split.target.size": "134217728"}


def test_update_adds_schema_with_the_next_id(base_metadata: TableMetadata) -> None:
    new_schema = Schema(
        *base_metadata.schema().fields,
        NestedField(field_id=4, name="w", field_type=LongType(), required=False),
        schema_id=2,
    )
    updated = update_table_metadata(
        base_metadata, (AddSchemaUpdate(schema=new_schema, last_column_id=4), SetCurrentSchemaUpdate(schema_id=-1))
    )

    assert updated.current_schema_id == 2
    assert updated.last_column_id == 4
    assert [schema.schema_id for schema in updated.schemas] == [0, 1, 2]


def test_update_rejects_unknown_spec(base_metadata: TableMetadata) -> None:
    with pytest.raises(ValidationError):
        update_table_metadata(base_metadata, (SetDefaultSpecUpdate(spec_id=7),))
