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
# pylint:disable=redefined-outer-name,protected-access
import logging
import uuid
from typing import Any, Callable, List, Optional, Union

import pytest
from fsspec.implementations.memory import MemoryFileSystem

from icemeta.catalog.memory import InMemoryCatalog
from icemeta.exceptions import (
    CommitConflictError,
    CommitFailedException,
    InvalidOperationError,
    NoSuchTableError,
    NotFoundError,
)
from icemeta.partitioning import PartitionField, PartitionSpec
from icemeta.schema import Schema
from icemeta.table import Table, TableProperties, Transaction
from icemeta.table.sorting import SortField, SortOrder
from icemeta.transforms import BucketTransform, IdentityTransform
from icemeta.typedef import Identifier
from icemeta.types import LongType, NestedField, StringType
from tests.conftest import NO_WAIT_PROPERTIES


class RacingCatalog(InMemoryCatalog):
    """Lets another writer commit to the table right before each of the first `races` swaps."""

    def __init__(self, name: str, races: int, **properties: str) -> None:
        super().__init__(name, **properties)
        self.races = races
        self.concurrent_change: Optional[Callable[[Table], None]] = None
        self.lost_swaps: List[str] = []
        self._racing = False

    def compare_and_swap(self, identifier: Union[str, Identifier], expected_location: str, new_location: str) -> None:
        if self.races > 0 and not self._racing and self.concurrent_change is not None:
            self.races -= 1
            self._racing = True
            try:
                self.concurrent_change(self.load_table(identifier))
            finally:
                self._racing = False
        try:
            super().compare_and_swap(identifier, expected_location, new_location)
        except CommitFailedException:
            self.lost_swaps.append(new_location)
            raise


def _metadata_files(table: Table) -> List[str]:
    return MemoryFileSystem().find(f"{table.location()}/metadata")


def _racing_table(events_schema: Schema, races: int, **properties: str) -> Table:
    catalog = RacingCatalog("test", races=races, warehouse=f"memory://{uuid.uuid4()}")
    catalog.create_namespace("default")
    return catalog.create_table("default.events", schema=events_schema, properties={**NO_WAIT_PROPERTIES, **properties})


@pytest.fixture
def racing_table(events_schema: Schema) -> Table:
    return _racing_table(events_schema, races=1)


def _race_with(table: Table, change: Callable[[Table], None]) -> RacingCatalog:
    catalog = table.catalog
    assert isinstance(catalog, RacingCatalog)
    catalog.concurrent_change = change
    return catalog


def test_concurrent_column_additions_both_survive(racing_table: Table) -> None:
    def add_region(other: Table) -> None:
        with other.update_schema() as update:
            update.add_column("region", StringType())

    catalog = _race_with(racing_table, add_region)

    with racing_table.update_schema() as update:
        update.add_column("note", StringType(), doc="free text")

    assert len(catalog.lost_swaps) == 1
    schema = racing_table.schema()
    assert schema.find_field("region").field_id == 9
    assert schema.find_field("note") == NestedField(10, "note", StringType(), required=False, doc="free text")
    assert racing_table.metadata.last_column_id == 10
    assert [field.name for field in schema.fields][-2:] == ["region", "note"]
    assert racing_table == catalog.load_table("default.events")


def test_concurrent_rename_and_partition_field_both_survive(racing_table: Table) -> None:
    def rename_category(other: Table) -> None:
        with other.update_schema() as update:
            update.rename_column("category", "kind")

    _race_with(racing_table, rename_category)

    with racing_table.update_spec() as update:
        update.add_field("id", BucketTransform(16))

    assert racing_table.schema().find_field(3).name == "kind"
    assert racing_table.spec() == PartitionSpec(PartitionField(1, 1000, BucketTransform(16), "bucket_16_id"), spec_id=1)


def test_concurrent_partition_fields_both_survive(racing_table: Table) -> None:
    def bucket_id(other: Table) -> None:
        with other.update_spec() as update:
            update.add_field("id", "bucket[16]")

    _race_with(racing_table, bucket_id)

    with racing_table.update_spec() as update:
        update.add_identity("category")

    assert racing_table.spec() == PartitionSpec(
        PartitionField(1, 1000, BucketTransform(16), "bucket_16_id"),
        PartitionField(3, 1001, IdentityTransform(), "category"),
        spec_id=2,
    )
    assert racing_table.metadata.last_partition_id == 1001
    assert sorted(racing_table.specs().keys()) == [0, 1, 2]


def test_concurrent_property_and_schema_change(racing_table: Table) -> None:
    def set_owner(other: Table) -> None:
        with other.transaction() as transaction:
            transaction.set_properties(owner="analytics")

    _race_with(racing_table, set_owner)

    with racing_table.update_schema() as update:
        update.update_column("count", field_type=LongType())

    assert racing_table.properties["owner"] == "analytics"
    assert racing_table.schema().find_type("count") == LongType()
    # created, concurrent commit, our commit
    assert len(racing_table.history()) == 2
    assert racing_table.history()[-1].metadata_file != racing_table.metadata_location


def test_replayed_change_that_no_longer_applies(racing_table: Table) -> None:
    def drop_count(other: Table) -> None:
        with other.update_schema() as update:
            update.delete_column("count")

    catalog = _race_with(racing_table, drop_count)

    with pytest.raises(NotFoundError):
        with racing_table.update_schema() as update:
            update.update_column("count", field_type=LongType())

    current = catalog.load_table("default.events")
    with pytest.raises(NotFoundError):
        current.schema().find_field("count")
    assert current.resolve_column_by_id(5).name == "count"


def test_commit_conflict_after_exhausting_retries(events_schema: Schema, caplog: Any) -> None:
    table = _racing_table(events_schema, races=100, **{TableProperties.COMMIT_NUM_RETRIES: "2"})

    def bump_version(other: Table) -> None:
        with other.transaction() as transaction:
            transaction.set_properties(writer=str(len(other.history())))

    catalog = _race_with(table, bump_version)
    location_before = table.metadata_location

    with caplog.at_level(logging.WARNING, logger="icemeta.catalog"):
        with pytest.raises(CommitConflictError) as exc_info:
            with table.update_schema() as update:
                update.add_column("note", StringType())

    assert isinstance(exc_info.value.__cause__, CommitFailedException)
    assert "after 3 attempts" in str(exc_info.value)
    assert len(catalog.lost_swaps) == 3
    assert len([record for record in caplog.records if "Commit attempt failed" in record.getMessage()]) == 3

    # the local table is untouched, the files of the lost attempts are cleaned up
    assert table.metadata_location == location_before
    assert "note" not in table.schema().column_names
    assert len(_metadata_files(table)) == 4
    for lost in catalog.lost_swaps:
        assert not table.io.new_input(lost).exists()


def test_metadata_file_names_carry_the_version(table: Table) -> None:
    assert table.metadata_location.split("/")[-1].startswith("00000-")
    table.transaction().set_properties(a="1").commit_transaction()
    assert table.metadata_location.split("/")[-1].startswith("00001-")
    table.transaction().set_properties(b="2").commit_transaction()
    assert table.metadata_location.split("/")[-1].startswith("00002-")
    assert [entry.metadata_file.split("/")[-1][:5] for entry in table.history()] == ["00000", "00001"]


def test_commit_without_changes_writes_nothing(table: Table) -> None:
    location_before = table.metadata_location

    with table.update_schema() as update:
        update.rename_column("category", "category")
    table.transaction().remove_properties("does-not-exist").commit_transaction()

    assert table.metadata_location == location_before
    assert len(_metadata_files(table)) == 1


def test_transaction_validates_every_change_when_staged(table: Table) -> None:
    transaction = table.transaction()
    with pytest.raises(InvalidOperationError):
        transaction.update_schema().add_column("id", LongType())
    with pytest.raises(NotFoundError):
        transaction.update_spec().remove_field("missing")


def test_transaction_commits_changes_together(table: Table) -> None:
    location_before = table.metadata_location

    with table.transaction() as transaction:
        with transaction.update_schema() as update:
            update.add_column("region", StringType())
        with transaction.update_spec() as update:
            update.add_identity("region")
        with transaction.replace_sort_order() as update:
            update.asc("region")
        transaction.set_properties(owner="analytics")
        # nothing is visible before the commit
        assert table.metadata_location == location_before
        assert transaction.table_metadata.schema().find_field("region").field_id == 9

    assert len(table.history()) == 1
    assert table.spec().fields == (PartitionField(9, 1000, IdentityTransform(), "region"),)
    assert table.sort_order().fields == [SortField(source_id=9, transform=IdentityTransform())]
    assert table.properties["owner"] == "analytics"


def test_transaction_that_raises_is_not_committed(table: Table) -> None:
    location_before = table.metadata_location
    with pytest.raises(RuntimeError):
        with table.transaction() as transaction:
            transaction.set_properties(owner="analytics")
            raise RuntimeError("abort")
    assert table.metadata_location == location_before
    assert "owner" not in table.refresh().properties


def test_set_and_remove_properties(table: Table) -> None:
    table.transaction().set_properties({"a": "1", "b": "2"}).commit_transaction()
    table.transaction().set_properties(b="3", c="4").commit_transaction()
    assert {key: value for key, value in table.properties.items() if key in {"a", "b", "c"}} == {"a": "1", "b": "3", "c": "4"}

    table.transaction().remove_properties("a", "missing").commit_transaction()
    assert "a" not in table.properties
    assert table.properties["b"] == "3"


def test_set_properties_values_become_strings(table: Table) -> None:
    table.transaction().set_properties(retries=5).commit_transaction()
    assert table.properties["retries"] == "5"


def test_set_properties_with_both_dict_and_kwargs(table: Table) -> None:
    with pytest.raises(ValueError) as exc_info:
        table.transaction().set_properties({"a": "1"}, b="2")
    assert "Cannot pass both properties and kwargs" in str(exc_info.value)


def test_update_location(table: Table) -> None:
    with table.transaction() as transaction:
        transaction.update_location("memory://elsewhere/events")
    assert table.location() == "memory://elsewhere/events"
    assert table.metadata_location.startswith("memory://elsewhere/events/metadata/00001-")


def test_replace_table_keeps_ids_and_history(catalog: InMemoryCatalog, table: Table, events_schema: Schema) -> None:
    new_schema = Schema(
        *events_schema.fields,
        NestedField(field_id=30, name="note", field_type=StringType(), required=False),
    )
    spec = PartitionSpec(PartitionField(source_id=3, field_id=1000, transform=IdentityTransform(), name="category"))
    order = SortOrder(SortField(source_id=1, transform=IdentityTransform()))

    replaced = catalog.replace_table(
        "default.events", schema=new_schema, partition_spec=spec, sort_order=order, properties={"owner": "analytics"}
    )

    assert replaced.metadata.table_uuid == table.metadata.table_uuid
    assert len(replaced.history()) == 1
    assert replaced.metadata.current_schema_id == 1
    assert _field_id(replaced.schema(), "note") == 9
    assert replaced.schema().find_field("category").field_id == 3
    assert replaced.spec() == PartitionSpec(PartitionField(3, 1000, IdentityTransform(), "category"), spec_id=1)
    assert replaced.sort_order() == SortOrder(SortField(source_id=1, transform=IdentityTransform()), order_id=1)
    assert replaced.properties["owner"] == "analytics"
    assert replaced.properties[TableProperties.COMMIT_MIN_RETRY_WAIT_MS] == "0"


def test_replace_table_with_an_earlier_schema(catalog: InMemoryCatalog, table: Table, events_schema: Schema) -> None:
    with_note = Schema(*events_schema.fields, NestedField(field_id=9, name="note", field_type=StringType(), required=False))
    catalog.replace_table("default.events", schema=with_note)
    replaced = catalog.replace_table("default.events", schema=events_schema)

    assert replaced.metadata.current_schema_id == 0
    assert sorted(replaced.schemas().keys()) == [0, 1]
    assert replaced.metadata.last_column_id == 9
    assert len(replaced.history()) == 2


def test_replace_table_with_the_same_definition(catalog: InMemoryCatalog, table: Table, events_schema: Schema) -> None:
    replaced = catalog.replace_table("default.events", schema=events_schema, properties=NO_WAIT_PROPERTIES)

    assert len(replaced.history()) == 1
    assert replaced.metadata_location != table.metadata_location
    assert replaced.metadata.current_schema_id == 0
    assert sorted(replaced.schemas().keys()) == [0]
    assert replaced.metadata.last_updated_ms > table.metadata.last_updated_ms

    again = catalog.create_or_replace_table("default.events", schema=events_schema)
    assert len(again.history()) == 2


def test_stale_table_does_not_commit_into_a_recreated_one(
    catalog: InMemoryCatalog, table: Table, events_schema: Schema
) -> None:
    catalog.drop_table("default.events")
    recreated = catalog.create_table("default.events", schema=events_schema, properties=NO_WAIT_PROPERTIES)

    with pytest.raises(CommitConflictError) as exc_info:
        table.transaction().set_properties(owner="analytics").commit_transaction()

    assert "Table UUID does not match" in str(exc_info.value.__cause__)
    assert "owner" not in recreated.refresh().properties
    assert len(recreated.history()) == 0


class DroppingCatalog(InMemoryCatalog):
    """Drops the table right before swapping its pointer."""

    def compare_and_swap(self, identifier: Union[str, Identifier], expected_location: str, new_location: str) -> None:
        self.drop_table(identifier)
        super().compare_and_swap(identifier, expected_location, new_location)


def test_metadata_file_is_removed_when_the_table_is_dropped_during_commit(events_schema: Schema) -> None:
    catalog = DroppingCatalog("test", warehouse=f"memory://{uuid.uuid4()}")
    catalog.create_namespace("default")
    table = catalog.create_table("default.events", schema=events_schema, properties=NO_WAIT_PROPERTIES)
    files_before = _metadata_files(table)

    with pytest.raises(NoSuchTableError):
        table.transaction().set_properties(owner="analytics").commit_transaction()

    assert _metadata_files(table) == files_before


def test_create_or_replace_table(catalog: InMemoryCatalog, events_schema: Schema) -> None:
    created = catalog.create_or_replace_table("default.logs", schema=events_schema)
    assert len(created.history()) == 0

    replaced = catalog.create_or_replace_table("default.logs", schema=Schema(*events_schema.fields[:2]))
    assert replaced.metadata.table_uuid == created.metadata.table_uuid
    assert [field.name for field in replaced.schema().fields] == ["id", "ts"]
    assert len(replaced.history()) == 1


def test_table_refresh(catalog: InMemoryCatalog, table: Table) -> None:
    other = catalog.load_table("default.events")
    other.transaction().set_properties(owner="analytics").commit_transaction()

    assert "owner" not in table.properties
    assert table.refresh().properties["owner"] == "analytics"
    assert table == other


def test_autocommit_transaction(table: Table) -> None:
    Transaction(table, autocommit=True).set_properties(owner="analytics")
    assert table.properties["owner"] == "analytics"
    assert len(table.history()) == 1


def _field_id(schema: Schema, name: str) -> int:
    return schema.find_field(name).field_id
