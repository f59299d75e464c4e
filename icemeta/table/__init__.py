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
from __future__ import annotations

import uuid
from functools import partial
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    List,
    Optional,
    Tuple,
)

from pydantic import Field

from icemeta.exceptions import NotFoundError
from icemeta.io import FileIO
from icemeta.partitioning import PartitionSpec, assign_fresh_partition_spec_ids
from icemeta.schema import Schema, reassign_ids_by_name
from icemeta.table.allocator import field_id_allocator, partition_field_id_allocator
from icemeta.table.metadata import MetadataLogEntry, TableMetadata
from icemeta.table.sorting import UNSORTED_SORT_ORDER_ID, SortOrder, assign_fresh_sort_order_ids
from icemeta.table.update import (
    AddPartitionSpecUpdate,
    AddSchemaUpdate,
    AddSortOrderUpdate,
    AssertTableUUID,
    RemovePropertiesUpdate,
    ReplaceTableUpdate,
    SetCurrentSchemaUpdate,
    SetDefaultSortOrderUpdate,
    SetDefaultSpecUpdate,
    SetLocationUpdate,
    SetPropertiesUpdate,
    TableChange,
    TableUpdate,
    UpdatesAndRequirements,
    update_table_metadata,
)
from icemeta.table.update.schema import UpdateSchema
from icemeta.table.update.sorting import UpdateSortOrder
from icemeta.table.update.spec import UpdateSpec
from icemeta.typedef import EMPTY_DICT, IcemetaBaseModel, Identifier, Properties
from icemeta.types import NestedField, StructType

if TYPE_CHECKING:
    from icemeta.catalog import Catalog


class TableProperties:
    COMMIT_NUM_RETRIES = "commit.retry.num-retries"
    COMMIT_NUM_RETRIES_DEFAULT = 4

    COMMIT_MIN_RETRY_WAIT_MS = "commit.retry.min-wait-ms"
    COMMIT_MIN_RETRY_WAIT_MS_DEFAULT = 100

    COMMIT_MAX_RETRY_WAIT_MS = "commit.retry.max-wait-ms"
    COMMIT_MAX_RETRY_WAIT_MS_DEFAULT = 60 * 1000  # 1 minute

    COMMIT_TOTAL_RETRY_TIME_MS = "commit.retry.total-timeout-ms"
    COMMIT_TOTAL_RETRY_TIME_MS_DEFAULT = 30 * 60 * 1000  # 30 minutes


def _set_properties(base_metadata: TableMetadata, updates: Properties) -> UpdatesAndRequirements:
    """Merge properties into the table properties, leaving out the ones that already have the value."""
    changed = {key: value for key, value in updates.items() if base_metadata.properties.get(key) != str(value)}
    return ((SetPropertiesUpdate(updates=changed),) if changed else ()), ()


def _remove_properties(base_metadata: TableMetadata, removals: Tuple[str, ...]) -> UpdatesAndRequirements:
    present = tuple(key for key in removals if key in base_metadata.properties)
    return ((RemovePropertiesUpdate(removals=present),) if present else ()), ()


def _set_location(base_metadata: TableMetadata, location: str) -> UpdatesAndRequirements:
    location = location.rstrip("/")
    return ((SetLocationUpdate(location=location),) if location != base_metadata.location else ()), ()


def _replace_table(
    base_metadata: TableMetadata,
    schema: Schema,
    partition_spec: PartitionSpec,
    sort_order: SortOrder,
    properties: Properties,
    location: Optional[str],
) -> UpdatesAndRequirements:
    """Swap in a new definition of the table, keeping its history.

    Columns that keep their name and kind of type keep their field id, everything else
    gets fresh ids. Properties are merged into the existing ones. A replace always makes
    a new version of the metadata, also when the definition did not change.
    """
    column_ids = field_id_allocator(base_metadata)
    fresh_schema = reassign_ids_by_name(schema, base_metadata.schema(), column_ids, base_metadata.new_schema_id())

    updates: List[TableUpdate] = [ReplaceTableUpdate()]
    existing_schema = next((existing for existing in base_metadata.schemas if existing == fresh_schema), None)
    if existing_schema is None:
        updates += [
            AddSchemaUpdate(schema=fresh_schema, last_column_id=column_ids.last_assigned),
            SetCurrentSchemaUpdate(schema_id=-1),
        ]
    elif existing_schema.schema_id != base_metadata.current_schema_id:
        updates.append(SetCurrentSchemaUpdate(schema_id=existing_schema.schema_id))

    fresh_spec = assign_fresh_partition_spec_ids(
        partition_spec,
        schema,
        fresh_schema,
        partition_field_id_allocator(base_metadata),
        spec_id=base_metadata.new_partition_spec_id(),
    )
    if not fresh_spec.compatible_with(base_metadata.spec()):
        updates += [AddPartitionSpecUpdate(spec=fresh_spec), SetDefaultSpecUpdate(spec_id=-1)]

    fresh_order = assign_fresh_sort_order_ids(sort_order, schema, fresh_schema, base_metadata.new_sort_order_id())
    if fresh_order.is_unsorted:
        if base_metadata.default_sort_order_id != UNSORTED_SORT_ORDER_ID:
            updates.append(SetDefaultSortOrderUpdate(sort_order_id=UNSORTED_SORT_ORDER_ID))
    elif fresh_order.fields != base_metadata.sort_order().fields:
        updates += [AddSortOrderUpdate(sort_order=fresh_order), SetDefaultSortOrderUpdate(sort_order_id=-1)]

    updates += _set_properties(base_metadata, properties)[0]
    if location:
        updates += _set_location(base_metadata, location)[0]

    return tuple(updates), ()


def _same_table(base_metadata: TableMetadata, table_uuid: uuid.UUID) -> UpdatesAndRequirements:
    return (), (AssertTableUUID(uuid=table_uuid),)


class Transaction:
    """Stage changes to a table and commit them together.

    Every change is checked against the metadata as it looks after the changes staged
    before it, so invalid requests fail right away. Nothing is visible to other readers
    until `commit_transaction` is called.
    """

    _table: Table
    table_metadata: TableMetadata
    _table_uuid: uuid.UUID
    _autocommit: bool
    _changes: List[TableChange]

    def __init__(self, table: Table, autocommit: bool = False):
        self._table = table
        self.table_metadata = table.metadata
        # a table dropped and created again under the same name has another uuid
        self._table_uuid = table.metadata.table_uuid
        self._autocommit = autocommit
        self._changes = []

    def __enter__(self) -> Transaction:
        return self

    def __exit__(self, exctype: Any, value: Any, traceback: Any) -> None:
        """Close and commit the transaction, unless the block raised."""
        if exctype is None:
            self.commit_transaction()

    def _stage(self, change: TableChange) -> Transaction:
        updates, requirements = change(self.table_metadata)
        for requirement in requirements:
            requirement.validate(self.table_metadata)

        self.table_metadata = update_table_metadata(self.table_metadata, updates)
        self._changes.append(change)

        if self._autocommit:
            self.commit_transaction()
        return self

    def set_properties(self, properties: Properties = EMPTY_DICT, **kwargs: Any) -> Transaction:
        """Set table properties, overwriting the values of keys that are already set.

        Args:
            properties: The properties set on the table.
            kwargs: Properties can also be passed as kwargs.

        Returns:
            The alter table builder.
        """
        if properties and kwargs:
            raise ValueError("Cannot pass both properties and kwargs")
        updates = properties or kwargs
        return self._stage(partial(_set_properties, updates=dict(updates)))

    def remove_properties(self, *removals: str) -> Transaction:
        """Remove properties, keys that are not set are ignored.

        Args:
            removals: Keys of the properties to remove.

        Returns:
            The alter table builder.
        """
        return self._stage(partial(_remove_properties, removals=removals))

    def update_location(self, location: str) -> Transaction:
        """Move the base location of the table, existing files stay where they are."""
        return self._stage(partial(_set_location, location=location))

    def update_schema(self, allow_incompatible_changes: bool = False, case_sensitive: bool = True) -> UpdateSchema:
        """Create a new UpdateSchema to alter the columns of this table.

        Args:
            allow_incompatible_changes: If changes are allowed that might break downstream consumers.
            case_sensitive: If field names are case-sensitive.

        Returns:
            A new UpdateSchema.
        """
        return UpdateSchema(self, allow_incompatible_changes=allow_incompatible_changes, case_sensitive=case_sensitive)

    def update_spec(self, case_sensitive: bool = True) -> UpdateSpec:
        """Create a new UpdateSpec to evolve the partitioning of this table.

        Returns:
            A new UpdateSpec.
        """
        return UpdateSpec(self, case_sensitive=case_sensitive)

    def replace_sort_order(self, case_sensitive: bool = True) -> UpdateSortOrder:
        """Create a new UpdateSortOrder that replaces the sort order of this table.

        Returns:
            A new UpdateSortOrder.
        """
        return UpdateSortOrder(self, case_sensitive=case_sensitive)

    def replace_table(
        self,
        schema: Schema,
        partition_spec: PartitionSpec,
        sort_order: SortOrder,
        properties: Properties = EMPTY_DICT,
        location: Optional[str] = None,
    ) -> Transaction:
        """Replace the definition of the table in a single change.

        Args:
            schema: The new schema, its field ids are ignored.
            partition_spec: The new partition spec, bound to `schema`.
            sort_order: The new sort order, bound to `schema`.
            properties: Properties merged into the current properties.
            location: A new location, the current one is kept when omitted.

        Returns:
            The alter table builder.
        """
        return self._stage(
            partial(
                _replace_table,
                schema=schema,
                partition_spec=partition_spec,
                sort_order=sort_order,
                properties=dict(properties),
                location=location,
            )
        )

    def commit_transaction(self) -> Table:
        """Commit the changes to the catalog.

        Returns:
            The table with the updates applied.

        Raises:
            CommitConflictError: When the changes could not be committed within the retry budget.
        """
        if len(self._changes) > 0:
            guard = partial(_same_table, table_uuid=self._table_uuid)
            self._table._do_commit((guard, *self._changes))  # pylint: disable=W0212
            self._changes = []
            self.table_metadata = self._table.metadata
        return self._table


class CommitTableResponse(IcemetaBaseModel):
    metadata: TableMetadata
    metadata_location: str = Field(alias="metadata-location")


class Table:
    identifier: Identifier
    metadata: TableMetadata
    metadata_location: str
    io: FileIO
    catalog: Catalog

    def __init__(
        self, identifier: Identifier, metadata: TableMetadata, metadata_location: str, io: FileIO, catalog: Catalog
    ) -> None:
        self.identifier = identifier
        self.metadata = metadata
        self.metadata_location = metadata_location
        self.io = io
        self.catalog = catalog

    def transaction(self) -> Transaction:
        return Transaction(self)

    def refresh(self) -> Table:
        """Refresh the current table metadata."""
        fresh = self.catalog.load_table(self.identifier[1:])
        self.metadata = fresh.metadata
        self.io = fresh.io
        self.metadata_location = fresh.metadata_location
        return self

    def name(self) -> Identifier:
        """Return the identifier of this table, prefixed with the catalog name."""
        return self.identifier

    def schema(self) -> Schema:
        """Return the schema for this table."""
        return self.metadata.schema()

    def schemas(self) -> Dict[int, Schema]:
        return self.metadata.schemas_by_id()

    def spec(self) -> PartitionSpec:
        """Return the partition spec that new data files are written with."""
        return self.metadata.spec()

    def specs(self) -> Dict[int, PartitionSpec]:
        return self.metadata.specs()

    def historical_spec(self, spec_id: int) -> PartitionSpec:
        """Return the spec with the given id, which stays available after the partitioning evolved.

        Raises:
            NotFoundError: When the table never had a spec with this id.
        """
        if spec := self.metadata.spec_by_id(spec_id):
            return spec
        raise NotFoundError(f"Partition spec with id {spec_id} does not exist")

    def partition_type(self, spec_id: Optional[int] = None) -> StructType:
        """Return the partition struct of a spec, the current one by default.

        Tombstones whose source column was deleted since take its type from an older schema.
        """
        spec = self.spec() if spec_id is None else self.historical_spec(spec_id)
        return spec.partition_type(self.schema(), self.resolve_column_by_id)

    def sort_order(self) -> SortOrder:
        return self.metadata.sort_order()

    def sort_orders(self) -> Dict[int, SortOrder]:
        return {order.order_id: order for order in self.metadata.sort_orders}

    def resolve_column_by_id(self, field_id: int) -> NestedField:
        """Find the column with the given field id, also when it was dropped since.

        Raises:
            NotFoundError: When no schema of this table has the field id.
        """
        return self.metadata.resolve_column_by_id(field_id)

    @property
    def properties(self) -> Dict[str, str]:
        return self.metadata.properties

    def location(self) -> str:
        return self.metadata.location

    def history(self) -> List[MetadataLogEntry]:
        """Return the previous metadata files of this table, oldest first."""
        return self.metadata.metadata_log

    def update_schema(self, allow_incompatible_changes: bool = False, case_sensitive: bool = True) -> UpdateSchema:
        return UpdateSchema(
            transaction=Transaction(self, autocommit=True),
            allow_incompatible_changes=allow_incompatible_changes,
            case_sensitive=case_sensitive,
        )

    def update_spec(self, case_sensitive: bool = True) -> UpdateSpec:
        return UpdateSpec(Transaction(self, autocommit=True), case_sensitive=case_sensitive)

    def replace_sort_order(self, case_sensitive: bool = True) -> UpdateSortOrder:
        return UpdateSortOrder(Transaction(self, autocommit=True), case_sensitive=case_sensitive)

    def _do_commit(self, changes: Tuple[TableChange, ...]) -> None:
        response = self.catalog.commit_table(self, changes)
        self.metadata = response.metadata
        self.metadata_location = response.metadata_location

    def __eq__(self, other: Any) -> bool:
        """Tables are equal when they point at the same metadata file with the same content."""
        if not isinstance(other, Table):
            return False
        return (self.identifier, self.metadata_location, self.metadata) == (
            other.identifier,
            other.metadata_location,
            other.metadata,
        )

    def __repr__(self) -> str:
        """Return the string representation of the Table class."""
        table_name = ".".join(self.identifier[1:])
        schema_str = ",\n  ".join(str(column) for column in self.schema().columns)
        partition_str = f"partition by: [{', '.join(field.name for field in self.spec().fields)}]"
        sort_order_str = f"sort order: [{', '.join(str(field) for field in self.sort_order().fields)}]"
        return f"{table_name}(\n  {schema_str}\n),\n{partition_str},\n{sort_order_str}"
