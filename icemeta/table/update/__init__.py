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
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from functools import singledispatch, wraps
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    Generic,
    List,
    Literal,
    Optional,
    Tuple,
    TypeVar,
    Union,
)

from pydantic import Field, field_validator

from icemeta.exceptions import CommitFailedException, InvalidOperationError, ValidationError
from icemeta.partitioning import PartitionSpec
from icemeta.schema import Schema
from icemeta.table.metadata import MetadataLogEntry, TableMetadata, TableMetadataUtil
from icemeta.table.sorting import SortOrder
from icemeta.transforms import Transform, parse_transform
from icemeta.typedef import IcemetaBaseModel, Properties
from icemeta.utils.datetime import datetime_to_millis

if TYPE_CHECKING:
    from icemeta.table import Transaction

U = TypeVar("U")

LAST_ADDED = -1


class TableUpdateAction(Enum):
    add_schema = "add-schema"
    set_current_schema = "set-current-schema"
    add_spec = "add-spec"
    set_default_spec = "set-default-spec"
    add_sort_order = "add-sort-order"
    set_default_sort_order = "set-default-sort-order"
    set_location = "set-location"
    set_properties = "set-properties"
    remove_properties = "remove-properties"
    replace_table = "replace-table"


class TableUpdate(IcemetaBaseModel):
    action: TableUpdateAction


class AddSchemaUpdate(TableUpdate):
    action: TableUpdateAction = TableUpdateAction.add_schema
    schema_: Schema = Field(alias="schema")
    last_column_id: int = Field(alias="last-column-id")


class SetCurrentSchemaUpdate(TableUpdate):
    action: TableUpdateAction = TableUpdateAction.set_current_schema
    schema_id: int = Field(
        alias="schema-id", description="Schema ID to set as current, or -1 to set last added schema", default=LAST_ADDED
    )


class AddPartitionSpecUpdate(TableUpdate):
    action: TableUpdateAction = TableUpdateAction.add_spec
    spec: PartitionSpec


class SetDefaultSpecUpdate(TableUpdate):
    action: TableUpdateAction = TableUpdateAction.set_default_spec
    spec_id: int = Field(
        alias="spec-id", description="Partition spec ID to set as the default, or -1 to set last added spec", default=LAST_ADDED
    )


class AddSortOrderUpdate(TableUpdate):
    action: TableUpdateAction = TableUpdateAction.add_sort_order
    sort_order: SortOrder = Field(alias="sort-order")


class SetDefaultSortOrderUpdate(TableUpdate):
    action: TableUpdateAction = TableUpdateAction.set_default_sort_order
    sort_order_id: int = Field(
        alias="sort-order-id",
        description="Sort order ID to set as the default, or -1 to set last added sort order",
        default=LAST_ADDED,
    )


class SetLocationUpdate(TableUpdate):
    action: TableUpdateAction = TableUpdateAction.set_location
    location: str


class SetPropertiesUpdate(TableUpdate):
    action: TableUpdateAction = TableUpdateAction.set_properties
    updates: Dict[str, str]

    @field_validator("updates", mode="before")
    @classmethod
    def transform_properties_dict_value_to_str(cls, properties: Properties) -> Dict[str, str]:
        return {key: str(value) for key, value in properties.items()}


class RemovePropertiesUpdate(TableUpdate):
    action: TableUpdateAction = TableUpdateAction.remove_properties
    removals: List[str]


class ReplaceTableUpdate(TableUpdate):
    """Marks a replace of the table definition, which is a new version even when nothing else changed."""

    action: TableUpdateAction = TableUpdateAction.replace_table


class TableRequirement(IcemetaBaseModel):
    """A precondition on the metadata a change was computed against, checked again at commit time."""

    type: str

    def validate(self, base_metadata: Optional[TableMetadata]) -> None:
        """Check the requirement against the metadata the change is about to be applied to.

        Raises:
            CommitFailedException: When the requirement is not met.
        """
        if base_metadata is None:
            raise CommitFailedException("Requirement failed: current table metadata is missing")
        self._check(base_metadata)

    @abstractmethod
    def _check(self, base_metadata: TableMetadata) -> None:
        ...


def _unchanged(what: str, expected: int, found: int) -> None:
    if expected != found:
        raise CommitFailedException(f"Requirement failed: {what} has changed: expected {expected}, found {found}")


class AssertTableUUID(TableRequirement):
    """Guards against a table that was dropped and recreated under the same name."""

    type: Literal["assert-table-uuid"] = Field(default="assert-table-uuid")
    uuid: uuid.UUID

    def _check(self, base_metadata: TableMetadata) -> None:
        if self.uuid != base_metadata.table_uuid:
            raise CommitFailedException(f"Table UUID does not match: {self.uuid} != {base_metadata.table_uuid}")


class AssertLastAssignedFieldId(TableRequirement):
    """Schema changes that hand out column ids need the counter they started from."""

    type: Literal["assert-last-assigned-field-id"] = Field(default="assert-last-assigned-field-id")
    last_assigned_field_id: int = Field(..., alias="last-assigned-field-id")

    def _check(self, base_metadata: TableMetadata) -> None:
        _unchanged("last assigned field id", self.last_assigned_field_id, base_metadata.last_column_id)


class AssertCurrentSchemaId(TableRequirement):
    type: Literal["assert-current-schema-id"] = Field(default="assert-current-schema-id")
    current_schema_id: int = Field(..., alias="current-schema-id")

    def _check(self, base_metadata: TableMetadata) -> None:
        _unchanged("current schema id", self.current_schema_id, base_metadata.current_schema_id)


class AssertLastAssignedPartitionId(TableRequirement):
    """Spec changes that hand out partition field ids need the counter they started from."""

    type: Literal["assert-last-assigned-partition-id"] = Field(default="assert-last-assigned-partition-id")
    last_assigned_partition_id: int = Field(..., alias="last-assigned-partition-id")

    def _check(self, base_metadata: TableMetadata) -> None:
        _unchanged("last assigned partition id", self.last_assigned_partition_id, base_metadata.last_partition_id)


class AssertDefaultSpecId(TableRequirement):
    type: Literal["assert-default-spec-id"] = Field(default="assert-default-spec-id")
    default_spec_id: int = Field(..., alias="default-spec-id")

    def _check(self, base_metadata: TableMetadata) -> None:
        _unchanged("default spec id", self.default_spec_id, base_metadata.default_spec_id)


class AssertDefaultSortOrderId(TableRequirement):
    type: Literal["assert-default-sort-order-id"] = Field(default="assert-default-sort-order-id")
    default_sort_order_id: int = Field(..., alias="default-sort-order-id")

    def _check(self, base_metadata: TableMetadata) -> None:
        _unchanged("default sort order id", self.default_sort_order_id, base_metadata.default_sort_order_id)


UpdatesAndRequirements = Tuple[Tuple[TableUpdate, ...], Tuple[TableRequirement, ...]]

# A pending change is a function of the metadata it is applied to. The commit
# engine calls it again with the latest metadata when a commit has to be retried.
TableChange = Callable[[TableMetadata], UpdatesAndRequirements]


class _TableMetadataUpdateContext:
    _updates: List[TableUpdate]

    def __init__(self) -> None:
        self._updates = []

    def add_update(self, update: TableUpdate) -> None:
        self._updates.append(update)

    def is_added_schema(self, schema_id: int) -> bool:
        return any(update.schema_.schema_id == schema_id for update in self._updates if isinstance(update, AddSchemaUpdate))

    def is_added_partition_spec(self, spec_id: int) -> bool:
        return any(update.spec.spec_id == spec_id for update in self._updates if isinstance(update, AddPartitionSpecUpdate))

    def is_added_sort_order(self, sort_order_id: int) -> bool:
        return any(
            update.sort_order.order_id == sort_order_id for update in self._updates if isinstance(update, AddSortOrderUpdate)
        )

    def has_changes(self) -> bool:
        return len(self._updates) > 0


@singledispatch
def _apply_table_update(update: TableUpdate, base_metadata: TableMetadata, context: _TableMetadataUpdateContext) -> TableMetadata:
    """Apply a table update to the table metadata.

    Args:
        update: The update to be applied.
        base_metadata: The base metadata to be updated.
        context: Contains previous updates and other change tracking information in the current transaction.

    Returns:
        The updated metadata.
    """
    raise NotImplementedError(f"Unsupported table update: {update}")


@_apply_table_update.register(SetLocationUpdate)
def _(update: SetLocationUpdate, base_metadata: TableMetadata, context: _TableMetadataUpdateContext) -> TableMetadata:
    if update.location == base_metadata.location:
        return base_metadata

    context.add_update(update)
    return base_metadata.model_copy(update={"location": update.location})


@_apply_table_update.register(SetPropertiesUpdate)
def _(update: SetPropertiesUpdate, base_metadata: TableMetadata, context: _TableMetadataUpdateContext) -> TableMetadata:
    if len(update.updates) == 0:
        return base_metadata

    properties = dict(base_metadata.properties)
    properties.update(update.updates)

    context.add_update(update)
    return base_metadata.model_copy(update={"properties": properties})


@_apply_table_update.register(ReplaceTableUpdate)
def _(update: ReplaceTableUpdate, base_metadata: TableMetadata, context: _TableMetadataUpdateContext) -> TableMetadata:
    context.add_update(update)
    return base_metadata


@_apply_table_update.register(RemovePropertiesUpdate)
def _(update: RemovePropertiesUpdate, base_metadata: TableMetadata, context: _TableMetadataUpdateContext) -> TableMetadata:
    if not any(key in base_metadata.properties for key in update.removals):
        return base_metadata

    properties = dict(base_metadata.properties)
    for key in update.removals:
        # Removing a key that is not set is allowed
        properties.pop(key, None)

    context.add_update(update)
    return base_metadata.model_copy(update={"properties": properties})


@_apply_table_update.register(AddSchemaUpdate)
def _(update: AddSchemaUpdate, base_metadata: TableMetadata, context: _TableMetadataUpdateContext) -> TableMetadata:
    if base_metadata.schema_by_id(update.schema_.schema_id) is not None:
        raise ValidationError(f"Schema with id {update.schema_.schema_id} already exists")

    metadata_updates: Dict[str, Any] = {
        "last_column_id": max(base_metadata.last_column_id, update.last_column_id, update.schema_.highest_field_id),
        "schemas": base_metadata.schemas + [update.schema_],
    }

    context.add_update(update)
    return base_metadata.model_copy(update=metadata_updates)


@_apply_table_update.register(SetCurrentSchemaUpdate)
def _(update: SetCurrentSchemaUpdate, base_metadata: TableMetadata, context: _TableMetadataUpdateContext) -> TableMetadata:
    new_schema_id = update.schema_id
    if new_schema_id == LAST_ADDED:
        # The last added schema should be in base_metadata.schemas at this point
        new_schema_id = max(schema.schema_id for schema in base_metadata.schemas)
        if not context.is_added_schema(new_schema_id):
            raise ValidationError("Cannot set current schema to last added schema when no schema has been added")

    if new_schema_id == base_metadata.current_schema_id:
        return base_metadata

    if base_metadata.schema_by_id(new_schema_id) is None:
        raise ValidationError(f"Schema with id {new_schema_id} does not exist")

    context.add_update(update)
    return base_metadata.model_copy(update={"current_schema_id": new_schema_id})


@_apply_table_update.register(AddPartitionSpecUpdate)
def _(update: AddPartitionSpecUpdate, base_metadata: TableMetadata, context: _TableMetadataUpdateContext) -> TableMetadata:
    if base_metadata.spec_by_id(update.spec.spec_id) is not None:
        raise ValidationError(f"Partition spec with id {update.spec.spec_id} already exists")

    metadata_updates: Dict[str, Any] = {
        "partition_specs": base_metadata.partition_specs + [update.spec],
        "last_partition_id": max(base_metadata.last_partition_id, update.spec.last_assigned_field_id),
    }

    context.add_update(update)
    return base_metadata.model_copy(update=metadata_updates)


@_apply_table_update.register(SetDefaultSpecUpdate)
def _(update: SetDefaultSpecUpdate, base_metadata: TableMetadata, context: _TableMetadataUpdateContext) -> TableMetadata:
    new_spec_id = update.spec_id
    if new_spec_id == LAST_ADDED:
        new_spec_id = max(spec.spec_id for spec in base_metadata.partition_specs)
        if not context.is_added_partition_spec(new_spec_id):
            raise ValidationError("Cannot set default partition spec to the last added one when no spec has been added")

    if new_spec_id == base_metadata.default_spec_id:
        return base_metadata

    if base_metadata.spec_by_id(new_spec_id) is None:
        raise ValidationError(f"Failed to find spec with id {new_spec_id}")

    context.add_update(update)
    return base_metadata.model_copy(update={"default_spec_id": new_spec_id})


@_apply_table_update.register(AddSortOrderUpdate)
def _(update: AddSortOrderUpdate, base_metadata: TableMetadata, context: _TableMetadataUpdateContext) -> TableMetadata:
    if base_metadata.sort_order_by_id(update.sort_order.order_id) is not None:
        raise ValidationError(f"Sort order with id {update.sort_order.order_id} already exists")

    context.add_update(update)
    return base_metadata.model_copy(update={"sort_orders": base_metadata.sort_orders + [update.sort_order]})


@_apply_table_update.register(SetDefaultSortOrderUpdate)
def _(update: SetDefaultSortOrderUpdate, base_metadata: TableMetadata, context: _TableMetadataUpdateContext) -> TableMetadata:
    new_sort_order_id = update.sort_order_id
    if new_sort_order_id == LAST_ADDED:
        # The last added sort order should be in base_metadata.sort_orders at this point
        new_sort_order_id = max(sort_order.order_id for sort_order in base_metadata.sort_orders)
        if not context.is_added_sort_order(new_sort_order_id):
            raise ValidationError("Cannot set default sort order to the last added one when no sort order has been added")

    if new_sort_order_id == base_metadata.default_sort_order_id:
        return base_metadata

    if new_sort_order_id != 0 and base_metadata.sort_order_by_id(new_sort_order_id) is None:
        raise ValidationError(f"Sort order with id {new_sort_order_id} does not exist")

    context.add_update(update)
    return base_metadata.model_copy(update={"default_sort_order_id": new_sort_order_id})


def update_table_metadata(
    base_metadata: TableMetadata, updates: Tuple[TableUpdate, ...], metadata_location: Optional[str] = None
) -> TableMetadata:
    """Update the table metadata with the given updates in one transaction.

    The base metadata is never modified, a new metadata object is returned. When the
    location of the base metadata file is given, it is appended to the metadata log.

    Args:
        base_metadata: The base metadata to be updated.
        updates: The updates in one transaction.
        metadata_location: Location of the metadata file that holds the base metadata.

    Returns:
        The metadata with the updates applied.

    Raises:
        ValidationError: When the updates do not add up to valid table metadata.
    """
    context = _TableMetadataUpdateContext()
    new_metadata = base_metadata

    for update in updates:
        new_metadata = _apply_table_update(update, new_metadata, context)

    if context.has_changes():
        if metadata_location:
            new_metadata = new_metadata.model_copy(
                update={
                    "metadata_log": base_metadata.metadata_log
                    + [MetadataLogEntry(metadata_file=metadata_location, timestamp_ms=base_metadata.last_updated_ms)]
                }
            )
        new_metadata = new_metadata.model_copy(
            update={"last_updated_ms": max(datetime_to_millis(datetime.now().astimezone()), base_metadata.last_updated_ms + 1)}
        )

    # The current spec and sort order have to be resolvable in the current schema
    new_metadata.spec().check_compatible(new_metadata.schema())
    new_metadata.sort_order().check_compatible(new_metadata.schema())

    return TableMetadataUtil.parse_obj(new_metadata.model_dump())


def requested_transform(transform: Union[str, Transform[Any, Any]]) -> Transform[Any, Any]:
    """Parse the transform of an evolution request, an unknown transform makes the request invalid."""
    try:
        return parse_transform(transform)
    except ValidationError as e:
        raise InvalidOperationError(str(e)) from e


def replayable(func: Callable[..., U]) -> Callable[..., U]:
    """Record a successful call on a metadata builder so it can be replayed on newer metadata.

    Only the outermost call is recorded, builder methods that call other builder
    methods are replayed once.
    """

    @wraps(func)
    def wrapper(self: UpdateTableMetadata[Any], *args: Any, **kwargs: Any) -> U:
        self._depth += 1
        try:
            result = func(self, *args, **kwargs)
        finally:
            self._depth -= 1
        if self._depth == 0:
            self._calls.append((func.__name__, args, kwargs))
        return result

    return wrapper


class UpdateTableMetadata(ABC, Generic[U]):
    """Base class of the builders that propose a change to the metadata of a table.

    A builder is bound to the metadata it was created from. Calls to its public methods
    are recorded, which lets the commit engine rebuild the same logical change on top of
    metadata that moved on concurrently.
    """

    _transaction: Transaction
    _base_metadata: TableMetadata
    _calls: List[Tuple[str, Tuple[Any, ...], Dict[str, Any]]]
    _depth: int

    def __init__(self, transaction: Transaction, base_metadata: Optional[TableMetadata] = None) -> None:
        self._transaction = transaction
        self._base_metadata = base_metadata if base_metadata is not None else transaction.table_metadata
        self._calls = []
        self._depth = 0

    @abstractmethod
    def _commit(self) -> UpdatesAndRequirements:
        """Produce the updates and requirements for the base metadata of this builder."""

    @abstractmethod
    def _rebase(self, base_metadata: TableMetadata) -> U:
        """Create a builder with the same options on top of other metadata."""

    def _replay(self, base_metadata: TableMetadata) -> UpdatesAndRequirements:
        builder: UpdateTableMetadata[U] = self._rebase(base_metadata)  # type: ignore
        for name, args, kwargs in self._calls:
            getattr(builder, name)(*args, **kwargs)
        return builder._commit()

    def commit(self) -> None:
        self._transaction._stage(self._replay)

    def __exit__(self, exctype: Any, value: Any, traceback: Any) -> None:
        """Close and commit the change, unless the block raised."""
        if exctype is None:
            self.commit()

    def __enter__(self) -> U:
        """Update the table."""
        return self  # type: ignore
