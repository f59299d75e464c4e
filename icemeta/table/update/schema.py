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

from dataclasses import dataclass, field
from enum import Enum
from functools import singledispatch
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    List,
    NamedTuple,
    Optional,
    Set,
    Tuple,
    Union,
)

from icemeta.exceptions import (
    InvalidOperationError,
    NotFoundError,
    ResolveError,
    UnsafeTypeChangeError,
)
from icemeta.schema import Schema, assign_fresh_schema_ids, index_by_id, promote
from icemeta.table.allocator import IdAllocator, field_id_allocator
from icemeta.table.metadata import TableMetadata
from icemeta.table.update import (
    AddSchemaUpdate,
    AssertCurrentSchemaId,
    AssertLastAssignedFieldId,
    SetCurrentSchemaUpdate,
    UpdatesAndRequirements,
    UpdateTableMetadata,
    replayable,
)
from icemeta.types import (
    IcebergType,
    ListType,
    MapType,
    NestedField,
    StructType,
)

if TYPE_CHECKING:
    from icemeta.table import Transaction

TABLE_ROOT_ID = -1

ColumnPath = Union[str, Tuple[str, ...]]


class _Position(Enum):
    FIRST = "first"
    BEFORE = "before"
    AFTER = "after"


class _Move(NamedTuple):
    field_id: int
    position: _Position
    anchor_id: Optional[int] = None


@dataclass
class _PendingChanges:
    """Staged column changes, keyed by field id.

    Additions and moves are keyed by the id of the field that owns the struct
    they go into, TABLE_ROOT_ID for the top level.
    """

    added: Dict[int, List[NestedField]] = field(default_factory=dict)
    changed: Dict[int, NestedField] = field(default_factory=dict)
    dropped: Set[int] = field(default_factory=set)
    moves: Dict[int, List[_Move]] = field(default_factory=dict)

    def touches(self, field_id: int) -> bool:
        return any(field_id in (move.field_id, move.anchor_id) for moves in self.moves.values() for move in moves)


def _dotted(path: ColumnPath) -> str:
    return ".".join(path) if isinstance(path, tuple) else path


class UpdateSchema(UpdateTableMetadata["UpdateSchema"]):
    """Evolve the current schema of a table into a new schema version.

    Columns are looked up by their full dotted name when a change is requested,
    and tracked by field id from then on. Renames and moves keep the id, the id
    of a dropped column is never handed out again.
    """

    _schema: Schema
    _allocator: IdAllocator
    _identifier_field_names: Set[str]
    _pending: _PendingChanges
    _added_ids: Dict[str, int]
    _parents: Dict[int, int]

    def __init__(
        self,
        transaction: Transaction,
        allow_incompatible_changes: bool = False,
        case_sensitive: bool = True,
        base_metadata: Optional[TableMetadata] = None,
    ) -> None:
        super().__init__(transaction, base_metadata)
        self._schema = self._base_metadata.schema()
        self._allocator = field_id_allocator(self._base_metadata)
        self._identifier_field_names = self._schema.identifier_field_names()
        self._pending = _PendingChanges()
        self._added_ids = {}
        self._parents = dict(self._schema._lazy_id_to_parent)
        self._allow_incompatible_changes = allow_incompatible_changes
        self._case_sensitive = case_sensitive

    def _rebase(self, base_metadata: TableMetadata) -> UpdateSchema:
        return UpdateSchema(
            self._transaction,
            allow_incompatible_changes=self._allow_incompatible_changes,
            case_sensitive=self._case_sensitive,
            base_metadata=base_metadata,
        )

    def _lookup(self, path: ColumnPath) -> Tuple[str, NestedField]:
        name = _dotted(path)
        return name, self._schema.find_field(name, self._case_sensitive)

    def _parent_of(self, field_id: int) -> int:
        return self._parents.get(field_id, TABLE_ROOT_ID)

    def _stage(self, column: NestedField, **changes: Any) -> None:
        current = self._pending.changed.get(column.field_id, column)
        values = {"name": current.name, "field_type": current.field_type, "required": current.required, "doc": current.doc}
        values.update(changes)
        self._pending.changed[column.field_id] = NestedField(field_id=column.field_id, **values)

    def _check_not_dropped(self, name: str, column: NestedField) -> None:
        if column.field_id in self._pending.dropped:
            raise InvalidOperationError(f"Cannot update a column that will be deleted: {name}")

    @replayable
    def case_sensitive(self, case_sensitive: bool) -> UpdateSchema:
        """Set whether column names are matched case-sensitively."""
        self._case_sensitive = case_sensitive
        return self

    @replayable
    def add_column(
        self, path: ColumnPath, field_type: IcebergType, doc: Optional[str] = None, required: bool = False
    ) -> UpdateSchema:
        """Add a new column to a nested struct or add a new top-level column.

        A "." in a string is ambiguous, it may separate a path or be part of a name.
        Pass a tuple to add a nested column or a column with a "." in its name.

        Nested types get fresh ids. The column is appended to its parent struct,
        use one of the move methods to place it elsewhere.

        Args:
            path: Name for the new column.
            field_type: Type for the new column.
            doc: Documentation string for the new column.
            required: Whether the new column is required.

        Returns:
            This for method chaining.

        Raises:
            InvalidOperationError: When the parent is not a struct, or the name is already taken.
            UnsafeTypeChangeError: When adding a required column without allowing incompatible changes.
        """
        if isinstance(path, str):
            if "." in path:
                raise InvalidOperationError(f"Cannot add column with ambiguous name: {path}, provide a tuple instead")
            path = (path,)

        full_name = ".".join(path)
        if required and not self._allow_incompatible_changes:
            # existing rows have no value for the new column
            raise UnsafeTypeChangeError(f"Incompatible change: cannot add required column: {full_name}")

        *parent_path, name = path
        parent_id = self._struct_owner(name, ".".join(parent_path)) if parent_path else TABLE_ROOT_ID

        # renamed columns count under their new name, deleted ones not at all
        if self._fold(name) in {self._fold(existing) for existing in self._struct_names(parent_id)}:
            raise InvalidOperationError(f"Cannot add column, name already exists: {full_name}")
        if self._fold(name) in {self._fold(added.name) for added in self._pending.added.get(parent_id, [])}:
            raise InvalidOperationError(f"Cannot add column, name is already added: {full_name}")

        # the column id comes before the ids of anything nested in it
        field_id = self._allocator.next_id()
        column = NestedField(
            field_id=field_id,
            name=name,
            field_type=assign_fresh_schema_ids(field_type, self._allocator),
            required=required,
            doc=doc,
        )
        self._pending.added.setdefault(parent_id, []).append(column)
        self._added_ids[full_name] = field_id
        self._parents[field_id] = parent_id
        return self

    def _struct_owner(self, name: str, parent_name: str) -> int:
        """Return the id of the field that holds the struct a new column goes into."""
        try:
            parent = self._schema.find_field(parent_name, self._case_sensitive)
        except NotFoundError as e:
            raise InvalidOperationError(f"Cannot add column '{name}' to missing parent: {parent_name}") from e

        if isinstance(parent.field_type, ListType):
            parent = parent.field_type.element_field
        elif isinstance(parent.field_type, MapType):
            parent = parent.field_type.value_field

        if not isinstance(parent.field_type, StructType):
            raise InvalidOperationError(f"Cannot add column '{name}' to non-struct type: {parent_name}")
        if parent.field_id in self._pending.dropped:
            raise InvalidOperationError(f"Cannot add column '{name}' to a struct that will be deleted: {parent_name}")
        return parent.field_id

    @replayable
    def delete_column(self, path: ColumnPath) -> UpdateSchema:
        """Delete a column, its id is retired.

        Raises:
            NotFoundError: When the column does not exist.
            InvalidOperationError: When the column has pending changes, or the current
                partition spec or sort order is derived from it.
        """
        name, column = self._lookup(path)

        if column.field_id in self._pending.added:
            raise InvalidOperationError(f"Cannot delete a column that has additions: {name}")
        if column.field_id in self._pending.changed:
            raise InvalidOperationError(f"Cannot delete a column that has updates: {name}")
        if self._pending.touches(column.field_id):
            raise InvalidOperationError(f"Cannot delete a column that is part of a move: {name}")

        removed_ids = {column.field_id, *index_by_id(column.field_type)}
        for partition_field in self._base_metadata.spec().active_fields:
            if partition_field.source_id in removed_ids:
                raise InvalidOperationError(
                    f"Cannot delete column {name}: it is the source of partition field {partition_field.name}"
                )
        if any(sort_field.source_id in removed_ids for sort_field in self._base_metadata.sort_order().fields):
            raise InvalidOperationError(f"Cannot delete column {name}: the current sort order references it")

        self._pending.dropped.add(column.field_id)
        return self

    @replayable
    def rename_column(self, path_from: ColumnPath, new_name: str) -> UpdateSchema:
        """Give a column a new name, the field id stays the same.

        Args:
            path_from: The path to the column to be renamed.
            new_name: The new name of the column, not a path.

        Raises:
            NotFoundError: When the column does not exist.
            InvalidOperationError: When the column will be deleted or a sibling already has the name.
        """
        name, column = self._lookup(path_from)

        if column.field_id in self._pending.dropped:
            raise InvalidOperationError(f"Cannot rename a column that will be deleted: {name}")
        if new_name in self._sibling_names(column.field_id):
            raise InvalidOperationError(f"Cannot rename {name} to {new_name}: a column with that name already exists")

        self._stage(column, name=new_name)

        # identifier fields are tracked by name until the new schema is built
        stored_name = self._schema.find_column_name(column.field_id)
        if stored_name in self._identifier_field_names:
            self._identifier_field_names.discard(stored_name)
            self._identifier_field_names.add(stored_name[: -len(column.name)] + new_name)

        return self

    def _fold(self, name: str) -> str:
        return name if self._case_sensitive else name.lower()

    def _struct_names(self, parent_id: int, excluded_id: Optional[int] = None) -> Set[str]:
        """Return the names the existing fields of a struct will have after this update."""
        if parent_id == TABLE_ROOT_ID:
            children: Tuple[NestedField, ...] = self._schema.fields
        else:
            parent_type = self._schema.find_type(parent_id)
            children = parent_type.fields if isinstance(parent_type, StructType) else ()

        return {
            self._pending.changed.get(child.field_id, child).name
            for child in children
            if child.field_id != excluded_id and child.field_id not in self._pending.dropped
        }

    def _sibling_names(self, field_id: int) -> Set[str]:
        """Return the names the other fields in the same struct will have after this update."""
        parent_id = self._parent_of(field_id)
        names = self._struct_names(parent_id, excluded_id=field_id)
        names.update(added.name for added in self._pending.added.get(parent_id, []))
        return names

    @replayable
    def make_column_optional(self, path: ColumnPath) -> UpdateSchema:
        """Make a column optional, which is always allowed."""
        self._set_column_requirement(path, required=False)
        return self

    @replayable
    def require_column(self, path: ColumnPath) -> UpdateSchema:
        """Make an optional column required.

        Existing rows may hold nulls in the column, which cannot be checked from the
        metadata. The change is rejected unless the builder was created with
        `allow_incompatible_changes=True`.

        Raises:
            UnsafeTypeChangeError: When incompatible changes are not allowed.
        """
        self._set_column_requirement(path, required=True)
        return self

    @replayable
    def set_identifier_fields(self, *fields: str) -> UpdateSchema:
        self._identifier_field_names = set(fields)
        return self

    def _set_column_requirement(self, path: ColumnPath, required: bool) -> None:
        name, column = self._lookup(path)

        if column.required == required:
            return

        if required and not self._allow_incompatible_changes:
            raise UnsafeTypeChangeError(
                f"Cannot change column nullability: {name}: optional -> required, existing rows may contain nulls"
            )

        self._check_not_dropped(name, column)
        self._stage(column, required=required)

    @replayable
    def update_column(
        self,
        path: ColumnPath,
        field_type: Optional[IcebergType] = None,
        required: Optional[bool] = None,
        doc: Optional[str] = None,
    ) -> UpdateSchema:
        """Update the type, nullability or doc of a column.

        The type can only be widened: int to long, float to double, or a decimal to a
        higher precision with the same scale.

        Args:
            path: The path to the field.
            field_type: The new type
            required: If the field should be required
            doc: Documentation describing the column

        Raises:
            NotFoundError: When the column does not exist.
            UnsafeTypeChangeError: When the type change is not a widening.
        """
        if field_type is None and required is None and doc is None:
            return self

        name, column = self._lookup(path)
        self._check_not_dropped(name, column)

        changes: Dict[str, Any] = {}
        if field_type is not None and field_type != column.field_type:
            if not column.field_type.is_primitive:
                raise UnsafeTypeChangeError(f"Cannot change column type: {name}: {column.field_type} is not a primitive")
            try:
                changes["field_type"] = promote(column.field_type, field_type)
            except ResolveError as e:
                raise UnsafeTypeChangeError(
                    f"Cannot change column type: {name}: {column.field_type} -> {field_type}, "
                    "only int -> long, float -> double and decimal(P, S) -> decimal(P2, S) with P2 > P are allowed"
                ) from e
        if doc is not None:
            changes["doc"] = doc
        if changes:
            self._stage(column, **changes)

        if required is not None:
            self._set_column_requirement(path, required=required)

        return self

    @replayable
    def update_column_doc(self, path: ColumnPath, doc: Optional[str]) -> UpdateSchema:
        """Set the doc of a column, or clear it by passing None."""
        name, column = self._lookup(path)
        self._check_not_dropped(name, column)
        self._stage(column, doc=doc)
        return self

    def _id_for_move(self, name: str) -> Optional[int]:
        try:
            return self._schema.find_field(name, self._case_sensitive).field_id
        except NotFoundError:
            return self._added_ids.get(name)

    def _stage_move(self, path: ColumnPath, position: _Position, anchor_path: Optional[ColumnPath] = None) -> None:
        name = _dotted(path)
        field_id = self._id_for_move(name)
        if field_id is None:
            raise NotFoundError(f"Cannot move missing column: {name}")

        anchor_id = None
        if anchor_path is not None:
            anchor_name = _dotted(anchor_path)
            anchor_id = self._id_for_move(anchor_name)
            if anchor_id is None:
                raise NotFoundError(f"Cannot move {name} {position.value} missing column: {anchor_name}")
            if anchor_id == field_id:
                raise InvalidOperationError(f"Cannot move {name} {position.value} itself")

        if field_id in self._pending.dropped or anchor_id in self._pending.dropped:
            raise InvalidOperationError(f"Cannot move {name}: a column involved in the move will be deleted")

        parent_id = self._parent_of(field_id)
        if parent_id != TABLE_ROOT_ID and not isinstance(self._schema.find_type(parent_id), StructType):
            raise InvalidOperationError(f"Cannot move fields in non-struct type: {self._schema.find_type(parent_id)}")
        if anchor_id is not None and self._parent_of(anchor_id) != parent_id:
            raise InvalidOperationError(f"Cannot move field {name} to a different struct")

        self._pending.moves.setdefault(parent_id, []).append(_Move(field_id, position, anchor_id))

    @replayable
    def move_first(self, path: ColumnPath) -> UpdateSchema:
        """Move the column to the first position of its struct."""
        self._stage_move(path, _Position.FIRST)
        return self

    @replayable
    def move_before(self, path: ColumnPath, before_path: ColumnPath) -> UpdateSchema:
        """Move the column in front of another column of the same struct."""
        self._stage_move(path, _Position.BEFORE, before_path)
        return self

    @replayable
    def move_after(self, path: ColumnPath, after_name: ColumnPath) -> UpdateSchema:
        """Move the column behind another column of the same struct."""
        self._stage_move(path, _Position.AFTER, after_name)
        return self

    def _commit(self) -> UpdatesAndRequirements:
        new_schema = self._apply()

        if new_schema == self._schema:
            return (), ()

        last_column_id = max(self._base_metadata.last_column_id, self._allocator.last_assigned)
        updates = (
            AddSchemaUpdate(schema=new_schema, last_column_id=last_column_id),
            SetCurrentSchemaUpdate(schema_id=-1),
        )
        requirements = (
            AssertCurrentSchemaId(current_schema_id=self._schema.schema_id),
            AssertLastAssignedFieldId(last_assigned_field_id=self._base_metadata.last_column_id),
        )
        return updates, requirements

    def _apply(self) -> Schema:
        """Build the schema with every pending change applied."""
        struct = _evolve(self._schema.as_struct(), TABLE_ROOT_ID, self._pending)
        candidate = Schema(*struct.fields)  # type: ignore

        identifier_ids = []
        for name in self._identifier_field_names:
            try:
                identifier_ids.append(candidate.find_field(name, case_sensitive=self._case_sensitive).field_id)
            except NotFoundError as e:
                raise InvalidOperationError(
                    f"Cannot find identifier field {name}. In case of deletion, update the identifier fields first."
                ) from e

        return Schema(
            *struct.fields,  # type: ignore
            schema_id=self._base_metadata.new_schema_id(),
            identifier_field_ids=sorted(identifier_ids),
        )


@singledispatch
def _evolve(field_type: IcebergType, owner_id: int, pending: _PendingChanges) -> IcebergType:
    """Rebuild a type with the pending changes applied, owner_id is the id of the field holding it."""
    return field_type


@_evolve.register(StructType)
def _(field_type: StructType, owner_id: int, pending: _PendingChanges) -> IcebergType:
    # additions go in before moves so that added columns can be moved
    fields = [_evolve_field(nested, pending) for nested in field_type.fields if nested.field_id not in pending.dropped]
    fields.extend(pending.added.get(owner_id, []))
    for move in pending.moves.get(owner_id, []):
        fields = _reorder(fields, move)
    return StructType(*fields)


@_evolve.register(ListType)
def _(field_type: ListType, owner_id: int, pending: _PendingChanges) -> IcebergType:
    element = field_type.element_field
    if element.field_id in pending.dropped:
        raise InvalidOperationError(f"Cannot delete element type from list: {field_type}")

    evolved = _evolve_field(element, pending)
    return ListType(element_id=element.field_id, element_type=evolved.field_type, element_required=evolved.required)


@_evolve.register(MapType)
def _(field_type: MapType, owner_id: int, pending: _PendingChanges) -> IcebergType:
    key, value = field_type.key_field, field_type.value_field
    if key.field_id in pending.dropped or key.field_id in pending.changed or key.field_id in pending.added:
        raise InvalidOperationError(f"Cannot alter map keys: {field_type}")
    if _evolve(key.field_type, key.field_id, pending) != key.field_type:
        raise InvalidOperationError(f"Cannot alter map keys: {field_type}")
    if value.field_id in pending.dropped:
        raise InvalidOperationError(f"Cannot delete value type from map: {field_type}")

    evolved = _evolve_field(value, pending)
    return MapType(
        key_id=key.field_id,
        key_type=key.field_type,
        value_id=value.field_id,
        value_type=evolved.field_type,
        value_required=evolved.required,
    )


def _evolve_field(nested: NestedField, pending: _PendingChanges) -> NestedField:
    staged = pending.changed.get(nested.field_id, nested)
    return NestedField(
        field_id=nested.field_id,
        name=staged.name,
        field_type=_evolve(staged.field_type, nested.field_id, pending),
        required=staged.required,
        doc=staged.doc,
    )


def _reorder(fields: List[NestedField], move: _Move) -> List[NestedField]:
    moving = next(nested for nested in fields if nested.field_id == move.field_id)
    remaining = [nested for nested in fields if nested.field_id != move.field_id]

    if move.position is _Position.FIRST:
        return [moving, *remaining]

    index = next(i for i, nested in enumerate(remaining) if nested.field_id == move.anchor_id)
    if move.position is _Position.AFTER:
        index += 1
    remaining.insert(index, moving)
    return remaining
