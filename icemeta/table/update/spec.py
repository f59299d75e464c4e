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

from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    List,
    Optional,
    Set,
    Tuple,
    Union,
)

from icemeta.exceptions import InvalidOperationError, NotFoundError
from icemeta.partitioning import PartitionField, PartitionSpec
from icemeta.schema import Schema
from icemeta.table.allocator import IdAllocator, partition_field_id_allocator
from icemeta.table.metadata import TableMetadata
from icemeta.table.update import (
    AddPartitionSpecUpdate,
    AssertDefaultSpecId,
    AssertLastAssignedPartitionId,
    SetDefaultSpecUpdate,
    TableRequirement,
    TableUpdate,
    UpdatesAndRequirements,
    UpdateTableMetadata,
    replayable,
    requested_transform,
)
from icemeta.transforms import (
    IdentityTransform,
    TimeTransform,
    Transform,
    VoidTransform,
)

if TYPE_CHECKING:
    from icemeta.table import Transaction


class UpdateSpec(UpdateTableMetadata["UpdateSpec"]):
    """Evolve the default partition spec of a table into a new spec.

    The new spec starts as a copy of the current one. Removed fields stay in place as
    void tombstones with their original field id, so every position in the new spec
    lines up with the same position in the older specs. New fields are appended and
    always get a fresh partition field id.
    """

    _spec: PartitionSpec
    _schema: Schema
    _allocator: IdAllocator
    _name_to_field: Dict[str, PartitionField]
    _name_to_added_field: Dict[str, PartitionField]
    _transform_to_field: Dict[Tuple[int, str], PartitionField]
    _transform_to_added_field: Dict[Tuple[int, str], PartitionField]
    _renames: Dict[str, str]
    _added_time_fields: Dict[int, PartitionField]
    _case_sensitive: bool
    _adds: List[PartitionField]
    _deletes: Set[int]

    def __init__(
        self, transaction: Transaction, case_sensitive: bool = True, base_metadata: Optional[TableMetadata] = None
    ) -> None:
        super().__init__(transaction, base_metadata)
        self._spec = self._base_metadata.spec()
        self._schema = self._base_metadata.schema()
        self._allocator = partition_field_id_allocator(self._base_metadata)
        self._name_to_field = {field.name: field for field in self._spec.fields}
        self._name_to_added_field = {}
        self._transform_to_field = {(field.source_id, str(field.transform)): field for field in self._spec.active_fields}
        self._transform_to_added_field = {}
        self._adds = []
        self._deletes = set()
        self._renames = {}
        self._case_sensitive = case_sensitive
        self._added_time_fields = {}

    def _rebase(self, base_metadata: TableMetadata) -> UpdateSpec:
        return UpdateSpec(self._transaction, case_sensitive=self._case_sensitive, base_metadata=base_metadata)

    @replayable
    def add_field(
        self,
        source_column_name: str,
        transform: Union[str, Transform[Any, Any]],
        partition_field_name: Optional[str] = None,
    ) -> UpdateSpec:
        """Add a partition field derived from a column of the current schema.

        Args:
            source_column_name: The (dotted) name of the source column.
            transform: The transform, either an instance or its string form such as `bucket[16]`.
            partition_field_name: The name of the partition field, derived from the
                transform and the column name when omitted.

        Returns:
            This for method chaining.

        Raises:
            InvalidOperationError: When the source column does not exist, the transform cannot
                be applied to its type, or an equivalent partition field already exists.
        """
        transform = requested_transform(transform)
        try:
            source_field = self._schema.find_field(source_column_name, self._case_sensitive)
        except NotFoundError as e:
            raise InvalidOperationError(f"Cannot add partition field, source column does not exist: {source_column_name}") from e

        if isinstance(transform, VoidTransform):
            raise InvalidOperationError(f"Cannot add a void partition field for {source_column_name}, remove the field instead")

        if not transform.can_transform(source_field.field_type):
            raise InvalidOperationError(
                f"{transform} cannot transform {source_field.field_type} values from {source_column_name}"
            )

        transform_key = (source_field.field_id, str(transform))
        existing_partition_field = self._transform_to_field.get(transform_key)
        if existing_partition_field and existing_partition_field.field_id not in self._deletes:
            raise InvalidOperationError(
                f"Duplicate partition field for {source_column_name}={transform}, {existing_partition_field} already exists"
            )

        added = self._transform_to_added_field.get(transform_key)
        if added:
            raise InvalidOperationError(f"Already added partition: {added.name}")

        name = partition_field_name or self._default_name(source_field.field_id, transform)
        if name in self._name_to_added_field:
            raise InvalidOperationError(f"Already added partition field with name: {name}")

        same_name = self._name_to_field.get(name)
        if same_name and not same_name.is_void and same_name.field_id not in self._deletes:
            raise InvalidOperationError(f"Cannot add duplicate partition field name: {same_name.name}")

        if isinstance(transform, TimeTransform):
            existing_time_field = self._added_time_fields.get(source_field.field_id) or next(
                (
                    field
                    for field in self._spec.active_fields
                    if field.source_id == source_field.field_id
                    and isinstance(field.transform, TimeTransform)
                    and field.field_id not in self._deletes
                ),
                None,
            )
            if existing_time_field:
                raise InvalidOperationError(f"Cannot add time partition field: {name} conflicts with {existing_time_field.name}")

        # all checks passed, only now is an id taken and the field recorded
        new_field = PartitionField(source_field.field_id, self._allocator.next_id(), transform, name)
        if isinstance(transform, TimeTransform):
            self._added_time_fields[new_field.source_id] = new_field
        self._transform_to_added_field[transform_key] = new_field
        self._name_to_added_field[name] = new_field
        self._adds.append(new_field)
        return self

    @replayable
    def add_identity(self, source_column_name: str) -> UpdateSpec:
        return self.add_field(source_column_name, IdentityTransform(), None)

    @replayable
    def remove_field(self, name: str) -> UpdateSpec:
        """Remove a partition field by name, leaving a void tombstone in its place.

        Raises:
            NotFoundError: When the current spec has no active field with this name.
            InvalidOperationError: When the field was added or renamed in this same update.
        """
        added = self._name_to_added_field.get(name)
        if added:
            raise InvalidOperationError(f"Cannot delete newly added field {name}")
        renamed = self._renames.get(name)
        if renamed:
            raise InvalidOperationError(f"Cannot rename and delete field {name}")
        field = self._name_to_field.get(name)
        if not field or field.is_void:
            raise NotFoundError(f"No such partition field: {name}")

        self._deletes.add(field.field_id)
        return self

    @replayable
    def remove_transform(self, source_column_name: str, transform: Union[str, Transform[Any, Any]]) -> UpdateSpec:
        """Remove the partition field that applies `transform` to a column, for example `bucket[16]` on `id`.

        Raises:
            NotFoundError: When the column or a matching partition field does not exist.
        """
        transform = requested_transform(transform)
        source_field = self._schema.find_field(source_column_name, self._case_sensitive)
        field = self._transform_to_field.get((source_field.field_id, str(transform)))
        if field is None:
            raise NotFoundError(f"No partition field for {transform}({source_column_name}) in the current spec")
        return self.remove_field(field.name)

    @replayable
    def rename_field(self, name: str, new_name: str) -> UpdateSpec:
        added = self._name_to_added_field.get(name)
        if added:
            raise InvalidOperationError("Cannot rename recently added partitions")
        field = self._name_to_field.get(name)
        if not field:
            raise NotFoundError(f"Cannot find partition field {name}")
        if field.field_id in self._deletes:
            raise InvalidOperationError(f"Cannot delete and rename partition field {name}")
        self._renames[name] = new_name
        return self

    def _default_name(self, source_id: int, transform: Transform[Any, Any]) -> str:
        source_name = self._schema.find_column_name(source_id)
        if isinstance(transform, IdentityTransform):
            return str(source_name)
        return f"{transform.name_prefix}_{source_name}"

    def _commit(self) -> UpdatesAndRequirements:
        new_spec = self._apply()
        updates: Tuple[TableUpdate, ...] = ()
        requirements: Tuple[TableRequirement, ...] = ()

        if new_spec.spec_id != self._spec.spec_id:
            updates = (
                AddPartitionSpecUpdate(spec=new_spec),
                SetDefaultSpecUpdate(spec_id=-1),
            )
            requirements = (
                AssertLastAssignedPartitionId(last_assigned_partition_id=self._base_metadata.last_partition_id),
                AssertDefaultSpecId(default_spec_id=self._spec.spec_id),
            )

        return updates, requirements

    def _apply(self) -> PartitionSpec:
        partition_fields = []
        for field in self._spec.fields:
            name = self._renames.get(field.name, field.name)
            if field.field_id in self._deletes or field.is_void:
                # Keep the position and the field id, only the transform changes
                partition_fields.append(PartitionField(field.source_id, field.field_id, VoidTransform(), name))
            else:
                partition_fields.append(PartitionField(field.source_id, field.field_id, field.transform, name))

        partition_fields.extend(self._adds)

        active_names = {field.name for field in partition_fields if not field.is_void}
        partition_fields = [
            PartitionField(field.source_id, field.field_id, field.transform, f"{field.name}_{field.field_id}")
            if field.is_void and field.name in active_names
            else field
            for field in partition_fields
        ]

        partition_names: Set[str] = set()
        changed_names = set(self._renames.values()) | set(self._name_to_added_field.keys())
        for field in partition_fields:
            if not field.name:
                raise InvalidOperationError("Undefined partition field name")
            if field.name in partition_names:
                raise InvalidOperationError(f"Partition name has to be unique: {field.name}")
            partition_names.add(field.name)
            if field.name in changed_names and not field.is_void:
                self._check_name_against_schema(field)

        if tuple(partition_fields) == self._spec.fields:
            return self._spec

        return PartitionSpec(*partition_fields, spec_id=self._base_metadata.new_partition_spec_id())

    def _check_name_against_schema(self, field: PartitionField) -> None:
        try:
            schema_field = self._schema.find_field(field.name)
        except NotFoundError:
            return

        if isinstance(field.transform, IdentityTransform):
            if schema_field.field_id != field.source_id:
                raise InvalidOperationError(
                    f"Cannot create identity partition from a different field in the schema: {field.name}"
                )
        elif schema_field.field_id != field.source_id:
            raise InvalidOperationError(f"Cannot create partition from name that exists in schema: {field.name}")
