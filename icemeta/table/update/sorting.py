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
    List,
    Optional,
    Tuple,
    Union,
)

from icemeta.exceptions import InvalidOperationError
from icemeta.schema import Schema
from icemeta.table.metadata import TableMetadata
from icemeta.table.sorting import (
    UNSORTED_SORT_ORDER_ID,
    NullOrder,
    SortDirection,
    SortField,
    SortOrder,
)
from icemeta.table.update import (
    AddSortOrderUpdate,
    AssertDefaultSortOrderId,
    SetDefaultSortOrderUpdate,
    TableRequirement,
    TableUpdate,
    UpdatesAndRequirements,
    UpdateTableMetadata,
    replayable,
    requested_transform,
)
from icemeta.transforms import IdentityTransform, Transform

if TYPE_CHECKING:
    from icemeta.table import Transaction


class UpdateSortOrder(UpdateTableMetadata["UpdateSortOrder"]):
    """Replace the sort order of a table.

    The terms given to `asc` and `desc` make up the complete new order, an update
    without terms makes the table unsorted. Earlier orders stay in the metadata but
    writers only use the default one.
    """

    _schema: Schema
    _fields: List[SortField]
    _case_sensitive: bool

    def __init__(
        self, transaction: Transaction, case_sensitive: bool = True, base_metadata: Optional[TableMetadata] = None
    ) -> None:
        super().__init__(transaction, base_metadata)
        self._schema = self._base_metadata.schema()
        self._fields = []
        self._case_sensitive = case_sensitive

    def _rebase(self, base_metadata: TableMetadata) -> UpdateSortOrder:
        return UpdateSortOrder(self._transaction, case_sensitive=self._case_sensitive, base_metadata=base_metadata)

    def _add_sort_field(
        self,
        source_column_name: str,
        transform: Union[str, Transform[Any, Any]],
        direction: SortDirection,
        null_order: Optional[NullOrder],
    ) -> UpdateSortOrder:
        transform = requested_transform(transform)
        source_field = self._schema.find_field(source_column_name, self._case_sensitive)

        if not transform.can_transform(source_field.field_type):
            raise InvalidOperationError(
                f"Cannot sort by {transform}({source_column_name}): {transform} cannot transform {source_field.field_type}"
            )

        if any(field.source_id == source_field.field_id and field.transform == transform for field in self._fields):
            raise InvalidOperationError(f"Cannot sort twice by {transform}({source_column_name})")

        self._fields.append(
            SortField(source_id=source_field.field_id, transform=transform, direction=direction, null_order=null_order)
        )
        return self

    @replayable
    def asc(
        self,
        source_column_name: str,
        transform: Union[str, Transform[Any, Any]] = IdentityTransform(),
        null_order: NullOrder = NullOrder.NULLS_FIRST,
    ) -> UpdateSortOrder:
        """Add an ascending term, nulls first unless given otherwise.

        Raises:
            NotFoundError: When the column does not exist.
            InvalidOperationError: When the transform cannot be applied to the column.
        """
        return self._add_sort_field(source_column_name, transform, SortDirection.ASC, null_order)

    @replayable
    def desc(
        self,
        source_column_name: str,
        transform: Union[str, Transform[Any, Any]] = IdentityTransform(),
        null_order: NullOrder = NullOrder.NULLS_LAST,
    ) -> UpdateSortOrder:
        """Add a descending term, nulls last unless given otherwise."""
        return self._add_sort_field(source_column_name, transform, SortDirection.DESC, null_order)

    def _apply(self) -> SortOrder:
        if not self._fields:
            return SortOrder(order_id=UNSORTED_SORT_ORDER_ID)

        current = self._base_metadata.sort_order()
        if current.fields == self._fields:
            return current

        return SortOrder(*self._fields, order_id=self._base_metadata.new_sort_order_id())

    def _commit(self) -> UpdatesAndRequirements:
        new_order = self._apply()
        updates: Tuple[TableUpdate, ...] = ()
        requirements: Tuple[TableRequirement, ...] = ()

        if new_order.order_id != self._base_metadata.default_sort_order_id:
            if new_order.is_unsorted:
                updates = (SetDefaultSortOrderUpdate(sort_order_id=UNSORTED_SORT_ORDER_ID),)
            else:
                updates = (AddSortOrderUpdate(sort_order=new_order), SetDefaultSortOrderUpdate(sort_order_id=-1))
            requirements = (AssertDefaultSortOrderId(default_sort_order_id=self._base_metadata.default_sort_order_id),)

        return updates, requirements
