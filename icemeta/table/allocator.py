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

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from icemeta.table.metadata import TableMetadata


class IdAllocator:
    """Hands out strictly increasing ids, starting right after the last one that was assigned.

    A table keeps two of these counters in its metadata, one for column ids and one for
    partition field ids. Ids are never handed out twice, even when the column or partition
    field that used it has been dropped since.
    """

    def __init__(self, last_assigned: int) -> None:
        self._last_assigned = last_assigned

    def next_id(self) -> int:
        self._last_assigned += 1
        return self._last_assigned

    def __call__(self) -> int:
        """Return the next id, so the allocator can be passed where a `Callable[[], int]` is expected."""
        return self.next_id()

    @property
    def last_assigned(self) -> int:
        return self._last_assigned

    def __repr__(self) -> str:
        """Return the string representation of the IdAllocator class."""
        return f"IdAllocator(last_assigned={self._last_assigned})"


def field_id_allocator(metadata: TableMetadata) -> IdAllocator:
    return IdAllocator(metadata.last_column_id)


def partition_field_id_allocator(metadata: TableMetadata) -> IdAllocator:
    return IdAllocator(metadata.last_partition_id)
