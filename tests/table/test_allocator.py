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
from typing import Any, Dict

from icemeta.table.allocator import IdAllocator, field_id_allocator, partition_field_id_allocator
from icemeta.table.metadata import TableMetadataUtil


def test_next_id() -> None:
    allocator = IdAllocator(3)
    assert allocator.next_id() == 4
    assert allocator() == 5
    assert allocator.last_assigned == 5


def test_allocator_repr() -> None:
    assert repr(IdAllocator(999)) == "IdAllocator(last_assigned=999)"


def test_allocators_continue_from_metadata(example_table_metadata_v2: Dict[str, Any]) -> None:
    metadata = TableMetadataUtil.parse_obj(example_table_metadata_v2)
    assert field_id_allocator(metadata).next_id() == 4
    assert partition_field_id_allocator(metadata).next_id() == 1002


def test_allocator_does_not_touch_metadata(example_table_metadata_v2: Dict[str, Any]) -> None:
    metadata = TableMetadataUtil.parse_obj(example_table_metadata_v2)
    allocator = field_id_allocator(metadata)
    allocator.next_id()
    allocator.next_id()
    assert metadata.last_column_id == 3
