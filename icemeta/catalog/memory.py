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
import threading
from typing import (
    Dict,
    List,
    Optional,
    Set,
    Union,
)

from icemeta.catalog import (
    WAREHOUSE_LOCATION,
    Catalog,
    PropertiesUpdateSummary,
)
from icemeta.exceptions import (
    CommitFailedException,
    NamespaceAlreadyExistsError,
    NamespaceNotEmptyError,
    NoSuchNamespaceError,
    NoSuchTableError,
    TableAlreadyExistsError,
)
from icemeta.partitioning import UNPARTITIONED_PARTITION_SPEC, PartitionSpec
from icemeta.schema import Schema
from icemeta.table import Table
from icemeta.table.sorting import UNSORTED_SORT_ORDER, SortOrder
from icemeta.typedef import EMPTY_DICT, Identifier, Properties

DEFAULT_WAREHOUSE_LOCATION = "memory://warehouse"


class InMemoryCatalog(Catalog):
    """A catalog that keeps its table pointers in process memory.

    Metadata files are still written through the FileIO, by default to an fsspec
    memory filesystem. A lock guards the pointers, which makes `compare_and_swap` atomic
    for every thread of the process.
    """

    def __init__(self, name: str, **properties: str) -> None:
        super().__init__(name, **{WAREHOUSE_LOCATION: DEFAULT_WAREHOUSE_LOCATION, **properties})
        self._pointers: Dict[Identifier, str] = {}
        self._namespaces: Dict[Identifier, Properties] = {}
        self._lock = threading.Lock()

    def _tables_in(self, namespace: Identifier) -> List[Identifier]:
        return [identifier for identifier in self._pointers if identifier[:-1] == namespace]

    def _pointer(self, identifier: Identifier) -> str:
        if identifier not in self._pointers:
            raise NoSuchTableError(f"Table does not exist: {identifier}")
        return self._pointers[identifier]

    def _namespace(self, namespace: Identifier) -> Properties:
        if namespace not in self._namespaces:
            raise NoSuchNamespaceError(f"Namespace does not exist: {namespace}")
        return self._namespaces[namespace]

    def create_table(
        self,
        identifier: Union[str, Identifier],
        schema: Schema,
        location: Optional[str] = None,
        partition_spec: PartitionSpec = UNPARTITIONED_PARTITION_SPEC,
        sort_order: SortOrder = UNSORTED_SORT_ORDER,
        properties: Properties = EMPTY_DICT,
    ) -> Table:
        identifier = self.identifier_to_tuple(identifier)
        namespace = self.namespace_from(identifier)

        with self._lock:
            if identifier in self._pointers:
                raise TableAlreadyExistsError(f"Table already exists: {identifier}")
            self._namespaces.setdefault(namespace, {})

        metadata_location = self._write_new_table(
            ".".join(namespace), identifier[-1], schema, location, partition_spec, sort_order, properties
        )

        with self._lock:
            # another thread may have registered the name while the file was written
            if identifier in self._pointers:
                raise TableAlreadyExistsError(f"Table already exists: {identifier}")
            self._pointers[identifier] = metadata_location

        return self.load_table(identifier)

    def _current_metadata_location(self, identifier: Union[str, Identifier]) -> str:
        with self._lock:
            return self._pointer(self.identifier_to_tuple(identifier))

    def compare_and_swap(self, identifier: Union[str, Identifier], expected_location: str, new_location: str) -> None:
        identifier = self.identifier_to_tuple(identifier)
        with self._lock:
            current_location = self._pointer(identifier)
            if current_location != expected_location:
                raise CommitFailedException(
                    f"Table {identifier} has been updated concurrently: expected {expected_location}, found {current_location}"
                )
            self._pointers[identifier] = new_location

    def drop_table(self, identifier: Union[str, Identifier]) -> None:
        identifier = self.identifier_to_tuple(identifier)
        with self._lock:
            self._pointer(identifier)
            del self._pointers[identifier]

    def rename_table(self, from_identifier: Union[str, Identifier], to_identifier: Union[str, Identifier]) -> Table:
        from_identifier = self.identifier_to_tuple(from_identifier)
        to_identifier = self.identifier_to_tuple(to_identifier)

        with self._lock:
            if to_identifier in self._pointers:
                raise TableAlreadyExistsError(f"Table already exists: {to_identifier}")
            metadata_location = self._pointer(from_identifier)
            del self._pointers[from_identifier]
            self._namespaces.setdefault(self.namespace_from(to_identifier), {})
            self._pointers[to_identifier] = metadata_location

        return self.load_table(to_identifier)

    def create_namespace(self, namespace: Union[str, Identifier], properties: Properties = EMPTY_DICT) -> None:
        namespace = self.identifier_to_tuple(namespace)
        with self._lock:
            if namespace in self._namespaces:
                raise NamespaceAlreadyExistsError(f"Namespace already exists: {namespace}")
            self._namespaces[namespace] = dict(properties)

    def drop_namespace(self, namespace: Union[str, Identifier]) -> None:
        namespace = self.identifier_to_tuple(namespace)
        with self._lock:
            if self._tables_in(namespace):
                raise NamespaceNotEmptyError(f"Namespace is not empty: {namespace}")
            self._namespace(namespace)
            del self._namespaces[namespace]

    def list_tables(self, namespace: Optional[Union[str, Identifier]] = None) -> List[Identifier]:
        with self._lock:
            if not namespace:
                return list(self._pointers)
            namespace = self.identifier_to_tuple(namespace)
            self._namespace(namespace)
            return self._tables_in(namespace)

    def list_namespaces(self, namespace: Union[str, Identifier] = ()) -> List[Identifier]:
        prefix = self.identifier_to_tuple(namespace) if namespace else ()
        with self._lock:
            return [existing for existing in self._namespaces if existing[: len(prefix)] == prefix and existing != prefix]

    def load_namespace_properties(self, namespace: Union[str, Identifier]) -> Properties:
        with self._lock:
            return dict(self._namespace(self.identifier_to_tuple(namespace)))

    def update_namespace_properties(
        self, namespace: Union[str, Identifier], removals: Optional[Set[str]] = None, updates: Properties = EMPTY_DICT
    ) -> PropertiesUpdateSummary:
        namespace = self.identifier_to_tuple(namespace)
        with self._lock:
            summary, properties = self._apply_property_changes(self._namespace(namespace), removals, updates)
            self._namespaces[namespace] = properties
        return summary
