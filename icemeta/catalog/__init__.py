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

import logging
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import (
    Dict,
    Iterable,
    List,
    Optional,
    Set,
    Tuple,
    Type,
    Union,
    cast,
)

from retrying import Retrying

from icemeta.exceptions import (
    CommitConflictError,
    CommitFailedException,
    NoSuchNamespaceError,
    NoSuchTableError,
    TableAlreadyExistsError,
)
from icemeta.io import FileIO, load_file_io
from icemeta.partitioning import UNPARTITIONED_PARTITION_SPEC, PartitionSpec
from icemeta.schema import Schema
from icemeta.serializers import FromInputFile, ToOutputFile
from icemeta.table import CommitTableResponse, Table, TableProperties
from icemeta.table.metadata import TableMetadata, new_table_metadata
from icemeta.table.sorting import UNSORTED_SORT_ORDER, SortOrder
from icemeta.table.update import TableChange, TableUpdate, update_table_metadata
from icemeta.typedef import (
    EMPTY_DICT,
    Identifier,
    Properties,
    RecursiveDict,
)
from icemeta.utils.config import Config, merge_config
from icemeta.utils.properties import property_as_int

logger = logging.getLogger(__name__)

_ENV_CONFIG = Config()

TYPE = "type"
URI = "uri"
WAREHOUSE_LOCATION = "warehouse"
LOCATION = "location"

METADATA_FILE_PATTERN = re.compile(r"^(\d+)-.*\.metadata\.json$")


class CatalogType(Enum):
    IN_MEMORY = "in_memory"
    SQL = "sql"


_URI_SCHEMES: Dict[str, CatalogType] = {
    "sqlite": CatalogType.SQL,
    "postgresql": CatalogType.SQL,
    "mysql": CatalogType.SQL,
    "memory": CatalogType.IN_MEMORY,
}


def _instantiate(catalog_type: CatalogType, name: str, conf: Properties) -> Catalog:
    if catalog_type is CatalogType.SQL:
        from icemeta.catalog.sql import SqlCatalog

        return SqlCatalog(name, **conf)

    from icemeta.catalog.memory import InMemoryCatalog

    return InMemoryCatalog(name, **conf)


def infer_catalog_type(name: str, catalog_properties: RecursiveDict) -> CatalogType:
    """Infer the catalog type from the scheme of the uri property.

    Raises:
        ValueError: When the uri is missing, not a string, or has an unknown scheme.
    """
    uri = catalog_properties.get(URI)
    if not uri:
        raise ValueError(
            f"URI missing, please provide using --uri, the config or environment variable ICEMETA_CATALOG__{name.upper()}__URI"
        )
    if not isinstance(uri, str):
        raise ValueError(f"Expects the URI to be a string, got: {type(uri)}")

    scheme = uri.split(":", 1)[0].split("+", 1)[0]
    if scheme not in _URI_SCHEMES:
        raise ValueError(f"Could not infer the catalog type from the uri: {uri}")
    return _URI_SCHEMES[scheme]


def load_catalog(name: Optional[str] = None, **properties: Optional[str]) -> Catalog:
    """Load a catalog by name.

    The configuration of the catalog (from `.icemeta.yaml` and `ICEMETA_CATALOG__*`
    environment variables) is merged with the given properties. The type comes from
    the `type` property, or is inferred from the uri.

    Raises:
        ValueError: When the type cannot be determined.
    """
    if name is None:
        name = _ENV_CONFIG.get_default_catalog_name()

    conf = merge_config(_ENV_CONFIG.get_catalog_config(name) or {}, cast(RecursiveDict, properties))

    provided_type = conf.get(TYPE)
    if isinstance(provided_type, str):
        catalog_type = CatalogType[provided_type.upper().replace("-", "_")]
    else:
        catalog_type = infer_catalog_type(name, conf)

    return _instantiate(catalog_type, name, cast(Dict[str, str], conf))


def delete_files(io: FileIO, locations: Iterable[str], file_type: str) -> None:
    """Delete files, a failure is logged and does not stop the remaining deletes."""
    for location in locations:
        try:
            io.delete(location)
        except OSError as exc:
            logger.warning("Failed to delete %s file %s", file_type, location, exc_info=exc)


def _retry_on_commit_failure(exc: BaseException) -> bool:
    if isinstance(exc, CommitFailedException):
        logger.warning("Commit attempt failed: %s", exc)
        return True
    return False


@dataclass
class PropertiesUpdateSummary:
    removed: List[str]
    updated: List[str]
    missing: List[str]


class Catalog(ABC):
    """Base class of the catalogs, which map table identifiers to metadata files.

    An identifier is a tuple of strings, or a string that is split on '.'.

    A concrete catalog keeps a pointer from every table to its current metadata file, and
    swaps that pointer atomically in `compare_and_swap`. Everything else about committing
    changes, retrying lost races included, is shared and lives in `commit_table`.
    """

    name: str
    properties: Properties

    def __init__(self, name: str, **properties: str):
        self.name = name
        self.properties = properties

    def _load_file_io(self, properties: Properties = EMPTY_DICT, location: Optional[str] = None) -> FileIO:
        return load_file_io({**self.properties, **properties}, location)

    @abstractmethod
    def create_table(
        self,
        identifier: Union[str, Identifier],
        schema: Schema,
        location: Optional[str] = None,
        partition_spec: PartitionSpec = UNPARTITIONED_PARTITION_SPEC,
        sort_order: SortOrder = UNSORTED_SORT_ORDER,
        properties: Properties = EMPTY_DICT,
    ) -> Table:
        """Write the first metadata file of a new table and register it.

        Without a location the table goes into the namespace location, or else
        into the warehouse.

        Raises:
            TableAlreadyExistsError: If a table with the name already exists.
        """

    @abstractmethod
    def _current_metadata_location(self, identifier: Union[str, Identifier]) -> str:
        """Return the location of the current metadata file of a table.

        Raises:
            NoSuchTableError: If a table with the name does not exist.
        """

    @abstractmethod
    def compare_and_swap(self, identifier: Union[str, Identifier], expected_location: str, new_location: str) -> None:
        """Point the table at a new metadata file, if it still points at the expected one.

        Raises:
            CommitFailedException: If the table points at another metadata file by now.
            NoSuchTableError: If a table with the name does not exist.
        """

    @abstractmethod
    def drop_table(self, identifier: Union[str, Identifier]) -> None:
        """Forget a table, its files are left in place.

        Raises:
            NoSuchTableError: If a table with the name does not exist.
        """

    @abstractmethod
    def rename_table(self, from_identifier: Union[str, Identifier], to_identifier: Union[str, Identifier]) -> Table:
        """Move the pointer of a table to a new identifier.

        Raises:
            NoSuchTableError: If a table with the name does not exist.
            TableAlreadyExistsError: If the new identifier is taken.
        """

    @abstractmethod
    def create_namespace(self, namespace: Union[str, Identifier], properties: Properties = EMPTY_DICT) -> None:
        """Raises NamespaceAlreadyExistsError when the namespace exists."""

    @abstractmethod
    def drop_namespace(self, namespace: Union[str, Identifier]) -> None:
        """Raises NoSuchNamespaceError when missing, NamespaceNotEmptyError when it still holds tables."""

    @abstractmethod
    def list_tables(self, namespace: Union[str, Identifier]) -> List[Identifier]:
        pass

    @abstractmethod
    def list_namespaces(self, namespace: Union[str, Identifier] = ()) -> List[Identifier]:
        """List the namespaces below the given one, or all of them."""

    @abstractmethod
    def load_namespace_properties(self, namespace: Union[str, Identifier]) -> Properties:
        pass

    @abstractmethod
    def update_namespace_properties(
        self, namespace: Union[str, Identifier], removals: Optional[Set[str]] = None, updates: Properties = EMPTY_DICT
    ) -> PropertiesUpdateSummary:
        """Remove and set properties of a namespace.

        Raises:
            NoSuchNamespaceError: If a namespace with the given name does not exist.
            ValueError: If removals and updates have overlapping keys.
        """

    def read_current(self, identifier: Union[str, Identifier]) -> Tuple[str, TableMetadata]:
        """Read the current metadata of a table, together with the location it was read from.

        Raises:
            NoSuchTableError: If a table with the name does not exist.
        """
        metadata_location = self._current_metadata_location(identifier)
        io = self._load_file_io(location=metadata_location)
        return metadata_location, FromInputFile.table_metadata(io.new_input(metadata_location))

    def load_table(self, identifier: Union[str, Identifier]) -> Table:
        """Load the current metadata of a table.

        Raises:
            NoSuchTableError: If a table with the name does not exist.
        """
        metadata_location, metadata = self.read_current(identifier)
        return Table(
            identifier=(self.name,) + self.identifier_to_tuple(identifier),
            metadata=metadata,
            metadata_location=metadata_location,
            io=self._load_file_io(metadata.properties, metadata_location),
            catalog=self,
        )

    def replace_table(
        self,
        identifier: Union[str, Identifier],
        schema: Schema,
        location: Optional[str] = None,
        partition_spec: PartitionSpec = UNPARTITIONED_PARTITION_SPEC,
        sort_order: SortOrder = UNSORTED_SORT_ORDER,
        properties: Properties = EMPTY_DICT,
    ) -> Table:
        """Replace the definition of an existing table, keeping its uuid and history.

        Columns that keep their name keep their field id, the partition spec and sort
        order are added as new versions. Properties are merged into the existing ones.

        Raises:
            NoSuchTableError: If a table with the name does not exist.
            CommitConflictError: If the replace lost against concurrent commits too often.
        """
        table = self.load_table(identifier)
        with table.transaction() as transaction:
            transaction.replace_table(
                schema=schema,
                partition_spec=partition_spec,
                sort_order=sort_order,
                properties=properties,
                location=location,
            )
        return table

    def create_or_replace_table(
        self,
        identifier: Union[str, Identifier],
        schema: Schema,
        location: Optional[str] = None,
        partition_spec: PartitionSpec = UNPARTITIONED_PARTITION_SPEC,
        sort_order: SortOrder = UNSORTED_SORT_ORDER,
        properties: Properties = EMPTY_DICT,
    ) -> Table:
        """Create a table, or replace its definition when it already exists."""
        definition = dict(
            schema=schema, location=location, partition_spec=partition_spec, sort_order=sort_order, properties=properties
        )
        try:
            return self.create_table(identifier, **definition)  # type: ignore
        except TableAlreadyExistsError:
            return self.replace_table(identifier, **definition)  # type: ignore

    def commit_table(self, table: Table, changes: Tuple[TableChange, ...]) -> CommitTableResponse:
        """Commit changes to a table, retrying when a concurrent commit got in first.

        Every attempt reads the current metadata, rebuilds the changes on top of it, writes
        a new metadata file and swaps the table pointer. A lost swap is retried with an
        exponential back-off, bounded by the `commit.retry.*` table properties.

        Args:
            table (Table): The table to commit to.
            changes: The changes to apply, in order.

        Returns:
            CommitTableResponse: The new metadata and its location.

        Raises:
            CommitConflictError: If every attempt lost against a concurrent commit.
            NoSuchTableError: If the table does not exist anymore.
        """
        identifier = table.identifier[1:]
        properties = table.properties
        num_retries = cast(
            int, property_as_int(properties, TableProperties.COMMIT_NUM_RETRIES, TableProperties.COMMIT_NUM_RETRIES_DEFAULT)
        )
        min_wait_ms = property_as_int(
            properties, TableProperties.COMMIT_MIN_RETRY_WAIT_MS, TableProperties.COMMIT_MIN_RETRY_WAIT_MS_DEFAULT
        )
        max_wait_ms = property_as_int(
            properties, TableProperties.COMMIT_MAX_RETRY_WAIT_MS, TableProperties.COMMIT_MAX_RETRY_WAIT_MS_DEFAULT
        )
        total_timeout_ms = property_as_int(
            properties, TableProperties.COMMIT_TOTAL_RETRY_TIME_MS, TableProperties.COMMIT_TOTAL_RETRY_TIME_MS_DEFAULT
        )

        retrying = Retrying(
            retry_on_exception=_retry_on_commit_failure,
            stop_max_attempt_number=num_retries + 1,
            stop_max_delay=total_timeout_ms,
            wait_exponential_multiplier=min_wait_ms,
            wait_exponential_max=max_wait_ms,
        )
        try:
            return retrying.call(self._attempt_commit, identifier, changes)
        except CommitFailedException as e:
            raise CommitConflictError(
                f"Could not commit to {'.'.join(identifier)} after {num_retries + 1} attempts: {e}"
            ) from e

    def _attempt_commit(self, identifier: Identifier, changes: Tuple[TableChange, ...]) -> CommitTableResponse:
        base_location, base_metadata = self.read_current(identifier)

        updates: List[TableUpdate] = []
        metadata = base_metadata
        for change in changes:
            change_updates, requirements = change(metadata)
            for requirement in requirements:
                requirement.validate(metadata)
            metadata = update_table_metadata(metadata, change_updates)
            updates.extend(change_updates)

        if not updates:
            return CommitTableResponse(metadata=base_metadata, metadata_location=base_location)

        new_metadata = update_table_metadata(base_metadata, updates, metadata_location=base_location)
        new_location = self._new_metadata_location(new_metadata.location, self._parse_metadata_version(base_location) + 1)
        io = self._load_file_io(new_metadata.properties, new_location)
        ToOutputFile.table_metadata(new_metadata, io.new_output(new_location))

        try:
            self.compare_and_swap(identifier, base_location, new_location)
        except Exception:
            # the pointer still names the base, nothing refers to the new file
            delete_files(io, [new_location], "metadata")
            raise

        logger.info("Committed %d update(s) to %s: %s", len(updates), ".".join(identifier), new_location)
        return CommitTableResponse(metadata=new_metadata, metadata_location=new_location)

    def purge_table(self, identifier: Union[str, Identifier]) -> None:
        """Drop a table and delete every metadata file it has had.

        Files that cannot be deleted are logged, not raised.

        Raises:
            NoSuchTableError: If a table with the name does not exist.
        """
        table = self.load_table(identifier)
        self.drop_table(identifier)
        io = self._load_file_io(table.properties, table.metadata_location)
        delete_files(io, {entry.metadata_file for entry in table.metadata.metadata_log}, "previous metadata")
        delete_files(io, [table.metadata_location], "metadata")

    def _write_new_table(
        self,
        namespace: str,
        table_name: str,
        schema: Schema,
        location: Optional[str],
        partition_spec: PartitionSpec,
        sort_order: SortOrder,
        properties: Properties,
    ) -> str:
        """Write the first metadata file of a new table and return its location."""
        table_location = location.rstrip("/") if location else self._default_table_location(namespace, table_name)
        metadata = new_table_metadata(
            location=table_location,
            schema=schema,
            partition_spec=partition_spec,
            sort_order=sort_order,
            properties=properties,
        )
        metadata_location = self._new_metadata_location(table_location, 0)
        io = self._load_file_io(properties, metadata_location)
        ToOutputFile.table_metadata(metadata, io.new_output(metadata_location))
        return metadata_location

    def _default_table_location(self, namespace: str, table_name: str) -> str:
        if namespace_location := self.load_namespace_properties(namespace).get(LOCATION):
            return f"{namespace_location.rstrip('/')}/{table_name}"

        if warehouse := self.properties.get(WAREHOUSE_LOCATION):
            return f"{warehouse.rstrip('/')}/{namespace}.db/{table_name}"

        raise ValueError("No default path is set, please specify a location when creating a table")

    @staticmethod
    def identifier_to_tuple(identifier: Union[str, Identifier]) -> Identifier:
        return identifier if isinstance(identifier, tuple) else tuple(identifier.split("."))

    @staticmethod
    def table_name_from(identifier: Union[str, Identifier]) -> str:
        return Catalog.identifier_to_tuple(identifier)[-1]

    @staticmethod
    def namespace_from(identifier: Union[str, Identifier]) -> Identifier:
        return Catalog.identifier_to_tuple(identifier)[:-1]

    @staticmethod
    def identifier_to_database(identifier: Union[str, Identifier], err: Type[Exception] = ValueError) -> str:
        """Return the name of a single level namespace."""
        parts = Catalog.identifier_to_tuple(identifier)
        if len(parts) != 1:
            raise err(f"Invalid database, hierarchical namespaces are not supported: {identifier}")
        return parts[0]

    @staticmethod
    def identifier_to_database_and_table(
        identifier: Union[str, Identifier], err: Type[Exception] = ValueError
    ) -> Tuple[str, str]:
        """Split a two part identifier into its namespace and table name."""
        parts = Catalog.identifier_to_tuple(identifier)
        if len(parts) != 2:
            raise err(f"Invalid path, hierarchical namespaces are not supported: {identifier}")
        return parts[0], parts[1]

    @staticmethod
    def _new_metadata_location(table_location: str, version: int) -> str:
        return f"{table_location}/metadata/{version:05d}-{uuid.uuid4()}.metadata.json"

    @staticmethod
    def _parse_metadata_version(metadata_location: str) -> int:
        """Return the version encoded in a metadata file name, or -1 when the name carries none."""
        if matches := METADATA_FILE_PATTERN.match(metadata_location.rsplit("/", 1)[-1]):
            return int(matches.group(1))
        return -1

    @staticmethod
    def _apply_property_changes(
        current: Properties, removals: Optional[Set[str]], updates: Properties
    ) -> Tuple[PropertiesUpdateSummary, Properties]:
        """Return the summary of a namespace properties update, and the properties after it."""
        removals = set(removals or ())
        if overlap := removals & set(updates):
            raise ValueError(f"Updates and deletes have an overlap: {overlap}")

        properties = {key: value for key, value in current.items() if key not in removals}
        properties.update(updates)

        summary = PropertiesUpdateSummary(
            removed=sorted(removals & set(current)),
            updated=sorted(updates),
            missing=sorted(removals - set(current)),
        )
        return summary, properties
