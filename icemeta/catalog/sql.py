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
from typing import (
    Any,
    List,
    Optional,
    Set,
    Union,
)

from sqlalchemy import (
    ColumnElement,
    String,
    create_engine,
    delete,
    select,
    union,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    MappedAsDataclass,
    Session,
    mapped_column,
)

from icemeta.catalog import URI, Catalog, PropertiesUpdateSummary
from icemeta.exceptions import (
    CommitFailedException,
    NamespaceAlreadyExistsError,
    NamespaceNotEmptyError,
    NoSuchNamespaceError,
    NoSuchPropertyException,
    NoSuchTableError,
    TableAlreadyExistsError,
)
from icemeta.partitioning import UNPARTITIONED_PARTITION_SPEC, PartitionSpec
from icemeta.schema import Schema
from icemeta.table import Table
from icemeta.table.sorting import UNSORTED_SORT_ORDER, SortOrder
from icemeta.typedef import EMPTY_DICT, Identifier, Properties

INIT_CATALOG_TABLES = "init_catalog_tables"

# a namespace without properties still needs a row to exist
NAMESPACE_MARKER = {"exists": "true"}


class CatalogBase(MappedAsDataclass, DeclarativeBase):
    pass


class TablePointer(CatalogBase):
    __tablename__ = "iceberg_tables"

    catalog_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    table_namespace: Mapped[str] = mapped_column(String(255), primary_key=True)
    table_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    metadata_location: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    previous_metadata_location: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)


class NamespaceProperty(CatalogBase):
    __tablename__ = "iceberg_namespace_properties"

    catalog_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    namespace: Mapped[str] = mapped_column(String(255), primary_key=True)
    property_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    property_value: Mapped[str] = mapped_column(String(1000), nullable=False)


class SqlCatalog(Catalog):
    """A catalog that keeps its table pointers in a relational database.

    The pointer swap is a conditional UPDATE on the current metadata location, the
    database decides which of two racing commits wins.
    """

    def __init__(self, name: str, **properties: str):
        super().__init__(name, **properties)

        if not (uri := self.properties.get(URI)):
            raise NoSuchPropertyException("SQL connection URI is required")
        self.engine = create_engine(uri)

        if str(self.properties.get(INIT_CATALOG_TABLES, "true")).lower() == "true":
            self.create_tables()

    def create_tables(self) -> None:
        CatalogBase.metadata.create_all(self.engine)

    def destroy_tables(self) -> None:
        CatalogBase.metadata.drop_all(self.engine)

    def _table_row(self, namespace: str, table_name: str) -> List[ColumnElement[bool]]:
        return [
            TablePointer.catalog_name == self.name,
            TablePointer.table_namespace == namespace,
            TablePointer.table_name == table_name,
        ]

    def _namespace_rows(self, namespace: str) -> List[ColumnElement[bool]]:
        return [NamespaceProperty.catalog_name == self.name, NamespaceProperty.namespace == namespace]

    def _pointer(self, session: Session, namespace: str, table_name: str) -> Optional[TablePointer]:
        return session.scalar(select(TablePointer).where(*self._table_row(namespace, table_name)))

    def _namespace_exists(self, namespace: str) -> bool:
        with Session(self.engine) as session:
            has_properties = session.scalar(select(NamespaceProperty.namespace).where(*self._namespace_rows(namespace)).limit(1))
            has_tables = session.scalar(
                select(TablePointer.table_name)
                .where(TablePointer.catalog_name == self.name, TablePointer.table_namespace == namespace)
                .limit(1)
            )
        return has_properties is not None or has_tables is not None

    def _require_namespace(self, namespace: str) -> None:
        if not self._namespace_exists(namespace):
            raise NoSuchNamespaceError(f"Namespace does not exist: {namespace}")

    def create_table(
        self,
        identifier: Union[str, Identifier],
        schema: Schema,
        location: Optional[str] = None,
        partition_spec: PartitionSpec = UNPARTITIONED_PARTITION_SPEC,
        sort_order: SortOrder = UNSORTED_SORT_ORDER,
        properties: Properties = EMPTY_DICT,
    ) -> Table:
        """Create a table in a single level namespace.

        Raises:
            TableAlreadyExistsError: If a table with the name already exists.
            NoSuchNamespaceError: If the namespace does not exist.
            ValueError: If the identifier is not `namespace.table`, or no location can be derived.
        """
        namespace, table_name = self.identifier_to_database_and_table(identifier)
        self._require_namespace(namespace)
        with Session(self.engine) as session:
            if self._pointer(session, namespace, table_name) is not None:
                raise TableAlreadyExistsError(f"Table {namespace}.{table_name} already exists")

        metadata_location = self._write_new_table(
            namespace, table_name, schema, location, partition_spec, sort_order, properties
        )

        with Session(self.engine) as session:
            session.add(
                TablePointer(
                    catalog_name=self.name,
                    table_namespace=namespace,
                    table_name=table_name,
                    metadata_location=metadata_location,
                    previous_metadata_location=None,
                )
            )
            try:
                session.commit()
            except IntegrityError as e:
                raise TableAlreadyExistsError(f"Table {namespace}.{table_name} already exists") from e

        return self.load_table(identifier)

    def _current_metadata_location(self, identifier: Union[str, Identifier]) -> str:
        namespace, table_name = self.identifier_to_database_and_table(identifier, NoSuchTableError)
        with Session(self.engine) as session:
            pointer = self._pointer(session, namespace, table_name)
        if pointer is None:
            raise NoSuchTableError(f"Table does not exist: {namespace}.{table_name}")
        if not pointer.metadata_location:
            raise NoSuchTableError(f"Table property metadata_location is missing: {namespace}.{table_name}")
        return pointer.metadata_location

    def compare_and_swap(self, identifier: Union[str, Identifier], expected_location: str, new_location: str) -> None:
        namespace, table_name = self.identifier_to_database_and_table(identifier, NoSuchTableError)
        swap = (
            update(TablePointer)
            .where(*self._table_row(namespace, table_name), TablePointer.metadata_location == expected_location)
            .values(metadata_location=new_location, previous_metadata_location=expected_location)
        )
        with Session(self.engine) as session:
            if session.execute(swap).rowcount == 1:
                session.commit()
                return

            session.rollback()
            if self._pointer(session, namespace, table_name) is None:
                raise NoSuchTableError(f"Table does not exist: {namespace}.{table_name}")
        raise CommitFailedException(
            f"Table {namespace}.{table_name} has been updated concurrently, it no longer points at {expected_location}"
        )

    def drop_table(self, identifier: Union[str, Identifier]) -> None:
        namespace, table_name = self.identifier_to_database_and_table(identifier, NoSuchTableError)
        with Session(self.engine) as session:
            deleted = session.execute(delete(TablePointer).where(*self._table_row(namespace, table_name))).rowcount
            session.commit()
        if not deleted:
            raise NoSuchTableError(f"Table does not exist: {namespace}.{table_name}")

    def rename_table(self, from_identifier: Union[str, Identifier], to_identifier: Union[str, Identifier]) -> Table:
        """Rename a table, the target namespace has to exist.

        Raises:
            NoSuchTableError: If a table with the name does not exist.
            TableAlreadyExistsError: If a table with the new name already exist.
            NoSuchNamespaceError: If the target namespace does not exist.
        """
        from_namespace, from_name = self.identifier_to_database_and_table(from_identifier, NoSuchTableError)
        to_namespace, to_name = self.identifier_to_database_and_table(to_identifier)
        self._require_namespace(to_namespace)

        rename = (
            update(TablePointer)
            .where(*self._table_row(from_namespace, from_name))
            .values(table_namespace=to_namespace, table_name=to_name)
        )
        with Session(self.engine) as session:
            try:
                renamed = session.execute(rename).rowcount
                session.commit()
            except IntegrityError as e:
                raise TableAlreadyExistsError(f"Table {to_namespace}.{to_name} already exists") from e
        if not renamed:
            raise NoSuchTableError(f"Table does not exist: {from_namespace}.{from_name}")
        return self.load_table(to_identifier)

    def create_namespace(self, namespace: Union[str, Identifier], properties: Properties = EMPTY_DICT) -> None:
        name = self.identifier_to_database(namespace)
        if self._namespace_exists(name):
            raise NamespaceAlreadyExistsError(f"Database {name} already exists")

        with Session(self.engine) as session:
            self._insert_properties(session, name, properties or NAMESPACE_MARKER)
            session.commit()

    def _insert_properties(self, session: Session, namespace: str, properties: Properties) -> None:
        session.add_all(
            NamespaceProperty(catalog_name=self.name, namespace=namespace, property_key=key, property_value=value)
            for key, value in properties.items()
        )

    def drop_namespace(self, namespace: Union[str, Identifier]) -> None:
        name = self.identifier_to_database(namespace, NoSuchNamespaceError)
        self._require_namespace(name)
        if tables := self.list_tables(name):
            raise NamespaceNotEmptyError(f"Database {name} is not empty. {len(tables)} tables exist.")

        with Session(self.engine) as session:
            session.execute(delete(NamespaceProperty).where(*self._namespace_rows(name)))
            session.commit()

    def list_tables(self, namespace: Union[str, Identifier]) -> List[Identifier]:
        name = self.identifier_to_database(namespace, NoSuchNamespaceError)
        query = select(TablePointer.table_namespace, TablePointer.table_name).where(
            TablePointer.catalog_name == self.name, TablePointer.table_namespace == name
        )
        with Session(self.engine) as session:
            return [(row.table_namespace, row.table_name) for row in session.execute(query)]

    def list_namespaces(self, namespace: Union[str, Identifier] = ()) -> List[Identifier]:
        """List the namespaces that hold tables or properties.

        Namespaces are a single level, so listing below a namespace returns at most itself.
        """
        with_tables: Any = select(TablePointer.table_namespace).where(TablePointer.catalog_name == self.name)
        with_properties: Any = select(NamespaceProperty.namespace).where(NamespaceProperty.catalog_name == self.name)
        if namespace:
            name = self.identifier_to_database(namespace, NoSuchNamespaceError)
            self._require_namespace(name)
            with_tables = with_tables.where(TablePointer.table_namespace == name)
            with_properties = with_properties.where(NamespaceProperty.namespace == name)

        with Session(self.engine) as session:
            return [self.identifier_to_tuple(name) for name in session.scalars(union(with_tables, with_properties))]

    def load_namespace_properties(self, namespace: Union[str, Identifier]) -> Properties:
        name = self.identifier_to_database(namespace, NoSuchNamespaceError)
        self._require_namespace(name)
        with Session(self.engine) as session:
            rows = session.scalars(select(NamespaceProperty).where(*self._namespace_rows(name)))
            return {row.property_key: row.property_value for row in rows}

    def update_namespace_properties(
        self, namespace: Union[str, Identifier], removals: Optional[Set[str]] = None, updates: Properties = EMPTY_DICT
    ) -> PropertiesUpdateSummary:
        """Rewrite the property rows of a namespace in one transaction.

        Raises:
            NoSuchNamespaceError: If a namespace with the given name does not exist.
            ValueError: If removals and updates have overlapping keys.
        """
        name = self.identifier_to_database(namespace, NoSuchNamespaceError)
        summary, properties = self._apply_property_changes(self.load_namespace_properties(name), removals, updates)

        with Session(self.engine) as session:
            # there is no portable UPSERT, all rows are replaced instead
            session.execute(delete(NamespaceProperty).where(*self._namespace_rows(name)))
            self._insert_properties(session, name, properties or NAMESPACE_MARKER)
            session.commit()
        return summary
