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
import json
from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Optional, Sequence
from uuid import UUID

from rich.console import Console, RenderableType
from rich.table import Table as RichTable
from rich.tree import Tree

from icemeta.partitioning import PartitionSpec
from icemeta.schema import Schema
from icemeta.table import Table
from icemeta.table.metadata import MetadataLogEntry
from icemeta.table.sorting import SortOrder
from icemeta.typedef import Identifier, Properties


class Output(ABC):
    """How the CLI presents results and errors."""

    def __init__(self, verbose: bool = False) -> None:
        self.verbose = verbose

    @abstractmethod
    def exception(self, ex: Exception) -> None: ...

    @abstractmethod
    def identifiers(self, identifiers: List[Identifier]) -> None: ...

    @abstractmethod
    def describe_table(self, table: Table) -> None: ...

    @abstractmethod
    def describe_properties(self, properties: Properties) -> None: ...

    @abstractmethod
    def text(self, response: str) -> None: ...

    @abstractmethod
    def schema(self, schema: Schema) -> None: ...

    @abstractmethod
    def spec(self, spec: PartitionSpec) -> None: ...

    @abstractmethod
    def sort_order(self, sort_order: SortOrder) -> None: ...

    @abstractmethod
    def history(self, entries: List[MetadataLogEntry]) -> None: ...

    @abstractmethod
    def uuid(self, uuid: Optional[UUID]) -> None: ...


def _grid(rows: Iterable[Sequence[RenderableType]]) -> RichTable:
    grid = RichTable.grid(padding=(0, 2))
    for row in rows:
        grid.add_row(*row)
    return grid


def _tree(label: str, children: Iterable[str]) -> Tree:
    tree = Tree(label)
    for child in children:
        tree.add(child)
    return tree


class ConsoleOutput(Output):
    """Human readable output, rendered with rich."""

    def _print(self, renderable: RenderableType) -> None:
        Console().print(renderable)

    def exception(self, ex: Exception) -> None:
        console = Console(stderr=True)
        if self.verbose:
            console.print_exception()
        else:
            console.print(ex)

    def identifiers(self, identifiers: List[Identifier]) -> None:
        self._print(_grid([".".join(identifier)] for identifier in identifiers))

    def describe_table(self, table: Table) -> None:
        metadata = table.metadata
        schema = table.schema()
        log = (f"{entry.timestamp_ms}: {entry.metadata_file}" for entry in metadata.metadata_log)
        self._print(
            _grid(
                [
                    ("Table format version", str(metadata.format_version)),
                    ("Metadata location", table.metadata_location),
                    ("Table UUID", str(metadata.table_uuid)),
                    ("Last Updated", str(metadata.last_updated_ms)),
                    ("Partition spec", str(table.spec())),
                    ("Sort order", str(table.sort_order())),
                    ("Schema", _tree(f"Schema, id={schema.schema_id}", map(str, schema.fields))),
                    ("Metadata log", _tree("Metadata log", log)),
                    ("Properties", _grid(metadata.properties.items())),
                ]
            )
        )

    def describe_properties(self, properties: Properties) -> None:
        self._print(_grid(properties.items()))

    def text(self, response: str) -> None:
        self._print(response)

    def schema(self, schema: Schema) -> None:
        self._print(_grid((field.name, str(field.field_type), field.doc or "") for field in schema.fields))

    def spec(self, spec: PartitionSpec) -> None:
        self._print(str(spec))

    def sort_order(self, sort_order: SortOrder) -> None:
        self._print(str(sort_order))

    def history(self, entries: List[MetadataLogEntry]) -> None:
        self._print(_grid((str(entry.timestamp_ms), entry.metadata_file) for entry in entries))

    def uuid(self, uuid: Optional[UUID]) -> None:
        self._print(str(uuid) if uuid else "missing")


class JsonOutput(Output):
    """One JSON document per result on stdout."""

    def _emit(self, document: Any) -> None:
        print(json.dumps(document))

    def exception(self, ex: Exception) -> None:
        self._emit({"type": type(ex).__name__, "message": str(ex)})

    def identifiers(self, identifiers: List[Identifier]) -> None:
        self._emit([".".join(identifier) for identifier in identifiers])

    def describe_table(self, table: Table) -> None:
        print(table.metadata.model_dump_json())

    def describe_properties(self, properties: Properties) -> None:
        self._emit(properties)

    def text(self, response: str) -> None:
        self._emit(response)

    def schema(self, schema: Schema) -> None:
        print(schema.model_dump_json())

    def spec(self, spec: PartitionSpec) -> None:
        print(spec.model_dump_json())

    def sort_order(self, sort_order: SortOrder) -> None:
        print(sort_order.model_dump_json())

    def history(self, entries: List[MetadataLogEntry]) -> None:
        self._emit([entry.model_dump() for entry in entries])

    def uuid(self, uuid: Optional[UUID]) -> None:
        self._emit({"uuid": str(uuid) if uuid else "missing"})
