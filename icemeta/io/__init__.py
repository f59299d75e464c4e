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
"""Reading and writing metadata files through a small filesystem abstraction.

Catalogs only ever need four things from a filesystem: open a file at a location as a
stream, create a new file, check whether a file exists and delete one. A `FileIO` hands
out `InputFile` and `OutputFile` handles for locations, `load_file_io` picks the
implementation for a location from its scheme.
"""
from __future__ import annotations

import importlib
import logging
from abc import ABC, abstractmethod
from types import TracebackType
from typing import (
    Dict,
    Iterator,
    Optional,
    Protocol,
    Type,
    Union,
    runtime_checkable,
)
from urllib.parse import urlparse

from icemeta.typedef import EMPTY_DICT, Properties

logger = logging.getLogger(__name__)


@runtime_checkable
class InputStream(Protocol):
    """The readable file-like object returned by `InputFile.open()`, a subset of RawIOBase."""

    def read(self, size: int = -1) -> bytes:
        ...

    def close(self) -> None:
        ...

    def __enter__(self) -> InputStream:
        ...

    def __exit__(
        self, exctype: Optional[Type[BaseException]], excinst: Optional[BaseException], exctb: Optional[TracebackType]
    ) -> None:
        ...


@runtime_checkable
class OutputStream(Protocol):  # pragma: no cover
    def write(self, b: bytes) -> int:
        ...

    def close(self) -> None:
        ...

    def __enter__(self) -> OutputStream:
        ...

    def __exit__(
        self, exctype: Optional[Type[BaseException]], excinst: Optional[BaseException], exctb: Optional[TracebackType]
    ) -> None:
        ...


class _File(ABC):
    def __init__(self, location: str):
        self._location = location

    @property
    def location(self) -> str:
        """The fully-qualified location of the file."""
        return self._location

    @abstractmethod
    def __len__(self) -> int:
        """Size of the file in bytes."""

    @abstractmethod
    def exists(self) -> bool:
        ...


class InputFile(_File):
    """A file that metadata is read from, at a URI or a local path."""

    @abstractmethod
    def open(self) -> InputStream:
        """Open the file for reading.

        Raises:
            FileNotFoundError: If nothing exists at the location.
        """


class OutputFile(_File):
    """A file that metadata is written to, at a URI or a local path."""

    @abstractmethod
    def to_input_file(self) -> InputFile:
        ...

    @abstractmethod
    def create(self, overwrite: bool = False) -> OutputStream:
        """Open the file for writing.

        Raises:
            FileExistsError: If the file exists already and `overwrite` is not set.
        """


class FileIO(ABC):
    """Hands out file handles for locations, configured by catalog and table properties."""

    properties: Properties

    def __init__(self, properties: Properties = EMPTY_DICT):
        self.properties = properties

    @abstractmethod
    def new_input(self, location: str) -> InputFile:
        ...

    @abstractmethod
    def new_output(self, location: str) -> OutputFile:
        ...

    @abstractmethod
    def delete(self, location: Union[str, InputFile, OutputFile]) -> None:
        """Delete the file at a location, or the location of a file handle.

        Raises:
            FileNotFoundError: When nothing exists at the location.
        """


WAREHOUSE = "warehouse"
PY_IO_IMPL = "py-io-impl"

FSSPEC_FILE_IO = "icemeta.io.fsspec.FsspecFileIO"

FILE_IO_BY_SCHEME: Dict[str, str] = {
    "": FSSPEC_FILE_IO,
    "file": FSSPEC_FILE_IO,
    "memory": FSSPEC_FILE_IO,
}


def _instantiate(io_impl: str, properties: Properties) -> FileIO:
    module_name, _, class_name = io_impl.rpartition(".")
    if not module_name:
        raise ValueError(f"py-io-impl should be full path (module.CustomFileIO), got: {io_impl}")
    file_io_class = getattr(importlib.import_module(module_name), class_name)
    return file_io_class(properties)


def _by_scheme(locations: Iterator[str], properties: Properties) -> Optional[FileIO]:
    for location in locations:
        scheme = urlparse(location).scheme
        if io_impl := FILE_IO_BY_SCHEME.get(scheme):
            return _instantiate(io_impl, properties)
        logger.warning("No preferred file implementation for scheme: %s", scheme)
    return None


def load_file_io(properties: Properties = EMPTY_DICT, location: Optional[str] = None) -> FileIO:
    """Load the FileIO for the given catalog properties and location.

    The `py-io-impl` property takes precedence, after that the scheme of the
    location and then the scheme of the warehouse decide.
    """
    if io_impl := properties.get(PY_IO_IMPL):
        logger.info("Loading FileIO: %s", io_impl)
        return _instantiate(io_impl, properties)

    candidates = (candidate for candidate in (location, properties.get(WAREHOUSE)) if candidate)
    if file_io := _by_scheme(candidates, properties):
        return file_io

    logger.info("Defaulting to fsspec FileIO")
    return _instantiate(FSSPEC_FILE_IO, properties)
