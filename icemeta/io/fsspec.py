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
"""FileIO on top of fsspec filesystems: local files and the in-process memory filesystem."""
from functools import lru_cache
from typing import Any, Callable, Dict, Union
from urllib.parse import urlparse

from fsspec import AbstractFileSystem
from fsspec.implementations.local import LocalFileSystem
from fsspec.implementations.memory import MemoryFileSystem

from icemeta.io import FileIO, InputFile, OutputFile
from icemeta.typedef import Properties

FILESYSTEM_BY_SCHEME: Dict[str, Callable[[Properties], AbstractFileSystem]] = {
    "": lambda _: LocalFileSystem(auto_mkdir=True),
    "file": lambda _: LocalFileSystem(auto_mkdir=True),
    "memory": lambda _: MemoryFileSystem(),
}


class _FsspecFile:
    _fs: AbstractFileSystem
    location: str

    def __len__(self) -> int:
        info = self._fs.info(self.location)
        # object stores report "Size", local and memory filesystems "size"
        size = info.get("size", info.get("Size"))
        if size is None:
            raise RuntimeError(f"Cannot retrieve object info: {self.location}")
        return size

    def exists(self) -> bool:
        return self._fs.exists(self.location)


class FsspecInputFile(_FsspecFile, InputFile):
    def __init__(self, location: str, fs: AbstractFileSystem):
        super().__init__(location)
        self._fs = fs

    def open(self) -> Any:
        """Open an fsspec file-like object for reading."""
        return self._fs.open(self.location, "rb")


class FsspecOutputFile(_FsspecFile, OutputFile):
    def __init__(self, location: str, fs: AbstractFileSystem):
        super().__init__(location)
        self._fs = fs

    def create(self, overwrite: bool = False) -> Any:
        """Open an fsspec file-like object for writing.

        Checking and opening are two calls, a concurrent writer can create the file in
        between. Metadata file names carry a UUID, so two writers never pick the same name.
        """
        if not overwrite and self.exists():
            raise FileExistsError(f"Cannot create file, file already exists: {self.location}")
        return self._fs.open(self.location, "wb")

    def to_input_file(self) -> FsspecInputFile:
        return FsspecInputFile(self.location, self._fs)


class FsspecFileIO(FileIO):
    """Resolves the filesystem from the scheme of each location, one cached instance per scheme."""

    def __init__(self, properties: Properties):
        super().__init__(properties=properties)
        self.get_fs: Callable[[str], AbstractFileSystem] = lru_cache(self._filesystem)

    def _filesystem(self, scheme: str) -> AbstractFileSystem:
        if scheme not in FILESYSTEM_BY_SCHEME:
            raise ValueError(f"No registered filesystem for scheme: {scheme}")
        return FILESYSTEM_BY_SCHEME[scheme](self.properties)

    def _fs_for(self, location: str) -> AbstractFileSystem:
        return self.get_fs(urlparse(location).scheme)

    def new_input(self, location: str) -> FsspecInputFile:
        return FsspecInputFile(location, self._fs_for(location))

    def new_output(self, location: str) -> FsspecOutputFile:
        return FsspecOutputFile(location, self._fs_for(location))

    def delete(self, location: Union[str, InputFile, OutputFile]) -> None:
        path = location.location if isinstance(location, (InputFile, OutputFile)) else location
        self._fs_for(path).rm(path)
