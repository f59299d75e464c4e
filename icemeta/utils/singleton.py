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
"""Instance caching for value objects that are immutable and compared by value.

Primitive types and the argument-less transforms are created through this mixin, so
`StringType() is StringType()` holds. Constructor arguments are part of the cache key:
`FixedType(16)` and `FixedType(8)` are two distinct cached instances.
"""
from typing import Any, ClassVar, Dict


def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return tuple((_freeze(key), _freeze(item)) for key, item in value.items())
    if isinstance(value, list):
        return tuple(_freeze(item) for item in value)
    return value


class Singleton:
    _instances: ClassVar[Dict[Any, Any]] = {}

    def __new__(cls, *args: Any, **kwargs: Any) -> Any:
        key = (cls, args, _freeze(kwargs))
        if key not in cls._instances:
            cls._instances[key] = super().__new__(cls)
        return cls._instances[key]

    def __deepcopy__(self, memo: Dict[int, Any]) -> Any:
        """A deep copy of a cached instance is the instance itself."""
        return self
