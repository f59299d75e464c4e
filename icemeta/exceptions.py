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


class NoSuchTableError(Exception):
    """Raised when a referenced table is not found."""


class NoSuchNamespaceError(Exception):
    """Raised when a referenced name-space is not found."""


class NamespaceNotEmptyError(Exception):
    """Raised when a name-space being dropped is not empty."""


class AlreadyExistsError(Exception):
    """Raised when a table or name-space being created already exists in the catalog."""


class TableAlreadyExistsError(AlreadyExistsError):
    """Raised when creating a table with a name that already exists."""


class NamespaceAlreadyExistsError(AlreadyExistsError):
    """Raised when a name-space being created already exists in the catalog."""


class NoSuchPropertyException(Exception):
    """When a property is missing."""


class ValidationError(Exception):
    """Raised when there is an issue with the schema, spec or metadata."""


class ResolveError(Exception):
    """Raised when one type cannot be promoted to another."""


class NotFoundError(ValueError):
    """Raised when a referenced column, struct path or partition field does not exist."""


class InvalidOperationError(ValueError):
    """Raised for malformed evolution requests: bad positions, name collisions, transform/type mismatches."""


class UnsafeTypeChangeError(ValidationError):
    """Raised when a retype or a nullability tightening falls outside of the safe rules."""


class CommitFailedException(Exception):
    """Commits failed because the base metadata changed underneath, can be retried."""


class CommitConflictError(Exception):
    """Raised when a commit kept losing the compare-and-swap until the retry budget ran out."""
