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
from functools import cached_property, singledispatch
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Literal,
    NamedTuple,
    Optional,
    Set,
    Tuple,
    Union,
)

from pydantic import Field, PrivateAttr

from icemeta.exceptions import NotFoundError, ResolveError
from icemeta.typedef import IcemetaBaseModel
from icemeta.types import (
    DecimalType,
    DoubleType,
    FloatType,
    IcebergType,
    IntegerType,
    ListType,
    LongType,
    MapType,
    NestedField,
    StructType,
)

INITIAL_SCHEMA_ID = 0


class Schema(IcemetaBaseModel):
    """A table schema: an ordered tuple of top-level fields plus a schema id.

    Equality ignores the schema id, two schemas are equal when their columns
    (ids, names, types, nullability and docs) and identifier fields are equal.
    """

    type: Literal["struct"] = "struct"
    fields: Tuple[NestedField, ...] = Field(default_factory=tuple)
    schema_id: int = Field(alias="schema-id", default=INITIAL_SCHEMA_ID)
    identifier_field_ids: List[int] = Field(alias="identifier-field-ids", default_factory=list)

    _name_to_id: Dict[str, int] = PrivateAttr()

    def __init__(self, *fields: NestedField, **data: Any):
        if fields:
            data["fields"] = fields
        super().__init__(**data)
        self._name_to_id = index_by_name(self)

    def __str__(self) -> str:
        """Return the human-readable representation of the Schema."""
        return "table {\n" + "\n".join(f"  {column}" for column in self.columns) + "\n}"

    def __repr__(self) -> str:
        """Return the string representation of the Schema class."""
        columns = ", ".join(repr(column) for column in self.columns)
        return f"Schema({columns}, schema_id={self.schema_id}, identifier_field_ids={self.identifier_field_ids})"

    def __len__(self) -> int:
        """Return the number of top-level columns."""
        return len(self.fields)

    def __eq__(self, other: Any) -> bool:
        """Compare the columns and identifier fields, not the schema id."""
        if not isinstance(other, Schema):
            return False
        return self.fields == other.fields and self.identifier_field_ids == other.identifier_field_ids

    @property
    def columns(self) -> Tuple[NestedField, ...]:
        """A tuple of the top-level fields."""
        return self.fields

    @cached_property
    def _lazy_id_to_field(self) -> Dict[int, NestedField]:
        return index_by_id(self)

    @cached_property
    def _lazy_name_to_id_lower(self) -> Dict[str, int]:
        return {name.lower(): field_id for name, field_id in self._name_to_id.items()}

    @cached_property
    def _lazy_id_to_name(self) -> Dict[int, str]:
        return index_name_by_id(self)

    @cached_property
    def _lazy_id_to_parent(self) -> Dict[int, int]:
        """Field id to the id of the enclosing field, top-level fields are left out."""
        return index_parents(self)

    def as_struct(self) -> StructType:
        return StructType(*self.fields)

    def find_field(self, name_or_id: Union[str, int], case_sensitive: bool = True) -> NestedField:
        """Find a field using a dotted field name or a field ID.

        Args:
            name_or_id: Either a (dotted) field name or a field ID.
            case_sensitive: Whether names are compared case-sensitively. Defaults to True.

        Raises:
            NotFoundError: When the value cannot be found.

        Returns:
            NestedField: The matched NestedField.
        """
        if isinstance(name_or_id, int):
            if name_or_id not in self._lazy_id_to_field:
                raise NotFoundError(f"Could not find field with id: {name_or_id}")
            return self._lazy_id_to_field[name_or_id]

        if case_sensitive:
            field_id = self._name_to_id.get(name_or_id)
        else:
            field_id = self._lazy_name_to_id_lower.get(name_or_id.lower())

        if field_id is None:
            raise NotFoundError(f"Could not find field with name {name_or_id}, case_sensitive={case_sensitive}")

        return self._lazy_id_to_field[field_id]

    def find_type(self, name_or_id: Union[str, int], case_sensitive: bool = True) -> IcebergType:
        return self.find_field(name_or_id=name_or_id, case_sensitive=case_sensitive).field_type

    @property
    def highest_field_id(self) -> int:
        return max(self._lazy_id_to_field, default=0)

    def find_column_name(self, column_id: int) -> Optional[str]:
        """Return the full dotted name of a column, or None when the id is unknown."""
        return self._lazy_id_to_name.get(column_id)

    @property
    def column_names(self) -> List[str]:
        """Return the full names of all the columns, including nested fields."""
        return list(self._lazy_id_to_name.values())

    @property
    def field_ids(self) -> Set[int]:
        return set(self._name_to_id.values())

    def identifier_field_names(self) -> Set[str]:
        """Return the full names of the identifier fields."""
        ids_to_name = self._lazy_id_to_name
        return {ids_to_name[field_id] for field_id in self.identifier_field_ids if field_id in ids_to_name}


@singledispatch
def child_fields(obj: Union[Schema, IcebergType]) -> Tuple[NestedField, ...]:
    """Return the fields directly nested in a schema or type, primitives have none."""
    return ()


@child_fields.register(Schema)
@child_fields.register(StructType)
def _(obj: Union[Schema, StructType]) -> Tuple[NestedField, ...]:
    return obj.fields


@child_fields.register(ListType)
def _(obj: ListType) -> Tuple[NestedField, ...]:
    return (obj.element_field,)


@child_fields.register(MapType)
def _(obj: MapType) -> Tuple[NestedField, ...]:
    return obj.key_field, obj.value_field


class _Located(NamedTuple):
    field: NestedField
    name: str
    short_name: str
    parent_id: Optional[int]


def _walk(
    fields: Tuple[NestedField, ...],
    path: Tuple[str, ...] = (),
    short_path: Tuple[str, ...] = (),
    parent_id: Optional[int] = None,
) -> Iterator[_Located]:
    """Yield every nested field depth-first, parents before their children.

    The short name of a field inside a list of structs leaves out the element, so
    `points.element.x` can also be found as `points.x`.
    """
    for field in fields:
        full = path + (field.name,)
        short = short_path + (field.name,)
        yield _Located(field, ".".join(full), ".".join(short), parent_id)

        field_type = field.field_type
        if isinstance(field_type, ListType) and isinstance(field_type.element_type, StructType):
            element = field_type.element_field
            element_path = full + (element.name,)
            yield _Located(element, ".".join(element_path), ".".join(short + (element.name,)), field.field_id)
            yield from _walk(field_type.element_type.fields, element_path, short, element.field_id)
        else:
            yield from _walk(child_fields(field_type), full, short, field.field_id)


def index_by_id(schema_or_type: Union[Schema, IcebergType]) -> Dict[int, NestedField]:
    """Generate an index of field IDs to NestedField instances."""
    return {located.field.field_id: located.field for located in _walk(child_fields(schema_or_type))}


def index_by_name(schema_or_type: Union[Schema, IcebergType]) -> Dict[str, int]:
    """Generate an index of full and short field names to field IDs.

    A short name is only kept when no field has it as its full name.

    Raises:
        ValueError: When two fields share a full name.
    """
    full_names: Dict[str, int] = {}
    short_names: Dict[str, int] = {}
    for located in _walk(child_fields(schema_or_type)):
        field_id = located.field.field_id
        if located.name in full_names:
            raise ValueError(
                f"Invalid schema, multiple fields for name {located.name}: {full_names[located.name]} and {field_id}"
            )
        full_names[located.name] = field_id
        short_names[located.short_name] = field_id

    return {**short_names, **full_names}


def index_name_by_id(schema_or_type: Union[Schema, IcebergType]) -> Dict[int, str]:
    """Generate an index of field IDs to full field names."""
    return {located.field.field_id: located.name for located in _walk(child_fields(schema_or_type))}


def index_parents(schema_or_type: Union[Schema, IcebergType]) -> Dict[int, int]:
    """Generate an index of field IDs to their parent field IDs.

    Fields of a struct inside a list or map point at the element or value id.
    """
    return {
        located.field.field_id: located.parent_id
        for located in _walk(child_fields(schema_or_type))
        if located.parent_id is not None
    }


@singledispatch
def _renumber(field_type: IcebergType, new_id: Callable[[int], int]) -> IcebergType:
    return field_type


@_renumber.register(StructType)
def _(field_type: StructType, new_id: Callable[[int], int]) -> IcebergType:
    # the fields of a struct are numbered before anything nested in them
    ids = [new_id(field.field_id) for field in field_type.fields]
    return StructType(
        *[
            NestedField(
                field_id=field_id,
                name=field.name,
                field_type=_renumber(field.field_type, new_id),
                required=field.required,
                doc=field.doc,
            )
            for field_id, field in zip(ids, field_type.fields)
        ]
    )


@_renumber.register(ListType)
def _(field_type: ListType, new_id: Callable[[int], int]) -> IcebergType:
    element_id = new_id(field_type.element_id)
    return ListType(
        element_id=element_id,
        element_type=_renumber(field_type.element_type, new_id),
        element_required=field_type.element_required,
    )


@_renumber.register(MapType)
def _(field_type: MapType, new_id: Callable[[int], int]) -> IcebergType:
    key_id = new_id(field_type.key_id)
    value_id = new_id(field_type.value_id)
    return MapType(
        key_id=key_id,
        key_type=_renumber(field_type.key_type, new_id),
        value_id=value_id,
        value_type=_renumber(field_type.value_type, new_id),
        value_required=field_type.value_required,
    )


def assign_fresh_schema_ids(
    schema_or_type: Union[Schema, IcebergType], next_id: Optional[Callable[[], int]] = None
) -> Union[Schema, IcebergType]:
    """Renumber a schema or type with new ids, handed out parents first.

    Args:
        schema_or_type: The schema or (nested) type to renumber.
        next_id: Supplies the next id, defaults to counting up from 1.
    """
    assigned: Dict[int, int] = {}

    def fresh(old_id: int) -> int:
        assigned[old_id] = next_id() if next_id is not None else len(assigned) + 1
        return assigned[old_id]

    if not isinstance(schema_or_type, Schema):
        return _renumber(schema_or_type, fresh)

    struct = _renumber(schema_or_type.as_struct(), fresh)
    return Schema(
        *struct.fields,  # type: ignore
        schema_id=schema_or_type.schema_id,
        identifier_field_ids=[assigned[field_id] for field_id in schema_or_type.identifier_field_ids],
    )


def _same_kind(lhs: IcebergType, rhs: IcebergType) -> bool:
    if lhs.is_primitive or rhs.is_primitive:
        return lhs == rhs
    return type(lhs) is type(rhs)


def reassign_ids_by_name(schema: Schema, base_schema: Schema, next_id: Callable[[], int], schema_id: int) -> Schema:
    """Give a schema the ids of the same-named columns in a base schema, and fresh ids to the rest.

    A column only keeps the id from the base schema when it has the same full name and the
    same kind of type, a column that changed type gets a new id so old data files are
    never read as the new type.
    """
    fresh = assign_fresh_schema_ids(schema)
    id_mapping: Dict[int, int] = {}
    for located in sorted(_walk(child_fields(fresh)), key=lambda located: located.field.field_id):
        try:
            base_field: Optional[NestedField] = base_schema.find_field(located.name)
        except NotFoundError:
            base_field = None

        if base_field is not None and _same_kind(base_field.field_type, located.field.field_type):
            id_mapping[located.field.field_id] = base_field.field_id
        else:
            id_mapping[located.field.field_id] = next_id()

    struct = _renumber(fresh.as_struct(), id_mapping.__getitem__)
    return Schema(
        *struct.fields,  # type: ignore
        schema_id=schema_id,
        identifier_field_ids=[id_mapping[field_id] for field_id in fresh.identifier_field_ids],  # type: ignore
    )


_WIDENINGS = {
    IntegerType: LongType,
    FloatType: DoubleType,
}


def promote(file_type: IcebergType, read_type: IcebergType) -> IcebergType:
    """Promote a column type to a wider type.

    Only the widenings that keep every existing value readable are allowed:
    int to long, float to double, and decimal(P, S) to decimal(P2, S) with P2 > P.

    Raises:
        ResolveError: If the promotion is not allowed.
    """
    if file_type == read_type:
        return read_type

    if isinstance(file_type, DecimalType) and isinstance(read_type, DecimalType):
        if file_type.scale != read_type.scale:
            raise ResolveError(f"Cannot change the scale from {file_type} to {read_type}")
        if file_type.precision > read_type.precision:
            raise ResolveError(f"Cannot reduce precision from {file_type} to {read_type}")
        return read_type

    wider = _WIDENINGS.get(type(file_type))
    if wider is not None and isinstance(read_type, wider):
        return read_type

    raise ResolveError(f"Cannot promote {file_type} to {read_type}")
