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
# pylint: disable=broad-except
from functools import wraps
from typing import (
    Any,
    Callable,
    Dict,
    Optional,
)

import click
from click import Context

from icemeta.catalog import Catalog, load_catalog
from icemeta.cli.output import ConsoleOutput, JsonOutput, Output
from icemeta.exceptions import NoSuchNamespaceError, NoSuchPropertyException, NoSuchTableError
from icemeta.typedef import Properties


def with_catalog(func: Callable[..., None]) -> Callable[..., None]:
    """Hand the command the catalog and output of the group, and report any error through the output."""

    @click.pass_context
    @wraps(func)
    def wrapper(ctx: Context, *args: Any, **kwargs: Any) -> None:
        catalog: Catalog = ctx.obj["catalog"]
        output: Output = ctx.obj["output"]
        try:
            func(catalog, output, *args, **kwargs)
        except Exception as e:
            output.exception(e)
            ctx.exit(1)

    return wrapper


@click.group()
@click.option("--catalog", help="Name of the catalog in the configuration.")
@click.option("--verbose", type=click.BOOL, help="Print full tracebacks.")
@click.option("--output", type=click.Choice(["text", "json"]), default="text")
@click.option("--uri", help="Connection uri of the catalog.")
@click.option("--warehouse", help="Location new tables are created under.")
@click.pass_context
def run(ctx: Context, catalog: Optional[str], verbose: bool, output: str, uri: Optional[str], warehouse: Optional[str]) -> None:
    """Inspect and change table metadata."""
    ctx.ensure_object(dict)
    ctx.obj["output"] = JsonOutput(verbose=verbose) if output == "json" else ConsoleOutput(verbose=verbose)

    overrides: Dict[str, str] = {key: value for key, value in (("uri", uri), ("warehouse", warehouse)) if value}
    try:
        ctx.obj["catalog"] = load_catalog(catalog, **overrides)
    except Exception as e:
        ctx.obj["output"].exception(e)
        ctx.exit(1)


@run.command("list")
@click.argument("parent", required=False)
@with_catalog
def list_entities(catalog: Catalog, output: Output, parent: Optional[str]) -> None:
    """List the namespaces, or the tables of a namespace."""
    identifiers = catalog.list_namespaces(parent or ())
    if parent and not identifiers:
        identifiers = catalog.list_tables(parent)
    output.identifiers(identifiers)


@run.command()
@click.option("--entity", type=click.Choice(["any", "namespace", "table"]), default="any")
@click.argument("identifier")
@with_catalog
def describe(catalog: Catalog, output: Output, entity: str, identifier: str) -> None:
    """Describe a namespace or a table."""
    parts = Catalog.identifier_to_tuple(identifier)
    found = False

    if entity in ("any", "namespace"):
        try:
            output.describe_properties(catalog.load_namespace_properties(parts))
            found = True
        except NoSuchNamespaceError:
            # a single part can only name a namespace
            if entity == "namespace" or len(parts) == 1:
                raise

    if entity in ("any", "table") and len(parts) > 1:
        try:
            output.describe_table(catalog.load_table(identifier))
            found = True
        except NoSuchTableError:
            if entity == "table":
                raise

    if not found:
        raise NoSuchTableError(f"Table or namespace does not exist: {identifier}")


@run.command()
@click.argument("identifier")
@with_catalog
def schema(catalog: Catalog, output: Output, identifier: str) -> None:
    """Print the current schema of a table."""
    output.schema(catalog.load_table(identifier).schema())


@run.command()
@click.argument("identifier")
@click.option("--spec-id", type=int, help="Show a historical spec instead of the current one.")
@with_catalog
def spec(catalog: Catalog, output: Output, identifier: str, spec_id: Optional[int]) -> None:
    """Print the partition spec of a table."""
    table = catalog.load_table(identifier)
    output.spec(table.spec() if spec_id is None else table.historical_spec(spec_id))


@run.command("sort-order")
@click.argument("identifier")
@with_catalog
def sort_order(catalog: Catalog, output: Output, identifier: str) -> None:
    """Print the default sort order of a table."""
    output.sort_order(catalog.load_table(identifier).sort_order())


@run.command()
@click.argument("identifier")
@with_catalog
def history(catalog: Catalog, output: Output, identifier: str) -> None:
    """List the previous metadata files of a table."""
    output.history(catalog.load_table(identifier).history())


@run.command()
@click.argument("identifier")
@with_catalog
def uuid(catalog: Catalog, output: Output, identifier: str) -> None:
    output.uuid(catalog.load_table(identifier).metadata.table_uuid)


@run.command()
@click.argument("identifier")
@with_catalog
def location(catalog: Catalog, output: Output, identifier: str) -> None:
    output.text(catalog.load_table(identifier).location())


@run.command()
@click.argument("from_identifier")
@click.argument("to_identifier")
@with_catalog
def rename(catalog: Catalog, output: Output, from_identifier: str, to_identifier: str) -> None:
    """Rename a table."""
    catalog.rename_table(from_identifier, to_identifier)
    output.text(f"Renamed table from {from_identifier} to {to_identifier}")


@run.group()
def drop() -> None:
    """Drop a namespace or a table."""


@drop.command("table")
@click.argument("identifier")
@with_catalog
def drop_table(catalog: Catalog, output: Output, identifier: str) -> None:
    catalog.drop_table(identifier)
    output.text(f"Dropped table: {identifier}")


@drop.command("namespace")
@click.argument("identifier")
@with_catalog
def drop_namespace(catalog: Catalog, output: Output, identifier: str) -> None:
    catalog.drop_namespace(identifier)
    output.text(f"Dropped namespace: {identifier}")


@run.group()
def properties() -> None:
    """Read and change the properties of namespaces and tables."""


@properties.group("get")
def get_properties() -> None:
    """Print all properties, or a single one."""


@properties.group("set")
def set_property() -> None:
    """Set a property."""


@properties.group("remove")
def remove_property() -> None:
    """Remove a property."""


def _print_properties(output: Output, properties: Properties, property_name: Optional[str], owner: str) -> None:
    if not property_name:
        output.describe_properties(properties)
    elif property_value := properties.get(property_name):
        output.text(property_value)
    else:
        raise NoSuchPropertyException(f"Could not find property {property_name} on {owner}")


@get_properties.command("namespace")
@click.argument("identifier")
@click.argument("property_name", required=False)
@with_catalog
def get_namespace(catalog: Catalog, output: Output, identifier: str, property_name: Optional[str]) -> None:
    namespace_properties = catalog.load_namespace_properties(Catalog.identifier_to_tuple(identifier))
    _print_properties(output, namespace_properties, property_name, f"namespace {identifier}")


@get_properties.command("table")
@click.argument("identifier")
@click.argument("property_name", required=False)
@with_catalog
def get_table(catalog: Catalog, output: Output, identifier: str, property_name: Optional[str]) -> None:
    table_properties = catalog.load_table(Catalog.identifier_to_tuple(identifier)).properties
    _print_properties(output, table_properties, property_name, f"table {identifier}")


@set_property.command("namespace")
@click.argument("identifier")
@click.argument("property_name")
@click.argument("property_value")
@with_catalog
def set_namespace(catalog: Catalog, output: Output, identifier: str, property_name: str, property_value: str) -> None:
    catalog.update_namespace_properties(identifier, updates={property_name: property_value})
    output.text(f"Updated {property_name} on {identifier}")


@set_property.command("table")
@click.argument("identifier")
@click.argument("property_name")
@click.argument("property_value")
@with_catalog
def set_table(catalog: Catalog, output: Output, identifier: str, property_name: str, property_value: str) -> None:
    table = catalog.load_table(Catalog.identifier_to_tuple(identifier))
    with table.transaction() as transaction:
        transaction.set_properties({property_name: property_value})
    output.text(f"Set {property_name}={property_value} on {identifier}")


@remove_property.command("namespace")
@click.argument("identifier")
@click.argument("property_name")
@with_catalog
def remove_namespace(catalog: Catalog, output: Output, identifier: str, property_name: str) -> None:
    summary = catalog.update_namespace_properties(identifier, removals={property_name})
    if summary.removed != [property_name]:
        raise NoSuchPropertyException(f"Property {property_name} does not exist on {identifier}")
    output.text(f"Property {property_name} removed from {identifier}")


@remove_property.command("table")
@click.argument("identifier")
@click.argument("property_name")
@with_catalog
def remove_table(catalog: Catalog, output: Output, identifier: str, property_name: str) -> None:
    table = catalog.load_table(identifier)
    if property_name not in table.properties:
        raise NoSuchPropertyException(f"Property {property_name} does not exist on {identifier}")

    with table.transaction() as transaction:
        transaction.remove_properties(property_name)
    output.text(f"Property {property_name} removed from {identifier}")
