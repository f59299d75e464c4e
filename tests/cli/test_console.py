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
import os
from typing import Callable, List

import pytest
from click.testing import CliRunner, Result
from pytest_mock import MockFixture

from icemeta.catalog.memory import InMemoryCatalog
from icemeta.cli.console import run
from icemeta.partitioning import PartitionField, PartitionSpec
from icemeta.schema import Schema
from icemeta.table import Table
from icemeta.transforms import IdentityTransform
from icemeta.types import LongType, NestedField
from icemeta.utils.config import Config

Invoke = Callable[..., Result]

IDENTIFIER = ("default", "my_table")
LOCATION = "memory://bucket/test/location"
NAMESPACE_LOCATION = "memory://warehouse/database/location"
SCHEMA = Schema(
    NestedField(1, "x", LongType(), required=True),
    NestedField(2, "y", LongType(), required=True, doc="comment"),
    NestedField(3, "z", LongType(), required=True),
)
SPEC = PartitionSpec(PartitionField(source_id=1, field_id=1000, transform=IdentityTransform(), name="x"))
TABLE_PROPERTIES = {"read.split.target.size": "134217728"}

MISSING_TABLE = "Table does not exist: ('default', 'doesnotexist')"
MISSING_NAMESPACE = "Namespace does not exist: ('doesnotexist',)"


@pytest.fixture(autouse=True)
def production_catalog_env(mocker: MockFixture) -> None:
    mocker.patch.dict(os.environ, {"ICEMETA_CATALOG__PRODUCTION__URI": "memory://doesnotexist"})


@pytest.fixture(name="catalog")
def fixture_catalog(mocker: MockFixture) -> InMemoryCatalog:
    catalog = InMemoryCatalog("cli", **{"test.key": "test.value"})
    mocker.patch("icemeta.cli.console.load_catalog", return_value=catalog)
    return catalog


@pytest.fixture(name="namespace")
def fixture_namespace(catalog: InMemoryCatalog) -> str:
    catalog.create_namespace("default", {"location": NAMESPACE_LOCATION})
    return "default"


@pytest.fixture(name="table")
def fixture_table(catalog: InMemoryCatalog) -> Table:
    return catalog.create_table(IDENTIFIER, SCHEMA, location=LOCATION, partition_spec=SPEC, properties=TABLE_PROPERTIES)


@pytest.fixture(name="cli")
def fixture_cli() -> Invoke:
    runner = CliRunner()

    def invoke(*args: str, exit_code: int = 0) -> Result:
        result = runner.invoke(run, list(args))
        assert result.exit_code == exit_code, result.output
        return result

    return invoke


def _lines(output: str) -> List[str]:
    return [line.rstrip() for line in output.split("\n")]


def test_missing_uri(mocker: MockFixture, tmp_path_factory: pytest.TempPathFactory, cli: Invoke) -> None:
    # neither ~/.icemeta.yaml nor $ICEMETA_HOME/.icemeta.yaml may be found
    home = str(tmp_path_factory.mktemp("home"))
    mocker.patch.dict(os.environ, values={"HOME": home, "ICEMETA_HOME": home})
    mocker.patch("icemeta.catalog._ENV_CONFIG", Config())

    assert "URI missing" in cli("list", exit_code=1).output


@pytest.mark.usefixtures("catalog")
@pytest.mark.parametrize(
    "args,message",
    [
        (["describe", "doesnotexist"], MISSING_NAMESPACE),
        (["describe", "default.doesnotexist"], "Table or namespace does not exist: default.doesnotexist"),
        (["schema", "default.doesnotexist"], MISSING_TABLE),
        (["spec", "default.doesnotexist"], MISSING_TABLE),
        (["uuid", "default.doesnotexist"], MISSING_TABLE),
        (["drop", "table", "default.doesnotexist"], MISSING_TABLE),
        (["drop", "namespace", "doesnotexist"], MISSING_NAMESPACE),
        (["rename", "default.doesnotexist", "default.bar"], MISSING_TABLE),
        (["properties", "get", "table", "doesnotexist"], "Table does not exist: ('doesnotexist',)"),
        (["properties", "set", "namespace", "doesnotexist", "location", "memory://elsewhere"], MISSING_NAMESPACE),
        (["properties", "set", "table", "default.doesnotexist", "location", "memory://elsewhere"], MISSING_TABLE),
        (["properties", "remove", "namespace", "doesnotexist", "location"], MISSING_NAMESPACE),
    ],
)
def test_missing_entities_exit_with_an_error(cli: Invoke, args: List[str], message: str) -> None:
    assert cli(*args, exit_code=1).output == f"{message}\n"


def test_list(cli: Invoke, table: Table) -> None:
    assert "default" in cli("list").output
    assert cli("list", "default").output == "default.my_table\n"


def test_describe_namespace(cli: Invoke, namespace: str) -> None:
    assert cli("describe", namespace).output == f"location  {NAMESPACE_LOCATION}\n"


def test_describe_table(cli: Invoke, table: Table) -> None:
    lines = _lines(cli("describe", "default.my_table").output)

    assert lines[0] == "Table format version  2"
    for expected in (
        f"Table UUID            {table.metadata.table_uuid}",
        "Partition spec        [",
        "                        1000: x: identity(1)",
        "Sort order            []",
        "Schema                Schema, id=0",
        "                      ├── 1: x: required long",
        "                      ├── 2: y: required long (comment)",
        "                      └── 3: z: required long",
        "Properties            read.split.target.size  134217728",
    ):
        assert expected in lines


def test_schema_follows_evolution(cli: Invoke, table: Table) -> None:
    assert _lines(cli("schema", "default.my_table").output) == ["x  long", "y  long  comment", "z  long", ""]

    with table.update_schema() as update:
        update.add_column("w", LongType())

    assert _lines(cli("schema", "default.my_table").output)[-2] == "w  long"


def test_spec_and_its_history(cli: Invoke, table: Table) -> None:
    assert cli("spec", "default.my_table").output == "[\n  1000: x: identity(1)\n]\n"

    with table.update_spec() as update:
        update.remove_field("x")
        update.add_identity("y")

    assert cli("spec", "default.my_table").output == "[\n  1000: x: void(1)\n  1001: y: identity(2)\n]\n"
    assert cli("spec", "default.my_table", "--spec-id", "0").output == "[\n  1000: x: identity(1)\n]\n"

    missing = cli("spec", "default.my_table", "--spec-id", "5", exit_code=1)
    assert missing.output == "Partition spec with id 5 does not exist\n"


def test_sort_order(cli: Invoke, table: Table) -> None:
    assert cli("sort-order", "default.my_table").output == "[]\n"

    table.replace_sort_order().asc("z").commit()

    assert cli("sort-order", "default.my_table").output == "[\n  3 ASC NULLS FIRST\n]\n"


def test_history_lists_previous_metadata(cli: Invoke, table: Table) -> None:
    created = table.metadata_location
    with table.transaction() as transaction:
        transaction.set_properties({"owner": "analytics"})

    assert created in cli("history", "default.my_table").output


def test_uuid_and_location(cli: Invoke, table: Table) -> None:
    assert cli("uuid", "default.my_table").output == f"{table.metadata.table_uuid}\n"
    assert cli("location", "default.my_table").output == f"{LOCATION}\n"


def test_drop(cli: Invoke, table: Table) -> None:
    assert cli("drop", "table", "default.my_table").output == "Dropped table: default.my_table\n"
    assert cli("drop", "namespace", "default").output == "Dropped namespace: default\n"


def test_rename(cli: Invoke, catalog: InMemoryCatalog, table: Table) -> None:
    result = cli("rename", "default.my_table", "default.my_new_table")

    assert result.output == "Renamed table from default.my_table to default.my_new_table\n"
    assert catalog.list_tables("default") == [("default", "my_new_table")]


def test_table_properties(cli: Invoke, catalog: InMemoryCatalog, table: Table) -> None:
    assert cli("properties", "get", "table", "default.my_table").output == "read.split.target.size  134217728\n"
    assert cli("properties", "get", "table", "default.my_table", "read.split.target.size").output == "134217728\n"

    missing = cli("properties", "get", "table", "default.my_table", "doesnotexist", exit_code=1)
    assert missing.output == "Could not find property doesnotexist on table default.my_table\n"

    assert cli("properties", "set", "table", "default.my_table", "owner", "analytics").output == (
        "Set owner=analytics on default.my_table\n"
    )
    reloaded = catalog.load_table(IDENTIFIER)
    assert reloaded.properties == {**TABLE_PROPERTIES, "owner": "analytics"}
    assert len(reloaded.history()) == 1


def test_remove_table_property(cli: Invoke, catalog: InMemoryCatalog, table: Table) -> None:
    result = cli("properties", "remove", "table", "default.my_table", "read.split.target.size")

    assert result.output == "Property read.split.target.size removed from default.my_table\n"
    assert catalog.load_table(IDENTIFIER).properties == {}

    missing = cli("properties", "remove", "table", "default.my_table", "doesnotexist", exit_code=1)
    assert missing.output == "Property doesnotexist does not exist on default.my_table\n"


def test_namespace_properties(cli: Invoke, catalog: InMemoryCatalog, namespace: str) -> None:
    assert cli("properties", "get", "namespace", namespace).output == f"location  {NAMESPACE_LOCATION}\n"
    assert cli("properties", "get", "namespace", namespace, "location").output == f"{NAMESPACE_LOCATION}\n"

    updated = cli("properties", "set", "namespace", namespace, "location", "memory://new_location")
    assert updated.output == "Updated location on default\n"
    assert catalog.load_namespace_properties(namespace)["location"] == "memory://new_location"

    removed = cli("properties", "remove", "namespace", namespace, "location")
    assert removed.output == "Property location removed from default\n"
    assert catalog.load_namespace_properties(namespace) == {}


def _json(cli: Invoke, *args: str, exit_code: int = 0) -> object:
    return json.loads(cli("--output=json", *args, exit_code=exit_code).output)


def test_json_listing(cli: Invoke, table: Table) -> None:
    assert _json(cli, "list") == ["default"]
    assert _json(cli, "list", "default") == ["default.my_table"]


def test_json_describe_namespace(cli: Invoke, namespace: str) -> None:
    assert _json(cli, "describe", namespace) == {"location": NAMESPACE_LOCATION}


def test_json_describe_table(cli: Invoke, table: Table) -> None:
    described = _json(cli, "describe", "default.my_table")

    assert isinstance(described, dict)
    assert described["location"] == LOCATION
    assert described["table-uuid"] == str(table.metadata.table_uuid)
    assert described["format-version"] == 2
    assert described["last-column-id"] == 3
    assert described["last-partition-id"] == 1000
    assert described["properties"] == TABLE_PROPERTIES


def test_json_schema_spec_and_order(cli: Invoke, table: Table) -> None:
    assert _json(cli, "schema", "default.my_table") == {
        "type": "struct",
        "fields": [
            {"id": 1, "name": "x", "type": "long", "required": True},
            {"id": 2, "name": "y", "type": "long", "required": True, "doc": "comment"},
            {"id": 3, "name": "z", "type": "long", "required": True},
        ],
        "schema-id": 0,
        "identifier-field-ids": [],
    }
    assert _json(cli, "spec", "default.my_table") == {
        "spec-id": 0,
        "fields": [{"source-id": 1, "field-id": 1000, "transform": "identity", "name": "x"}],
    }
    assert _json(cli, "sort-order", "default.my_table") == {"order-id": 0, "fields": []}


def test_json_history(cli: Invoke, table: Table) -> None:
    created = table.metadata_location
    with table.transaction() as transaction:
        transaction.set_properties({"owner": "analytics"})

    entries = _json(cli, "history", "default.my_table")

    assert isinstance(entries, list)
    assert [entry["metadata-file"] for entry in entries] == [created]


def test_json_uuid_and_location(cli: Invoke, table: Table) -> None:
    assert _json(cli, "uuid", "default.my_table") == {"uuid": str(table.metadata.table_uuid)}
    assert _json(cli, "location", "default.my_table") == LOCATION


@pytest.mark.usefixtures("table")
@pytest.mark.parametrize(
    "args,error_type,message",
    [
        (["schema", "default.doesnotexist"], "NoSuchTableError", MISSING_TABLE),
        (
            ["properties", "get", "table", "default.my_table", "doesnotexist"],
            "NoSuchPropertyException",
            "Could not find property doesnotexist on table default.my_table",
        ),
    ],
)
def test_json_errors(cli: Invoke, args: List[str], error_type: str, message: str) -> None:
    assert _json(cli, *args, exit_code=1) == {"type": error_type, "message": message}
