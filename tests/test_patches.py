import time

import pytest

from conftest import local_ts, write_patch
from fleetdeploy.modules.config import ConfigurationError
from fleetdeploy.modules.patches import (
    SqlPatch,
    Patch,
    PatchRepository,
    MalformedPatchName,
    PatchValidationError,
    BOOTSTRAP_PATCH_NAME,
    bootstrap_patch,
    check_files,
    convert_filename_to_timestamp,
    load_patch,
    parse_patch_source,
    validate_patch,
)


class InlinePatch(SqlPatch):
    def __init__(self, up_sql, down_sql=""):
        self.up_sql = up_sql
        self.down_sql = down_sql

    def up(self):
        return self.up_sql

    def down(self):
        return self.down_sql


def test_filename_timestamp_is_local_time():
    assert convert_filename_to_timestamp("sql_20240115_093000.sql") == local_ts("2024-01-15 09:30:00")
    assert convert_filename_to_timestamp("db/patches/sql_20240115_093000.sql") == local_ts("2024-01-15 09:30:00")


@pytest.mark.parametrize("filename", [
    "sql_20240230_120000.class",
    "sql_20241301_120000.sql",
    "sql_20240115_246000.sql",
    "sql_20240331_023000.sql",
    "patch_20240115_093000.sql",
])
def test_invalid_filename_timestamps_are_rejected(filename):
    with pytest.raises(MalformedPatchName):
        convert_filename_to_timestamp(filename)


def test_parse_patch_source_splits_sections():
    source = "-- adds the nickname column\n-- @up\nALTER TABLE user ADD nickname TEXT;\n\n-- @down\nALTER TABLE user DROP nickname;\n"
    up, down = parse_patch_source(source, "sql_20240115_093000.sql")
    assert up == "ALTER TABLE user ADD nickname TEXT;"
    assert down == "ALTER TABLE user DROP nickname;"


def test_parse_patch_source_without_down_section():
    up, down = parse_patch_source("-- @up\nCREATE TABLE t (id INT);", "p")
    assert up == "CREATE TABLE t (id INT);"
    assert down == ""


def test_parse_patch_source_without_markers_is_invalid():
    with pytest.raises(PatchValidationError):
        parse_patch_source("CREATE TABLE t (id INT);", "p")


def test_validation_requires_trailing_semicolon():
    with pytest.raises(PatchValidationError):
        validate_patch(InlinePatch("SELECT 1"), "sql_20240115_093000")

    validate_patch(InlinePatch(""), "sql_20240115_093000")
    validate_patch(InlinePatch("  SELECT 1;  \n", "   "), "sql_20240115_093000")


def test_validation_checks_down_as_well():
    with pytest.raises(PatchValidationError) as exc:
        validate_patch(InlinePatch("SELECT 1;", "SELECT 2"), "sql_20240115_093000")
    assert "down()" in str(exc.value)


def test_load_patch(project_dir):
    path = write_patch(project_dir / "db" / "patches", "sql_20240115_093000.sql",
                       up="CREATE TABLE t (id INT);", down="DROP TABLE t;")
    patch = load_patch(path, name="db/patches/sql_20240115_093000.sql")

    assert patch.name == "db/patches/sql_20240115_093000.sql"
    assert patch.identifier == "sql_20240115_093000"
    assert patch.timestamp == local_ts("2024-01-15 09:30:00")
    assert patch.up() == "CREATE TABLE t (id INT);"
    assert patch.down() == "DROP TABLE t;"
    assert not patch.is_bootstrap


def test_load_patch_rejects_invalid_sql(project_dir):
    path = write_patch(project_dir / "db" / "patches", "sql_20240115_093000.sql", up="SELECT 1")
    with pytest.raises(PatchValidationError):
        load_patch(path)


def test_list_patches_is_sorted_and_relative(project_dir):
    patches_dir = project_dir / "db" / "patches"
    write_patch(patches_dir, "sql_20240301_100000.sql", up="SELECT 3;")
    write_patch(patches_dir, "sql_20240101_100000.sql", up="SELECT 1;")
    write_patch(project_dir / "legacy", "sql_20240201_100000.sql", up="SELECT 2;")
    (patches_dir / "README.md").write_text("not a patch")
    (patches_dir / "sql_20240401_100000.sql.d").mkdir()

    patches = PatchRepository(str(project_dir), ["db/patches", "legacy/"]).list_patches()

    assert [patch.name for patch in patches] == [
        "db/patches/sql_20240101_100000.sql",
        "legacy/sql_20240201_100000.sql",
        "db/patches/sql_20240301_100000.sql",
    ]


def test_list_patches_skips_bootstrap_copies(project_dir):
    write_patch(project_dir / "db" / "patches", BOOTSTRAP_PATCH_NAME, up="SELECT 1;")
    assert PatchRepository(str(project_dir), ["db/patches"]).list_patches() == []


def test_list_patches_rejects_malformed_names(project_dir):
    write_patch(project_dir / "db" / "patches", "sql_20240230_120000.class", up="SELECT 1;")
    with pytest.raises(MalformedPatchName):
        PatchRepository(str(project_dir), ["db/patches"]).list_patches()


def test_list_patches_missing_directory(project_dir):
    with pytest.raises(ConfigurationError):
        PatchRepository(str(project_dir), ["does/not/exist"]).list_patches()


def test_check_files(project_dir):
    write_patch(project_dir / "db" / "patches", "sql_20240115_093000.sql", up="SELECT 1;")
    name = "db/patches/sql_20240115_093000.sql"

    patches = check_files(str(project_dir), [name, BOOTSTRAP_PATCH_NAME])
    assert list(patches) == [name, BOOTSTRAP_PATCH_NAME]
    assert patches[BOOTSTRAP_PATCH_NAME].is_bootstrap

    with pytest.raises(PatchValidationError):
        check_files(str(project_dir), ["db/patches/sql_20240116_093000.sql"])


def test_bootstrap_patch_creates_tracking_table():
    patch = bootstrap_patch()

    assert isinstance(patch, Patch)
    assert patch.is_bootstrap
    assert patch.name == BOOTSTRAP_PATCH_NAME
    assert patch.timestamp == local_ts("1970-01-01 08:00:00")
    assert "CREATE TABLE `db_patches`" in patch.up()
    assert patch.down() == ""


def test_bootstrap_timestamp_east_of_utc_plus_eight(monkeypatch):
    monkeypatch.setenv("TZ", "Asia/Tokyo")
    time.tzset()

    patch = bootstrap_patch()

    assert patch.timestamp == -3600
    assert "`patch_timestamp` BIGINT NOT NULL" in patch.up()
    assert "UNSIGNED" not in patch.up()
