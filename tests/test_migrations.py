import logging

import pytest

from conftest import FakeRemoteShell, local_ts, write_patch
from fleetdeploy.utils.confirm import ScriptedConfirmation
from fleetdeploy.modules.patches import Patch, BOOTSTRAP_PATCH_NAME
from fleetdeploy.modules.migrations import (
    PatchRecord,
    MigrationWindow,
    MigrationPlan,
    DatabaseManager,
    CrashedPatchError,
    DatabaseError,
    build_register_statement,
    classify_history,
    ensure_no_crashes,
    parse_history_output,
    patches_in_window,
    patches_to_apply,
    patches_to_register,
    patches_to_rollback,
)


def make_patch(timestamp, name=None):
    return Patch(name=name or f"db/patches/p_{timestamp}.sql", timestamp=timestamp, up_sql="SELECT 1;")


# Window resolution

def test_window_direction_and_bounds():
    update = MigrationWindow(100, 200)
    rollback = MigrationWindow(200, 100)

    assert not update.is_rollback
    assert rollback.is_rollback
    for window in (update, rollback):
        assert not window.contains(100)
        assert window.contains(101)
        assert window.contains(200)
        assert not window.contains(201)


def test_update_and_rollback_window_end_to_end():
    t0, t1, t2, t3 = 1000, 2000, 3000, 4000
    p1, p2, p3 = make_patch(t1), make_patch(t2), make_patch(t3)
    patches = [p3, p1, p2]

    assert patches_in_window(patches, MigrationWindow(t0, t2)) == [p1, p2]
    assert patches_in_window(patches, MigrationWindow(t2, t0)) == [p2, p1]


def test_swapped_window_yields_reversed_order():
    patches = [make_patch(ts) for ts in (5, 10, 10, 15, 20, 25, 30)]
    patches[2] = make_patch(10, name="db/patches/another_10.sql")

    for start, end in [(0, 30), (5, 25), (9, 10), (10, 11), (0, 0), (30, 100)]:
        forward = patches_in_window(patches, MigrationWindow(start, end))
        backward = patches_in_window(patches, MigrationWindow(end, start))
        assert backward == list(reversed(forward))


def test_patches_to_apply_is_a_set_difference():
    p1, p2, p3 = make_patch(100), make_patch(200), make_patch(300)
    applied = [PatchRecord(p1.name, 100, applied_at=500), PatchRecord(p3.name, 300, applied_at=500)]

    # p2 was merged after p3 had already been deployed
    assert patches_to_apply([p3, p2, p1], applied) == [p2]
    assert patches_to_apply([p3, p2, p1], []) == [p1, p2, p3]


def test_patches_to_register_excludes_selected():
    p1, p2, p3 = make_patch(100), make_patch(200), make_patch(300)
    assert patches_to_register([p3, p1, p2], [p2]) == [p1, p3]


def test_classify_history():
    records = [
        PatchRecord("a.sql", 100, applied_at=900),
        PatchRecord("b.sql", 200, applied_at=None),
        PatchRecord("c.sql", 300, applied_at=800, reverted_at=950),
        PatchRecord("d.sql", 400, applied_at=700),
        PatchRecord("e.sql", 500, applied_at=900),
    ]
    history = classify_history(records)

    assert [r.patch_name for r in history.applied] == ["d.sql", "a.sql", "e.sql"]
    assert [r.patch_name for r in history.crashed_update] == ["b.sql"]
    assert [r.patch_name for r in history.crashed_rollback] == ["c.sql"]
    assert history.has_crashes


def test_crashed_update_blocks_resolution():
    history = classify_history([PatchRecord("db/patches/sql_20240101_000000.sql", 100, applied_at=None)])

    assert [r.patch_name for r in history.crashed_update] == ["db/patches/sql_20240101_000000.sql"]
    with pytest.raises(CrashedPatchError) as exc:
        ensure_no_crashes(history)
    assert "db/patches/sql_20240101_000000.sql" in str(exc.value)
    assert "deploy" in str(exc.value)


def test_crashed_rollback_blocks_resolution():
    history = classify_history([PatchRecord("x.sql", 100, applied_at=200, reverted_at=300)])
    with pytest.raises(CrashedPatchError) as exc:
        ensure_no_crashes(history)
    assert "rollback" in str(exc.value)


def test_patches_to_rollback_orders_newest_applied_first():
    previous, last = 1000, 2000
    records = [
        PatchRecord("old.sql", 10, applied_at=previous),
        PatchRecord("a.sql", 20, applied_at=last),
        PatchRecord("b.sql", 30, applied_at=1500),
        PatchRecord("c.sql", 40, applied_at=last),
    ]

    selected = patches_to_rollback(records, MigrationWindow(last, previous))
    assert [r.patch_name for r in selected] == ["c.sql", "a.sql", "b.sql"]


def test_parse_history_output():
    records = parse_history_output([
        "db/patches/sql_20240101_000000.sql\t1704063600\t1704100000\tNULL",
        "db/patches/sql_20240102_000000.sql\t1704150000\tNULL\tNULL",
        "",
    ])

    assert records == [
        PatchRecord("db/patches/sql_20240101_000000.sql", 1704063600, 1704100000, None),
        PatchRecord("db/patches/sql_20240102_000000.sql", 1704150000, None, None),
    ]


def test_register_statement():
    sql = build_register_statement([make_patch(100, "a.sql"), make_patch(200, "b.sql")])
    assert sql == (
        "INSERT INTO db_patches (patch_name, patch_timestamp, applied_at) VALUES "
        "('a.sql', 100, FROM_UNIXTIME(100)), ('b.sql', 200, FROM_UNIXTIME(200));"
    )


# DatabaseManager

@pytest.fixture
def patch_set(project_dir):
    patches_dir = project_dir / "db" / "patches"
    write_patch(patches_dir, "sql_20240101_100000.sql", up="CREATE TABLE a (id INT);", down="DROP TABLE a;")
    write_patch(patches_dir, "sql_20240201_100000.sql", up="CREATE TABLE b (id INT);", down="DROP TABLE b;")
    write_patch(patches_dir, "sql_20240301_100000.sql", up="CREATE TABLE c (id INT);", down="DROP TABLE c;")
    return [
        "db/patches/sql_20240101_100000.sql",
        "db/patches/sql_20240201_100000.sql",
        "db/patches/sql_20240301_100000.sql",
    ]


def make_manager(project_dir, shell, confirmation=None, **options):
    options.setdefault("database_dirs", ["db/patches"])
    options.setdefault("name", "shop")
    options.setdefault("user", "deployer")
    options.setdefault("password", "s3cret")
    return DatabaseManager(shell, confirmation or ScriptedConfirmation(), str(project_dir), "web1", **options)


def test_credentials_are_prompted_and_tested(project_dir):
    shell = FakeRemoteShell()
    confirmation = ScriptedConfirmation({
        "Database name": "shop",
        "Database username": "admin",
        "Database password": "hunter2",
    })
    manager = make_manager(project_dir, shell, confirmation, name=None, user=None, password=None)

    assert manager.check_credentials(1700000000)
    host, command = shell.commands[0]
    assert host == "web1"
    assert command.startswith("mysql -hweb1 -uadmin -phunter2 -N -e ")
    assert "CREATE TABLE `temp_1700000000`" in command
    assert "DROP TABLE `temp_1700000000`" in command
    assert command.endswith(" shop")
    assert (manager.name, manager.user, manager.password) == ("shop", "admin", "hunter2")


def test_unanswered_database_name_skips_migrations(project_dir, patch_set):
    shell = FakeRemoteShell()
    manager = make_manager(project_dir, shell, ScriptedConfirmation(), name=None)

    plan = manager.check("update", local_ts("2024-03-15 12:00:00"), None, None)

    assert plan.is_empty
    assert not manager.enabled
    assert shell.commands == []


def test_failing_credentials_are_fatal(project_dir):
    shell = FakeRemoteShell()
    shell.respond("CREATE TABLE `temp_", returncode=1)
    manager = make_manager(project_dir, shell)

    with pytest.raises(DatabaseError) as exc:
        manager.check_credentials(1700000000)
    assert "s3cret" not in str(exc.value)
    assert "-p*****" in str(exc.value)


def test_legacy_update_plan(project_dir, patch_set):
    shell = FakeRemoteShell()
    shell.respond("SHOW TABLES", output=[])
    manager = make_manager(project_dir, shell)
    last, current = local_ts("2024-01-15 00:00:00"), local_ts("2024-03-15 12:00:00")

    plan = manager.check("update", current, None, last)

    assert not plan.tracked
    assert plan.patch_names == [BOOTSTRAP_PATCH_NAME, patch_set[1], patch_set[2]]
    assert [patch.name for patch in plan.register_only] == [patch_set[0]]


def test_legacy_update_never_registers_patches_dated_after_the_deployment(project_dir):
    patches_dir = project_dir / "db" / "patches"
    write_patch(patches_dir, "sql_20240101_100000.sql", up="CREATE TABLE a (id INT);")
    write_patch(patches_dir, "sql_20240315_140000.sql", up="CREATE TABLE later (id INT);")
    shell = FakeRemoteShell()
    shell.respond("SHOW TABLES", output=[])
    manager = make_manager(project_dir, shell)

    plan = manager.check("update", local_ts("2024-03-15 12:00:00"), None, local_ts("2024-01-15 00:00:00"))

    assert plan.patch_names == [BOOTSTRAP_PATCH_NAME]
    assert [patch.name for patch in plan.register_only] == ["db/patches/sql_20240101_100000.sql"]

    manager.update("/var/www/shop/prod", "shop_2024-03-15_120000", plan)
    register = shell.matching("INSERT INTO db_patches")[0][1]
    assert "sql_20240315_140000" not in register


def test_legacy_rollback_plan(project_dir, patch_set):
    shell = FakeRemoteShell()
    shell.respond("SHOW TABLES", output=[])
    manager = make_manager(project_dir, shell)
    previous, last = local_ts("2024-01-15 00:00:00"), local_ts("2024-03-01 10:00:00")

    plan = manager.check("rollback", local_ts("2024-03-15 12:00:00"), previous, last)

    assert plan.patch_names == [patch_set[2], patch_set[1]]
    assert plan.register_only == []


def test_tracked_update_plan_diffs_against_history(project_dir, patch_set):
    shell = FakeRemoteShell()
    shell.respond("SHOW TABLES", output=["db_patches"])
    shell.respond("SELECT patch_name", output=[
        f"{BOOTSTRAP_PATCH_NAME}\t25200\t1704100000\tNULL",
        f"{patch_set[0]}\t{local_ts('2024-01-01 10:00:00')}\t1704100000\tNULL",
        f"{patch_set[2]}\t{local_ts('2024-03-01 10:00:00')}\t1709300000\tNULL",
    ])
    manager = make_manager(project_dir, shell)

    plan = manager.check("update", local_ts("2024-03-15 12:00:00"), None, local_ts("2024-03-10 00:00:00"))

    assert plan.tracked
    assert plan.patch_names == [patch_set[1]]
    assert plan.register_only == []
    assert len(shell.matching("SHOW TABLES")) == 1


def test_tracked_rollback_plan_uses_applied_at(project_dir, patch_set):
    previous, last = local_ts("2024-02-01 00:00:00"), local_ts("2024-03-10 00:00:00")
    shell = FakeRemoteShell()
    shell.respond("SHOW TABLES", output=["db_patches"])
    shell.respond("SELECT patch_name", output=[
        f"{patch_set[0]}\t{local_ts('2024-01-01 10:00:00')}\t{previous}\tNULL",
        f"{patch_set[1]}\t{local_ts('2024-02-01 10:00:00')}\t{last}\tNULL",
        f"{patch_set[2]}\t{local_ts('2024-03-01 10:00:00')}\t{last}\tNULL",
    ])
    manager = make_manager(project_dir, shell)

    plan = manager.check("rollback", local_ts("2024-03-15 12:00:00"), previous, last)

    assert plan.patch_names == [patch_set[2], patch_set[1]]


def test_crashed_history_stops_planning(project_dir, patch_set):
    shell = FakeRemoteShell()
    shell.respond("SHOW TABLES", output=["db_patches"])
    shell.respond("SELECT patch_name", output=[f"{patch_set[0]}\t100\tNULL\tNULL"])
    manager = make_manager(project_dir, shell)

    with pytest.raises(CrashedPatchError):
        manager.check("update", local_ts("2024-03-15 12:00:00"), None, None)


def test_declined_phases_are_dropped_from_the_plan(project_dir, patch_set, caplog):
    caplog.set_level(logging.INFO, logger="fleetdeploy")
    shell = FakeRemoteShell()
    shell.respond("SHOW TABLES", output=[])
    confirmation = ScriptedConfirmation({"Apply database patches?": False, "Register the other": True})
    manager = make_manager(project_dir, shell, confirmation)

    plan = manager.check("update", local_ts("2024-03-15 12:00:00"), None, local_ts("2024-01-15 00:00:00"))

    assert plan.patches == []
    assert [patch.name for patch in plan.register_only] == [patch_set[0]]
    assert "Register the other 1 patches as done?" in confirmation.questions
    assert "Patches to register as done:\n" + patch_set[0] in caplog.text


def test_update_pipes_patcher_output_into_mysql(project_dir, patch_set):
    shell = FakeRemoteShell()
    shell.respond("SHOW TABLES", output=[])
    manager = make_manager(project_dir, shell)
    current = local_ts("2024-03-15 12:00:00")
    plan = manager.check("update", current, None, local_ts("2024-01-15 00:00:00"))

    manager.update("/var/www/shop/prod", "shop_2024-03-15_120000", plan)

    pipeline = shell.matching("sql=$(")[0][1]
    assert pipeline.startswith("sql=$(cd /var/www/shop/prod/shop_2024-03-15_120000 && ")
    assert f"patcher update shop {current} {BOOTSTRAP_PATCH_NAME} {patch_set[1]} {patch_set[2]})" in pipeline
    assert pipeline.endswith("| mysql -hweb1 -udeployer -ps3cret shop")

    register = shell.matching("INSERT INTO db_patches")[0][1]
    assert patch_set[0] in register


def test_rollback_runs_patcher_in_retired_release(project_dir, patch_set):
    shell = FakeRemoteShell()
    manager = make_manager(project_dir, shell)
    manager.database_checked = True
    plan = MigrationPlan(action="rollback", timestamp=999, patches=[make_patch(1, patch_set[2])])

    manager.rollback("/var/www/shop/prod", "shop_2024-03-10_000000", plan)

    pipeline = shell.matching("sql=$(")[0][1]
    assert "cd /var/www/shop/prod/shop_2024-03-10_000000 && " in pipeline
    assert f"rollback shop 999 {patch_set[2]})" in pipeline


def test_failing_pipeline_raises_database_error(project_dir):
    shell = FakeRemoteShell()
    shell.respond("sql=$(", output=["ERROR 1050 (42S01): Table 'c' already exists"], returncode=1)
    manager = make_manager(project_dir, shell)
    manager.database_checked = True
    plan = MigrationPlan(action="update", timestamp=999, patches=[make_patch(1, "db/patches/x.sql")])

    with pytest.raises(DatabaseError) as exc:
        manager.update("/srv", "release", plan)
    assert "Table 'c' already exists" in str(exc.value)
