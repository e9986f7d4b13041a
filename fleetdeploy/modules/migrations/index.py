"""
Fleet Deploy Release Management System - Migrations Module
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import shlex
import posixpath
from dataclasses import dataclass, field
from typing import List, Optional, Sequence
from fleetdeploy.utils.index import log_message, DeployError
from fleetdeploy.utils.shell import RemoteShell, RemoteCommandFailure
from fleetdeploy.utils.confirm import ConfirmationPort
from fleetdeploy.modules.config import DEFAULT_PATCHER
from fleetdeploy.modules.patches import (
    Patch,
    PatchRepository,
    bootstrap_patch,
    check_files,
)

TRACKING_TABLE = "db_patches"
SKIP_DATABASE = "skip"

HISTORY_QUERY = (
    "SELECT patch_name, patch_timestamp, UNIX_TIMESTAMP(applied_at), UNIX_TIMESTAMP(reverted_at) "
    "FROM db_patches ORDER BY patch_timestamp"
)


class CrashedPatchError(DeployError):
    """Raised when the tracking table shows an update or rollback that never completed."""
    pass


class DatabaseError(RemoteCommandFailure):
    """Raised when the mysql client exits non-zero."""
    pass


@dataclass(frozen=True)
class PatchRecord:
    """One row of the db_patches tracking table."""
    patch_name: str
    patch_timestamp: int
    applied_at: Optional[int] = None
    reverted_at: Optional[int] = None


@dataclass(frozen=True)
class MigrationWindow:
    """
    Time interval bounding the patches of one operation.

    ``start > end`` makes it a rollback window (newest first), otherwise it is
    an update window (oldest first). The earlier bound is exclusive and the
    later bound inclusive, so a patch stamped exactly at a release time belongs
    to that release and swapping the bounds selects the same patches.
    """
    start: int
    end: int

    @property
    def is_rollback(self) -> bool:
        return self.start > self.end

    def contains(self, timestamp: int) -> bool:
        low, high = min(self.start, self.end), max(self.start, self.end)
        return low < timestamp <= high


@dataclass
class History:
    """Tracking table records split by state."""
    applied: List[PatchRecord] = field(default_factory=list)
    crashed_update: List[PatchRecord] = field(default_factory=list)
    crashed_rollback: List[PatchRecord] = field(default_factory=list)

    @property
    def has_crashes(self) -> bool:
        return bool(self.crashed_update or self.crashed_rollback)


@dataclass
class MigrationPlan:
    """Patches to run and patches to only register, as confirmed by the operator."""
    action: str
    timestamp: int
    tracked: bool = False
    patches: List[Patch] = field(default_factory=list)
    register_only: List[Patch] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.patches and not self.register_only

    @property
    def patch_names(self) -> List[str]:
        return [patch.name for patch in self.patches]


def patches_in_window(patches: Sequence[Patch], window: MigrationWindow) -> List[Patch]:
    """
    Filter patches by a window and order them in the window's direction.

    Args:
        patches: Discovered patches
        window: Update or rollback window

    Returns:
        list: Oldest first for update windows, newest first for rollback windows
    """
    selected = sorted(
        (patch for patch in patches if window.contains(patch.timestamp)),
        key=lambda patch: (patch.timestamp, patch.name)
    )
    if window.is_rollback:
        selected.reverse()
    return selected


def patches_to_apply(all_patches: Sequence[Patch], applied_records: Sequence[PatchRecord]) -> List[Patch]:
    """Patches with no applied record, oldest first, regardless of when they were written."""
    applied_names = {record.patch_name for record in applied_records}
    return sorted(
        (patch for patch in all_patches if patch.name not in applied_names),
        key=lambda patch: (patch.timestamp, patch.name)
    )


def patches_to_register(all_patches: Sequence[Patch], selected: Sequence[Patch]) -> List[Patch]:
    """Discovered patches outside the selected set, to be recorded as applied without running them."""
    selected_names = {patch.name for patch in selected}
    return sorted(
        (patch for patch in all_patches if patch.name not in selected_names),
        key=lambda patch: (patch.timestamp, patch.name)
    )


def classify_history(records: Sequence[PatchRecord]) -> History:
    """
    Split tracking records into applied, crashed during update and crashed
    during rollback.

    Args:
        records: Rows in query order (by patch_timestamp)

    Returns:
        History: ``applied`` ordered by applied_at, ties kept in query order
    """
    history = History()

    for record in records:
        if record.applied_at is None:
            history.crashed_update.append(record)
        elif record.reverted_at is not None:
            history.crashed_rollback.append(record)
        else:
            history.applied.append(record)

    history.applied.sort(key=lambda record: record.applied_at)
    return history


def ensure_no_crashes(history: History) -> None:
    """
    Refuse to resolve any migration work past an incomplete update or rollback.

    Raises:
        CrashedPatchError: Naming every crashed patch
    """
    problems = []
    if history.crashed_update:
        names = ", ".join(record.patch_name for record in history.crashed_update)
        problems.append(f"Patch(es) {names} have crashed at previous deploy")
    if history.crashed_rollback:
        names = ", ".join(record.patch_name for record in history.crashed_rollback)
        problems.append(f"Patch(es) {names} have crashed at previous rollback")

    if problems:
        raise CrashedPatchError("; ".join(problems) + ". Repair the db_patches table manually.")


def patches_to_rollback(records: Sequence[PatchRecord], window: MigrationWindow) -> List[PatchRecord]:
    """
    Applied records whose applied_at falls inside a rollback window.

    Args:
        records: Rows in query order (by patch_timestamp)
        window: Rollback window (last release -> previous release)

    Returns:
        list: Newest applied first, ties in reverse query order
    """
    indexed = [
        (position, record) for position, record in enumerate(records)
        if record.applied_at is not None and record.reverted_at is None and window.contains(record.applied_at)
    ]
    indexed.sort(key=lambda item: (item[1].applied_at, item[0]), reverse=True)
    return [record for _, record in indexed]


def _nullable_int(value: str) -> Optional[int]:
    value = value.strip()
    if value in ("", "NULL"):
        return None
    return int(float(value))


def parse_history_output(lines: Sequence[str]) -> List[PatchRecord]:
    """Parse the tab separated rows of HISTORY_QUERY."""
    records = []

    for line in lines:
        if not line.strip():
            continue
        columns = line.split("\t")
        if len(columns) != 4:
            raise DeployError(f"Unexpected row in {TRACKING_TABLE}: {line!r}")

        patch_name, patch_timestamp, applied_at, reverted_at = columns
        records.append(PatchRecord(
            patch_name=patch_name,
            patch_timestamp=int(patch_timestamp),
            applied_at=_nullable_int(applied_at),
            reverted_at=_nullable_int(reverted_at),
        ))

    return records


def sql_string(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "''") + "'"


def build_register_statement(patches: Sequence[Patch]) -> str:
    """One INSERT marking patches as applied at their own timestamp, without running them."""
    values = ", ".join(
        f"({sql_string(patch.name)}, {patch.timestamp}, FROM_UNIXTIME({patch.timestamp}))"
        for patch in patches
    )
    return f"INSERT INTO db_patches (patch_name, patch_timestamp, applied_at) VALUES {values};"


class DatabaseManager:
    """
    Resolves and runs the schema patches of one deployment.

    All SQL is sent through the mysql client on the control host (the first
    application host), never from the machine running the deployment.
    """

    def __init__(self, shell: RemoteShell, confirmation: ConfirmationPort, basedir: str,
                 control_host: str, database_dirs: Sequence[str] = (), patcher: str = DEFAULT_PATCHER,
                 host: Optional[str] = None, name: Optional[str] = None, user: Optional[str] = None,
                 password: Optional[str] = None):
        self.shell = shell
        self.confirmation = confirmation
        self.basedir = basedir
        self.control_host = control_host
        self.repository = PatchRepository(basedir, database_dirs)
        self.patcher = patcher
        self.host = host or control_host
        self.name = name
        self.user = user
        self.password = password
        self.database_checked = False
        self._patch_table_exists: Optional[bool] = None

    @property
    def enabled(self) -> bool:
        return bool(self.repository.directories) and self.name != SKIP_DATABASE

    def _client(self, user: str, password: str) -> str:
        return f"mysql -h{self.host} -u{user} -p{password}"

    def query(self, sql: str, name: Optional[str] = None, user: Optional[str] = None,
              password: Optional[str] = None) -> List[str]:
        """
        Run one or more SQL statements with ``mysql -e``.

        Returns:
            list: Tab separated result rows, without column names

        Raises:
            DatabaseError: If the mysql client exits non-zero
        """
        name = name or self.name
        user = user or self.user
        password = self.password if password is None else password

        command = f"{self._client(user, password)} -N -e {shlex.quote(sql)} {name}"
        result = self.shell.exec(self.control_host, command, log_level="DEBUG")

        if not result.ok:
            raise DatabaseError(
                "Database interaction failed",
                command=result.command,
                returncode=result.returncode,
                output=result.output + result.errors
            )
        return result.output

    def send_to_database(self, command: str) -> List[str]:
        """
        Pipe the SQL printed by ``command`` into the mysql client.

        The SQL is captured first so a failing command never reaches mysql as
        an empty, successful script.

        Raises:
            DatabaseError: If the command or the mysql client exits non-zero
        """
        client = self._client(self.user, self.password)
        pipeline = f"sql=$({command}) && printf '%s\\n' \"$sql\" | {client} {self.name}"
        result = self.shell.exec(self.control_host, pipeline)

        if not result.ok:
            raise DatabaseError(
                "Database interaction failed",
                command=result.command,
                returncode=result.returncode,
                output=result.output + result.errors
            )
        log_message(result.output)
        return result.output

    def check_credentials(self, timestamp: int) -> bool:
        """
        Collect missing credentials and test them with a create/drop of a scratch table.

        Answering 'skip' (the default) to the database name disables
        migrations for the rest of the run.

        Returns:
            bool: True when migrations are enabled for this run

        Raises:
            DatabaseError: If the credentials cannot create a table
        """
        if self.database_checked:
            return self.enabled

        name = self.name
        if name is None:
            name = self.confirmation.ask("Database name [skip]: ", SKIP_DATABASE)
        if name in ("", "no", SKIP_DATABASE):
            log_message("[DB] Skip database patches")
            self.name = SKIP_DATABASE
            self.database_checked = True
            return False

        user = self.user if self.user is not None else self.confirmation.ask("Database username [root]: ", "root")
        password = self.password if self.password is not None else self.confirmation.ask(
            "Database password: ", "", secret=True
        )

        scratch = f"temp_{timestamp}"
        self.query(f"CREATE TABLE `{scratch}` (`field1` INT NULL); DROP TABLE `{scratch}`;", name, user, password)
        log_message("[DB] Database check passed")

        self.name, self.user, self.password = name, user, password
        self.database_checked = True
        return True

    def patch_table_exists(self) -> bool:
        """Probe for the tracking table once; the answer is kept for the run."""
        if self._patch_table_exists is None:
            exists = bool(self.query(f"SHOW TABLES LIKE '{TRACKING_TABLE}'"))
            log_message(f"[DB] Check if {TRACKING_TABLE} exists.. {'yes' if exists else 'no'}.")
            self._patch_table_exists = exists
        return self._patch_table_exists

    def find_patch_records(self) -> List[PatchRecord]:
        return parse_history_output(self.query(HISTORY_QUERY))

    def resolve(self, action: str, current: int, previous: Optional[int], last: Optional[int],
                all_patches: Sequence[Patch]) -> MigrationPlan:
        """
        Work out which patches an update or rollback has to run.

        Tracked mode diffs against the tracking table; without the table the
        release timestamps bound the patches and every older patch is offered
        for registration. Patches dated after ``current`` are left alone.

        Raises:
            CrashedPatchError: If the tracking table holds crashed records
        """
        plan = MigrationPlan(action=action, timestamp=current)

        if not self.patch_table_exists():
            if action == "update":
                window = MigrationWindow(last or 0, current)
                plan.patches = [bootstrap_patch()] + patches_in_window(all_patches, window)
                released = [patch for patch in all_patches if patch.timestamp <= current]
                pending = [patch.name for patch in all_patches if patch.timestamp > current]
                if pending:
                    log_message(["[DB] Patches dated after this deployment, left for a later one:"] + pending,
                                "WARNING")
                plan.register_only = patches_to_register(released, plan.patches)
            else:
                plan.patches = patches_in_window(all_patches, MigrationWindow(last, previous))
            return plan

        plan.tracked = True
        history = classify_history(self.find_patch_records())
        ensure_no_crashes(history)

        if action == "update":
            plan.patches = patches_to_apply(all_patches, history.applied)
        else:
            records = patches_to_rollback(history.applied, MigrationWindow(last, previous))
            plan.patches = list(check_files(self.basedir, [record.patch_name for record in records]).values())

        return plan

    def check(self, action: str, current: int, previous: Optional[int], last: Optional[int]) -> MigrationPlan:
        """
        Build the migration plan of a run and ask for confirmation.

        Args:
            action: 'update' or 'rollback'
            current: Timestamp of the run
            previous: Timestamp of the release before the active one
            last: Timestamp of the active release

        Returns:
            MigrationPlan: Only the confirmed parts; empty when migrations are skipped
        """
        log_message("[DB] Database updates:")

        if not self.repository.directories:
            log_message("[DB] No patch directories configured", "DEBUG")
            return MigrationPlan(action=action, timestamp=current)

        # discovery errors are fatal before anything touches the database
        all_patches = self.repository.list_patches()

        if not self.check_credentials(current):
            return MigrationPlan(action=action, timestamp=current)

        plan = self.resolve(action, current, previous, last, all_patches)

        if plan.is_empty:
            log_message("[DB] No database patches")
            return plan

        if plan.patches:
            if action == "update":
                heading, question = "Database patches to apply", "Apply database patches?"
            else:
                heading, question = "Database patches to revert", "Rollback database patches?"

            log_message([f"[DB] {heading}:"] + plan.patch_names)
            if not self.confirmation.confirm(question):
                plan.patches = []

        if plan.register_only:
            log_message(["[DB] Patches to register as done:"] + [patch.name for patch in plan.register_only])
            if not self.confirmation.confirm(f"Register the other {len(plan.register_only)} patches as done?"):
                plan.register_only = []

        return plan

    def _run_patcher(self, action: str, remote_dir: str, release: str, plan: MigrationPlan) -> None:
        release_dir = posixpath.join(remote_dir, release)
        names = " ".join(shlex.quote(name) for name in plan.patch_names)
        self.send_to_database(
            f"cd {release_dir} && {self.patcher} {action} {self.name} {plan.timestamp} {names}"
        )

    def update(self, remote_dir: str, release: str, plan: MigrationPlan) -> None:
        """Apply the plan's patches from inside ``release``, then register the rest."""
        log_message("[DB] updateDatabase", "DEBUG")

        if not self.database_checked or not self.enabled or plan.is_empty:
            return

        if plan.patches:
            self._run_patcher("update", remote_dir, release, plan)

        if plan.register_only:
            self.query(build_register_statement(plan.register_only))
            log_message(f"[DB] Registered {len(plan.register_only)} patch(es) as done")

    def rollback(self, remote_dir: str, release: str, plan: MigrationPlan) -> None:
        """Revert the plan's patches from inside ``release``, the release that introduced them."""
        log_message("[DB] rollbackDatabase", "DEBUG")

        if not self.database_checked or not self.enabled or not plan.patches:
            return

        self._run_patcher("rollback", remote_dir, release, plan)
