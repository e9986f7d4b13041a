"""
Fleet Deploy Release Management System - Deploy Module
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

import os
import time
import posixpath
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set
import requests
from fleetdeploy import run_per_host
from fleetdeploy.utils.index import log_message, DeployError
from fleetdeploy.utils.shell import RemoteShell, RsyncTransport
from fleetdeploy.utils.confirm import ConfirmationPort, InteractiveConfirmation
from fleetdeploy.modules.config import DeployConfig, ConfigurationError
from fleetdeploy.modules.migrations import DatabaseManager, MigrationPlan
from fleetdeploy.modules.releases import (
    Release,
    ACTIVE_LINK,
    find_releases,
    format_release_name,
    previous_and_last,
)
from fleetdeploy.modules.retention import evaluate

CACHE_MARKER = "#deployment_timestamp#"
HTTP_TIMEOUT = 30


class DeployState(Enum):
    INIT = "init"
    DISCOVER = "discover"
    CHECK = "check"
    CONFIRMED = "confirmed"
    EXECUTE = "execute"
    ACTIVATE = "activate"
    POST = "post"
    CLEANUP = "cleanup"
    ABORTED = "aborted"
    DONE = "done"


@dataclass
class RunContext:
    """
    State of one run, written once per phase and read by the later phases.

    ``active_release`` follows the production symlink: the newest release at
    discovery, then whatever this run activated.
    """
    action: Optional[str] = None
    state: DeployState = DeployState.INIT
    timestamp: Optional[int] = None
    current: Optional[Release] = None
    last: Optional[Release] = None
    previous: Optional[Release] = None
    active_release: Optional[str] = None
    plan: Optional[MigrationPlan] = None
    files_to_rename: Optional[Dict[str, str]] = None
    activated_releases: Set[str] = field(default_factory=set)

    @property
    def previous_timestamp(self) -> Optional[int]:
        return self.previous.timestamp if self.previous else None

    @property
    def last_timestamp(self) -> Optional[int]:
        return self.last.timestamp if self.last else None


class DeploymentOrchestrator:
    """
    Sequences a deployment, rollback or cleanup over all configured hosts.

    Per-host work of a phase runs concurrently and is joined before the next
    phase starts: every host is synced before migrations run, migrations
    finish before any symlink moves, and a release that is or was active in
    this run is never deleted.

    Subclasses can hook into pre_deploy, post_deploy, pre_rollback and
    post_rollback.
    """

    def __init__(self, config: DeployConfig, confirmation: Optional[ConfirmationPort] = None,
                 shell: Optional[RemoteShell] = None, transport: Optional[RsyncTransport] = None,
                 database: Optional[DatabaseManager] = None, clock: Callable[[], float] = time.time):
        self.config = config
        self.confirmation = confirmation or InteractiveConfirmation()
        self.shell = shell or RemoteShell(config.remote_user, config.ssh_path, config.command_timeout)
        self.transport = transport or RsyncTransport(
            config.basedir, config.remote_user, config.rsync_path, config.command_timeout
        )
        self.database = database or DatabaseManager(
            self.shell,
            self.confirmation,
            config.basedir,
            config.control_host,
            database_dirs=config.database_dirs,
            patcher=config.database_patcher,
            host=config.db_host,
            name=config.database_name,
            user=config.database_user,
            password=config.database_pass,
        )
        self.clock = clock
        self.context = RunContext()

        if config.auto_init:
            self.initialize()

    @property
    def hosts(self) -> List[str]:
        return list(self.config.remote_hosts)

    @property
    def remote_dir(self) -> str:
        return self.config.remote_dir

    def _set_state(self, state: DeployState):
        log_message(f"[DEPLOY] {self.context.state.value} -> {state.value}", "DEBUG")
        self.context.state = state

    def _abort(self, message: str) -> bool:
        log_message(message, "WARNING")
        self._set_state(DeployState.ABORTED)
        return False

    def _for_each_host(self, operation: Callable[[str], None], hosts: Optional[List[str]] = None):
        run_per_host(hosts if hosts is not None else self.hosts, operation, self.config.max_workers)

    def _release_dir(self, release: Release) -> str:
        return posixpath.join(self.remote_dir, release.name)

    # Discovery

    def initialize(self):
        """
        Discover the release history on the first host and name the new release.

        Raises:
            RemoteCommandFailure: If the releases directory cannot be prepared or listed
            DeployError: If the clock is not past the newest release
        """
        self._set_state(DeployState.DISCOVER)
        context = self.context

        context.timestamp = int(self.clock())
        context.current = Release(
            timestamp=context.timestamp,
            name=format_release_name(self.config.project_name, context.timestamp)
        )

        control_host = self.config.control_host
        self.prepare_remote_directory(control_host)
        context.previous, context.last = previous_and_last(self.list_releases(control_host))

        if context.last and context.last.timestamp >= context.timestamp:
            raise DeployError(
                f"Newest release {context.last.name} is not older than the current time; check the local clock"
            )

        context.active_release = context.last.name if context.last else None
        log_message(f"[RELEASE] New release: {context.current.name}", "DEBUG")

    def _ensure_initialized(self):
        if self.context.timestamp is None:
            self.initialize()

    def prepare_remote_directory(self, host: str):
        """Create the releases directory and the shared data directories."""
        log_message(f"Initialize remote directory: {host}:{self.remote_dir}")
        self.shell.run(host, f"mkdir -p {self.remote_dir}", log_level="DEBUG")

        if self.config.data_dirs:
            data_root = posixpath.join(self.remote_dir, self.config.data_dir_prefix)
            paths = " ".join(posixpath.join(data_root, data_dir) for data_dir in self.config.data_dirs)
            self.shell.run(host, f"mkdir -v -m 0775 -p {paths}", log_level="DEBUG")

    def list_releases(self, host: str) -> List[Release]:
        result = self.shell.run(host, f"ls -1 {self.remote_dir}", f"{host}: listing releases failed",
                                log_level="DEBUG")
        return find_releases(result.output, self.config.project_name)

    # Checks

    def prepare_excludes(self) -> List[str]:
        """
        rsync arguments excluding the configured exclude files and data dirs.

        Raises:
            ConfigurationError: If an exclude file does not exist locally
        """
        args = []

        for exclude in self.config.rsync_excludes:
            if not os.path.isfile(os.path.join(self.config.basedir, exclude)):
                raise ConfigurationError(f"Rsync exclude file not found: {exclude}")
            args.append(f"--exclude-from={exclude}")

        for data_dir in self.config.data_dirs:
            args += ["--exclude", f"/{data_dir}"]

        return args

    def list_files_to_rename(self) -> Dict[str, str]:
        """
        Target specific files, mapped to the file that replaces them.

        ``config/app.yml`` with target ``prod`` is replaced by
        ``config/app.prod.yml``.

        Raises:
            ConfigurationError: If a target specific variant does not exist locally
        """
        if self.context.files_to_rename is None:
            renames = {}

            for filepath in self.config.target_specific_files:
                root, ext = os.path.splitext(filepath)
                source = f"{root}.{self.config.target}{ext}"

                if not os.path.exists(os.path.join(self.config.basedir, source)):
                    raise ConfigurationError(f"{source} does not exist")
                renames[filepath] = source

            self.context.files_to_rename = renames

        return self.context.files_to_rename

    def check_files(self):
        """Show what changed since the newest release with an rsync dry-run."""
        log_message("check_files", "DEBUG")
        last = self.context.last

        if not last:
            log_message("No deployment history found")
            return

        log_message("Changed directories and files:")
        self.transport.sync(
            self.config.control_host,
            self._release_dir(last),
            self.prepare_excludes(),
            dry_run=True,
            error_message="Rsync check has failed"
        )

    def check(self, action: str) -> bool:
        """
        Prepare the remaining hosts, show the planned changes and ask to proceed.

        Args:
            action: 'update' or 'rollback'

        Returns:
            bool: True if the operator confirmed
        """
        self._set_state(DeployState.CHECK)
        context = self.context

        self._for_each_host(self.prepare_remote_directory, self.hosts[1:])

        if action == "update":
            self.check_files()

        context.plan = self.database.check(action, context.timestamp, context.previous_timestamp,
                                           context.last_timestamp)

        cache = self.config.cache
        if cache and not os.path.isfile(os.path.join(self.config.basedir, cache.template)):
            raise ConfigurationError(f"{cache.template} does not exist.")

        if action == "update":
            renames = self.list_files_to_rename()
            if renames:
                log_message(["Target-specific file renames:"] +
                            [f"  {source} => {filepath}" for filepath, source in renames.items()])

        question = "Proceed with deployment?" if action == "update" else "Proceed with rollback?"
        return self.confirmation.confirm(question)

    # Per host steps

    def update_files(self, host: str):
        """Sync the project into the new release and prepare it for activation."""
        log_message(f"update_files({host})", "DEBUG")
        current = self.context.current
        copy_dest = self._release_dir(self.context.last) if self.context.last else None

        self.transport.sync(host, self._release_dir(current), self.prepare_excludes(), copy_dest=copy_dest)
        self.fix_datadir_symlinks(host, current)
        self.rename_target_files(host, current)

    def fix_datadir_symlinks(self, host: str, release: Release):
        """Point the data dirs of a release at the shared data directory."""
        if not self.config.data_dirs:
            return

        log_message(f"Creating data dir symlinks on {host}", "DEBUG")
        data_root = posixpath.join(self.remote_dir, self.config.data_dir_prefix)
        links = " && ".join(
            f"ln -sfn {posixpath.join(data_root, data_dir)} {data_dir}" for data_dir in self.config.data_dirs
        )
        self.shell.run(host, f"cd {self._release_dir(release)} && {links}",
                       f"{host}: creating data dir symlinks failed")

    def rename_target_files(self, host: str, release: Release):
        renames = self.list_files_to_rename()
        if not renames:
            return

        moves = " && ".join(f"mv {source} {filepath}" for filepath, source in renames.items())
        self.shell.run(host, f"cd {self._release_dir(release)} && {moves}",
                       f"{host}: renaming target specific files failed")

    def change_symlink(self, host: str, release: Release):
        """Atomically point the production symlink at a release."""
        log_message(f"[RELEASE] {host}: {ACTIVE_LINK} -> {release.name}")
        staging = f"{ACTIVE_LINK}.tmp"
        self.shell.run(
            host,
            f"cd {self.remote_dir} && ln -sfn {release.name} {staging} && mv -Tf {staging} {ACTIVE_LINK}",
            f"{host}: activating {release.name} failed"
        )
        self.context.activated_releases.add(release.name)
        self.context.active_release = release.name

    def restart_workers(self, host: str, remote_dir: str, release_name: str):
        """Restart every configured worker function on every worker server."""
        workers = self.config.workers
        if not workers:
            return

        log_message(f"restart_workers({host}, {remote_dir}, {release_name})", "DEBUG")
        commands = []
        for server in workers.servers:
            for function in workers.functions:
                function = function.replace("{target}", self.config.target)
                commands.append(f"{workers.restarter} --ip={server.ip} --port={server.port} --function={function}")

        self.shell.run(host, f"cd {posixpath.join(remote_dir, release_name)} && " + " && ".join(commands),
                       f"{host}: restarting workers failed")

    def clear_remote_caches(self, host: str, release: Release):
        """
        Write the version marker into a release and ask the host to refresh its caches.

        Only the marker is required; a failed refresh call is logged and ignored.
        """
        cache = self.config.cache
        if not cache:
            return

        timestamp = self.context.timestamp
        url = cache.refresh_urls[self.hosts.index(host)]

        self.shell.run(
            host,
            f"cd {self._release_dir(release)} && "
            f"sed 's/{CACHE_MARKER}/{timestamp}/' {cache.template} > {cache.path}.tmp && "
            f"mv {cache.path}.tmp {cache.path}",
            f"{host}: writing {cache.path} failed"
        )

        try:
            response = requests.get(url, params={"rev": timestamp}, timeout=HTTP_TIMEOUT)
            response.raise_for_status()
            log_message(f"{host}: cache refreshed ({url})", "DEBUG")
        except requests.RequestException as e:
            log_message(f"{host}: Clear cache failed: {e}", "WARNING")

    def delete_releases(self, host: str, releases: List[Release]):
        """
        Remove release directories from a host.

        Raises:
            DeployError: If one of them is active or was activated in this run
        """
        protected = set(self.context.activated_releases)
        if self.context.active_release:
            protected.add(self.context.active_release)

        for release in releases:
            if release.name in protected:
                raise DeployError(f"Refusing to delete {release.name}: it is or was the active release in this run")

        if not releases:
            return

        names = " ".join(release.name for release in releases)
        log_message(f"[RELEASE] {host}: deleting {names}")
        self.shell.run(host, f"cd {self.remote_dir} && rm -rf {names}", f"{host}: deleting releases failed")

    # Hooks

    def pre_deploy(self, host: str, remote_dir: str, release_name: str):
        log_message(f"pre_deploy({host}, {remote_dir}, {release_name})", "DEBUG")

    def post_deploy(self, host: str, remote_dir: str, release_name: str):
        log_message(f"post_deploy({host}, {remote_dir}, {release_name})", "DEBUG")
        self.restart_workers(host, remote_dir, release_name)

    def pre_rollback(self, host: str, remote_dir: str, release_name: str):
        log_message(f"pre_rollback({host}, {remote_dir}, {release_name})", "DEBUG")

    def post_rollback(self, host: str, remote_dir: str, release_name: str):
        log_message(f"post_rollback({host}, {remote_dir}, {release_name})", "DEBUG")
        self.restart_workers(host, remote_dir, release_name)

    # Operations

    def deploy(self) -> bool:
        """
        Upload a new release, apply its patches, activate it and prune old releases.

        Returns:
            bool: True if the release was activated, False if the operator declined
        """
        self._ensure_initialized()
        context = self.context
        context.action = "update"
        current = context.current

        if not self.check("update"):
            return self._abort("Deployment aborted")
        self._set_state(DeployState.CONFIRMED)

        log_message("=" * 60)
        log_message(f"Deploying {current.name} to {', '.join(self.hosts)}")

        self._set_state(DeployState.EXECUTE)

        def sync_host(host):
            self.pre_deploy(host, self.remote_dir, current.name)
            self.update_files(host)

        self._for_each_host(sync_host)
        self.database.update(self.remote_dir, current.name, context.plan)

        self._set_state(DeployState.ACTIVATE)
        self._for_each_host(lambda host: self.change_symlink(host, current))

        self._set_state(DeployState.POST)

        def finish_host(host):
            self.post_deploy(host, self.remote_dir, current.name)
            self.clear_remote_caches(host, current)

        self._for_each_host(finish_host)

        self.cleanup()
        self._set_state(DeployState.DONE)
        log_message(f"Deployment of {current.name} completed")
        log_message("=" * 60)
        return True

    def rollback(self) -> bool:
        """
        Reactivate the previous release, revert the patches of the newest one and delete it.

        Returns:
            bool: True if the rollback completed
        """
        self._ensure_initialized()
        context = self.context
        context.action = "rollback"
        previous, last = context.previous, context.last

        if not previous:
            return self._abort("Rollback impossible, no previous deployment found !")

        if not self.check("rollback"):
            return self._abort("Rollback aborted")
        self._set_state(DeployState.CONFIRMED)

        log_message("=" * 60)
        log_message(f"Rolling back {last.name} to {previous.name}")

        self._set_state(DeployState.ACTIVATE)

        def activate_host(host):
            self.pre_rollback(host, self.remote_dir, previous.name)
            self.change_symlink(host, previous)

        self._for_each_host(activate_host)

        # the patch files to revert only exist in the retired release
        self._set_state(DeployState.EXECUTE)
        self.database.rollback(self.remote_dir, last.name, context.plan)

        self._set_state(DeployState.POST)

        def finish_host(host):
            self.clear_remote_caches(host, previous)
            self.post_rollback(host, self.remote_dir, previous.name)

        self._for_each_host(finish_host)

        self._set_state(DeployState.CLEANUP)
        self._for_each_host(lambda host: self.delete_releases(host, [last]))

        self._set_state(DeployState.DONE)
        log_message(f"Rollback to {previous.name} completed")
        log_message("=" * 60)
        return True

    def cleanup(self) -> bool:
        """
        Delete old releases selected by the retention policy, after confirmation.

        Returns:
            bool: True if releases were deleted
        """
        self._ensure_initialized()
        self._set_state(DeployState.CLEANUP)
        now = datetime.fromtimestamp(self.clock())

        def collect(host):
            selected = []
            for decision in evaluate(self.list_releases(host), now):
                log_message(f"[RELEASE] {host}: {decision.release.name} {decision.reason}")
                if decision.delete:
                    selected.append(decision.release)
            return selected

        to_delete = {host: releases for host, releases in run_per_host(self.hosts, collect,
                                                                       self.config.max_workers).items() if releases}

        if not to_delete:
            log_message("No cleanup needed")
            return False

        if not self.confirmation.confirm("Delete old directories?"):
            log_message("Cleanup skipped")
            return False

        self._for_each_host(lambda host: self.delete_releases(host, to_delete[host]), list(to_delete))
        return True
