"""
Fleet Deploy Release Management System - Configuration Module
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
import json
import posixpath
from dataclasses import dataclass
from typing import Dict, Any, Optional, Tuple
from fleetdeploy.utils.index import log_message, DeployError

DEFAULT_PATCHER = "python3 -m fleetdeploy.modules.migrations.patcher"
DEFAULT_TIMEOUT = 600

REQUIRED_OPTIONS = (
    "project_name",
    "basedir",
    "remote_host",
    "remote_user",
    "remote_dir",
    "target",
)


class ConfigurationError(DeployError):
    """Raised when a required option is missing or options contradict each other."""
    pass


@dataclass(frozen=True)
class WorkerServer:
    ip: str
    port: int


@dataclass(frozen=True)
class WorkerRestart:
    """Stateful worker processes that must be restarted after activation."""
    restarter: str
    servers: Tuple[WorkerServer, ...]
    functions: Tuple[str, ...]


@dataclass(frozen=True)
class CacheInvalidation:
    """
    Version marker template plus the per-host refresh endpoints.

    ``refresh_urls`` are requested from the machine running the deployment,
    not from the hosts, so each one must be reachable from there. Host local
    addresses such as ``http://localhost/...`` do not work.
    """
    template: str
    path: str
    refresh_urls: Tuple[str, ...]


def _as_tuple(value: Any, option: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, (list, tuple)):
        return tuple(str(item) for item in value)
    raise ConfigurationError(f"Option '{option}' must be a string or a list of strings")


def _parse_workers(data: Optional[Dict[str, Any]]) -> Optional[WorkerRestart]:
    if not data:
        return None

    functions = _as_tuple(data.get("functions", data.get("workers")), "workers.functions")
    if not functions:
        return None

    restarter = data.get("restarter")
    if not restarter:
        raise ConfigurationError("Option 'workers.restarter' is required when worker functions are listed")

    servers = []
    for server in data.get("servers", []):
        try:
            servers.append(WorkerServer(ip=str(server["ip"]), port=int(server["port"])))
        except (KeyError, TypeError, ValueError):
            raise ConfigurationError(f"Invalid worker server entry: {server!r}")

    if not servers:
        raise ConfigurationError("Option 'workers.servers' needs at least one server")

    return WorkerRestart(restarter=restarter, servers=tuple(servers), functions=functions)


def _parse_cache(data: Optional[Dict[str, Any]], hosts: Tuple[str, ...]) -> Optional[CacheInvalidation]:
    if not data:
        return None

    template = data.get("template")
    path = data.get("path")
    urls = _as_tuple(data.get("refresh_urls", data.get("refresh_url")), "cache.refresh_urls")

    # all three or nothing
    if not (template and path and urls):
        raise ConfigurationError("Option 'cache' needs 'template', 'path' and 'refresh_urls'")

    if len(urls) != len(hosts):
        raise ConfigurationError(
            f"cache.refresh_urls must have one entry per remote host ({len(hosts)}), got {len(urls)}"
        )

    return CacheInvalidation(template=template, path=path, refresh_urls=urls)


@dataclass(frozen=True)
class DeployConfig:
    """
    Immutable configuration of one deployment target.

    Built once by ``from_dict``/``load_config``; every required option is
    checked there so the rest of the code can rely on the fields.
    """
    project_name: str
    basedir: str
    remote_hosts: Tuple[str, ...]
    remote_user: str
    remote_base_dir: str
    target: str
    database_dirs: Tuple[str, ...] = ()
    database_patcher: str = DEFAULT_PATCHER
    database_host: Optional[str] = None
    database_name: Optional[str] = None
    database_user: Optional[str] = None
    database_pass: Optional[str] = None
    rsync_excludes: Tuple[str, ...] = ()
    data_dirs: Tuple[str, ...] = ()
    data_dir_prefix: str = "data"
    target_specific_files: Tuple[str, ...] = ()
    workers: Optional[WorkerRestart] = None
    cache: Optional[CacheInvalidation] = None
    auto_init: bool = True
    ssh_path: str = "ssh"
    rsync_path: str = "rsync"
    command_timeout: int = DEFAULT_TIMEOUT
    max_workers: Optional[int] = None
    logfile: Optional[str] = None
    debug: bool = False

    @property
    def remote_dir(self) -> str:
        """Directory holding the releases of this target on every host."""
        return posixpath.join(self.remote_base_dir, self.target)

    @property
    def control_host(self) -> str:
        """First host: authoritative for release discovery and the one that talks to the database."""
        return self.remote_hosts[0]

    @property
    def db_host(self) -> str:
        return self.database_host or self.control_host

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_path: Optional[str] = None) -> 'DeployConfig':
        """
        Build a configuration from a dict.

        Accepts either the bare options or an index.json style document with
        ``metadata`` and ``config`` blocks.

        Args:
            data: Options
            base_path: Directory a relative ``basedir`` is resolved against

        Returns:
            DeployConfig: The validated configuration

        Raises:
            ConfigurationError: If a required option is missing or invalid
        """
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a JSON object")

        options = data.get("config", data)

        missing = [name for name in REQUIRED_OPTIONS if not options.get(name)]
        if missing:
            raise ConfigurationError(f"Missing required option(s): {', '.join(missing)}")

        hosts = _as_tuple(options["remote_host"], "remote_host")
        if not hosts:
            raise ConfigurationError("Option 'remote_host' needs at least one host")

        basedir = options["basedir"]
        if base_path and not os.path.isabs(basedir):
            basedir = os.path.normpath(os.path.join(base_path, basedir))

        try:
            command_timeout = int(options.get("command_timeout", DEFAULT_TIMEOUT))
        except (TypeError, ValueError):
            raise ConfigurationError("Option 'command_timeout' must be a number of seconds")
        if command_timeout <= 0:
            raise ConfigurationError("Option 'command_timeout' must be positive")

        max_workers = options.get("max_workers")
        if max_workers is not None:
            max_workers = int(max_workers)

        return cls(
            project_name=options["project_name"],
            basedir=basedir,
            remote_hosts=hosts,
            remote_user=options["remote_user"],
            remote_base_dir=options["remote_dir"].rstrip("/"),
            target=options["target"],
            database_dirs=_as_tuple(options.get("database_dirs"), "database_dirs"),
            database_patcher=options.get("database_patcher") or DEFAULT_PATCHER,
            database_host=options.get("database_host"),
            database_name=options.get("database_name"),
            database_user=options.get("database_user"),
            database_pass=options.get("database_pass"),
            rsync_excludes=_as_tuple(options.get("rsync_excludes"), "rsync_excludes"),
            data_dirs=_as_tuple(options.get("data_dirs"), "data_dirs"),
            data_dir_prefix=options.get("data_dir_prefix", "data"),
            target_specific_files=_as_tuple(options.get("target_specific_files"), "target_specific_files"),
            workers=_parse_workers(options.get("workers")),
            cache=_parse_cache(options.get("cache"), hosts),
            auto_init=bool(options.get("auto_init", True)),
            ssh_path=options.get("ssh_path", "ssh"),
            rsync_path=options.get("rsync_path", "rsync"),
            command_timeout=command_timeout,
            max_workers=max_workers,
            logfile=options.get("logfile"),
            debug=bool(options.get("debug", False)),
        )


def load_config(config_path: str) -> DeployConfig:
    """
    Load a deployment configuration file.

    Args:
        config_path: Path to the JSON configuration

    Returns:
        DeployConfig: The validated configuration

    Raises:
        ConfigurationError: If the file is unreadable, not JSON or incomplete
    """
    try:
        with open(config_path, 'r') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Failed to load configuration from {config_path}: {e}")

    schema_version = data.get("metadata", {}).get("schema_version") if isinstance(data, dict) else None
    if schema_version:
        log_message(f"Configuration {config_path} (schema {schema_version})", "DEBUG")

    return DeployConfig.from_dict(data, base_path=os.path.dirname(os.path.abspath(config_path)))
