"""
Shared fixtures: in-memory stand-ins for ssh and rsync, a fixed local
timezone and a throwaway project tree.
"""

import os
import time
import threading
from typing import List, Optional, Sequence

import pytest

from fleetdeploy.utils.index import redact
from fleetdeploy.utils.shell import RemoteShell, RsyncTransport, CommandResult, RemoteCommandFailure


@pytest.fixture(autouse=True)
def local_timezone(monkeypatch):
    """Run every test in a timezone with DST so local time handling is exercised."""
    monkeypatch.setenv("TZ", "Europe/Amsterdam")
    time.tzset()
    yield
    monkeypatch.undo()
    time.tzset()


def local_ts(text: str) -> int:
    """Unix timestamp of a local 'YYYY-mm-dd HH:MM:SS' time."""
    return int(time.mktime(time.strptime(text, "%Y-%m-%d %H:%M:%S")))


def write_patch(directory, filename: str, up: str = "", down: str = "", header: str = "") -> str:
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(str(directory), filename)
    with open(path, "w") as f:
        if header:
            f.write(header + "\n")
        f.write("-- @up\n" + up + "\n-- @down\n" + down + "\n")
    return path


class FakeRemoteShell(RemoteShell):
    """
    Records every command and answers from a list of canned responses.

    A response applies to every command containing its fragment; the first
    matching response wins. Unmatched commands succeed without output.
    """

    def __init__(self, events: Optional[list] = None):
        super().__init__("deploy")
        self.responses = []
        self.commands = []
        self.events = events if events is not None else []
        self._lock = threading.Lock()

    def respond(self, fragment: str, output: Sequence[str] = (), returncode: int = 0, host: Optional[str] = None):
        self.responses.append((fragment, list(output), returncode, host))

    def exec(self, host, command, log_level="INFO", timeout=None):
        with self._lock:
            self.commands.append((host, command))
            self.events.append(("ssh", host, command))

        for fragment, output, returncode, only_host in self.responses:
            if fragment in command and (only_host is None or only_host == host):
                return CommandResult(command=redact(command), returncode=returncode, output=list(output))
        return CommandResult(command=redact(command), returncode=0)

    def commands_on(self, host: str) -> List[str]:
        return [command for h, command in self.commands if h == host]

    def matching(self, fragment: str) -> List[tuple]:
        return [(host, command) for host, command in self.commands if fragment in command]


class FakeTransport(RsyncTransport):
    """Records rsync invocations instead of running them."""

    def __init__(self, basedir: str, events: Optional[list] = None):
        super().__init__(basedir, "deploy")
        self.calls = []
        self.failing_hosts = set()
        self.events = events if events is not None else []
        self._lock = threading.Lock()

    def sync(self, host, remote_path, exclude_args=(), copy_dest=None, dry_run=False,
             error_message="Rsync has failed"):
        with self._lock:
            call = {
                "host": host,
                "remote_path": remote_path,
                "exclude_args": list(exclude_args),
                "copy_dest": copy_dest,
                "dry_run": dry_run,
            }
            self.calls.append(call)
            self.events.append(("dry-run" if dry_run else "sync", host, remote_path))

        argv = self.build_command(host, remote_path, exclude_args, copy_dest, dry_run)
        if host in self.failing_hosts:
            raise RemoteCommandFailure(error_message, command=" ".join(argv), returncode=23)
        return CommandResult(command=" ".join(argv), returncode=0)


@pytest.fixture
def events():
    return []


@pytest.fixture
def fake_shell(events):
    return FakeRemoteShell(events)


@pytest.fixture
def project_dir(tmp_path):
    """A project checkout with a patch directory."""
    project = tmp_path / "project"
    (project / "db" / "patches").mkdir(parents=True)
    return project


@pytest.fixture
def fake_transport(project_dir, events):
    return FakeTransport(str(project_dir), events)
