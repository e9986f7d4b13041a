"""
Fleet Deploy Release Management System
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

"""
Command transports used by the orchestrator.

RemoteShell runs a single command on a remote host over ssh, RsyncTransport
mirrors the local project tree to a remote path. Both block until the command
finishes or its timeout expires; a timeout or a non-zero exit status is
reported as RemoteCommandFailure so the run stops at the failing phase.
"""

import subprocess
from dataclasses import dataclass, field
from typing import List, Optional, Sequence
from .index import log_message, redact, DeployError

DEFAULT_TIMEOUT = 600


class RemoteCommandFailure(DeployError):
    """Raised when a remote or transport command exits non-zero or times out."""

    def __init__(self, message: str, command: str = "", returncode: Optional[int] = None,
                 output: Optional[List[str]] = None):
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.output = output or []

    def __str__(self) -> str:
        details = [super().__str__()]
        if self.command:
            details.append(f"command: {self.command}")
        if self.returncode is not None:
            details.append(f"exit code: {self.returncode}")
        if self.output:
            details.append("output:\n" + "\n".join(self.output))
        return "\n".join(details)


@dataclass
class CommandResult:
    """Outcome of one executed command."""
    command: str
    returncode: int
    output: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _run(argv: List[str], display: str, timeout: int, cwd: Optional[str] = None) -> CommandResult:
    try:
        result = subprocess.run(
            argv,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout
        )
    except subprocess.TimeoutExpired:
        raise RemoteCommandFailure(f"Command timed out after {timeout} seconds", command=display)
    except OSError as e:
        raise RemoteCommandFailure(f"Command could not be started: {e}", command=display)

    return CommandResult(
        command=display,
        returncode=result.returncode,
        output=result.stdout.splitlines() if result.stdout else [],
        errors=result.stderr.splitlines() if result.stderr else []
    )


class RemoteShell:
    """Executes shell commands on remote hosts through ssh."""

    def __init__(self, remote_user: str, ssh_path: str = "ssh", timeout: int = DEFAULT_TIMEOUT):
        self.remote_user = remote_user
        self.ssh_path = ssh_path
        self.timeout = timeout

    def build_command(self, host: str, command: str) -> List[str]:
        return [self.ssh_path, f"{self.remote_user}@{host}", command]

    def exec(self, host: str, command: str, log_level: str = "INFO",
             timeout: Optional[int] = None) -> CommandResult:
        """
        Run a command on a remote host without checking its exit status.

        Args:
            host: Remote hostname
            command: Shell command line executed by the remote login shell
            log_level: Level used to echo the (redacted) command
            timeout: Seconds before the command is abandoned, defaults to the shell timeout

        Returns:
            CommandResult: Exit status plus stdout/stderr lines

        Raises:
            RemoteCommandFailure: If the command times out or ssh cannot be started
        """
        argv = self.build_command(host, command)
        display = redact(" ".join(argv))
        log_message(f"[SSH] {display}", log_level)

        result = _run(argv, display, timeout or self.timeout)

        if result.errors:
            log_message(result.errors, "DEBUG")
        return result

    def run(self, host: str, command: str, error_message: Optional[str] = None,
            log_level: str = "INFO", timeout: Optional[int] = None) -> CommandResult:
        """Run a command on a remote host and raise RemoteCommandFailure on a non-zero exit."""
        result = self.exec(host, command, log_level=log_level, timeout=timeout)

        if not result.ok:
            raise RemoteCommandFailure(
                error_message or f"{host}: remote command failed",
                command=result.command,
                returncode=result.returncode,
                output=result.output + result.errors
            )
        return result


class RsyncTransport:
    """Mirrors the local project tree to a directory on a remote host."""

    def __init__(self, basedir: str, remote_user: str, rsync_path: str = "rsync",
                 timeout: int = DEFAULT_TIMEOUT):
        self.basedir = basedir
        self.remote_user = remote_user
        self.rsync_path = rsync_path
        self.timeout = timeout

    def build_command(self, host: str, remote_path: str, exclude_args: Sequence[str] = (),
                      copy_dest: Optional[str] = None, dry_run: bool = False) -> List[str]:
        argv = [self.rsync_path, "-azcO", "--force"]
        if dry_run:
            argv.append("--dry-run")
        argv += ["--delete", "--itemize-changes"]
        argv += list(exclude_args)
        if copy_dest:
            argv.append(f"--copy-dest={copy_dest}")
        argv += ["./", f"{self.remote_user}@{host}:{remote_path}"]
        return argv

    def sync(self, host: str, remote_path: str, exclude_args: Sequence[str] = (),
             copy_dest: Optional[str] = None, dry_run: bool = False,
             error_message: str = "Rsync has failed") -> CommandResult:
        """
        Mirror the project directory to ``host:remote_path``.

        Args:
            host: Remote hostname
            remote_path: Absolute destination directory on the host
            exclude_args: Prepared ``--exclude``/``--exclude-from`` arguments
            copy_dest: Remote directory rsync may copy unchanged files from
            dry_run: Only report what would change

        Returns:
            CommandResult: The itemized list of changes in ``output``

        Raises:
            RemoteCommandFailure: If rsync exits non-zero or times out
        """
        argv = self.build_command(host, remote_path, exclude_args, copy_dest, dry_run)
        display = " ".join(argv)
        log_message(f"[SYNC] {display}", "DEBUG")

        result = _run(argv, display, self.timeout, cwd=self.basedir)
        log_message(result.output)

        if not result.ok:
            raise RemoteCommandFailure(
                error_message,
                command=display,
                returncode=result.returncode,
                output=result.errors
            )
        return result
