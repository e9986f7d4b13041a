"""
Fleet Deploy Release Management System - Patches Module
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
import re
import time
import posixpath
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Iterable, Sequence, Tuple
from fleetdeploy.utils.index import log_message, DeployError
from fleetdeploy.modules.config import ConfigurationError

PATCH_FILENAME_PATTERN = re.compile(r"^sql_(\d{8}_\d{6})\.\w[\w.]*$")
PATCH_TIMESTAMP_PATTERN = re.compile(r"sql_(\d{8}_\d{6})\.")
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

UP_MARKER = "-- @up"
DOWN_MARKER = "-- @down"

# Creates db_patches; the early timestamp keeps it ahead of every other patch
BOOTSTRAP_PATCH_NAME = "sql_19700101_080000.sql"
BOOTSTRAP_PATCH_PATH = Path(__file__).parent / "sql_updates" / BOOTSTRAP_PATCH_NAME


class MalformedPatchName(DeployError):
    """Raised when a patch filename does not carry a valid local date/time."""
    pass


class PatchValidationError(DeployError):
    """Raised when a patch file is missing or its SQL is not well formed."""
    pass


class SqlPatch(ABC):
    """A schema change with forward and backward SQL."""

    @abstractmethod
    def up(self) -> str:
        """SQL that applies the change."""

    @abstractmethod
    def down(self) -> str:
        """SQL that reverts the change."""


@dataclass(frozen=True)
class Patch(SqlPatch):
    """
    A patch file loaded from disk.

    ``name`` is the path relative to the project root (the bootstrap patch
    uses its bare filename) and is the key the tracking table stores.
    """
    name: str
    timestamp: int
    up_sql: str = ""
    down_sql: str = ""

    def up(self) -> str:
        return self.up_sql

    def down(self) -> str:
        return self.down_sql

    @property
    def identifier(self) -> str:
        """Filename without extension, e.g. ``sql_20240101_120000``."""
        return posixpath.basename(self.name).split(".", 1)[0]

    @property
    def is_bootstrap(self) -> bool:
        return posixpath.basename(self.name) == BOOTSTRAP_PATCH_NAME


def convert_filename_to_timestamp(filename: str) -> int:
    """
    Extract the timestamp out of a patch filename.

    The digits are read as a local date/time and must format back to the same
    digits, which rejects impossible dates (``sql_20240230_...``) and local
    times that fall in a DST gap.

    Args:
        filename: Patch filename or path

    Returns:
        int: Unix timestamp of the patch

    Raises:
        MalformedPatchName: If no valid timestamp can be derived
    """
    match = PATCH_TIMESTAMP_PATTERN.search(os.path.basename(filename))
    if not match:
        raise MalformedPatchName(f"Can't convert {filename} to timestamp")

    digits = match.group(1)
    try:
        parsed = datetime.strptime(digits, TIMESTAMP_FORMAT)
        timestamp = int(time.mktime(parsed.timetuple()))
    except (ValueError, OverflowError):
        raise MalformedPatchName(f"Can't convert {filename} to timestamp")

    if time.strftime(TIMESTAMP_FORMAT, time.localtime(timestamp)) != digits:
        raise MalformedPatchName(f"Can't convert {filename} to timestamp")

    return timestamp


def parse_patch_source(source: str, name: str) -> Tuple[str, str]:
    """
    Split patch file content into its up and down SQL.

    Returns:
        tuple: (up_sql, down_sql)

    Raises:
        PatchValidationError: If the file has no ``-- @up`` section
    """
    sections = {UP_MARKER: [], DOWN_MARKER: []}
    current = None

    for line in source.splitlines():
        marker = line.strip().lower()
        if marker in sections:
            current = sections[marker]
            continue
        if current is not None:
            current.append(line)

    if current is None:
        raise PatchValidationError(f"{name} has no '{UP_MARKER}' section")

    return "\n".join(sections[UP_MARKER]).strip(), "\n".join(sections[DOWN_MARKER]).strip()


def validate_patch(patch: SqlPatch, label: str) -> None:
    """Check that up() and down() are either empty or end with ';'."""
    for method in ("up", "down"):
        sql = getattr(patch, method)().strip()
        if sql and not sql.endswith(";"):
            raise PatchValidationError(f"{label} {method}() code contains queries but doesn't end with ';'")


def load_patch(path: str, name: str = None) -> Patch:
    """
    Read and validate a single patch file.

    Args:
        path: Location of the file on disk
        name: Key to register the patch under, defaults to ``path``

    Returns:
        Patch: The validated patch

    Raises:
        MalformedPatchName: If the filename carries no valid timestamp
        PatchValidationError: If the file is missing or its SQL is invalid
    """
    name = name or str(path)
    timestamp = convert_filename_to_timestamp(str(path))

    try:
        with open(path, 'r') as f:
            source = f.read()
    except OSError as e:
        raise PatchValidationError(f"{path} not found: {e}")

    up_sql, down_sql = parse_patch_source(source, name)
    patch = Patch(name=name, timestamp=timestamp, up_sql=up_sql, down_sql=down_sql)
    validate_patch(patch, patch.identifier)
    return patch


def bootstrap_patch() -> Patch:
    """The bundled patch that creates the db_patches tracking table."""
    return load_patch(str(BOOTSTRAP_PATCH_PATH), name=BOOTSTRAP_PATCH_NAME)


def resolve_patch_path(base_dir: str, name: str) -> str:
    if posixpath.basename(name) == BOOTSTRAP_PATCH_NAME:
        return str(BOOTSTRAP_PATCH_PATH)
    return os.path.join(base_dir, name)


def check_files(base_dir: str, names: Iterable[str]) -> Dict[str, Patch]:
    """
    Check that all named patches exist and contain valid SQL.

    Args:
        base_dir: Project root the names are relative to
        names: Patch names as stored in db_patches

    Returns:
        dict: name -> Patch, in the order given

    Raises:
        PatchValidationError: If a file is missing or invalid
        MalformedPatchName: If a filename carries no valid timestamp
    """
    patches = {}

    for name in names:
        path = resolve_patch_path(base_dir, name)
        if not os.path.isfile(path):
            raise PatchValidationError(f"{path} not found")
        patches[name] = load_patch(path, name=name)

    return patches


class PatchRepository:
    """Discovers patch files in the configured project directories."""

    def __init__(self, basedir: str, directories: Sequence[str]):
        self.basedir = basedir
        self.directories = list(directories)

    def list_patches(self) -> List[Patch]:
        """
        Load every patch found in the patch directories (non-recursive).

        The bundled bootstrap patch is not part of this list.

        Returns:
            list: Patches ordered by timestamp, then name

        Raises:
            ConfigurationError: If a patch directory does not exist
            MalformedPatchName: If a patch filename carries an invalid date
            PatchValidationError: If a patch file is invalid
        """
        patches = []

        for directory in self.directories:
            full_dir = os.path.join(self.basedir, directory)
            if not os.path.isdir(full_dir):
                raise ConfigurationError(f"Patch directory not found: {full_dir}")

            for entry in sorted(os.listdir(full_dir)):
                full_path = os.path.join(full_dir, entry)
                if not os.path.isfile(full_path) or not PATCH_FILENAME_PATTERN.match(entry):
                    continue
                if entry == BOOTSTRAP_PATCH_NAME:
                    continue

                name = posixpath.join(directory.replace(os.sep, "/").rstrip("/"), entry)
                patches.append(load_patch(full_path, name=name))

        patches.sort(key=lambda patch: (patch.timestamp, patch.name))
        log_message(f"Found {len(patches)} SQL patch file(s) in {len(self.directories)} director(y/ies)", "DEBUG")
        return patches
