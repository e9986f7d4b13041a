"""
Fleet Deploy Release Management System - Patch Runner
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
Patch runner executed on the control host, inside a release directory:

    python3 -m fleetdeploy.modules.migrations.patcher update <database> <timestamp> <patch>...

Prints the SQL for the named patches, wrapped in db_patches bookkeeping, on
stdout so it can be piped into the mysql client. Nothing is executed here.
"""

import os
import sys
import argparse
from typing import List, Optional, Sequence
from fleetdeploy.utils.index import DeployError
from fleetdeploy.modules.patches import Patch, check_files
from .index import sql_string


def build_instructions(action: str, patches: Sequence[Patch], timestamp: int) -> str:
    """
    Wrap patch SQL in the statements that record its progress.

    A patch is registered before its up() runs and marked applied afterwards,
    so an interrupted update leaves a row with applied_at NULL. A rollback
    marks reverted_at first and only deletes the row after down() ran.

    Args:
        action: 'update' or 'rollback'
        patches: Patches in execution order
        timestamp: Deployment timestamp recorded as applied_at/reverted_at

    Returns:
        str: SQL script, one statement group per patch
    """
    if action not in ("update", "rollback"):
        raise ValueError(f"Unknown action: {action}")

    lines: List[str] = []

    for patch in patches:
        name = sql_string(patch.name)

        if action == "update":
            if not patch.is_bootstrap:
                lines.append(f"INSERT INTO db_patches (patch_name, patch_timestamp) VALUES ({name}, {patch.timestamp});")
            lines.append(patch.up())
            if patch.is_bootstrap:
                # db_patches did not exist before up() ran
                lines.append(
                    "INSERT INTO db_patches (patch_name, patch_timestamp, applied_at) "
                    f"VALUES ({name}, {patch.timestamp}, FROM_UNIXTIME({timestamp}));"
                )
            else:
                lines.append(f"UPDATE db_patches SET applied_at = FROM_UNIXTIME({timestamp}) WHERE patch_name={name};")
        else:
            lines.append(f"UPDATE db_patches SET reverted_at = FROM_UNIXTIME({timestamp}) WHERE patch_name={name};")
            lines.append(patch.down())
            lines.append(f"DELETE FROM db_patches WHERE patch_name={name};")

    return "\n".join(line for line in lines if line) + "\n"


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fleetdeploy-patcher",
        description="Print the SQL of database patches, wrapped in db_patches bookkeeping"
    )
    parser.add_argument("action", choices=["update", "rollback"])
    parser.add_argument("database", help="Target database (informational)")
    parser.add_argument("timestamp", type=int, help="Deployment timestamp")
    parser.add_argument("patches", nargs="+", metavar="patch_file",
                        help="Patch files relative to the release directory")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = create_parser().parse_args(argv)

    try:
        patches = check_files(os.getcwd(), args.patches)
    except DeployError as e:
        print(f"fleetdeploy-patcher: {e}", file=sys.stderr)
        return 1

    sys.stdout.write(build_instructions(args.action, list(patches.values()), args.timestamp))
    return 0


if __name__ == "__main__":
    sys.exit(main())
