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

"""
Migrations Module - Schema Patches in Lockstep with Releases

Decides which SQL patches a deployment or rollback has to run and runs them
through the mysql client on the control host.

Two modes, chosen by probing for the db_patches table once per run:
- Tracked: every patch without an applied record runs, oldest first; a
  rollback reverts what was applied by the release being retired
- Legacy: release timestamps bound the patches; the bundled bootstrap patch
  creates db_patches and older patches can be registered as done

Records left half way (applied_at NULL, or reverted_at set on a row that
still exists) stop all migration work until repaired by hand.

Components:
- MigrationWindow / resolver functions: Pure patch selection
- DatabaseManager: Credentials, probing, planning and execution
- patcher: Runner printing the bookkeeping-wrapped SQL on the control host
"""

from .index import (
    PatchRecord,
    MigrationWindow,
    History,
    MigrationPlan,
    DatabaseManager,
    CrashedPatchError,
    DatabaseError,
    patches_in_window,
    patches_to_apply,
    patches_to_register,
    patches_to_rollback,
    classify_history,
    ensure_no_crashes,
    parse_history_output,
    build_register_statement,
    HISTORY_QUERY,
    TRACKING_TABLE,
)

__all__ = [
    'PatchRecord',
    'MigrationWindow',
    'History',
    'MigrationPlan',
    'DatabaseManager',
    'CrashedPatchError',
    'DatabaseError',
    'patches_in_window',
    'patches_to_apply',
    'patches_to_register',
    'patches_to_rollback',
    'classify_history',
    'ensure_no_crashes',
    'parse_history_output',
    'build_register_statement',
    'HISTORY_QUERY',
    'TRACKING_TABLE',
]
