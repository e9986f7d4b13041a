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

"""
Patches Module - Versioned SQL Schema Changes

Patch files live in the project's configured patch directories and are named
after the local date/time they were written:

    sql_20240115_093000.sql

Each file carries a forward and a backward script:

    -- @up
    ALTER TABLE `user` ADD `nickname` varchar(64) NULL;
    -- @down
    ALTER TABLE `user` DROP `nickname`;

Either script may be empty; a non-empty script must end with ';'.

Components:
- PatchRepository: Discovery of patch files by naming convention
- Patch / SqlPatch: Immutable patch value objects
- check_files: Existence and validity check of named patches
- Bootstrap patch: Bundled patch creating the db_patches tracking table
"""

from .index import (
    SqlPatch,
    Patch,
    PatchRepository,
    MalformedPatchName,
    PatchValidationError,
    convert_filename_to_timestamp,
    parse_patch_source,
    validate_patch,
    load_patch,
    check_files,
    bootstrap_patch,
    resolve_patch_path,
    BOOTSTRAP_PATCH_NAME,
)

__all__ = [
    'SqlPatch',
    'Patch',
    'PatchRepository',
    'MalformedPatchName',
    'PatchValidationError',
    'convert_filename_to_timestamp',
    'parse_patch_source',
    'validate_patch',
    'load_patch',
    'check_files',
    'bootstrap_patch',
    'resolve_patch_path',
    'BOOTSTRAP_PATCH_NAME',
]
