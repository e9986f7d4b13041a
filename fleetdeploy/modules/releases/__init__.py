"""
Fleet Deploy Release Management System - Releases Module
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
Releases Module - Release Directory Naming and Discovery

Every deployment creates ``<remote_dir>/<project>_<YYYY-MM-DD_HHMMSS>`` on
each host; the ``production`` symlink in the same directory points at the
active one.
"""

from .index import (
    Release,
    format_release_name,
    parse_release_name,
    release_pattern,
    find_releases,
    previous_and_last,
    ACTIVE_LINK,
    RELEASE_TIMESTAMP_FORMAT,
)

__all__ = [
    'Release',
    'format_release_name',
    'parse_release_name',
    'release_pattern',
    'find_releases',
    'previous_and_last',
    'ACTIVE_LINK',
    'RELEASE_TIMESTAMP_FORMAT',
]
