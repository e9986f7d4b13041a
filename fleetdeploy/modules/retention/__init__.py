"""
Fleet Deploy Release Management System - Retention Module
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
Retention Module - Pruning of Old Releases

Pure functions over a list of releases and a reference time; the deploy
module asks for confirmation and does the deleting.
"""

from .index import RetentionDecision, evaluate, select_for_deletion, one_month_before, PROTECTED_RELEASES

__all__ = [
    'RetentionDecision',
    'evaluate',
    'select_for_deletion',
    'one_month_before',
    'PROTECTED_RELEASES',
]
