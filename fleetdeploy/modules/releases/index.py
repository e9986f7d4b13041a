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

import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Pattern, Tuple
from fleetdeploy.utils.index import log_message

RELEASE_TIMESTAMP_FORMAT = "%Y-%m-%d_%H%M%S"
ACTIVE_LINK = "production"


@dataclass(frozen=True, order=True)
class Release:
    """A release directory, ordered by creation time."""
    timestamp: int
    name: str

    @property
    def created(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp)


def format_release_name(project_name: str, timestamp: int) -> str:
    """Directory name of the release created at ``timestamp`` (local time)."""
    return f"{project_name}_{time.strftime(RELEASE_TIMESTAMP_FORMAT, time.localtime(timestamp))}"


def release_pattern(project_name: str) -> Pattern:
    return re.compile(rf"^{re.escape(project_name)}_(\d{{4}}-\d{{2}}-\d{{2}}_\d{{6}})$")


def parse_release_name(project_name: str, dirname: str) -> Optional[Release]:
    """
    Turn a directory name back into a Release.

    Returns:
        Release or None: None for anything that is not a release of this project
    """
    match = release_pattern(project_name).match(dirname.strip())
    if not match:
        return None

    try:
        created = datetime.strptime(match.group(1), RELEASE_TIMESTAMP_FORMAT)
    except ValueError:
        return None

    return Release(timestamp=int(time.mktime(created.timetuple())), name=dirname.strip())


def find_releases(listing: Iterable[str], project_name: str) -> List[Release]:
    """
    Pick the releases of a project out of a directory listing.

    Args:
        listing: Output lines of ``ls -1`` on the remote releases directory
        project_name: Project the releases belong to

    Returns:
        list: Releases, oldest first
    """
    releases = []
    for dirname in listing:
        release = parse_release_name(project_name, dirname)
        if release:
            releases.append(release)
    return sorted(releases)


def previous_and_last(releases: List[Release]) -> Tuple[Optional[Release], Optional[Release]]:
    """The release before the newest one and the newest one; either may be None."""
    ordered = sorted(releases)

    if ordered:
        log_message(["[RELEASE] Past deployments:"] + [release.name for release in ordered])

    if len(ordered) >= 2:
        return ordered[-2], ordered[-1]
    if ordered:
        return None, ordered[-1]
    return None, None
