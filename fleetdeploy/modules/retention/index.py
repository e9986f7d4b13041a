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

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List
from fleetdeploy.modules.releases import Release

PROTECTED_RELEASES = 2


@dataclass(frozen=True)
class RetentionDecision:
    release: Release
    delete: bool
    reason: str


def one_month_before(moment: datetime) -> datetime:
    """Same time one calendar month earlier, clamped to the end of a shorter month."""
    year, month = (moment.year, moment.month - 1) if moment.month > 1 else (moment.year - 1, 12)
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def evaluate(releases: Iterable[Release], now: datetime) -> List[RetentionDecision]:
    """
    Decide for every old release whether it can be deleted.

    The two newest releases are never evaluated. Of the others:
    - older than one month: deleted
    - between one week and one month old: deleted when a newer candidate
      was created on the same calendar day
    - younger than one week: kept

    Args:
        releases: Releases in any order
        now: Reference time for the age checks

    Returns:
        list: One decision per candidate, oldest first
    """
    candidates = sorted(releases)[:-PROTECTED_RELEASES]
    month_ago = one_month_before(now)
    week_ago = now - timedelta(weeks=1)

    decisions = []
    for position, release in enumerate(candidates):
        created = release.created

        if created < month_ago:
            decisions.append(RetentionDecision(release, True, "is older than a month"))
        elif created < week_ago:
            replaced = any(
                newer.timestamp > release.timestamp and newer.created.date() == created.date()
                for newer in candidates[position + 1:]
            )
            if replaced:
                decisions.append(RetentionDecision(release, True, "was replaced the same day"))
            else:
                decisions.append(RetentionDecision(release, False, "stays"))
        else:
            decisions.append(RetentionDecision(release, False, "stays"))

    return decisions


def select_for_deletion(releases: Iterable[Release], now: datetime) -> List[Release]:
    """Releases that can be deleted, oldest first."""
    return [decision.release for decision in evaluate(releases, now) if decision.delete]
