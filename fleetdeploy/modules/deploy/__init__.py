"""
Fleet Deploy Release Management System - Deploy Module
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
Deploy Module - Deployment, Rollback and Cleanup State Machine

Deployment:
  discover -> check (dry-run, migration plan, confirm) -> sync all hosts ->
  migrations once -> activate all hosts -> post-deploy hooks and cache
  refresh -> retention cleanup

Rollback:
  discover -> check (confirm) -> activate previous release on all hosts ->
  revert patches -> cache refresh and post-rollback hooks -> delete the
  retired release

Any failing remote command stops the run; nothing is rolled back
automatically.
"""

from .index import DeploymentOrchestrator, DeployState, RunContext

__all__ = [
    'DeploymentOrchestrator',
    'DeployState',
    'RunContext',
]
