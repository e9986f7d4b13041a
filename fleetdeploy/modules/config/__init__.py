"""
Fleet Deploy Release Management System - Configuration Module
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
Configuration Module - Deployment Target Settings

One JSON document per deployment target, in the same shape as the module
index.json files: a ``metadata`` block and a ``config`` block.

Required options:
- project_name, basedir, remote_host, remote_user, remote_dir, target

Everything else (database, data dirs, workers, cache invalidation, transport
paths, timeouts) is optional and validated in DeployConfig.from_dict.

cache.refresh_urls holds one URL per remote host, in host order. They are
fetched from the deploying machine and must be reachable from it.
"""

from .index import (
    DeployConfig,
    WorkerServer,
    WorkerRestart,
    CacheInvalidation,
    ConfigurationError,
    load_config,
    DEFAULT_PATCHER,
)

__all__ = [
    'DeployConfig',
    'WorkerServer',
    'WorkerRestart',
    'CacheInvalidation',
    'ConfigurationError',
    'load_config',
    'DEFAULT_PATCHER',
]
