"""
Fleet Deploy Release Management System
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
Fleet Deploy - zero-downtime releases for fleets of application servers.

A deployment rsyncs the project into a new timestamped release directory on
every host, runs the pending SQL patches once, swaps the ``production``
symlink on all hosts and prunes old releases. A rollback swaps back and
reverts the patches the retired release brought in.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional, Sequence
from .utils.index import log_message, DeployError

__version__ = "1.0.0"

__all__ = [
    'run_per_host',
    'run_per_host_async',
    'log_message',
    'DeployError',
    '__version__',
]


async def run_per_host_async(hosts: Sequence[str], operation: Callable[[str], Any],
                             max_workers: Optional[int] = None) -> Dict[str, Any]:
    """
    Run a blocking per-host operation on every host using a thread pool.

    The first failure is re-raised once every started host has finished, so
    the next phase never starts while a host is still busy.

    Args:
        hosts: Remote hostnames
        operation: Called once per host with the hostname
        max_workers: Maximum number of concurrent hosts, defaults to one per host

    Returns:
        dict: Mapping of hostnames to the operation's results
    """
    results = {}

    def host_callback(host):
        results[host] = operation(host)

    with ThreadPoolExecutor(max_workers=max_workers or max(len(hosts), 1)) as executor:
        loop = asyncio.get_event_loop()
        futures = []

        for host in hosts:
            future = loop.run_in_executor(
                executor,
                lambda h=host: host_callback(h)
            )
            futures.append(future)

        await asyncio.gather(*futures)

    return results


def run_per_host(hosts: Sequence[str], operation: Callable[[str], Any],
                 max_workers: Optional[int] = None) -> Dict[str, Any]:
    """Synchronous entry point for run_per_host_async."""
    if not hosts:
        return {}
    return asyncio.run(run_per_host_async(hosts, operation, max_workers))
