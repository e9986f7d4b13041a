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

import re
import logging
from typing import Iterable, Union

logger = logging.getLogger("fleetdeploy")

# mysql -p<password> style arguments
PASSWORD_PATTERN = re.compile(r"(\s-p)\S+")
PASSWORD_REPLACEMENT = r"\1*****"


class DeployError(Exception):
    """Base exception for every failure that halts a deployment run."""
    pass


def log_message(message: Union[str, Iterable[str]], level: str = "INFO"):
    """
    Unified logger used throughout the orchestrator and helpers.

    Args:
        message: The message to log. A list of lines is logged line by line,
            an empty list logs nothing.
        level: Log level name ('DEBUG', 'INFO', 'WARNING', 'ERROR').
    """
    if not isinstance(message, str):
        lines = list(message)
        if not lines:
            return
        message = "\n".join(str(line) for line in lines)

    if level == "ERROR":
        logger.error(message)
    elif level == "WARNING":
        logger.warning(message)
    elif level == "DEBUG":
        logger.debug(message)
    else:
        logger.info(message)


def redact(command: str) -> str:
    """
    Hide passwords in a command line before it is echoed.

    Args:
        command: Command line as it will be executed

    Returns:
        str: The command with every ``-p<secret>`` argument masked
    """
    return PASSWORD_PATTERN.sub(PASSWORD_REPLACEMENT, command)
