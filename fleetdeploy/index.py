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

import os
import sys
import argparse
import logging
import traceback
from typing import Optional, Sequence
from .utils.index import log_message, DeployError
from .utils.confirm import InteractiveConfirmation, ScriptedConfirmation
from .modules.config import DeployConfig, load_config
from .modules.deploy import DeploymentOrchestrator

ACTIONS = {
    "deploy": "deploy",
    "rollback": "rollback",
    "cleanup": "cleanup",
}


def setup_logging(logfile: Optional[str] = None, debug: bool = False):
    """
    Log to stdout, and to ``logfile`` as well when given.

    DEBUG lines only reach stdout with ``debug``; the log file always gets them.
    """
    unified_format = logging.Formatter('[%(asctime)s] [%(levelname)s] %(message)s',
                                       datefmt='%Y-%m-%d %H:%M:%S')
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    console_handler.setFormatter(unified_format)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)
    root_logger.addHandler(console_handler)

    if logfile:
        file_handler = logging.FileHandler(logfile)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(unified_format)
        root_logger.addHandler(file_handler)


def log_session_start(action: str):
    logging.info("=" * 80)
    logging.info(f"FLEET DEPLOY {action.upper()} STARTED")
    logging.info(f"Command: {' '.join(sys.argv)}")
    logging.info(f"Working Directory: {os.getcwd()}")
    logging.info("=" * 80)


def build_orchestrator(config: DeployConfig, assume_yes: bool = False) -> DeploymentOrchestrator:
    """Orchestrator for a configuration, prompting on the terminal unless ``assume_yes``."""
    confirmation = ScriptedConfirmation(default=True) if assume_yes else InteractiveConfirmation()
    return DeploymentOrchestrator(config, confirmation=confirmation)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fleetdeploy", description="Fleet Deploy Release Orchestrator")
    parser.add_argument("action", choices=list(ACTIONS),
                        help="deploy a new release, roll back the newest one or clean up old ones")
    parser.add_argument("--config", required=True, metavar="FILE",
                        help="Deployment target configuration (JSON)")
    parser.add_argument("--yes", action="store_true",
                        help="Answer every confirmation with yes (database credentials must be configured)")
    parser.add_argument("--debug", action="store_true",
                        help="Show debug output")
    parser.add_argument("--logfile", metavar="FILE", default=None,
                        help="Also write the full log to FILE")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main entry point of the fleetdeploy command.

    Returns:
        int: 0 on success or when the operator declined, 1 on error, 130 on interrupt
    """
    args = create_parser().parse_args(argv)

    try:
        setup_logging(args.logfile, args.debug)
        config = load_config(args.config)

        if (config.logfile and not args.logfile) or (config.debug and not args.debug):
            setup_logging(args.logfile or config.logfile, args.debug or config.debug)

        log_session_start(args.action)
        orchestrator = build_orchestrator(config, args.yes)
        completed = getattr(orchestrator, ACTIONS[args.action])()

        if completed:
            log_message(f"{args.action.capitalize()} finished")
        return 0

    except KeyboardInterrupt:
        log_message("Interrupted by user", "WARNING")
        return 130
    except DeployError as e:
        log_message(f"{type(e).__name__}: {e}", "ERROR")
        return 1
    except Exception as e:
        log_message(f"Unhandled error: {e}", "ERROR")
        log_message(traceback.format_exc(), "DEBUG")
        return 1


if __name__ == "__main__":
    sys.exit(main())
