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
Confirmation port used at phase boundaries.

The orchestrator never reads the terminal itself. It asks a ConfirmationPort,
which is either the interactive terminal prompt or a scripted answer sheet for
unattended runs and tests.
"""

import getpass
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Union
from .index import log_message


class ConfirmationPort(ABC):
    """Answers the questions asked before every destructive phase."""

    @abstractmethod
    def ask(self, question: str, default: str = "", secret: bool = False) -> str:
        """Ask a free-form question, returning ``default`` for an empty answer."""

    def confirm(self, question: str) -> bool:
        """Ask a yes/no question. Anything but 'yes' is a no."""
        return self.ask(f"{question} (yes/no): ", "no").strip().lower() == "yes"


class InteractiveConfirmation(ConfirmationPort):
    """Prompts on the controlling terminal."""

    def ask(self, question: str, default: str = "", secret: bool = False) -> str:
        if secret:
            answer = getpass.getpass(question)
        else:
            answer = input(question)

        answer = answer.strip()
        return answer if answer else default


class ScriptedConfirmation(ConfirmationPort):
    """
    Answers questions from a prepared answer sheet.

    Keys of ``answers`` are matched as substrings of the question, the first
    match wins. Unmatched yes/no questions get ``default``; unmatched free-form
    questions get the prompt's own default.
    """

    def __init__(self, answers: Optional[Dict[str, Union[str, bool]]] = None, default: bool = True):
        self.answers = answers or {}
        self.default = default
        self.questions: List[str] = []

    def _lookup(self, question: str) -> Optional[Union[str, bool]]:
        for key, answer in self.answers.items():
            if key in question:
                return answer
        return None

    def ask(self, question: str, default: str = "", secret: bool = False) -> str:
        self.questions.append(question)
        answer = self._lookup(question)

        if answer is None:
            return default
        if isinstance(answer, bool):
            answer = "yes" if answer else "no"

        if not secret:
            log_message(f"{question}{answer}", "DEBUG")
        return answer

    def confirm(self, question: str) -> bool:
        self.questions.append(question)
        answer = self._lookup(question)

        if answer is None:
            answer = self.default
        if isinstance(answer, str):
            answer = answer.strip().lower() == "yes"

        log_message(f"{question} (yes/no): {'yes' if answer else 'no'}")
        return answer
