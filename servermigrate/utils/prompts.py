"""
Server Migration Toolkit
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
Operator confirmations.

Destructive or run-altering decisions (drop a database, purge and
reinstall nginx, keep going after a failed step) are routed through a
Confirmer so the workflows never talk to a terminal directly. Any callable
with the signature ``confirm(question, default) -> bool`` can stand in.
"""

import getpass
from enum import Enum
from typing import Callable

from .index import log_message


class ConfirmPolicy(str, Enum):
    ASK = "ask"
    YES = "yes"
    NO = "no"


class Confirmer:
    """Answer yes/no questions by policy or by asking the operator."""

    def __init__(self, policy: str = ConfirmPolicy.ASK, input_func: Callable[[str], str] = input):
        self.policy = ConfirmPolicy(policy)
        self.input_func = input_func

    def __call__(self, question: str, default: bool = False) -> bool:
        if self.policy == ConfirmPolicy.YES:
            log_message(f"{question} -> yes (pre-approved)")
            return True
        if self.policy == ConfirmPolicy.NO:
            log_message(f"{question} -> no (pre-declined)")
            return False

        suffix = "(Y/n)" if default else "(y/N)"
        try:
            reply = self.input_func(f"{question} {suffix}: ").strip().lower()
        except EOFError:
            log_message(f"No answer available for '{question}', using default", "WARNING")
            return default

        if not reply:
            return default
        return reply in ("y", "yes")


def prompt_password(label: str) -> str:
    """Read a password without echoing it."""
    return getpass.getpass(f"{label}: ")
