"""Incremental lexer for bracket commands such as ``CREATE["Button","Submit"]``."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from src.copilot.models.commands import ReActCommand
from src.copilot.models.exceptions import DanglingCommandError


logger = logging.getLogger(__name__)


def _is_uppercase(char: str) -> bool:
    return "A" <= char <= "Z"


def _snapshot(commands: Sequence[ReActCommand]) -> List[Tuple[str, Tuple[str, ...]]]:
    return [(command.type, tuple(command.args)) for command in commands]


class BracketCommandLexer:
    """
    Re-tokenizes the whole buffer on every append and reports only the
    commands that are new or changed since the previous append.

    A bracket body that has not been closed yet is treated as the in-progress
    body of the last command: it rewrites that command's type and arguments
    instead of creating a new one.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._position = 0
        self._commands: List[ReActCommand] = []
        self.dangling: Optional[ReActCommand] = None

    @property
    def commands(self) -> List[ReActCommand]:
        return self._commands

    @property
    def buffer(self) -> str:
        return self._buffer

    def append(self, text: str) -> List[ReActCommand]:
        """
        Append streamed text and return the commands that are new or changed.

        New commands (beyond the previous count) come first, followed by
        commands at existing positions whose type or arguments changed.
        """
        self._buffer += text
        previous = _snapshot(self._commands)

        self.tokenize(self._buffer)

        current = _snapshot(self._commands)
        changed: List[ReActCommand] = list(self._commands[len(previous):])
        for index in range(min(len(previous), len(current))):
            if previous[index] != current[index]:
                changed.append(self._commands[index])
        return changed

    def finish(self, strict: bool = False) -> List[ReActCommand]:
        """
        Settle the command list once the stream has ended.

        A trailing command whose ``]`` never arrived is discarded (and kept on
        ``dangling``) instead of overwriting the last complete command.

        Args:
            strict: Raise instead of discarding a dangling command.

        Raises:
            DanglingCommandError: If ``strict`` and the buffer ends inside a command.
        """
        self.tokenize(self._buffer, final=True)
        if self.dangling is not None:
            if strict:
                raise DanglingCommandError(
                    f"Stream ended inside command {self.dangling.type!r}",
                    command=self.dangling,
                )
            logger.warning(
                "Discarding unterminated command %s%s at end of stream.",
                self.dangling.type,
                self.dangling.args,
            )
        return self._commands

    def tokenize(self, text: str, final: bool = False) -> List[ReActCommand]:
        self._position = 0
        self._commands = []
        self.dangling = None

        while self._position < len(text):
            while self._position < len(text) and not _is_uppercase(self._peek(text)):
                self._next(text)

            command_type = self._read_until(text, ("[",))
            args: List[str] = []
            if self._peek(text) == "[":
                self._next(text)

            while self._peek(text) != "]":
                if self._position >= len(text):
                    break
                if self._peek(text) == '"':
                    self._next(text)
                    args.append(self._read_until(text, ('"',)))
                    self._next(text)
                else:
                    self._next(text)

            if self._peek(text) == "]":
                self._next(text)
                if command_type and _is_uppercase(command_type[0]):
                    self._commands.append(ReActCommand(command_type, args))
            elif not command_type:
                continue
            elif final:
                self.dangling = ReActCommand(command_type, args)
            elif self._commands:
                last_command = self._commands[-1]
                last_command.type = command_type
                last_command.args = args

        return self._commands

    # ------------------------------------------------------------------ #
    # Cursor helpers
    # ------------------------------------------------------------------ #

    def _peek(self, text: str) -> str:
        if self._position < len(text):
            return text[self._position]
        return ""

    def _next(self, text: str) -> str:
        char = text[self._position] if self._position < len(text) else ""
        self._position += 1
        return char

    def _read_until(self, text: str, stop_chars: Tuple[str, ...]) -> str:
        value = ""
        escaped = False
        while self._position < len(text):
            char = self._peek(text)
            if char == "\n":
                value += char
                self._next(text)
            elif char in stop_chars and not escaped:
                break
            elif char == "\\" and not escaped:
                escaped = True
                self._next(text)
            else:
                escaped = False
                value += self._next(text)
        return value.strip()
