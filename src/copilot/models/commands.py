from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List


@dataclass
class ReActCommand:
    """A bracket command such as ``CREATE["Button","Submit"]``.

    The last command of a lexer may still be rewritten while its bracket body
    streams in.
    """

    type: str
    args: List[str] = field(default_factory=list)


@dataclass
class ParsedTag:
    """A tag that is currently open in the incremental parser."""

    name: str
    attributes: Dict[str, str] = field(default_factory=dict)
    accumulated_text: str = ""
