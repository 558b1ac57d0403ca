"""Incremental parser for the tag markup streamed back by the assistant.

The grammar is a flat sequence of ``<name attr="value">content</name>``
elements (``<name .../>`` is accepted as an element with empty content).
Text between elements is ignored. Fragments may split the input anywhere,
including inside a tag name, an attribute value or a closing tag.
"""

from __future__ import annotations

import logging
import re
import string
import time
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from src.copilot.config import STREAM_CONFIG
from src.copilot.models.commands import ParsedTag


logger = logging.getLogger(__name__)

ContentCallback = Callable[[str, str], None]
TagOpenCallback = Callable[[str, Dict[str, str]], None]
TagEndCallback = Callable[[str, str], None]

_NAME_CHARS = frozenset(string.ascii_letters + string.digits + "_:.-")

_ATTRIBUTE_PATTERN = re.compile(
    r"""([^\s=/"']+)(?:\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s"']+)))?"""
)


class ParserState(str, Enum):
    OUTSIDE = "outside"
    TAG_OPEN = "tag_open"
    IN_CONTENT = "in_content"


def parse_tag_header(header: str) -> Tuple[str, Dict[str, str]]:
    """
    Split the text between ``<`` and ``>`` into a tag name and attributes.

    Attributes without a value map to an empty string.
    """
    header = header.strip()
    match = re.match(r"[^\s/]+", header)
    if not match:
        return "", {}
    name = match.group(0)

    attributes: Dict[str, str] = {}
    for attribute in _ATTRIBUTE_PATTERN.finditer(header, match.end()):
        key = attribute.group(1)
        value = next((group for group in attribute.groups()[1:] if group is not None), "")
        attributes[key] = value
    return name, attributes


class ContentCoalescer:
    """
    Rate-limits content updates to at most one per ``interval`` seconds.

    Updates that arrive inside the window replace any pending one; the
    pending update is delivered by ``poll()`` once the window has elapsed, or
    immediately by ``flush()``. The clock is injectable so the window is
    deterministic in tests.
    """

    def __init__(
        self,
        deliver: ContentCallback,
        interval: float = STREAM_CONFIG["content_update_interval"],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._deliver = deliver
        self.interval = interval
        self._clock = clock
        self._last_delivery: Optional[float] = None
        self._pending: Optional[Tuple[str, str]] = None

    @property
    def pending(self) -> Optional[Tuple[str, str]]:
        return self._pending

    def submit(self, name: str, text: str) -> None:
        now = self._clock()
        if self._last_delivery is not None and now - self._last_delivery < self.interval:
            self._pending = (name, text)
            return
        self._pending = None
        self._last_delivery = now
        self._deliver(name, text)

    def poll(self) -> bool:
        """Deliver the pending update if its window has elapsed. Returns True if delivered."""
        if self._pending is None:
            return False
        if self._last_delivery is not None and self._clock() - self._last_delivery < self.interval:
            return False
        self.flush()
        return True

    def flush(self) -> None:
        if self._pending is None:
            return
        name, text = self._pending
        self._pending = None
        self._last_delivery = self._clock()
        self._deliver(name, text)


class IncrementalTagParser:
    """
    Streaming state machine: OUTSIDE -> TAG_OPEN -> IN_CONTENT -> OUTSIDE.

    ``on_tag_open(name, attributes)`` fires once a tag header is complete,
    ``on_content(name, text)`` reports the content accumulated so far, and
    ``on_tag_end(name, full_text)`` fires on the matching close tag. Tag
    events are never delayed; when content is coalesced, any pending content
    update is flushed before the tag end fires.
    """

    def __init__(
        self,
        on_content: Optional[ContentCallback] = None,
        on_tag_open: Optional[TagOpenCallback] = None,
        on_tag_end: Optional[TagEndCallback] = None,
        update_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._on_tag_open = on_tag_open
        self._on_tag_end = on_tag_end
        self._coalescer: Optional[ContentCoalescer] = None
        self._on_content = on_content
        if on_content is not None and update_interval:
            self._coalescer = ContentCoalescer(on_content, interval=update_interval, clock=clock)

        self.state = ParserState.OUTSIDE
        self._chunks: List[str] = []
        self._header = ""
        self._quote: Optional[str] = None
        self._name_done = False
        self._tag: Optional[ParsedTag] = None
        self._close_sequence = ""
        self._held = ""
        self._reported_length = 0

    @property
    def current_tag(self) -> Optional[ParsedTag]:
        return self._tag

    def get_full_text(self) -> str:
        return "".join(self._chunks)

    def append(self, fragment: str) -> None:
        """Feed the next fragment in arrival order."""
        if not fragment:
            return
        self._chunks.append(fragment)

        for char in fragment:
            if self.state is ParserState.OUTSIDE:
                if char == "<":
                    self._begin_header()
            elif self.state is ParserState.TAG_OPEN:
                self._consume_header_char(char)
            else:
                self._consume_content_char(char)

        self._report_content()
        if self._coalescer is not None:
            self._coalescer.poll()

    def finish(self) -> str:
        """
        Close out the stream: deliver held-back content of a tag that never
        closed and flush any coalesced update. Returns the full text.
        """
        if self.state is ParserState.IN_CONTENT and self._tag is not None:
            if self._held:
                self._tag.accumulated_text += self._held
                self._held = ""
            self._report_content()
            logger.debug("Stream ended while <%s> was still open.", self._tag.name)
        if self._coalescer is not None:
            self._coalescer.flush()
        return self.get_full_text()

    # ------------------------------------------------------------------ #
    # Tag header
    # ------------------------------------------------------------------ #

    def _begin_header(self) -> None:
        self.state = ParserState.TAG_OPEN
        self._header = ""
        self._quote = None
        self._name_done = False

    def _abandon_header(self, char: str) -> None:
        # Not a tag after all, e.g. "a < b" or "x<y's"; the text is prose.
        self.state = ParserState.OUTSIDE
        self._header = ""
        self._quote = None
        if char == "<":
            self._begin_header()

    def _consume_header_char(self, char: str) -> None:
        if self._quote:
            if char == self._quote:
                self._quote = None
            self._header += char
            return

        if char == "<":
            self._abandon_header(char)
            return

        if not self._header:
            if char.isalpha() or char in "_/":
                self._header = char
            else:
                self._abandon_header(char)
            return

        if not self._name_done:
            if char.isspace():
                self._name_done = True
            elif char not in _NAME_CHARS and char not in "/>":
                self._abandon_header(char)
                return

        if char in ("\"", "'"):
            if not self._header.rstrip().endswith("="):
                self._abandon_header(char)
                return
            self._quote = char
            self._header += char
            return

        if char != ">":
            self._header += char
            return

        self._complete_header()

    def _complete_header(self) -> None:
        header = self._header
        self._header = ""
        self.state = ParserState.OUTSIDE

        if header.startswith("/"):
            logger.debug("Ignoring stray closing tag <%s>", header)
            return

        self_closing = header.rstrip().endswith("/")
        if self_closing:
            header = header.rstrip()[:-1]

        name, attributes = parse_tag_header(header)
        if not name:
            return

        if self._on_tag_open:
            self._on_tag_open(name, attributes)

        if self_closing:
            self._end_tag(name, "")
            return

        self._tag = ParsedTag(name=name, attributes=attributes)
        self._close_sequence = f"</{name}>"
        self._held = ""
        self._reported_length = 0
        self.state = ParserState.IN_CONTENT

    # ------------------------------------------------------------------ #
    # Content
    # ------------------------------------------------------------------ #

    def _consume_content_char(self, char: str) -> None:
        tag = self._tag
        candidate = self._held + char
        if self._close_sequence.startswith(candidate):
            self._held = candidate
            if candidate == self._close_sequence:
                self._held = ""
                self._report_content()
                self._tag = None
                self.state = ParserState.OUTSIDE
                self._end_tag(tag.name, tag.accumulated_text)
            return

        # "<" only occurs at the start of the close sequence, so a mismatch
        # can only restart a match on a fresh "<".
        if char == "<":
            tag.accumulated_text += self._held
            self._held = "<"
        else:
            tag.accumulated_text += candidate
            self._held = ""

    def _report_content(self) -> None:
        tag = self._tag
        if tag is None or self._on_content is None:
            return
        if len(tag.accumulated_text) == self._reported_length:
            return
        self._reported_length = len(tag.accumulated_text)
        if self._coalescer is not None:
            self._coalescer.submit(tag.name, tag.accumulated_text)
        else:
            self._on_content(tag.name, tag.accumulated_text)

    def _end_tag(self, name: str, full_text: str) -> None:
        if self._coalescer is not None:
            self._coalescer.flush()
        if self._on_tag_end:
            self._on_tag_end(name, full_text)
