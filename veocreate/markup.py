"""Markup element stack used to build metadata package content.

Metadata packages are written as XML *text*: template output, raw attribute
strings and namespace declarations are spliced in verbatim, so the content is
not a parsed tree until the finished VEOContent.xml is read by a validator.

Element nesting is tracked with an explicit stack of frames:

- ``add_simple`` (control command ``ME``) writes a leaf element at the current
  depth. The value is escaped; the attribute string is not.
- ``start_complex`` (``SME``) writes a start tag and pushes a frame.
- ``end_complex`` (``EME``) writes an end tag using the tag it is given and pops
  the top frame. The tag is *not* checked against the popped frame, and an
  ``EME`` with nothing open is accepted. Nesting correctness is the control
  file author's responsibility; malformed nesting surfaces when the finished
  VEO is validated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from veocreate.core import xml_escape

logger = logging.getLogger(__name__)

_INDENT = "  "


@dataclass(frozen=True)
class Frame:
    """An open complex element."""
    tag: str
    attributes: str = ""


class MarkupElementStack:
    def __init__(self, base_depth: int = 0):
        self._base_depth = base_depth
        self._frames: List[Frame] = []
        self._parts: List[str] = []

    @property
    def depth(self) -> int:
        return len(self._frames)

    @property
    def open_tags(self) -> List[str]:
        return [f.tag for f in self._frames]

    def _indent(self) -> str:
        return _INDENT * (self._base_depth + len(self._frames))

    @staticmethod
    def _start_tag(tag: str, attributes: Optional[str]) -> str:
        attrs = (attributes or "").strip()
        return f"<{tag} {attrs}" if attrs else f"<{tag}"

    def add_simple(self, tag: str, value: Optional[str] = None, attributes: Optional[str] = None) -> None:
        start = self._start_tag(tag, attributes)
        if value is None or value == "":
            self._parts.append(f"{self._indent()}{start}/>\n")
        else:
            self._parts.append(f"{self._indent()}{start}>{xml_escape(value)}</{tag}>\n")

    def start_complex(self, tag: str, attributes: Optional[str] = None) -> None:
        self._parts.append(f"{self._indent()}{self._start_tag(tag, attributes)}>\n")
        self._frames.append(Frame(tag=tag, attributes=(attributes or "").strip()))

    def end_complex(self, tag: str) -> Optional[Frame]:
        """Close the innermost complex element; returns the popped frame (if any)."""
        frame = self._frames.pop() if self._frames else None
        if frame is None:
            logger.debug("EME '%s' with no open complex element", tag)
        elif frame.tag != tag:
            logger.debug("EME '%s' closes element opened as '%s'", tag, frame.tag)
        self._parts.append(f"{self._indent()}</{tag}>\n")
        return frame

    def append_raw(self, text: str) -> None:
        """Append pre-rendered markup (template output) verbatim."""
        if not text:
            return
        self._parts.append(text if text.endswith("\n") else text + "\n")

    def text(self) -> str:
        return "".join(self._parts)
