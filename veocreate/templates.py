"""Metadata templates used by the MP, MPC and VEO control commands.

A template directory holds one ``<name>.txt`` file per template:

- line 1: ``<semanticId>\\t<syntaxId>`` for the metadata package it produces
- rest:   the package content, XML text with substitutions

A substitution is delimited by ``$$``:

- ``$$ date $$``         the current date/time in VERS format
- ``$$ column N $$``     column N of the invoking command line (the keyword
  ``column`` is optional). Column 1 is the command and column 2 the template
  name, so data starts at column 3.
"""

from __future__ import annotations

import logging
import pathlib
import re
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple, Union

from veocreate.core import vers_datetime
from veocreate.errors import ConfigError, VEOError

logger = logging.getLogger(__name__)

_SUBST_RE = re.compile(r"\$\$(.*?)\$\$", re.DOTALL)
_COLUMN_RE = re.compile(r"^(?:column\s+)?(\d+)$", re.IGNORECASE)

# A segment is either literal text or a substitution: ("date", 0) / ("column", n).
Segment = Union[str, Tuple[str, int]]


def parse_body(body: str, *, source: str = "") -> List[Segment]:
    segments: List[Segment] = []
    pos = 0
    for m in _SUBST_RE.finditer(body):
        if m.start() > pos:
            segments.append(body[pos:m.start()])
        spec = m.group(1).strip()
        if spec.lower() == "date":
            segments.append(("date", 0))
        else:
            cm = _COLUMN_RE.match(spec)
            if not cm:
                raise ConfigError(f"Template {source}: invalid substitution '$${m.group(1)}$$'")
            col = int(cm.group(1))
            if col < 1:
                raise ConfigError(f"Template {source}: column numbers start at 1 (got {col})")
            segments.append(("column", col))
        pos = m.end()
    if pos < len(body):
        segments.append(body[pos:])
    return segments


@dataclass(frozen=True)
class Template:
    name: str
    semantic_id: str
    syntax_id: str
    segments: Tuple[Segment, ...]

    @classmethod
    def parse(cls, name: str, text: str) -> "Template":
        first, _, body = text.partition("\n")
        ids = [p.strip() for p in first.rstrip("\r").split("\t") if p.strip()]
        if len(ids) != 2:
            raise ConfigError(
                f"Template '{name}': first line must be '<semanticId><tab><syntaxId>'"
            )
        return cls(
            name=name,
            semantic_id=ids[0],
            syntax_id=ids[1],
            segments=tuple(parse_body(body, source=repr(name))),
        )

    def render(self, columns: Sequence[str]) -> str:
        """Expand the template against the columns of a control-file line."""
        out: List[str] = []
        for seg in self.segments:
            if isinstance(seg, str):
                out.append(seg)
                continue
            kind, n = seg
            if kind == "date":
                out.append(vers_datetime())
            elif n > len(columns):
                raise VEOError(
                    f"Template '{self.name}' substitutes column {n} but the command only has {len(columns)} columns"
                )
            else:
                out.append(columns[n - 1])
        return "".join(out)


class TemplateLibrary:
    """All templates found in a template directory, keyed by name."""

    def __init__(self, directory: Union[str, pathlib.Path], encoding: str = "utf-8"):
        self.directory = pathlib.Path(directory)
        if not self.directory.is_dir():
            raise ConfigError(f"Template directory '{self.directory}' does not exist or is not a directory")
        self._templates: Dict[str, Template] = {}
        for p in sorted(self.directory.glob("*.txt")):
            if not p.is_file():
                continue
            try:
                text = p.read_text(encoding=encoding)
            except (OSError, UnicodeDecodeError) as ex:
                raise ConfigError(f"Failed to read template '{p}': {ex}") from ex
            self._templates[p.stem.lower()] = Template.parse(p.stem, text)
        logger.info("Loaded %d templates from %s", len(self._templates), self.directory)

    def __len__(self) -> int:
        return len(self._templates)

    def __contains__(self, name: str) -> bool:
        return str(name).strip().lower() in self._templates

    def find(self, name: str) -> Template:
        key = str(name or "").strip().lower()
        if key.endswith(".txt"):
            key = key[:-4]
        try:
            return self._templates[key]
        except KeyError:
            raise VEOError(f"Template '{name}' not found in {self.directory}") from None
