"""Control-file tokenizer.

Each line of a control file is one command; fields are separated by tabs and
the literal text ``<tab>`` inside a field stands for a tab character. The
first field names the command (case-insensitive).

``tokenize`` turns a line into a ``Command`` whose ``kind`` is one of the closed
set in ``CommandKind``. Unrecognised command names become
``CommandKind.UNKNOWN`` so the interpreter can report and skip them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, List, Optional, Tuple

TAB_ESCAPE = "<tab>"
ERROR_SEPARATOR = "$$"
END_TOKEN = "end"


class CommandKind(Enum):
    COMMENT = "!"
    HASH = "hash"
    PFX = "pfx"
    BV = "bv"
    AC = "ac"
    IO = "io"
    MP = "mp"
    XML_MP = "xml-mp"
    RDF_MP = "rdf-mp"
    AGLS_MP = "agls-mp"
    ANZS5478_MP = "anzs5478-mp"
    ME = "me"
    SME = "sme"
    EME = "eme"
    MPC = "mpc"
    IP = "ip"
    E = "e"
    VEO = "veo"
    END = "end"
    UNKNOWN = ""

    @property
    def label(self) -> str:
        return self.value.upper() if self.value else "?"

    @classmethod
    def lookup(cls, name: str) -> "CommandKind":
        key = str(name or "").strip().lower()
        if not key:
            return cls.UNKNOWN
        for kind in cls:
            if kind.value == key:
                return kind
        return cls.UNKNOWN


# Commands that may run while a failed VEO is being skipped.
CONTROL_KINDS = frozenset({
    CommandKind.COMMENT,
    CommandKind.HASH,
    CommandKind.PFX,
    CommandKind.BV,
    CommandKind.VEO,
    CommandKind.END,
    CommandKind.UNKNOWN,
})

# Commands that start a new VEO.
VEO_START_KINDS = frozenset({CommandKind.BV, CommandKind.VEO})


@dataclass(frozen=True)
class Command:
    kind: CommandKind
    line: int
    tokens: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def name(self) -> str:
        return self.tokens[0].strip() if self.tokens else ""

    @property
    def args(self) -> Tuple[str, ...]:
        return self.tokens[1:]

    def arg(self, i: int, default: Optional[str] = None) -> Optional[str]:
        """Argument i (0-based, not counting the command itself)."""
        a = self.args
        return a[i] if i < len(a) else default

    def __len__(self) -> int:
        return len(self.tokens)


def tokenize(text: str, line: int) -> Optional[Command]:
    """Split one control-file line. Returns None for blank lines."""
    text = text.rstrip("\r\n")
    if text.strip() == "":
        return None
    tokens = tuple(t.replace(TAB_ESCAPE, "\t") for t in text.split("\t"))
    head = tokens[0].strip()
    if text.strip().lower() == END_TOKEN:
        kind = CommandKind.END
    elif head.startswith("!"):
        kind = CommandKind.COMMENT
        if head != "!":
            # "! text" without a tab: the remainder is the comment
            tokens = ("!", head[1:].strip()) + tokens[1:]
    else:
        kind = CommandKind.lookup(head)
        if kind is CommandKind.END:
            kind = CommandKind.UNKNOWN
    return Command(kind=kind, line=line, tokens=tokens)


def split_on_separator(values: Iterable[str], separator: str = ERROR_SEPARATOR) -> Tuple[List[str], List[str]]:
    """Split at the first token equal to the separator (surrounding blanks ignored)."""
    before: List[str] = []
    after: List[str] = []
    seen = False
    for v in values:
        if not seen and v.strip() == separator:
            seen = True
            continue
        (after if seen else before).append(v)
    return before, after


def read_commands(lines: Iterable[str]) -> Iterator[Command]:
    """Tokenize a control stream, stopping after the ``end`` terminator line."""
    for n, text in enumerate(lines, start=1):
        cmd = tokenize(text, n)
        if cmd is None:
            continue
        yield cmd
        if cmd.kind is CommandKind.END:
            return
