"""Metadata packages attached to Information Objects.

All package flavours converge on one ``MetadataPackage`` shape:

    {kind, semantic_id, resource_id, namespaces} + a MarkupElementStack

- ``XML``: generic XML package; content is written as-is.
- ``RDF``: the content is wrapped in ``rdf:RDF`` / ``rdf:Description`` with
  ``rdf:about`` set to the resource id. AGLS and ANZS-5478 are fixed profiles
  of RDF (well-known semantic id + namespace declarations).
- Template packages take the semantic and syntax ids from the template; their
  content is the rendered template and is not wrapped.

A package is *open* (accepting ME/SME/EME/MPC) until it is closed. Closing
commits it; nothing written so far is discarded.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence
from urllib.parse import urlparse

from veocreate.core import xml_escape
from veocreate.errors import VEOError
from veocreate.markup import MarkupElementStack


RDF_NAMESPACE = "http://www.w3.org/1999/02/22-rdf-syntax-ns#"
RDF_SYNTAX_ID = "http://www.w3.org/1999/02/22-rdf-syntax-ns"
XML_SYNTAX_ID = "http://www.w3.org/TR/2008/REC-xml-20081126"


class MetadataKind(Enum):
    XML = "xml"
    RDF = "rdf"

    @property
    def syntax_id(self) -> str:
        return RDF_SYNTAX_ID if self is MetadataKind.RDF else XML_SYNTAX_ID

    @classmethod
    def from_syntax_id(cls, syntax_id: str) -> "MetadataKind":
        sid = str(syntax_id or "").strip().rstrip("#")
        return cls.RDF if sid == RDF_SYNTAX_ID else cls.XML


@dataclass(frozen=True)
class MetadataProfile:
    """A fixed RDF vocabulary (semantic id + namespace declarations)."""
    name: str
    semantic_id: str
    namespaces: str


AGLS = MetadataProfile(
    name="AGLS",
    semantic_id="http://www.vic.gov.au/blog/wp-content/uploads/2013/11/AGLS-Victoria-2011-V4-Final-2011.pdf",
    namespaces=(
        'xmlns:dcterms="http://purl.org/dc/terms/"\n'
        '    xmlns:aglsterms="http://www.agls.gov.au/agls/terms/"\n'
        '    xmlns:versterms="http://www.prov.vic.gov.au/vers/terms"'
    ),
)

ANZS5478 = MetadataProfile(
    name="ANZS5478",
    semantic_id="http://www.prov.vic.gov.au/vers/schema/ANZS5478",
    namespaces='xmlns:anzs5478="http://www.prov.vic.gov.au/vers/ANZS5478"',
)


def check_resource_id(resource_id: str) -> str:
    rid = str(resource_id or "").strip()
    if not rid or not urlparse(rid).scheme:
        raise VEOError(f"Resource id '{resource_id}' is not a valid URL")
    return rid


@dataclass
class MetadataPackage:
    kind: MetadataKind
    semantic_id: str
    resource_id: Optional[str] = None
    namespaces: Optional[str] = None
    syntax_id: str = ""
    elements: MarkupElementStack = field(default_factory=MarkupElementStack)
    closed: bool = False

    def __post_init__(self) -> None:
        if not self.semantic_id or not str(self.semantic_id).strip():
            raise VEOError("Metadata package requires a semantic id")
        if not self.syntax_id:
            self.syntax_id = self.kind.syntax_id

    # -- constructors ------------------------------------------------------

    @classmethod
    def xml(cls, semantic_id: str) -> "MetadataPackage":
        return cls(kind=MetadataKind.XML, semantic_id=semantic_id, elements=MarkupElementStack(base_depth=3))

    @classmethod
    def rdf(cls, semantic_id: str, resource_id: str, namespaces: Optional[str] = None) -> "MetadataPackage":
        return cls(
            kind=MetadataKind.RDF,
            semantic_id=semantic_id,
            resource_id=check_resource_id(resource_id),
            namespaces=(namespaces or "").strip() or None,
            elements=MarkupElementStack(base_depth=5),
        )

    @classmethod
    def from_profile(cls, profile: MetadataProfile, resource_id: str) -> "MetadataPackage":
        return cls.rdf(profile.semantic_id, resource_id, profile.namespaces)

    @classmethod
    def from_template(cls, template, args: Sequence[str]) -> "MetadataPackage":
        mp = cls(
            kind=MetadataKind.from_syntax_id(template.syntax_id),
            semantic_id=template.semantic_id,
            syntax_id=template.syntax_id,
            elements=MarkupElementStack(base_depth=3),
        )
        mp.continue_with(template, args)
        return mp

    # -- mutation ----------------------------------------------------------

    def _check_open(self) -> None:
        if self.closed:
            raise VEOError("Metadata package has already been finished")

    def add_simple_element(self, tag: str, value: Optional[str] = None, attributes: Optional[str] = None) -> None:
        self._check_open()
        self.elements.add_simple(tag, value, attributes)

    def start_complex_element(self, tag: str, attributes: Optional[str] = None) -> None:
        self._check_open()
        self.elements.start_complex(tag, attributes)

    def end_complex_element(self, tag: str) -> None:
        self._check_open()
        self.elements.end_complex(tag)

    def continue_with(self, template, args: Sequence[str]) -> None:
        self._check_open()
        self.elements.append_raw(template.render(args))

    def close(self) -> None:
        self.closed = True

    # -- serialization -----------------------------------------------------

    @property
    def wrapped(self) -> bool:
        return self.kind is MetadataKind.RDF and self.resource_id is not None

    def to_xml(self, indent: str = "    ") -> str:
        lines: List[str] = [
            f"{indent}<vers:MetadataPackage>\n",
            f"{indent}  <vers:MetadataSchemaIdentifier>{xml_escape(self.semantic_id)}</vers:MetadataSchemaIdentifier>\n",
            f"{indent}  <vers:MetadataSyntaxIdentifier>{xml_escape(self.syntax_id)}</vers:MetadataSyntaxIdentifier>\n",
        ]
        if self.wrapped:
            ns = f'xmlns:rdf="{RDF_NAMESPACE}"'
            if self.namespaces:
                ns += "\n    " + self.namespaces
            lines.append(f"{indent}  <rdf:RDF {ns}>\n")
            lines.append(f'{indent}    <rdf:Description rdf:about="{xml_escape(self.resource_id)}">\n')
            lines.append(self.elements.text())
            lines.append(f"{indent}    </rdf:Description>\n")
            lines.append(f"{indent}  </rdf:RDF>\n")
        else:
            lines.append(self.elements.text())
        lines.append(f"{indent}</vers:MetadataPackage>\n")
        return "".join(lines)
