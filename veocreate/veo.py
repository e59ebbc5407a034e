"""In-memory VEO document and the finalization pipeline.

A ``VEODocument`` collects, for one VEO:

- a tree of Information Objects, each with Metadata Packages and Information
  Pieces (``InformationObjectTree``)
- an ordered event log
- a ``ContentRegistry`` of the content files referenced by Information Pieces

and turns them into a sealed container:

1. ``finish_files``  hash content, write VEOContent.xml and VEOHistory.xml
2. ``sign``          one VEOContentSignatureN.xml + VEOHistorySignatureN.xml
                     pair per signer (N = 1, 2, ...)
3. ``finalise``      write ``<name>.veo.zip`` with entries under ``<name>.veo/``;
                     content files are streamed from their source location.
                     With ``zip_it=False`` the ``<name>.veo`` directory is left
                     on disk instead (content files copied in).

Output for a VEO lives in a staging directory ``<output>/<name>.veo`` from the
moment the document is created. ``abandon`` removes the staging directory and
any partial ZIP unless debug retention is requested.
"""

from __future__ import annotations

import logging
import pathlib
import shutil
import weakref
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Sequence

from lxml import etree

from veocreate.content import ContentFile, ContentRegistry, FileResolver
from veocreate.core import (
    DEFAULT_HASH_ALGORITHM,
    VERS_NAMESPACE,
    VERS_VERSION,
    normalize_hash_algorithm,
    xml_escape,
)
from veocreate.errors import VEOError, VEOFatal
from veocreate.metadata import RDF_NAMESPACE, MetadataPackage
from veocreate.signer import Signer, signature_block

logger = logging.getLogger(__name__)

CONTENT_FILE = "VEOContent.xml"
HISTORY_FILE = "VEOHistory.xml"
README_FILE = "VEOReadme.txt"

# Fixed ZIP entry metadata so that identical inputs give identical entries.
_ZIP_DT = (1980, 1, 1, 0, 0, 0)
_ZIP_CHUNK = 1024 * 1024


def content_signature_file(n: int) -> str:
    return f"VEOContentSignature{n}.xml"


def history_signature_file(n: int) -> str:
    return f"VEOHistorySignature{n}.xml"


# ---------------------------------------------------------------------------
# Information Objects
# ---------------------------------------------------------------------------


@dataclass
class InformationPiece:
    label: Optional[str] = None
    content_files: List[ContentFile] = field(default_factory=list)


class InformationObject:
    """A node in the VEO's content hierarchy."""

    def __init__(self, label: str, depth: int):
        self.label = label
        self.depth = depth
        self.metadata_packages: List[MetadataPackage] = []
        self.information_pieces: List[InformationPiece] = []
        self.children: List["InformationObject"] = []
        self._parent: Optional[weakref.ReferenceType] = None

    @property
    def parent(self) -> Optional["InformationObject"]:
        return self._parent() if self._parent is not None else None

    def add_child(self, child: "InformationObject") -> None:
        child._parent = weakref.ref(self)
        self.children.append(child)

    def __repr__(self) -> str:
        return f"InformationObject(label={self.label!r}, depth={self.depth})"


class InformationObjectTree:
    """Information Objects built incrementally from (label, depth) pairs.

    An object of depth d > 0 becomes a child of the most recently added object
    of depth d - 1. Depth 0 always starts a new root-level object. When no
    object of depth d - 1 has been added yet, the object is placed at the root
    level.
    """

    def __init__(self) -> None:
        self.roots: List[InformationObject] = []
        self._last_at_depth: Dict[int, InformationObject] = {}
        self._current: Optional[InformationObject] = None
        self._count = 0

    @property
    def current(self) -> Optional[InformationObject]:
        return self._current

    def __len__(self) -> int:
        return self._count

    def add(self, label: str, depth: int) -> InformationObject:
        if isinstance(depth, bool) or not isinstance(depth, int) or depth < 0:
            raise VEOError(f"Information Object depth must be zero or a positive integer (got {depth!r})")
        io = InformationObject(label, depth)
        parent = self._last_at_depth.get(depth - 1) if depth > 0 else None
        if parent is None:
            self.roots.append(io)
        else:
            parent.add_child(io)
        self._last_at_depth[depth] = io
        self._current = io
        self._count += 1
        return io

    def walk(self) -> Iterator[InformationObject]:
        """Depth-first, in insertion order."""
        stack = list(reversed(self.roots))
        while stack:
            io = stack.pop()
            yield io
            stack.extend(reversed(io.children))


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass
class Event:
    timestamp: str
    event_type: str
    initiator: str
    descriptions: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def _vers(tag: str) -> str:
    return f"{{{VERS_NAMESPACE}}}{tag}"


def render_history(events: Sequence[Event]) -> bytes:
    root = etree.Element(_vers("VEOHistory"), nsmap={"vers": VERS_NAMESPACE})
    etree.SubElement(root, _vers("Version")).text = VERS_VERSION
    for ev in events:
        e = etree.SubElement(root, _vers("Event"))
        etree.SubElement(e, _vers("EventDateTime")).text = ev.timestamp
        etree.SubElement(e, _vers("EventType")).text = ev.event_type
        etree.SubElement(e, _vers("Initiator")).text = ev.initiator
        for d in ev.descriptions:
            etree.SubElement(e, _vers("Description")).text = d
        for err in ev.errors:
            etree.SubElement(e, _vers("Error")).text = err
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8", standalone=True, pretty_print=True)


# ---------------------------------------------------------------------------
# VEO document
# ---------------------------------------------------------------------------


def check_veo_name(name: str) -> str:
    n = str(name or "").strip()
    if n.lower().endswith(".veo.zip"):
        n = n[: -len(".veo.zip")]
    elif n.lower().endswith(".veo"):
        n = n[: -len(".veo")]
    if not n or n in (".", "..") or "/" in n or "\\" in n or "\0" in n:
        raise VEOError(f"Invalid VEO name '{name}'")
    return n


class VEODocument:
    def __init__(
        self,
        output_dir: pathlib.Path,
        name: str,
        *,
        hash_algorithm: str = DEFAULT_HASH_ALGORITHM,
        resolver: Optional[FileResolver] = None,
        debug: bool = False,
        hash_workers: int = 1,
    ):
        self.name = check_veo_name(name)
        self.hash_algorithm = normalize_hash_algorithm(hash_algorithm)
        self.output_dir = pathlib.Path(output_dir)
        self.debug = debug
        self.hash_workers = hash_workers
        self.tree = InformationObjectTree()
        self.events: List[Event] = []
        self.content = ContentRegistry(resolver or FileResolver(pathlib.Path.cwd()))
        self.finalized = False
        self.abandoned = False

        self._open_package: Optional[MetadataPackage] = None
        self._current_piece: Optional[InformationPiece] = None
        self._files_finished = False
        self._signed_by = 0
        self._content_xml: Optional[bytes] = None
        self._history_xml: Optional[bytes] = None

        if not self.output_dir.is_dir():
            raise VEOFatal(f"Output directory '{self.output_dir}' does not exist or is not a directory")
        self.veo_dir = self.output_dir / f"{self.name}.veo"
        self.zip_path = self.output_dir / f"{self.name}.veo.zip"
        if self.veo_dir.exists():
            logger.warning("Replacing existing VEO directory %s", self.veo_dir)
            shutil.rmtree(self.veo_dir)
        try:
            self.veo_dir.mkdir()
        except OSError as ex:
            raise VEOError(f"Failed to create VEO directory {self.veo_dir}: {ex}") from ex

    def __enter__(self) -> "VEODocument":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None and not self.finalized:
            self.abandon(self.debug)

    def __repr__(self) -> str:
        return f"VEODocument(name={self.name!r}, objects={len(self.tree)}, events={len(self.events)})"

    # -- construction ------------------------------------------------------

    def _check_building(self) -> None:
        if self.finalized or self.abandoned or self._files_finished:
            raise VEOError(f"VEO '{self.name}' can no longer be modified")

    def add_readme(self, support_dir: pathlib.Path) -> None:
        """Seed the VEO with the standard VEOReadme.txt from the support directory."""
        self._check_building()
        src = pathlib.Path(support_dir) / README_FILE
        if not src.is_file():
            raise VEOFatal(f"Support directory '{support_dir}' does not contain {README_FILE}")
        try:
            shutil.copyfile(src, self.veo_dir / README_FILE)
        except OSError as ex:
            raise VEOError(f"Failed to copy {src} into the VEO: {ex}") from ex

    def register_content_directory(self, ref: str) -> pathlib.Path:
        self._check_building()
        return self.content.register_directory(ref)

    def _close_package(self) -> None:
        if self._open_package is not None:
            self._open_package.close()
            self._open_package = None

    @property
    def current_information_object(self) -> Optional[InformationObject]:
        return self.tree.current

    @property
    def open_package(self) -> Optional[MetadataPackage]:
        return self._open_package

    def add_information_object(self, label: str, depth: int = 0) -> InformationObject:
        self._check_building()
        self._close_package()
        self._current_piece = None
        return self.tree.add(label, depth)

    def add_metadata_package(self, package: MetadataPackage) -> MetadataPackage:
        """Attach a new package to the current Information Object and open it."""
        self._check_building()
        io = self.tree.current
        if io is None:
            raise VEOError("Metadata package must be inside an Information Object (missing IO command)")
        if io.information_pieces:
            raise VEOError(
                f"Metadata packages must come before Information Pieces in Information Object '{io.label}'"
            )
        self._close_package()
        io.metadata_packages.append(package)
        self._open_package = package
        return package

    def _package(self) -> MetadataPackage:
        self._check_building()
        if self._open_package is None:
            raise VEOError("No metadata package is open (missing MP, XML-MP, RDF-MP, AGLS-MP or ANZS5478-MP command)")
        return self._open_package

    def add_simple_element(self, tag: str, value: Optional[str] = None, attributes: Optional[str] = None) -> None:
        self._package().add_simple_element(tag, value, attributes)

    def start_complex_element(self, tag: str, attributes: Optional[str] = None) -> None:
        self._package().start_complex_element(tag, attributes)

    def end_complex_element(self, tag: str) -> None:
        self._package().end_complex_element(tag)

    def continue_metadata_package(self, template, args: Sequence[str]) -> None:
        self._package().continue_with(template, args)

    def add_information_piece(self, label: Optional[str] = None) -> InformationPiece:
        self._check_building()
        io = self.tree.current
        if io is None:
            raise VEOError("Information Piece must be inside an Information Object (missing IO command)")
        self._close_package()
        ip = InformationPiece(label=label)
        io.information_pieces.append(ip)
        self._current_piece = ip
        return ip

    def add_content_file(self, ref: str) -> ContentFile:
        self._check_building()
        if self._current_piece is None:
            raise VEOError("Content file must be inside an Information Piece")
        cf = self.content.add(ref)
        self._current_piece.content_files.append(cf)
        return cf

    def add_event(
        self,
        timestamp: str,
        event_type: str,
        initiator: str,
        descriptions: Sequence[str],
        errors: Sequence[str] = (),
    ) -> Event:
        self._check_building()
        ev = Event(
            timestamp=timestamp,
            event_type=event_type,
            initiator=initiator,
            descriptions=list(descriptions),
            errors=list(errors),
        )
        self.events.append(ev)
        return ev

    # -- serialization -----------------------------------------------------

    def render_content(self) -> bytes:
        """VEOContent.xml. Content files must have been hashed."""
        out: List[str] = [
            '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n',
            f'<vers:VEO xmlns:vers="{VERS_NAMESPACE}" xmlns:rdf="{RDF_NAMESPACE}">\n',
            f"  <vers:Version>{VERS_VERSION}</vers:Version>\n",
            f"  <vers:HashFunctionAlgorithm>{self.hash_algorithm}</vers:HashFunctionAlgorithm>\n",
        ]
        for io in self.tree.walk():
            out.append("  <vers:InformationObject>\n")
            out.append(f"    <vers:InformationObjectType>{xml_escape(io.label)}</vers:InformationObjectType>\n")
            out.append(f"    <vers:InformationObjectDepth>{io.depth}</vers:InformationObjectDepth>\n")
            for mp in io.metadata_packages:
                out.append(mp.to_xml(indent="    "))
            for ip in io.information_pieces:
                out.append("    <vers:InformationPiece>\n")
                if ip.label:
                    out.append(f"      <vers:Label>{xml_escape(ip.label)}</vers:Label>\n")
                for cf in ip.content_files:
                    out.append("      <vers:ContentFile>\n")
                    out.append(f"        <vers:PathName>{xml_escape(cf.veo_path)}</vers:PathName>\n")
                    out.append(f"        <vers:HashValue>{cf.digest_b64}</vers:HashValue>\n")
                    out.append("      </vers:ContentFile>\n")
                out.append("    </vers:InformationPiece>\n")
            out.append("  </vers:InformationObject>\n")
        out.append("</vers:VEO>\n")
        return "".join(out).encode("utf-8")

    # -- finalization ------------------------------------------------------

    def finish_files(self) -> None:
        """Close the open package, hash content and write the manifest and history."""
        if self.finalized or self.abandoned:
            raise VEOError(f"VEO '{self.name}' has already been finalised or abandoned")
        if self._files_finished:
            return
        self._close_package()
        self.content.hash_all(self.hash_algorithm, workers=self.hash_workers)
        self._content_xml = self.render_content()
        self._history_xml = render_history(self.events)
        try:
            (self.veo_dir / CONTENT_FILE).write_bytes(self._content_xml)
            (self.veo_dir / HISTORY_FILE).write_bytes(self._history_xml)
        except OSError as ex:
            raise VEOError(f"Failed to write VEO files in {self.veo_dir}: {ex}") from ex
        self._files_finished = True

    def sign(self, signer: Signer, *, when: Optional[datetime] = None) -> int:
        """Add one signature pair. Returns the signature number used."""
        if not self._files_finished or self._content_xml is None or self._history_xml is None:
            raise VEOError("VEO files must be finished before signing")
        if self.finalized:
            raise VEOError(f"VEO '{self.name}' has already been finalised")
        n = self._signed_by + 1
        content_sig = signature_block(signer, self._content_xml, self.hash_algorithm, when=when)
        history_sig = signature_block(signer, self._history_xml, self.hash_algorithm, when=when)
        try:
            (self.veo_dir / content_signature_file(n)).write_bytes(content_sig)
            (self.veo_dir / history_signature_file(n)).write_bytes(history_sig)
        except OSError as ex:
            raise VEOError(f"Failed to write signature files in {self.veo_dir}: {ex}") from ex
        self._signed_by = n
        logger.debug("Signed VEO '%s' with '%s' (%d)", self.name, signer.name, n)
        return n

    def sign_all(self, signers: Sequence[Signer]) -> None:
        for s in signers:
            logger.debug("Signing '%s' with '%s' using %s", self.name, s.name, self.hash_algorithm)
            self.sign(s)

    @property
    def signature_count(self) -> int:
        return self._signed_by

    def _generated_files(self) -> List[str]:
        names = [CONTENT_FILE, HISTORY_FILE]
        for n in range(1, self._signed_by + 1):
            names.append(content_signature_file(n))
            names.append(history_signature_file(n))
        if (self.veo_dir / README_FILE).is_file():
            names.append(README_FILE)
        return names

    def finalise(self, zip_it: bool = True) -> pathlib.Path:
        """Seal the VEO. Returns the ZIP path, or the VEO directory if not zipping."""
        if not self._files_finished:
            raise VEOError("VEO files must be finished before finalising")
        if self._signed_by == 0:
            raise VEOError(f"VEO '{self.name}' has not been signed")
        if self.finalized:
            return self.zip_path if zip_it else self.veo_dir

        if not zip_it:
            for cf in self.content.files:
                dest = self.veo_dir / cf.veo_path
                try:
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copyfile(cf.source, dest)
                except OSError as ex:
                    raise VEOError(f"Failed to copy content file {cf.source}: {ex}") from ex
            self.finalized = True
            logger.info("Finalised VEO directory %s", self.veo_dir)
            return self.veo_dir

        partial = self.zip_path.with_name(self.zip_path.name + ".partial")
        prefix = f"{self.name}.veo/"
        try:
            with zipfile.ZipFile(partial, "w") as zf:
                for fname in self._generated_files():
                    _write_entry(zf, prefix + fname, self.veo_dir / fname)
                for cf in self.content.files:
                    _write_entry(zf, prefix + cf.veo_path, cf.source)
            partial.replace(self.zip_path)
        except OSError as ex:
            partial.unlink(missing_ok=True)
            raise VEOError(f"Failed to write VEO {self.zip_path}: {ex}") from ex

        self.finalized = True
        if not self.debug:
            shutil.rmtree(self.veo_dir, ignore_errors=True)
        logger.info("Sealed VEO %s", self.zip_path)
        return self.zip_path

    def abandon(self, debug: Optional[bool] = None) -> None:
        """Discard this VEO's output unless it is kept for debugging."""
        keep = self.debug if debug is None else debug
        self.abandoned = True
        self._open_package = None
        if keep:
            logger.info("Abandoned VEO '%s'; output kept in %s", self.name, self.veo_dir)
            return
        shutil.rmtree(self.veo_dir, ignore_errors=True)
        self.zip_path.with_name(self.zip_path.name + ".partial").unlink(missing_ok=True)
        logger.debug("Abandoned VEO '%s'", self.name)


def _write_entry(zf: zipfile.ZipFile, arcname: str, source: pathlib.Path) -> None:
    zi = zipfile.ZipInfo(arcname, date_time=_ZIP_DT)
    zi.compress_type = zipfile.ZIP_DEFLATED
    zi.create_system = 0
    zi.external_attr = (0o644 << 16)
    zi.file_size = source.stat().st_size
    with open(source, "rb") as src, zf.open(zi, "w") as dst:
        shutil.copyfileobj(src, dst, _ZIP_CHUNK)
