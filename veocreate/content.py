"""Content registry: where content files come from and how they are hashed.

File references on the control file resolve as follows:

- absolute            → as-is
- starting with ``.``  → relative to the current working directory
- anything else       → relative to the directory containing the control file

``AC`` registers content directories. A reference whose first path component
is the name of a registered directory resolves inside that directory and keeps
the reference itself as its path in the VEO (``S-37-6/report.docx``). Any other
reference resolves with the rules above and is placed in the VEO under its
file name.

Content files are never copied while a VEO is built; the registry records the
resolved source path and the sealing step streams the bytes from there.
"""

from __future__ import annotations

import logging
import os
import pathlib
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from veocreate.core import b64encode, digest_file
from veocreate.errors import VEOError

logger = logging.getLogger(__name__)

# Top-level names the VEO writes itself, matched case-insensitively.
_GENERATED_NAME_RE = re.compile(
    r"^(VEOContent\.xml|VEOHistory\.xml|VEOReadme\.txt|VEO(Content|History)Signature\d+\.xml)$",
    re.IGNORECASE,
)


def is_generated_name(veo_path: str) -> bool:
    return "/" not in veo_path and bool(_GENERATED_NAME_RE.match(veo_path))


def normalize_reference(ref: str) -> str:
    """Normalise Windows separators so control files travel between platforms."""
    return str(ref or "").strip().replace("\\", "/")


class FileResolver:
    """Resolve control-file references against the control file's directory."""

    def __init__(self, base_dir: Union[str, pathlib.Path], cwd: Optional[pathlib.Path] = None):
        self.base_dir = pathlib.Path(base_dir).resolve()
        self._cwd = cwd

    @property
    def cwd(self) -> pathlib.Path:
        return self._cwd if self._cwd is not None else pathlib.Path.cwd()

    def candidate(self, ref: str) -> pathlib.Path:
        """Return the (unresolved) path a reference denotes."""
        nref = normalize_reference(ref)
        if not nref:
            raise VEOError("Empty file reference")
        if "\0" in nref:
            raise VEOError(f"Invalid file reference '{ref}'")
        p = pathlib.Path(nref)
        if p.is_absolute():
            return p
        if nref.startswith("."):
            return self.cwd / p
        return self.base_dir / p

    def resolve(self, ref: str) -> pathlib.Path:
        """Return the real path of an existing file or directory."""
        p = self.candidate(ref)
        try:
            return p.resolve(strict=True)
        except (OSError, RuntimeError) as ex:
            raise VEOError(
                f"Invalid file reference '{ref}' ({ex.__class__.__name__}: {ex}); typically this file doesn't exist"
            ) from ex


@dataclass
class ContentFile:
    source: pathlib.Path
    veo_path: str
    digest: Optional[bytes] = None

    @property
    def digest_b64(self) -> str:
        if self.digest is None:
            raise VEOError(f"Content file '{self.veo_path}' has not been hashed")
        return b64encode(self.digest)


class ContentRegistry:
    def __init__(self, resolver: FileResolver):
        self.resolver = resolver
        self._directories: Dict[str, pathlib.Path] = {}
        self._files: Dict[str, ContentFile] = {}

    @property
    def directories(self) -> Dict[str, pathlib.Path]:
        return dict(self._directories)

    @property
    def files(self) -> List[ContentFile]:
        return list(self._files.values())

    def register_directory(self, ref: str) -> pathlib.Path:
        d = self.resolver.resolve(ref)
        if not d.is_dir():
            raise VEOError(f"Content directory '{ref}' ({d}) is not a directory")
        existing = self._directories.get(d.name)
        if existing is not None and existing != d:
            raise VEOError(
                f"Content directory '{ref}' ({d}) has the same name as already registered directory {existing}"
            )
        self._directories[d.name] = d
        logger.debug("Registered content directory %s as '%s'", d, d.name)
        return d

    def _split_registered(self, ref: str):
        parts = [p for p in normalize_reference(ref).split("/") if p not in ("", ".")]
        if len(parts) > 1 and parts[0] in self._directories:
            return self._directories[parts[0]], parts
        return None, parts

    def actual_source_path(self, ref: str) -> pathlib.Path:
        """Where the bytes for a reference live. The file need not exist."""
        root, parts = self._split_registered(ref)
        if root is None:
            return self.resolver.candidate(ref)
        return root.joinpath(*parts[1:])

    def is_content_file(self, ref: str) -> bool:
        """True if ref resolves to an existing regular file. Never raises."""
        try:
            p = self.actual_source_path(ref)
            return p.exists() and p.is_file()
        except (VEOError, OSError, ValueError):
            return False

    def add(self, ref: str) -> ContentFile:
        root, parts = self._split_registered(ref)
        if root is None:
            source = self.resolver.resolve(ref)
            veo_path = source.name
        else:
            try:
                source = root.joinpath(*parts[1:]).resolve(strict=True)
            except (OSError, RuntimeError) as ex:
                raise VEOError(f"Content file '{ref}' does not exist in content directory {root}") from ex
            try:
                source.relative_to(root)
            except ValueError:
                raise VEOError(f"Content file '{ref}' lies outside content directory {root}") from None
            veo_path = "/".join(parts)
        if not source.is_file():
            raise VEOError(f"Content file '{ref}' ({source}) is not a regular file")
        if ".." in veo_path.split("/"):
            raise VEOError(f"Content file '{ref}' has an invalid path in the VEO")
        if is_generated_name(veo_path):
            raise VEOError(f"Content file '{ref}' would replace the VEO's own '{veo_path}'")

        existing = self._files.get(veo_path)
        if existing is not None:
            if existing.source != source:
                raise VEOError(
                    f"Content file '{ref}' ({source}) would overwrite '{veo_path}' already taken from {existing.source}"
                )
            return existing
        cf = ContentFile(source=source, veo_path=veo_path)
        self._files[veo_path] = cf
        logger.debug("Added content file %s as '%s'", source, veo_path)
        return cf

    def hash_all(self, algorithm: str, workers: int = 1) -> None:
        """Compute the digest of every registered content file.

        Files are independent, so with ``workers > 1`` they are hashed on a
        thread pool. Returns only when every digest is available.
        """
        files = [f for f in self._files.values() if f.digest is None]
        if not files:
            return

        def _one(cf: ContentFile) -> bytes:
            try:
                return digest_file(cf.source, algorithm)
            except OSError as ex:
                raise VEOError(f"Failed to hash content file {cf.source}: {ex}") from ex

        if workers <= 1 or len(files) == 1:
            for cf in files:
                cf.digest = _one(cf)
            return

        with ThreadPoolExecutor(max_workers=min(workers, os.cpu_count() or 1, len(files))) as pool:
            for cf, digest in zip(files, pool.map(_one, files)):
                cf.digest = digest
