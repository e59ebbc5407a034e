"""Core primitives shared by the VEO construction modules.

- hash algorithm names (``SHA-256`` style) mapped onto ``hashlib``
- streaming file digests and base64 encoding used in VEO manifests
- VERS date/time formatting
- XML text escaping for values supplied on the control file

Design principles:
- Pure functions where possible
- No global mutable state
"""

from __future__ import annotations

import base64
import hashlib
import os
import pathlib
from datetime import datetime, timezone
from typing import Dict, Optional

from veocreate.errors import ConfigError


VERS_NAMESPACE = "http://www.prov.vic.gov.au/VERS"
VERS_VERSION = "3.0"

DEFAULT_HASH_ALGORITHM = "SHA-256"

# Digest names accepted on the command line and in the control file.
_HASH_ALGORITHMS: Dict[str, str] = {
    "SHA-1": "sha1",
    "SHA1": "sha1",
    "SHA-256": "sha256",
    "SHA256": "sha256",
    "SHA-384": "sha384",
    "SHA384": "sha384",
    "SHA-512": "sha512",
    "SHA512": "sha512",
}

_CANONICAL_NAMES: Dict[str, str] = {
    "sha1": "SHA-1",
    "sha256": "SHA-256",
    "sha384": "SHA-384",
    "sha512": "SHA-512",
}

_CHUNK = 1024 * 1024


def normalize_hash_algorithm(name: str) -> str:
    """Return the canonical VERS name (e.g. ``SHA-256``) for a hash algorithm.

    Raises ConfigError for unsupported algorithms; the hash algorithm applies to
    every VEO in a run, so an invalid one can never produce a valid VEO.
    """
    key = str(name or "").strip().upper()
    if key not in _HASH_ALGORITHMS:
        raise ConfigError(
            f"Unsupported hash algorithm '{name}' (supported: SHA-1, SHA-256, SHA-384, SHA-512)"
        )
    return _CANONICAL_NAMES[_HASH_ALGORITHMS[key]]


def hashlib_name(algorithm: str) -> str:
    return _HASH_ALGORITHMS[normalize_hash_algorithm(algorithm).upper()]


def new_hash(algorithm: str):
    return hashlib.new(hashlib_name(algorithm))


def digest_bytes(data: bytes, algorithm: str) -> bytes:
    h = new_hash(algorithm)
    h.update(data)
    return h.digest()


def digest_file(path: pathlib.Path, algorithm: str) -> bytes:
    """Digest a file's contents without reading it into memory at once."""
    h = new_hash(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            h.update(chunk)
    return h.digest()


def b64encode(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")


def vers_datetime(when: Optional[datetime] = None) -> str:
    """Timestamp in VERS format: ``YYYY-MM-DDThh:mm:ss+hh:mm``.

    For reproducible builds set ``SOURCE_DATE_EPOCH`` (seconds since the Unix
    epoch); the timestamp is then rendered in UTC.
    """
    if when is None:
        sde = os.environ.get("SOURCE_DATE_EPOCH")
        if sde is not None and str(sde).strip() != "":
            try:
                epoch = int(str(sde).strip(), 10)
            except ValueError as ex:
                raise ConfigError("SOURCE_DATE_EPOCH must be an integer (seconds)") from ex
            when = datetime.fromtimestamp(epoch, tz=timezone.utc)
        else:
            when = datetime.now(timezone.utc).astimezone()
    elif when.tzinfo is None:
        when = when.astimezone()
    return when.replace(microsecond=0).isoformat()


def xml_escape(value: str) -> str:
    """Escape the XML-unsafe characters in element text."""
    return (
        str(value)
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )
