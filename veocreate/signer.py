"""Signers and VERS signature blocks.

A signer is a credential (private key + certificate chain) that signs the
bytes of VEOContent.xml and VEOHistory.xml. The engine only needs:

- ``name``: the signer identity written into the signature block
- ``sign(data, hash_algorithm)``: raw signature bytes
- ``signature_algorithm(hash_algorithm)``: the OID naming the algorithm
- ``certificate_chain``: DER certificates embedded for verification

``PFXSigner`` loads the credential from a PKCS#12 (PFX) file using
``cryptography``. RSA (PKCS#1 v1.5), EC (ECDSA) and Ed25519 keys are
supported. Signatures are computed per document and per signer; nothing is
signed over a concatenation of documents.
"""

from __future__ import annotations

import abc
import logging
import pathlib
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple, Union

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import pkcs12
from lxml import etree

from veocreate.core import VERS_NAMESPACE, VERS_VERSION, b64encode, normalize_hash_algorithm, vers_datetime
from veocreate.errors import VEOError

logger = logging.getLogger(__name__)


_HASHES = {
    "SHA-1": hashes.SHA1,
    "SHA-256": hashes.SHA256,
    "SHA-384": hashes.SHA384,
    "SHA-512": hashes.SHA512,
}

# (key family, hash) -> signature algorithm OID
_SIGNATURE_OIDS: Dict[Tuple[str, str], str] = {
    ("rsa", "SHA-1"): "1.2.840.113549.1.1.5",
    ("rsa", "SHA-256"): "1.2.840.113549.1.1.11",
    ("rsa", "SHA-384"): "1.2.840.113549.1.1.12",
    ("rsa", "SHA-512"): "1.2.840.113549.1.1.13",
    ("ec", "SHA-1"): "1.2.840.10045.4.1",
    ("ec", "SHA-256"): "1.2.840.10045.4.3.2",
    ("ec", "SHA-384"): "1.2.840.10045.4.3.3",
    ("ec", "SHA-512"): "1.2.840.10045.4.3.4",
}
_ED25519_OID = "1.3.101.112"


def _hash(hash_algorithm: str) -> hashes.HashAlgorithm:
    return _HASHES[normalize_hash_algorithm(hash_algorithm)]()


class Signer(abc.ABC):
    """Capability to sign a byte stream."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        ...

    @property
    def certificate_chain(self) -> List[bytes]:
        return []

    @abc.abstractmethod
    def signature_algorithm(self, hash_algorithm: str) -> str:
        ...

    @abc.abstractmethod
    def sign(self, data: bytes, hash_algorithm: str) -> bytes:
        ...


class PFXSigner(Signer):
    def __init__(
        self,
        private_key,
        certificates: Sequence[x509.Certificate],
        *,
        source: Optional[pathlib.Path] = None,
    ):
        if not isinstance(private_key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey, Ed25519PrivateKey)):
            raise VEOError(f"Unsupported signing key type: {type(private_key).__name__}")
        self._key = private_key
        self._certs = list(certificates)
        self.source = source

    @classmethod
    def from_bytes(cls, data: bytes, password: Optional[str], *, source: Optional[pathlib.Path] = None) -> "PFXSigner":
        pw = password.encode("utf-8") if password else None
        try:
            key, cert, extra = pkcs12.load_key_and_certificates(data, pw)
        except (ValueError, TypeError, UnsupportedAlgorithm) as ex:
            raise VEOError(f"Failed to open PFX file {source or ''}: {ex}") from ex
        if key is None:
            raise VEOError(f"PFX file {source or ''} does not contain a private key")
        certs = ([cert] if cert is not None else []) + list(extra or [])
        return cls(key, certs, source=source)

    @classmethod
    def from_file(cls, path: Union[str, pathlib.Path], password: Optional[str]) -> "PFXSigner":
        p = pathlib.Path(path)
        try:
            data = p.read_bytes()
        except OSError as ex:
            raise VEOError(f"Failed to read PFX file {p}: {ex}") from ex
        signer = cls.from_bytes(data, password, source=p)
        logger.info("Loaded signer '%s' from %s", signer.name, p)
        return signer

    @property
    def name(self) -> str:
        if self._certs:
            return self._certs[0].subject.rfc4514_string()
        return self.source.name if self.source is not None else "unknown signer"

    @property
    def certificate_chain(self) -> List[bytes]:
        return [c.public_bytes(serialization.Encoding.DER) for c in self._certs]

    @property
    def key_family(self) -> str:
        if isinstance(self._key, rsa.RSAPrivateKey):
            return "rsa"
        if isinstance(self._key, ec.EllipticCurvePrivateKey):
            return "ec"
        return "ed25519"

    def signature_algorithm(self, hash_algorithm: str) -> str:
        if self.key_family == "ed25519":
            return _ED25519_OID
        return _SIGNATURE_OIDS[(self.key_family, normalize_hash_algorithm(hash_algorithm))]

    def sign(self, data: bytes, hash_algorithm: str) -> bytes:
        try:
            if isinstance(self._key, rsa.RSAPrivateKey):
                return self._key.sign(data, padding.PKCS1v15(), _hash(hash_algorithm))
            if isinstance(self._key, ec.EllipticCurvePrivateKey):
                return self._key.sign(data, ec.ECDSA(_hash(hash_algorithm)))
            return self._key.sign(data)
        except (ValueError, TypeError, UnsupportedAlgorithm) as ex:
            raise VEOError(f"Signing with '{self.name}' failed: {ex}") from ex

    def __repr__(self) -> str:
        return f"PFXSigner(name={self.name!r}, source={str(self.source) if self.source else None!r})"


def _vers(tag: str) -> str:
    return f"{{{VERS_NAMESPACE}}}{tag}"


def signature_block(
    signer: Signer,
    data: bytes,
    hash_algorithm: str,
    *,
    when: Optional[datetime] = None,
) -> bytes:
    """Sign ``data`` and return the VERS signature block XML document."""

    signature = signer.sign(data, hash_algorithm)

    root = etree.Element(_vers("SignatureBlock"), nsmap={"vers": VERS_NAMESPACE})
    etree.SubElement(root, _vers("Version")).text = VERS_VERSION
    etree.SubElement(root, _vers("SignatureDateTime")).text = vers_datetime(when)
    etree.SubElement(root, _vers("Signer")).text = signer.name
    etree.SubElement(root, _vers("SignatureAlgorithm")).text = signer.signature_algorithm(hash_algorithm)
    etree.SubElement(root, _vers("Signature")).text = b64encode(signature)
    chain = etree.SubElement(root, _vers("CertificateChain"))
    for der in signer.certificate_chain:
        etree.SubElement(chain, _vers("Certificate")).text = b64encode(der)

    return etree.tostring(root, xml_declaration=True, encoding="UTF-8", standalone=True, pretty_print=True)
