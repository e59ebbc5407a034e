import datetime
import os
import pathlib
import sys
from typing import Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import BestAvailableEncryption, pkcs12
from cryptography.x509.oid import NameOID


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import veocreate`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


PFX_PASSWORD = "Ag0ldenV30"

README_TEXT = "This is a VERS Encapsulated Object (VEO).\n"

XML_SYNTAX = "http://www.w3.org/TR/2008/REC-xml-20081126"

# Template used by MP/MPC lines: columns 3.. are data.
RECORD_TEMPLATE = (
    "http://example.org/schema/record\t" + XML_SYNTAX + "\n"
    "<record>\n"
    "  <title>$$ column 3 $$</title>\n"
    "  <author>$$ 4 $$</author>\n"
    "</record>\n"
)

# Template used by VEO shorthand lines: VEO, name, label, template, data...
SHORTHAND_TEMPLATE = (
    "http://example.org/schema/shorthand\t" + XML_SYNTAX + "\n"
    "<summary>$$ column 5 $$</summary>\n"
)


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless VEOCREATE_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('VEOCREATE_RUN_SLOW')
    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set VEOCREATE_RUN_SLOW=1 to enable'))


def make_pfx(path: pathlib.Path, password: str = PFX_PASSWORD, *, key=None, cn: str = "Test Signer") -> pathlib.Path:
    """Write a PKCS#12 file holding ``key`` and a self-signed certificate for it."""
    if key is None:
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, cn),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Public Record Office Victoria"),
    ])
    now = datetime.datetime.now(datetime.timezone.utc)
    algorithm: Optional[hashes.HashAlgorithm] = None if isinstance(key, Ed25519PrivateKey) else hashes.SHA256()
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=365))
        .sign(key, algorithm)
    )
    data = pkcs12.serialize_key_and_certificates(
        b"signer", key, cert, None, BestAvailableEncryption(password.encode("utf-8"))
    )
    path.write_bytes(data)
    return path


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def pfx_file(tmp_path_factory, rsa_key) -> pathlib.Path:
    return make_pfx(tmp_path_factory.mktemp("pfx") / "signer.pfx", key=rsa_key)


@pytest.fixture(scope="session")
def second_pfx_file(tmp_path_factory) -> pathlib.Path:
    key = ec.generate_private_key(ec.SECP256R1())
    return make_pfx(tmp_path_factory.mktemp("pfx2") / "second.pfx", key=key, cn="Second Signer")


@pytest.fixture
def signer(pfx_file):
    from veocreate.signer import PFXSigner

    return PFXSigner.from_file(pfx_file, PFX_PASSWORD)


@pytest.fixture
def support_dir(tmp_path: pathlib.Path) -> pathlib.Path:
    d = tmp_path / "support"
    d.mkdir()
    (d / "VEOReadme.txt").write_text(README_TEXT, encoding="utf-8")
    return d


@pytest.fixture
def template_dir(tmp_path: pathlib.Path) -> pathlib.Path:
    d = tmp_path / "templates"
    d.mkdir()
    (d / "record.txt").write_text(RECORD_TEMPLATE, encoding="utf-8")
    (d / "shorthand.txt").write_text(SHORTHAND_TEMPLATE, encoding="utf-8")
    return d


@pytest.fixture
def output_dir(tmp_path: pathlib.Path) -> pathlib.Path:
    d = tmp_path / "out"
    d.mkdir()
    return d


@pytest.fixture
def control_dir(tmp_path: pathlib.Path) -> pathlib.Path:
    """Directory holding control files and content (``report.txt``, ``S-37-6/``)."""
    d = tmp_path / "control"
    d.mkdir()
    (d / "report.txt").write_text("quarterly report\n", encoding="utf-8")
    (d / "image.png").write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x00" * 64)
    sub = d / "S-37-6"
    sub.mkdir()
    (sub / "minutes.txt").write_text("minutes of the meeting\n", encoding="utf-8")
    (sub / "agenda.txt").write_text("agenda\n", encoding="utf-8")
    return d
