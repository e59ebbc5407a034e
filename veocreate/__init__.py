"""
veocreate: VERS V3 VEO construction

Builds VERS Encapsulated Objects (VEOs) from a tab-separated control file:
a content manifest, a history log, per-signer detached signatures and the
referenced content files, sealed into one ``<name>.veo.zip`` per VEO.

Architecture
────────────

    control file ──► commands.py     tokenize lines into Commands
                     interpreter.py  Session state machine, failure isolation
                          │
                          ▼
                     veo.py          VEODocument: IO tree, events, pipeline
                       ├── metadata.py / markup.py / templates.py
                       ├── content.py   references, AC directories, hashing
                       └── signer.py    PKCS#12 signers, signature blocks
                          │
                          ▼
                     <name>.veo.zip

    Ambient: errors.py, config.py, observability.py, cli.py
"""

__version__ = "3.0.0"

from veocreate.errors import ConfigError, VEOError, VEOFatal
from veocreate.interpreter import RunSummary, Session, State, build_veos
from veocreate.metadata import MetadataPackage
from veocreate.signer import PFXSigner, Signer
from veocreate.templates import Template, TemplateLibrary
from veocreate.veo import InformationObjectTree, VEODocument

__all__ = [
    "__version__",
    "ConfigError",
    "VEOError",
    "VEOFatal",
    "RunSummary",
    "Session",
    "State",
    "build_veos",
    "MetadataPackage",
    "PFXSigner",
    "Signer",
    "Template",
    "TemplateLibrary",
    "InformationObjectTree",
    "VEODocument",
]
