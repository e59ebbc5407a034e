#!/usr/bin/env python3
"""veocreate: build VERS V3 VEOs from a control file.

Usage:
    veocreate -c control.txt -sf support/ -s signer.pfx password [-t templates/] [-o out/]

Options:

- ``-c``   control file (required)
- ``-sf``  support directory holding VEOReadme.txt (required)
- ``-t``   template directory for MP, MPC and VEO commands
- ``-s``   PKCS#12 file and password of a signer (repeatable)
- ``-o``   output directory (default: current directory)
- ``-ha``  hash algorithm (default: SHA-256)
- ``-e``   control file encoding (default: utf-8)
- ``-v``   verbose, ``-d`` debug (keep staging directories)

Exit status is 0 when the run completes (even if individual VEOs were
abandoned) and 1 when a fatal error stops the run.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Any, Dict, List, Optional

from veocreate import __version__
from veocreate.config import CreateConfig, build_config
from veocreate.errors import ConfigError, VEOError, VEOFatal
from veocreate.interpreter import RunSummary, build_veos
from veocreate.observability import VEOLogger, configure_logging
from veocreate.signer import PFXSigner, Signer
from veocreate.templates import TemplateLibrary

log = VEOLogger("cli")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="veocreate",
        description="Create VERS V3 VEOs from a control file",
    )
    ap.add_argument("-c", dest="control", required=True, help="Control file describing the VEOs to build")
    ap.add_argument("-sf", dest="support_dir", default=None, help="Support directory (must contain VEOReadme.txt)")
    ap.add_argument("-t", dest="template_dir", default=None, help="Template directory for MP, MPC and VEO commands")
    ap.add_argument(
        "-s",
        dest="signers",
        nargs=2,
        action="append",
        default=[],
        metavar=("PFX", "PASSWORD"),
        help="PKCS#12 file and password used to sign (repeatable)",
    )
    ap.add_argument("-o", dest="output_dir", default=None, help="Output directory (default: current directory)")
    ap.add_argument("-ha", dest="hash_algorithm", default=None, help="Hash algorithm (default: SHA-256)")
    ap.add_argument("-e", dest="encoding", default=None, help="Encoding of the control file (default: utf-8)")
    ap.add_argument("-v", dest="verbose", action="store_true", help="Verbose output")
    ap.add_argument("-d", dest="debug", action="store_true", help="Debug output; keep VEO staging directories")
    ap.add_argument("--chatty", action="store_true", help="Echo comments and report each VEO as it starts")
    ap.add_argument("--no-zip", dest="finalise_only", action="store_true", help="Leave <name>.veo directories instead of ZIP files")
    ap.add_argument("--hash-workers", type=int, default=None, help="Threads used to hash content files")
    ap.add_argument("--config", default=None, help="YAML configuration file (default: ./veocreate.yaml if present)")
    ap.add_argument("--json-logs", action="store_true", help="Emit log records as JSON lines")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return ap


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "support_dir": args.support_dir,
        "template_dir": args.template_dir,
        "output_dir": args.output_dir,
        "hash_algorithm": args.hash_algorithm,
        "encoding": args.encoding,
        "hash_workers": args.hash_workers,
    }
    # flags only ever switch features on
    for key in ("verbose", "debug", "chatty", "finalise_only", "json_logs"):
        if getattr(args, key):
            out[key] = True
    if args.signers:
        out["signers"] = [{"pfx": pfx, "password": pw} for pfx, pw in args.signers]
    return out


def _log_level(cfg: CreateConfig) -> int:
    if cfg.debug:
        return logging.DEBUG
    if cfg.verbose or cfg.chatty:
        return logging.INFO
    return logging.WARNING


def load_signers(cfg: CreateConfig) -> List[Signer]:
    signers: List[Signer] = []
    for spec in cfg.signers:
        try:
            signers.append(PFXSigner.from_file(spec.pfx, spec.password))
        except VEOFatal:
            raise
        except VEOError as ex:
            raise ConfigError(f"Failed to load PFX file '{spec.pfx}': {ex.message}") from ex
        log.info(f"Signing using PFX file: {spec.pfx}")
    return signers


def run(cfg: CreateConfig, control: str) -> RunSummary:
    """Build every VEO described by ``control`` using a checked configuration."""
    signers = load_signers(cfg)
    templates: Optional[TemplateLibrary] = None
    if cfg.template_dir is not None:
        templates = TemplateLibrary(cfg.template_dir, cfg.encoding)
    return build_veos(
        control,
        output_dir=cfg.output_dir,
        support_dir=cfg.support_dir,
        templates=templates,
        encoding=cfg.encoding,
        hash_algorithm=cfg.hash_algorithm,
        signers=signers,
        debug=cfg.debug,
        chatty=cfg.chatty,
        finalise_only=cfg.finalise_only,
        hash_workers=cfg.hash_workers,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.debug else logging.WARNING, json_output=args.json_logs)

    try:
        cfg = build_config(config_file=args.config, overrides=_overrides(args))
        configure_logging(_log_level(cfg), json_output=cfg.json_logs)
        cfg.check()
        log.info("VEOCreate configuration", **cfg.summary())
        summary = run(cfg, args.control)
    except VEOFatal as ex:
        log.critical(f"FATAL: {ex}")
        return 1

    log.info(
        f"{len(summary.sealed)} VEO(s) sealed, {len(summary.abandoned)} abandoned, "
        f"{summary.errors} error(s)",
        sealed=[str(p) for p in summary.sealed],
        abandoned=summary.abandoned,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
