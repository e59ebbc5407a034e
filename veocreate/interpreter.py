"""Control-file interpreter.

Reads one command per line and drives ``VEODocument``. All run state (the VEO
under construction, the interpreter state, the signers and hash algorithm)
lives on an explicit ``Session`` object.

States:

- ``PREAMBLE``     before the first VEO. ``HASH`` and ``PFX`` are only legal
                   here; once a VEO has been started they are fatal.
- ``VEO_STARTED``  a VEO is being built.
- ``VEO_FAILED``   the last VEO was abandoned. Everything except comments,
                   ``HASH``/``PFX`` and the VEO-start commands (``BV``,
                   ``VEO``) is skipped until the next VEO starts.

A recoverable error (``VEOError``) abandons only the VEO being built; a fatal
error (``VEOFatal``) abandons it and ends the run. VEOs sealed earlier in the
run are left alone either way.
"""

from __future__ import annotations

import codecs
import pathlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from veocreate.commands import (
    CONTROL_KINDS,
    Command,
    CommandKind,
    read_commands,
    split_on_separator,
)
from veocreate.content import FileResolver
from veocreate.core import DEFAULT_HASH_ALGORITHM, normalize_hash_algorithm, vers_datetime
from veocreate.errors import ConfigError, VEOError, VEOFatal
from veocreate.metadata import AGLS, ANZS5478, MetadataPackage
from veocreate.observability import VEOLogger
from veocreate.signer import PFXSigner, Signer
from veocreate.veo import VEODocument


class State(Enum):
    PREAMBLE = "preamble"
    VEO_STARTED = "veo_started"
    VEO_FAILED = "veo_failed"


@dataclass
class RunSummary:
    sealed: List[pathlib.Path] = field(default_factory=list)
    abandoned: List[str] = field(default_factory=list)
    errors: int = 0
    unknown_commands: int = 0
    lines: int = 0


Handler = Callable[["Session", Command], None]


class Session:
    """State for one run over a control stream."""

    def __init__(
        self,
        *,
        output_dir: pathlib.Path,
        support_dir: pathlib.Path,
        base_dir: pathlib.Path,
        templates=None,
        hash_algorithm: str = DEFAULT_HASH_ALGORITHM,
        signers: Sequence[Signer] = (),
        debug: bool = False,
        chatty: bool = False,
        finalise_only: bool = False,
        hash_workers: int = 1,
        cwd: Optional[pathlib.Path] = None,
        signer_loader: Callable[[pathlib.Path, str], Signer] = PFXSigner.from_file,
    ):
        self.output_dir = pathlib.Path(output_dir)
        self.support_dir = pathlib.Path(support_dir)
        self.resolver = FileResolver(base_dir, cwd=cwd)
        self.templates = templates
        self.debug = debug
        self.chatty = chatty
        self.finalise_only = finalise_only
        self.hash_workers = hash_workers
        self.signer_loader = signer_loader

        self.state = State.PREAMBLE
        self.veo: Optional[VEODocument] = None
        self.summary = RunSummary()
        self.log = VEOLogger("interpreter")

        self._hash_algorithm = normalize_hash_algorithm(hash_algorithm)
        self._signers: List[Signer] = list(signers)
        self._started = False

    # -- run-wide settings (fixed once the first VEO starts) -----------------

    @property
    def hash_algorithm(self) -> str:
        return self._hash_algorithm

    @property
    def signers(self) -> Tuple[Signer, ...]:
        return tuple(self._signers)

    def _check_preamble(self, cmd: Command) -> None:
        if self._started:
            raise ConfigError(f"{cmd.kind.label} command must be specified before the first VEO is generated")

    # -- driving -------------------------------------------------------------

    def run(self, lines: Iterable[str]) -> RunSummary:
        """Process a whole control stream, then finalise the last VEO."""
        try:
            for cmd in read_commands(lines):
                self.summary.lines = cmd.line
                if cmd.kind is CommandKind.END:
                    break
                self.execute(cmd)
            self.finish()
        except VEOFatal:
            self._abandon_current()
            raise
        return self.summary

    def execute(self, cmd: Command) -> None:
        if self.state is State.VEO_FAILED and cmd.kind not in CONTROL_KINDS:
            self.log.debug(f"Skipping {cmd.kind.label} command while VEO is abandoned", line=cmd.line, command=cmd.name)
            return
        try:
            _HANDLERS[cmd.kind](self, cmd)
        except VEOFatal as ex:
            ex.with_context(cmd.line, cmd.kind.label)
            self.log.critical(f"{ex}. Creation of VEOs halted.", line=cmd.line, command=cmd.name)
            raise
        except VEOError as ex:
            ex.with_context(cmd.line, cmd.kind.label)
            self._failed(ex, cmd)

    def finish(self) -> None:
        """End of stream: seal the VEO still under construction (if any)."""
        if self.veo is None:
            return
        try:
            self._finalise_current()
        except VEOFatal:
            raise
        except VEOError as ex:
            self._report(ex, f"Failed when finalising VEO. Error was: {ex}")
            self.state = State.VEO_FAILED

    # -- failure handling ----------------------------------------------------

    def _report(self, ex: VEOError, message: str) -> None:
        self.summary.errors += 1
        self.log.warning(message, line=ex.line, command=ex.command, veo=self.veo.name if self.veo else "")

    def _failed(self, ex: VEOError, cmd: Command) -> None:
        self._report(ex, f"{ex}. VEO being abandoned.")
        self._abandon_current()
        self.state = State.VEO_FAILED

    def _abandon_current(self) -> None:
        veo, self.veo = self.veo, None
        if veo is not None and not veo.finalized:
            veo.abandon(self.debug)
            self.summary.abandoned.append(veo.name)

    def _finalise_current(self) -> None:
        """Finish, hash, sign (every signer) and seal the current VEO."""
        veo = self.veo
        if veo is None:
            return
        try:
            veo.finish_files()
            veo.sign_all(self._signers)
            path = veo.finalise(zip_it=not self.finalise_only)
        except VEOError:
            self._abandon_current()
            raise
        self.veo = None
        self.summary.sealed.append(path)

    def _close_previous(self, cmd: Command) -> None:
        """Seal the VEO under construction before a new one starts."""
        if self.veo is None:
            return
        try:
            self._finalise_current()
        except VEOFatal:
            raise
        except VEOError as ex:
            ex.with_context(cmd.line, cmd.kind.label)
            self._report(ex, f"When starting a new VEO, failed to finalise previous VEO. Error was: {ex}")

    def _check_signers(self) -> None:
        if not self._signers:
            raise VEOFatal(
                "Attempting to begin construction of a VEO without specifying a signer "
                "using a PFX command or -s command line argument"
            )

    def _start_veo(self, name: str) -> VEODocument:
        self._started = True
        veo = VEODocument(
            self.output_dir,
            name,
            hash_algorithm=self._hash_algorithm,
            resolver=self.resolver,
            debug=self.debug,
            hash_workers=self.hash_workers,
        )
        self.veo = veo
        veo.add_readme(self.support_dir)
        if self.chatty:
            self.log.info(f"Generating: {veo.name}")
        return veo

    def _require_veo(self, cmd: Command) -> VEODocument:
        if self.veo is None:
            raise VEOError(f"{cmd.kind.label} command before first BV command")
        return self.veo

    def _require_templates(self, cmd: Command):
        if self.templates is None:
            raise VEOError(
                f"Using an {cmd.kind.label} command requires a template directory to be specified "
                "(-t command line argument)"
            )
        return self.templates

    @staticmethod
    def _require_args(cmd: Command, n: int, usage: str) -> None:
        if len(cmd.args) < n:
            raise VEOError(f"Missing argument in {cmd.kind.label} command (format: {usage})")

    # -- command handlers ----------------------------------------------------

    def _cmd_comment(self, cmd: Command) -> None:
        text = cmd.arg(0, "") or ""
        if not text.strip():
            self.log.warning("Empty comment", line=cmd.line, command=cmd.name)
        elif self.chatty:
            self.log.info(f"COMMENT: {text}", line=cmd.line)
        else:
            self.log.debug(f"COMMENT: {text}", line=cmd.line)

    def _cmd_hash(self, cmd: Command) -> None:
        self._check_preamble(cmd)
        if not (cmd.arg(0) or "").strip():
            raise ConfigError("HASH command doesn't specify algorithm (format: 'HASH' <algorithm>)")
        self._hash_algorithm = normalize_hash_algorithm(cmd.arg(0))
        self.log.info(f"Now using hash algorithm: {self._hash_algorithm} (set from control file)", line=cmd.line)

    def _cmd_pfx(self, cmd: Command) -> None:
        self._check_preamble(cmd)
        if len(cmd.args) < 2 or not cmd.arg(0, "").strip():
            raise ConfigError(
                "PFX command doesn't specify pfx file and/or password (format: 'PFX' <pfxFile> <password>)"
            )
        try:
            path = self.resolver.resolve(cmd.arg(0))
            signer = self.signer_loader(path, cmd.arg(1))
        except VEOFatal:
            raise
        except VEOError as ex:
            raise ConfigError(f"In PFX command, failed to process PFX file: {ex.message}") from ex
        self._signers.append(signer)
        prefix = "Signing" if len(self._signers) == 1 else "Also signing"
        self.log.info(f"{prefix} using PFX file: {path} (set from control file)", line=cmd.line)

    def _cmd_bv(self, cmd: Command) -> None:
        self._check_signers()
        self._started = True
        self._close_previous(cmd)
        self._require_args(cmd, 1, "'BV' <veoName>")
        self._start_veo(cmd.arg(0))
        self.state = State.VEO_STARTED

    def _cmd_ac(self, cmd: Command) -> None:
        veo = self._require_veo(cmd)
        self._require_args(cmd, 1, "'AC' <contentDirectory> [<contentDirectory>...]")
        for ref in cmd.args:
            if ref.strip():
                veo.register_content_directory(ref)

    def _cmd_io(self, cmd: Command) -> None:
        veo = self._require_veo(cmd)
        self._require_args(cmd, 1, "'IO' <label> [<level>]")
        label = cmd.arg(0).strip()
        depth = 0
        raw = (cmd.arg(1) or "").strip()
        if raw:
            try:
                depth = int(raw)
            except ValueError:
                raise VEOError(f"Level in IO command is not a valid integer ('{raw}')") from None
            if depth < 0:
                raise VEOError(f"Level in IO command is not zero or a positive integer ({depth})")
        veo.add_information_object(label, depth)
        self.log.debug(f"Starting new Information Object '{label}' level {depth}", line=cmd.line)

    def _cmd_mp(self, cmd: Command) -> None:
        veo = self._require_veo(cmd)
        templates = self._require_templates(cmd)
        self._require_args(cmd, 1, "'MP' <template> [<subs>...]")
        template = templates.find(cmd.arg(0))
        veo.add_metadata_package(MetadataPackage.from_template(template, cmd.tokens))

    def _cmd_xml_mp(self, cmd: Command) -> None:
        veo = self._require_veo(cmd)
        self._require_args(cmd, 1, "'XML-MP' <semanticId>")
        veo.add_metadata_package(MetadataPackage.xml(cmd.arg(0).strip()))

    def _cmd_rdf_mp(self, cmd: Command) -> None:
        veo = self._require_veo(cmd)
        self._require_args(cmd, 2, "'RDF-MP' <semanticId> <resourceId> [<namespaceDefns>]")
        veo.add_metadata_package(MetadataPackage.rdf(cmd.arg(0).strip(), cmd.arg(1), cmd.arg(2)))

    def _cmd_agls_mp(self, cmd: Command) -> None:
        veo = self._require_veo(cmd)
        self._require_args(cmd, 1, "'AGLS-MP' <resourceId>")
        veo.add_metadata_package(MetadataPackage.from_profile(AGLS, cmd.arg(0)))

    def _cmd_anzs5478_mp(self, cmd: Command) -> None:
        veo = self._require_veo(cmd)
        self._require_args(cmd, 1, "'ANZS5478-MP' <resourceId>")
        veo.add_metadata_package(MetadataPackage.from_profile(ANZS5478, cmd.arg(0)))

    def _cmd_me(self, cmd: Command) -> None:
        veo = self._require_veo(cmd)
        self._require_args(cmd, 1, "'ME' <tagName> [value] [attribute]")
        veo.add_simple_element(cmd.arg(0).strip(), cmd.arg(1), cmd.arg(2))

    def _cmd_sme(self, cmd: Command) -> None:
        veo = self._require_veo(cmd)
        self._require_args(cmd, 1, "'SME' <tagName> [attribute]")
        veo.start_complex_element(cmd.arg(0).strip(), cmd.arg(1))

    def _cmd_eme(self, cmd: Command) -> None:
        veo = self._require_veo(cmd)
        self._require_args(cmd, 1, "'EME' <tagName>")
        veo.end_complex_element(cmd.arg(0).strip())

    def _cmd_mpc(self, cmd: Command) -> None:
        veo = self._require_veo(cmd)
        templates = self._require_templates(cmd)
        self._require_args(cmd, 1, "'MPC' <template> [<subs>...]")
        veo.continue_metadata_package(templates.find(cmd.arg(0)), cmd.tokens)

    def _cmd_ip(self, cmd: Command) -> None:
        veo = self._require_veo(cmd)
        self._require_args(cmd, 1, "'IP' [<label>] <file> [<files>...]")
        first = cmd.arg(0)
        if veo.content.is_content_file(first):
            label, files = None, list(cmd.args)
        else:
            label, files = first, list(cmd.args[1:])
        files = [f for f in files if f.strip()]
        if not files:
            raise VEOError(
                "Missing file after a label in IP command (format: 'IP' [<label>] <file> [<files>...]). "
                "Possibly referenced file hasn't been added in an AC command"
            )
        veo.add_information_piece(label)
        for ref in files:
            veo.add_content_file(ref)

    def _cmd_e(self, cmd: Command) -> None:
        veo = self._require_veo(cmd)
        usage = "'E' <date> <event> <initiator> <description> [<description>...] ['$$' <error>...]"
        self._require_args(cmd, 4, usage)
        if self.state is not State.VEO_STARTED:
            raise VEOError("E command must be specified after a BV command")
        descriptions, errors = split_on_separator(cmd.args[3:])
        if not descriptions:
            raise VEOError(f"Missing mandatory description in E command (format: {usage})")
        veo.add_event(cmd.arg(0), cmd.arg(1), cmd.arg(2), descriptions, errors)

    def _cmd_veo(self, cmd: Command) -> None:
        self._check_signers()
        self._started = True
        self._close_previous(cmd)
        templates = self._require_templates(cmd)
        self._require_args(cmd, 3, "'VEO' <veoName> <label> <template> [<data>...] '$$' [<files>...]")
        _, files = split_on_separator(cmd.args[3:])
        template = templates.find(cmd.arg(2))

        veo = self._start_veo(cmd.arg(0))
        veo.add_information_object(cmd.arg(1).strip(), 0)
        veo.add_metadata_package(MetadataPackage.from_template(template, cmd.tokens))
        for ref in files:
            if not ref.strip():
                continue
            veo.add_information_piece(None)
            veo.add_content_file(ref)
        veo.add_event(vers_datetime(), "VEO Created", "VEOCreate", ["No Description"], ["No Errors"])
        self.state = State.VEO_STARTED

    def _cmd_end(self, cmd: Command) -> None:
        # run() stops at the terminator; executing it directly seals the current VEO.
        self.finish()

    def _cmd_unknown(self, cmd: Command) -> None:
        self.summary.unknown_commands += 1
        self.log.error(
            f"Error in control file around line {cmd.line}: unknown command: '{cmd.name}'",
            line=cmd.line,
            command=cmd.name,
        )


_HANDLERS: Dict[CommandKind, Handler] = {
    CommandKind.COMMENT: Session._cmd_comment,
    CommandKind.HASH: Session._cmd_hash,
    CommandKind.PFX: Session._cmd_pfx,
    CommandKind.BV: Session._cmd_bv,
    CommandKind.AC: Session._cmd_ac,
    CommandKind.IO: Session._cmd_io,
    CommandKind.MP: Session._cmd_mp,
    CommandKind.XML_MP: Session._cmd_xml_mp,
    CommandKind.RDF_MP: Session._cmd_rdf_mp,
    CommandKind.AGLS_MP: Session._cmd_agls_mp,
    CommandKind.ANZS5478_MP: Session._cmd_anzs5478_mp,
    CommandKind.ME: Session._cmd_me,
    CommandKind.SME: Session._cmd_sme,
    CommandKind.EME: Session._cmd_eme,
    CommandKind.MPC: Session._cmd_mpc,
    CommandKind.IP: Session._cmd_ip,
    CommandKind.E: Session._cmd_e,
    CommandKind.VEO: Session._cmd_veo,
    CommandKind.END: Session._cmd_end,
    CommandKind.UNKNOWN: Session._cmd_unknown,
}

_missing = set(CommandKind) - set(_HANDLERS)
if _missing:
    raise RuntimeError(f"no handler for command kinds: {sorted(k.name for k in _missing)}")


def read_control_file(path: pathlib.Path, encoding: str = "utf-8") -> List[str]:
    """Read and decode a control file. Any failure is fatal for the run."""
    try:
        codecs.lookup(encoding)
    except LookupError:
        raise ConfigError(f"The encoding '{encoding}' used when reading the control file is invalid") from None
    try:
        data = pathlib.Path(path).read_bytes()
    except OSError as ex:
        raise VEOFatal(f"Failed to open control file '{path}': {ex}") from ex
    try:
        text = data.decode(encoding)
    except UnicodeDecodeError as ex:
        raise VEOFatal(f"Control file '{path}' is not valid {encoding}: {ex}") from ex
    if text.startswith("\ufeff"):
        text = text[1:]
    return text.splitlines()


def build_veos(
    control_file: pathlib.Path,
    *,
    output_dir: pathlib.Path,
    support_dir: pathlib.Path,
    templates=None,
    encoding: str = "utf-8",
    **session_options,
) -> RunSummary:
    """Build every VEO described by a control file."""
    control_file = pathlib.Path(control_file)
    lines = read_control_file(control_file, encoding)
    session = Session(
        output_dir=output_dir,
        support_dir=support_dir,
        base_dir=control_file.resolve().parent,
        templates=templates,
        **session_options,
    )
    return session.run(lines)
