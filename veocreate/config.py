"""Run configuration for VEO construction.

Configuration sources (in order of precedence):
    1. Command-line arguments
    2. Environment variables (VEOCREATE_*)
    3. Config file (``--config`` or ./veocreate.yaml)
    4. Default values

Signers can also be added by ``PFX`` lines and the hash algorithm by a ``HASH``
line in the control file; those are applied by the interpreter during the
control-file preamble.
"""

from __future__ import annotations

import codecs
import os
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

import jsonschema
import yaml

from veocreate.core import DEFAULT_HASH_ALGORITHM, normalize_hash_algorithm
from veocreate.errors import ConfigError

DEFAULT_CONFIG_FILE = "veocreate.yaml"

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "template_dir": {"type": "string", "minLength": 1},
        "support_dir": {"type": "string", "minLength": 1},
        "output_dir": {"type": "string", "minLength": 1},
        "hash_algorithm": {"type": "string", "minLength": 1},
        "encoding": {"type": "string", "minLength": 1},
        "verbose": {"type": "boolean"},
        "chatty": {"type": "boolean"},
        "debug": {"type": "boolean"},
        "finalise_only": {"type": "boolean"},
        "json_logs": {"type": "boolean"},
        "hash_workers": {"type": "integer", "minimum": 1},
        "signers": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["pfx"],
                "properties": {
                    "pfx": {"type": "string", "minLength": 1},
                    "password": {"type": "string"},
                },
            },
        },
    },
}

# field name -> environment variable
ENV_BINDINGS: Dict[str, str] = {
    "template_dir": "VEOCREATE_TEMPLATE_DIR",
    "support_dir": "VEOCREATE_SUPPORT_DIR",
    "output_dir": "VEOCREATE_OUTPUT_DIR",
    "hash_algorithm": "VEOCREATE_HASH_ALGORITHM",
    "encoding": "VEOCREATE_ENCODING",
    "debug": "VEOCREATE_DEBUG",
    "hash_workers": "VEOCREATE_HASH_WORKERS",
}

_PATH_FIELDS = ("template_dir", "support_dir", "output_dir")


@dataclass
class SignerSpec:
    pfx: pathlib.Path
    password: str = ""


@dataclass
class CreateConfig:
    template_dir: Optional[pathlib.Path] = None
    support_dir: Optional[pathlib.Path] = None
    output_dir: pathlib.Path = field(default_factory=lambda: pathlib.Path("."))
    hash_algorithm: str = DEFAULT_HASH_ALGORITHM
    encoding: str = "utf-8"
    verbose: bool = False
    chatty: bool = False
    debug: bool = False
    finalise_only: bool = False
    json_logs: bool = False
    hash_workers: int = 1
    signers: List[SignerSpec] = field(default_factory=list)

    def apply(self, values: Mapping[str, Any], *, base_dir: Optional[pathlib.Path] = None) -> None:
        """Apply a mapping of overrides. Relative paths resolve against base_dir."""
        for key, value in values.items():
            if value is None or not hasattr(self, key):
                continue
            if key in _PATH_FIELDS:
                p = pathlib.Path(str(value))
                if base_dir is not None and not p.is_absolute():
                    p = base_dir / p
                setattr(self, key, p)
            elif key == "signers":
                for s in value:
                    p = pathlib.Path(str(s["pfx"]))
                    if base_dir is not None and not p.is_absolute():
                        p = base_dir / p
                    self.signers.append(SignerSpec(pfx=p, password=str(s.get("password") or "")))
            else:
                setattr(self, key, value)

    def apply_env(self, environ: Optional[Mapping[str, str]] = None) -> None:
        env = os.environ if environ is None else environ
        for key, var in ENV_BINDINGS.items():
            if var in env and str(env[var]).strip() != "":
                setattr(self, key, _coerce(getattr(self, key), key, env[var]))

    def validate(self) -> List[str]:
        """Return a list of configuration problems (empty means valid)."""
        errors: List[str] = []
        try:
            self.hash_algorithm = normalize_hash_algorithm(self.hash_algorithm)
        except ConfigError as ex:
            errors.append(str(ex))
        try:
            codecs.lookup(self.encoding)
        except LookupError:
            errors.append(f"The encoding '{self.encoding}' used when reading the control file is invalid")
        if self.support_dir is None:
            errors.append("No support directory specified")
        elif not self.support_dir.is_dir():
            errors.append(f"Support directory '{self.support_dir}' does not exist or is not a directory")
        if self.template_dir is not None and not self.template_dir.is_dir():
            errors.append(f"Template directory '{self.template_dir}' does not exist or is not a directory")
        if not self.output_dir.is_dir():
            errors.append(f"Output directory '{self.output_dir}' does not exist or is not a directory")
        if self.hash_workers < 1:
            errors.append("hash_workers must be at least 1")
        for s in self.signers:
            if not s.pfx.is_file():
                errors.append(f"PFX file '{s.pfx}' does not exist")
        return errors

    def check(self) -> "CreateConfig":
        errors = self.validate()
        if errors:
            raise ConfigError("; ".join(errors))
        return self

    def summary(self) -> Dict[str, Any]:
        return {
            "template_dir": str(self.template_dir) if self.template_dir else None,
            "support_dir": str(self.support_dir) if self.support_dir else None,
            "output_dir": str(self.output_dir),
            "hash_algorithm": self.hash_algorithm,
            "encoding": self.encoding,
            "signers": [str(s.pfx) for s in self.signers],
            "debug": self.debug,
            "finalise_only": self.finalise_only,
        }


def _coerce(current: Any, key: str, raw: str) -> Any:
    if isinstance(current, bool):
        return raw.strip().lower() in ("true", "1", "yes", "on")
    if isinstance(current, int):
        try:
            return int(raw)
        except ValueError as ex:
            raise ConfigError(f"{ENV_BINDINGS[key]} must be an integer") from ex
    if key in _PATH_FIELDS:
        return pathlib.Path(raw)
    return raw


def load_config_file(path: Union[str, pathlib.Path]) -> Dict[str, Any]:
    """Load and schema-check a YAML config file."""
    p = pathlib.Path(path)
    if not p.is_file():
        raise ConfigError(f"Configuration file not found: {p}")
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as ex:
        raise ConfigError(f"Failed to read configuration file {p}: {ex}") from ex
    v = jsonschema.Draft202012Validator(CONFIG_SCHEMA)
    errs = sorted(v.iter_errors(data), key=lambda e: list(e.path))
    if errs:
        where = "/".join(str(x) for x in errs[0].path) or "<root>"
        raise ConfigError(f"Invalid configuration file {p}: {where}: {errs[0].message}")
    return data


def build_config(
    *,
    config_file: Optional[Union[str, pathlib.Path]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> CreateConfig:
    """Defaults < config file < environment < overrides."""
    cfg = CreateConfig()
    path = pathlib.Path(config_file) if config_file else None
    if path is None and pathlib.Path(DEFAULT_CONFIG_FILE).is_file():
        path = pathlib.Path(DEFAULT_CONFIG_FILE)
    if path is not None:
        cfg.apply(load_config_file(path), base_dir=path.resolve().parent)
    cfg.apply_env(environ)
    if overrides:
        cfg.apply(overrides)
    return cfg
