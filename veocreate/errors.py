"""Error types for VEO construction.

Two severities exist:

- ``VEOError``: recoverable. The VEO under construction is abandoned and the
  interpreter resumes at the next VEO-start command.
- ``VEOFatal``: the whole run stops. VEOs that were already sealed stay on disk.

Both carry optional control-file context (line number and command) so a message
can point at the offending line without re-running.
"""

from __future__ import annotations

from typing import Optional


class VEOError(Exception):
    """Recoverable error while building a single VEO."""

    def __init__(self, message: str, *, line: Optional[int] = None, command: str = ""):
        super().__init__(message)
        self.message = message
        self.line = line
        self.command = command

    def with_context(self, line: int, command: str) -> "VEOError":
        """Attach control-file context if none is set yet and return self."""
        if self.line is None:
            self.line = line
        if not self.command:
            self.command = command
        return self

    def __str__(self) -> str:
        if self.line is None:
            return self.message
        where = f"Error in control file around line {self.line}"
        if self.command:
            where += f" ({self.command})"
        return f"{where}: {self.message}"


class VEOFatal(VEOError):
    """Error that prevents any further VEOs from being built."""


class ConfigError(VEOFatal):
    """Invalid configuration (command line, config file or preamble commands)."""
