"""
Reversible edits to a dependent service's configuration file.

The file is parsed into a small directive model (directive name -> value)
and serialized back with every other line kept verbatim. A mutation is
backed up before it is written and restored if the owning service fails
to come back with the new configuration.
"""

import logging
import os
import shutil
import stat
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from .errors import (
    ConfigNotFound,
    MutationIrrecoverable,
    MutationRolledBack,
)
from .files import atomic_write

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".bak.one-click."
ENCODING = "utf-8"


def quote_value(value: str) -> str:
    """Render value as a Redis config argument."""
    if value and not any(c.isspace() or c in "\"'\\" for c in value):
        return value
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def unquote_value(raw: str) -> str:
    raw = raw.strip()
    if len(raw) >= 2 and raw[0] == raw[-1] == '"':
        out = []
        chars = iter(raw[1:-1])
        for c in chars:
            if c == "\\":
                out.append(next(chars, ""))
            else:
                out.append(c)
        return "".join(out)
    if len(raw) >= 2 and raw[0] == raw[-1] == "'":
        return raw[1:-1]
    return raw


@dataclass
class DirectiveLine:
    """One line of a directive-style config file."""
    raw: str
    directive: Optional[str] = None
    value: Optional[str] = None
    commented: bool = False


class DirectiveFile:
    """Typed view over a `name value` configuration file such as redis.conf."""

    def __init__(self, lines: List[DirectiveLine]):
        self.lines = lines

    @classmethod
    def parse(cls, text: str) -> "DirectiveFile":
        lines = []
        for raw in text.splitlines(keepends=True):
            body = raw.strip()
            commented = body.startswith("#")
            if commented:
                body = body.lstrip("#").strip()
            parts = body.split(None, 1)
            if len(parts) == 2:
                lines.append(
                    DirectiveLine(
                        raw=raw,
                        directive=parts[0].lower(),
                        value=unquote_value(parts[1]),
                        commented=commented,
                    )
                )
            else:
                lines.append(DirectiveLine(raw=raw, commented=commented))
        return cls(lines)

    def get(self, name: str) -> Optional[str]:
        """Effective value of an active directive (the last one wins)."""
        name = name.lower()
        value = None
        for line in self.lines:
            if line.directive == name and not line.commented:
                value = line.value
        return value

    def set(self, name: str, value: str):
        """Rewrite every occurrence of name, active or commented, or append it."""
        rendered = f"{name} {quote_value(value)}"
        matched = False
        for line in self.lines:
            if line.directive == name.lower():
                ending = line.raw[len(line.raw.rstrip("\r\n")):] or "\n"
                line.raw = rendered + ending
                line.value = value
                line.commented = False
                matched = True
        if not matched:
            if self.lines and not self.lines[-1].raw.endswith("\n"):
                self.lines[-1].raw += "\n"
            self.lines.append(DirectiveLine(raw="\n"))
            self.lines.append(
                DirectiveLine(raw=rendered + "\n", directive=name.lower(), value=value)
            )

    def serialize(self) -> str:
        return "".join(line.raw for line in self.lines)


@dataclass(frozen=True)
class ConfigMutation:
    """A single directive change to apply to a service configuration file."""
    path: Path
    directive: str
    value: str
    backup_path: Path

    @classmethod
    def create(
        cls,
        path: Path,
        directive: str,
        value: str,
        now: Optional[datetime] = None,
    ) -> "ConfigMutation":
        stamp = (now or datetime.now()).strftime("%Y%m%d%H%M%S")
        path = Path(path)
        return cls(
            path=path,
            directive=directive,
            value=value,
            backup_path=path.with_name(f"{path.name}{BACKUP_SUFFIX}{stamp}"),
        )


@dataclass
class MutationResult:
    """Outcome of a mutation that did not raise."""
    path: Path
    changed: bool
    backup_path: Optional[Path] = None


class ServiceConfigurator:
    """Applies ConfigMutations with backup-before-write and restore-on-failure."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def render(self, mutation: ConfigMutation, current: str) -> str:
        doc = DirectiveFile.parse(current)
        doc.set(mutation.directive, mutation.value)
        return doc.serialize()

    def apply(self, mutation: ConfigMutation, reload: Callable[[], bool]) -> MutationResult:
        """
        Apply mutation and reload the owning service.

        Raises ConfigNotFound when the target is missing, MutationRolledBack
        when the reload failed and the original file was restored, and
        MutationIrrecoverable when even the restore could not be reloaded.
        """
        path = mutation.path
        if not path.is_file():
            if self.dry_run:
                logger.warning(f"Config file {path} not found; a real run would fail here")
                return MutationResult(path=path, changed=False)
            raise ConfigNotFound(f"Configuration file not found: {path}")

        current = path.read_bytes().decode(ENCODING, errors="surrogateescape")
        desired = self.render(mutation, current)
        if desired == current:
            logger.info(f"{path} already sets {mutation.directive}; leaving it untouched")
            return MutationResult(path=path, changed=False)

        if self.dry_run:
            logger.info(f"Would have backed up {path} to {mutation.backup_path}")
            logger.info(f"Would have set {mutation.directive} in {path} and reloaded its service")
            return MutationResult(path=path, changed=True)

        st = os.stat(path)
        shutil.copy2(path, mutation.backup_path)
        logger.info(f"Backed up {path} to {mutation.backup_path}")

        try:
            self._install(path, desired.encode(ENCODING, errors="surrogateescape"), st)
        except OSError as e:
            raise MutationRolledBack(
                f"Failed to update {path}: {e}; original left in place"
            )
        logger.info(f"Set {mutation.directive} in {path}")

        if reload():
            return MutationResult(path=path, changed=True, backup_path=mutation.backup_path)

        logger.error(f"Service did not reload after updating {path}")
        logger.warning(f"Restoring backup {mutation.backup_path} and retrying...")
        try:
            self._install(path, mutation.backup_path.read_bytes(), st)
        except OSError as e:
            raise MutationIrrecoverable(
                f"Failed to restore {path} from {mutation.backup_path}: {e}. "
                "Manual intervention required."
            )
        if not reload():
            raise MutationIrrecoverable(
                f"Service still fails after restoring {path} from "
                f"{mutation.backup_path}. Manual intervention required."
            )
        raise MutationRolledBack(
            f"Reload failed after updating {path}; restored from {mutation.backup_path}"
        )

    def _install(self, path: Path, data: bytes, st: os.stat_result):
        atomic_write(
            path,
            data,
            mode=stat.S_IMODE(st.st_mode),
            owner=st.st_uid,
            group=st.st_gid,
        )
