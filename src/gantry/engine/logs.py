"""Job logs, secret masking and workflow commands."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

from gantry.config import settings

runner_logger = logging.getLogger("gantry.runner")

_COMMAND_RE = re.compile(r"^::([A-Za-z][A-Za-z0-9_-]*)(?:\s+([^:]*))?::(.*)$")


class SecretMasker:
    """Redacts registered values from log text.

    Multi-line values are registered line by line so that a secret echoed
    across several log lines is still masked on each one.
    """

    def __init__(self, mask: str | None = None) -> None:
        self.mask = mask or settings.mask_string
        self._values: set[str] = set()

    def add(self, value: str | None) -> None:
        if not value:
            return
        for line in str(value).splitlines():
            line = line.strip()
            if line:
                self._values.add(line)

    def redact(self, text: str) -> str:
        # Longest first so a secret containing another one is fully replaced
        for value in sorted(self._values, key=len, reverse=True):
            text = text.replace(value, self.mask)
        return text

    def __len__(self) -> int:
        return len(self._values)


@dataclass
class Annotation:
    level: str  # "error" | "warning" | "notice"
    message: str
    file: str | None = None
    line: int | None = None


@dataclass
class WorkflowCommand:
    name: str
    properties: dict[str, str] = field(default_factory=dict)
    value: str = ""


def parse_command(line: str) -> WorkflowCommand | None:
    """Parse a ``::name key=value,...::message`` stdout directive."""
    match = _COMMAND_RE.match(line.strip())
    if match is None:
        return None
    props: dict[str, str] = {}
    if match.group(2):
        for pair in match.group(2).split(","):
            if "=" in pair:
                key, _, value = pair.partition("=")
                props[key.strip()] = value.strip()
    return WorkflowCommand(name=match.group(1).lower(), properties=props, value=match.group(3))


def parse_env_file(content: str) -> dict[str, str]:
    """Parse a ``$GITHUB_OUTPUT`` / ``$GITHUB_ENV`` file.

    Supports ``NAME=value`` lines and the multi-line form::

        NAME<<DELIMITER
        line 1
        line 2
        DELIMITER
    """
    values: dict[str, str] = {}
    lines = content.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            name, _, delimiter = line.partition("<<")
            body: list[str] = []
            while i < len(lines) and lines[i] != delimiter:
                body.append(lines[i])
                i += 1
            if i >= len(lines):
                raise ValueError(f"Missing delimiter '{delimiter}' for '{name}'")
            i += 1
            values[name.strip()] = "\n".join(body)
        elif "=" in line:
            name, _, value = line.partition("=")
            values[name.strip()] = value
        else:
            raise ValueError(f"Invalid line in environment file: {line!r}")
    return values


class JobLog:
    """Masked log of one job instance."""

    def __init__(self, instance: str, masker: SecretMasker) -> None:
        self.instance = instance
        self.masker = masker
        self.lines: list[str] = []
        self.annotations: list[Annotation] = []

    def write(self, line: str) -> str:
        masked = self.masker.redact(line.rstrip("\n"))
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        self.lines.append(f"{stamp} {masked}")
        runner_logger.info("[%s] %s", self.instance, masked)
        return masked

    def annotate(self, level: str, message: str, file: str | None = None,
                 line: int | None = None) -> None:
        masked = self.masker.redact(message)
        self.annotations.append(Annotation(level, masked, file, line))
        self.write(f"##[{level}]{masked}")

    def text(self) -> str:
        return "\n".join(self.lines) + ("\n" if self.lines else "")
