"""Shell backends that execute ``run`` steps.

Each backend implements the ``ShellBackend`` protocol: run a script with a
shell template, stream its combined output line by line, and honour a
timeout and a cancellation token. Only the local subprocess backend ships;
container or VM provisioning is left to other implementations of the
protocol.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
import signal
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol, runtime_checkable

from gantry.engine.cancellation import CancellationToken

logger = logging.getLogger(__name__)

SHELL_TEMPLATES = {
    "bash": "bash --noprofile --norc -eo pipefail {0}",
    "sh": "sh -e {0}",
    "python": "python {0}",
    "pwsh": "pwsh -command \". '{0}'\"",
}

_EXTENSIONS = {"python": ".py", "pwsh": ".ps1"}


@dataclass
class CommandResult:
    """Outcome of one script execution."""

    exit_code: int
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class ShellBackend(Protocol):
    """Interface that every shell backend must implement."""

    async def run(
        self,
        script: str,
        *,
        shell: str | None,
        cwd: Path,
        env: dict[str, str],
        on_line: Callable[[str], None],
        timeout: float | None,
        token: CancellationToken | None,
    ) -> CommandResult:
        """Execute *script* and report every output line to *on_line*."""
        ...  # pragma: no cover

    @property
    def name(self) -> str:
        """Short identifier (e.g. ``"local"``)."""
        ...  # pragma: no cover


def resolve_shell(shell: str | None, default: str = "bash") -> tuple[str, str]:
    """Return ``(template, file extension)`` for a ``shell:`` value."""
    shell = (shell or default).strip()
    if shell == "bash" and shutil.which("bash") is None:
        logger.debug("bash not found, falling back to sh")
        shell = "sh"
    if shell in SHELL_TEMPLATES:
        return SHELL_TEMPLATES[shell], _EXTENSIONS.get(shell, ".sh")
    if "{0}" not in shell:
        raise ValueError(f"Custom shell '{shell}' must contain the '{{0}}' placeholder")
    return shell, ""


# ---------------------------------------------------------------------------
# Local Backend
# ---------------------------------------------------------------------------


class LocalBackend:
    """Direct subprocess execution on the host (no isolation)."""

    def __init__(self, default_shell: str = "bash") -> None:
        self._default_shell = default_shell

    @property
    def name(self) -> str:
        return "local"

    async def run(
        self,
        script: str,
        *,
        shell: str | None,
        cwd: Path,
        env: dict[str, str],
        on_line: Callable[[str], None],
        timeout: float | None,
        token: CancellationToken | None,
    ) -> CommandResult:
        template, suffix = resolve_shell(shell, self._default_shell)
        fd, script_path = tempfile.mkstemp(prefix="gantry-step-", suffix=suffix)
        with os.fdopen(fd, "w") as f:
            f.write(script)
            if not script.endswith("\n"):
                f.write("\n")

        # Merge host env with provided envs
        proc_env = {**os.environ, **env}
        argv = [part.replace("{0}", script_path) for part in shlex.split(template)]

        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=proc_env,
            cwd=str(cwd),
            start_new_session=True,
        )

        async def pump() -> None:
            assert proc.stdout is not None
            while True:
                line_bytes = await proc.stdout.readline()
                if not line_bytes:
                    break
                on_line(line_bytes.decode(errors="replace").rstrip("\r\n"))
            await proc.wait()

        pump_task = asyncio.ensure_future(pump())
        cancel_task = asyncio.ensure_future(token.wait()) if token is not None else None
        waiters = {pump_task} | ({cancel_task} if cancel_task else set())

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if pump_task in done:
                pump_task.result()
                return CommandResult(exit_code=proc.returncode or 0)
            if cancel_task is not None and cancel_task in done:
                logger.info("Step cancelled, terminating process group %d", proc.pid)
                await self._kill(proc, pump_task)
                return CommandResult(exit_code=proc.returncode or -1, cancelled=True)
            logger.warning("Step timed out after %.0fs", timeout or 0)
            await self._kill(proc, pump_task)
            return CommandResult(exit_code=proc.returncode or -1, timed_out=True)
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()
            if proc.returncode is None:
                await self._kill(proc, pump_task)
            try:
                os.unlink(script_path)
            except OSError:
                pass

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process, pump_task: asyncio.Future) -> None:
        if proc.returncode is None:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        try:
            await asyncio.wait_for(pump_task, timeout=5)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            pump_task.cancel()
        if proc.returncode is None:
            await proc.wait()
