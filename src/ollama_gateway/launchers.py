"""Platform-specific ways to start the daemon's executable without a visible window."""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
import logging
import os
import subprocess
import sys

LOGGER = logging.getLogger(__name__)


def _ps_quote(value: str) -> str:
    return value.replace("'", "''")


async def _spawn_detached(*argv: str, **kwargs: object) -> asyncio.subprocess.Process:
    """Start a process with every standard stream discarded."""
    return await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
        **kwargs,
    )


class DaemonLauncher(ABC):
    """Capability interface for launching daemon subcommands.

    ``needs_warm_up`` is true on platforms whose background ``serve`` cannot be
    relied on, where a one-off ``run`` is used to kick the engine awake.
    """

    needs_warm_up: bool = False

    @abstractmethod
    async def serve(self, executable: str) -> None:
        """Start ``serve`` in the background and return once it is spawned."""

    @abstractmethod
    async def pull(self, executable: str, model: str) -> int:
        """Run ``pull <model>`` to completion and return its exit code."""

    async def warm_up(self, executable: str, model: str, prompt: str) -> None:
        """Start a one-off ``run`` of ``model`` in the background."""
        raise NotImplementedError


class PosixLauncher(DaemonLauncher):
    """Linux and macOS: the executable is started directly."""

    async def serve(self, executable: str) -> None:
        # New session so the daemon outlives the gateway's process group.
        await _spawn_detached(executable, "serve", start_new_session=True)

    async def pull(self, executable: str, model: str) -> int:
        process = await _spawn_detached(executable, "pull", model)
        return await process.wait()


class WindowsLauncher(DaemonLauncher):
    """Windows: hidden PowerShell ``Start-Process`` with a ``cmd start`` fallback."""

    needs_warm_up = True

    def _creation_flags(self) -> int:
        return getattr(subprocess, "CREATE_NO_WINDOW", 0)

    async def _powershell(self, command: str) -> asyncio.subprocess.Process:
        return await _spawn_detached(
            "powershell",
            "-NoProfile",
            "-WindowStyle",
            "Hidden",
            "-Command",
            command,
            creationflags=self._creation_flags(),
        )

    async def serve(self, executable: str) -> None:
        command = (
            f"Start-Process -WindowStyle Hidden -FilePath '{_ps_quote(executable)}' "
            "-ArgumentList 'serve'"
        )
        try:
            await self._powershell(command)
        except OSError as exc:
            LOGGER.info(
                "launcher.powershell.unavailable",
                extra={"event": "launcher.powershell.unavailable", "error": str(exc)},
            )
            await _spawn_detached(
                "cmd",
                "/C",
                "start",
                "",
                executable,
                "serve",
                creationflags=self._creation_flags(),
            )

    async def pull(self, executable: str, model: str) -> int:
        command = (
            f"Start-Process -Wait -WindowStyle Hidden -FilePath '{_ps_quote(executable)}' "
            f"-ArgumentList 'pull \"{_ps_quote(model)}\"'"
        )
        process = await self._powershell(command)
        return await process.wait()

    async def warm_up(self, executable: str, model: str, prompt: str) -> None:
        command = (
            f"Start-Process -WindowStyle Hidden -FilePath '{_ps_quote(executable)}' "
            f"-ArgumentList 'run \"{_ps_quote(model)}\" -p \"{_ps_quote(prompt)}\"'"
        )
        await self._powershell(command)


def default_launcher() -> DaemonLauncher:
    """Pick the launcher for the running platform."""
    if sys.platform == "win32" or os.name == "nt":
        return WindowsLauncher()
    return PosixLauncher()
