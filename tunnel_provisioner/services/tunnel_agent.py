"""Local tunnel agent - binds a cloudflared service to a provisioned tunnel."""

import asyncio
import logging
import os
import shutil
from typing import Protocol

logger = logging.getLogger(__name__)

INSTALL_HINT = (
    "cloudflared not installed. Install from https://developers.cloudflare.com/"
    "cloudflare-one/connections/connect-apps/install-and-setup/installation/"
)


class TunnelAgentError(Exception):
    """Raised when the local agent cannot be bound to a tunnel."""


class TunnelAgent(Protocol):
    """Anything that can run a tunnel locally given its connection token."""

    async def bind(self, tunnel_id: str, tunnel_token: str) -> None: ...


class CloudflaredAgent:
    """Manages the cloudflared system service.

    Named tunnels are bound with ``cloudflared service install <token>``; the
    token embeds the account, tunnel id and secret, so nothing else is needed
    on the device.
    """

    def __init__(self, binary_path: str = "cloudflared", timeout: float = 120.0):
        self._binary = binary_path
        self._timeout = timeout

    def is_installed(self) -> bool:
        """Check whether the cloudflared binary can be found."""
        if os.path.sep in self._binary:
            return os.path.isfile(self._binary)
        return shutil.which(self._binary) is not None

    async def _exec(self, program: str, *args: str, missing: str) -> tuple[int, str, str]:
        """Run a program and return (exit code, stdout, stderr)."""
        try:
            process = await asyncio.create_subprocess_exec(
                program,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise TunnelAgentError(missing) from None

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self._timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
            raise TunnelAgentError(
                f"{os.path.basename(program)} {args[0]} timed out after {self._timeout:.0f}s"
            ) from None

        return (
            process.returncode if process.returncode is not None else -1,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )

    async def _run(self, *args: str) -> tuple[int, str, str]:
        return await self._exec(self._binary, *args, missing=INSTALL_HINT)

    async def _run_service_command(self, command: str) -> bool:
        try:
            returncode, _, stderr = await self._run("service", command)
        except TunnelAgentError as e:
            logger.warning(f"cloudflared service {command} failed: {e}")
            return False
        if returncode != 0:
            logger.warning(f"cloudflared service {command} exited {returncode}: {stderr.strip()}")
            return False
        return True

    async def bind(self, tunnel_id: str, tunnel_token: str) -> None:
        """Install the cloudflared service for a tunnel, replacing any existing one.

        Raises:
            TunnelAgentError: If cloudflared is missing or the install fails
        """
        if not tunnel_token:
            raise TunnelAgentError("Tunnel token is required")

        # The service may not exist yet; a failed uninstall is expected then
        await self._run_service_command("uninstall")

        returncode, _, stderr = await self._run("service", "install", tunnel_token)
        if returncode != 0:
            raise TunnelAgentError(
                f"cloudflared service install failed for tunnel {tunnel_id}: {stderr.strip()}"
            )
        logger.info(f"cloudflared service installed for tunnel {tunnel_id}")

    async def uninstall(self) -> bool:
        return await self._run_service_command("uninstall")

    async def start(self) -> bool:
        return await self._run_service_command("start")

    async def stop(self) -> bool:
        return await self._run_service_command("stop")

    async def is_running(self) -> bool:
        """Check whether a cloudflared process is running on this host."""
        try:
            returncode, _, _ = await self._exec(
                "pgrep",
                "-x",
                os.path.basename(self._binary),
                missing="pgrep not available",
            )
        except TunnelAgentError as e:
            logger.warning(f"Could not check for a running cloudflared: {e}")
            return False
        return returncode == 0
