"""Remote shell facility used by ssh nodes.

``SshClientShell`` drives the system ``ssh`` binary through an asyncio
subprocess. Host key prompts and password prompts are disabled
(``BatchMode=yes``); authentication uses the private key from the node's
credential when one is attached.
"""

import asyncio
import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod

from pydantic import BaseModel

from flowforge.core.errors import IntegrationError

logger = logging.getLogger(__name__)


class ShellResult(BaseModel):
    stdout: str
    stderr: str
    exit_code: int


class RemoteShell(ABC):
    """Runs one command on a remote host."""

    @abstractmethod
    async def run(
        self,
        host: str,
        command: str,
        port: int = 22,
        username: str | None = None,
        private_key: str | None = None,
    ) -> ShellResult:
        """Execute command on host and return its output."""


class SshClientShell(RemoteShell):
    """RemoteShell backed by the OpenSSH client."""

    def __init__(self, timeout: float = 60.0, ssh_binary: str = "ssh"):
        self.timeout = timeout
        self.ssh_binary = ssh_binary

    async def run(
        self,
        host: str,
        command: str,
        port: int = 22,
        username: str | None = None,
        private_key: str | None = None,
    ) -> ShellResult:
        if not host or host.startswith("-"):
            raise IntegrationError(f"Invalid ssh host: '{host}'")
        binary = shutil.which(self.ssh_binary)
        if binary is None:
            raise IntegrationError(f"ssh client '{self.ssh_binary}' not found on PATH")

        target = f"{username}@{host}" if username else host
        cmd = [binary, "-o", "BatchMode=yes", "-p", str(port)]

        key_path = None
        if private_key:
            fd, key_path = tempfile.mkstemp(prefix="flowforge-key-")
            with os.fdopen(fd, "w") as f:
                f.write(private_key if private_key.endswith("\n") else private_key + "\n")
            os.chmod(key_path, 0o600)
            cmd += ["-i", key_path, "-o", "IdentitiesOnly=yes"]
        # "--" ends option parsing: target and command are never read as options
        cmd += ["--", target, command]

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                proc.kill()
                await proc.wait()
                raise IntegrationError(
                    f"SSH command on {host} timed out after {self.timeout}s"
                ) from e
            except asyncio.CancelledError:
                proc.kill()
                await proc.wait()
                raise
        finally:
            if key_path:
                os.unlink(key_path)

        logger.debug(f"ssh {target} exited with {proc.returncode}")
        return ShellResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=proc.returncode if proc.returncode is not None else -1,
        )
