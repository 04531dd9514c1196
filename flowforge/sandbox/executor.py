"""Script sandbox for code nodes.

Every invocation starts a fresh interpreter running ``runner.py`` as an
asyncio subprocess, so no state survives between calls and a runaway script
can be killed when its wall-clock budget expires.

NOTE: This isolates variables, not capabilities. It is not a security
boundary for untrusted code.
"""

import asyncio
import json
import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

RUNNER_PATH = Path(__file__).with_name("runner.py")


class SandboxResult(BaseModel):
    """Result of a script execution."""

    ok: bool
    output: Any = None
    error: str | None = None
    timed_out: bool = False
    logs: str = ""
    duration: float = 0.0


def _truncate_output(output: str, max_bytes: int) -> str:
    """Truncate output to max_bytes, adding truncation notice if needed.

    Prevents downstream memory issues from unbounded script output.
    """
    if len(output.encode("utf-8", errors="replace")) <= max_bytes:
        return output

    # Truncate by bytes, ensuring we don't cut in the middle of a UTF-8 sequence
    truncated = output.encode("utf-8", errors="replace")[:max_bytes].decode(
        "utf-8", errors="ignore"
    )
    return truncated + f"\n\n[OUTPUT TRUNCATED - exceeded {max_bytes} bytes]"


@dataclass
class SandboxConfig:
    """Configuration for the script sandbox."""

    timeout: float = 2.0  # seconds of wall-clock time per invocation
    max_log_bytes: int = 64 * 1024
    python_executable: str = sys.executable


class ScriptSandbox:
    """Runs user scripts in a child interpreter with a timeout."""

    def __init__(self, config: SandboxConfig | None = None):
        self.config = config or SandboxConfig()

    async def run(self, script: str, item_json: dict[str, Any]) -> SandboxResult:
        """Execute script with ``$json`` bound to a copy of item_json."""
        started = time.monotonic()
        request = json.dumps({"script": script, "json": item_json}, default=str).encode()

        # -I: isolated mode, ignores PYTHON* env vars and user site-packages
        proc = await asyncio.create_subprocess_exec(
            self.config.python_executable,
            "-I",
            str(RUNNER_PATH),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(request), timeout=self.config.timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning(f"Script killed after {self.config.timeout}s")
            return SandboxResult(
                ok=False,
                error=f"Script execution timed out after {self.config.timeout}s",
                timed_out=True,
                duration=time.monotonic() - started,
            )
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        duration = time.monotonic() - started
        lines = stdout.decode("utf-8", errors="replace").strip().splitlines()
        if not lines:
            detail = _truncate_output(
                stderr.decode("utf-8", errors="replace").strip(), self.config.max_log_bytes
            )
            return SandboxResult(
                ok=False,
                error=f"Script runner exited with code {proc.returncode}: {detail}",
                duration=duration,
            )

        try:
            response = json.loads(lines[-1])
        except json.JSONDecodeError:
            return SandboxResult(
                ok=False, error="Script runner returned malformed output", duration=duration
            )

        logs = _truncate_output(response.get("logs", ""), self.config.max_log_bytes)
        if not response.get("ok"):
            return SandboxResult(
                ok=False, error=response.get("error"), logs=logs, duration=duration
            )
        return SandboxResult(ok=True, output=response.get("output"), logs=logs, duration=duration)
