"""External services consumed by integration nodes."""

from flowforge.integrations.model_provider import (
    ModelProvider,
    ModelRequest,
    ModelResponse,
    OpenAICompatibleProvider,
)
from flowforge.integrations.remote_shell import RemoteShell, ShellResult, SshClientShell

__all__ = [
    "ModelProvider",
    "ModelRequest",
    "ModelResponse",
    "OpenAICompatibleProvider",
    "RemoteShell",
    "ShellResult",
    "SshClientShell",
]
