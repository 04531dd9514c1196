"""Sandbox module for running user scripts in a child interpreter."""

from flowforge.sandbox.executor import SandboxConfig, SandboxResult, ScriptSandbox

__all__ = ["SandboxConfig", "SandboxResult", "ScriptSandbox"]
