"""Error taxonomy for the execution engine.

Expression failures stay local to the placeholder that produced them. Every
other node-level failure is fatal to the run that raised it.
"""


class FlowForgeError(Exception):
    """Base class for engine errors."""

    pass


class ExpressionError(FlowForgeError):
    """A template expression could not be parsed or evaluated."""

    pass


class NodeError(FlowForgeError):
    """A node handler failed (missing parameter, bad response, parse failure)."""

    def __init__(self, message: str, node_id: str | None = None):
        self.node_id = node_id
        super().__init__(message)


class ValidationError(NodeError):
    """Node output does not match its declared schema."""

    pass


class SandboxError(NodeError):
    """User script raised or exceeded its wall-clock budget."""

    def __init__(self, message: str, node_id: str | None = None, timed_out: bool = False):
        self.timed_out = timed_out
        super().__init__(message, node_id)


class IntegrationError(NodeError):
    """An external service (HTTP, model provider, remote shell) failed."""

    pass


class ConcurrencyError(FlowForgeError):
    """A run was requested while another run is still in flight."""

    pass


class WorkflowValidationError(FlowForgeError):
    """Workflow graph is structurally invalid and cannot be executed."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Invalid workflow graph: {'; '.join(errors)}")


class NotFoundError(FlowForgeError, KeyError):
    """Unknown workflow, node, edge or credential id."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""
