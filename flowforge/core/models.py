"""Data models shared by the engine.

Uses Pydantic for the items that flow along edges, run records, credentials
and conversational memory.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class RunStatus(str, Enum):
    """Status of a workflow run record."""

    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


# --- Items ---


class BinaryData(BaseModel):
    """Named binary attachment carried next to an item's JSON payload."""

    data: str  # base64
    mime_type: str = "application/octet-stream"
    file_name: str | None = None


class ExecutionItem(BaseModel):
    """Unit of data flowing along every edge.

    The payload is exposed as ``payload`` in Python and serialized as ``json``.
    """

    model_config = ConfigDict(populate_by_name=True)

    payload: dict[str, Any] = Field(default_factory=dict, alias="json")
    binary: dict[str, BinaryData] | None = None
    paired_item: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def wrap_items(data: Any) -> list[ExecutionItem]:
    """Wrap an arbitrary value as a batch of items.

    A list becomes one item per element (paired to its index), a dict becomes a
    single item and any other value is stored under ``value``.
    """
    if isinstance(data, list):
        items = []
        for index, element in enumerate(data):
            if isinstance(element, ExecutionItem):
                items.append(element)
                continue
            payload = element if isinstance(element, dict) else {"value": element}
            items.append(ExecutionItem(json=payload, paired_item=index))
        return items
    if isinstance(data, ExecutionItem):
        return [data]
    if isinstance(data, dict):
        return [ExecutionItem(json=data)]
    return [ExecutionItem(json={"value": data})]


# --- Run records ---


class RunRecord(BaseModel):
    """One entry of the execution log, created per workflow run."""

    id: str
    workflow_id: str
    workflow_name: str
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime = Field(default_factory=utc_now)
    stopped_at: datetime | None = None
    duration: float | None = None  # seconds
    error: str | None = None
    data_snapshot: dict[str, list[list[ExecutionItem]]] = Field(default_factory=dict)

    def finish(self, status: RunStatus, error: str | None = None) -> None:
        self.status = status
        self.error = error
        self.stopped_at = utc_now()
        self.duration = (self.stopped_at - self.started_at).total_seconds()


# --- Credentials and memory ---


class Credential(BaseModel):
    """Secret bundle referenced by id from integration nodes."""

    id: str
    name: str
    type: Literal["api-key", "ssh", "database", "oauth2"]
    secrets: dict[str, Any] = Field(default_factory=dict)
    status: Literal["valid", "invalid", "untested"] = "untested"
    updated_at: datetime = Field(default_factory=utc_now)

    def bearer_token(self) -> str | None:
        """Token usable in an ``Authorization: Bearer`` header, if any."""
        for key in ("access_token", "api_key", "token"):
            value = self.secrets.get(key)
            if value:
                return str(value)
        return None


class MemoryMessage(BaseModel):
    """Role-tagged entry of a session memory buffer."""

    role: Literal["user", "assistant", "system"] = "user"
    content: str
    timestamp: datetime = Field(default_factory=utc_now)
