"""Direct method (RPC) request and response models.

Method bodies are JSON on the wire. Requests whose body is not valid JSON
keep the raw text so handlers can still look at it.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CommandInvocation(BaseModel):
    """A named method call delivered by the control plane."""

    model_config = ConfigDict(frozen=True)

    name: str
    payload: Any = None
    request_id: str | None = Field(default=None, description="Transport correlation id")

    @classmethod
    def from_wire(cls, name: str, body: bytes, request_id: str | None = None) -> CommandInvocation:
        """Build an invocation from a raw method body."""
        text = body.decode("utf-8", errors="replace").strip()
        payload: Any = None
        if text:
            try:
                payload = json.loads(text)
            except json.JSONDecodeError:
                payload = text
        return cls(name=name, payload=payload, request_id=request_id)

    @property
    def payload_json(self) -> str:
        """Payload rendered as JSON text, for logs."""
        return json.dumps(self.payload, separators=(",", ":"), default=str)


class CommandResponse(BaseModel):
    """Status code plus JSON payload returned to the method caller."""

    model_config = ConfigDict(frozen=True)

    status: int
    payload: Any = None

    def to_wire(self) -> bytes:
        return json.dumps(self.payload, separators=(",", ":"), default=str).encode("utf-8")
