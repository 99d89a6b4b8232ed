"""Inbound cloud-to-device message model."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from edgetwin.exceptions import MalformedInboundMessage


class InboundMessage(BaseModel):
    """An opaque message pushed to the device, outside methods and twin updates."""

    model_config = ConfigDict(frozen=True)

    body: bytes
    topic: str = ""
    message_id: str | None = None
    properties: dict[str, str] = Field(default_factory=dict)

    def text(self, encoding: str = "utf-8") -> str:
        """Decode the body.

        Raises
        ------
        MalformedInboundMessage
            If the body is not valid in *encoding*.
        """
        try:
            return self.body.decode(encoding)
        except UnicodeDecodeError as exc:
            raise MalformedInboundMessage(
                f"Inbound message body is not valid {encoding}: {exc.reason}",
                message_id=self.message_id,
            ) from exc
