import json
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, ValidationError

from spin_bridge.config import settings
from spin_bridge.errors import ChannelMismatch
from spin_bridge.logging_config import get_logger
from spin_bridge.schemas.messages import Envelope, MessageType

logger = get_logger(__name__)

Sender = Callable[[dict], Awaitable[None]]


class ChannelTransport:
    """
    Namespaced envelope codec over a point-to-point message channel.

    No delivery or ordering guarantee is added here; the snapshot request is the
    recovery path for anything lost.
    """

    def __init__(self, send: Sender, namespace: Optional[str] = None):
        self._send = send
        self.namespace = namespace or settings.message_namespace

    def encode(self, message_type: MessageType, payload: Union[BaseModel, dict, None] = None, request_id: Optional[str] = None) -> dict:
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")
        envelope = Envelope(namespace=self.namespace, type=message_type, payload=payload or {}, requestId=request_id)
        return envelope.model_dump(mode="json", exclude_none=True)

    async def send(self, message_type: MessageType, payload: Union[BaseModel, dict, None] = None, request_id: Optional[str] = None) -> None:
        await self._send(self.encode(message_type, payload, request_id))

    async def send_raw(self, message: dict) -> None:
        await self._send(message)

    def check_namespace(self, raw: Any) -> dict:
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except ValueError as exc:
                raise ChannelMismatch("message is not JSON") from exc
        if not isinstance(raw, dict) or "namespace" not in raw:
            raise ChannelMismatch("message has no namespace")
        if raw["namespace"] != self.namespace:
            raise ChannelMismatch(f"namespace {raw['namespace']!r} does not match {self.namespace!r}")
        return raw

    def decode(self, raw: Any) -> Optional[Envelope]:
        """
        Parse a raw channel message. Foreign traffic and unknown types return None.
        """
        try:
            message = self.check_namespace(raw)
        except ChannelMismatch as exc:
            logger.debug("Ignoring foreign channel message: %s", exc.message)
            return None
        try:
            return Envelope.model_validate(message)
        except ValidationError as exc:
            logger.debug("Ignoring malformed envelope: type=%s error=%s", message.get("type"), exc)
            return None
