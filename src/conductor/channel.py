from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections import Counter
from typing import Any

from conductor.models import Message

logger = logging.getLogger(__name__)


class MessageChannel:
    """Addressed role-to-role messaging with an append-only log.

    Each recipient owns one FIFO inbox, so messages from a given sender reach a
    given recipient in send order. Receiving removes messages from the inbox;
    each message is handed out at most once and is marked delivered only then.
    """

    def __init__(self) -> None:
        self._inboxes: dict[str, asyncio.Queue[Message]] = {}
        self._sequence = 0
        self.log: list[Message] = []
        self.closed = False

    def open(self, role: str) -> RolePort:
        if role not in self._inboxes:
            self._inboxes[role] = asyncio.Queue()
        return RolePort(self, role)

    def send(self, sender: str, recipient: str, payload: Any) -> Message:
        self._sequence += 1
        inbox = None if self.closed else self._inboxes.get(recipient)
        message = Message(
            sender=sender,
            recipient=recipient,
            payload=payload,
            sequence=self._sequence,
        )
        self.log.append(message)
        if inbox is None:
            logger.warning("Undeliverable message %s -> %s", sender, recipient)
        else:
            inbox.put_nowait(message)
        return message

    def receive(self, recipient: str) -> list[Message]:
        inbox = self._inboxes.get(recipient)
        if inbox is None:
            return []
        messages: list[Message] = []
        while not inbox.empty():
            message = inbox.get_nowait()
            message.delivered = True
            messages.append(message)
        return messages

    async def wait(self, recipient: str, timeout: float | None = None) -> Message | None:
        inbox = self._inboxes.get(recipient)
        if inbox is None or self.closed:
            return None
        try:
            message = await asyncio.wait_for(inbox.get(), timeout=timeout)
        except TimeoutError:
            return None
        message.delivered = True
        return message

    def close(self) -> None:
        self.closed = True
        self._inboxes.clear()

    def entries(self) -> list[dict[str, Any]]:
        return [message.to_dict() for message in self.log]

    def digest(self) -> dict[str, Any]:
        pairs = Counter(f"{message.sender}->{message.recipient}" for message in self.log)
        serialized = json.dumps(self.entries(), ensure_ascii=False, sort_keys=True, default=str)
        return {
            "count": len(self.log),
            "undelivered": sum(1 for message in self.log if not message.delivered),
            "pairs": dict(sorted(pairs.items())),
            "sha256": hashlib.sha256(serialized.encode("utf-8")).hexdigest(),
        }


class RolePort:
    """One role's view of the channel."""

    def __init__(self, channel: MessageChannel, role: str) -> None:
        self.channel = channel
        self.role = role

    def send(self, recipient: str, payload: Any) -> Message:
        return self.channel.send(self.role, recipient, payload)

    def receive(self) -> list[Message]:
        return self.channel.receive(self.role)

    async def wait_message(self, timeout: float | None = None) -> Message | None:
        return await self.channel.wait(self.role, timeout=timeout)
