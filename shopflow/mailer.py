"""Outbound email collaborator."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    async def send(self, to: str, subject: str, body: str) -> None:
        """Deliver one email or raise."""


class LoggingEmailSender:
    """Simulates delivery by logging the message.

    Stands in for a real provider until one is wired up; the latency keeps
    fan-out behaviour realistic.
    """

    def __init__(self, from_address: str, latency_s: float = 0.1) -> None:
        self.from_address = from_address
        self.latency_s = latency_s

    async def send(self, to: str, subject: str, body: str) -> None:
        logger.info(
            f"--- SIMULATED EMAIL ---\nFrom: {self.from_address}\nTo: {to}\n"
            f"Subject: {subject}\n\n{body}\n-----------------------"
        )
        await asyncio.sleep(self.latency_s)
