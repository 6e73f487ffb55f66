"""Collaborators shared by workflow steps and completion handlers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .ai import ContentGenerator, PhotoFetcher
    from .db import ShopStore
    from .mailer import EmailSender


@dataclass
class ShopServices:
    """Dependency container handed to every step and completion handler.

    Workflows reach the store, email and AI collaborators only through this
    object, so tests can swap any of them for fakes.
    """

    store: "ShopStore"
    email: "EmailSender"
    content: Optional["ContentGenerator"] = None
    photos: Optional["PhotoFetcher"] = None
