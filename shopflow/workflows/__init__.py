from __future__ import annotations

from typing import TYPE_CHECKING

from . import booking, campaigns, reminders, visual_quote

if TYPE_CHECKING:
    from ..manager import WorkflowManager


def register_all(manager: "WorkflowManager") -> None:
    """Define every shop workflow and completion handler on ``manager``."""
    for module in (booking, reminders, campaigns, visual_quote):
        module.register(manager)


__all__ = ["booking", "campaigns", "register_all", "reminders", "visual_quote"]
