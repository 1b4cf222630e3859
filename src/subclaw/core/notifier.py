"""Fire-and-forget delivery of task progress to whoever spawned it."""
from __future__ import annotations

import logging
from typing import Optional, Protocol

from subclaw.core.logging_config import append_to_file, get_activity_log_path
from subclaw.core.tasks import Destination
from subclaw.integrations.telegram import TelegramAdapter

logger = logging.getLogger("subclaw.notifier")


class Notifier(Protocol):
    def notify(self, destination: Destination, text: str) -> None: ...


class LogNotifier:
    """Writes notifications to the activity log only."""

    def notify(self, destination: Destination, text: str) -> None:
        target = f"{destination.channel}:{destination.target}" if destination.channel else "-"
        logger.info("notify %s: %s", target, text[:200])
        append_to_file(get_activity_log_path(), f"[{target}] {text}")


class ChannelNotifier(LogNotifier):
    """Routes to the Telegram adapter; other destinations fall back to the log.

    Destinations without a target go to the owner chat when one is configured.
    """

    def __init__(self, telegram: Optional[TelegramAdapter] = None, owner_chat_id: Optional[str] = None) -> None:
        self.telegram = telegram
        self.owner_chat_id = owner_chat_id

    def notify(self, destination: Destination, text: str) -> None:
        super().notify(destination, text)
        if self.telegram is None:
            return
        chat_id = None
        if destination.channel == "telegram" and destination.target:
            chat_id = destination.target
        elif not destination.target and self.owner_chat_id:
            chat_id = self.owner_chat_id
        if chat_id is None:
            return
        try:
            reply_to = int(destination.reply_to) if destination.reply_to else None
            self.telegram.send_message(int(chat_id), text, reply_to=reply_to)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Telegram notify to %s failed: %s", chat_id, exc)
