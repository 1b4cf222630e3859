"""Telegram Bot API adapter: long polling in, chunked text messages out."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

logger = logging.getLogger("subclaw.telegram")

# Telegram rejects messages longer than 4096 chars; keep headroom for entities
MAX_CHUNK = 4096 - 200
POLL_BACKOFF = 5.0


def split_text(text: str, max_len: int) -> list[str]:
    return [text[i:i + max_len] for i in range(0, len(text), max_len)] or [text]


@dataclass
class IncomingMessage:
    chat_id: int
    sender_id: str
    text: str
    message_id: str = ""


def parse_update(update: dict[str, Any], not_before: int = 0) -> Optional[IncomingMessage]:
    """Extract a text message from an update, or ``None`` for anything else.

    Messages dated before *not_before* (epoch seconds) are dropped so a
    restart does not replay commands queued while the bot was offline.
    """
    message = update.get("message") or update.get("edited_message")
    if not isinstance(message, dict):
        return None
    if not_before and message.get("date", 0) and message["date"] < not_before:
        return None
    chat_id = (message.get("chat") or {}).get("id")
    text = message.get("text") or ""
    if chat_id is None or not text:
        return None
    return IncomingMessage(
        chat_id=chat_id,
        sender_id=str((message.get("from") or {}).get("id")),
        text=text,
        message_id=str(message.get("message_id") or ""),
    )


@dataclass
class TelegramAdapter:
    token: str
    transport: Optional[httpx.BaseTransport] = field(default=None, repr=False)
    _polling_thread: Optional[threading.Thread] = field(default=None, init=False, repr=False)
    _stop_event: threading.Event = field(default_factory=threading.Event, init=False, repr=False)

    def _api(self, method: str, timeout: float, **kwargs: Any) -> Optional[dict[str, Any]]:
        """Call one Bot API method; returns the response body or ``None`` on failure."""
        url = f"https://api.telegram.org/bot{self.token}/{method}"
        with httpx.Client(timeout=timeout, transport=self.transport) as client:
            resp = client.request("GET" if "params" in kwargs else "POST", url, **kwargs)
        if resp.status_code != 200:
            logger.error("Telegram %s failed: %s %s", method, resp.status_code, resp.text[:300])
            return None
        data = resp.json()
        if not data.get("ok"):
            logger.error("Telegram %s not ok: %s", method, data)
            return None
        return data

    def send_message(self, chat_id: int, text: str, reply_to: Optional[int] = None) -> None:
        """Send *text*, split into chunks; only the first chunk is threaded as a reply."""
        for idx, chunk in enumerate(split_text(text or "(empty response)", MAX_CHUNK)):
            payload: dict[str, Any] = {"chat_id": chat_id, "text": chunk}
            if reply_to and idx == 0:
                payload["reply_to_message_id"] = reply_to
            if self._api("sendMessage", 15.0, json=payload) is None:
                return

    def delete_webhook(self, drop_pending: bool = True) -> None:
        self._api("deleteWebhook", 10.0, json={"drop_pending_updates": drop_pending})

    def get_updates(self, offset: int = 0, timeout: int = 30) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"timeout": timeout, "allowed_updates": ["message"]}
        if offset:
            params["offset"] = offset
        body = self._api("getUpdates", timeout + 10, params=params)
        return body.get("result", []) if body else []

    def start_polling(self, on_update: Callable[[dict[str, Any]], None]) -> None:
        self.delete_webhook()
        self._polling_thread = threading.Thread(
            target=self._poll_loop, args=(on_update,), daemon=True, name="telegram-poller"
        )
        self._polling_thread.start()

    def _poll_loop(self, on_update: Callable[[dict[str, Any]], None]) -> None:
        offset = 0
        logger.info("Telegram polling started")
        while not self._stop_event.is_set():
            try:
                updates = self.get_updates(offset=offset, timeout=25)
            except httpx.HTTPError as exc:
                logger.error("Telegram polling error: %s", exc)
                self._stop_event.wait(POLL_BACKOFF)
                continue
            for update in updates:
                offset = update.get("update_id", 0) + 1
                try:
                    on_update(update)
                except Exception as exc:  # noqa: BLE001
                    logger.error("Error processing Telegram update %s: %s", offset - 1, exc)

    def stop(self) -> None:
        self._stop_event.set()
