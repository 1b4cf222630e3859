from __future__ import annotations

from subclaw.core.logging_config import get_activity_log_path
from subclaw.core.notifier import ChannelNotifier, LogNotifier
from subclaw.core.tasks import Destination


class FakeTelegram:
    def __init__(self, fail: bool = False) -> None:
        self.sent = []
        self.fail = fail

    def send_message(self, chat_id, text, reply_to=None):
        if self.fail:
            raise ConnectionError("offline")
        self.sent.append((chat_id, text, reply_to))


def _activity() -> str:
    with open(get_activity_log_path(), encoding="utf-8") as handle:
        return handle.read()


def test_log_notifier_writes_activity() -> None:
    LogNotifier().notify(Destination(channel="slack", target="C1"), "hello there")
    assert "[slack:C1] hello there" in _activity()


def test_telegram_destination_routed() -> None:
    telegram = FakeTelegram()
    notifier = ChannelNotifier(telegram, owner_chat_id="7")
    notifier.notify(Destination(channel="telegram", target="123", reply_to="55"), "done")
    assert telegram.sent == [(123, "done", 55)]


def test_untargeted_goes_to_owner() -> None:
    telegram = FakeTelegram()
    ChannelNotifier(telegram, owner_chat_id="7").notify(Destination(), "ping")
    assert telegram.sent == [(7, "ping", None)]


def test_other_channel_only_logged() -> None:
    telegram = FakeTelegram()
    ChannelNotifier(telegram, owner_chat_id="7").notify(Destination(channel="slack", target="C1"), "x")
    assert telegram.sent == []
    assert "[slack:C1] x" in _activity()


def test_send_failure_is_swallowed() -> None:
    ChannelNotifier(FakeTelegram(fail=True)).notify(Destination(channel="telegram", target="1"), "x")
