import io
import logging

import pytest
from rich.console import Console

from filmclub_bot import (
    BotDashboard,
    DashboardEventBuffer,
    DashboardEventHandler,
    LiveAwareConsoleHandler,
    LiveLogState,
    configure_logging,
)


@pytest.fixture
def buffer():
    return DashboardEventBuffer(max_lines=3, dedupe_window_seconds=30, max_message_length=40)


def test_repeated_events_are_collapsed(buffer):
    buffer.add(level="warning", message="VK down", now_ts=100)
    buffer.add(level="WARNING", message="VK  down", now_ts=110)
    buffer.add(level="WARNING", message="VK down", now_ts=200)

    events = buffer.snapshot()
    assert [(event.message, event.count) for event in events] == [("VK down", 2), ("VK down", 1)]


def test_buffer_keeps_latest_lines(buffer):
    for index in range(5):
        buffer.add(level="ERROR", message=f"failure {index}", now_ts=index)

    assert [event.message for event in buffer.snapshot()] == ["failure 2", "failure 3", "failure 4"]


def test_long_messages_are_truncated(buffer):
    buffer.add(level="ERROR", message="x" * 100, now_ts=1)

    message = buffer.snapshot()[0].message
    assert len(message) == 40
    assert message.endswith("...")


def test_secrets_never_reach_the_dashboard(buffer):
    buffer.add(level="ERROR", message="POST /bot123:ABC/sendMessage failed", now_ts=1)

    assert buffer.snapshot()[0].message == "POST /bot***/sendMessage failed"


def test_event_handler_appends_exception_summary(buffer):
    logger = logging.getLogger("filmclub-bot.test-events")
    logger.propagate = False
    handler = DashboardEventHandler(buffer=buffer)
    logger.addHandler(handler)
    try:
        logger.info("ignored")
        try:
            raise ValueError("bad sha")
        except ValueError:
            logger.exception("Push failed")
    finally:
        logger.removeHandler(handler)

    events = buffer.snapshot()
    assert len(events) == 1
    assert events[0].level == "ERROR"
    assert events[0].message == "Push failed (ValueError: bad sha)"


def test_console_handler_is_silent_while_dashboard_is_live():
    state = LiveLogState()
    handler = LiveAwareConsoleHandler(live_state=state, allow_while_live=False)
    stream = io.StringIO()
    handler.setStream(stream)
    record = logging.makeLogRecord({"msg": "hello", "levelno": logging.INFO, "levelname": "INFO"})

    state.set_live_active(True)
    handler.emit(record)
    assert stream.getvalue() == ""

    state.set_live_active(False)
    handler.emit(record)
    assert "hello" in stream.getvalue()


def test_dashboard_render(bot, meeting):
    bot.meetings.replace(meeting)
    bot.subscriptions.subscribe(300)
    events = DashboardEventBuffer(max_lines=5, dedupe_window_seconds=30, max_message_length=160)
    events.add(level="WARNING", message="[VK] VK_ACCESS_TOKEN is not set")
    dashboard = BotDashboard(bot=bot, event_buffer=events, event_lines=3)

    dashboard._refresh_snapshot(force=True)
    console = Console(record=True, width=140, file=io.StringIO())
    console.print(dashboard.render())
    output = console.export_text()

    assert "Odyssey film club bot" in output
    assert "state=Idle" in output
    assert "#42 Stalker" in output
    assert "Next reminder" in output
    assert "disabled" in output
    assert "VK_ACCESS_TOKEN is not set" in output


def test_configure_logging_writes_log_file(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    log_path = tmp_path / "logs" / "bot.log"
    try:
        runtime = configure_logging(
            {"runtime": {"log_file_path": str(log_path), "console_mode": "raw", "log_level": "INFO"}}
        )
        logging.getLogger("filmclub-bot").warning("Spreadsheet mirror disabled")
        for handler in root.handlers:
            handler.flush()

        assert runtime.log_file_path == log_path
        assert "Spreadsheet mirror disabled" in log_path.read_text(encoding="utf-8")
        assert runtime.event_buffer.snapshot()[0].message == "Spreadsheet mirror disabled"
    finally:
        for handler in root.handlers[:]:
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)
        logging.captureWarnings(False)
