import json
from pathlib import Path
from types import SimpleNamespace

import pytest

import filmclub_bot
from filmclub_bot import (
    AdminRegistry,
    FilmClubBot,
    LocalRecordStore,
    MeetingRecord,
    TransportError,
    normalize_config,
)


ADMIN_ID = 100
USER_ID = 200


class FakeTransport:
    """Records every Bot API call; chat ids listed in `failures` raise instead."""

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.photo_failures = {}

    async def _record(self, method, chat_id, **kwargs):
        self.calls.append((method, chat_id, kwargs))
        if method == "send_photo" and str(chat_id) in self.photo_failures:
            raise self.photo_failures[str(chat_id)]
        error = self.failures.get(str(chat_id))
        if error is not None:
            raise error
        return {"message_id": len(self.calls)}

    async def send_message(self, chat_id, text, *, reply_markup=None, parse_mode="HTML"):
        return await self._record("send_message", chat_id, text=text, reply_markup=reply_markup)

    async def send_photo(self, chat_id, photo, *, caption=None, reply_markup=None, parse_mode="HTML"):
        return await self._record(
            "send_photo", chat_id, photo=photo, caption=caption, reply_markup=reply_markup
        )

    async def send_animation(self, chat_id, animation, *, caption=None, reply_markup=None, parse_mode="HTML"):
        return await self._record(
            "send_animation", chat_id, animation=animation, caption=caption, reply_markup=reply_markup
        )

    async def edit_message_text(self, chat_id, message_id, text, *, reply_markup=None, parse_mode="HTML"):
        return await self._record(
            "edit_message_text", chat_id, message_id=message_id, text=text, reply_markup=reply_markup
        )

    async def answer_callback_query(self, callback_query_id, text=None, *, show_alert=False):
        self.calls.append(("answer_callback_query", None, {"text": text, "show_alert": show_alert}))
        return True

    async def delete_message(self, chat_id, message_id):
        return await self._record("delete_message", chat_id, message_id=message_id)

    async def send_chat_action(self, chat_id, action):
        return await self._record("send_chat_action", chat_id, action=action)

    async def get_updates(self, offset, timeout):
        return []

    def sent(self, method=None, chat_id=None):
        return [
            (name, chat, kwargs)
            for name, chat, kwargs in self.calls
            if (method is None or name == method) and (chat_id is None or str(chat) == str(chat_id))
        ]

    def texts(self, chat_id=None):
        return [
            kwargs.get("text") or kwargs.get("caption") or ""
            for name, chat, kwargs in self.sent(chat_id=chat_id)
            if name != "answer_callback_query"
        ]

    def answers(self):
        return [kwargs for name, _, kwargs in self.calls if name == "answer_callback_query"]

    def last_markup(self):
        for name, _, kwargs in reversed(self.calls):
            if kwargs.get("reply_markup") is not None:
                return kwargs["reply_markup"]
        return None


class FakeContentClient:
    def __init__(self):
        self.history_pushes = []
        self.meeting_pushes = []
        self.error = None

    async def push_history(self, entries):
        if self.error is not None:
            raise self.error
        self.history_pushes.append(entries)
        return {}

    async def push_next_meeting(self, payload):
        if self.error is not None:
            raise self.error
        self.meeting_pushes.append(payload)
        return {}


class FakeSheetsClient:
    def __init__(self):
        self.rows = []
        self.error = None

    async def append_history_entry(self, entry):
        if self.error is not None:
            raise self.error
        self.rows.append(entry.to_sheet_row())


class FakeSocialClient:
    def __init__(self):
        self.posts = []
        self.error = None

    async def publish_post(self, message, attachments=None):
        if self.error is not None:
            raise self.error
        self.posts.append(message)
        return 77

    def post_url(self, post_id):
        return f"https://vk.com/wall-1_{post_id}"


class FakeResponse:
    def __init__(self, status_code, payload=None, headers=None):
        self.status_code = status_code
        self.headers = headers or {}
        self._payload = payload
        self.text = json.dumps(payload) if payload is not None else ""

    def json(self):
        return self._payload


class ScriptedRequests:
    """Stand-in for requests.request that replays canned responses in order."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, method, url, **kwargs):
        self.calls.append(SimpleNamespace(method=method, url=url, **kwargs))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def message_update(text, user_id=ADMIN_ID, chat_id=None, update_id=1):
    return {
        "update_id": update_id,
        "message": {
            "message_id": 10,
            "chat": {"id": chat_id or user_id},
            "from": {"id": user_id, "first_name": "Anna"},
            "text": text,
        },
    }


def callback_update(data, user_id=ADMIN_ID, chat_id=None, update_id=2):
    return {
        "update_id": update_id,
        "callback_query": {
            "id": f"cb-{update_id}",
            "from": {"id": user_id},
            "data": data,
            "message": {"message_id": 50, "chat": {"id": chat_id or user_id}},
        },
    }


def blocked_error():
    return TransportError("sendMessage", 403, "Forbidden: bot was blocked by the user")


@pytest.fixture
def updates():
    return SimpleNamespace(
        message=message_update,
        callback=callback_update,
        blocked_error=blocked_error,
        ADMIN_ID=ADMIN_ID,
        USER_ID=USER_ID,
    )


@pytest.fixture
def config(tmp_path):
    return normalize_config(
        {
            "runtime": {"data_dir": str(tmp_path / "data")},
            "telegram": {"broadcast_rate_limit": {"requests": 1000, "per_seconds": 1}},
            "github": {"retry_delay_seconds": 0},
        }
    )


@pytest.fixture
def store(config):
    return LocalRecordStore(Path(config["runtime"]["data_dir"]))


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def content_client():
    return FakeContentClient()


@pytest.fixture
def sheets_client():
    return FakeSheetsClient()


@pytest.fixture
def social_client():
    return FakeSocialClient()


@pytest.fixture
def admins():
    return AdminRegistry(env_file=None, initial=[ADMIN_ID])


@pytest.fixture
def bot(config, transport, store, admins, content_client, sheets_client, social_client):
    return FilmClubBot(
        config=config,
        transport=transport,
        store=store,
        admins=admins,
        content_client=content_client,
        sheets_client=sheets_client,
        social_client=social_client,
    )


@pytest.fixture
def meeting():
    return MeetingRecord(
        date="20.06.2025",
        time="19:00",
        place="Cafe Odyssey",
        film="Stalker",
        director="Andrei Tarkovsky",
        genre="Drama",
        country="USSR",
        year=1979,
        poster="",
        discussion_number=42,
        cast="Alexander Kaidanovsky",
    )


@pytest.fixture
def scripted_requests(monkeypatch):
    def _install(*responses):
        fake = ScriptedRequests(responses)
        monkeypatch.setattr(filmclub_bot.requests, "request", fake)
        return fake

    return _install


@pytest.fixture
def fake_response():
    return FakeResponse
