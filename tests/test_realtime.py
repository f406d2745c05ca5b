# tests/test_realtime.py
"""
測試即時頻道訊息解碼與連線失敗處理
"""

import aiohttp
import pytest

from core.errors import TransportError
from core.models import ChangeKind
from core.realtime import RealtimeChannel, decode_change


def change_message(kind, record=None, old_record=None):
    return {
        "topic": "realtime:public:files",
        "event": "postgres_changes",
        "payload": {
            "data": {
                "type": kind,
                "table": "files",
                "schema": "public",
                "record": record,
                "old_record": old_record,
            },
            "ids": [1],
        },
        "ref": None,
    }


def test_decode_insert():
    n = decode_change(change_message(
        "INSERT",
        record={"id": 5, "workspace_id": "ws1", "original_path": "q3/report.md", "filename": "report.md"},
    ))

    assert n.kind is ChangeKind.INSERT
    assert n.document_id == "5"
    assert n.workspace_id == "ws1"
    assert n.path == "q3/report.md"


def test_decode_delete_uses_old_record():
    n = decode_change(change_message(
        "DELETE",
        old_record={"id": 9, "workspace_id": "ws1", "filename": "gone.md"},
    ))

    assert n.kind is ChangeKind.DELETE
    assert n.path == "gone.md"
    assert n.document_id == "9"


def test_non_change_messages_are_ignored():
    assert decode_change({"event": "phx_reply", "payload": {"status": "ok"}}) is None
    assert decode_change({"event": "presence_state", "payload": {}}) is None


def test_unknown_kind_is_rejected():
    with pytest.raises(ValueError):
        decode_change(change_message("TRUNCATE"))


def test_websocket_url():
    channel = RealtimeChannel("https://abc.supabase.co/", "k3y", "files")

    assert channel.websocket_url == "wss://abc.supabase.co/realtime/v1/websocket?apikey=k3y&vsn=1.0.0"
    assert channel.topic == "realtime:public:files"
    assert not channel.is_open


@pytest.mark.asyncio
async def test_open_failure_raises_transport_error():
    channel = RealtimeChannel("http://localhost:1", "k", "files", connect_attempts=1)

    async def refuse():
        raise aiohttp.ClientConnectionError("refused")

    channel._connect = refuse

    with pytest.raises(TransportError):
        await channel.open("workspace_id=eq.ws1", lambda n: None)
    assert not channel.is_open
