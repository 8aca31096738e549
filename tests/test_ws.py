"""
WebSocket handshake tests

Run through Starlette's TestClient so the app lifespan builds the real hub.
"""

import uuid

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from kindred.core.security import create_access_token
from kindred.main import create_app


@pytest.fixture
def ws_client():
    with TestClient(create_app()) as client:
        yield client


def test_rejects_missing_token(ws_client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with ws_client.websocket_connect("/api/v1/ws"):
            pass
    assert exc.value.code == 1008


def test_rejects_invalid_token(ws_client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with ws_client.websocket_connect("/api/v1/ws?token=not-a-jwt"):
            pass
    assert exc.value.code == 1008


def test_connects_and_reports_errors_to_caller(ws_client):
    user_id = str(uuid.uuid4())
    token = create_access_token({"sub": user_id})
    with ws_client.websocket_connect(f"/api/v1/ws?token={token}") as ws:
        hello = ws.receive_json()
        assert hello["event"] == "connected"
        assert hello["data"]["userId"] == user_id

        ws.send_json({"event": "message:send", "data": {"clientMessageId": "c-1"}})
        frame = ws.receive_json()
        assert frame["event"] == "error"
        assert frame["data"]["code"] == "invalid"
        assert frame["data"]["clientMessageId"] == "c-1"

        ws.send_json({"event": "game:nope:invite", "data": {"matchId": "m"}})
        frame = ws.receive_json()
        assert frame["event"] == "game:nope:error"
        assert frame["data"]["code"] == "notFound"

        ws.send_text("{not json")
        frame = ws.receive_json()
        assert frame["event"] == "error"
        assert frame["data"]["code"] == "invalid"
