import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import ORIGIN


def connect(client):
    return client.websocket_connect("/ws", headers={"origin": ORIGIN})


def command(ws, name, **data):
    ws.send_json({"command": name, "data": data})


def test_connection_established(client):
    with connect(client) as ws:
        event = ws.receive_json()
        assert event["command"] == "connection-established"
        assert event["data"]["connectionId"]


def test_disallowed_origin_is_rejected(client):
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/ws", headers={"origin": "http://evil.example"}):
            pass
    assert excinfo.value.code == 1008


def test_missing_origin_is_rejected(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws"):
            pass


def test_binary_frames_are_refused(client):
    with connect(client) as ws:
        ws.receive_json()
        ws.send_bytes(b"\x00\x01")
        event = ws.receive_json()
        assert event["command"] == "error"
        assert event["data"]["message"] == "Only text messages are supported"


def test_invalid_json_frame(client):
    with connect(client) as ws:
        ws.receive_json()
        ws.send_text("{oops")
        assert ws.receive_json()["data"]["message"] == "Invalid message format"

        # Connection is still usable
        command(ws, "join", username="carol")
        assert ws.receive_json()["command"] == "join-success"


def test_chat_session_end_to_end(client):
    with connect(client) as c1:
        c1.receive_json()
        command(c1, "join", username="carol")
        joined = c1.receive_json()
        assert joined["command"] == "join-success"
        assert joined["data"]["messages"] == []
        assert joined["data"]["onlineUsers"] == ["carol"]

        with connect(client) as c2:
            c2.receive_json()
            command(c2, "join", username="dave")
            joined = c2.receive_json()
            assert joined["command"] == "join-success"
            assert joined["data"]["onlineUsers"] == ["carol", "dave"]

            event = c1.receive_json()
            assert event["command"] == "user-joined"
            assert event["data"]["username"] == "dave"

            command(c1, "send-message", content="hi")
            for ws in (c1, c2):
                event = ws.receive_json()
                assert event["command"] == "new-message"
                message = event["data"]["message"]
                assert (message["author"], message["content"]) == ("carol", "hi")
                assert (message["likes"], message["dislikes"]) == (0, 0)

            command(c2, "like-message", messageId=message["id"])
            for ws in (c1, c2):
                event = ws.receive_json()
                assert event["command"] == "message-updated"
                assert event["data"]["message"]["likes"] == 1

            c2.close()
            event = c1.receive_json()
            assert event["command"] == "user-left"
            assert event["data"]["username"] == "dave"
            assert event["data"]["onlineUsers"] == ["carol"]


def test_name_taken_across_connections(client):
    with connect(client) as c1, connect(client) as c2:
        c1.receive_json()
        c2.receive_json()
        command(c1, "join", username="Carol")
        c1.receive_json()
        # Anonymous connections still hear about joins
        assert c2.receive_json()["command"] == "user-joined"

        command(c2, "join", username="carol")
        event = c2.receive_json()
        assert event["command"] == "error"
        assert event["data"]["message"] == "Username already taken"
