# tests/test_api.py
import pytest
from fastapi.testclient import TestClient

from marketchat.auth import create_token
from marketchat.main import create_app


@pytest.fixture
def client(settings):
    app = create_app(settings)
    with TestClient(app) as c:
        yield c


def _login(ws, user_id):
    ws.send_json({"event": "user:login", "data": {"userId": user_id}})
    return ws.receive_json()


def _auth(settings, user_id):
    return {"Authorization": f"Bearer {create_token(user_id, settings.jwt_secret)}"}


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "online": 0}


def test_message_roundtrip_over_websocket(client, settings):
    with client.websocket_connect("/ws") as alice:
        assert _login(alice, "alice") == {"event": "users:online", "data": ["alice"]}
        with client.websocket_connect("/ws") as bob:
            assert _login(bob, "bob") == {"event": "users:online", "data": ["alice", "bob"]}
            assert alice.receive_json() == {"event": "users:online", "data": ["alice", "bob"]}
            assert client.get("/health").json()["online"] == 2

            alice.send_json({
                "event": "message:send",
                "data": {"senderId": "alice", "receiverId": "bob", "content": "hi", "conversationId": "c1"},
            })
            sent = alice.receive_json()
            received = bob.receive_json()

            assert sent["event"] == "message:sent"
            assert received["event"] == "message:receive"
            assert sent["data"] == received["data"]
            assert received["data"]["content"] == "hi"
            assert received["data"]["is_read"] is False

            bob.send_json({"event": "message:read", "data": {"messageId": sent["data"]["id"], "userId": "bob"}})
            receipt = alice.receive_json()
            assert receipt["event"] == "message:read"
            assert receipt["data"]["messageId"] == sent["data"]["id"]
            assert receipt["data"]["readBy"] == "bob"

            history = client.get("/messages/history", params={"peer": "bob"}, headers=_auth(settings, "alice"))
            assert history.status_code == 200
            assert [m["content"] for m in history.json()] == ["hi"]
            assert history.json()[0]["is_read"] is True

            by_conversation = client.get("/conversations/c1/messages", headers=_auth(settings, "bob"))
            assert [m["id"] for m in by_conversation.json()] == [sent["data"]["id"]]


def test_malformed_frames_keep_connection_open(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("this is not json")
        assert ws.receive_json()["event"] == "error"

        ws.send_json({"event": "cart:add", "data": {}})
        assert ws.receive_json()["event"] == "error"

        assert _login(ws, "alice") == {"event": "users:online", "data": ["alice"]}


def test_group_creation_and_conversation_list(client, settings):
    with client.websocket_connect("/ws") as alice:
        _login(alice, "alice")
        with client.websocket_connect("/ws") as bob:
            _login(bob, "bob")
            alice.receive_json()  # bob's presence broadcast

            alice.send_json({
                "event": "group:create",
                "data": {"creatorId": "alice", "name": "Project X", "description": "launch", "memberIds": ["bob", "carol"]},
            })
            invited = bob.receive_json()
            created = alice.receive_json()

    assert invited["event"] == "group:invited"
    assert invited["data"]["groupName"] == "Project X"
    assert invited["data"]["invitedBy"] == "alice"
    assert created["event"] == "group:created"
    assert created["data"]["is_group"] is True

    resp = client.get("/conversations", headers=_auth(settings, "carol"))
    assert resp.status_code == 200
    convs = resp.json()
    assert [c["id"] for c in convs] == [created["data"]["id"]]
    assert convs[0]["role"] == "member"


def test_rest_mark_read_notifies_sender(client, settings):
    with client.websocket_connect("/ws") as alice:
        _login(alice, "alice")
        alice.send_json({
            "event": "message:send",
            "data": {"senderId": "alice", "receiverId": "bob", "content": "offline hello"},
        })
        message = alice.receive_json()["data"]

        resp = client.put(f"/messages/{message['id']}/read", headers=_auth(settings, "bob"))
        assert resp.status_code == 200

        receipt = alice.receive_json()
        assert receipt["event"] == "message:read"
        assert receipt["data"]["readBy"] == "bob"


def test_rest_requires_valid_token(client):
    assert client.get("/conversations", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_uploaded_file_is_served(client):
    with client.websocket_connect("/ws") as alice:
        _login(alice, "alice")
        alice.send_json({
            "event": "file:upload",
            "data": {"senderId": "alice", "receiverId": "bob", "fileName": "note.txt",
                     "fileData": "aGVsbG8=", "fileType": "text/plain"},
        })
        message = alice.receive_json()["data"]

    path = message["file_url"].replace("http://chat.test", "")
    resp = client.get(path)
    assert resp.status_code == 200
    assert resp.content == b"hello"


def test_presence_reaches_sockets_that_have_not_logged_in(client):
    with client.websocket_connect("/ws") as watcher:
        with client.websocket_connect("/ws") as alice:
            _login(alice, "alice")
            assert watcher.receive_json() == {"event": "users:online", "data": ["alice"]}
        assert watcher.receive_json() == {"event": "users:online", "data": []}


def test_binary_frame_gets_error_and_connection_survives(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_bytes(b"\x00\x01")
        reply = ws.receive_json()
        assert reply == {"event": "error", "data": {"error": "binary frames are not supported"}}

        assert _login(ws, "alice") == {"event": "users:online", "data": ["alice"]}


def test_rest_send_pushes_to_online_receiver(client, settings):
    with client.websocket_connect("/ws") as bob:
        _login(bob, "bob")
        resp = client.post(
            "/messages",
            json={"receiverId": "bob", "content": "sent over http", "conversationId": "c9"},
            headers=_auth(settings, "alice"),
        )
        assert resp.status_code == 201
        pushed = bob.receive_json()

    body = resp.json()
    assert body["sender_id"] == "alice"
    assert body["conversation_id"] == "c9"
    assert pushed["event"] == "message:receive"
    assert pushed["data"]["id"] == body["id"]

    history = client.get("/messages/history", params={"peer": "alice"}, headers=_auth(settings, "bob"))
    assert [m["content"] for m in history.json()] == ["sent over http"]


def test_rest_send_requires_token(client):
    resp = client.post("/messages", json={"receiverId": "bob", "content": "hi"})
    assert resp.status_code in (401, 403)


def test_open_direct_conversation_is_shared(client, settings):
    first = client.post("/conversations", json={"userId": "bob"}, headers=_auth(settings, "alice"))
    second = client.post("/conversations", json={"userId": "alice"}, headers=_auth(settings, "bob"))

    assert first.status_code == 200
    assert second.json()["id"] == first.json()["id"]
    assert first.json()["is_group"] is False

    for user in ("alice", "bob"):
        convs = client.get("/conversations", headers=_auth(settings, user)).json()
        assert [(c["id"], c["role"]) for c in convs] == [(first.json()["id"], "member")]


def test_file_download_requires_token(client):
    assert client.get("/files/0123456789abcdef01234567").status_code in (401, 403)
