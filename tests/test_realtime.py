import asyncio

import pytest
from starlette.websockets import WebSocketDisconnect

from libraryhub.events import UserTopic
from libraryhub.models import Notification, NotificationType, Role, User
from libraryhub.security import create_access_token
from libraryhub.services.realtime import Connection, ConnectionState, NotificationHub, PresenceRegistry


class FakeWebSocket:
    def __init__(self):
        self.sent = []
        self.closed_with = None

    async def send_json(self, data):
        self.sent.append(data)

    async def close(self, code=1000, reason=None):
        self.closed_with = code

    def events(self):
        return [frame["event"] for frame in self.sent]


def make_user(user_id: str, role: Role = Role.USER) -> User:
    return User(id=user_id, name=user_id.title(), email=f"{user_id}@example.com", password_hash="x",
                membership_id="LIB202500001", role=role)


def make_connection(user: User) -> Connection:
    connection = Connection(FakeWebSocket())
    connection.authenticate(user)
    return connection


def make_notification(user_id: str) -> Notification:
    return Notification(id="n1", user_id=user_id, type=NotificationType.SYSTEM, message="Hello")


# --- Presence registry ---
def test_presence_tracks_first_and_last_connection():
    presence = PresenceRegistry()

    assert presence.add("ada", "c1") is True
    assert presence.add("ada", "c2") is False
    assert presence.is_online("ada")
    assert presence.connections_for("ada") == {"c1", "c2"}

    assert presence.remove("ada", "c1") is False
    assert presence.remove("ada", "c1") is False
    assert presence.remove("ada", "c2") is True
    assert not presence.is_online("ada")
    assert presence.online_users() == []


# --- Connection state machine ---
def test_connection_state_transitions():
    connection = Connection(FakeWebSocket())
    assert connection.state == ConnectionState.CONNECTING

    with pytest.raises(RuntimeError):
        connection.activate()
    with pytest.raises(RuntimeError):
        asyncio.run(connection.send("ping", None))

    connection.authenticate(make_user("ada"))
    assert connection.state == ConnectionState.AUTHENTICATED
    with pytest.raises(RuntimeError):
        connection.authenticate(make_user("ben"))

    connection.activate()
    assert connection.state == ConnectionState.ACTIVE
    connection.close()
    assert connection.state == ConnectionState.CLOSED


# --- Hub ---
def test_register_acks_and_announces_presence_once():
    hub = NotificationHub(PresenceRegistry())
    ada = make_connection(make_user("ada"))
    ben = make_connection(make_user("ben"))
    ben_again = make_connection(make_user("ben"))

    async def scenario():
        await hub.register(ada)
        await hub.register(ben)
        await hub.register(ben_again)

    asyncio.run(scenario())

    assert ada.websocket.events() == ["connection:ack", "user:online"]
    assert ada.websocket.sent[1]["data"] == "ben"
    assert ben.websocket.sent[0] == {"event": "connection:ack", "data": {"connectionId": ben.id, "userId": "ben"}}
    assert ben.websocket.events() == ["connection:ack"]
    assert hub.presence.connections_for("ben") == {ben.id, ben_again.id}


def test_offline_is_announced_when_last_connection_closes():
    hub = NotificationHub(PresenceRegistry())
    ada = make_connection(make_user("ada"))
    ben = make_connection(make_user("ben"))
    ben_again = make_connection(make_user("ben"))

    async def scenario():
        for connection in (ada, ben, ben_again):
            await hub.register(connection)
        await hub.unregister(ben)
        assert "user:offline" not in ada.websocket.events()
        await hub.unregister(ben_again)

    asyncio.run(scenario())

    assert ada.websocket.sent[-1] == {"event": "user:offline", "data": "ben"}
    assert ben_again.state == ConnectionState.CLOSED
    assert hub.connection_count == 1


def test_published_notification_reaches_only_the_owner():
    hub = NotificationHub(PresenceRegistry())
    ada = make_connection(make_user("ada"))
    ben = make_connection(make_user("ben"))

    async def scenario():
        await hub.register(ada)
        await hub.register(ben)
        hub.publish_notification(UserTopic("ada"), make_notification("ada"))
        hub.publish_notification(UserTopic("nobody"), make_notification("nobody"))
        await asyncio.sleep(0.01)

    asyncio.run(scenario())

    received = [f for f in ada.websocket.sent if f["event"] == "notification:receive"]
    assert [f["data"]["id"] for f in received] == ["n1"]
    assert "notification:receive" not in ben.websocket.events()


def test_scheduled_deliveries_are_tracked_until_done():
    hub = NotificationHub(PresenceRegistry())
    ada = make_connection(make_user("ada"))

    async def scenario():
        await hub.register(ada)
        hub.publish_notification(UserTopic("ada"), make_notification("ada"))
        pending = len(hub._tasks)
        await asyncio.sleep(0.01)
        return pending

    assert asyncio.run(scenario()) == 1
    assert hub._tasks == set()
    assert ada.websocket.events()[-1] == "notification:receive"


def test_publish_without_a_running_loop_is_dropped():
    hub = NotificationHub(PresenceRegistry())
    hub.publish_notification(UserTopic("ada"), make_notification("ada"))


def test_client_events():
    hub = NotificationHub(PresenceRegistry())
    ada = make_connection(make_user("ada"))
    ben = make_connection(make_user("ben"))
    lena = make_connection(make_user("lena", Role.LIBRARIAN))

    async def scenario():
        for connection in (ada, ben, lena):
            await hub.register(connection)
        for connection in (ada, ben, lena):
            connection.websocket.sent.clear()

        await hub.handle_message(ada, "not a frame")
        await hub.handle_message(ada, {"event": "dance"})
        await hub.handle_message(ada, {"event": "join:room", "data": "book-club"})
        await hub.emit_to_room("book-club", "club:news", "meeting moved")
        await hub.handle_message(ada, {"event": "message:private", "data": {"to": "ben", "message": "hi"}})
        await hub.handle_message(ada, {"event": "book:update", "data": {"id": "b1"}})
        await hub.handle_message(lena, {"event": "notification:send",
                                        "data": {"to": ["ada", "ben"], "notification": {"message": "Due soon"}}})
        await hub.handle_message(lena, {"event": "book:update", "data": {"id": "b1", "availableCopies": 0}})

    asyncio.run(scenario())

    assert ada.websocket.sent[0] == {"event": "error", "data": {"message": "Malformed message"}}
    assert ada.websocket.sent[1] == {"event": "error", "data": {"message": "Unknown event: dance"}}
    assert ada.websocket.sent[2] == {"event": "club:news", "data": "meeting moved"}
    assert ada.websocket.sent[3]["event"] == "error"
    assert ada.websocket.sent[4] == {"event": "notification:receive", "data": {"message": "Due soon"}}
    assert ada.websocket.sent[5] == {"event": "book:updated", "data": {"id": "b1", "availableCopies": 0}}

    assert ben.websocket.sent[0] == {"event": "message:receive", "data": {"from": "ada", "message": "hi"}}
    assert ben.websocket.events()[1:] == ["notification:receive", "book:updated"]
    assert lena.websocket.events() == []


def test_failed_send_is_dropped_without_affecting_others():
    class BrokenWebSocket(FakeWebSocket):
        async def send_json(self, data):
            raise ConnectionError("gone")

    hub = NotificationHub(PresenceRegistry())
    broken = Connection(BrokenWebSocket())
    broken.authenticate(make_user("ada"))
    ben = make_connection(make_user("ben"))

    async def scenario():
        await hub.register(broken)
        await hub.register(ben)
        return await hub.broadcast("book:updated", {"id": "b1"})

    assert asyncio.run(scenario()) == 1
    assert ben.websocket.events()[-1] == "book:updated"


# --- WebSocket endpoint ---
def test_websocket_requires_a_token(client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws"):
            pass
    assert exc.value.code == 1008


def test_websocket_rejects_inactive_users(client, user_service, member):
    user_service.update_user(member.id, {"is_active": False})
    token = create_access_token(member.id)
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(f"/ws?token={token}"):
            pass
    assert exc.value.code == 1008
    assert exc.value.reason == "User not found or inactive"


def test_borrow_is_pushed_to_the_connected_member(client, auth_headers, member, librarian, book):
    token = create_access_token(member.id)
    with client.websocket_connect(f"/ws?token={token}") as ws:
        ack = ws.receive_json()
        assert ack["event"] == "connection:ack"
        assert ack["data"]["userId"] == member.id

        response = client.post(
            "/api/borrowings",
            json={"bookId": book.id, "userId": member.id},
            headers=auth_headers(librarian),
        )
        assert response.status_code == 201

        frames = {}
        for _ in range(2):
            frame = ws.receive_json()
            frames[frame["event"]] = frame["data"]

    assert frames["notification:receive"]["userId"] == member.id
    assert frames["notification:receive"]["type"] == "due_date_reminder"
    assert frames["notification:receive"]["relatedBookId"] == book.id
    assert frames["book:updated"]["availableCopies"] == 1


def test_private_messages_between_connected_users(client, member, other_member):
    with client.websocket_connect(f"/ws?token={create_access_token(member.id)}") as ada:
        assert ada.receive_json()["event"] == "connection:ack"
        with client.websocket_connect(f"/ws?token={create_access_token(other_member.id)}") as ben:
            assert ben.receive_json()["event"] == "connection:ack"
            assert ada.receive_json() == {"event": "user:online", "data": other_member.id}

            ada.send_json({"event": "message:private", "data": {"to": other_member.id, "message": "hi"}})
            assert ben.receive_json() == {"event": "message:receive",
                                          "data": {"from": member.id, "message": "hi"}}

            ben.send_text("{not json")
            assert ben.receive_json() == {"event": "error", "data": {"message": "Malformed message"}}

            ben.send_bytes(b"\x00\x01")
            assert ben.receive_json() == {"event": "error", "data": {"message": "Malformed message"}}

            ben.send_json({"event": "message:private", "data": {"to": member.id, "message": "still here"}})
            assert ada.receive_json() == {"event": "message:receive",
                                          "data": {"from": other_member.id, "message": "still here"}}
