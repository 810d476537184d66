"""
WebSocket integration tests using FastAPI TestClient.
Tests: connection, rooms, host leaving, LED relay, spinner end-to-end, bomb game.
"""
import sys
import os

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fastapi.testclient import TestClient
from main import app
from socket_manager import socket_manager


@pytest.fixture(autouse=True)
def clear_state():
    socket_manager.rooms.clear()
    socket_manager.sessions.clear()
    socket_manager.spinner.min_delay_ms = 0
    socket_manager.spinner.max_delay_ms = 0
    yield
    socket_manager.rooms.clear()
    socket_manager.sessions.clear()


@pytest.fixture
def client():
    # one event loop for every socket, so cross-client broadcasts stay on one loop
    with TestClient(app) as c:
        yield c


def recv_until(ws, msg_type, max_messages=200):
    """Receive WS messages until we get the expected type."""
    for _ in range(max_messages):
        data = ws.receive_json()
        if data.get("type") == msg_type:
            return data
    raise TimeoutError(f"Never received {msg_type} after {max_messages} messages")


def collect_until(ws, msg_type, max_messages=200):
    """Receive WS messages up to and including msg_type; return all of them."""
    received = []
    for _ in range(max_messages):
        data = ws.receive_json()
        received.append(data)
        if data.get("type") == msg_type:
            return received
    raise TimeoutError(f"Never received {msg_type} after {max_messages} messages")


def open_client(ws):
    """Consume the greeting and return the assigned client id."""
    msg = ws.receive_json()
    assert msg["type"] == "connected"
    return msg["clientId"]


def create(ws, room_id="R1", name="Alice"):
    ws.send_json({"type": "create_room", "roomId": room_id, "playerName": name})
    joined = recv_until(ws, "room_joined")
    recv_until(ws, "room_update")
    return joined


def join(ws, room_id="R1", name="Bob"):
    ws.send_json({"type": "join_room", "roomId": room_id, "playerName": name})
    joined = recv_until(ws, "room_joined")
    recv_until(ws, "room_update")
    return joined


# =====================================================================
# Connection
# =====================================================================

class TestConnection:
    def test_connected_greeting(self, client):
        with client.websocket_connect("/ws") as ws:
            msg = ws.receive_json()
            assert msg["type"] == "connected"
            assert msg["clientId"].startswith("client_")

    def test_each_connection_gets_new_id(self, client):
        with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
            assert open_client(a) != open_client(b)

    def test_malformed_message_keeps_connection(self, client):
        with client.websocket_connect("/ws") as ws:
            open_client(ws)
            ws.send_text("{definitely not json")
            ws.send_json({"type": "no_such_type"})
            ws.send_json({"type": "ping"})
            msg = ws.receive_json()
            assert msg["type"] == "pong"

    def test_validation_error_reply(self, client):
        with client.websocket_connect("/ws") as ws:
            open_client(ws)
            ws.send_json({"type": "create_room", "playerName": "Alice"})
            err = recv_until(ws, "error")
            assert err["code"] == "validation"

    def test_disconnect_cleans_up_session(self, client):
        with client.websocket_connect("/ws") as ws:
            client_id = open_client(ws)
            ws.send_json({"type": "ping"})
            recv_until(ws, "pong")
            assert client_id in socket_manager.sessions
        assert client_id not in socket_manager.sessions


# =====================================================================
# Rooms
# =====================================================================

class TestRooms:
    def test_create_and_join(self, client):
        with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
            a_id = open_client(a)
            b_id = open_client(b)
            joined = create(a)
            assert joined["isHost"] is True
            joined = join(b)
            assert joined["isHost"] is False
            update = recv_until(a, "room_update")
            assert update["hostId"] == a_id
            assert [p["id"] for p in update["players"]] == [a_id, b_id]

    def test_join_missing_room(self, client):
        with client.websocket_connect("/ws") as ws:
            open_client(ws)
            ws.send_json({"type": "join_room", "roomId": "GHOST", "playerName": "Bob"})
            err = recv_until(ws, "error")
            assert err["code"] == "not_found"

    def test_duplicate_room_rejected(self, client):
        with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
            open_client(a)
            open_client(b)
            create(a)
            b.send_json({"type": "create_room", "roomId": "R1", "playerName": "Bob"})
            err = recv_until(b, "error")
            assert err["code"] == "conflict"

    def test_host_leaving_closes_room(self, client):
        with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
            a_id = open_client(a)
            open_client(b)
            create(a)
            join(b)
            recv_until(a, "room_update")
            a.send_json({"type": "leave_room"})
            left = recv_until(a, "left_room")
            assert left["roomId"] == "R1"
            closed = recv_until(b, "room_closed")
            assert closed["hostId"] == a_id
            assert "R1" not in socket_manager.rooms

    def test_guest_leaving_updates_host(self, client):
        with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
            open_client(a)
            open_client(b)
            create(a)
            join(b)
            recv_until(a, "room_update")
            b.send_json({"type": "leave_room"})
            recv_until(b, "left_room")
            update = recv_until(a, "room_update")
            assert update["playerCount"] == 1


# =====================================================================
# LED relay
# =====================================================================

class TestLedRelay:
    def test_all_reaches_others(self, client):
        with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
            a_id = open_client(a)
            open_client(b)
            create(a)
            join(b)
            recv_until(a, "room_update")
            a.send_json({"type": "control_led", "action": "flash", "target": "all"})
            sent = recv_until(a, "led_control_sent")
            assert sent["delivered"] == 1
            cmd = recv_until(b, "led_command")
            assert cmd["action"] == "flash"
            assert cmd["from"] == a_id
            assert cmd["fromName"] == "Alice"

    def test_unknown_target(self, client):
        with client.websocket_connect("/ws") as a:
            open_client(a)
            create(a)
            a.send_json({"type": "control_led", "action": "on", "target": "client_999"})
            err = recv_until(a, "error")
            assert err["code"] == "not_found"


# =====================================================================
# Spinner end-to-end
# =====================================================================

class TestSpinner:
    def test_not_enough_players(self, client):
        with client.websocket_connect("/ws") as a:
            open_client(a)
            create(a)
            a.send_json({"type": "start_spinner"})
            err = recv_until(a, "error")
            assert err["code"] == "state"
            assert "2 players" in err["message"]

    def test_spin_picks_one_winner(self, client):
        with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
            a_id = open_client(a)
            b_id = open_client(b)
            create(a)
            join(b)
            recv_until(a, "room_update")

            a.send_json({"type": "start_spinner", "winnerDuration": 2})
            a_msgs = collect_until(a, "spinner_result")
            b_msgs = collect_until(b, "spinner_result")

            start = next(m for m in a_msgs if m["type"] == "spinner_start")
            assert start["playerOrder"] == [a_id, b_id]
            assert start["winnerDuration"] == 2000
            final_step = start["totalSteps"]
            assert 6 <= final_step < 12
            for msgs in (a_msgs, b_msgs):
                highlights = [m for m in msgs if m["type"] == "spinner_highlight"]
                assert len(highlights) == final_step

            result_a, result_b = a_msgs[-1], b_msgs[-1]
            assert result_a == result_b
            assert result_a["winnerId"] in (a_id, b_id)

            winner_ws, loser_ws = (a, b) if result_a["winnerId"] == a_id else (b, a)
            private = recv_until(winner_ws, "led_command")
            assert private["action"] == "winner_highlight"
            assert private["duration"] == 2000

            loser_ws.send_json({"type": "ping"})
            trailing = collect_until(loser_ws, "pong")
            assert [m for m in trailing if m["type"] == "led_command"] == []


# =====================================================================
# Bomb game
# =====================================================================

class TestBombGame:
    def test_reset_and_roll(self, client):
        with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
            a_id = open_client(a)
            open_client(b)
            create(a)
            join(b)
            recv_until(a, "room_update")

            a.send_json({"type": "reset_game", "maxPoints": 50})
            reset = recv_until(b, "game_reset")
            assert reset["resetBy"] == "Alice"
            assert reset["settings"]["maxPoints"] == 50
            recv_until(a, "game_reset")

            a.send_json({"type": "roll_dice"})
            rolled = recv_until(b, "dice_rolled")
            assert rolled["playerId"] == a_id
            assert 1 <= rolled["diceValue"] <= 6
            assert rolled["newPoints"] == rolled["diceValue"]

    def test_bomb_without_arming(self, client):
        with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
            open_client(a)
            b_id = open_client(b)
            create(a)
            join(b)
            a.send_json({"type": "reset_game"})
            recv_until(a, "game_reset")
            a.send_json({"type": "use_bomb", "targetId": b_id})
            err = recv_until(a, "error")
            assert err["code"] == "state"
