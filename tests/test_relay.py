import asyncio
from decimal import Decimal

import pytest
from starlette.websockets import WebSocketDisconnect

from cafe.main import events_socket
from cafe.relay import ORDER_CREATED, ORDER_STATUS_UPDATED, STAFF_ROOM, NotificationRelay, user_room


def drain(sub):
    messages = []
    while not sub.queue.empty():
        messages.append(sub.queue.get_nowait())
    return messages


def test_fan_out_to_owner_and_staff():
    async def scenario():
        relay = NotificationRelay()
        owner = relay.subscribe(1, "parishioner")
        stranger = relay.subscribe(2, "parishioner")
        barista = relay.subscribe(3, "personal")
        admin = relay.subscribe(4, "admin")
        delivered = relay.order_created(10, 1, Decimal("12.00"))
        await asyncio.sleep(0.01)
        return delivered, drain(owner), drain(stranger), drain(barista), drain(admin)

    delivered, owner, stranger, barista, admin = asyncio.run(scenario())
    expected = {"event": ORDER_CREATED, "data": {"id": 10, "userId": 1, "total": 12.0, "status": "pending"}}
    assert delivered == 3
    assert owner == [expected]
    assert stranger == []
    assert barista == [expected]
    assert admin == [expected]


def test_staff_owner_gets_one_copy():
    async def scenario():
        relay = NotificationRelay()
        barista = relay.subscribe(3, "personal")
        relay.order_status_updated(11, 3, "ready")
        await asyncio.sleep(0.01)
        return drain(barista)

    assert asyncio.run(scenario()) == [
        {"event": ORDER_STATUS_UPDATED, "data": {"id": 11, "userId": 3, "status": "ready"}}
    ]


def test_publish_from_worker_thread():
    async def scenario():
        relay = NotificationRelay()
        owner = relay.subscribe(5, "parishioner")
        await asyncio.to_thread(relay.order_status_updated, 12, 5, "preparing")
        return await asyncio.wait_for(owner.queue.get(), timeout=1)

    message = asyncio.run(scenario())
    assert message["data"]["status"] == "preparing"


def test_no_subscribers_is_fine():
    assert NotificationRelay().order_created(1, 1, Decimal("1.00")) == 0


def test_full_queue_drops_message():
    async def scenario():
        relay = NotificationRelay()
        owner = relay.subscribe(1, "parishioner")
        owner.queue = asyncio.Queue(maxsize=1)
        relay.order_status_updated(1, 1, "ready")
        relay.order_status_updated(1, 1, "paid")
        await asyncio.sleep(0.01)
        return drain(owner)

    messages = asyncio.run(scenario())
    assert [m["data"]["status"] for m in messages] == ["ready"]


def test_closed_loop_unsubscribes():
    relay = NotificationRelay()
    loop = asyncio.new_event_loop()
    relay.subscribe(1, "parishioner", loop=loop)
    loop.close()
    assert relay.order_created(1, 1, Decimal("2.00")) == 0
    assert relay.members([user_room(1), STAFF_ROOM]) == set()


def test_unsubscribe_leaves_rooms():
    relay = NotificationRelay()
    loop = asyncio.new_event_loop()
    try:
        sub = relay.subscribe(3, "admin", loop=loop)
        assert relay.members([STAFF_ROOM]) == {sub}
        relay.unsubscribe(sub)
        assert relay.members([STAFF_ROOM, user_room(3)]) == set()
    finally:
        loop.close()


def test_socket_requires_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws?token=bogus") as ws:
            ws.receive_json()


def test_socket_receives_order_events(client, customer, barista, catalog):
    with client.websocket_connect(f"/ws?token={customer.token}") as ws:
        ready = ws.receive_json()
        assert ready == {"event": "socket:ready", "data": {"userId": customer.id, "role": "parishioner"}}

        r = client.post("/api/orders", json={"items": [{"product": 2}]}, headers=customer.headers)
        assert r.status_code == 201
        order_id = r.json()["id"]
        created = ws.receive_json()
        assert created == {
            "event": "order:created",
            "data": {"id": order_id, "userId": customer.id, "total": 5.0, "status": "pending"},
        }

        client.put(f"/api/orders/{order_id}/status", json={"status": "preparing"}, headers=barista.headers)
        updated = ws.receive_json()
        assert updated["event"] == "order:statusUpdated"
        assert updated["data"] == {"id": order_id, "userId": customer.id, "status": "preparing"}


def test_staff_socket_sees_every_order(client, customer, barista, catalog):
    with client.websocket_connect("/ws", headers={"Authorization": f"Bearer {barista.token}"}) as ws:
        assert ws.receive_json()["data"]["role"] == "personal"
        client.post("/api/orders", json={"items": [{"product": 1}]}, headers=customer.headers)
        message = ws.receive_json()
        assert message["event"] == "order:created"
        assert message["data"]["userId"] == customer.id


class FakeSocket:
    """Accepts the handshake, then fails or stalls on every event it is asked to send."""

    def __init__(self, token, send_mode):
        self.query_params = {"token": token}
        self.headers = {}
        self.send_mode = send_mode
        self.sent = []
        self.gone = asyncio.Event()

    async def accept(self):
        pass

    async def close(self, code=None):
        pass

    async def send_json(self, message):
        if message["event"] != "socket:ready":
            if self.send_mode == "fails":
                raise RuntimeError("socket closed")
            await asyncio.Event().wait()
        self.sent.append(message)

    async def receive_text(self):
        await self.gone.wait()
        raise WebSocketDisconnect(1000)


@pytest.mark.parametrize("send_mode", ["fails", "hangs"])
def test_socket_handler_collects_its_writer(customer, send_mode):
    async def scenario():
        relay = NotificationRelay()
        ws = FakeSocket(customer.token, send_mode)
        handler = asyncio.create_task(events_socket(ws, relay))
        await asyncio.sleep(0.01)
        relay.order_status_updated(1, customer.id, "ready")
        await asyncio.sleep(0.01)
        ws.gone.set()
        await asyncio.wait_for(handler, timeout=1)
        leftover = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
        return ws.sent, leftover, relay.members([user_room(customer.id)])

    sent, leftover, members = asyncio.run(scenario())
    assert [m["event"] for m in sent] == ["socket:ready"]
    assert leftover == []
    assert members == set()
