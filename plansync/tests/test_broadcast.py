import json
import unittest

from starlette.websockets import WebSocketState

from plansync.broadcast import ChangeBroadcaster, ChangeEvent, EventType


class FakeWebSocket:
    def __init__(self, fail_on_send: bool = False):
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTING
        self.fail_on_send = fail_on_send
        self.sent: list[str] = []

    async def accept(self):
        self.application_state = WebSocketState.CONNECTED

    async def send_text(self, message: str):
        if self.fail_on_send:
            raise RuntimeError("connection reset")
        self.sent.append(message)


class ChangeEventTests(unittest.TestCase):
    def test_payload_omitted_when_absent(self):
        message = json.loads(ChangeEvent(type=EventType.PLAN_UPDATE).serialize())
        self.assertEqual(message, {"type": "plan_update"})

    def test_nested_nulls_are_kept(self):
        event = ChangeEvent(
            type=EventType.SETTINGS_UPDATE, payload={"plan_corners": None}
        )
        self.assertEqual(
            json.loads(event.serialize()),
            {"type": "settings_update", "payload": {"plan_corners": None}},
        )


class ChangeBroadcasterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.broadcaster = ChangeBroadcaster()

    async def _connect(self, **kwargs) -> FakeWebSocket:
        websocket = FakeWebSocket(**kwargs)
        await self.broadcaster.connect(websocket)
        return websocket

    async def test_every_open_client_gets_the_same_message(self):
        first = await self._connect()
        second = await self._connect()

        delivered = await self.broadcaster.broadcast(
            ChangeEvent(type=EventType.POINT_DELETE, payload={"id": "p1"})
        )

        self.assertEqual(delivered, 2)
        self.assertEqual(first.sent, second.sent)
        self.assertEqual(len(first.sent), 1)
        self.assertEqual(
            json.loads(first.sent[0]), {"type": "point_delete", "payload": {"id": "p1"}}
        )

    async def test_closed_clients_are_skipped(self):
        open_client = await self._connect()
        closed_client = await self._connect()
        closed_client.client_state = WebSocketState.DISCONNECTED

        delivered = await self.broadcaster.broadcast(
            ChangeEvent(type=EventType.PLAN_UPDATE)
        )

        self.assertEqual(delivered, 1)
        self.assertEqual(len(open_client.sent), 1)
        self.assertEqual(closed_client.sent, [])

    async def test_failed_send_drops_client_without_raising(self):
        healthy = await self._connect()
        await self._connect(fail_on_send=True)
        self.assertEqual(self.broadcaster.client_count, 2)

        delivered = await self.broadcaster.broadcast(
            ChangeEvent(type=EventType.POINT_UPDATE, payload={"type": "Feature"})
        )

        self.assertEqual(delivered, 1)
        self.assertEqual(len(healthy.sent), 1)
        self.assertEqual(self.broadcaster.client_count, 1)

    async def test_disconnect(self):
        websocket = await self._connect()
        self.broadcaster.disconnect(websocket)
        self.broadcaster.disconnect(websocket)
        self.assertEqual(self.broadcaster.client_count, 0)
        await self.broadcaster.broadcast(ChangeEvent(type=EventType.PLAN_UPDATE))
        self.assertEqual(websocket.sent, [])


if __name__ == "__main__":
    unittest.main()
