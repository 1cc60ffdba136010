import asyncio
import threading

from sensorhub.ws_manager import ConnectionManager


def test_publish_without_loop_is_a_noop():
    manager = ConnectionManager()
    manager.publish({"kind": "telemetry"})
    assert manager.subscriber_count == 0


def test_every_subscriber_gets_every_event_in_order():
    async def scenario():
        manager = ConnectionManager(queue_size=10)
        manager.bind_loop(asyncio.get_running_loop())
        a, b = manager.subscribe(), manager.subscribe()
        for i in range(5):
            manager.publish({"kind": "telemetry", "id": i})
        await asyncio.sleep(0)
        got_a = [a.queue.get_nowait()["id"] for _ in range(a.queue.qsize())]
        got_b = [b.queue.get_nowait()["id"] for _ in range(b.queue.qsize())]
        return got_a, got_b

    got_a, got_b = asyncio.run(scenario())
    assert got_a == [0, 1, 2, 3, 4]
    assert got_b == [0, 1, 2, 3, 4]


def test_publish_from_another_thread_keeps_order():
    async def scenario():
        manager = ConnectionManager(queue_size=100)
        manager.bind_loop(asyncio.get_running_loop())
        sub = manager.subscribe()

        def producer():
            for i in range(50):
                manager.publish({"kind": "telemetry", "id": i})

        t = threading.Thread(target=producer)
        t.start()
        await asyncio.get_running_loop().run_in_executor(None, t.join)
        received = []
        while len(received) < 50:
            received.append((await asyncio.wait_for(sub.queue.get(), 1))["id"])
        return received

    assert asyncio.run(scenario()) == list(range(50))


def test_slow_subscriber_drops_oldest_and_never_blocks():
    async def scenario():
        manager = ConnectionManager(queue_size=3)
        manager.bind_loop(asyncio.get_running_loop())
        slow = manager.subscribe()
        for i in range(7):
            manager.publish({"kind": "telemetry", "id": i})
        await asyncio.sleep(0)
        kept = [slow.queue.get_nowait()["id"] for _ in range(slow.queue.qsize())]
        return kept, slow.dropped

    kept, dropped = asyncio.run(scenario())
    assert kept == [4, 5, 6]
    assert dropped == 4


def test_unsubscribed_session_receives_nothing():
    async def scenario():
        manager = ConnectionManager()
        manager.bind_loop(asyncio.get_running_loop())
        sub = manager.subscribe()
        manager.unsubscribe(sub)
        manager.publish({"kind": "device_state"})
        await asyncio.sleep(0)
        return sub.queue.qsize(), manager.subscriber_count

    assert asyncio.run(scenario()) == (0, 0)


def test_publish_after_loop_closed_is_swallowed():
    manager = ConnectionManager()
    loop = asyncio.new_event_loop()
    manager.bind_loop(loop)
    loop.close()
    manager.publish({"kind": "telemetry"})


class _ClosingSocket:
    def __init__(self):
        self.accepted = False

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        pass

    async def receive(self):
        await asyncio.sleep(0)
        return {"type": "websocket.disconnect", "code": 1000}


def test_stream_leaves_no_pending_tasks_after_disconnect():
    async def scenario():
        manager = ConnectionManager()
        manager.bind_loop(asyncio.get_running_loop())
        ws = _ClosingSocket()
        await manager.stream(ws)
        pending = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
        return ws.accepted, pending, manager.subscriber_count

    assert asyncio.run(scenario()) == (True, [], 0)
