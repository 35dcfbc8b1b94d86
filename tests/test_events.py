import threading

from facepeople.events import EventBus


def test_async_delivery_in_publish_order():
    bus = EventBus()
    seen = []
    worker = []

    def listener(topic, payload):
        seen.append(payload["n"])
        worker.append(threading.current_thread().name)

    bus.subscribe("job.progress", listener)
    for n in range(5):
        bus.publish("job.progress", {"n": n})
    bus.flush(5)
    assert seen == [0, 1, 2, 3, 4]
    assert all(name.startswith("facepeople-events") for name in worker)
    bus.close()


def test_wildcard_and_topic_filtering():
    bus = EventBus(synchronous=True)
    everything, status = [], []
    bus.subscribe("*", lambda t, p: everything.append(t))
    bus.subscribe("job.status", lambda t, p: status.append(p["status"]))
    bus.publish("job.status", {"status": "running"})
    bus.publish("people.updated", {"reason": "merge"})
    assert everything == ["job.status", "people.updated"]
    assert status == ["running"]


def test_failing_listener_does_not_block_others():
    bus = EventBus(synchronous=True)
    received = []

    def broken(topic, payload):
        raise RuntimeError("listener bug")

    bus.subscribe("job.status", broken)
    bus.subscribe("job.status", lambda t, p: received.append(p))
    bus.publish("job.status", {"status": "paused"})
    assert received == [{"status": "paused"}]


def test_unsubscribe():
    bus = EventBus(synchronous=True)
    received = []
    unsubscribe = bus.subscribe("job.status", lambda t, p: received.append(p))
    unsubscribe()
    unsubscribe()
    bus.publish("job.status", {"status": "idle"})
    assert received == []


def test_payload_is_copied():
    bus = EventBus(synchronous=True)
    received = []
    bus.subscribe("job.progress", lambda t, p: received.append(p))
    payload = {"processed": 1}
    bus.publish("job.progress", payload)
    payload["processed"] = 2
    assert received == [{"processed": 1}]
