"""Tests for snapshot fan-out."""
import asyncio

from argus.publisher import SnapshotPublisher


def test_subscribe_receives_latest_snapshot(store):
    publisher = SnapshotPublisher(queue_size=4)
    store.upsert_project("/p/a", "a")
    publisher.publish(store.snapshot())

    subscription = publisher.subscribe("dash-1")
    message = subscription.queue.get_nowait()
    assert message["type"] == "state_update"
    assert len(message["payload"]["projects"]) == 1


def test_subscribe_before_any_publish_gets_nothing():
    publisher = SnapshotPublisher(queue_size=4)
    subscription = publisher.subscribe()
    assert subscription.queue.empty()


def test_publish_reaches_every_subscriber(store):
    publisher = SnapshotPublisher(queue_size=4)
    first = publisher.subscribe("one")
    second = publisher.subscribe("two")
    publisher.publish(store.snapshot())

    assert first.queue.qsize() == 1
    assert second.queue.qsize() == 1
    assert publisher.get_stats()["published_snapshots"] == 1


def test_slow_subscriber_is_dropped_without_blocking(store):
    publisher = SnapshotPublisher(queue_size=2)
    slow = publisher.subscribe("slow")
    for _ in range(5):
        publisher.publish(store.snapshot())

    assert "slow" not in publisher.subscriptions
    assert slow.closed
    assert publisher.dropped_count == 1

    fast = publisher.subscribe("fast")
    publisher.publish(store.snapshot())
    assert fast.queue.qsize() == 2
    assert publisher.get_stats()["subscribers"] == 1


def test_subscribers_get_independent_payloads(store):
    publisher = SnapshotPublisher(queue_size=4)
    pid = store.upsert_project("/p/a", "a")
    first = publisher.subscribe("one")
    second = publisher.subscribe("two")
    publisher.publish(store.snapshot())

    mine = first.queue.get_nowait()
    mine["payload"]["projects"][pid]["name"] = "scribbled"
    theirs = second.queue.get_nowait()
    assert theirs["payload"]["projects"][pid]["name"] == "a"
    assert publisher.latest.payload()["projects"][pid]["name"] == "a"


def test_unsubscribe_closes_stream():
    publisher = SnapshotPublisher(queue_size=4)
    subscription = publisher.subscribe("one")
    publisher.unsubscribe("one")

    assert asyncio.run(subscription.next_message()) is None
    assert publisher.get_stats()["subscribers"] == 0


def test_ping_all(store):
    publisher = SnapshotPublisher(queue_size=4)
    subscription = publisher.subscribe("one")
    publisher.send_ping_all()

    assert subscription.queue.get_nowait() == {"type": "ping"}
    assert publisher.get_stats()["last_ping_at"] is not None
