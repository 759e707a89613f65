"""Tests for the lifecycle event stream."""

from dcpermit.core import EventStream


def test_record_notifies_subscribers_and_keeps_bounded_history():
    stream = EventStream(history_limit=3)
    received = []
    unsubscribe = stream.subscribe(received.append)
    for index in range(5):
        stream.record("permit.created", source="test", payload={"index": index})
    unsubscribe()
    stream.record("permit.updated", source="test")

    assert [event.payload["index"] for event in received] == [0, 1, 2, 3, 4]
    assert [event.sequence for event in stream.tail()] == [4, 5, 6]
    assert [event.event_type for event in stream.tail(event_type="permit.updated")] == ["permit.updated"]


def test_failing_subscriber_does_not_stop_recording():
    stream = EventStream()

    def _broken(event):
        raise RuntimeError("boom")

    seen = []
    stream.subscribe(_broken)
    stream.subscribe(seen.append)
    event = stream.record("permits.loaded", source="test")
    assert seen == [event]


def test_snapshot_keeps_latest_per_key():
    stream = EventStream()
    stream.snapshot("permits.cache", {"document_ids": ["C2-67-0001"]})
    stream.snapshot("permits.cache", {"document_ids": ["C2-67-0002", "C2-67-0001"]})
    assert stream.latest_snapshot("permits.cache").data["document_ids"] == ["C2-67-0002", "C2-67-0001"]
    assert stream.latest_snapshot("missing") is None
