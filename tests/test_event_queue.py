import threading

from parlor.bus.events import Event
from parlor.bus.queue import EventQueue


def _event(kind: str, channel: str = "c1") -> Event:
    return Event(kind=kind, channel_id=channel)


def test_poll_batch_returns_same_category_run_in_order() -> None:
    queue = EventQueue()
    for kind in ["message", "reaction", "edit", "timer", "internal", "message"]:
        queue.push(_event(kind))

    first = queue.poll_batch()
    assert [e.kind for e in first] == ["message", "reaction", "edit"]
    second = queue.poll_batch()
    assert [e.kind for e in second] == ["timer", "internal"]
    third = queue.poll_batch()
    assert [e.kind for e in third] == ["message"]
    assert queue.poll_batch() == []
    assert queue.is_empty()


def test_poll_batch_on_empty_queue_does_not_block() -> None:
    queue = EventQueue()
    assert queue.poll_batch() == []
    assert queue.size() == 0


def test_batches_partition_the_pushed_sequence() -> None:
    queue = EventQueue()
    kinds = ["message", "timer", "delete", "delete", "self_activation", "reaction", "timer"]
    pushed = [_event(k, channel=str(i)) for i, k in enumerate(kinds)]
    for event in pushed:
        queue.push(event)

    drained = []
    while not queue.is_empty():
        batch = queue.poll_batch()
        assert len({e.category for e in batch}) == 1
        drained.extend(batch)
    assert drained == pushed


def test_concurrent_producers_lose_nothing() -> None:
    queue = EventQueue()

    def produce(prefix: str) -> None:
        for i in range(200):
            queue.push(_event("message", channel=f"{prefix}{i}"))

    threads = [threading.Thread(target=produce, args=(p,)) for p in "abcd"]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(queue) == 800
    assert len(queue.poll_batch()) == 800


def test_clear_empties_queue() -> None:
    queue = EventQueue()
    queue.push(_event("message"))
    queue.clear()
    assert queue.is_empty()
