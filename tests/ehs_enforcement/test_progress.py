from src.ehs_enforcement.models import EVENT_PROGRESS, ProgressEvent
from src.ehs_enforcement.progress import ProgressBroadcaster


def make_event(session_id="s1"):
    return ProgressEvent(session_id=session_id, event=EVENT_PROGRESS, status="running", counters={"pages_processed": 1})


def test_events_reach_session_and_wildcard_subscribers():
    broadcaster = ProgressBroadcaster()
    own = broadcaster.subscribe("s1")
    other = broadcaster.subscribe("s2")
    everything = broadcaster.subscribe()

    assert broadcaster.publish(make_event("s1")) == 2
    assert own.qsize() == 1
    assert other.qsize() == 0
    assert everything.get_nowait().session_id == "s1"


def test_full_queue_drops_without_raising():
    broadcaster = ProgressBroadcaster(max_queue_size=1)
    queue = broadcaster.subscribe("s1")

    broadcaster.publish(make_event())
    assert broadcaster.publish(make_event()) == 0
    assert broadcaster.dropped_events == 1
    assert queue.qsize() == 1


def test_unsubscribe():
    broadcaster = ProgressBroadcaster()
    queue = broadcaster.subscribe("s1")
    broadcaster.unsubscribe(queue)

    assert broadcaster.publish(make_event()) == 0
