"""Tests for ptyhub.events (status wire)."""

from __future__ import annotations

from ptyhub.events import EventType, Wire, WireEvent


def _drain(queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


class TestWireEvent:
    def test_serialized_shape(self) -> None:
        event = WireEvent(EventType.SESSION_REMOVED, {"sessionId": "s1"})
        assert event.to_dict() == {
            "type": "session_removed",
            "payload": {"sessionId": "s1"},
        }

    def test_type_names_match_values(self) -> None:
        assert [e.value for e in EventType] == [
            "session_status",
            "session_exit",
            "session_removed",
        ]


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------


class TestPublish:
    def test_every_subscriber_sees_status(self) -> None:
        wire = Wire()
        viewers = [wire.subscribe() for _ in range(3)]
        wire.send_status({"sessionId": "s1", "status": "running"})
        for queue in viewers:
            (event,) = _drain(queue)
            assert event.type == EventType.SESSION_STATUS
            assert event.data == {"sessionId": "s1", "status": "running"}

    def test_unsubscribed_viewer_gets_nothing(self) -> None:
        wire = Wire()
        stays, leaves = wire.subscribe(), wire.subscribe()
        wire.unsubscribe(leaves)
        wire.unsubscribe(leaves)
        wire.send_removed("s1")
        assert wire.subscriber_count == 1
        assert leaves.empty()
        assert [e.data for e in _drain(stays)] == [{"sessionId": "s1"}]

    def test_slow_viewer_loses_oldest(self) -> None:
        wire = Wire(queue_size=2)
        queue = wire.subscribe()
        for status in ("starting", "running", "idle", "running"):
            wire.send_status({"status": status})
        assert [e.data["status"] for e in _drain(queue)] == ["idle", "running"]


class TestExitSummary:
    def test_strips_terminal_noise(self) -> None:
        wire = Wire()
        queue = wire.subscribe()
        info = {"exitCode": 2, "signal": None, "reason": "Exited with code 2"}
        wire.send_exit(
            "s1",
            "error",
            info,
            last_output=b"building\r\n\x1b[1;31merror:\x1b[0m missing file\r\n",
        )
        (event,) = _drain(queue)
        assert event.type == EventType.SESSION_EXIT
        assert event.data == {
            "sessionId": "s1",
            "status": "error",
            "exitInfo": info,
            "lastOutput": "building\nerror: missing file",
        }

    def test_keeps_last_three_lines(self) -> None:
        wire = Wire()
        queue = wire.subscribe()
        output = "\n".join(f"step {n}" for n in range(1, 8)).encode()
        wire.send_exit("s1", "exited", None, last_output=output)
        (event,) = _drain(queue)
        assert event.data["lastOutput"] == "step 5\nstep 6\nstep 7"

    def test_summary_is_capped(self) -> None:
        wire = Wire()
        queue = wire.subscribe()
        wire.send_exit("s1", "exited", None, last_output=b"y" * 2000)
        (event,) = _drain(queue)
        assert event.data["lastOutput"] == "y" * 500

    def test_undecodable_bytes(self) -> None:
        wire = Wire()
        queue = wire.subscribe()
        wire.send_exit("s1", "exited", None, last_output=b"ok \xff\xfe")
        (event,) = _drain(queue)
        assert event.data["lastOutput"].startswith("ok ")


# ---------------------------------------------------------------------------
# Closing
# ---------------------------------------------------------------------------


class TestClose:
    def test_close_wakes_subscribers_once(self) -> None:
        wire = Wire()
        a, b = wire.subscribe(), wire.subscribe()
        wire.close()
        wire.close()
        assert wire.closed
        assert _drain(a) == [None]
        assert _drain(b) == [None]

    def test_nothing_published_after_close(self) -> None:
        wire = Wire()
        queue = wire.subscribe()
        wire.close()
        wire.send_status({"status": "running"})
        wire.send_exit("s1", "exited", None)
        wire.send_removed("s1")
        assert _drain(queue) == [None]

    def test_late_subscriber_sees_end_of_stream(self) -> None:
        wire = Wire()
        wire.close()
        queue = wire.subscribe()
        assert _drain(queue) == [None]
        assert wire.subscriber_count == 0

    def test_close_marker_fits_full_queue(self) -> None:
        wire = Wire(queue_size=1)
        queue = wire.subscribe()
        wire.send_status({"status": "running"})
        wire.close()
        assert _drain(queue) == [None]
