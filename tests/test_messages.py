"""Tests for the message bus and the notify helper."""

import threading

from hollon.messages import MessageBus, MessageType, Notifier, notify


class _BrokenNotifier(Notifier):
    def send(self, sender, recipient, type, content, metadata=None):
        raise ConnectionError("smtp down")


class TestMessageBus:

    def test_send_and_recv(self):
        bus = MessageBus()
        bus.send("w1", "w2", MessageType.TASK_UPDATE, "started", {"task_id": "t1"})
        msg = bus.recv("w2")
        assert msg.sender == "w1"
        assert msg.content == "started"
        assert msg.metadata == {"task_id": "t1"}
        assert bus.recv("w2") is None

    def test_drain_keeps_order(self):
        bus = MessageBus()
        for i in range(3):
            bus.send("system", "w1", MessageType.TASK_UPDATE, str(i))
        assert [m.content for m in bus.drain("w1")] == ["0", "1", "2"]
        assert bus.queue_depth("w1") == 0

    def test_history_is_bounded(self):
        bus = MessageBus(max_history=2)
        for i in range(5):
            bus.send("system", "w1", MessageType.TASK_UPDATE, str(i))
        assert [m.content for m in bus.get_history()] == ["3", "4"]
        assert bus.queue_depth("w1") == 5

    def test_recv_waits(self):
        bus = MessageBus()
        timer = threading.Timer(0.05, bus.send,
                                args=("w1", "w2", MessageType.TASK_UPDATE, "late"))
        timer.start()
        msg = bus.recv("w2", timeout=2)
        timer.join()
        assert msg.content == "late"


class TestNotify:

    def test_no_notifier(self):
        assert notify(None, "a", "b", MessageType.TASK_UPDATE, "x") is False

    def test_delivery_failure_is_swallowed(self, caplog):
        ok = notify(_BrokenNotifier(), "a", "b", MessageType.ESCALATION, "help")
        assert ok is False
        assert "smtp down" in caplog.text

    def test_delivered(self):
        bus = MessageBus()
        assert notify(bus, "a", "b", MessageType.ESCALATION, "help")
        assert bus.recv("b").type is MessageType.ESCALATION
