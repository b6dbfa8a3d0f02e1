import unittest

from fleetdispatch.events import EventBus, EventType

from tests.helpers import START


class EventBusTest(unittest.TestCase):
    def setUp(self):
        self.bus = EventBus()

    def test_subscribers_receive_their_type_only(self):
        assigned, cancelled = [], []
        self.bus.subscribe(EventType.ORDER_ASSIGNED, assigned.append)
        self.bus.subscribe(EventType.ORDER_CANCELLED, cancelled.append)

        event = self.bus.publish(EventType.ORDER_ASSIGNED, {"order_id": "O1"}, START)
        self.assertEqual(assigned, [event])
        self.assertEqual(cancelled, [])
        self.assertEqual(event.payload["order_id"], "O1")
        self.assertEqual(event.timestamp, START)

    def test_subscribe_all(self):
        received = []
        self.bus.subscribe_all(received.append)
        self.bus.publish(EventType.ORDER_ASSIGNED)
        self.bus.publish(EventType.TRAFFIC_UPDATED)
        self.assertEqual([e.type for e in received], [EventType.ORDER_ASSIGNED, EventType.TRAFFIC_UPDATED])

    def test_unsubscribe(self):
        received = []
        self.bus.subscribe(EventType.ORDER_ASSIGNED, received.append)
        self.bus.subscribe_all(received.append)
        self.bus.unsubscribe(received.append)
        self.bus.publish(EventType.ORDER_ASSIGNED)
        self.assertEqual(received, [])

    def test_failing_handler_is_isolated(self):
        received = []

        def broken(event):
            raise KeyError("missing")

        self.bus.subscribe(EventType.ORDER_COMPLETED, broken)
        self.bus.subscribe(EventType.ORDER_COMPLETED, received.append)
        with self.assertLogs("fleetdispatch.events", level="ERROR"):
            self.bus.publish(EventType.ORDER_COMPLETED, {"order_id": "O1"})
        self.assertEqual(len(received), 1)

    def test_payload_defaults_to_empty(self):
        self.assertEqual(self.bus.publish(EventType.ORDER_ETA_UPDATED).payload, {})


if __name__ == "__main__":
    unittest.main()
