import logging
import threading
import unittest

from fakes import FakeTransportFactory, wait_for

from hlfeed.data.client import ConnectionState, StreamClient
from hlfeed.data.reconnect import BackoffConfig
from hlfeed.errors import InvalidChannelError, WebSocketError

ETH_BOOK = {"type": "l2Book", "coin": "ETH"}
BTC_TRADES = {"type": "trades", "coin": "BTC"}


def noop(_data) -> None:
    return None


def subscribe_frame(subscription: dict) -> dict:
    return {"method": "subscribe", "subscription": subscription}


def unsubscribe_frame(subscription: dict) -> dict:
    return {"method": "unsubscribe", "subscription": subscription}


class StreamClientTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.factory = FakeTransportFactory()
        self.client = self.make_client()

    def tearDown(self) -> None:
        self.client.close()

    def make_client(self, **kwargs) -> StreamClient:
        options = {
            "transport_factory": self.factory,
            "backoff": BackoffConfig(initial=0.001, maximum=0.01),
            "join_timeout": 1.0,
            "logger": logging.getLogger("tests.client"),
        }
        options.update(kwargs)
        return StreamClient(**options)

    def open_client(self):
        self.client.connect()
        transport = self.factory.last
        transport.simulate_open()
        return transport


class ConstructionTest(StreamClientTestCase):
    def test_starts_disconnected(self) -> None:
        self.assertFalse(self.client.is_connected())
        self.assertEqual(ConnectionState.DISCONNECTED, self.client.state)
        self.assertEqual(0, self.client.dropped_message_count())

    def test_mainnet_url_by_default(self) -> None:
        self.assertEqual("wss://api.hyperliquid.xyz/ws", self.client.url)

    def test_testnet_url(self) -> None:
        client = self.make_client(testnet=True)
        self.assertEqual("wss://api.hyperliquid-testnet.xyz/ws", client.url)


class SubscribeTest(StreamClientTestCase):
    def test_returns_unique_handles(self) -> None:
        first = self.client.subscribe(ETH_BOOK, noop)
        second = self.client.subscribe({"type": "l2Book", "coin": "BTC"}, noop)
        self.assertNotEqual(first, second)

    def test_requires_callable(self) -> None:
        with self.assertRaises(TypeError):
            self.client.subscribe(ETH_BOOK, None)

    def test_unknown_type_raises_invalid_channel(self) -> None:
        with self.assertRaises(InvalidChannelError):
            self.client.subscribe({"type": "unknown", "coin": "ETH"}, noop)
        self.assertEqual([], self.factory.transports)

    def test_first_subscribe_auto_connects_and_queues(self) -> None:
        self.client.subscribe(ETH_BOOK, noop)

        self.assertEqual(1, len(self.factory.transports))
        transport = self.factory.last
        self.assertTrue(transport.opened)
        self.assertEqual([], transport.sent)
        self.assertEqual(ConnectionState.CONNECTING, self.client.state)

    def test_pending_subscriptions_flush_on_open(self) -> None:
        self.client.subscribe(ETH_BOOK, noop)
        self.client.subscribe(BTC_TRADES, noop)
        transport = self.factory.last

        transport.simulate_open()

        self.assertTrue(self.client.is_connected())
        self.assertEqual([subscribe_frame(ETH_BOOK), subscribe_frame(BTC_TRADES)], transport.sent)

    def test_sends_immediately_when_connected(self) -> None:
        transport = self.open_client()
        self.client.subscribe(ETH_BOOK, noop)
        self.assertEqual([subscribe_frame(ETH_BOOK)], transport.frames("subscribe"))

    def test_shared_identifier_sends_single_frame(self) -> None:
        transport = self.open_client()
        first = self.client.subscribe(ETH_BOOK, noop)
        second = self.client.subscribe({"type": "l2Book", "coin": "eth"}, noop)

        self.assertNotEqual(first, second)
        self.assertEqual(1, len(transport.frames("subscribe")))
        self.assertEqual({"l2Book:eth": 2}, self.client.subscriptions())

    def test_shared_identifier_before_connect_is_flushed_once(self) -> None:
        self.client.subscribe(ETH_BOOK, noop)
        self.client.subscribe(ETH_BOOK, noop)
        transport = self.factory.last
        transport.simulate_open()
        self.assertEqual([subscribe_frame(ETH_BOOK)], transport.sent)


class UnsubscribeTest(StreamClientTestCase):
    def test_sends_unsubscribe_when_last_handle_removed(self) -> None:
        transport = self.open_client()
        handle = self.client.subscribe(ETH_BOOK, noop)

        self.client.unsubscribe(handle)

        self.assertEqual([unsubscribe_frame(ETH_BOOK)], transport.frames("unsubscribe"))
        self.assertEqual({}, self.client.subscriptions())

    def test_no_unsubscribe_while_other_handles_remain(self) -> None:
        transport = self.open_client()
        first = self.client.subscribe(ETH_BOOK, noop)
        second = self.client.subscribe(ETH_BOOK, noop)

        self.client.unsubscribe(first)
        self.assertEqual([], transport.frames("unsubscribe"))

        self.client.unsubscribe(second)
        self.assertEqual([unsubscribe_frame(ETH_BOOK)], transport.frames("unsubscribe"))

    def test_remaining_handle_keeps_receiving(self) -> None:
        transport = self.open_client()
        received = []
        first = self.client.subscribe(ETH_BOOK, noop)
        self.client.subscribe(ETH_BOOK, received.append)
        self.client.unsubscribe(first)

        transport.simulate_message({"channel": "l2Book", "data": {"coin": "ETH", "levels": []}})

        self.assertTrue(wait_for(lambda: received))
        self.assertEqual([{"coin": "ETH", "levels": []}], received)

    def test_unknown_handle_is_ignored(self) -> None:
        self.client.unsubscribe(999)

    def test_unsubscribe_before_open_drops_pending(self) -> None:
        handle = self.client.subscribe(ETH_BOOK, noop)
        self.client.subscribe(BTC_TRADES, noop)
        transport = self.factory.last

        self.client.unsubscribe(handle)
        transport.simulate_open()

        self.assertEqual([subscribe_frame(BTC_TRADES)], transport.sent)


class MessageRoutingTest(StreamClientTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.transport = self.open_client()
        # Stop the dispatcher so messages stay observable in the queue.
        self.client._queue.close()
        self.client._dispatcher.join(1)
        self.client._queue.reopen()

    def queued(self):
        return self.client._queue.drain()

    def test_routes_data_frames_by_identifier(self) -> None:
        self.transport.simulate_message({"channel": "l2Book", "data": {"coin": "ETH", "levels": []}})
        items = self.queued()
        self.assertEqual(1, len(items))
        self.assertEqual("l2Book:eth", items[0].identifier)
        self.assertEqual({"coin": "ETH", "levels": []}, items[0].payload)

    def test_accepts_bytes_frames(self) -> None:
        self.transport.simulate_message(b'{"channel": "allMids", "data": {"mids": {}}}')
        self.assertEqual(["allMids"], [item.identifier for item in self.queued()])

    def test_discards_pong(self) -> None:
        self.transport.simulate_message({"channel": "pong"})
        self.assertEqual([], self.queued())

    def test_discards_connection_established_string(self) -> None:
        self.transport.simulate_message("Websocket connection established.")
        self.assertEqual([], self.queued())

    def test_discards_malformed_and_empty_frames(self) -> None:
        self.transport.simulate_message("not json {{{")
        self.transport.simulate_message("")
        self.transport.simulate_message(None)
        self.transport.simulate_message("[1, 2, 3]")
        self.transport.simulate_message({"data": {"coin": "ETH"}})
        self.assertEqual([], self.queued())

    def test_discards_unknown_channels(self) -> None:
        self.transport.simulate_message({"channel": "unknownChannel", "data": {}})
        self.transport.simulate_message({"channel": "subscriptionResponse", "data": {"method": "subscribe"}})
        self.assertEqual([], self.queued())

    def test_overflow_is_counted(self) -> None:
        client = self.make_client(max_queue_size=2)
        transport = self.factory
        client.connect()
        try:
            client._queue.close()
            client._dispatcher.join(1)
            client._queue.reopen()
            for i in range(3):
                transport.last.simulate_message({"channel": "l2Book", "data": {"coin": "ETH", "seq": i}})
            self.assertEqual(1, client.dropped_message_count())
            self.assertEqual([0, 1], [item.payload["seq"] for item in client._queue.drain()])
        finally:
            client.close()


class DispatchTest(StreamClientTestCase):
    def test_messages_dispatched_in_order(self) -> None:
        transport = self.open_client()
        received = []
        self.client.subscribe(ETH_BOOK, lambda data: received.append(data["seq"]))

        for i in range(3):
            transport.simulate_message({"channel": "l2Book", "data": {"coin": "ETH", "seq": i}})

        self.assertTrue(wait_for(lambda: len(received) == 3))
        self.assertEqual([0, 1, 2], received)

    def test_failing_callback_does_not_block_others(self) -> None:
        transport = self.open_client()
        received = []

        def boom(_data) -> None:
            raise RuntimeError("boom")

        self.client.subscribe(ETH_BOOK, boom)
        self.client.subscribe(ETH_BOOK, received.append)

        with self.assertLogs("tests.client.dispatch", level="ERROR"):
            transport.simulate_message({"channel": "l2Book", "data": {"ok": True, "coin": "ETH"}})
            self.assertTrue(wait_for(lambda: received))

        self.assertEqual([{"ok": True, "coin": "ETH"}], received)


class ReconnectTest(StreamClientTestCase):
    def test_replays_active_subscriptions_after_unexpected_close(self) -> None:
        first = self.open_client()
        self.client.subscribe(ETH_BOOK, noop)
        self.client.subscribe(BTC_TRADES, noop)
        self.client.subscribe(ETH_BOOK, noop)
        self.factory.auto_open = True

        first.simulate_drop()

        self.assertTrue(wait_for(lambda: len(self.factory.transports) == 2 and self.client.is_connected()))
        replayed = self.factory.last.frames("subscribe")
        self.assertEqual(2, len(replayed))
        self.assertCountEqual([subscribe_frame(ETH_BOOK), subscribe_frame(BTC_TRADES)], replayed)

    def test_retries_failed_reconnects(self) -> None:
        first = self.open_client()
        self.client.subscribe(ETH_BOOK, noop)
        self.factory.failures = 2
        self.factory.auto_open = True

        first.simulate_drop()

        self.assertTrue(wait_for(self.client.is_connected))
        self.assertEqual(4, len(self.factory.transports))
        self.assertEqual([subscribe_frame(ETH_BOOK)], self.factory.last.frames("subscribe"))

    def test_no_reconnect_when_disabled(self) -> None:
        self.client = self.make_client(reconnect=False)
        transport = self.open_client()
        transport.simulate_drop()
        self.assertFalse(wait_for(lambda: len(self.factory.transports) > 1, timeout=0.1))
        self.assertEqual(ConnectionState.DISCONNECTED, self.client.state)

    def test_no_reconnect_after_close(self) -> None:
        self.open_client()
        self.client.close()
        self.assertFalse(wait_for(lambda: len(self.factory.transports) > 1, timeout=0.1))

    def test_drop_before_open_does_not_reconnect(self) -> None:
        self.client.connect()
        self.factory.last.simulate_drop()
        self.assertFalse(wait_for(lambda: len(self.factory.transports) > 1, timeout=0.1))


class LifecycleTest(StreamClientTestCase):
    def test_open_callback(self) -> None:
        opened = threading.Event()
        self.client.on("open", opened.set)
        self.open_client()
        self.assertTrue(opened.is_set())

    def test_close_callback_fires_on_close(self) -> None:
        closed = threading.Event()
        self.client.on("close", closed.set)
        self.open_client()
        self.client.close()
        self.assertTrue(closed.is_set())

    def test_error_callback_receives_error(self) -> None:
        errors = []
        self.client.on("error", errors.append)
        transport = self.open_client()
        error = RuntimeError("test error")
        transport.simulate_error(error)
        self.assertEqual([error], errors)
        self.assertTrue(self.client.is_connected())

    def test_last_registration_wins(self) -> None:
        calls = []
        self.client.on("open", lambda: calls.append("first"))
        self.client.on("open", lambda: calls.append("second"))
        self.open_client()
        self.assertEqual(["second"], calls)

    def test_unknown_event_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.client.on("message", noop)

    def test_failing_lifecycle_callback_is_contained(self) -> None:
        def boom() -> None:
            raise RuntimeError("boom")

        self.client.on("open", boom)
        with self.assertLogs("tests.client", level="ERROR"):
            self.open_client()
        self.assertTrue(self.client.is_connected())

    def test_connect_failure_raises_and_reports(self) -> None:
        errors = []
        self.client.on("error", errors.append)
        self.factory.failures = 1

        with self.assertRaises(WebSocketError):
            self.client.connect()

        self.assertEqual(ConnectionState.DISCONNECTED, self.client.state)
        self.assertEqual(1, len(errors))

    def test_close_is_idempotent(self) -> None:
        transport = self.open_client()
        self.client.close()
        self.client.close()
        self.assertTrue(transport.closed)
        self.assertFalse(self.client.is_connected())
        self.assertEqual(ConnectionState.DISCONNECTED, self.client.state)
        self.assertIsNone(self.client._dispatcher)
        self.assertIsNone(self.client._heartbeat)

    def test_close_from_open_callback(self) -> None:
        self.client.on("open", self.client.close)
        self.open_client()
        self.assertEqual(ConnectionState.DISCONNECTED, self.client.state)

    def test_close_from_data_callback(self) -> None:
        transport = self.open_client()
        self.client.subscribe(ETH_BOOK, lambda _data: self.client.close())
        transport.simulate_message({"channel": "l2Book", "data": {"coin": "ETH"}})
        self.assertTrue(
            wait_for(lambda: transport.closed and self.client.state is ConnectionState.DISCONNECTED)
        )
        self.assertIsNone(self.client._dispatcher)

    def test_reconnect_after_close_via_connect(self) -> None:
        self.open_client()
        self.client.subscribe(ETH_BOOK, noop)
        self.client.close()

        second = self.open_client()

        self.assertTrue(self.client.is_connected())
        self.assertEqual([subscribe_frame(ETH_BOOK)], second.frames("subscribe"))

    def test_context_manager_connects_and_closes(self) -> None:
        with self.make_client() as client:
            self.factory.last.simulate_open()
            self.assertTrue(client.is_connected())
        self.assertEqual(ConnectionState.DISCONNECTED, client.state)


class UserEventFeedTest(StreamClientTestCase):
    USER_A = {"type": "userEvents", "user": "0xAAA"}
    USER_B = {"type": "userEvents", "user": "0xBBB"}

    def test_second_user_is_rejected_and_never_sent(self) -> None:
        transport = self.open_client()
        received_a = []
        self.client.subscribe(self.USER_A, received_a.append)

        with self.assertRaises(InvalidChannelError):
            self.client.subscribe(self.USER_B, noop)

        self.assertEqual([subscribe_frame(self.USER_A)], transport.frames("subscribe"))
        self.assertEqual({"userEvents:0xaaa": 1}, self.client.subscriptions())

        transport.simulate_message({"channel": "user", "data": {"fills": ["for-AAA"]}})
        self.assertTrue(wait_for(lambda: received_a))
        self.assertEqual([{"fills": ["for-AAA"]}], received_a)

    def test_missing_user_is_rejected_before_any_frame(self) -> None:
        transport = self.open_client()
        with self.assertRaises(InvalidChannelError):
            self.client.subscribe({"type": "userEvents"}, noop)
        with self.assertRaises(InvalidChannelError):
            self.client.subscribe({"type": "orderUpdates"}, noop)
        self.assertEqual([], transport.sent)

    def test_user_frames_follow_the_current_user(self) -> None:
        transport = self.open_client()
        handle = self.client.subscribe(self.USER_A, noop)
        self.client.unsubscribe(handle)
        received_b = []
        self.client.subscribe(self.USER_B, received_b.append)

        transport.simulate_message({"channel": "user", "data": {"fills": ["for-BBB"]}})

        self.assertTrue(wait_for(lambda: received_b))
        self.assertEqual([{"fills": ["for-BBB"]}], received_b)

    def test_user_frames_without_subscription_are_discarded(self) -> None:
        transport = self.open_client()
        received = []
        self.client.subscribe(ETH_BOOK, received.append)

        transport.simulate_message({"channel": "orderUpdates", "data": [{"order": {}}]})
        transport.simulate_message({"channel": "l2Book", "data": {"coin": "ETH"}})

        self.assertTrue(wait_for(lambda: received))
        self.assertEqual([{"coin": "ETH"}], received)


class SingleConnectionTest(StreamClientTestCase):
    def test_connect_during_backoff_defers_to_supervisor(self) -> None:
        self.client = self.make_client(backoff=BackoffConfig(initial=0.3, maximum=0.3))
        first = self.open_client()
        received = []
        self.client.subscribe(ETH_BOOK, received.append)
        self.factory.auto_open = True

        first.simulate_drop()
        self.assertTrue(wait_for(lambda: self.client._supervisor.running))
        self.client.connect()
        self.assertEqual(1, len(self.factory.transports))

        self.assertTrue(wait_for(self.client.is_connected))
        self.assertEqual(2, len(self.factory.transports))

        self.factory.last.simulate_message({"channel": "l2Book", "data": {"coin": "ETH", "n": 1}})
        self.assertTrue(wait_for(lambda: received))
        self.assertFalse(wait_for(lambda: len(received) > 1, timeout=0.1))
        self.assertEqual([{"coin": "ETH", "n": 1}], received)

    def test_new_connection_closes_and_silences_the_previous_one(self) -> None:
        first = self.open_client()
        received = []
        self.client.subscribe(ETH_BOOK, received.append)

        self.client._establish_connection()
        second = self.factory.last
        second.simulate_open()

        self.assertIsNot(first, second)
        self.assertTrue(first.closed)
        self.assertTrue(self.client.is_connected())

        first.simulate_message({"channel": "l2Book", "data": {"coin": "ETH", "from": "old"}})
        second.simulate_message({"channel": "l2Book", "data": {"coin": "ETH", "from": "new"}})

        self.assertTrue(wait_for(lambda: received))
        self.assertFalse(wait_for(lambda: len(received) > 1, timeout=0.1))
        self.assertEqual([{"coin": "ETH", "from": "new"}], received)

    def test_slow_callback_at_close_never_overlaps_the_next_worker(self) -> None:
        self.client = self.make_client(join_timeout=0.1)
        first = self.open_client()
        entered, release = threading.Event(), threading.Event()
        guard = threading.Lock()
        active, peak, received = [0], [0], []

        def slow(data) -> None:
            with guard:
                active[0] += 1
                peak[0] = max(peak[0], active[0])
            try:
                if data["n"] == 1:
                    entered.set()
                    release.wait(2)
                received.append(data["n"])
            finally:
                with guard:
                    active[0] -= 1

        self.client.subscribe(ETH_BOOK, slow)
        first.simulate_message({"channel": "l2Book", "data": {"coin": "ETH", "n": 1}})
        self.assertTrue(entered.wait(1))
        stale = self.client._dispatcher

        with self.assertLogs("tests.client", level="WARNING"):
            self.client.close()

        second = self.open_client()
        for n in range(2, 21):
            second.simulate_message({"channel": "l2Book", "data": {"coin": "ETH", "n": n}})
        release.set()

        self.assertTrue(wait_for(lambda: len(received) == 20))
        self.assertEqual(list(range(1, 21)), received)
        self.assertEqual(1, peak[0])
        self.assertTrue(wait_for(lambda: not stale.is_alive()))


class HeartbeatIntegrationTest(StreamClientTestCase):
    def test_pings_while_connected(self) -> None:
        self.client = self.make_client(heartbeat_interval=0.01)
        transport = self.open_client()
        self.assertTrue(wait_for(lambda: len(transport.frames("ping")) >= 2))
        self.assertEqual({"method": "ping"}, transport.frames("ping")[0])

    def test_send_failures_are_logged_not_raised(self) -> None:
        transport = self.open_client()

        def broken_send(_text: str) -> None:
            raise OSError("broken pipe")

        transport.send = broken_send
        with self.assertLogs("tests.client", level="WARNING"):
            self.assertFalse(self.client.send_ping())
            self.client.subscribe(ETH_BOOK, noop)


if __name__ == "__main__":
    unittest.main()
