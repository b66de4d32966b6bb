import asyncio
import unittest
from mpvsync.clients.loopback import LoopbackTransport
from mpvsync.dispatcher import CommandDispatcher
from mpvsync.errors import Cancelled, ConnectionLost, EngineError, EngineRejected, NotConnected, Timeout
from mpvsync.models import Command, Priority, Source, Verb
from fakes import FakeClock, reset_settings, settle

class TestCommand(unittest.TestCase):
    def setUp(self):
        reset_settings()

    def test_wire_format(self):
        play = Command.create(Verb.PLAY)
        self.assertEqual(play.to_wire(), {"command": ["set_property", "pause", False], "request_id": play.id})
        seek = Command.create(Verb.SEEK, 12.5, "absolute")
        self.assertEqual(seek.wire_command(), ["seek", 12.5, "absolute", "exact"])
        self.assertEqual(Command.create(Verb.OBSERVE, 3, "pause").wire_command(), ["observe_property", 3, "pause"])
        self.assertEqual(Command.create(Verb.SET_VOLUME, 40).wire_command(), ["set_property", "volume", 40])

    def test_ids_increase(self):
        a = Command.create(Verb.PLAY)
        b = Command.create(Verb.PAUSE)
        self.assertGreater(b.id, a.id)

    def test_default_priority_and_timeout(self):
        seek = Command.create("seek", 1.0, "absolute")
        self.assertEqual(seek.priority, Priority.URGENT)
        self.assertEqual(seek.timeout, 1.0)
        speed = Command.create(Verb.SET_SPEED, 1.5)
        self.assertEqual(speed.priority, Priority.NORMAL)
        self.assertEqual(speed.timeout, 2.0)
        correction = Command.create(Verb.SEEK, 1.0, "absolute", priority=Priority.NORMAL, source=Source.SYNC_CORRECTION)
        self.assertEqual(correction.priority, Priority.NORMAL)
        self.assertEqual(correction.source, Source.SYNC_CORRECTION)

    def test_invalid_commands(self):
        with self.assertRaises(EngineError):
            Command.create("warp", 1)
        with self.assertRaises(EngineError):
            Command.create(Verb.SEEK, 1.0)
        with self.assertRaises(EngineError):
            Command.create(Verb.SEEK, 1.0, "sideways")
        with self.assertRaises(EngineError):
            Command.create(Verb.SET_SPEED, 0)
        with self.assertRaises(EngineError):
            Command.create(Verb.SET_VOLUME, 150)
        with self.assertRaises(EngineError):
            Command.create(Verb.PLAY, True)

    def test_play_and_pause_share_dedup_key(self):
        play = Command.create(Verb.PLAY)
        pause = Command.create(Verb.PAUSE)
        self.assertEqual(play.dedup_key, pause.dedup_key)
        self.assertNotEqual(play.dedup_value, pause.dedup_value)
        self.assertIsNone(Command.create(Verb.SEEK, 5, "relative").dedup_key)
        self.assertIsNone(Command.create(Verb.GET_PROPERTY, "pause").dedup_key)


class TestCommandDispatcher(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        reset_settings()
        self.clock = FakeClock()
        self.transport = LoopbackTransport()
        await self.transport.connect()
        self.dispatcher = CommandDispatcher(clock=self.clock)
        self.dispatcher.attach(self.transport)
        self.transport.add_message_listener(self.dispatcher.on_message)
        self.transport.add_disconnect_listener(lambda reason: self.dispatcher.fail_all(ConnectionLost, reason))
        self.dispatcher.start()

    async def asyncTearDown(self):
        await self.dispatcher.stop()

    async def test_seek_round_trip(self):
        reply = await self.dispatcher.call(Verb.SEEK, 12.5, "absolute")
        self.assertFalse(reply.deduplicated)
        self.assertEqual(reply.verb, Verb.SEEK)
        self.assertEqual(self.transport.sent_commands(), [["seek", 12.5, "absolute", "exact"]])
        self.assertEqual(self.dispatcher.stats.commands_sent, 1)
        self.assertEqual(self.transport.properties["time-pos"], 12.5)

    async def test_get_property_returns_data(self):
        reply = await self.dispatcher.call(Verb.GET_PROPERTY, "volume")
        self.assertEqual(reply.data, 100.0)

    async def test_duplicate_seek_inside_window(self):
        await self.dispatcher.call(Verb.SEEK, 10.0, "absolute")
        self.clock.advance(0.01)
        reply = await self.dispatcher.call(Verb.SEEK, 10.05, "absolute")
        self.assertTrue(reply.deduplicated)
        self.assertEqual(len(self.transport.sent), 1)
        self.assertEqual(self.dispatcher.stats.duplicates_blocked, 1)

        self.clock.advance(0.1)
        reply = await self.dispatcher.call(Verb.SEEK, 10.05, "absolute")
        self.assertFalse(reply.deduplicated)
        self.assertEqual(len(self.transport.sent), 2)

    async def test_distinct_seek_not_suppressed(self):
        await self.dispatcher.call(Verb.SEEK, 10.0, "absolute")
        reply = await self.dispatcher.call(Verb.SEEK, 20.0, "absolute")
        self.assertFalse(reply.deduplicated)
        self.assertEqual(len(self.transport.sent), 2)

    async def test_burst_collapses_to_one_write(self):
        futures = [self.dispatcher.submit(Command.create(Verb.SEEK, 42.0, "absolute")) for _ in range(10)]
        replies = await asyncio.gather(*futures)
        self.assertEqual(self.transport.sent_commands(), [["seek", 42.0, "absolute", "exact"]])
        self.assertEqual(sum(1 for r in replies if r.deduplicated), 9)
        self.assertEqual(self.dispatcher.stats.duplicates_blocked, 9)

    async def test_play_pause_play_all_sent(self):
        await self.dispatcher.call(Verb.PLAY)
        await self.dispatcher.call(Verb.PAUSE)
        await self.dispatcher.call(Verb.PLAY)
        self.assertEqual(self.transport.sent_commands(), [
            ["set_property", "pause", False],
            ["set_property", "pause", True],
            ["set_property", "pause", False],
        ])

    async def test_repeated_play_suppressed(self):
        await self.dispatcher.call(Verb.PLAY)
        reply = await self.dispatcher.call(Verb.PLAY)
        self.assertTrue(reply.deduplicated)
        self.assertEqual(len(self.transport.sent), 1)

    async def test_urgent_dispatched_before_normal(self):
        futures = [
            self.dispatcher.submit(Command.create(Verb.SET_SPEED, 1.5)),
            self.dispatcher.submit(Command.create(Verb.SET_VOLUME, 50)),
            self.dispatcher.submit(Command.create(Verb.SEEK, 5.0, "absolute")),
        ]
        await asyncio.gather(*futures)
        self.assertEqual([c[0:2] for c in self.transport.sent_commands()], [
            ["seek", 5.0],
            ["set_property", "speed"],
            ["set_property", "volume"],
        ])

    async def test_one_command_in_flight(self):
        self.transport.reply_delay = 0.02
        futures = [
            self.dispatcher.submit(Command.create(Verb.GET_PROPERTY, "pause")),
            self.dispatcher.submit(Command.create(Verb.GET_PROPERTY, "speed")),
        ]
        await settle(0.005)
        self.assertEqual(len(self.transport.sent), 1)
        self.assertEqual(self.dispatcher.in_flight, 1)
        self.assertEqual(self.dispatcher.queued, 1)
        await asyncio.gather(*futures)
        self.assertEqual(len(self.transport.sent), 2)

    async def test_timeout_does_not_block_queue(self):
        self.transport.respond = False
        hung = self.dispatcher.submit(Command.create(Verb.GET_PROPERTY, "pause", timeout=0.05))
        await settle()
        self.transport.respond = True
        following = self.dispatcher.submit(Command.create(Verb.GET_PROPERTY, "speed"))

        with self.assertRaises(Timeout):
            await hung
        reply = await following
        self.assertEqual(reply.data, 1.0)
        self.assertEqual(self.dispatcher.stats.timeouts, 1)
        self.assertEqual(self.dispatcher.in_flight, 0)

    async def test_rejected_reply(self):
        self.transport.reject = {"set_property": "property not found"}
        with self.assertRaises(EngineRejected) as cm:
            await self.dispatcher.call(Verb.SET_SPEED, 2.0)
        self.assertEqual(cm.exception.error, "property not found")
        self.assertEqual(self.dispatcher.stats.failures, 1)
        self.assertEqual(self.dispatcher.sample_count, 1)
        self.assertEqual(self.dispatcher.success_rate(), 0.0)

    async def test_invalid_command_never_reaches_wire(self):
        with self.assertRaises(EngineError):
            await self.dispatcher.call(Verb.SET_VOLUME, -1)
        with self.assertRaises(EngineError):
            self.dispatcher.submit("seek")
        self.assertEqual(self.transport.sent, [])

    async def test_not_connected(self):
        dispatcher = CommandDispatcher(clock=self.clock)
        with self.assertRaises(NotConnected):
            dispatcher.submit(Command.create(Verb.PLAY))

    async def test_connection_lost_fails_pending(self):
        self.transport.respond = False
        in_flight = self.dispatcher.submit(Command.create(Verb.GET_PROPERTY, "pause"))
        queued = self.dispatcher.submit(Command.create(Verb.GET_PROPERTY, "speed"))
        await settle()
        self.transport.drop("mpv exited")

        with self.assertRaises(ConnectionLost):
            await in_flight
        with self.assertRaises(ConnectionLost):
            await queued
        self.assertFalse(self.dispatcher.connected)
        with self.assertRaises(NotConnected):
            self.dispatcher.submit(Command.create(Verb.PLAY))

    async def test_stop_cancels_pending(self):
        self.transport.respond = False
        pending = self.dispatcher.submit(Command.create(Verb.GET_PROPERTY, "pause"))
        await settle()
        await self.dispatcher.stop()
        with self.assertRaises(Cancelled):
            await pending

if __name__ == '__main__':
    unittest.main()
