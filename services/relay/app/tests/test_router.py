import json
import unittest

from services.relay.app.engine.audit import AuditSink
from services.relay.app.engine.credentials import CredentialValidator
from services.relay.app.engine.ratelimit import JoinRateLimiter
from services.relay.app.engine.registry import Role, SessionRegistry
from services.relay.app.engine.router import ConnectionContext, MessageRouter
from services.relay.app.tests.fakes import FakeClock, FakeConnection

SECRET = "agent-s3cret"


def frame(kind: str, **fields) -> str:
    return json.dumps({"type": kind, **fields})


class RouterTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = FakeClock()
        self.registry = SessionRegistry(session_timeout_sec=600, clock=self.clock)
        self.limiter = JoinRateLimiter(max_attempts=5, window_sec=60, clock=self.clock)
        self.audit = AuditSink(capacity=100)
        self.router = MessageRouter(self.registry, self.limiter, CredentialValidator(SECRET), self.audit)

    def connect(self, addr: str) -> ConnectionContext:
        return ConnectionContext(conn=FakeConnection(addr), addr=addr)

    async def create(self, ctx: ConnectionContext) -> str:
        await self.router.handle(ctx, frame("create-session"))
        return ctx.conn.sent[-1]["code"]

    async def join(self, ctx: ConnectionContext, code: str, key: str = SECRET) -> None:
        await self.router.handle(ctx, frame("join-session", code=code, agentKey=key))

    def audit_events(self):
        return [entry.event for entry in self.audit.entries()]


class SessionFlowTests(RouterTestCase):
    async def test_create_binds_presenter(self) -> None:
        presenter = self.connect("10.0.0.1")
        code = await self.create(presenter)
        self.assertEqual(presenter.conn.sent, [{"type": "session-created", "code": code}])
        self.assertEqual((presenter.code, presenter.role), (code, Role.PRESENTER))
        self.assertIn("SESSION_CREATED", self.audit_events())

    async def test_second_create_from_bound_connection_is_dropped(self) -> None:
        presenter = self.connect("10.0.0.1")
        code = await self.create(presenter)
        await self.router.handle(presenter, frame("create-session"))
        self.assertEqual(len(self.registry), 1)
        self.assertEqual(presenter.code, code)
        self.assertEqual(len(presenter.conn.sent), 1)

    async def test_end_to_end_join_and_presenter_disconnect(self) -> None:
        presenter = self.connect("10.0.0.1")
        agent = self.connect("10.0.0.2")
        code = await self.create(presenter)
        await self.router.handle(presenter, frame("full-page", html="<form/>", passwordLength=6))

        await self.join(agent, code)
        self.assertEqual(
            agent.conn.sent,
            [
                {"type": "session-joined", "code": code},
                {"type": "full-page", "html": "<form/>", "passwordLength": 6},
            ],
        )
        self.assertEqual(presenter.conn.sent[-1], {"type": "agent-joined"})
        self.assertEqual(agent.role, Role.AGENT)

        presenter.conn.closed = True
        await self.router.disconnect(presenter)
        self.assertEqual(agent.conn.sent[-1], {"type": "client-disconnected"})
        self.assertIsNone(self.registry.lookup(code))

        latecomer = self.connect("10.0.0.3")
        await self.join(latecomer, code)
        self.assertEqual(latecomer.conn.sent, [{"type": "error", "message": "Session not found or expired"}])
        self.assertIn("PRESENTER_DISCONNECTED", self.audit_events())

    async def test_join_without_snapshot_sends_only_joined(self) -> None:
        presenter = self.connect("10.0.0.1")
        agent = self.connect("10.0.0.2")
        code = await self.create(presenter)
        await self.join(agent, code)
        self.assertEqual(agent.conn.types(), ["session-joined"])

    async def test_relay_in_both_directions(self) -> None:
        presenter = self.connect("10.0.0.1")
        agent = self.connect("10.0.0.2")
        code = await self.create(presenter)
        await self.join(agent, code)

        await self.router.handle(presenter, frame("cursor-move", x=10, y=20))
        await self.router.handle(presenter, frame("voice-message", text="I forgot my password"))
        await self.router.handle(agent, frame("ai-response", text="Click reset"))

        self.assertEqual(agent.conn.sent[-2], {"type": "cursor-move", "x": 10, "y": 20})
        self.assertEqual(agent.conn.sent[-1], {"type": "voice-message", "text": "I forgot my password"})
        self.assertEqual(presenter.conn.sent[-1], {"type": "ai-response", "text": "Click reset"})
        self.assertEqual(self.registry.lookup(code).cursor.x, 10)

    async def test_presenter_updates_kept_without_agent(self) -> None:
        presenter = self.connect("10.0.0.1")
        code = await self.create(presenter)
        await self.router.handle(presenter, frame("full-page", html="<p/>"))
        session = self.registry.lookup(code)
        self.assertEqual(session.page_snapshot, "<p/>")
        self.assertEqual(session.password_length, 0)

    async def test_agent_disconnect_keeps_session_joinable(self) -> None:
        presenter = self.connect("10.0.0.1")
        agent = self.connect("10.0.0.2")
        code = await self.create(presenter)
        await self.join(agent, code)

        agent.conn.closed = True
        await self.router.disconnect(agent)
        self.assertEqual(presenter.conn.sent[-1], {"type": "agent-disconnected"})

        second = self.connect("10.0.0.3")
        await self.join(second, code)
        self.assertEqual(second.conn.types(), ["session-joined"])

    async def test_end_session_from_agent(self) -> None:
        presenter = self.connect("10.0.0.1")
        agent = self.connect("10.0.0.2")
        code = await self.create(presenter)
        await self.join(agent, code)

        await self.router.handle(agent, frame("end-session"))
        self.assertEqual(presenter.conn.sent[-1], {"type": "session-ended"})
        self.assertEqual(agent.conn.sent[-1], {"type": "session-ended"})
        self.assertIsNone(self.registry.lookup(code))
        self.assertIsNone(agent.code)

        # Presenter's binding is now stale, so it may start over.
        new_code = await self.create(presenter)
        self.assertNotEqual(new_code, code)
        self.assertEqual(presenter.code, new_code)


class AuthorizationTests(RouterTestCase):
    async def test_full_page_from_agent_is_dropped(self) -> None:
        presenter = self.connect("10.0.0.1")
        agent = self.connect("10.0.0.2")
        code = await self.create(presenter)
        await self.router.handle(presenter, frame("full-page", html="<genuine/>"))
        await self.join(agent, code)
        presenter_seen = list(presenter.conn.sent)

        await self.router.handle(agent, frame("full-page", html="<forged/>"))
        self.assertEqual(self.registry.lookup(code).page_snapshot, "<genuine/>")
        self.assertEqual(presenter.conn.sent, presenter_seen)

    async def test_presenter_only_messages_from_agent_are_dropped(self) -> None:
        presenter = self.connect("10.0.0.1")
        agent = self.connect("10.0.0.2")
        code = await self.create(presenter)
        await self.join(agent, code)
        presenter_seen = list(presenter.conn.sent)
        agent_seen = list(agent.conn.sent)

        await self.router.handle(agent, frame("cursor-move", x=1, y=1))
        await self.router.handle(agent, frame("voice-message", text="spoof"))
        await self.router.handle(presenter, frame("ai-response", text="spoof"))

        self.assertIsNone(self.registry.lookup(code).cursor)
        self.assertEqual(presenter.conn.sent, presenter_seen)
        self.assertEqual(agent.conn.sent, agent_seen)

    async def test_unbound_connection_messages_are_dropped(self) -> None:
        stranger = self.connect("10.0.0.9")
        for kind, fields in [
            ("full-page", {"html": "<x/>"}),
            ("cursor-move", {"x": 1, "y": 2}),
            ("voice-message", {"text": "hi"}),
            ("ai-response", {"text": "hi"}),
            ("end-session", {}),
        ]:
            await self.router.handle(stranger, frame(kind, **fields))
        self.assertEqual(stranger.conn.sent, [])

    async def test_wrong_key(self) -> None:
        presenter = self.connect("10.0.0.1")
        agent = self.connect("10.0.0.2")
        code = await self.create(presenter)
        await self.join(agent, code, key="guess")
        self.assertEqual(agent.conn.sent, [{"type": "error", "message": "Invalid agent credentials"}])
        self.assertIsNone(agent.code)
        self.assertIsNone(self.registry.lookup(code).agent)
        self.assertIn("AUTH_FAILED", self.audit_events())

    async def test_missing_key(self) -> None:
        presenter = self.connect("10.0.0.1")
        agent = self.connect("10.0.0.2")
        code = await self.create(presenter)
        await self.router.handle(agent, frame("join-session", code=code))
        self.assertEqual(agent.conn.sent[-1]["message"], "Invalid agent credentials")

    async def test_occupied_session(self) -> None:
        presenter = self.connect("10.0.0.1")
        code = await self.create(presenter)
        await self.join(self.connect("10.0.0.2"), code)
        intruder = self.connect("10.0.0.3")
        await self.join(intruder, code)
        self.assertEqual(
            intruder.conn.sent, [{"type": "error", "message": "Session already has an agent connected"}]
        )

    async def test_rate_limit_applies_before_credentials(self) -> None:
        presenter = self.connect("10.0.0.1")
        code = await self.create(presenter)
        guesser = self.connect("10.6.6.6")
        for _ in range(5):
            await self.join(guesser, code, key="wrong")
        await self.join(guesser, code, key=SECRET)

        last = guesser.conn.sent[-1]
        self.assertEqual(last["type"], "error")
        self.assertTrue(last["message"].startswith("Too many attempts. Try again in "))
        self.assertIsNone(guesser.code)
        self.assertIn("RATE_LIMITED", self.audit_events())

        self.clock.advance(61)
        await self.join(guesser, code)
        self.assertEqual(guesser.conn.sent[-1], {"type": "session-joined", "code": code})


class MalformedInputTests(RouterTestCase):
    async def test_garbage_is_ignored(self) -> None:
        ctx = self.connect("10.0.0.1")
        for raw in ["not json", "[]", "{}", frame("teleport"), frame("cursor-move", x="left", y=1), b"\xff"]:
            await self.router.handle(ctx, raw)
        self.assertEqual(ctx.conn.sent, [])
        self.assertFalse(ctx.conn.closed)

    async def test_connection_still_usable_after_garbage(self) -> None:
        ctx = self.connect("10.0.0.1")
        await self.router.handle(ctx, "{{{")
        await self.router.handle(ctx, frame("create-session"))
        self.assertEqual(ctx.conn.types(), ["session-created"])

    async def test_unknown_fields_are_ignored(self) -> None:
        ctx = self.connect("10.0.0.1")
        await self.router.handle(ctx, frame("create-session", extra=True))
        self.assertEqual(ctx.conn.types(), ["session-created"])


if __name__ == "__main__":
    unittest.main()
