import asyncio
from dataclasses import dataclass, field
from typing import Any

import pytest

from beemgmt.dispatch import (
    TRY_AGAIN,
    Context,
    Dispatcher,
    GenericResponse,
    PreShutdownError,
    RunState,
    fail_on_pre_shutdown,
)


@dataclass
class FakeRequest:
    msg_id: int
    msg: Any = None
    addr: Any = ("127.0.0.1", 8008)
    fail_decode: bool = False
    responses: list = field(default_factory=list)
    authenticated: bool = False

    def deserialize_msg(self):
        if self.fail_decode:
            raise EOFError("truncated")
        return self.msg

    async def respond(self, msg):
        self.responses.append(msg)

    def authenticate_connection(self):
        self.authenticated = True


@dataclass
class Ack:
    ack_id: bytes = b""


def test_run_state_enters_pre_shutdown():
    state = RunState()
    assert state.pre_shutdown() is False
    state.enter_pre_shutdown()
    assert state.pre_shutdown() is True


def test_fail_on_pre_shutdown():
    state = RunState()
    fail_on_pre_shutdown(state)
    state.enter_pre_shutdown()
    with pytest.raises(PreShutdownError, match="Management is shutting down"):
        fail_on_pre_shutdown(state)


@pytest.mark.asyncio
async def test_unhandled_message_gets_try_again():
    req = FakeRequest(msg_id=42)
    await Dispatcher().dispatch(Context(), req)
    assert req.responses == [GenericResponse(code=TRY_AGAIN, description=b"Unhandled msg")]


@pytest.mark.asyncio
async def test_response_handler_result_is_sent():
    seen = []

    async def handle(msg, ctx, req):
        seen.append((msg, ctx))
        return Ack(ack_id=msg.ack_id)

    ctx = Context()
    dispatcher = Dispatcher()
    dispatcher.register(1, handle, "Ack", Ack)
    req = FakeRequest(msg_id=1, msg=Ack(ack_id=b"abc"))
    await dispatcher.dispatch(ctx, req)

    assert req.responses == [Ack(ack_id=b"abc")]
    assert seen == [(Ack(ack_id=b"abc"), ctx)]


@pytest.mark.asyncio
async def test_failing_handler_sends_error_response():
    async def handle(msg, ctx, req):
        raise RuntimeError("database gone")

    dispatcher = Dispatcher()
    dispatcher.register(7, handle, "Failing", lambda: Ack(ack_id=b"error"))
    req = FakeRequest(msg_id=7, msg=Ack())
    await dispatcher.dispatch(Context(), req)

    assert req.responses == [Ack(ack_id=b"error")]


@pytest.mark.asyncio
async def test_pre_shutdown_sends_try_again():
    async def handle(msg, ctx, req):
        fail_on_pre_shutdown(ctx.run_state)
        return Ack()

    ctx = Context()
    ctx.run_state.enter_pre_shutdown()
    dispatcher = Dispatcher()
    dispatcher.register(3, handle, "Heartbeat", Ack)
    req = FakeRequest(msg_id=3, msg=Ack())
    await dispatcher.dispatch(ctx, req)

    assert req.responses == [
        GenericResponse(code=TRY_AGAIN, description=b"Management is shutting down")
    ]


@pytest.mark.asyncio
async def test_no_response_handler_sends_nothing_and_swallows_errors():
    calls = []

    async def handle(msg, ctx, req):
        calls.append(msg)
        req.authenticate_connection()
        raise RuntimeError("ignored")

    dispatcher = Dispatcher()
    dispatcher.register(5, handle, "AuthenticateChannel")
    req = FakeRequest(msg_id=5, msg=Ack())
    await dispatcher.dispatch(Context(), req)

    assert req.responses == []
    assert calls == [Ack()]
    assert req.authenticated is True


@pytest.mark.asyncio
async def test_sync_handler_is_supported():
    dispatcher = Dispatcher()
    dispatcher.register(9, lambda msg, ctx, req: Ack(ack_id=b"sync"), "Sync", Ack)
    req = FakeRequest(msg_id=9, msg=Ack())
    await dispatcher.dispatch(Context(), req)
    assert req.responses == [Ack(ack_id=b"sync")]


@pytest.mark.asyncio
async def test_decode_failure_raises_with_context():
    async def handle(msg, ctx, req):
        return Ack()

    dispatcher = Dispatcher()
    dispatcher.register(11, handle, "Register node", Ack)
    req = FakeRequest(msg_id=11, fail_decode=True)
    with pytest.raises(ValueError, match="Register node \\(11\\)"):
        await dispatcher.dispatch(Context(), req)
    assert req.responses == []


def test_duplicate_registration_rejected():
    dispatcher = Dispatcher()
    dispatcher.register(1, lambda m, c, r: None, "First")
    assert 1 in dispatcher
    with pytest.raises(ValueError):
        dispatcher.register(1, lambda m, c, r: None, "Second")


@pytest.mark.asyncio
async def test_client_pulled_state_ignored_when_running():
    ctx = Context()
    ctx.notify_client_pulled_state("client", 4)
    assert ctx.client_pulled_states.empty()


@pytest.mark.asyncio
async def test_client_pulled_state_reported_in_pre_shutdown():
    ctx = Context()
    ctx.run_state.enter_pre_shutdown()
    ctx.notify_client_pulled_state("client", 4)
    assert ctx.client_pulled_states.get_nowait() == ("client", 4)


@pytest.mark.asyncio
async def test_client_pulled_state_waits_for_room_in_full_queue():
    ctx = Context(client_pulled_states=asyncio.Queue(maxsize=1))
    ctx.run_state.enter_pre_shutdown()
    ctx.notify_client_pulled_state("client", 1)
    ctx.notify_client_pulled_state("client", 2)

    first = await asyncio.wait_for(ctx.client_pulled_states.get(), 1)
    second = await asyncio.wait_for(ctx.client_pulled_states.get(), 1)
    assert [first, second] == [("client", 1), ("client", 2)]