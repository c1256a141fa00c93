"""Dispatching of incoming BeeMsg requests to their handlers.

A request carries a message ID. The dispatcher looks up the handler registered for that ID,
lets the request decode its message and passes it on to the handler. Handlers that expect a
response send back what the handler returns. If the handler fails, they send back a fallback
response. If the management is shutting down, they send back a generic "try again" response.
Unknown message IDs get a generic "try again" response as well.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from beemgmt.config import Config

__all__ = [
    "TRY_AGAIN",
    "PreShutdownError",
    "GenericResponse",
    "Request",
    "RunState",
    "fail_on_pre_shutdown",
    "Context",
    "Dispatcher",
]

_log = logging.getLogger(__name__)
_TRACE = 5

TRY_AGAIN = 0
"""Generic response code asking the peer to retry later."""

_UNHANDLED_DESCRIPTION = b"Unhandled msg"


class PreShutdownError(Exception):
    """Raised by handlers that refuse work while the management is shutting down."""

    def __init__(self, message: str = "Management is shutting down") -> None:
        super().__init__(message)


@dataclass
class GenericResponse:
    """A response carrying only a code and a description."""

    code: int
    description: bytes = b""


@runtime_checkable
class Request(Protocol):
    """An incoming request as seen by the dispatcher and the handlers."""

    @property
    def msg_id(self) -> int: ...

    @property
    def addr(self) -> Any: ...

    def deserialize_msg(self) -> Any:
        """Decode and return the message carried by this request."""
        ...

    async def respond(self, msg: Any) -> None:
        """Send a response message back to the peer."""
        ...

    def authenticate_connection(self) -> None:
        """Mark the connection the request came in on as authenticated."""
        ...


class RunState:
    """Tracks whether the management is preparing to shut down."""

    __slots__ = ("_pre_shutdown",)

    def __init__(self) -> None:
        self._pre_shutdown = False

    def __repr__(self) -> str:
        return f"RunState(pre_shutdown={self._pre_shutdown})"

    def pre_shutdown(self) -> bool:
        """True once the pre shutdown phase has started."""
        return self._pre_shutdown

    def enter_pre_shutdown(self) -> None:
        """Start the pre shutdown phase. It cannot be left again."""
        self._pre_shutdown = True


def fail_on_pre_shutdown(run_state: RunState) -> None:
    """Raise PreShutdownError if the management is in pre shutdown state."""
    if run_state.pre_shutdown():
        raise PreShutdownError()


@dataclass
class Context:
    """Shared state handed to every request handler."""

    run_state: RunState = field(default_factory=RunState)
    config: Config = field(default_factory=Config)
    client_pulled_states: asyncio.Queue = field(default_factory=asyncio.Queue)
    _pending: set[asyncio.Task] = field(default_factory=set, init=False, repr=False)

    def notify_client_pulled_state(self, node_type: Any, node_id: int) -> None:
        """Report that a client pulled the target states, if shutting down.

        Never blocks the caller. If the queue is full, the notice is delivered in the
        background once there is room.
        """
        if not self.run_state.pre_shutdown():
            return
        item = (node_type, node_id)
        try:
            self.client_pulled_states.put_nowait(item)
        except asyncio.QueueFull:
            task = asyncio.get_running_loop().create_task(self.client_pulled_states.put(item))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)


@dataclass(frozen=True)
class _Entry:
    handler: Callable[..., Any]
    name: str
    error_response: Callable[[], Any] | None


class Dispatcher:
    """Maps message IDs to handlers and runs them for incoming requests."""

    def __init__(self) -> None:
        self._entries: dict[int, _Entry] = {}

    def __contains__(self, msg_id: object) -> bool:
        return msg_id in self._entries

    def register(
        self,
        msg_id: int,
        handler: Callable[..., Any],
        name: str,
        error_response: Callable[[], Any] | None = None,
    ) -> None:
        """Register a handler called as ``handler(msg, ctx, req)``.

        ``name`` describes the message in log and error messages. If ``error_response``
        is given, the handler answers with a response: its return value is sent back,
        and if it fails, ``error_response()`` is sent instead. Without it, the handler
        sends no response and its failures are only logged.
        """
        if msg_id in self._entries:
            raise ValueError(f"A handler for message ID {msg_id} is already registered")
        self._entries[msg_id] = _Entry(handler, name, error_response)

    async def dispatch(self, ctx: Context, req: Request) -> None:
        """Decode the request's message, run its handler and respond if required.

        Raises ValueError if the message cannot be decoded.
        """
        entry = self._entries.get(req.msg_id)
        if entry is None:
            await self._handle_unspecified(req)
            return

        try:
            msg = req.deserialize_msg()
        except Exception as err:
            raise ValueError(
                f"{entry.name} ({req.msg_id}) from {req.addr!r}: {err}"
            ) from err

        _log.log(_TRACE, "INCOMING from %r: %r", req.addr, msg)

        try:
            result = entry.handler(msg, ctx, req)
            if inspect.isawaitable(result):
                result = await result
        except PreShutdownError as err:
            if entry.error_response is None:
                _log.error("%s: %s", entry.name, err)
                return
            _log.debug("%s: %s", entry.name, err)
            await req.respond(GenericResponse(code=TRY_AGAIN, description=str(err).encode()))
            return
        except Exception as err:
            _log.error("%s: %s", entry.name, err)
            if entry.error_response is None:
                return
            result = entry.error_response()
        else:
            if entry.error_response is None:
                _log.log(_TRACE, "PROCESSED from %r", req.addr)
                return
            _log.log(_TRACE, "PROCESSED from %r. Responding: %r", req.addr, result)

        await req.respond(result)

    @staticmethod
    async def _handle_unspecified(req: Request) -> None:
        _log.warning("Unhandled msg INCOMING from %r with ID %s", req.addr, req.msg_id)
        await req.respond(GenericResponse(code=TRY_AGAIN, description=_UNHANDLED_DESCRIPTION))