"""Request dispatch adapter.

The router decides how a request is answered but knows nothing about the
transport. It gets a ``dispatch(request, reply)`` coroutine that runs the
underlying handler against a shim reply and returns what the handler sent:

    shim.send(payload)              -> dispatch returns payload
    shim.status(code).send(payload) -> dispatch raises DispatchRejection

Each dispatch settles exactly once. A second ``send`` raises
DispatchAlreadySettled rather than overwriting the first outcome.

Handlers MUST settle. One that returns without calling either method
leaves the dispatch waiting forever unless ``timeout`` is set.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable

import logfire
from aiohttp import web

from .errors import DispatchAlreadySettled, DispatchRejection
from .reply import Reply

Handler = Callable[[web.Request, "ReplyShim"], Any]
Dispatch = Callable[[web.Request, Reply], Awaitable[Any]]
Router = Callable[[web.Request, Reply, Any, Dispatch], Awaitable[None]]


class _StatusSender:
    """What ``shim.status(code)`` returns."""

    def __init__(self, shim: "ReplyShim", code: int):
        self._shim = shim
        self._code = code

    def send(self, payload: Any = None) -> None:
        self._shim._settle(DispatchRejection(self._code, payload))


class ReplyShim:
    """Stands in for the reply while the underlying handler runs.

    ``send`` and ``status`` settle the pending dispatch; anything else
    (headers, ...) falls through to the real Reply.
    """

    def __init__(self, reply: Reply, future: asyncio.Future):
        self._reply = reply
        self._future = future

    def _settle(self, outcome: Any) -> None:
        if self._future.done():
            raise DispatchAlreadySettled("Dispatch was already settled")
        if isinstance(outcome, BaseException):
            self._future.set_exception(outcome)
        else:
            self._future.set_result(outcome)

    def send(self, payload: Any = None) -> None:
        self._settle(payload)

    def status(self, code: int) -> _StatusSender:
        return _StatusSender(self, code)

    def __getattr__(self, name: str) -> Any:
        return getattr(self._reply, name)


_handler_tasks: set[asyncio.Task] = set()


async def _run_handler(
    handler: Handler,
    request: web.Request,
    shim: ReplyShim,
    future: asyncio.Future,
) -> None:
    try:
        result = handler(request, shim)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        if future.done():
            logfire.warning(f"Handler raised after settling: {e}")
        else:
            future.set_exception(e)


def make_dispatcher(handler: Handler, timeout: float | None = None) -> Dispatch:
    """Wrap an underlying handler into a resolve/reject style dispatch.

    Args:
        handler: ``handler(request, shim)``, sync or async. It must call
            ``shim.send`` or ``shim.status(code).send`` exactly once.
        timeout: Seconds to wait for the handler to settle. None waits forever.

    Returns:
        ``async dispatch(request, reply) -> payload``
    """

    async def dispatch(request: web.Request, reply: Reply) -> Any:
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        shim = ReplyShim(reply, future)

        # The handler may keep working after it settles; only the outcome is awaited
        task = asyncio.create_task(_run_handler(handler, request, shim, future))
        _handler_tasks.add(task)
        task.add_done_callback(_handler_tasks.discard)

        try:
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            task.cancel()
            raise

    return dispatch


async def handle_routed(
    request: web.Request,
    reply: Reply,
    router: Router,
    config: Any,
    dispatch: Dispatch,
) -> Reply:
    """Run the router and make sure the reply always ends up answered.

    - A DispatchRejection the router lets through is answered with its own
      status and payload.
    - Any other error becomes ``500 {"error": message}``; the exception
      object itself never reaches the client.
    - A router that returns without sending gets a 500 as well.
    """
    try:
        await router(request, reply, config, dispatch)
    except DispatchRejection as e:
        logfire.debug(f"Dispatch rejected with status {e.code}")
        if not reply.sent:
            reply.status(e.code).send(e.payload)
    except asyncio.TimeoutError:
        logfire.error("Dispatch timed out waiting for the handler to settle")
        if not reply.sent:
            reply.status(504).send({"error": "Upstream handler did not respond"})
    except Exception as e:
        logfire.error(f"Router error: {e}")
        if not reply.sent:
            reply.status(500).send({"error": str(e)})

    if not reply.sent:
        logfire.error("Router returned without sending a response")
        reply.status(500).send({"error": "Router did not produce a response"})
    return reply
