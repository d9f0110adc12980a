"""Deadlines and cancellation for awaited operations.

Every side-effecting await in llm_mcp (server connect, tool call, backend
call) runs under :func:`with_timeout`. Cancellation is modelled as a
:class:`CancellationSignal` passed down the call tree: the conversation owns
a root signal, each tool call gets a child with its own deadline. Aborting a
parent aborts every child; aborting a child never touches the parent.

Usage:
    root = CancellationSignal()
    result = await with_timeout(
        "call_tool:read_file",
        lambda signal: conn.call_tool("read_file", args, signal=signal),
        timeout_ms=30_000,
        parent_signal=root,
    )
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
from typing import Any, Awaitable, Callable, TypeVar

from llm_mcp.errors import OperationCancelledError, OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationSignal:
    """Chainable one-shot abort signal."""

    def __init__(self, label: str = "root") -> None:
        self.label = label
        self._reason: str | None = None
        self._aborted = False
        self._callbacks: list[Callable[[str | None], Any]] = []
        self._waiters: list[asyncio.Future[None]] = []
        self._detach: Callable[[], None] | None = None

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> str | None:
        return self._reason

    def abort(self, reason: str | None = None) -> None:
        """Abort this signal and every child. Later calls are no-ops."""
        if self._aborted:
            return
        self._aborted = True
        self._reason = reason
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_result(None)
        self._waiters.clear()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(reason)
            except Exception:
                logger.exception("Abort callback failed for signal %r", self.label)

    def add_callback(self, callback: Callable[[str | None], Any]) -> Callable[[], None]:
        """Run ``callback(reason)`` on abort. Returns a remover."""
        if self._aborted:
            callback(self._reason)
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return _remove

    def child(self, label: str | None = None) -> "CancellationSignal":
        """A signal that aborts when this one does, but not the reverse."""
        sub = CancellationSignal(label or f"{self.label}/child")
        sub._detach = self.add_callback(sub.abort)
        return sub

    def detach(self) -> None:
        """Stop listening to the parent signal, if any."""
        if self._detach is not None:
            self._detach()
            self._detach = None

    async def wait(self) -> None:
        """Suspend until the signal aborts."""
        if self._aborted:
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    def raise_if_aborted(self, operation: str | None = None) -> None:
        if self._aborted:
            raise OperationCancelledError(operation or self.label, self._reason)

    async def guard(self, awaitable: Awaitable[T], operation: str | None = None) -> T:
        """Await ``awaitable`` unless the signal aborts first.

        On abort the underlying task is cancelled and
        :class:`OperationCancelledError` is raised promptly.
        """
        self.raise_if_aborted(operation)
        task = asyncio.ensure_future(awaitable)
        abort_wait = asyncio.ensure_future(self.wait())
        try:
            await asyncio.wait({task, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            abort_wait.cancel()
        if task.done():
            return task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.debug("Operation %r raised while being cancelled", operation, exc_info=True)
        raise OperationCancelledError(operation or self.label, self._reason)


async def _run_cleanup(label: str, cleanup: Callable[[], Any]) -> None:
    try:
        outcome = cleanup()
        if inspect.isawaitable(outcome):
            await outcome
    except Exception:
        logger.exception("Cleanup failed for %s", label)


async def with_timeout(
    label: str,
    operation: Callable[[CancellationSignal], Awaitable[T]],
    *,
    timeout_ms: float,
    parent_signal: CancellationSignal | None = None,
    on_timeout: Callable[[], Any] | None = None,
    cleanup: Callable[[], Any] | None = None,
) -> T:
    """Run ``operation(signal)`` with a deadline.

    Args:
        label: Operation name used in errors and logs.
        operation: Coroutine function receiving the operation's own signal.
        timeout_ms: Deadline in milliseconds.
        parent_signal: Aborting it aborts this operation too.
        on_timeout: Called once when the deadline fires.
        cleanup: Sync or async callable, run at most once when the operation
            times out or fails. Its own failure is logged, never raised.

    Raises:
        OperationTimeoutError: The deadline fired first.
        OperationCancelledError: ``parent_signal`` aborted first.
    """
    if timeout_ms <= 0:
        raise ValueError(f"timeout_ms must be positive, got {timeout_ms}")

    signal = parent_signal.child(label) if parent_signal is not None else CancellationSignal(label)
    timed_out = False

    def _on_deadline() -> None:
        nonlocal timed_out
        timed_out = True
        if on_timeout is not None:
            try:
                on_timeout()
            except Exception:
                logger.exception("on_timeout callback failed for %s", label)
        signal.abort(f"deadline of {timeout_ms}ms exceeded")

    loop = asyncio.get_running_loop()
    timer = loop.call_later(timeout_ms / 1000.0, _on_deadline)
    cleaned = False

    async def _cleanup_once() -> None:
        nonlocal cleaned
        if cleanup is None or cleaned:
            return
        cleaned = True
        await _run_cleanup(label, cleanup)

    try:
        signal.raise_if_aborted(label)
        return await signal.guard(operation(signal), label)
    except OperationCancelledError as exc:
        await _cleanup_once()
        if timed_out:
            raise OperationTimeoutError(label, timeout_ms) from exc
        raise
    except Exception:
        await _cleanup_once()
        raise
    finally:
        timer.cancel()
        signal.detach()


def timeout_from_env(env_var: str, default_ms: int) -> int:
    """Read a positive millisecond timeout from the environment."""
    raw = os.environ.get(env_var)
    if not raw:
        return default_ms
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if value <= 0:
        logger.warning(
            "Invalid timeout value in %s: %r. Using default: %dms",
            env_var, raw, default_ms,
        )
        return default_ms
    return value
