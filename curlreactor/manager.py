"""Submit a transfer, get a callback.

`CurlManager` is the entry point most applications use::

    manager = CurlManager()

    def on_complete(status):
        if status.ok:
            print(transfer.get_response_code())
        else:
            print("failed:", status.message)

    transfer = Transfer("http://www.example.com/")
    transfer.set_write_function(body.write)
    manager.submit(transfer, on_complete)

or, from a coroutine::

    transfer = await manager.fetch(Transfer("http://www.example.com/"))
"""
import collections
import functools

from curlreactor.concurrent import (
    Future,
    future_set_exception_unless_cancelled,
    future_set_result_unless_cancelled,
)
from curlreactor.easy import ProtocolError, Transfer
from curlreactor.ioloop import IOLoop
from curlreactor.multi import CompletionStatus
from curlreactor.reactor import CurlReactor

import typing
from typing import Any, Callable, Dict, Optional

if typing.TYPE_CHECKING:
    from typing import Deque, Tuple  # noqa: F401

_CompletionCallback = Callable[[CompletionStatus], None]


class CurlManager(object):
    """Runs transfers on an `.IOLoop` and reports their completion.

    ``max_clients`` caps the number of transfers registered with libcurl
    at the same time; additional submissions wait in a queue, in order.
    ``multi_options`` is passed on to the `.CurlReactor`.
    """

    def __init__(
        self,
        io_loop: Optional[IOLoop] = None,
        max_clients: Optional[int] = None,
        multi_options: Optional[Dict[int, Any]] = None,
    ) -> None:
        if max_clients is not None and max_clients < 1:
            raise ValueError("max_clients must be positive, got %r" % max_clients)
        self.io_loop = io_loop or IOLoop.current()
        self.max_clients = max_clients
        self._reactor = CurlReactor(self.io_loop, multi_options=multi_options)
        self._queue = (
            collections.deque()
        )  # type: Deque[Tuple[Transfer, _CompletionCallback]]
        self._active = 0
        self._closed = False

    @property
    def reactor(self) -> CurlReactor:
        return self._reactor

    @property
    def closed(self) -> bool:
        return self._closed

    def submit(self, transfer: Transfer, on_complete: _CompletionCallback) -> None:
        """Starts ``transfer`` and calls ``on_complete`` with its
        `.CompletionStatus` once it finishes.

        Safe to call from any thread.  Nothing is reported to the caller
        here: if libcurl refuses the transfer, ``on_complete`` receives
        the failure status.  Submissions made after `close` are dropped.
        """
        self.io_loop.add_callback(self._submit, transfer, on_complete)

    def fetch(self, transfer: Transfer) -> "Future[Transfer]":
        """Starts ``transfer`` and returns a `.Future`.

        The future resolves to ``transfer`` on success and fails with
        `.ProtocolError` otherwise.  Must be called on the loop's thread.
        """
        future = Future()  # type: Future[Transfer]

        def handle_completion(status: CompletionStatus) -> None:
            if status.ok:
                future_set_result_unless_cancelled(future, transfer)
            else:
                future_set_exception_unless_cancelled(
                    future, ProtocolError(status.code, status.message)
                )

        self.submit(transfer, handle_completion)
        return future

    def close(self) -> None:
        """Cancels every transfer and releases libcurl's resources.

        Must be called on the loop's thread.  Completion callbacks of
        cancelled, queued or already finished but not yet delivered
        transfers are discarded without being called.
        """
        if self._closed:
            return
        self._closed = True
        self._queue.clear()
        self._reactor.close()

    def _submit(self, transfer: Transfer, on_complete: _CompletionCallback) -> None:
        if self._closed:
            return
        self._queue.append((transfer, on_complete))
        self._process_queue()

    def _process_queue(self) -> None:
        while self._queue and (
            self.max_clients is None or self._active < self.max_clients
        ):
            transfer, on_complete = self._queue.popleft()
            # A refused registration still completes through _finish, which
            # gives the slot back.
            self._active += 1
            try:
                self._reactor.register(
                    transfer, functools.partial(self._finish, on_complete)
                )
            except Exception:
                self._active -= 1
                raise

    def _finish(
        self, on_complete: _CompletionCallback, status: CompletionStatus
    ) -> None:
        if self._closed:
            return
        self._active -= 1
        self._process_queue()
        on_complete(status)
