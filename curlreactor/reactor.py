"""Drives libcurl's multi-socket API from an `.IOLoop`.

`CurlReactor` is the glue between the two event models.  libcurl tells
us which descriptors it cares about (``M_SOCKETFUNCTION``) and when it
wants to be woken up (``M_TIMERFUNCTION``); the `.IOLoop` tells us when a
descriptor is ready or a deadline passed, and we feed that back to libcurl
with ``socket_action``.  Every finished transfer is unregistered and its
completion callback is scheduled on the loop exactly once.

Sockets are opened and closed on libcurl's behalf through the easy-handle
callbacks ``OPENSOCKETFUNCTION``, ``SOCKOPTFUNCTION`` and
``CLOSESOCKETFUNCTION``, so the reactor always knows which descriptors
belong to it.

All methods except `CurlReactor.post` must be called on the loop's thread.
"""
import socket

import pycurl

from curlreactor.easy import ProtocolError, Transfer
from curlreactor.ioloop import IOLoop
from curlreactor.log import gen_log
from curlreactor.multi import CompletionStatus, Multi

from typing import Any, Callable, Dict, List, Optional

_CompletionCallback = Callable[[CompletionStatus], None]

_INTERNET_FAMILIES = (socket.AF_INET, socket.AF_INET6)


class _SocketEntry(object):
    """A socket libcurl opened through the reactor."""

    __slots__ = ("fd", "socket")

    def __init__(self, fd: int) -> None:
        self.fd = fd
        self.socket = socket.socket(fileno=fd)

    def close(self) -> None:
        self.socket.close()

    def __repr__(self) -> str:
        return "<%s fd=%d>" % (self.__class__.__name__, self.fd)


class CurlReactor(object):
    """Runs the transfers of one ``pycurl.CurlMulti`` on an `.IOLoop`.

    ``multi`` may be given to supply an existing ``pycurl.CurlMulti`` and
    ``multi_options`` maps ``pycurl.M_*`` constants to values applied to
    it.  The timer and socket callbacks of the multi handle belong to the
    reactor and must not be replaced.
    """

    def __init__(
        self,
        io_loop: Optional[IOLoop] = None,
        multi: Optional[pycurl.CurlMulti] = None,
        multi_options: Optional[Dict[int, Any]] = None,
    ) -> None:
        self.io_loop = io_loop or IOLoop.current()
        self._multi = Multi(multi, multi_options)
        # Sockets libcurl opened through us, by the descriptor libcurl uses.
        self._sockets = {}  # type: Dict[int, _SocketEntry]
        # Descriptors registered with the IOLoop, and the events watched.
        self._fds = {}  # type: Dict[int, int]
        self._callbacks = {}  # type: Dict[pycurl.Curl, _CompletionCallback]
        # Sockets handed to libcurl that it has not adopted yet.
        self._handoff = []  # type: List[socket.socket]
        self._timeout = None  # type: Optional[object]
        self._timer_generation = 0
        self._closed = False
        self._multi.setopt(pycurl.M_TIMERFUNCTION, self._set_timeout)
        self._multi.setopt(pycurl.M_SOCKETFUNCTION, self._handle_socket)

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        """Number of transfers currently registered with libcurl."""
        return len(self._multi)

    def add(self, transfer: Transfer, callback: _CompletionCallback) -> None:
        """Starts ``transfer``; ``callback`` will be scheduled on the loop
        with a `.CompletionStatus` once it finishes.

        Raises `.ProtocolError` if libcurl refuses the transfer, in which
        case the callback is never called.
        """
        if self._closed:
            raise RuntimeError("CurlReactor is closed")
        if transfer.curl in self._multi:
            raise ValueError("%r is already registered" % transfer)
        # The socket callbacks must be in place before libcurl can use them.
        transfer.set_socket_callbacks(
            self._open_socket, self._adopt_socket, self._close_socket
        )
        try:
            self._multi.add(transfer)
        except ProtocolError:
            transfer.clear_socket_callbacks()
            raise
        self._callbacks[transfer.curl] = callback

    def register(self, transfer: Transfer, callback: _CompletionCallback) -> bool:
        """Like `add`, but a registration failure is logged and reported
        by scheduling ``callback`` with libcurl's failure status.

        A transfer that is already registered here is reported the same
        way, with a status code of None.

        Returns True if the transfer was registered.
        """
        try:
            self.add(transfer, callback)
        except ProtocolError as e:
            status = CompletionStatus(e.code, e.message)
        except ValueError as e:
            status = CompletionStatus(None, str(e))
        else:
            return True
        gen_log.error("Unable to start %r: %s", transfer, status.message)
        self.io_loop.add_callback(self._run_completion, callback, status)
        return False

    def post(self, transfer: Transfer, callback: _CompletionCallback) -> None:
        """Schedules `register` on the loop.  Safe to call from any thread.

        Submissions that reach a closed reactor are discarded.
        """
        self.io_loop.add_callback(self._post, transfer, callback)

    def _post(self, transfer: Transfer, callback: _CompletionCallback) -> None:
        if self._closed:
            return
        self.register(transfer, callback)

    def clear(self) -> None:
        """Unregisters every transfer and discards their callbacks.

        libcurl closes the connections of the removed transfers, which
        releases their sockets and watches.
        """
        self._callbacks.clear()
        self._detach_all()

    def async_clear(self, callback: Optional[Callable[[], None]] = None) -> None:
        """Schedules `clear` on the loop, then calls ``callback``."""
        self.io_loop.add_callback(self._async_clear, callback)

    def _async_clear(self, callback: Optional[Callable[[], None]]) -> None:
        self.clear()
        if callback is not None:
            callback()

    def close(self) -> None:
        """Cancels every transfer and releases the multi handle.

        Pending completion callbacks are discarded without being called.
        """
        if self._closed:
            return
        # From here on every libcurl callback except socket closing is inert.
        self._closed = True
        self._callbacks.clear()
        self._detach_all()
        for fd in list(self._fds):
            self._unwatch(fd)
        for fd in list(self._sockets):
            self._sockets.pop(fd).close()
        if self._timeout is not None:
            self.io_loop.remove_timeout(self._timeout)
            self._timeout = None
        self._timer_generation += 1
        self._multi.close()

    def _open_socket(self, purpose: int, address: Any) -> Any:
        """Called by libcurl when it needs a new socket."""
        family, socktype, protocol = address[:3]
        if (
            self._closed
            or purpose != pycurl.SOCKTYPE_IPCXN
            or family not in _INTERNET_FAMILIES
        ):
            gen_log.debug(
                "Refusing socket for purpose %s and family %s", purpose, family
            )
            return pycurl.SOCKET_BAD
        try:
            sock = socket.socket(family, socktype, protocol)
        except OSError as e:
            gen_log.warning("Unable to open socket: %s", e)
            return pycurl.SOCKET_BAD
        # pycurl hands libcurl a duplicate of this descriptor; the entry is
        # created for the duplicate in _adopt_socket.
        self._handoff.append(sock)
        return sock

    def _adopt_socket(self, fd: int, purpose: int) -> int:
        """Called by libcurl with the descriptor of a socket it just opened."""
        if self._handoff:
            self._handoff.pop().close()
        stale = self._sockets.pop(fd, None)
        if stale is not None:
            # The descriptor was closed behind our back and reused.
            stale.socket.detach()
        self._sockets[fd] = _SocketEntry(fd)
        return pycurl.SOCKOPT_OK

    def _close_socket(self, fd: int) -> int:
        """Called by libcurl when it is done with a socket."""
        self._unwatch(fd)
        entry = self._sockets.pop(fd, None)
        if entry is not None:
            entry.close()
        return 0

    def _detach_all(self) -> None:
        for transfer in self._multi.clear():
            try:
                transfer.clear_socket_callbacks()
            except ProtocolError as e:
                # The handle was released behind our back; carry on so the
                # remaining transfers and sockets are still torn down.
                gen_log.warning("Unable to detach %r: %s", transfer, e)
        self._release_handoff()

    def _release_handoff(self) -> None:
        while self._handoff:
            self._handoff.pop().close()

    def _unwatch(self, fd: int) -> None:
        if fd in self._fds:
            self.io_loop.remove_handler(fd)
            del self._fds[fd]

    def _handle_socket(self, event: int, fd: int, multi: Any, data: Any) -> None:
        """Called by libcurl when it wants to change the file descriptors
        it cares about.
        """
        if self._closed:
            return
        event_map = {
            pycurl.POLL_NONE: IOLoop.NONE,
            pycurl.POLL_IN: IOLoop.READ,
            pycurl.POLL_OUT: IOLoop.WRITE,
            pycurl.POLL_INOUT: IOLoop.READ | IOLoop.WRITE,
        }
        gen_log.debug("libcurl socket event %d for descriptor %d", event, fd)
        if event == pycurl.POLL_REMOVE:
            self._unwatch(fd)
        else:
            ioloop_event = event_map[event]
            # libcurl sometimes closes a socket and then opens a new
            # one using the same FD without giving us a POLL_NONE in
            # between.  Since the kernel drops closed descriptors from
            # epoll on its own, always use remove and re-add instead of
            # update.
            if fd in self._fds:
                self.io_loop.remove_handler(fd)
            self.io_loop.add_handler(fd, self._handle_events, ioloop_event)
            self._fds[fd] = ioloop_event

    def _set_timeout(self, msecs: int) -> None:
        """Called by libcurl to schedule a timeout."""
        if self._closed:
            return
        if self._timeout is not None:
            self.io_loop.remove_timeout(self._timeout)
            self._timeout = None
        self._timer_generation += 1
        generation = self._timer_generation
        if msecs > 0:
            self._timeout = self.io_loop.call_later(
                msecs / 1000.0, self._handle_timeout, generation
            )
        else:
            # Queued behind the loop's pending work, not run inline.
            self.io_loop.add_callback(self._handle_timeout, generation)

    def _handle_events(self, fd: int, events: int) -> None:
        """Called by IOLoop when there is activity on one of our
        file descriptors.
        """
        action = 0
        if events & IOLoop.READ:
            action |= pycurl.CSELECT_IN
        if events & IOLoop.WRITE:
            action |= pycurl.CSELECT_OUT
        if events & IOLoop.ERROR:
            action |= pycurl.CSELECT_ERR
        self._socket_action(fd, action)

    def _handle_timeout(self, generation: int) -> None:
        """Called by IOLoop when the requested timeout has passed."""
        if self._closed or generation != self._timer_generation:
            return
        self._timeout = None
        self._socket_action(pycurl.SOCKET_TIMEOUT, 0)
        if self._closed:
            return
        # libcurl only reports timeout changes, but after a timeout
        # action it may need to be woken up again right away.
        new_timeout = self._multi.timeout()
        if new_timeout >= 0:
            self._set_timeout(new_timeout)

    def _socket_action(self, fd: int, mask: int) -> None:
        if self._closed:
            return
        try:
            self._multi.socket_action(fd, mask)
        except ProtocolError as e:
            gen_log.error("socket_action failed for descriptor %d: %s", fd, e)
        finally:
            self._release_handoff()
        self._finish_pending_requests()

    def _finish_pending_requests(self) -> None:
        """Process any requests that were completed by the last
        call to multi.socket_action.
        """
        for curl, status in self._multi.drain_messages():
            transfer = self._multi.remove(curl)
            if transfer is not None:
                transfer.clear_socket_callbacks()
            callback = self._callbacks.pop(curl, None)
            if callback is None:
                gen_log.debug("Dropping completion of unknown handle %r", curl)
                continue
            self.io_loop.add_callback(self._run_completion, callback, status)

    def _run_completion(
        self, callback: _CompletionCallback, status: CompletionStatus
    ) -> None:
        # Completions still queued on the loop when the reactor closed
        # are dropped.
        if self._closed:
            return
        callback(status)
