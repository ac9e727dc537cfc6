"""Registry of transfers attached to one ``pycurl.CurlMulti``.

A transfer is registered with the engine exactly while an `_Association`
for it exists in a `Multi`.  Creating the association adds the handle to
the engine; releasing it removes the handle again.  libcurl refusing the
removal of a handle it accepted means our bookkeeping and the engine's
have diverged, so that case raises `UnregistrationFailure` instead of an
ordinary exception.
"""
import collections

import pycurl

from curlreactor.easy import ProtocolError, Transfer
from curlreactor.log import gen_log

from typing import Any, Dict, Iterator, List, Optional


class UnregistrationFailure(SystemExit):
    """libcurl refused to remove a handle it had previously accepted.

    This derives from `SystemExit`: neither the `.IOLoop`'s callback error
    logging nor asyncio's exception handler absorbs it, so it ends the
    program with its message.
    """


class CompletionStatus(object):
    """Outcome of a finished transfer, as reported by libcurl.

    ``code`` is the libcurl status code (``0`` on success) and
    ``message`` the associated diagnostic.  ``code`` is None for failures
    libcurl never saw, such as a refused registration.
    """

    __slots__ = ("code", "message")

    def __init__(self, code: Optional[int] = 0, message: str = "") -> None:
        self.code = code
        self.message = message

    @property
    def ok(self) -> bool:
        return self.code == 0

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, CompletionStatus):
            return NotImplemented
        return (self.code, self.message) == (other.code, other.message)

    def __hash__(self) -> int:
        return hash((self.code, self.message))

    def __repr__(self) -> str:
        return "%s(code=%r, message=%r)" % (
            self.__class__.__name__,
            self.code,
            self.message,
        )


CompletionMessage = collections.namedtuple("CompletionMessage", ["curl", "status"])


class _Association(object):
    """Registration of one `.Transfer` with a ``pycurl.CurlMulti``."""

    def __init__(self, multi: pycurl.CurlMulti, transfer: Transfer) -> None:
        try:
            multi.add_handle(transfer.curl)
        except pycurl.error as e:
            raise ProtocolError.from_curl_error(e)
        self._multi = multi
        self.transfer = transfer
        self._released = False
        transfer._registered = True

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self.transfer._registered = False
        try:
            self._multi.remove_handle(self.transfer.curl)
        except pycurl.error as e:
            gen_log.critical(
                "Unable to unregister %r from the multi handle: %s", self.transfer, e
            )
            raise UnregistrationFailure(
                "Unable to unregister %r from the multi handle" % self.transfer
            ) from e


class Multi(object):
    """Owns a ``pycurl.CurlMulti`` and the transfers registered with it.

    ``multi_options`` maps ``pycurl.M_*`` constants to values applied to
    the engine at construction.
    """

    def __init__(
        self,
        multi: Optional[pycurl.CurlMulti] = None,
        multi_options: Optional[Dict[int, Any]] = None,
    ) -> None:
        if multi is None:
            multi = pycurl.CurlMulti()
        self._multi = multi
        self._associations = {}  # type: Dict[pycurl.Curl, _Association]
        if multi_options:
            for option, value in multi_options.items():
                self.setopt(option, value)

    def setopt(self, option: int, value: Any) -> None:
        try:
            self._multi.setopt(option, value)
        except pycurl.error as e:
            raise ProtocolError.from_curl_error(e)

    def add(self, transfer: Transfer) -> None:
        """Registers ``transfer`` with the engine.

        Raises `.ProtocolError` if the engine refuses it, in which case
        nothing is retained.
        """
        if transfer.curl in self._associations:
            raise ValueError("%r is already registered" % transfer)
        self._associations[transfer.curl] = _Association(self._multi, transfer)

    def remove(self, curl: pycurl.Curl) -> Optional[Transfer]:
        """Unregisters the transfer owning ``curl``.

        Returns the detached `.Transfer`, or None if ``curl`` was not
        registered.
        """
        association = self._associations.pop(curl, None)
        if association is None:
            return None
        association.release()
        return association.transfer

    def clear(self) -> List[Transfer]:
        """Unregisters every transfer and returns them."""
        removed = []
        while self._associations:
            curl, association = self._associations.popitem()
            association.release()
            removed.append(association.transfer)
        return removed

    def socket_action(self, fd: int, mask: int) -> int:
        """Advances the engine for one readiness or timeout event.

        Returns the number of transfers still running.  The caller must
        then exhaust `drain_messages`.
        """
        while True:
            try:
                ret, num_handles = self._multi.socket_action(fd, mask)
            except pycurl.error as e:
                ret = e.args[0]
                if ret != pycurl.E_CALL_MULTI_PERFORM:
                    raise ProtocolError.from_curl_error(e)
            if ret != pycurl.E_CALL_MULTI_PERFORM:
                break
        return num_handles

    def drain_messages(self) -> Iterator[CompletionMessage]:
        """Yields a `CompletionMessage` for every finished transfer.

        libcurl does not redeliver completions, so the iterator must be
        exhausted after each `socket_action`.
        """
        while True:
            num_q, ok_list, err_list = self._multi.info_read()
            for curl in ok_list:
                yield CompletionMessage(curl, CompletionStatus())
            for curl, errnum, errmsg in err_list:
                yield CompletionMessage(curl, CompletionStatus(errnum, errmsg))
            if num_q == 0:
                break

    def timeout(self) -> int:
        """The engine's recommended timeout in milliseconds (-1 for none)."""
        return self._multi.timeout()

    def transfer(self, curl: pycurl.Curl) -> Optional[Transfer]:
        association = self._associations.get(curl)
        if association is None:
            return None
        return association.transfer

    def __len__(self) -> int:
        return len(self._associations)

    def __contains__(self, curl: pycurl.Curl) -> bool:
        return curl in self._associations

    def close(self) -> None:
        """Unregisters every transfer and releases the engine."""
        self.clear()
        self._multi.close()
