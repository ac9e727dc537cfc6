"""Single-transfer handles built on ``pycurl.Curl``.

A `Transfer` wraps one libcurl easy handle.  It offers typed setters for
the options most callers need, a synchronous `Transfer.perform`, and two
pluggable callbacks (debug tracing and response body sink).  The engine
never holds the user's callables directly: it is given bound trampoline
methods which look the current callable up on the `Transfer` at call time.

Transfers are usually handed to a `.CurlManager` (or a `.CurlReactor`),
which drives them from the `.IOLoop` without blocking.
"""
import datetime
import numbers

import pycurl

from curlreactor.escape import native_str, url_escape, url_unescape
from curlreactor.log import curl_log
from curlreactor.util import errno_from_exception

from typing import Any, Callable, Iterator, List, Optional, Union

_DebugFunction = Callable[[int, bytes], None]
_WriteFunction = Callable[[bytes], Optional[int]]


class ProtocolError(Exception):
    """Exception raised when libcurl rejects an option, a registration,
    a socket action or a transfer.

    ``code`` is the libcurl status code and ``message`` its diagnostic.
    """

    def __init__(self, code: Optional[int], message: str) -> None:
        super().__init__(code, message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return "libcurl error %s: %s" % (self.code, self.message)

    @classmethod
    def from_curl_error(cls, e: pycurl.error) -> "ProtocolError":
        code = errno_from_exception(e)
        if len(e.args) > 1:
            message = str(e.args[1])
        else:
            message = str(e)
        return cls(code, message)


class AllocationError(Exception):
    """Exception raised when escaping or unescaping produced no output."""


class HeaderList(object):
    """An append-only list of raw ``"Name: value"`` header lines.

    Each `Transfer` owns exactly one list; replacing it is done with
    `reset`, never by sharing lists between transfers.
    """

    def __init__(self) -> None:
        self._lines = []  # type: List[str]

    def append(self, line: str) -> None:
        self._lines.append(line)

    def reset(self) -> None:
        self._lines = []

    @property
    def raw(self) -> List[str]:
        """The lines in the form ``pycurl`` expects for ``HTTPHEADER``."""
        return list(self._lines)

    def __iter__(self) -> Iterator[str]:
        return iter(self._lines)

    def __len__(self) -> int:
        return len(self._lines)

    def __repr__(self) -> str:
        return "%s(%r)" % (self.__class__.__name__, self._lines)


class Transfer(object):
    """A configured request for libcurl.

    All setters raise `ProtocolError` if libcurl rejects the option.
    A transfer must not be closed while it is registered with a
    `.Multi`.
    """

    def __init__(self, url: Optional[str] = None) -> None:
        self._curl = pycurl.Curl()
        self._headers = HeaderList()
        self._debug_function = None  # type: Optional[_DebugFunction]
        self._write_function = None  # type: Optional[_WriteFunction]
        # Set by the registry of the `.Multi` holding this transfer.
        self._registered = False
        if url is not None:
            self.set_url(url)

    @property
    def curl(self) -> pycurl.Curl:
        """The underlying ``pycurl.Curl`` handle."""
        return self._curl

    @property
    def headers(self) -> HeaderList:
        return self._headers

    @property
    def registered(self) -> bool:
        """True while the transfer is registered with a `.Multi`."""
        return self._registered

    def __repr__(self) -> str:
        return "<%s %x>" % (self.__class__.__name__, id(self))

    def setopt(self, option: int, value: Any) -> None:
        try:
            self._curl.setopt(option, value)
        except pycurl.error as e:
            raise ProtocolError.from_curl_error(e)

    def unsetopt(self, option: int) -> None:
        try:
            self._curl.unsetopt(option)
        except pycurl.error as e:
            raise ProtocolError.from_curl_error(e)

    def set_url(self, url: str) -> None:
        self.setopt(pycurl.URL, url)

    def set_user_agent(self, user_agent: str) -> None:
        self.setopt(pycurl.USERAGENT, user_agent)

    def set_proxy(self, proxy: Optional[str]) -> None:
        """Sets the proxy as ``host:port``; ``None`` restores libcurl's
        default (which honors the proxy environment variables)."""
        if proxy is None:
            self.unsetopt(pycurl.PROXY)
        else:
            self.setopt(pycurl.PROXY, proxy)

    def set_ssl_peer_verification(self, state: bool) -> None:
        self.setopt(pycurl.SSL_VERIFYPEER, 1 if state else 0)

    def set_ssl_host_verification(self, state: bool) -> None:
        self.setopt(pycurl.SSL_VERIFYHOST, 2 if state else 0)

    def set_ca_info(self, ca_info: Optional[str]) -> None:
        if not ca_info:
            self.unsetopt(pycurl.CAINFO)
        else:
            self.setopt(pycurl.CAINFO, ca_info)

    def set_connect_timeout(
        self, timeout: Union[float, datetime.timedelta]
    ) -> None:
        """Sets the connection timeout, in seconds or as a `datetime.timedelta`."""
        if isinstance(timeout, datetime.timedelta):
            seconds = timeout.total_seconds()
        elif isinstance(timeout, numbers.Real):
            seconds = float(timeout)
        else:
            raise TypeError("Unsupported timeout %r" % timeout)
        self.setopt(pycurl.CONNECTTIMEOUT_MS, int(seconds * 1000))

    def set_http_header(self, name: str, value: str) -> None:
        self._headers.append("%s: %s" % (name, value))
        self.setopt(pycurl.HTTPHEADER, self._headers.raw)

    def unset_http_header(self, name: str) -> None:
        """Suppresses a header libcurl would otherwise send on its own."""
        self._headers.append("%s:" % name)
        self.setopt(pycurl.HTTPHEADER, self._headers.raw)

    def reset_http_headers(self) -> None:
        self._headers.reset()
        self.unsetopt(pycurl.HTTPHEADER)

    def set_get(self) -> None:
        self.setopt(pycurl.HTTPGET, 1)

    def set_post(self) -> None:
        self.setopt(pycurl.POST, 1)

    def set_post_fields(self, data: bytes) -> None:
        """Uses ``data`` as the request body.

        libcurl reads from the buffer itself, so ``data`` is kept alive by
        the handle until it is replaced.
        """
        self.setopt(pycurl.POSTFIELDSIZE_LARGE, len(data))
        self.setopt(pycurl.POSTFIELDS, data)

    def set_copy_post_fields(self, data: bytes) -> None:
        """Like `set_post_fields`, but libcurl keeps its own copy."""
        self.setopt(pycurl.POSTFIELDSIZE_LARGE, len(data))
        self.setopt(pycurl.COPYPOSTFIELDS, data)

    def set_cookie_file(self, path: str) -> None:
        self.setopt(pycurl.COOKIEFILE, path)

    def enable_cookie_support(self) -> None:
        # An empty file name turns the cookie engine on without reading anything.
        self.set_cookie_file("")

    def set_username(self, username: str) -> None:
        self.setopt(pycurl.USERNAME, username)

    def set_password(self, password: str) -> None:
        self.setopt(pycurl.PASSWORD, password)

    def set_verbose(self, state: bool) -> None:
        self.setopt(pycurl.VERBOSE, 1 if state else 0)

    def set_debug_function(self, func: Optional[_DebugFunction]) -> None:
        """Sets the function receiving libcurl's ``(info_type, data)`` traces.

        libcurl only emits traces for verbose transfers; see `set_verbose`.
        Passing ``None`` removes the function.
        """
        if func is not None:
            self._debug_function = func
            self.setopt(pycurl.DEBUGFUNCTION, self._debug_trampoline)
        else:
            self.unsetopt(pycurl.DEBUGFUNCTION)
            self._debug_function = None

    def set_write_function(self, func: Optional[_WriteFunction]) -> None:
        """Sets the sink receiving the response body, one chunk at a time.

        The sink returns how many bytes it consumed (``None`` meaning all
        of them).  Consuming fewer bytes than were offered aborts the
        transfer with ``pycurl.E_WRITE_ERROR``.  Passing ``None`` removes
        the sink and libcurl falls back to writing to stdout.
        """
        if func is not None:
            self._write_function = func
            self.setopt(pycurl.WRITEFUNCTION, self._write_trampoline)
        else:
            self.unsetopt(pycurl.WRITEFUNCTION)
            self._write_function = None

    def enable_debug_logging(self) -> None:
        """Sends libcurl's traces for this transfer to the
        ``curlreactor.curl`` logger at debug level."""
        self.set_verbose(True)
        self.set_debug_function(_log_curl_debug)

    def _debug_trampoline(self, debug_type: int, debug_msg: bytes) -> None:
        func = self._debug_function
        if func is not None:
            func(debug_type, debug_msg)

    def _write_trampoline(self, data: bytes) -> int:
        func = self._write_function
        if func is None:
            return len(data)
        consumed = func(data)
        if consumed is None:
            return len(data)
        return consumed

    def escape(self, value: Union[str, bytes]) -> str:
        """Percent-encodes ``value`` the way ``curl_easy_escape`` does."""
        try:
            return url_escape(value)
        except MemoryError:
            raise AllocationError("Unable to escape the specified string")

    def unescape(
        self, value: Union[str, bytes], encoding: Optional[str] = "utf-8"
    ) -> Union[str, bytes]:
        """Decodes ``%XX`` sequences the way ``curl_easy_unescape`` does.

        With ``encoding=None`` the raw decoded bytes are returned, which
        preserves octets that are not valid in any text encoding.
        """
        try:
            return url_unescape(value, encoding)
        except MemoryError:
            raise AllocationError("Unable to unescape the specified string")

    def perform(self) -> None:
        """Runs the transfer to completion, blocking the calling thread.

        Never call this from a running `.IOLoop`; submit the transfer to a
        `.CurlManager` instead.
        """
        try:
            self._curl.perform()
        except pycurl.error as e:
            raise ProtocolError.from_curl_error(e)

    def _getinfo(self, info: int) -> Any:
        try:
            return self._curl.getinfo(info)
        except pycurl.error as e:
            raise ProtocolError.from_curl_error(e)

    def get_response_code(self) -> int:
        return self._getinfo(pycurl.RESPONSE_CODE)

    def get_content_length_download(self) -> int:
        """The ``Content-Length`` of the response, or -1 when unknown."""
        return self._getinfo(pycurl.CONTENT_LENGTH_DOWNLOAD_T)

    def get_content_length_upload(self) -> int:
        return self._getinfo(pycurl.CONTENT_LENGTH_UPLOAD_T)

    def get_content_type(self) -> str:
        return self._getinfo(pycurl.CONTENT_TYPE) or ""

    def set_socket_callbacks(
        self,
        open_socket: Callable[[int, Any], Any],
        sockopt: Callable[[int, int], int],
        close_socket: Callable[[int], int],
    ) -> None:
        """Routes socket creation and destruction through the given callables.

        Used by `.CurlReactor`.  Connection reuse is disabled while the
        callbacks are installed so that no connection outlives the
        registration it was opened for.
        """
        self.setopt(pycurl.OPENSOCKETFUNCTION, open_socket)
        self.setopt(pycurl.SOCKOPTFUNCTION, sockopt)
        self.setopt(pycurl.CLOSESOCKETFUNCTION, close_socket)
        self.setopt(pycurl.FORBID_REUSE, 1)

    def clear_socket_callbacks(self) -> None:
        self.unsetopt(pycurl.OPENSOCKETFUNCTION)
        self.unsetopt(pycurl.SOCKOPTFUNCTION)
        self.unsetopt(pycurl.CLOSESOCKETFUNCTION)
        self.setopt(pycurl.FORBID_REUSE, 0)

    def close(self) -> None:
        """Releases the libcurl handle.

        Raises `RuntimeError` if the transfer is still registered; remove
        it from its `.Multi` (or close that) first.
        """
        if self._registered:
            raise RuntimeError("%r is still registered" % self)
        self._curl.close()
        self._debug_function = None
        self._write_function = None


def _log_curl_debug(debug_type: int, debug_msg: bytes) -> None:
    debug_types = ("I", "<", ">", "<", ">")
    if debug_type == pycurl.INFOTYPE_TEXT:
        curl_log.debug("%s", native_str(debug_msg).strip())
    elif debug_type in (pycurl.INFOTYPE_HEADER_IN, pycurl.INFOTYPE_HEADER_OUT):
        for line in native_str(debug_msg).splitlines():
            curl_log.debug("%s %s", debug_types[debug_type], line)
    elif debug_type == pycurl.INFOTYPE_DATA_OUT:
        curl_log.debug("%s %r", debug_types[debug_type], debug_msg)
