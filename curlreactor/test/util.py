import os
import socket
import threading
import unittest
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pycurl

from curlreactor.easy import Transfer
from curlreactor.testing import bind_unused_port


def _has_ipv6() -> bool:
    if not socket.has_ipv6:
        return False
    try:
        sock = socket.socket(socket.AF_INET6, socket.SOCK_STREAM)
    except OSError:
        return False
    sock.close()
    return True


class _Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        if self.path == "/hello":
            self._respond(200, b"Hello world!")
        elif self.path == "/headers":
            lines = ["%s: %s" % (name, value) for name, value in self.headers.items()]
            self._respond(200, "\n".join(lines).encode("utf-8"))
        elif self.path == "/large":
            self._respond(200, b"x" * 1024 * 1024, "application/octet-stream")
        else:
            self._respond(404, b"Not found")

    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(length)
        if self.path == "/echo":
            content_type = self.headers.get("Content-Type", "application/octet-stream")
            self._respond(200, body, content_type)
        else:
            self._respond(404, b"Not found")

    def _respond(self, code, body, content_type="text/plain"):
        self.send_response(code)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


class LocalHTTPServer(object):
    """A threaded HTTP server on 127.0.0.1 serving a few fixed paths.

    ``/hello`` answers ``Hello world!``, ``/headers`` lists the request
    headers, ``/large`` sends one megabyte and ``POST /echo`` echoes the
    request body.
    """

    def __init__(self) -> None:
        self.server = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
        self.server.daemon_threads = True
        self.port = self.server.server_address[1]
        self._thread = threading.Thread(target=self.server.serve_forever)
        self._thread.daemon = True
        self._thread.start()

    def url(self, path: str) -> str:
        return "http://127.0.0.1:%d%s" % (self.port, path)

    def stop(self) -> None:
        self.server.shutdown()
        self.server.server_close()
        self._thread.join()


class SilentServer(object):
    """A listening socket that never accepts.

    Connections complete in the kernel's backlog, so transfers to it stay
    in flight until they are cancelled.
    """

    def __init__(self) -> None:
        self.sock, self.port = bind_unused_port()

    def url(self, path: str = "/") -> str:
        return "http://127.0.0.1:%d%s" % (self.port, path)

    def close(self) -> None:
        self.sock.close()


def local_transfer(url: str) -> Transfer:
    """A `.Transfer` for ``url`` that ignores any proxy configured in the
    environment."""
    transfer = Transfer(url)
    transfer.set_proxy("")
    return transfer


def refused_url() -> str:
    """Returns a URL on a port nothing listens on."""
    sock, port = bind_unused_port()
    sock.close()
    return "http://127.0.0.1:%d/" % port


def is_open(fd: int) -> bool:
    try:
        os.fstat(fd)
    except OSError:
        return False
    return True


class FakeCurlMulti(object):
    """Stands in for ``pycurl.CurlMulti`` in state machine tests.

    ``messages`` holds batches of ``(ok_list, err_list)`` returned by
    successive ``info_read`` calls; ``timeouts`` the values returned by
    successive ``timeout`` calls (-1 once exhausted).
    """

    def __init__(self) -> None:
        self.options = {}
        self.handles = []
        self.actions = []
        self.messages = []
        self.timeouts = []
        self.add_error = None
        self.remove_error = None
        self.action_errors = []
        self.on_action = None
        self.closed = False

    def setopt(self, option, value):
        self.options[option] = value

    def add_handle(self, curl):
        if self.add_error is not None:
            raise pycurl.error(*self.add_error)
        self.handles.append(curl)

    def remove_handle(self, curl):
        if self.remove_error is not None:
            raise pycurl.error(*self.remove_error)
        self.handles.remove(curl)

    def socket_action(self, fd, mask):
        self.actions.append((fd, mask))
        if self.on_action is not None:
            self.on_action()
        if self.action_errors:
            raise pycurl.error(*self.action_errors.pop(0))
        return 0, len(self.handles)

    def info_read(self):
        if not self.messages:
            return 0, [], []
        ok_list, err_list = self.messages.pop(0)
        return len(self.messages), ok_list, err_list

    def timeout(self):
        if self.timeouts:
            return self.timeouts.pop(0)
        return -1

    def close(self):
        self.closed = True


skipIfNoIPv6 = unittest.skipIf(not _has_ipv6(), "ipv6 support not present")
