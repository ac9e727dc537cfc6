import datetime
import logging
import unittest

import pycurl

from curlreactor.easy import HeaderList, ProtocolError, Transfer
from curlreactor.log import curl_log
from curlreactor.testing import ExpectLog
from curlreactor.test.util import LocalHTTPServer, local_transfer, refused_url


class HeaderListTest(unittest.TestCase):
    def test_append_and_reset(self):
        headers = HeaderList()
        self.assertEqual(len(headers), 0)
        headers.append("Accept: text/plain")
        headers.append("X-Empty:")
        self.assertEqual(list(headers), ["Accept: text/plain", "X-Empty:"])
        self.assertEqual(len(headers), 2)
        headers.reset()
        self.assertEqual(headers.raw, [])

    def test_raw_is_a_copy(self):
        headers = HeaderList()
        headers.append("A: 1")
        raw = headers.raw
        raw.append("B: 2")
        self.assertEqual(list(headers), ["A: 1"])


class ProtocolErrorTest(unittest.TestCase):
    def test_from_curl_error(self):
        e = ProtocolError.from_curl_error(
            pycurl.error(pycurl.E_COULDNT_CONNECT, "Connection refused")
        )
        self.assertEqual(e.code, pycurl.E_COULDNT_CONNECT)
        self.assertEqual(e.message, "Connection refused")
        self.assertEqual(
            str(e), "libcurl error %d: Connection refused" % pycurl.E_COULDNT_CONNECT
        )

    def test_from_curl_error_without_code(self):
        e = ProtocolError.from_curl_error(
            pycurl.error("curl object already on this multi-stack")
        )
        self.assertIsNone(e.code)
        self.assertEqual(e.message, "curl object already on this multi-stack")


class TransferOptionsTest(unittest.TestCase):
    def setUp(self):
        self.transfer = Transfer()

    def tearDown(self):
        self.transfer.close()

    def test_rejected_option(self):
        with self.assertRaises(ProtocolError) as cm:
            self.transfer.setopt(pycurl.CONNECTTIMEOUT_MS, -5)
        self.assertEqual(cm.exception.code, pycurl.E_BAD_FUNCTION_ARGUMENT)

    def test_connect_timeout(self):
        self.transfer.set_connect_timeout(1.5)
        self.transfer.set_connect_timeout(datetime.timedelta(seconds=2))
        self.assertRaises(TypeError, self.transfer.set_connect_timeout, "2s")

    def test_http_headers(self):
        self.transfer.set_http_header("X-Test", "1")
        self.transfer.unset_http_header("Accept")
        self.assertEqual(list(self.transfer.headers), ["X-Test: 1", "Accept:"])
        self.transfer.reset_http_headers()
        self.assertEqual(len(self.transfer.headers), 0)

    def test_unset_options(self):
        self.transfer.set_proxy("127.0.0.1:3128")
        self.transfer.set_proxy(None)
        self.transfer.set_ca_info("/nonexistent/ca.pem")
        self.transfer.set_ca_info(None)

    def test_unset_callbacks(self):
        self.transfer.set_write_function(lambda data: None)
        self.transfer.set_debug_function(lambda debug_type, msg: None)
        self.transfer.set_write_function(None)
        self.transfer.set_debug_function(None)
        self.assertIsNone(self.transfer._write_function)
        self.assertIsNone(self.transfer._debug_function)

    def test_escape(self):
        self.assertEqual(self.transfer.escape("a b&c"), "a%20b%26c")
        self.assertEqual(self.transfer.unescape("a%20b%26c"), "a b&c")
        self.assertEqual(self.transfer.escape(""), "")

    def test_unescape_raw_bytes(self):
        self.assertEqual(self.transfer.unescape("%FF%00a", None), b"\xff\x00a")
        self.assertEqual(self.transfer.unescape(b"caf%C3%A9", None), b"caf\xc3\xa9")
        self.assertEqual(self.transfer.unescape("%FF"), "\ufffd")
        self.assertEqual(self.transfer.unescape("caf%E9", "latin-1"), "caf\xe9")

    def test_socket_callbacks(self):
        self.transfer.set_socket_callbacks(
            lambda purpose, address: pycurl.SOCKET_BAD,
            lambda fd, purpose: pycurl.SOCKOPT_OK,
            lambda fd: 0,
        )
        self.transfer.clear_socket_callbacks()


class TransferPerformTest(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.server = LocalHTTPServer()

    @classmethod
    def tearDownClass(cls):
        cls.server.stop()

    def setUp(self):
        self.chunks = []

    def make_transfer(self, path):
        transfer = local_transfer(self.server.url(path))
        self.addCleanup(transfer.close)
        transfer.set_write_function(self.chunks.append)
        return transfer

    @property
    def body(self):
        return b"".join(self.chunks)

    def test_get(self):
        transfer = self.make_transfer("/hello")
        transfer.perform()
        self.assertEqual(self.body, b"Hello world!")
        self.assertEqual(transfer.get_response_code(), 200)
        self.assertEqual(transfer.get_content_type(), "text/plain")
        self.assertEqual(transfer.get_content_length_download(), len(b"Hello world!"))

    def test_not_found(self):
        # HTTP errors are successful transfers as far as libcurl is concerned.
        transfer = self.make_transfer("/missing")
        transfer.perform()
        self.assertEqual(transfer.get_response_code(), 404)

    def test_connection_refused(self):
        transfer = local_transfer(refused_url())
        self.addCleanup(transfer.close)
        with self.assertRaises(ProtocolError) as cm:
            transfer.perform()
        self.assertEqual(cm.exception.code, pycurl.E_COULDNT_CONNECT)

    def test_write_abort(self):
        transfer = self.make_transfer("/hello")
        transfer.set_write_function(lambda data: 0)
        with self.assertRaises(ProtocolError) as cm:
            transfer.perform()
        self.assertEqual(cm.exception.code, pycurl.E_WRITE_ERROR)

    def test_debug_function(self):
        traces = []
        transfer = self.make_transfer("/hello")
        transfer.set_verbose(True)
        transfer.set_debug_function(lambda debug_type, msg: traces.append((debug_type, msg)))
        transfer.perform()
        self.assertTrue(
            any(
                debug_type == pycurl.INFOTYPE_HEADER_OUT and b"GET /hello" in msg
                for debug_type, msg in traces
            ),
            traces,
        )

    def test_enable_debug_logging(self):
        transfer = self.make_transfer("/hello")
        transfer.enable_debug_logging()
        with ExpectLog(curl_log, "> GET /hello", level=logging.DEBUG):
            transfer.perform()

    def test_post_fields(self):
        transfer = self.make_transfer("/echo")
        transfer.set_post()
        transfer.set_http_header("Content-Type", "application/json")
        transfer.set_post_fields(b'{"a": 1}')
        transfer.perform()
        self.assertEqual(self.body, b'{"a": 1}')
        self.assertEqual(transfer.get_content_type(), "application/json")

    def test_copy_post_fields(self):
        transfer = self.make_transfer("/echo")
        transfer.set_copy_post_fields(b"copied")
        transfer.perform()
        self.assertEqual(self.body, b"copied")

    def test_binary_post_fields(self):
        transfer = self.make_transfer("/echo")
        transfer.set_post_fields(b"a\x00b")
        transfer.perform()
        self.assertEqual(self.body, b"a\x00b")

    def test_get_after_post(self):
        transfer = self.make_transfer("/hello")
        transfer.set_post_fields(b"ignored")
        transfer.set_get()
        transfer.perform()
        self.assertEqual(self.body, b"Hello world!")

    def test_request_headers(self):
        transfer = self.make_transfer("/headers")
        transfer.set_user_agent("curlreactor-test")
        transfer.set_http_header("X-Test", "1")
        transfer.unset_http_header("Accept")
        transfer.perform()
        lines = self.body.decode("utf-8").splitlines()
        self.assertIn("User-Agent: curlreactor-test", lines)
        self.assertIn("X-Test: 1", lines)
        self.assertFalse([line for line in lines if line.startswith("Accept")], lines)

    def test_credentials(self):
        transfer = self.make_transfer("/headers")
        transfer.set_username("user")
        transfer.set_password("pass")
        transfer.perform()
        lines = self.body.decode("utf-8").splitlines()
        self.assertIn("Authorization: Basic dXNlcjpwYXNz", lines)

    def test_cookie_support(self):
        transfer = self.make_transfer("/hello")
        transfer.enable_cookie_support()
        transfer.perform()
        self.assertEqual(transfer.get_response_code(), 200)


if __name__ == "__main__":
    unittest.main()
