import sys
import unittest

import pycurl

import curlreactor.escape
from curlreactor.util import (
    Configurable,
    errno_from_exception,
    import_object,
    raise_exc_info,
)

from typing import cast


class BaseClass(Configurable):
    @classmethod
    def configurable_base(cls):
        return BaseClass

    @classmethod
    def configurable_default(cls):
        return TestConfig1


class TestConfig1(BaseClass):
    def initialize(self, pos_arg=None, a=None):
        self.a = a
        self.pos_arg = pos_arg


class TestConfig2(BaseClass):
    def initialize(self, pos_arg=None, b=None):
        self.b = b
        self.pos_arg = pos_arg


class ConfigurableTest(unittest.TestCase):
    def setUp(self):
        self.saved = BaseClass._save_configuration()

    def tearDown(self):
        BaseClass._restore_configuration(self.saved)

    def checkSubclasses(self):
        # no matter how the class is configured, it should always be
        # possible to instantiate the subclasses directly
        self.assertIsInstance(TestConfig1(), TestConfig1)
        self.assertIsInstance(TestConfig2(), TestConfig2)

        obj = TestConfig1(a=1)
        self.assertEqual(obj.a, 1)
        obj2 = TestConfig2(b=2)
        self.assertEqual(obj2.b, 2)

    def test_default(self):
        # In these tests we combine a typing.cast to satisfy mypy with
        # a runtime type-assertion. Without the cast, mypy would only
        # let us access attributes of the base class.
        obj = cast(TestConfig1, BaseClass())
        self.assertIsInstance(obj, TestConfig1)
        self.assertIs(obj.a, None)

        obj = cast(TestConfig1, BaseClass(a=1))
        self.assertIsInstance(obj, TestConfig1)
        self.assertEqual(obj.a, 1)

        self.checkSubclasses()

    def test_config_class(self):
        BaseClass.configure(TestConfig2)
        obj = cast(TestConfig2, BaseClass())
        self.assertIsInstance(obj, TestConfig2)
        self.assertIs(obj.b, None)

        obj = cast(TestConfig2, BaseClass(b=2))
        self.assertIsInstance(obj, TestConfig2)
        self.assertEqual(obj.b, 2)

        self.checkSubclasses()

    def test_config_str(self):
        BaseClass.configure("curlreactor.test.util_test.TestConfig2")
        obj = cast(TestConfig2, BaseClass())
        self.assertIsInstance(obj, TestConfig2)

    def test_config_args(self):
        BaseClass.configure(None, a=3)
        obj = cast(TestConfig1, BaseClass())
        self.assertIsInstance(obj, TestConfig1)
        self.assertEqual(obj.a, 3)

        obj = cast(TestConfig1, BaseClass(42, a=4))
        self.assertEqual(obj.a, 4)
        self.assertEqual(obj.pos_arg, 42)

    def test_config_invalid(self):
        self.assertRaises(ValueError, BaseClass.configure, dict)


class ImportObjectTest(unittest.TestCase):
    def test_import_member(self):
        self.assertIs(import_object("curlreactor.escape.utf8"), curlreactor.escape.utf8)

    def test_import_module(self):
        self.assertIs(import_object("curlreactor.escape"), curlreactor.escape)

    def test_import_missing(self):
        self.assertRaises(ImportError, import_object, "curlreactor.escape.missing")


class ErrnoFromExceptionTest(unittest.TestCase):
    def test_curl_error(self):
        e = pycurl.error(pycurl.E_COULDNT_CONNECT, "Failed to connect")
        self.assertEqual(errno_from_exception(e), pycurl.E_COULDNT_CONNECT)

    def test_os_error(self):
        self.assertEqual(errno_from_exception(OSError(5, "I/O error")), 5)

    def test_no_args(self):
        self.assertIsNone(errno_from_exception(Exception()))
        self.assertIsNone(errno_from_exception(Exception("not a code")))


class RaiseExcInfoTest(unittest.TestCase):
    def test_two_arg_exception(self):
        # This test would fail on python 3 if raise_exc_info were simply
        # a three-argument raise statement, because TwoArgException
        # doesn't have a "copy constructor"
        class TwoArgException(Exception):
            def __init__(self, a, b):
                super().__init__()
                self.a, self.b = a, b

        try:
            raise TwoArgException(1, 2)
        except TwoArgException:
            exc_info = sys.exc_info()
        try:
            raise_exc_info(exc_info)
            self.fail("didn't get expected exception")
        except TwoArgException as e:
            self.assertIs(e, exc_info[1])

    def test_no_exception(self):
        self.assertRaises(TypeError, raise_exc_info, (None, None, None))
