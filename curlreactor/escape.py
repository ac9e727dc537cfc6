"""Escaping/unescaping methods for URL components and byte/text conversion.

The URL helpers follow libcurl's ``curl_easy_escape`` and
``curl_easy_unescape`` rules: every byte except the RFC 3986 unreserved
characters (``A-Z a-z 0-9 - . _ ~``) is percent-encoded, and decoding only
understands ``%XX`` sequences (a ``+`` is a literal plus sign).
"""
import urllib.parse

from typing import Union, Optional, overload

_UTF8_TYPES = (bytes, type(None))


@overload
def utf8(value: bytes) -> bytes:
    pass


@overload
def utf8(value: str) -> bytes:
    pass


@overload
def utf8(value: None) -> None:
    pass


def utf8(value: Union[None, str, bytes]) -> Optional[bytes]:
    """Converts a string argument to a byte string.

    If the argument is already a byte string or None, it is returned unchanged.
    Otherwise it must be a unicode string and is encoded as utf8.
    """
    if isinstance(value, _UTF8_TYPES):
        return value
    if not isinstance(value, str):
        raise TypeError("Expected bytes, unicode, or None; got %r" % type(value))
    return value.encode("utf-8")


_TO_UNICODE_TYPES = (str, type(None))


@overload
def to_unicode(value: str) -> str:
    pass


@overload
def to_unicode(value: bytes) -> str:
    pass


@overload
def to_unicode(value: None) -> None:
    pass


def to_unicode(value: Union[None, str, bytes]) -> Optional[str]:
    """Converts a string argument to a unicode string.

    If the argument is already a unicode string or None, it is returned
    unchanged.  Otherwise it must be a byte string and is decoded as utf8.
    """
    if isinstance(value, _TO_UNICODE_TYPES):
        return value
    if not isinstance(value, bytes):
        raise TypeError("Expected bytes, unicode, or None; got %r" % type(value))
    return value.decode("utf-8")


# to_unicode was previously named _unicode not because it was private,
# but to avoid conflicts with the built-in unicode() function/type
_unicode = to_unicode

native_str = to_unicode


def url_escape(value: Union[str, bytes]) -> str:
    """Returns a percent-encoded version of the given value.

    Every byte outside of the unreserved set is encoded, including ``/``
    and spaces (which become ``%20``, never ``+``).
    """
    return urllib.parse.quote(utf8(value), safe="")


@overload
def url_unescape(value: Union[str, bytes], encoding: None) -> bytes:
    pass


@overload
def url_unescape(value: Union[str, bytes], encoding: str = "utf-8") -> str:
    pass


def url_unescape(
    value: Union[str, bytes], encoding: Optional[str] = "utf-8"
) -> Union[str, bytes]:
    """Decodes the given value from a URL.

    The argument may be either a byte or unicode string.

    If encoding is None, the result will be a byte string.  Otherwise,
    the result is a unicode string in the specified encoding.  Bytes
    that are not valid in ``encoding`` are replaced rather than raising.
    """
    unquoted = urllib.parse.unquote_to_bytes(value)
    if encoding is None:
        return unquoted
    return unquoted.decode(encoding, "replace")
