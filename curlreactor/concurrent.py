"""Helpers around `asyncio.Future`.

`.CurlManager.fetch` hands out plain asyncio futures.  The functions here
let the rest of the package complete them without tripping over futures
the caller has already cancelled, and accept `concurrent.futures.Future`
wherever a future is expected.
"""
import asyncio
from concurrent import futures

from curlreactor.log import app_log

import typing
from typing import Any, Callable, Union

_T = typing.TypeVar("_T")

Future = asyncio.Future

FUTURES = (futures.Future, Future)


def is_future(x: Any) -> bool:
    """True for asyncio and `concurrent.futures` futures alike."""
    return isinstance(x, FUTURES)


def future_set_result_unless_cancelled(
    future: "Union[futures.Future[_T], Future[_T]]", value: _T
) -> None:
    """Resolves ``future`` with ``value``; a cancelled future is left alone."""
    if not future.cancelled():
        future.set_result(value)


def future_set_exception_unless_cancelled(
    future: "Union[futures.Future[_T], Future[_T]]", exc: BaseException
) -> None:
    """Fails ``future`` with ``exc``.

    When the future was cancelled nobody will look at it any more, so the
    exception is logged on ``curlreactor.application`` rather than lost.
    """
    if future.cancelled():
        app_log.error("Exception after Future was cancelled", exc_info=exc)
        return
    future.set_exception(exc)


def future_add_done_callback(
    future: "Union[futures.Future[_T], Future[_T]]", callback: Callable[..., None]
) -> None:
    """Calls ``callback(future)`` once ``future`` is done.

    Unlike ``Future.add_done_callback``, a future that is already done
    gets its callback run right away, before this function returns.
    """
    if future.done():
        callback(future)
        return
    future.add_done_callback(callback)
