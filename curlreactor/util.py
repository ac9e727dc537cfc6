"""Small helpers shared by the rest of curlreactor.

Most of this module is internal.  `Configurable` is the exception: its
`~Configurable.configure` classmethod is how applications choose the
`.IOLoop` implementation.
"""
import asyncio
from types import TracebackType

import typing
from typing import Any, Optional, Tuple

TimeoutError = asyncio.TimeoutError


def import_object(name: str) -> Any:
    """Resolves a dotted name to a module or a module attribute.

    A name without dots is imported as a module; otherwise the last
    component is looked up on the module named by the rest.

    >>> import curlreactor.escape
    >>> import_object('curlreactor.escape') is curlreactor.escape
    True
    >>> import_object('curlreactor.escape.utf8') is curlreactor.escape.utf8
    True
    >>> import_object('curlreactor') is curlreactor
    True
    >>> import_object('curlreactor.missing_module')
    Traceback (most recent call last):
        ...
    ImportError: No module named missing_module
    """
    if name.count(".") == 0:
        return __import__(name)

    module_name, _, attr = name.rpartition(".")
    module = __import__(module_name, None, None, [attr], 0)
    try:
        return getattr(module, attr)
    except AttributeError:
        raise ImportError("No module named %s" % attr)


def errno_from_exception(e: BaseException) -> Optional[int]:
    """Returns the numeric error code carried by ``e``, or None.

    `OSError` keeps it in ``errno``.  ``pycurl.error`` has no such
    attribute and passes the libcurl status code as its first argument
    instead, so that is tried next.
    """
    if hasattr(e, "errno"):
        return e.errno  # type: ignore
    args = getattr(e, "args", None)
    if isinstance(args, tuple) and args and isinstance(args[0], int):
        return args[0]
    return None


class Configurable(object):
    """A class whose constructor builds one of its subclasses.

    Calling the base class returns an instance of the implementation
    selected with `configure` (or `configurable_default` when nothing was
    configured), and keyword arguments given to `configure` are merged
    into every construction.  Calling a subclass directly always builds
    that subclass.

    Subclasses implement `configurable_base` and `configurable_default`
    and do their setup in `initialize`, not ``__init__``.
    """

    __impl_class = None  # type: Optional[type]
    __impl_kwargs = None  # type: Optional[dict]

    def __new__(cls, *args: Any, **kwargs: Any) -> Any:
        base = cls.configurable_base()
        init_kwargs = {}
        if cls is base:
            impl = cls.configured_class()
            if base.__impl_kwargs:
                init_kwargs.update(base.__impl_kwargs)
        else:
            impl = cls
        init_kwargs.update(kwargs)
        if impl.configurable_base() is not base:
            # The implementation roots its own hierarchy; let it choose.
            return impl(*args, **init_kwargs)
        instance = super(Configurable, cls).__new__(impl)
        instance.initialize(*args, **init_kwargs)
        return instance

    @classmethod
    def configurable_base(cls):
        """The root of the hierarchy, usually the class defining this method."""
        raise NotImplementedError()

    @classmethod
    def configurable_default(cls):
        """The implementation built when `configure` was never called."""
        raise NotImplementedError()

    def _initialize(self) -> None:
        pass

    initialize = _initialize  # type: Any
    """Sets up a new instance; receives the constructor's arguments."""

    @classmethod
    def configure(cls, impl, **kwargs):
        """Selects the implementation built by the base class.

        ``impl`` is a subclass, its dotted name, or None for the default.
        ``kwargs`` become default keyword arguments of every construction.
        """
        base = cls.configurable_base()
        if isinstance(impl, str):
            impl = import_object(impl)
        if impl is not None and not issubclass(impl, cls):
            raise ValueError("Invalid subclass of %s" % cls)
        base.__impl_class = impl
        base.__impl_kwargs = kwargs

    @classmethod
    def configured_class(cls):
        base = cls.configurable_base()
        # Look at the base's own __dict__ so that a configuration made on a
        # configurable class further up is not picked up by mistake.
        if base.__dict__.get("_Configurable__impl_class") is None:
            base.__impl_class = cls.configurable_default()
        if base.__impl_class is None:
            raise ValueError("configured class not found")
        return base.__impl_class

    @classmethod
    def _save_configuration(cls):
        base = cls.configurable_base()
        return (base.__impl_class, base.__impl_kwargs)

    @classmethod
    def _restore_configuration(cls, saved):
        base = cls.configurable_base()
        base.__impl_class, base.__impl_kwargs = saved


def raise_exc_info(
    exc_info,  # type: Tuple[Optional[type], Optional[BaseException], Optional[TracebackType]]
):
    # type: (...) -> typing.NoReturn
    """Re-raises an exception captured with `sys.exc_info`."""
    try:
        if exc_info[1] is None:
            raise TypeError("raise_exc_info called with no exception")
        raise exc_info[1].with_traceback(exc_info[2])
    finally:
        # Drop the traceback from this frame to avoid a reference cycle.
        exc_info = (None, None, None)
