"""
Exception types and receive/send error classification.

The classifier is a precomputed errno membership set: ignorable failures are
logged and skipped by the forwarding loop, everything else is fatal.
"""

from __future__ import annotations

import errno
from typing import FrozenSet, Optional, Union


class RedirectError(Exception):
    """Base class for redirector failures."""


class StartupError(RedirectError):
    """Fatal condition raised before the forwarding loop starts."""


class EndpointSetupError(StartupError):
    """A socket could not be created, configured or bound."""


class ResolutionError(StartupError):
    """The connect hostname could not be resolved."""


class ForwardingError(RedirectError):
    """A receive/send/wait failure that is not classified as ignorable."""

    def __init__(self, operation: str, err: Optional[int], message: str = "") -> None:
        self.operation = operation
        self.errno = err
        name = errno.errorcode.get(err, str(err)) if err is not None else "unknown"
        super().__init__(message or f"{operation} failed ({name})")


# Always ignored, whatever the configuration says.
ALWAYS_IGNORED: FrozenSet[int] = frozenset({errno.EINTR})

# Harmless recvfrom/sendto failures, ignored when ignore-mode is enabled.
HARMLESS_ERRNOS: FrozenSet[int] = frozenset(
    {
        errno.EAGAIN,
        errno.EWOULDBLOCK,
        errno.EHOSTUNREACH,
        errno.ENETDOWN,
        errno.ENETUNREACH,
        errno.ENOBUFS,
        errno.EPIPE,
        errno.EADDRNOTAVAIL,
    }
)


def build_ignore_set(ignore_errors: bool) -> FrozenSet[int]:
    if ignore_errors:
        return ALWAYS_IGNORED | HARMLESS_ERRNOS
    return ALWAYS_IGNORED


class ErrorClassifier:
    """Decide whether an OS error is log-and-continue or fatal."""

    def __init__(self, ignore_errors: bool = True) -> None:
        self.ignore_errors = bool(ignore_errors)
        self.ignored = build_ignore_set(self.ignore_errors)

    def is_ignorable(self, err: Union[int, OSError, None]) -> bool:
        if isinstance(err, OSError):
            err = err.errno
        return err is not None and err in self.ignored
