"""
Error types and the ignorable-error policy for the UDP redirector
"""

import errno
import os
from typing import FrozenSet, Iterable, Optional

# Always retried, never fatal
ALWAYS_IGNORED = (errno.EINTR,)

# Harmless recvfrom / sendto errors for a long running relay on a flaky
# network. Best effort list, possibly incomplete.
TRANSIENT_ERRORS = (
    errno.EAGAIN,
    errno.EHOSTUNREACH,
    errno.ENETDOWN,
    errno.ENETUNREACH,
    errno.ENOBUFS,
    errno.EPIPE,
    errno.EADDRNOTAVAIL,
)


def describe_errno(code: Optional[int]) -> str:
    """Return 'strerror (errno)' for log messages"""
    if code is None:
        return "unknown error"
    return f"{os.strerror(code)} ({code})"


class RedirectError(Exception):
    """Base class for every fatal condition - the process exits on these"""


class ConfigurationError(RedirectError):
    """Invalid or incomplete settings"""


class ResolveError(RedirectError):
    """Connect host could not be resolved"""

    def __init__(self, host: str, reason: str):
        super().__init__(f"Could not resolve host {host}: {reason}")
        self.host = host


class SocketSetupError(RedirectError):
    """A socket could not be created, configured or bound"""

    def __init__(self, description: str, step: str, code: Optional[int]):
        super().__init__(f"{description} socket: cannot {step}: {describe_errno(code)}")
        self.description = description
        self.step = step
        self.errno = code


class FatalSocketError(RedirectError):
    """An I/O error outside the ignore set"""

    def __init__(self, operation: str, code: Optional[int]):
        super().__init__(f"{operation} failed: {describe_errno(code)}")
        self.operation = operation
        self.errno = code


class ErrorClassifier:
    """
    Decides whether an OS error code is ignorable or fatal

    EINTR is always ignorable. With ignore_errors the TRANSIENT_ERRORS are
    ignorable too. Anything else is fatal.
    """

    def __init__(self, ignore_errors: bool = True):
        self.ignore_errors = ignore_errors
        self.ignored: FrozenSet[int] = self._build(ignore_errors)

    @staticmethod
    def _build(ignore_errors: bool) -> FrozenSet[int]:
        codes: Iterable[int] = ALWAYS_IGNORED
        if ignore_errors:
            codes = ALWAYS_IGNORED + TRANSIENT_ERRORS
        return frozenset(codes)

    def is_ignorable(self, code: Optional[int]) -> bool:
        return code is not None and code in self.ignored

    def __repr__(self):
        return f"ErrorClassifier(ignore_errors={self.ignore_errors})"
