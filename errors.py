"""
Error kinds shared by the deployment pipeline.

UserCanceled and ProcessCanceled are control flow: the first means the user
declined a confirmation, the second that an internal precondition made the
operation moot. Neither is ever offered for reporting. TemporaryError is a
retryable condition that survived the retry policy. Everything else is a
real failure and gets classified by ``allow_report`` before it reaches the
user.
"""

from __future__ import annotations

import errno
import logging
from typing import Any, Protocol

_log = logging.getLogger(__name__)

# Filesystem codes meaning the file was already gone. Expected, not a bug.
EXPECTED_FS_CODES = frozenset({"ENOENT", "ENOTFOUND"})


class UserCanceled(Exception):
    def __init__(self, message: str = "canceled by user"):
        super().__init__(message)


class ProcessCanceled(Exception):
    pass


class TemporaryError(Exception):
    pass


class PartialDeployment(Exception):
    """Raised by ``finalize`` when some link operations failed.

    ``entries`` is the manifest that matches what is actually on disk and
    must still be saved. ``failures`` holds ``(destination, error)`` pairs.
    """

    def __init__(self, entries: list, failures: list[tuple[str, BaseException]]):
        self.entries = entries
        self.failures = failures
        super().__init__(f"{len(failures)} file operation(s) failed during deployment")

    @property
    def transient(self) -> bool:
        return all(isinstance(err, TemporaryError) for _, err in self.failures)


def coded_error(code: str, message: str) -> OSError:
    """Build an OSError that carries a symbolic code such as ``ENOENT``.

    Codes without an errno counterpart (``ENOTFOUND``, ``UNKNOWN``) keep
    ``errno`` unset and only expose ``code``.
    """
    number = getattr(errno, code, None)
    err = OSError(number, message) if isinstance(number, int) else OSError(message)
    err.code = code
    return err


def error_code(err: BaseException) -> str | None:
    code = getattr(err, "code", None)
    if isinstance(code, str):
        return code
    number = getattr(err, "errno", None)
    if isinstance(number, int):
        return errno.errorcode.get(number, "UNKNOWN")
    return None


def is_canceled(err: BaseException) -> bool:
    return isinstance(err, (UserCanceled, ProcessCanceled))


def allow_report(err: BaseException) -> bool:
    if is_canceled(err) or isinstance(err, TemporaryError):
        return False
    return error_code(err) not in EXPECTED_FS_CODES


# ── Reporting surface ─────────────────────────────────────────────────


class ErrorReporter(Protocol):
    def show_error(self, title: str, details: Any, allow_report: bool = True) -> None: ...


class LoggingErrorReporter:
    """Reporter used when no UI is attached: everything goes to the log."""

    def __init__(self, logger: logging.Logger | None = None):
        self._logger = logger or _log
        self.reported: list[tuple[str, Any, bool]] = []

    def show_error(self, title: str, details: Any, allow_report: bool = True) -> None:
        self.reported.append((title, details, allow_report))
        if isinstance(details, BaseException) and allow_report:
            self._logger.error("%s: %s", title, details, exc_info=details)
        else:
            self._logger.error("%s: %s", title, details)


def report_error(reporter: ErrorReporter, title: str, err: BaseException) -> None:
    """Route ``err`` to the reporter with its report eligibility worked out.

    User cancellations are dropped, process cancellations only logged.
    """
    if isinstance(err, UserCanceled):
        return
    if isinstance(err, ProcessCanceled):
        _log.warning("%s: %s", title, err)
        return
    if isinstance(err, TemporaryError):
        reporter.show_error(f"{title}, please try again", str(err), allow_report=False)
        return
    reporter.show_error(title, err, allow_report=allow_report(err))
