"""Mailforge Exceptions

Error taxonomy for the build pipeline:

- Page errors (reference and template errors) are scoped to one page.
- Stylesheet syntax errors abort the whole build.
- Configuration errors abort publish pipelines before any network call.
- External-service errors fail the pipeline, never retried.
"""

from __future__ import annotations


class MailforgeError(Exception):
    """Base exception for all mailforge errors."""

    def __init__(self, message: str, exit_code: int = 1) -> None:
        self.message = message
        self.exit_code = exit_code
        super().__init__(message)


class PageCompileError(MailforgeError):
    """Raised when a single page cannot be compiled."""

    def __init__(self, page: str, reason: str):
        self.page = page
        self.reason = reason
        super().__init__(f"{page}: {reason}")


class UnresolvedReferenceError(PageCompileError):
    """Raised when a page names a layout or partial that does not exist."""

    def __init__(self, kind: str, name: str, page: str):
        self.kind = kind
        self.name = name
        super().__init__(page, f"unresolved {kind} '{name}'")


class StylesheetSyntaxError(MailforgeError):
    """Raised for malformed stylesheet source. Fatal for the build."""

    def __init__(self, path: str, line: int, reason: str):
        self.path = path
        self.line = line
        self.reason = reason
        super().__init__(f"{path}:{line}: {reason}")


class ConfigurationError(MailforgeError):
    """Raised when the credentials file is missing or unreadable."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}", exit_code=2)


class ExternalServiceError(MailforgeError):
    """Raised when an external collaborator (store, render test, mail) fails."""

    def __init__(self, service: str, reason: str):
        self.service = service
        self.reason = reason
        super().__init__(f"{service}: {reason}")


class TaskGraphError(MailforgeError):
    """Raised for unknown tasks, unknown dependencies or dependency cycles."""

    pass


class TaskFailedError(MailforgeError):
    """Raised by a task that reports failure without an underlying exception."""

    def __init__(self, task: str, reason: str):
        self.task = task
        super().__init__(f"task '{task}' failed: {reason}")


class CleanError(MailforgeError):
    """Raised when the output tree cannot be removed. Unrecoverable."""

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(f"could not clean {path}: {reason}", exit_code=3)


class PipelineError(MailforgeError):
    """Raised when a pipeline stops at its first failing task."""

    def __init__(self, task: str, error: BaseException, results: list | None = None):
        self.task = task
        self.error = error
        self.results = results or []
        exit_code = error.exit_code if isinstance(error, MailforgeError) else 1
        super().__init__(f"task '{task}' failed: {error}", exit_code=exit_code)
