"""
Typed errors surfaced by the search pipeline.

Adapters convert tool failures into these; the CLI maps any ``AbAv1Error``
to exit status 1.
"""

from typing import Optional


class AbAv1Error(Exception):
    """Base class for all surfaced errors."""


class PreconditionError(AbAv1Error):
    """Invalid arguments detected before any process is spawned."""


class ProbeError(AbAv1Error):
    """A probe field needed by the caller could not be determined."""


class ParseError(AbAv1Error):
    """Expected tool output (e.g. the final score line) was missing."""


class CacheError(AbAv1Error):
    """Cache read/write failure. Logged by the pipeline, never fatal."""


class Cancelled(AbAv1Error):
    """The run was interrupted."""

    def __init__(self, message: str = "cancelled"):
        super().__init__(message)


class ProcessError(AbAv1Error):
    """An external tool exited unsuccessfully."""

    def __init__(self, name: str, code: Optional[int], cmd: str, stderr_tail: str):
        self.name = name
        self.code = code
        self.cmd = cmd
        self.stderr_tail = stderr_tail
        super().__init__(
            f"{name} exit code {code}\n"
            f"----cmd-----\n{cmd}\n"
            f"---stderr---\n{stderr_tail.strip()}\n"
            f"------------"
        )
