"""Build error taxonomy.

Every failure raised by the core derives from ``BuildError`` and carries the
stage and source line it belongs to, when known.  Planning errors
(``DockerfileSyntaxError``, ``UnresolvedStageError``,
``CyclicDependencyError``) are raised before any layer executes; the rest are
execution-time and abort the whole build.
"""

from __future__ import annotations


class BuildError(RuntimeError):
    """Base class for all build failures.

    Parameters
    ----------
    message:
        Human-readable description of the failure.
    stage:
        Name of the stage that owns the failing instruction.
    line:
        1-based source line of the failing instruction.
    """

    def __init__(
        self, message: str, *, stage: str | None = None, line: int | None = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.line = line

    def with_location(self, *, stage: str | None = None, line: int | None = None) -> BuildError:
        """Fill in stage/line if they are not already set, and return self."""
        if self.stage is None:
            self.stage = stage
        if self.line is None:
            self.line = line
        return self

    def __str__(self) -> str:
        where = []
        if self.stage is not None:
            where.append(f"stage {self.stage}")
        if self.line is not None:
            where.append(f"line {self.line}")
        if not where:
            return self.message
        return f"{self.message} ({', '.join(where)})"


# ---------------------------------------------------------------------------
# Planning-time
# ---------------------------------------------------------------------------


class DockerfileSyntaxError(BuildError):
    """Malformed instruction, unknown keyword or bad arity."""


class UnresolvedStageError(BuildError):
    """A reference names neither a declared stage nor a known image."""


class CyclicDependencyError(BuildError):
    """The stage graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Stage dependency cycle: {' -> '.join(cycle)}")
        self.cycle = cycle


# ---------------------------------------------------------------------------
# Execution-time
# ---------------------------------------------------------------------------


class UndefinedArgumentError(BuildError):
    """A variable reference has no value in scope."""

    def __init__(self, name: str, **kwargs) -> None:
        super().__init__(f"Undefined build argument or variable: {name}", **kwargs)
        self.name = name


class SourceNotFoundError(BuildError):
    """A copy/add source is absent from the context or the source stage."""


class BuildFailedError(BuildError):
    """A run instruction exited non-zero."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class InstructionTimeoutError(BuildError, TimeoutError):
    """A run or add instruction exceeded the per-instruction timeout."""


class FetchError(BuildError):
    """A remote add source could not be fetched."""


class BuildCancelledError(BuildError):
    """The build was cancelled before this stage finished."""


class IncompleteStageError(BuildError):
    """The target stage never completed its last instruction."""


class LayerIntegrityError(BuildError):
    """A stored layer blob is unreadable or inconsistent."""
