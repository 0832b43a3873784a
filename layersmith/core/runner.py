"""Pluggable command runners for run instructions.

The container runtime is an external collaborator: the executor hands a
runner a materialised root filesystem, an argv, an environment, a working
directory and a timeout, and gets back the exit code and captured output.

Backends:
1. **HostRunner** (default): runs on the host with ``cwd`` inside the
   materialised root.  No isolation; absolute paths in the command refer
   to the host.
2. **ChrootRunner**: runs through the ``chroot`` binary so absolute paths
   resolve inside the root.  Requires privileges and a shell in the root.
3. **Custom backends**: any object with a matching ``run`` method.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from layersmith.core.errors import InstructionTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


class CommandResult(BaseModel):
    """Outcome of one run instruction."""

    model_config = ConfigDict(frozen=True)

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class CommandRunner(Protocol):
    """Protocol for run-instruction backends."""

    def run(
        self,
        rootfs: Path,
        argv: Sequence[str],
        *,
        env: Mapping[str, str],
        workdir: str,
        timeout: float | None,
    ) -> CommandResult:
        """Run ``argv`` against ``rootfs`` and return its result.

        Parameters
        ----------
        rootfs:
            Host directory holding the materialised snapshot.  The runner may
            modify it; the executor diffs it afterwards.
        argv:
            Program and arguments.  Shell form arrives as
            ``["/bin/sh", "-c", command]``.
        env:
            Complete process environment (build args overlaid by env).
        workdir:
            Absolute working directory inside the root.
        timeout:
            Seconds before the command is killed.

        Raises
        ------
        InstructionTimeoutError
            The command did not finish within ``timeout``.
        """
        ...


# ---------------------------------------------------------------------------
# Default implementations
# ---------------------------------------------------------------------------


def _execute(
    argv: Sequence[str],
    *,
    cwd: Path | None,
    env: Mapping[str, str],
    timeout: float | None,
) -> CommandResult:
    started = time.monotonic()
    try:
        completed = subprocess.run(
            list(argv),
            cwd=cwd,
            env=dict(env),
            capture_output=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise InstructionTimeoutError(
            f"Command {list(argv)!r} timed out after {timeout}s"
        ) from exc
    return CommandResult(
        exit_code=completed.returncode,
        stdout=completed.stdout.decode("utf-8", errors="replace"),
        stderr=completed.stderr.decode("utf-8", errors="replace"),
        duration_ms=int((time.monotonic() - started) * 1000),
    )


class HostRunner:
    """Run commands on the host with the working directory inside the root.

    The root's path is exported as ``LAYERSMITH_ROOTFS`` so scripts can
    address it explicitly.
    """

    def run(
        self,
        rootfs: Path,
        argv: Sequence[str],
        *,
        env: Mapping[str, str],
        workdir: str,
        timeout: float | None,
    ) -> CommandResult:
        cwd = Path(rootfs) / workdir.lstrip("/")
        cwd.mkdir(parents=True, exist_ok=True)
        process_env = {
            "PATH": os.environ.get("PATH", DEFAULT_PATH),
            "LAYERSMITH_ROOTFS": str(rootfs),
            **env,
        }
        logger.debug("Host run in %s: %s", cwd, list(argv))
        return _execute(argv, cwd=cwd, env=process_env, timeout=timeout)


class ChrootRunner:
    """Run commands inside the root via ``chroot``.

    Parameters
    ----------
    chroot_binary:
        Path or name of the chroot executable.
    """

    def __init__(self, chroot_binary: str = "chroot") -> None:
        self._chroot = chroot_binary

    def run(
        self,
        rootfs: Path,
        argv: Sequence[str],
        *,
        env: Mapping[str, str],
        workdir: str,
        timeout: float | None,
    ) -> CommandResult:
        wrapped = [
            self._chroot,
            str(rootfs),
            "/bin/sh",
            "-c",
            'cd "$1" && shift && exec "$@"',
            "sh",
            workdir,
            *argv,
        ]
        process_env = {"PATH": DEFAULT_PATH, **env}
        logger.debug("Chroot run in %s:%s: %s", rootfs, workdir, list(argv))
        return _execute(wrapped, cwd=None, env=process_env, timeout=timeout)
