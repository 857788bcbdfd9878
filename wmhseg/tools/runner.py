"""External tool execution.

Every external program the pipeline depends on (AFNI, FSL, ANTs, FreeSurfer,
MATLAB, the container runtime) is invoked through a :class:`ToolRunner`. An
invocation declares its inputs and outputs, so missing prerequisites and
silent tool failures are detected uniformly, and tests can substitute a fake
runner that writes canned outputs instead of running anything.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence
import logging
import os
import shlex
import subprocess
import time

from wmhseg.errors import ExternalToolFailure, WorkspaceStateError

logger = logging.getLogger(__name__)


@dataclass
class ToolInvocation:
    """A single external command.

    Attributes:
        name: Short tool name used in logs and errors (e.g. "flirt").
        argv: Full argument vector; argv[0] is the executable.
        cwd: Working directory for the process.
        inputs: Files that must exist before the command runs.
        outputs: Files that must exist after the command succeeds.
        env: Environment overrides applied on top of the runner environment.
        timeout: Per-invocation timeout in seconds (overrides the runner default).
    """

    name: str
    argv: List[str]
    cwd: Path
    inputs: List[Path] = field(default_factory=list)
    outputs: List[Path] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None

    @property
    def cmdline(self) -> str:
        return " ".join(shlex.quote(str(a)) for a in self.argv)


@dataclass
class ToolResult:
    """Outcome of a successful invocation."""

    name: str
    returncode: int
    stdout: str = ""
    stderr: str = ""
    elapsed: float = 0.0


class ToolRunner:
    """Runs :class:`ToolInvocation` objects as subprocesses.

    Attributes:
        threads: Thread budget exported as OMP_NUM_THREADS.
        timeout: Default timeout in seconds (None = wait indefinitely).
        dry_run: Log commands without executing them.
        base_env: Environment the child processes start from.
    """

    def __init__(
        self,
        threads: int = 1,
        timeout: Optional[float] = None,
        dry_run: bool = False,
        base_env: Optional[Dict[str, str]] = None,
    ) -> None:
        self.threads = threads
        self.timeout = timeout
        self.dry_run = dry_run
        self.base_env = dict(base_env) if base_env is not None else os.environ.copy()
        self.logger = logging.getLogger(__name__)

    def build_env(self, overrides: Dict[str, str]) -> Dict[str, str]:
        """Return the child environment for an invocation."""
        env = dict(self.base_env)
        env["OMP_NUM_THREADS"] = str(self.threads)
        env.update(overrides)
        return env

    def check_inputs(self, invocation: ToolInvocation) -> None:
        """Raise WorkspaceStateError if a declared input is missing."""
        missing = [str(p) for p in invocation.inputs if not Path(p).exists()]
        if missing:
            raise WorkspaceStateError(
                f"{invocation.name}: required input(s) missing: {', '.join(missing)}"
            )

    def check_outputs(self, invocation: ToolInvocation, result: ToolResult) -> None:
        """Raise ExternalToolFailure if a declared output was not produced."""
        missing = [str(p) for p in invocation.outputs if not Path(p).exists()]
        if missing:
            raise ExternalToolFailure(
                f"{invocation.name} produced no expected output: {', '.join(missing)}",
                tool=invocation.name,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )

    def run(self, invocation: ToolInvocation) -> ToolResult:
        """Run an invocation and validate its declared outputs.

        Args:
            invocation: The command to run.

        Returns:
            ToolResult for the finished process.

        Raises:
            WorkspaceStateError: If a declared input is missing.
            ExternalToolFailure: If the executable is missing, the process
                times out or exits non-zero, or an output is missing.
        """
        if self.dry_run:
            # Inputs of later commands never exist in a dry run, so nothing is checked
            self.logger.info(f"[dry-run] {invocation.name}: {invocation.cmdline}")
            return ToolResult(name=invocation.name, returncode=0)

        self.check_inputs(invocation)
        self.logger.info(f"Running {invocation.name}: {invocation.cmdline}")

        result = self._execute(invocation)
        self.check_outputs(invocation, result)
        return result

    def _execute(self, invocation: ToolInvocation) -> ToolResult:
        timeout = invocation.timeout if invocation.timeout is not None else self.timeout
        start = time.time()

        try:
            completed = subprocess.run(
                [str(a) for a in invocation.argv],
                cwd=str(invocation.cwd),
                env=self.build_env(invocation.env),
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise ExternalToolFailure(
                f"{invocation.name}: executable not found ({invocation.argv[0]})",
                tool=invocation.name,
            ) from e
        except subprocess.TimeoutExpired as e:
            raise ExternalToolFailure(
                f"{invocation.name} timed out after {timeout} s",
                tool=invocation.name,
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr),
            ) from e

        elapsed = time.time() - start
        if completed.stdout:
            self.logger.debug(f"{invocation.name} stdout:\n{completed.stdout}")

        if completed.returncode != 0:
            self.logger.error(
                f"{invocation.name} failed with exit code {completed.returncode}.\n"
                f"Command: {invocation.cmdline}\n"
                f"Stderr: {completed.stderr}"
            )
            raise ExternalToolFailure(
                f"{invocation.name} failed with exit code {completed.returncode}",
                tool=invocation.name,
                returncode=completed.returncode,
                stdout=completed.stdout,
                stderr=completed.stderr,
            )

        self.logger.debug(f"{invocation.name} finished in {elapsed:.1f}s")
        return ToolResult(
            name=invocation.name,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            elapsed=elapsed,
        )


def _decode(stream: Optional[Sequence]) -> str:
    if stream is None:
        return ""
    if isinstance(stream, bytes):
        return stream.decode(errors="replace")
    return str(stream)
