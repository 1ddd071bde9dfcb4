"""
Shell command execution for scheduled commands.

Runs one shell command once with a timeout and normalizes whatever happens
(success, non-zero exit, timeout, spawn failure) into an ExecutionResult.
Failures are expressed as data; execute() does not raise.
"""

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_SHELL = "/bin/sh"
DEFAULT_TIMEOUT = 10
TIMEOUT_MESSAGE = "Command timed out"

# Seconds to wait for a killed process to be reaped
KILL_GRACE_SECONDS = 5


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one run of one command."""
    success: bool
    output: str = ""
    error: str = ""

    @classmethod
    def failure(cls, message: str) -> 'ExecutionResult':
        """Create a failed result carrying a diagnostic message."""
        return cls(success=False, output="", error=message)

    @classmethod
    def timed_out(cls) -> 'ExecutionResult':
        return cls.failure(TIMEOUT_MESSAGE)

    def to_dict(self):
        return {'success': self.success, 'output': self.output, 'error': self.error}


# Result reported for a command that has not completed a run yet
PENDING_RESULT = ExecutionResult(success=True, output="", error="")


def _decode(data: Optional[bytes]) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace").strip()


class CommandExecutor:
    """
    Executes shell commands through /bin/sh with a per-run timeout.

    Every call is independent: nothing is shared between overlapping runs,
    even of the same command text.
    """

    def __init__(self, shell: str = DEFAULT_SHELL):
        """
        Initialize command executor.

        Args:
            shell: Shell used to interpret command text (invoked as ``shell -c``)
        """
        self.shell = shell

    async def execute(self, command: str, timeout: float = DEFAULT_TIMEOUT) -> ExecutionResult:
        """
        Execute a shell command once.

        Args:
            command: Shell command text
            timeout: Seconds before the process group is killed

        Returns:
            ExecutionResult. Timeouts, spawn failures and non-zero exits all
            resolve to a result with success=False.
        """
        logger.debug(f"Executing command (timeout={timeout}s): {command}")

        try:
            process = await asyncio.create_subprocess_exec(
                self.shell, "-c", command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except Exception as e:
            logger.error(f"Failed to start command '{command}': {e}")
            return ExecutionResult.failure(str(e) or e.__class__.__name__)

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Command timed out after {timeout}s: {command}")
            await self._terminate(process)
            return ExecutionResult.timed_out()
        except asyncio.CancelledError:
            self._kill(process)
            raise
        except Exception as e:
            logger.error(f"Command execution failed: {e}")
            await self._terminate(process)
            return ExecutionResult.failure(str(e) or e.__class__.__name__)

        result = ExecutionResult(
            success=process.returncode == 0,
            output=_decode(stdout),
            error=_decode(stderr),
        )
        if not result.success:
            logger.debug(f"Command exited with code {process.returncode}: {command}")
        return result

    @staticmethod
    def _kill(process: asyncio.subprocess.Process):
        """Kill the process and everything in its session."""
        # The group outlives the shell while background jobs still hold the pipes
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except OSError:
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass

    async def _terminate(self, process: asyncio.subprocess.Process):
        """Kill the process group and reap the shell so no zombie is left."""
        self._kill(process)
        try:
            await asyncio.wait_for(process.wait(), KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(f"Process {process.pid} was not reaped after kill")
