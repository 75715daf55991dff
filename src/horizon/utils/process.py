"""External process helpers."""

import asyncio
import logging
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Sequence


logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 60


@dataclass
class CommandResult:
    """Result from running a command."""
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(
    cmd: Sequence[str],
    check: bool = True,
    capture_output: bool = True,
    timeout: Optional[float] = None,
    input: Optional[str] = None,
    **kwargs
) -> CommandResult:
    """Run a command asynchronously."""
    cmd = list(cmd)
    logger.debug(f"Running command: {' '.join(cmd)}")

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE if input is not None else None,
            stdout=asyncio.subprocess.PIPE if capture_output else None,
            stderr=asyncio.subprocess.PIPE if capture_output else None,
            **kwargs
        )
    except FileNotFoundError as e:
        result = CommandResult(returncode=127, stderr=str(e))
        if check:
            error = subprocess.CalledProcessError(127, cmd)
            error.stdout = ""
            error.stderr = result.stderr
            raise error from e
        return result

    try:
        stdout, stderr = await asyncio.wait_for(
            process.communicate(input.encode() if input is not None else None),
            timeout=timeout
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise subprocess.TimeoutExpired(cmd, timeout)

    result = CommandResult(
        returncode=process.returncode,
        stdout=stdout.decode() if stdout else "",
        stderr=stderr.decode() if stderr else "",
    )

    if check and process.returncode != 0:
        error = subprocess.CalledProcessError(
            process.returncode, cmd
        )
        error.stdout = result.stdout
        error.stderr = result.stderr
        raise error

    return result


class CommandRunner:
    """Narrow interface for every external-process call.

    Container runtime and host service calls all go through ``run`` so that
    they can be replaced in tests. Every call is bounded by a timeout.
    """

    def __init__(self, default_timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self.default_timeout = default_timeout

    async def run(
        self,
        args: List[str],
        check: bool = False,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
    ) -> CommandResult:
        """Run ``args`` and return its exit code and output."""
        return await run_command(
            args,
            check=check,
            timeout=timeout if timeout is not None else self.default_timeout,
            input=input,
        )

    async def check(self, args: List[str], timeout: Optional[float] = None,
                    input: Optional[str] = None) -> CommandResult:
        """Run ``args`` and raise CalledProcessError on a non-zero exit."""
        return await self.run(args, check=True, timeout=timeout, input=input)
