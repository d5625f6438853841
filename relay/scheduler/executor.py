import asyncio
import json
import logging
import shlex
from typing import Any, Optional, Protocol, Union

from relay.domain.errors import ExecutorError
from relay.domain.models import ExecutorResult

logger = logging.getLogger(__name__)


class Executor(Protocol):
    """
    Performs one platform action. The dispatch loop awaits it and only looks
    at the ExecutorResult (or the equivalent camelCase dict) it returns.
    """

    async def __call__(
        self,
        platform: str,
        action: str,
        payload: Any,
        file_path: Optional[str] = None,
    ) -> Union[ExecutorResult, dict[str, Any]]: ...


def coerce_result(raw: Any, platform: str, action: str) -> ExecutorResult:
    if isinstance(raw, ExecutorResult):
        return raw
    if isinstance(raw, dict):
        return ExecutorResult.from_dict(raw, platform, action)
    return ExecutorResult(
        success=False,
        platform=platform,
        action=action,
        error=f"Executor returned unsupported result type {type(raw).__name__}",
    )


class SubprocessExecutor:
    """
    Runs a publisher program per job and reads its JSON result from stdout.

    The command may reference {platform}, e.g.
    "bun run src/skills/{platform}-skill.ts"; the action and the JSON
    arguments (payload plus filePath) are appended as two extra arguments.
    """

    def __init__(self, command: str, timeout: Optional[float] = 600.0):
        self.command = command
        self.timeout = timeout

    def build_argv(self, platform: str, action: str, payload: Any, file_path: Optional[str]) -> list[str]:
        args = dict(payload) if isinstance(payload, dict) else {"content": payload}
        args["filePath"] = file_path
        argv = [part.replace("{platform}", platform) for part in shlex.split(self.command)]
        return argv + [action, json.dumps(args)]

    async def __call__(
        self,
        platform: str,
        action: str,
        payload: Any,
        file_path: Optional[str] = None,
    ) -> ExecutorResult:
        argv = self.build_argv(platform, action, payload, file_path)
        logger.info(f"Executing {platform}:{action} via {argv[0]}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ExecutorError(f"Could not start executor {argv[0]!r}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ExecutorError(f"Executor timed out after {self.timeout}s")

        output = stdout.decode(errors="replace").strip()
        err_text = stderr.decode(errors="replace").strip()

        # Publishers print their result even when they exit non-zero, and
        # that result may carry needsAuth, so stdout is consulted first.
        try:
            data = json.loads(output) if output else None
        except ValueError:
            data = None

        if isinstance(data, dict):
            return ExecutorResult.from_dict(data, platform, action)

        if proc.returncode != 0:
            logger.error(f"Skill error: {err_text}")
            return ExecutorResult(
                success=False,
                platform=platform,
                action=action,
                error=err_text or f"Skill exited with code {proc.returncode}",
            )

        return ExecutorResult(
            success=False,
            platform=platform,
            action=action,
            error=f"Invalid JSON output: {output}",
        )
