"""Built-in actors: noop, http_request, command.

Each configured request or command is one sub-step. A run fails only when no
sub-step succeeded; partial failures are reported through the counts.
"""

import asyncio
import logging
import shlex
import subprocess
from typing import Literal

import httpx
from pydantic import Field

from actors.base import ActorOptions, BaseActor
from core.errors import ActorExecutionError
from scheduler.models import ExecutionResult

logger = logging.getLogger(__name__)


class NoopOptions(ActorOptions):
    sub_steps: int = Field(default=1, ge=0)


class NoopActor(BaseActor):
    name = "noop"
    description = "Do nothing and report success; useful for dry runs."
    options_model = NoopOptions

    async def execute(self) -> ExecutionResult:
        return ExecutionResult(sub_steps_succeeded=self.options.sub_steps)


class RequestSpec(ActorOptions):
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH"] = "GET"
    url: str
    headers: dict[str, str] = {}
    body: str | None = None


class HttpRequestOptions(ActorOptions):
    requests: list[RequestSpec] = Field(min_length=1)
    timeout: float = Field(default=30.0, gt=0)


class HttpRequestActor(BaseActor):
    name = "http_request"
    description = "Send one or more HTTP requests; 4xx/5xx responses count as failed sub-steps."
    options_model = HttpRequestOptions

    async def execute(self) -> ExecutionResult:
        succeeded = failed = 0
        responses: list[dict] = []
        async with httpx.AsyncClient(timeout=self.options.timeout) as client:
            for spec in self.options.requests:
                try:
                    response = await client.request(
                        method=spec.method,
                        url=spec.url,
                        headers=spec.headers,
                        content=spec.body,
                    )
                except httpx.HTTPError as e:
                    failed += 1
                    responses.append({"url": spec.url, "error": str(e)})
                    continue
                responses.append({"url": spec.url, "status_code": response.status_code})
                if response.is_error:
                    failed += 1
                else:
                    succeeded += 1

        if succeeded == 0:
            raise ActorExecutionError(f"all {failed} request(s) failed: {responses}")
        return ExecutionResult(
            sub_steps_succeeded=succeeded,
            sub_steps_failed=failed,
            metadata={"responses": responses},
        )


class CommandOptions(ActorOptions):
    # Either a shell-style string or an argv list per command
    commands: list[str | list[str]] = Field(min_length=1)
    timeout: float = Field(default=60.0, gt=0)
    stop_on_failure: bool = True
    cwd: str | None = None


class CommandActor(BaseActor):
    name = "command"
    description = "Run local commands in order; non-zero exit codes are failed sub-steps."
    options_model = CommandOptions

    async def execute(self) -> ExecutionResult:
        succeeded = failed = skipped = 0
        exit_codes: list[int | None] = []
        last_error = ""
        for command in self.options.commands:
            if failed and self.options.stop_on_failure:
                skipped += 1
                continue
            argv = shlex.split(command) if isinstance(command, str) else list(command)
            try:
                proc = await asyncio.to_thread(
                    subprocess.run,
                    argv,
                    capture_output=True,
                    text=True,
                    timeout=self.options.timeout,
                    cwd=self.options.cwd,
                )
            except subprocess.TimeoutExpired:
                failed += 1
                exit_codes.append(None)
                last_error = f"{argv[0]} timed out ({self.options.timeout}s)"
                continue
            except OSError as e:
                failed += 1
                exit_codes.append(None)
                last_error = f"{argv[0]}: {e}"
                continue

            exit_codes.append(proc.returncode)
            if proc.returncode == 0:
                succeeded += 1
            else:
                failed += 1
                last_error = (proc.stderr or proc.stdout).strip() or f"exit code {proc.returncode}"
                logger.debug("Command failed", extra={"argv": argv, "returncode": proc.returncode})

        if succeeded == 0:
            raise ActorExecutionError(last_error or "no command succeeded")
        return ExecutionResult(
            sub_steps_succeeded=succeeded,
            sub_steps_failed=failed,
            sub_steps_skipped=skipped,
            metadata={"exit_codes": exit_codes},
        )
