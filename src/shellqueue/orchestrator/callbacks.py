"""Completion hook: runs the user's callback command after a task ends."""

import asyncio
import os
import signal
import string
from typing import Any

import structlog

from ..core.config import DaemonConfig
from ..core.logs import TaskLogs
from ..core.state import Task


logger = structlog.get_logger()


class _TemplateValues(dict):
    """Leaves unknown ``{placeholders}`` untouched."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_callback(template: str, task: Task, output: str) -> str:
    values: dict[str, Any] = _TemplateValues(
        id=task.id,
        command=task.command,
        group=task.group,
        label=task.label or "",
        status=task.status.value,
        result=task.result_label(),
        exit_code="" if task.exit_code is None else task.exit_code,
        output=output,
    )
    return string.Formatter().vformat(template, (), values)


class CallbackRunner:
    """
    Invoked by the scheduler for every finished task.

    Without a configured ``callback`` it only logs. Failures of the
    callback never affect the task or the daemon.
    """

    def __init__(self, config: DaemonConfig, logs: TaskLogs, timeout: float = 60.0):
        self.config = config
        self.logs = logs
        self.timeout = timeout

    async def __call__(self, task: Task) -> None:
        logger.debug("completion_hook", task_id=task.id, result=task.result_label())
        if not self.config.callback:
            return

        output = self.logs.tail(task.id, self.config.callback_log_lines)
        command = render_callback(self.config.callback, task, output)

        try:
            process = await asyncio.create_subprocess_exec(
                self.config.shell,
                "-c",
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            logger.error("callback_spawn_failed", task_id=task.id, error=str(e))
            return

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await process.wait()
            logger.warning("callback_timed_out", task_id=task.id, timeout=self.timeout)
            return

        if process.returncode != 0:
            logger.warning(
                "callback_failed",
                task_id=task.id,
                exit_code=process.returncode,
                stderr=stderr.decode("utf-8", errors="replace")[-500:],
            )
