"""
Bash Operator - Runs a shell command in a subprocess.
Bash 算子 —— 在子进程中运行 shell 命令。

Executes the (templated) command with bash, capturing stdout and stderr
into the task log. A nonzero exit code fails the task; `skip_on_exit_code`
(99 by default) marks it skipped instead. The last stdout line is the
task's return value.
用 bash 执行（经模板渲染的）命令，并将 stdout 和 stderr 捕获到任务日志中。
非零退出码视为失败；退出码等于 `skip_on_exit_code`（默认 99）时标记为跳过。
stdout 的最后一行作为任务返回值。
"""

from __future__ import annotations

import os
import shutil
import subprocess
from typing import Any

from exceptions import TaskSkipped, TaskTimeout
from operators.base import BaseOperator


class BashOperator(BaseOperator):
    """
    Execute a bash command with optional env and cwd.
    执行 bash 命令，可指定环境变量和工作目录。
    """

    template_fields = ("bash_command", "env")

    def __init__(
        self,
        task_id: str,
        bash_command: str,
        env: dict[str, str] | None = None,
        append_env: bool = True,
        cwd: str | None = None,
        skip_on_exit_code: int | None = 99,
        **kwargs: Any,
    ):
        super().__init__(task_id=task_id, **kwargs)
        if not bash_command or not bash_command.strip():
            raise ValueError(f"Task '{task_id}': bash_command must not be empty")
        self.bash_command = bash_command
        self.env = env
        self.append_env = append_env
        self.cwd = cwd
        self.skip_on_exit_code = skip_on_exit_code

    def _build_env(self, context: dict[str, Any]) -> dict[str, str]:
        env: dict[str, str] = dict(os.environ) if (self.env is None or self.append_env) else {}
        if self.env:
            env.update({k: str(v) for k, v in self.render_template(self.env, context).items()})
        # 供脚本读取的运行上下文
        env.update({
            "MINIDAG_CTX_DAG_ID": context["dag"].dag_id,
            "MINIDAG_CTX_TASK_ID": self.task_id,
            "MINIDAG_CTX_RUN_ID": context["run_id"],
            "MINIDAG_CTX_LOGICAL_DATE": context["ts"],
            "MINIDAG_CTX_TRY_NUMBER": str(context["ti"].try_number),
        })
        return env

    def execute(self, context: dict[str, Any]) -> Any:
        log = context["log"]
        bash = shutil.which("bash") or "bash"
        command = self.render_template(self.bash_command, context)
        timeout = self.execution_timeout.total_seconds() if self.execution_timeout else None

        log.info("Running command: %s", command)
        try:
            result = subprocess.run(
                [bash, "-c", command],
                capture_output=True,  # 同时捕获 stdout 和 stderr
                text=True,
                cwd=self.cwd,
                env=self._build_env(context),
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise TaskTimeout(f"Command timed out after {exc.timeout}s: {command}") from exc

        stdout_lines = result.stdout.splitlines()
        for line in stdout_lines:
            log.info(line)
        for line in result.stderr.splitlines():
            log.warning(line)
        log.info("Command exited with return code %d", result.returncode)

        if self.skip_on_exit_code is not None and result.returncode == self.skip_on_exit_code:
            raise TaskSkipped(f"Command exited with code {result.returncode}, skipping")
        if result.returncode != 0:
            raise RuntimeError(
                f"Bash command failed. The command returned a non-zero exit code {result.returncode}."
            )
        return stdout_lines[-1] if stdout_lines else None
