from __future__ import annotations

import importlib
import logging
import os
import re
import shlex
import subprocess
from pathlib import Path
from typing import Any, Dict, Optional

from hopkins.errors import HopkinsError
from hopkins.models import JobResult, PendingJob

module_logger = logging.getLogger(__name__)

ENV_KEY_RE = re.compile(r"[^A-Za-z0-9]+")


def build_job_env(job: PendingJob) -> Dict[str, str]:
    env: Dict[str, str] = {
        "HOPKINS_JOB_ID": job.id,
        "HOPKINS_TASK": job.task.name,
        "HOPKINS_QUEUE": job.task.queue or "",
        "HOPKINS_PRIORITY": str(job.priority),
    }
    for name, value in job.options.items():
        key = ENV_KEY_RE.sub("_", str(name)).strip("_").upper()
        if key and value is not None:
            env[f"HOPKINS_OPT_{key}"] = str(value)
    return env


def resolve_class(target: str) -> Any:
    if ":" in target:
        module_name, _, attr = target.partition(":")
    else:
        module_name, _, attr = target.rpartition(".")
    if not module_name or not attr:
        raise HopkinsError(f'class "{target}" must look like package.module:Name')
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise HopkinsError(f'unable to import "{module_name}" for class {target}: {exc}') from exc
    try:
        return getattr(module, attr)
    except AttributeError as exc:
        raise HopkinsError(f'module "{module_name}" has no attribute "{attr}"') from exc


class TaskWorker:
    """Runs a job's command line in a subprocess or calls its class's ``run``."""

    def __init__(
        self,
        working_dir: Optional[Path] = None,
        timeout: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.working_dir = working_dir
        self.timeout = timeout
        self.logger = logger or module_logger

    def __call__(self, job: PendingJob) -> JobResult:
        if job.task.cmd:
            return self.run_command(job)
        if job.task.class_name:
            return self.run_class(job)
        return JobResult(success=False, error=f"task {job.task.name} lacks a class or command line")

    def run_command(self, job: PendingJob) -> JobResult:
        command = shlex.split(job.task.cmd or "")
        env = os.environ.copy()
        env.update(build_job_env(job))
        self.logger.info("[%s] Running %s", job.id, " ".join(shlex.quote(arg) for arg in command))
        try:
            result = subprocess.run(
                command,
                cwd=str(self.working_dir) if self.working_dir else None,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
                env=env,
            )
        except subprocess.TimeoutExpired:
            return JobResult(success=False, error=f"Timed out after {self.timeout} seconds.")
        except OSError as exc:
            return JobResult(success=False, error=str(exc))

        if result.returncode == 0:
            return JobResult(success=True)
        stderr = (result.stderr or "").strip()
        if stderr:
            self.logger.error("[%s] stderr: %s", job.id, stderr)
        return JobResult(success=False, error=f"exit code {result.returncode}: {stderr[:1000]}")

    def run_class(self, job: PendingJob) -> JobResult:
        target = resolve_class(job.task.class_name or "")
        self.logger.info("[%s] Running %s", job.id, job.task.class_name)
        instance = target()
        return JobResult.coerce(instance.run(dict(job.options)))
