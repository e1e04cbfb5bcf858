from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
import sys
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, List, Optional

from llmflow.code_executors.base import BaseCodeExecutor, CodeExecutionInput, CodeExecutionOutput, File
from llmflow.config import get_settings
from llmflow.errors import CodeExecutionInfraError

if TYPE_CHECKING:
    from llmflow.context import InvocationContext

logger = logging.getLogger("llmflow")


def _limit_resources(memory_limit_mb: int, cpu_time_limit: int) -> Callable[[], None]:
    def apply() -> None:
        import resource

        if memory_limit_mb > 0:
            limit = memory_limit_mb * 1024 * 1024
            resource.setrlimit(resource.RLIMIT_AS, (limit, limit))
        if cpu_time_limit > 0:
            resource.setrlimit(resource.RLIMIT_CPU, (cpu_time_limit, cpu_time_limit))

    return apply


class SubprocessCodeExecutor(BaseCodeExecutor):
    """
    Runs each snippet in a fresh isolated interpreter (`python -I`) inside a
    throwaway working directory, with CPU/memory limits on POSIX.

    Nothing survives between calls. Files left in the working directory are
    returned as output files.
    """

    def __init__(
        self,
        *,
        timeout: Optional[float] = None,
        memory_limit_mb: int = 512,
        cpu_time_limit: int = 30,
        python_executable: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.timeout = timeout if timeout is not None else get_settings().code_execution_timeout
        self.memory_limit_mb = memory_limit_mb
        self.cpu_time_limit = cpu_time_limit
        self.python_executable = python_executable or sys.executable

    async def execute_code(
        self,
        invocation_context: "InvocationContext",
        code_input: CodeExecutionInput,
    ) -> CodeExecutionOutput:
        with tempfile.TemporaryDirectory(prefix="llmflow_exec_") as workdir:
            root = Path(workdir)
            input_names = set()
            for f in code_input.input_files:
                (root / f.name).write_bytes(f.content)
                input_names.add(f.name)

            env = {"PATH": os.environ.get("PATH", ""), "PYTHONIOENCODING": "utf-8"}
            kwargs: dict = {}
            if os.name == "posix":
                kwargs["preexec_fn"] = _limit_resources(self.memory_limit_mb, self.cpu_time_limit)

            try:
                proc = await asyncio.create_subprocess_exec(
                    self.python_executable,
                    "-I",
                    "-c",
                    self.prelude() + code_input.code,
                    cwd=workdir,
                    env=env,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    **kwargs,
                )
            except OSError as exc:
                raise CodeExecutionInfraError(f"Could not start sandbox interpreter: {exc}") from exc

            try:
                out, err = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
            except asyncio.TimeoutError as exc:
                proc.kill()
                await proc.wait()
                raise CodeExecutionInfraError(f"Code execution timed out after {self.timeout}s") from exc

            output_files: List[File] = []
            for path in sorted(root.iterdir()):
                if path.is_file() and path.name not in input_names:
                    mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
                    output_files.append(File(name=path.name, content=path.read_bytes(), mime_type=mime_type))

        logger.info("subprocess execution finished exit_code=%s files=%d", proc.returncode, len(output_files))
        return CodeExecutionOutput(
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
            exit_code=proc.returncode or 0,
            output_files=output_files,
        )
