from __future__ import annotations

import asyncio
import importlib
import io
import threading
import traceback
from contextlib import redirect_stderr, redirect_stdout
from typing import TYPE_CHECKING, Any, Dict, Optional

from llmflow.code_executors.base import BaseCodeExecutor, CodeExecutionInput, CodeExecutionOutput
from llmflow.config import get_settings
from llmflow.errors import ConfigurationError

if TYPE_CHECKING:
    from llmflow.context import InvocationContext

# redirect_stdout swaps the process-wide sys.stdout, so runs must not overlap.
_EXEC_LOCK = threading.Lock()


class UnsafeLocalCodeExecutor(BaseCodeExecutor):
    """
    Runs model-authored code with exec() inside this process.

    No isolation at all: the code has full host access. Construction fails
    unless `allow_unsafe=True` is passed or ALLOW_UNSAFE_CODE_EXECUTION is set.
    """

    def __init__(self, *, allow_unsafe: Optional[bool] = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        allowed = allow_unsafe if allow_unsafe is not None else get_settings().allow_unsafe_code_execution
        if not allowed:
            raise ConfigurationError(
                "UnsafeLocalCodeExecutor requires explicit opt-in "
                "(allow_unsafe=True or ALLOW_UNSAFE_CODE_EXECUTION=1)"
            )

    def _run(self, code: str) -> CodeExecutionOutput:
        namespace: Dict[str, Any] = {"__name__": "__main__"}
        for module_name in self.preloaded_modules:
            namespace[module_name] = importlib.import_module(module_name)

        stdout = io.StringIO()
        stderr = io.StringIO()
        exit_code = 0
        with _EXEC_LOCK, redirect_stdout(stdout), redirect_stderr(stderr):
            try:
                exec(code, namespace)
            except SystemExit as exc:
                if isinstance(exc.code, int):
                    exit_code = exc.code
                elif exc.code is not None:
                    print(exc.code, file=stderr)
                    exit_code = 1
            except Exception:
                traceback.print_exc(file=stderr)
                exit_code = 1
        return CodeExecutionOutput(stdout=stdout.getvalue(), stderr=stderr.getvalue(), exit_code=exit_code)

    async def execute_code(
        self,
        invocation_context: "InvocationContext",
        code_input: CodeExecutionInput,
    ) -> CodeExecutionOutput:
        return await asyncio.to_thread(self._run, code_input.code)
