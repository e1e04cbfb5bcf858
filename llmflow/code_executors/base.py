"""
Code executor contract.

`execute_code` never raises for program-level failures: a crashing snippet is
a successful execution whose output carries stderr and a non-zero exit code.
Only sandbox failures (unreachable, timed out) raise CodeExecutionInfraError.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, ClassVar, List, Optional, Sequence, Tuple

from llmflow.errors import ConfigurationError

if TYPE_CHECKING:
    from llmflow.context import InvocationContext

DEFAULT_CODE_BLOCK_DELIMITERS: List[Tuple[str, str]] = [
    ("```tool_code\n", "\n```"),
    ("```python\n", "\n```"),
]
DEFAULT_RESULT_DELIMITERS: Tuple[str, str] = ("```tool_output\n", "\n```")
DEFAULT_PRELOADED_MODULES: Tuple[str, ...] = ("math", "json", "re", "datetime", "random", "statistics")


@dataclass
class File:
    name: str
    content: bytes
    mime_type: str = "text/plain"


@dataclass
class CodeExecutionInput:
    code: str
    input_files: List[File] = field(default_factory=list)
    execution_id: Optional[str] = None


@dataclass
class CodeExecutionOutput:
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    output_files: List[File] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.exit_code != 0


class BaseCodeExecutor(ABC):
    supports_stateful: ClassVar[bool] = False

    def __init__(
        self,
        *,
        stateful: bool = False,
        error_retry_attempts: int = 2,
        code_block_delimiters: Optional[Sequence[Tuple[str, str]]] = None,
        execution_result_delimiters: Optional[Tuple[str, str]] = None,
        preloaded_modules: Sequence[str] = DEFAULT_PRELOADED_MODULES,
    ) -> None:
        if stateful and not self.supports_stateful:
            raise ConfigurationError(f"{type(self).__name__} does not support stateful execution")
        if error_retry_attempts < 0:
            raise ConfigurationError("error_retry_attempts must be >= 0")
        self.stateful = stateful
        self.error_retry_attempts = error_retry_attempts
        self.code_block_delimiters = list(code_block_delimiters or DEFAULT_CODE_BLOCK_DELIMITERS)
        self.execution_result_delimiters = execution_result_delimiters or DEFAULT_RESULT_DELIMITERS
        self.preloaded_modules = tuple(preloaded_modules)

    def prelude(self) -> str:
        if not self.preloaded_modules:
            return ""
        return "import " + ", ".join(self.preloaded_modules) + "\n"

    @abstractmethod
    async def execute_code(
        self,
        invocation_context: "InvocationContext",
        code_input: CodeExecutionInput,
    ) -> CodeExecutionOutput:
        ...
