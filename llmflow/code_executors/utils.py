"""Helpers for moving code and results between model text and structured parts."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from llmflow.code_executors.base import (
    DEFAULT_CODE_BLOCK_DELIMITERS,
    DEFAULT_RESULT_DELIMITERS,
    BaseCodeExecutor,
    CodeExecutionOutput,
)
from llmflow.errors import ConfigurationError
from llmflow.models import CodeExecutionResult, Content, ExecutableCode, Part


def extract_code_block(
    content: Content,
    delimiters: Sequence[Tuple[str, str]],
) -> Tuple[Content, Optional[str]]:
    """
    Find the first delimited code block in the content's text.

    Returns the rewritten content (leading text + an executable-code part,
    anything after the block dropped) and the code, or the content unchanged
    and None when there is no block.
    """
    text_parts = [p for p in content.parts if p.text is not None and not p.thought]
    if not text_parts or any(p.function_call is not None for p in content.parts):
        return content, None

    text = "".join(p.text or "" for p in text_parts)
    pattern = "|".join(
        f"(?:{re.escape(start)}(?P<code{i}>.*?){re.escape(end)})" for i, (start, end) in enumerate(delimiters)
    )
    match = re.search(pattern, text, re.DOTALL)
    if match is None:
        return content, None

    code = next(v for k, v in match.groupdict().items() if v is not None)
    parts: List[Part] = [p for p in content.parts if p.thought]
    prefix = text[: match.start()]
    if prefix.strip():
        parts.append(Part.from_text(prefix))
    parts.append(Part(executable_code=ExecutableCode(code=code)))
    return Content(role=content.role, parts=parts), code


def build_result_part(output: CodeExecutionOutput, saved_files: Sequence[str] = ()) -> Part:
    return Part(
        code_execution_result=CodeExecutionResult(
            outcome="FAILED" if output.failed else "OK",
            stdout=output.stdout,
            stderr=output.stderr,
            output_files=list(saved_files),
        )
    )


def format_result_text(result: CodeExecutionResult) -> str:
    if result.outcome == "FAILED":
        text = f"Code execution error:\n{result.stderr}"
    else:
        text = f"Code execution result:\n{result.stdout}"
        if result.stderr:
            text += f"\nstderr:\n{result.stderr}"
    if result.output_files:
        text += "\nSaved artifacts:\n" + ", ".join(f"`{name}`" for name in result.output_files)
    return text


def code_parts_to_text(
    content: Content,
    code_delimiter: Tuple[str, str] = DEFAULT_CODE_BLOCK_DELIMITERS[0],
    result_delimiter: Tuple[str, str] = DEFAULT_RESULT_DELIMITERS,
) -> Content:
    """Re-present code and result parts as delimited text the model can read back."""
    if not any(p.executable_code is not None or p.code_execution_result is not None for p in content.parts):
        return content
    start, end = code_delimiter
    result_start, result_end = result_delimiter
    parts: List[Part] = []
    for part in content.parts:
        if part.executable_code is not None:
            parts.append(Part.from_text(f"{start}{part.executable_code.code}{end}"))
        elif part.code_execution_result is not None:
            parts.append(Part.from_text(f"{result_start}{format_result_text(part.code_execution_result)}{result_end}"))
        else:
            parts.append(part)
    return Content(role=content.role, parts=parts)


def build_code_executor(config: Dict[str, Any]) -> BaseCodeExecutor:
    """Factory used by agent definition files: {type, stateful, error_retry_attempts, ...}."""
    options = dict(config)
    kind = str(options.pop("type", "subprocess"))
    if kind == "unsafe_local":
        from llmflow.code_executors.unsafe_local import UnsafeLocalCodeExecutor

        return UnsafeLocalCodeExecutor(**options)
    if kind == "subprocess":
        from llmflow.code_executors.subprocess_executor import SubprocessCodeExecutor

        return SubprocessCodeExecutor(**options)
    if kind == "remote":
        from llmflow.code_executors.remote import RemoteCodeExecutor

        return RemoteCodeExecutor(**options)
    raise ConfigurationError(f"Unknown code executor type: {kind}")
