"""
Code execution around the model call.

Response side: when the agent has a code executor and the reply holds a
delimited code block, the reply is rewritten to (leading text + executable
code) and emitted, the code is run, and its result is emitted as a separate
event. The step then ends without a final answer, so the loop calls the model
again with the result in history.

Failed runs (program errors and sandbox failures alike) count against the
executor's `error_retry_attempts` for the current turn; past that the turn
ends with a CODE_EXECUTION_FAILED event.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, Dict, Any

from llmflow.code_executors.base import CodeExecutionInput, CodeExecutionOutput
from llmflow.code_executors.utils import build_result_part, extract_code_block
from llmflow.context import CallbackContext, InvocationContext
from llmflow.errors import CodeExecutionInfraError
from llmflow.flows.base_flow import BaseLlmRequestProcessor, BaseLlmResponseProcessor
from llmflow.llm.base import LlmRequest, LlmResponse
from llmflow.models import Blob, Content, Event, EventActions, Part

logger = logging.getLogger("llmflow")

CODE_EXECUTION_STATE_KEY = "_code_execution_context"
CODE_EXECUTION_FAILED = "CODE_EXECUTION_FAILED"


class CodeExecutionRequestProcessor(BaseLlmRequestProcessor):
    async def run_async(self, ctx: InvocationContext, llm_request: LlmRequest) -> AsyncIterator[Event]:
        executor = ctx.agent.code_executor
        if executor is None:
            return
        start, end = executor.code_block_delimiters[0]
        result_start, result_end = executor.execution_result_delimiters
        modules = ", ".join(executor.preloaded_modules) or "none"
        llm_request.append_instructions(
            [
                "You can run Python code. Write it between "
                f"{start.strip()!r} and {end.strip()!r}; it is executed and the output comes back between "
                f"{result_start.strip()!r} and {result_end.strip()!r}. "
                f"Modules already imported: {modules}. Print anything you need to see."
            ]
        )
        return
        yield


class CodeExecutionResponseProcessor(BaseLlmResponseProcessor):
    async def run_async(self, ctx: InvocationContext, llm_response: LlmResponse) -> AsyncIterator[Event]:
        executor = ctx.agent.code_executor
        if executor is None or llm_response.partial or llm_response.content is None:
            return
        code_content, code = extract_code_block(llm_response.content, executor.code_block_delimiters)
        if code is None:
            return
        llm_response.content = None
        agent = ctx.agent

        exec_state: Dict[str, Any] = dict(ctx.session.state.get(CODE_EXECUTION_STATE_KEY) or {})
        if exec_state.get("invocation_id") != ctx.invocation_id:
            exec_state["invocation_id"] = ctx.invocation_id
            exec_state["error_count"] = 0
        if executor.stateful and not exec_state.get("execution_id"):
            exec_state["execution_id"] = ctx.session.id

        yield Event(invocation_id=ctx.invocation_id, author=agent.name, content=code_content)

        try:
            output = await executor.execute_code(
                ctx,
                CodeExecutionInput(code=code, execution_id=exec_state.get("execution_id")),
            )
        except CodeExecutionInfraError as exc:
            logger.warning("code executor unavailable agent=%s: %s", agent.name, exc.message)
            output = CodeExecutionOutput(stderr=f"{exc.code}: {exc.message}", exit_code=-1)

        actions = EventActions()
        callback_context = CallbackContext(ctx, event_actions=actions)
        saved = []
        if output.output_files:
            if ctx.artifact_store is None:
                logger.warning("dropping %d code output files: no artifact store", len(output.output_files))
            else:
                for f in output.output_files:
                    await callback_context.save_artifact(f.name, Blob(data=f.content, mime_type=f.mime_type))
                    saved.append(f.name)

        if output.failed:
            exec_state["error_count"] = int(exec_state.get("error_count", 0)) + 1
            logger.warning(
                "code execution failed agent=%s attempt=%d exit_code=%s",
                agent.name,
                exec_state["error_count"],
                output.exit_code,
            )
        else:
            exec_state["error_count"] = 0
        actions.state_delta[CODE_EXECUTION_STATE_KEY] = exec_state

        yield Event(
            invocation_id=ctx.invocation_id,
            author=agent.name,
            content=Content(role="user", parts=[build_result_part(output, saved)]),
            actions=actions,
        )

        if output.failed and exec_state["error_count"] > executor.error_retry_attempts:
            last_error = output.stderr.strip().splitlines()[-1:] or ["unknown error"]
            message = f"Code execution failed {exec_state['error_count']} times in a row: {last_error[0]}"
            yield Event(
                invocation_id=ctx.invocation_id,
                author=agent.name,
                content=Content(role="model", parts=[Part.from_text(f"Sorry, I could not complete this. {message}")]),
                error_code=CODE_EXECUTION_FAILED,
                error_message=message,
            )
