from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from llmflow.agents import LlmAgent
from llmflow.errors import ResourceExhaustedError
from llmflow.evaluation.eval_case import EvalCase, EvalCriteria
from llmflow.evaluation.harness import TurnTrace, run_eval_case

logger = logging.getLogger("llmflow")

_TOKEN = re.compile(r"[a-z0-9]+")


def rouge1_f(candidate: str, reference: str) -> float:
    """ROUGE-1 F-measure over lower-cased alphanumeric tokens."""
    cand = Counter(_TOKEN.findall(candidate.lower()))
    ref = Counter(_TOKEN.findall(reference.lower()))
    if not cand and not ref:
        return 1.0
    if not cand or not ref:
        return 0.0
    overlap = sum((cand & ref).values())
    if overlap == 0:
        return 0.0
    precision = overlap / sum(cand.values())
    recall = overlap / sum(ref.values())
    return 2 * precision * recall / (precision + recall)


def tool_trajectory_avg_score(traces: Sequence[TurnTrace]) -> float:
    if not traces:
        return 1.0
    return sum(1.0 if t.actual_tool_use == t.expected_tool_use else 0.0 for t in traces) / len(traces)


def response_match_score(traces: Sequence[TurnTrace]) -> float:
    scored = [rouge1_f(t.response, t.reference) for t in traces if t.reference]
    if not scored:
        return 1.0
    return sum(scored) / len(scored)


@dataclass
class EvalResult:
    case_name: str
    scores: Dict[str, float]
    thresholds: Dict[str, float]
    traces: List[TurnTrace] = field(default_factory=list)
    error_code: Optional[str] = None
    error_message: str = ""

    @property
    def passed(self) -> bool:
        if self.error_code is not None:
            return False
        return all(self.scores[name] >= threshold for name, threshold in self.thresholds.items())


def score_case(case: EvalCase, traces: List[TurnTrace], criteria: EvalCriteria) -> EvalResult:
    return EvalResult(
        case_name=case.name,
        scores={
            "tool_trajectory_avg_score": tool_trajectory_avg_score(traces),
            "response_match_score": response_match_score(traces),
        },
        thresholds=criteria.model_dump(),
        traces=traces,
    )


async def evaluate(
    agent: LlmAgent,
    cases: Sequence[EvalCase],
    criteria: EvalCriteria,
    *,
    max_llm_calls: Optional[int] = None,
) -> List[EvalResult]:
    """Score every case; a case that exhausts the model-call ceiling fails on its own."""
    results = []
    for case in cases:
        try:
            traces = await run_eval_case(agent, case, max_llm_calls=max_llm_calls)
        except ResourceExhaustedError as exc:
            logger.warning("eval case hit the model-call ceiling case=%s: %s", case.name, exc.message)
            results.append(
                EvalResult(
                    case_name=case.name,
                    scores={name: 0.0 for name in criteria.model_dump()},
                    thresholds=criteria.model_dump(),
                    error_code=exc.code,
                    error_message=exc.message,
                )
            )
            continue
        results.append(score_case(case, traces, criteria))
    return results


def format_report(results: Sequence[EvalResult]) -> str:
    lines = []
    for result in results:
        status = "PASS" if result.passed else "FAIL"
        scores = ", ".join(
            f"{name}={value:.3f} (>= {result.thresholds[name]:.2f})" for name, value in sorted(result.scores.items())
        )
        lines.append(f"[{status}] {result.case_name}: {scores}")
        if result.error_code is not None:
            lines.append(f"    error {result.error_code}: {result.error_message}")
        if not result.passed:
            for i, trace in enumerate(result.traces):
                if trace.actual_tool_use != trace.expected_tool_use:
                    lines.append(f"    turn {i}: expected tools {trace.expected_tool_use}, got {trace.actual_tool_use}")
                if trace.reference:
                    lines.append(f"    turn {i}: response {trace.response!r} vs reference {trace.reference!r}")
    passed = sum(1 for r in results if r.passed)
    lines.append(f"{passed}/{len(results)} eval cases passed")
    return "\n".join(lines)
