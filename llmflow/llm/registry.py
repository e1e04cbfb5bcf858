"""
Model identifier -> adapter resolution.

The default table is built once and frozen; request handling only reads it.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Any, List, Pattern, Tuple, Type

from llmflow.errors import ConfigurationError
from llmflow.llm.base import BaseLlm

logger = logging.getLogger("llmflow")


class LlmRegistry:
    def __init__(self) -> None:
        self._entries: List[Tuple[Pattern[str], Type[BaseLlm]]] = []
        self._frozen = False

    def register(self, llm_cls: Type[BaseLlm]) -> None:
        if self._frozen:
            raise ConfigurationError(f"Cannot register {llm_cls.__name__}: registry is frozen")
        for pattern in llm_cls.supported_models():
            self._entries.append((re.compile(pattern), llm_cls))

    def freeze(self) -> "LlmRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def patterns(self) -> List[str]:
        return [pattern.pattern for pattern, _ in self._entries]

    def resolve(self, model: str) -> Type[BaseLlm]:
        for pattern, llm_cls in self._entries:
            if pattern.fullmatch(model):
                return llm_cls
        raise ConfigurationError(f"Model {model!r} is not registered", details={"model": model})

    def new_llm(self, model: str, **kwargs: Any) -> BaseLlm:
        llm_cls = self.resolve(model)
        logger.debug("resolved model=%s adapter=%s", model, llm_cls.__name__)
        return llm_cls(model, **kwargs)


@lru_cache(maxsize=1)
def get_registry() -> LlmRegistry:
    from llmflow.llm.openai_llm import OpenAILlm, OpenRouterLlm
    from llmflow.llm.stub_llm import StubLlm

    registry = LlmRegistry()
    registry.register(StubLlm)
    registry.register(OpenRouterLlm)
    registry.register(OpenAILlm)
    return registry.freeze()
