"""Decision engine backed by the OpenAI chat completions API."""

from __future__ import annotations

import logging

from openai import OpenAI

from collaborators.interfaces import DecisionEngine
from config.settings import DecisionEngineConfig
from decision.prompts import load_system_prompt
from errors import ConfigurationError

logger = logging.getLogger(__name__)


class OpenAIDecisionEngine(DecisionEngine):
    def __init__(self, *, client: OpenAI, model: str, system_prompt: str, temperature: float = 0.7, max_tokens: int = 500):
        self._client = client
        self._model = model
        self._system_prompt = system_prompt
        self._temperature = temperature
        self._max_tokens = max_tokens

    @classmethod
    def from_config(cls, config: DecisionEngineConfig, *, timeout_seconds: float) -> "OpenAIDecisionEngine":
        api_key = config.api_key()
        if not api_key:
            raise ConfigurationError(f"Decision engine API key is not set (env {config.api_key_env})")
        # Retries are a scheduling policy (a new job), not a transport concern.
        client = OpenAI(api_key=api_key, timeout=timeout_seconds, max_retries=0)
        return cls(
            client=client,
            model=config.model,
            system_prompt=load_system_prompt(config.system_prompt_path),
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )

    def complete(self, prompt: str) -> str:
        completion = self._client.chat.completions.create(
            model=self._model,
            messages=[
                {"role": "system", "content": self._system_prompt},
                {"role": "user", "content": prompt},
            ],
            temperature=self._temperature,
            max_tokens=self._max_tokens,
        )
        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            logger.warning("decision_engine_empty_output", extra={"event": "decision_engine_empty_output"})
            return ""
        return content
