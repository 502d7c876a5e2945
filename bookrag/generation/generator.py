"""
Answer Generators
------------------
Two generator implementations with an identical generate() interface:

  OpenAIGenerator    -- OpenAI (gpt-4o-mini, gpt-4o)
  AnthropicGenerator -- Anthropic (claude-haiku-4-5, claude-sonnet-4-6)

Both take a PromptRequest and return the raw answer text.  Temperature is
kept low: this is factual question answering, not creative writing.

Failure handling (both providers):
  - timeouts, rate limits, connection errors, 5xx -> TransientProviderError,
    retried with bounded exponential backoff, then surfaced
  - refusals / content filtering -> ContentPolicyError, never retried
  - other 4xx -> InvalidInputError
"""
from __future__ import annotations

from typing import Any, Callable, Optional, Protocol, TypeVar

from langsmith import traceable
from loguru import logger
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from bookrag.config import GenerationConfig
from bookrag.errors import ContentPolicyError, InvalidInputError, TransientProviderError
from bookrag.generation.prompt_builder import PromptRequest

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Model pricing table  (input_$/M, output_$/M)
# ---------------------------------------------------------------------------

_MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o-mini":               (0.150,  0.600),
    "gpt-4o":                    (2.500, 10.000),
    "claude-haiku-4-5-20251001": (0.800,  4.000),
    "claude-sonnet-4-6":         (3.000, 15.000),
}


def _cost_usd(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Compute estimated cost in USD for a given model and token counts."""
    rates = _MODEL_PRICING.get(model, (0.150, 0.600))
    return (prompt_tokens * rates[0] + completion_tokens * rates[1]) / 1_000_000


class AnswerGenerator(Protocol):
    """Capability interface: grounded prompt in, answer text out."""

    model: str

    def generate(self, prompt: PromptRequest) -> str:
        ...


class _RetryingGenerator:
    def __init__(self, max_attempts: int, backoff_min_s: float, backoff_max_s: float) -> None:
        self.max_attempts = max_attempts
        self.backoff_min_s = backoff_min_s
        self.backoff_max_s = backoff_max_s

    def _with_retry(self, fn: Callable[[], T]) -> T:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=self.backoff_min_s, max=self.backoff_max_s),
            retry=retry_if_exception_type(TransientProviderError),
            before_sleep=lambda state: logger.warning(
                f"[{type(self).__name__}] attempt {state.attempt_number} failed: "
                f"{state.outcome.exception()}; retrying"
            ),
            reraise=True,
        )
        return retrying(fn)


# ---------------------------------------------------------------------------
# OpenAI Generator
# ---------------------------------------------------------------------------

class OpenAIGenerator(_RetryingGenerator):
    """Grounded answer synthesis using OpenAI chat models."""

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        max_tokens: int = 1024,
        temperature: float = 0.1,
        timeout_s: float = 60.0,
        max_attempts: int = 3,
        backoff_min_s: float = 2.0,
        backoff_max_s: float = 30.0,
        client: Optional[Any] = None,
    ) -> None:
        import openai  # lazy import keeps import graph clean

        super().__init__(max_attempts, backoff_min_s, backoff_max_s)
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._openai = openai
        self._client = client or openai.OpenAI(timeout=timeout_s, max_retries=0)

    @traceable(name="generate_openai", run_type="llm")
    def generate(self, prompt: PromptRequest) -> str:
        logger.debug(f"[OpenAIGenerator] {self.model} | {prompt.evidence_count} evidence blocks")
        return self._with_retry(lambda: self._call(prompt))

    def _call(self, prompt: PromptRequest) -> str:
        openai = self._openai
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": prompt.system},
                    {"role": "user", "content": prompt.user},
                ],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except (
            openai.APITimeoutError,
            openai.APIConnectionError,
            openai.RateLimitError,
            openai.InternalServerError,
        ) as exc:
            raise TransientProviderError(f"{type(exc).__name__}: {exc}") from exc
        except openai.BadRequestError as exc:
            if getattr(exc, "code", None) == "content_policy_violation" or "content_filter" in str(exc):
                raise ContentPolicyError(str(exc)) from exc
            raise InvalidInputError(str(exc)) from exc
        except openai.APIStatusError as exc:
            # 401, 403, 404, 409, 422 and the like: retrying cannot help
            raise InvalidInputError(f"{type(exc).__name__}: {exc}") from exc
        except openai.APIError as exc:
            # Malformed response body
            raise TransientProviderError(f"{type(exc).__name__}: {exc}") from exc

        choice = response.choices[0]
        if choice.finish_reason == "content_filter" or getattr(choice.message, "refusal", None):
            raise ContentPolicyError(f"{self.model} refused the request")

        usage = response.usage
        if usage is not None:
            logger.info(
                f"[OpenAIGenerator] Done | prompt={usage.prompt_tokens} "
                f"completion={usage.completion_tokens} | "
                f"cost=${_cost_usd(self.model, usage.prompt_tokens, usage.completion_tokens):.5f}"
            )
        return choice.message.content or ""


# ---------------------------------------------------------------------------
# Anthropic Generator
# ---------------------------------------------------------------------------

class AnthropicGenerator(_RetryingGenerator):
    """
    Grounded answer synthesis using Anthropic Claude models.

    The Anthropic SDK passes the system prompt as a separate `system`
    parameter (not inside the messages list) -- handled here transparently.
    """

    def __init__(
        self,
        model: str = "claude-haiku-4-5-20251001",
        max_tokens: int = 1024,
        temperature: float = 0.1,
        timeout_s: float = 60.0,
        max_attempts: int = 3,
        backoff_min_s: float = 2.0,
        backoff_max_s: float = 30.0,
        client: Optional[Any] = None,
    ) -> None:
        import anthropic  # lazy import

        super().__init__(max_attempts, backoff_min_s, backoff_max_s)
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._anthropic = anthropic
        self._client = client or anthropic.Anthropic(timeout=timeout_s, max_retries=0)

    @traceable(name="generate_anthropic", run_type="llm")
    def generate(self, prompt: PromptRequest) -> str:
        logger.debug(f"[AnthropicGenerator] {self.model} | {prompt.evidence_count} evidence blocks")
        return self._with_retry(lambda: self._call(prompt))

    def _call(self, prompt: PromptRequest) -> str:
        anthropic = self._anthropic
        try:
            response = self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=prompt.system,
                messages=[{"role": "user", "content": prompt.user}],
            )
        except (anthropic.APIConnectionError, anthropic.RateLimitError) as exc:
            # APITimeoutError is a subclass of APIConnectionError
            raise TransientProviderError(f"{type(exc).__name__}: {exc}") from exc
        except anthropic.APIStatusError as exc:
            if exc.status_code >= 500:
                raise TransientProviderError(f"{type(exc).__name__}: {exc}") from exc
            raise InvalidInputError(str(exc)) from exc
        except anthropic.APIError as exc:
            raise TransientProviderError(f"{type(exc).__name__}: {exc}") from exc

        if response.stop_reason == "refusal":
            raise ContentPolicyError(f"{self.model} refused the request")

        answer = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        logger.info(
            f"[AnthropicGenerator] Done | input={response.usage.input_tokens} "
            f"output={response.usage.output_tokens} | "
            f"cost=${_cost_usd(self.model, response.usage.input_tokens, response.usage.output_tokens):.5f}"
        )
        return answer


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def make_generator(config: GenerationConfig) -> AnswerGenerator:
    """Instantiate the generator class for the configured provider."""
    cls = AnthropicGenerator if config.provider == "anthropic" else OpenAIGenerator
    return cls(
        model=config.model,
        max_tokens=config.max_tokens,
        temperature=config.temperature,
        timeout_s=config.timeout_s,
        max_attempts=config.max_attempts,
    )
