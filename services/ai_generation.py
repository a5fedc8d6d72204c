"""
AI generation collaborator.

Wraps the LLM provider SDKs behind one call:
    result = AIGenerationService().generate(action, payload, profile)
    result.content, result.provider_used, result.tokens_or_cost_hint

Providers are tried in AI_PROVIDER_ORDER; only providers with an API key
configured take part. Every call carries a bounded timeout. Failure of the
whole chain raises ProviderError (or GenerationTimeout when every attempt
timed out) so the caller can skip the credit deduction.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import anthropic
import httpx
import openai
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from core.config import settings
from core.exceptions import GenerationTimeout, ProviderError

logger = logging.getLogger(__name__)


# USD per 1K tokens (input, output). Matched by longest model-name prefix.
AI_PRICING_TABLE: Dict[str, Tuple[float, float]] = {
    "claude-3-haiku": (0.00025, 0.00125),
    "claude-3-5-haiku": (0.0008, 0.004),
    "claude-3-sonnet": (0.003, 0.015),
    "claude-3-5-sonnet": (0.003, 0.015),
    "claude-3-opus": (0.015, 0.075),
    "gpt-3.5-turbo": (0.0005, 0.0015),
    "gpt-4": (0.03, 0.06),
    "gpt-4-turbo": (0.01, 0.03),
    "gpt-4o": (0.005, 0.015),
    "gpt-4o-mini": (0.00015, 0.0006),
    "gemini-pro": (0.0005, 0.0015),
    "gemini-1.5-pro": (0.0035, 0.0105),
    "gemini-1.5-flash": (0.000075, 0.0003),
}


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> Optional[float]:
    """Estimated USD cost of a call, or None for an unpriced model."""
    matches = [prefix for prefix in AI_PRICING_TABLE if model.startswith(prefix)]
    if not matches:
        return None
    input_rate, output_rate = AI_PRICING_TABLE[max(matches, key=len)]
    return round(input_tokens / 1000 * input_rate + output_tokens / 1000 * output_rate, 6)


@dataclass
class GenerationResult:
    content: str
    provider_used: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def tokens_or_cost_hint(self) -> Dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "estimated_cost_usd": estimate_cost(self.model, self.input_tokens, self.output_tokens),
        }


SYSTEM_PROMPT = (
    "You are an expert strength and conditioning coach. "
    "Respond with a single JSON object and nothing else."
)


def build_prompt(action: str, payload: Dict[str, Any], profile: Optional[Dict[str, Any]]) -> str:
    return json.dumps(
        {"task": action, "request": payload or {}, "athlete_profile": profile or {}},
        default=str,
    )


# ============================================================================
# PROVIDERS
# ============================================================================

class AIProvider:
    name = "base"

    def __init__(self, api_key: str, model: str, timeout_s: float, max_tokens: int):
        self.model = model
        self.timeout_s = timeout_s
        self.max_tokens = max_tokens

    def complete(self, system: str, prompt: str) -> GenerationResult:
        raise NotImplementedError


class AnthropicProvider(AIProvider):
    name = "anthropic"

    def __init__(self, api_key: str, model: str, timeout_s: float, max_tokens: int):
        super().__init__(api_key, model, timeout_s, max_tokens)
        self.client = anthropic.Anthropic(api_key=api_key, timeout=timeout_s, max_retries=0)

    def complete(self, system: str, prompt: str) -> GenerationResult:
        try:
            response = self.client.messages.create(
                model=self.model,
                system=system,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=self.max_tokens,
            )
        except anthropic.APITimeoutError as e:
            raise GenerationTimeout(f"anthropic timed out: {e}", provider=self.name) from e
        except anthropic.APIError as e:
            raise ProviderError(f"anthropic failed: {e}", provider=self.name) from e

        text = "".join(getattr(block, "text", "") for block in response.content)
        return GenerationResult(
            content=text,
            provider_used=self.name,
            model=self.model,
            input_tokens=response.usage.input_tokens if hasattr(response, "usage") else 0,
            output_tokens=response.usage.output_tokens if hasattr(response, "usage") else 0,
        )


class OpenAIProvider(AIProvider):
    name = "openai"

    def __init__(self, api_key: str, model: str, timeout_s: float, max_tokens: int):
        super().__init__(api_key, model, timeout_s, max_tokens)
        self.client = openai.OpenAI(api_key=api_key, timeout=timeout_s, max_retries=0)

    def complete(self, system: str, prompt: str) -> GenerationResult:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=self.max_tokens,
                response_format={"type": "json_object"},
            )
        except openai.APITimeoutError as e:
            raise GenerationTimeout(f"openai timed out: {e}", provider=self.name) from e
        except openai.OpenAIError as e:
            raise ProviderError(f"openai failed: {e}", provider=self.name) from e

        usage = getattr(response, "usage", None)
        return GenerationResult(
            content=response.choices[0].message.content or "",
            provider_used=self.name,
            model=self.model,
            input_tokens=getattr(usage, "prompt_tokens", 0) if usage else 0,
            output_tokens=getattr(usage, "completion_tokens", 0) if usage else 0,
        )


class GeminiProvider(AIProvider):
    name = "gemini"

    def __init__(self, api_key: str, model: str, timeout_s: float, max_tokens: int):
        super().__init__(api_key, model, timeout_s, max_tokens)
        # google-genai takes the timeout in milliseconds.
        self.client = genai.Client(
            api_key=api_key,
            http_options=genai_types.HttpOptions(timeout=int(timeout_s * 1000)),
        )

    def complete(self, system: str, prompt: str) -> GenerationResult:
        config = genai_types.GenerateContentConfig(
            system_instruction=system,
            max_output_tokens=self.max_tokens,
            response_mime_type="application/json",
        )
        try:
            response = self.client.models.generate_content(
                model=self.model,
                contents=prompt,
                config=config,
            )
        except httpx.TimeoutException as e:
            raise GenerationTimeout(f"gemini timed out: {e}", provider=self.name) from e
        except (genai_errors.APIError, httpx.HTTPError) as e:
            raise ProviderError(f"gemini failed: {e}", provider=self.name) from e

        usage = getattr(response, "usage_metadata", None)
        return GenerationResult(
            content=response.text or "",
            provider_used=self.name,
            model=self.model,
            input_tokens=(getattr(usage, "prompt_token_count", 0) or 0) if usage else 0,
            output_tokens=(getattr(usage, "candidates_token_count", 0) or 0) if usage else 0,
        )


_PROVIDER_SETTINGS = {
    "anthropic": (AnthropicProvider, "ANTHROPIC_API_KEY", "ANTHROPIC_MODEL"),
    "openai": (OpenAIProvider, "OPENAI_API_KEY", "OPENAI_MODEL"),
    "gemini": (GeminiProvider, "GOOGLE_AI_API_KEY", "GEMINI_MODEL"),
}


def build_providers() -> List[AIProvider]:
    providers: List[AIProvider] = []
    for name in settings.ai_provider_order:
        entry = _PROVIDER_SETTINGS.get(name)
        if entry is None:
            logger.warning(f"Ignoring unknown AI provider in AI_PROVIDER_ORDER: {name}")
            continue
        cls, key_attr, model_attr = entry
        api_key = getattr(settings, key_attr)
        if not api_key:
            continue
        providers.append(cls(
            api_key=api_key,
            model=getattr(settings, model_attr),
            timeout_s=settings.AI_REQUEST_TIMEOUT_S,
            max_tokens=settings.AI_MAX_OUTPUT_TOKENS,
        ))
    return providers


class AIGenerationService:
    """Provider chain with fallback."""

    def __init__(self, providers: Optional[List[AIProvider]] = None):
        self.providers = build_providers() if providers is None else providers

    def generate(
        self,
        action: str,
        payload: Dict[str, Any],
        profile: Optional[Dict[str, Any]] = None,
    ) -> GenerationResult:
        if not self.providers:
            raise ProviderError("No AI provider configured")

        prompt = build_prompt(action, payload, profile)
        failures: List[ProviderError] = []
        for provider in self.providers:
            try:
                result = provider.complete(SYSTEM_PROMPT, prompt)
                if failures:
                    logger.info(f"{action} served by fallback provider {provider.name}")
                return result
            except ProviderError as e:
                logger.warning(f"AI provider {provider.name} failed for {action}: {e}")
                failures.append(e)

        last = failures[-1]
        if all(isinstance(f, GenerationTimeout) for f in failures):
            raise GenerationTimeout(f"All AI providers timed out for {action}", provider=last.provider)
        raise ProviderError(
            f"All AI providers failed for {action}: " + "; ".join(str(f) for f in failures),
            provider=last.provider,
        )
