"""
OpenRouter chat completions through the OpenAI SDK.

OpenRouter speaks the OpenAI wire protocol, so AsyncOpenAI is pointed at its
base URL. Calls go through the service gateway; SDK errors are translated
into ProviderError so the pipeline can classify them by HTTP status.
"""
from typing import Dict, List, Optional

import openai
from openai import AsyncOpenAI

from thinkspace.config import get_settings
from thinkspace.pipeline.errors import ErrorKind, PipelineError, ProviderError
from thinkspace.pipeline.interfaces import ChatMessage, ProviderResponse
from thinkspace.services.gateway import ServiceGateway, get_gateway
from thinkspace.utils.logger import get_logger

logger = get_logger(__name__)

# USD per 1M tokens
MODEL_PRICING: Dict[str, Dict[str, float]] = {
    "openai/gpt-5-mini": {"prompt": 0.25, "completion": 2.0},
    "openai/gpt-3.5-turbo": {"prompt": 0.5, "completion": 2.0},
    "openai/gpt-4": {"prompt": 30.0, "completion": 60.0},
}


def calculate_cost(prompt_tokens: int, completion_tokens: int, model: str) -> float:
    """Cost of one call. Unknown models cost 0."""
    pricing = MODEL_PRICING.get(model)
    if not pricing:
        logger.warning("openrouter.no_pricing", extra={"model": model})
        return 0.0
    prompt_cost = (prompt_tokens / 1_000_000) * pricing["prompt"]
    completion_cost = (completion_tokens / 1_000_000) * pricing["completion"]
    return prompt_cost + completion_cost


class OpenRouterClient:
    """ProviderGateway backed by OpenRouter."""

    def __init__(self, gateway: Optional[ServiceGateway] = None):
        self.settings = get_settings()
        self.gateway = gateway or get_gateway()
        self._client: Optional[AsyncOpenAI] = None

    def _client_for(self, credential: str) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=credential,
                base_url=self.settings.openrouter_base_url,
                max_retries=0,  # the job queue owns retries
                timeout=self.settings.provider_timeout_seconds,
                default_headers={
                    "HTTP-Referer": self.settings.app_url,
                    "X-Title": self.settings.app_name,
                },
            )
        if self._client.api_key == credential:
            return self._client
        return self._client.with_options(api_key=credential)

    async def send(self, messages: List[ChatMessage], model: str, credential: str) -> ProviderResponse:
        client = self._client_for(credential)
        logger.info("openrouter.request", extra={"model": model})
        try:
            response = await self.gateway.execute(
                "openrouter",
                client.chat.completions.create,
                model=model,
                messages=[m.to_dict() for m in messages],
                temperature=self.settings.provider_temperature,
                stream=False,
            )
        except openai.APITimeoutError as exc:
            raise PipelineError(f"OpenRouter request timed out: {exc}", kind=ErrorKind.TIMEOUT) from exc
        except openai.APIStatusError as exc:
            raise ProviderError(f"OpenRouter API error: {exc.message}", status_code=exc.status_code) from exc
        except openai.APIConnectionError as exc:
            raise PipelineError(f"OpenRouter unreachable: {exc}", kind=ErrorKind.SERVER_ERROR) from exc

        return self.parse_response(response, model)

    @staticmethod
    def parse_response(response, model: str) -> ProviderResponse:
        if not response.choices:
            raise ProviderError("OpenRouter returned no choices", status_code=502)
        content = response.choices[0].message.content or ""
        usage = response.usage
        prompt_tokens = usage.prompt_tokens if usage else 0
        completion_tokens = usage.completion_tokens if usage else 0
        total_tokens = usage.total_tokens if usage else prompt_tokens + completion_tokens
        cost = calculate_cost(prompt_tokens, completion_tokens, model)

        logger.info(
            "openrouter.response",
            extra={"model": response.model or model, "tokens": total_tokens, "cost": round(cost, 6)},
        )
        return ProviderResponse(
            content=content,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
            cost=cost,
            model=response.model or model,
        )
