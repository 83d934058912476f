"""OpenAI Responses API client for episode generation with error classification."""

from decimal import Decimal
from typing import Any, Optional

import httpx
import structlog

from manyfutures.core.config import Settings
from manyfutures.core.money import quantize_money
from manyfutures.services.exceptions import (
    ContentPolicyError,
    PermanentError,
    RateLimitError,
    TransientError,
)
from manyfutures.services.generation.contracts import GeneratedEpisode, GenerationContext
from manyfutures.services.generation.validation import validate_episode_content

logger = structlog.get_logger(__name__)

INSTRUCTIONS = (
    "You are Futura, a strategic foresight analyst. Write one weekly research episode "
    "in markdown for the project brief below. Start with a single '# ' title line, then "
    "cover emerging signals, what they could mean for the reader's organisation, and "
    "two or three questions to sit with. Do not invent sources."
)

_POLICY_MARKERS = ("content_policy", "content policy", "safety", "flagged")


def classify_response(response: httpx.Response) -> None:
    """Raise the categorized error for an unsuccessful response.

    Classification rules:
        - 429 (rate limit) -> RateLimitError
        - 500/502/503/504 -> TransientError
        - 400 mentioning content policy or safety -> ContentPolicyError
        - 401/403 -> PermanentError (authentication)
        - Other 4xx -> PermanentError
    """
    status = response.status_code
    if status < 400:
        return

    body = response.text
    if status == 429:
        raise RateLimitError(f"Rate limit exceeded: {body}")
    if status >= 500:
        raise TransientError(f"Service unavailable ({status}): {body}")
    if status in (401, 403):
        raise PermanentError(
            f"Authentication failed ({status}). Check OPENAI_API_KEY configuration."
        )
    if status == 400 and any(marker in body.lower() for marker in _POLICY_MARKERS):
        raise ContentPolicyError(f"Content policy violation: {body}")
    raise PermanentError(f"Request rejected ({status}): {body}")


def extract_output_text(payload: dict[str, Any]) -> str:
    """Concatenate the output_text parts of a Responses API payload."""
    if isinstance(payload.get("output_text"), str):
        return payload["output_text"]

    parts = []
    for item in payload.get("output") or []:
        if item.get("type") != "message":
            continue
        for content in item.get("content") or []:
            if content.get("type") == "output_text":
                parts.append(content.get("text", ""))
            elif content.get("type") == "refusal":
                raise ContentPolicyError(f"Model refused: {content.get('refusal', '')}")
    return "".join(parts)


class OpenAIResponsesGenerator:
    """ContentGenerator backed by the OpenAI Responses API."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        """Initialize the generator.

        Args:
            settings: Application settings (API key, model, prices, limits)
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.settings = settings
        self.transport = transport
        self.base_url = settings.openai_base_url.rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {settings.openai_api_key}",
            "Content-Type": "application/json",
        }

    def compute_cost(self, prompt_tokens: int, completion_tokens: int, currency: str) -> Decimal:
        """Price token usage with the configured per-1K-token rates."""
        cost = (
            Decimal(prompt_tokens) * self.settings.input_price_per_1k_tokens
            + Decimal(completion_tokens) * self.settings.output_price_per_1k_tokens
        ) / Decimal(1000)
        return quantize_money(cost, currency)

    def build_request(self, context: GenerationContext) -> dict[str, Any]:
        brief = context.brief.strip() or context.subscription_name
        lines = [
            f"Project: {context.subscription_name}",
            f"Delivery date: {context.target_delivery_time.date().isoformat()}",
            "",
            "Brief:",
            brief,
        ]
        if context.previous_titles:
            lines += ["", "Recent episodes (avoid repeating them):"]
            lines += [f"- {title}" for title in context.previous_titles]
        return {
            "model": self.settings.openai_model,
            "instructions": INSTRUCTIONS,
            "input": "\n".join(lines),
            "reasoning": {"effort": "low"},
        }

    async def generate(self, context: GenerationContext) -> GeneratedEpisode:
        """Generate one episode.

        Raises:
            TransientError: Network timeout, rate limit (429), service unavailable (5xx)
            PermanentError: Missing key, auth failure, bad request, content policy,
                or content that fails validation
        """
        if not self.settings.openai_api_key:
            raise PermanentError("OPENAI_API_KEY not configured")

        timeout = self.settings.generation_timeout_seconds
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/responses",
                    headers=self.headers,
                    json=self.build_request(context),
                )
        except httpx.TimeoutException as e:
            raise TransientError(f"Request timeout after {timeout}s: {str(e)}") from e
        except httpx.HTTPError as e:
            raise TransientError(f"Network error: {str(e)}") from e

        classify_response(response)

        try:
            payload = response.json()
        except ValueError as e:
            raise TransientError(f"Malformed response body: {response.text[:200]}") from e

        usage = payload.get("usage") or {}
        prompt_tokens = int(usage.get("input_tokens", 0))
        completion_tokens = int(usage.get("output_tokens", 0))

        title, content = validate_episode_content(
            extract_output_text(payload),
            min_chars=self.settings.min_episode_chars,
            max_chars=self.settings.max_episode_chars,
            fallback_title=f"{context.subscription_name}: "
            f"{context.target_delivery_time.date().isoformat()}",
        )

        model = payload.get("model") or self.settings.openai_model
        logger.info(
            "generation.succeeded",
            job_id=str(context.job_id),
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )
        return GeneratedEpisode(
            title=title,
            content=content,
            cost=self.compute_cost(prompt_tokens, completion_tokens, context.currency),
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )
