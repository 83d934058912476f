"""Content generator contract.

The worker depends only on this protocol; the OpenAI client is one implementation
and tests plug in scripted fakes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Protocol
from uuid import UUID


@dataclass(frozen=True)
class GenerationContext:
    """Everything the generator needs to write one episode."""

    job_id: UUID
    subscription_id: UUID
    subscription_name: str
    brief: str
    target_delivery_time: datetime
    attempt_number: int
    currency: str = "GBP"
    previous_titles: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class GeneratedEpisode:
    """A generated episode plus the usage that produced it."""

    title: str
    content: str
    cost: Decimal
    model: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0


class ContentGenerator(Protocol):
    """Produces episode content for a subscription.

    Implementations raise TransientError / PermanentError subclasses from
    ``manyfutures.services.exceptions``; anything else is treated as unexpected.
    """

    async def generate(self, context: GenerationContext) -> GeneratedEpisode: ...
