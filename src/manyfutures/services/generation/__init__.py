"""Episode content generation."""

from manyfutures.services.generation.contracts import (
    ContentGenerator,
    GeneratedEpisode,
    GenerationContext,
)
from manyfutures.services.generation.openai_client import OpenAIResponsesGenerator
from manyfutures.services.generation.validation import extract_title, validate_episode_content

__all__ = [
    "ContentGenerator",
    "GeneratedEpisode",
    "GenerationContext",
    "OpenAIResponsesGenerator",
    "extract_title",
    "validate_episode_content",
]
