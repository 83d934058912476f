"""Episode content contract checks."""

import re

from manyfutures.services.exceptions import ContentValidationError

HEADING_PATTERN = re.compile(r"^#\s+(.+?)\s*#*\s*$", re.MULTILINE)
MAX_TITLE_LENGTH = 500


def extract_title(content: str, fallback: str) -> str:
    """Title from the first level-1 markdown heading, else ``fallback``."""
    match = HEADING_PATTERN.search(content)
    title = match.group(1).strip() if match else fallback
    return title[:MAX_TITLE_LENGTH]


def validate_episode_content(
    content: str, min_chars: int, max_chars: int, fallback_title: str
) -> tuple[str, str]:
    """Check generated markdown against the episode contract.

    Args:
        content: Raw markdown returned by the generator
        min_chars: Minimum length after stripping whitespace
        max_chars: Maximum length after stripping whitespace
        fallback_title: Title used when the content has no "# " heading

    Returns:
        Tuple of (title, stripped content)

    Raises:
        ContentValidationError: If content is empty, too short or too long
    """
    stripped = (content or "").strip()
    if not stripped:
        raise ContentValidationError("Generator returned empty content")
    if len(stripped) < min_chars:
        raise ContentValidationError(
            f"Episode content too short ({len(stripped)} chars, minimum {min_chars})"
        )
    if len(stripped) > max_chars:
        raise ContentValidationError(
            f"Episode content too long ({len(stripped)} chars, maximum {max_chars})"
        )
    return extract_title(stripped, fallback_title), stripped
