"""Query generation backed by a browser-use chat model."""

import json
import logging
from typing import TYPE_CHECKING, Any

from browser_use.llm.messages import SystemMessage, UserMessage

from ..exceptions import CollaboratorError
from .prompts import QUERY_SYSTEM_PROMPT, get_query_prompt

if TYPE_CHECKING:
    from browser_use.llm.base import BaseChatModel

logger = logging.getLogger(__name__)


def parse_json_response(content: str) -> Any:
    """Parse JSON from an LLM completion, tolerating markdown code fences."""
    if "```json" in content:
        content = content.split("```json")[1].split("```")[0].strip()
    elif "```" in content:
        content = content.split("```")[1].split("```")[0].strip()
    return json.loads(content)


class LLMQueryGenerator:
    """Asks the LLM for query groups; the raw JSON shape is normalized by the pipeline."""

    def __init__(self, llm: "BaseChatModel", max_queries: int = 3):
        self.llm = llm
        self.max_queries = max_queries

    async def generate(self, text: str) -> Any:
        if not text or not text.strip():
            raise CollaboratorError("Search query cannot be empty")

        messages = [
            SystemMessage(content=QUERY_SYSTEM_PROMPT),
            UserMessage(content=get_query_prompt(text, self.max_queries)),
        ]

        try:
            response = await self.llm.ainvoke(messages)
        except Exception as e:
            raise CollaboratorError(f"Query generation failed: {e}") from e

        content = response.completion
        if not isinstance(content, str) or not content.strip():
            raise CollaboratorError("No response received from query generator")

        try:
            parsed = parse_json_response(content)
        except (json.JSONDecodeError, IndexError) as e:
            logger.warning(f"Failed to parse JSON from LLM response: {content[:200]}")
            raise CollaboratorError(f"Query generator returned invalid JSON: {e}") from e

        logger.info(f"Generated query response for {text!r}")
        return parsed
