"""
Semantic reformulation of memorygram content into one text per embedding space.
"""

import json
from typing import Optional

from ..models.core import MemoryReformulations
from ..utils.bedrock_llm import REFORMULATOR_ROLE, BedrockLLM
from ..utils.config import config
from ..utils.errors import MnemosyneError, UpstreamError
from ..utils.json_utils import clean_json_response
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT = """
You rewrite a piece of memory content into four short texts, one per retrieval perspective:

- topical: the subjects and themes the content is about
- content: the factual substance, stated plainly
- context: the situation, intent and circumstances in which it was said
- metadata: who said it, what kind of message it is, and any dates, names or identifiers

Return a JSON object with this exact format:
```json
{
  "topical": "...",
  "content": "...",
  "context": "...",
  "metadata": "..."
}
```

Every value must be a non-empty string. Return only the JSON object."""


class SemanticReformulator:
    """Ask the reformulator language model role for per-space rewrites of content."""

    def __init__(self, llm: Optional[BedrockLLM] = None):
        self.llm = llm or BedrockLLM(config.bedrock_llm)

    def reformulate(self, content: str) -> MemoryReformulations:
        """Reformulate content for the four embedding spaces.

        Args:
            content: Memorygram content

        Returns:
            MemoryReformulations with all four texts set; a blank field falls back to the content

        Raises:
            UpstreamError: If the LLM call fails or its reply cannot be parsed
        """
        messages = [{'role': 'user', 'content': f'Reformulate this memory content:\n{content}'}]
        try:
            response = self.llm.generate_completion(messages, role=REFORMULATOR_ROLE, system_prompt=SYSTEM_PROMPT)
        except MnemosyneError:
            raise
        except Exception as e:
            logger.error(f'Reformulation call failed: {e}')
            raise UpstreamError(f'Reformulation failed: {e}')

        try:
            data = json.loads(clean_json_response(response))
        except json.JSONDecodeError as e:
            logger.error(f'Failed to parse reformulation JSON: {e}')
            raise UpstreamError(f'Reformulation returned invalid JSON: {e}')

        if not isinstance(data, dict):
            raise UpstreamError(f'Reformulation returned {type(data).__name__}, expected an object')

        def pick(key: str) -> str:
            value = data.get(key)
            return value.strip() if isinstance(value, str) and value.strip() else content

        return MemoryReformulations(topical=pick('topical'),
                                    content=pick('content'),
                                    context=pick('context'),
                                    metadata=pick('metadata'))
