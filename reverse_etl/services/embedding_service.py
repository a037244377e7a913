"""Embedding generation for vector mappings."""

import logging
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from reverse_etl.core.config import get_settings

logger = logging.getLogger(__name__)

OPEN_AI_MODE = "open_ai"


class EmbeddingError(Exception):
    """Embedding could not be generated."""
    pass


class EmbeddingService:
    """
    Computes embeddings described by a mapping's ``embedding_config``.

    Expected config: ``{"mode": "open_ai", "api_key": "...", "model": "..."}``.
    """

    def __init__(self, embedding_config: Dict[str, Any], client: Optional[AsyncOpenAI] = None):
        self.embedding_config = embedding_config or {}
        self.mode = self.embedding_config.get("mode", OPEN_AI_MODE)
        self.model = self.embedding_config.get("model") or get_settings().embedding_default_model
        self._client = client

        if self.mode != OPEN_AI_MODE:
            raise EmbeddingError(f"Unsupported embedding mode: {self.mode}")

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            api_key = self.embedding_config.get("api_key")
            if not api_key:
                raise EmbeddingError("embedding_config.api_key is required")
            self._client = AsyncOpenAI(api_key=api_key, timeout=get_settings().http_timeout)
        return self._client

    async def generate_embedding(self, text: Any) -> List[float]:
        """Embed ``text`` and return the vector."""
        if text is None or str(text).strip() == "":
            raise EmbeddingError("Cannot embed an empty value")

        try:
            response = await self.client.embeddings.create(model=self.model, input=str(text))
        except openai.AuthenticationError as e:
            raise EmbeddingError(f"OpenAI authentication failed: {str(e)}")
        except openai.OpenAIError as e:
            raise EmbeddingError(f"OpenAI API error: {str(e)}")

        if not response.data:
            raise EmbeddingError("OpenAI returned no embedding")

        logger.debug(f"Generated embedding with model {self.model}")
        return list(response.data[0].embedding)
