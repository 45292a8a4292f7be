"""
Amazon Bedrock embedding client wrapper with retry logic and error handling.
"""

import json
import random
import time
from typing import List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .errors import UpstreamError
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockEmbedError(UpstreamError):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client with retry logic and error handling."""

    def __init__(self, config: BedrockEmbedConfig, client=None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            client: Optional pre-built bedrock-runtime client
        """
        self.config = config
        self.model_id = config.model_id
        self.output_embedding_length = config.dimension

        # Create Bedrock runtime client
        self.bedrock = client or boto3.client(service_name='bedrock-runtime', region_name=config.region)

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call with retry logic.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            BedrockEmbedError: If all retry attempts fail
        """
        body = json.dumps(data)

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock Embed request attempt {attempt + 1}/{self.config.retry_attempts}')

                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')

                result = json.loads(response.get('body').read())
                logger.debug('Bedrock Embed request successful')
                return result

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock Embed: {e}')
                raise BedrockEmbedError(f'Unexpected Bedrock Embed error: {e}')

        raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts')

    def get_embedding(self, text: str, input_type: str = 'search_document') -> List[float]:
        """
        Generate an embedding vector for text.

        Args:
            text: Text to embed
            input_type: 'search_document' when storing, 'search_query' when querying (Cohere only)

        Returns:
            Non-empty list of embedding values

        Raises:
            BedrockEmbedError: If the text is empty or embedding generation fails
        """
        if not text or not text.strip():
            raise BedrockEmbedError('Cannot embed empty text')

        model = self.model_id.lower()
        try:
            if 'titan' in model:
                response = self._call_with_retry({'inputText': text, 'dimensions': self.output_embedding_length})
                embedding = response.get('embedding') or []

            elif 'cohere' in model:
                if self.output_embedding_length != 1024:
                    raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.output_embedding_length}')

                response = self._call_with_retry({'input_type': input_type, 'texts': [text]})
                embeddings = response.get('embeddings') or []
                embedding = embeddings[0] if embeddings else []

            else:
                raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

        except BedrockEmbedError:
            raise
        except Exception as e:
            logger.error(f'Error generating embedding: {e}')
            raise BedrockEmbedError(f'Embedding failed: {e}')

        if not embedding:
            raise BedrockEmbedError('Embedding service returned an empty vector')

        logger.debug(f'Generated embedding of dimension {len(embedding)}')
        return [float(value) for value in embedding]

    def get_query_embedding(self, text: str) -> List[float]:
        """Generate an embedding for search query text."""
        return self.get_embedding(text, input_type='search_query')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_embedding = self.get_embedding('test')
            return len(test_embedding) == self.output_embedding_length

        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
