"""
Amazon Bedrock LLM client wrapper with retry logic and error handling.

Callers address models by role ('master' for replies, 'reformulator' for per-space rewrites);
each role resolves to a model id from configuration.
"""

import json
import random
import time
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .errors import UpstreamError
from .logging_config import get_logger

logger = get_logger(__name__)

MASTER_ROLE = 'master'
REFORMULATOR_ROLE = 'reformulator'


class BedrockLLMError(UpstreamError):
    """Custom exception for Bedrock LLM errors."""
    pass


def to_bedrock_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Convert {'role', 'content': str} chat messages into Bedrock Converse format."""
    converted = []
    for message in messages:
        content = message.get('content', '')
        if isinstance(content, str):
            content = [{'text': content}]
        converted.append({'role': message.get('role', 'user'), 'content': content})
    return converted


class BedrockLLM:
    """Amazon Bedrock LLM client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig, client=None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            client: Optional pre-built bedrock-runtime client
        """
        self.config = config
        self.model_id = config.model_id

        # Create Bedrock runtime client with timeout configuration
        self.bedrock_runtime = client or boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=600,
                read_timeout=600,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None,
                          model_id: Optional[str] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate response using Bedrock LLM with retry logic.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation
            model_id: Model to call (uses config default if None)

        Returns:
            Tuple of (response_text, invoke_metrics)

        Raises:
            BedrockLLMError: If all retry attempts fail
        """
        model_id = model_id or self.model_id
        max_tokens = max_tokens or self.config.max_tokens
        temperature = temperature if temperature is not None else self.config.temperature
        stop_sequences = stop_sequences or []

        system = [{'text': system_prompt}]
        inf_params = {
            'maxTokens': max_tokens,
            'temperature': temperature,
            'stopSequences': stop_sequences,
        }

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{self.config.retry_attempts}')

                stream = self.bedrock_runtime.converse_stream(modelId=model_id,
                                                              messages=messages,
                                                              system=system,
                                                              inferenceConfig=inf_params).get('stream')

                msg = ''
                invoke_metrics = None

                if stream:
                    for event in stream:
                        if 'contentBlockDelta' in event:
                            msg += event['contentBlockDelta']['delta']['text']
                        if 'metadata' in event:
                            invoke_metrics = {**event['metadata']['usage'], **event['metadata']['metrics']}

                logger.debug(f'Bedrock LLM response generated successfully (length: {len(msg)})')
                return msg, invoke_metrics

            except (ClientError, BotoCoreError, json.JSONDecodeError) as e:
                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

        raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts')

    def generate_completion(self,
                            messages: List[Dict[str, Any]],
                            role: str = MASTER_ROLE,
                            system_prompt: str = '',
                            max_tokens: Optional[int] = None,
                            temperature: Optional[float] = None) -> str:
        """
        Generate a completion with the model configured for a role.

        Args:
            messages: Chat messages as {'role', 'content'} dicts
            role: Language model role
            system_prompt: System prompt
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature

        Returns:
            Completion text

        Raises:
            BedrockLLMError: If generation fails or returns no text
        """
        text, _ = self.generate_response(messages=to_bedrock_messages(messages),
                                         system_prompt=system_prompt,
                                         max_tokens=max_tokens,
                                         temperature=temperature,
                                         model_id=self.config.model_for_role(role))
        if not text.strip():
            raise BedrockLLMError(f'Bedrock LLM returned an empty completion for role {role}')
        return text

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_messages = [{'role': 'user', 'content': [{'text': 'Hi'}]}]
            response, _ = self.generate_response(messages=test_messages,
                                                 system_prompt="You are a helpful assistant. Respond with just 'OK'.",
                                                 max_tokens=10,
                                                 temperature=0.0)
            return len(response.strip()) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
