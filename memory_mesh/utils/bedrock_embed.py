"""
Amazon Bedrock embedding client for memory documents and search queries.
"""

import json
import random
import time
from typing import Any, Callable, Dict, List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockEmbedError(Exception):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client with retry logic and error handling."""

    def __init__(self, config: BedrockEmbedConfig, client: Any = None, sleep: Callable[[float], None] = time.sleep):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            client: Pre-built bedrock-runtime client (optional)
            sleep: Sleep function used between retries
        """
        self.config = config
        self.model_id = config.model_id
        self.dimension = config.dimension
        self._sleep = sleep

        self.bedrock = client or boto3.client(service_name='bedrock-runtime', region_name=config.region)

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _invoke(self, data: Dict[str, Any]) -> Dict[str, Any]:
        body = json.dumps(data)
        attempts = max(1, self.config.retry_attempts)

        for attempt in range(attempts):
            try:
                logger.debug(f'Bedrock Embed request attempt {attempt + 1}/{attempts}')
                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')
                return json.loads(response.get('body').read())

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{attempts} failed: {e}')
                if attempt == attempts - 1:
                    raise BedrockEmbedError(f'Bedrock Embed failed after {attempts} attempts: {e}')
                # Exponential backoff with jitter
                self._sleep(self.config.retry_delay * (2**attempt) + random.uniform(0, 1))

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock Embed: {e}')
                raise BedrockEmbedError(f'Unexpected Bedrock Embed error: {e}')

        raise BedrockEmbedError(f'Bedrock Embed failed after {attempts} attempts')

    def _embed(self, text: str, input_type: str) -> List[float]:
        if not text or not text.strip():
            raise BedrockEmbedError(f'Cannot embed empty {input_type} text')

        model = self.model_id.lower()
        if 'titan' in model:
            response = self._invoke({'inputText': text, 'dimensions': self.dimension, 'normalize': True})
            vector = response.get('embedding') or []
        elif 'cohere' in model:
            if self.dimension != 1024:
                raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.dimension}')
            response = self._invoke({'input_type': input_type, 'texts': [text[:2048]]})
            embeddings = response.get('embeddings') or [[]]
            vector = embeddings[0]
        else:
            raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

        if len(vector) != self.dimension:
            raise BedrockEmbedError(f'Expected {self.dimension}-dimensional embedding, got {len(vector)}')
        return [float(v) for v in vector]

    def embed_document(self, text: str) -> List[float]:
        """
        Embed memory text (summary plus title) for indexing.

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        return self._embed(text, 'search_document')

    def embed_query(self, text: str) -> List[float]:
        """
        Embed a search query.

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        return self._embed(text, 'search_query')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return len(self.embed_document('health check')) == self.dimension
        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
