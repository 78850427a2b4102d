"""
Amazon Bedrock LLM client wrapper for summarization, metadata extraction and relation verification.

Calls are single-shot: the ingestion pipeline owns the retry loop, so every
provider failure is classified here as transient or fatal and surfaced.
"""

from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, ConnectionError as BotoConnectionError, ReadTimeoutError

from .config import BedrockLLMConfig
from .errors import FatalProviderError, TransientProviderError
from .json_utils import parse_json_object
from .logging_config import get_logger

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
RETRYABLE_ERROR_CODES = {
    'ThrottlingException', 'ServiceUnavailableException', 'ModelNotReadyException', 'InternalServerException',
    'ModelTimeoutException', 'TooManyRequestsException'
}
RETRYABLE_MESSAGE_MARKERS = ('overloaded', 'unavailable', 'rate limit', 'quota')

SUMMARY_SYSTEM_PROMPT = 'You write compact, factual summaries for a personal memory graph. Respond in plain text only.'

METADATA_SYSTEM_PROMPT = 'You extract structured metadata from captured web content. Respond with a single JSON object only.'

VERIFY_SYSTEM_PROMPT = ('You judge whether two personal memories are meaningfully related. '
                        'Respond with a single JSON object only.')


def classify_provider_error(error: Exception) -> Exception:
    """Map a provider failure to TransientProviderError or FatalProviderError.

    Args:
        error: Exception raised by boto3/botocore or the response parser

    Returns:
        The classified exception (not raised)
    """
    if isinstance(error, (TransientProviderError, FatalProviderError)):
        return error

    status_code = None
    error_code = ''
    if isinstance(error, ClientError):
        response = error.response or {}
        status_code = response.get('ResponseMetadata', {}).get('HTTPStatusCode')
        error_code = response.get('Error', {}).get('Code', '')

    message = str(error)
    lowered = message.lower()

    if isinstance(error, (BotoConnectionError, ReadTimeoutError)):
        return TransientProviderError(f'Bedrock connection failure: {message}', status_code=status_code)
    if status_code in RETRYABLE_STATUS_CODES or error_code in RETRYABLE_ERROR_CODES:
        return TransientProviderError(f'Bedrock returned {error_code or status_code}: {message}', status_code=status_code)
    if any(marker in lowered for marker in RETRYABLE_MESSAGE_MARKERS):
        return TransientProviderError(f'Bedrock temporarily unavailable: {message}', status_code=status_code)
    return FatalProviderError(f'Bedrock request failed: {message}', status_code=status_code)


class BedrockLLM:
    """Amazon Bedrock LLM client with provider error classification."""

    def __init__(self, config: BedrockLLMConfig, client: Any = None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            client: Pre-built bedrock-runtime client (optional)
        """
        self.config = config
        self.model_id = config.model_id

        # Create Bedrock runtime client with timeout configuration
        self.bedrock_runtime = client or boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=config.connect_timeout,
                read_timeout=config.read_timeout,
                retries={'max_attempts': 0}  # Retries belong to the ingestion pipeline
            ))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate a single response using the Bedrock Converse API.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation

        Returns:
            Tuple of (response_text, usage)

        Raises:
            TransientProviderError: On throttling, overload or 5xx responses
            FatalProviderError: On any other provider failure
        """
        inf_params = {
            'maxTokens': max_tokens or self.config.max_tokens,
            'temperature': self.config.temperature if temperature is None else temperature,
            'stopSequences': stop_sequences or [],
        }

        try:
            response = self.bedrock_runtime.converse(modelId=self.model_id,
                                                     messages=messages,
                                                     system=[{'text': system_prompt}],
                                                     inferenceConfig=inf_params)
        except (ClientError, BotoCoreError) as e:
            classified = classify_provider_error(e)
            logger.warning(f'Bedrock LLM call failed ({type(classified).__name__}): {e}')
            raise classified from e
        except Exception as e:
            logger.error(f'Unexpected error in Bedrock LLM: {e}')
            raise classify_provider_error(e) from e

        content = response.get('output', {}).get('message', {}).get('content', [])
        text = ''.join(block.get('text', '') for block in content)
        logger.debug(f'Bedrock LLM response generated successfully (length: {len(text)})')
        return text, response.get('usage')

    def summarize(self, text: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        """
        Summarize captured content for storage in the memory graph.

        Args:
            text: Raw captured text
            metadata: Capture metadata (title, url, content_type)

        Returns:
            Plain-text summary

        Raises:
            TransientProviderError: Retryable provider failure
            FatalProviderError: Non-retryable failure or an empty summary
        """
        metadata = metadata or {}
        content_type = metadata.get('content_type') or 'web page'
        prompt = (f'Summarize the following {content_type} for storage in a personal memory graph. '
                  'Be concise (<=200 words) and keep names, decisions, numbers and dates that matter. '
                  'Return plain text only, no markdown.\n\n'
                  f"Title: {metadata.get('title') or 'Untitled'}\n"
                  f"URL: {metadata.get('url') or 'n/a'}\n\n"
                  f'Text:\n{text}')

        summary, _ = self.generate_response(messages=[{'role': 'user', 'content': [{'text': prompt}]}],
                                            system_prompt=SUMMARY_SYSTEM_PROMPT)
        summary = summary.strip()
        if not summary:
            raise FatalProviderError('Bedrock returned an empty summary')
        return summary

    def extract_metadata(self, text: str, summary: str, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Extract topics, categories and related fields for relation building.

        Returns an empty dict when the model answer cannot be parsed.
        """
        metadata = metadata or {}
        prompt = ('Analyze the content below and return JSON with these keys: '
                  '"topics" (list of strings), "categories" (list of strings), "keyPoints" (list of strings), '
                  '"sentiment" ("positive", "neutral" or "negative"), "importance" (integer 1-10), '
                  '"usefulness" (integer 1-10), "searchableTerms" (list of strings), '
                  '"contextRelevance" (list of strings).\n\n'
                  f"Title: {metadata.get('title') or 'Untitled'}\n"
                  f"URL: {metadata.get('url') or 'n/a'}\n"
                  f'Summary: {summary}\n\n'
                  f'Content:\n{text[:6000]}')

        response, _ = self.generate_response(messages=[{'role': 'user', 'content': [{'text': prompt}]}],
                                             system_prompt=METADATA_SYSTEM_PROMPT)
        parsed = parse_json_object(response)
        if parsed is None:
            logger.warning('Metadata extraction returned unparseable JSON; ignoring')
            return {}
        return parsed

    def verify_relation(self, source: Dict[str, Any], candidate: Dict[str, Any], similarity: float,
                        temporal_proximity: float = 0.0) -> bool:
        """
        Ask the model whether two memories in the ambiguous similarity band are related.

        Args:
            source: Dict with title and summary of the new memory
            candidate: Dict with title and summary of the candidate neighbour
            similarity: Combined score for the pair
            temporal_proximity: Raw temporal closeness in [0, 1]

        Returns:
            True when the model confirms the relation
        """
        prompt = ('Decide whether these two memories should be linked in a personal knowledge graph.\n\n'
                  f"Memory A: {source.get('title') or 'Untitled'}\n{source.get('summary') or ''}\n\n"
                  f"Memory B: {candidate.get('title') or 'Untitled'}\n{candidate.get('summary') or ''}\n\n"
                  f'Similarity score: {similarity:.2f}. Temporal proximity: {temporal_proximity:.2f}.\n'
                  'Return JSON: {"related": true|false, "reason": "<short reason>"}')

        response, _ = self.generate_response(messages=[{'role': 'user', 'content': [{'text': prompt}]}],
                                             system_prompt=VERIFY_SYSTEM_PROMPT,
                                             max_tokens=200,
                                             temperature=0.0)
        parsed = parse_json_object(response) or {}
        return bool(parsed.get('related', False))

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
