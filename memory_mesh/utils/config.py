"""
Configuration management for AWS services and application settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    connect_timeout: int
    read_timeout: int


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    service: str
    index_name: str
    dimension: int


@dataclass
class DatabaseConfig:
    """Configuration for the relational store."""
    url: str
    echo: bool


@dataclass
class QueueConfig:
    """Configuration for the SQS ingestion queue."""
    region: str
    queue_url: str
    dead_letter_queue_url: str
    concurrency: int
    wait_time_seconds: int
    visibility_timeout: int
    max_messages: int


@dataclass(frozen=True)
class RetryConfig:
    """Bounded retry policy for summarization calls."""
    max_attempts: int = 8
    base_delay: float = 3.0
    max_delay: float = 60.0
    jitter: float = 0.5


@dataclass(frozen=True)
class SearchConfig:
    """Hybrid search settings."""
    keyword_fusion_weight: float = 0.4
    semantic_fusion_weight: float = 0.6
    default_limit: int = 10
    max_limit: int = 100
    candidate_multiplier: int = 2
    min_semantic_score: float = 0.15
    channel_timeout: float = 30.0


@dataclass(frozen=True)
class GraphConfig:
    """Relation graph weights and thresholds."""
    semantic_weight: float = 1.0
    topical_weight: float = 0.8
    temporal_weight: float = 0.0
    min_similarity: float = 0.3
    verify_threshold: float = 0.45
    floor_similarity: float = 0.2
    max_degree: int = 12
    min_degree: int = 3
    semantic_candidates: int = 24
    candidate_scan_limit: int = 500
    cleanup_threshold: float = 0.2
    cleanup_age_threshold: float = 0.4
    cleanup_age_days: int = 30


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    opensearch: OpenSearchConfig
    database: DatabaseConfig
    queue: QueueConfig
    retry: RetryConfig
    search: SearchConfig
    graph: GraphConfig
    mcp: MCPConfig


def _env_bool(name: str, default: str = 'false') -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '1024')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          connect_timeout=int(os.getenv('BEDROCK_LLM_CONNECT_TIMEOUT', '60')),
                                          read_timeout=int(os.getenv('BEDROCK_LLM_READ_TIMEOUT', '240')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'aoss'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'memory_vectors'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')))

    # Relational store configuration
    database_config = DatabaseConfig(url=os.getenv('DATABASE_URL', 'sqlite:///memory_mesh.db'),
                                     echo=_env_bool('DATABASE_ECHO'))

    # Ingestion queue configuration
    queue_config = QueueConfig(region=os.getenv('INGESTION_QUEUE_AWS_REGION', 'us-east-1'),
                               queue_url=os.getenv('INGESTION_QUEUE_URL', ''),
                               dead_letter_queue_url=os.getenv('INGESTION_DLQ_URL', ''),
                               concurrency=int(os.getenv('INGESTION_CONCURRENCY', '1')),
                               wait_time_seconds=int(os.getenv('INGESTION_QUEUE_WAIT_SECONDS', '20')),
                               visibility_timeout=int(os.getenv('INGESTION_QUEUE_VISIBILITY_TIMEOUT', '900')),
                               max_messages=int(os.getenv('INGESTION_QUEUE_MAX_MESSAGES', '1')))

    retry_config = RetryConfig(max_attempts=int(os.getenv('SUMMARY_RETRY_MAX_ATTEMPTS', '8')),
                               base_delay=float(os.getenv('SUMMARY_RETRY_BASE_DELAY', '3.0')),
                               max_delay=float(os.getenv('SUMMARY_RETRY_MAX_DELAY', '60.0')),
                               jitter=float(os.getenv('SUMMARY_RETRY_JITTER', '0.5')))

    search_config = SearchConfig(default_limit=int(os.getenv('SEARCH_DEFAULT_LIMIT', '10')),
                                 max_limit=int(os.getenv('SEARCH_MAX_LIMIT', '100')),
                                 candidate_multiplier=int(os.getenv('SEARCH_CANDIDATE_MULTIPLIER', '2')),
                                 min_semantic_score=float(os.getenv('SEARCH_MIN_SEMANTIC_SCORE', '0.15')),
                                 channel_timeout=float(os.getenv('SEARCH_CHANNEL_TIMEOUT', '30')))

    graph_config = GraphConfig(semantic_weight=float(os.getenv('MESH_SEMANTIC_WEIGHT', '1.0')),
                               topical_weight=float(os.getenv('MESH_TOPICAL_WEIGHT', '0.8')),
                               temporal_weight=float(os.getenv('MESH_TEMPORAL_WEIGHT', '0.0')),
                               min_similarity=float(os.getenv('MESH_MIN_SIMILARITY', '0.3')),
                               verify_threshold=float(os.getenv('MESH_VERIFY_THRESHOLD', '0.45')),
                               floor_similarity=float(os.getenv('MESH_FLOOR_SIMILARITY', '0.2')),
                               max_degree=int(os.getenv('MESH_MAX_DEGREE', '12')),
                               min_degree=int(os.getenv('MESH_MIN_DEGREE', '3')),
                               cleanup_threshold=float(os.getenv('MESH_CLEANUP_THRESHOLD', '0.2')),
                               cleanup_age_threshold=float(os.getenv('MESH_CLEANUP_AGE_THRESHOLD', '0.4')),
                               cleanup_age_days=int(os.getenv('MESH_CLEANUP_AGE_DAYS', '30')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     opensearch=opensearch_config,
                     database=database_config,
                     queue=queue_config,
                     retry=retry_config,
                     search=search_config,
                     graph=graph_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
