"""
Health check utilities for the application.
"""

from typing import Any, Callable, Dict, Optional

from .config import config
from .logging_config import get_logger

logger = get_logger(__name__)

SERVICE_LABELS = {
    'bedrock_llm': 'Amazon Bedrock LLM',
    'bedrock_embed': 'Amazon Bedrock Embed',
    'opensearch': 'Amazon OpenSearch',
    'memory_store': 'Relational store',
    'ingestion_queue': 'Ingestion queue',
}


def _default_components() -> Dict[str, Callable[[], Any]]:
    from .bedrock_embed import BedrockEmbed
    from .bedrock_llm import BedrockLLM
    from .memory_store import MemoryStore
    from .opensearch_client import OpenSearchClient

    return {
        'bedrock_llm': lambda: BedrockLLM(config.bedrock_llm),
        'bedrock_embed': lambda: BedrockEmbed(config.bedrock_embed),
        'opensearch': lambda: OpenSearchClient(config.opensearch),
        'memory_store': lambda: MemoryStore(config.database),
    }


def _component_details(name: str) -> Dict[str, Any]:
    if name == 'bedrock_llm':
        return {'model': config.bedrock_llm.model_id}
    if name == 'bedrock_embed':
        return {'model': config.bedrock_embed.model_id}
    if name == 'opensearch':
        return {'endpoint': config.opensearch.endpoint, 'index': config.opensearch.index_name}
    if name == 'memory_store':
        return {'backend': config.database.url.split(':', 1)[0]}
    return {}


def get_health_status(components: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Args:
        components: Map of component name to a client with ``health_check()``, or to a
            zero-argument factory returning one. Clients are built from config when None.

    Returns:
        Dictionary with health status of each component
    """
    components = components if components is not None else _default_components()
    health_status = {}

    for name, component in components.items():
        service = SERVICE_LABELS.get(name, name)
        try:
            client = component() if callable(component) else component
            health_status[name] = {'healthy': bool(client.health_check()), 'service': service, **_component_details(name)}
        except Exception as e:
            health_status[name] = {'healthy': False, 'service': service, 'error': str(e)}

    return health_status


def check_health(components: Optional[Dict[str, Any]] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(components)
        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            unhealthy = [name for name, status in health_status.items() if not status.get('healthy')]
            logger.warning(f'Unhealthy components: {", ".join(unhealthy)}')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def get_system_info(components: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    return {
        'service_name': 'Memory Mesh',
        'version': '1.0.0',
        'configuration': {
            'bedrock_llm_model': config.bedrock_llm.model_id,
            'bedrock_embed_model': config.bedrock_embed.model_id,
            'vector_index': config.opensearch.index_name,
            'ingestion_concurrency': config.queue.concurrency,
            'summary_max_attempts': config.retry.max_attempts,
            'aws_region': config.bedrock_llm.region
        },
        'health_status': get_health_status(components)
    }
