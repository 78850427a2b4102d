"""
MCP interface layer exposing memory search, ingestion and mesh maintenance through fastmcp.
"""
from functools import lru_cache
from typing import Any, Dict, Optional

from fastmcp import FastMCP

from .models.context import RequestContext
from .services.container import MemoryMeshServices, build_services
from .services.context_builder import build_context
from .services.retrieval_policy import get_policy
from .utils.config import config
from .utils.errors import MemoryMeshError
from .utils.health_check import get_system_info
from .utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Memory Mesh')


@lru_cache(maxsize=1)
def get_services() -> MemoryMeshServices:
    """Services are built on first use so importing this module has no side effects."""
    return build_services(config)


def _require(value: Optional[str], name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f'{name} is required')
    return value.strip()


@mcp.tool()
def search_memories(owner_id: str,
                    query: str,
                    policy_name: Optional[str] = None,
                    limit: Optional[int] = None,
                    page: int = 1,
                    include_context: bool = False) -> Dict[str, Any]:
    """Search a user's memories with hybrid keyword and semantic retrieval.

    Args:
        owner_id: User ID
        query: Natural language query
        policy_name: Retrieval policy (chat, planning, profile, summarization, insight)
        limit: Page size (defaults to the policy's max results)
        page: 1-based page number
        include_context: Also return grouped prompt context built from the results

    Returns:
        Search envelope with ranked results and the applied policy
    """
    try:
        owner_id = _require(owner_id, 'owner_id')
        ctx = RequestContext(owner_id=owner_id)
        response = get_services().search.search(owner_id, query, policy_name=policy_name, limit=limit, page=page, ctx=ctx)
        payload = response.to_dict()
        if include_context:
            payload['context'] = build_context(response.results, get_policy(response.applied_policy)).to_dict()

        logger.debug(f'MCP search returned {len(response.results)} memories for owner {owner_id}')
        return payload

    except MemoryMeshError as e:
        logger.error(f'Memory search error in MCP: {e}')
        raise Exception(f'Memory search failed: {e}')


@mcp.tool()
def ingest_memory(owner_id: str, raw_text: str, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Ingest captured text synchronously.

    Args:
        owner_id: User ID
        raw_text: Captured page text
        metadata: Capture metadata such as title, url, timestamp and content_type

    Returns:
        Dict with memory_id and deduplicated flag
    """
    try:
        owner_id = _require(owner_id, 'owner_id')
        result = get_services().ingestion.ingest(owner_id, raw_text, metadata)
        return {'memory_id': result.memory_id, 'deduplicated': result.deduplicated}

    except MemoryMeshError as e:
        logger.error(f'Memory ingestion error in MCP: {e}')
        raise Exception(f'Memory ingestion failed: {e}')


@mcp.tool()
def enqueue_memory(owner_id: str, raw_text: str, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
    """Queue captured text for background ingestion.

    Returns:
        Dict with the job_id
    """
    owner_id = _require(owner_id, 'owner_id')
    _require(raw_text, 'raw_text')
    job_id = get_services().queue.enqueue(owner_id, raw_text, metadata)
    return {'job_id': job_id}


@mcp.tool()
def link_memory(memory_id: str) -> Dict[str, Any]:
    """Rebuild the mesh edges of one memory.

    Returns:
        Dict with edges_created and edges_pruned
    """
    try:
        result = get_services().graph.link_memory(_require(memory_id, 'memory_id'))
        return {'memory_id': result.memory_id, 'edges_created': result.edges_created, 'edges_pruned': result.edges_pruned}

    except MemoryMeshError as e:
        logger.error(f'Memory linking error in MCP: {e}')
        raise Exception(f'Memory linking failed: {e}')


@mcp.tool()
def cleanup_relations(owner_id: Optional[str] = None) -> Dict[str, int]:
    """Remove weak and stale mesh edges, for one user or everyone.

    Returns:
        Dict with the number of removed relations
    """
    return {'removed': get_services().graph.cleanup(owner_id or None)}


@mcp.tool()
def get_memory_mesh(owner_id: str, limit: int = 50) -> Dict[str, Any]:
    """Nodes, edges and type clusters of a user's memory mesh."""
    try:
        return get_services().graph.get_mesh(_require(owner_id, 'owner_id'), limit=limit)
    except MemoryMeshError as e:
        logger.error(f'Memory mesh error in MCP: {e}')
        raise Exception(f'Memory mesh lookup failed: {e}')


@mcp.tool()
def get_memory_relations(memory_id: str) -> Dict[str, Any]:
    """Outgoing and incoming relations of one memory."""
    try:
        return get_services().graph.get_memory_relations(_require(memory_id, 'memory_id'))
    except MemoryMeshError as e:
        logger.error(f'Memory relations error in MCP: {e}')
        raise Exception(f'Memory relations lookup failed: {e}')


@mcp.tool()
def health_status() -> Dict[str, Any]:
    """Health of the LLM, embedder, vector index, relational store and ingestion queue."""
    services = get_services()
    return get_system_info({
        'bedrock_llm': services.llm,
        'bedrock_embed': services.embedder,
        'opensearch': services.vector_index,
        'memory_store': services.store,
        'ingestion_queue': services.queue,
    })


if __name__ == '__main__':
    mcp.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
