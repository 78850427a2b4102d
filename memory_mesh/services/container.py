"""
Wires clients and services together from the application configuration.
"""

from dataclasses import dataclass
from typing import Any, Optional

from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig, QueueConfig
from ..utils.logging_config import get_logger
from ..utils.memory_store import MemoryStore
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.sqs_queue import InMemoryIngestionQueue, SqsIngestionQueue
from .hybrid_search import HybridSearchService
from .ingestion import IngestionPipeline
from .ingestion_worker import IngestionWorkerPool
from .relation_graph import RelationGraphBuilder

logger = get_logger(__name__)


@dataclass
class MemoryMeshServices:
    store: MemoryStore
    llm: BedrockLLM
    embedder: BedrockEmbed
    vector_index: OpenSearchClient
    graph: RelationGraphBuilder
    search: HybridSearchService
    ingestion: IngestionPipeline
    queue: Any
    worker_pool: Optional[IngestionWorkerPool] = None


def start_local_workers(pipeline: IngestionPipeline, ingestion_queue, queue_config: QueueConfig) -> Optional[IngestionWorkerPool]:
    """
    Start a worker pool draining an in-process queue.

    Jobs on an InMemoryIngestionQueue are only visible inside the process that
    enqueued them, so that process must also run the workers.

    Returns:
        The started pool, or None for any other queue type
    """
    if not isinstance(ingestion_queue, InMemoryIngestionQueue):
        return None
    pool = IngestionWorkerPool(pipeline,
                               ingestion_queue,
                               concurrency=queue_config.concurrency,
                               max_messages=queue_config.max_messages)
    pool.start()
    return pool


def build_services(app_config: Optional[AppConfig] = None) -> MemoryMeshServices:
    """
    Build every client and service from configuration.

    The vector index is created when missing; failure to do so is logged and
    leaves search running on the keyword channel. Without a configured SQS
    queue, jobs go to an in-process queue drained by a local worker pool.
    """
    if app_config is None:
        from ..utils.config import config as app_config

    store = MemoryStore(app_config.database)
    llm = BedrockLLM(app_config.bedrock_llm)
    embedder = BedrockEmbed(app_config.bedrock_embed)
    vector_index = OpenSearchClient(app_config.opensearch)

    try:
        vector_index.create_index_if_not_exists()
    except OpenSearchError as e:
        logger.warning(f'Failed to create OpenSearch index: {e}')

    graph = RelationGraphBuilder(store, vector_index=vector_index, embedder=embedder, verifier=llm, graph_config=app_config.graph)
    search = HybridSearchService(store, embedder=embedder, vector_index=vector_index, search_config=app_config.search)
    ingestion = IngestionPipeline(store,
                                  summarizer=llm,
                                  embedder=embedder,
                                  vector_index=vector_index,
                                  graph_builder=graph,
                                  retry_config=app_config.retry)

    if app_config.queue.queue_url:
        ingestion_queue = SqsIngestionQueue(app_config.queue)
    else:
        logger.warning('INGESTION_QUEUE_URL not set; using an in-process ingestion queue with local workers')
        ingestion_queue = InMemoryIngestionQueue()

    worker_pool = start_local_workers(ingestion, ingestion_queue, app_config.queue)

    logger.info('Built memory mesh services')
    return MemoryMeshServices(store=store,
                              llm=llm,
                              embedder=embedder,
                              vector_index=vector_index,
                              graph=graph,
                              search=search,
                              ingestion=ingestion,
                              queue=ingestion_queue,
                              worker_pool=worker_pool)
