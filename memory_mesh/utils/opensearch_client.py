"""
OpenSearch k-NN client used as the external vector similarity index for memories.
"""

from typing import Any, Dict, List, Optional, Tuple

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError as OpenSearchNotFoundError
from opensearchpy.exceptions import OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


def score_to_cosine(score: float) -> float:
    """Convert an nmslib cosinesimil k-NN score back to cosine similarity in [0, 1].

    OpenSearch reports ``1 / (2 - cos)`` for the cosinesimil space; negative
    cosines are clamped to 0.
    """
    if score <= 0:
        return 0.0
    cosine = 2.0 - 1.0 / score
    return max(0.0, min(1.0, cosine))


class OpenSearchClient:
    """OpenSearch vector index with AWS SigV4 authentication."""

    def __init__(self, config: OpenSearchConfig, client: Any = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Pre-built OpenSearch client (optional)
        """
        self.config = config
        self.index_name = config.index_name

        if client is not None:
            self.client = client
        else:
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)
            endpoint = config.endpoint
            if '://' in endpoint:
                endpoint = endpoint.split('://', 1)[1]

            self.client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                     http_auth=auth,
                                     use_ssl=True,
                                     verify_certs=True,
                                     connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def create_index_if_not_exists(self) -> str:
        """
        Create the memory vector index if it doesn't exist.

        Returns:
            'exists', 'created' or 'failed'
        """
        try:
            if self.client.indices.exists(index=self.index_name):
                logger.debug(f'Index {self.index_name} already exists')
                return 'exists'

            index_body = {
                'mappings': {
                    'properties': {
                        'memory_id': {
                            'type': 'keyword'
                        },
                        'owner_id': {
                            'type': 'keyword'
                        },
                        'embedding': {
                            'type': 'knn_vector',
                            'dimension': self.config.dimension,
                            'method': {
                                'name': 'hnsw',
                                'space_type': 'cosinesimil',
                                'engine': 'nmslib'
                            }
                        }
                    }
                },
                'settings': {
                    'index': {
                        'knn': True,
                        'knn.algo_param.ef_search': 100
                    }
                }
            }

            response = self.client.indices.create(index=self.index_name, body=index_body)
            if response.get('acknowledged', False):
                logger.info(f'Created index {self.index_name}')
                return 'created'
            logger.warning(f'Index creation for {self.index_name} was not acknowledged')
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')
        except Exception as e:
            logger.error(f'Unexpected error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Unexpected error creating index: {e}')

    def upsert_vector(self, memory_id: str, owner_id: str, vector: List[float]) -> bool:
        """
        Store or replace the embedding for a memory.

        Args:
            memory_id: Memory id, used as the document id
            owner_id: Owning user id, used for filtering
            vector: Embedding values

        Returns:
            True if the document was created or updated
        """
        if len(vector) != self.config.dimension:
            raise OpenSearchError(f'Vector dimension {len(vector)} does not match index dimension {self.config.dimension}')

        try:
            response = self.client.index(index=self.index_name,
                                         id=memory_id,
                                         body={
                                             'memory_id': memory_id,
                                             'owner_id': owner_id,
                                             'embedding': vector
                                         })
            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Upserted vector for memory {memory_id}')
            else:
                logger.warning(f'Unexpected result upserting vector: {response}')
            return success

        except OpenSearchException as e:
            logger.error(f'Error upserting vector for memory {memory_id}: {e}')
            raise OpenSearchError(f'Failed to upsert vector: {e}')
        except Exception as e:
            logger.error(f'Unexpected error upserting vector for memory {memory_id}: {e}')
            raise OpenSearchError(f'Unexpected error upserting vector: {e}')

    def query_vectors(self,
                      vector: List[float],
                      owner_id: str,
                      limit: int = 20,
                      filter_memory_ids: Optional[List[str]] = None) -> List[Tuple[str, float]]:
        """
        Nearest-neighbour search restricted to one owner.

        Args:
            vector: Query vector
            owner_id: Owner whose memories are searched
            limit: Maximum number of hits
            filter_memory_ids: Restrict hits to these memory ids (optional)

        Returns:
            List of (memory_id, cosine similarity) sorted by similarity descending
        """
        filters: List[Dict[str, Any]] = [{'term': {'owner_id': owner_id}}]
        if filter_memory_ids:
            filters.append({'terms': {'memory_id': list(filter_memory_ids)}})

        search_body = {
            'size': limit,
            'query': {
                'bool': {
                    'must': [{
                        'knn': {
                            'embedding': {
                                'vector': vector,
                                'k': limit
                            }
                        }
                    }],
                    'filter': filters
                }
            },
            '_source': {
                'excludes': ['embedding']
            }
        }

        try:
            response = self.client.search(index=self.index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in vector search: {e}')
            raise OpenSearchError(f'Unexpected error in vector search: {e}')

        results = []
        for hit in response['hits']['hits']:
            source = hit.get('_source') or {}
            memory_id = source.get('memory_id') or hit['_id']
            results.append((memory_id, score_to_cosine(hit['_score'])))

        results.sort(key=lambda item: item[1], reverse=True)
        logger.debug(f'Vector search returned {len(results)} results for owner {owner_id}')
        return results

    def get_vector(self, memory_id: str) -> Optional[List[float]]:
        """
        Fetch the stored embedding for a memory.

        Returns:
            The vector, or None when the memory has not been embedded
        """
        try:
            response = self.client.get(index=self.index_name, id=memory_id)
        except OpenSearchNotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting vector for memory {memory_id}: {e}')
            raise OpenSearchError(f'Failed to get vector: {e}')
        except Exception as e:
            logger.error(f'Unexpected error getting vector for memory {memory_id}: {e}')
            raise OpenSearchError(f'Unexpected error getting vector: {e}')

        if not response.get('found'):
            return None
        return (response.get('_source') or {}).get('embedding')

    def delete_vector(self, memory_id: str) -> bool:
        """
        Delete a memory's embedding from the index.

        Returns:
            True if deletion was successful, False if the document did not exist
        """
        try:
            response = self.client.delete(index=self.index_name, id=memory_id)
            success = response.get('result') == 'deleted'
            if success:
                logger.debug(f'Deleted vector for memory {memory_id}')
            return success

        except OpenSearchNotFoundError:
            logger.warning(f'Vector for memory {memory_id} not found for deletion')
            return False
        except OpenSearchException as e:
            logger.error(f'Error deleting vector for memory {memory_id}: {e}')
            raise OpenSearchError(f'Failed to delete vector: {e}')
        except Exception as e:
            logger.error(f'Unexpected error deleting vector for memory {memory_id}: {e}')
            raise OpenSearchError(f'Unexpected error deleting vector: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name)
            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
