"""
OpenSearch client wrapper for vector similarity search over the four embedding spaces.

Each embedding space has its own k-NN index named `<index_name>_<space>`. A memorygram's document
uses the memorygram id as document id, so re-indexing after an update overwrites it.
"""

import time
from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import EmbeddingSpace, Memorygram
from .config import OpenSearchConfig
from .errors import StoreError
from .logging_config import get_logger
from .timestamp_utils import to_iso_str

logger = get_logger(__name__)


class OpenSearchError(StoreError):
    """Custom exception for OpenSearch errors."""
    pass


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Optional pre-built OpenSearch client
        """
        self.config = config

        if client is not None:
            self.client = client
            return

        # Get AWS credentials and create auth; unsigned when no credentials are configured
        credentials = boto3.Session().get_credentials()
        auth = None
        if credentials is not None:
            auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)

        # Parse endpoint to get host and port
        endpoint = config.endpoint
        if '://' in endpoint:
            # Remove protocol if present
            endpoint = endpoint.split('://', 1)[1]

        # Create OpenSearch client
        self.client = OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                                 http_auth=auth,
                                 use_ssl=config.use_ssl,
                                 verify_certs=config.use_ssl,
                                 connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def index_name_for(self, space: EmbeddingSpace) -> str:
        return f'{self.config.index_name}_{space.index_suffix}'

    def _index_body(self) -> Dict[str, Any]:
        return {
            'mappings': {
                'properties': {
                    'id': {
                        'type': 'keyword'
                    },
                    'content': {
                        'type': 'text'
                    },
                    'type': {
                        'type': 'keyword'
                    },
                    'subtype': {
                        'type': 'keyword'
                    },
                    'source': {
                        'type': 'keyword'
                    },
                    'chat_id': {
                        'type': 'keyword'
                    },
                    'timestamp': {
                        'type': 'long'
                    },
                    'embedding': {
                        'type': 'knn_vector',
                        'dimension': self.config.dimension,
                        'method': {
                            'name': 'hnsw',
                            'space_type': 'cosinesimil',
                            'engine': 'nmslib'
                        }
                    },
                    'created_at': {
                        'type': 'date'
                    },
                    'updated_at': {
                        'type': 'date'
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

    def create_index_if_not_exists(self, space: EmbeddingSpace) -> str:
        """
        Create the k-NN index for one embedding space if it doesn't exist.

        Args:
            space: Embedding space whose index to create

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self.index_name_for(space)

        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=index_name, body=self._index_body())
            logger.info(f'Created index {index_name}')
            if not response.get('acknowledged', False):
                return 'failed'
            if self.config.service == 'aoss':
                logger.info(f'Waiting 15s for index {index_name} sync-up...')
                time.sleep(15)
            return 'created'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')
        except Exception as e:
            logger.error(f'Unexpected error creating index {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error creating index: {e}')

    def ensure_indexes(self) -> Dict[str, str]:
        """Create all four embedding-space indexes that are missing."""
        return {space.value: self.create_index_if_not_exists(space) for space in EmbeddingSpace}

    @staticmethod
    def _document(memorygram: Memorygram, vector: List[float]) -> Dict[str, Any]:
        return {
            'id': memorygram.id,
            'content': memorygram.content,
            'type': memorygram.type.value,
            'subtype': memorygram.subtype,
            'source': memorygram.source,
            'chat_id': memorygram.chat_id,
            'timestamp': memorygram.timestamp,
            'embedding': vector,
            'created_at': to_iso_str(memorygram.created_at) if memorygram.created_at else None,
            'updated_at': to_iso_str(memorygram.updated_at) if memorygram.updated_at else None
        }

    def index_memorygram(self, memorygram: Memorygram) -> List[EmbeddingSpace]:
        """
        Index a memorygram into every space for which it has a non-empty vector.

        Args:
            memorygram: Memorygram to index

        Returns:
            The spaces the memorygram was indexed into
        """
        indexed = []
        for space in EmbeddingSpace:
            vector = memorygram.embedding(space)
            if not vector:
                continue

            index_name = self.index_name_for(space)
            try:
                response = self.client.index(index=index_name, id=memorygram.id, body=self._document(memorygram, vector))
            except OpenSearchException as e:
                logger.error(f'Error indexing memorygram {memorygram.id} in {index_name}: {e}')
                raise OpenSearchError(f'Failed to index document: {e}')
            except Exception as e:
                logger.error(f'Unexpected error indexing memorygram {memorygram.id} in {index_name}: {e}')
                raise OpenSearchError(f'Unexpected error indexing document: {e}')

            if response.get('result') in ['created', 'updated']:
                logger.debug(f'Indexed memorygram {memorygram.id} in {index_name}')
            else:
                logger.warning(f'Unexpected result indexing document: {response}')
            indexed.append(space)

        return indexed

    def vector_search(self,
                      query_vector: List[float],
                      space: EmbeddingSpace,
                      top_k: int = 20,
                      exclude_chat_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Perform vector similarity search against one embedding space's index.

        Args:
            query_vector: Query vector for similarity search
            space: Embedding space to search
            top_k: Number of results to return (default 20)
            exclude_chat_id: Leave out documents belonging to this chat

        Returns:
            List of search results with scores and documents
        """
        index_name = self.index_name_for(space)

        try:
            query = {'must': [{'knn': {'embedding': {'vector': query_vector, 'k': top_k}}}]}
            if exclude_chat_id:
                query['must_not'] = [{'term': {'chat_id': exclude_chat_id}}]

            search_body = {
                'size': top_k,
                'query': {
                    'bool': query
                },
                '_source': {
                    'excludes': ['embedding']  # Don't return embedding in results
                }
            }

            response = self.client.search(index=index_name, body=search_body)

            results = []
            for hit in response['hits']['hits']:
                result = {'id': hit['_id'], 'score': hit['_score'], 'document': hit['_source']}
                results.append(result)

            logger.debug(f'Vector search in {index_name} returned {len(results)} results')
            return results

        except OpenSearchException as e:
            logger.error(f'Error performing vector search in {index_name}: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in vector search: {e}')
            raise OpenSearchError(f'Unexpected error in vector search: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name_for(EmbeddingSpace.CONTENT))

            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
