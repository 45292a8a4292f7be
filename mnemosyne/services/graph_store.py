"""
Graph store facade over the Neptune property graph and the per-space OpenSearch vector indexes.

Neptune is the source of truth for memorygrams and relationships. Vector indexes are written after
the vertex so a failed index write never leaves an index entry pointing at a missing vertex.
"""

from functools import wraps
from typing import List, Optional

from ..models.core import (ASSOCIATED_WITH, EmbeddingSpace, GraphRelationship, Memorygram, MemorygramWithScore,
                           validate_id, validate_memorygram, validate_relationship_endpoints)
from ..utils.config import config
from ..utils.errors import InvalidArgumentError, MnemosyneError, StoreError
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient, record_to_memorygram
from ..utils.opensearch_client import OpenSearchClient

logger = get_logger(__name__)


def store_operation(func):
    """Decorator to report unexpected backend failures as StoreError; taxonomy errors pass through."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except MnemosyneError:
            raise
        except Exception as e:
            logger.error(f'Graph store {func.__name__} failed: {e}')
            raise StoreError(f'{func.__name__} failed: {e}')

    return wrapper


class GraphStore:
    """Memorygram and relationship persistence with multi-space similarity search."""

    def __init__(self, neptune: Optional[NeptuneClient] = None, opensearch: Optional[OpenSearchClient] = None):
        self.neptune = neptune or NeptuneClient(config.neptune)
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)
        logger.info('Initialized GraphStore')

    def ensure_indexes(self) -> None:
        """Create any missing vector index; failures are logged and left for the first write to surface."""
        try:
            self.opensearch.ensure_indexes()
        except StoreError as e:
            logger.warning(f'Failed to create OpenSearch indexes: {e}')

    # Memorygrams

    @store_operation
    def upsert_memorygram(self, memorygram: Memorygram) -> Optional[Memorygram]:
        """Merge a memorygram keyed by id and index its vectors.

        Args:
            memorygram: Memorygram to persist; embeddings may be empty but not None

        Returns:
            The memorygram read back from the graph, or None if it was not persisted

        Raises:
            InvalidArgumentError: If the memorygram fails validation
            StoreError: If the graph or vector backend fails
        """
        validate_memorygram(memorygram, config.memory.max_content_length)

        stored = self.neptune.upsert_memorygram(memorygram)
        if stored is None:
            logger.warning(f'Memorygram {memorygram.id} could not be read back after upsert')
            return None

        spaces = self.opensearch.index_memorygram(stored)
        logger.debug(f'Upserted memorygram {stored.id} (indexed in {[space.value for space in spaces]})')
        return stored

    @store_operation
    def get_memorygram_by_id(self, memorygram_id: str) -> Optional[Memorygram]:
        return self.neptune.get_memorygram(validate_id(memorygram_id, 'Memorygram id'))

    @store_operation
    def find_similar(self,
                     query_vector: List[float],
                     embedding_space: EmbeddingSpace,
                     top_k: int,
                     exclude_chat_id: Optional[str] = None) -> List[MemorygramWithScore]:
        """Nearest-neighbour search in one embedding space.

        Args:
            query_vector: Query embedding
            embedding_space: Space whose index to search
            top_k: Maximum number of results
            exclude_chat_id: Leave out memorygrams belonging to this chat

        Returns:
            Up to top_k results ordered by descending score

        Raises:
            InvalidArgumentError: If the vector is empty or top_k is not positive
        """
        if not query_vector:
            raise InvalidArgumentError('Query vector must not be empty')
        if top_k is None or top_k <= 0:
            raise InvalidArgumentError(f'top_k must be positive, got {top_k}')
        space = EmbeddingSpace.parse(embedding_space)

        hits = self.opensearch.vector_search(query_vector=list(query_vector),
                                             space=space,
                                             top_k=top_k,
                                             exclude_chat_id=exclude_chat_id)

        results = []
        for hit in hits:
            document = dict(hit.get('document') or {})
            document.setdefault('id', hit.get('id'))
            results.append(MemorygramWithScore(memorygram=record_to_memorygram(document), score=float(hit.get('score') or 0.0)))

        results.sort(key=lambda r: r.score, reverse=True)
        logger.debug(f'find_similar in {space.value} returned {len(results[:top_k])} results')
        return results[:top_k]

    @store_operation
    def get_by_subtype(self, subtype: str) -> List[Memorygram]:
        if not subtype or not subtype.strip():
            raise InvalidArgumentError('Subtype must not be empty')
        return self.neptune.get_memorygrams_by_subtype(subtype)

    @store_operation
    def get_all_chats(self) -> List[Memorygram]:
        """Thread roots: memorygrams with a subtype and no previous link, most recent Timestamp first."""
        return self.neptune.get_chat_roots()

    # Relationships

    @store_operation
    def create_relationship(self,
                            from_id: str,
                            to_id: str,
                            relationship_type: str,
                            weight: float,
                            properties: Optional[str] = None) -> Optional[GraphRelationship]:
        """Create a new typed edge between two existing memorygrams.

        A fresh relationship id is generated on every call, so repeated calls produce distinct edges.

        Returns:
            The created relationship, or None if either endpoint does not exist
        """
        from_id, to_id = validate_relationship_endpoints(from_id, to_id)
        if not relationship_type or not relationship_type.strip():
            raise InvalidArgumentError('Relationship type must not be empty')

        if not self.neptune.memorygram_exists(from_id):
            logger.warning(f'Cannot create {relationship_type}: source memorygram {from_id} not found')
            return None
        if not self.neptune.memorygram_exists(to_id):
            logger.warning(f'Cannot create {relationship_type}: target memorygram {to_id} not found')
            return None

        relationship = GraphRelationship(from_memorygram_id=from_id,
                                         to_memorygram_id=to_id,
                                         relationship_type=relationship_type.strip(),
                                         weight=float(weight),
                                         properties=properties)
        return self.neptune.create_relationship(relationship)

    @store_operation
    def create_or_update_association(self, from_id: str, to_id: str, weight: float) -> Optional[Memorygram]:
        """Upsert the single ASSOCIATED_WITH edge for a (from, to) pair.

        Returns:
            The source memorygram, or None if either endpoint does not exist
        """
        from_id, to_id = validate_relationship_endpoints(from_id, to_id)

        if not self.neptune.memorygram_exists(from_id) or not self.neptune.memorygram_exists(to_id):
            logger.warning(f'Cannot associate {from_id} -> {to_id}: endpoint not found')
            return None

        self.neptune.upsert_association(from_id, to_id, float(weight))
        logger.debug(f'{ASSOCIATED_WITH} {from_id} -> {to_id} set to {weight}')
        return self.neptune.get_memorygram(from_id)

    @store_operation
    def get_relationship_by_id(self, relationship_id: str) -> Optional[GraphRelationship]:
        return self.neptune.get_relationship(validate_id(relationship_id, 'Relationship id'))

    @store_operation
    def update_relationship(self,
                            relationship_id: str,
                            weight: Optional[float] = None,
                            properties: Optional[str] = None,
                            is_active: Optional[bool] = None) -> Optional[GraphRelationship]:
        """Partially update a relationship.

        Raises:
            InvalidArgumentError: If no field to update is supplied
        """
        relationship_id = validate_id(relationship_id, 'Relationship id')
        if weight is None and properties is None and is_active is None:
            raise InvalidArgumentError('At least one of weight, properties or is_active must be supplied')
        return self.neptune.update_relationship(relationship_id, weight=weight, properties=properties, is_active=is_active)

    @store_operation
    def delete_relationship(self, relationship_id: str) -> bool:
        return self.neptune.delete_relationship(validate_id(relationship_id, 'Relationship id'))

    @store_operation
    def get_relationships_by_memorygram_id(self,
                                           memorygram_id: str,
                                           include_incoming: bool = True,
                                           include_outgoing: bool = True) -> List[GraphRelationship]:
        memorygram_id = validate_id(memorygram_id, 'Memorygram id')
        if not include_incoming and not include_outgoing:
            return []
        return self.neptune.get_relationships_for_memorygram(memorygram_id,
                                                             include_incoming=include_incoming,
                                                             include_outgoing=include_outgoing)

    @store_operation
    def get_relationships_by_type(self, relationship_type: str) -> List[GraphRelationship]:
        if not relationship_type or not relationship_type.strip():
            raise InvalidArgumentError('Relationship type must not be empty')
        return self.neptune.get_relationships_by_type(relationship_type.strip())

    @store_operation
    def find_relationships(self,
                           from_id: Optional[str] = None,
                           to_id: Optional[str] = None,
                           relationship_type: Optional[str] = None,
                           min_weight: Optional[float] = None,
                           max_weight: Optional[float] = None,
                           is_active: Optional[bool] = None) -> List[GraphRelationship]:
        """Relationships matching every supplied filter; omitted filters match anything."""
        if from_id:
            from_id = validate_id(from_id, 'From memorygram id')
        if to_id:
            to_id = validate_id(to_id, 'To memorygram id')
        if min_weight is not None and max_weight is not None and min_weight > max_weight:
            raise InvalidArgumentError(f'min_weight {min_weight} is greater than max_weight {max_weight}')

        return self.neptune.find_relationships(from_id=from_id,
                                               to_id=to_id,
                                               relationship_type=relationship_type,
                                               min_weight=min_weight,
                                               max_weight=max_weight,
                                               is_active=is_active)
