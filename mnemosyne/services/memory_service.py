"""
Memory service: validation, embedding generation and delegation to the graph store.
"""

from typing import List, Optional

from ..models.core import (EmbeddingSpace, GraphRelationship, Memorygram, MemorygramType, MemorygramWithScore,
                           validate_content, validate_id, validate_memorygram)
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.config import config
from ..utils.errors import InvalidArgumentError, MnemosyneError, UpstreamError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_epoch_seconds
from .graph_store import GraphStore
from .semantic_reformulator import SemanticReformulator

logger = get_logger(__name__)

SHARED_EMBEDDING_MODE = 'shared'
PER_SPACE_EMBEDDING_MODE = 'per_space'


class MemoryService:
    """Create, update and query memorygrams; pass relationship operations through to the store."""

    def __init__(self,
                 store: Optional[GraphStore] = None,
                 embed: Optional[BedrockEmbed] = None,
                 reformulator: Optional[SemanticReformulator] = None,
                 embedding_mode: Optional[str] = None):
        """Initialize the memory service.

        Args:
            store: Graph store; built from global config when omitted
            embed: Embedding client; built from global config when omitted
            reformulator: Reformulator used in per-space mode; built lazily when needed
            embedding_mode: 'shared' or 'per_space'; defaults to MEMORY_EMBEDDING_MODE
        """
        self.store = store or GraphStore()
        self.embed = embed or BedrockEmbed(config.bedrock_embed)
        self.embedding_mode = (embedding_mode or config.memory.embedding_mode).strip().lower()
        if self.embedding_mode not in (SHARED_EMBEDDING_MODE, PER_SPACE_EMBEDDING_MODE):
            raise InvalidArgumentError(f'Unknown embedding mode: {self.embedding_mode}')
        self._reformulator = reformulator

        logger.info(f'Initialized MemoryService (embedding mode: {self.embedding_mode})')

    @property
    def reformulator(self) -> SemanticReformulator:
        if self._reformulator is None:
            self._reformulator = SemanticReformulator()
        return self._reformulator

    def _embed(self, memorygram: Memorygram) -> None:
        """Populate all four embedding fields from the memorygram's content.

        Raises:
            UpstreamError: If any embedding or reformulation call fails
        """
        try:
            if self.embedding_mode == SHARED_EMBEDDING_MODE:
                vector = self.embed.get_embedding(memorygram.content)
                for space in EmbeddingSpace:
                    memorygram.set_embedding(space, vector)
            else:
                reformulations = self.reformulator.reformulate(memorygram.content)
                for space in EmbeddingSpace:
                    memorygram.set_embedding(space, self.embed.get_embedding(reformulations.for_space(space)))
        except MnemosyneError as e:
            logger.error(f'Embedding failed for memorygram {memorygram.id}: {e.message}')
            raise
        except Exception as e:
            logger.error(f'Unexpected embedding error for memorygram {memorygram.id}: {e}')
            raise UpstreamError(f'Embedding failed: {e}')

    def create_memorygram(self, memorygram: Memorygram) -> Optional[Memorygram]:
        """Validate, embed and persist a new memorygram.

        Args:
            memorygram: Memorygram whose embeddings may be unset

        Returns:
            Persisted memorygram, or None if the store could not read it back

        Raises:
            InvalidArgumentError: If the memorygram is invalid
            UpstreamError: If embedding fails; nothing is written
        """
        validate_memorygram(memorygram, config.memory.max_content_length)
        if not memorygram.timestamp:
            memorygram.timestamp = to_epoch_seconds()

        self._embed(memorygram)
        stored = self.store.upsert_memorygram(memorygram)
        if stored is not None:
            logger.info(f'Created memorygram {stored.id} ({stored.type.value})')
        return stored

    def update_memorygram(self,
                          memorygram_id: str,
                          content: str,
                          memorygram_type: Optional[MemorygramType] = None,
                          subtype: Optional[str] = None,
                          source: Optional[str] = None) -> Optional[Memorygram]:
        """Replace a memorygram's content (and optionally type, subtype, source) and re-embed it.

        Returns:
            Updated memorygram, or None if no memorygram has the id

        Raises:
            InvalidArgumentError: If the id, content or type is invalid
            UpstreamError: If embedding fails; nothing is written
        """
        memorygram_id = validate_id(memorygram_id, 'Memorygram id')
        validate_content(content, config.memory.max_content_length)
        if memorygram_type is not None and MemorygramType.parse(memorygram_type) is MemorygramType.INVALID:
            raise InvalidArgumentError(f'Memorygram type is invalid: {memorygram_type}')

        existing = self.store.get_memorygram_by_id(memorygram_id)
        if existing is None:
            logger.debug(f'Memorygram not found for update: {memorygram_id}')
            return None

        existing.content = content
        if memorygram_type is not None:
            existing.type = MemorygramType.parse(memorygram_type)
        if subtype is not None:
            existing.subtype = subtype
        if source is not None:
            existing.source = source

        self._embed(existing)
        updated = self.store.upsert_memorygram(existing)
        logger.info(f'Updated memorygram {memorygram_id}')
        return updated

    def get_memorygram(self, memorygram_id: str) -> Optional[Memorygram]:
        return self.store.get_memorygram_by_id(memorygram_id)

    def get_by_subtype(self, subtype: str) -> List[Memorygram]:
        return self.store.get_by_subtype(subtype)

    def get_all_chats(self) -> List[Memorygram]:
        return self.store.get_all_chats()

    def create_association(self, from_id: str, to_id: str, weight: float) -> Optional[Memorygram]:
        """Create or overwrite the association between two memorygrams; returns the source memorygram."""
        return self.store.create_or_update_association(from_id, to_id, weight)

    def query_memory(self,
                     text: str,
                     top_k: Optional[int] = None,
                     space: Optional[EmbeddingSpace] = None,
                     exclude_chat_id: Optional[str] = None) -> List[MemorygramWithScore]:
        """Find memorygrams similar to a piece of text.

        Args:
            text: Query text
            top_k: Maximum results; defaults to MEMORY_DEFAULT_TOP_K
            space: Embedding space to search; defaults to MEMORY_DEFAULT_QUERY_SPACE
            exclude_chat_id: Leave out memorygrams of this chat

        Returns:
            Results ordered by descending score

        Raises:
            InvalidArgumentError: If the text is empty or top_k is not positive
            UpstreamError: If the query embedding fails
        """
        if not text or not text.strip():
            raise InvalidArgumentError('Query text must not be empty')
        top_k = config.memory.default_top_k if top_k is None else top_k
        if top_k <= 0:
            raise InvalidArgumentError(f'top_k must be positive, got {top_k}')
        space = EmbeddingSpace.parse(space or config.memory.default_query_space)

        try:
            vector = self.embed.get_query_embedding(text)
        except MnemosyneError:
            raise
        except Exception as e:
            logger.error(f'Unexpected error embedding query: {e}')
            raise UpstreamError(f'Query embedding failed: {e}')

        return self.store.find_similar(vector, space, top_k, exclude_chat_id=exclude_chat_id)

    # Relationship pass-throughs

    def create_relationship(self,
                            from_id: str,
                            to_id: str,
                            relationship_type: str,
                            weight: float,
                            properties: Optional[str] = None) -> Optional[GraphRelationship]:
        return self.store.create_relationship(from_id, to_id, relationship_type, weight, properties)

    def get_relationship(self, relationship_id: str) -> Optional[GraphRelationship]:
        return self.store.get_relationship_by_id(relationship_id)

    def update_relationship(self,
                            relationship_id: str,
                            weight: Optional[float] = None,
                            properties: Optional[str] = None,
                            is_active: Optional[bool] = None) -> Optional[GraphRelationship]:
        return self.store.update_relationship(relationship_id, weight=weight, properties=properties, is_active=is_active)

    def delete_relationship(self, relationship_id: str) -> bool:
        return self.store.delete_relationship(relationship_id)

    def get_relationships_by_memorygram(self,
                                        memorygram_id: str,
                                        include_incoming: bool = True,
                                        include_outgoing: bool = True) -> List[GraphRelationship]:
        return self.store.get_relationships_by_memorygram_id(memorygram_id, include_incoming, include_outgoing)

    def get_relationships_by_type(self, relationship_type: str) -> List[GraphRelationship]:
        return self.store.get_relationships_by_type(relationship_type)

    def find_relationships(self, **filters) -> List[GraphRelationship]:
        return self.store.find_relationships(**filters)
