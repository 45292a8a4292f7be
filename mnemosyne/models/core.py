"""
Core data models for the memorygram store.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.errors import InvalidArgumentError

NIL_ID = '00000000-0000-0000-0000-000000000000'

ASSOCIATED_WITH = 'ASSOCIATED_WITH'
HAS_CHAT_ID = 'HAS_CHAT_ID'
ROOT_OF = 'ROOT_OF'

CHAT_SUBTYPE = 'Chat'
CHAT_METADATA_SUBTYPE = 'ChatMetadata'


def new_id() -> str:
    """Generate a fresh globally unique id."""
    return str(uuid.uuid4())


def is_nil_id(value: Optional[str]) -> bool:
    """True for a missing, blank or all-zero id."""
    return not value or not str(value).strip() or str(value).strip() == NIL_ID


def validate_id(value: Optional[str], name: str = 'id') -> str:
    """Check that an id is a non-nil UUID string and return it normalized.

    Raises:
        InvalidArgumentError: If the id is nil or malformed
    """
    if is_nil_id(value):
        raise InvalidArgumentError(f'{name} must not be empty')
    try:
        return str(uuid.UUID(str(value).strip()))
    except ValueError:
        raise InvalidArgumentError(f'{name} is not a valid id: {value}')


class MemorygramType(str, Enum):
    """Kinds of memorygram. INVALID marks malformed input and is never persisted."""
    USER_INPUT = 'UserInput'
    ASSISTANT_RESPONSE = 'AssistantResponse'
    EXPERIENCE = 'Experience'
    REFLECTION = 'Reflection'
    INVALID = 'Invalid'

    @classmethod
    def parse(cls, value: Any) -> 'MemorygramType':
        """Parse a stored or user supplied type name; unknown names map to INVALID."""
        if isinstance(value, cls):
            return value
        text = str(value or '').strip().lower()
        for member in cls:
            if member.value.lower() == text or member.name.lower() == text:
                return member
        return cls.INVALID


class EmbeddingSpace(str, Enum):
    """The four embedding spaces; each has its own vector index."""
    TOPICAL = 'Topical'
    CONTENT = 'Content'
    CONTEXT = 'Context'
    METADATA = 'Metadata'

    @property
    def field_name(self) -> str:
        """Name of the Memorygram attribute holding this space's vector."""
        return f'{self.value.lower()}_embedding'

    @property
    def index_suffix(self) -> str:
        return self.value.lower()

    @classmethod
    def parse(cls, value: Any) -> 'EmbeddingSpace':
        if isinstance(value, cls):
            return value
        text = str(value or '').strip().lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        raise InvalidArgumentError(f'Unknown embedding space: {value}')


@dataclass
class Memorygram:
    """A timestamped unit of experience with four embedding vectors."""
    content: str
    type: MemorygramType
    id: str = field(default_factory=new_id)
    subtype: Optional[str] = None
    topical_embedding: List[float] = field(default_factory=list)
    content_embedding: List[float] = field(default_factory=list)
    context_embedding: List[float] = field(default_factory=list)
    metadata_embedding: List[float] = field(default_factory=list)
    source: str = ''
    timestamp: int = 0  # Logical ordering key in epoch seconds, distinct from the audit fields
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    chat_id: Optional[str] = None
    previous_memorygram_id: Optional[str] = None
    next_memorygram_id: Optional[str] = None
    sequence: Optional[int] = None

    def embedding(self, space: EmbeddingSpace) -> List[float]:
        return getattr(self, space.field_name)

    def set_embedding(self, space: EmbeddingSpace, vector: List[float]) -> None:
        setattr(self, space.field_name, list(vector))

    def to_dict(self, include_embeddings: bool = False) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'content': self.content,
            'type': self.type.value,
            'subtype': self.subtype,
            'source': self.source,
            'timestamp': self.timestamp,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
            'chat_id': self.chat_id,
            'previous_memorygram_id': self.previous_memorygram_id,
            'next_memorygram_id': self.next_memorygram_id,
            'sequence': self.sequence
        }
        if include_embeddings:
            for space in EmbeddingSpace:
                data[space.field_name] = list(self.embedding(space))
        return data


@dataclass
class MemorygramWithScore:
    """A memorygram returned from similarity search with its score."""
    memorygram: Memorygram
    score: float

    @property
    def id(self) -> str:
        return self.memorygram.id

    @property
    def content(self) -> str:
        return self.memorygram.content

    def to_dict(self) -> Dict[str, Any]:
        data = self.memorygram.to_dict()
        data['score'] = self.score
        return data


@dataclass
class GraphRelationship:
    """A typed, weighted, directed edge between two memorygrams."""
    from_memorygram_id: str
    to_memorygram_id: str
    relationship_type: str
    weight: float
    id: str = field(default_factory=new_id)
    properties: Optional[str] = None  # Opaque JSON blob
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'from_memorygram_id': self.from_memorygram_id,
            'to_memorygram_id': self.to_memorygram_id,
            'relationship_type': self.relationship_type,
            'weight': self.weight,
            'properties': self.properties,
            'is_active': self.is_active,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }


@dataclass
class MemoryReformulations:
    """Per-space rewrites of a memorygram's content used for per-space embedding."""
    topical: str = ''
    content: str = ''
    context: str = ''
    metadata: str = ''

    def for_space(self, space: EmbeddingSpace) -> str:
        return getattr(self, space.index_suffix)


def validate_content(content: Optional[str], max_length: int) -> None:
    """Reject empty, whitespace-only or oversized content.

    Raises:
        InvalidArgumentError: If the content is unusable
    """
    if content is None or not content.strip():
        raise InvalidArgumentError('Memorygram content must not be empty')
    if len(content) > max_length:
        raise InvalidArgumentError(f'Memorygram content exceeds {max_length} characters')


def validate_memorygram(memorygram: Memorygram, max_length: int) -> None:
    """Construction-time checks applied before any create or update.

    Raises:
        InvalidArgumentError: If the memorygram must not be persisted
    """
    if memorygram is None:
        raise InvalidArgumentError('Memorygram must not be None')
    memorygram.id = validate_id(memorygram.id, 'Memorygram id')
    validate_content(memorygram.content, max_length)
    if MemorygramType.parse(memorygram.type) is MemorygramType.INVALID:
        raise InvalidArgumentError(f'Memorygram type is invalid: {memorygram.type}')
    for space in EmbeddingSpace:
        if memorygram.embedding(space) is None:
            raise InvalidArgumentError(f'{space.value} embedding must not be None')


def validate_relationship_endpoints(from_id: Optional[str], to_id: Optional[str]) -> tuple:
    """Reject relationships whose endpoints are nil or malformed.

    Returns:
        Tuple of normalized (from_id, to_id)
    """
    return validate_id(from_id, 'From memorygram id'), validate_id(to_id, 'To memorygram id')
