"""
Chat history reconstruction over the relationship graph.

A chat has no entity of its own. It is an Experience memorygram (subtype 'Chat') linked by a
HAS_CHAT_ID relationship, whose properties carry the chat id, to a metadata memorygram. The chat's
messages hang off the Experience through outgoing ROOT_OF relationships.
"""

import uuid
from typing import List, Optional

from ..models.core import (CHAT_METADATA_SUBTYPE, CHAT_SUBTYPE, HAS_CHAT_ID, ROOT_OF, GraphRelationship, Memorygram,
                           MemorygramType)
from ..utils.errors import InvalidArgumentError, NotFoundError
from ..utils.json_utils import decode_properties, encode_properties
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_epoch_seconds
from .memory_service import MemoryService

logger = get_logger(__name__)

TRANSCRIPT_TYPES = (MemorygramType.USER_INPUT, MemorygramType.ASSISTANT_RESPONSE)

CHAT_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, 'mnemosyne:chat')


def chat_node_id(chat_id: str, role: str) -> str:
    """Stable id of a chat's structural node, so concurrent thread creation merges into one vertex."""
    return str(uuid.uuid5(CHAT_NAMESPACE, f'{role}:{chat_id}'))


def _validate_chat_id(chat_id: Optional[str]) -> str:
    if chat_id is None or not str(chat_id).strip():
        raise InvalidArgumentError('Chat id must not be empty')
    return str(chat_id).strip()


class ChatHistoryService:
    """Derive chat transcripts and chat listings from the graph, and write new chat threads."""

    def __init__(self, memory_service: Optional[MemoryService] = None):
        self.memory = memory_service or MemoryService()
        self.store = self.memory.store

    def _chat_links(self) -> List[GraphRelationship]:
        return self.store.get_relationships_by_type(HAS_CHAT_ID)

    def _find_experience_id(self, chat_id: str) -> Optional[str]:
        for relationship in self._chat_links():
            if str(decode_properties(relationship.properties).get('chatId', '')) == chat_id:
                return relationship.from_memorygram_id
        return None

    def get_experience_for_chat(self, chat_id: str) -> Optional[Memorygram]:
        """The chat's root Experience memorygram, or None if the chat has none yet."""
        chat_id = _validate_chat_id(chat_id)
        experience = self.store.get_memorygram_by_id(chat_node_id(chat_id, 'experience'))
        if experience is not None:
            return experience

        # Threads not created by ensure_chat_experience are found through their HAS_CHAT_ID link
        experience_id = self._find_experience_id(chat_id)
        if experience_id is None:
            logger.debug(f'No experience found for chat {chat_id}')
            return None
        return self.store.get_memorygram_by_id(experience_id)

    def get_chat_history(self, chat_id: str) -> List[Memorygram]:
        """Transcript of a chat.

        Args:
            chat_id: Chat identifier

        Returns:
            UserInput and AssistantResponse memorygrams ordered by Timestamp ascending; empty when the
            chat has no experience
        """
        experience = self.get_experience_for_chat(chat_id)
        if experience is None:
            return []

        roots = self.store.find_relationships(from_id=experience.id, relationship_type=ROOT_OF)

        messages = []
        seen_ids = set()
        for relationship in roots:
            if relationship.to_memorygram_id in seen_ids:
                continue
            seen_ids.add(relationship.to_memorygram_id)

            memorygram = self.store.get_memorygram_by_id(relationship.to_memorygram_id)
            if memorygram is None:
                logger.warning(f'ROOT_OF target {relationship.to_memorygram_id} of chat {chat_id} is missing')
                continue
            if memorygram.type in TRANSCRIPT_TYPES:
                messages.append(memorygram)

        messages.sort(key=lambda m: m.timestamp)
        logger.debug(f'Chat {chat_id} history has {len(messages)} messages')
        return messages

    def get_all_chat_experiences(self) -> List[Memorygram]:
        """Every chat's Experience memorygram, most recently created first."""
        experiences = []
        seen_ids = set()
        for relationship in self._chat_links():
            if relationship.from_memorygram_id in seen_ids:
                continue
            seen_ids.add(relationship.from_memorygram_id)

            experience = self.store.get_memorygram_by_id(relationship.from_memorygram_id)
            if experience is not None:
                experiences.append(experience)

        experiences.sort(key=lambda m: m.created_at.timestamp() if m.created_at else 0.0, reverse=True)
        return experiences

    def ensure_chat_experience(self, chat_id: str) -> Memorygram:
        """Return the chat's Experience memorygram, creating the thread structure on first use.

        Raises:
            InvalidArgumentError: If the chat id is empty
            NotFoundError: If the thread could not be linked after creation
        """
        chat_id = _validate_chat_id(chat_id)
        existing = self.get_experience_for_chat(chat_id)
        if existing is not None:
            return existing

        # Structural nodes are stored without embeddings so they never appear in similarity search
        now = to_epoch_seconds()
        experience = self.store.upsert_memorygram(
            Memorygram(id=chat_node_id(chat_id, 'experience'),
                       content=f'Chat {chat_id}',
                       type=MemorygramType.EXPERIENCE,
                       subtype=CHAT_SUBTYPE,
                       source='System',
                       chat_id=chat_id,
                       timestamp=now))
        metadata = self.store.upsert_memorygram(
            Memorygram(id=chat_node_id(chat_id, 'metadata'),
                       content=f'chat:{chat_id}',
                       type=MemorygramType.EXPERIENCE,
                       subtype=CHAT_METADATA_SUBTYPE,
                       source='System',
                       chat_id=chat_id,
                       previous_memorygram_id=chat_node_id(chat_id, 'experience'),
                       timestamp=now))
        if experience is None or metadata is None:
            raise NotFoundError(f'Chat {chat_id} experience could not be read back after creation')

        if not self.store.find_relationships(from_id=experience.id, to_id=metadata.id, relationship_type=HAS_CHAT_ID):
            link = self.store.create_relationship(experience.id, metadata.id, HAS_CHAT_ID, 1.0, encode_properties({'chatId': chat_id}))
            if link is None:
                raise NotFoundError(f'Chat {chat_id} experience could not be linked to its metadata')

        logger.info(f'Created experience {experience.id} for chat {chat_id}')
        return experience

    def add_message_to_chat(self, chat_id: str, memorygram: Memorygram) -> Optional[GraphRelationship]:
        """Link a persisted message to its chat with a ROOT_OF relationship."""
        experience = self.ensure_chat_experience(chat_id)
        relationship = self.store.create_relationship(experience.id, memorygram.id, ROOT_OF, 1.0)
        if relationship is None:
            logger.warning(f'Could not link memorygram {memorygram.id} to chat {chat_id}')
        return relationship
