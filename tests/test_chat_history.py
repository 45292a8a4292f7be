import pytest

from mnemosyne.models.core import CHAT_SUBTYPE, HAS_CHAT_ID, ROOT_OF, MemorygramType
from mnemosyne.utils.errors import InvalidArgumentError
from mnemosyne.utils.json_utils import encode_properties


def _build_chat(memory_service, make_memorygram, chat_id, messages):
    """Create the chat structure by hand: Experience root, metadata node, HAS_CHAT_ID and ROOT_OF links."""
    store = memory_service.store
    experience = memory_service.create_memorygram(make_memorygram('root', 'Experience', subtype=CHAT_SUBTYPE))
    metadata = memory_service.create_memorygram(make_memorygram(f'chat:{chat_id}', 'Experience', subtype='ChatMetadata'))
    store.create_relationship(experience.id, metadata.id, HAS_CHAT_ID, 1.0, encode_properties({'chatId': chat_id}))

    created = []
    for content, memorygram_type, timestamp in messages:
        memorygram = memory_service.create_memorygram(make_memorygram(content, memorygram_type, timestamp=timestamp))
        store.create_relationship(experience.id, memorygram.id, ROOT_OF, 1.0)
        created.append(memorygram)
    return experience, created


def test_history_scenario(chat_history, memory_service, make_memorygram):
    x = memory_service.create_memorygram(make_memorygram('Hello world', 'UserInput', timestamp=100))
    y = memory_service.create_memorygram(make_memorygram('Hi there', 'AssistantResponse', timestamp=200))
    e = memory_service.create_memorygram(make_memorygram('root', 'Experience', subtype='Chat'))
    metadata = memory_service.create_memorygram(make_memorygram('chat:C', 'Experience', subtype='ChatMetadata'))
    store = memory_service.store
    store.create_relationship(e.id, metadata.id, HAS_CHAT_ID, 1.0, '{"chatId": "C"}')
    # Link Y first so ordering comes from Timestamp, not link order
    store.create_relationship(e.id, y.id, ROOT_OF, 1.0)
    store.create_relationship(e.id, x.id, ROOT_OF, 1.0)

    assert [m.id for m in chat_history.get_chat_history('C')] == [x.id, y.id]


def test_history_excludes_experience_and_reflection(chat_history, memory_service, make_memorygram):
    _, created = _build_chat(memory_service, make_memorygram, 'c1', [
        ('later answer', 'AssistantResponse', 30),
        ('a reflection', 'Reflection', 20),
        ('first question', 'UserInput', 10),
        ('nested experience', 'Experience', 15),
    ])

    history = chat_history.get_chat_history('c1')

    assert [m.content for m in history] == ['first question', 'later answer']
    assert all(m.type in (MemorygramType.USER_INPUT, MemorygramType.ASSISTANT_RESPONSE) for m in history)
    timestamps = [m.timestamp for m in history]
    assert timestamps == sorted(timestamps)


def test_unknown_chat_has_no_history(chat_history):
    assert chat_history.get_chat_history('nobody') == []
    assert chat_history.get_experience_for_chat('nobody') is None


def test_empty_chat_id_is_invalid(chat_history):
    with pytest.raises(InvalidArgumentError):
        chat_history.get_chat_history('  ')


def test_chat_experiences_most_recent_first(chat_history, memory_service, make_memorygram):
    first, _ = _build_chat(memory_service, make_memorygram, 'first', [])
    second, _ = _build_chat(memory_service, make_memorygram, 'second', [])

    assert [m.id for m in chat_history.get_all_chat_experiences()] == [second.id, first.id]


def test_ensure_chat_experience_creates_once(chat_history, memory_service):
    experience = chat_history.ensure_chat_experience('c9')
    again = chat_history.ensure_chat_experience('c9')

    assert experience.id == again.id
    assert experience.subtype == CHAT_SUBTYPE
    assert len(memory_service.store.get_relationships_by_type(HAS_CHAT_ID)) == 1
    assert [m.id for m in memory_service.get_all_chats()] == [experience.id]


def test_add_message_to_chat(chat_history, memory_service, make_memorygram):
    message = memory_service.create_memorygram(make_memorygram('Hello', 'UserInput', chat_id='c2'))

    relationship = chat_history.add_message_to_chat('c2', message)

    assert relationship.relationship_type == ROOT_OF
    assert [m.id for m in chat_history.get_chat_history('c2')] == [message.id]


def test_chat_structure_nodes_are_not_indexed(chat_history, opensearch):
    experience = chat_history.ensure_chat_experience('c5')

    assert all(experience.id not in documents for documents in opensearch.indexes.values())
    assert all(documents == {} for documents in opensearch.indexes.values())
