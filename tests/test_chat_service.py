import asyncio
import time

import pytest

from mnemosyne.models.core import ASSOCIATED_WITH, HAS_CHAT_ID, MemorygramType
from mnemosyne.models.pipelines import ComponentConfiguration, PipelineManifest
from mnemosyne.pipelines.executor import PipelineExecutor
from mnemosyne.pipelines.registry import default_registry
from mnemosyne.services.chat_service import ChatService
from mnemosyne.utils.errors import InvalidArgumentError, NotFoundError, StoreError


@pytest.fixture
def executor(pipelines, memory_service, chat_history):
    registry = default_registry(memory_service=memory_service, chat_history=chat_history)
    return PipelineExecutor(pipelines=pipelines, registry=registry, run_timeout_seconds=0)


@pytest.fixture
def chat(chat_history, executor, llm):
    return ChatService(chat_history=chat_history, executor=executor, llm=llm)


@pytest.fixture
def retrieval_pipeline(pipelines):
    manifest = PipelineManifest(name='retrieval',
                                components=[ComponentConfiguration('memories', 'MemoryRetrievalStage', {'maxChunksToInclude': 5})])
    return pipelines.create_pipeline(manifest).id


@pytest.mark.asyncio
async def test_first_message_creates_chat_and_reply(chat, chat_history, memory_service, llm):
    result = await chat.process_user_message('C', 'Hello')

    assert result.response == 'Hi there'
    assert result.memory_ids == []
    history = chat_history.get_chat_history('C')
    assert [(m.type, m.content) for m in history] == [(MemorygramType.USER_INPUT, 'Hello'),
                                                      (MemorygramType.ASSISTANT_RESPONSE, 'Hi there')]
    user, reply = history
    assert reply.previous_memorygram_id == user.id
    assert user.source == 'User'
    assert memory_service.find_relationships(from_id=user.id, to_id=reply.id, relationship_type=ASSOCIATED_WITH)
    assert llm.calls[0]['messages'] == [{'role': 'user', 'content': 'Hello'}]
    assert llm.calls[0]['role'] == 'master'
    assert [m.id for m in memory_service.get_all_chats()] == [chat_history.get_experience_for_chat('C').id]


@pytest.mark.asyncio
async def test_follow_up_includes_transcript(chat, llm):
    await chat.process_user_message('C', 'Hello')
    llm.reply = 'Still here'

    await chat.process_user_message('C', 'Are you there?')

    assert [m['role'] for m in llm.calls[-1]['messages']] == ['user', 'assistant', 'user']
    assert llm.calls[-1]['messages'][-1]['content'] == 'Are you there?'


@pytest.mark.asyncio
async def test_memories_from_other_chats_inform_reply(chat, memory_service, llm, make_memorygram, retrieval_pipeline):
    remembered = memory_service.create_memorygram(make_memorygram('I love hiking in the mountains', chat_id='old', source='User'))

    result = await chat.process_user_message('new', 'Any hiking plans?', retrieval_pipeline)

    assert remembered.id in result.memory_ids
    assert 'I love hiking in the mountains' in result.memory_contents
    assert 'Associated Memories' in llm.calls[0]['system_prompt']
    assert 'I love hiking in the mountains' in llm.calls[0]['system_prompt']
    assert 'Any hiking plans?' not in result.memory_contents


@pytest.mark.asyncio
async def test_missing_pipeline_is_rejected_before_writing(chat, neptune, unknown_id):
    with pytest.raises(NotFoundError):
        await chat.process_user_message('C', 'Hello', unknown_id)
    assert neptune.vertices == {}


@pytest.mark.asyncio
@pytest.mark.parametrize('chat_id,text', [('', 'Hello'), ('C', '   ')])
async def test_invalid_input(chat, chat_id, text):
    with pytest.raises(InvalidArgumentError):
        await chat.process_user_message(chat_id, text)


@pytest.mark.asyncio
async def test_association_failure_does_not_fail_reply(chat, chat_history, memory_service, monkeypatch):

    def broken(*args, **kwargs):
        raise StoreError('graph unavailable')

    monkeypatch.setattr(memory_service, 'create_association', broken)

    result = await chat.process_user_message('C', 'Hello')

    assert result.response == 'Hi there'
    assert len(chat_history.get_chat_history('C')) == 2


@pytest.mark.asyncio
async def test_chat_structure_nodes_are_never_retrieved(chat, retrieval_pipeline):
    await chat.process_user_message('alpha', 'what is the weather')

    result = await chat.process_user_message('beta', 'tell me about chat alpha', retrieval_pipeline)

    assert 'what is the weather' in result.memory_contents
    assert 'Chat alpha' not in result.memory_contents
    assert 'chat:alpha' not in result.memory_contents


@pytest.mark.asyncio
async def test_concurrent_first_messages_share_one_thread(chat, chat_history, memory_service, monkeypatch):
    store = memory_service.store
    upsert = store.upsert_memorygram

    def slow_upsert(memorygram):
        time.sleep(0.05)
        return upsert(memorygram)

    monkeypatch.setattr(store, 'upsert_memorygram', slow_upsert)

    await asyncio.gather(chat.process_user_message('gamma', 'first'), chat.process_user_message('gamma', 'second'))

    assert len(memory_service.get_all_chats()) == 1
    assert len(chat_history.get_all_chat_experiences()) == 1
    experience = chat_history.get_experience_for_chat('gamma')
    assert {r.from_memorygram_id for r in memory_service.get_relationships_by_type(HAS_CHAT_ID)} == {experience.id}
    assert sorted(m.content for m in chat_history.get_chat_history('gamma') if m.type is MemorygramType.USER_INPUT) == ['first', 'second']
