from unittest.mock import MagicMock

import pytest

from mnemosyne.models.core import EmbeddingSpace
from mnemosyne.models.pipelines import (ComponentConfiguration, ContextChunkType, PipelineExecutionRequest, PipelineExecutionState,
                                        StageResult)
from mnemosyne.pipelines.registry import StageRegistry, default_registry
from mnemosyne.pipelines.stages import (NULL_STAGE_CONTENT, ChatHistoryStage, MemoryRetrievalStage, NullPipelineStage,
                                        UserInputStage)
from mnemosyne.utils.errors import InvalidArgumentError


class RecordingTracker:

    def __init__(self):
        self.started = []

    def stage_started(self, stage_name):
        self.started.append(stage_name)


def _state(user_input='', chat_id=None):
    metadata = {'chatId': chat_id} if chat_id else {}
    return PipelineExecutionState(request=PipelineExecutionRequest(user_input=user_input, session_metadata=metadata))


@pytest.fixture
def tracker():
    return RecordingTracker()


@pytest.mark.asyncio
async def test_null_stage_appends_one_simulation_chunk(tracker):
    stage = NullPipelineStage('sim', {'delaySeconds': 0})
    state = _state()

    result = await stage.execute(state, tracker)

    assert result is state
    assert tracker.started == ['sim']
    assert [(c.type, c.content) for c in state.context] == [(ContextChunkType.SIMULATION, NULL_STAGE_CONTENT)]
    assert state.context[0].provenance.original_id == state.run_id
    assert stage.result is StageResult.SUCCESS


@pytest.mark.asyncio
async def test_user_input_stage_skips_empty_input(tracker):
    stage = UserInputStage()
    state = _state('   ')

    await stage.execute(state, tracker)

    assert state.context == []
    assert stage.result is StageResult.SKIPPED
    assert tracker.started == ['UserInputStage']


@pytest.mark.asyncio
async def test_user_input_stage_adds_text(tracker):
    state = _state('Hello')
    await UserInputStage().execute(state, tracker)
    assert [(c.type, c.content) for c in state.context] == [(ContextChunkType.USER_INPUT, 'Hello')]


class TestMemoryRetrieval:

    @pytest.mark.asyncio
    async def test_adds_memory_chunks_with_provenance(self, memory_service, tracker, make_memorygram):
        memorygram = memory_service.create_memorygram(make_memorygram('hello world', source='User', chat_id='other'))
        stage = MemoryRetrievalStage(memory_service, 'memories', {'maxChunksToInclude': 3, 'embeddingSpace': 'Content'})
        state = _state('hello', chat_id='current')

        await stage.execute(state, tracker)

        assert len(state.context) == 1
        chunk = state.context[0]
        assert chunk.type == ContextChunkType.MEMORY
        assert chunk.content == 'hello world'
        assert chunk.relevance_score > 0
        assert chunk.provenance.original_id == memorygram.id
        assert chunk.provenance.metadata == {'MemorygramSource': 'User', 'MemorygramType': 'UserInput'}

    @pytest.mark.asyncio
    async def test_excludes_session_chat(self, memory_service, opensearch, tracker, make_memorygram):
        memory_service.create_memorygram(make_memorygram('hello world', chat_id='current'))
        state = _state('hello', chat_id='current')

        await MemoryRetrievalStage(memory_service).execute(state, tracker)

        assert state.context == []
        assert opensearch.searches[-1]['exclude_chat_id'] == 'current'
        assert opensearch.searches[-1]['top_k'] == MemoryRetrievalStage.DEFAULT_MAX_CHUNKS

    @pytest.mark.asyncio
    async def test_minimum_score_filters_results(self, memory_service, tracker, make_memorygram):
        memory_service.create_memorygram(make_memorygram('hello world'))
        state = _state('hello')

        await MemoryRetrievalStage(memory_service, settings={'minimumSimilarityScore': 1.5}).execute(state, tracker)

        assert state.context == []

    @pytest.mark.asyncio
    async def test_failure_is_absorbed(self, tracker):
        memory_service = MagicMock()
        memory_service.query_memory.side_effect = RuntimeError('index unavailable')
        stage = MemoryRetrievalStage(memory_service, settings={'embeddingSpace': EmbeddingSpace.TOPICAL.value})
        state = _state('hello')

        result = await stage.execute(state, tracker)

        assert result is state
        assert state.context == []
        assert stage.result is StageResult.ERROR
        assert 'index unavailable' in stage.message


@pytest.mark.asyncio
async def test_chat_history_stage_keeps_most_recent(chat_history, tracker, make_memorygram):
    memory = chat_history.memory
    for i in range(3):
        message = memory.create_memorygram(make_memorygram(f'message {i}', timestamp=10 + i))
        chat_history.add_message_to_chat('c1', message)
    state = _state('next', chat_id='c1')

    await ChatHistoryStage(chat_history, settings={'maxMessages': 2}).execute(state, tracker)

    assert [c.content for c in state.context] == ['message 1', 'message 2']
    assert all(c.type == ContextChunkType.CHAT_HISTORY for c in state.context)


@pytest.mark.asyncio
async def test_chat_history_stage_skips_without_chat(chat_history, tracker):
    stage = ChatHistoryStage(chat_history)
    await stage.execute(_state('hello'), tracker)
    assert stage.result is StageResult.SKIPPED


class TestRegistry:

    def test_resolves_case_insensitively_and_by_alias(self, memory_service):
        registry = default_registry(memory_service=memory_service)

        assert isinstance(registry.resolve(ComponentConfiguration('a', 'nullpipelinestage')), NullPipelineStage)
        assert isinstance(registry.resolve(ComponentConfiguration('b', 'Null')), NullPipelineStage)
        stage = registry.resolve(ComponentConfiguration('c', 'MemoryRetrievalStage', {'maxChunksToInclude': 2}))
        assert stage.memory_service is memory_service
        assert stage.settings == {'maxChunksToInclude': 2}

    def test_each_resolve_builds_a_fresh_stage(self):
        registry = default_registry(memory_service=MagicMock(), chat_history=MagicMock())
        component = ComponentConfiguration('a', 'NullPipelineStage')
        assert registry.resolve(component) is not registry.resolve(component)

    def test_unknown_tag(self):
        with pytest.raises(InvalidArgumentError, match='Teleport'):
            StageRegistry().resolve(ComponentConfiguration('x', 'Teleport'))


class TestSettings:

    @pytest.mark.parametrize('settings', [{'minimumSimilarityScore': 'high'}, {'maxChunksToInclude': 0}, {'maxChunksToInclude': 'many'},
                                          {'embeddingSpace': 'Astral'}])
    def test_malformed_retrieval_settings_rejected_at_construction(self, settings):
        with pytest.raises(InvalidArgumentError):
            MemoryRetrievalStage(MagicMock(), 'memories', settings)

    def test_malformed_history_and_null_settings(self):
        with pytest.raises(InvalidArgumentError):
            ChatHistoryStage(MagicMock(), settings={'maxMessages': 'all'})
        with pytest.raises(InvalidArgumentError):
            NullPipelineStage(settings={'delaySeconds': -1})

    def test_numeric_strings_are_accepted(self):
        stage = MemoryRetrievalStage(MagicMock(), settings={'maxChunksToInclude': '3', 'minimumSimilarityScore': '0.25'})
        assert (stage.top_k, stage.minimum_score, stage.space) == (3, 0.25, EmbeddingSpace.parse('Content'))
