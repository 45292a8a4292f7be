"""
Pipeline stages.

A stage receives the run's execution state, appends context chunks to it and returns it. Blocking
service calls run in a worker thread so runs stay concurrent on one event loop. Built-in stages
absorb their own failures: they log, leave the state unchanged and let the run continue.
"""

import asyncio
from typing import Any, Callable, Dict, Optional

from ..models.core import EmbeddingSpace
from ..models.pipelines import (ContextChunk, ContextChunkType, ContextProvenance, PipelineExecutionState, StageResult)
from ..utils.config import config
from ..utils.errors import InvalidArgumentError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now

logger = get_logger(__name__)

NULL_STAGE_CONTENT = 'Simulated stage completed'


class PipelineStage:
    """Base class for pipeline stages.

    Subclasses implement `_execute_internal`. Call `_skip` to record that the stage had nothing to do.
    Settings are parsed when the stage is built, so a malformed setting fails the run before any stage executes.
    """

    stage_type = 'PipelineStage'

    def __init__(self, name: Optional[str] = None, settings: Optional[Dict[str, Any]] = None):
        self.name = name or self.stage_type
        self.settings = dict(settings or {})
        self.result = StageResult.SUCCESS
        self.message: Optional[str] = None

    def _setting(self, key: str, default: Any, cast: Callable[[Any], Any], minimum: Optional[float] = None) -> Any:
        """Read a numeric setting, raising InvalidArgumentError when it is malformed or below the minimum."""
        raw = self.settings.get(key, default)
        if raw is None:
            return None
        try:
            value = cast(raw)
        except (TypeError, ValueError):
            raise InvalidArgumentError(f'Stage {self.name}: setting {key} must be a number, got {raw!r}')
        if minimum is not None and value < minimum:
            raise InvalidArgumentError(f'Stage {self.name}: setting {key} must be at least {minimum}, got {value}')
        return value

    def _skip(self, reason: str) -> None:
        self.result = StageResult.SKIPPED
        self.message = reason
        logger.debug(f'Stage {self.name} skipped: {reason}')

    def _fail(self, reason: str) -> None:
        self.result = StageResult.ERROR
        self.message = reason
        logger.error(f'Stage {self.name} failed: {reason}')

    async def execute(self, state: PipelineExecutionState, tracker) -> PipelineExecutionState:
        """Report the stage as current on the tracker, then run the stage logic.

        Args:
            state: Execution state of the run
            tracker: Object with `stage_started(stage_name)`, supplied by the executor

        Returns:
            The (possibly same) execution state
        """
        self.result = StageResult.SUCCESS
        self.message = None
        tracker.stage_started(self.name)
        return await self._execute_internal(state)

    async def _execute_internal(self, state: PipelineExecutionState) -> PipelineExecutionState:
        raise NotImplementedError


class NullPipelineStage(PipelineStage):
    """Simulation stage: waits, then appends one Simulation chunk."""

    stage_type = 'NullPipelineStage'

    def __init__(self, name: Optional[str] = None, settings: Optional[Dict[str, Any]] = None):
        super().__init__(name, settings)
        self.delay = self._setting('delaySeconds', config.pipeline.null_stage_delay_seconds, float, minimum=0)

    async def _execute_internal(self, state: PipelineExecutionState) -> PipelineExecutionState:
        if self.delay > 0:
            await asyncio.sleep(self.delay)

        state.context.append(
            ContextChunk(type=ContextChunkType.SIMULATION,
                         content=NULL_STAGE_CONTENT,
                         provenance=ContextProvenance(source=self.name, original_id=state.run_id, timestamp=utc_now())))
        return state


class UserInputStage(PipelineStage):
    """Adds the request's user text as a UserInput chunk."""

    stage_type = 'UserInputStage'

    async def _execute_internal(self, state: PipelineExecutionState) -> PipelineExecutionState:
        text = state.request.user_input
        if not text or not text.strip():
            self._skip('No user input')
            return state

        state.context.append(
            ContextChunk(type=ContextChunkType.USER_INPUT,
                         content=text,
                         provenance=ContextProvenance(source=self.name, original_id=state.run_id, timestamp=utc_now())))
        return state


class MemoryRetrievalStage(PipelineStage):
    """Retrieves memorygrams similar to the user input and adds them as Memory chunks.

    Settings:
        maxChunksToInclude: number of memorygrams to request (default 5)
        minimumSimilarityScore: drop results scoring below this value
        embeddingSpace: space to search (default from MEMORY_DEFAULT_QUERY_SPACE)
    """

    stage_type = 'MemoryRetrievalStage'
    DEFAULT_MAX_CHUNKS = 5

    def __init__(self, memory_service, name: Optional[str] = None, settings: Optional[Dict[str, Any]] = None):
        super().__init__(name, settings)
        self.memory_service = memory_service
        self.top_k = self._setting('maxChunksToInclude', self.DEFAULT_MAX_CHUNKS, int, minimum=1)
        self.minimum_score = self._setting('minimumSimilarityScore', None, float)
        self.space = EmbeddingSpace.parse(self.settings.get('embeddingSpace') or config.memory.default_query_space)

    async def _execute_internal(self, state: PipelineExecutionState) -> PipelineExecutionState:
        query = state.request.user_input
        if not query or not query.strip():
            self._skip('No user input to retrieve memories for')
            return state

        try:
            results = await asyncio.to_thread(self.memory_service.query_memory,
                                              query,
                                              self.top_k,
                                              self.space,
                                              state.request.chat_id)
        except Exception as e:
            self._fail(f'Memory retrieval failed: {e}')
            return state

        added = 0
        for result in results:
            if self.minimum_score is not None and result.score < self.minimum_score:
                continue
            memorygram = result.memorygram
            state.context.append(
                ContextChunk(type=ContextChunkType.MEMORY,
                             subtype=memorygram.type.value,
                             content=result.content,
                             relevance_score=result.score,
                             provenance=ContextProvenance(source=self.name,
                                                          original_id=result.id,
                                                          timestamp=memorygram.updated_at,
                                                          metadata={
                                                              'MemorygramSource': memorygram.source,
                                                              'MemorygramType': memorygram.type.value
                                                          })))
            added += 1

        logger.debug(f'Stage {self.name} added {added} memory chunks for run {state.run_id}')
        return state


class ChatHistoryStage(PipelineStage):
    """Adds the session chat's transcript as ChatHistory chunks, oldest first.

    Settings:
        maxMessages: keep only the most recent N messages (default 10)
    """

    stage_type = 'ChatHistoryStage'
    DEFAULT_MAX_MESSAGES = 10

    def __init__(self, chat_history, name: Optional[str] = None, settings: Optional[Dict[str, Any]] = None):
        super().__init__(name, settings)
        self.chat_history = chat_history
        self.max_messages = self._setting('maxMessages', self.DEFAULT_MAX_MESSAGES, int, minimum=0)

    async def _execute_internal(self, state: PipelineExecutionState) -> PipelineExecutionState:
        chat_id = state.request.chat_id
        if not chat_id:
            self._skip('No chatId in session metadata')
            return state

        try:
            history = await asyncio.to_thread(self.chat_history.get_chat_history, chat_id)
        except Exception as e:
            self._fail(f'Chat history lookup failed: {e}')
            return state

        if self.max_messages > 0:
            history = history[-self.max_messages:]

        for memorygram in history:
            state.context.append(
                ContextChunk(type=ContextChunkType.CHAT_HISTORY,
                             subtype=memorygram.type.value,
                             content=memorygram.content,
                             provenance=ContextProvenance(source=self.name,
                                                          original_id=memorygram.id,
                                                          timestamp=memorygram.created_at,
                                                          metadata={'Timestamp': memorygram.timestamp})))
        return state
