"""
Chat service: process one user message into an assistant reply backed by memory retrieval.
"""

import asyncio
from typing import Optional

from ..models.core import ASSOCIATED_WITH, Memorygram, MemorygramType, validate_content
from ..models.pipelines import ContextChunkType, PipelineExecutionRequest, PipelineStatus, ResponseResult
from ..pipelines.executor import PipelineExecutor
from ..utils.bedrock_llm import MASTER_ROLE, BedrockLLM
from ..utils.config import config
from ..utils.errors import InvalidArgumentError, MnemosyneError, NotFoundError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_epoch_seconds
from .chat_history import ChatHistoryService
from .prompt_builder import build_prompt

logger = get_logger(__name__)

USER_SOURCE = 'User'
ASSISTANT_SOURCE = 'Assistant'
ASSOCIATION_WEIGHT = 1.0


class ChatService:
    """Persist chat turns, run the retrieval pipeline and generate replies."""

    def __init__(self,
                 chat_history: Optional[ChatHistoryService] = None,
                 executor: Optional[PipelineExecutor] = None,
                 llm: Optional[BedrockLLM] = None):
        self.chat_history = chat_history or ChatHistoryService()
        self.memory = self.chat_history.memory
        self.executor = executor or PipelineExecutor()
        self.llm = llm or BedrockLLM(config.bedrock_llm)

    async def _persist_message(self, chat_id: str, memorygram: Memorygram) -> Memorygram:
        stored = await asyncio.to_thread(self.memory.create_memorygram, memorygram)
        if stored is None:
            raise NotFoundError(f'{memorygram.type.value} memorygram for chat {chat_id} could not be read back')
        await asyncio.to_thread(self.chat_history.add_message_to_chat, chat_id, stored)
        return stored

    async def process_user_message(self, chat_id: str, user_text: str, pipeline_id: Optional[str] = None) -> ResponseResult:
        """Handle one user message end to end.

        Args:
            chat_id: Chat the message belongs to
            user_text: The user's message
            pipeline_id: Retrieval pipeline to run; None runs no stages

        Returns:
            ResponseResult with the reply and the memory content that informed it

        Raises:
            InvalidArgumentError: If the chat id or text is empty
            NotFoundError: If the pipeline does not exist
            UpstreamError: If embedding or reply generation fails
        """
        if not chat_id or not str(chat_id).strip():
            raise InvalidArgumentError('Chat id must not be empty')
        chat_id = str(chat_id).strip()
        validate_content(user_text, config.memory.max_content_length)
        if pipeline_id and await asyncio.to_thread(self.executor.pipelines.get_pipeline, pipeline_id) is None:
            raise NotFoundError(f'Pipeline {pipeline_id} not found')

        await asyncio.to_thread(self.chat_history.ensure_chat_experience, chat_id)

        user_message = await self._persist_message(
            chat_id,
            Memorygram(content=user_text,
                       type=MemorygramType.USER_INPUT,
                       source=USER_SOURCE,
                       chat_id=chat_id,
                       timestamp=to_epoch_seconds()))
        logger.info(f'Stored user message {user_message.id} for chat {chat_id}')

        request = PipelineExecutionRequest(user_input=user_text, pipeline_id=pipeline_id, session_metadata={'chatId': chat_id})
        status, state = await self.executor.run_pipeline(pipeline_id, request)
        memory_chunks = []
        if status is not None and status.status is PipelineStatus.COMPLETED:
            memory_chunks = state.chunks_of_type(ContextChunkType.MEMORY)
        else:
            logger.warning(f'Pipeline run {status.run_id if status else None} for chat {chat_id} did not complete: '
                           f'{status.message if status else "no status"}; replying without memory context')

        transcript = await asyncio.to_thread(self.chat_history.get_chat_history, chat_id)
        transcript = [m for m in transcript if m.id != user_message.id] + [user_message]
        system_prompt, messages = build_prompt(transcript, memory_chunks, config.bedrock_llm.max_tokens)

        reply_text = await asyncio.to_thread(self.llm.generate_completion, messages, MASTER_ROLE, system_prompt)

        reply = await self._persist_message(
            chat_id,
            Memorygram(content=reply_text,
                       type=MemorygramType.ASSISTANT_RESPONSE,
                       source=ASSISTANT_SOURCE,
                       chat_id=chat_id,
                       previous_memorygram_id=user_message.id,
                       timestamp=max(to_epoch_seconds(), user_message.timestamp)))
        logger.info(f'Stored assistant reply {reply.id} for chat {chat_id}')

        try:
            await asyncio.to_thread(self.memory.create_association, user_message.id, reply.id, ASSOCIATION_WEIGHT)
        except MnemosyneError as e:
            logger.warning(f'Failed to create {ASSOCIATED_WITH} {user_message.id} -> {reply.id}: {e.message}')

        return ResponseResult(response=reply_text,
                              system_prompt=system_prompt,
                              run_id=status.run_id if status else None,
                              memory_ids=[chunk.provenance.original_id for chunk in memory_chunks],
                              memory_contents=[chunk.content for chunk in memory_chunks])
