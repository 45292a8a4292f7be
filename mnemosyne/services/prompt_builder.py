"""
Prompt construction for chat replies from a chat transcript and retrieved memory chunks.
"""

from typing import Dict, List, Optional, Tuple

from ..models.core import Memorygram, MemorygramType
from ..models.pipelines import ContextChunk
from ..utils.timestamp_utils import to_iso_str, utc_now

BASE_SYSTEM_PROMPT = """You are Nemo, an assistant with a persistent associative memory.
You weave patterns from past interactions into present understanding. Use the associated memories
below when they are relevant to the conversation and say so when they are not.
Speak with clarity and warmth, and keep answers grounded in what you remember."""

# Rough characters-per-token ratio used to keep prompts inside the model's budget
CHARS_PER_TOKEN = 4


def build_system_prompt(memory_chunks: List[ContextChunk]) -> str:
    lines = [BASE_SYSTEM_PROMPT]

    if memory_chunks:
        lines.extend(['', '---', 'Associated Memories:', '---'])
        for chunk in memory_chunks:
            timestamp = chunk.provenance.timestamp
            lines.append(f'**Timestamp:** {to_iso_str(timestamp) if timestamp else "unknown"}')
            lines.append(f'**Type:** {chunk.provenance.metadata.get("MemorygramType", chunk.type)}')
            lines.append(f'**Source:** {chunk.provenance.metadata.get("MemorygramSource", chunk.provenance.source)}')
            lines.append('**Content:**')
            lines.append(chunk.content)

    lines.extend(['', '---', 'Other Information:', '---', f'**The current date is:** {to_iso_str(utc_now())}'])
    return '\n'.join(lines)


def transcript_to_messages(transcript: List[Memorygram]) -> List[Dict[str, str]]:
    """Turn a chronological transcript into alternating user/assistant messages.

    Consecutive messages from the same role are merged and leading assistant messages are dropped,
    since the conversation must open with a user turn.
    """
    messages: List[Dict[str, str]] = []
    for memorygram in transcript:
        role = 'user' if memorygram.type is MemorygramType.USER_INPUT else 'assistant'
        if not messages and role == 'assistant':
            continue
        if messages and messages[-1]['role'] == role:
            messages[-1]['content'] += f'\n\n{memorygram.content}'
        else:
            messages.append({'role': role, 'content': memorygram.content})
    return messages


def truncate_messages(system_prompt: str, messages: List[Dict[str, str]], max_tokens: int) -> List[Dict[str, str]]:
    """Drop the oldest messages until the prompt fits; the final user message is always kept."""
    budget = max_tokens * CHARS_PER_TOKEN
    if len(system_prompt) + sum(len(m['content']) for m in messages) <= budget or not messages:
        return messages

    last = messages[-1]
    remaining = budget - len(system_prompt) - len(last['content'])
    kept: List[Dict[str, str]] = []
    for message in reversed(messages[:-1]):
        if len(message['content']) > remaining:
            break
        kept.insert(0, message)
        remaining -= len(message['content'])

    while kept and kept[0]['role'] != 'user':
        kept.pop(0)
    return kept + [last]


def build_prompt(transcript: List[Memorygram],
                 memory_chunks: List[ContextChunk],
                 max_tokens: Optional[int] = None) -> Tuple[str, List[Dict[str, str]]]:
    """Build the system prompt and conversation messages for a reply.

    Args:
        transcript: Chat messages in chronological order, ending with the user's new message
        memory_chunks: Memory context chunks from the pipeline run
        max_tokens: Prompt budget in tokens; no truncation when None

    Returns:
        Tuple of (system_prompt, messages)
    """
    system_prompt = build_system_prompt(memory_chunks)
    messages = transcript_to_messages(transcript)
    if max_tokens:
        messages = truncate_messages(system_prompt, messages, max_tokens)
    return system_prompt, messages
