"""
MCP Interface Layer using fastmcp for agent orchestration.

Every tool returns the entity as a dict, or a structured error dict
({'error', 'message', 'status_code'}) for not-found, validation and backend failures.
"""

from typing import Any, Callable, Dict, List, Optional

from fastmcp import FastMCP

from .models.core import Memorygram, MemorygramType
from .models.pipelines import PipelineExecutionRequest, PipelineManifest
from .pipelines.executor import PipelineExecutor
from .pipelines.registry import default_registry
from .services.chat_history import ChatHistoryService
from .services.chat_service import ChatService
from .services.memory_service import MemoryService
from .services.pipelines_service import PipelinesService
from .utils.config import config
from .utils.errors import InternalError, MnemosyneError, NotFoundError
from .utils.health_check import get_health_status
from .utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Mnemosyne')

_services: Dict[str, Any] = {}


def get_services() -> Dict[str, Any]:
    """Build the service graph on first use."""
    if not _services:
        memory = MemoryService()
        memory.store.ensure_indexes()
        chat_history = ChatHistoryService(memory)
        pipelines = PipelinesService()
        executor = PipelineExecutor(pipelines, default_registry(memory, chat_history))
        _services.update(memory=memory,
                         chat_history=chat_history,
                         pipelines=pipelines,
                         executor=executor,
                         chat=ChatService(chat_history, executor))
    return _services


def _error(e: Exception, operation: str) -> Dict[str, Any]:
    if isinstance(e, MnemosyneError):
        logger.warning(f'{operation} failed: {e.message}')
        return e.to_dict()
    logger.error(f'Unexpected error in {operation}: {e}')
    return InternalError(f'{operation} failed: {e}').to_dict()


def _run(operation: str, func: Callable[[], Any]) -> Dict[str, Any]:
    try:
        return func()
    except Exception as e:
        return _error(e, operation)


def _found(value: Any, message: str) -> Dict[str, Any]:
    if value is None:
        return NotFoundError(message).to_dict()
    return value.to_dict()


# Memorygrams


@mcp.tool()
def create_memorygram(content: str,
                      memorygram_type: str,
                      subtype: Optional[str] = None,
                      source: str = '',
                      chat_id: Optional[str] = None) -> Dict[str, Any]:
    """Create a memorygram.

    Args:
        content: Memory content
        memorygram_type: UserInput, AssistantResponse, Experience or Reflection
        subtype: Optional discriminator such as 'Chat'
        source: Provenance, e.g. 'User'
        chat_id: Chat the memorygram belongs to

    Returns:
        The created memorygram
    """
    memorygram = Memorygram(content=content,
                            type=MemorygramType.parse(memorygram_type),
                            subtype=subtype,
                            source=source,
                            chat_id=chat_id)
    return _run('create_memorygram',
                lambda: _found(get_services()['memory'].create_memorygram(memorygram), 'Memorygram was not persisted'))


@mcp.tool()
def get_memorygram(memorygram_id: str) -> Dict[str, Any]:
    """Get a memorygram by id."""
    return _run('get_memorygram',
                lambda: _found(get_services()['memory'].get_memorygram(memorygram_id), f'Memorygram {memorygram_id} not found'))


@mcp.tool()
def update_memorygram(memorygram_id: str,
                      content: str,
                      memorygram_type: Optional[str] = None,
                      subtype: Optional[str] = None,
                      source: Optional[str] = None) -> Dict[str, Any]:
    """Replace a memorygram's content and re-embed it."""
    parsed_type = MemorygramType.parse(memorygram_type) if memorygram_type else None
    return _run(
        'update_memorygram', lambda: _found(
            get_services()['memory'].update_memorygram(memorygram_id, content, parsed_type, subtype, source),
            f'Memorygram {memorygram_id} not found'))


@mcp.tool()
def associate_memorygrams(from_id: str, to_id: str, weight: float = 1.0) -> Dict[str, Any]:
    """Create or overwrite the association between two memorygrams; returns the source memorygram."""
    return _run(
        'associate_memorygrams', lambda: _found(get_services()['memory'].create_association(from_id, to_id, weight),
                                                f'Memorygram {from_id} or {to_id} not found'))


@mcp.tool()
def query_memory(query: str,
                 top_k: int = 5,
                 embedding_space: str = 'Content',
                 exclude_chat_id: Optional[str] = None) -> Dict[str, Any]:
    """Find memorygrams similar to a query.

    Args:
        query: Natural language query
        top_k: Maximum number of results (default: 5)
        embedding_space: Topical, Content, Context or Metadata
        exclude_chat_id: Leave out memorygrams of this chat

    Returns:
        {'results': [memorygram with score, ...]} ordered by descending score
    """

    def search():
        results = get_services()['memory'].query_memory(query, top_k, embedding_space, exclude_chat_id)
        logger.debug(f'MCP query returned {len(results)} memorygrams')
        return {'results': [result.to_dict() for result in results]}

    return _run('query_memory', search)


# Relationships


@mcp.tool()
def create_relationship(from_id: str,
                        to_id: str,
                        relationship_type: str,
                        weight: float = 1.0,
                        properties: Optional[str] = None) -> Dict[str, Any]:
    """Create a new typed relationship between two memorygrams."""
    return _run(
        'create_relationship', lambda: _found(
            get_services()['memory'].create_relationship(from_id, to_id, relationship_type, weight, properties),
            f'Memorygram {from_id} or {to_id} not found'))


@mcp.tool()
def update_relationship(relationship_id: str,
                        weight: Optional[float] = None,
                        properties: Optional[str] = None,
                        is_active: Optional[bool] = None) -> Dict[str, Any]:
    """Update a relationship's weight, properties or active flag."""
    return _run(
        'update_relationship', lambda: _found(
            get_services()['memory'].update_relationship(relationship_id, weight, properties, is_active),
            f'Relationship {relationship_id} not found'))


@mcp.tool()
def delete_relationship(relationship_id: str) -> Dict[str, Any]:
    """Delete a relationship."""

    def delete():
        if not get_services()['memory'].delete_relationship(relationship_id):
            return NotFoundError(f'Relationship {relationship_id} not found').to_dict()
        return {'deleted': True, 'id': relationship_id}

    return _run('delete_relationship', delete)


@mcp.tool()
def find_relationships(from_id: Optional[str] = None,
                       to_id: Optional[str] = None,
                       relationship_type: Optional[str] = None,
                       min_weight: Optional[float] = None,
                       max_weight: Optional[float] = None,
                       is_active: Optional[bool] = None) -> Dict[str, Any]:
    """Find relationships matching every supplied filter."""

    def find():
        relationships = get_services()['memory'].find_relationships(from_id=from_id,
                                                                    to_id=to_id,
                                                                    relationship_type=relationship_type,
                                                                    min_weight=min_weight,
                                                                    max_weight=max_weight,
                                                                    is_active=is_active)
        return {'relationships': [relationship.to_dict() for relationship in relationships]}

    return _run('find_relationships', find)


# Chats


@mcp.tool()
def get_chat_history(chat_id: str) -> Dict[str, Any]:
    """Chat transcript in chronological order."""

    def history():
        messages = get_services()['chat_history'].get_chat_history(chat_id)
        return {'chat_id': chat_id, 'messages': [message.to_dict() for message in messages]}

    return _run('get_chat_history', history)


@mcp.tool()
def list_chats() -> Dict[str, Any]:
    """Every chat's Experience memorygram, most recent first."""
    return _run('list_chats',
                lambda: {'chats': [chat.to_dict() for chat in get_services()['chat_history'].get_all_chat_experiences()]})


@mcp.tool()
async def send_message(chat_id: str, message: str, pipeline_id: Optional[str] = None) -> Dict[str, Any]:
    """Process one user message and return the assistant's reply.

    Args:
        chat_id: Chat identifier
        message: User message
        pipeline_id: Retrieval pipeline to run before replying

    Returns:
        The reply plus the memory content that informed it
    """
    try:
        result = await get_services()['chat'].process_user_message(chat_id, message, pipeline_id)
        return result.to_dict()
    except Exception as e:
        return _error(e, 'send_message')


# Pipelines


@mcp.tool()
def create_pipeline(name: str, description: str = '', components: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """Create a pipeline manifest.

    Args:
        name: Pipeline name
        description: Pipeline description
        components: Ordered list of {'name', 'type', 'config'} stage configurations

    Returns:
        The created manifest including its id
    """
    manifest = PipelineManifest.from_dict({'name': name, 'description': description, 'components': components or []})
    return _run('create_pipeline', lambda: get_services()['pipelines'].create_pipeline(manifest).to_dict())


@mcp.tool()
def get_pipeline(pipeline_id: str) -> Dict[str, Any]:
    """Get a pipeline manifest."""
    return _run('get_pipeline',
                lambda: _found(get_services()['pipelines'].get_pipeline(pipeline_id), f'Pipeline {pipeline_id} not found'))


@mcp.tool()
def list_pipelines() -> Dict[str, Any]:
    """All pipeline manifests."""
    return _run('list_pipelines',
                lambda: {'pipelines': [manifest.to_dict() for manifest in get_services()['pipelines'].get_all_pipelines()]})


@mcp.tool()
def update_pipeline(pipeline_id: str,
                    name: str,
                    description: str = '',
                    components: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """Replace a pipeline manifest."""
    manifest = PipelineManifest.from_dict({'name': name, 'description': description, 'components': components or []})
    return _run(
        'update_pipeline', lambda: _found(get_services()['pipelines'].update_pipeline(pipeline_id, manifest),
                                          f'Pipeline {pipeline_id} not found'))


@mcp.tool()
def delete_pipeline(pipeline_id: str) -> Dict[str, Any]:
    """Delete a pipeline manifest."""

    def delete():
        if not get_services()['pipelines'].delete_pipeline(pipeline_id):
            return NotFoundError(f'Pipeline {pipeline_id} not found').to_dict()
        return {'deleted': True, 'id': pipeline_id}

    return _run('delete_pipeline', delete)


@mcp.tool()
async def execute_pipeline(pipeline_id: str,
                           user_input: str = '',
                           session_metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Start a pipeline run and return its initial status; poll with get_pipeline_status."""
    try:
        request = PipelineExecutionRequest(user_input=user_input, pipeline_id=pipeline_id, session_metadata=session_metadata or {})
        status = await get_services()['executor'].execute_pipeline(pipeline_id, request)
        return status.to_dict()
    except Exception as e:
        return _error(e, 'execute_pipeline')


@mcp.tool()
def get_pipeline_status(run_id: str) -> Dict[str, Any]:
    """Current status of a pipeline run."""
    return _run('get_pipeline_status',
                lambda: _found(get_services()['executor'].get_execution_status(run_id), f'Run {run_id} not found'))


@mcp.tool()
def health() -> Dict[str, Any]:
    """Health of Neptune, OpenSearch and Bedrock."""
    return get_health_status()


if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
