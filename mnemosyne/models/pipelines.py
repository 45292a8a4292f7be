"""
Data models for pipeline manifests, execution state and run status.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .core import new_id


@dataclass
class ComponentConfiguration:
    """One configured stage of a pipeline: a stage type tag plus stage-specific settings."""
    name: str
    type: str
    config: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'type': self.type, 'config': dict(self.config)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ComponentConfiguration':
        return cls(name=data.get('name') or '', type=data.get('type') or '', config=dict(data.get('config') or {}))


@dataclass
class PipelineManifest:
    """Definition of a pipeline: an ordered list of component configurations."""
    name: str
    description: str = ''
    components: List[ComponentConfiguration] = field(default_factory=list)
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'components': [component.to_dict() for component in self.components]
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PipelineManifest':
        return cls(id=data.get('id'),
                   name=data.get('name') or '',
                   description=data.get('description') or '',
                   components=[ComponentConfiguration.from_dict(c) for c in data.get('components') or []])


@dataclass
class PipelineExecutionRequest:
    """Input to one pipeline run."""
    user_input: str = ''
    pipeline_id: Optional[str] = None
    session_metadata: Dict[str, Any] = field(default_factory=dict)
    response_channel_metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def chat_id(self) -> Optional[str]:
        value = self.session_metadata.get('chatId')
        return str(value) if value else None


class ContextChunkType:
    """Well-known context chunk types."""
    MEMORY = 'Memory'
    SIMULATION = 'Simulation'
    USER_INPUT = 'UserInput'
    CHAT_HISTORY = 'ChatHistory'


@dataclass
class ContextProvenance:
    """Where a context chunk came from."""
    source: str
    original_id: str = ''
    timestamp: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source': self.source,
            'original_id': self.original_id,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'metadata': dict(self.metadata)
        }


@dataclass
class ContextChunk:
    """One unit of context accumulated by the stages of a run."""
    type: str
    content: str
    provenance: ContextProvenance
    relevance_score: Optional[float] = None
    subtype: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'subtype': self.subtype,
            'content': self.content,
            'relevance_score': self.relevance_score,
            'provenance': self.provenance.to_dict()
        }


@dataclass
class PipelineExecutionState:
    """Mutable state owned by exactly one run."""
    request: PipelineExecutionRequest
    run_id: str = field(default_factory=new_id)
    pipeline_id: Optional[str] = None
    context: List[ContextChunk] = field(default_factory=list)

    def chunks_of_type(self, chunk_type: str) -> List[ContextChunk]:
        return [chunk for chunk in self.context if chunk.type == chunk_type]


class PipelineStatus(str, Enum):
    """Lifecycle of a pipeline run."""
    PENDING = 'Pending'
    RUNNING = 'Running'
    PROCESSING = 'Processing'
    COMPLETED = 'Completed'
    FAILED = 'Failed'

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineStatus.COMPLETED, PipelineStatus.FAILED)


class StageResult(str, Enum):
    """Outcome of a single stage execution."""
    SUCCESS = 'Success'
    ERROR = 'Error'
    SKIPPED = 'Skipped'


@dataclass(frozen=True)
class StageHistoryEntry:
    stage_name: str
    result: StageResult
    timestamp: datetime
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'stage_name': self.stage_name,
            'result': self.result.value,
            'timestamp': self.timestamp.isoformat(),
            'message': self.message
        }


@dataclass(frozen=True)
class PipelineExecutionStatus:
    """Immutable snapshot of a run's progress.

    The executor never mutates a snapshot; every change produces a new one via `evolve` and
    replaces the registry entry, so readers always see a consistent set of fields.
    """
    run_id: str
    pipeline_id: Optional[str]
    status: PipelineStatus
    overall_start_time: datetime
    current_stage_name: Optional[str] = None
    current_stage_start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    message: Optional[str] = None
    result: Optional[Tuple[Dict[str, Any], ...]] = None
    stage_history: Tuple[StageHistoryEntry, ...] = ()

    def evolve(self, **changes) -> 'PipelineExecutionStatus':
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_id': self.run_id,
            'pipeline_id': self.pipeline_id,
            'status': self.status.value,
            'current_stage_name': self.current_stage_name,
            'current_stage_start_time': self.current_stage_start_time.isoformat() if self.current_stage_start_time else None,
            'overall_start_time': self.overall_start_time.isoformat(),
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'message': self.message,
            'result': list(self.result) if self.result is not None else None,
            'stage_history': [entry.to_dict() for entry in self.stage_history]
        }


@dataclass
class ResponseResult:
    """Reply produced for one user message and the memory content that informed it."""
    response: str
    system_prompt: str = ''
    run_id: Optional[str] = None
    memory_ids: List[str] = field(default_factory=list)
    memory_contents: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'response': self.response,
            'system_prompt': self.system_prompt,
            'run_id': self.run_id,
            'memory_ids': list(self.memory_ids),
            'memory_contents': list(self.memory_contents)
        }
