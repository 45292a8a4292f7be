"""
Stage registry: maps the fixed set of stage type tags to stage constructors.
"""

from typing import Callable, Dict, Iterable, List, Optional

from ..models.pipelines import ComponentConfiguration
from ..services.chat_history import ChatHistoryService
from ..services.memory_service import MemoryService
from ..utils.errors import InvalidArgumentError
from ..utils.logging_config import get_logger
from .stages import ChatHistoryStage, MemoryRetrievalStage, NullPipelineStage, PipelineStage, UserInputStage

logger = get_logger(__name__)

StageFactory = Callable[[ComponentConfiguration], PipelineStage]


class StageRegistry:
    """Resolves component configurations to stage instances by type tag (case-insensitive)."""

    def __init__(self):
        self._factories: Dict[str, StageFactory] = {}

    def register(self, tag: str, factory: StageFactory, aliases: Iterable[str] = ()) -> None:
        for name in (tag, *aliases):
            self._factories[name.lower()] = factory

    @property
    def tags(self) -> List[str]:
        return sorted(self._factories)

    def is_registered(self, tag: Optional[str]) -> bool:
        return bool(tag) and tag.lower() in self._factories

    def resolve(self, component: ComponentConfiguration) -> PipelineStage:
        """Build a fresh stage instance for one component.

        Raises:
            InvalidArgumentError: If the component's type tag is not registered
        """
        if not self.is_registered(component.type):
            logger.error(f'Unknown stage type {component.type!r}; registered types: {self.tags}')
            raise InvalidArgumentError(f'Unknown stage type: {component.type!r} (component {component.name!r})')
        return self._factories[component.type.lower()](component)

    def resolve_all(self, components: List[ComponentConfiguration]) -> List[PipelineStage]:
        """Resolve every component before any runs, so a bad manifest fails up front."""
        return [self.resolve(component) for component in components]


def default_registry(memory_service=None, chat_history=None) -> StageRegistry:
    """Registry with the built-in stages.

    Services are created on first use when not supplied, so manifests that only use the null stage
    never connect to a backend.
    """
    services = {}

    def memory():
        if 'memory' not in services:
            if memory_service is not None:
                services['memory'] = memory_service
            else:
                services['memory'] = MemoryService()
        return services['memory']

    def history():
        if 'history' not in services:
            if chat_history is not None:
                services['history'] = chat_history
            else:
                services['history'] = ChatHistoryService(memory())
        return services['history']

    registry = StageRegistry()
    registry.register(NullPipelineStage.stage_type, lambda c: NullPipelineStage(c.name, c.config), aliases=('Null', ))
    registry.register(UserInputStage.stage_type, lambda c: UserInputStage(c.name, c.config))
    registry.register(MemoryRetrievalStage.stage_type, lambda c: MemoryRetrievalStage(memory(), c.name, c.config))
    registry.register(ChatHistoryStage.stage_type, lambda c: ChatHistoryStage(history(), c.name, c.config))
    return registry
