"""
Health check utilities for the application.
"""

from typing import Any, Callable, Dict, Optional

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import config
from .logging_config import get_logger
from .neptune_client import NeptuneClient
from .opensearch_client import OpenSearchClient

logger = get_logger(__name__)


def _component_status(service: str, detail_key: str, detail: str, factory: Callable[[], Any]) -> Dict[str, Any]:
    """Build a component and run its health check; any failure marks it unhealthy."""
    try:
        healthy = bool(factory().health_check())
        return {'healthy': healthy, 'service': service, detail_key: detail}
    except Exception as e:
        logger.warning(f'{service} health check failed: {e}')
        return {'healthy': False, 'service': service, detail_key: detail, 'error': str(e)}


def get_health_status(components: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Args:
        components: Optional already-built clients keyed by 'neptune', 'opensearch', 'bedrock_embed'
            and 'bedrock_llm'; missing ones are built from global config

    Returns:
        Dictionary with health status of each component
    """
    components = components or {}

    def provided(name: str, build: Callable[[], Any]) -> Callable[[], Any]:
        return (lambda: components[name]) if name in components else build

    return {
        'neptune':
            _component_status('Amazon Neptune', 'endpoint', config.neptune.endpoint,
                              provided('neptune', lambda: NeptuneClient(config.neptune))),
        'opensearch':
            _component_status('Amazon OpenSearch', 'endpoint', config.opensearch.endpoint,
                              provided('opensearch', lambda: OpenSearchClient(config.opensearch))),
        'bedrock_embed':
            _component_status('Amazon Bedrock Embed', 'model', config.bedrock_embed.model_id,
                              provided('bedrock_embed', lambda: BedrockEmbed(config.bedrock_embed))),
        'bedrock_llm':
            _component_status('Amazon Bedrock LLM', 'model', config.bedrock_llm.model_for_role('master'),
                              provided('bedrock_llm', lambda: BedrockLLM(config.bedrock_llm)))
    }


def check_health(components: Optional[Dict[str, Any]] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    health_status = get_health_status(components)
    all_healthy = all(status.get('healthy', False) for status in health_status.values())

    if all_healthy:
        logger.info('All system components are healthy')
    else:
        unhealthy = [name for name, status in health_status.items() if not status.get('healthy', False)]
        logger.warning(f'Unhealthy components: {unhealthy}')

    return all_healthy
