"""
Pipeline manifest management.
"""

from typing import List, Optional

from ..models.pipelines import PipelineManifest
from ..utils.config import config
from ..utils.errors import InvalidArgumentError
from ..utils.logging_config import get_logger
from ..utils.pipeline_storage import FilePipelinesRepository

logger = get_logger(__name__)


def validate_manifest(manifest: PipelineManifest) -> None:
    """Reject manifests without a name or with a component missing its type."""
    if manifest is None:
        raise InvalidArgumentError('Pipeline manifest must not be None')
    if not manifest.name or not manifest.name.strip():
        raise InvalidArgumentError('Pipeline name must not be empty')
    for index, component in enumerate(manifest.components):
        if not component.type or not component.type.strip():
            raise InvalidArgumentError(f'Component {index} of pipeline {manifest.name!r} has no type')


class PipelinesService:
    """CRUD over pipeline manifests."""

    def __init__(self, repository: Optional[FilePipelinesRepository] = None):
        self.repository = repository or FilePipelinesRepository(config.pipeline.storage_path)

    def create_pipeline(self, manifest: PipelineManifest) -> PipelineManifest:
        validate_manifest(manifest)
        created = self.repository.create(manifest)
        logger.info(f'Created pipeline {created.id} ({created.name})')
        return created

    def get_pipeline(self, pipeline_id: str) -> Optional[PipelineManifest]:
        return self.repository.get(pipeline_id)

    def get_all_pipelines(self) -> List[PipelineManifest]:
        return self.repository.get_all()

    def update_pipeline(self, pipeline_id: str, manifest: PipelineManifest) -> Optional[PipelineManifest]:
        validate_manifest(manifest)
        updated = self.repository.update(pipeline_id, manifest)
        if updated is None:
            logger.debug(f'Pipeline not found for update: {pipeline_id}')
        else:
            logger.info(f'Updated pipeline {pipeline_id}')
        return updated

    def delete_pipeline(self, pipeline_id: str) -> bool:
        deleted = self.repository.delete(pipeline_id)
        if deleted:
            logger.info(f'Deleted pipeline {pipeline_id}')
        return deleted
