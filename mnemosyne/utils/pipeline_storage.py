"""
File-backed pipeline manifest storage: one `<id>.json` file per manifest.
"""

import json
import os
from typing import List, Optional

from ..models.core import new_id, validate_id
from ..models.pipelines import PipelineManifest
from .errors import ConflictError, StoreError
from .logging_config import get_logger

logger = get_logger(__name__)


class FilePipelinesRepository:
    """Stores pipeline manifests as JSON files in a directory."""

    def __init__(self, storage_path: str):
        self.storage_path = storage_path
        try:
            os.makedirs(storage_path, exist_ok=True)
        except OSError as e:
            raise StoreError(f'Cannot create pipeline storage directory {storage_path}: {e}')
        logger.info(f'Pipeline manifests stored in {os.path.abspath(storage_path)}')

    def _path(self, pipeline_id: str) -> str:
        # Ids are validated UUIDs, so the file name cannot escape the storage directory
        return os.path.join(self.storage_path, f'{validate_id(pipeline_id, "Pipeline id")}.json')

    def _read(self, path: str) -> PipelineManifest:
        with open(path, 'r', encoding='utf-8') as f:
            return PipelineManifest.from_dict(json.load(f))

    def _write(self, path: str, manifest: PipelineManifest) -> None:
        try:
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(manifest.to_dict(), f, indent=2)
        except OSError as e:
            logger.error(f'Failed to write pipeline manifest {manifest.id}: {e}')
            raise StoreError(f'Failed to write pipeline manifest: {e}')

    def get(self, pipeline_id: str) -> Optional[PipelineManifest]:
        path = self._path(pipeline_id)
        if not os.path.exists(path):
            return None
        try:
            return self._read(path)
        except (OSError, ValueError) as e:
            logger.error(f'Failed to read pipeline manifest {pipeline_id}: {e}')
            raise StoreError(f'Failed to read pipeline manifest: {e}')

    def get_all(self) -> List[PipelineManifest]:
        """Every readable manifest; unreadable files are logged and skipped."""
        manifests = []
        for file_name in sorted(os.listdir(self.storage_path)):
            if not file_name.endswith('.json'):
                continue
            path = os.path.join(self.storage_path, file_name)
            try:
                manifests.append(self._read(path))
            except (OSError, ValueError) as e:
                logger.error(f'Skipping unreadable pipeline manifest {file_name}: {e}')
        return manifests

    def create(self, manifest: PipelineManifest) -> PipelineManifest:
        """Persist a new manifest, assigning an id when it has none.

        Raises:
            ConflictError: If a manifest with the id already exists
        """
        if not manifest.id:
            manifest.id = new_id()
        path = self._path(manifest.id)
        manifest.id = validate_id(manifest.id, 'Pipeline id')
        if os.path.exists(path):
            raise ConflictError(f'Pipeline {manifest.id} already exists')

        self._write(path, manifest)
        return manifest

    def update(self, pipeline_id: str, manifest: PipelineManifest) -> Optional[PipelineManifest]:
        """Replace a manifest wholesale; returns None if no manifest has the id."""
        path = self._path(pipeline_id)
        if not os.path.exists(path):
            return None

        manifest.id = validate_id(pipeline_id, 'Pipeline id')
        self._write(path, manifest)
        return manifest

    def delete(self, pipeline_id: str) -> bool:
        path = self._path(pipeline_id)
        if not os.path.exists(path):
            return False
        try:
            os.remove(path)
        except OSError as e:
            logger.error(f'Failed to delete pipeline manifest {pipeline_id}: {e}')
            raise StoreError(f'Failed to delete pipeline manifest: {e}')
        return True
