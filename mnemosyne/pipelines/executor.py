"""
Pipeline executor.

Each run is an asyncio task that folds the resolved stages over its own execution state. The run's
progress lives in a registry of immutable status snapshots keyed by run id. Only the run's own task
writes its entry, always by swapping in a new snapshot, so status readers see whole snapshots.
Entries are never removed, and once a snapshot is Completed or Failed it is never replaced.
"""

import asyncio
from typing import Dict, List, Optional, Set, Tuple

from ..models.core import new_id
from ..models.pipelines import (PipelineExecutionRequest, PipelineExecutionState, PipelineExecutionStatus, PipelineManifest,
                                PipelineStatus, StageHistoryEntry, StageResult)
from ..services.pipelines_service import PipelinesService
from ..utils.config import config
from ..utils.errors import MnemosyneError, NotFoundError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now
from .registry import StageRegistry, default_registry
from .stages import PipelineStage

logger = get_logger(__name__)

NO_COMPONENTS_MESSAGE = 'Pipeline completed: No components to execute.'
COMPLETED_MESSAGE = 'Pipeline execution completed successfully.'


class _StageTracker:
    """Handed to stages so they can report the stage they are starting."""

    def __init__(self, executor: 'PipelineExecutor', run_id: str):
        self.executor = executor
        self.run_id = run_id

    def stage_started(self, stage_name: str) -> None:
        self.executor._update(self.run_id,
                              status=PipelineStatus.PROCESSING,
                              current_stage_name=stage_name,
                              current_stage_start_time=utc_now())


class PipelineExecutor:
    """Starts pipeline runs in the background and reports their status."""

    def __init__(self,
                 pipelines: Optional[PipelinesService] = None,
                 registry: Optional[StageRegistry] = None,
                 run_timeout_seconds: Optional[float] = None):
        """Initialize the executor.

        Args:
            pipelines: Manifest source; built from global config when omitted
            registry: Stage registry; the built-in stages when omitted
            run_timeout_seconds: Fail runs that take longer; 0 disables. Defaults to PIPELINE_RUN_TIMEOUT_SECONDS
        """
        self.pipelines = pipelines or PipelinesService()
        self.registry = registry or default_registry()
        self.run_timeout_seconds = config.pipeline.run_timeout_seconds if run_timeout_seconds is None else run_timeout_seconds

        self._statuses: Dict[str, PipelineExecutionStatus] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running: Set[asyncio.Task] = set()

    # Status registry

    def get_execution_status(self, run_id: str) -> Optional[PipelineExecutionStatus]:
        """Current snapshot of a run, or None for an unknown run id."""
        return self._statuses.get(run_id)

    def _update(self, run_id: str, **changes) -> PipelineExecutionStatus:
        current = self._statuses[run_id]
        if current.status.is_terminal:
            logger.warning(f'Ignoring update to run {run_id} in terminal state {current.status.value}: {changes}')
            return current
        updated = current.evolve(**changes)
        self._statuses[run_id] = updated
        return updated

    def _record_stage(self, run_id: str, stage: PipelineStage, result: StageResult, message: Optional[str]) -> None:
        current = self._statuses[run_id]
        entry = StageHistoryEntry(stage_name=stage.name, result=result, timestamp=utc_now(), message=message)
        self._update(run_id, stage_history=current.stage_history + (entry, ))

    def _finish(self,
                run_id: str,
                status: PipelineStatus,
                message: str,
                state: Optional[PipelineExecutionState] = None) -> PipelineExecutionStatus:
        result = tuple(chunk.to_dict() for chunk in state.context) if state is not None else None
        finished = self._update(run_id,
                                status=status,
                                end_time=utc_now(),
                                current_stage_name=None,
                                current_stage_start_time=None,
                                message=message,
                                result=result)
        log = logger.info if status is PipelineStatus.COMPLETED else logger.error
        log(f'Pipeline run {run_id} {status.value.lower()}: {message}')
        return finished

    # Run lifecycle

    def _load_manifest(self, pipeline_id: Optional[str]) -> PipelineManifest:
        if not pipeline_id:
            return PipelineManifest(name='Empty pipeline', description='Runs no components')
        manifest = self.pipelines.get_pipeline(pipeline_id)
        if manifest is None:
            raise NotFoundError(f'Pipeline {pipeline_id} not found')
        return manifest

    def _start(self, pipeline_id: Optional[str],
               request: PipelineExecutionRequest) -> Tuple[PipelineExecutionStatus, PipelineExecutionState]:
        manifest = self._load_manifest(pipeline_id)

        run_id = new_id()
        state = PipelineExecutionState(request=request, run_id=run_id, pipeline_id=pipeline_id)
        status = PipelineExecutionStatus(run_id=run_id,
                                         pipeline_id=pipeline_id,
                                         status=PipelineStatus.PENDING,
                                         overall_start_time=utc_now())
        self._statuses[run_id] = status
        logger.info(f'Starting pipeline run {run_id} for pipeline {pipeline_id} ({len(manifest.components)} components)')

        try:
            stages = self.registry.resolve_all(manifest.components)
        except MnemosyneError as e:
            return self._finish(run_id, PipelineStatus.FAILED, f'Pipeline configuration error: {e.message}'), state

        task = asyncio.create_task(self._run_with_guard(run_id, stages, state))
        self._tasks[run_id] = task
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        return status, state

    async def execute_pipeline(self, pipeline_id: Optional[str], request: PipelineExecutionRequest) -> PipelineExecutionStatus:
        """Start a run and return its initial status without waiting for it.

        Args:
            pipeline_id: Manifest to run; None runs an empty pipeline
            request: Input to the run

        Returns:
            The Pending status snapshot, or a Failed one if a stage type could not be resolved

        Raises:
            NotFoundError: If no manifest has the id
        """
        status, _ = self._start(pipeline_id, request)
        return status

    async def wait_for_completion(self, run_id: str) -> Optional[PipelineExecutionStatus]:
        """Wait for a run to finish and return its terminal status; None for an unknown run id."""
        task = self._tasks.get(run_id)
        if task is not None:
            # Shielded so a cancelled waiter does not cancel the run
            await asyncio.shield(task)
        return self.get_execution_status(run_id)

    async def run_pipeline(self, pipeline_id: Optional[str],
                           request: PipelineExecutionRequest) -> Tuple[PipelineExecutionStatus, PipelineExecutionState]:
        """Start a run and wait for it.

        Returns:
            Tuple of (terminal status, final execution state)
        """
        status, state = self._start(pipeline_id, request)
        final_status = await self.wait_for_completion(status.run_id)
        return final_status, state

    async def _run_with_guard(self, run_id: str, stages: List[PipelineStage], state: PipelineExecutionState) -> None:
        try:
            if self.run_timeout_seconds and self.run_timeout_seconds > 0:
                await asyncio.wait_for(self._run(run_id, stages, state), timeout=self.run_timeout_seconds)
            else:
                await self._run(run_id, stages, state)
        except asyncio.TimeoutError:
            self._finish(run_id, PipelineStatus.FAILED, f'Pipeline run timed out after {self.run_timeout_seconds} seconds')
        except asyncio.CancelledError:
            self._finish(run_id, PipelineStatus.FAILED, 'Pipeline run was cancelled')
            raise
        except Exception as e:
            logger.exception(f'Unexpected error in pipeline run {run_id}')
            self._finish(run_id, PipelineStatus.FAILED, f'Pipeline execution failed: {e}')

    async def _run(self, run_id: str, stages: List[PipelineStage], state: PipelineExecutionState) -> None:
        self._update(run_id, status=PipelineStatus.RUNNING)

        if not stages:
            self._finish(run_id, PipelineStatus.COMPLETED, NO_COMPONENTS_MESSAGE, state)
            return

        tracker = _StageTracker(self, run_id)
        for stage in stages:
            try:
                next_state = await stage.execute(state, tracker)
            except Exception as e:
                self._record_stage(run_id, stage, StageResult.ERROR, str(e))
                self._finish(run_id, PipelineStatus.FAILED, f"Stage '{stage.name}' failed: {e}", state)
                return

            # The caller of run_pipeline holds the original state object
            if next_state is not None and next_state is not state:
                state.context = list(next_state.context)
            self._record_stage(run_id, stage, stage.result, stage.message)
            logger.debug(f'Run {run_id}: stage {stage.name} finished with {stage.result.value}')

        self._finish(run_id, PipelineStatus.COMPLETED, COMPLETED_MESSAGE, state)
