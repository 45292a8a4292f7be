import asyncio
from unittest.mock import MagicMock

import pytest

from mnemosyne.models.pipelines import (ComponentConfiguration, ContextChunkType, PipelineExecutionRequest, PipelineManifest,
                                        PipelineStatus, StageResult)
from mnemosyne.pipelines.executor import COMPLETED_MESSAGE, NO_COMPONENTS_MESSAGE, PipelineExecutor
from mnemosyne.pipelines.registry import default_registry
from mnemosyne.pipelines.stages import NULL_STAGE_CONTENT, PipelineStage
from mnemosyne.utils.errors import NotFoundError


class GatedStage(PipelineStage):
    """Blocks until its gate is opened."""

    stage_type = 'GatedStage'

    def __init__(self, gate, name=None, settings=None):
        super().__init__(name, settings)
        self.gate = gate

    async def _execute_internal(self, state):
        await self.gate.wait()
        return state


class ExplodingStage(PipelineStage):

    stage_type = 'ExplodingStage'

    async def _execute_internal(self, state):
        raise RuntimeError('kaboom')


@pytest.fixture
def gate():
    return asyncio.Event()


@pytest.fixture
def registry(gate):
    registry = default_registry()
    registry.register(GatedStage.stage_type, lambda c: GatedStage(gate, c.name, c.config))
    registry.register(ExplodingStage.stage_type, lambda c: ExplodingStage(c.name, c.config))
    return registry


@pytest.fixture
def executor(pipelines, registry):
    return PipelineExecutor(pipelines=pipelines, registry=registry, run_timeout_seconds=0)


@pytest.fixture
def make_pipeline(pipelines):

    def _make(*components):
        manifest = PipelineManifest(name='test pipeline',
                                    components=[ComponentConfiguration(name, stage_type, config) for name, stage_type, config in components])
        return pipelines.create_pipeline(manifest).id

    return _make


def _request(text='Hello'):
    return PipelineExecutionRequest(user_input=text)


async def _wait_for_status(executor, run_id, expected):
    for _ in range(200):
        if executor.get_execution_status(run_id).status is expected:
            return
        await asyncio.sleep(0.005)
    raise AssertionError(f'run {run_id} never reached {expected}')


@pytest.mark.asyncio
async def test_empty_pipeline_completes(executor, make_pipeline):
    pipeline_id = make_pipeline()

    status, state = await executor.run_pipeline(pipeline_id, _request())

    assert status.status is PipelineStatus.COMPLETED
    assert status.message == NO_COMPONENTS_MESSAGE
    assert status.end_time is not None
    assert state.context == []


@pytest.mark.asyncio
async def test_no_pipeline_id_runs_empty_pipeline(executor):
    status, _ = await executor.run_pipeline(None, _request())
    assert status.status is PipelineStatus.COMPLETED
    assert status.message == NO_COMPONENTS_MESSAGE


@pytest.mark.asyncio
async def test_null_stage_run(executor, make_pipeline):
    pipeline_id = make_pipeline(('sim', 'NullPipelineStage', {'delaySeconds': 0}))

    initial = await executor.execute_pipeline(pipeline_id, _request())
    assert initial.status is PipelineStatus.PENDING

    final = await executor.wait_for_completion(initial.run_id)

    assert final.status is PipelineStatus.COMPLETED
    assert final.message == COMPLETED_MESSAGE
    assert [(c['type'], c['content']) for c in final.result] == [(ContextChunkType.SIMULATION, NULL_STAGE_CONTENT)]
    assert [(e.stage_name, e.result) for e in final.stage_history] == [('sim', StageResult.SUCCESS)]
    assert final.current_stage_name is None


@pytest.mark.asyncio
async def test_unknown_run_id(executor, unknown_id):
    assert executor.get_execution_status(unknown_id) is None
    assert await executor.wait_for_completion(unknown_id) is None


@pytest.mark.asyncio
async def test_missing_manifest(executor, unknown_id):
    with pytest.raises(NotFoundError):
        await executor.execute_pipeline(unknown_id, _request())


@pytest.mark.asyncio
async def test_unknown_stage_type_fails_immediately(executor, make_pipeline):
    pipeline_id = make_pipeline(('sim', 'NullPipelineStage', {}), ('warp', 'WarpDrive', {}))

    status = await executor.execute_pipeline(pipeline_id, _request())

    assert status.status is PipelineStatus.FAILED
    assert 'WarpDrive' in status.message
    assert executor.get_execution_status(status.run_id) == status


@pytest.mark.asyncio
async def test_raising_stage_fails_run(executor, make_pipeline):
    pipeline_id = make_pipeline(('sim', 'NullPipelineStage', {'delaySeconds': 0}), ('bad', 'ExplodingStage', {}),
                                ('never', 'NullPipelineStage', {'delaySeconds': 0}))

    status, state = await executor.run_pipeline(pipeline_id, _request())

    assert status.status is PipelineStatus.FAILED
    assert status.message == "Stage 'bad' failed: kaboom"
    assert [(e.stage_name, e.result) for e in status.stage_history] == [('sim', StageResult.SUCCESS), ('bad', StageResult.ERROR)]
    assert len(state.context) == 1


@pytest.mark.asyncio
async def test_processing_reports_current_stage(executor, make_pipeline, gate):
    pipeline_id = make_pipeline(('waiting', 'GatedStage', {}))

    initial = await executor.execute_pipeline(pipeline_id, _request())
    await _wait_for_status(executor, initial.run_id, PipelineStatus.PROCESSING)

    processing = executor.get_execution_status(initial.run_id)
    assert processing.current_stage_name == 'waiting'
    assert processing.current_stage_start_time is not None

    gate.set()
    final = await executor.wait_for_completion(initial.run_id)
    assert final.status is PipelineStatus.COMPLETED


@pytest.mark.asyncio
async def test_terminal_status_never_changes(executor, make_pipeline):
    pipeline_id = make_pipeline(('sim', 'NullPipelineStage', {'delaySeconds': 0}))
    status, _ = await executor.run_pipeline(pipeline_id, _request())

    after = executor._update(status.run_id, status=PipelineStatus.RUNNING, message='again')

    assert after == status
    assert executor.get_execution_status(status.run_id).status is PipelineStatus.COMPLETED


@pytest.mark.asyncio
async def test_run_timeout_fails_run(pipelines, registry, make_pipeline):
    executor = PipelineExecutor(pipelines=pipelines, registry=registry, run_timeout_seconds=0.05)
    pipeline_id = make_pipeline(('waiting', 'GatedStage', {}))

    status, _ = await executor.run_pipeline(pipeline_id, _request())

    assert status.status is PipelineStatus.FAILED
    assert 'timed out' in status.message


@pytest.mark.asyncio
async def test_parallel_runs_are_independent(executor, make_pipeline):
    pipeline_id = make_pipeline(('sim', 'NullPipelineStage', {'delaySeconds': 0.02}))

    results = await asyncio.gather(*(executor.run_pipeline(pipeline_id, _request(f'run {i}')) for i in range(5)))

    run_ids = {status.run_id for status, _ in results}
    assert len(run_ids) == 5
    for status, state in results:
        assert status.status is PipelineStatus.COMPLETED
        assert len(state.context) == 1
        assert state.run_id == status.run_id


@pytest.mark.asyncio
async def test_malformed_stage_setting_fails_at_start(pipelines, make_pipeline):
    executor = PipelineExecutor(pipelines=pipelines,
                                registry=default_registry(memory_service=MagicMock(), chat_history=MagicMock()),
                                run_timeout_seconds=0)
    pipeline_id = make_pipeline(('m', 'MemoryRetrievalStage', {'minimumSimilarityScore': 'high'}))

    status = await executor.execute_pipeline(pipeline_id, _request())

    assert status.status is PipelineStatus.FAILED
    assert status.message.startswith('Pipeline configuration error')
    assert 'minimumSimilarityScore' in status.message
    assert status.stage_history == ()


@pytest.mark.asyncio
async def test_cancelled_run_ends_failed(executor, make_pipeline):
    pipeline_id = make_pipeline(('waiting', 'GatedStage', {}))
    initial = await executor.execute_pipeline(pipeline_id, _request())
    await _wait_for_status(executor, initial.run_id, PipelineStatus.PROCESSING)

    task = executor._tasks[initial.run_id]
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    final = executor.get_execution_status(initial.run_id)
    assert final.status is PipelineStatus.FAILED
    assert final.message == 'Pipeline run was cancelled'
