"""Tests for the segmentation engine's recovery policy."""

import asyncio

import numpy as np
import pytest

from subject_overlay.core.config import OverlayConfig
from subject_overlay.core.contracts import BackendKind, EngineState, MaskKind
from subject_overlay.core.errors import BackendError, BackendErrorCode, EngineFailedError
from subject_overlay.segmentation.engine import SegmentationEngine
from tests.conftest import FakeCapability, StepClock


def make_engine(capability=None, config=None, status_log=None, sleeper=None):
    kwargs = {"clock": StepClock()}
    if sleeper is not None:
        kwargs["sleep"] = sleeper
    return SegmentationEngine(capability, config or OverlayConfig(), status_sink=status_log, **kwargs)


def segment_many(engine, frame, count):
    async def scenario():
        return [await engine.segment(frame) for _ in range(count)]
    return asyncio.run(scenario())


def inference_error(message="graph crashed"):
    return BackendError(message, BackendErrorCode.INFERENCE_FAILED)


def timestamp_error():
    return BackendError("timestamp mismatch", BackendErrorCode.TIMESTAMP_ANOMALY)


class TestInitialization:
    def test_no_capability_degrades_immediately(self, skin_frame, status_log):
        engine = make_engine(status_log=status_log)

        results = segment_many(engine, skin_frame, 2)

        assert engine.state is EngineState.DEGRADED
        assert all(r.backend is BackendKind.HEURISTIC for r in results)
        assert status_log == ["degraded: no model backend configured"]

    def test_init_succeeds_after_retries(self, status_log, sleeper):
        capability = FakeCapability(init_failures=2)
        engine = make_engine(capability, status_log=status_log, sleeper=sleeper)

        state = asyncio.run(engine.initialize())

        assert state is EngineState.READY
        assert capability.init_calls == 3
        assert sleeper.delays == [1.0, 1.0]
        assert status_log == ["initializing", "ready"]

    def test_init_exhaustion_never_touches_model_again(self, skin_frame, status_log, sleeper):
        capability = FakeCapability(init_failures=100)
        engine = make_engine(capability, status_log=status_log, sleeper=sleeper)

        results = segment_many(engine, skin_frame, 5)

        assert capability.init_calls == 4
        assert capability.infer_calls == 0
        assert engine.state is EngineState.DEGRADED
        assert all(r.backend is BackendKind.HEURISTIC for r in results)
        assert status_log[0] == "initializing"
        assert status_log[-1].startswith("degraded: model backend unavailable")

    def test_initialize_is_idempotent(self, sleeper):
        capability = FakeCapability()
        engine = make_engine(capability, sleeper=sleeper)

        async def scenario():
            await engine.initialize()
            await engine.initialize()

        asyncio.run(scenario())
        assert capability.init_calls == 1


class TestModelPath:
    def test_model_result_is_softened(self, blue_frame):
        """The model mask wins even where the color fallback would see nothing."""
        capability = FakeCapability(mask_value=1.0)
        engine = make_engine(capability)

        result, = segment_many(engine, blue_frame, 1)

        assert result.backend is BackendKind.MODEL
        assert result.mask.kind is MaskKind.REFINED
        assert result.mask.size == blue_frame.size
        assert np.all(result.mask.values == 255)
        assert engine.stats.model_frames == 1

    def test_timestamps_strictly_increase(self, skin_frame):
        capability = FakeCapability()
        engine = make_engine(capability)

        segment_many(engine, skin_frame, 3)

        stamps = capability.timestamps
        assert all(later > earlier for earlier, later in zip(stamps, stamps[1:]))

    def test_large_frames_are_shrunk_for_the_model(self):
        from tests.conftest import uniform_frame

        capability = FakeCapability()
        engine = make_engine(capability, OverlayConfig(max_processed_dimension=320))

        result, = segment_many(engine, uniform_frame(640, 360), 1)

        assert capability.input_shapes == [(180, 320, 3)]
        assert result.mask.size == (640, 360)


class TestInferenceFailures:
    def test_demotion_after_consecutive_failures(self, skin_frame, status_log):
        """Four failures with a limit of three: the fourth never reaches the model."""
        capability = FakeCapability(infer_errors=[inference_error() for _ in range(4)])
        engine = make_engine(capability, OverlayConfig(max_consecutive_errors=3), status_log)

        async def scenario():
            states = []
            for _ in range(3):
                result = await engine.segment(skin_frame)
                assert result.backend is BackendKind.HEURISTIC
                states.append(engine.state)
            fourth = await engine.segment(skin_frame)
            return states, fourth

        states, fourth = asyncio.run(scenario())

        assert states == [EngineState.READY, EngineState.READY, EngineState.DEGRADED]
        assert capability.infer_calls == 3
        assert fourth.backend is BackendKind.HEURISTIC
        assert capability.dispose_calls == 1
        assert status_log[-1].startswith("degraded: model backend failing")

    def test_success_resets_error_count(self, skin_frame):
        errors = [inference_error(), inference_error(), None, inference_error(), inference_error()]
        capability = FakeCapability(infer_errors=errors)
        engine = make_engine(capability, OverlayConfig(max_consecutive_errors=3))

        results = segment_many(engine, skin_frame, 5)

        assert engine.state is EngineState.READY
        assert [r.backend for r in results] == [
            BackendKind.HEURISTIC,
            BackendKind.HEURISTIC,
            BackendKind.MODEL,
            BackendKind.HEURISTIC,
            BackendKind.HEURISTIC,
        ]

    def test_plain_exceptions_are_absorbed(self, skin_frame):
        capability = FakeCapability(infer_errors=[ValueError("bad tensor")])
        engine = make_engine(capability)

        result, = segment_many(engine, skin_frame, 1)

        assert result.backend is BackendKind.HEURISTIC
        assert engine.machine.consecutive_errors == 1


class TestTimestampAnomalies:
    def test_threshold_triggers_exactly_one_reset(self, skin_frame, status_log, sleeper):
        capability = FakeCapability(infer_errors=[timestamp_error(), timestamp_error()])
        config = OverlayConfig(max_timestamp_anomalies=2, max_consecutive_errors=1)
        engine = make_engine(capability, config, status_log, sleeper)

        results = segment_many(engine, skin_frame, 4)

        assert [r.backend for r in results] == [
            BackendKind.HEURISTIC,
            BackendKind.HEURISTIC,
            BackendKind.MODEL,
            BackendKind.MODEL,
        ]
        assert capability.init_calls == 2
        assert capability.dispose_calls == 1
        assert engine.stats.resets == 1
        assert status_log.count("resetting model backend") == 1
        assert engine.state is EngineState.READY

    def test_counter_resets_after_clean_call(self, skin_frame):
        errors = [timestamp_error(), None, timestamp_error(), None]
        capability = FakeCapability(infer_errors=errors)
        engine = make_engine(capability, OverlayConfig(max_timestamp_anomalies=2))

        segment_many(engine, skin_frame, 4)

        assert engine.stats.resets == 0
        assert capability.init_calls == 1
        assert engine.machine.timestamp_anomalies == 0

    def test_failed_reset_degrades(self, skin_frame, sleeper):
        capability = FakeCapability(infer_errors=[timestamp_error()])
        engine = make_engine(
            capability,
            OverlayConfig(max_timestamp_anomalies=1, max_init_retries=1),
            sleeper=sleeper,
        )

        async def scenario():
            await engine.segment(skin_frame)
            capability.init_failures = 100
            return await engine.segment(skin_frame)

        result = asyncio.run(scenario())

        assert result.backend is BackendKind.HEURISTIC
        assert engine.state is EngineState.DEGRADED
        assert capability.init_calls == 3


class TestResourceExhaustion:
    def test_memory_errors_shrink_model_input(self, skin_frame):
        capability = FakeCapability(infer_errors=[MemoryError("out of memory")])
        engine = make_engine(capability)

        results = segment_many(engine, skin_frame, 2)

        assert results[0].backend is BackendKind.HEURISTIC
        assert results[1].backend is BackendKind.MODEL
        assert engine.max_processed_dimension == 480
        assert capability.input_shapes[-1] == (270, 480, 3)
        assert engine.stats.downscales == 1

    def test_never_shrinks_below_floor(self, skin_frame):
        errors = [BackendError("alloc", BackendErrorCode.RESOURCE_EXHAUSTED), None] * 4
        capability = FakeCapability(infer_errors=errors)
        config = OverlayConfig(max_processed_dimension=200, min_processed_dimension=160)
        engine = make_engine(capability, config)

        segment_many(engine, skin_frame, 8)

        assert engine.max_processed_dimension == 160


class TestFatalFailure:
    def test_fallback_failure_is_fatal(self, skin_frame, status_log, monkeypatch):
        engine = make_engine(status_log=status_log)

        def broken(frame):
            raise RuntimeError("classifier exploded")

        monkeypatch.setattr(engine._heuristic.classifier, "classify", broken)

        with pytest.raises(EngineFailedError):
            segment_many(engine, skin_frame, 1)
        assert engine.state is EngineState.FAILED
        assert status_log[-1].startswith("failed:")

        with pytest.raises(EngineFailedError):
            segment_many(engine, skin_frame, 1)


def test_close_disposes_model(sleeper):
    capability = FakeCapability()
    engine = make_engine(capability, sleeper=sleeper)

    async def scenario():
        await engine.initialize()
        await engine.close()

    asyncio.run(scenario())
    assert capability.dispose_calls == 1


class TestShutdown:
    def test_closed_engine_never_calls_the_model(self, skin_frame, sleeper):
        capability = FakeCapability()
        engine = make_engine(capability, sleeper=sleeper)

        async def scenario():
            await engine.initialize()
            await engine.close()
            return await engine.segment(skin_frame)

        result = asyncio.run(scenario())

        assert capability.infer_calls == 0
        assert result.backend is BackendKind.HEURISTIC
        assert engine.state is EngineState.DEGRADED
        assert not engine.machine.uses_model

    def test_close_before_first_frame_skips_handshake(self, skin_frame):
        capability = FakeCapability()
        engine = make_engine(capability)

        async def scenario():
            await engine.close()
            return await engine.segment(skin_frame)

        result = asyncio.run(scenario())

        assert capability.init_calls == 0
        assert result.backend is BackendKind.HEURISTIC

    def test_close_drops_pending_reset(self, skin_frame, sleeper):
        capability = FakeCapability(infer_errors=[timestamp_error()])
        engine = make_engine(capability, OverlayConfig(max_timestamp_anomalies=1), sleeper=sleeper)

        async def scenario():
            await engine.segment(skin_frame)
            await engine.close()
            await engine.segment(skin_frame)

        asyncio.run(scenario())

        assert engine.stats.resets == 0
        assert capability.init_calls == 1


class TestActiveBackend:
    def test_follows_engine_state(self, skin_frame):
        capability = FakeCapability(infer_errors=[inference_error()])
        engine = make_engine(capability, OverlayConfig(max_consecutive_errors=1))

        async def scenario():
            await engine.initialize()
            before = engine.active_backend.kind
            await engine.segment(skin_frame)
            return before, engine.active_backend.kind

        before, after = asyncio.run(scenario())

        assert before is BackendKind.MODEL
        assert after is BackendKind.HEURISTIC

    def test_heuristic_only_without_model(self):
        assert make_engine().active_backend.kind is BackendKind.HEURISTIC
