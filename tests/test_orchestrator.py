"""
Unit Tests for the Pipeline Orchestrator

Lifecycle, per-tick ordering, failure containment and the end-to-end
identity-model scenario.
"""

import numpy as np
import pytest
import torch
import torch.nn as nn

from monodepth.capture.frame_source import StaticFrameSource
from monodepth.core.contracts import BufferFormat, LayoutMode, PipelinePhase
from monodepth.core.errors import (
    ModelLoadError,
    PipelineStalledError,
    PipelineStateError,
)
from monodepth.depth.inference_engine import ModelAsset
from monodepth.pipeline.orchestrator import PipelineOrchestrator


GRAY = 128 / 255


class FixedSizeDepth(nn.Module):
    """Always returns a 64x64 plane holding the top-left input value."""

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x[:, 0:1, 0:1, 0:1].expand(1, 64, 64, 1)


class PassThrough(nn.Module):
    """Returns its input unchanged."""

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x


def record_events(pipeline):
    """Subscribe to every channel and return the shared log."""
    log = []
    pipeline.events.color_ready.subscribe(lambda b: log.append(("color_ready", b)))
    pipeline.events.depth_extents.subscribe(lambda e: log.append(("depth_extents", e)))
    pipeline.events.image_resized.subscribe(lambda a: log.append(("image_resized", a)))
    pipeline.events.depth_solved.subscribe(lambda b: log.append(("depth_solved", b)))
    return log


# =============================================================================
# Lifecycle Tests
# =============================================================================

class TestLifecycle:
    """Tests for initialize/dispose and phase transitions."""

    def test_phases(self, pipeline_config, identity_asset, gray_frame):
        pipeline = PipelineOrchestrator(pipeline_config, model=identity_asset)
        assert pipeline.phase is PipelinePhase.UNINITIALIZED

        pipeline.initialize()
        assert pipeline.phase is PipelinePhase.READY
        assert pipeline.color_buffer.size == (256, 256)
        assert pipeline.depth_buffer.format is BufferFormat.DEPTH_F32

        pipeline.tick(gray_frame)
        assert pipeline.phase is PipelinePhase.RUNNING

        pipeline.dispose()
        assert pipeline.phase is PipelinePhase.DISPOSED

    def test_tick_before_initialize(self, pipeline_config, gray_frame):
        with pytest.raises(PipelineStateError):
            PipelineOrchestrator(pipeline_config).tick(gray_frame)

    def test_tick_after_dispose(self, pipeline_config, identity_asset, gray_frame):
        pipeline = PipelineOrchestrator(pipeline_config, model=identity_asset).initialize()
        pipeline.dispose()

        with pytest.raises(PipelineStateError):
            pipeline.tick(gray_frame)
        with pytest.raises(PipelineStateError):
            pipeline.initialize()

    def test_dispose_releases_everything(self, pipeline_config, identity_asset, gray_frame):
        """Network and both buffers are released on dispose."""
        pipeline = PipelineOrchestrator(pipeline_config, model=identity_asset).initialize()
        result = pipeline.tick(gray_frame)
        handle = pipeline.network

        pipeline.dispose()

        assert handle.disposed
        assert pipeline.network is None
        assert result.color.is_released
        assert result.depth.is_released
        assert pipeline.color_buffer is None
        assert pipeline.depth_buffer is None

    def test_dispose_twice(self, pipeline_config, identity_asset):
        pipeline = PipelineOrchestrator(pipeline_config, model=identity_asset).initialize()

        pipeline.dispose()
        pipeline.dispose()

        assert pipeline.phase is PipelinePhase.DISPOSED

    def test_dispose_before_initialize(self, pipeline_config):
        pipeline = PipelineOrchestrator(pipeline_config)
        pipeline.dispose()

        assert pipeline.phase is PipelinePhase.DISPOSED

    def test_load_failure_leaves_nothing_allocated(self, pipeline_config, tmp_path):
        """A bad model keeps the pipeline UNINITIALIZED with no buffers."""
        pipeline_config.model_path = str(tmp_path / "missing.pt")
        pipeline = PipelineOrchestrator(pipeline_config)

        with pytest.raises(ModelLoadError):
            pipeline.initialize()

        assert pipeline.phase is PipelinePhase.UNINITIALIZED
        assert pipeline.network is None
        assert pipeline.color_buffer is None
        assert pipeline.depth_buffer is None

    def test_warmup_failure_is_a_load_error(self, pipeline_config, failing_asset):
        pipeline_config.warmup_iterations = 1
        pipeline = PipelineOrchestrator(pipeline_config, model=failing_asset)

        with pytest.raises(ModelLoadError):
            pipeline.initialize()

        assert pipeline.phase is PipelinePhase.UNINITIALIZED
        assert pipeline.network is None

    def test_initialize_is_idempotent(self, pipeline_config, identity_asset):
        pipeline = PipelineOrchestrator(pipeline_config, model=identity_asset).initialize()
        handle = pipeline.network

        pipeline.initialize()

        assert pipeline.network is handle

    def test_context_manager(self, pipeline_config, identity_asset, gray_frame):
        with PipelineOrchestrator(pipeline_config, model=identity_asset) as pipeline:
            assert pipeline.tick(gray_frame).success

        assert pipeline.phase is PipelinePhase.DISPOSED


# =============================================================================
# Per-Tick Tests
# =============================================================================

class TestTick:
    """Tests for the per-frame contract."""

    def test_end_to_end_identity(self, pipeline_config, identity_asset, gray_frame):
        """Solid gray 128 through an identity model gives 128/255 everywhere."""
        pipeline_config.calculate_depth_extents = True

        with PipelineOrchestrator(pipeline_config, model=identity_asset) as pipeline:
            result = pipeline.tick(gray_frame)

            assert result.success
            assert pipeline.network.layout is LayoutMode.DIRECT
            assert result.depth.size == (256, 256)
            np.testing.assert_allclose(result.depth.to_numpy(), GRAY, atol=1e-6)
            assert result.extents.min == pytest.approx(GRAY, abs=1e-6)
            assert result.extents.max == pytest.approx(GRAY, abs=1e-6)
            assert result.aspect_ratio == 1.0

    def test_end_to_end_pass_through(self, pipeline_config, gray_frame):
        """A model returning its RGB input unchanged yields the gray level as depth."""
        pipeline_config.calculate_depth_extents = True
        asset = ModelAsset(
            input_shape=(1, 256, 256, 3),
            output_shape=(1, 256, 256, 3),
            module=PassThrough(),
            name="pass_through",
        )

        with PipelineOrchestrator(pipeline_config, model=asset) as pipeline:
            result = pipeline.tick(gray_frame)

            assert result.success
            assert pipeline.network.layout is LayoutMode.DIRECT
            np.testing.assert_allclose(result.depth.to_numpy(), GRAY, atol=1e-6)
            assert result.extents.min == pytest.approx(GRAY, abs=1e-6)
            assert result.extents.max == pytest.approx(GRAY, abs=1e-6)

    def test_event_order(self, pipeline_config, identity_asset, gray_frame, mesh):
        """color_ready, extents, image_resized, depth_solved, then the mesh."""
        pipeline_config.calculate_depth_extents = True
        pipeline = PipelineOrchestrator(pipeline_config, model=identity_asset, mesh_receiver=mesh)
        pipeline.initialize()
        log = record_events(pipeline)

        result = pipeline.tick(gray_frame)

        assert [name for name, _ in log] == [
            "color_ready", "depth_extents", "image_resized", "depth_solved",
        ]
        assert log[0][1] is result.color
        assert log[3][1] is result.depth
        assert mesh.frames == [result.color]

    def test_extents_disabled(self, pipeline_config, identity_asset, gray_frame):
        pipeline = PipelineOrchestrator(pipeline_config, model=identity_asset).initialize()
        log = record_events(pipeline)

        result = pipeline.tick(gray_frame)

        assert result.extents is None
        assert "depth_extents" not in [name for name, _ in log]

    def test_missing_model_emits_color_only(self, pipeline_config, gray_frame, mesh):
        """Without a network: color-ready and image-resized, no depth-solved."""
        pipeline = PipelineOrchestrator(pipeline_config, mesh_receiver=mesh).initialize()
        log = record_events(pipeline)

        result = pipeline.tick(gray_frame)

        assert [name for name, _ in log] == ["color_ready", "image_resized"]
        assert not result.success
        assert "ModelMissing" in result.skip_reason
        assert result.color is not None
        assert result.depth is None
        assert mesh.frames == []
        assert pipeline.phase is PipelinePhase.RUNNING

    def test_no_frame_skips_tick(self, pipeline_config, identity_asset):
        pipeline = PipelineOrchestrator(pipeline_config, model=identity_asset).initialize()
        log = record_events(pipeline)

        result = pipeline.tick(None)

        assert not result.success
        assert "FrameUnavailable" in result.skip_reason
        assert log == []
        assert pipeline.state.frames_skipped == 1

    @pytest.mark.parametrize(
        "frame",
        [
            np.full((256, 256, 3), 0.5, dtype=np.float32),
            np.zeros((256, 256, 2), dtype=np.uint8),
            np.zeros((0, 0, 3), dtype=np.uint8),
            np.zeros((4, 0, 3), dtype=np.uint8),
            np.zeros((4, 4, 3, 1), dtype=np.uint8),
            [[0, 0], [0, 0]],
        ],
        ids=["float", "two_channel", "empty", "zero_width", "rank4", "list"],
    )
    def test_invalid_frame_skips_tick(self, pipeline_config, identity_asset, gray_frame, frame):
        """Unusable frames skip the tick and the next good frame still runs."""
        pipeline = PipelineOrchestrator(pipeline_config, model=identity_asset).initialize()
        log = record_events(pipeline)

        result = pipeline.tick(frame)

        assert not result.success
        assert "InvalidFrame" in result.skip_reason
        assert log == []
        assert pipeline.tick(gray_frame).success

    def test_grayscale_frame_accepted(self, pipeline_config, identity_asset):
        pipeline = PipelineOrchestrator(pipeline_config, model=identity_asset).initialize()

        result = pipeline.tick(np.full((64, 64), 128, dtype=np.uint8))

        assert result.success
        np.testing.assert_allclose(result.depth.to_numpy(), GRAY, atol=1e-6)

    def test_aspect_ratio_from_source_frame(self, pipeline_config, identity_asset, camera_frame):
        pipeline = PipelineOrchestrator(pipeline_config, model=identity_asset).initialize()
        ratios = []
        pipeline.events.image_resized.subscribe(ratios.append)

        result = pipeline.tick(camera_frame)

        assert result.aspect_ratio == pytest.approx(480 / 640)
        assert ratios == [pytest.approx(0.75)]
        assert result.color.size == (256, 256)

    def test_buffers_reused_across_ticks(self, pipeline_config, identity_asset, camera_frame):
        pipeline = PipelineOrchestrator(pipeline_config, model=identity_asset).initialize()

        first = pipeline.tick(camera_frame)
        second = pipeline.tick(camera_frame)

        assert first.color is second.color
        assert first.depth is second.depth
        assert first.frame_id + 1 == second.frame_id

    def test_reshape_model(self, pipeline_config, flat_asset, gray_frame):
        """A flattened-output model resolves to RESHAPE and fills the buffer."""
        with PipelineOrchestrator(pipeline_config, model=flat_asset) as pipeline:
            result = pipeline.tick(gray_frame)

            assert pipeline.network.layout is LayoutMode.RESHAPE
            np.testing.assert_allclose(result.depth.to_numpy(), GRAY, atol=1e-6)

    def test_nchw_model(self, pipeline_config, nchw_asset, gray_frame):
        with PipelineOrchestrator(pipeline_config, model=nchw_asset) as pipeline:
            result = pipeline.tick(gray_frame)

            assert result.success
            np.testing.assert_allclose(result.depth.to_numpy(), GRAY, atol=1e-6)

    def test_model_smaller_than_target(self, pipeline_config, gray_frame):
        """Depth planes at the model size are resampled to the working size."""
        pipeline_config.desired_width = 64
        pipeline_config.desired_height = 64
        asset = ModelAsset(input_shape=(1, 64, 64, 3), output_shape=(1, 64, 64, 1), module=FixedSizeDepth())

        with PipelineOrchestrator(pipeline_config, model=asset) as pipeline:
            pipeline.resize_target(128, 96)
            result = pipeline.tick(gray_frame)

            assert result.depth.size == (128, 96)
            assert result.color.size == (128, 96)
            np.testing.assert_allclose(result.depth.to_numpy(), GRAY, atol=1e-6)

    def test_tick_from_source(self, pipeline_config, identity_asset, gray_frame):
        source = StaticFrameSource(gray_frame)

        with PipelineOrchestrator(pipeline_config, model=identity_asset) as pipeline:
            assert pipeline.tick_from(source).success

    def test_latency_budget_flag(self, pipeline_config, identity_asset, gray_frame):
        pipeline_config.max_tick_latency_ms = 1e-9

        with PipelineOrchestrator(pipeline_config, model=identity_asset) as pipeline:
            result = pipeline.tick(gray_frame)

            assert result.latency_budget_exceeded
            assert result.total_latency_ms > 0
            assert pipeline.average_latency_ms > 0
            assert set(result.stage_latencies_ms) >= {"resize", "convert", "infer", "convert_back", "total"}

    def test_listener_error_does_not_skip(self, pipeline_config, identity_asset, gray_frame):
        def broken(_):
            raise RuntimeError("consumer bug")

        with PipelineOrchestrator(pipeline_config, model=identity_asset) as pipeline:
            pipeline.events.depth_solved.subscribe(broken)

            assert pipeline.tick(gray_frame).success


# =============================================================================
# Failure Handling Tests
# =============================================================================

class TestFailureHandling:
    """Tests for skip accounting and escalation."""

    def test_inference_failure_is_contained(self, pipeline_config, failing_asset, gray_frame):
        with PipelineOrchestrator(pipeline_config, model=failing_asset) as pipeline:
            result = pipeline.tick(gray_frame)
            pipeline.tick(gray_frame)

            state = pipeline.state
            assert not result.success
            assert "InferenceError" in result.skip_reason
            assert state.consecutive_failures == 2
            assert state.frames_skipped == 2
            assert state.phase is PipelinePhase.RUNNING

    def test_success_resets_consecutive_failures(self, pipeline_config, failing_asset, identity_asset, gray_frame):
        with PipelineOrchestrator(pipeline_config, model=failing_asset) as pipeline:
            pipeline.tick(gray_frame)
            pipeline.attach_model(identity_asset)
            result = pipeline.tick(gray_frame)

            assert result.success
            assert pipeline.state.consecutive_failures == 0
            assert pipeline.state.frames_processed == 1

    def test_stall_threshold_raises(self, pipeline_config, gray_frame):
        """Opt-in threshold turns repeated skips into a hard error."""
        pipeline_config.fail_after_consecutive_skips = 3

        with PipelineOrchestrator(pipeline_config) as pipeline:
            pipeline.tick(gray_frame)
            pipeline.tick(gray_frame)

            with pytest.raises(PipelineStalledError) as exc_info:
                pipeline.tick(gray_frame)

            assert exc_info.value.consecutive_failures == 3

    def test_no_threshold_skips_forever(self, pipeline_config, gray_frame):
        pipeline_config.stall_log_threshold = 2

        with PipelineOrchestrator(pipeline_config) as pipeline:
            for _ in range(5):
                pipeline.tick(gray_frame)

            assert pipeline.state.consecutive_failures == 5

    def test_state_is_a_snapshot(self, pipeline_config, gray_frame):
        with PipelineOrchestrator(pipeline_config) as pipeline:
            before = pipeline.state
            pipeline.tick(gray_frame)

            assert before.frames_skipped == 0
            assert pipeline.state.frames_skipped == 1


# =============================================================================
# Runtime Reconfiguration Tests
# =============================================================================

class TestReconfiguration:
    """Tests for attach_model and resize_target."""

    def test_attach_model_disposes_previous(self, pipeline_config, identity_asset, nchw_asset):
        with PipelineOrchestrator(pipeline_config, model=identity_asset) as pipeline:
            old = pipeline.network
            pipeline.attach_model(nchw_asset)

            assert old.disposed
            assert pipeline.network is not old
            assert not pipeline.network.disposed

    def test_attach_before_initialize_keeps_one_network(self, pipeline_config, identity_asset, gray_frame):
        """initialize() reuses a network attached while uninitialized."""
        pipeline = PipelineOrchestrator(pipeline_config)
        pipeline.attach_model(identity_asset)
        attached = pipeline.network

        pipeline.initialize()

        assert pipeline.network is attached
        assert not attached.disposed
        assert pipeline.tick(gray_frame).success

        pipeline.dispose()
        assert attached.disposed

    def test_attach_failure_leaves_no_network(self, pipeline_config, identity_asset, gray_frame):
        with PipelineOrchestrator(pipeline_config, model=identity_asset) as pipeline:
            old = pipeline.network

            with pytest.raises(ModelLoadError):
                pipeline.attach_model(ModelAsset(input_shape=(1, 2, 3)))

            assert old.disposed
            assert pipeline.network is None
            assert "ModelMissing" in pipeline.tick(gray_frame).skip_reason

    def test_resize_target_reallocates(self, pipeline_config, identity_asset, gray_frame):
        with PipelineOrchestrator(pipeline_config, model=identity_asset) as pipeline:
            first = pipeline.tick(gray_frame)
            old_color, old_depth = first.color, first.depth

            pipeline.resize_target(128, 128)
            second = pipeline.tick(gray_frame)

            assert old_color.is_released
            assert old_depth.is_released
            assert second.color.size == (128, 128)
            assert second.depth.size == (128, 128)
            assert pipeline.desired_size == (128, 128)
