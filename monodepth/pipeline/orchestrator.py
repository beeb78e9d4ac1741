"""
Pipeline Orchestrator.

Executes the depth pipeline in strict order, once per frame:

1. Resize the raw frame to the working resolution
2. Emit the normalized color frame
3. Skip the remaining steps if no network is loaded
4. Run inference (and emit depth extents when enabled)
5. Emit the aspect ratio
6. Emit the depth buffer
7. Forward the normalized color frame to the mesh receiver
"""

from __future__ import annotations

import dataclasses
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray
from loguru import logger

from monodepth.core.contracts import (
    BufferFormat,
    ChannelOrder,
    FrameResult,
    LayoutMode,
    MeshReceiver,
    PipelinePhase,
    PipelineState,
)
from monodepth.core.errors import (
    ConfigError,
    FrameUnavailable,
    InferenceError,
    InvalidFrame,
    ModelLoadError,
    ModelMissing,
    PipelineStalledError,
    PipelineStateError,
    TensorLayoutError,
)
from monodepth.capture.frame_source import FrameSource
from monodepth.depth.depth_stats import DepthStatsExtractor
from monodepth.depth.inference_engine import InferenceEngine, ModelAsset, NetworkHandle
from monodepth.gpu.buffers import GpuBuffer, ensure_buffer
from monodepth.pipeline.events import PipelineEvents
from monodepth.pipeline.profiler import TickProfiler
from monodepth.transforms.tensor_bridge import TensorBridge
from monodepth.transforms.texture_resizer import TextureResizer


# Per-tick failures: the tick is skipped and the next one retries
RECOVERABLE_ERRORS = (
    FrameUnavailable,
    InvalidFrame,
    ModelMissing,
    TensorLayoutError,
    InferenceError,
)


@dataclass
class PipelineConfig:
    """Configuration for the pipeline."""
    # Working resolution
    desired_width: int = 256
    desired_height: int = 256

    # Model
    model_path: Optional[str] = None
    metadata_path: Optional[str] = None
    layout_mode: Optional[LayoutMode] = None  # None = resolve from model shapes
    channel_order: Optional[ChannelOrder] = None
    device: str = "auto"
    warmup_iterations: int = 0

    # Outputs
    calculate_depth_extents: bool = False

    # Latency budget
    max_tick_latency_ms: float = 33.0

    # Failure escalation
    stall_log_threshold: int = 30
    fail_after_consecutive_skips: Optional[int] = None  # None = never raise

    # Profiling
    profile_interval_s: float = 5.0


class PipelineOrchestrator:
    """
    Frame-synchronous depth pipeline.

    Lifecycle: UNINITIALIZED -> READY -> RUNNING -> DISPOSED.

    Guarantees:
    - Pipeline order is never reordered
    - Per-tick failures skip the tick instead of stopping the pipeline
    - Every buffer and the network are released exactly once

    Usage:
        with PipelineOrchestrator(config, model=asset) as pipeline:
            result = pipeline.tick(frame)
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        model: Optional[ModelAsset] = None,
        mesh_receiver: Optional[MeshReceiver] = None,
        engine: Optional[InferenceEngine] = None,
    ):
        """
        Initialize pipeline orchestrator.

        Args:
            config: Pipeline configuration
            model: Model to load; overrides config.model_path
            mesh_receiver: Receives the normalized color frame each tick
            engine: Inference engine (created from config.device if None)
        """
        self.config = config or PipelineConfig()
        self._validate_size(self.config.desired_width, self.config.desired_height)

        self.events = PipelineEvents()
        self.mesh_receiver = mesh_receiver

        self._model_asset = model
        self._state = PipelineState()

        self._engine = engine or InferenceEngine(self.config.device)
        self._device = self._engine.device
        self._resizer = TextureResizer(self._device)
        self._bridge = TensorBridge()
        self._stats = DepthStatsExtractor()
        self._profiler = TickProfiler()

        self._network: Optional[NetworkHandle] = None
        self._depth_buffer: Optional[GpuBuffer] = None
        self._desired: Tuple[int, int] = (self.config.desired_width, self.config.desired_height)
        self._frame_id = 0

        # Performance tracking
        self._frame_latencies: List[float] = []

    # ============================================================
    # LIFECYCLE
    # ============================================================

    def initialize(self) -> PipelineOrchestrator:
        """
        Load the network and allocate buffers.

        Raises:
            ModelLoadError: the configured model cannot be loaded; the
                pipeline stays UNINITIALIZED with nothing allocated
            PipelineStateError: the pipeline was already disposed
        """
        if self._state.phase is PipelinePhase.DISPOSED:
            raise PipelineStateError("Cannot initialize a disposed pipeline")
        if self._state.phase is not PipelinePhase.UNINITIALIZED:
            return self

        # attach_model may already have loaded a network
        if self._network is None:
            asset = self._resolve_asset()
            if asset is not None:
                self._network = self._load_network(asset)
            else:
                logger.warning("No depth model configured; ticks will emit color only")

        width, height = self._desired
        try:
            self._resizer.reserve(width, height)
            self._depth_buffer = GpuBuffer.allocate(width, height, BufferFormat.DEPTH_F32, self._device)
        except RuntimeError:
            self._release_all()
            raise

        logger.info(f"Render buffer size: ({width}, {height}) on {self._device}")

        self._state.phase = PipelinePhase.READY
        return self

    def dispose(self) -> None:
        """Release the network and all buffers. Safe to call from any phase."""
        if self._state.phase is PipelinePhase.DISPOSED:
            return

        self._release_all()
        self._state.phase = PipelinePhase.DISPOSED
        logger.info(f"Pipeline disposed after {self._state.frames_processed} frames")

    def _release_all(self) -> None:
        self._engine.dispose(self._network)
        self._network = None

        self._resizer.release()

        if self._depth_buffer is not None:
            self._depth_buffer.release()
            self._depth_buffer = None

    def __enter__(self) -> PipelineOrchestrator:
        return self.initialize()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    # ============================================================
    # MODEL
    # ============================================================

    def _resolve_asset(self) -> Optional[ModelAsset]:
        if self._model_asset is not None:
            return self._model_asset
        if self.config.model_path:
            return ModelAsset.from_path(self.config.model_path, self.config.metadata_path)
        return None

    def _load_network(self, asset: ModelAsset) -> NetworkHandle:
        handle = self._engine.load(
            asset,
            layout=self.config.layout_mode,
            channel_order=self.config.channel_order,
        )
        self._bridge.channel_order = handle.channel_order
        self._check_model_size(handle)

        if self.config.warmup_iterations > 0:
            try:
                self._engine.warmup(handle, self.config.warmup_iterations)
            except InferenceError as e:
                self._engine.dispose(handle)
                raise ModelLoadError(f"Warmup failed for '{handle.name}': {e}") from e

        return handle

    def _check_model_size(self, handle: NetworkHandle) -> None:
        if (handle.input_width, handle.input_height) != self._desired:
            logger.warning(
                f"Model '{handle.name}' declares {handle.input_width}x{handle.input_height} "
                f"input but frames are resized to {self._desired[0]}x{self._desired[1]}"
            )

    def attach_model(self, asset: Optional[ModelAsset]) -> None:
        """
        Replace the loaded network.

        The current network is disposed before the new one is loaded. If
        loading fails the pipeline keeps running without a network.

        Raises:
            ModelLoadError: the new model cannot be loaded
        """
        self._require_not_disposed()

        previous, self._network = self._network, None
        self._engine.dispose(previous)

        self._model_asset = asset
        if asset is not None:
            self._network = self._load_network(asset)

    def resize_target(self, width: int, height: int) -> None:
        """Change the working resolution. Buffers are reallocated on the next tick."""
        self._require_not_disposed()
        self._validate_size(width, height)

        if (width, height) == self._desired:
            return

        logger.info(f"Resize target: {self._desired[0]}x{self._desired[1]} -> {width}x{height}")
        self._desired = (width, height)
        if self._network is not None:
            self._check_model_size(self._network)

    @staticmethod
    def _validate_size(width: int, height: int) -> None:
        if width <= 0 or height <= 0:
            raise ConfigError(f"Desired size must be positive, got {width}x{height}")

    # ============================================================
    # PER-FRAME
    # ============================================================

    def tick(self, frame: Optional[NDArray[np.uint8]]) -> FrameResult:
        """
        Process a single frame through the pipeline.

        Args:
            frame: (H, W), RGB or RGBA uint8 frame, or None when the source
                has nothing. Other frames skip the tick with InvalidFrame.

        Returns:
            FrameResult; `success` is False when the tick was skipped

        Raises:
            PipelineStateError: not initialized, or already disposed
            PipelineStalledError: fail_after_consecutive_skips was reached
        """
        self._require_active()
        if self._state.phase is PipelinePhase.READY:
            self._state.phase = PipelinePhase.RUNNING

        self._frame_id += 1
        result = FrameResult(frame_id=self._frame_id)
        tick_start = time.perf_counter()

        failure: Optional[Exception] = None
        try:
            self._run_tick(frame, result)
        except RECOVERABLE_ERRORS as e:
            failure = e

        total_latency = (time.perf_counter() - tick_start) * 1000
        self._record_latency(result, total_latency)
        self._profiler.log_if_ready(self.config.profile_interval_s)

        if failure is None:
            self._state.frames_processed += 1
            self._state.consecutive_failures = 0
        else:
            self._record_skip(result, failure)

        return result

    def tick_from(self, source: FrameSource) -> FrameResult:
        """Pull the current frame from `source` and process it."""
        return self.tick(source.current_frame())

    def _run_tick(self, frame: Optional[NDArray[np.uint8]], result: FrameResult) -> None:
        if frame is None:
            raise FrameUnavailable("No source frame available")
        self._validate_frame(frame)

        width, height = self._desired

        # ============================================================
        # STEPS 1-2: Resize and emit the color frame
        # ============================================================
        with self._stage("resize", result):
            color = self._resizer.resize(frame, width, height)
        result.color = color
        self.events.color_ready.emit(color)

        aspect_ratio = frame.shape[0] / float(frame.shape[1])
        result.aspect_ratio = aspect_ratio

        # ============================================================
        # STEP 3: No network -> color only
        # ============================================================
        network = self._network
        if network is None:
            self.events.image_resized.emit(aspect_ratio)
            raise ModelMissing("No network loaded; depth skipped")

        # ============================================================
        # STEP 4: Inference
        # ============================================================
        depth = ensure_buffer(self._depth_buffer, width, height, BufferFormat.DEPTH_F32, self._device)
        self._depth_buffer = depth

        with self._stage("convert", result):
            input_tensor = self._bridge.to_tensor(color, channels=network.input_channels)

        with input_tensor:
            with self._stage("infer", result):
                output = self._engine.execute(network, input_tensor)

        with output:
            with self._stage("convert_back", result):
                self._bridge.to_depth_buffer(
                    output,
                    network.layout,
                    network.input_width,
                    network.input_height,
                    depth,
                )

            if self.config.calculate_depth_extents:
                with self._stage("stats", result):
                    extents = self._stats.extents(output)
                result.extents = extents
                self.events.depth_extents.emit(extents)

        result.depth = depth

        # ============================================================
        # STEPS 5-7: Notify consumers
        # ============================================================
        self.events.image_resized.emit(aspect_ratio)
        self.events.depth_solved.emit(depth)

        if self.mesh_receiver is not None:
            try:
                self.mesh_receiver.on_color_received(color)
            except Exception as e:
                logger.opt(exception=e).error(f"Mesh receiver raised: {e}")

    @staticmethod
    def _validate_frame(frame: NDArray[np.uint8]) -> None:
        if not isinstance(frame, np.ndarray):
            raise InvalidFrame(f"Expected a numpy frame, got {type(frame).__name__}")
        if frame.dtype != np.uint8:
            raise InvalidFrame(f"Frames must be uint8, got {frame.dtype}")
        if frame.ndim not in (2, 3) or (frame.ndim == 3 and frame.shape[2] not in (3, 4)):
            raise InvalidFrame(f"Unsupported frame shape {frame.shape}")
        if frame.shape[0] == 0 or frame.shape[1] == 0:
            raise InvalidFrame(f"Empty frame {frame.shape}")

    @contextmanager
    def _stage(self, name: str, result: FrameResult) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed = (time.perf_counter() - start) * 1000
            result.stage_latencies_ms[name] = elapsed
            self._profiler.record(name, elapsed)

    def _record_latency(self, result: FrameResult, total_latency: float) -> None:
        result.total_latency_ms = total_latency
        result.stage_latencies_ms["total"] = total_latency
        self._profiler.record("total", total_latency)

        self._frame_latencies.append(total_latency)
        if len(self._frame_latencies) > 100:
            self._frame_latencies.pop(0)

        result.latency_budget_exceeded = total_latency > self.config.max_tick_latency_ms
        if result.latency_budget_exceeded:
            logger.warning(
                f"Latency budget exceeded: {total_latency:.1f}ms > "
                f"{self.config.max_tick_latency_ms}ms"
            )

        self._state.last_tick_latency_ms = total_latency

    def _record_skip(self, result: FrameResult, error: Exception) -> None:
        reason = f"{type(error).__name__}: {error}"
        result.success = False
        result.skip_reason = reason

        self._state.frames_skipped += 1
        self._state.consecutive_failures += 1
        self._state.last_failure_reason = reason

        if isinstance(error, (FrameUnavailable, ModelMissing)):
            logger.debug(f"Tick {result.frame_id} skipped: {reason}")
        else:
            logger.warning(f"Tick {result.frame_id} skipped: {reason}")

        consecutive = self._state.consecutive_failures
        if consecutive == self.config.stall_log_threshold:
            logger.error(f"{consecutive} consecutive ticks skipped (last: {reason})")

        limit = self.config.fail_after_consecutive_skips
        if limit is not None and consecutive >= limit:
            raise PipelineStalledError(consecutive, reason)

    # ============================================================
    # STATE
    # ============================================================

    def _require_active(self) -> None:
        phase = self._state.phase
        if phase is PipelinePhase.UNINITIALIZED:
            raise PipelineStateError("Pipeline is not initialized; call initialize() first")
        if phase is PipelinePhase.DISPOSED:
            raise PipelineStateError("Pipeline has been disposed")

    def _require_not_disposed(self) -> None:
        if self._state.phase is PipelinePhase.DISPOSED:
            raise PipelineStateError("Pipeline has been disposed")

    @property
    def state(self) -> PipelineState:
        """Snapshot of the pipeline state."""
        return dataclasses.replace(self._state)

    @property
    def phase(self) -> PipelinePhase:
        return self._state.phase

    @property
    def network(self) -> Optional[NetworkHandle]:
        return self._network

    @property
    def color_buffer(self) -> Optional[GpuBuffer]:
        return self._resizer.buffer

    @property
    def depth_buffer(self) -> Optional[GpuBuffer]:
        return self._depth_buffer

    @property
    def desired_size(self) -> Tuple[int, int]:
        """(width, height)"""
        return self._desired

    @property
    def profiler(self) -> TickProfiler:
        return self._profiler

    @property
    def average_latency_ms(self) -> float:
        if not self._frame_latencies:
            return 0.0
        return sum(self._frame_latencies) / len(self._frame_latencies)
