"""
Shared fixtures for the depth pipeline tests.

All tests run on CPU with tiny in-memory networks.
"""

from typing import List

import numpy as np
import pytest
import torch
import torch.nn as nn

from monodepth.core.contracts import ChannelOrder
from monodepth.depth.inference_engine import InferenceEngine, ModelAsset
from monodepth.gpu.buffers import GpuBuffer
from monodepth.pipeline.orchestrator import PipelineConfig


# =============================================================================
# Test Networks
# =============================================================================

class IdentityNHWC(nn.Module):
    """(1, H, W, C) -> (1, H, W, 1), channel 0 of the input."""

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x[:, :, :, 0:1]


class IdentityNCHW(nn.Module):
    """(1, C, H, W) -> (1, 1, H, W), channel 0 of the input."""

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x[:, 0:1, :, :]


class FlatDepth(nn.Module):
    """(1, H, W, C) -> (H * W,), channel 0 flattened row-major."""

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x[0, :, :, 0].reshape(-1)


class FailingNet(nn.Module):
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        raise RuntimeError("boom")


class RecordingMesh:
    """Mesh receiver that keeps every frame it is handed."""

    def __init__(self):
        self.frames: List[GpuBuffer] = []

    def on_color_received(self, frame: GpuBuffer) -> None:
        self.frames.append(frame)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def cpu():
    return torch.device("cpu")


@pytest.fixture
def engine(cpu):
    return InferenceEngine(cpu)


@pytest.fixture
def identity_asset():
    """Identity NHWC model at 256x256."""
    return ModelAsset(
        input_shape=(1, 256, 256, 3),
        output_shape=(1, 256, 256, 1),
        module=IdentityNHWC(),
        name="identity",
    )


@pytest.fixture
def nchw_asset():
    return ModelAsset(
        input_shape=(1, 3, 256, 256),
        output_shape=(1, 1, 256, 256),
        module=IdentityNCHW(),
        channel_order=ChannelOrder.NCHW,
        name="identity_nchw",
    )


@pytest.fixture
def flat_asset():
    """Flattened-output model; resolves to RESHAPE."""
    return ModelAsset(
        input_shape=(1, 256, 256, 3),
        output_shape=(256 * 256,),
        module=FlatDepth(),
        name="flat",
    )


@pytest.fixture
def failing_asset():
    return ModelAsset(
        input_shape=(1, 256, 256, 3),
        output_shape=(1, 256, 256, 1),
        module=FailingNet(),
        name="failing",
    )


@pytest.fixture
def gray_frame():
    """Solid gray 256x256 RGB frame."""
    return np.full((256, 256, 3), 128, dtype=np.uint8)


@pytest.fixture
def camera_frame():
    """Random 640x480 RGB frame."""
    rng = np.random.default_rng(0)
    return rng.integers(0, 256, (480, 640, 3), dtype=np.uint8)


@pytest.fixture
def pipeline_config():
    """CPU pipeline with a generous latency budget."""
    return PipelineConfig(
        desired_width=256,
        desired_height=256,
        device="cpu",
        max_tick_latency_ms=10_000.0,
    )


@pytest.fixture
def mesh():
    return RecordingMesh()
