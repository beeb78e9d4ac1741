"""
Depth range statistics.
"""

from __future__ import annotations

from typing import Union

import torch

from monodepth.core.contracts import DepthExtents
from monodepth.core.errors import TensorLayoutError
from monodepth.transforms.tensor_bridge import OutputTensor


class DepthStatsExtractor:
    """Computes per-frame depth extents from raw network output."""

    def extents(self, output: Union[OutputTensor, torch.Tensor]) -> DepthExtents:
        """
        Min and max over every finite value of the output.

        Recomputed on every call; nothing is cached between frames.

        Raises:
            TensorLayoutError: output has no finite values
        """
        data = output.tensor if isinstance(output, OutputTensor) else output

        flat = data.detach().reshape(-1)
        finite = flat[torch.isfinite(flat)]
        if finite.numel() == 0:
            raise TensorLayoutError(
                f"Output of shape {tuple(data.shape)} has no finite depth values"
            )

        lo, hi = torch.aminmax(finite.float())
        return DepthExtents(min=float(lo.item()), max=float(hi.item()))
