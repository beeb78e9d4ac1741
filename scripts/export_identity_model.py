#!/usr/bin/env python3
"""
Export an identity "depth" model for smoke tests.

The model returns the input's first channel, so a solid gray frame of
value v produces a depth plane of v / 255 everywhere. Writes a
TorchScript file plus the YAML metadata sidecar the pipeline expects.

Usage:
    python scripts/export_identity_model.py --output models/identity.pt
    python scripts/export_identity_model.py --output models/identity_flat.pt --flat
    python main.py --model models/identity.pt --extents
"""

import argparse
import sys
from pathlib import Path

import torch
import torch.nn as nn
import yaml
from loguru import logger


class IdentityDepth(nn.Module):
    """Channel 0 of the input, optionally flattened."""

    def __init__(self, channels_last: bool = True, flat: bool = False):
        super().__init__()
        self.channels_last = channels_last
        self.flat = flat

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        if self.channels_last:
            out = x[:, :, :, 0:1]
        else:
            out = x[:, 0:1, :, :]
        if self.flat:
            return out.reshape(-1)
        return out


def export(output: Path, width: int, height: int, channel_order: str, flat: bool) -> Path:
    channels_last = channel_order == "nhwc"
    module = torch.jit.script(IdentityDepth(channels_last=channels_last, flat=flat))

    output.parent.mkdir(parents=True, exist_ok=True)
    module.save(str(output))

    if channels_last:
        input_shape = [1, height, width, 3]
        output_shape = [1, height, width, 1]
    else:
        input_shape = [1, 3, height, width]
        output_shape = [1, 1, height, width]

    metadata = {
        "name": output.stem,
        "input_shape": input_shape,
        "output_shape": [width * height] if flat else output_shape,
        "channel_order": channel_order,
    }
    if flat:
        metadata["layout"] = "reshape"

    meta_path = output.with_suffix(".yaml")
    with open(meta_path, "w") as f:
        yaml.safe_dump(metadata, f, sort_keys=False)

    logger.info(f"Wrote {output} and {meta_path}")
    return output


def main():
    parser = argparse.ArgumentParser(description="Export an identity depth model")
    parser.add_argument("--output", "-o", type=Path, default=Path("models/identity.pt"))
    parser.add_argument("--width", type=int, default=256)
    parser.add_argument("--height", type=int, default=256)
    parser.add_argument("--channel-order", choices=["nhwc", "nchw"], default="nhwc")
    parser.add_argument("--flat", action="store_true", help="Flatten the output (RESHAPE layout)")
    args = parser.parse_args()

    export(args.output, args.width, args.height, args.channel_order, args.flat)
    return 0


if __name__ == "__main__":
    sys.exit(main())
