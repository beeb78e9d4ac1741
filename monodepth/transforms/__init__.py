"""
Frame Transform Module.

Responsibilities:
- Resizing camera frames to the network resolution
- Buffer to tensor conversion and back
"""

from .texture_resizer import TextureResizer
from .tensor_bridge import TensorBridge, InputTensor, OutputTensor
