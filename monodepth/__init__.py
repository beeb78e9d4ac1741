"""
Monocular Depth Pipeline

A real-time depth-from-camera system. Each frame from a live camera is
normalized to the network's input resolution, run through a monocular
depth-estimation network, and published as a depth buffer (plus optional
depth extents) to downstream consumers such as a mesh generator.

Per-frame stages (strict order):
1. Resize the raw color frame to the configured dimensions
2. Publish the normalized color frame
3. Convert to the network's input tensor layout
4. Run the forward pass
5. Convert the output tensor back into a depth buffer
6. Optionally extract depth extents
7. Publish depth and forward color to the mesh receiver
"""

__version__ = "0.1.0"
__author__ = "Monocular Depth Pipeline Team"
