"""
Frame Capture Module.

Responsibilities:
- Frame source interface consumed by the pipeline
- Webcam acquisition
- Static and on-disk image sources
"""

from .frame_source import FrameSource, StaticFrameSource, ImageFileSource
from .video_capture import VideoCapture
