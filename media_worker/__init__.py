"""
Media worker: ffmpeg-backed transcode, demux and merge pipelines with
bounded worker pools and a donor-track merge pipeline.
"""

__version__ = "0.1.0"
