"""
Media engines built on the ffmpeg/ffprobe process runner.
"""
