"""
Transcode engine: video, audio and calibration sample encodes.

Argument lists are assembled with ffmpeg-python and executed through the
process runner so progress can be parsed from stderr as it arrives.
"""

import math
import os
import time
import logging
from typing import Any, Dict, List, Optional

import ffmpeg

from ..models import (
    AudioTranscodeOptions,
    AudioVBROptions,
    SampleResult,
    TranscodeOptions,
    VideoProfile,
)
from .probe import get_duration
from .progress import ProgressCallback, ProgressTracker
from .runner import ProcessRunner

logger = logging.getLogger("media_worker")

GPU_ENCODERS = {"AV1": "av1_nvenc", "HEVC": "hevc_nvenc", "H264": "h264_nvenc"}
CPU_ENCODERS = {"AV1": "libsvtav1", "HEVC": "libx265", "H264": "libx264"}

DEBAND_PARAMS = {"1thr": 0.02, "2thr": 0.02, "3thr": 0.02, "4thr": 0.02}
DELAY_CHANNELS = 8
MAX_AUDIO_BITRATE_KBPS = 256
DEFAULT_SAMPLE_DURATION = 300


def resolve_video_encoder(codec: str, use_gpu: bool) -> str:
    """Map codec x engine to a concrete ffmpeg encoder name"""
    encoders = GPU_ENCODERS if use_gpu else CPU_ENCODERS
    try:
        return encoders[codec.upper()]
    except KeyError:
        raise ValueError(f"Unsupported video codec: {codec}")


def needs_audio_transcode(codec: Optional[str], bitrate: Optional[int]) -> bool:
    """Whether an audio stream must be re-encoded before it can be muxed as-is"""
    codec = (codec or "").lower()
    if codec == "mp3":
        return False
    if codec == "aac" and bitrate and 0 < bitrate <= MAX_AUDIO_BITRATE_KBPS * 1000:
        return False
    return True


def suggest_audio_bitrate(source_bitrate: Optional[int]) -> int:
    """Target bitrate in kbps for a source bitrate in bits/second"""
    if not source_bitrate or source_bitrate <= 0:
        return MAX_AUDIO_BITRATE_KBPS
    return min(math.floor(source_bitrate / 1000 + 0.5), MAX_AUDIO_BITRATE_KBPS)


def _rate_control_kwargs(rate_control: str, quality: int, max_bitrate: Optional[float],
                         use_gpu: bool) -> Dict[str, Any]:
    mode = (rate_control or "CQ").upper()
    if not use_gpu:
        return {"crf": quality}
    if mode == "VBR":
        kwargs = {"rc": "vbr", "cq": quality}
        if max_bitrate:
            kwargs["maxrate"] = f"{max_bitrate:g}M"
            kwargs["bufsize"] = f"{max_bitrate * 2:g}M"
        return kwargs
    if mode == "CONSTQP":
        return {"rc": "constqp", "qp": quality}
    return {"cq": quality}


def build_video_encoder_kwargs(options: TranscodeOptions) -> Dict[str, Any]:
    kwargs = {"c:v": resolve_video_encoder(options.codec, options.use_gpu)}
    kwargs.update(_rate_control_kwargs(options.rate_control, options.quality,
                                       options.max_bitrate, options.use_gpu))
    kwargs["preset"] = options.preset
    if options.use_gpu:
        kwargs.update({
            "tune": "hq",
            "spatial-aq": 1,
            "temporal-aq": 1,
            "aq-strength": 15,
        })
    kwargs["g"] = 360
    return kwargs


def build_profile_encoder_kwargs(profile: VideoProfile, source_bit_depth: int = 8) -> Dict[str, Any]:
    """Encoder options for a profile; input-side hwaccel flags are not included"""
    codec = profile.codec.upper()
    kwargs: Dict[str, Any] = {"c:v": resolve_video_encoder(codec, profile.use_gpu)}

    if profile.use_gpu:
        kwargs.update(_rate_control_kwargs(profile.rate_control, profile.quality,
                                           profile.max_bitrate, True))
        kwargs["preset"] = profile.preset
        if profile.tune and profile.tune.upper() != "NONE":
            kwargs["tune"] = profile.tune.lower()
        if profile.multipass and profile.multipass.upper() != "DISABLED":
            kwargs["multipass"] = profile.multipass.lower()
        kwargs["spatial-aq"] = 1 if profile.spatial_aq else 0
        kwargs["temporal-aq"] = 1 if profile.temporal_aq else 0
        kwargs["aq-strength"] = profile.aq_strength
        if profile.lookahead and profile.lookahead > 0:
            kwargs["rc-lookahead"] = profile.lookahead
        if profile.lookahead_level is not None:
            kwargs["lookahead_level"] = profile.lookahead_level
        kwargs["g"] = profile.gop_size
        if profile.b_ref_mode and profile.b_ref_mode.upper() != "DISABLED":
            kwargs["b_ref_mode"] = profile.b_ref_mode.lower()
    else:
        kwargs["crf"] = profile.quality
        kwargs["preset"] = profile.preset
        kwargs["g"] = profile.gop_size
        # With cuda output frames the GPU picks the pixel format itself
        if codec == "AV1" and (profile.force_10bit or source_bit_depth >= 10):
            kwargs["pix_fmt"] = "yuv420p10le"

    return kwargs


def _video_input(input_path: str, use_gpu: bool, deband: bool, **input_kwargs):
    """Input node plus the optional deband chain"""
    if use_gpu:
        input_kwargs.update(hwaccel="cuda", hwaccel_output_format="cuda")
    stream = ffmpeg.input(input_path, **input_kwargs).video
    if deband:
        if use_gpu:
            # deband only runs on host memory frames
            stream = stream.filter("hwdownload").filter("format", "nv12")
        stream = stream.filter("deband", **DEBAND_PARAMS)
        if use_gpu:
            stream = stream.filter("format", "nv12").filter("hwupload_cuda")
    return stream


def build_video_args(input_path: str, output_path: str, options: TranscodeOptions) -> List[str]:
    stream = _video_input(input_path, False, False)
    return (
        ffmpeg
        .output(stream, output_path, an=None, **build_video_encoder_kwargs(options))
        .overwrite_output()
        .get_args()
    )


def build_profile_args(input_path: str, output_path: str, profile: VideoProfile,
                       source_bit_depth: int = 8, start: Optional[float] = None,
                       duration: Optional[float] = None) -> List[str]:
    input_kwargs = {}
    if start is not None:
        input_kwargs["ss"] = start
    if duration is not None:
        input_kwargs["t"] = duration
    stream = _video_input(input_path, profile.use_gpu, profile.deband is not False, **input_kwargs)
    return (
        ffmpeg
        .output(stream, output_path, an=None,
                **build_profile_encoder_kwargs(profile, source_bit_depth))
        .overwrite_output()
        .get_args()
    )


def build_audio_decode_args(input_path: str, wav_path: str, options: AudioTranscodeOptions) -> List[str]:
    """Phase one of the CBR encode: decode to PCM honoring the sync offset"""
    input_kwargs = {}
    if options.sync_offset_ms > 0:
        input_kwargs["ss"] = f"{options.sync_offset_ms / 1000:.3f}"
    stream = _audio_source(input_path, options.stream_index, options.sync_offset_ms < 0, **input_kwargs)
    if options.sync_offset_ms < 0:
        delay = str(abs(options.sync_offset_ms))
        stream = stream.filter("adelay", "|".join([delay] * DELAY_CHANNELS))
    return (
        ffmpeg
        .output(stream, wav_path, ar=options.sample_rate, ac=options.channels)
        .overwrite_output()
        .get_args()
    )


def build_audio_encode_args(wav_path: str, output_path: str, options: AudioTranscodeOptions) -> List[str]:
    return (
        ffmpeg
        .input(wav_path)
        .output(output_path, **{"c:a": options.codec, "b:a": f"{options.bitrate}k"})
        .overwrite_output()
        .get_args()
    )


def build_audio_vbr_args(input_path: str, output_path: str, options: AudioVBROptions) -> List[str]:
    input_kwargs = {"threads": 0}
    if options.sync_offset_ms > 0:
        input_kwargs["ss"] = f"{options.sync_offset_ms / 1000:.3f}"
    stream = _audio_source(input_path, options.stream_index, options.sync_offset_ms < 0, **input_kwargs)
    if options.sync_offset_ms < 0:
        delay = str(abs(options.sync_offset_ms))
        stream = stream.filter("adelay", "|".join([delay] * DELAY_CHANNELS))

    output_kwargs: Dict[str, Any] = {"c:a": options.codec, "b:a": f"{options.target_bitrate}k", "vn": None}
    if options.sample_rate:
        output_kwargs["ar"] = options.sample_rate
    if options.channels:
        output_kwargs["ac"] = options.channels
    return ffmpeg.output(stream, output_path, **output_kwargs).overwrite_output().get_args()


def _audio_source(input_path: str, stream_index: Optional[int], filtered: bool, **input_kwargs):
    source = ffmpeg.input(input_path, **input_kwargs)
    if stream_index is not None:
        return source[f"a:{stream_index}"]
    if filtered:
        return source["a:0"]
    # No explicit map: ffmpeg picks the best audio stream
    return source


async def transcode_video(runner: ProcessRunner, input_path: str, output_path: str,
                          options: Optional[TranscodeOptions] = None,
                          on_progress: Optional[ProgressCallback] = None) -> None:
    """Encode the video stream of input_path, dropping audio"""
    options = options or TranscodeOptions()
    duration = await get_duration(runner, input_path)
    args = build_video_args(input_path, output_path, options)

    logger.info(f"Transcoding video {input_path} -> {output_path} ({options.codec}, gpu={options.use_gpu})")
    tracker = ProgressTracker(duration, "video")
    await runner.run("ffmpeg", args, tracker.line_handler(on_progress))
    logger.info(f"Video transcode finished: {output_path}")


async def transcode_with_profile(runner: ProcessRunner, input_path: str, output_path: str,
                                 profile: VideoProfile, source_bit_depth: int = 8,
                                 on_progress: Optional[ProgressCallback] = None) -> None:
    """Encode using every knob of an encoding profile"""
    duration = await get_duration(runner, input_path)
    args = build_profile_args(input_path, output_path, profile, source_bit_depth)

    logger.info(f"Transcoding {input_path} with profile '{profile.name}' -> {output_path}")
    tracker = ProgressTracker(duration, "video")
    await runner.run("ffmpeg", args, tracker.line_handler(on_progress))
    logger.info(f"Profile transcode finished: {output_path}")


async def encode_sample(runner: ProcessRunner, input_path: str, output_path: str,
                        profile: VideoProfile, start: float = 0,
                        duration: float = DEFAULT_SAMPLE_DURATION, source_bit_depth: int = 8,
                        on_progress: Optional[ProgressCallback] = None) -> SampleResult:
    """
    Encode a time window with a profile for quality-per-size calibration.

    Returns:
        SampleResult with output path, wall time and output size
    """
    args = build_profile_args(input_path, output_path, profile, source_bit_depth,
                              start=start, duration=duration)

    logger.info(f"Sample encode of {input_path} [{start}s +{duration}s] with profile '{profile.name}'")
    started = time.monotonic()
    tracker = ProgressTracker(duration, "video")
    await runner.run("ffmpeg", args, tracker.line_handler(on_progress))
    encoding_time = time.monotonic() - started

    output_size = os.path.getsize(output_path) if os.path.exists(output_path) else 0
    logger.info(f"Sample encode finished in {encoding_time:.1f}s, {output_size} bytes")
    return SampleResult(output_path, encoding_time, output_size)


async def transcode_audio(runner: ProcessRunner, input_path: str, output_path: str,
                          options: Optional[AudioTranscodeOptions] = None,
                          on_progress: Optional[ProgressCallback] = None) -> None:
    """Two-phase constant bitrate encode through an intermediate WAV file"""
    options = options or AudioTranscodeOptions()
    duration = await get_duration(runner, input_path)
    wav_path = os.path.splitext(output_path)[0] + ".wav"

    logger.info(f"Transcoding audio {input_path} -> {output_path} ({options.codec} {options.bitrate}k)")
    try:
        decode = ProgressTracker(duration, "audio", start_percent=0, span=50)
        await runner.run("ffmpeg", build_audio_decode_args(input_path, wav_path, options),
                         decode.line_handler(on_progress))

        encode = ProgressTracker(duration, "audio", start_percent=50, span=50)
        await runner.run("ffmpeg", build_audio_encode_args(wav_path, output_path, options),
                         encode.line_handler(on_progress))
    finally:
        if os.path.exists(wav_path):
            os.remove(wav_path)
    logger.info(f"Audio transcode finished: {output_path}")


async def transcode_audio_vbr(runner: ProcessRunner, input_path: str, output_path: str,
                              options: Optional[AudioVBROptions] = None,
                              on_progress: Optional[ProgressCallback] = None) -> None:
    options = options or AudioVBROptions()
    duration = await get_duration(runner, input_path)

    logger.info(f"Transcoding audio (VBR) {input_path} -> {output_path} ({options.codec} ~{options.target_bitrate}k)")
    tracker = ProgressTracker(duration, "audio")
    await runner.run("ffmpeg", build_audio_vbr_args(input_path, output_path, options),
                     tracker.line_handler(on_progress))
    logger.info(f"Audio transcode finished: {output_path}")
