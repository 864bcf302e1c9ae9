"""Wrappers around the external audio tools used by the processors."""

from resonance.media.ffmpeg import AudioMetadata, FFmpeg, HlsOutput, LoudnessMeasurement
from resonance.media.fingerprint import AcoustIdClient, AcoustIdMatch, Fingerprint, Fpcalc
from resonance.media.tools import ToolResult, ToolRunner
from resonance.media.waveform import AudioWaveform

__all__ = [
    "AcoustIdClient",
    "AcoustIdMatch",
    "AudioMetadata",
    "AudioWaveform",
    "FFmpeg",
    "Fingerprint",
    "Fpcalc",
    "HlsOutput",
    "LoudnessMeasurement",
    "ToolResult",
    "ToolRunner",
]
