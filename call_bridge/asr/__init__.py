"""Speech-to-text engines."""

from call_bridge.asr.registry import get_transcription_engine

__all__ = ["get_transcription_engine"]
