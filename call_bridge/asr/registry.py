"""Transcription engine registry with configuration-driven provider selection.

Maps provider name strings to engine classes. Use get_transcription_engine()
to instantiate an engine by name with engine-specific configuration.
"""

from call_bridge.asr.interface import TranscriptionEngine
from call_bridge.asr.whisper import WhisperEngine
from call_bridge.utils.errors import TranscriptionError

TRANSCRIPTION_ENGINES: dict[str, type[TranscriptionEngine]] = {
    "openai": WhisperEngine,
    "whisper": WhisperEngine,
}


def get_transcription_engine(provider: str, **kwargs: object) -> TranscriptionEngine:
    """Create a transcription engine instance by provider name.

    Args:
        provider: Provider name (e.g., "whisper").
        **kwargs: Engine-specific configuration passed to the constructor.

    Returns:
        An initialized TranscriptionEngine instance.

    Raises:
        TranscriptionError: If the provider name is not registered.
    """
    engine_cls = TRANSCRIPTION_ENGINES.get(provider)
    if not engine_cls:
        available = ", ".join(sorted(TRANSCRIPTION_ENGINES.keys()))
        raise TranscriptionError(
            f"Unknown transcription provider: '{provider}'. Available: {available}",
            provider=provider,
            transient=False,
        )
    return engine_cls(**kwargs)
