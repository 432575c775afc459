"""Abstract transcription engine interface.

Defines the TranscriptionEngine ABC and the transcript data model.
Concrete implementations (e.g., Whisper) subclass TranscriptionEngine.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass(frozen=True)
class TranscriptionResult:
    """Transcript of one call recording."""

    text: str
    language: str
    duration: float
    segment_count: int | None = None
    raw_response: dict = field(default_factory=dict, compare=False, repr=False)


class TranscriptionEngine(ABC):
    """Abstract base class for speech-to-text engines.

    Subclasses must implement the transcribe() method.
    """

    provider = "unknown"

    @abstractmethod
    async def transcribe(
        self, audio: bytes, call_id: str, audio_format: str = "wav"
    ) -> TranscriptionResult:
        """Transcribe audio bytes and return a structured transcript.

        Args:
            audio: Validated audio bytes.
            call_id: Call identifier, used to name the uploaded file.
            audio_format: Container format tag (e.g., "wav", "mp3").

        Returns:
            TranscriptionResult with text, language, duration and segments.
        """

    async def close(self) -> None:
        """Release network resources held by the engine."""
