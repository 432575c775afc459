"""PBX call recording transcription bridge."""

__version__ = "2.0.0"
