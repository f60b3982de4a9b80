"""Streaming response-to-speech orchestration for a voice assistant device."""

__version__ = "0.1.0"
