"""AI Scene Engine - resumable multi-stage scene generation pipeline."""

__version__ = "0.1.0"
