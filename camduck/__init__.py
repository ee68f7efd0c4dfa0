"""Camera-driven music ducking for a live microphone mix."""

__version__ = "0.1.0"
