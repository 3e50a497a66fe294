"""scribed: background speech transcription worker."""

__version__ = "0.1.0"
