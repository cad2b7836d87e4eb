"""VoiceForge: batch text-to-speech generation pipeline."""

__version__ = "1.0.0"

from .config import PipelineConfig
from .core import (
    AudioArtifact,
    AudioFormat,
    KokoroGateway,
    OutputQuality,
    SynthesisGateway,
    SynthesisSettings,
)
from .errors import AdmissionError, PersistenceError, SynthesisError, TransitionError

__all__ = [
    'PipelineConfig',
    'AudioArtifact',
    'AudioFormat',
    'KokoroGateway',
    'OutputQuality',
    'SynthesisGateway',
    'SynthesisSettings',
    'AdmissionError',
    'PersistenceError',
    'SynthesisError',
    'TransitionError',
]
