"""Speech synthesis gateway for VoiceForge.

The pipeline talks to the speech backend through one asynchronous operation,
`SynthesisGateway.synthesize`. This module defines that contract, the
settings and artifact types that cross it, and `KokoroGateway`, a local
implementation backed by the Kokoro ONNX model.
"""

# Standard library imports
import asyncio
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

# Third-party imports
import numpy as np
import soundfile as sf

from .errors import SynthesisError, ERROR_KIND_INVALID_INPUT

ProgressCallback = Callable[[str, int, int], None]

# Supported languages (hardcoded as kokoro-onnx 0.4.9+ doesn't expose get_languages())
SUPPORTED_LANGUAGES = [
    'en-us',   # American English
    'en-gb',   # British English
    'ja',      # Japanese
    'zh',      # Mandarin Chinese
    'ko',      # Korean
    'es',      # Spanish
    'fr',      # French
    'hi',      # Hindi
    'it',      # Italian
    'pt-br',   # Brazilian Portuguese
]

DEFAULT_VOICE = "af_sarah"


class AudioFormat(str, Enum):
    """Supported audio output formats."""
    MP3 = "mp3"
    WAV = "wav"
    M4A = "m4a"
    FLAC = "flac"


class OutputQuality(str, Enum):
    """Output quality tiers offered to the user."""
    STANDARD = "standard"
    HIGH = "high"
    PREMIUM = "premium"

    @property
    def bitrate(self) -> str:
        return {
            OutputQuality.STANDARD: "128k",
            OutputQuality.HIGH: "256k",
            OutputQuality.PREMIUM: "320k",
        }[self]


@dataclass(frozen=True)
class SynthesisSettings:
    """Voice and output settings for one synthesis call."""
    speed: float = 1.0
    pitch: float = 1.0
    emotion: str = "neutral"
    lang: str = "en-us"
    output_format: AudioFormat = AudioFormat.MP3
    quality: OutputQuality = OutputQuality.HIGH
    output_name: str = "audio-output"


@dataclass(frozen=True)
class AudioArtifact:
    """Descriptor of a generated audio file returned by a gateway."""
    location: str
    format: AudioFormat
    size_bytes: Optional[int] = None
    duration_seconds: Optional[float] = None
    sample_rate: Optional[int] = None


class SynthesisGateway(ABC):
    """Text-to-speech backend used by the job scheduler.

    Implementations may take arbitrarily long, report progress any number of
    times, and raise on failure. Calls are not assumed to be idempotent.
    """

    @abstractmethod
    async def synthesize(
        self,
        text: str,
        voice_ref: str,
        settings: SynthesisSettings,
        progress_callback: Optional[ProgressCallback] = None
    ) -> AudioArtifact:
        """Convert text to an audio artifact.

        Args:
            text: Text to speak
            voice_ref: Voice name or blend specification
            settings: Voice and output settings
            progress_callback: Optional callback (message, current, total),
                always invoked on the event loop thread

        Returns:
            AudioArtifact describing the generated file

        Raises:
            SynthesisError: If the backend cannot produce audio
        """
        ...


def safe_file_stem(name: str) -> str:
    """Turn an arbitrary output name into a file-system friendly stem."""
    stem = re.sub(r'[^\w\-.]+', '_', name.strip()).strip('._')
    return stem or "audio-output"


def output_relative_path(output_name: str, audio_format: AudioFormat) -> Path:
    """Relative output path for a name such as "<job_id>/chapter_one"."""
    parts = [safe_file_stem(part) for part in output_name.split('/') if part.strip()]
    if not parts:
        parts = ["audio-output"]
    return Path(*parts[:-1]) / f"{parts[-1]}.{AudioFormat(audio_format).value}"


class KokoroGateway(SynthesisGateway):
    """Synthesis gateway running the Kokoro ONNX model in a thread executor.

    The model is loaded on first use. Each call chunks the text at sentence
    boundaries, synthesizes the chunks, concatenates the samples and writes
    one file into `output_dir`.

    Kokoro has no pitch or emotion control: `SynthesisSettings.pitch` and
    `SynthesisSettings.emotion` are accepted but have no effect here. Only
    `speed` and `lang` reach the model.
    """

    def __init__(
        self,
        model_path: str = "kokoro-v1.0.onnx",
        voices_path: str = "voices-v1.0.bin",
        output_dir: Optional[str] = None,
        chunk_size: int = 1000
    ):
        """Initialize the gateway.

        Args:
            model_path: Path to the Kokoro ONNX model file
            voices_path: Path to the voices binary file
            output_dir: Directory for generated files (default: system temp dir)
            chunk_size: Target chunk size in characters

        Raises:
            FileNotFoundError: If model or voices files don't exist
        """
        if not os.path.exists(model_path):
            raise FileNotFoundError(f"Model file not found: {model_path}")
        if not os.path.exists(voices_path):
            raise FileNotFoundError(f"Voices file not found: {voices_path}")

        self.model_path = model_path
        self.voices_path = voices_path
        self.output_dir = Path(output_dir or tempfile.gettempdir())
        self.chunk_size = chunk_size
        self.kokoro = None
        self._load_lock = threading.Lock()

    def load_model(self):
        """Load the Kokoro model once."""
        with self._load_lock:
            if self.kokoro is None:
                from kokoro_onnx import Kokoro
                self.kokoro = Kokoro(self.model_path, self.voices_path)

    def validate_language(self, lang: str) -> str:
        if lang not in SUPPORTED_LANGUAGES:
            supported = ', '.join(sorted(SUPPORTED_LANGUAGES))
            raise SynthesisError(
                f"Unsupported language: {lang} (supported: {supported})",
                error_kind=ERROR_KIND_INVALID_INPUT
            )
        return lang

    def validate_voice(self, voice: str) -> str | np.ndarray:
        """Validate voice and handle voice blending.

        Args:
            voice: Voice name or blend specification (e.g., "voice1:60,voice2:40")

        Returns:
            Voice name string or blended voice style array
        """
        self.load_model()
        supported_voices = set(self.kokoro.get_voices())

        if ',' in voice:
            voices = []
            weights = []

            for pair in voice.split(','):
                if ':' in pair:
                    v, w = pair.strip().split(':')
                    voices.append(v.strip())
                    weights.append(float(w.strip()))
                else:
                    voices.append(pair.strip())
                    weights.append(50.0)

            if len(voices) != 2:
                raise SynthesisError("Voice blending requires exactly two voices",
                                     error_kind=ERROR_KIND_INVALID_INPUT)

            for v in voices:
                if v not in supported_voices:
                    raise SynthesisError(f"Unsupported voice: {v}", error_kind=ERROR_KIND_INVALID_INPUT)

            total = sum(weights)
            weights = [w * (100 / total) for w in weights]

            style1 = self.kokoro.get_voice_style(voices[0])
            style2 = self.kokoro.get_voice_style(voices[1])
            return np.add(style1 * (weights[0] / 100), style2 * (weights[1] / 100))

        if voice not in supported_voices:
            raise SynthesisError(f"Unsupported voice: {voice}", error_kind=ERROR_KIND_INVALID_INPUT)
        return voice

    def chunk_text(self, text: str) -> List[str]:
        """Split text into chunks at sentence boundaries."""
        sentences = text.replace('\n', ' ').split('.')
        chunks = []
        current_chunk = []
        current_size = 0

        for sentence in sentences:
            if not sentence.strip():
                continue

            sentence = sentence.strip() + '.'

            # Long sentences are split on words
            if len(sentence) > self.chunk_size:
                if current_chunk:
                    chunks.append(' '.join(current_chunk))
                    current_chunk = []
                    current_size = 0
                piece = []
                piece_size = 0
                for word in sentence.split():
                    if piece_size + len(word) + 1 > self.chunk_size and piece:
                        chunks.append(' '.join(piece))
                        piece = []
                        piece_size = 0
                    piece.append(word)
                    piece_size += len(word) + 1
                if piece:
                    chunks.append(' '.join(piece))
                continue

            if current_size + len(sentence) > self.chunk_size and current_chunk:
                chunks.append(' '.join(current_chunk))
                current_chunk = []
                current_size = 0

            current_chunk.append(sentence)
            current_size += len(sentence)

        if current_chunk:
            chunks.append(' '.join(current_chunk))

        return chunks

    def generate(
        self,
        text: str,
        voice_ref: str,
        settings: SynthesisSettings,
        progress_callback: Optional[ProgressCallback] = None
    ) -> Tuple[np.ndarray, int]:
        """Generate samples for the whole text (blocking)."""
        self.load_model()
        lang = self.validate_language(settings.lang)
        voice = self.validate_voice(voice_ref or DEFAULT_VOICE)

        chunks = self.chunk_text(text)
        if not chunks:
            raise SynthesisError("Nothing to synthesize: text is empty", error_kind=ERROR_KIND_INVALID_INPUT)

        all_samples = []
        sample_rate = None
        for i, chunk in enumerate(chunks, 1):
            samples, sr = self.kokoro.create(chunk, voice=voice, speed=settings.speed, lang=lang)
            all_samples.append(np.asarray(samples))
            sample_rate = sample_rate or sr
            if progress_callback:
                progress_callback("Synthesizing", i, len(chunks))

        return np.concatenate(all_samples), sample_rate

    def save_audio(
        self,
        samples: np.ndarray,
        sample_rate: int,
        output_path: Path,
        settings: SynthesisSettings
    ):
        """Write samples in the requested format and quality."""
        audio_format = AudioFormat(settings.output_format)
        if audio_format == AudioFormat.WAV:
            sf.write(str(output_path), samples, sample_rate)
        elif audio_format == AudioFormat.FLAC:
            sf.write(str(output_path), samples, sample_rate, format='FLAC')
        else:
            from pydub import AudioSegment

            with tempfile.NamedTemporaryFile(suffix='.wav', delete=False) as tmp:
                tmp_path = tmp.name
            try:
                sf.write(tmp_path, samples, sample_rate)
                audio = AudioSegment.from_wav(tmp_path)
                bitrate = OutputQuality(settings.quality).bitrate
                if audio_format == AudioFormat.MP3:
                    audio.export(str(output_path), format='mp3', bitrate=bitrate)
                else:  # M4A
                    audio.export(str(output_path), format='mp4', codec='aac', bitrate=bitrate)
            finally:
                os.unlink(tmp_path)

    def _synthesize_blocking(
        self,
        text: str,
        voice_ref: str,
        settings: SynthesisSettings,
        progress_callback: Optional[ProgressCallback]
    ) -> AudioArtifact:
        samples, sample_rate = self.generate(text, voice_ref, settings, progress_callback)

        output_path = self.output_dir / output_relative_path(settings.output_name, settings.output_format)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        self.save_audio(samples, sample_rate, output_path, settings)

        return AudioArtifact(
            location=str(output_path),
            format=AudioFormat(settings.output_format),
            size_bytes=output_path.stat().st_size,
            duration_seconds=len(samples) / sample_rate,
            sample_rate=sample_rate,
        )

    async def synthesize(
        self,
        text: str,
        voice_ref: str,
        settings: SynthesisSettings,
        progress_callback: Optional[ProgressCallback] = None
    ) -> AudioArtifact:
        loop = asyncio.get_running_loop()

        # Chunk progress happens on the executor thread; hand it back to the loop
        def report(message: str, current: int, total: int):
            if progress_callback:
                loop.call_soon_threadsafe(progress_callback, message, current, total)

        return await loop.run_in_executor(
            None,
            self._synthesize_blocking,
            text,
            voice_ref,
            settings,
            report
        )
