"""Pipeline configuration for VoiceForge.

This module provides the configuration options for the batch generation
pipeline: concurrency bound, per-item timeout, retry policy, admission
ceilings and storage locations.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

MIB = 1024 * 1024

CANCEL_MODES = ("drain", "abandon")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


@dataclass
class PipelineConfig:
    """Configuration for batch job execution.

    Attributes:
        max_concurrent_items: Upper bound on simultaneously processing items
            of one job under the parallel policy (default: 4)
        item_timeout_seconds: Time allowed for one gateway call before the
            item is failed (default: 300)
        max_attempts: Gateway attempts per item, 1 disables retry (default: 1).
            Only network and rate-limit failures are retried
        retry_backoff_seconds: Base delay for exponential retry backoff
        cancel_mode: What happens to in-flight items on cancel,
            'drain' lets them finish, 'abandon' discards them
        script_max_bytes: Ceiling for batch script files (default: 10 MiB)
        audio_sample_max_bytes: Ceiling for audio samples (default: 50 MiB)
        history_db_path: SQLite history database (default: ~/.voiceforge/history.db)
        output_dir: Directory for generated audio (default: ~/.voiceforge/output)
        bundle_batch_outputs: Zip batch artifacts into one download
        model_path: Kokoro ONNX model file
        voices_path: Kokoro voices file
    """
    max_concurrent_items: int = 4
    item_timeout_seconds: float = 300.0
    max_attempts: int = 1
    retry_backoff_seconds: float = 1.0
    cancel_mode: str = "drain"
    script_max_bytes: int = 10 * MIB
    audio_sample_max_bytes: int = 50 * MIB
    history_db_path: Optional[str] = None
    output_dir: Optional[str] = None
    bundle_batch_outputs: bool = True
    model_path: str = "kokoro-v1.0.onnx"
    voices_path: str = "voices-v1.0.bin"

    def __post_init__(self):
        """Validate values and fill in default locations."""
        if self.max_concurrent_items < 1:
            raise ValueError(f"max_concurrent_items must be >= 1, got {self.max_concurrent_items}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.item_timeout_seconds <= 0:
            raise ValueError(f"item_timeout_seconds must be positive, got {self.item_timeout_seconds}")
        if self.cancel_mode not in CANCEL_MODES:
            raise ValueError(f"cancel_mode must be one of {CANCEL_MODES}, got {self.cancel_mode!r}")

        base_dir = Path.home() / ".voiceforge"
        if self.history_db_path is None:
            self.history_db_path = str(base_dir / "history.db")
        if self.output_dir is None:
            self.output_dir = str(base_dir / "output")

    @classmethod
    def from_env(cls):
        """Load configuration from environment variables.

        Environment variables:
            VOICEFORGE_MAX_CONCURRENT: Parallel policy bound (integer)
            VOICEFORGE_ITEM_TIMEOUT: Per-item gateway timeout in seconds
            VOICEFORGE_MAX_ATTEMPTS: Gateway attempts per item (integer)
            VOICEFORGE_RETRY_BACKOFF: Base retry backoff in seconds
            VOICEFORGE_CANCEL_MODE: 'drain' or 'abandon'
            VOICEFORGE_SCRIPT_MAX_BYTES: Script file ceiling in bytes
            VOICEFORGE_AUDIO_MAX_BYTES: Audio sample ceiling in bytes
            VOICEFORGE_HISTORY_DB: Path to the history database
            VOICEFORGE_OUTPUT_DIR: Directory for generated audio
            VOICEFORGE_BUNDLE_OUTPUTS: Zip batch outputs ('true'/'false')
            VOICEFORGE_MODEL_PATH: Kokoro model path
            VOICEFORGE_VOICES_PATH: Kokoro voices path

        Returns:
            PipelineConfig instance with values from environment
        """
        return cls(
            max_concurrent_items=int(os.getenv('VOICEFORGE_MAX_CONCURRENT', '4')),
            item_timeout_seconds=float(os.getenv('VOICEFORGE_ITEM_TIMEOUT', '300')),
            max_attempts=int(os.getenv('VOICEFORGE_MAX_ATTEMPTS', '1')),
            retry_backoff_seconds=float(os.getenv('VOICEFORGE_RETRY_BACKOFF', '1.0')),
            cancel_mode=os.getenv('VOICEFORGE_CANCEL_MODE', 'drain').strip().lower(),
            script_max_bytes=int(os.getenv('VOICEFORGE_SCRIPT_MAX_BYTES', str(10 * MIB))),
            audio_sample_max_bytes=int(os.getenv('VOICEFORGE_AUDIO_MAX_BYTES', str(50 * MIB))),
            history_db_path=os.getenv('VOICEFORGE_HISTORY_DB') or None,
            output_dir=os.getenv('VOICEFORGE_OUTPUT_DIR') or None,
            bundle_batch_outputs=_env_bool('VOICEFORGE_BUNDLE_OUTPUTS', 'true'),
            model_path=os.getenv('VOICEFORGE_MODEL_PATH', 'kokoro-v1.0.onnx'),
            voices_path=os.getenv('VOICEFORGE_VOICES_PATH', 'voices-v1.0.bin'),
        )
