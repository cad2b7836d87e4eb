"""
Shared pytest fixtures and configuration for VoiceForge tests
"""
import sys
import asyncio
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional

import pytest

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from voiceforge.config import PipelineConfig
from voiceforge.core import AudioArtifact, SynthesisGateway, SynthesisSettings, output_relative_path
from voiceforge.jobs.storage import HistoryStore


class ScriptedGateway(SynthesisGateway):
    """
    In-memory gateway whose behaviour is scripted per text.

    Writes a small file per call so packaging has something to bundle, and
    records the highest number of calls it saw in flight at once.
    """

    def __init__(
        self,
        output_dir: Path,
        delay: float = 0.01,
        delays: Optional[Dict[str, float]] = None,
        failures: Optional[Dict[str, BaseException]] = None,
        fail_times: Optional[Dict[str, int]] = None,
        progress_steps: int = 2
    ):
        self.output_dir = Path(output_dir)
        self.delay = delay
        self.delays = delays or {}
        self.failures = failures or {}
        self.fail_times = dict(fail_times or {})
        self.progress_steps = progress_steps

        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    async def synthesize(self, text, voice_ref, settings: SynthesisSettings, progress_callback=None):
        with self._lock:
            self.calls.append((text, voice_ref, settings))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delays.get(text, self.delay)
            for step in range(1, self.progress_steps + 1):
                await asyncio.sleep(delay / max(self.progress_steps, 1))
                if progress_callback:
                    progress_callback("Synthesizing", step, self.progress_steps)

            if self.fail_times.get(text, 0) > 0:
                self.fail_times[text] -= 1
                raise self.failures[text]
            if text in self.failures and text not in self.fail_times:
                raise self.failures[text]

            path = self.output_dir / output_relative_path(settings.output_name, settings.output_format)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(text.encode('utf-8'))
            return AudioArtifact(
                location=str(path),
                format=settings.output_format,
                size_bytes=path.stat().st_size,
                duration_seconds=1.0,
                sample_rate=24000,
            )
        finally:
            with self._lock:
                self.in_flight -= 1


@pytest.fixture
def temp_dir():
    """Temporary directory for test files"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config(temp_dir):
    """Pipeline configuration writing into the temporary directory"""
    return PipelineConfig(
        max_concurrent_items=2,
        item_timeout_seconds=5.0,
        retry_backoff_seconds=0.01,
        history_db_path=str(temp_dir / "history.db"),
        output_dir=str(temp_dir / "output"),
    )


@pytest.fixture
def store(config):
    """History store on a temporary database"""
    history = HistoryStore(config.history_db_path)
    yield history
    history.close()


@pytest.fixture
def gateway(config):
    """Scripted gateway with a short default delay"""
    return ScriptedGateway(Path(config.output_dir))
