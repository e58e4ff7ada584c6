"""Shared pytest fixtures for Mintworks tests."""

import io
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from mintworks.api.main import create_app
from mintworks.core.artifacts import ArtifactStore
from mintworks.core.config import MintworksConfig
from mintworks.core.generators import ImageGenerator
from mintworks.core.job_store import JobStore
from mintworks.core.models import Collection, CollectionConfig, GenerationParams
from mintworks.core.processor import BatchProcessor


def png_bytes(color: tuple[int, int, int] = (255, 0, 0), size: tuple[int, int] = (8, 8)) -> bytes:
    """Encode a solid-colour PNG in memory."""
    buffer = io.BytesIO()
    Image.new("RGB", size, color=color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeImageGenerator(ImageGenerator):
    """In-memory generator: solid-colour PNGs, optional scripted failures.

    Attributes:
        calls: Prompts received, in call order
        fail_prompts: Prompts that raise instead of producing an image
        fail_next: Number of upcoming calls that raise
    """

    name = "fake"

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.fail_prompts: set[str] = set()
        self.fail_next = 0
        self.closed = False
        self._lock = threading.Lock()

    def generate(self, prompt: str, params: GenerationParams | None = None) -> bytes:
        with self._lock:
            self.calls.append(prompt)
            call_number = len(self.calls)
            if self.fail_next > 0:
                self.fail_next -= 1
                raise RuntimeError("Failed to generate image: provider unavailable")
        if prompt in self.fail_prompts:
            raise RuntimeError(f"Failed to generate image: prompt rejected ({prompt})")
        return png_bytes(color=(call_number * 20 % 256, 64, 128))

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> MintworksConfig:
    """Create a test configuration with temporary directories.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        MintworksConfig instance for testing
    """
    return MintworksConfig(
        data_dir=temp_dir / "data",
        uploads_dir=temp_dir / "uploads",
        output_dir=temp_dir / "output",
        models_dir=temp_dir / "models",
        generator_backend="stability",
        stability_api_key="test-key",
        initial_batch_size=3,
        continue_batch_size=100,
        recover_stale_on_startup=False,
        device="cpu",
        torch_dtype="float32",
    )


@pytest.fixture
def make_png() -> Callable[..., bytes]:
    """Factory for in-memory PNG images."""
    return png_bytes


@pytest.fixture
def store(test_config: MintworksConfig) -> JobStore:
    return JobStore(test_config.db_path)


@pytest.fixture
def artifacts(test_config: MintworksConfig) -> ArtifactStore:
    return ArtifactStore(test_config.uploads_dir, test_config.output_dir)


@pytest.fixture
def fake_generator() -> FakeImageGenerator:
    return FakeImageGenerator()


@pytest.fixture
def processor(
    store: JobStore,
    artifacts: ArtifactStore,
    fake_generator: FakeImageGenerator,
    test_config: MintworksConfig,
) -> BatchProcessor:
    return BatchProcessor(store, artifacts, fake_generator, test_config)


@pytest.fixture
def collection_config() -> CollectionConfig:
    """A five-edition prompt-driven collection."""
    return CollectionConfig(
        id="col-1",
        name="Neon Koi",
        symbol="KOI",
        total_supply=5,
        description="Glowing fish",
        external_url="https://example.com",
        royalty_basis_points=500,
        creator_address="Creator111",
        creator_share_percent=100,
        collection_number="001",
        season="S1",
        series_slug="neon",
        generation=GenerationParams(prompt="a neon koi fish", style_preset="neon-punk", seed=7),
    )


@pytest.fixture
def collection(processor: BatchProcessor, collection_config: CollectionConfig) -> Collection:
    return processor.create_collection(collection_config)


@pytest.fixture
def test_client(
    test_config: MintworksConfig, fake_generator: FakeImageGenerator
) -> Generator[TestClient, None, None]:
    """FastAPI TestClient backed by temporary storage and the fake generator."""
    app = create_app(test_config, generator=fake_generator)
    with TestClient(app) as client:
        yield client
