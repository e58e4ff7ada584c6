"""Configuration management for Mintworks.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the MINTWORKS_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (MINTWORKS_* prefix)
2. .env file in the project root
3. Default values defined in MintworksConfig

Example .env file:
    MINTWORKS_GENERATOR_BACKEND=stability
    MINTWORKS_STABILITY_API_KEY=sk-...
    MINTWORKS_INITIAL_BATCH_SIZE=3
    MINTWORKS_CONTINUE_BATCH_SIZE=100
    MINTWORKS_OUTPUT_DIR=output

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
Route handlers and the CLI read from it; tests build their own instances
pointing at temporary directories.

Directory Management
--------------------
The configuration automatically creates required directories on initialization:
- data_dir: For the SQLite database
- uploads_dir: For produced (generated or normalised) images
- output_dir: For approved metadata JSON and collection packages
- models_dir: For cached diffusers model files

Batch Sizing
------------
- initial_batch_size: small quality-check sample before full-scale spend
- continue_batch_size: bulk completion batch
- max_retries: ceiling on regenerate attempts after failures (0 disables it).
  Nothing is retried automatically; retries are always user-triggered.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MintworksConfig(BaseSettings):
    """Main configuration for Mintworks.

    Values are loaded from environment variables with the MINTWORKS_ prefix,
    with fallback to defaults defined here. All directory fields are created
    if they don't exist.

    Attributes
    ----------
    Paths:
        data_dir : Path
            Directory holding the SQLite database
        uploads_dir : Path
            Directory for produced images (one PNG per job)
        output_dir : Path
            Directory for metadata JSON files and ZIP packages
        models_dir : Path
            Directory to cache diffusers models
        db_path : Path | None
            SQLite database file (defaults to data_dir/mintworks.db)

    Batching:
        initial_batch_size : int
            Jobs processed by the initial quality-check batch
        continue_batch_size : int
            Jobs processed by each continuation batch
        batch_concurrency : int
            Maximum in-flight generations within one batch
        max_retries : int
            Failed-attempt ceiling after which regenerate is refused

    Crash Recovery:
        recover_stale_on_startup : bool
            Reset stale ``generating`` jobs to ``pending`` when the
            processor is constructed
        stale_generating_seconds : int
            Age after which a ``generating`` job is considered abandoned

    Generation:
        generator_backend : Literal["stability", "diffusers"]
            Which image generation provider to use
        stability_api_key, stability_api_host, stability_engine : str
            Stability AI REST API settings
        request_timeout : float
            HTTP timeout in seconds for provider calls
        image_width, image_height : int
            Output image dimensions
        cfg_scale : float
            Classifier-free guidance scale
        generation_steps : int
            Diffusion steps per image
        diffusers_model_id, device, torch_dtype : str
            Local diffusers pipeline settings

    Metadata:
        image_uri_template : str
            Placeholder image URI; ``<CID>`` is substituted after upload
        min_index_width : int
            Minimum zero-padding width for edition file names

    Examples
    --------
        >>> custom_config = MintworksConfig(
        ...     generator_backend="diffusers",
        ...     device="cpu",
        ...     initial_batch_size=5,
        ... )
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MINTWORKS_",
        case_sensitive=False,
    )

    # Paths
    data_dir: Path = Field(
        default=Path("data"),
        description="Directory holding the SQLite database",
    )
    uploads_dir: Path = Field(
        default=Path("uploads"),
        description="Directory for produced images",
    )
    output_dir: Path = Field(
        default=Path("output"),
        description="Directory for metadata JSON and collection packages",
    )
    models_dir: Path = Field(
        default=Path("models"),
        description="Directory to cache diffusers models",
    )
    db_path: Path | None = Field(
        default=None,
        description="SQLite database file (defaults to data_dir/mintworks.db)",
    )

    # Batching
    initial_batch_size: int = Field(default=3, ge=1, le=100)
    continue_batch_size: int = Field(default=100, ge=1, le=10000)
    batch_concurrency: int = Field(
        default=1,
        ge=1,
        le=16,
        description="Maximum in-flight generations within one batch (1 = sequential)",
    )
    max_retries: int = Field(
        default=5,
        ge=0,
        description="Failed attempts after which regenerate is refused (0 = unlimited)",
    )

    # Crash recovery
    recover_stale_on_startup: bool = Field(
        default=True,
        description="Reset stale 'generating' jobs to 'pending' on startup",
    )
    stale_generating_seconds: int = Field(default=900, ge=0)

    # Generation provider
    generator_backend: Literal["stability", "diffusers"] = Field(
        default="stability",
        description="Image generation provider",
    )
    stability_api_key: str = Field(default="", description="Stability AI API key")
    stability_api_host: str = Field(default="https://api.stability.ai")
    stability_engine: str = Field(default="stable-diffusion-xl-1024-v1-0")
    request_timeout: float = Field(default=120.0, gt=0)
    image_width: int = Field(default=1024, ge=512, le=2048)
    image_height: int = Field(default=1024, ge=512, le=2048)
    cfg_scale: float = Field(default=7.0, ge=0.0, le=35.0)
    generation_steps: int = Field(default=30, ge=1, le=150)

    # Local diffusers pipeline
    diffusers_model_id: str = Field(default="stabilityai/sdxl-turbo")
    device: str = Field(default="cuda", description="Device to run inference on (cuda/cpu)")
    torch_dtype: Literal["bfloat16", "float16", "float32"] = Field(default="float16")

    # Metadata
    image_uri_template: str = Field(
        default="ipfs://<CID>/{filename}",
        description="Placeholder image URI, '<CID>' is replaced after upload",
    )
    min_index_width: int = Field(default=5, ge=1, le=12)

    # Server
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8000, ge=1024, le=65535)

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        if self.db_path is None:
            self.db_path = self.data_dir / "mintworks.db"

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.models_dir.mkdir(parents=True, exist_ok=True)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)


# Global configuration instance
# Loads values from environment variables (MINTWORKS_* prefix) and .env file.
config = MintworksConfig()
