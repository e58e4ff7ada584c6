"""Image generation providers.

Every provider implements :class:`ImageGenerator`: a prompt plus optional
style preset, negative prompt and seed go in, encoded PNG bytes come out.
Providers raise on failure; the batch processor records the exception text
verbatim on the failing job and moves on to the next one.

Providers
---------
:class:`StabilityImageGenerator`
    Stability AI text-to-image REST API (``requests``).  Default backend.
:class:`DiffusersImageGenerator`
    Local HuggingFace diffusers pipeline, loaded lazily on first use.
    ``torch`` and ``diffusers`` are only imported when a model is loaded,
    so they are optional dependencies (``pip install mintworks[diffusers]``).

Usage
-----
::

    from mintworks.core.config import config
    from mintworks.core.generators import create_generator

    generator = create_generator(config)
    png_bytes = generator.generate("a neon koi fish", GenerationParams(seed=7))
"""

from __future__ import annotations

import base64
import gc
import io
import logging
from abc import ABC, abstractmethod

import requests

from mintworks.core.config import MintworksConfig
from mintworks.core.models import GenerationParams

logger = logging.getLogger(__name__)


class ImageGenerator(ABC):
    """Capability contract for text-to-image providers."""

    name: str = "base"

    @abstractmethod
    def generate(self, prompt: str, params: GenerationParams | None = None) -> bytes:
        """Generate one image.

        Args:
            prompt: Text prompt describing the image
            params: Optional style preset, negative prompt and seed

        Returns:
            PNG-encoded image bytes

        Raises:
            Exception: Any provider failure; the message is recorded on the job
        """

    def close(self) -> None:
        """Release provider resources.  Safe to call more than once."""


class StabilityImageGenerator(ImageGenerator):
    """Stability AI ``text-to-image`` REST endpoint."""

    name = "stability"

    def __init__(self, config: MintworksConfig, session: requests.Session | None = None) -> None:
        self._config = config
        self._session = session or requests.Session()

    @property
    def endpoint(self) -> str:
        host = self._config.stability_api_host.rstrip("/")
        return f"{host}/v1/generation/{self._config.stability_engine}/text-to-image"

    def build_payload(self, prompt: str, params: GenerationParams | None = None) -> dict:
        params = params or GenerationParams()
        payload: dict = {
            "text_prompts": [{"text": prompt, "weight": 1}],
            "cfg_scale": self._config.cfg_scale,
            "height": self._config.image_height,
            "width": self._config.image_width,
            "samples": 1,
            "steps": self._config.generation_steps,
        }

        # Negative prompts are sent as a negatively weighted text prompt.
        if params.negative_prompt and params.negative_prompt.strip():
            payload["text_prompts"].append({"text": params.negative_prompt, "weight": -1})
        if params.style_preset:
            payload["style_preset"] = params.style_preset
        if params.seed is not None:
            payload["seed"] = int(params.seed)
        return payload

    def generate(self, prompt: str, params: GenerationParams | None = None) -> bytes:
        if not self._config.stability_api_key:
            raise RuntimeError("Failed to generate image: MINTWORKS_STABILITY_API_KEY is not set")

        payload = self.build_payload(prompt, params)
        logger.info(
            "Requesting %dx%d image from Stability (%s).",
            payload["width"],
            payload["height"],
            self._config.stability_engine,
        )

        try:
            response = self._session.post(
                self.endpoint,
                json=payload,
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                    "Authorization": f"Bearer {self._config.stability_api_key}",
                },
                timeout=self._config.request_timeout,
            )
        except requests.RequestException as e:
            raise RuntimeError(f"Failed to generate image: {e}") from e

        if response.status_code != 200:
            try:
                detail = response.json().get("message") or response.text
            except ValueError:
                detail = response.text
            raise RuntimeError(
                f"Failed to generate image: HTTP {response.status_code}: {detail}"
            )

        artifacts = response.json().get("artifacts") or []
        if not artifacts or not artifacts[0].get("base64"):
            raise RuntimeError("Failed to generate image: response contained no artifacts")
        if artifacts[0].get("finishReason") == "CONTENT_FILTERED":
            raise RuntimeError("Failed to generate image: content filtered by provider")

        return base64.b64decode(artifacts[0]["base64"])

    def close(self) -> None:
        self._session.close()


# ---------------------------------------------------------------------------
# Dtype string → torch dtype mapping, built lazily so torch stays optional.
# ---------------------------------------------------------------------------
_DTYPE_MAP: dict | None = None


def _get_dtype_map() -> dict:
    global _DTYPE_MAP
    if _DTYPE_MAP is None:
        import torch

        _DTYPE_MAP = {
            "bfloat16": torch.bfloat16,
            "float16": torch.float16,
            "float32": torch.float32,
        }
    return _DTYPE_MAP


class DiffusersImageGenerator(ImageGenerator):
    """Local diffusers text-to-image pipeline.

    At most one pipeline is held in memory.  It is loaded on the first call
    to :meth:`generate` (or explicitly with :meth:`load_model`) and released
    by :meth:`close`.
    """

    name = "diffusers"

    def __init__(self, config: MintworksConfig) -> None:
        self._config = config
        self._pipeline = None
        self._current_model_id: str | None = None

    def load_model(self, hf_id: str | None = None) -> None:
        """Load a diffusers pipeline by HuggingFace model identifier.

        No-op if the requested model is already loaded; a different loaded
        model is released first.

        Raises:
            RuntimeError: If the model cannot be loaded.
        """
        hf_id = hf_id or self._config.diffusers_model_id
        if self._current_model_id == hf_id and self._pipeline is not None:
            return
        if self._pipeline is not None:
            logger.info(
                "Switching from '%s' to '%s'; unloading current model.",
                self._current_model_id,
                hf_id,
            )
            self.close()

        import torch
        from diffusers import AutoPipelineForText2Image

        torch_dtype = _get_dtype_map().get(self._config.torch_dtype, torch.float16)
        logger.info(
            "Loading model '%s' (dtype=%s, device=%s, cache=%s).",
            hf_id,
            self._config.torch_dtype,
            self._config.device,
            self._config.models_dir,
        )

        try:
            pipeline = AutoPipelineForText2Image.from_pretrained(
                hf_id,
                torch_dtype=torch_dtype,
                cache_dir=str(self._config.models_dir),
            )
            self._pipeline = pipeline.to(self._config.device)
            self._current_model_id = hf_id
        except Exception:
            self._pipeline = None
            self._current_model_id = None
            logger.exception("Failed to load model '%s'.", hf_id)
            raise

        logger.info("Model '%s' loaded successfully.", hf_id)

    def generate(self, prompt: str, params: GenerationParams | None = None) -> bytes:
        params = params or GenerationParams()
        if self._pipeline is None:
            self.load_model()

        import torch

        guidance_scale = self._config.cfg_scale
        # Turbo-distilled models only produce usable output without guidance.
        if self._current_model_id and "turbo" in self._current_model_id.lower():
            guidance_scale = 0.0

        pipeline_kwargs: dict = {
            "prompt": prompt,
            "width": self._config.image_width,
            "height": self._config.image_height,
            "num_inference_steps": self._config.generation_steps,
            "guidance_scale": guidance_scale,
        }
        if params.seed is not None:
            pipeline_kwargs["generator"] = torch.Generator(device=self._config.device).manual_seed(
                params.seed
            )
        if params.negative_prompt:
            pipeline_kwargs["negative_prompt"] = params.negative_prompt

        output = self._pipeline(**pipeline_kwargs)
        buffer = io.BytesIO()
        output.images[0].save(buffer, format="PNG")
        return buffer.getvalue()

    def close(self) -> None:
        if self._pipeline is None:
            return

        model_id = self._current_model_id
        self._pipeline = None
        self._current_model_id = None
        gc.collect()

        try:
            import torch

            if torch.cuda.is_available():
                torch.cuda.empty_cache()
                logger.info("CUDA cache cleared after unloading '%s'.", model_id)
        except ImportError:
            pass

    @property
    def is_loaded(self) -> bool:
        return self._pipeline is not None


def create_generator(config: MintworksConfig) -> ImageGenerator:
    """Instantiate the provider selected by ``config.generator_backend``."""
    if config.generator_backend == "diffusers":
        return DiffusersImageGenerator(config)
    return StabilityImageGenerator(config)
