"""Pydantic request models for the Mintworks API.

These models define the JSON schema for every API endpoint that takes a
body.  FastAPI uses them for request validation and OpenAPI documentation;
each model knows how to turn itself into the core's dataclasses.

Models
------
CollectionCreateRequest
    Payload for ``POST /api/collections``.
CollectionUpdateRequest
    Payload for ``PATCH /api/collections/{id}``; every field optional.
BatchRequest
    Optional batch size override for the generation endpoints.
ApproveRequest
    Content-derived extras to add when approving a job.
BulkApproveRequest / BulkRegenerateRequest
    Job ids for ``POST /api/jobs/batch-approve`` and ``batch-regenerate``.
PackageRequest
    Which job statuses to include in a package.
RarityTierRequest
    One tier of a rarity plan.  Its images are uploaded as multipart
    files named ``tier_{index}_...``.
RarityPlanRequest
    JSON ``data`` part of ``POST /api/collections/{id}/plan``.
AdvancedOptions / DirectGenerateRequest
    JSON ``data`` part of the one-shot ``POST /api/generate`` endpoint.
FinalizeRequest
    Metadata documents plus a CID mapping for ``POST /api/metadata/finalize``.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any

from pydantic import BaseModel, Field

from mintworks.core.models import CollectionConfig, GenerationParams, RarityTier

_SEED_MAX = 2**32 - 1


def royalty_percent_to_basis_points(percent: float) -> int:
    """Convert a royalty percentage (e.g. ``5.5``) to basis points (``550``)."""
    return round(percent * 100)


class CollectionCreateRequest(BaseModel):
    """Request body for ``POST /api/collections``.

    Royalty is given as a percentage and stored in basis points.  The
    ``ai_prompt`` and advanced fields are only needed for prompt-driven
    collections.
    """

    name: str = Field(..., min_length=1, max_length=200, description="Project name.")
    symbol: str = Field(..., min_length=1, max_length=10, description="Ticker symbol.")
    description: str = Field(default="", description="Collection description.")
    external_url: str = Field(default="", description="Project website.")
    royalty_percent: float = Field(
        default=0.0,
        ge=0.0,
        le=100.0,
        description="Secondary sale royalty in percent (5 = 5%).",
    )
    creator_address: str = Field(default="", description="Creator wallet address.")
    creator_share_percent: int = Field(default=100, ge=0, le=100)
    collection_number: str = Field(default="1", min_length=1)
    total_supply: int = Field(..., gt=0, le=100_000, description="Editions in the collection.")
    drop_supply: int | None = Field(
        default=None,
        gt=0,
        description="Editions in the current drop (defaults to total_supply).",
    )
    drop_number: int = Field(default=1, ge=1)
    season: str | None = Field(default=None)
    series_slug: str | None = Field(default=None)
    ai_prompt: str | None = Field(default=None, description="Prompt for AI generation.")
    style_preset: str | None = Field(default=None, description="Provider style preset.")
    negative_prompt: str | None = Field(default=None)
    seed: int | None = Field(default=None, ge=0, le=_SEED_MAX)

    def to_config(self, collection_id: str) -> CollectionConfig:
        """Build the core configuration.

        Raises:
            ValueError: If the combination of fields is invalid (e.g. a
                drop larger than the collection)
        """
        return CollectionConfig(
            id=collection_id,
            name=self.name.strip(),
            symbol=self.symbol.strip(),
            description=self.description,
            external_url=self.external_url,
            royalty_basis_points=royalty_percent_to_basis_points(self.royalty_percent),
            creator_address=self.creator_address,
            creator_share_percent=self.creator_share_percent,
            collection_number=self.collection_number,
            total_supply=self.total_supply,
            drop_supply=self.drop_supply,
            drop_number=self.drop_number,
            season=self.season,
            series_slug=self.series_slug,
            generation=GenerationParams(
                prompt=self.ai_prompt,
                style_preset=self.style_preset,
                negative_prompt=self.negative_prompt,
                seed=self.seed,
            ),
        )


class CollectionUpdateRequest(BaseModel):
    """Request body for ``PATCH /api/collections/{id}``.

    Only fields present in the request are changed.  Updates are refused
    once the collection has jobs.
    """

    name: str | None = Field(default=None, min_length=1, max_length=200)
    symbol: str | None = Field(default=None, min_length=1, max_length=10)
    description: str | None = None
    external_url: str | None = None
    royalty_percent: float | None = Field(default=None, ge=0.0, le=100.0)
    creator_address: str | None = None
    creator_share_percent: int | None = Field(default=None, ge=0, le=100)
    collection_number: str | None = Field(default=None, min_length=1)
    total_supply: int | None = Field(default=None, gt=0, le=100_000)
    drop_supply: int | None = Field(default=None, gt=0)
    drop_number: int | None = Field(default=None, ge=1)
    season: str | None = None
    series_slug: str | None = None
    ai_prompt: str | None = None
    style_preset: str | None = None
    negative_prompt: str | None = None
    seed: int | None = Field(default=None, ge=0, le=_SEED_MAX)

    def to_changes(self, current: CollectionConfig) -> dict[str, Any]:
        """Translate the request into ``CollectionConfig`` field changes."""
        fields = self.model_dump(exclude_unset=True)
        generation_fields = {
            "ai_prompt": "prompt",
            "style_preset": "style_preset",
            "negative_prompt": "negative_prompt",
            "seed": "seed",
        }

        changes: dict[str, Any] = {}
        generation_changes: dict[str, Any] = {}
        for name, value in fields.items():
            if name in generation_fields:
                generation_changes[generation_fields[name]] = value
            elif name == "royalty_percent":
                changes["royalty_basis_points"] = royalty_percent_to_basis_points(value)
            else:
                changes[name] = value

        if generation_changes:
            changes["generation"] = replace(current.generation, **generation_changes)
        # A new supply without a new drop size keeps the drop equal to the supply.
        if "total_supply" in changes and "drop_supply" not in changes:
            if current.drop_supply == current.total_supply:
                changes["drop_supply"] = changes["total_supply"]
        return changes


class BatchRequest(BaseModel):
    batch_size: int | None = Field(
        default=None,
        ge=1,
        le=10_000,
        description="Override the configured batch size.",
    )


class ApproveRequest(BaseModel):
    color_palette: bool = Field(
        default=False,
        description="Add palette_primary / palette_secondary attributes.",
    )
    sha256: bool = Field(default=False, description="Add the image's SHA-256 hash.")


class BulkApproveRequest(ApproveRequest):
    job_ids: list[str] = Field(..., min_length=1, description="Jobs to approve, in order.")


class BulkRegenerateRequest(BaseModel):
    job_ids: list[str] = Field(..., min_length=1, description="Jobs to reset, in order.")


class PackageRequest(BaseModel):
    include_generated: bool = Field(
        default=False,
        description="Also package generated (not yet approved) jobs.",
    )


class RarityTierRequest(BaseModel):
    """One rarity tier.  Images are uploaded separately as ``tier_{i}_*`` files."""

    tier_label: str = Field(..., min_length=1, description="Tier label, e.g. '1/1' or 'common'.")
    nft_count: int = Field(..., gt=0, description="Editions in this tier.")
    editions_per_image: int = Field(default=1, ge=1)
    art_id_prefix: str | None = Field(default=None)

    def to_tier(self, source_images: list) -> RarityTier:
        return RarityTier(
            tier_label=self.tier_label,
            nft_count=self.nft_count,
            editions_per_image=self.editions_per_image,
            art_id_prefix=self.art_id_prefix,
            source_images=tuple(source_images),
        )


class RarityPlanRequest(BaseModel):
    rarity_tiers: list[RarityTierRequest] = Field(..., min_length=1)
    randomize_order: bool = Field(default=False)


class AdvancedOptions(BaseModel):
    randomize_order: bool = Field(default=False, description="Shuffle editions before numbering.")
    calculate_color_palette: bool = Field(default=False)
    calculate_sha256: bool = Field(default=False)


class DirectGenerateRequest(BaseModel):
    """JSON ``data`` part of ``POST /api/generate``."""

    collection: CollectionCreateRequest
    rarity_tiers: list[RarityTierRequest] = Field(..., min_length=1)
    advanced_options: AdvancedOptions = Field(default_factory=AdvancedOptions)


class FinalizeRequest(BaseModel):
    metadata: list[dict[str, Any]] = Field(..., min_length=1)
    cid_mapping: dict[str, str] = Field(
        ...,
        min_length=1,
        description="Placeholder to CID mapping, e.g. {'<CID>': 'bafy...'}.",
    )
