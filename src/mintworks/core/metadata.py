"""Metaplex metadata generation.

Pure functions that turn a job and its collection configuration into the
JSON documents shipped in a collection package:

- :func:`build_metadata` - one document per edition
- :func:`build_collection_metadata` - the ``collection.json`` manifest
- :func:`generate_readme` - the package ``README.md``
- :func:`replace_cids` / :func:`replace_cids_batch` - substitute the
  ``<CID>`` image placeholder once the images have been pinned

Numbering
---------
Every edition is named and filed by its zero-padded ``global_index``.
The padding width is ``max(min_width, digits of total_supply)`` so
it is the same for every edition of a collection and file names never
collide::

    >>> index_width(150)
    5
    >>> format_index(42, index_width(150))
    '00042'

Attributes
----------
``rarity_tier`` is the tier the edition was planned in.  ``rarity`` is an
informational label derived from the edition's position in the collection
(see :func:`rarity_label`); the two are independent and always both
present.

Nothing here performs I/O or reads the clock, so the same inputs always
serialise to the same bytes.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from collections.abc import Mapping, Sequence
from typing import Any

from mintworks.core.models import CollectionConfig, Job, MetadataExtras

logger = logging.getLogger(__name__)

CID_PLACEHOLDER = "<CID>"
DEFAULT_IMAGE_URI_TEMPLATE = f"ipfs://{CID_PLACEHOLDER}/{{filename}}"
DEFAULT_MIN_WIDTH = 5

# (upper bound in percent, label), checked in order.
RARITY_BREAKPOINTS: tuple[tuple[float, str], ...] = (
    (1, "Legendary"),
    (5, "Epic"),
    (15, "Rare"),
    (40, "Uncommon"),
)
DEFAULT_RARITY = "Common"

_PLACEHOLDER_PATTERN = re.compile(r"<[A-Za-z0-9_]+>|\{\{?[^{}]+\}\}?")


# -- Numbering ---------------------------------------------------------------


def index_width(total_supply: int, min_width: int = DEFAULT_MIN_WIDTH) -> int:
    """Zero-padding width for a collection of *total_supply* editions."""
    return max(min_width, len(str(max(total_supply, 0))))


def format_index(index: int, width: int) -> str:
    return str(index).zfill(width)


def rarity_label(position: int, total_supply: int) -> str:
    """Categorical rarity label for a 1-based *position* in the collection.

    ``position / total_supply`` as a percentage is compared against fixed
    breakpoints: <=1% Legendary, <=5% Epic, <=15% Rare, <=40% Uncommon,
    otherwise Common.
    """
    if total_supply <= 0:
        raise ValueError(f"Total supply must be positive, got {total_supply}")
    percentage = position / total_supply * 100
    for upper, label in RARITY_BREAKPOINTS:
        if percentage <= upper:
            return label
    return DEFAULT_RARITY


def _royalty(config: CollectionConfig) -> int:
    return int(config.royalty_basis_points)


def _creators(config: CollectionConfig) -> list[dict[str, Any]]:
    return [{"address": config.creator_address, "share": config.creator_share_percent}]


# -- Edition metadata --------------------------------------------------------


def build_metadata(
    job: Job,
    config: CollectionConfig,
    extras: MetadataExtras | None = None,
    *,
    image_uri_template: str = DEFAULT_IMAGE_URI_TEMPLATE,
    min_width: int = DEFAULT_MIN_WIDTH,
) -> dict[str, Any]:
    """Build the Metaplex metadata document for one edition.

    Args:
        job: The edition's job; only identity and numbering fields are read
        config: The owning collection's configuration
        extras: Optional palette and content hash of the final image
        image_uri_template: URI for the image, ``{filename}`` is substituted
        min_width: Minimum zero-padding width for the index

    Returns:
        Metadata document as a plain dict, keys in a fixed order

    Raises:
        ValueError: If the job does not belong to *config* or its index is
            outside the collection's supply
    """
    if job.collection_id != config.id:
        raise ValueError(
            f"Job {job.id} belongs to collection {job.collection_id}, not {config.id}"
        )
    if not 0 <= job.global_index < config.total_supply:
        raise ValueError(
            f"Job {job.id} index {job.global_index} is outside total supply "
            f"{config.total_supply}"
        )

    extras = extras or MetadataExtras()
    padded = format_index(job.global_index, index_width(config.total_supply, min_width))
    filename = f"{padded}.png"

    attributes: list[dict[str, Any]] = [
        {"trait_type": "collection_number", "value": config.collection_number},
    ]
    if config.season is not None:
        attributes.append({"trait_type": "season", "value": config.season})
    if config.series_slug is not None:
        attributes.append({"trait_type": "series_slug", "value": config.series_slug})
    attributes.extend(
        [
            {"trait_type": "drop_number", "value": config.drop_number},
            {"trait_type": "drop_supply", "value": config.drop_supply},
            {"trait_type": "rarity_tier", "value": job.rarity_tier or ""},
            {
                "trait_type": "rarity",
                "value": rarity_label(job.global_index + 1, config.total_supply),
            },
            {"trait_type": "edition_total", "value": job.edition_total},
            {"trait_type": "edition_number", "value": job.edition_number},
            {"trait_type": "edition_in_drop", "value": job.edition_in_drop},
            {"trait_type": "art_id", "value": job.art_id or ""},
        ]
    )
    if extras.color_palette is not None:
        attributes.append(
            {"trait_type": "palette_primary", "value": extras.color_palette.primary}
        )
        attributes.append(
            {"trait_type": "palette_secondary", "value": extras.color_palette.secondary}
        )
    if extras.content_hash:
        attributes.append({"trait_type": "sha256_hash", "value": extras.content_hash})

    properties: dict[str, Any] = {
        "files": [{"uri": filename, "type": "image/png"}],
        "category": "image",
        "creators": _creators(config),
    }
    if extras.content_hash:
        properties["sha256_hash"] = extras.content_hash

    return {
        "name": f"{config.name} #{padded}",
        "symbol": config.symbol,
        "description": config.description,
        "seller_fee_basis_points": _royalty(config),
        "image": image_uri_template.format(filename=filename),
        "external_url": config.external_url,
        "attributes": attributes,
        "properties": properties,
        "collection": {"name": config.name, "family": config.symbol},
    }


# -- Collection-level documents ----------------------------------------------


def build_collection_metadata(
    config: CollectionConfig,
    *,
    image_uri_template: str = DEFAULT_IMAGE_URI_TEMPLATE,
) -> dict[str, Any]:
    """Build the ``collection.json`` manifest for a package."""
    attributes: list[dict[str, Any]] = [
        {"trait_type": "collection_number", "value": config.collection_number},
        {"trait_type": "total_supply", "value": config.total_supply},
        {"trait_type": "drop_supply", "value": config.drop_supply},
        {"trait_type": "drop_number", "value": config.drop_number},
    ]
    if config.season is not None:
        attributes.append({"trait_type": "season", "value": config.season})
    if config.series_slug is not None:
        attributes.append({"trait_type": "series_slug", "value": config.series_slug})

    return {
        "name": config.name,
        "symbol": config.symbol,
        "description": config.description,
        "seller_fee_basis_points": _royalty(config),
        "image": image_uri_template.format(filename="collection.png"),
        "external_url": config.external_url,
        "attributes": attributes,
        "properties": {"category": "image", "creators": _creators(config)},
        "collection": {"name": config.name, "family": config.symbol},
    }


def generate_readme(
    config: CollectionConfig,
    item_count: int,
    *,
    skipped: Sequence[str] = (),
    generated_at: str | None = None,
    min_width: int = DEFAULT_MIN_WIDTH,
) -> str:
    """Render the package ``README.md``.

    Args:
        config: Collection configuration
        item_count: Number of editions included in the archive
        skipped: Ids of jobs left out because an artifact was missing
        generated_at: Optional timestamp line; omitted when ``None`` so
            the output stays reproducible
        min_width: Minimum zero-padding width, matching the archive entries
    """
    width = index_width(config.total_supply, min_width)
    example = format_index(0, width)
    lines = [
        f"# {config.name}",
        "",
        "## Collection Information",
        "",
        f"- **Name:** {config.name}",
        f"- **Symbol:** {config.symbol}",
        f"- **Description:** {config.description}",
        f"- **Collection Number:** {config.collection_number}",
        f"- **Total Supply:** {config.total_supply}",
        f"- **Drop Supply:** {config.drop_supply}",
        f"- **Drop Number:** {config.drop_number}",
        f"- **Royalty:** {config.royalty_basis_points / 100:g}%",
        f"- **Editions in Package:** {item_count}",
        "",
        "## Package Contents",
        "",
        "- `collection.json` - Collection metadata",
        f"- `images/{example}.png` ... - Edition images, named by zero-padded index",
        f"- `json/{example}.json` ... - Metaplex metadata for each edition",
        "- `README.md` - This file",
        "",
        "## Metadata Structure",
        "",
        "Each edition includes the following attributes:",
        "- collection_number, season and series_slug (when set)",
        "- drop_number and drop_supply",
        "- rarity_tier (the planned tier) and rarity (position-based label)",
        "- edition_number, edition_total and edition_in_drop",
        "- art_id",
        "- palette_primary / palette_secondary and sha256_hash (when requested)",
        "",
        "## Image URIs",
        "",
        f"Image URIs contain the `{CID_PLACEHOLDER}` placeholder. Replace it with",
        "the content identifier of the uploaded images before minting.",
        "",
        "## Metaplex Compatibility",
        "",
        "All metadata follows the Metaplex JSON schema for Solana NFTs.",
    ]
    if skipped:
        lines.extend(
            [
                "",
                "## Skipped Jobs",
                "",
                "The following jobs were left out because an artifact was missing:",
                *[f"- {job_id}" for job_id in skipped],
            ]
        )
    if generated_at:
        lines.extend(["", f"Generated on: {generated_at}"])
    return "\n".join(lines) + "\n"


# -- CID substitution --------------------------------------------------------


def _replace_recursive(value: Any, mapping: Mapping[str, str]) -> Any:
    if isinstance(value, str):
        for placeholder, actual in mapping.items():
            value = value.replace(placeholder, actual)
        return value
    if isinstance(value, list):
        return [_replace_recursive(item, mapping) for item in value]
    if isinstance(value, dict):
        return {key: _replace_recursive(item, mapping) for key, item in value.items()}
    return value


def replace_cids(
    metadata: Mapping[str, Any],
    mapping: Mapping[str, str] | str,
) -> dict[str, Any]:
    """Return a copy of *metadata* with placeholders replaced.

    Args:
        metadata: A metadata document; it is not modified
        mapping: Placeholder to replacement mapping, or a bare CID which
            replaces ``<CID>``

    Raises:
        ValueError: If either argument is missing
    """
    if metadata is None or not mapping:
        raise ValueError("Metadata and CID mapping are required")
    if isinstance(mapping, str):
        mapping = {CID_PLACEHOLDER: mapping}
    return _replace_recursive(copy.deepcopy(dict(metadata)), mapping)


def replace_cids_batch(
    documents: Sequence[Mapping[str, Any]],
    mapping: Mapping[str, str] | str,
) -> list[dict[str, Any]]:
    return [replace_cids(document, mapping) for document in documents]


def extract_placeholders(metadata: Any) -> set[str]:
    """Collect every placeholder token (``<CID>``, ``{{name}}``) in a document."""
    found: set[str] = set()

    def _walk(value: Any) -> None:
        if isinstance(value, str):
            found.update(_PLACEHOLDER_PATTERN.findall(value))
        elif isinstance(value, list):
            for item in value:
                _walk(item)
        elif isinstance(value, dict):
            for item in value.values():
                _walk(item)

    _walk(metadata)
    return found


def validate_metadata(metadata: Mapping[str, Any] | None) -> list[str]:
    """Check a metadata document for the fields marketplaces require.

    Returns:
        Human-readable problems; empty if the document is valid
    """
    if not metadata:
        return ["Metadata is required"]

    errors = [
        f"Missing required field: {name}"
        for name in ("name", "image")
        if not metadata.get(name)
    ]
    if "description" not in metadata:
        errors.append("Missing required field: description")

    image = metadata.get("image")
    if image and not _is_valid_image_uri(image):
        errors.append("Invalid image URL format")
    return errors


def _is_valid_image_uri(uri: Any) -> bool:
    if not isinstance(uri, str):
        return False
    return uri.startswith(("ipfs://", "https://ipfs.io/ipfs/", "http://", "https://"))


def serialize_metadata(document: Mapping[str, Any]) -> bytes:
    """Encode a metadata document the way it is written to disk and archives."""
    return json.dumps(document, indent=2, ensure_ascii=False).encode("utf-8")
