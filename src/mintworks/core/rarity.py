"""Rarity plan expansion and job ordering.

A rarity plan is an ordered list of :class:`RarityTier` objects.  Expanding
it yields one :class:`JobSeed` per edition, in tier order, with
``global_index`` running from 0 across the whole plan.  Each source image
receives ``editions_per_image`` consecutive editions, except the last image
of a tier which receives whatever remains::

    nft_count=7, editions_per_image=3  ->  images get 3, 3, 1 editions

Both functions here are pure: they never mutate their inputs and perform no
I/O, so failures surface before any job is persisted or any image is
generated.

Usage
-----
::

    seeds = expand_rarity_plan(tiers, total_supply=6)
    seeds = number_seeds(shuffle_jobs(seeds))  # optional randomised order
"""

from __future__ import annotations

import logging
import random
from collections.abc import Sequence
from dataclasses import replace
from typing import TypeVar

from mintworks.core.errors import SupplyMismatchError, TierCapacityError
from mintworks.core.models import JobSeed, RarityTier

logger = logging.getLogger(__name__)

T = TypeVar("T")


def expand_rarity_plan(tiers: Sequence[RarityTier], total_supply: int) -> list[JobSeed]:
    """Expand rarity tiers into an ordered list of job seeds.

    Args:
        tiers: Rarity tiers in the order their editions should be numbered.
        total_supply: Declared collection supply; the expanded plan must
            match it exactly.

    Returns:
        ``total_supply`` job seeds with contiguous ``global_index`` values
        ``0 .. total_supply - 1``.

    Raises:
        TierCapacityError: If a tier has fewer source images than
            ``ceil(nft_count / editions_per_image)``.  Raised for the first
            offending tier, before any later tier is examined.
        SupplyMismatchError: If the tiers' combined ``nft_count`` differs
            from ``total_supply``.
    """
    seeds: list[JobSeed] = []
    current_index = 0

    for tier in tiers:
        images_needed = tier.images_needed
        if len(tier.source_images) < images_needed:
            raise TierCapacityError(tier.tier_label, images_needed, len(tier.source_images))

        for image_index in range(images_needed):
            remaining = tier.nft_count - image_index * tier.editions_per_image
            editions_for_image = min(tier.editions_per_image, remaining)
            art_id = f"{tier.art_prefix}-{image_index + 1}"

            for edition in range(1, editions_for_image + 1):
                seeds.append(
                    JobSeed(
                        global_index=current_index,
                        rarity_tier=tier.tier_label,
                        art_id=art_id,
                        edition_number=edition,
                        edition_total=editions_for_image,
                        source_image_ref=tier.source_images[image_index],
                    )
                )
                current_index += 1

        logger.debug(
            "Expanded tier '%s': %d editions across %d images.",
            tier.tier_label,
            tier.nft_count,
            images_needed,
        )

    if len(seeds) != total_supply:
        raise SupplyMismatchError(total_supply, len(seeds))

    logger.info("Expanded %d tiers into %d job seeds.", len(tiers), len(seeds))
    return seeds


def shuffle_jobs(items: Sequence[T], rng: random.Random | None = None) -> list[T]:
    """Return a uniformly random permutation of *items* (Fisher-Yates).

    Walks from the last index down to 1, swapping each position with a
    uniformly chosen index in ``[0, i]``.  The input sequence is copied, never
    mutated.

    Args:
        items: Sequence to permute.
        rng: Optional random source; pass a seeded ``random.Random`` for a
            reproducible order.  Defaults to the module-level generator.

    Returns:
        A new list containing the same elements in shuffled order.
    """
    randint = rng.randint if rng is not None else random.randint
    shuffled = list(items)
    for i in range(len(shuffled) - 1, 0, -1):
        j = randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def number_seeds(seeds: Sequence[JobSeed]) -> list[JobSeed]:
    """Reassign ``global_index`` to match each seed's position.

    Used after :func:`shuffle_jobs` so the final numbering follows the
    randomised order.  Edition numbers and totals within a tier are kept.
    """
    return [replace(seed, global_index=position) for position, seed in enumerate(seeds)]


def plan_job_seeds(
    tiers: Sequence[RarityTier],
    total_supply: int,
    *,
    randomize: bool = False,
    rng: random.Random | None = None,
) -> list[JobSeed]:
    """Expand a rarity plan and optionally shuffle it before numbering."""
    seeds = expand_rarity_plan(tiers, total_supply)
    if randomize:
        seeds = number_seeds(shuffle_jobs(seeds, rng))
        logger.info("Randomised order of %d job seeds.", len(seeds))
    return seeds
