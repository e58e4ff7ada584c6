"""Tests for mintworks.core.packaging — ZIP archive assembly.

Tests cover:
- Archive layout: manifest, README, one image and one JSON per edition.
- Eligibility filtering and the no-eligible-jobs error.
- Skipping jobs whose artifacts have gone missing.
- On-the-fly metadata for generated jobs.
- The one-shot direct builder, including its construction errors.
"""

from __future__ import annotations

import json
import random
import zipfile
from dataclasses import replace
from pathlib import Path

import pytest

from mintworks.core.errors import NoEligibleJobsError, TierCapacityError
from mintworks.core.models import (
    Collection,
    CollectionConfig,
    CollectionStatus,
    JobStatus,
    RarityTier,
)
from mintworks.core.packaging import DirectPackageBuilder, PackageAssembler
from mintworks.core.processor import BatchProcessor


@pytest.fixture
def assembler(store, artifacts, test_config) -> PackageAssembler:
    return PackageAssembler(store, artifacts, test_config)


@pytest.fixture
def builder(artifacts, test_config) -> DirectPackageBuilder:
    return DirectPackageBuilder(artifacts, test_config)


def _approve_all(processor: BatchProcessor, collection: Collection) -> list:
    processor.create_jobs_for_collection(collection.id)
    result = processor.process_batch(collection.id, collection.config.total_supply)
    return [processor.approve_job(job.id) for job in result.attempted]


class TestPackageAssembler:
    def test_archive_layout(self, processor, assembler, collection):
        _approve_all(processor, collection)

        result = assembler.assemble(collection.id)

        assert len(result.included) == 5
        assert result.skipped == []
        with zipfile.ZipFile(result.path) as archive:
            names = set(archive.namelist())
            assert {"collection.json", "README.md"} <= names
            assert {f"images/0000{i}.png" for i in range(5)} <= names
            assert {f"json/0000{i}.json" for i in range(5)} <= names
            assert len(names) == 12
            document = json.loads(archive.read("json/00002.json"))
            assert document["name"] == "Neon Koi #00002"
            assert document["image"] == "ipfs://<CID>/00002.png"

    def test_package_named_after_collection(self, processor, assembler, collection):
        _approve_all(processor, collection)
        result = assembler.assemble(collection.id)
        assert Path(result.path).name == "Neon_Koi_001_col_1.zip"
        assert not Path(result.path + ".partial").exists()

    def test_same_named_collections_get_separate_archives(
        self, processor, assembler, collection, collection_config
    ):
        twin = processor.create_collection(
            replace(collection_config, id="col-2", total_supply=2, drop_supply=2)
        )
        _approve_all(processor, collection)
        _approve_all(processor, twin)

        first = assembler.assemble(collection.id)
        second = assembler.assemble(twin.id)

        assert first.path != second.path
        with zipfile.ZipFile(first.path) as archive:
            assert len([n for n in archive.namelist() if n.startswith("images/")]) == 5

        processor.delete_collection(twin.id)
        assert Path(first.path).is_file()
        assert not Path(second.path).exists()

    def test_collection_marked_packaged(self, processor, assembler, collection):
        _approve_all(processor, collection)

        result = assembler.assemble(collection.id)

        stored = processor.store.require_collection(collection.id)
        assert stored.status == CollectionStatus.PACKAGED
        assert stored.package_path == result.path

    def test_no_eligible_jobs(self, processor, assembler, collection):
        processor.create_jobs_for_collection(collection.id)
        with pytest.raises(NoEligibleJobsError):
            assembler.assemble(collection.id)

    def test_missing_image_is_skipped(self, processor, assembler, collection):
        jobs = _approve_all(processor, collection)
        Path(jobs[1].image_path).unlink()

        result = assembler.assemble(collection.id)

        assert len(result.included) == 4
        assert [entry.job_id for entry in result.skipped] == [jobs[1].id]
        with zipfile.ZipFile(result.path) as archive:
            assert "images/00001.png" not in archive.namelist()
            assert jobs[1].id in archive.read("README.md").decode("utf-8")

    def test_missing_metadata_is_skipped(self, processor, assembler, collection):
        jobs = _approve_all(processor, collection)
        Path(jobs[0].metadata_path).unlink()

        result = assembler.assemble(collection.id)

        assert [entry.job_id for entry in result.skipped] == [jobs[0].id]

    def test_generated_jobs_included_on_request(self, processor, assembler, collection):
        processor.create_jobs_for_collection(collection.id)
        processor.process_batch(collection.id, 2)

        result = assembler.assemble(
            collection.id, statuses=(JobStatus.APPROVED, JobStatus.GENERATED)
        )

        assert len(result.included) == 2
        with zipfile.ZipFile(result.path) as archive:
            document = json.loads(archive.read("json/00001.json"))
        assert document["name"] == "Neon Koi #00001"


class TestDirectPackageBuilder:
    def _tiers(self, make_png) -> list[RarityTier]:
        return [
            RarityTier("1/1", 1, source_images=[make_png((250, 0, 0))], art_id_prefix="ONE"),
            RarityTier(
                "common",
                4,
                2,
                source_images=[make_png((0, 250, 0)), make_png((0, 0, 250))],
                art_id_prefix="COM",
            ),
        ]

    def test_builds_complete_archive(
        self, builder: DirectPackageBuilder, collection_config: CollectionConfig, make_png
    ):
        result = builder.build(
            collection_config,
            self._tiers(make_png),
            calculate_color_palette=True,
            calculate_sha256=True,
        )

        assert len(result.included) == 5
        assert Path(result.path).name.startswith("Neon_Koi_collection_")
        with zipfile.ZipFile(result.path) as archive:
            assert len(archive.namelist()) == 12
            first = json.loads(archive.read("json/00000.json"))
            last = json.loads(archive.read("json/00004.json"))
        traits = {a["trait_type"]: a["value"] for a in first["attributes"]}
        assert traits["rarity_tier"] == "1/1"
        assert traits["art_id"] == "ONE-1"
        assert "palette_primary" in traits
        assert len(traits["sha256_hash"]) == 64
        last_traits = {a["trait_type"]: a["value"] for a in last["attributes"]}
        assert last_traits["art_id"] == "COM-2"
        assert last_traits["edition_number"] == 2
        assert last_traits["edition_in_drop"] == 5

    def test_randomized_order(
        self, builder: DirectPackageBuilder, collection_config: CollectionConfig, make_png
    ):
        result = builder.build(
            collection_config,
            self._tiers(make_png),
            randomize_order=True,
            rng=random.Random(11),
        )

        with zipfile.ZipFile(result.path) as archive:
            art_ids = sorted(
                {a["trait_type"]: a["value"] for a in json.loads(archive.read(name))["attributes"]}[
                    "art_id"
                ]
                for name in archive.namelist()
                if name.startswith("json/")
            )
        assert art_ids == ["COM-1", "COM-1", "COM-2", "COM-2", "ONE-1"]

    def test_each_build_gets_its_own_archive(
        self, builder: DirectPackageBuilder, collection_config: CollectionConfig, make_png
    ):
        first = builder.build(collection_config, self._tiers(make_png))
        second = builder.build(collection_config, self._tiers(make_png))

        assert first.path != second.path
        assert Path(first.path).is_file()
        assert Path(second.path).is_file()

    def test_unreadable_image_packaged_as_is(
        self, builder: DirectPackageBuilder, collection_config: CollectionConfig
    ):
        tiers = [RarityTier("common", 5, 5, source_images=[b"not really an image"])]

        result = builder.build(collection_config, tiers)

        with zipfile.ZipFile(result.path) as archive:
            assert archive.read("images/00003.png") == b"not really an image"

    def test_paths_accepted(
        self, builder, collection_config: CollectionConfig, make_png, temp_dir: Path
    ):
        source = temp_dir / "source.png"
        source.write_bytes(make_png())
        tiers = [RarityTier("common", 5, 5, source_images=[str(source)])]

        assert len(builder.build(collection_config, tiers).included) == 5

    def test_capacity_error_leaves_no_archive(
        self, builder, collection_config: CollectionConfig, make_png, test_config
    ):
        tiers = [RarityTier("common", 5, 2, source_images=[make_png()])]

        with pytest.raises(TierCapacityError):
            builder.build(collection_config, tiers)

        assert list((test_config.output_dir / "packages").iterdir()) == []
