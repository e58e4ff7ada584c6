"""Integration tests for the Mintworks FastAPI application.

Tests use FastAPI's ``TestClient`` backed by temporary storage and an
in-memory fake image generator, so no network or GPU access occurs.
Tests cover:

- Health endpoint.
- Collection CRUD and the lock on updates once jobs exist.
- Initial and continuation batches, including partial failures.
- Job listing, approval, regeneration, deletion, image and metadata download.
- Bulk approve / regenerate and job statistics.
- Package build and download.
- Rarity-plan uploads and the one-shot ``/api/generate`` endpoint.
- Metadata finalisation.
- Mapping of core errors to HTTP status codes.
"""

from __future__ import annotations

import io
import json
import zipfile

import pytest
from fastapi.testclient import TestClient

COLLECTION = {
    "name": "Neon Koi",
    "symbol": "KOI",
    "description": "Glowing fish",
    "royalty_percent": 5,
    "creator_address": "Creator111",
    "total_supply": 5,
    "ai_prompt": "a neon koi fish",
}


def _create_collection(client: TestClient, **overrides) -> str:
    response = client.post("/api/collections", json={**COLLECTION, **overrides})
    assert response.status_code == 201
    return response.json()["id"]


def _generate(client: TestClient, collection_id: str) -> list[dict]:
    response = client.post(f"/api/collections/{collection_id}/generate-initial")
    assert response.status_code == 200
    return response.json()["jobs"]


# ---------------------------------------------------------------------------
# Health and collections.
# ---------------------------------------------------------------------------


class TestHealth:
    def test_health(self, test_client: TestClient):
        response = test_client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["backend"] == "fake"
        assert data["is_processing"] is False


class TestCollections:
    def test_create_and_get(self, test_client: TestClient):
        collection_id = _create_collection(test_client)

        response = test_client.get(f"/api/collections/{collection_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Neon Koi"
        assert data["royalty_basis_points"] == 500
        assert data["status"] == "pending"
        assert data["progress"]["total_jobs"] == 0

    def test_create_validates(self, test_client: TestClient):
        response = test_client.post("/api/collections", json={**COLLECTION, "symbol": "X" * 11})
        assert response.status_code == 422

    def test_inconsistent_drop_is_bad_request(self, test_client: TestClient):
        response = test_client.post("/api/collections", json={**COLLECTION, "drop_supply": 9})
        assert response.status_code == 400

    def test_list(self, test_client: TestClient):
        _create_collection(test_client)
        _create_collection(test_client, name="Other")

        data = test_client.get("/api/collections").json()

        assert {c["name"] for c in data["collections"]} == {"Neon Koi", "Other"}

    def test_missing_collection_is_404(self, test_client: TestClient):
        response = test_client.get("/api/collections/nope")
        assert response.status_code == 404
        assert response.json()["error"] == "CollectionNotFoundError"

    def test_update_then_lock(self, test_client: TestClient):
        collection_id = _create_collection(test_client)

        response = test_client.patch(
            f"/api/collections/{collection_id}", json={"name": "Neon Carp"}
        )
        assert response.status_code == 200
        assert response.json()["name"] == "Neon Carp"

        test_client.post(f"/api/collections/{collection_id}/jobs")
        response = test_client.patch(f"/api/collections/{collection_id}", json={"name": "X"})
        assert response.status_code == 409
        assert response.json()["error"] == "CollectionLockedError"

    def test_delete(self, test_client: TestClient):
        collection_id = _create_collection(test_client)
        _generate(test_client, collection_id)

        response = test_client.delete(f"/api/collections/{collection_id}")

        assert response.status_code == 200
        assert test_client.get(f"/api/collections/{collection_id}").status_code == 404

    def test_create_jobs_twice_conflicts(self, test_client: TestClient):
        collection_id = _create_collection(test_client)

        first = test_client.post(f"/api/collections/{collection_id}/jobs")
        second = test_client.post(f"/api/collections/{collection_id}/jobs")

        assert first.status_code == 201
        assert first.json()["created"] == 5
        assert second.status_code == 409

    def test_jobs_require_prompt(self, test_client: TestClient):
        collection_id = _create_collection(test_client, ai_prompt=None)
        response = test_client.post(f"/api/collections/{collection_id}/jobs")
        assert response.status_code == 400


# ---------------------------------------------------------------------------
# Batches and jobs.
# ---------------------------------------------------------------------------


class TestBatches:
    def test_initial_then_continue(self, test_client: TestClient):
        collection_id = _create_collection(test_client)

        initial = test_client.post(f"/api/collections/{collection_id}/generate-initial").json()
        assert initial["attempted"] == 3
        assert initial["succeeded"] == 3
        assert initial["progress"]["pending_jobs"] == 2
        assert initial["progress"]["can_continue"] is True

        more = test_client.post(f"/api/collections/{collection_id}/continue-generation").json()
        assert [j["global_index"] for j in more["jobs"]] == [3, 4]

        done = test_client.post(f"/api/collections/{collection_id}/continue-generation").json()
        assert done["nothing_to_do"] is True

    def test_batch_size_override(self, test_client: TestClient):
        collection_id = _create_collection(test_client)
        response = test_client.post(
            f"/api/collections/{collection_id}/generate-initial", json={"batch_size": 1}
        )
        assert response.json()["attempted"] == 1

    def test_partial_failure(self, test_client: TestClient, fake_generator):
        collection_id = _create_collection(test_client)
        fake_generator.fail_next = 1

        data = test_client.post(f"/api/collections/{collection_id}/generate-initial").json()

        assert data["succeeded"] == 2
        assert data["failed"] == 1
        assert data["failures"][0]["message"] == "Failed to generate image: provider unavailable"
        assert data["jobs"][0]["status"] == "error"

    def test_concurrent_batch_conflict(self, test_client: TestClient):
        collection_id = _create_collection(test_client)
        test_client.post(f"/api/collections/{collection_id}/jobs")

        with test_client.app.state.processor._guard.hold():
            response = test_client.post(
                f"/api/collections/{collection_id}/continue-generation"
            )

        assert response.status_code == 409
        assert response.json()["error"] == "ConcurrentBatchError"

    def test_progress_endpoint(self, test_client: TestClient):
        collection_id = _create_collection(test_client)
        _generate(test_client, collection_id)

        progress = test_client.get(f"/api/collections/{collection_id}/progress").json()

        assert progress["generated_jobs"] == 3
        assert progress["progress_percentage"] == 0


class TestJobs:
    def test_list_filter_and_paginate(self, test_client: TestClient):
        collection_id = _create_collection(test_client)
        _generate(test_client, collection_id)

        data = test_client.get(
            f"/api/collections/{collection_id}/jobs",
            params={"status": "generated", "limit": 2, "offset": 1},
        ).json()

        assert data["total"] == 3
        assert [j["global_index"] for j in data["jobs"]] == [1, 2]

    def test_approve(self, test_client: TestClient):
        collection_id = _create_collection(test_client)
        job = _generate(test_client, collection_id)[0]

        response = test_client.post(f"/api/jobs/{job['id']}/approve", json={"sha256": True})

        assert response.status_code == 200
        assert response.json()["status"] == "approved"
        assert response.json()["metadata_path"].endswith(".json")

    def test_approve_pending_conflicts(self, test_client: TestClient):
        collection_id = _create_collection(test_client)
        job = test_client.post(f"/api/collections/{collection_id}/jobs").json()["jobs"][0]

        response = test_client.post(f"/api/jobs/{job['id']}/approve")

        assert response.status_code == 409
        assert response.json()["error"] == "InvalidTransitionError"

    def test_regenerate(self, test_client: TestClient):
        collection_id = _create_collection(test_client)
        job = _generate(test_client, collection_id)[0]

        response = test_client.post(f"/api/jobs/{job['id']}/regenerate")

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["image_path"] is None

    def test_image_download(self, test_client: TestClient):
        collection_id = _create_collection(test_client)
        job = _generate(test_client, collection_id)[0]

        response = test_client.get(f"/api/jobs/{job['id']}/image")

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/png"
        assert response.content.startswith(b"\x89PNG")

    def test_image_missing_for_pending_job(self, test_client: TestClient):
        collection_id = _create_collection(test_client)
        job = test_client.post(f"/api/collections/{collection_id}/jobs").json()["jobs"][0]
        assert test_client.get(f"/api/jobs/{job['id']}/image").status_code == 404

    def test_delete(self, test_client: TestClient):
        collection_id = _create_collection(test_client)
        job = _generate(test_client, collection_id)[0]

        assert test_client.delete(f"/api/jobs/{job['id']}").status_code == 200
        assert test_client.get(f"/api/jobs/{job['id']}").status_code == 404

    def test_unknown_job_is_404(self, test_client: TestClient):
        assert test_client.post("/api/jobs/nope/approve").status_code == 404

    def test_metadata(self, test_client: TestClient):
        collection_id = _create_collection(test_client)
        job = _generate(test_client, collection_id)[0]
        assert test_client.get(f"/api/jobs/{job['id']}/metadata").status_code == 404

        test_client.post(f"/api/jobs/{job['id']}/approve")
        response = test_client.get(f"/api/jobs/{job['id']}/metadata")

        assert response.status_code == 200
        assert response.json()["metadata"]["name"] == "Neon Koi #00000"

    def test_stats(self, test_client: TestClient):
        first = _create_collection(test_client)
        second = _create_collection(test_client, name="Carp", total_supply=2)
        _generate(test_client, first)
        test_client.post(f"/api/collections/{second}/jobs")

        overall = test_client.get("/api/jobs/stats").json()
        scoped = test_client.get("/api/jobs/stats", params={"collection_id": second}).json()

        assert overall["total_jobs"] == 7
        assert overall["generated_jobs"] == 3
        assert overall["pending_jobs"] == 4
        assert scoped["collection_id"] == second
        assert scoped["total_jobs"] == 2

    def test_stats_unknown_collection(self, test_client: TestClient):
        response = test_client.get("/api/jobs/stats", params={"collection_id": "nope"})
        assert response.status_code == 404


class TestBulkJobs:
    def test_batch_approve_reports_each_job(self, test_client: TestClient):
        collection_id = _create_collection(test_client)
        jobs = _generate(test_client, collection_id)
        ids = [jobs[0]["id"], "missing", jobs[1]["id"], jobs[0]["id"]]

        response = test_client.post("/api/jobs/batch-approve", json={"job_ids": ids})

        assert response.status_code == 200
        data = response.json()
        assert data["succeeded"] == 2
        assert data["failed"] == 2
        assert [j["id"] for j in data["jobs"]] == [jobs[0]["id"], jobs[1]["id"]]
        assert [e["job_id"] for e in data["errors"]] == ["missing", jobs[0]["id"]]

    def test_batch_regenerate(self, test_client: TestClient):
        collection_id = _create_collection(test_client)
        jobs = _generate(test_client, collection_id)

        data = test_client.post(
            "/api/jobs/batch-regenerate", json={"job_ids": [j["id"] for j in jobs]}
        ).json()

        assert data["succeeded"] == 3
        assert all(j["status"] == "pending" for j in data["jobs"])

    def test_empty_id_list_rejected(self, test_client: TestClient):
        response = test_client.post("/api/jobs/batch-regenerate", json={"job_ids": []})
        assert response.status_code == 422


# ---------------------------------------------------------------------------
# Packaging.
# ---------------------------------------------------------------------------


class TestPackaging:
    def test_package_and_download(self, test_client: TestClient):
        collection_id = _create_collection(test_client)
        for job in _generate(test_client, collection_id):
            test_client.post(f"/api/jobs/{job['id']}/approve")

        built = test_client.post(f"/api/collections/{collection_id}/package").json()
        assert len(built["skipped"]) == 0
        assert built["included"] == 3

        response = test_client.get(built["download_url"])
        assert response.status_code == 200
        with zipfile.ZipFile(io.BytesIO(response.content)) as archive:
            names = archive.namelist()
        assert "collection.json" in names
        assert "images/00002.png" in names

    def test_package_without_approved_jobs(self, test_client: TestClient):
        collection_id = _create_collection(test_client)
        _generate(test_client, collection_id)

        response = test_client.post(f"/api/collections/{collection_id}/package")

        assert response.status_code == 400
        assert response.json()["error"] == "NoEligibleJobsError"

    def test_include_generated(self, test_client: TestClient):
        collection_id = _create_collection(test_client)
        _generate(test_client, collection_id)

        response = test_client.post(
            f"/api/collections/{collection_id}/package", json={"include_generated": True}
        )

        assert response.status_code == 200
        assert response.json()["included"] == 3

    def test_download_before_build(self, test_client: TestClient):
        collection_id = _create_collection(test_client)
        assert test_client.get(f"/api/collections/{collection_id}/download").status_code == 404

    def test_cleanup(self, test_client: TestClient):
        collection_id = _create_collection(test_client)
        _generate(test_client, collection_id)

        data = test_client.post(f"/api/collections/{collection_id}/cleanup").json()

        assert data["removed_files"] == 3


# ---------------------------------------------------------------------------
# Uploads and utilities.
# ---------------------------------------------------------------------------


def _plan_files(make_png) -> list[tuple[str, tuple[str, bytes, str]]]:
    return [
        ("tier_0_a", ("a.png", make_png((255, 0, 0)), "image/png")),
        ("tier_1_b", ("b.png", make_png((0, 255, 0)), "image/png")),
        ("tier_1_c", ("c.png", make_png((0, 0, 255)), "image/png")),
    ]


PLAN_TIERS = [
    {"tier_label": "1/1", "nft_count": 1, "art_id_prefix": "ONE"},
    {"tier_label": "common", "nft_count": 4, "editions_per_image": 2},
]


class TestRarityPlanUpload:
    def test_plan_creates_jobs(self, test_client: TestClient, make_png):
        collection_id = _create_collection(test_client, ai_prompt=None)

        response = test_client.post(
            f"/api/collections/{collection_id}/plan",
            data={"data": json.dumps({"rarity_tiers": PLAN_TIERS})},
            files=_plan_files(make_png),
        )

        assert response.status_code == 201
        jobs = response.json()["jobs"]
        assert [j["art_id"] for j in jobs] == [
            "ONE-1",
            "common-1",
            "common-1",
            "common-2",
            "common-2",
        ]

        batch = test_client.post(f"/api/collections/{collection_id}/generate-initial").json()
        assert batch["succeeded"] == 3

    def test_tier_capacity_reported(self, test_client: TestClient, make_png):
        collection_id = _create_collection(test_client, ai_prompt=None)

        response = test_client.post(
            f"/api/collections/{collection_id}/plan",
            data={"data": json.dumps({"rarity_tiers": PLAN_TIERS})},
            files=_plan_files(make_png)[:2],
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "TierCapacityError"
        assert body["tier"] == "common"
        assert body["shortfall"] == 1

    def test_missing_data_field(self, test_client: TestClient, make_png):
        collection_id = _create_collection(test_client, ai_prompt=None)
        response = test_client.post(
            f"/api/collections/{collection_id}/plan", files=_plan_files(make_png)
        )
        assert response.status_code == 400

    def test_bad_file_field_name(self, test_client: TestClient, make_png):
        collection_id = _create_collection(test_client, ai_prompt=None)
        response = test_client.post(
            f"/api/collections/{collection_id}/plan",
            data={"data": json.dumps({"rarity_tiers": PLAN_TIERS})},
            files=[("image", ("a.png", make_png(), "image/png"))],
        )
        assert response.status_code == 400


class TestDirectGenerate:
    def _payload(self, **options) -> str:
        return json.dumps(
            {
                "collection": {
                    "name": "Neon Koi",
                    "symbol": "KOI",
                    "total_supply": 5,
                    "royalty_percent": 5,
                },
                "rarity_tiers": PLAN_TIERS,
                "advanced_options": options,
            }
        )

    def test_returns_zip(self, test_client: TestClient, make_png):
        response = test_client.post(
            "/api/generate",
            data={"data": self._payload(calculate_sha256=True)},
            files=_plan_files(make_png),
        )

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/zip"
        assert response.headers["x-mintworks-editions"] == "5"
        with zipfile.ZipFile(io.BytesIO(response.content)) as archive:
            document = json.loads(archive.read("json/00004.json"))
            assert len(archive.namelist()) == 12
        assert document["seller_fee_basis_points"] == 500
        assert any(a["trait_type"] == "sha256_hash" for a in document["attributes"])

    def test_archive_removed_after_download(
        self, test_client: TestClient, test_config, make_png
    ):
        for _ in range(2):
            response = test_client.post(
                "/api/generate", data={"data": self._payload()}, files=_plan_files(make_png)
            )
            assert response.status_code == 200
            assert "Neon_Koi_collection.zip" in response.headers["content-disposition"]

        assert list((test_config.output_dir / "packages").glob("*.zip")) == []

    def test_supply_mismatch(self, test_client: TestClient, make_png):
        payload = json.loads(self._payload())
        payload["collection"]["total_supply"] = 6

        response = test_client.post(
            "/api/generate", data={"data": json.dumps(payload)}, files=_plan_files(make_png)
        )

        assert response.status_code == 400
        assert response.json()["error"] == "SupplyMismatchError"

    def test_invalid_json_is_422(self, test_client: TestClient, make_png):
        response = test_client.post(
            "/api/generate", data={"data": "{}"}, files=_plan_files(make_png)
        )
        assert response.status_code == 422


class TestFinalize:
    def test_replaces_placeholders(self, test_client: TestClient):
        response = test_client.post(
            "/api/metadata/finalize",
            json={
                "metadata": [
                    {"name": "A", "description": "", "image": "ipfs://<CID>/00000.png"},
                    {"name": "", "description": "", "image": "ipfs://<CID>/00001.png"},
                ],
                "cid_mapping": {"<CID>": "bafy"},
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["metadata"][0]["image"] == "ipfs://bafy/00000.png"
        assert data["errors"] == {"1": ["Missing required field: name"]}


@pytest.mark.parametrize("path", ["/api/jobs/nope", "/api/collections/nope/jobs"])
def test_unknown_ids_are_404(test_client: TestClient, path: str):
    assert test_client.get(path).status_code == 404
