"""Tests for the HTTP API."""

from uuid import uuid4

from fastapi.testclient import TestClient

from scene_engine.domain.enums import GenerationKind
from scene_engine.errors import ProviderTransient

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


def start(client: TestClient, text: str = "How volcanoes form") -> str:
    response = client.post("/api/v1/jobs", json={"input_text": text}, headers=ALICE)
    assert response.status_code == 202
    return response.json()["job_id"]


class TestHealthEndpoints:
    """Test the health endpoints."""

    def test_health(self, test_client: TestClient) -> None:
        response = test_client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["components"]["generation_provider"] == "stub"

    def test_liveness(self, test_client: TestClient) -> None:
        response = test_client.get("/health/live")
        assert response.json()["status"] == "alive"

    def test_readiness(self, test_client: TestClient) -> None:
        response = test_client.get("/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["ready"] is True
        assert data["provider"] is True

    def test_root(self, test_client: TestClient) -> None:
        data = test_client.get("/").json()
        assert data["name"] == "AI Scene Engine"
        assert "version" in data


class TestJobEndpoints:
    """Test the job lifecycle endpoints."""

    def test_start_job(self, test_client: TestClient) -> None:
        response = test_client.post(
            "/api/v1/jobs", json={"input_text": "How volcanoes form"}, headers=ALICE
        )

        assert response.status_code == 202
        data = response.json()
        assert data["stage"] == "scenario_done"

        listing = test_client.get("/api/v1/jobs", headers=ALICE).json()
        assert [job["job_id"] for job in listing] == [data["job_id"]]
        assert listing[0]["title"] == "How volcanoes form"

    def test_start_job_validation(self, test_client: TestClient) -> None:
        response = test_client.post("/api/v1/jobs", json={"input_text": ""}, headers=ALICE)
        assert response.status_code == 422

        response = test_client.post("/api/v1/jobs", json={"input_text": "   "}, headers=ALICE)
        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"

    def test_user_header_required(self, test_client: TestClient) -> None:
        response = test_client.post("/api/v1/jobs", json={"input_text": "Topic"})
        assert response.status_code == 422

    def test_full_run(self, test_client: TestClient) -> None:
        job_id = start(test_client)

        for kind in ("previews", "tts", "video"):
            response = test_client.post(f"/api/v1/jobs/{job_id}/stages/{kind}", headers=ALICE)
            assert response.status_code == 202

        progress = test_client.get(f"/api/v1/jobs/{job_id}", headers=ALICE).json()
        assert progress["stage"] == "video_done"
        assert progress["percent"] == 100

        final = test_client.get(progress["final_video_url"])
        assert final.status_code == 200
        assert final.content.startswith(b"STUB_COMPOSE")

        scenes = test_client.get(f"/api/v1/jobs/{job_id}/scenes", headers=ALICE).json()
        assert [scene["order"] for scene in scenes] == [0, 1, 2, 3]
        assert all(scene["status"] == "completed" for scene in scenes)

    def test_illegal_stage_is_conflict(self, test_client: TestClient) -> None:
        job_id = start(test_client)

        response = test_client.post(f"/api/v1/jobs/{job_id}/stages/video", headers=ALICE)

        assert response.status_code == 409
        assert response.json()["error"] == "InvalidTransitionError"

    def test_other_users_jobs_are_hidden(self, test_client: TestClient) -> None:
        job_id = start(test_client)

        assert test_client.get(f"/api/v1/jobs/{job_id}", headers=BOB).status_code == 404
        assert test_client.delete(f"/api/v1/jobs/{job_id}", headers=BOB).status_code == 404
        assert test_client.get("/api/v1/jobs", headers=BOB).json() == []

    def test_unknown_job(self, test_client: TestClient) -> None:
        response = test_client.get(f"/api/v1/jobs/{uuid4()}", headers=ALICE)
        assert response.status_code == 404
        assert response.json()["error"] == "JobNotFoundError"

    def test_delete_job(self, test_client: TestClient) -> None:
        job_id = start(test_client)

        assert test_client.delete(f"/api/v1/jobs/{job_id}", headers=ALICE).status_code == 204
        assert test_client.get(f"/api/v1/jobs/{job_id}", headers=ALICE).status_code == 404


class TestRecoveryEndpoints:
    """Test checkpoint, resume, retry and scene edit endpoints."""

    def test_retry_flow(self, test_client: TestClient, provider) -> None:
        job_id = start(test_client)
        provider.fail(
            GenerationKind.IMAGE, ProviderTransient("down"), match="Illustration 2", times=2
        )
        test_client.post(f"/api/v1/jobs/{job_id}/stages/previews", headers=ALICE)

        checkpoint = test_client.get(f"/api/v1/jobs/{job_id}/checkpoint", headers=ALICE).json()
        assert checkpoint["status"] == "failed"
        assert checkpoint["failed_count"] == 1
        assert checkpoint["can_resume"] is True

        failed = test_client.get(f"/api/v1/jobs/{job_id}/failed-scenes", headers=ALICE).json()
        assert [scene["order"] for scene in failed] == [2]

        response = test_client.post(f"/api/v1/jobs/{job_id}/retry", headers=ALICE)
        assert response.status_code == 200
        assert response.json()["status"] == "processing"
        assert response.json()["retrying_count"] == 1

        progress = test_client.get(f"/api/v1/jobs/{job_id}", headers=ALICE).json()
        assert progress["stage"] == "previews_done"

    def test_resume_skip_failed(self, test_client: TestClient, provider) -> None:
        job_id = start(test_client)
        provider.fail(GenerationKind.IMAGE, ProviderTransient("down"), match="Illustration 1")
        test_client.post(f"/api/v1/jobs/{job_id}/stages/previews", headers=ALICE)

        response = test_client.post(
            f"/api/v1/jobs/{job_id}/resume", json={"skip_failed": True}, headers=ALICE
        )

        assert response.status_code == 200
        assert response.json()["status"] == "resumed"
        checkpoint = test_client.get(f"/api/v1/jobs/{job_id}/checkpoint", headers=ALICE).json()
        assert checkpoint["stage"] == "previews_done"
        assert len(checkpoint["excluded_scene_ids"]) == 1

    def test_resume_without_body(self, test_client: TestClient) -> None:
        job_id = start(test_client)

        response = test_client.post(f"/api/v1/jobs/{job_id}/resume", headers=ALICE)

        assert response.json()["status"] == "nothing_to_resume"

    def test_regenerate_and_edit_narration(self, test_client: TestClient) -> None:
        job_id = start(test_client)
        test_client.post(f"/api/v1/jobs/{job_id}/stages/previews", headers=ALICE)
        scene_id = test_client.get(f"/api/v1/jobs/{job_id}/scenes", headers=ALICE).json()[1][
            "scene_id"
        ]

        response = test_client.put(
            f"/api/v1/jobs/{job_id}/scenes/{scene_id}/narration",
            json={"narration": "Magma rises."},
            headers=ALICE,
        )
        assert response.status_code == 204

        response = test_client.post(
            f"/api/v1/jobs/{job_id}/scenes/{scene_id}/regenerate",
            json={"feedback": "brighter"},
            headers=ALICE,
        )
        assert response.status_code == 202
        assert response.json()["stage"] == "previews_done"

        scenes = test_client.get(f"/api/v1/jobs/{job_id}/scenes", headers=ALICE).json()
        assert scenes[1]["narration"] == "Magma rises."

    def test_regenerate_unknown_scene(self, test_client: TestClient) -> None:
        job_id = start(test_client)
        test_client.post(f"/api/v1/jobs/{job_id}/stages/previews", headers=ALICE)

        response = test_client.post(
            f"/api/v1/jobs/{job_id}/scenes/{uuid4()}/regenerate", headers=ALICE
        )

        assert response.status_code == 404


class TestArtifacts:
    """Test presigned artifact links."""

    def test_tampered_signature_is_rejected(self, test_client: TestClient, blobs) -> None:
        blobs.put("jobs/x/file.png", b"data", "image/png")
        url = blobs.presign("local://jobs/x/file.png")

        assert test_client.get(url).status_code == 200
        tampered = url.split("&signature=")[0] + "&signature=forged"
        assert test_client.get(tampered).status_code == 403

    def test_missing_artifact(self, test_client: TestClient, blobs) -> None:
        url = blobs.presign("local://jobs/x/missing.png")
        assert test_client.get(url).status_code == 404
