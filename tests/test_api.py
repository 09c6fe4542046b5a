"""Tests for the HTTP API."""

import httpx
import pytest
from fastapi.testclient import TestClient

from genproof.api import create_app
from genproof.db.base import Database
from genproof.db.repositories import PinRecordRepository
from genproof.jobs.inputs import StaticInputSource
from genproof.kv import MemoryKeyValueStore
from genproof.pinning.service import PinningService
from genproof.prover.mock import MockProver
from genproof.services import build_services

from conftest import GATEWAYS, PIN_API, FakePinata, subject_data


@pytest.fixture
def client(settings):
    database = Database("sqlite://")
    database.create_all()
    services = build_services(
        settings,
        kv=MemoryKeyValueStore(),
        prover=MockProver(),
        inputs=StaticInputSource({"subject-1": subject_data()}),
        pinning=PinningService(
            PIN_API,
            GATEWAYS,
            client=httpx.AsyncClient(transport=httpx.MockTransport(FakePinata())),
            database=database,
        ),
        database=database,
    )
    with TestClient(create_app(services)) as test_client:
        yield test_client
    services.database.dispose()


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestSubmitJob:
    """Tests for POST /jobs."""

    def test_creates_job(self, client):
        response = client.post(
            "/jobs", json={"subject_id": "subject-1", "trait_type": "brca1"}
        )

        assert response.status_code == 201
        body = response.json()
        assert body["job"]["status"] == "queued"
        assert body["job"]["trait_type"] == "BRCA1"
        assert body["queue_position"] == 1
        assert body["estimated_time"] == 10.0

    def test_duplicate_submission_returns_same_job(self, client):
        payload = {"subject_id": "subject-1", "trait_type": "CYP2D6", "threshold": 1.5}
        first = client.post("/jobs", json=payload).json()
        second = client.post("/jobs", json=payload).json()

        assert first["job"]["id"] == second["job"]["id"]

    def test_unsupported_trait(self, client):
        response = client.post(
            "/jobs", json={"subject_id": "subject-1", "trait_type": "APOE"}
        )

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "VALIDATION_FAILED"

    def test_threshold_out_of_range(self, client):
        response = client.post(
            "/jobs",
            json={"subject_id": "subject-1", "trait_type": "BRCA2", "threshold": 4},
        )

        assert response.status_code == 422
        assert "within [0, 1]" in response.json()["detail"]["error"]

    def test_missing_fields(self, client):
        response = client.post("/jobs", json={"trait_type": "BRCA1"})
        assert response.status_code == 422


class TestGetJob:
    """Tests for GET /jobs/{job_id}."""

    def test_returns_status(self, client):
        created = client.post(
            "/jobs", json={"subject_id": "subject-1", "trait_type": "BRCA1"}
        ).json()["job"]

        response = client.get(f"/jobs/{created['id']}")

        assert response.status_code == 200
        body = response.json()
        assert body["id"] == created["id"]
        assert body["status"] == "queued"
        assert body["progress"] == 0
        assert body["queue_position"] == 1

    def test_unknown_job(self, client):
        response = client.get("/jobs/01HZZZZZZZZZZZZZZZZZZZZZZZ")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "NOT_FOUND"


class TestPinSubjectData:
    """Tests for POST /subjects/{subject_id}/data."""

    def test_pins_and_records_commitment(self, client):
        response = client.post("/subjects/subject-7/data", json=subject_data())

        assert response.status_code == 201
        body = response.json()
        assert body["subject_id"] == "subject-7"
        assert body["durable"] is True
        assert body["commitment_hash"].startswith("0x")

        database = client.app.state.services.database
        with database.transaction() as session:
            row = PinRecordRepository(session).find_by_commitment(
                body["commitment_hash"], "subject_data"
            )
            assert row.owner_id == "subject-7"
            assert row.content_id == body["content_id"]

    def test_record_store_unavailable(self, settings):
        # No tables: every pin record write fails
        database = Database("sqlite://")
        services = build_services(
            settings,
            kv=MemoryKeyValueStore(),
            prover=MockProver(),
            pinning=PinningService(
                PIN_API,
                GATEWAYS,
                client=httpx.AsyncClient(transport=httpx.MockTransport(FakePinata())),
                database=database,
            ),
            database=database,
        )
        with TestClient(create_app(services)) as test_client:
            response = test_client.post("/subjects/subject-7/data", json=subject_data())
        database.dispose()

        assert response.status_code == 503
        assert response.json()["detail"]["code"] == "TRANSIENT_IO"
