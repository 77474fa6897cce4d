"""
Tests for the HTTP ingress.

These tests verify that the API only validates and queues orders, maps
pipeline errors to status codes and exposes the operator endpoints.
"""

import pytest
from fastapi.testclient import TestClient

from api.main import app
from pipeline.coordinator import RunStatus
from pipeline.runtime import build_pipeline, reset_pipeline
from shared.channels import EmailChannel
from shared.models import ExecutionOutcome
from shared.settings import PipelineSettings


@pytest.fixture
def api_settings() -> PipelineSettings:
    return PipelineSettings(
        _env_file=None,
        max_payload_bytes=256,
        max_group_backlog=2,
        max_deliveries=0,
        execution_delay_seconds=0.0,
        bus_retry_backoff_seconds=0.0,
        run_workers=False,
    )


@pytest.fixture
def pipeline(api_settings, clock, email_channel):
    """Pipeline driven by the fake clock; no background workers."""
    pipeline = build_pipeline(api_settings, channel=email_channel, clock=clock)
    reset_pipeline(pipeline)
    yield pipeline
    reset_pipeline(None)
    pipeline.coordinator.stop()


@pytest.fixture
def api_client(pipeline):
    """Create a test client with fresh state."""
    return TestClient(app)


def dead_letter_one(pipeline, clock) -> str:
    job_id = pipeline.store.enqueue({"sku": "SKU-1"}, group_key="dlq")
    pipeline.store.receive()
    clock.advance(pipeline.store.visibility_timeout)
    pipeline.store.sweep()
    return job_id


class TestHealthEndpoint:
    """Tests for the health check endpoint."""

    def test_health_check(self, api_client):
        response = api_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["workers"] is False


class TestOrdersEndpoint:
    """Tests for POST /orders."""

    def test_request_order_is_accepted(self, api_client, pipeline):
        response = api_client.post("/orders", json={
            "payload": {"sku": "SKU-1", "quantity": 2},
            "order_id": "ord-001",
            "group_key": "customer-1",
        })

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "QUEUED"
        assert body["order_id"] == "ord-001"
        assert body["group_key"] == "customer-1"
        assert body["duplicate"] is False
        assert pipeline.store.get(body["job_id"]) is not None

    def test_intake_does_not_process(self, api_client, pipeline, email_channel):
        api_client.post("/orders", json={"payload": {"sku": "SKU-1"}})

        assert pipeline.event_bus.get_event_log() == []
        assert email_channel.get_sent_count() == 0
        assert pipeline.store.stats().pending == 1

    def test_duplicate_dedupe_token(self, api_client, pipeline):
        first = api_client.post("/orders", json={"payload": {}, "dedupe_token": "tok-1"})
        second = api_client.post("/orders", json={"payload": {}, "dedupe_token": "tok-1"})

        assert second.status_code == 202
        assert second.json()["duplicate"] is True
        assert second.json()["job_id"] == first.json()["job_id"]
        assert len(pipeline.store) == 1

    def test_missing_payload(self, api_client, pipeline):
        response = api_client.post("/orders", json={"order_id": "ord-001"})

        assert response.status_code == 400
        assert response.json()["errors"][0]["field"].endswith("payload")
        assert len(pipeline.store) == 0

    def test_payload_not_an_object(self, api_client):
        response = api_client.post("/orders", json={"payload": [1, 2, 3]})

        assert response.status_code == 400

    def test_unknown_field(self, api_client):
        response = api_client.post("/orders", json={"payload": {}, "priority": "high"})

        assert response.status_code == 400

    def test_oversized_payload(self, api_client, pipeline):
        response = api_client.post("/orders", json={"payload": {"blob": "x" * 1024}})

        assert response.status_code == 413
        assert len(pipeline.store) == 0

    def test_group_backlog_full(self, api_client, pipeline):
        for _ in range(2):
            assert api_client.post("/orders", json={"payload": {}, "group_key": "g"}).status_code == 202

        response = api_client.post("/orders", json={"payload": {}, "group_key": "g"})

        assert response.status_code == 429
        assert len(pipeline.store) == 2

    def test_accepted_order_is_processed_later(self, api_client, pipeline, email_channel):
        api_client.post("/orders", json={"payload": {}, "order_id": "ord-001"})

        report = pipeline.coordinator.run_once()

        assert report.status == RunStatus.ACKNOWLEDGED
        assert email_channel.get_sent_count() == 1


class TestOperationsEndpoints:
    """Tests for queue stats and dead-letter handling."""

    def test_queue_stats(self, api_client, pipeline):
        api_client.post("/orders", json={"payload": {}, "group_key": "a"})
        api_client.post("/orders", json={"payload": {}, "group_key": "b"})
        pipeline.store.receive()

        response = api_client.get("/queue/stats")

        assert response.status_code == 200
        assert response.json() == {"pending": 1, "in_flight": 1, "dead_lettered": 0, "groups": 2}

    def test_list_dead_letters(self, api_client, pipeline, clock):
        job_id = dead_letter_one(pipeline, clock)

        response = api_client.get("/dead-letters")

        assert response.status_code == 200
        (job,) = response.json()
        assert job["job_id"] == job_id
        assert job["status"] == "DEAD_LETTERED"

    def test_redrive(self, api_client, pipeline, clock):
        job_id = dead_letter_one(pipeline, clock)

        response = api_client.post(f"/dead-letters/{job_id}/redrive")

        assert response.status_code == 200
        assert response.json()["delivery_count"] == 0
        assert response.json()["status"] == "PENDING"
        assert api_client.get("/dead-letters").json() == []
        assert pipeline.store.stats().pending == 1

    def test_redrive_unknown_job(self, api_client):
        response = api_client.post("/dead-letters/missing/redrive")

        assert response.status_code == 404

    def test_redrive_into_full_group(self, api_client, pipeline, clock):
        job_id = dead_letter_one(pipeline, clock)
        pipeline.store.enqueue({}, group_key="dlq")
        pipeline.store.enqueue({}, group_key="dlq")

        response = api_client.post(f"/dead-letters/{job_id}/redrive")

        assert response.status_code == 429
        assert len(api_client.get("/dead-letters").json()) == 1


def served_pipeline(channel: EmailChannel):
    """Default-shaped pipeline whose workers start with the app."""
    settings = PipelineSettings(
        _env_file=None,
        visibility_timeout_seconds=2.0,
        processing_timeout_seconds=0.2,
        poll_interval_seconds=0.01,
        max_poll_interval_seconds=0.05,
        sweep_interval_seconds=0.05,
        execution_delay_seconds=0.0,
        bus_retry_backoff_seconds=0.2,
        run_workers=True,
    )
    return reset_pipeline(build_pipeline(settings, channel=channel))


class TestServedPipeline:
    """Tests for the pipeline started and stopped by the app lifespan."""

    def test_order_is_processed_and_notified(self):
        channel = EmailChannel()
        pipeline = served_pipeline(channel)
        try:
            with TestClient(app) as client:
                assert client.get("/health").json()["workers"] is True

                response = client.post("/orders", json={"payload": {"sku": "SKU-1"}, "order_id": "ord-001"})
                assert response.status_code == 202
                assert pipeline.wait_until_drained(timeout=10.0) is True

                stats = client.get("/queue/stats").json()
        finally:
            reset_pipeline(None)

        assert stats["pending"] == 0
        assert stats["in_flight"] == 0
        assert stats["dead_lettered"] == 0
        (sent,) = channel.get_successful_sends()
        assert "ord-001" in sent.subject
        assert pipeline.event_bus.closed is True

    def test_failing_notifier_does_not_delay_acknowledgement(self, monkeypatch):
        channel = EmailChannel(fail_rate=1.0)
        pipeline = served_pipeline(channel)
        outcomes = []
        process = pipeline.processor.process

        def recording_process(job):
            result = process(job)
            outcomes.append(result.outcome)
            return result

        monkeypatch.setattr(pipeline.processor, "process", recording_process)
        try:
            with TestClient(app) as client:
                response = client.post("/orders", json={"payload": {}, "order_id": "ord-001"})
                assert response.status_code == 202
                assert pipeline.wait_until_drained(timeout=10.0) is True
        finally:
            reset_pipeline(None)

        # Executed once and acknowledged on the first delivery
        assert outcomes == [ExecutionOutcome.EXECUTED]
        assert pipeline.store.list_dead_letters() == []
        assert channel.get_successful_sends() == []
        assert len(pipeline.event_bus.get_failed_deliveries()) == 1
