import pytest
from fastapi.testclient import TestClient

from app import create_app
from lead_api.service import JOB_RUNNING, LeadScoringService, TrainingJob, coerce_lead_id
from lead_pipeline.config import Settings
from lead_pipeline.errors import ValidationError
from lead_pipeline.stores import InMemoryLeadStore


def _service(base_dir, leads):
    settings = Settings(
        models_dir=base_dir / "models",
        snapshots_dir=base_dir / "snapshots",
        monitor_enabled=False,
        baseline_epochs=3,
        advanced_epochs=3,
    )
    return LeadScoringService(settings, lead_store=InMemoryLeadStore(leads))


def _wait_for(service, job_id):
    service._jobs[job_id].future.result(timeout=120)


@pytest.fixture
def client(tmp_path, synthetic_leads):
    service = _service(tmp_path, synthetic_leads)
    with TestClient(create_app(service)) as test_client:
        yield test_client


@pytest.fixture(scope="module")
def trained_client(tmp_path_factory, synthetic_leads):
    service = _service(tmp_path_factory.mktemp("trained"), synthetic_leads)
    with TestClient(create_app(service)) as test_client:
        response = test_client.post("/train")
        assert response.status_code == 202
        _wait_for(service, response.json()["job_id"])
        yield test_client


def test_coerce_lead_id():
    assert coerce_lead_id("42") == 42
    assert coerce_lead_id(7) == 7
    assert coerce_lead_id("lead-abc") == "lead-abc"
    with pytest.raises(ValidationError):
        coerce_lead_id("  ")


def test_score_without_model_is_503(client):
    response = client.post("/score", json={"lead_id": 1})
    assert response.status_code == 503


def test_health_without_model_reports_issues(client):
    body = client.get("/health").json()
    assert body["status"] == "warning"
    assert "No active model" in body["issues"]
    assert body["monitoring"]["scheduler_running"] is False


def test_score_request_needs_exactly_one_source(client):
    assert client.post("/score", json={}).status_code == 422


def test_unknown_training_job_is_404(client):
    assert client.get("/train/nope").status_code == 404


def test_second_training_trigger_is_409(client):
    service = client.app.state.service
    service._jobs["busy"] = TrainingJob(job_id="busy", submitted_at="now", status=JOB_RUNNING)
    assert client.post("/train").status_code == 409


def test_training_job_failure_is_reported(client):
    response = client.post("/train", json={"leads": []})
    assert response.status_code == 202
    job_id = response.json()["job_id"]
    _wait_for(client.app.state.service, job_id)

    status = client.get(f"/train/{job_id}").json()
    assert status["status"] == "failed"
    assert "at least" in status["error"]


def test_invalid_inline_training_data_is_400(client):
    response = client.post("/train", json={"leads": [{"id": 1}]})
    assert response.status_code == 400


def test_training_job_completes(trained_client):
    versions = trained_client.get("/model/versions").json()
    assert versions["count"] == 2
    assert sorted(v["status"] for v in versions["versions"]) == ["active", "evaluated"]

    info = trained_client.get("/model/info").json()
    assert info["status"] == "active"
    assert info["feature_count"] == 25
    assert info["schema_version"] == 1


def test_score_and_explain(trained_client):
    response = trained_client.post("/score", json={"lead_id": 1})
    assert response.status_code == 200
    body = response.json()
    assert 0.0 <= body["score"] <= 1.0
    assert body["lead_id"] == 1

    explanation = trained_client.get("/explain/1").json()
    assert explanation["lead_id"] == 1
    assert explanation["score"] == body["score"]
    assert explanation["importance_table_version"] == "v1"
    assert len(explanation["score_distribution"]["buckets"]) == 5


def test_explain_scores_unscored_lead_first(trained_client):
    response = trained_client.get("/explain/2")
    assert response.status_code == 200
    assert response.json()["lead_id"] == 2


def test_score_inline_lead(trained_client):
    response = trained_client.post("/score", json={
        "lead": {
            "lead": {"id": "draft-1", "created_at": "2024-05-01T00:00:00Z"},
            "interactions": [{"type": "email", "created_at": "2024-05-02T00:00:00Z"}],
        },
    })
    assert response.status_code == 200
    assert response.json()["lead_id"] == "draft-1"


def test_batch_scoring(trained_client):
    response = trained_client.post("/score/batch", json={"lead_ids": [3, 4, "5"]})
    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 3
    assert [r["lead_id"] for r in body["results"]] == [3, 4, 5]


def test_batch_limits_and_unknown_ids(trained_client):
    assert trained_client.post("/score/batch", json={"lead_ids": list(range(1, 52))}).status_code == 400
    assert trained_client.post("/score/batch", json={"lead_ids": []}).status_code == 400
    assert trained_client.post("/score/batch", json={"lead_ids": [1, 999999]}).status_code == 404


def test_unknown_lead_is_404(trained_client):
    assert trained_client.post("/score", json={"lead_id": 999999}).status_code == 404
    assert trained_client.get("/explain/999999").status_code == 404


def test_metrics_endpoint(trained_client):
    trained_client.post("/score", json={"lead_id": 1})
    body = trained_client.get("/metrics").json()
    active_id = trained_client.get("/model/info").json()["id"]
    assert body["models"][active_id]["response_time_ms"]["sample_count"] >= 1

    assert trained_client.get("/metrics", params={"start": "yesterday"}).status_code == 400


def test_feature_importance_and_snapshots(trained_client):
    importance = trained_client.get("/model/feature-importance").json()
    assert importance["version"] == "v1"
    assert importance["top_features"]

    snapshots = trained_client.get("/pipeline/data-snapshots").json()
    assert snapshots["count"] == 1
    assert snapshots["snapshots"][0]["rows"] == 300


def test_check_retrain(trained_client):
    decision = trained_client.post("/pipeline/check-retrain").json()
    assert decision["should_retrain"] is False
    assert decision["active_model_id"] == trained_client.get("/model/info").json()["id"]


@pytest.mark.parametrize("lead", [
    {"lead": {"id": "x", "created_at": "2024-05-01T00:00:00Z"}, "interactions": ["email"]},
    {"lead": {"id": "x", "created_at": "2024-05-01T00:00:00Z"}, "interactions": {"type": "email"}},
    {"lead": {"id": "x", "created_at": "2024-05-01T00:00:00Z"}, "property_prefs": [3]},
    {"lead": 5},
])
def test_malformed_inline_lead_is_400(trained_client, lead):
    response = trained_client.post("/score", json={"lead": lead})
    assert response.status_code == 400


def test_malformed_training_lead_is_400(client):
    response = client.post("/train", json={"leads": [{"lead": {"created_at": "2024-05-01"}, "interactions": [1]}]})
    assert response.status_code == 400
