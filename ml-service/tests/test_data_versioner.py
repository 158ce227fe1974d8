import pandas as pd
import pytest

from lead_pipeline.data_versioner import DataVersioner, dataset_fingerprint
from lead_pipeline.errors import NotFoundError


@pytest.fixture
def frame():
    return pd.DataFrame({
        "total_interactions": [1.0, 4.0, 0.0],
        "engagement_score": [0.2, 0.9, 0.0],
        "converted": [0, 1, 0],
        "created_at": pd.to_datetime(["2024-01-01", "2024-02-01", "2024-03-01"], utc=True),
    })


def test_snapshot_metadata(tmp_path, frame):
    versioner = DataVersioner(tmp_path)
    version = versioner.save_snapshot(frame, extra_metadata={"source": "test"})

    meta = versioner.get_metadata(version)
    assert meta["rows"] == 3
    assert meta["features"] == 2
    assert meta["conversion_rate"] == pytest.approx(0.3333)
    assert meta["source"] == "test"
    assert meta["feature_stats"]["total_interactions"]["max"] == 4.0
    assert meta["date_range"]["min"].startswith("2024-01-01")
    assert len(versioner.load_snapshot(version)) == 3


def test_unchanged_dataset_reuses_snapshot(tmp_path, frame):
    versioner = DataVersioner(tmp_path)
    first = versioner.save_snapshot(frame)
    assert versioner.save_snapshot(frame.copy()) == first

    changed = frame.assign(converted=[1, 1, 0])
    assert dataset_fingerprint(changed) != dataset_fingerprint(frame)
    assert versioner.save_snapshot(changed) != first
    assert len(versioner.list_snapshots()) == 2


def test_missing_snapshot(tmp_path):
    versioner = DataVersioner(tmp_path)
    with pytest.raises(NotFoundError):
        versioner.load_snapshot("data_missing")
    with pytest.raises(NotFoundError):
        versioner.get_metadata("data_missing")
    assert versioner.list_snapshots() == []
