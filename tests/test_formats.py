import asyncio
import tempfile

import duckdb
import pytest
from fastapi.testclient import TestClient

from api.main import app
from conftest import AS_OF, make_listing, make_transaction
from jobs.config import PipelineConfig
from jobs.generate_signals import SignalPipeline
from storage.db import connect
from storage.reference import upsert_geo_references, upsert_listings, upsert_transactions


@pytest.fixture()
def populated_db(monkeypatch, tmp_path, geo_references):
    db_path = tmp_path / "signals.duckdb"
    monkeypatch.setenv("DEAL_SIGNALS_DB_PATH", str(db_path))

    conn = connect()
    try:
        upsert_geo_references(conn, geo_references)
        upsert_transactions(
            conn, [make_transaction(i, building_name="Marina Gate") for i in range(12)]
        )
        upsert_listings(
            conn,
            [
                make_listing("L-good", building_name="Marina Gate"),
                make_listing("L-fair", asking_price=170_000.0),
            ],
        )
        config = PipelineConfig(batch_delay_seconds=0, rate_limit=0, min_score=40)
        report = asyncio.run(SignalPipeline(conn, config, as_of=AS_OF).run())
        assert report.signals_upserted == 2
    finally:
        conn.close()

    yield db_path


@pytest.fixture()
def client(populated_db):
    with TestClient(app) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_signals_json(client):
    response = client.get("/signals", params={"format": "json", "limit": 10})

    assert response.status_code == 200
    payload = response.json()
    assert payload["count"] == 2
    first, second = payload["items"]
    assert first["evidence"]["listing_id"] == "L-good"
    assert first["evidence"]["composite_score"] >= second["evidence"]["composite_score"]
    assert "yield" in first["evidence"]["score_breakdown"]
    assert first["geo_id"] == "dubai-marina"


def test_signals_json_filters(client):
    response = client.get("/signals", params={"severity": "high", "min_score": 70})
    payload = response.json()
    assert [item["evidence"]["listing_id"] for item in payload["items"]] == ["L-good"]

    response = client.get("/signals", params={"geo_id": "business-bay"})
    assert response.json()["count"] == 0


def test_signals_rejects_bad_parameters(client):
    assert client.get("/signals", params={"format": "xml"}).status_code == 400
    assert client.get("/signals", params={"severity": "critical"}).status_code == 400


def test_signals_csv(client):
    response = client.get("/signals", params={"format": "csv"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    body = response.content.decode()
    assert body.splitlines()[0].startswith("signal_key,org_id,type")
    assert "L-good" in body
    assert "L-fair" in body


def test_signals_parquet(client):
    response = client.get("/signals", params={"format": "parquet"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/vnd.apache.parquet")

    with tempfile.NamedTemporaryFile(suffix=".parquet") as tmp:
        tmp.write(response.content)
        tmp.flush()
        con = duckdb.connect()
        try:
            count = con.execute("SELECT COUNT(*) FROM read_parquet(?)", [tmp.name]).fetchone()[0]
        finally:
            con.close()
    assert count == 2


def test_geo_resolve(client):
    response = client.get("/geo/resolve", params={"q": "JVC"})

    assert response.status_code == 200
    assert response.json() == {
        "geo_id": "jumeirah-village-circle",
        "canonical_name": "Jumeirah Village Circle",
        "geo_type": "community",
        "confidence": "exact",
    }

    unknown = client.get("/geo/resolve", params={"q": "Qwxzv Plmkj"}).json()
    assert unknown["confidence"] == "unknown"
