from fastapi.testclient import TestClient

from sync_service.main import create_app
from sync_service.models import FailedRun

def test_health(bus, session_factory):
    client= TestClient(create_app(bus, session_factory))
    assert client.get("/health").json() == {"status": "ok"}

def test_list_functions(bus, session_factory):
    client= TestClient(create_app(bus, session_factory))

    resp= client.get("/api/functions")

    assert resp.status_code == 200
    body= {f["id"]: f for f in resp.json()}
    assert set(body) == {"sync-user-from-clerk", "update-user-from-clerk", "delete-user-with-clerk", "create-user-order"}
    assert body["create-user-order"]["trigger"] == {"event": "order/created", "batch": {"max_size": 25, "timeout": 5.0}}

def test_list_failed_runs_newest_first(bus, session_factory):
    with session_factory() as session:
        with session.begin():
            for i in range(3):
                session.add(FailedRun(
                    function_id="create-user-order",
                    event_name="order/created",
                    events=[{"name": "order/created", "data": {"userId": f"u{i}"}}],
                    error="OperationalError('db down')",
                    attempts=5,
                ))
    client= TestClient(create_app(bus, session_factory))

    resp= client.get("/api/runs/failed", params={"limit": 2})

    assert resp.status_code == 200
    runs= resp.json()
    assert [r["events"][0]["data"]["userId"] for r in runs] == ["u2", "u1"]
    assert runs[0]["attempts"] == 5

def test_failed_runs_limit_is_bounded(bus, session_factory):
    client= TestClient(create_app(bus, session_factory))

    assert client.get("/api/runs/failed", params={"limit": -1}).status_code == 422
    assert client.get("/api/runs/failed", params={"limit": 0}).status_code == 422
    assert client.get("/api/runs/failed", params={"limit": 501}).status_code == 422
    assert client.get("/api/runs/failed", params={"limit": 500}).status_code == 200
