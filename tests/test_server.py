from fastapi.testclient import TestClient

from anchorlens.server import app

client = TestClient(app)


def test_health_check():
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_list_rules():
    response = client.get("/api/rules")

    assert response.status_code == 200
    assert len(response.json()["rules"]) == 16


def test_analyze_endpoint(vault_unsigned):
    response = client.post("/api/analyze", json={"code": vault_unsigned, "config": {"pass": "all"}})

    assert response.status_code == 200
    body = response.json()
    assert body["score"] == 45
    assert {"score", "findings", "compound_findings", "remediation_plan"} <= set(body)
    assert body["optimized_code"] is None


def test_analyze_endpoint_parse_error():
    response = client.post("/api/analyze", json={"code": "#[program] pub mod broken {"})

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "ParseError"


def test_websocket_analyze(vault_unsigned):
    with client.websocket_connect("/ws/analyze") as ws:
        ws.send_json({"action": "analyze", "payload": {"code": vault_unsigned, "config": {"generate_patch": True}}})

        msg = ws.receive_json()
        while msg.get("type") == "update":
            msg = ws.receive_json()

    assert msg["type"] == "success"
    assert "request_id" in msg
    assert "pub authority: Signer<'info>," in msg["data"]["optimized_code"]


def test_analyze_endpoint_rejects_unknown_pass(vault_unsigned):
    response = client.post("/api/analyze", json={"code": vault_unsigned, "config": {"pass": "gas"}})

    assert response.status_code == 422
    body = response.json()
    assert body["type"] == "error"
    assert body["error"]["code"] == "InvalidRequest"
