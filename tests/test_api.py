"""Status API."""

import pytest

from bitvm_bridge.api import create_app
from bitvm_bridge.errors import ChainUnavailable


@pytest.fixture
def api(client):
    app = create_app(client)
    app.config["TESTING"] = True
    return app.test_client()


def test_health(api):
    resp = api.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["network"] == "regtest"


def test_chain_health(api):
    assert api.get("/health/chain").get_json() == {"ok": True, "height": 100}


def test_chain_unavailable(api, chain, monkeypatch):
    def down():
        raise ChainUnavailable("connection refused")

    monkeypatch.setattr(chain, "tip_height", down)
    resp = api.get("/health/chain")
    assert resp.status_code == 503
    assert resp.get_json()["ok"] is False


def test_unknown_graph(api):
    resp = api.get(f"/api/graphs/{'ab' * 32}")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "unknown_graph"


def test_graph(api, peg_in_graph):
    data = api.get(f"/api/graphs/{peg_in_graph.graph_id}").get_json()
    assert data["graph_id"] == peg_in_graph.graph_id
    assert data["status"]["state"] == "created"
    assert set(data["transactions"]) == {"peg_in_confirm", "peg_in_refund"}


def test_next(api, peg_in_graph):
    data = api.get(f"/api/graphs/{peg_in_graph.graph_id}/next").get_json()
    assert data == {"graph_id": peg_in_graph.graph_id, "height": 100,
                    "state": "created", "next": "peg_in_confirm"}


def test_signing(api, peg_in_graph, sign_all_inputs):
    url = f"/api/graphs/{peg_in_graph.graph_id}/signing"
    assert not api.get(url).get_json()["complete"]
    sign_all_inputs(peg_in_graph.graph_id)
    data = api.get(url).get_json()
    assert data["inputs"]["peg_in_confirm/0"]["state"] == "complete"
    # The depositor has not signed the refund
    assert not data["complete"]


class TestL2Confirm:

    def test_confirm(self, api, client, peg_out_graph):
        url = f"/api/graphs/{peg_out_graph.graph_id}/l2-confirm"
        resp = api.post(url, json={"l2_tx_hash": "0x" + "ab" * 32})
        assert resp.status_code == 200
        assert resp.get_json()["success"]
        assert client.l2.is_confirmed(peg_out_graph.graph_id)

    def test_no_data(self, api, peg_out_graph):
        resp = api.post(f"/api/graphs/{peg_out_graph.graph_id}/l2-confirm")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "No data provided"

    def test_missing_hash(self, api, peg_out_graph):
        resp = api.post(f"/api/graphs/{peg_out_graph.graph_id}/l2-confirm", json={"sender": None})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Missing l2_tx_hash"

    def test_invalid_hash(self, api, peg_out_graph):
        resp = api.post(f"/api/graphs/{peg_out_graph.graph_id}/l2-confirm", json={"l2_tx_hash": "0x12"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "invalid_params"

    def test_peg_in_graph_rejected(self, api, peg_in_graph):
        resp = api.post(f"/api/graphs/{peg_in_graph.graph_id}/l2-confirm",
                        json={"l2_tx_hash": "0x" + "ab" * 32})
        assert resp.status_code == 400
