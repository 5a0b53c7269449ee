"""Tests for the HTTP surface."""

import time

import httpx
import pytest
from sitedata import SITE_DATA
from starlette.testclient import TestClient

from fedstats.main import app, get_manager

BASE = "/federations/fed-1/analytics"


@pytest.fixture
def manager(make_manager):
    return make_manager()


@pytest.fixture
def client(manager):
    app.dependency_overrides[get_manager] = lambda: manager
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def _poll(client, query_id, attempts=200):
    for _ in range(attempts):
        body = client.get(f"{BASE}/queries/{query_id}").json()
        if body["status"] in ("completed", "failed"):
            return body
        time.sleep(0.01)
    raise AssertionError(f"query {query_id} did not finish")


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "store": "memory", "registry": "empty"}


class TestAnalytics:
    def test_descriptive(self, healthy, client):
        resp = client.post(f"{BASE}/descriptive", json={"variable": "latency_ms"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["analysis_type"] == "descriptive"
        assert body["overall"]["count"] == 13
        assert [g["group_id"] for g in body["groups"]] == ["g1", "g2", "g3"]
        assert body["percentiles_approximate"] is True

    @pytest.mark.parametrize("path", ["ttest", "t-test"])
    def test_t_test(self, healthy, client, path):
        resp = client.post(
            f"{BASE}/{path}", json={"variable": "x", "group_a": "g1", "group_b": "g3"}
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["analysis_type"] == "t-test"
        assert body["confidence_interval"]["level"] == 0.95

    def test_chi_square(self, sites, client):
        tables = {"g1": {"a": {"x": 10, "y": 20}}, "g2": {"b": {"x": 25, "y": 5}}, "g3": {"a": {"x": 3, "y": 7}}}
        for site_id in SITE_DATA:
            sites.serve_contingency(f"{site_id}.test", tables)

        resp = client.post(f"{BASE}/chisquare", json={"variable_1": "platform", "variable_2": "outcome"})

        assert resp.status_code == 200
        assert resp.json()["degrees_of_freedom"] == 1

    def test_anova(self, healthy, client):
        resp = client.post(f"{BASE}/anova", json={"variable": "x", "post_hoc": False})

        assert resp.status_code == 200
        assert resp.json()["degrees_of_freedom_within"] == 10

    def test_async_submission_then_poll(self, healthy, client):
        resp = client.post(f"{BASE}/descriptive?wait=false", json={"variable": "x"})

        assert resp.status_code == 202
        handle = resp.json()
        assert handle["status"] in ("pending", "running", "completed")

        body = _poll(client, handle["query_id"])
        assert body["status"] == "completed"
        assert body["result"]["overall"]["count"] == 13
        assert body["federation_id"] == "fed-1"

    def test_history_and_cancel(self, healthy, client):
        client.post(f"{BASE}/descriptive", json={"variable": "a"})
        client.post(f"{BASE}/anova", json={"variable": "b"})

        listing = client.get(f"{BASE}/queries", params={"limit": 1}).json()
        assert listing["total"] == 2
        assert [q["variable"] for q in listing["queries"]] == ["b"]

        query_id = listing["queries"][0]["id"]
        resp = client.delete(f"{BASE}/queries/{query_id}")
        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"


class TestErrors:
    def _error(self, resp):
        return resp.status_code, resp.json()["error"]["kind"]

    def test_missing_field(self, client):
        resp = client.post(f"{BASE}/descriptive", json={})
        assert self._error(resp) == (422, "ValidationError")

    def test_unknown_group(self, healthy, client):
        resp = client.post(f"{BASE}/descriptive", json={"variable": "x", "group_ids": ["g7"]})
        assert self._error(resp) == (422, "UnknownGroup")

    def test_unknown_federation(self, client):
        resp = client.post("/federations/other/analytics/descriptive", json={"variable": "x"})
        assert self._error(resp) == (404, "UnknownFederation")

    def test_bad_confidence_level(self, client):
        resp = client.post(
            f"{BASE}/ttest",
            json={"variable": "x", "group_a": "g1", "group_b": "g2", "confidence_level": 0},
        )
        assert self._error(resp) == (422, "ValidationError")

    def test_failed_query_maps_to_its_kind(self, sites, client):
        for site_id in SITE_DATA:
            sites.respond(f"{site_id}.test", lambda payload: httpx.Response(503))

        resp = client.post(f"{BASE}/descriptive", json={"variable": "x"})
        assert self._error(resp) == (503, "InsufficientSites")

    def test_unknown_query(self, client):
        resp = client.get(f"{BASE}/queries/does-not-exist")
        assert self._error(resp) == (404, "QueryNotFound")

    def test_bad_paging(self, client):
        resp = client.get(f"{BASE}/queries", params={"limit": 0})
        assert self._error(resp) == (422, "ValidationError")


class TestFederationAdmin:
    def test_lifecycle(self, client):
        resp = client.post(
            "/federations",
            json={
                "name": "Clinics",
                "members": [{"name": "North", "url": "http://north.test", "device_groups": ["wear"], "api_token": "secret"}],
            },
        )
        assert resp.status_code == 200
        fed = resp.json()
        member = fed["members"][0]
        assert member["api_token"] == "s*****"

        listed = client.get("/federations").json()
        assert [f["id"] for f in listed] == [fed["id"]]

        resp = client.post(f"/federations/{fed['id']}/members", json={"name": "South", "url": "http://south.test"})
        south = resp.json()
        assert south["api_token"] == ""

        resp = client.put(
            f"/federations/{fed['id']}/members/{member['id']}",
            json={"name": "North", "url": "http://north2.test", "device_groups": ["wear", "phone"]},
        )
        assert resp.json()["url"] == "http://north2.test"
        assert resp.json()["api_token"] == "s*****"

        assert client.delete(f"/federations/{fed['id']}/members/{south['id']}").json() == {"ok": True}
        assert len(client.get(f"/federations/{fed['id']}").json()["members"]) == 1

        assert client.delete(f"/federations/{fed['id']}").json() == {"ok": True}
        assert client.get(f"/federations/{fed['id']}").status_code == 404

    def test_not_found(self, client):
        assert client.get("/federations/nope").status_code == 404
        assert client.delete("/federations/nope").status_code == 404
        assert client.post("/federations/nope/members", json={"name": "A", "url": "http://a.test"}).status_code == 404
        assert client.delete("/federations/nope/members/m").status_code == 404
