import json

import httpx
import pytest

from fedstats.client import FederatedAnalyticsClient
from fedstats.errors import (
    EmptyResponse,
    InsufficientSites,
    QueryNotFound,
    TransportError,
    UnknownGroup,
    ValidationError,
)
from fedstats.main import app, get_manager
from fedstats.models import DescriptiveResult, TTestResult


@pytest.fixture
def live(healthy, make_manager):
    """Client talking to the real app in-process."""
    manager = make_manager()
    app.dependency_overrides[get_manager] = lambda: manager
    transport = httpx.ASGITransport(app=app)
    client = FederatedAnalyticsClient(
        "http://testserver", "fed-1", client=httpx.AsyncClient(transport=transport)
    )
    yield client
    app.dependency_overrides.clear()


def _canned(handler):
    """Client whose server is a plain function of the request."""
    requests = []

    def record(request):
        requests.append(request)
        return handler(request)

    client = FederatedAnalyticsClient(
        "http://server.test/", "fed-1", client=httpx.AsyncClient(transport=httpx.MockTransport(record)),
        poll_interval=0,
    )
    return client, requests


class TestAgainstApp:
    @pytest.mark.asyncio
    async def test_descriptive(self, live):
        result = await live.descriptive("latency_ms")

        assert result.ok
        assert isinstance(result.value, DescriptiveResult)
        assert result.value.overall.count == 13

    @pytest.mark.asyncio
    async def test_t_test(self, live):
        result = await live.t_test("x", "g1", "g2", confidence_level=0.9)

        assert isinstance(result.value, TTestResult)
        assert result.value.confidence_interval.level == 0.9

    @pytest.mark.asyncio
    async def test_anova_and_history(self, live):
        await live.anova("x", post_hoc=False)
        history = await live.list_queries(limit=10)

        assert history.ok
        assert history.value.total == 1
        query = (await live.get_query(history.value.queries[0].id)).value
        assert query.query_type == "anova"

    @pytest.mark.asyncio
    async def test_server_error_kind_is_kept(self, live):
        result = await live.descriptive("x", group_ids=["g42"])

        assert not result.ok
        assert isinstance(result.error, UnknownGroup)
        with pytest.raises(UnknownGroup):
            result.unwrap()

    @pytest.mark.asyncio
    async def test_cancel_finished_query_is_a_no_op(self, live):
        await live.descriptive("x")
        query = (await live.list_queries()).value.queries[0]

        result = await live.cancel_query(query.id)

        assert result.ok
        assert result.value.status == "completed"

    @pytest.mark.asyncio
    async def test_missing_query(self, live):
        result = await live.get_query("nope")
        assert isinstance(result.error, QueryNotFound)


class TestLocalValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "call",
        [
            lambda c: c.t_test("x", "a", "b", confidence_level=1.5),
            lambda c: c.chi_square("v1", "v2", confidence_level=0.0),
            lambda c: c.anova("x", group_by="country"),
            lambda c: c.descriptive(""),
        ],
    )
    async def test_rejected_before_sending(self, call):
        client, requests = _canned(lambda request: httpx.Response(500))
        result = await call(client)

        assert isinstance(result.error, ValidationError)
        assert requests == []


class TestWire:
    @pytest.mark.asyncio
    async def test_request_shape(self):
        def handler(request):
            return httpx.Response(200, json={"analysis_type": "descriptive", "variable": "x", "group_by": "device_group",
                                             "groups": [], "overall": {"group_id": "all", "count": 1, "mean": 1.0}})

        client, requests = _canned(handler)
        result = await client.descriptive("x", group_ids=["g1"], include_percentiles=False)

        assert result.ok
        [request] = requests
        assert request.url.path == "/federations/fed-1/analytics/descriptive"
        assert json.loads(request.content) == {
            "variable": "x",
            "group_by": "device_group",
            "group_ids": ["g1"],
            "include_percentiles": False,
        }

    @pytest.mark.asyncio
    async def test_empty_error_body(self):
        client, _ = _canned(lambda request: httpx.Response(500))
        result = await client.descriptive("x")
        assert isinstance(result.error, EmptyResponse)

    @pytest.mark.asyncio
    async def test_empty_success_body(self):
        client, _ = _canned(lambda request: httpx.Response(200))
        result = await client.list_queries()
        assert isinstance(result.error, EmptyResponse)

    @pytest.mark.asyncio
    async def test_error_without_kind_falls_back_to_status(self):
        client, _ = _canned(lambda request: httpx.Response(503, text="upstream unavailable"))
        result = await client.anova("x")
        assert isinstance(result.error, InsufficientSites)

    @pytest.mark.asyncio
    async def test_unreadable_success_body(self):
        client, _ = _canned(lambda request: httpx.Response(200, json={"unexpected": True}))
        result = await client.list_queries()
        assert isinstance(result.error, TransportError)

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused")

        client, _ = _canned(refuse)
        result = await client.t_test("x", "a", "b")
        assert isinstance(result.error, TransportError)

    @pytest.mark.asyncio
    async def test_list_queries_paging_params(self):
        client, requests = _canned(lambda request: httpx.Response(200, json={"queries": [], "total": 0}))
        await client.list_queries(limit=5, offset=10)

        assert requests[0].url.params["limit"] == "5"
        assert requests[0].url.params["offset"] == "10"


class TestPolling:
    @pytest.mark.asyncio
    async def test_accepted_query_is_polled_to_completion(self):
        stamp = "2024-05-01T12:00:00Z"
        base = {"id": "q1", "federation_id": "fed-1", "query_type": "t-test", "variable": "x",
                "created_at": stamp, "updated_at": stamp}
        result_body = {
            "analysis_type": "t-test", "variable": "x", "group_a": "a", "group_b": "b",
            "n_a": 3, "n_b": 3, "mean_a": 1.0, "mean_b": 2.0, "mean_difference": -1.0,
            "t_statistic": -1.2, "p_value": 0.3, "degrees_of_freedom": 4.0,
            "confidence_interval": {"lower": -3.0, "upper": 1.0, "level": 0.95},
            "significant": False, "confidence_level": 0.95,
        }
        replies = iter([
            httpx.Response(202, json={"query_id": "q1", "status": "pending"}),
            httpx.Response(200, json={**base, "status": "running"}),
            httpx.Response(200, json={**base, "status": "completed", "completed_at": stamp, "result": result_body}),
        ])
        client, requests = _canned(lambda request: next(replies))

        result = await client.t_test("x", "a", "b")

        assert result.ok
        assert result.value.mean_difference == -1.0
        assert [r.method for r in requests] == ["POST", "GET", "GET"]

    @pytest.mark.asyncio
    async def test_accepted_query_that_fails(self):
        stamp = "2024-05-01T12:00:00Z"
        replies = iter([
            httpx.Response(202, json={"query_id": "q1", "status": "running"}),
            httpx.Response(200, json={
                "id": "q1", "federation_id": "fed-1", "query_type": "anova", "variable": "x",
                "status": "failed", "error_kind": "InsufficientSites", "error_message": "2 of 3 sites down",
                "created_at": stamp, "updated_at": stamp, "completed_at": stamp,
            }),
        ])
        client, _ = _canned(lambda request: next(replies))

        result = await client.anova("x")

        assert isinstance(result.error, InsufficientSites)
        assert result.error.message == "2 of 3 sites down"
