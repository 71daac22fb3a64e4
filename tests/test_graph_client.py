# tests/test_graph_client.py
from unittest.mock import MagicMock

import pytest
import requests

from excel_bridge.errors import GraphAPIError, classify_graph_error
from excel_bridge.graph_client import GraphClient
from fake_graph import CountingTokenProvider, FakeResponse


def _client(*responses):
    session = MagicMock()
    session.request.side_effect = list(responses)
    tokens = CountingTokenProvider()
    return GraphClient(tokens, base_url="https://graph.test/v1.0", session=session), session, tokens


def _graph_error(status, code="", headers=None):
    return FakeResponse(status, {"error": {"code": code, "message": f"{code} detail"}}, headers)


class TestRequest:
    def test_json_body_and_bearer(self):
        client, session, _ = _client(FakeResponse(200, {"id": "x"}))
        assert client.get("/sites/abc") == {"id": "x"}
        args, kwargs = session.request.call_args
        assert args == ("GET", "https://graph.test/v1.0/sites/abc")
        assert kwargs["headers"]["Authorization"] == "Bearer test-token"

    def test_absolute_urls_pass_through(self):
        client, session, _ = _client(FakeResponse(200, {"value": []}))
        client.get("https://graph.test/v1.0/next?page=2")
        assert session.request.call_args[0][1] == "https://graph.test/v1.0/next?page=2"

    def test_no_content(self):
        client, _, _ = _client(FakeResponse(204))
        assert client.delete("/drives/d/items/i") == {}

    def test_401_refreshes_token_and_retries_once(self):
        client, session, tokens = _client(_graph_error(401, "InvalidAuthenticationToken"), FakeResponse(200, {"ok": 1}))
        assert client.get("/me") == {"ok": 1}
        assert session.request.call_count == 2
        assert tokens.invalidations == 1

    def test_second_401_is_raised(self):
        client, session, _ = _client(_graph_error(401), _graph_error(401))
        with pytest.raises(GraphAPIError) as exc:
            client.get("/me")
        assert exc.value.status_code == 401
        assert session.request.call_count == 2

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_no_retry_for_other_failures(self, status):
        client, session, _ = _client(_graph_error(status))
        with pytest.raises(GraphAPIError):
            client.get("/sites/abc")
        assert session.request.call_count == 1

    def test_timeout_is_unavailable(self):
        session = MagicMock()
        session.request.side_effect = requests.exceptions.Timeout("slow")
        client = GraphClient(CountingTokenProvider(), session=session)
        with pytest.raises(GraphAPIError) as exc:
            client.get("/sites/abc")
        assert exc.value.status_code == 503
        assert exc.value.category == "unavailable"


class TestClassification:
    @pytest.mark.parametrize("status,code,expected,category", [
        (429, "", 429, "rate_limited"),
        (400, "TooManyRequests", 429, "rate_limited"),
        (409, "nameAlreadyExists", 409, "conflict"),
        (423, "resourceLocked", 423, "locked"),
        (403, "accessDenied", 403, "forbidden"),
        (404, "itemNotFound", 404, "not_found"),
        (401, "", 401, "auth"),
        (409, "", 409, "conflict"),
        (500, "", 502, "upstream"),
        (504, "", 502, "upstream"),
    ])
    def test_mapping(self, status, code, expected, category):
        err = classify_graph_error(_graph_error(status, code))
        assert (err.status_code, err.category) == (expected, category)
        assert err.graph_status == status

    def test_bad_request_carries_detail(self):
        err = classify_graph_error(_graph_error(400, "invalidRequest"))
        assert err.message == "Invalid request: invalidRequest detail"

    def test_retry_after_is_kept_for_rate_limits(self):
        err = classify_graph_error(_graph_error(429, "", headers={"Retry-After": "7"}))
        assert err.retry_after == "7"
        assert err.payload["retryAfter"] == "7"

    def test_non_json_error_body(self):
        resp = MagicMock(status_code=502, headers={}, text="<html>bad gateway</html>")
        resp.json.side_effect = ValueError("not json")
        err = classify_graph_error(resp)
        assert err.status_code == 502


class TestFakeTransport:
    def test_injected_401_goes_through_the_real_retry(self, graph):
        graph.add_drive("Documents")
        graph.fail("GET", r"/drives$", 401, "InvalidAuthenticationToken")
        drives = graph.get("/sites/site-1/drives")
        assert [d["name"] for d in drives["value"]] == ["Documents"]
        assert graph.tokens.invalidations == 1
