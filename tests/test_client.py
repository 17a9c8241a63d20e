"""
Unit tests for the Xero REST client: request shape, retries and error parsing.
"""
from datetime import datetime

import pytest

from ledgersync.services.xero.client import (
    XeroApiError,
    XeroClient,
    XeroRateLimitError,
    XeroServerError,
    iter_pages,
)
from tests.fakes import FakeHttp, FakeResponse


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def no_sleep(monkeypatch):
    monkeypatch.setattr("time.sleep", lambda seconds: None)


def make_client(http, refresher=None):
    return XeroClient("token-1", "tenant-1", token_refresher=refresher, session=http)


class TestRequests:

    def test_get_contacts_sends_paging_and_tenant_headers(self, http):
        http.queue(FakeResponse(200, {"Contacts": [{"ContactID": "c-1"}]}))
        client = make_client(http)

        contacts = client.get_contacts(page=2, where='ContactStatus=="ACTIVE"', include_archived=True)

        assert contacts == [{"ContactID": "c-1"}]
        request = http.requests[0]
        assert request["method"] == "GET"
        assert request["url"].endswith("/api.xro/2.0/Contacts")
        assert request["params"] == {"page": 2, "where": 'ContactStatus=="ACTIVE"', "includeArchived": "true"}
        assert request["headers"]["xero-tenant-id"] == "tenant-1"
        assert request["headers"]["Authorization"] == "Bearer token-1"

    def test_create_contacts_uses_put(self, http):
        http.queue(FakeResponse(200, {"Contacts": [{"ContactID": "new"}]}))
        created = make_client(http).create_contacts([{"Name": "Acme"}])
        assert created == [{"ContactID": "new"}]
        assert http.requests[0]["method"] == "PUT"
        assert http.requests[0]["json"] == {"Contacts": [{"Name": "Acme"}]}

    def test_modified_since_is_sent_as_header(self, http):
        http.queue(FakeResponse(200, {"Payments": []}))
        make_client(http).get_payments(modified_since=datetime(2026, 3, 5, 8, 30))
        assert http.requests[0]["headers"] == {"If-Modified-Since": "2026-03-05T08:30:00"}

    def test_invoice_page_size_is_sent_as_query_param(self, http):
        http.queue(FakeResponse(200, {"Invoices": []}))
        make_client(http).get_invoices(page=2, page_size=500)
        assert http.requests[0]["params"]["page"] == 2
        assert http.requests[0]["params"]["pageSize"] == 500

    def test_default_invoice_page_size_is_left_to_xero(self, http):
        http.queue(FakeResponse(200, {"Invoices": []}))
        make_client(http).get_invoices()
        assert "pageSize" not in http.requests[0]["params"]

    def test_missing_record_returns_none(self, http):
        http.queue(FakeResponse(404, {"Message": "Not found"}))
        assert make_client(http).get_contact("missing") is None

    def test_empty_body_yields_no_organisations(self, http):
        http.queue(FakeResponse(200))
        assert make_client(http).get_organisations() == []

    def test_context_manager_closes_session(self, http):
        with make_client(http):
            pass
        assert http.closed


class TestTokenRefresh:

    def test_401_refreshes_once_and_retries(self, http):
        http.queue(FakeResponse(401, {"Title": "Unauthorized"}), FakeResponse(200, {"Invoices": []}))
        calls = []

        def refresher():
            calls.append(1)
            return "token-2"

        client = make_client(http, refresher)
        assert client.get_invoices() == []
        assert len(calls) == 1
        assert http.requests[1]["headers"]["Authorization"] == "Bearer token-2"
        assert client.access_token == "token-2"

    def test_401_without_new_token_raises(self, http):
        http.queue(FakeResponse(401, {"Title": "Unauthorized"}))
        client = make_client(http, lambda: None)
        with pytest.raises(XeroApiError) as exc_info:
            client.get_invoices()
        assert exc_info.value.status_code == 401
        assert len(http.requests) == 1


class TestErrors:

    def test_validation_errors_are_parsed(self, http):
        http.queue(FakeResponse(400, {
            "Message": "A validation exception occurred",
            "Elements": [{
                "ValidationErrors": [{"Message": "Account code '999' is not a valid code"}],
                "Warnings": [{"Message": "Rounding applied"}],
            }],
        }))
        with pytest.raises(XeroApiError) as exc_info:
            make_client(http).create_invoices([{"InvoiceNumber": "INV-1"}])

        error = exc_info.value
        assert error.status_code == 400
        assert error.message == "Account code '999' is not a valid code"
        assert error.validation_errors == [{"message": "Account code '999' is not a valid code", "field": None}]
        assert error.warnings == [{"message": "Rounding applied", "field": None}]
        assert len(http.requests) == 1

    def test_rate_limit_response_builds_rate_limit_error(self):
        response = FakeResponse(429, {"Title": "Too many requests"}, {"Retry-After": "30", "X-Rate-Limit-Problem": "minute"})
        error = XeroApiError.from_response(response)
        assert isinstance(error, XeroRateLimitError)
        assert error.retry_after == 30
        assert error.rate_limit_problem == "minute"
        assert error.to_dict()["message"] == "Too many requests"

    def test_non_json_body(self):
        error = XeroApiError.from_response(FakeResponse(502, "Bad gateway"))
        assert isinstance(error, XeroServerError)
        assert "Bad gateway" in error.message


class TestRetries:

    def test_rate_limit_waits_retry_after_then_succeeds(self, http, no_sleep):
        http.queue(
            FakeResponse(429, {"Title": "Too many requests"}, {"Retry-After": "0"}),
            FakeResponse(200, {"Payments": [{"PaymentID": "p-1"}]}),
        )
        assert make_client(http).get_payments() == [{"PaymentID": "p-1"}]
        assert len(http.requests) == 2

    def test_server_errors_retry_then_give_up(self, http, no_sleep):
        http.queue(*[FakeResponse(503, {"Title": "Service unavailable"}) for _ in range(4)])
        with pytest.raises(XeroServerError):
            make_client(http).get_accounts()
        assert len(http.requests) == 4

    def test_server_error_recovers(self, http, no_sleep):
        http.queue(FakeResponse(500, {"Title": "Oops"}), FakeResponse(200, {"Accounts": [{"Code": "090"}]}))
        assert make_client(http).get_accounts() == [{"Code": "090"}]


def test_iter_pages_stops_on_short_page():
    pages = {1: [{"id": 1}, {"id": 2}], 2: [{"id": 3}]}
    requested = []

    def fetch(page, **kwargs):
        requested.append((page, kwargs))
        return pages.get(page, [])

    items = list(iter_pages(fetch, page_size=2, where="x"))

    assert [item["id"] for item in items] == [1, 2, 3]
    assert requested == [(1, {"where": "x"}), (2, {"where": "x"})]


def test_iter_pages_follows_full_pages():
    records = [{"id": n} for n in range(450)]
    requested = []

    def fetch(page):
        requested.append(page)
        start = (page - 1) * 200
        return records[start:start + 200]

    items = list(iter_pages(fetch, page_size=200))

    assert len(items) == 450
    assert requested == [1, 2, 3]
