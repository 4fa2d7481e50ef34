"""Unit tests for the GitLab API client.

Requests are served by httpx.MockTransport; retries run with a zero base
delay so backoff sleeps are immediate.
"""

import asyncio
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, List

import httpx
import pytest

from src.dispatcher.tracker.client import GitLabAPIError, GitLabClient, RateLimitError


def run_async(coro):
    return asyncio.run(coro)


def _issue_payload(issue_id: int, labels: List[str], updated: str = "2024-05-01T10:00:00Z") -> Dict[str, Any]:
    return {
        "id": issue_id,
        "iid": issue_id % 100,
        "project_id": 10,
        "title": f"Issue {issue_id}",
        "description": "Body",
        "state": "opened",
        "labels": labels,
        "confidential": False,
        "author": {"username": "alice"},
        "web_url": f"https://gitlab.test/acme/app/-/issues/{issue_id % 100}",
        "created_at": "2024-05-01T09:00:00Z",
        "updated_at": updated,
    }


def _client(handler, **kwargs) -> GitLabClient:
    return GitLabClient(
        token="glpat-secret",
        base_url="https://gitlab.test/",
        base_delay=0.0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


SINCE = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)


class TestListIssues:
    def test_queries_each_trigger_label_and_merges(self):
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.params["labels"] == "auto-container":
                return httpx.Response(200, json=[
                    _issue_payload(101, ["auto-container", "TODO"], "2024-05-01T10:00:00Z"),
                    _issue_payload(102, ["auto-container", "agent"], "2024-05-01T11:00:00Z"),
                ])
            return httpx.Response(200, json=[
                _issue_payload(102, ["auto-container", "agent"], "2024-05-01T11:00:00Z"),
            ])

        issues = run_async(
            _client(handler).fetch_issues_updated_since(SINCE, ["auto-container", "agent"])
        )

        assert [issue.id for issue in issues] == [102, 101]
        assert len(requests) == 2
        first = requests[0]
        assert str(first.url).startswith("https://gitlab.test/api/v4/issues")
        assert first.headers["PRIVATE-TOKEN"] == "glpat-secret"
        assert first.url.params["state"] == "opened"
        assert first.url.params["scope"] == "all"
        assert first.url.params["updated_after"] == SINCE.isoformat()

    def test_recently_updated_has_no_label_filter(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json=[_issue_payload(101, ["bug"])])

        issues = run_async(_client(handler).fetch_recently_updated_issues(SINCE))

        assert issues[0].labels == ["bug"]
        assert issues[0].author_username == "alice"
        assert "labels" not in requests[0].url.params


class TestSingleIssue:
    def test_get_issue(self):
        def handler(request):
            assert request.url.path == "/api/v4/projects/10/issues/7"
            return httpx.Response(200, json=_issue_payload(107, ["TODO"]))

        issue = run_async(_client(handler).get_issue(10, 7))

        assert issue.id == 107
        assert issue.lifecycle_label.value == "TODO"

    def test_update_labels_sends_comma_joined_list(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={})

        run_async(_client(handler).update_issue_labels(10, 7, ["auto-container", "CONFIRM NEEDED"]))

        assert requests[0].method == "PUT"
        assert requests[0].url.path == "/api/v4/projects/10/issues/7"
        assert json.loads(requests[0].content) == {"labels": "auto-container,CONFIRM NEEDED"}

    def test_add_comment(self):
        def handler(request):
            assert request.url.path == "/api/v4/projects/10/issues/7/notes"
            assert json.loads(request.content) == {"body": "hello"}
            return httpx.Response(201, json={"id": 99})

        assert run_async(_client(handler).add_comment(10, 7, "hello")) == {"id": 99}


@pytest.fixture
def sleeps(monkeypatch) -> List[float]:
    """Records every wait the client asks for instead of sleeping."""
    waits: List[float] = []

    async def fake_sleep(seconds):
        waits.append(seconds)

    monkeypatch.setattr("src.dispatcher.tracker.client.asyncio.sleep", fake_sleep)
    return waits


class TestPagination:
    def test_follows_next_page_header(self):
        pages = []

        def handler(request):
            page = request.url.params["page"]
            pages.append(page)
            if page == "1":
                return httpx.Response(
                    200,
                    json=[_issue_payload(101, ["bug"])],
                    headers={"X-Next-Page": "2"},
                )
            return httpx.Response(
                200,
                json=[_issue_payload(102, ["bug"])],
                headers={"X-Next-Page": ""},
            )

        issues = run_async(_client(handler, per_page=1).fetch_recently_updated_issues(SINCE))

        assert [issue.id for issue in issues] == [101, 102]
        assert pages == ["1", "2"]

    def test_stops_at_page_limit(self):
        calls = []

        def handler(request):
            calls.append(request)
            next_page = int(request.url.params["page"]) + 1
            return httpx.Response(
                200,
                json=[_issue_payload(100 + next_page, ["bug"])],
                headers={"X-Next-Page": str(next_page)},
            )

        issues = run_async(_client(handler, max_pages=3).fetch_recently_updated_issues(SINCE))

        assert len(calls) == 3
        assert len(issues) == 3


class TestErrorHandling:
    def test_rate_limit_waits_for_retry_after_then_succeeds(self, sleeps):
        answers = iter([429, 200])

        def handler(request):
            if next(answers) == 429:
                return httpx.Response(429, headers={"Retry-After": "7"})
            return httpx.Response(200, json=_issue_payload(107, []))

        assert run_async(_client(handler).get_issue(10, 7)).id == 107
        assert sleeps == [7.0]

    def test_rate_limit_uses_reset_time_without_retry_after(self, sleeps):
        answers = iter([429, 200])
        reset_at = int(time.time()) + 20

        def handler(request):
            if next(answers) == 429:
                return httpx.Response(429, headers={"RateLimit-Reset": str(reset_at)})
            return httpx.Response(200, json=_issue_payload(107, []))

        run_async(_client(handler).get_issue(10, 7))

        assert len(sleeps) == 1
        assert 15 <= sleeps[0] <= 20

    def test_rate_limit_wait_is_capped(self, sleeps):
        answers = iter([429, 200])

        def handler(request):
            if next(answers) == 429:
                return httpx.Response(429, headers={"Retry-After": "3600"})
            return httpx.Response(200, json=_issue_payload(107, []))

        run_async(_client(handler, max_delay=5.0).get_issue(10, 7))

        assert sleeps == [5.0]

    def test_persistent_rate_limit_raises(self, sleeps):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(429, headers={"Retry-After": "30"})

        with pytest.raises(RateLimitError) as exc_info:
            run_async(_client(handler, max_retries=2).get_issue(10, 7))
        assert exc_info.value.retry_after == 30
        assert exc_info.value.status_code == 429
        assert len(calls) == 3
        assert sleeps == [30.0, 30.0]

    def test_server_error_is_retried(self):
        answers = iter([500, 502, 200])

        def handler(request):
            status = next(answers)
            if status == 200:
                return httpx.Response(200, json=_issue_payload(107, []))
            return httpx.Response(status)

        assert run_async(_client(handler).get_issue(10, 7)).id == 107

    def test_client_error_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404, text="not found")

        with pytest.raises(GitLabAPIError) as exc_info:
            run_async(_client(handler).get_issue(10, 7))
        assert exc_info.value.status_code == 404
        assert len(calls) == 1

    def test_transport_errors_exhaust_retries(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(GitLabAPIError):
            run_async(_client(handler, max_retries=2).get_issue(10, 7))
        assert len(calls) == 3

    def test_backoff_is_capped(self):
        client = GitLabClient(token="t", base_delay=1.0, max_delay=5.0)

        for attempt in range(10):
            assert 0 <= client._backoff(attempt) <= 5.0


class TestConnection:
    @pytest.mark.parametrize("status, expected", [(200, True), (401, False)])
    def test_status(self, status, expected):
        def handler(request):
            assert request.url.path == "/api/v4/user"
            return httpx.Response(status, json={})

        assert run_async(_client(handler).test_connection()) is expected

    def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert run_async(_client(handler).test_connection()) is False
