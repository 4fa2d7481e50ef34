"""GitLab v4 REST client used by the dispatcher.

Covers the issue endpoints the dispatcher needs: paginated listings of
issues updated since a timestamp, single issue reads, label replacement
and notes.

Transient failures (timeouts, transport errors, 408 and 5xx) are retried
with jittered exponential backoff. A 429 waits for as long as GitLab asks
(``Retry-After``, else ``RateLimit-Reset``) before the next attempt.
Listings follow ``X-Next-Page`` until GitLab stops returning one.

Source:
- src/dispatcher/tracker/models.py (Issue)
- src/dispatcher/config.py (gitlab_url, gitlab_token)
"""

import asyncio
import logging
import random
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from src.dispatcher.tracker.models import Issue


logger = logging.getLogger(__name__)


class GitLabAPIError(Exception):
    """A GitLab request that failed for good.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status, None when no response arrived.
        response_body: Body of the failing response, if any.
        method: HTTP method of the request.
        path: API path relative to ``/api/v4``.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        method: Optional[str] = None,
        path: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.method = method
        self.path = path
        super().__init__(message)


class RateLimitError(GitLabAPIError):
    """Still rate limited after every allowed wait.

    Attributes:
        retry_after: Seconds GitLab asked for on the last 429.
    """

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs: Any):
        super().__init__(message, status_code=429, **kwargs)
        self.retry_after = retry_after


class GitLabClient:
    """Async client for the GitLab issues API.

    Attributes:
        token: Personal or project access token, sent as ``PRIVATE-TOKEN``.
        base_url: Instance URL without ``/api/v4``.
        max_retries: Retries after the first attempt.
        base_delay: Backoff base in seconds.
        max_delay: Upper bound for any single wait, rate limits included.
        per_page: Page size for listings (GitLab caps it at 100).
        max_pages: Pages read per listing before giving up on the rest.

    Example:
        >>> async with GitLabClient(token="glpat-xxx", base_url="https://gitlab.com") as gl:
        ...     issue = await gl.get_issue(10, 4)
    """

    RETRYABLE_STATUS_CODES = {408, 500, 502, 503, 504}

    def __init__(
        self,
        token: str,
        base_url: str = "https://gitlab.com",
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        timeout: float = 30.0,
        per_page: int = 100,
        max_pages: int = 50,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self.per_page = per_page
        self.max_pages = max_pages
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def api_url(self) -> str:
        return f"{self.base_url}/api/v4"

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                headers={
                    "PRIVATE-TOKEN": self.token,
                    "Accept": "application/json",
                    "User-Agent": "IssueDispatcher/1.0",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "GitLabClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Request plumbing
    # -------------------------------------------------------------------------

    def _backoff(self, attempt: int) -> float:
        """Full-jitter delay before retry ``attempt`` (0-indexed)."""
        return random.uniform(0, min(self.base_delay * (2 ** attempt), self.max_delay))

    def _rate_limit_wait(self, response: httpx.Response, attempt: int) -> float:
        """Seconds to wait after a 429, as GitLab asked, capped at max_delay."""
        retry_after = response.headers.get("retry-after")
        if retry_after is not None and retry_after.strip().isdigit():
            return min(float(retry_after), self.max_delay)

        reset_at = response.headers.get("ratelimit-reset")
        if reset_at is not None and reset_at.strip().isdigit():
            return min(max(0.0, int(reset_at) - time.time()), self.max_delay)

        return self._backoff(attempt)

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send one API call, retrying transient failures and rate limits.

        Raises:
            RateLimitError: If GitLab still answers 429 on the last attempt.
            GitLabAPIError: On any other final failure.
        """
        for attempt in range(self.max_retries + 1):
            last_attempt = attempt == self.max_retries

            try:
                response = await self.client.request(
                    method, path, params=params, json=json_data
                )
            except httpx.TransportError as e:
                if last_attempt:
                    raise GitLabAPIError(
                        f"GitLab unreachable after {attempt + 1} attempts: {e}",
                        method=method,
                        path=path,
                    ) from e
                delay = self._backoff(attempt)
                logger.warning(
                    "GitLab request failed, retrying",
                    extra={"path": path, "attempt": attempt + 1, "delay": delay, "error": str(e)},
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code == 429:
                wait = self._rate_limit_wait(response, attempt)
                if last_attempt:
                    raise RateLimitError(
                        "GitLab rate limit still exceeded",
                        retry_after=wait,
                        response_body=response.text,
                        method=method,
                        path=path,
                    )
                logger.warning(
                    "GitLab rate limit hit, waiting",
                    extra={
                        "path": path,
                        "wait_seconds": wait,
                        "remaining": response.headers.get("ratelimit-remaining"),
                    },
                )
                await asyncio.sleep(wait)
                continue

            if response.status_code in self.RETRYABLE_STATUS_CODES and not last_attempt:
                delay = self._backoff(attempt)
                logger.warning(
                    "GitLab returned a retryable status",
                    extra={
                        "path": path,
                        "status_code": response.status_code,
                        "attempt": attempt + 1,
                        "delay": delay,
                    },
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code >= 400:
                logger.error(
                    "GitLab API error",
                    extra={
                        "method": method,
                        "path": path,
                        "status_code": response.status_code,
                        "response_body": response.text[:500],
                    },
                )
                raise GitLabAPIError(
                    f"GitLab API error: {response.status_code}",
                    status_code=response.status_code,
                    response_body=response.text,
                    method=method,
                    path=path,
                )

            return response

        # max_retries < 0 leaves the loop without an attempt
        raise GitLabAPIError("No request attempted", method=method, path=path)

    async def _paginate(self, path: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Collect every page of a listing by following ``X-Next-Page``."""
        items: List[Dict[str, Any]] = []
        page = 1
        for _ in range(self.max_pages):
            response = await self._send(
                "GET", path, params={**params, "per_page": self.per_page, "page": page}
            )
            items.extend(response.json())

            next_page = response.headers.get("x-next-page", "").strip()
            if not next_page:
                return items
            page = int(next_page)

        logger.warning(
            "Listing truncated at page limit",
            extra={"path": path, "max_pages": self.max_pages, "items": len(items)},
        )
        return items

    async def _list_issues(self, since: datetime, label: Optional[str] = None) -> List[Issue]:
        params: Dict[str, Any] = {
            "scope": "all",
            "state": "opened",
            "order_by": "updated_at",
            "sort": "desc",
            "updated_after": since.isoformat(),
        }
        if label is not None:
            params["labels"] = label
        return [Issue.from_api(item) for item in await self._paginate("/issues", params)]

    # -------------------------------------------------------------------------
    # Issues
    # -------------------------------------------------------------------------

    async def fetch_issues_updated_since(
        self,
        since: datetime,
        labels: Optional[List[str]] = None,
    ) -> List[Issue]:
        """Open issues updated after ``since`` carrying any of ``labels``.

        GitLab's ``labels`` filter is an AND, so each label is listed on
        its own and the results merged by issue id, newest first.
        """
        if not labels:
            return await self._list_issues(since)

        merged: Dict[int, Issue] = {}
        for label in labels:
            for issue in await self._list_issues(since, label):
                merged.setdefault(issue.id, issue)

        issues = sorted(merged.values(), key=lambda i: i.updated_at, reverse=True)
        logger.debug(
            "Fetched triggered issues",
            extra={"since": since.isoformat(), "labels": labels, "count": len(issues)},
        )
        return issues

    async def fetch_recently_updated_issues(self, since: datetime) -> List[Issue]:
        """Open issues updated after ``since``, whatever their labels."""
        return await self._list_issues(since)

    async def get_issue(self, project_id: int, iid: int) -> Issue:
        response = await self._send("GET", f"/projects/{project_id}/issues/{iid}")
        return Issue.from_api(response.json())

    async def update_issue_labels(
        self,
        project_id: int,
        iid: int,
        labels: List[str],
    ) -> None:
        """Replace the whole label set of an issue."""
        await self._send(
            "PUT",
            f"/projects/{project_id}/issues/{iid}",
            json_data={"labels": ",".join(labels)},
        )
        logger.info(
            "Updated issue labels",
            extra={"project_id": project_id, "issue_iid": iid, "labels": labels},
        )

    async def add_comment(self, project_id: int, iid: int, body: str) -> Dict[str, Any]:
        """Post a note on an issue and return GitLab's note object."""
        response = await self._send(
            "POST",
            f"/projects/{project_id}/issues/{iid}/notes",
            json_data={"body": body},
        )
        note = response.json()
        logger.info(
            "Note added to issue",
            extra={"project_id": project_id, "issue_iid": iid, "note_id": note.get("id")},
        )
        return note

    async def test_connection(self) -> bool:
        """True when ``/user`` answers 200 for the configured token."""
        try:
            response = await self.client.get("/user")
        except httpx.HTTPError as e:
            logger.warning("GitLab connection test failed", extra={"error": str(e)})
            return False

        if response.status_code != 200:
            logger.warning(
                "GitLab connection test failed",
                extra={"status_code": response.status_code},
            )
            return False

        logger.info("Connected to GitLab", extra={"base_url": self.base_url})
        return True
