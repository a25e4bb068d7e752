from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from .config import Settings
from .models import SearchResult

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({403, 429, 500, 502, 503, 504})
TRANSIENT_NETWORK_ERRORS = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)

SleepFunc = Callable[[float], Awaitable[None]]


class RequestFailed(Exception):
    def __init__(
        self,
        message: str,
        *,
        url: str = "",
        status_code: int | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.attempts = attempts


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_seconds: float = 2.0
    retry_network_errors: bool = False

    def delay_for(self, attempt: int) -> float:
        return self.base_delay_seconds * (2 ** (attempt - 1))

    def with_network_retries(self) -> "RetryPolicy":
        return RetryPolicy(self.max_attempts, self.base_delay_seconds, retry_network_errors=True)


async def request_with_retries(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    policy: RetryPolicy,
    sleep: SleepFunc = asyncio.sleep,
    **kwargs: Any,
) -> httpx.Response:
    """Send one request, retrying transient failures with exponential backoff.

    Retries responses with a status in ``RETRYABLE_STATUS_CODES`` and, when
    ``policy.retry_network_errors`` is set, connection drops and timeouts.
    Any other failure, or running out of attempts, raises ``RequestFailed``.
    Other ``httpx`` errors (proxy, protocol, decoding) are never retried but
    are raised as ``RequestFailed`` too.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            response = await client.request(method, url, **kwargs)
        except TRANSIENT_NETWORK_ERRORS as exc:
            if policy.retry_network_errors and attempt < attempts:
                delay = policy.delay_for(attempt)
                logger.warning(
                    "attempt %s/%s for %s failed (%s), retrying in %.1fs",
                    attempt, attempts, url, exc.__class__.__name__, delay,
                )
                await sleep(delay)
                continue
            logger.error("request to %s failed after %s attempt(s): %s", url, attempt, exc)
            raise RequestFailed(
                f"no response from {url}: {exc}", url=url, attempts=attempt
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("request to %s failed with %s: %s", url, exc.__class__.__name__, exc)
            raise RequestFailed(
                f"request to {url} failed: {exc.__class__.__name__}: {exc}", url=url, attempts=attempt
            ) from exc

        if response.is_success:
            return response

        status = response.status_code
        if status in RETRYABLE_STATUS_CODES and attempt < attempts:
            delay = policy.delay_for(attempt)
            logger.warning(
                "attempt %s/%s for %s returned %s, retrying in %.1fs",
                attempt, attempts, url, status, delay,
            )
            await sleep(delay)
            continue

        logger.error(
            "request to %s failed after %s attempt(s) with status %s: %s",
            url, attempt, status, response.text[:300],
        )
        raise RequestFailed(
            f"HTTP {status} from {url} after {attempt} attempt(s)",
            url=url,
            status_code=status,
            attempts=attempt,
        )

    raise AssertionError("unreachable")


class GroupThrottle:
    """Fixed pause between consecutive search groups.

    The first ``wait`` returns immediately, every later one sleeps for the
    configured delay, so calling it before each group spaces the groups out
    without a trailing pause after the last one. ``reset`` starts a new run.
    """

    def __init__(self, delay_seconds: float, sleep: SleepFunc = asyncio.sleep) -> None:
        self.delay_seconds = max(0.0, delay_seconds)
        self._sleep = sleep
        self._primed = False

    async def wait(self) -> None:
        if not self._primed:
            self._primed = True
            return
        if self.delay_seconds > 0:
            await self._sleep(self.delay_seconds)

    def reset(self) -> None:
        self._primed = False


class HhClient:
    def __init__(
        self,
        base_url: str,
        user_agent: str,
        timeout_seconds: int,
        retry_policy: RetryPolicy,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        timeout = httpx.Timeout(timeout_seconds, connect=min(5, timeout_seconds))
        self.base_url = base_url
        self.retry_policy = retry_policy
        self._sleep = sleep
        self.client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={
                "User-Agent": user_agent,
                "Accept": "application/json",
            },
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _get_json(self, params: dict[str, Any], policy: RetryPolicy) -> dict[str, Any]:
        response = await request_with_retries(
            self.client, "GET", self.base_url, policy, sleep=self._sleep, params=params
        )
        try:
            payload = response.json()
        except ValueError as exc:
            raise RequestFailed(
                f"invalid JSON from {self.base_url}: {exc}",
                url=self.base_url,
                status_code=response.status_code,
            ) from exc
        if not isinstance(payload, dict):
            raise RequestFailed(
                f"unexpected payload type {type(payload).__name__} from {self.base_url}",
                url=self.base_url,
                status_code=response.status_code,
            )
        return payload

    async def search_vacancies(
        self,
        text: str,
        area: int,
        schedule: str,
        per_page: int = 100,
        page: int = 0,
    ) -> SearchResult:
        params = {
            "text": text,
            "area": area,
            "schedule": schedule,
            "order_by": "relevance",
            "per_page": per_page,
            "page": page,
        }
        payload = await self._get_json(params, self.retry_policy)
        try:
            return SearchResult(
                found=int(payload.get("found") or 0),
                pages=int(payload.get("pages") or 0),
                item_ids=[int(item["id"]) for item in payload.get("items") or []],
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise RequestFailed(
                f"malformed search response for {text!r}: {exc}", url=self.base_url
            ) from exc

    async def fetch_employer_vacancies(self, employer_id: str, per_page: int = 100) -> list[dict[str, Any]]:
        policy = self.retry_policy.with_network_retries()
        vacancies: list[dict[str, Any]] = []
        page = 0
        while True:
            payload = await self._get_json(
                {"employer_id": employer_id, "per_page": per_page, "page": page, "archived": "false"},
                policy,
            )
            items = payload.get("items") or []
            if not items:
                break
            vacancies.extend(items)
            page += 1
            if int(payload.get("pages") or 0) <= page:
                break
        return vacancies


def build_hh_client(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
    sleep: SleepFunc = asyncio.sleep,
) -> HhClient:
    return HhClient(
        base_url=settings.hh_api_url,
        user_agent=settings.hh_user_agent,
        timeout_seconds=settings.request_timeout_seconds,
        retry_policy=RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay_seconds=settings.retry_base_delay_seconds,
        ),
        transport=transport,
        sleep=sleep,
    )
