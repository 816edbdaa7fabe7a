"""Exception types and error classification for crawl jobs."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

TIMEOUT = "SCRAPE_TIMEOUT"
FETCH_FAIL = "SCRAPE_FETCH_FAIL"
PARSE_FAIL = "SCRAPE_PARSE_FAIL"
PRECONDITION_FAILED = "PRECONDITION_FAILED"
NOT_FOUND = "NOT_FOUND"
PROFILE_MISSING = "PROFILE_MISSING"
CRASH = "SCRAPE_CRASH"


class CrawlerError(Exception):
    """Base class for crawler errors."""


class FetchError(CrawlerError):
    """A page could not be fetched (network failure, timeout or HTTP >= 400)."""

    def __init__(self, url: str, status: int | None = None, reason: str | None = None):
        self.url = url
        self.status = status
        self.reason = reason
        if reason:
            message = f"Fetch failed for {url}: {reason}"
        else:
            message = f"Fetch failed for {url}: HTTP {status}"
        super().__init__(message)


class PreconditionError(CrawlerError):
    """Required correlation data or a referenced entity is missing."""

    def __init__(self, message: str, code: str = PRECONDITION_FAILED):
        self.code = code
        super().__init__(message)


class ParseError(CrawlerError):
    """Input could not be parsed (e.g. a stored site profile)."""


class InvalidTransition(CrawlerError):
    """A run status change would move the run backwards."""


@dataclass(frozen=True)
class ErrorClass:
    """Stable error code plus whether the failure is worth retrying."""

    code: str
    retryable: bool


def _http_status_class(status: int) -> ErrorClass:
    code = f"SCRAPE_HTTP_{status}"
    return ErrorClass(code, status == 429 or status >= 500)


def classify_error(error: BaseException) -> ErrorClass:
    """Map an exception raised inside a job to a stable error code.

    Fetch and timeout failures are transient, precondition and parse failures
    are permanent, anything unrecognised is treated as a retryable crash.
    """
    if isinstance(error, PreconditionError):
        return ErrorClass(error.code, False)
    if isinstance(error, ParseError):
        return ErrorClass(PARSE_FAIL, False)
    if isinstance(error, FetchError):
        if error.status is not None and error.status >= 400:
            return _http_status_class(error.status)
        if error.reason and "timeout" in error.reason.lower():
            return ErrorClass(TIMEOUT, True)
        return ErrorClass(FETCH_FAIL, True)
    if isinstance(error, (httpx.TimeoutException, TimeoutError)):
        return ErrorClass(TIMEOUT, True)
    if isinstance(error, httpx.HTTPStatusError):
        return _http_status_class(error.response.status_code)
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return ErrorClass(FETCH_FAIL, True)

    message = str(error).lower()
    if "timeout" in message or "timed out" in message or "aborted" in message:
        return ErrorClass(TIMEOUT, True)
    if any(token in message for token in ("dns", "enotfound", "getaddrinfo", "econnrefused", "econnreset")):
        return ErrorClass(FETCH_FAIL, True)
    if isinstance(error, ValueError) or any(token in message for token in ("parse", "json", "html")):
        return ErrorClass(PARSE_FAIL, False)
    return ErrorClass(CRASH, True)
