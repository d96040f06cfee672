#!/usr/bin/env python3
"""Fetch the latest Fuel Finder price CSV, falling back to a proxy-wrapped URL."""

from __future__ import annotations

from typing import List, Optional, Sequence
from urllib.parse import quote_plus

import requests
from tqdm import tqdm

from fuel_finder_common import format_exception_message, log_event

FUEL_FINDER_URL = (
    "https://www.fuel-finder.service.gov.uk/internal/v1.0.2/csv/"
    "get-latest-fuel-prices-csv"
)
PROXY_URL_PLACEHOLDER = "{url}"
DEFAULT_TIMEOUT_SECONDS = 30
DOWNLOAD_CHUNK_SIZE = 64 * 1024
# The endpoint rejects obvious non-browser clients.
FUEL_FINDER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/csv,application/octet-stream;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-GB,en;q=0.9",
    "Referer": "https://www.gov.uk/guidance/access-fuel-price-data",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}


class FetchError(RuntimeError):
    """A fetch target failed: network error, non-200 status or empty body."""


def build_proxy_url(template: str, target: str) -> str:
    if PROXY_URL_PLACEHOLDER in template:
        return template.replace(PROXY_URL_PLACEHOLDER, quote_plus(target))
    return template + target


def build_fuel_finder_targets(proxy_template: Optional[str] = None) -> List[str]:
    template = (proxy_template or "").strip()
    if not template:
        return [FUEL_FINDER_URL]
    return [FUEL_FINDER_URL, build_proxy_url(template, FUEL_FINDER_URL)]


def _read_with_progress(response: requests.Response, target: str) -> bytes:
    total = response.headers.get("Content-Length")
    chunks: List[bytes] = []
    with tqdm(
        total=int(total) if total and total.isdigit() else None,
        unit="B",
        unit_scale=True,
        desc=target.rsplit("/", 1)[-1] or "fuel-prices",
    ) as pbar:
        for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
            if chunk:
                chunks.append(chunk)
                pbar.update(len(chunk))
    return b"".join(chunks)


class FuelFinderClient:
    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        progress: bool = False,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.progress = progress
        self.session = session if session is not None else requests.Session()
        self.session.headers.update(FUEL_FINDER_HEADERS)

    def fetch_url(self, target: str) -> bytes:
        """Issue one GET against ``target`` and return the body of a 200 response.

        No retry happens here; callers decide whether another target is worth trying.
        """
        try:
            response = self.session.get(
                target,
                timeout=self.timeout_seconds,
                stream=self.progress,
            )
        except requests.RequestException as exc:
            raise FetchError(f"fetch fuel data: {format_exception_message(exc)}") from exc

        with response:
            if response.status_code != 200:
                status = f"{response.status_code} {response.reason or ''}".strip()
                raise FetchError(f"unexpected status: {status}")
            try:
                if self.progress:
                    return _read_with_progress(response, target)
                return response.content
            except requests.RequestException as exc:
                raise FetchError(f"read response: {format_exception_message(exc)}") from exc

    def fetch(self, targets: Sequence[str]) -> bytes:
        last_error: Optional[FetchError] = None
        total = len(targets)
        for index, target in enumerate(targets, start=1):
            log_event("FETCH_ATTEMPT", attempt=index, targets=total, url=target)
            try:
                payload = self.fetch_url(target)
            except FetchError as exc:
                last_error = exc
                log_event("FETCH_FAILED", attempt=index, url=target, error=str(exc))
                continue
            if not payload:
                last_error = FetchError("received empty response")
                log_event("FETCH_FAILED", attempt=index, url=target, error=str(last_error))
                continue
            log_event("FETCH_DONE", attempt=index, url=target, bytes=len(payload))
            return payload

        if last_error is not None:
            raise last_error
        raise FetchError("failed to fetch fuel data")

    def close(self) -> None:
        self.session.close()
