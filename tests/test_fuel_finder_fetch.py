from urllib.parse import quote_plus

import pytest
import requests

import fuel_finder_fetch
from fuel_finder_fetch import (
    FUEL_FINDER_HEADERS,
    FUEL_FINDER_URL,
    FetchError,
    FuelFinderClient,
    build_fuel_finder_targets,
    build_proxy_url,
)

PROXY_TEMPLATE = "https://proxy.example/fetch?target={url}"


class _FakeResponse:
    def __init__(self, status_code: int = 200, content: bytes = b"", reason: str = "OK") -> None:
        self.status_code = status_code
        self.content = content
        self.reason = reason
        self.headers = {"Content-Length": str(len(content))}
        self.closed = False

    def iter_content(self, chunk_size: int = 1):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start : start + chunk_size]

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, *_: object) -> None:
        self.closed = True


class _FakeSession:
    def __init__(self, outcomes: dict) -> None:
        self.outcomes = outcomes
        self.headers: dict = {}
        self.calls: list = []
        self.closed = False

    def get(self, url: str, **kwargs: object) -> _FakeResponse:
        self.calls.append((url, kwargs))
        outcome = self.outcomes[url]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self) -> None:
        self.closed = True


def test_targets_without_proxy_template() -> None:
    assert build_fuel_finder_targets(None) == [FUEL_FINDER_URL]
    assert build_fuel_finder_targets("   ") == [FUEL_FINDER_URL]


def test_proxy_template_with_placeholder_escapes_url() -> None:
    expected = "https://proxy.example/fetch?target=" + quote_plus(FUEL_FINDER_URL)
    assert build_proxy_url(PROXY_TEMPLATE, FUEL_FINDER_URL) == expected
    assert "https%3A%2F%2Fwww.fuel-finder.service.gov.uk%2F" in expected
    assert build_fuel_finder_targets(f"  {PROXY_TEMPLATE}  ") == [FUEL_FINDER_URL, expected]


def test_proxy_template_without_placeholder_is_a_prefix() -> None:
    assert build_proxy_url("https://cors.example/", FUEL_FINDER_URL) == (
        "https://cors.example/" + FUEL_FINDER_URL
    )


def test_client_sets_browser_headers() -> None:
    client = FuelFinderClient(session=requests.Session())
    for name, value in FUEL_FINDER_HEADERS.items():
        assert client.session.headers[name] == value
    assert FUEL_FINDER_HEADERS["Accept-Language"] == "en-GB,en;q=0.9"
    assert FUEL_FINDER_HEADERS["Referer"] == "https://www.gov.uk/guidance/access-fuel-price-data"
    client.close()


def test_primary_success_skips_fallback() -> None:
    proxy_url = build_proxy_url(PROXY_TEMPLATE, FUEL_FINDER_URL)
    session = _FakeSession(
        {
            FUEL_FINDER_URL: _FakeResponse(content=b"a,b\n1,2\n"),
            proxy_url: _FakeResponse(content=b"unused"),
        }
    )
    client = FuelFinderClient(timeout_seconds=30, session=session)

    assert client.fetch([FUEL_FINDER_URL, proxy_url]) == b"a,b\n1,2\n"
    assert [url for url, _ in session.calls] == [FUEL_FINDER_URL]
    assert session.calls[0][1]["timeout"] == 30


def test_fallback_used_after_non_200() -> None:
    proxy_url = build_proxy_url(PROXY_TEMPLATE, FUEL_FINDER_URL)
    session = _FakeSession(
        {
            FUEL_FINDER_URL: _FakeResponse(status_code=403, reason="Forbidden"),
            proxy_url: _FakeResponse(content=b"a,b\n1,2\n"),
        }
    )
    client = FuelFinderClient(session=session)

    assert client.fetch(build_fuel_finder_targets(PROXY_TEMPLATE)) == b"a,b\n1,2\n"
    assert [url for url, _ in session.calls] == [FUEL_FINDER_URL, proxy_url]


def test_fallback_used_after_network_error_and_empty_body() -> None:
    proxy_url = build_proxy_url(PROXY_TEMPLATE, FUEL_FINDER_URL)
    session = _FakeSession(
        {
            FUEL_FINDER_URL: requests.ConnectionError("connection reset"),
            proxy_url: _FakeResponse(content=b""),
        }
    )
    client = FuelFinderClient(session=session)

    with pytest.raises(FetchError, match="received empty response"):
        client.fetch([FUEL_FINDER_URL, proxy_url])
    assert len(session.calls) == 2


def test_no_proxy_fails_on_primary_error() -> None:
    session = _FakeSession({FUEL_FINDER_URL: _FakeResponse(status_code=503, reason="Service Unavailable")})
    client = FuelFinderClient(session=session)

    with pytest.raises(FetchError, match="unexpected status: 503 Service Unavailable"):
        client.fetch(build_fuel_finder_targets(None))
    assert len(session.calls) == 1


def test_last_error_is_reported() -> None:
    proxy_url = build_proxy_url(PROXY_TEMPLATE, FUEL_FINDER_URL)
    session = _FakeSession(
        {
            FUEL_FINDER_URL: _FakeResponse(status_code=403, reason="Forbidden"),
            proxy_url: requests.Timeout("read timed out"),
        }
    )
    client = FuelFinderClient(session=session)

    with pytest.raises(FetchError, match="fetch fuel data: read timed out"):
        client.fetch([FUEL_FINDER_URL, proxy_url])


def test_empty_target_list_fails_generically() -> None:
    client = FuelFinderClient(session=_FakeSession({}))
    with pytest.raises(FetchError, match="failed to fetch fuel data"):
        client.fetch([])


def test_progress_streams_body(monkeypatch) -> None:
    updates: list = []

    class _FakeBar:
        def __init__(self, **kwargs: object) -> None:
            self.kwargs = kwargs

        def __enter__(self) -> "_FakeBar":
            return self

        def __exit__(self, *_: object) -> None:
            return None

        def update(self, amount: int) -> None:
            updates.append(amount)

    monkeypatch.setattr(fuel_finder_fetch, "tqdm", _FakeBar)
    body = b"x" * (fuel_finder_fetch.DOWNLOAD_CHUNK_SIZE + 10)
    session = _FakeSession({FUEL_FINDER_URL: _FakeResponse(content=body)})
    client = FuelFinderClient(progress=True, session=session)

    assert client.fetch([FUEL_FINDER_URL]) == body
    assert sum(updates) == len(body)
    assert session.calls[0][1]["stream"] is True
