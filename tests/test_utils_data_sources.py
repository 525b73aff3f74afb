import numpy as np
import pandas as pd
import pytest
import requests

import sab_xwalk.utils.data_sources as ds
from sab_xwalk.ingest.base import CensusAPIError


class DummyResponse:
    def __init__(self, *, status_code=200, json_data=None, json_error=None):
        self.status_code = status_code
        self._json_data = json_data
        self._json_error = json_error

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"HTTP {self.status_code}", response=self)

    def json(self):
        if self._json_error:
            raise self._json_error
        return self._json_data


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    sleeps = []
    monkeypatch.setattr(ds.time, "sleep", lambda s: sleeps.append(s))
    return sleeps


def test_rate_limiter_sleeps_when_called_too_fast(monkeypatch, no_sleep):
    limiter = ds.RateLimiter(calls_per_minute=60)  # 1 call/sec
    calls = []

    times = iter([100.0, 100.0, 100.1, 100.1])
    monkeypatch.setattr(ds.time, "time", lambda: next(times))

    wrapped = limiter(lambda: calls.append("ok"))
    wrapped()
    wrapped()

    assert calls == ["ok", "ok"]
    assert no_sleep and no_sleep[0] == pytest.approx(0.9)


def test_census_variable_code():
    assert ds.census_variable_code(" b01003_001 ") == "B01003_001E"
    assert ds.census_variable_code("B01003_001E") == "B01003_001E"


def test_fetch_census_data_builds_request(monkeypatch):
    captured = {}

    def fake_get(url, params=None, timeout=None):
        captured["url"] = url
        captured["params"] = params
        return DummyResponse(json_data=[
            ["NAME", "B01003_001E", "state", "county", "tract"],
            ["Tract 1", "1000", "48", "001", "000100"],
        ])

    monkeypatch.setattr(ds.requests, "get", fake_get)
    monkeypatch.setattr(ds.settings, "CENSUS_API_KEY", "abc", raising=False)

    df = ds.fetch_census_data.__wrapped__("acs/acs5", ["B01003_001E"], "tract:*", state="48", year=2021)

    assert captured["url"].endswith("/2021/acs/acs5")
    assert captured["params"]["get"] == "NAME,B01003_001E"
    assert captured["params"]["in"] == "state:48"
    assert captured["params"]["key"] == "abc"
    assert df["B01003_001E"].tolist() == ["1000"]


def test_fetch_census_data_empty_payload(monkeypatch):
    monkeypatch.setattr(ds.requests, "get", lambda *a, **k: DummyResponse(json_data=[["NAME"]]))

    assert ds.fetch_census_data.__wrapped__("acs/acs5", ["X"], "tract:*", state="48").empty


def test_request_retries_on_server_errors(monkeypatch, no_sleep):
    responses = iter([
        DummyResponse(status_code=503),
        DummyResponse(status_code=429),
        DummyResponse(json_data=[["ok"]]),
    ])
    monkeypatch.setattr(ds.requests, "get", lambda *a, **k: next(responses))

    assert ds._request_with_retries("http://x", {}, max_retries=4) == [["ok"]]
    assert len(no_sleep) == 2


def test_request_does_not_retry_client_errors(monkeypatch):
    calls = []

    def fake_get(*args, **kwargs):
        calls.append(1)
        return DummyResponse(status_code=400)

    monkeypatch.setattr(ds.requests, "get", fake_get)

    with pytest.raises(CensusAPIError):
        ds._request_with_retries("http://x", {}, max_retries=4)
    assert len(calls) == 1


def test_request_non_json_body_is_an_api_error(monkeypatch):
    monkeypatch.setattr(
        ds.requests, "get", lambda *a, **k: DummyResponse(json_error=ValueError("not json"))
    )

    with pytest.raises(CensusAPIError):
        ds._request_with_retries("http://x", {})


def test_fetch_acs_tract_estimates_long_form(monkeypatch):
    requested = []

    def fake_fetch(dataset, variables, geography, state, year=None, **kwargs):
        requested.append(list(variables))
        rows = [["Tract 1", *["1000" for _ in variables], "48", "001", "000100"],
                ["Tract 2", *["-666666666" for _ in variables], "48", "001", "000200"]]
        return pd.DataFrame(rows, columns=["NAME", *variables, "state", "county", "tract"])

    monkeypatch.setattr(ds, "fetch_census_data", fake_fetch)
    monkeypatch.setattr(ds, "MAX_VARIABLES_PER_REQUEST", 2)

    stats = ds.fetch_acs_tract_estimates("48", ["B01003_001", "B11001_001", "B19013_001"], year=2021)

    assert requested == [["B01003_001E", "B11001_001E"], ["B19013_001E"]]
    assert set(stats["variable"]) == {"B01003_001", "B11001_001", "B19013_001"}
    assert set(stats["geoid"]) == {"48001000100", "48001000200"}
    sentinel = stats[stats["geoid"] == "48001000200"]["estimate"]
    assert np.isnan(sentinel).all()
    assert (stats[stats["geoid"] == "48001000100"]["estimate"] == 1000).all()
