"""Pytest fixtures for the actuator node tests."""
import json

import pytest

import act_config
from command_sync import CommandEngine, build_channels
from mobius_client import MobiusClient
from relay_io import RelayBoard


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeResponse:
    def __init__(self, status_code, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text

    def json(self):
        if self._payload is None:
            return json.loads(self.text)
        return self._payload


class FakeSession:
    """Stands in for requests.Session: answers from a queue and records calls."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, json=None, headers=None, timeout=None, verify=None):
        self.calls.append({
            "method": method,
            "url": url,
            "json": json,
            "headers": headers,
            "timeout": timeout,
            "verify": verify,
        })
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakeLatestClient:
    """read_latest() answers from a per-container table."""

    def __init__(self, latest=None):
        self.latest = dict(latest or {})
        self.reads = []

    def read_latest(self, container):
        self.reads.append(container)
        result = self.latest.get(container)
        if isinstance(result, Exception):
            raise result
        return result


def cin(con, ri="cin0001"):
    return {"con": con, "ri": ri, "pi": "3-feed", "ty": 4}


def notification(con, ri=None):
    """A Mobius notification body for a newly created cin."""
    body = {"con": con}
    if ri is not None:
        body["ri"] = ri
    return {"m2m:sgn": {"nev": {"rep": {"m2m:cin": body}, "net": 3},
                        "sur": "Mobius/AE-Actuator/feed/sub_feeder"}}


@pytest.fixture
def channels():
    return build_channels(act_config.CHANNELS)


@pytest.fixture
def relays(channels):
    return RelayBoard({ch.name: ch.pin for ch in channels}, simulate=True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def latest_client():
    return FakeLatestClient()


@pytest.fixture
def engine(channels, relays, clock, latest_client):
    eng = CommandEngine(channels, relays, latest_client, clock=clock, pulse_ms=2000)
    relays.history.clear()
    return eng


@pytest.fixture
def make_client():
    def _make(*responses):
        session = FakeSession(*responses)
        client = MobiusClient("https://mobius.local:443/", "Mobius", "AE-Actuator", "SM",
                              timeout=3.0, session=session)
        return client, session
    return _make
