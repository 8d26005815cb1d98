"""Tests for the notification webhook and the engine worker hand-off."""

import json
import threading

import pytest

from act_server_eng import EngineWorker, create_app
from command_sync import DecodedCommand
from conftest import notification


@pytest.fixture
def worker(engine):
    return EngineWorker(engine, poll_interval=3600, tick=0.001)


@pytest.fixture
def running_worker(worker):
    thread = threading.Thread(target=worker.run, daemon=True)
    thread.start()
    yield worker
    worker.stop()
    thread.join(timeout=2)


@pytest.fixture
def client(running_worker):
    app = create_app(running_worker, wait_sec=2.0)
    return app.test_client()


def _post(client, path, body):
    data = body if isinstance(body, str) else json.dumps(body)
    return client.post(path, data=data, content_type="application/json")


class TestNotifyEndpoints:
    def test_feeder_same_ri_applies_once(self, client, engine):
        first = _post(client, "/n_feeder", notification("on", "cin123"))
        assert first.status_code == 200
        assert first.get_json() == {"rc": 200, "message": "ok"}

        second = _post(client, "/n_feeder", notification("on", "cin123"))
        assert second.status_code == 200
        assert second.get_json()["message"] == "dup"
        assert engine.relays.history == [("FEEDER", True)]

    def test_feeder_off_is_ignored(self, client, engine):
        response = _post(client, "/n_feeder", notification("off", "cin124"))
        assert response.status_code == 200
        assert response.get_json()["message"] == "ignored"
        assert engine.state.dedup == {}
        assert engine.relays.history == []

    def test_heater_repeated_on(self, client, engine):
        for ri in ("cin1", "cin1"):
            response = _post(client, "/n_heater", notification("ON", ri))
            assert response.get_json()["message"] == "ok"
        assert engine.relays.history == [("HEATER", True), ("HEATER", True)]

    def test_any_method_is_accepted(self, client, engine):
        response = client.put("/n_led", data=json.dumps(notification('{"cmd":"on"}')),
                              content_type="application/json")
        assert response.status_code == 200
        assert engine.relays.states["LED"] is True

    @pytest.mark.parametrize("path", ["/n_led", "/n_feeder", "/n_heater", "/n_pump"])
    def test_malformed_envelope_is_rejected(self, client, engine, path):
        response = _post(client, path, {"m2m:sgn": {"nev": {"net": 3}}})
        assert response.status_code == 400
        assert response.get_json()["rc"] == 400
        assert engine.relays.history == []

    def test_missing_cin_is_rejected(self, client, engine):
        response = _post(client, "/n_pump", {"m2m:sgn": {"nev": {"rep": {"m2m:cnt": {}}}}})
        assert response.status_code == 400
        assert engine.relays.history == []

    def test_bad_content_is_rejected(self, client, engine):
        response = _post(client, "/n_pump", notification("banana", "cin9"))
        assert response.status_code == 400
        assert response.get_json()["message"] == "bad con"
        assert engine.relays.history == []

    def test_empty_body_is_rejected(self, client):
        response = client.post("/n_led", data="")
        assert response.status_code == 400
        assert response.get_json()["message"] == "empty"

    def test_invalid_json_is_rejected(self, client):
        response = _post(client, "/n_led", "{oops")
        assert response.status_code == 400

    def test_verification_request_is_acknowledged(self, client, engine):
        response = _post(client, "/n_led", {"m2m:sgn": {"vrq": True, "sur": "Mobius/AE-Actuator/LED/sub_led"}})
        assert response.status_code == 200
        assert response.get_json()["message"] == "verified"
        assert engine.relays.history == []


class TestWorkerHandOff:
    def test_busy_worker_answers_queued(self, worker, engine):
        client = create_app(worker, wait_sec=0.01).test_client()
        response = _post(client, "/n_feeder", notification("on", "cin500"))
        assert response.status_code == 200
        assert response.get_json()["message"] == "queued"
        assert engine.relays.history == []

        assert worker.run_pending() == 1
        assert engine.relays.history == [("FEEDER", True)]

    def test_resubscribe_is_scheduled_on_worker(self, worker):
        calls = []
        client = create_app(worker, resubscribe=lambda: calls.append("sub")).test_client()
        response = client.post("/resubscribe")
        assert response.status_code == 202
        assert calls == []
        worker.run_pending()
        assert calls == ["sub"]

    def test_resubscribe_without_manager(self, worker):
        client = create_app(worker).test_client()
        assert client.post("/resubscribe").status_code == 404

    def test_step_ends_pulse_and_polls_when_due(self, worker, engine, clock, latest_client):
        engine.apply("FEEDER", DecodedCommand(on=True, ri="cin1"))
        clock.advance(2.0)
        worker.step()
        assert engine.relays.states["FEEDER"] is False
        assert latest_client.reads == ["LED", "feed", "heater", "pump"]

    def test_boot_subscribes_then_polls(self, engine, latest_client):
        order = []
        latest_client.latest = {"LED": {"con": "on", "ri": "cin1"}}
        worker = EngineWorker(engine, poll_interval=3600,
                              on_boot=lambda: order.append(list(latest_client.reads)))
        worker.boot()
        assert order == [[]]
        assert engine.relays.states["LED"] is True


DEEP_CON = '{"on":' + "[" * 100000 + "]" * 100000 + "}"


def test_deeply_nested_content_is_rejected(client, engine):
    response = _post(client, "/n_led", notification(DEEP_CON, "cin77"))
    assert response.status_code == 400
    assert response.get_json()["message"] == "bad con"
    assert engine.relays.history == []


class TestWorkerSurvivesErrors:
    def test_failing_poll_does_not_stop_pulse_service(self, worker, engine, clock, latest_client):
        latest_client.latest = {"LED": RuntimeError("boom")}
        engine.apply("FEEDER", DecodedCommand(on=True, ri="cin1"))
        clock.advance(2.0)
        worker.step()
        assert engine.relays.states["FEEDER"] is False

    def test_failing_pulse_service_does_not_skip_poll(self, worker, engine, latest_client, monkeypatch):
        def broken():
            raise RuntimeError("gpio gone")

        monkeypatch.setattr(engine, "service_pulses", broken)
        worker.step()
        assert latest_client.reads == ["LED", "feed", "heater", "pump"]

    def test_failing_boot_subscription_still_polls(self, engine, latest_client):
        def broken():
            raise AttributeError("'list' object has no attribute 'get'")

        latest_client.latest = {"pump": {"con": "on", "ri": "cin2"}}
        worker = EngineWorker(engine, poll_interval=3600, on_boot=broken)
        worker.boot()
        assert engine.relays.states["PUMP"] is True

    def test_worker_keeps_serving_after_bad_poll_content(self, engine, latest_client):
        latest_client.latest = {"LED": RuntimeError("boom"), "heater": {"con": DEEP_CON, "ri": "cin3"}}
        worker = EngineWorker(engine, poll_interval=0, tick=0.001)
        thread = threading.Thread(target=worker.run, daemon=True)
        thread.start()
        try:
            client = create_app(worker, wait_sec=2.0).test_client()
            response = _post(client, "/n_pump", notification("on", "cin4"))
            assert response.get_json()["message"] == "ok"
            assert thread.is_alive()
            assert engine.relays.states["PUMP"] is True
        finally:
            worker.stop()
            thread.join(timeout=2)


class TestPollTimer:
    def test_poll_follows_engine_clock(self, engine, clock, latest_client):
        worker = EngineWorker(engine, poll_interval=15, tick=0.001)
        worker.boot()
        assert len(latest_client.reads) == 4

        clock.advance(14.5)
        worker.step()
        assert len(latest_client.reads) == 4

        clock.advance(0.5)
        worker.step()
        assert len(latest_client.reads) == 8
