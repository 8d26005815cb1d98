import logging
import queue
import threading
from concurrent.futures import Future, TimeoutError as FutureTimeout
from typing import Any, Callable, Optional

from flask import Flask, request, jsonify
from werkzeug.serving import make_server

import act_config as config
from command_sync import (
    APPLY,
    DUPLICATE,
    IGNORE,
    CommandEngine,
    CommandError,
    MalformedNotification,
    build_channels,
    decode_command,
    extract_con_ri,
    is_verification_request,
    load_notification,
)
from mobius_client import MobiusClient
from relay_io import RelayBoard
from subscriptions import refresh_subscriptions

logger = logging.getLogger("act_server")

# Webhook response token per reconciliation outcome
OUTCOME_MESSAGES = {APPLY: "ok", DUPLICATE: "dup", IGNORE: "ignored"}

# ================================================================
# === Engine worker (The "Heart") ================================
# ================================================================

class EngineWorker:
    """The single thread that owns the engine.

    Each turn it runs at most one queued job (webhook reconciliations,
    re-subscribe requests), then the pulse deadline check, then the poll
    cycle when it is due. Nothing else mutates engine state.
    """

    def __init__(self, engine: CommandEngine, poll_interval: float,
                 tick: float = config.TICK_SEC,
                 on_boot: Optional[Callable[[], Any]] = None):
        self.engine = engine
        self.poll_interval = poll_interval
        self.tick = tick
        self.on_boot = on_boot
        self._jobs: "queue.Queue" = queue.Queue()
        self._stop = threading.Event()
        self._next_poll = 0.0

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        fut: Future = Future()
        self._jobs.put((fn, args, kwargs, fut))
        return fut

    def run_pending(self) -> int:
        """Run every job already queued, without waiting. Returns how many ran."""
        count = 0
        while True:
            try:
                job = self._jobs.get_nowait()
            except queue.Empty:
                return count
            self._run_job(job)
            count += 1

    def _run_job(self, job) -> None:
        fn, args, kwargs, fut = job
        if not fut.set_running_or_notify_cancel():
            return
        try:
            fut.set_result(fn(*args, **kwargs))
        except Exception as e:
            logger.exception("Engine job failed: %s", e)
            fut.set_exception(e)

    def boot(self) -> None:
        if self.on_boot is not None:
            try:
                self.on_boot()
            except Exception as e:
                logger.exception("Boot subscription error: %s", e)
        # (Poll once immediately after boot)
        self._poll()
        self._next_poll = self.engine.clock() + self.poll_interval

    def _poll(self) -> None:
        try:
            self.engine.poll_all()
        except Exception as e:
            logger.exception("Poll error: %s", e)

    def step(self) -> None:
        try:
            job = self._jobs.get(timeout=self.tick)
        except queue.Empty:
            pass
        else:
            self._run_job(job)

        # (Critical) A failing phase is logged; the loop must keep ending pulses
        try:
            self.engine.service_pulses()
        except Exception as e:
            logger.exception("Pulse service error: %s", e)

        if self.engine.clock() >= self._next_poll:
            self._next_poll = self.engine.clock() + self.poll_interval
            self._poll()

    def run(self) -> None:
        self.boot()
        while not self._stop.is_set():
            self.step()

    def stop(self) -> None:
        self._stop.set()


# ================================================================
# === Flask webhook ==============================================
# ================================================================

def _reply(rc: int, message: str):
    return jsonify({"rc": rc, "message": message}), rc


def create_app(worker: EngineWorker, wait_sec: float = config.WEBHOOK_WAIT_SEC,
               resubscribe: Optional[Callable[[], Any]] = None) -> Flask:
    app = Flask(__name__)
    engine = worker.engine

    def make_view(channel_name: str):
        def view():
            body = request.get_data(as_text=True)
            if not body or not body.strip():
                logger.info("NOTIFY: %s empty body", channel_name)
                return _reply(400, "empty")

            # (Parsing and decoding are pure; only the reconciliation goes to the worker)
            try:
                sgn = load_notification(body)
                if is_verification_request(sgn):
                    logger.info("NOTIFY: %s verification request", channel_name)
                    return _reply(200, "verified")
                con, ri = extract_con_ri(sgn)
            except MalformedNotification as e:
                logger.warning("NOTIFY: %s invalid payload: %s", channel_name, e)
                return _reply(400, str(e))

            try:
                command = decode_command(con, ri)
            except CommandError:
                logger.warning("NOTIFY: %s con parse fail: %s", channel_name, con)
                return _reply(400, "bad con")

            fut = worker.submit(engine.apply, channel_name, command)
            try:
                outcome = fut.result(timeout=wait_sec)
            except FutureTimeout:
                # (The job stays queued and will still be applied)
                logger.warning("NOTIFY: %s engine busy, queued (ri=%s)", channel_name, ri)
                return _reply(200, "queued")
            return _reply(200, OUTCOME_MESSAGES.get(outcome, "ok"))

        view.__name__ = "notify_%s" % channel_name.lower()
        return view

    for ch in engine.channels.values():
        app.add_url_rule(
            "/" + ch.path,
            view_func=make_view(ch.name),
            methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        )

    @app.route("/resubscribe", methods=["POST"])
    def resubscribe_endpoint():
        if resubscribe is None:
            return _reply(404, "subscriptions disabled")
        worker.submit(resubscribe)
        return _reply(202, "scheduled")

    return app


# ================================================================
# === Main Entry (Server Start) ==================================
# ================================================================

def start_server():
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s"
    )
    logger.info("Actuator node booting...")

    channels = build_channels(config.CHANNELS)

    # 1. Relays to the safe OFF state
    relays = RelayBoard({ch.name: ch.pin for ch in channels},
                        active_low=config.RELAY_ACTIVE_LOW,
                        simulate=config.SIMULATE_RELAYS)

    client = MobiusClient(
        config.MOBIUS_URL, config.CSE_BASE, config.AE_ACTUATOR, config.ORIGIN,
        release_version=config.RELEASE_VERSION,
        timeout=config.REQUEST_TIMEOUT_SEC,
        verify=config.CA_BUNDLE or True,
        request_id_start=config.REQUEST_ID_START,
    )
    engine = CommandEngine(channels, relays, client,
                           pulse_ms=config.FEED_PULSE_MS,
                           retrigger_policy=config.PULSE_RETRIGGER_POLICY)

    def resubscribe():
        return refresh_subscriptions(client, channels, config.MOBIUS_URL,
                                     config.DEVICE_IP, config.NOTIFY_PORT)

    worker = EngineWorker(engine, config.POLL_INTERVAL_SEC, on_boot=resubscribe)
    app = create_app(worker, resubscribe=resubscribe)

    # 2. Bind the webhook socket first, so Mobius can verify the subscriptions
    server = make_server(config.NOTIFY_HOST, config.NOTIFY_PORT, app, threaded=True)
    threading.Thread(target=server.serve_forever, name="webhook", daemon=True).start()
    logger.info("HTTP server started on :%d", config.NOTIFY_PORT)

    # 3. Subscriptions, first poll, then the loop (blocks)
    try:
        worker.run()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        worker.stop()
        server.shutdown()
        relays.cleanup()


if __name__ == "__main__":
    start_server()
