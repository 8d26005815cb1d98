import os

# ================================================================
# === Configuration ==============================================
# ================================================================
# (Every value can be overridden with an ACT_* environment variable)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


MOBIUS_URL = os.environ.get("ACT_MOBIUS_URL", "http://localhost:7599")  # Base URL for the Mobius CSE
CSE_BASE = os.environ.get("ACT_CSE_BASE", "Mobius")                     # The Base resource name of the CSE
AE_ACTUATOR = os.environ.get("ACT_AE", "AE-Actuator")                   # Control AE (created in advance)

# oneM2M request bookkeeping
ORIGIN = os.environ.get("ACT_ORIGIN", "SM")     # X-M2M-Origin (should match the CSE's ACP)
RELEASE_VERSION = "4"                           # X-M2M-RVI
REQUEST_ID_START = 10000                        # First X-M2M-RI value

# (Important) Every outbound call is bounded, so a stalled CSE cannot starve the webhook
REQUEST_TIMEOUT_SEC = float(os.environ.get("ACT_REQUEST_TIMEOUT", "5"))

# CA bundle used to verify the CSE certificate (empty = requests' default trust store)
CA_BUNDLE = os.environ.get("ACT_CA_BUNDLE", "")

# --- Webhook (notification) server ---
NOTIFY_HOST = "0.0.0.0"
NOTIFY_PORT = int(os.environ.get("ACT_NOTIFY_PORT", "8080"))
DEVICE_IP = os.environ.get("ACT_DEVICE_IP", "")  # Empty = detect from the route towards the CSE

# How long a webhook request waits for the engine worker before answering "queued"
WEBHOOK_WAIT_SEC = float(os.environ.get("ACT_WEBHOOK_WAIT", "2.0"))

# --- Engine loop ---
POLL_INTERVAL_SEC = float(os.environ.get("ACT_POLL_INTERVAL", "15"))
TICK_SEC = 0.005  # Queue wait per loop turn; bounds the pulse deadline check latency

# --- Feeder pulse ---
FEED_PULSE_MS = int(os.environ.get("ACT_FEED_PULSE_MS", "2000"))
# "ignore": a trigger during an active pulse is a no-op
# "extend": a trigger during an active pulse pushes the deadline out
PULSE_RETRIGGER_POLICY = os.environ.get("ACT_PULSE_RETRIGGER", "ignore")

# --- Relays ---
RELAY_ACTIVE_LOW = _env_bool("ACT_RELAY_ACTIVE_LOW", True)  # Most relay boards are active-LOW
SIMULATE_RELAYS = _env_bool("ACT_SIMULATE_RELAYS", False)

LOG_LEVEL = os.environ.get("ACT_LOG_LEVEL", "INFO")

# (Critical) The channel table: container, subscription name, webhook path, BCM pin.
# `dedup` opts a channel into resource-identifier duplicate suppression,
# `pulse` makes it a timed pulse instead of a level.
CHANNELS = [
    {"name": "LED",    "container": "LED",    "sub": "sub_led",    "path": "n_led",    "pin": 25},
    {"name": "FEEDER", "container": "feed",   "sub": "sub_feeder", "path": "n_feeder", "pin": 26,
     "dedup": True, "pulse": True},
    {"name": "HEATER", "container": "heater", "sub": "sub_heater", "path": "n_heater", "pin": 27},
    {"name": "PUMP",   "container": "pump",   "sub": "sub_pump",   "path": "n_pump",   "pin": 33},
]
