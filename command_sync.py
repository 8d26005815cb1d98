"""Command synchronization engine.

Turns push notifications and polled "latest" content instances into a
single actuation decision per command: decode the payload, suppress
duplicate deliveries on channels that opt in, and drive either a level
relay or the feeder's timed pulse.

All mutable state lives in one ``EngineState`` owned by ``CommandEngine``;
only the engine worker thread calls into it.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from mobius_client import MobiusError

logger = logging.getLogger("act_server.sync")

# Dedup outcomes
APPLY = "apply"
DUPLICATE = "duplicate"
IGNORE = "ignore"

# Pulse re-trigger policies
RETRIGGER_IGNORE = "ignore"
RETRIGGER_EXTEND = "extend"


class CommandError(Exception):
    """Base class for command payloads the engine cannot act on."""


class MalformedNotification(CommandError):
    """The notification envelope is missing part of the sgn/nev/rep/cin chain."""


class UnrecognizedContent(CommandError):
    """The content decodes to neither on nor off."""


@dataclass(frozen=True)
class Channel:
    name: str
    container: str
    sub_name: str
    path: str
    pin: int
    dedup: bool = False
    pulse: bool = False


def build_channels(table: List[Dict[str, Any]]) -> List[Channel]:
    return [
        Channel(
            name=row["name"],
            container=row["container"],
            sub_name=row["sub"],
            path=row["path"],
            pin=int(row["pin"]),
            dedup=bool(row.get("dedup", False)),
            pulse=bool(row.get("pulse", False)),
        )
        for row in table
    ]


@dataclass(frozen=True)
class DecodedCommand:
    on: bool
    ri: str = ""


@dataclass
class PulseState:
    active: bool = False
    deadline: float = 0.0


@dataclass
class EngineState:
    # channel name -> ri of the last "on" actually applied
    dedup: Dict[str, str] = field(default_factory=dict)
    pulses: Dict[str, PulseState] = field(default_factory=dict)
    levels: Dict[str, bool] = field(default_factory=dict)


# ================================================================
# === Content Decoder ============================================
# ================================================================

def _on_off_word(value: str) -> Optional[bool]:
    lowered = value.lower()
    if lowered == "on":
        return True
    if lowered == "off":
        return False
    return None


def decode_content(con: str) -> bool:
    """Decode a command payload to on (True) / off (False).

    Accepted, in order: "on"/"off" (any case), "1"/"0", or a JSON object
    with a "cmd" field ("on"/"off") or an "on" field (bool, int, "on"/"off").
    """
    s = (con or "").strip()
    word = _on_off_word(s)
    if word is not None:
        return word
    if s == "1":
        return True
    if s == "0":
        return False

    if s.startswith("{"):
        try:
            doc = json.loads(s)
        except (ValueError, RecursionError):
            raise UnrecognizedContent("invalid json: %s" % s)
        if isinstance(doc, dict):
            cmd = doc.get("cmd")
            if isinstance(cmd, str):
                word = _on_off_word(cmd)
                if word is not None:
                    return word
            if "on" in doc:
                flag = doc["on"]
                # (bool is checked first, it is also an int)
                if isinstance(flag, bool):
                    return flag
                if isinstance(flag, int):
                    return flag != 0
                if isinstance(flag, str):
                    word = _on_off_word(flag)
                    if word is not None:
                        return word

    raise UnrecognizedContent("unrecognized content: %s" % s)


def decode_command(con: str, ri: str = "") -> DecodedCommand:
    return DecodedCommand(on=decode_content(con), ri=ri or "")


# ================================================================
# === Notification Envelope Parser ===============================
# ================================================================

def _stringify_con(con: Any) -> str:
    if isinstance(con, str):
        return con
    if isinstance(con, bool):
        return "true" if con else "false"
    if isinstance(con, (dict, list)):
        return json.dumps(con)
    return str(con)


def normalize_con(con: Any) -> str:
    """Trim the content and undo one level of JSON double-encoding."""
    s = _stringify_con(con).strip()
    if '\\"' in s:
        unescaped = s.replace('\\"', '"').replace("\\\\", "\\")
        if unescaped.startswith("{") and unescaped.endswith("}"):
            s = unescaped
    return s


def content_from_cin(cin: Any) -> Tuple[str, str]:
    """Pull (con, ri) out of an m2m:cin object."""
    if not isinstance(cin, dict):
        raise MalformedNotification("no m2m:cin")
    con = cin.get("con")
    if con is None:
        raise MalformedNotification("no con")
    ri = cin.get("ri")
    return normalize_con(con), ("" if ri is None else str(ri))


def load_notification(body: Any) -> Dict[str, Any]:
    """Parse a raw notification body and return its signal (m2m:sgn) object."""
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except (ValueError, RecursionError):
            raise MalformedNotification("invalid json")
    if not isinstance(body, dict):
        raise MalformedNotification("invalid json")

    sgn = body.get("m2m:sgn")
    if sgn is None:
        sgn = body.get("sgn")
    if not isinstance(sgn, dict):
        raise MalformedNotification("no sgn")
    return sgn


def is_verification_request(sgn: Dict[str, Any]) -> bool:
    # (Mobius sends {"m2m:sgn": {"vrq": true, "sur": ...}} when a subscription is created)
    return bool(sgn.get("vrq")) and "nev" not in sgn


def extract_con_ri(body: Any) -> Tuple[str, str]:
    """Extract (con, ri) from a notification body, raw or already-parsed sgn."""
    if isinstance(body, dict) and ("nev" in body or "vrq" in body):
        sgn = body
    else:
        sgn = load_notification(body)

    nev = sgn.get("nev")
    if not isinstance(nev, dict):
        raise MalformedNotification("no nev")

    rep = nev.get("rep")
    if isinstance(rep, list):
        rep = rep[0] if rep else None
    if not isinstance(rep, dict):
        raise MalformedNotification("no rep")

    return content_from_cin(rep.get("m2m:cin"))


# ================================================================
# === Duplicate Suppressor / Actuators ===========================
# ================================================================

def suppress_duplicate(state: EngineState, channel: Channel, command: DecodedCommand) -> str:
    """Decide whether a command on a dedup channel should be applied.

    Returns APPLY, DUPLICATE or IGNORE. Channels that do not opt into
    dedup always get APPLY. On a dedup channel "off" is never stored or
    acted on.
    """
    if not channel.dedup:
        return APPLY
    if command.ri and command.ri == state.dedup.get(channel.name, ""):
        return DUPLICATE
    if not command.on:
        return IGNORE
    state.dedup[channel.name] = command.ri
    return APPLY


def start_pulse(state: EngineState, channel: Channel, relays, now: float,
                duration_ms: int, policy: str = RETRIGGER_IGNORE) -> bool:
    """Trigger the pulse. Returns True if the relay was switched on."""
    pulse = state.pulses.setdefault(channel.name, PulseState())
    if pulse.active:
        if policy == RETRIGGER_EXTEND:
            pulse.deadline = now + duration_ms / 1000.0
            logger.info("FEEDER: pulse extended (%s)", channel.name)
        return False

    pulse.active = True
    pulse.deadline = now + duration_ms / 1000.0
    relays.write(channel.name, True)
    logger.info("FEEDER: pulse start %s (%d ms)", channel.name, duration_ms)
    return True


def service_pulse(state: EngineState, channel: Channel, relays, now: float) -> bool:
    """End the pulse once its deadline is reached. Returns True on PULSING -> IDLE."""
    pulse = state.pulses.get(channel.name)
    if pulse is None or not pulse.active or now < pulse.deadline:
        return False
    relays.write(channel.name, False)
    pulse.active = False
    logger.info("FEEDER: pulse end %s", channel.name)
    return True


def drive_level(state: EngineState, channel: Channel, relays, on: bool) -> None:
    relays.write(channel.name, on)
    state.levels[channel.name] = on


# ================================================================
# === Reconciliation =============================================
# ================================================================

class CommandEngine:
    """Owns EngineState and reconciles push and poll deliveries into actuation."""

    def __init__(
        self,
        channels: List[Channel],
        relays,
        client=None,
        clock: Callable[[], float] = time.monotonic,
        pulse_ms: int = 2000,
        retrigger_policy: str = RETRIGGER_IGNORE,
    ):
        if retrigger_policy not in (RETRIGGER_IGNORE, RETRIGGER_EXTEND):
            raise ValueError("unknown pulse re-trigger policy: %r" % retrigger_policy)
        self.channels = {ch.name: ch for ch in channels}
        self.relays = relays
        self.client = client
        self.clock = clock
        self.pulse_ms = pulse_ms
        self.retrigger_policy = retrigger_policy
        self.state = EngineState()
        self.reset()

    def channel(self, name: str) -> Channel:
        return self.channels[name]

    def reset(self) -> None:
        """Boot state: every relay OFF, every pulse IDLE, no dedup history."""
        self.state = EngineState()
        for ch in self.channels.values():
            self.relays.write(ch.name, False)
            if ch.pulse:
                self.state.pulses[ch.name] = PulseState()
            else:
                self.state.levels[ch.name] = False

    def apply(self, name: str, command: DecodedCommand, source: str = "NOTIFY") -> str:
        """Apply one decoded command. Returns APPLY, DUPLICATE or IGNORE."""
        ch = self.channels[name]
        outcome = suppress_duplicate(self.state, ch, command)
        if outcome == DUPLICATE:
            logger.info("%s: %s duplicate (ri=%s)", source, ch.name, command.ri)
            return outcome
        if outcome == IGNORE:
            logger.info("%s: %s ignored(off)", source, ch.name)
            return outcome

        if ch.pulse:
            if command.on:
                start_pulse(self.state, ch, self.relays, self.clock(),
                            self.pulse_ms, self.retrigger_policy)
                logger.info("%s: %s TRIGGER (ri=%s)", source, ch.name, command.ri)
            return outcome

        drive_level(self.state, ch, self.relays, command.on)
        logger.info("%s: %s %s", source, ch.name, "ON" if command.on else "OFF")
        return outcome

    def service_pulses(self) -> None:
        now = self.clock()
        for ch in self.channels.values():
            if ch.pulse:
                service_pulse(self.state, ch, self.relays, now)

    def poll_channel(self, name: str) -> Optional[str]:
        """Read <container>/la and apply it. Returns the outcome, None if skipped."""
        ch = self.channels[name]
        try:
            cin = self.client.read_latest(ch.container)
        except MobiusError as e:
            logger.warning("POLL: %s skipped: %s", ch.name, e)
            return None
        if cin is None:
            logger.info("POLL: %s latest not found (404)", ch.name)
            return None

        try:
            con, ri = content_from_cin(cin)
            command = decode_command(con, ri)
        except CommandError as e:
            logger.warning("POLL: %s con parse fail: %s", ch.name, e)
            return None
        return self.apply(ch.name, command, source="POLL")

    def poll_all(self) -> Dict[str, Optional[str]]:
        return {name: self.poll_channel(name) for name in self.channels}
