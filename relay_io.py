import logging
from typing import Dict, List, Tuple

logger = logging.getLogger("act_server.relay")


class RelayBoard:
    """Relay outputs by channel name, with active-low translation.

    In simulation mode no GPIO library is touched; writes are kept in
    ``states`` and ``history`` instead.
    """

    def __init__(self, pins: Dict[str, int], active_low: bool = True, simulate: bool = False):
        self.pins = dict(pins)
        self.active_low = active_low
        self.simulate = simulate
        self.states: Dict[str, bool] = {}
        self.history: List[Tuple[str, bool]] = []
        self.GPIO = None

        if not simulate:
            import RPi.GPIO as GPIO  # only available on the Pi itself

            self.GPIO = GPIO
            self.GPIO.setwarnings(False)
            self.GPIO.setmode(self.GPIO.BCM)

        # (Important) Reset every relay to the safe OFF state at boot
        for name, pin in self.pins.items():
            if self.GPIO is not None:
                self.GPIO.setup(pin, self.GPIO.OUT, initial=self._level(False))
            self.states[name] = False
        logger.info("Relays ready (%s): %s", "simulated" if simulate else "GPIO", self.pins)

    def _level(self, on: bool) -> int:
        if self.active_low:
            return 0 if on else 1
        return 1 if on else 0

    def write(self, name: str, on: bool) -> None:
        pin = self.pins[name]
        if self.GPIO is not None:
            self.GPIO.output(pin, self._level(on))
        self.states[name] = bool(on)
        self.history.append((name, bool(on)))

    def cleanup(self) -> None:
        if self.GPIO is not None:
            self.GPIO.cleanup()
