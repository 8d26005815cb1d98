import logging
import socket
from typing import Dict, Iterable
from urllib.parse import urlsplit

from mobius_client import MobiusClient, MobiusError

logger = logging.getLogger("act_server.sub")

# Subscription outcomes
CREATED = "created"
UP_TO_DATE = "up-to-date"
UPDATED = "updated"
FAILED = "failed"


def resolve_device_ip(mobius_url: str, configured: str = "") -> str:
    """The address the CSE can reach us on.

    Uses the configured value when set, else the local end of a UDP
    socket routed towards the CSE host (no packet is sent).
    """
    if configured:
        return configured
    parts = urlsplit(mobius_url)
    host = parts.hostname or "127.0.0.1"
    port = parts.port or (443 if parts.scheme == "https" else 80)
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        s.connect((host, port))
        return s.getsockname()[0]


def notification_url(device_ip: str, port: int, path: str) -> str:
    return "http://%s:%d/%s" % (device_ip, port, path.lstrip("/"))


def _host_registered(nu_url: str, registered: Iterable[str]) -> bool:
    host = urlsplit(nu_url).hostname
    for entry in registered:
        # (nu entries may also be AE-IDs rather than URLs; those have no hostname)
        try:
            if urlsplit(entry).hostname == host:
                return True
        except ValueError:
            logger.warning("SUB: unparsable nu entry %r", entry)
    return False


def ensure_subscription(client: MobiusClient, channel, device_ip: str, port: int) -> str:
    """Make sure the channel's container pushes to our current webhook URL.

    Returns CREATED, UP_TO_DATE, UPDATED or FAILED. A conflict (409) is
    healed by reading the existing subscription back and replacing its
    nu list when our host is not in it.
    """
    nu = notification_url(device_ip, port, channel.path)
    logger.info("SUB: %s -> POST %s (nu=%s)", channel.name, client.url(channel.container), nu)

    try:
        r = client.create_subscription(channel.container, channel.sub_name, nu)
        logger.info("SUB: %s -> HTTP %d", channel.name, r.status_code)

        if r.status_code == 201:
            return CREATED

        if r.status_code == 409:  # (409 Conflict = already exists -> check and correct nu)
            logger.info("SUB: %s already exists (%s)", channel.name, channel.sub_name)
            registered = client.get_subscription_nu(channel.container, channel.sub_name)
            if _host_registered(nu, registered):
                logger.info("SUB: nu already up-to-date for %s", channel.sub_name)
                return UP_TO_DATE
            client.update_subscription_nu(channel.container, channel.sub_name, nu)
            logger.info("SUB: %s nu replaced %s -> [%s]", channel.sub_name, registered, nu)
            return UPDATED

        logger.warning("SUB: %s status %s: %s", channel.name, r.status_code, r.text)
    except MobiusError as e:
        logger.warning("SUB: %s error: %s", channel.name, e)
    return FAILED


def ensure_subscriptions(client: MobiusClient, channels, device_ip: str, port: int) -> Dict[str, str]:
    results = {ch.name: ensure_subscription(client, ch, device_ip, port) for ch in channels}
    logger.info("SUB: result %s", " ".join("%s=%s" % kv for kv in results.items()))
    return results


def refresh_subscriptions(client: MobiusClient, channels, mobius_url: str,
                          configured_ip: str, port: int) -> Dict[str, str]:
    """Re-resolve our address and ensure every channel's subscription."""
    try:
        device_ip = resolve_device_ip(mobius_url, configured_ip)
    except OSError as e:
        # (No route to the CSE yet: stay on polling until the next /resubscribe)
        logger.warning("SUB: cannot determine device address: %s", e)
        return {}
    return ensure_subscriptions(client, channels, device_ip, port)
