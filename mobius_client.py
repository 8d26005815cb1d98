import itertools
import logging
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger("act_server.mobius")

# oneM2M resource types used in Content-Type
TY_SUBSCRIPTION = 23


class MobiusError(Exception):
    """Base class for failed requests to the CSE."""


class TransportFailure(MobiusError):
    """Connection error or timeout talking to the CSE."""


class ProtocolFailure(MobiusError):
    """The CSE answered with an unexpected status code or body."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class MobiusClient:
    """Minimal HTTP binding for the subscription and latest-instance calls."""

    def __init__(self, base_url: str, cse_base: str, ae: str, origin: str,
                 release_version: str = "4", timeout: float = 5.0,
                 verify: Any = True, request_id_start: int = 10000,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.cse_base = cse_base
        self.ae = ae
        self.origin = origin
        self.release_version = release_version
        self.timeout = timeout
        self.verify = verify
        self.session = session or requests.Session()
        self._request_ids = itertools.count(request_id_start)

    def url(self, *parts: str) -> str:
        return "/".join([self.base_url, self.cse_base, self.ae] + list(parts))

    def headers(self, ty: Optional[int] = None, body: bool = False) -> Dict[str, str]:
        # (Important) X-M2M-RI must be unique per request or Mobius answers 400 "rqi is required"
        headers = {
            "Accept": "application/json",
            "X-M2M-Origin": self.origin,
            "X-M2M-RI": str(next(self._request_ids)),
            "X-M2M-RVI": self.release_version,
        }
        if ty is not None:
            headers["Content-Type"] = "application/json;ty=%d" % ty
        elif body:
            headers["Content-Type"] = "application/json"
        return headers

    def _request(self, method: str, url: str, payload: Optional[dict] = None,
                 ty: Optional[int] = None) -> requests.Response:
        try:
            return self.session.request(
                method,
                url,
                json=payload,
                headers=self.headers(ty=ty, body=payload is not None),
                timeout=self.timeout,
                verify=self.verify,
            )
        except requests.RequestException as e:
            raise TransportFailure("%s %s failed: %s" % (method, url, e)) from e

    @staticmethod
    def _json(r: requests.Response) -> Dict[str, Any]:
        try:
            data = r.json()
        except (ValueError, RecursionError):
            raise ProtocolFailure("invalid json body", r.status_code, r.text)
        if not isinstance(data, dict):
            raise ProtocolFailure("unexpected json body", r.status_code, r.text)
        return data

    # --- Subscription ---

    def create_subscription(self, container: str, rn: str, nu: str) -> requests.Response:
        """POST a <sub> on the container. The caller inspects the status code."""
        payload = {
            "m2m:sub": {
                "rn": rn,
                "enc": {"net": [3]},  # Notify only on creation of a child resource (a cin)
                "nct": 2,             # Whole resource
                "nu": [nu],
            }
        }
        return self._request("POST", self.url(container), payload, ty=TY_SUBSCRIPTION)

    def get_subscription_nu(self, container: str, rn: str) -> List[str]:
        r = self._request("GET", self.url(container, rn))
        if r.status_code != 200:
            raise ProtocolFailure("GET subscription: HTTP %d" % r.status_code, r.status_code, r.text)
        sub = self._json(r).get("m2m:sub")
        if not isinstance(sub, dict):
            raise ProtocolFailure("no m2m:sub in subscription", r.status_code, r.text)
        nu = sub.get("nu") or []
        if isinstance(nu, str):
            nu = [nu]
        if not isinstance(nu, list):
            raise ProtocolFailure("unexpected nu in subscription", r.status_code, r.text)
        return [str(u) for u in nu]

    def update_subscription_nu(self, container: str, rn: str, nu: str) -> None:
        payload = {"m2m:sub": {"nu": [nu]}}
        r = self._request("PUT", self.url(container, rn), payload)
        if r.status_code not in (200, 201, 204):
            raise ProtocolFailure("PUT subscription: HTTP %d" % r.status_code, r.status_code, r.text)

    # --- Latest content instance ---

    def read_latest(self, container: str) -> Optional[Dict[str, Any]]:
        """GET <container>/la. Returns the m2m:cin object, or None on 404."""
        r = self._request("GET", self.url(container, "la"))
        if r.status_code == 404:
            return None
        if r.status_code != 200:
            raise ProtocolFailure("GET latest: HTTP %d" % r.status_code, r.status_code, r.text)
        cin = self._json(r).get("m2m:cin")
        if not isinstance(cin, dict):
            raise ProtocolFailure("no m2m:cin in latest", r.status_code, r.text)
        return cin
