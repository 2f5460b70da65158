"""
Client for the provider service (guides, vehicles, accommodations): booking
counters, guide calendar blocks and cancellation policy snapshots.
"""
from datetime import datetime

import requests

from booking_errors import UpstreamUnavailable
from booking_schemas import CancellationPolicy
from logging_setup import get_logger

logger = get_logger(__name__)

RESOURCE_PATHS = {
    "accommodation": "accommodations",
    "transportation": "transportation",
    "guide": "guide",
}


class ProviderClient:
    def __init__(self, base_url: str, timeout: float = 10.0, session: requests.Session = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _call(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as exc:
            logger.warning("Provider service call %s %s failed: %s", method, url, exc)
            raise UpstreamUnavailable(details={"service": "provider"}) from exc
        if resp.status_code >= 400:
            logger.warning("Provider service call %s %s returned HTTP %s", method, url, resp.status_code)
            raise UpstreamUnavailable(details={"service": "provider"})
        try:
            body = resp.json()
        except ValueError:
            body = {}
        return body if isinstance(body, dict) else {}

    def update_booking_count(self, service_type: str, resource_id: str, increment: int = 1) -> dict:
        """PATCH /{resource}/{id}/booking-count; ``increment`` may be negative."""
        resource = RESOURCE_PATHS[service_type]
        return self._call("PATCH", f"/{resource}/{resource_id}/booking-count", json={"increment": increment})

    def block_guide_availability(self, guide_id: str, start: datetime, end: datetime) -> dict:
        payload = {"startDate": start.isoformat(), "endDate": end.isoformat()}
        return self._call("POST", f"/guide/{guide_id}/availability/block", json=payload)

    def unblock_guide_availability(self, guide_id: str, start: datetime, end: datetime) -> dict:
        payload = {"startDate": start.isoformat(), "endDate": end.isoformat()}
        return self._call("POST", f"/guide/{guide_id}/availability/unblock", json=payload)

    def get_cancellation_policy(self, service_type: str, service_id: str) -> CancellationPolicy:
        """
        Current cancellation policy of a service. A provider without one gets the
        default (no free cancellation).
        """
        resource = RESOURCE_PATHS[service_type]
        body = self._call("GET", f"/{resource}/{service_id}")
        data = body.get("data", body)
        policy = data.get("cancellationPolicy") or {}
        return CancellationPolicy.model_validate(policy)
