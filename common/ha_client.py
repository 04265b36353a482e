import logging
from typing import Any, Dict, List, Optional

import requests

from common.errors import DispatchError


class HomeAssistantClient:
    """
    Thin REST client for Home Assistant.

    `call_service` returns the provider result shape
    {"success": bool, "data"?, "error"?, "error_code"?} that the executor
    normalizes. Transport failures raise DispatchError.
    """

    def __init__(self, base_url: str, token: Optional[str], timeout: float = 10.0, session=None):
        self.logger = logging.getLogger("HomeAssistant")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if token:
            self.session.headers.update({"Authorization": f"Bearer {token}"})

    def get_state(self, entity_id: str) -> Optional[Dict[str, Any]]:
        """Full state object for one entity, or None when it cannot be read."""
        try:
            resp = self.session.get(f"{self.base_url}/api/states/{entity_id}", timeout=self.timeout)
        except requests.RequestException as e:
            self.logger.error(f"Failed to read {entity_id}: {e}")
            return None
        if resp.status_code != 200:
            self.logger.warning(f"Reading {entity_id} returned HTTP {resp.status_code}")
            return None
        return resp.json()

    def get_states(self) -> List[Dict[str, Any]]:
        try:
            resp = self.session.get(f"{self.base_url}/api/states", timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            self.logger.error(f"Failed to read states: {e}")
            return []
        return resp.json()

    def call_service(self, domain: str, service: str, data: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/api/services/{domain}/{service}"
        try:
            resp = self.session.post(url, json=data, timeout=self.timeout)
        except requests.RequestException as e:
            raise DispatchError(f"Service call {domain}.{service} failed: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {"message": resp.text} if resp.text else None

        if resp.ok:
            return {"success": True, "data": body}
        return {"success": False, "data": body, "error_code": str(resp.status_code)}
