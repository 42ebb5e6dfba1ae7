"""Generic REST adapter for the ResourceProvider capability.

Endpoints (relative to the configured base URL):
    GET    /schemas/{type}           -> {"immutable_attributes": [...]}
    GET    /data/{type}?k=v          -> {...data source values...}
    POST   /resources/{type}         -> {"id": "...", "attributes": {...}}
    PUT    /resources/{type}/{id}    -> {"id": "...", "attributes": {...}}
    DELETE /resources/{type}/{id}

Error mapping:
    408, 429, 5xx, connection errors   transient ProviderError (retried)
    read timeout on a mutation         AmbiguousOutcomeError (never retried)
    404 on update/destroy              StateConsistencyError
    other 4xx                          permanent ProviderError
"""

import logging
import threading
import uuid
from typing import Any, Optional
from urllib.parse import quote

import requests

from engine.errors import AmbiguousOutcomeError, ProviderError, StateConsistencyError
from engine.plan import CREATE, DESTROY, UPDATE, PlannedChange
from engine.provider import ProviderResult, ResourceSchema, is_retryable

logger = logging.getLogger(__name__)

TRANSIENT_STATUS = (408, 429)


class HttpProvider:
    """ResourceProvider talking to a REST API with requests."""

    def __init__(self, endpoint: str, api_token: str = '', timeout: float = 30.0):
        self.endpoint = endpoint.rstrip('/')
        self.api_token = api_token
        self.timeout = timeout
        self._idempotency_keys: dict[str, str] = {}
        self._lock = threading.Lock()

    def _headers(self, extra: Optional[dict] = None) -> dict:
        headers = {'Accept': 'application/json'}
        if self.api_token:
            headers['Authorization'] = f'Bearer {self.api_token}'
        if extra:
            headers.update(extra)
        return headers

    def _idempotency_key(self, change: PlannedChange) -> str:
        """Stable key for every attempt of the same create."""
        with self._lock:
            return self._idempotency_keys.setdefault(change.id, str(uuid.uuid4()))

    def _release_idempotency_key(self, change: PlannedChange) -> None:
        with self._lock:
            self._idempotency_keys.pop(change.id, None)

    def _request(self, method: str, path: str, change: Optional[PlannedChange] = None,
                 headers: Optional[dict] = None, **kwargs: Any) -> requests.Response:
        url = f'{self.endpoint}{path}'
        what = f'{method} {path}'
        try:
            resp = requests.request(
                method, url, headers=self._headers(headers), timeout=self.timeout, **kwargs)
        except requests.exceptions.ReadTimeout as e:
            if change is not None:
                raise AmbiguousOutcomeError(f"{what} timed out waiting for a response: {e}")
            raise ProviderError(f"{what} timed out: {e}", transient=True)
        except requests.exceptions.ConnectionError as e:
            raise ProviderError(f"Cannot connect to {self.endpoint}: {e}", transient=True)
        except requests.exceptions.Timeout as e:
            raise ProviderError(f"{what} timed out: {e}", transient=True)
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"{what} failed: {e}")

        if resp.status_code < 400:
            return resp

        detail = resp.text[:200]
        if resp.status_code == 404 and change is not None and change.kind in (UPDATE, DESTROY):
            raise StateConsistencyError(str(change.instance_key), change.provider_id, f"{what} returned 404")
        transient = resp.status_code in TRANSIENT_STATUS or resp.status_code >= 500
        raise ProviderError(f"{what} returned {resp.status_code}: {detail}",
                            transient=transient, status=resp.status_code)

    @staticmethod
    def _json(resp: requests.Response, what: str) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(f"{what}: invalid JSON response: {e}")

    @staticmethod
    def _resource_path(resource_type: str, provider_id: Optional[str] = None) -> str:
        path = f"/resources/{quote(resource_type, safe='')}"
        if provider_id is not None:
            path += f"/{quote(provider_id, safe='')}"
        return path

    def schema(self, resource_type: str) -> ResourceSchema:
        path = f"/schemas/{quote(resource_type, safe='')}"
        try:
            resp = self._request('GET', path)
        except ProviderError as e:
            if e.status == 404:
                logger.debug(f"No schema for {resource_type}; treating all attributes as updatable")
                return ResourceSchema(resource_type)
            raise
        data = self._json(resp, path) or {}
        return ResourceSchema(resource_type, frozenset(data.get('immutable_attributes', [])))

    def read_data(self, data_type: str, attributes: dict) -> dict:
        path = f"/data/{quote(data_type, safe='')}"
        data = self._json(self._request('GET', path, params=attributes), path)
        if not isinstance(data, dict):
            raise ProviderError(f"{path}: expected an object, got {type(data).__name__}")
        return data

    def execute(self, change: PlannedChange) -> ProviderResult:
        body = {'attributes': change.desired_attributes}
        if change.kind == CREATE:
            path = self._resource_path(change.resource_type)
            try:
                resp = self._request('POST', path, change=change, json=body,
                                     headers={'Idempotency-Key': self._idempotency_key(change)})
            except ProviderError as e:
                if not is_retryable(e):
                    self._release_idempotency_key(change)
                raise
            self._release_idempotency_key(change)
        elif change.kind == UPDATE:
            path = self._resource_path(change.resource_type, change.provider_id)
            resp = self._request('PUT', path, change=change, json=body)
        elif change.kind == DESTROY:
            path = self._resource_path(change.resource_type, change.provider_id)
            self._request('DELETE', path, change=change)
            return ProviderResult()
        else:
            raise ProviderError(f"Unsupported change kind: {change.kind}")

        data = self._json(resp, path) or {}
        provider_id = data.get('id') or change.provider_id
        if provider_id is None:
            raise ProviderError(f"{path}: response did not include an id")
        return ProviderResult(str(provider_id), dict(data.get('attributes') or {}))
