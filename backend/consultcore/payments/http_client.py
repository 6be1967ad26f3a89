"""Thin JSON-over-HTTP client shared by the REST gateway bindings."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, cast

import httpx

from consultcore.core.exceptions import GatewayException

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS_CODES = {429, 502, 503, 504}


class GatewayHttpClient:
    def __init__(
        self,
        *,
        gateway: str,
        base_url: str,
        timeout: float,
        transport: httpx.BaseTransport | None = None,
        default_headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self._gateway = gateway
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._default_headers = {"Accept": "application/json", **(default_headers or {})}

    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Dict[str, Any] | None = None,
        data: Dict[str, Any] | None = None,
        headers: Dict[str, str] | None = None,
        auth: httpx.Auth | tuple[str, str] | None = None,
    ) -> Dict[str, Any]:
        """Perform a request and return the parsed JSON payload."""
        url = f"{self._base_url}{path}"
        with httpx.Client(
            timeout=self._timeout,
            transport=self._transport,
            headers=self._default_headers,
        ) as client:
            try:
                response = client.request(
                    method,
                    url,
                    json=json_body,
                    data=data,
                    headers=headers,
                    auth=auth,
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                logger.error(
                    "%s API error %s for %s %s: %s",
                    self._gateway,
                    status,
                    method,
                    path,
                    exc.response.text[:500],
                )
                raise GatewayException(
                    f"{self._gateway} API responded with status {status}",
                    gateway=self._gateway,
                    transient=status in _TRANSIENT_STATUS_CODES,
                    upstream_status=status,
                ) from exc
            except httpx.TransportError as exc:
                logger.warning("%s request failure for %s %s: %s", self._gateway, method, path, exc)
                raise GatewayException(
                    f"Failed to reach {self._gateway} API",
                    gateway=self._gateway,
                    transient=True,
                ) from exc

        if not response.content:
            return {}
        try:
            return cast(Dict[str, Any], response.json())
        except json.JSONDecodeError as exc:
            raise GatewayException(
                f"Received malformed JSON from {self._gateway}",
                gateway=self._gateway,
            ) from exc
