"""Minimal Kubernetes REST client (httpx) for the fleet and chain providers.

In-cluster: API server from KUBERNETES_SERVICE_HOST/PORT, bearer token and CA
bundle from the mounted service account. Outside a cluster (no API URL) the
providers report ProviderUnavailable and the API answers 503 for those panels
only.
"""
import os
from pathlib import Path
from typing import Any

import httpx
import structlog

from roundtable.providers.errors import NotFound, ProviderUnavailable

log = structlog.get_logger()


class KubeClient:
    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        verify: str | bool = True,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            verify=verify,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings=None) -> "KubeClient | None":
        if settings is None:
            from config.settings import get_settings
            settings = get_settings()

        base_url = settings.kube_api_url
        if not base_url:
            host = os.environ.get("KUBERNETES_SERVICE_HOST")
            port = os.environ.get("KUBERNETES_SERVICE_PORT", "443")
            if not host:
                log.warning("kube.not_configured", hint="running outside cluster?")
                return None
            base_url = f"https://{host}:{port}"

        token_path = Path(settings.kube_token_path)
        token = token_path.read_text().strip() if token_path.is_file() else None
        ca_path = Path(settings.kube_ca_path)
        verify: str | bool = str(ca_path) if ca_path.is_file() else True

        log.info("kube.client_ready", api=base_url, token=bool(token))
        return cls(base_url, token=token, verify=verify, timeout=settings.kube_timeout_sec)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: dict[str, Any] | None = None,
                   timeout: float | None = None) -> httpx.Response:
        kwargs: dict[str, Any] = {"params": params}
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            resp = await self._client.get(path, **kwargs)
        except httpx.TransportError as exc:
            raise ProviderUnavailable(f"Kubernetes API unreachable: {exc}") from exc
        if resp.status_code == 404:
            raise NotFound(path)
        resp.raise_for_status()
        return resp

    async def get_json(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        resp = await self._get(path, params)
        return resp.json()

    async def get_text(self, path: str, params: dict[str, Any] | None = None,
                       timeout: float | None = None) -> str:
        resp = await self._get(path, params, timeout)
        return resp.text
