from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

import httpx
import msgspec

from .api_schemas import Update
from .errors import TransportError, WebhookConflictError, is_webhook_conflict
from .logging import get_logger

logger = get_logger(__name__)

DEFAULT_API_BASE = "https://api.telegram.org"


class UpdateSource(Protocol):
    async def get_updates(self, params: Mapping[str, Any]) -> list[Update]: ...

    async def delete_webhook(self) -> bool: ...

    async def close(self) -> None: ...


def retry_after_from_payload(payload: dict[str, Any]) -> float | None:
    params = payload.get("parameters")
    if isinstance(params, dict):
        retry_after = params.get("retry_after")
        if isinstance(retry_after, (int, float)):
            return float(retry_after)
    return None


def _api_error(
    method: str,
    *,
    status_code: int | None,
    description: str,
    payload: Any = None,
) -> TransportError:
    error_cls = (
        WebhookConflictError if is_webhook_conflict(status_code) else TransportError
    )
    retry_after = (
        retry_after_from_payload(payload) if isinstance(payload, dict) else None
    )
    return error_cls(
        description,
        method=method,
        status_code=status_code,
        retry_after=retry_after,
    )


class HttpUpdateSource:
    """Bot API ``getUpdates``/``deleteWebhook`` over httpx.

    Every failure is raised as ``TransportError``; a 409 is raised as
    ``WebhookConflictError``.
    """

    def __init__(
        self,
        token: str,
        *,
        api_base: str = DEFAULT_API_BASE,
        timeout_s: float = 120,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not token:
            raise ValueError("Telegram token is empty")
        self._base = f"{api_base.rstrip('/')}/bot{token}"
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_http_client = http_client is None

    async def close(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _request(self, method: str, params: Mapping[str, Any]) -> Any:
        logger.debug("telegram.request", method=method, payload=dict(params))
        try:
            resp = await self._http_client.post(
                f"{self._base}/{method}", json=dict(params)
            )
        except httpx.HTTPError as exc:
            url = getattr(exc.request, "url", None)
            logger.error(
                "telegram.network_error",
                method=method,
                url=str(url) if url is not None else None,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise TransportError(str(exc), method=method) from exc

        try:
            payload = resp.json()
        except ValueError:
            payload = None

        if resp.is_error:
            description = (
                payload.get("description")
                if isinstance(payload, dict)
                else None
            ) or resp.text
            logger.error(
                "telegram.http_error",
                method=method,
                status=resp.status_code,
                url=str(resp.request.url),
                body=resp.text,
            )
            raise _api_error(
                method,
                status_code=resp.status_code,
                description=description,
                payload=payload,
            )

        if not isinstance(payload, dict):
            logger.error(
                "telegram.bad_response",
                method=method,
                status=resp.status_code,
                url=str(resp.request.url),
                body=resp.text,
            )
            raise TransportError(
                "invalid response payload",
                method=method,
                status_code=resp.status_code,
            )

        if not payload.get("ok"):
            error_code = payload.get("error_code")
            logger.error(
                "telegram.api_error",
                method=method,
                url=str(resp.request.url),
                payload=payload,
            )
            raise _api_error(
                method,
                status_code=error_code if isinstance(error_code, int) else None,
                description=str(payload.get("description") or "request failed"),
                payload=payload,
            )

        logger.debug("telegram.response", method=method, payload=payload)
        return payload.get("result")

    async def get_updates(self, params: Mapping[str, Any]) -> list[Update]:
        result = await self._request("getUpdates", params)
        try:
            return msgspec.convert(result, type=list[Update])
        except msgspec.ValidationError as exc:
            logger.error(
                "telegram.decode_error",
                method="getUpdates",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise TransportError(
                f"cannot decode updates: {exc}", method="getUpdates"
            ) from exc

    async def delete_webhook(self) -> bool:
        result = await self._request("deleteWebhook", {})
        return bool(result)

