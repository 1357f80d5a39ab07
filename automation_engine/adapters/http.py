"""
HTTP Effect Adapter

aiohttp-backed implementation of the webhook capability. Other capabilities
are delegated to a fallback adapter supplied by the host application.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from ..effects import DeviceActionKind, EffectAdapter, MessageKind, NullEffectAdapter, WebhookResponse
from ..errors import EffectAdapterError

logger = logging.getLogger(__name__)


def _parse_body(text: str, content_type: str) -> Any:
    if not text:
        return None
    if "json" in content_type:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            logger.debug("Response declared JSON but did not parse, keeping text")
    return text


class HttpEffectAdapter(EffectAdapter):
    """
    Effect adapter that performs webhook calls over HTTP.

    Dict and list bodies are sent as JSON, anything else as text. JSON
    responses are decoded. Transport errors raise EffectAdapterError; timeouts
    raise ``asyncio.TimeoutError`` so the engine reports them as timeouts.

    Example:
        async with HttpEffectAdapter(fallback=device_adapter) as effects:
            engine = AutomationEngine(effects=effects)
            report = await engine.start(automation)
    """

    supports_cancellation = True

    def __init__(
        self,
        fallback: Optional[EffectAdapter] = None,
        total_connections: int = 20,
        per_host_connections: int = 5,
        default_timeout: float = 15.0,
        max_retries: int = 0,
        retry_backoff_factor: float = 0.5,
        retry_statuses: Optional[List[int]] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize the adapter.

        Args:
            fallback: Adapter for notification, messaging, device and app capabilities
            total_connections: Total connection pool limit
            per_host_connections: Per-host connection limit
            default_timeout: Timeout in seconds when a call passes none
            max_retries: Retries for statuses in ``retry_statuses`` (off by default,
                webhooks are not assumed to be idempotent)
            retry_backoff_factor: Exponential backoff factor for retries
            retry_statuses: HTTP status codes that trigger a retry
            session: Existing session to use; it is not closed by this adapter
        """
        self.fallback = fallback or NullEffectAdapter()
        self.total_connections = total_connections
        self.per_host_connections = per_host_connections
        self.default_timeout = default_timeout
        self.max_retries = max_retries
        self.retry_backoff_factor = retry_backoff_factor
        self.retry_statuses = retry_statuses or [429, 502, 503, 504]

        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "HttpEffectAdapter":
        """Async context manager entry."""
        await self._initialize_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    async def _initialize_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            connector = aiohttp.TCPConnector(
                limit=self.total_connections,
                limit_per_host=self.per_host_connections,
            )
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self.default_timeout),
                raise_for_status=False,
            )
            self._owns_session = True
            logger.debug("Initialized HTTP effect adapter session")
        return self._session

    async def close(self) -> None:
        """Close the session if this adapter created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
            logger.debug("Closed HTTP effect adapter session")
        self._session = None

    async def call_webhook(
        self,
        url: str,
        method: str,
        headers: Dict[str, str],
        body: Any,
        timeout: Optional[float],
        **kwargs,
    ) -> WebhookResponse:
        """
        Perform an HTTP request.

        Raises:
            EffectAdapterError: On transport errors
            asyncio.TimeoutError: If the request times out
        """
        session = await self._initialize_session()

        request_kwargs: Dict[str, Any] = {"headers": headers or {}}
        if isinstance(body, (dict, list)):
            request_kwargs["json"] = body
        elif body is not None:
            request_kwargs["data"] = body if isinstance(body, (str, bytes)) else str(body)
        request_kwargs["timeout"] = aiohttp.ClientTimeout(
            total=timeout if timeout else self.default_timeout
        )

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                delay = self.retry_backoff_factor * (2 ** (attempt - 1))
                logger.debug(f"Retrying {method} {url} after {delay:.2f}s")
                await asyncio.sleep(delay)

            try:
                async with session.request(method.upper(), url, **request_kwargs) as response:
                    text = await response.text()
                    status = response.status
                    logger.debug(f"{method.upper()} {url} -> {status}")

                    if attempt < self.max_retries and status in self.retry_statuses:
                        logger.warning(f"{method.upper()} {url} returned {status}, will retry")
                        continue

                    return WebhookResponse(
                        status=status,
                        body=_parse_body(text, response.headers.get("Content-Type", "")),
                        headers=dict(response.headers),
                    )
            except asyncio.TimeoutError:
                raise
            except aiohttp.ClientError as e:
                raise EffectAdapterError(
                    f"{method.upper()} {url} failed: {e}",
                    capability="call_webhook",
                    original_error=e,
                )

        # Unreachable: the last attempt always returns
        raise EffectAdapterError(f"{method.upper()} {url} failed", capability="call_webhook")

    async def send_notification(self, message: str, title: Optional[str] = None, **kwargs) -> None:
        await self.fallback.send_notification(message, title=title, **kwargs)

    async def send_message(
        self,
        kind: MessageKind,
        target: str,
        body: str,
        subject: Optional[str] = None,
        **kwargs,
    ) -> None:
        await self.fallback.send_message(kind, target, body, subject=subject, **kwargs)

    async def device_action(
        self, kind: DeviceActionKind, params: Dict[str, Any], **kwargs
    ) -> None:
        await self.fallback.device_action(kind, params, **kwargs)

    async def launch_app(self, app_id: str, **kwargs) -> None:
        await self.fallback.launch_app(app_id, **kwargs)
