"""
Consumer Callbacks - delivery of the final value to the requesting consumer

In-process handlers are registered per (target, method). Targets that look
like http(s) URLs are delivered as a JSON webhook POST instead. Delivery is
attempted exactly once; failures surface as CallbackDeliveryError.
"""

import asyncio
import logging
from typing import Optional, Dict, Any, Callable, Tuple

import httpx

from .errors import CallbackDeliveryError
from .request import CallbackSelector

logger = logging.getLogger("quorum.broker.callbacks")


class CallbackRouter:
    """Resolves a CallbackSelector to a handler and invokes it once"""

    def __init__(self, webhook_timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.webhook_timeout = webhook_timeout
        self._handlers: Dict[Tuple[str, str], Callable] = {}
        self._client = client

    def register(self, target: str, handler: Callable, method: str = "fulfill"):
        """Handler is called as handler(request_id, value)"""
        self._handlers[(target, method)] = handler

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient()
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def deliver(self, selector: CallbackSelector, request_id: str, value: Any):
        """
        Deliver value to the consumer.

        Raises:
            CallbackDeliveryError: If no handler exists or the handler fails
        """
        handler = self._handlers.get((selector.target, selector.method))

        try:
            if handler is not None:
                if asyncio.iscoroutinefunction(handler):
                    await handler(request_id, value)
                else:
                    handler(request_id, value)
            elif selector.target.startswith(("http://", "https://")):
                await self._post_webhook(selector, request_id, value)
            else:
                raise LookupError(f"No callback handler for {selector.target}.{selector.method}")
        except Exception as e:
            raise CallbackDeliveryError(request_id, selector.target, original_error=e)

        logger.info(f"Callback delivered: request={request_id} target={selector.target}")

    async def _post_webhook(self, selector: CallbackSelector, request_id: str, value: Any):
        client = await self._get_client()
        response = await client.post(
            selector.target,
            json={
                "request_id": request_id,
                "method": selector.method,
                "value": value,
            },
            timeout=httpx.Timeout(self.webhook_timeout)
        )
        response.raise_for_status()
