"""
Provider Channels - how sub-requests reach provider nodes

Providers are fire-and-forget: a channel only has to hand the descriptor
over. Responses come back through the aggregator, never through the channel.

Channels:
- InMemoryProviderChannel: one asyncio.Queue per provider
- RedisProviderChannel: LPUSH onto provider:{ref}:requests
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Any, Optional

logger = logging.getLogger("quorum.broker.providers")


@dataclass(frozen=True)
class SubRequestDescriptor:
    """Everything a provider needs to do the work and address its response"""
    agreement_id: str
    request_id: str
    sub_request_id: str
    provider_ref: str
    job_spec: str
    fee: int
    callback_address: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agreement_id": self.agreement_id,
            "request_id": self.request_id,
            "sub_request_id": self.sub_request_id,
            "provider_ref": self.provider_ref,
            "job_spec": self.job_spec,
            "fee": self.fee,
            "callback_address": self.callback_address,
        }


class ProviderChannel(ABC):
    """Delivery of sub-request descriptors to providers"""

    @abstractmethod
    async def send(self, descriptor: SubRequestDescriptor) -> None:
        ...


class InMemoryProviderChannel(ProviderChannel):
    """Per-provider asyncio queues"""

    def __init__(self):
        self.queues: Dict[str, asyncio.Queue] = {}

    def queue_for(self, provider_ref: str) -> asyncio.Queue:
        if provider_ref not in self.queues:
            self.queues[provider_ref] = asyncio.Queue()
        return self.queues[provider_ref]

    async def send(self, descriptor: SubRequestDescriptor) -> None:
        await self.queue_for(descriptor.provider_ref).put(descriptor)

    def pending(self, provider_ref: str) -> int:
        return self.queue_for(provider_ref).qsize()


class RedisProviderChannel(ProviderChannel):
    """Pushes JSON descriptors onto a Redis list per provider"""

    KEY_TEMPLATE = "provider:{ref}:requests"

    def __init__(self, client: Optional[Any] = None, url: Optional[str] = None):
        if client is None:
            import redis.asyncio as aioredis
            client = aioredis.from_url(url or "redis://localhost:6379/0", decode_responses=True)
        self.client = client

    def key_for(self, provider_ref: str) -> str:
        return self.KEY_TEMPLATE.format(ref=provider_ref)

    async def send(self, descriptor: SubRequestDescriptor) -> None:
        key = self.key_for(descriptor.provider_ref)
        await self.client.lpush(key, json.dumps(descriptor.to_dict()))
        logger.debug(f"Queued sub-request {descriptor.sub_request_id} on {key}")

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def close(self):
        await self.client.aclose()
