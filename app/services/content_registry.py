"""
Content registry client: creator address and title per content id.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional

import aiohttp
import structlog

from app.core.config import settings
from app.core.exceptions import TransportError


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ContentRecord:
    content_id: int
    creator_address: Optional[str]
    title: Optional[str]


class ContentRegistryClient:
    """Reads content records over HTTP, memoizing them for the client's lifetime."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[int] = None):
        self.logger = logger.bind(service="content_registry")
        self.base_url = (base_url or settings.content_registry_url).rstrip("/")
        self.timeout = timeout or settings.content_registry_timeout
        self._records: Dict[int, ContentRecord] = {}

    async def get_record(self, content_id: int) -> ContentRecord:
        if content_id in self._records:
            return self._records[content_id]

        url = f"{self.base_url}/{content_id}"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as response:
                    if response.status == 404:
                        self.logger.warning("Content not found in registry", content_id=content_id)
                        record = ContentRecord(content_id=content_id, creator_address=None, title=None)
                    elif response.status == 200:
                        data = await response.json()
                        record = ContentRecord(
                            content_id=content_id,
                            creator_address=data.get("owner") or data.get("creator_address"),
                            title=data.get("title")
                        )
                    else:
                        raise TransportError(
                            f"Content registry returned HTTP {response.status}",
                            {"content_id": content_id, "status": response.status}
                        )

        except asyncio.TimeoutError:
            raise TransportError("Content registry timeout", {"content_id": content_id})
        except aiohttp.ClientError as e:
            raise TransportError(f"Content registry request failed: {e}", {"content_id": content_id})

        self._records[content_id] = record
        return record

    async def get_creator_address(self, content_id: int) -> Optional[str]:
        return (await self.get_record(content_id)).creator_address

    async def get_title(self, content_id: int) -> Optional[str]:
        return (await self.get_record(content_id)).title


# Global instance
_content_registry: Optional[ContentRegistryClient] = None


async def get_content_registry() -> ContentRegistryClient:
    """Get or create global ContentRegistryClient instance."""
    global _content_registry
    if _content_registry is None:
        _content_registry = ContentRegistryClient()
    return _content_registry
