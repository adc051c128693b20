# coding: utf-8
"""
Node Service

Node-side authentication, online status and probe data.

Probe data (CPU / memory / network) is never stored in the database; the
latest report per node is cached in Redis for CacheTTL.NODE_PROBE seconds.
"""
import hmac
from typing import Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from config.cache_config import CacheTTL
from src.cache.cache_keys import node_probe_key
from src.cache.redis_manager import RedisManager, get_redis_manager
from src.core.enums import NodeStatus
from src.core.exceptions import NodeAuthError
from src.database.crud import get_node_by_id, update_node_status
from src.database.models import Node


class NodeService:
    """Service for node heartbeats and reports"""

    def __init__(self, redis: Optional[RedisManager] = None):
        self.redis = redis or get_redis_manager()

    async def authenticate_node(
        self, session: AsyncSession, node_id: int, secret: str
    ) -> Node:
        """
        Check a node's ID/secret pair

        Unknown node and wrong secret are reported the same way.

        Returns:
            Node model

        Raises:
            NodeAuthError: Unknown node or secret mismatch
        """
        node = await get_node_by_id(session, node_id)
        if node is None or not hmac.compare_digest(
            node.secret.encode("utf-8"), (secret or "").encode("utf-8")
        ):
            raise NodeAuthError(f"Invalid secret for node {node_id}")
        return node

    async def mark_online(self, session: AsyncSession, node_id: int) -> None:
        """Set node online and refresh last_seen"""
        await update_node_status(session, node_id, NodeStatus.ONLINE)

    async def save_probe_data(self, node_id: int, probe: dict) -> bool:
        """
        Cache the latest probe report

        Returns:
            True if cached (False when Redis is unavailable)
        """
        saved = await self.redis.set(node_probe_key(node_id), probe, ttl=CacheTTL.NODE_PROBE)
        if not saved:
            logger.debug(f"Probe data for node {node_id} not cached")
        return saved

    async def get_probe_data(self, node_id: int) -> Optional[dict]:
        """Latest cached probe report or None"""
        data = await self.redis.get(node_probe_key(node_id))
        return data if isinstance(data, dict) else None


# Global service instance
_node_service: Optional[NodeService] = None


def get_node_service() -> NodeService:
    """Get global NodeService instance (singleton)"""
    global _node_service
    if _node_service is None:
        _node_service = NodeService()
    return _node_service
