# coding: utf-8
"""
Heartbeat Processor

Full node heartbeat flow:
1. Authenticate node (id + secret)
2. Mark node online
3. Cache probe data
4. Compute traffic deltas (DeltaTracker)
5. Apply each non-zero delta to the quota ledger and append a traffic log

Traffic accounting never fails the heartbeat: a Redis outage skips the whole
cycle (the next report catches up against the old snapshot), a ledger error
skips that rule only.
"""
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import List, Mapping, Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import CacheUnavailableError, RuleNotFoundError
from src.database.crud import create_traffic_log
from src.services.metering.delta_tracker import DeltaTracker, group_counters
from src.services.metering.quota_ledger import QuotaLedger
from src.services.node_service import NodeService


@dataclass
class HeartbeatResult:
    """Outcome of one heartbeat"""

    node_id: int
    rules_reported: int = 0
    rules_updated: List[int] = field(default_factory=list)
    rules_disabled: List[int] = field(default_factory=list)
    rules_failed: List[int] = field(default_factory=list)

    # Redis was down, traffic not accounted this cycle
    accounting_skipped: bool = False


class HeartbeatProcessor:
    """Processes node heartbeats"""

    def __init__(
        self,
        node_service: NodeService,
        tracker: Optional[DeltaTracker] = None,
        ledger: Optional[QuotaLedger] = None,
    ):
        self.node_service = node_service
        self.tracker = tracker or DeltaTracker(node_service.redis)
        self.ledger = ledger or QuotaLedger()

    async def process(
        self,
        session: AsyncSession,
        node_id: int,
        secret: str,
        traffic_stats: Optional[Mapping[str, int]] = None,
        probe: Optional[dict] = None,
    ) -> HeartbeatResult:
        """
        Handle a heartbeat

        Raises:
            NodeAuthError: Unknown node or wrong secret
            SQLAlchemyError: Node status could not be written
        """
        node = await self.node_service.authenticate_node(session, node_id, secret)
        # Per-rule rollbacks below expire loaded instances
        node_name = node.name

        await self.node_service.mark_online(session, node_id)

        if probe is not None:
            await self.node_service.save_probe_data(node_id, probe)

        result = HeartbeatResult(node_id=node_id)
        if traffic_stats:
            await self.account_traffic(session, node_id, traffic_stats, result)

        logger.info(
            f"Heartbeat from node {node_id} ({node_name}): "
            f"{len(result.rules_updated)} rules updated, {len(result.rules_disabled)} disabled"
        )
        return result

    async def account_traffic(
        self,
        session: AsyncSession,
        node_id: int,
        traffic_stats: Mapping[str, int],
        result: Optional[HeartbeatResult] = None,
    ) -> HeartbeatResult:
        """
        Turn a counter batch into ledger writes and traffic logs

        Args:
            session: Database session
            node_id: Reporting node (already authenticated)
            traffic_stats: Raw cumulative counters
            result: Result to fill in (a new one is created if omitted)

        Returns:
            HeartbeatResult
        """
        if result is None:
            result = HeartbeatResult(node_id=node_id)

        try:
            deltas = await self.tracker.compute_deltas(node_id, traffic_stats)
        except CacheUnavailableError as e:
            logger.warning(f"Node {node_id}: traffic deltas not computed, skipping accounting: {e}")
            result.accounting_skipped = True
            return result

        result.rules_reported = len(group_counters(traffic_stats))
        now = datetime.now(UTC)

        for rule_id, delta in sorted(deltas.items()):
            if delta.total <= 0:
                continue

            try:
                disabled = await self.ledger.apply_delta(session, rule_id, delta.total)
            except RuleNotFoundError:
                logger.warning(f"Node {node_id} reported traffic for unknown rule {rule_id}")
                result.rules_failed.append(rule_id)
                continue
            except SQLAlchemyError as e:
                logger.warning(f"Node {node_id}: failed to update traffic for rule {rule_id}: {e}")
                result.rules_failed.append(rule_id)
                continue

            if disabled:
                logger.warning(
                    f"Rule {rule_id} disabled: traffic limit reached (node {node_id})"
                )
                result.rules_disabled.append(rule_id)

            try:
                create_traffic_log(
                    session,
                    rule_id=rule_id,
                    node_id=node_id,
                    bytes_in=delta.bytes_in,
                    bytes_out=delta.bytes_out,
                    timestamp=now,
                )
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Failed to write traffic log for rule {rule_id}: {e}")

            result.rules_updated.append(rule_id)

        logger.debug(
            f"Node {node_id} traffic accounted: {len(result.rules_updated)} rules, "
            f"{len(result.rules_disabled)} disabled"
        )
        return result
