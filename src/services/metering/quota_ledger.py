# coding: utf-8
"""
Quota Ledger

Applies traffic deltas to forwarding_rules.traffic_used and enforces the
per-rule hard cap.

Everything happens in one guarded UPDATE so concurrent heartbeats (or an
admin editing the limit) can never push traffic_used past traffic_limit:

    UPDATE forwarding_rules
    SET traffic_used = CASE WHEN traffic_limit > 0
                             AND traffic_used + :d >= traffic_limit
                            THEN traffic_limit ELSE traffic_used + :d END,
        enabled      = CASE WHEN <same condition> THEN false ELSE enabled END
    WHERE id = :rule_id
"""
from typing import Optional

from loguru import logger
from sqlalchemy import and_, case, false, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.limits import MAX_DELTA_PER_CALL
from src.core.exceptions import RuleNotFoundError
from src.database.models import ForwardingRule


class QuotaLedger:
    """Persistent per-rule usage counter with a hard cap"""

    def __init__(self, max_delta: int = MAX_DELTA_PER_CALL):
        self.max_delta = max_delta

    async def apply_delta(
        self, session: AsyncSession, rule_id: int, total_bytes: int
    ) -> bool:
        """
        Add bytes to a rule's usage

        Args:
            session: Database session (committed on success, rolled back on error)
            rule_id: Forwarding rule ID
            total_bytes: Bytes to add; <= 0 is a no-op, values above
                max_delta are truncated to max_delta

        Returns:
            True if the rule is at its cap and disabled after this write

        Raises:
            RuleNotFoundError: No such rule
            SQLAlchemyError: Store failure (transaction rolled back)
        """
        if total_bytes <= 0:
            return False

        if total_bytes > self.max_delta:
            logger.warning(
                f"Rule {rule_id}: delta {total_bytes} exceeds {self.max_delta}, truncating"
            )
            total_bytes = self.max_delta

        new_used = ForwardingRule.traffic_used + total_bytes
        reaches_cap = and_(
            ForwardingRule.traffic_limit > 0,
            new_used >= ForwardingRule.traffic_limit,
        )

        stmt = (
            update(ForwardingRule)
            .where(ForwardingRule.id == rule_id)
            .values(
                traffic_used=case((reaches_cap, ForwardingRule.traffic_limit), else_=new_used),
                enabled=case((reaches_cap, false()), else_=ForwardingRule.enabled),
            )
            .execution_options(synchronize_session=False)
        )

        try:
            await session.execute(stmt)

            # Same transaction: the row is still locked by our UPDATE
            result = await session.execute(
                select(ForwardingRule.traffic_used, ForwardingRule.traffic_limit).where(
                    ForwardingRule.id == rule_id
                )
            )
            row: Optional[tuple] = result.one_or_none()
            if row is None:
                await session.rollback()
                raise RuleNotFoundError(f"Rule {rule_id} not found")

            await session.commit()

        except RuleNotFoundError:
            raise
        except Exception:
            await session.rollback()
            raise

        used, limit = row
        return limit > 0 and used >= limit
