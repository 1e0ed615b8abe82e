"""Ticket redemption at the attraction gate"""
import logging
from datetime import datetime, timezone
from typing import Dict, Optional
from uuid import UUID

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.models import CheckIn, Order as OrderRow, Ticket as TicketRow, TicketType
from shared.errors import ErrorCode, TicketNotFoundError
from services.checkout.models.order import ticket_from_row

logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    return code.strip().upper()


class CheckInService:
    """Redeems each ticket at most once, however many terminals scan it"""

    async def redeem(
        self,
        db: AsyncSession,
        attraction_id: UUID,
        code: str,
        station_id: Optional[str] = None,
        method: str = "scan",
    ) -> Dict:
        found = await self._find(db, attraction_id, code)
        ticket_id = found["ticket"].id

        result = await db.execute(
            update(TicketRow)
            .where(TicketRow.id == ticket_id, TicketRow.used_at.is_(None))
            .values(used_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 1:
            db.add(CheckIn(
                org_id=found["org_id"],
                attraction_id=attraction_id,
                ticket_id=ticket_id,
                station_id=station_id,
                method=method,
            ))
            await db.commit()
            found = await self._find(db, attraction_id, code)
            checked_in, total = await self._order_counts(db, found["ticket"].order_id)
            logger.info(
                f"Ticket {found['ticket'].ticket_number} checked in at {station_id or 'unknown station'} "
                f"({checked_in}/{total} for order {found['order_number']})"
            )
            return {
                "success": True,
                **found,
                "checked_in_count": checked_in,
                "total_tickets": total,
            }

        # Lost the race or scanned twice; report the stored timestamp
        await db.rollback()
        found = await self._find(db, attraction_id, code)
        used_at = found["ticket"].used_at
        logger.info(f"Duplicate scan of ticket {found['ticket'].ticket_number} (used at {used_at})")
        return {
            "success": False,
            **found,
            "error": ErrorCode.TICKET_ALREADY_USED.value,
            "message": "Ticket has already been used",
            "used_at": used_at,
        }

    async def validate(self, db: AsyncSession, attraction_id: UUID, code: str) -> Dict:
        """Read-only preview of what a scan would do"""
        found = await self._find(db, attraction_id, code)
        if found["ticket"].used_at is not None:
            return {
                "valid": False,
                **found,
                "error": ErrorCode.TICKET_ALREADY_USED.value,
                "used_at": found["ticket"].used_at,
            }
        return {"valid": True, **found}

    async def _find(self, db: AsyncSession, attraction_id: UUID, code: str) -> Dict:
        result = await db.execute(
            select(TicketRow, TicketType.name, OrderRow.order_number, OrderRow.customer_name, OrderRow.org_id)
            .join(TicketType, TicketType.id == TicketRow.ticket_type_id)
            .join(OrderRow, OrderRow.id == TicketRow.order_id)
            .where(
                TicketRow.redemption_code == normalize_code(code),
                TicketRow.attraction_id == attraction_id,
            )
            .execution_options(populate_existing=True)
        )
        row = result.one_or_none()
        if row is None:
            raise TicketNotFoundError()
        ticket_row, ticket_type_name, order_number, customer_name, org_id = row
        return {
            "ticket": ticket_from_row(ticket_row),
            "ticket_type_name": ticket_type_name,
            "order_number": order_number,
            "customer_name": customer_name,
            "org_id": org_id,
        }

    async def _order_counts(self, db: AsyncSession, order_id: UUID):
        result = await db.execute(
            select(func.count(TicketRow.used_at), func.count(TicketRow.id)).where(TicketRow.order_id == order_id)
        )
        checked_in, total = result.one()
        return checked_in, total
