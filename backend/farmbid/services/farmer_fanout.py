"""Tell farmers about a new contract instance they could supply.

At-most-once per farmer per contract: the new farmer ids are appended to
`notified_farmers` and committed (version-checked) before any
notification is sent, so a re-run or a concurrent run never repeats one.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from farmbid.database import commit_versioned
from farmbid.middleware.exceptions import ResourceNotFoundError
from farmbid.models.contract import Contract
from farmbid.models.user import FarmerProduct, User, UserRole

logger = logging.getLogger("farmbid.fanout")


class FarmerFanout:
    def __init__(self, session_factory: async_sessionmaker, dispatcher):
        self.session_factory = session_factory
        self.dispatcher = dispatcher

    async def notify_farmers(self, contract_id: str) -> list[str]:
        """Notify farmers not yet told about this contract.  Returns the ids notified."""
        async with self.session_factory() as db:
            contract = await db.get(Contract, contract_id)
            if contract is None:
                raise ResourceNotFoundError("Contract", contract_id)

            result = await db.execute(
                select(FarmerProduct.farmer_id)
                .join(User, User.id == FarmerProduct.farmer_id)
                .where(
                    User.role == UserRole.FARMER,
                    FarmerProduct.name == contract.product_type,
                )
                .distinct()
                .order_by(FarmerProduct.farmer_id)
            )
            candidates = list(result.scalars().all())

            already = set(contract.notified_farmers or [])
            new_ids = [farmer_id for farmer_id in candidates if farmer_id not in already]
            if not new_ids:
                return []

            # Reassign so the JSON column is flagged dirty
            contract.notified_farmers = list(contract.notified_farmers or []) + new_ids
            await commit_versioned(db, "Contract", contract_id)

            title = contract.title or contract.product_type
            message = (
                f"New contract opportunity: {contract.quantity} units of "
                f"{contract.product_type} at up to {contract.max_price} per unit, "
                f"needed by {contract.end_time:%Y-%m-%d}."
            )
            data = {
                "contract_id": contract.id,
                "product_type": contract.product_type,
                "quantity": contract.quantity,
                "max_price": contract.max_price,
                "end_time": contract.end_time,
            }

        for farmer_id in new_ids:
            await self.dispatcher.notify(
                farmer_id,
                "new_contract_opportunity",
                f"New Contract: {title}",
                message,
                data=data,
            )

        logger.info("Notified %d farmer(s) about contract %s", len(new_ids), contract_id)
        return new_ids
