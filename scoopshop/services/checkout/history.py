"""Order history reads: a shopper's own orders and the store-wide admin list."""

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from scoopshop.common.errors import AdminRequired
from scoopshop.services.checkout.models import Order, User
from scoopshop.services.checkout.schemas import AdminOrderSummary, OrderSummary
from scoopshop.services.checkout.status import order_summary


ROLE_ADMIN = "ADMIN"
MAX_PAGE_SIZE = 200


def _newest_first(limit: int, offset: int):
    return (
        select(Order)
        .options(selectinload(Order.items))
        .order_by(Order.created_at.desc(), Order.id)
        .limit(max(1, min(limit, MAX_PAGE_SIZE)))
        .offset(max(0, offset))
    )


class OrderHistory:
    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def for_user(self, user_id: str, limit: int = 50, offset: int = 0) -> list[OrderSummary]:
        with self.session_factory() as db:
            rows = db.execute(_newest_first(limit, offset).where(Order.user_id == user_id)).scalars()
            return [order_summary(row) for row in rows]

    def all_orders(self, requester_id: str, limit: int = 50, offset: int = 0) -> list[AdminOrderSummary]:
        """Every order in the store; only for users holding the `ADMIN` role."""

        with self.session_factory() as db:
            requester = db.get(User, requester_id)
            if requester is None or requester.role != ROLE_ADMIN:
                raise AdminRequired(f"user {requester_id} is not an admin")
            rows = db.execute(_newest_first(limit, offset)).scalars().all()
            emails = {}
            buyer_ids = {row.user_id for row in rows if row.user_id}
            if buyer_ids:
                emails = dict(db.execute(select(User.id, User.email).where(User.id.in_(buyer_ids))).all())
            return [
                AdminOrderSummary(
                    **order_summary(row).model_dump(),
                    user_id=row.user_id,
                    user_email=emails.get(row.user_id),
                    contact_email=row.contact_email,
                    shipping_name=row.shipping_name,
                    shipping_address1=row.shipping_address1,
                    shipping_address2=row.shipping_address2,
                    shipping_city=row.shipping_city,
                    shipping_state=row.shipping_state,
                    shipping_postal_code=row.shipping_postal_code,
                    shipping_country=row.shipping_country,
                )
                for row in rows
            ]
