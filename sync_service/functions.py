import logging

from sqlalchemy import insert

from .client import EventBus, Function, FunctionContext
from .models import Order, User
from .schemas import (
    ORDER_CREATED,
    USER_CREATED,
    USER_DELETED,
    USER_UPDATED,
    BatchConfig,
    BatchResult,
    MalformedEvent,
    SyncOutcome,
    Trigger,
    UserDeletedData,
    UserEventData,
    parse_event,
)

logger= logging.getLogger(__name__)


async def sync_user_creation(ctx: FunctionContext) -> SyncOutcome:
    """Insert the local copy of a user created in Clerk.

    A user whose id already exists raises IntegrityError; a redelivered creation
    is not treated as already synced.
    """
    try:
        data= parse_event(ctx.event, UserEventData)
    except MalformedEvent as e:
        logger.error(f"[sync-user-from-clerk] {e}")
        return SyncOutcome.SKIPPED

    with ctx.session_factory() as session:
        with session.begin():
            new_user= User(id= data.id, cart_items= {}, **data.to_record())
            session.add(new_user)
        logger.info(f"[sync-user-from-clerk] Created user: {new_user.to_dict()}")
    return SyncOutcome.CREATED


async def sync_user_update(ctx: FunctionContext) -> SyncOutcome:
    """Overwrite the identity-derived fields of a user. The cart is left alone.
    """
    try:
        data= parse_event(ctx.event, UserEventData)
    except MalformedEvent as e:
        logger.error(f"[update-user-from-clerk] {e}")
        return SyncOutcome.SKIPPED

    with ctx.session_factory() as session:
        with session.begin():
            updated= (
                session.query(User)
                .filter_by(id=data.id)
                .update(data.to_record(), synchronize_session=False)
            )
    if not updated:
        logger.warning(f"[update-user-from-clerk] No user with id {data.id}, nothing updated")
        return SyncOutcome.NOT_FOUND
    logger.info(f"[update-user-from-clerk] Updated user {data.id}")
    return SyncOutcome.UPDATED


async def sync_user_deletion(ctx: FunctionContext) -> SyncOutcome:
    try:
        data= parse_event(ctx.event, UserDeletedData)
    except MalformedEvent as e:
        logger.error(f"[delete-user-with-clerk] {e}")
        return SyncOutcome.SKIPPED

    with ctx.session_factory() as session:
        with session.begin():
            deleted= (
                session.query(User)
                .filter_by(id=data.id)
                .delete(synchronize_session=False)
            )
    if not deleted:
        logger.warning(f"[delete-user-with-clerk] No user with id {data.id}, nothing deleted")
        return SyncOutcome.NOT_FOUND
    logger.info(f"[delete-user-with-clerk] Deleted user {data.id}")
    return SyncOutcome.DELETED


def order_row(data: dict) -> dict:
    """Map an order/created payload to an orders row, fields taken verbatim."""
    return {
        "user_id": data.get("userId"),
        "items": data.get("items"),
        "amount": data.get("amount"),
        "address": data.get("address"),
        "date": data.get("date"),
    }


async def create_user_order(ctx: FunctionContext) -> BatchResult:
    """Insert a whole batch of order/created events with one bulk insert.

    Any storage error fails the batch as a unit; the dispatcher redelivers all of it.
    """
    rows= []
    for envelope in ctx.events:
        if envelope.data is None:
            logger.error(f"[create-user-order] Missing event.data: {envelope}")
            continue
        rows.append(order_row(envelope.data))

    if rows:
        with ctx.session_factory() as session:
            with session.begin():
                session.execute(insert(Order), rows)
    logger.info(f"[create-user-order] Inserted {len(rows)} orders from a batch of {len(ctx.events)} events")
    return BatchResult(success=True, processed=len(rows))


def register_functions(bus: EventBus) -> list[Function]:
    return [
        bus.create_function("sync-user-from-clerk", Trigger(event=USER_CREATED), sync_user_creation),
        bus.create_function("update-user-from-clerk", Trigger(event=USER_UPDATED), sync_user_update),
        bus.create_function("delete-user-with-clerk", Trigger(event=USER_DELETED), sync_user_deletion),
        bus.create_function(
            "create-user-order",
            Trigger(event=ORDER_CREATED, batch=BatchConfig(max_size=25, timeout="5s")),
            create_user_order,
        ),
    ]
