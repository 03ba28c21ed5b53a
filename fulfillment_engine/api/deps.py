"""
FastAPI dependencies for actor identity and service construction.

Authentication happens in front of the engine; requests arrive with the
actor's opaque id and role in headers. This module turns those headers into
an Actor, binds it to the logging context, and builds the fulfillment
service on the request's database session.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.core.actor import Actor, ActorRole
from fulfillment_engine.core.logging import get_logger, set_actor
from fulfillment_engine.database.connection import get_db
from fulfillment_engine.services.orders.service import FulfillmentService

logger = get_logger(__name__)


async def get_current_actor(
    x_actor_id: Annotated[Optional[str], Header()] = None,
    x_actor_role: Annotated[Optional[str], Header()] = None,
    x_customer_id: Annotated[Optional[UUID], Header()] = None,
) -> Actor:
    """
    Build the calling actor from request headers.

    Args:
        x_actor_id: Opaque actor identifier
        x_actor_role: Role the actor acts as
        x_customer_id: Customer account for customer-role actors

    Returns:
        Actor: Calling actor

    Raises:
        HTTPException: 401 if headers are missing, 403 for unknown or
            reserved roles
    """
    if not x_actor_id or not x_actor_role:
        logger.warning("Actor headers missing")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Actor-Id and X-Actor-Role headers are required",
        )

    try:
        role = ActorRole.from_string(x_actor_role)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(e),
        ) from e

    # Background jobs act as system; callers may not
    if role == ActorRole.SYSTEM:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="The system role is reserved for background jobs",
        )

    set_actor(x_actor_id, role.value)
    return Actor(actor_id=x_actor_id, role=role, customer_id=x_customer_id)


async def get_fulfillment_service(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> FulfillmentService:
    """Fulfillment service bound to the request's session."""
    return FulfillmentService(db)


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
Fulfillment = Annotated[FulfillmentService, Depends(get_fulfillment_service)]
