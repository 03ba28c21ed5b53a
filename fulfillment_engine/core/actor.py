"""
Acting identity passed into every engine call.

Authentication happens outside the engine; callers hand in an opaque actor
id and the role it acts as.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ActorRole(str, Enum):
    """Roles the caller may act as."""

    ADMIN = "admin"
    MANAGER = "manager"
    SALES = "sales"
    PACKER = "packer"
    DRIVER = "driver"
    CUSTOMER = "customer"
    SYSTEM = "system"

    @classmethod
    def from_string(cls, value: str) -> "ActorRole":
        try:
            return cls(value.lower())
        except ValueError:
            valid_values = ", ".join([r.value for r in cls])
            raise ValueError(
                f"Invalid actor role: {value}. Valid values are: {valid_values}"
            )


@dataclass(frozen=True)
class Actor:
    """
    Caller identity.

    Attributes:
        actor_id: Opaque identifier of the person or process
        role: Role the caller acts as
        customer_id: Customer account the actor belongs to (customer role)
    """

    actor_id: str
    role: ActorRole
    customer_id: Optional[uuid.UUID] = None

    @classmethod
    def system(cls) -> "Actor":
        """The actor background jobs run as."""
        return cls(actor_id="system", role=ActorRole.SYSTEM)
