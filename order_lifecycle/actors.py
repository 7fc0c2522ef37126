"""
Maps the authenticated principal of a request to an Actor.
Authentication happens upstream; the gateway forwards the verified identity in X-Actor-* headers.
"""
from fastapi import Header, HTTPException

from order_lifecycle.config import Settings, settings
from order_lifecycle.models import HumanActor


class HeaderActorResolver:
    def __call__(
        self,
        x_actor_id: str | None = Header(default=None),
        x_actor_name: str = Header(default=""),
        x_actor_email: str = Header(default=""),
        x_actor_role: str = Header(default=""),
    ) -> HumanActor:
        if not x_actor_id:
            raise HTTPException(status_code=401, detail="missing authenticated actor")
        return HumanActor(id=x_actor_id, name=x_actor_name, email=x_actor_email, role=x_actor_role)


resolve_actor = HeaderActorResolver()


def gateway_actor(config: Settings = settings) -> HumanActor:
    """Service identity credited with payment gateway callbacks."""
    return HumanActor(
        id=config.webhook_actor_id,
        name=config.webhook_actor_name,
        email=config.webhook_actor_email,
        role=config.webhook_actor_role,
    )
