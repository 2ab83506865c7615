import hmac
import hashlib
import logging
from typing import Optional

from fastapi import HTTPException, Request, Header

from orchestrator.domain.models import Actor
from orchestrator.domain.states import ActorRole
from orchestrator.settings import settings

logger = logging.getLogger(__name__)

async def get_actor(
    x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
    x_actor_role: Optional[str] = Header(None, alias="X-Actor-Role"),
) -> Actor:
    """
    Identity is established upstream (gateway/session layer) and forwarded as
    trusted headers. A missing role means the least privileged one.
    """
    if not x_actor_id:
        raise HTTPException(status_code=401, detail="Missing X-Actor-Id header")

    role = ActorRole.EDITOR
    if x_actor_role:
        try:
            role = ActorRole(x_actor_role.strip().lower())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown actor role {x_actor_role!r}")

    return Actor(id=x_actor_id, role=role)

def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

class SignatureVerifier:
    """
    Verifies the HMAC-SHA256 of the raw request body sent by workers in
    X-Worker-Signature. Disabled when no shared secret is configured.
    """

    def __init__(self, secret: Optional[str] = None):
        self._secret = secret

    @property
    def secret(self) -> Optional[str]:
        return self._secret if self._secret is not None else settings.WORKER_SHARED_SECRET

    async def __call__(
        self,
        request: Request,
        x_signature: Optional[str] = Header(None, alias="X-Worker-Signature"),
    ) -> None:
        secret = self.secret
        if not secret:
            return

        if not x_signature:
            raise HTTPException(status_code=401, detail="Missing Signature")

        body = await request.body()
        computed = compute_signature(secret, body)
        if not hmac.compare_digest(computed, x_signature):
            logger.warning("Rejected worker request with invalid signature on %s", request.url.path)
            raise HTTPException(status_code=401, detail="Invalid Signature")
