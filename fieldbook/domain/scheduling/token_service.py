"""
Single-use action tokens for email links.

Two kinds of token exist:

* entity-embedded secrets (appointment confirmation/cancellation), which
  are plain random strings stored on the appointment and cleared on use;
* first-class ``ActionToken`` records, minted in accept/reject pairs for
  decisions with two outcomes (reschedule proposals, sent quotes).

Consuming either half of a pair invalidates both halves in one
conditional update, so a stale "reject" link cannot fire after "accept".
"""

import logging
import secrets
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, Optional, Protocol
from urllib.parse import urlencode

from ...config import ACTION_BASE_URL, ACTION_TOKEN_TTL_HOURS
from ...errors import TokenExpired, TokenInvalid, TokenTargetMismatch
from ...models import generate_public_id
from ...shared.clock import utcnow
from .schemas import ActionToken, TargetType, TokenAction

logger = logging.getLogger(__name__)


def generate_secret() -> str:
    """64 hex characters from the OS CSPRNG"""
    return secrets.token_hex(32)


def secrets_match(expected: Optional[str], presented: Optional[str]) -> bool:
    """Constant-time comparison that treats a missing value as a mismatch"""
    if not expected or not presented:
        return False
    return secrets.compare_digest(expected.encode(), presented.encode())


def build_action_link(
    entity_type: str,
    entity_id: str,
    action: str,
    secret: str,
    base_url: str = ACTION_BASE_URL,
) -> str:
    """{base_url}/{entity_type}/{id}/{action}?token={secret}"""
    path_action = action.lower().replace("_", "-")
    query = urlencode({"token": secret})
    return f"{base_url.rstrip('/')}/{entity_type.lower()}s/{entity_id}/{path_action}?{query}"


class TokenStore(Protocol):
    def add(self, token: ActionToken) -> None: ...

    def get_by_secret(self, secret: str) -> Optional[ActionToken]: ...

    def consume_pair(self, pair_id: str, now: datetime) -> int:
        """Mark every unconsumed token of the pair consumed; return rows changed"""
        ...

    def revoke_for_target(self, target_type: TargetType, target_id: str, now: datetime) -> int: ...


class InMemoryTokenStore:
    """Process-local store guarded by a lock (tests, single-process tools)"""

    def __init__(self):
        self._tokens: dict[str, ActionToken] = {}
        self._lock = Lock()

    def add(self, token: ActionToken) -> None:
        with self._lock:
            self._tokens[token.secret] = token

    def get_by_secret(self, secret: str) -> Optional[ActionToken]:
        with self._lock:
            return self._tokens.get(secret)

    def consume_pair(self, pair_id: str, now: datetime) -> int:
        with self._lock:
            return self._consume_where(lambda t: t.pair_id == pair_id, now)

    def revoke_for_target(self, target_type: TargetType, target_id: str, now: datetime) -> int:
        with self._lock:
            return self._consume_where(
                lambda t: t.target_type == target_type and t.target_id == target_id, now
            )

    def _consume_where(self, predicate, now: datetime) -> int:
        changed = 0
        for secret, token in self._tokens.items():
            if token.consumed_at is None and predicate(token):
                self._tokens[secret] = token.model_copy(update={"consumed_at": now})
                changed += 1
        return changed

    def all(self) -> list[ActionToken]:
        with self._lock:
            return list(self._tokens.values())


class TokenService:
    """Mints, verifies and consumes action tokens"""

    def __init__(
        self,
        store: TokenStore,
        clock: Callable[[], datetime] = utcnow,
        ttl_hours: int = ACTION_TOKEN_TTL_HOURS,
        secret_factory: Callable[[], str] = generate_secret,
        id_factory: Callable[[], str] = generate_public_id,
    ):
        self.store = store
        self.clock = clock
        self.ttl = timedelta(hours=ttl_hours)
        self.secret_factory = secret_factory
        self.id_factory = id_factory

    def mint_single(self) -> str:
        """Secret for a token embedded on the entity (confirm, cancel)"""
        return self.secret_factory()

    def mint_pair(
        self,
        target_type: TargetType,
        target_id: str,
        accept_action: TokenAction,
        reject_action: TokenAction,
        expires_at: Optional[datetime] = None,
    ) -> tuple[ActionToken, ActionToken]:
        """Mint and store two sibling tokens sharing one pair id"""
        expires_at = expires_at or self.clock() + self.ttl
        pair_id = self.id_factory()
        pair = tuple(
            ActionToken(
                id=self.id_factory(),
                target_type=target_type,
                target_id=target_id,
                action=action,
                secret=self.secret_factory(),
                pair_id=pair_id,
                expires_at=expires_at,
            )
            for action in (accept_action, reject_action)
        )
        for token in pair:
            self.store.add(token)
        logger.info(
            f"🔑 Minted {accept_action.value}/{reject_action.value} pair for "
            f"{target_type.value} {target_id} (expires {expires_at.isoformat()})"
        )
        return pair

    def verify(self, secret: str, expected_action: TokenAction, target_id: str) -> ActionToken:
        """
        Read-only check of a presented token.

        Raises:
            TokenInvalid: unknown, already consumed or for another action
            TokenExpired: past ``expires_at``
            TokenTargetMismatch: issued for a different entity
        """
        token = self.store.get_by_secret(secret) if secret else None
        if token is None or token.consumed_at is not None:
            raise TokenInvalid("Token unknown or already used")
        if token.action != expected_action:
            raise TokenInvalid(f"Token is not valid for {expected_action.value}")
        if token.target_id != target_id:
            raise TokenTargetMismatch("Token was issued for another entity")
        if token.is_expired(self.clock()):
            raise TokenExpired("Token has expired")
        return token

    def consume(self, secret: str, expected_action: TokenAction, target_id: str) -> ActionToken:
        """Verify then atomically consume the token and its sibling"""
        token = self.verify(secret, expected_action, target_id)
        if self.store.consume_pair(token.pair_id, self.clock()) == 0:
            # Lost the race against a concurrent presentation
            logger.warning(f"⚠️ Token pair {token.pair_id} consumed concurrently")
            raise TokenInvalid("Token unknown or already used")
        logger.info(f"✅ Consumed {token.action.value} token pair {token.pair_id}")
        return token

    def revoke_for_target(self, target_type: TargetType, target_id: str) -> int:
        revoked = self.store.revoke_for_target(target_type, target_id, self.clock())
        if revoked:
            logger.info(f"🗑️ Revoked {revoked} outstanding token(s) for {target_type.value} {target_id}")
        return revoked
