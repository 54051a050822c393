"""Shared fakes for the test suite."""
from __future__ import annotations

import asyncio
from pathlib import Path

from sqlalchemy.pool import NullPool

from liveactivity.database import create_engine, create_session_factory
from liveactivity.services.push_gateway import DeliveryOutcome, PushGateway
from liveactivity.services.token_store import NewToken, TokenKind, TokenStore


def make_store(directory: str) -> TokenStore:
    engine = create_engine(
        f"sqlite+aiosqlite:///{Path(directory) / 'tokens.db'}",
        poolclass=NullPool,
    )
    return TokenStore(create_session_factory(engine), engine)


def new_token(
    kind: TokenKind,
    token: str,
    device_id: str,
    activity_id: str | None = None,
    **extra,
) -> NewToken:
    return NewToken(
        kind=kind,
        token=token,
        device_id=device_id,
        bundle_id="com.helgisoft.yangcheonlife",
        activity_id=activity_id,
        client_timestamp=1760000000,
        **extra,
    )


class FakeGateway(PushGateway):
    """Records sends; outcomes are configured per token value.

    An outcome may be an exception instance, which ``_deliver`` raises.
    """

    name = "fake"

    def __init__(self, outcomes=None, delay: float = 0.0, timeout_seconds: float = 1.0):
        super().__init__(timeout_seconds=timeout_seconds)
        self.outcomes = dict(outcomes or {})
        self.delay = delay
        self.sent = []
        self.closed = False

    async def _deliver(self, token, payload):
        self.sent.append((token.token, payload))
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.get(token.token, DeliveryOutcome.DELIVERED)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome, None if outcome == DeliveryOutcome.DELIVERED else "fake"

    async def close(self):
        self.closed = True

    def sent_tokens(self) -> list[str]:
        return [token for token, _ in self.sent]
