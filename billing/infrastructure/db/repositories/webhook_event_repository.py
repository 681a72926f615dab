"""
Webhook Event Repository

DB-backed record of processed provider events (survives restarts).
"""

from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing.infrastructure.db.database import get_session_context


class WebhookEventRepository:
    """Idempotency ledger keyed by provider event id."""
    
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self._session_factory = session_factory
    
    async def is_processed(self, event_id: str) -> bool:
        """Check if a webhook event has already been processed."""
        async with get_session_context(self._session_factory) as session:
            result = await session.execute(
                text("SELECT 1 FROM processed_webhook_events WHERE event_id = :eid"),
                {"eid": event_id},
            )
            return result.scalar_one_or_none() is not None
    
    async def mark_processed(self, event_id: str, event_type: str) -> None:
        """Record a processed webhook event."""
        async with get_session_context(self._session_factory) as session:
            await session.execute(
                text(
                    "INSERT INTO processed_webhook_events (event_id, event_type, processed_at) "
                    "VALUES (:eid, :etype, CURRENT_TIMESTAMP) ON CONFLICT (event_id) DO NOTHING"
                ),
                {"eid": event_id, "etype": event_type},
            )


_webhook_event_repo_instance: Optional[WebhookEventRepository] = None


def get_webhook_event_repository() -> WebhookEventRepository:
    """Get or create webhook event repository singleton."""
    global _webhook_event_repo_instance
    
    if _webhook_event_repo_instance is None:
        _webhook_event_repo_instance = WebhookEventRepository()
    
    return _webhook_event_repo_instance
