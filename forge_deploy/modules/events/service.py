from supabase import Client
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)


class DeploymentEvent:
    STARTED = "deployment.started"
    LIVE = "deployment.live"
    FAILED = "deployment.failed"
    HEALTH_CHECKED = "deployment.health_checked"


class EventService:
    """Append-only system events. Emission is best effort and never breaks the caller."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    def emit(
        self,
        event_type: str,
        entity_type: str,
        entity_id: str,
        actor_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        previous_state: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        try:
            result = self.supabase.table("events").insert({
                "event_type": event_type,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "actor_id": actor_id,
                "payload": payload or {},
                "metadata": {"source": "forge-deploy-backend"},
                "previous_state": previous_state,
            }).execute()
            return result.data[0] if result.data else None
        except Exception as e:
            logger.error(f"Event emission failed ({event_type} {entity_type}/{entity_id}): {str(e)}")
            return None
