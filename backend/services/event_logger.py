"""
JustTry CRM - Event Logger

Operational log for sensitive actions (logins, user admin, bank
verification, disbursement attempts). The business audit trail stays
in lead.history.
"""

import uuid
from config import db, now_iso


async def log_event(
    action: str,
    entity_type: str,
    entity_id: str,
    user: str = "system",
    details: dict = None
):
    """
    Write a single event to the event_log collection.

    Args:
        action: e.g. login, user_create, bank_verify, disbursement_attempt
        entity_type: lead | user | session
        entity_id: ID of the primary entity
        user: email of user performing action
        details: free-form dict (reason, old_value, new_value, etc.)
    """
    await db.event_log.insert_one({
        "id": str(uuid.uuid4()),
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "user": user,
        "details": details or {},
        "created_at": now_iso()
    })
