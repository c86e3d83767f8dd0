"""
JustTry CRM - Lead store

The only place that reads or writes the `leads` collection.

INVARIANTS:
- a Lead is written as ONE document replace (atomic for the whole aggregate)
- version 0 = never stored -> insert
- version N -> replace only if the stored version is still N, write N+1
- a stale version raises ConcurrencyConflict (no silent last-write-wins)
"""

import logging
from typing import List, Optional
from pymongo.errors import DuplicateKeyError, PyMongoError

from models import Lead, User
from services.errors import ConcurrencyConflict, LeadNotFound, PersistenceFailure
from services.permissions import can_view_lead

logger = logging.getLogger("lead_store")


async def load_visible_lead(store, lead_id: str, user: Optional[User] = None) -> Lead:
    """Lead by id. Missing and invisible leads both raise LeadNotFound."""
    lead = await store.get_lead(lead_id)
    if lead is None or (user is not None and not can_view_lead(user, lead)):
        raise LeadNotFound(lead_id)
    return lead


class LeadStore:

    def __init__(self, database=None):
        if database is None:
            from config import db as database
        self.collection = database.leads

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        try:
            doc = await self.collection.find_one({"id": lead_id}, {"_id": 0})
        except PyMongoError as e:
            logger.error(f"[LEAD_STORE] read failed for {lead_id}: {e}")
            raise PersistenceFailure(f"Could not load lead {lead_id}")
        if not doc:
            return None
        return Lead.model_validate(doc)

    async def save_leads(self, leads: List[Lead]) -> List[Lead]:
        """
        Upsert each lead by id, guarded by its version.
        Returns the stored copies (version incremented).
        """
        saved = []
        for lead in leads:
            stored = lead.model_copy(update={"version": lead.version + 1})
            doc = stored.to_document()
            try:
                if lead.version == 0:
                    await self.collection.insert_one(doc)
                else:
                    result = await self.collection.replace_one(
                        {"id": lead.id, "version": lead.version},
                        doc
                    )
                    if result.matched_count == 0:
                        raise ConcurrencyConflict(
                            f"Lead {lead.id} was modified by someone else "
                            f"(expected version {lead.version}). Reload and retry."
                        )
            except DuplicateKeyError:
                raise ConcurrencyConflict(f"Lead {lead.id} already exists")
            except PyMongoError as e:
                logger.error(f"[LEAD_STORE] write failed for {lead.id}: {e}")
                raise PersistenceFailure(f"Could not save lead {lead.id}")

            logger.info(f"[LEAD_STORE] Lead {lead.id} saved | version={stored.version} status={stored.status}")
            saved.append(stored)
        return saved

    async def list_leads(self, query: dict = None, limit: int = 500) -> List[Lead]:
        try:
            docs = await self.collection.find(query or {}, {"_id": 0}) \
                .sort("created_at", -1) \
                .to_list(limit)
        except PyMongoError as e:
            logger.error(f"[LEAD_STORE] list failed: {e}")
            raise PersistenceFailure("Could not list leads")
        return [Lead.model_validate(d) for d in docs]

    async def delete_lead(self, lead_id: str) -> bool:
        try:
            result = await self.collection.delete_one({"id": lead_id})
        except PyMongoError as e:
            logger.error(f"[LEAD_STORE] delete failed for {lead_id}: {e}")
            raise PersistenceFailure(f"Could not delete lead {lead_id}")
        return result.deleted_count > 0

    async def ensure_indexes(self):
        await self.collection.create_index("id", unique=True)
        await self.collection.create_index("assigned_to")
        await self.collection.create_index("service_type")
        await self.collection.create_index("status")
        await self.collection.create_index("created_at")
