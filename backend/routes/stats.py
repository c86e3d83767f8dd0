"""
Routes pour les statistiques du pipeline et la performance des équipes
"""

from fastapi import APIRouter, Depends

from config import db
from models import User
from routes.leads import as_http, get_records
from services.errors import WorkflowError
from services.lead_records import LeadRecords
from services.permissions import require_permission

router = APIRouter(prefix="/stats", tags=["Statistiques"])


@router.get("/pipeline")
async def get_pipeline_stats(
    user: User = Depends(require_permission("leads.view")),
    records: LeadRecords = Depends(get_records)
):
    """
    Leads visibles par type de service et statut,
    valeur totale et décaissements effectués.
    """
    try:
        return await records.pipeline_stats(user)
    except WorkflowError as e:
        raise as_http(e)


@router.get("/performance")
async def get_team_performance(
    user: User = Depends(require_permission("stats.view_all")),
    records: LeadRecords = Depends(get_records)
):
    """Admin : leads, affaires conclues et taux de conversion par commercial."""
    docs = await db.users.find({"role": "sales"}, {"_id": 0, "password": 0}).to_list(500)
    try:
        return await records.team_performance(user, [User.model_validate(d) for d in docs])
    except WorkflowError as e:
        raise as_http(e)
