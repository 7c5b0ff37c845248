# routes/usage.py
from fastapi import APIRouter, Depends
from sqlmodel import Session

from core.database import get_session
from core.dependencies import get_quota_gate
from core.security import get_current_user
from models.models import User
from schemas import UsageRead
from services.quota_gate import QuotaGate

router = APIRouter(prefix="/usage", tags=["Usage"])


@router.get("", response_model=UsageRead)
def get_usage(
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    gate: QuotaGate = Depends(get_quota_gate),
):
    """This month's generation count and limit, after applying any pending expiry."""
    usage = gate.usage(session, current_user.id)
    return UsageRead.model_validate(usage)
