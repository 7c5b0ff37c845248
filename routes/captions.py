# routes/captions.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlmodel import Session

from core.database import get_session
from core.dependencies import get_caption_generator, get_quota_gate, get_rate_limiter
from core.errors import ExternalServiceError, ForbiddenError, UnauthorizedError
from core.security import get_optional_user
from models.models import User, utcnow
from schemas import CaptionGenerateRequest, CaptionGenerateResponse, CaptionRead, UsageRead
from services.caption_generator import CaptionGenerator, resolve_platforms
from services.quota_gate import QuotaGate
from services.rate_limiter import RateLimiter
from services.tier_policy import limit_for

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/captions", tags=["Captions"])


@router.post("/generate", response_model=CaptionGenerateResponse)
def generate_captions(
    payload: CaptionGenerateRequest,
    request: Request,
    current_user: Optional[User] = Depends(get_optional_user),
    session: Session = Depends(get_session),
    limiter: RateLimiter = Depends(get_rate_limiter),
    gate: QuotaGate = Depends(get_quota_gate),
    generator: Optional[CaptionGenerator] = Depends(get_caption_generator),
):
    """
    Rate limit, then quota, then generate. One generation costs one unit
    of monthly quota whatever the number of platforms.
    """
    # Guests are limited by IP before anything else, so probing is throttled too
    limiter.hit(
        user_id=current_user.id if current_user else None,
        client_ip=request.client.host if request.client else None,
    )
    if current_user is None:
        raise UnauthorizedError("Sign up to generate captions")

    if generator is None:
        raise ExternalServiceError("Caption generation is not available", service="generator", status_code=503)

    tier = gate.effective_tier(session, current_user.id)
    max_platforms = limit_for(tier).max_platforms
    platforms = resolve_platforms(payload.platforms, max_platforms)
    if max_platforms is not None and len(platforms) > max_platforms:
        raise ForbiddenError(
            f"Your plan allows up to {max_platforms} platforms per generation",
            details={"upgrade": True, "maxPlatforms": max_platforms},
        )

    now = utcnow()
    gate.check_and_consume(session, current_user.id, now=now)
    try:
        captions = generator.generate(payload.content_type, payload.content_description, platforms)
    except Exception as e:
        # Failed generations are not charged
        gate.release(session, current_user.id, now=now)
        logger.error("❌ Caption generation failed for user %s: %s", current_user.id, e)
        raise ExternalServiceError("Caption generation failed, please try again", service="generator") from e
    logger.info("✍️ Generated %s caption(s) for user %s", len(captions), current_user.id)

    usage = gate.usage(session, current_user.id)
    return CaptionGenerateResponse(
        captions=[CaptionRead(platform=c.platform, caption=c.caption, hashtags=list(c.hashtags)) for c in captions],
        usage=UsageRead.model_validate(usage),
    )
