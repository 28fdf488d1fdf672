from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from reminder_service.app_state import AppContext, get_context
from reminder_service.cache import cache_key, cached_view
from reminder_service.config import settings
from reminder_service.core.tiers import ReminderTier, parse_tier
from reminder_service.db import get_db
from reminder_service.schemas import (
    CycleResultResponse,
    SendTestReminderRequest,
    SendTestReminderResponse,
    TierStateResponse,
    TriggerReminderRequest,
    TriggerReminderResponse,
)
from reminder_service.services import reminder_stats


router = APIRouter(prefix='/api/v1/session-reminders', tags=['Session Reminders'])
logger = logging.getLogger(__name__)


def _resolve_token(request: Request) -> str | None:
    authorization = request.headers.get('authorization', '')
    if authorization.lower().startswith('bearer '):
        return authorization[7:].strip()
    return None


def require_admin(request: Request) -> None:
    expected = settings.admin_api_token
    if not expected:
        return
    token = _resolve_token(request) or ''
    if not hmac.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail='Unauthorized')


def get_app_context() -> AppContext:
    return get_context()


def _tier_or_404(value: str, ctx: AppContext) -> ReminderTier:
    try:
        tier = parse_tier(value)
    except ValueError as exc:
        raise HTTPException(
            status_code=404,
            detail={'message': str(exc), 'valid_tiers': [t.value for t in ctx.tiers]},
        ) from exc
    if tier not in ctx.tiers:
        raise HTTPException(status_code=404, detail={'message': 'Tier not configured', 'valid_tiers': [t.value for t in ctx.tiers]})
    return tier


@router.get('/health')
def reminder_health(
    _: None = Depends(require_admin),
    ctx: AppContext = Depends(get_app_context),
    db: Session = Depends(get_db),
):
    payload = reminder_stats.get_health(ctx, db, now=ctx.dispatcher.time_provider.utcnow())
    status_code = 200 if payload['status'] == 'healthy' else 503
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload))


@router.get('/stats')
def reminder_stats_view(
    _: None = Depends(require_admin),
    ctx: AppContext = Depends(get_app_context),
    db: Session = Depends(get_db),
):
    return reminder_stats.get_stats(ctx, db, now=ctx.dispatcher.time_provider.utcnow())


def _upcoming_key(days_ahead: int = 7, limit: int = 50, **kwargs) -> str:
    return cache_key('reminder_upcoming', f'{int(days_ahead)}:{int(limit)}')


@router.get('/upcoming')
@cached_view(ttl=60, key_builder=_upcoming_key)
def upcoming_sessions(
    days_ahead: int = Query(default=7, ge=1, le=60),
    limit: int = Query(default=50, ge=1, le=500),
    bypass_cache: bool = Query(default=False),
    _: None = Depends(require_admin),
    ctx: AppContext = Depends(get_app_context),
    db: Session = Depends(get_db),
):
    payload = reminder_stats.get_upcoming(
        ctx,
        db,
        now=ctx.dispatcher.time_provider.utcnow(),
        days_ahead=days_ahead,
        limit=limit,
    )
    return jsonable_encoder(payload)


@router.post('/trigger', response_model=TriggerReminderResponse)
def trigger_reminder(
    payload: TriggerReminderRequest,
    _: None = Depends(require_admin),
    ctx: AppContext = Depends(get_app_context),
):
    tier = _tier_or_404(payload.tier, ctx)
    try:
        return ctx.dispatcher.force_send(payload.session_id, tier, respect_markers=payload.respect_markers)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post('/test', response_model=SendTestReminderResponse)
def send_test_reminder(
    payload: SendTestReminderRequest,
    _: None = Depends(require_admin),
    ctx: AppContext = Depends(get_app_context),
):
    tier = _tier_or_404(payload.tier, ctx)
    delivered = ctx.dispatcher.send_test(payload.email, tier)
    return {'email': payload.email, 'tier': tier.value, 'delivered': delivered}


def _tier_state(ctx: AppContext, tier: ReminderTier) -> dict:
    runtime = ctx.dispatcher.runtime(tier)
    return {'tier': tier.value, 'paused': runtime.paused, 'state': runtime.state.value}


@router.post('/tiers/{tier_name}/pause', response_model=TierStateResponse)
def pause_tier(
    tier_name: str,
    _: None = Depends(require_admin),
    ctx: AppContext = Depends(get_app_context),
):
    tier = _tier_or_404(tier_name, ctx)
    ctx.dispatcher.pause(tier)
    return _tier_state(ctx, tier)


@router.post('/tiers/{tier_name}/resume', response_model=TierStateResponse)
def resume_tier(
    tier_name: str,
    _: None = Depends(require_admin),
    ctx: AppContext = Depends(get_app_context),
):
    tier = _tier_or_404(tier_name, ctx)
    ctx.dispatcher.resume(tier)
    return _tier_state(ctx, tier)


@router.post('/tiers/{tier_name}/run', response_model=CycleResultResponse)
def run_tier_cycle(
    tier_name: str,
    _: None = Depends(require_admin),
    ctx: AppContext = Depends(get_app_context),
):
    tier = _tier_or_404(tier_name, ctx)
    result = ctx.dispatcher.run_cycle(tier)
    logger.info('reminder_manual_cycle tier=%s status=%s', tier.value, result.status)
    return result.as_dict()
