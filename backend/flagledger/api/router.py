from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, WebSocket
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, ValidationError, constr

from flagledger.models.schema import Role
from flagledger.security.rbac import get_caller, get_optional_caller, get_services, require_role
from flagledger.services.identity import Caller
from flagledger.services.realtime import pump_websocket, trigger_stream
from flagledger.services.runtime import Services
from flagledger.services.teams import TeamError

api_router = APIRouter()

staff_only = require_role(Role.admin, Role.challenge_creator)
admin_only = require_role(Role.admin)


class SubmitIn(BaseModel):
    flag: constr(min_length=1, max_length=2000)


class ChallengeIn(BaseModel):
    title: constr(min_length=1, max_length=200)
    description: constr(max_length=8000) = ''
    category: constr(min_length=1, max_length=64) = 'misc'
    points: int = Field(ge=0, le=100000)
    initial_points: int | None = Field(default=None, ge=0, le=100000)
    flag: constr(min_length=1, max_length=255)
    visible: bool = True


class ChallengeUpdateIn(BaseModel):
    title: constr(min_length=1, max_length=200) | None = None
    description: constr(max_length=8000) | None = None
    category: constr(min_length=1, max_length=64) | None = None
    points: int | None = Field(default=None, ge=0, le=100000)
    initial_points: int | None = Field(default=None, ge=0, le=100000)
    flag: constr(min_length=1, max_length=255) | None = None
    visible: bool | None = None


class HintIn(BaseModel):
    content: constr(min_length=1, max_length=5000)
    cost: int = Field(0, ge=0, le=100000)


class HintUpdateIn(BaseModel):
    content: constr(min_length=1, max_length=5000) | None = None
    cost: int | None = Field(default=None, ge=0, le=100000)


class TeamCreateIn(BaseModel):
    name: constr(min_length=2, max_length=100)


class TeamJoinIn(BaseModel):
    code: constr(min_length=1, max_length=16)


class RateLimitPatch(BaseModel):
    max_attempts: int | None = None
    window_seconds: int | None = None
    cooldown_seconds: int | None = None


class DecayPatch(BaseModel):
    rate: float | None = None
    max_decay: float | None = None


class ConfigPatchIn(BaseModel):
    event_state: str | None = None
    dynamic_scoring: bool | None = None
    rate_limit: RateLimitPatch | None = None
    decay: DecayPatch | None = None
    public_challenges: bool | None = None
    public_leaderboard: bool | None = None


def _visible_to(caller: Caller | None, public: bool) -> None:
    if caller is None and not public:
        raise HTTPException(status_code=401, detail='Not authenticated')


@api_router.post('/challenges/{challenge_id}/submit')
def submit_flag(
    challenge_id: str,
    payload: SubmitIn,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    result = services.ledger.submit_flag(caller, challenge_id, payload.flag)
    return {
        'correct': True,
        'already_solved': False,
        'points_awarded': result.points_awarded,
        'user_points': result.user_points,
        'team_points': result.team_points,
        'challenge_points': result.challenge_points,
    }


@api_router.get('/challenges')
def list_challenges(caller: Caller | None = Depends(get_optional_caller), services: Services = Depends(get_services)):
    _visible_to(caller, services.config_provider.get_config().public_challenges)
    return {'items': services.catalog.list_challenges(caller)}


@api_router.post('/challenges')
def create_challenge(payload: ChallengeIn, caller: Caller = Depends(staff_only), services: Services = Depends(get_services)):
    return services.catalog.create_challenge(caller, payload.model_dump())


@api_router.put('/challenges/{challenge_id}')
def update_challenge(
    challenge_id: str,
    payload: ChallengeUpdateIn,
    caller: Caller = Depends(staff_only),
    services: Services = Depends(get_services),
):
    return services.catalog.update_challenge(caller, challenge_id, payload.model_dump(exclude_none=True))


@api_router.post('/challenges/{challenge_id}/hints')
def add_hint(challenge_id: str, payload: HintIn, caller: Caller = Depends(staff_only), services: Services = Depends(get_services)):
    return services.catalog.add_hint(caller, challenge_id, payload.content, payload.cost)


@api_router.put('/hints/{hint_id}')
def update_hint(hint_id: str, payload: HintUpdateIn, caller: Caller = Depends(staff_only), services: Services = Depends(get_services)):
    return services.catalog.update_hint(caller, hint_id, payload.content, payload.cost)


@api_router.get('/challenges/{challenge_id}/hints')
def list_hints(challenge_id: str, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    return {'items': services.hints.list_hints(caller, challenge_id)}


@api_router.post('/hints/{hint_id}/purchase')
def purchase_hint(hint_id: str, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    return asdict(services.hints.purchase_hint(caller, hint_id))


@api_router.get('/leaderboard')
def leaderboard(caller: Caller | None = Depends(get_optional_caller), services: Services = Depends(get_services)):
    _visible_to(caller, services.config_provider.get_config().public_leaderboard)
    return {'items': services.leaderboard.ranking()}


@api_router.post('/teams')
def create_team(payload: TeamCreateIn, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    try:
        return services.teams.create_team(caller, payload.name)
    except TeamError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@api_router.post('/teams/join')
def join_team(payload: TeamJoinIn, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    try:
        return services.teams.join_team(caller, payload.code)
    except TeamError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@api_router.post('/teams/leave')
def leave_team(caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    try:
        return services.teams.leave_team(caller)
    except TeamError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@api_router.get('/teams/{team_id}')
def team_profile(team_id: str, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    return services.profiles.team_profile(team_id)


@api_router.get('/profile')
def profile(caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    return services.profiles.profile(caller)


@api_router.get('/status', tags=['system'])
def status_route(services: Services = Depends(get_services)):
    return services.admin.status()


@api_router.get('/admin/config')
def get_config(caller: Caller = Depends(admin_only), services: Services = Depends(get_services)):
    return services.config_provider.get_config().model_dump(mode='json')


@api_router.post('/admin/config')
def update_config(payload: ConfigPatchIn, caller: Caller = Depends(admin_only), services: Services = Depends(get_services)):
    try:
        updated = services.admin.update_config(caller, payload.model_dump(exclude_none=True))
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False)) from exc
    return updated.model_dump(mode='json')


@api_router.get('/admin/stats')
def competition_stats(caller: Caller = Depends(admin_only), services: Services = Depends(get_services)):
    return services.admin.stats()


@api_router.post('/admin/reset')
def reset_competition(caller: Caller = Depends(admin_only), services: Services = Depends(get_services)):
    return {'reset': True, 'deleted': services.admin.reset_competition(caller)}


@api_router.delete('/admin/cache')
def flush_cache(caller: Caller = Depends(admin_only), services: Services = Depends(get_services)):
    services.admin.flush_caches()
    return {'flushed': True}


@api_router.get('/triggers/stream')
def trigger_stream_route(services: Services = Depends(get_services)):
    return StreamingResponse(
        trigger_stream(services.channel, services.settings.trigger_topic, services.settings.trigger_heartbeat_seconds),
        media_type='text/event-stream',
        headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'},
    )


@api_router.websocket('/ws/triggers')
async def triggers_ws(websocket: WebSocket):
    services: Services = websocket.app.state.services
    await pump_websocket(websocket, services.channel, services.settings.trigger_topic, services.settings.trigger_heartbeat_seconds)
