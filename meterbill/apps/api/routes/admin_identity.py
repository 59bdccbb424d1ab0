from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from meterbill.apps.api.deps import get_db, require_admin
from meterbill.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from meterbill.apps.api.response import SuccessEnvelope, success_response
from meterbill.core.clock import isoformat
from meterbill.domain.enums import BillingMode, MemberRole, TeamKind
from meterbill.domain.models import App, AppSecret, BillingEntity, Team, TeamMember, User
from meterbill.services import identity


router = APIRouter(
    prefix="/admin",
    tags=["admin-identity"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)


class AppCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class UserProvisionRequest(BaseModel):
    external_ref: str = Field(min_length=1, max_length=255)
    email: str | None = None


class TeamCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    owner_user_id: str | None = None
    billing_mode: BillingMode = BillingMode.SUBSCRIPTION
    external_team_id: str | None = None


class MemberAddRequest(BaseModel):
    user_id: str = Field(min_length=1)
    role: MemberRole = MemberRole.MEMBER


def _app_payload(app: App) -> dict[str, Any]:
    return {"id": app.id, "name": app.name, "created_at": isoformat(app.created_at)}


def _secret_payload(secret: AppSecret) -> dict[str, Any]:
    return {
        "kid": secret.kid,
        "app_id": secret.app_id,
        "status": secret.status,
        "created_at": isoformat(secret.created_at),
        "revoked_at": isoformat(secret.revoked_at),
    }


def _user_payload(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "app_id": user.app_id,
        "external_ref": user.external_ref,
        "email": user.email,
        "created_at": isoformat(user.created_at),
    }


def _team_payload(team: Team, billing_entity: BillingEntity | None = None) -> dict[str, Any]:
    payload = {
        "id": team.id,
        "app_id": team.app_id,
        "name": team.name,
        "kind": team.kind,
        "billing_mode": team.billing_mode,
        "owner_user_id": team.owner_user_id,
        "external_team_id": team.external_team_id,
        "created_at": isoformat(team.created_at),
    }
    if billing_entity is not None:
        payload["billing_entity_id"] = billing_entity.id
    return payload


def _member_payload(member: TeamMember) -> dict[str, Any]:
    return {
        "team_id": member.team_id,
        "user_id": member.user_id,
        "role": member.role,
        "status": member.status,
        "created_at": isoformat(member.created_at),
    }


@router.post("/apps", status_code=status.HTTP_201_CREATED, response_model=SuccessEnvelope[dict[str, Any]])
async def create_app_record(
    payload: AppCreateRequest, request: Request, db: AsyncSession = Depends(get_db)
) -> dict:
    app = await identity.register_app(db, name=payload.name)
    return success_response(request=request, data=_app_payload(app))


@router.get("/apps/{app_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def get_app_record(app_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    app = await identity.require_app(db, app_id)
    return success_response(request=request, data=_app_payload(app))


@router.post(
    "/apps/{app_id}/secrets",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[dict[str, Any]],
)
async def create_secret(app_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # The plaintext signing secret is only ever returned here.
    issued = await identity.create_app_secret(db, app_id=app_id)
    data = _secret_payload(issued.secret)
    data["secret"] = issued.plaintext
    return success_response(request=request, data=data)


@router.post("/apps/{app_id}/secrets/{kid}/revoke", response_model=SuccessEnvelope[dict[str, Any]])
async def revoke_secret(app_id: str, kid: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    secret = await identity.revoke_app_secret(db, app_id=app_id, kid=kid)
    return success_response(request=request, data=_secret_payload(secret))


@router.post("/apps/{app_id}/users", response_model=SuccessEnvelope[dict[str, Any]])
async def provision_user(
    app_id: str, payload: UserProvisionRequest, request: Request, db: AsyncSession = Depends(get_db)
) -> dict:
    provisioned = await identity.provision_user(
        db, app_id=app_id, external_ref=payload.external_ref, email=payload.email
    )
    data = {
        "user": _user_payload(provisioned.user),
        "personal_team": _team_payload(provisioned.personal_team, provisioned.billing_entity),
        "created": provisioned.created,
    }
    return success_response(request=request, data=data)


@router.get("/apps/{app_id}/users/{user_ref}", response_model=SuccessEnvelope[dict[str, Any]])
async def get_user(app_id: str, user_ref: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    user = await identity.get_user(db, app_id=app_id, user_ref=user_ref)
    return success_response(request=request, data=_user_payload(user))


@router.post(
    "/apps/{app_id}/teams",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[dict[str, Any]],
)
async def create_team(
    app_id: str, payload: TeamCreateRequest, request: Request, db: AsyncSession = Depends(get_db)
) -> dict:
    team, billing_entity = await identity.create_team(
        db,
        app_id=app_id,
        name=payload.name,
        owner_user_id=payload.owner_user_id,
        kind=TeamKind.ENTERPRISE if payload.billing_mode == BillingMode.ENTERPRISE_CONTRACT else TeamKind.STANDARD,
        billing_mode=payload.billing_mode.value,
        external_team_id=payload.external_team_id,
    )
    return success_response(request=request, data=_team_payload(team, billing_entity))


@router.get("/teams/{team_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def get_team(team_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    team = await identity.get_team(db, team_id)
    members = await identity.list_team_members(db, team_id)
    data = _team_payload(team)
    data["members"] = [_member_payload(member) for member in members]
    return success_response(request=request, data=data)


@router.get("/teams/{team_id}/members", response_model=SuccessEnvelope[list[dict[str, Any]]])
async def list_members(team_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    members = await identity.list_team_members(db, team_id)
    return success_response(request=request, data=[_member_payload(member) for member in members])


@router.post(
    "/teams/{team_id}/members",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[dict[str, Any]],
)
async def add_member(
    team_id: str, payload: MemberAddRequest, request: Request, db: AsyncSession = Depends(get_db)
) -> dict:
    member = await identity.add_team_member(db, team_id=team_id, user_id=payload.user_id, role=payload.role)
    return success_response(request=request, data=_member_payload(member))


@router.delete("/teams/{team_id}/members/{user_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def remove_member(team_id: str, user_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    member = await identity.remove_team_member(db, team_id=team_id, user_id=user_id)
    return success_response(request=request, data=_member_payload(member))
