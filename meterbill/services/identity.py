from __future__ import annotations

from dataclasses import dataclass
import logging
import secrets

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from meterbill.core.clock import utc_now
from meterbill.core.errors import (
    AppNotFoundError,
    AppSecretNotFoundError,
    TeamMemberExistsError,
    TeamMemberNotFoundError,
    TeamNotFoundError,
    UserNotFoundError,
)
from meterbill.domain.enums import MemberRole, MemberStatus, SecretStatus, TeamKind
from meterbill.domain.models import App, AppSecret, BillingEntity, Team, TeamMember, User, new_id
from meterbill.persistence.claims import insert_or_conflict
from meterbill.services.crypto.secrets import encrypt_secret


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisionedUser:
    user: User
    personal_team: Team
    billing_entity: BillingEntity
    created: bool


@dataclass(frozen=True)
class IssuedSecret:
    secret: AppSecret
    # Returned once at creation; only the encrypted form is stored.
    plaintext: str


async def register_app(session: AsyncSession, *, name: str) -> App:
    app = App(id=new_id(), name=name, created_at=utc_now())
    session.add(app)
    await session.commit()
    return app


async def require_app(session: AsyncSession, app_id: str) -> App:
    app = await session.get(App, app_id)
    if app is None:
        raise AppNotFoundError(app_id)
    return app


async def create_app_secret(session: AsyncSession, *, app_id: str) -> IssuedSecret:
    await require_app(session, app_id)
    plaintext = secrets.token_hex(32)
    secret = AppSecret(
        id=new_id(),
        app_id=app_id,
        kid=f"kid_{secrets.token_hex(8)}",
        secret_encrypted=encrypt_secret(plaintext),
        status=SecretStatus.ACTIVE.value,
        created_at=utc_now(),
    )
    session.add(secret)
    await session.commit()
    logger.info("app_secret_created app_id=%s kid=%s", app_id, secret.kid)
    return IssuedSecret(secret=secret, plaintext=plaintext)


async def revoke_app_secret(session: AsyncSession, *, app_id: str, kid: str) -> AppSecret:
    secret = (
        await session.execute(select(AppSecret).where(AppSecret.app_id == app_id, AppSecret.kid == kid))
    ).scalar_one_or_none()
    if secret is None:
        raise AppSecretNotFoundError(kid)
    if secret.status != SecretStatus.REVOKED.value:
        secret.status = SecretStatus.REVOKED.value
        secret.revoked_at = utc_now()
        await session.commit()
        logger.info("app_secret_revoked app_id=%s kid=%s", app_id, kid)
    return secret


def _stage_team(
    session: AsyncSession,
    *,
    app_id: str,
    name: str,
    kind: TeamKind,
    billing_mode: str,
    owner_user_id: str | None,
    external_team_id: str | None,
) -> tuple[Team, BillingEntity]:
    # Every team gets exactly one billing entity at creation.
    now = utc_now()
    team = Team(
        id=new_id(),
        app_id=app_id,
        name=name,
        kind=kind.value,
        billing_mode=billing_mode,
        owner_user_id=owner_user_id,
        external_team_id=external_team_id,
        created_at=now,
    )
    billing_entity = BillingEntity(id=new_id(), type="TEAM", team_id=team.id, created_at=now)
    session.add_all([team, billing_entity])
    if owner_user_id:
        session.add(
            TeamMember(
                id=new_id(),
                team_id=team.id,
                user_id=owner_user_id,
                role=MemberRole.OWNER.value,
                status=MemberStatus.ACTIVE.value,
                created_at=now,
            )
        )
    return team, billing_entity


async def _personal_team(session: AsyncSession, user: User) -> tuple[Team, BillingEntity]:
    team = (
        await session.execute(
            select(Team).where(Team.owner_user_id == user.id, Team.kind == TeamKind.PERSONAL.value)
        )
    ).scalar_one()
    billing_entity = (
        await session.execute(select(BillingEntity).where(BillingEntity.team_id == team.id))
    ).scalar_one()
    return team, billing_entity


async def provision_user(
    session: AsyncSession,
    *,
    app_id: str,
    external_ref: str,
    email: str | None = None,
) -> ProvisionedUser:
    """Create a user with a personal team and billing entity, or return the existing one."""
    await require_app(session, app_id)
    user_id = new_id()
    created = await insert_or_conflict(
        session,
        User,
        {"id": user_id, "app_id": app_id, "external_ref": external_ref, "email": email, "created_at": utc_now()},
    )
    user = (
        await session.execute(select(User).where(User.app_id == app_id, User.external_ref == external_ref))
    ).scalar_one()
    if not created:
        # Re-provisioning is a no-op; the original records are returned unchanged.
        await session.commit()
        team, billing_entity = await _personal_team(session, user)
        return ProvisionedUser(user=user, personal_team=team, billing_entity=billing_entity, created=False)

    team, billing_entity = _stage_team(
        session,
        app_id=app_id,
        name=f"{email or external_ref} (personal)",
        kind=TeamKind.PERSONAL,
        billing_mode="SUBSCRIPTION",
        owner_user_id=user.id,
        external_team_id=None,
    )
    await session.commit()
    logger.info("user_provisioned app_id=%s user_id=%s team_id=%s", app_id, user.id, team.id)
    return ProvisionedUser(user=user, personal_team=team, billing_entity=billing_entity, created=True)


async def get_user(session: AsyncSession, *, app_id: str, user_ref: str) -> User:
    user = (
        await session.execute(select(User).where(User.app_id == app_id, User.external_ref == user_ref))
    ).scalar_one_or_none()
    if user is None:
        user = await session.get(User, user_ref)
    if user is None or user.app_id != app_id:
        raise UserNotFoundError(user_ref)
    return user


async def create_team(
    session: AsyncSession,
    *,
    app_id: str,
    name: str,
    owner_user_id: str | None = None,
    kind: TeamKind = TeamKind.STANDARD,
    billing_mode: str = "SUBSCRIPTION",
    external_team_id: str | None = None,
) -> tuple[Team, BillingEntity]:
    await require_app(session, app_id)
    if owner_user_id is not None:
        owner = await session.get(User, owner_user_id)
        if owner is None or owner.app_id != app_id:
            raise UserNotFoundError(owner_user_id)
    team, billing_entity = _stage_team(
        session,
        app_id=app_id,
        name=name,
        kind=kind,
        billing_mode=billing_mode,
        owner_user_id=owner_user_id,
        external_team_id=external_team_id,
    )
    await session.commit()
    logger.info("team_created app_id=%s team_id=%s kind=%s", app_id, team.id, kind.value)
    return team, billing_entity


async def get_team(session: AsyncSession, team_id: str) -> Team:
    team = await session.get(Team, team_id)
    if team is None:
        raise TeamNotFoundError(team_id)
    return team


async def list_team_members(session: AsyncSession, team_id: str) -> list[TeamMember]:
    await get_team(session, team_id)
    rows = await session.execute(
        select(TeamMember)
        .where(TeamMember.team_id == team_id, TeamMember.status == MemberStatus.ACTIVE.value)
        .order_by(TeamMember.created_at)
    )
    return list(rows.scalars().all())


async def add_team_member(
    session: AsyncSession, *, team_id: str, user_id: str, role: MemberRole = MemberRole.MEMBER
) -> TeamMember:
    team = await get_team(session, team_id)
    user = await session.get(User, user_id)
    if user is None or user.app_id != team.app_id:
        raise UserNotFoundError(user_id)
    inserted = await insert_or_conflict(
        session,
        TeamMember,
        {
            "id": new_id(),
            "team_id": team_id,
            "user_id": user_id,
            "role": role.value,
            "status": MemberStatus.ACTIVE.value,
            "created_at": utc_now(),
        },
    )
    if not inserted:
        # A previously removed member is re-activated; an active one is a conflict.
        result = await session.execute(
            update(TeamMember)
            .where(
                TeamMember.team_id == team_id,
                TeamMember.user_id == user_id,
                TeamMember.status == MemberStatus.REMOVED.value,
            )
            .values(status=MemberStatus.ACTIVE.value, role=role.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            raise TeamMemberExistsError(team_id, user_id)
    await session.commit()
    member = (
        await session.execute(
            select(TeamMember).where(TeamMember.team_id == team_id, TeamMember.user_id == user_id)
        )
    ).scalar_one()
    await session.refresh(member)
    return member


async def remove_team_member(session: AsyncSession, *, team_id: str, user_id: str) -> TeamMember:
    member = (
        await session.execute(
            select(TeamMember).where(
                TeamMember.team_id == team_id,
                TeamMember.user_id == user_id,
                TeamMember.status == MemberStatus.ACTIVE.value,
            )
        )
    ).scalar_one_or_none()
    if member is None:
        raise TeamMemberNotFoundError(team_id, user_id)
    member.status = MemberStatus.REMOVED.value
    await session.commit()
    return member
