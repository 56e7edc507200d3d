"""
Participant permission resolution.

``resolve_permissions`` is pure: it turns an intervention, the participant's
assignment and the creator flag into a ``PermissionSet``. Decision order:

    1. creator                                   → full access
    2. intervention needs no confirmation        → full access
    3. no assignment                             → no access
    4. assignment needs no confirmation          → full access
    5. by confirmation_status:
         pending   → interact, confirm, chat
         confirmed → full access
         rejected  → chat only
         other     → no access

``authorize`` is the single role check used by the workflow services;
``authorize_team`` keeps managers inside their own team and
``authorize_viewer`` gates the read endpoints.

Usage:
    from propworks.services.participant_permissions import authorize, resolve_permissions

    assignment = authorize(intervention.id, actor_id, [ParticipantRole.PROVIDER], primary_only=True)
"""

import logging
from dataclasses import asdict, dataclass

from propworks.core.exceptions import ForbiddenError, NotFoundError
from propworks.models.auth import User
from propworks.models.intervention import (
    ConfirmationStatus,
    Intervention,
    InterventionAssignment,
    ParticipantRole,
)
from propworks.repositories.intervention_repository import InterventionRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PermissionSet:
    can_interact: bool
    can_confirm: bool
    can_edit_schedule: bool
    can_chat: bool
    can_upload_documents: bool
    can_manage_quotes: bool
    reason: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


FULL_ACCESS = PermissionSet(
    can_interact=True,
    can_confirm=False,
    can_edit_schedule=True,
    can_chat=True,
    can_upload_documents=True,
    can_manage_quotes=True,
)

AWAITING_CONFIRMATION = PermissionSet(
    can_interact=True,
    can_confirm=True,
    can_edit_schedule=False,
    can_chat=True,
    can_upload_documents=False,
    can_manage_quotes=False,
    reason="confirmation required",
)

PARTICIPATION_DECLINED = PermissionSet(
    can_interact=False,
    can_confirm=False,
    can_edit_schedule=False,
    can_chat=True,
    can_upload_documents=False,
    can_manage_quotes=False,
    reason="participation declined",
)


def no_access(reason: str) -> PermissionSet:
    return PermissionSet(
        can_interact=False,
        can_confirm=False,
        can_edit_schedule=False,
        can_chat=False,
        can_upload_documents=False,
        can_manage_quotes=False,
        reason=reason,
    )


def resolve_permissions(
    intervention: Intervention,
    assignment: InterventionAssignment | None,
    is_creator: bool,
) -> PermissionSet:
    if is_creator:
        return FULL_ACCESS
    if not intervention.requires_participant_confirmation:
        return FULL_ACCESS
    if assignment is None:
        return no_access("not assigned to this intervention")
    if (not assignment.requires_confirmation
            or assignment.confirmation_status == ConfirmationStatus.NOT_REQUIRED.value):
        return FULL_ACCESS

    try:
        status = ConfirmationStatus(assignment.confirmation_status)
    except ValueError:
        logger.warning(
            "Unrecognised confirmation status %r on assignment %s",
            assignment.confirmation_status, assignment.id,
            extra={"intervention_id": intervention.id},
        )
        return no_access("unrecognised confirmation status")

    if status == ConfirmationStatus.PENDING:
        return AWAITING_CONFIRMATION
    if status == ConfirmationStatus.CONFIRMED:
        return FULL_ACCESS
    if status == ConfirmationStatus.REJECTED:
        return PARTICIPATION_DECLINED
    return no_access("unrecognised confirmation status")


def get_participant_permissions(intervention_id: int, user_id: int) -> PermissionSet:
    """Load the intervention and the user's assignment, then resolve."""
    intervention = InterventionRepository.get_intervention(intervention_id)
    if intervention is None:
        raise NotFoundError("Intervention", intervention_id)
    assignment = InterventionRepository.get_assignment_for_user(intervention_id, user_id)
    return resolve_permissions(
        intervention, assignment, is_creator=intervention.created_by == user_id,
    )


def authorize(
    intervention_id: int,
    actor_id: int,
    roles,
    primary_only: bool = False,
) -> InterventionAssignment:
    """Return the actor's assignment in one of ``roles``.

    Raises:
        ForbiddenError: the actor holds none of the roles (or is not primary
            when ``primary_only`` is set).
    """
    wanted = {ParticipantRole(r) for r in roles}
    for assignment in InterventionRepository.get_assignments(intervention_id):
        if assignment.user_id != actor_id or assignment.role_enum not in wanted:
            continue
        if primary_only and not assignment.is_primary:
            continue
        return assignment

    role_names = "/".join(sorted(r.value for r in wanted))
    qualifier = "primary " if primary_only else ""
    raise ForbiddenError(
        f"User {actor_id} is not the {qualifier}{role_names} of intervention {intervention_id}",
        details={"roles": sorted(r.value for r in wanted), "primary_only": primary_only},
    )


def authorize_team(intervention: Intervention, actor_id: int) -> User:
    """Return the actor when they belong to the intervention's team.

    Every manager-side operation passes through here before touching the
    intervention or its quotes.

    Raises:
        ForbiddenError: unknown actor, or a member of another team.
    """
    actor = InterventionRepository.get_user(actor_id)
    if actor is None:
        raise ForbiddenError(f"User {actor_id} is unknown")
    if actor.team_id != intervention.team_id:
        logger.warning(
            "User %s (team %s) refused on intervention %s of another team",
            actor_id, actor.team_id, intervention.id,
            extra={"intervention_id": intervention.id, "actor_id": actor_id,
                   "event_type": "authz.cross_team"},
        )
        raise ForbiddenError(
            f"User {actor_id} does not belong to the team of intervention {intervention.id}",
        )
    return actor


def authorize_viewer(intervention: Intervention, actor_id: int) -> User:
    """Team members, and participants from outside the team, may read."""
    actor = InterventionRepository.get_user(actor_id)
    if actor is None:
        raise ForbiddenError(f"User {actor_id} is unknown")
    if actor.team_id == intervention.team_id:
        return actor
    if InterventionRepository.get_assignment_for_user(intervention.id, actor_id) is not None:
        return actor
    raise ForbiddenError(f"User {actor_id} cannot view intervention {intervention.id}")
