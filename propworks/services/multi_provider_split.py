"""
Multi-provider assignment and splitting.

assign_providers attaches providers to an intervention and sets its
assignment mode:
    1 provider   → single
    >1 providers → group (one shared intervention) or separate

split_intervention turns a ``separate`` intervention with N providers into N
child interventions, one per provider. Each child gets that provider's
assignment (as primary, with its instructions), copies of the manager and
tenant assignments, and the provider's time slots and quotes are moved to it.

The parent keeps its status and is stamped with ``split_at``; it can never be
split again, and children (``parent_intervention_id`` set) cannot be split.

get_linked_interventions reads the split family back: parent, children and
siblings.

Assigning and splitting are manager operations limited to the intervention's
team.
"""

import logging
from datetime import datetime, timezone

from propworks.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from propworks.models import db
from propworks.models.intervention import (
    TERMINAL_STATUSES,
    AssignmentMode,
    ConfirmationStatus,
    Intervention,
    InterventionAssignment,
    ParticipantRole,
)
from propworks.repositories.intervention_repository import (
    ChildInterventionSpec,
    InterventionRepository,
)
from propworks.services.helpers.unit_of_work import log_activity, notify, unit_of_work
from propworks.services.participant_permissions import authorize_team, authorize_viewer

logger = logging.getLogger(__name__)

# Columns a child inherits from its parent
_INHERITED_FIELDS = (
    "team_id",
    "lot_id",
    "building_id",
    "title",
    "description",
    "status",
    "created_by",
    "scheduled_date",
    "requires_participant_confirmation",
)


def _load(intervention_id: int) -> Intervention:
    intervention = InterventionRepository.get_intervention(intervention_id)
    if intervention is None:
        raise NotFoundError("Intervention", intervention_id)
    return intervention


def _normalize_instructions(instructions) -> dict[int, str]:
    if not instructions:
        return {}
    if not isinstance(instructions, dict):
        raise ValidationError("instructions must map provider id to text",
                              details={"field": "instructions"})
    normalized = {}
    for key, text in instructions.items():
        try:
            normalized[int(key)] = text
        except (TypeError, ValueError):
            raise ValidationError(f"instructions key {key!r} is not a provider id",
                                  details={"field": "instructions"})
    return normalized


# ── Assign ───────────────────────────────────────────────────────────────


def assign_providers(
    intervention_id: int,
    provider_ids: list[int],
    mode: str | None,
    actor_id: int,
    instructions: dict | None = None,
) -> dict:
    """
    Attach providers to an intervention.

    The first provider in ``provider_ids`` becomes primary. Providers already
    assigned keep their row; their primary flag and instructions are updated.

    Raises:
        ValidationError: empty list, unknown users, bad mode
        NotFoundError, InvalidStateError
        ForbiddenError: actor belongs to another team
    """
    ids = []
    for value in provider_ids or []:
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ValidationError("provider_ids must contain integers",
                                  details={"field": "provider_ids"})
        if number not in ids:
            ids.append(number)
    if not ids:
        raise ValidationError("provider_ids must be a non-empty list",
                              details={"field": "provider_ids"})

    if len(ids) == 1:
        assignment_mode = AssignmentMode.SINGLE
    else:
        try:
            assignment_mode = AssignmentMode(mode)
        except ValueError:
            assignment_mode = None
        if assignment_mode not in (AssignmentMode.GROUP, AssignmentMode.SEPARATE):
            raise ValidationError(
                "mode must be 'group' or 'separate' for several providers",
                details={"field": "mode", "allowed": [AssignmentMode.GROUP.value,
                                                      AssignmentMode.SEPARATE.value]},
            )
    notes = _normalize_instructions(instructions)

    intervention = _load(intervention_id)
    authorize_team(intervention, actor_id)
    if intervention.status_enum in TERMINAL_STATUSES:
        raise InvalidStateError(
            f"Cannot assign providers to intervention {intervention_id} (status={intervention.status})",
            current_status=intervention.status,
        )
    if intervention.split_at is not None:
        raise InvalidStateError(f"Intervention {intervention_id} has already been split")

    users = {u.id: u for u in InterventionRepository.get_users(ids)}
    invalid = [uid for uid in ids if uid not in users or users[uid].role_enum != ParticipantRole.PROVIDER]
    if invalid:
        raise ValidationError("provider_ids must reference provider users",
                              details={"invalid_ids": invalid})

    existing = {
        a.user_id: a
        for a in InterventionRepository.get_assignments(intervention_id, ParticipantRole.PROVIDER)
    }
    needs_confirmation = bool(intervention.requires_participant_confirmation)

    with unit_of_work("assign providers", intervention_id=intervention_id):
        for position, provider_id in enumerate(ids):
            assignment = existing.get(provider_id)
            if assignment is None:
                assignment = InterventionAssignment(
                    intervention_id=intervention_id,
                    user_id=provider_id,
                    role=ParticipantRole.PROVIDER.value,
                    requires_confirmation=needs_confirmation,
                    confirmation_status=(
                        ConfirmationStatus.PENDING.value if needs_confirmation
                        else ConfirmationStatus.NOT_REQUIRED.value
                    ),
                    assigned_by=actor_id,
                )
                db.session.add(assignment)
            assignment.is_primary = position == 0
            if provider_id in notes:
                assignment.provider_instructions = notes[provider_id]
        for provider_id, assignment in existing.items():
            if provider_id not in ids:
                assignment.is_primary = False
        intervention.assignment_mode = assignment_mode.value

    logger.info("Assigned %d provider(s) to intervention %s (%s)", len(ids), intervention_id,
                assignment_mode.value,
                extra={"intervention_id": intervention_id, "actor_id": actor_id,
                       "event_type": "intervention.assign_providers"})
    log_activity(
        entity_type="intervention",
        entity_id=intervention_id,
        action="intervention.assign_providers",
        actor=actor_id,
        team_id=intervention.team_id,
        metadata={"provider_ids": ids, "assignment_mode": assignment_mode.value},
    )
    return {
        "intervention_id": intervention_id,
        "assignment_mode": assignment_mode.value,
        "provider_ids": ids,
        "primary_provider_id": ids[0],
    }


# ── Split ────────────────────────────────────────────────────────────────


def _assignment_copy(assignment: InterventionAssignment, actor_id: int, **overrides) -> dict:
    data = {
        "user_id": assignment.user_id,
        "role": assignment.role,
        "is_primary": assignment.is_primary,
        "requires_confirmation": assignment.requires_confirmation,
        "confirmation_status": assignment.confirmation_status,
        "provider_instructions": assignment.provider_instructions,
        "assigned_by": actor_id,
    }
    data.update(overrides)
    return data


def _build_specs(parent: Intervention, actor_id: int) -> list[ChildInterventionSpec]:
    assignments = InterventionRepository.get_assignments(parent.id)
    providers = []
    for a in assignments:
        if a.role_enum == ParticipantRole.PROVIDER and a.user_id not in {p.user_id for p in providers}:
            providers.append(a)
    shared = [a for a in assignments if a.role_enum != ParticipantRole.PROVIDER]
    quotes = InterventionRepository.get_quotes_for_intervention(parent.id)

    fields = {name: getattr(parent, name) for name in _INHERITED_FIELDS}
    fields["assignment_mode"] = AssignmentMode.SINGLE.value

    specs = []
    for provider in providers:
        specs.append(ChildInterventionSpec(
            provider_id=provider.user_id,
            fields=dict(fields),
            assignments=[_assignment_copy(provider, actor_id, is_primary=True)]
                        + [_assignment_copy(a, actor_id) for a in shared],
            time_slot_ids=[s.id for s in parent.time_slots if s.provider_id == provider.user_id],
            quote_ids=[q.id for q in quotes if q.provider_id == provider.user_id],
        ))
    return specs


def split_intervention(parent_id: int, actor_id: int) -> dict:
    """
    Split a ``separate``-mode intervention into one child per provider.

    Returns:
        {"parent_id", "child_count", "child_ids"}

    Raises:
        NotFoundError
        ForbiddenError: actor belongs to another team
        InvalidStateError: child intervention, already split, terminal status,
            not in separate mode, or fewer than two providers
    """
    parent = _load(parent_id)
    authorize_team(parent, actor_id)
    if parent.is_child:
        raise InvalidStateError(
            f"Intervention {parent_id} is a split child of {parent.parent_intervention_id} "
            "and cannot be split",
        )
    if parent.split_at is not None:
        raise InvalidStateError(f"Intervention {parent_id} has already been split")
    if parent.status_enum in TERMINAL_STATUSES:
        raise InvalidStateError(
            f"Cannot split intervention {parent_id} (status={parent.status})",
            current_status=parent.status,
        )
    if parent.assignment_mode != AssignmentMode.SEPARATE.value:
        raise InvalidStateError(
            f"Intervention {parent_id} is in {parent.assignment_mode} mode; "
            "only separate-mode interventions can be split",
        )

    specs = _build_specs(parent, actor_id)
    if len(specs) < 2:
        raise InvalidStateError(
            f"Intervention {parent_id} needs more than one provider to split "
            f"(found {len(specs)})",
        )

    with unit_of_work("split intervention", intervention_id=parent_id):
        rows = InterventionRepository.mark_split(parent_id, datetime.now(timezone.utc))
        if rows != 1:
            raise InvalidStateError(f"Intervention {parent_id} has already been split")
        children = InterventionRepository.create_child_interventions(parent_id, specs)
        child_ids = [c.id for c in children]

    provider_ids = [s.provider_id for s in specs]
    logger.info("Split intervention %s into %d children", parent_id, len(child_ids),
                extra={"intervention_id": parent_id, "actor_id": actor_id,
                       "event_type": "intervention.split"})
    log_activity(
        entity_type="intervention",
        entity_id=parent_id,
        action="intervention.split",
        actor=actor_id,
        team_id=parent.team_id,
        metadata={"child_ids": child_ids, "provider_ids": provider_ids},
    )
    for spec, child_id in zip(specs, child_ids):
        notify(
            "notify_users", [spec.provider_id], "intervention_split",
            f"Intervention #{child_id} assigned to you",
            f"Intervention #{parent_id} was split; #{child_id} is now yours alone.",
            {"parent_id": parent_id, "child_id": child_id},
            team_id=parent.team_id, entity_type="intervention", entity_id=child_id,
        )

    return {"parent_id": parent_id, "child_count": len(child_ids), "child_ids": child_ids}


# ── Linked interventions ─────────────────────────────────────────────────


def get_linked_interventions(intervention_id: int, actor_id: int) -> dict:
    """
    The split family of an intervention: its parent, its own children and,
    for a child, the other children of the same parent.

    Raises:
        NotFoundError
        ForbiddenError: actor is outside the team and not a participant
    """
    intervention = _load(intervention_id)
    authorize_viewer(intervention, actor_id)

    parent = intervention.parent if intervention.is_child else None
    siblings = []
    if parent is not None:
        siblings = [c.to_dict() for c in parent.children if c.id != intervention.id]

    return {
        "intervention_id": intervention.id,
        "assignment_mode": intervention.assignment_mode,
        "is_child": intervention.is_child,
        "parent": parent.to_dict() if parent is not None else None,
        "children": [c.to_dict() for c in intervention.children],
        "siblings": siblings,
    }
