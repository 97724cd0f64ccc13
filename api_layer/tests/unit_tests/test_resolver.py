"""Tests for the action resolver."""

from datetime import timedelta

import pytest

from reqflow_api.workflow.enums import ErrorKind
from reqflow_api.workflow.enums import Relationship
from reqflow_api.workflow.enums import RequestAction
from reqflow_api.workflow.enums import RequestState
from reqflow_api.workflow.models.actor import ActorRef
from reqflow_api.workflow.models.actor import ActorSnapshot
from reqflow_api.workflow.models.actor import CoordinatorSnapshot
from reqflow_api.workflow.models.actor import ReviewerSnapshot
from reqflow_api.workflow.models.request import ActiveResponder
from reqflow_api.workflow.models.request import Claim
from reqflow_api.workflow.models.request import EventRequest
from reqflow_api.workflow.models.request import utc_now
from reqflow_api.workflow.resolver import ActionContext
from reqflow_api.workflow.resolver import ActionResolver

COORDINATOR_GRANTS = frozenset({"request.read", "request.review", "request.reschedule", "request.cancel"})
REQUESTER_GRANTS = frozenset({"request.read", "request.confirm", "request.reschedule", "request.cancel"})


def make_request(status=RequestState.PENDING_REVIEW, requester_authority=30, **overrides) -> EventRequest:
    now = utc_now()
    data = dict(
        id="REQ-1",
        status=status,
        requester=ActorSnapshot(user_id="req", name="Requester", authority_snapshot=requester_authority),
        reviewer=ReviewerSnapshot(user_id="A", name="A", authority_snapshot=60, assigned_at=now),
        valid_coordinators=[
            CoordinatorSnapshot(user_id="A", name="A", authority=60),
            CoordinatorSnapshot(user_id="B", name="B", authority=65),
        ],
        active_responder=ActiveResponder(relationship=Relationship.REVIEWER),
    )
    data.update(overrides)
    return EventRequest(**data)


def context_for(actor_id, authority=60, grants=COORDINATOR_GRANTS, wildcard=False) -> ActionContext:
    return ActionContext(actor=ActorRef(id=actor_id, authority=authority), granted=grants, wildcard=wildcard)


@pytest.fixture
def resolver():
    return ActionResolver()


class TestAvailableActions:
    def test_valid_coordinators_see_same_actions_before_claim(self, resolver):
        """Coordinator B sees exactly what the assigned reviewer A sees while unclaimed."""
        request = make_request()

        actions_a = resolver.get_available_actions("A", request, context_for("A"))
        actions_b = resolver.get_available_actions("B", request, context_for("B", authority=65))

        assert actions_a == actions_b
        assert actions_a == [RequestAction.VIEW, RequestAction.ACCEPT, RequestAction.REJECT, RequestAction.RESCHEDULE]

    def test_claim_makes_actions_exclusive(self, resolver):
        now = utc_now()
        request = make_request(
            claim=Claim(holder_id="B", claimed_at=now, expires_at=now + timedelta(minutes=30)),
        )

        assert resolver.get_available_actions("A", request, context_for("A")) == [RequestAction.VIEW]
        assert RequestAction.ACCEPT in resolver.get_available_actions("B", request, context_for("B", authority=65))

    def test_expired_claim_is_ignored(self, resolver):
        now = utc_now()
        request = make_request(
            claim=Claim(holder_id="B", claimed_at=now - timedelta(hours=1), expires_at=now - timedelta(seconds=1)),
        )

        assert RequestAction.ACCEPT in resolver.get_available_actions("A", request, context_for("A"))

    @pytest.mark.parametrize("status", [RequestState.REJECTED, RequestState.CANCELLED, RequestState.COMPLETED])
    def test_terminal_returns_only_view(self, resolver, status):
        request = make_request(status=status)

        assert resolver.get_available_actions("A", request, context_for("A")) == [RequestAction.VIEW]
        assert resolver.get_available_actions("admin", request, context_for("admin", 100, wildcard=True)) == [
            RequestAction.VIEW
        ]

    def test_unrelated_actor_gets_view(self, resolver):
        request = make_request()

        assert resolver.get_available_actions("Z", request, context_for("Z")) == [RequestAction.VIEW]

    def test_missing_permission_collapses_to_view(self, resolver):
        request = make_request()
        context = context_for("A", grants=frozenset({"request.read"}))

        assert resolver.get_available_actions("A", request, context) == [RequestAction.VIEW]

    def test_reschedule_falls_back_to_review_permission(self, resolver):
        request = make_request()
        context = context_for("A", grants=frozenset({"request.review"}))

        assert RequestAction.RESCHEDULE in resolver.get_available_actions("A", request, context)

    def test_requester_waits_while_reviewer_holds_turn(self, resolver):
        request = make_request()
        context = context_for("req", authority=30, grants=REQUESTER_GRANTS)

        assert resolver.get_available_actions("req", request, context) == [RequestAction.VIEW]

    def test_requester_turn_after_reviewer_reschedule(self, resolver):
        request = make_request(
            status=RequestState.REVIEW_RESCHEDULED,
            active_responder=ActiveResponder(user_id="req", relationship=Relationship.REQUESTER, authority=30),
        )
        context = context_for("req", authority=30, grants=REQUESTER_GRANTS)

        assert resolver.get_available_actions("req", request, context) == [
            RequestAction.VIEW,
            RequestAction.CONFIRM,
            RequestAction.DECLINE,
            RequestAction.RESCHEDULE,
        ]
        # Reviewer side is gated until the requester responds
        assert resolver.get_available_actions("A", request, context_for("A")) == [RequestAction.VIEW]

    def test_approved_requester_can_cancel(self, resolver):
        request = make_request(status=RequestState.APPROVED, active_responder=None)
        context = context_for("req", authority=30, grants=REQUESTER_GRANTS)

        actions = resolver.get_available_actions("req", request, context)

        assert RequestAction.CANCEL in actions
        assert RequestAction.CONFIRM in actions

    def test_authority_below_requester_blocks_review(self, resolver):
        now = utc_now()
        request = make_request(
            requester_authority=70,
            reviewer=ReviewerSnapshot(user_id="X", name="X", authority_snapshot=80, assigned_at=now),
        )

        assert resolver.get_available_actions("A", request, context_for("A", authority=60)) == [RequestAction.VIEW]
        assert RequestAction.ACCEPT in resolver.get_available_actions("X", request, context_for("X", authority=80))

    def test_junior_routed_reviewer_passes_authority(self, resolver):
        """Admin requests are routed to the coordinator band; the reviewer and peers at that level decide."""
        request = make_request(requester_authority=80)

        for actor_id, authority in (("A", 60), ("B", 65)):
            actions = resolver.get_available_actions(actor_id, request, context_for(actor_id, authority=authority))
            assert actions == [
                RequestAction.VIEW,
                RequestAction.ACCEPT,
                RequestAction.REJECT,
                RequestAction.RESCHEDULE,
            ]

    def test_below_routed_reviewer_is_blocked(self, resolver):
        request = make_request(
            requester_authority=80,
            valid_coordinators=[
                CoordinatorSnapshot(user_id="A", name="A", authority=60),
                CoordinatorSnapshot(user_id="J", name="J", authority=50),
            ],
        )

        result = resolver.validate_action("J", "accept", request, context_for("J", authority=50))

        assert result.error_kind == ErrorKind.FORBIDDEN
        assert "below required authority 60" in result.reason

    def test_wildcard_requester_cannot_review_own_request(self, resolver):
        request = make_request(requester=ActorSnapshot(user_id="root", name="Root", authority_snapshot=100))
        context = context_for("root", authority=100, wildcard=True)

        assert resolver.relationships("root", request, context) == [Relationship.REQUESTER]
        assert resolver.get_available_actions("root", request, context) == [RequestAction.VIEW]

    def test_wildcard_admin_still_reviews_others(self, resolver):
        context = context_for("root", authority=100, wildcard=True)

        assert resolver.relationships("root", make_request(), context) == [Relationship.REVIEWER]

    def test_system_admin_bypasses_authority(self, resolver):
        request = make_request(requester_authority=100)
        context = context_for("root", authority=100, wildcard=True)

        assert RequestAction.ACCEPT in resolver.get_available_actions("root", request, context)


class TestValidateAction:
    def test_reviewer_confirm_maps_to_accept(self, resolver):
        result = resolver.validate_action("A", "confirm", make_request(), context_for("A"))

        assert result.valid
        assert result.action == RequestAction.ACCEPT
        assert result.side == Relationship.REVIEWER

    def test_requester_accept_maps_to_confirm(self, resolver):
        request = make_request(
            status=RequestState.REVIEW_RESCHEDULED,
            active_responder=ActiveResponder(user_id="req", relationship=Relationship.REQUESTER),
        )
        context = context_for("req", authority=30, grants=REQUESTER_GRANTS)

        result = resolver.validate_action("req", "accept", request, context)

        assert result.valid
        assert result.action == RequestAction.CONFIRM
        assert result.side == Relationship.REQUESTER

    def test_unknown_action(self, resolver):
        result = resolver.validate_action("A", "teleport", make_request(), context_for("A"))

        assert not result.valid
        assert result.error_kind == ErrorKind.VALIDATION_ERROR

    def test_terminal_is_invalid_transition(self, resolver):
        result = resolver.validate_action("A", "accept", make_request(status=RequestState.REJECTED), context_for("A"))

        assert result.error_kind == ErrorKind.INVALID_TRANSITION

    def test_cancel_in_pending_review_is_invalid_transition(self, resolver):
        context = context_for("req", authority=30, grants=REQUESTER_GRANTS)

        result = resolver.validate_action("req", "cancel", make_request(), context)

        assert result.error_kind == ErrorKind.INVALID_TRANSITION

    def test_unrelated_actor_forbidden(self, resolver):
        result = resolver.validate_action("Z", "accept", make_request(), context_for("Z"))

        assert result.error_kind == ErrorKind.FORBIDDEN

    def test_claimed_by_other_forbidden(self, resolver):
        now = utc_now()
        request = make_request(claim=Claim(holder_id="B", claimed_at=now, expires_at=now + timedelta(minutes=5)))

        result = resolver.validate_action("A", "accept", request, context_for("A"))

        assert result.error_kind == ErrorKind.FORBIDDEN
        assert "claimed" in result.reason

    def test_out_of_turn_forbidden(self, resolver):
        request = make_request(
            status=RequestState.REVIEW_RESCHEDULED,
            active_responder=ActiveResponder(user_id="req", relationship=Relationship.REQUESTER),
        )

        result = resolver.validate_action("A", "accept", request, context_for("A"))

        assert result.error_kind == ErrorKind.FORBIDDEN

    def test_view_is_always_valid(self, resolver):
        result = resolver.validate_action("Z", "view", make_request(status=RequestState.CANCELLED), context_for("Z"))

        assert result.valid
        assert result.action == RequestAction.VIEW

    def test_delete_is_not_a_workflow_action(self, resolver):
        result = resolver.validate_action("A", "delete", make_request(), context_for("A"))

        assert result.error_kind == ErrorKind.VALIDATION_ERROR
