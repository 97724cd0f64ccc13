"""Tests for RequestService orchestration."""

import asyncio
import re
from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from reqflow_api.workflow.enums import AssignmentRule
from reqflow_api.workflow.enums import DecisionType
from reqflow_api.workflow.enums import Relationship
from reqflow_api.workflow.enums import RequestAction
from reqflow_api.workflow.enums import RequestState
from reqflow_api.workflow.exceptions import ConflictError
from reqflow_api.workflow.exceptions import ForbiddenError
from reqflow_api.workflow.exceptions import InvalidTransitionError
from reqflow_api.workflow.exceptions import NotFoundError
from reqflow_api.workflow.exceptions import RequestFlowError
from reqflow_api.workflow.exceptions import RequestValidationError
from reqflow_api.workflow.service import RequestService
from tests.fixtures.workflow_fixtures import ADMIN
from tests.fixtures.workflow_fixtures import COORD_A
from tests.fixtures.workflow_fixtures import COORD_B
from tests.fixtures.workflow_fixtures import LOCATION
from tests.fixtures.workflow_fixtures import OUTSIDER
from tests.fixtures.workflow_fixtures import REQUESTER
from tests.fixtures.workflow_fixtures import RecordingDispatcher
from tests.fixtures.workflow_fixtures import event_day
from tests.fixtures.workflow_fixtures import event_details
from tests.fixtures.workflow_fixtures import submit_request


def next_saturday() -> str:
    day = datetime.now(timezone.utc).date() + timedelta(days=1)
    while day.weekday() != 5:
        day += timedelta(days=1)
    return day.isoformat()


class TestCreateRequest:
    @pytest.mark.asyncio
    async def test_creates_pending_request(self, request_service, dispatcher):
        request = await submit_request(request_service)

        assert re.match(r"^REQ-\d{13}-\d{4}$", request.id)
        assert request.status == RequestState.PENDING_REVIEW
        assert request.version == 1
        assert [c.user_id for c in request.valid_coordinators] == [COORD_A, COORD_B]
        assert request.reviewer.user_id == COORD_A
        assert request.reviewer.assignment_rule == AssignmentRule.STAKEHOLDER_TO_COORDINATOR
        assert request.active_responder.relationship == Relationship.REVIEWER
        assert request.active_responder.user_id is None
        assert request.status_history[0].note == "Request submitted"
        assert request.last_action.action == RequestAction.CREATE
        assert dispatcher.names() == ["request_created", "coordinator_assigned"]

    @pytest.mark.asyncio
    async def test_requires_create_permission(self, request_service):
        with pytest.raises(ForbiddenError):
            await submit_request(request_service, requester_id=COORD_A)

    @pytest.mark.asyncio
    async def test_unknown_user(self, request_service):
        with pytest.raises(NotFoundError):
            await submit_request(request_service, requester_id="u-ghost")

    @pytest.mark.asyncio
    async def test_no_coordinator_coverage(self, request_service):
        with pytest.raises(RequestValidationError):
            await request_service.create_request(REQUESTER, event_details(), location_id="LOC-nowhere")

    @pytest.mark.asyncio
    async def test_missing_title(self, request_service):
        details = event_details()
        del details["title"]

        with pytest.raises(RequestValidationError):
            await request_service.create_request(REQUESTER, details, location_id=LOCATION)

    @pytest.mark.asyncio
    async def test_weekend_date_rejected(self, request_service):
        with pytest.raises(RequestValidationError, match="Weekend"):
            await request_service.create_request(
                REQUESTER, event_details(start_date=next_saturday()), location_id=LOCATION
            )

    @pytest.mark.asyncio
    async def test_past_date_rejected(self, request_service):
        yesterday = (datetime.now(timezone.utc).date() - timedelta(days=1)).isoformat()

        with pytest.raises(RequestValidationError, match="past"):
            await request_service.create_request(REQUESTER, event_details(start_date=yesterday), location_id=LOCATION)

    @pytest.mark.asyncio
    async def test_dispatcher_failure_does_not_fail_create(self, collaborators, request_store, settings_service):
        directory, permissions, coordinators = collaborators
        service = RequestService(
            store=request_store,
            settings_service=settings_service,
            permissions=permissions,
            coordinators=coordinators,
            directory=directory,
            dispatcher=RecordingDispatcher(fail=True),
        )

        request = await submit_request(service)

        assert await request_store.get(request.id) is not None

    @pytest.mark.asyncio
    async def test_notifications_disabled(self, request_service, settings_service, dispatcher):
        await settings_service.update({"notifications_enabled": False}, expected_version=0, updated_by=ADMIN)

        await submit_request(request_service)

        assert dispatcher.events == []


class TestRevisions:
    @pytest.mark.asyncio
    async def test_resubmit_closed_request(self, request_service):
        parent = await submit_request(request_service)
        await request_service.execute_action(parent.id, COORD_A, "reject", {"notes": "Room unavailable"})

        child = await submit_request(request_service, parent_request_id=parent.id)
        await request_service.execute_action(child.id, COORD_A, "reject")
        grandchild = await submit_request(request_service, parent_request_id=child.id)

        assert child.revision.number == 2
        assert child.revision.parent_request_id == parent.id
        assert child.revision.supersedes == [parent.id]
        assert grandchild.revision.number == 3
        assert grandchild.revision.supersedes == [parent.id, child.id]

    @pytest.mark.asyncio
    async def test_parent_must_be_closed(self, request_service):
        parent = await submit_request(request_service)

        with pytest.raises(RequestValidationError):
            await submit_request(request_service, parent_request_id=parent.id)

    @pytest.mark.asyncio
    async def test_only_requester_may_resubmit(self, request_service):
        parent = await submit_request(request_service)
        await request_service.execute_action(parent.id, COORD_A, "reject")

        with pytest.raises(ForbiddenError):
            await submit_request(request_service, requester_id=ADMIN, parent_request_id=parent.id)


class TestNegotiation:
    @pytest.mark.asyncio
    async def test_reviewer_reschedule_then_requester_accepts(self, request_service):
        """Reschedule hands the turn to the requester; accepting approves and clears it."""
        request = await submit_request(request_service)
        proposed = event_day(days_ahead=10).isoformat()

        rescheduled = await request_service.execute_action(
            request.id,
            COORD_A,
            "reschedule",
            {"proposed_date": proposed, "proposed_start_time": "14:00", "notes": "Afternoon works better"},
        )

        assert rescheduled.status == RequestState.REVIEW_RESCHEDULED
        assert rescheduled.active_responder.relationship == Relationship.REQUESTER
        assert rescheduled.reschedule_proposal.proposed_by.user_id == COORD_A
        assert rescheduled.claim.holder_id == COORD_A

        approved = await request_service.execute_action(request.id, REQUESTER, "accept")

        assert approved.status == RequestState.APPROVED
        assert approved.active_responder is None
        assert approved.reschedule_proposal is None
        assert approved.event_details["start_date"].startswith(proposed)
        assert approved.event_details["start_time"] == "14:00"
        assert [d.decision_type for d in approved.decision_history] == [DecisionType.RESCHEDULE, DecisionType.ACCEPT]

    @pytest.mark.asyncio
    async def test_counter_proposal_returns_turn_to_claim_holder(self, request_service):
        request = await submit_request(request_service)
        await request_service.execute_action(
            request.id, COORD_A, "reschedule", {"proposed_date": event_day(5).isoformat()}
        )

        countered = await request_service.execute_action(
            request.id, REQUESTER, "reschedule", {"proposed_date": event_day(7).isoformat()}
        )

        assert countered.active_responder.relationship == Relationship.REVIEWER
        assert countered.active_responder.user_id == COORD_A
        with pytest.raises(ForbiddenError):
            await request_service.execute_action(request.id, COORD_B, "accept")

        approved = await request_service.execute_action(request.id, COORD_A, "accept")
        assert approved.status == RequestState.APPROVED

    @pytest.mark.asyncio
    async def test_reviewer_cannot_act_out_of_turn(self, request_service):
        request = await submit_request(request_service)
        await request_service.execute_action(
            request.id, COORD_A, "reschedule", {"proposed_date": event_day(5).isoformat()}
        )

        with pytest.raises(ForbiddenError):
            await request_service.execute_action(request.id, COORD_A, "accept")

    @pytest.mark.asyncio
    async def test_reschedule_requires_date(self, request_service):
        request = await submit_request(request_service)

        with pytest.raises(RequestValidationError):
            await request_service.execute_action(request.id, COORD_A, "reschedule", {"notes": "later"})

    @pytest.mark.asyncio
    async def test_reschedule_date_rules(self, request_service):
        request = await submit_request(request_service)

        with pytest.raises(RequestValidationError):
            await request_service.execute_action(
                request.id, COORD_A, "reschedule", {"proposed_date": next_saturday()}
            )


class TestExecuteAction:
    @pytest.mark.asyncio
    async def test_accept_auto_claims_and_emits(self, request_service, dispatcher):
        request = await submit_request(request_service)

        approved = await request_service.execute_action(request.id, COORD_B, "accept", {"notes": "Looks good"})

        assert approved.status == RequestState.APPROVED
        assert approved.claim.holder_id == COORD_B
        assert approved.last_action.actor_id == COORD_B
        assert approved.status_history[-1].status == RequestState.APPROVED
        assert dispatcher.names()[-2:] == ["request_claimed", "request_status_changed"]
        assert dispatcher.events[-1][1]["to_status"] == RequestState.APPROVED.value

    @pytest.mark.asyncio
    async def test_reject_is_terminal_and_clears_claim(self, request_service):
        request = await submit_request(request_service)
        await request_service.claim(request.id, COORD_A)

        rejected = await request_service.execute_action(request.id, COORD_A, "reject")

        assert rejected.status == RequestState.REJECTED
        assert rejected.claim is None
        assert rejected.active_responder is None
        with pytest.raises(InvalidTransitionError):
            await request_service.execute_action(request.id, COORD_A, "accept")

    @pytest.mark.asyncio
    async def test_unrelated_actor_forbidden(self, request_service):
        request = await submit_request(request_service)

        with pytest.raises(ForbiddenError):
            await request_service.execute_action(request.id, OUTSIDER, "accept")

    @pytest.mark.asyncio
    async def test_unknown_action(self, request_service):
        request = await submit_request(request_service)

        with pytest.raises(RequestValidationError):
            await request_service.execute_action(request.id, COORD_A, "approve")

    @pytest.mark.asyncio
    async def test_unknown_request(self, request_service):
        with pytest.raises(NotFoundError):
            await request_service.execute_action("REQ-missing", COORD_A, "accept")

    @pytest.mark.asyncio
    async def test_conflict_is_retried(self, request_service, request_store):
        request = await submit_request(request_service)
        original = request_store.compare_and_set
        attempts = []

        async def flaky(doc, expected_version):
            attempts.append(expected_version)
            if len(attempts) == 1:
                raise ConflictError("lost the race")
            return await original(doc, expected_version)

        request_store.compare_and_set = flaky

        approved = await request_service.execute_action(request.id, COORD_A, "accept")

        assert approved.status == RequestState.APPROVED
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_conflict_surfaces_after_retries(self, request_service, request_store):
        request = await submit_request(request_service)
        attempts = []

        async def always_conflict(doc, expected_version):
            attempts.append(expected_version)
            raise ConflictError("lost the race")

        request_store.compare_and_set = always_conflict

        with pytest.raises(ConflictError):
            await request_service.execute_action(request.id, COORD_A, "accept")
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_concurrent_decisions_single_winner(self, request_service):
        request = await submit_request(request_service)

        results = await asyncio.gather(
            request_service.execute_action(request.id, COORD_A, "accept"),
            request_service.execute_action(request.id, COORD_B, "reject"),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, RequestFlowError)]
        assert len(errors) == 1
        stored = await request_service.get_request(request.id)
        assert len(stored.decision_history) == 1


class TestAdminSubmittedRequest:
    @pytest.mark.asyncio
    async def test_routed_coordinator_accepts(self, request_service):
        request = await submit_request(request_service, requester_id=ADMIN)
        assert request.reviewer.user_id == COORD_A
        assert request.reviewer.assignment_rule == AssignmentRule.ADMIN_TO_COORDINATOR

        for coordinator in (COORD_A, COORD_B):
            assert RequestAction.ACCEPT in await request_service.get_available_actions(request.id, coordinator)

        approved = await request_service.execute_action(request.id, COORD_A, "accept")

        assert approved.status == RequestState.APPROVED
        assert approved.last_action.actor_id == COORD_A

    @pytest.mark.asyncio
    async def test_wildcard_requester_cannot_approve_own_request(self, request_service):
        request = await submit_request(request_service, requester_id=ADMIN)

        assert await request_service.get_available_actions(request.id, ADMIN) == [RequestAction.VIEW]
        for action in ("accept", "confirm"):
            with pytest.raises(ForbiddenError):
                await request_service.execute_action(request.id, ADMIN, action)

        stored = await request_service.get_request(request.id)
        assert stored.status == RequestState.PENDING_REVIEW
        assert stored.claim is None


class TestCancelAndDelete:
    @pytest.mark.asyncio
    async def test_cancel_pending_review_is_invalid(self, request_service):
        request = await submit_request(request_service)

        with pytest.raises(InvalidTransitionError):
            await request_service.cancel_request(request.id, REQUESTER, "Changed plans")

    @pytest.mark.asyncio
    async def test_cancel_approved(self, request_service):
        request = await submit_request(request_service)
        await request_service.execute_action(request.id, COORD_A, "accept")

        cancelled = await request_service.cancel_request(request.id, REQUESTER, "Changed plans")

        assert cancelled.status == RequestState.CANCELLED
        assert cancelled.claim is None
        assert cancelled.status_history[-1].note == "Changed plans"

    @pytest.mark.asyncio
    async def test_delete_requires_closed_status(self, request_service):
        request = await submit_request(request_service)

        with pytest.raises(InvalidTransitionError):
            await request_service.delete_request(request.id, REQUESTER)

    @pytest.mark.asyncio
    async def test_delete_rejected(self, request_service):
        request = await submit_request(request_service)
        await request_service.execute_action(request.id, COORD_A, "reject")

        with pytest.raises(ForbiddenError):
            await request_service.delete_request(request.id, COORD_A)

        await request_service.delete_request(request.id, REQUESTER)

        with pytest.raises(NotFoundError):
            await request_service.get_request(request.id)


class TestUpdateAndQueries:
    @pytest.mark.asyncio
    async def test_requester_edits_pending_request(self, request_service):
        request = await submit_request(request_service)

        updated = await request_service.update_request(
            request.id, REQUESTER, {"notes": "Bring a projector", "event_details": {"title": "Town hall"}}
        )

        assert updated.notes == "Bring a projector"
        assert updated.event_details["title"] == "Town hall"
        assert updated.event_details["location"] == "Main hall"

    @pytest.mark.asyncio
    async def test_edit_after_review_is_invalid(self, request_service):
        request = await submit_request(request_service)
        await request_service.execute_action(request.id, COORD_A, "accept")

        with pytest.raises(InvalidTransitionError):
            await request_service.update_request(request.id, REQUESTER, {"notes": "late edit"})

    @pytest.mark.asyncio
    async def test_edit_rejects_workflow_fields(self, request_service):
        request = await submit_request(request_service)

        with pytest.raises(RequestValidationError):
            await request_service.update_request(request.id, REQUESTER, {"status": "approved"})

    @pytest.mark.asyncio
    async def test_coordinator_cannot_edit(self, request_service):
        request = await submit_request(request_service)

        with pytest.raises(ForbiddenError):
            await request_service.update_request(request.id, COORD_A, {"notes": "mine now"})

    @pytest.mark.asyncio
    async def test_available_actions(self, request_service):
        request = await submit_request(request_service)

        assert await request_service.get_available_actions(request.id, COORD_A) == await (
            request_service.get_available_actions(request.id, COORD_B)
        )
        assert await request_service.get_available_actions(request.id, REQUESTER) == [RequestAction.VIEW]

    @pytest.mark.asyncio
    async def test_get_request_visibility(self, request_service):
        request = await submit_request(request_service)

        assert (await request_service.get_request(request.id, COORD_B)).id == request.id
        with pytest.raises(ForbiddenError):
            await request_service.get_request(request.id, OUTSIDER)

    @pytest.mark.asyncio
    async def test_valid_coordinators_and_listing(self, request_service):
        first = await submit_request(request_service)
        second = await submit_request(request_service)
        await request_service.execute_action(second.id, COORD_A, "accept")

        coordinators = await request_service.get_valid_coordinators(first.id)
        pending = await request_service.list_requests(status=RequestState.PENDING_REVIEW)

        assert [c.user_id for c in coordinators] == [COORD_A, COORD_B]
        assert [r.id for r in pending] == [first.id]
        assert len(await request_service.list_requests()) == 2

    @pytest.mark.asyncio
    async def test_settings_update_requires_admin(self, request_service):
        with pytest.raises(ForbiddenError):
            await request_service.update_system_settings(COORD_A, {"allow_weekend_events": True}, 0)

        settings = await request_service.update_system_settings(ADMIN, {"allow_weekend_events": True}, 0)
        assert settings.version == 1
        assert settings.updated_by == ADMIN
