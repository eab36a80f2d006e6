"""
Integration tests for MilestoneService.

Covers the talent/business workflow up to approval; paying out is tested
in test_escrow_service.py.
"""

import pytest

from escrow.exceptions import AuthorizationError, InvalidStateError, NotFoundError, ValidationError
from escrow.models import Deliverable, Milestone
from escrow.state_machines import DeliverableStatus, MilestoneStatus


@pytest.mark.django_db
class TestStart:
    """Tests for MilestoneService.start()."""

    def test_talent_starts_milestone(self, funded_account, milestones, milestone_service, talent):
        milestone = milestone_service.start(funded_account.id, milestones[0].id, talent)

        assert milestone.status == MilestoneStatus.IN_PROGRESS
        assert milestone.started_at is not None

    def test_cannot_start_before_funding(self, created_account, milestone_service, talent):
        milestone = created_account.milestones.first()

        with pytest.raises(InvalidStateError):
            milestone_service.start(created_account.id, milestone.id, talent)

    def test_business_cannot_start(self, funded_account, milestones, milestone_service, business):
        with pytest.raises(AuthorizationError):
            milestone_service.start(funded_account.id, milestones[0].id, business)

    def test_cannot_start_twice(self, funded_account, milestones, milestone_service, talent):
        milestone_service.start(funded_account.id, milestones[0].id, talent)

        with pytest.raises(InvalidStateError) as exc_info:
            milestone_service.start(funded_account.id, milestones[0].id, talent)

        assert exc_info.value.details["status"] == MilestoneStatus.IN_PROGRESS

    def test_milestone_of_other_account(self, funded_account, milestone_service, talent, escrow_service, business):
        from escrow.services import MilestoneSpec

        other = escrow_service.create("contract-2", "business-1", "talent-1", [MilestoneSpec("X", 100)], business)

        with pytest.raises(NotFoundError):
            milestone_service.start(funded_account.id, other.milestones.get().id, talent)


@pytest.mark.django_db
class TestSubmit:
    """Tests for add_deliverable() and submit()."""

    def test_submit_moves_deliverables(self, funded_account, submitted_milestone):
        assert submitted_milestone.status == MilestoneStatus.SUBMITTED
        assert submitted_milestone.submission_notes == "Ready for review"

        deliverable = Deliverable.objects.get(milestone=submitted_milestone)
        assert deliverable.status == DeliverableStatus.SUBMITTED
        assert deliverable.file_ref == "files/a.zip"

    def test_submit_requires_deliverable(self, funded_account, milestones, milestone_service, talent):
        milestone_service.start(funded_account.id, milestones[0].id, talent)

        with pytest.raises(ValidationError) as exc_info:
            milestone_service.submit(funded_account.id, milestones[0].id, talent)

        assert exc_info.value.error_code == "NO_DELIVERABLES"

    def test_cannot_add_deliverable_before_start(self, funded_account, milestones, milestone_service, talent):
        with pytest.raises(InvalidStateError):
            milestone_service.add_deliverable(funded_account.id, milestones[0].id, talent, title="Early")

    def test_deliverable_needs_title(self, funded_account, milestones, milestone_service, talent):
        with pytest.raises(ValidationError):
            milestone_service.add_deliverable(funded_account.id, milestones[0].id, talent, title="  ")


@pytest.mark.django_db
class TestReview:
    """Tests for approve(), reject() and resume()."""

    def test_business_approves(self, funded_account, submitted_milestone, milestone_service, business):
        milestone = milestone_service.approve(funded_account.id, submitted_milestone.id, business, notes="Great")

        assert milestone.status == MilestoneStatus.APPROVED
        assert milestone.approval_notes == "Great"
        assert milestone.deliverables.get().status == DeliverableStatus.APPROVED

    def test_talent_cannot_approve(self, funded_account, submitted_milestone, milestone_service, talent):
        with pytest.raises(AuthorizationError):
            milestone_service.approve(funded_account.id, submitted_milestone.id, talent)

    def test_reject_requires_reason(self, funded_account, submitted_milestone, milestone_service, business):
        with pytest.raises(ValidationError):
            milestone_service.reject(funded_account.id, submitted_milestone.id, business, reason="")

    def test_reject_marks_deliverables(self, funded_account, submitted_milestone, milestone_service, business):
        milestone = milestone_service.reject(funded_account.id, submitted_milestone.id, business, reason="Blurry")

        assert milestone.status == MilestoneStatus.REJECTED
        deliverable = milestone.deliverables.get()
        assert deliverable.status == DeliverableStatus.REJECTED
        assert deliverable.rejection_reason == "Blurry"

    def test_resubmission_after_rejection(
        self, funded_account, submitted_milestone, milestone_service, business, talent
    ):
        """Rejected work goes back in progress and needs a new deliverable."""
        account_id, milestone_id = funded_account.id, submitted_milestone.id
        milestone_service.reject(account_id, milestone_id, business, reason="Blurry")

        milestone_service.resume(account_id, milestone_id, talent)
        with pytest.raises(ValidationError):
            milestone_service.submit(account_id, milestone_id, talent)

        milestone_service.add_deliverable(account_id, milestone_id, talent, title="Sharper files")
        milestone = milestone_service.submit(account_id, milestone_id, talent)

        assert milestone.status == MilestoneStatus.SUBMITTED
        assert milestone.rejection_reason is None
        assert Milestone.objects.get(pk=milestone_id).deliverables.count() == 2

    def test_cannot_approve_pending(self, funded_account, milestones, milestone_service, business):
        with pytest.raises(InvalidStateError):
            milestone_service.approve(funded_account.id, milestones[0].id, business)
