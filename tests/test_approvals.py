"""
Approval workflow engine.

Tests cover:
- Sequential and parallel completion rules
- Rejection anywhere reverts the document to draft
- One active workflow per document
- Strict vs permissive ordering for sequential approvals
- Approver authorization, terminal states, notifications
"""

from datetime import date, datetime

import pytest

from app.cdms.errors import InvalidState, NotFound, Unauthorized, ValidationError
from app.cdms.models import AuditEvent, User
from app.cdms.modules.approvals.models import ApprovalStep, ApprovalWorkflow
from app.cdms.modules.approvals.service import is_workflow_complete, normalize_steps
from app.cdms.notifications import NotificationSink


def _u(s, seed, name) -> User:
    return s.get(User, seed.users[name])


@pytest.fixture()
def draft(db, docs, seed):
    d = docs.create_document(
        db, tenant_id=seed.tenant_id, actor=_u(db, seed, "author"), title="Change Control SOP", doc_type="procedure"
    )
    docs.upload_version(
        db,
        tenant_id=seed.tenant_id,
        actor=_u(db, seed, "author"),
        document_id=d.id,
        file_bytes=b"v1",
        filename="sop.txt",
    )
    return d


def _submit(db, workflows, seed, d, approvers, workflow_type="sequential"):
    return workflows.submit_for_approval(
        db,
        tenant_id=seed.tenant_id,
        actor=_u(db, seed, "author"),
        document_id=d.id,
        workflow_type=workflow_type,
        steps=[{"approver_id": seed.users[name]} for name in approvers],
    )


def _act(db, workflows, seed, wf, order, name, action="approve", comments=None):
    step = next(st for st in wf.steps if st.step_order == order)
    return workflows.process_action(
        db,
        tenant_id=seed.tenant_id,
        actor=_u(db, seed, name),
        workflow_id=wf.id,
        step_id=step.id,
        action=action,
        comments=comments,
    )


class TestSequential:
    def test_two_step_approval(self, db, workflows, seed, draft):
        wf = _submit(db, workflows, seed, draft, ["alice", "bob"])
        assert draft.status == "in_review"
        assert wf.status == "pending"
        assert [st.step_order for st in wf.steps] == [1, 2]

        _act(db, workflows, seed, wf, 1, "alice")
        assert wf.status == "pending"
        assert draft.status == "in_review"

        _act(db, workflows, seed, wf, 2, "bob")
        assert wf.status == "approved"
        assert wf.completed_at is not None
        assert draft.status == "approved"

    def test_second_step_rejects(self, db, workflows, seed, draft):
        wf = _submit(db, workflows, seed, draft, ["alice", "bob"])
        _act(db, workflows, seed, wf, 1, "alice")
        _act(db, workflows, seed, wf, 2, "bob", action="reject", comments="Section 4 is wrong")
        assert wf.status == "rejected"
        assert draft.status == "draft"
        step = next(st for st in wf.steps if st.step_order == 2)
        assert step.comments == "Section 4 is wrong"

    def test_first_step_rejects(self, db, workflows, seed, draft):
        wf = _submit(db, workflows, seed, draft, ["alice", "bob", "admin"])
        _act(db, workflows, seed, wf, 1, "alice", action="reject")
        assert wf.status == "rejected"
        assert draft.status == "draft"

    def test_three_steps_complete_only_when_all_approved(self, db, workflows, seed, draft):
        wf = _submit(db, workflows, seed, draft, ["alice", "bob", "admin"])
        _act(db, workflows, seed, wf, 1, "alice")
        _act(db, workflows, seed, wf, 2, "bob")
        assert wf.status == "pending"
        _act(db, workflows, seed, wf, 3, "admin")
        assert wf.status == "approved"

    def test_strict_mode_refuses_out_of_order_approval(self, db, workflows, seed, draft):
        wf = _submit(db, workflows, seed, draft, ["alice", "bob"])
        with pytest.raises(InvalidState):
            _act(db, workflows, seed, wf, 2, "bob")
        step2 = next(st for st in wf.steps if st.step_order == 2)
        assert step2.status == "pending"

    def test_strict_mode_allows_out_of_order_rejection(self, db, workflows, seed, draft):
        wf = _submit(db, workflows, seed, draft, ["alice", "bob"])
        _act(db, workflows, seed, wf, 2, "bob", action="reject")
        assert wf.status == "rejected"
        assert draft.status == "draft"

    def test_permissive_mode_records_but_does_not_complete(self, db, workflows, seed, draft):
        workflows.strict_sequential = False
        wf = _submit(db, workflows, seed, draft, ["alice", "bob"])
        _act(db, workflows, seed, wf, 2, "bob")
        assert wf.status == "pending"
        assert draft.status == "in_review"
        _act(db, workflows, seed, wf, 1, "alice")
        assert wf.status == "approved"
        assert draft.status == "approved"


class TestParallel:
    def test_completes_in_any_order(self, db, workflows, seed, draft):
        wf = _submit(db, workflows, seed, draft, ["alice", "bob", "admin"], workflow_type="parallel")
        _act(db, workflows, seed, wf, 3, "admin")
        _act(db, workflows, seed, wf, 1, "alice")
        assert wf.status == "pending"
        _act(db, workflows, seed, wf, 2, "bob")
        assert wf.status == "approved"
        assert draft.status == "approved"

    def test_rejection_reverts(self, db, workflows, seed, draft):
        wf = _submit(db, workflows, seed, draft, ["alice", "bob"], workflow_type="parallel")
        _act(db, workflows, seed, wf, 1, "alice")
        _act(db, workflows, seed, wf, 2, "bob", action="reject")
        assert wf.status == "rejected"
        assert draft.status == "draft"

    def test_submit_notifies_every_approver(self, db, workflows, seed, draft, notifier):
        _submit(db, workflows, seed, draft, ["alice", "bob"], workflow_type="parallel")
        assert sorted(notifier.user_ids("approval_requested")) == sorted([seed.users["alice"], seed.users["bob"]])


class TestSubmit:
    def test_sequential_notifies_first_approver_only(self, db, workflows, seed, draft, notifier):
        wf = _submit(db, workflows, seed, draft, ["alice", "bob"])
        assert notifier.user_ids("approval_requested") == [seed.users["alice"]]
        _act(db, workflows, seed, wf, 1, "alice")
        assert notifier.user_ids("approval_requested") == [seed.users["alice"], seed.users["bob"]]

    def test_active_workflow_blocks_second_submission(self, db, workflows, seed, draft):
        _submit(db, workflows, seed, draft, ["alice"])
        with pytest.raises(InvalidState):
            _submit(db, workflows, seed, draft, ["bob"])
        assert db.query(ApprovalWorkflow).filter(ApprovalWorkflow.document_id == draft.id).count() == 1

    def test_resubmit_after_rejection(self, db, workflows, seed, draft):
        wf = _submit(db, workflows, seed, draft, ["alice"])
        _act(db, workflows, seed, wf, 1, "alice", action="reject")
        wf2 = _submit(db, workflows, seed, draft, ["bob"])
        assert wf2.id != wf.id
        assert draft.status == "in_review"

    def test_missing_document(self, db, workflows, seed):
        with pytest.raises(NotFound):
            workflows.submit_for_approval(
                db,
                tenant_id=seed.tenant_id,
                actor=_u(db, seed, "author"),
                document_id=424242,
                workflow_type="sequential",
                steps=[{"approver_id": seed.users["alice"]}],
            )

    def test_approved_document_cannot_be_resubmitted(self, db, workflows, seed, draft):
        wf = _submit(db, workflows, seed, draft, ["alice"])
        _act(db, workflows, seed, wf, 1, "alice")
        with pytest.raises(InvalidState):
            _submit(db, workflows, seed, draft, ["bob"])

    def test_invalid_workflow_type(self, db, workflows, seed, draft):
        with pytest.raises(ValidationError):
            _submit(db, workflows, seed, draft, ["alice"], workflow_type="round-robin")
        assert draft.status == "draft"

    def test_inactive_or_foreign_approver(self, db, workflows, seed, draft):
        with pytest.raises(ValidationError):
            _submit(db, workflows, seed, draft, ["eve"])
        with pytest.raises(ValidationError):
            _submit(db, workflows, seed, draft, ["outsider"])
        assert draft.status == "draft"

    def test_requires_submit_permission(self, db, workflows, seed, draft):
        with pytest.raises(Unauthorized):
            workflows.submit_for_approval(
                db,
                tenant_id=seed.tenant_id,
                actor=_u(db, seed, "dave"),
                document_id=draft.id,
                workflow_type="sequential",
                steps=[{"approver_id": seed.users["alice"]}],
            )

    def test_audit_trail(self, db, workflows, seed, draft):
        wf = _submit(db, workflows, seed, draft, ["alice"])
        _act(db, workflows, seed, wf, 1, "alice")
        actions = [ev.action for ev in db.query(AuditEvent).order_by(AuditEvent.id.asc())]
        assert actions[-3:] == ["workflow.submitted", "workflow.step.approved", "workflow.approved"]


class TestProcessAction:
    def test_only_designated_approver(self, db, workflows, seed, draft):
        wf = _submit(db, workflows, seed, draft, ["alice"])
        with pytest.raises(Unauthorized):
            _act(db, workflows, seed, wf, 1, "bob")
        assert wf.steps[0].status == "pending"

    def test_step_cannot_be_acted_on_twice(self, db, workflows, seed, draft):
        wf = _submit(db, workflows, seed, draft, ["alice", "bob"])
        _act(db, workflows, seed, wf, 1, "alice")
        with pytest.raises(InvalidState):
            _act(db, workflows, seed, wf, 1, "alice")

    def test_terminal_workflow_refuses_actions(self, db, workflows, seed, draft):
        wf = _submit(db, workflows, seed, draft, ["alice", "bob"], workflow_type="parallel")
        _act(db, workflows, seed, wf, 1, "alice", action="reject")
        with pytest.raises(InvalidState):
            _act(db, workflows, seed, wf, 2, "bob")

    def test_step_from_another_workflow(self, db, docs, workflows, seed, draft):
        wf = _submit(db, workflows, seed, draft, ["alice"])
        other = docs.create_document(
            db, tenant_id=seed.tenant_id, actor=_u(db, seed, "author"), title="Other", doc_type="standard"
        )
        wf_other = _submit(db, workflows, seed, other, ["alice"])
        with pytest.raises(NotFound):
            workflows.process_action(
                db,
                tenant_id=seed.tenant_id,
                actor=_u(db, seed, "alice"),
                workflow_id=wf.id,
                step_id=wf_other.steps[0].id,
                action="approve",
            )

    def test_unknown_action(self, db, workflows, seed, draft):
        wf = _submit(db, workflows, seed, draft, ["alice"])
        with pytest.raises(ValidationError):
            _act(db, workflows, seed, wf, 1, "alice", action="escalate")

    def test_inbox_shows_only_actionable_steps(self, db, workflows, seed, draft):
        _submit(db, workflows, seed, draft, ["alice", "bob"])
        assert len(workflows.pending_steps_for(db, tenant_id=seed.tenant_id, user=_u(db, seed, "alice"))) == 1
        assert workflows.pending_steps_for(db, tenant_id=seed.tenant_id, user=_u(db, seed, "bob")) == []

    def test_notification_failure_does_not_abort(self, db, workflows, seed, draft):
        class Broken(NotificationSink):
            def notify(self, user_id, document_id, context=None):
                raise ConnectionError("smtp down")

        workflows.notifier = Broken()
        wf = _submit(db, workflows, seed, draft, ["alice", "bob"])
        _act(db, workflows, seed, wf, 1, "alice")
        _act(db, workflows, seed, wf, 2, "bob")
        assert wf.status == "approved"


class TestCompletionRules:
    @staticmethod
    def _steps(*statuses):
        return [ApprovalStep(step_order=i, status=st, approver_user_id=1) for i, st in enumerate(statuses, start=1)]

    def test_sequential(self):
        assert is_workflow_complete("sequential", self._steps("approved", "approved", "approved"))
        assert not is_workflow_complete("sequential", self._steps("approved", "pending", "approved"))
        assert not is_workflow_complete("sequential", self._steps("pending", "approved"))
        assert not is_workflow_complete("sequential", [])

    def test_parallel(self):
        assert is_workflow_complete("parallel", self._steps("approved", "approved"))
        assert not is_workflow_complete("parallel", self._steps("approved", "pending"))

    def test_normalize_steps_defaults_and_validation(self):
        steps = normalize_steps([{"approver_id": "3"}, {"approver_id": 4}])
        assert [(st["approver_id"], st["step_order"]) for st in steps] == [(3, 1), (4, 2)]
        with pytest.raises(ValidationError):
            normalize_steps([])
        with pytest.raises(ValidationError):
            normalize_steps([{"approver_id": 1, "step_order": 1}, {"approver_id": 2, "step_order": 1}])
        with pytest.raises(ValidationError):
            normalize_steps([{"approver_id": 1, "step_order": 0}])
        with pytest.raises(ValidationError):
            normalize_steps([{"approver_id": "x"}])

    def test_normalize_steps_deadlines(self):
        steps = normalize_steps(
            [{"approver_id": 1, "deadline": "2026-11-30"}, {"approver_id": 2, "deadline": date(2026, 12, 1)}]
        )
        assert [st["deadline"] for st in steps] == [datetime(2026, 11, 30), datetime(2026, 12, 1)]
        with pytest.raises(ValidationError):
            normalize_steps([{"approver_id": 1, "deadline": "end of month"}])
