"""
Acknowledgment campaigns.

Tests cover:
- Audience resolution (all, custom, role, department)
- One assignment per audience member, created together with the campaign
- Campaigns only for approved documents
- Notification failures are tolerated
- Acknowledging: owner only, once, campaign completion, quiz gate
"""

from datetime import date, datetime

import pytest

from app.cdms.errors import InvalidState, NotFound, Unauthorized, ValidationError
from app.cdms.models import AuditEvent, User
from app.cdms.modules.acknowledgments.models import AckAssignment, AckCampaign
from app.cdms.modules.acknowledgments.service import (
    AllUsers,
    CustomUsers,
    DepartmentAudience,
    RoleAudience,
    audience_from_request,
    resolve_audience,
)
from app.cdms.notifications import NotificationSink


def _u(s, seed, name) -> User:
    return s.get(User, seed.users[name])


@pytest.fixture()
def approved(db, docs, seed):
    d = docs.create_document(
        db, tenant_id=seed.tenant_id, actor=_u(db, seed, "author"), title="Code of Conduct", doc_type="policy"
    )
    d.status = "approved"
    db.flush()
    return d


def _campaign(db, campaigns, seed, d, audience, **kwargs) -> AckCampaign:
    return campaigns.create_campaign(
        db,
        tenant_id=seed.tenant_id,
        actor=_u(db, seed, "admin"),
        document_id=d.id,
        title="Annual attestation",
        audience=audience,
        **kwargs,
    )


def _assignment(db, c, seed, name) -> AckAssignment:
    return next(a for a in c.assignments if a.user_id == seed.users[name])


class TestAudience:
    def test_custom_list(self, db, seed):
        ids = [seed.users[n] for n in ("alice", "bob", "dave")]
        assert resolve_audience(db, tenant_id=seed.tenant_id, audience=CustomUsers(user_ids=tuple(ids))) == ids

    def test_all_active_users_of_tenant(self, db, seed):
        got = resolve_audience(db, tenant_id=seed.tenant_id, audience=AllUsers())
        expected = sorted(seed.users[n] for n in ("admin", "author", "alice", "bob", "dave"))
        assert got == expected

    def test_role(self, db, seed):
        got = resolve_audience(db, tenant_id=seed.tenant_id, audience=RoleAudience(role_keys=("approver",)))
        assert got == sorted([seed.users["alice"], seed.users["bob"]])

    def test_department(self, db, seed):
        got = resolve_audience(db, tenant_id=seed.tenant_id, audience=DepartmentAudience(departments=("Operations",)))
        assert got == sorted([seed.users["bob"], seed.users["dave"]])

    def test_custom_rejects_unknown_and_foreign_users(self, db, seed):
        with pytest.raises(ValidationError):
            resolve_audience(db, tenant_id=seed.tenant_id, audience=CustomUsers(user_ids=(seed.users["outsider"],)))
        with pytest.raises(ValidationError):
            resolve_audience(db, tenant_id=seed.tenant_id, audience=CustomUsers(user_ids=(987654,)))

    def test_from_request(self):
        assert audience_from_request("ALL") == AllUsers()
        assert audience_from_request("custom", ["3", 3, 4]) == CustomUsers(user_ids=(3, 4))
        assert audience_from_request("role", ["approver"]).ids() == ["approver"]
        assert audience_from_request("department", ["QA", "QA"]).kind == "department"

    @pytest.mark.parametrize(
        "audience_type, ids",
        [("everyone", None), ("custom", []), ("custom", ["x"]), ("role", None), ("department", ["  "])],
    )
    def test_from_request_rejects(self, audience_type, ids):
        with pytest.raises(ValidationError):
            audience_from_request(audience_type, ids)


class TestCreateCampaign:
    def test_custom_audience_creates_one_assignment_each(self, db, campaigns, seed, approved, notifier):
        ids = [seed.users[n] for n in ("alice", "bob", "dave")]
        c = _campaign(db, campaigns, seed, approved, CustomUsers(user_ids=tuple(ids)))
        assert c.status == "active"
        assert c.audience_type == "custom"
        assert c.audience_ids == ids
        assert sorted(a.user_id for a in c.assignments) == sorted(ids)
        assert all(a.status == "pending" for a in c.assignments)
        assert sorted(notifier.user_ids("ack_requested")) == sorted(ids)

    def test_all_audience(self, db, campaigns, seed, approved):
        c = _campaign(db, campaigns, seed, approved, AllUsers())
        assert len(c.assignments) == 5
        assert c.to_dict()["assignments_total"] == 5
        assert c.to_dict()["assignments_acknowledged"] == 0

    def test_role_audience_skips_inactive(self, db, campaigns, seed, approved):
        c = _campaign(db, campaigns, seed, approved, RoleAudience(role_keys=("approver",)))
        assert seed.users["eve"] not in {a.user_id for a in c.assignments}
        assert len(c.assignments) == 2

    def test_requires_approved_document(self, db, docs, campaigns, seed):
        d = docs.create_document(
            db, tenant_id=seed.tenant_id, actor=_u(db, seed, "author"), title="Draft policy", doc_type="policy"
        )
        with pytest.raises(InvalidState):
            _campaign(db, campaigns, seed, d, AllUsers())
        assert db.query(AckCampaign).count() == 0

    def test_missing_document(self, db, campaigns, seed):
        with pytest.raises(NotFound):
            campaigns.create_campaign(
                db,
                tenant_id=seed.tenant_id,
                actor=_u(db, seed, "admin"),
                document_id=31337,
                title="x",
                audience=AllUsers(),
            )

    def test_requires_manage_permission(self, db, campaigns, seed, approved):
        with pytest.raises(Unauthorized):
            campaigns.create_campaign(
                db,
                tenant_id=seed.tenant_id,
                actor=_u(db, seed, "author"),
                document_id=approved.id,
                title="x",
                audience=AllUsers(),
            )

    def test_audience_resolving_to_nobody_is_rejected(self, db, campaigns, seed, approved, notifier):
        with pytest.raises(ValidationError):
            _campaign(db, campaigns, seed, approved, audience_from_request("role", ["no-such-role"]))
        with pytest.raises(ValidationError):
            _campaign(db, campaigns, seed, approved, DepartmentAudience(departments=("Finance",)))
        assert db.query(AckCampaign).count() == 0
        assert notifier.sent == []

    def test_deadline_accepts_date_and_iso_string(self, db, campaigns, seed, approved):
        c = _campaign(db, campaigns, seed, approved, AllUsers(), deadline=date(2026, 12, 31))
        assert c.deadline == datetime(2026, 12, 31)
        c2 = _campaign(db, campaigns, seed, approved, AllUsers(), deadline="2026-11-30T17:00:00")
        assert c2.deadline == datetime(2026, 11, 30, 17, 0)

    def test_bad_deadline(self, db, campaigns, seed, approved):
        with pytest.raises(ValidationError):
            _campaign(db, campaigns, seed, approved, AllUsers(), deadline="next tuesday")

    def test_notification_failures_are_tolerated(self, db, campaigns, seed, approved):
        class Flaky(NotificationSink):
            def notify(self, user_id, document_id, context=None):
                raise TimeoutError("mail relay unavailable")

        campaigns.notifier = Flaky()
        c = _campaign(db, campaigns, seed, approved, AllUsers())
        assert c.status == "active"
        assert len(c.assignments) == 5

    def test_audit_event(self, db, campaigns, seed, approved):
        c = _campaign(db, campaigns, seed, approved, AllUsers())
        ev = db.query(AuditEvent).filter(AuditEvent.action == "ack.campaign.created").one()
        assert ev.entity_id == str(c.id)


class TestAcknowledge:
    def test_owner_acknowledges(self, db, campaigns, seed, approved):
        c = _campaign(db, campaigns, seed, approved, CustomUsers(user_ids=(seed.users["alice"], seed.users["bob"])))
        a = _assignment(db, c, seed, "alice")
        campaigns.acknowledge(db, tenant_id=seed.tenant_id, actor=_u(db, seed, "alice"), assignment_id=a.id)
        assert a.status == "acknowledged"
        assert a.completed_at is not None
        assert c.status == "active"

    def test_other_user_cannot_acknowledge(self, db, campaigns, seed, approved):
        c = _campaign(db, campaigns, seed, approved, CustomUsers(user_ids=(seed.users["alice"],)))
        a = _assignment(db, c, seed, "alice")
        with pytest.raises(Unauthorized):
            campaigns.acknowledge(db, tenant_id=seed.tenant_id, actor=_u(db, seed, "admin"), assignment_id=a.id)
        assert a.status == "pending"

    def test_double_acknowledgment(self, db, campaigns, seed, approved):
        c = _campaign(db, campaigns, seed, approved, CustomUsers(user_ids=(seed.users["alice"], seed.users["bob"])))
        a = _assignment(db, c, seed, "alice")
        campaigns.acknowledge(db, tenant_id=seed.tenant_id, actor=_u(db, seed, "alice"), assignment_id=a.id)
        with pytest.raises(InvalidState):
            campaigns.acknowledge(db, tenant_id=seed.tenant_id, actor=_u(db, seed, "alice"), assignment_id=a.id)

    def test_last_acknowledgment_completes_campaign(self, db, campaigns, seed, approved):
        c = _campaign(db, campaigns, seed, approved, CustomUsers(user_ids=(seed.users["alice"], seed.users["bob"])))
        for name in ("alice", "bob"):
            a = _assignment(db, c, seed, name)
            campaigns.acknowledge(db, tenant_id=seed.tenant_id, actor=_u(db, seed, name), assignment_id=a.id)
        assert c.status == "completed"
        assert c.completed_at is not None

    def test_unknown_or_foreign_assignment(self, db, campaigns, seed, approved):
        c = _campaign(db, campaigns, seed, approved, CustomUsers(user_ids=(seed.users["alice"],)))
        a = _assignment(db, c, seed, "alice")
        with pytest.raises(NotFound):
            campaigns.acknowledge(db, tenant_id=seed.tenant_id, actor=_u(db, seed, "alice"), assignment_id=555)
        with pytest.raises(NotFound):
            campaigns.acknowledge(
                db, tenant_id=seed.other_tenant_id, actor=_u(db, seed, "outsider"), assignment_id=a.id
            )

    def test_quiz_gate(self, db, campaigns, seed, approved):
        c = _campaign(db, campaigns, seed, approved, CustomUsers(user_ids=(seed.users["alice"],)), quiz_id=12)
        a = _assignment(db, c, seed, "alice")

        campaigns.acknowledge(
            db, tenant_id=seed.tenant_id, actor=_u(db, seed, "alice"), assignment_id=a.id, quiz_score=40, quiz_passed=False
        )
        assert a.status == "pending"
        assert a.quiz_score == 40.0
        assert db.query(AuditEvent).filter(AuditEvent.action == "ack.assignment.quiz_failed").count() == 1

        campaigns.acknowledge(
            db, tenant_id=seed.tenant_id, actor=_u(db, seed, "alice"), assignment_id=a.id, quiz_score=90, quiz_passed=True
        )
        assert a.status == "acknowledged"
        assert a.quiz_passed is True
        assert c.status == "completed"

    def test_pending_assignments_for_user(self, db, campaigns, seed, approved):
        c = _campaign(db, campaigns, seed, approved, CustomUsers(user_ids=(seed.users["alice"], seed.users["bob"])))
        mine = campaigns.pending_assignments_for(db, tenant_id=seed.tenant_id, user=_u(db, seed, "alice"))
        assert [a.campaign_id for a in mine] == [c.id]
        campaigns.acknowledge(
            db, tenant_id=seed.tenant_id, actor=_u(db, seed, "alice"), assignment_id=mine[0].id
        )
        assert campaigns.pending_assignments_for(db, tenant_id=seed.tenant_id, user=_u(db, seed, "alice")) == []
