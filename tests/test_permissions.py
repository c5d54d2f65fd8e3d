"""
Tests for Memory Permissions
============================

Tests for permissions.py - role defaults, visibility, explicit rules and
their conditions, access requests, sharing and the audit trail.
"""

from datetime import timedelta

import pytest
import pytest_asyncio

from codecontext.config import MemoryConfig
from codecontext.errors import InvalidTransition, NotFound
from codecontext.permissions import (
    InMemoryPermissionRepository,
    PermissionEngine,
    PermissionUpdate,
    RequestStatus,
    RuleCondition,
    RulePermission,
)
from codecontext.team_memory import MemberRole, TeamMemoryStore


# =============================================================================
# Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def team(temp_project, clock):
    store = TeamMemoryStore("team-1", temp_project, config=MemoryConfig(), clock=clock)
    await store.initialize()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def members(team):
    return {
        "admin": await team.add_team_member("ada@example.com", "Ada", MemberRole.ADMIN),
        "dev": await team.add_team_member("dev@example.com", "Dev", MemberRole.DEVELOPER),
        "dev2": await team.add_team_member("dev2@example.com", "Dev Two", MemberRole.DEVELOPER),
        "observer": await team.add_team_member("obs@example.com", "Obs", MemberRole.OBSERVER),
    }


@pytest.fixture
def engine(team):
    return PermissionEngine(team)


@pytest_asyncio.fixture
async def shared_memory(team, members):
    """A team_only memory created by the admin."""
    return await team.create_team_memory("decision", "Shared", "shared content", members["admin"])


@pytest_asyncio.fixture
async def private_memory(team, members):
    """A private memory created by the second developer."""
    return await team.create_team_memory("lesson", "Private", "private content", members["dev2"],
                                         visibility="private")


# =============================================================================
# Role Defaults & Visibility
# =============================================================================

class TestRoleAndVisibility:
    """Tests for the role matrix combined with memory visibility."""

    @pytest.mark.asyncio
    async def test_developer_can_write_but_not_delete(self, engine, members, shared_memory):
        """A developer may write a team_only memory they did not create, but not delete it."""
        assert await engine.check_permission(members["dev"], "write", "memory", shared_memory) is True
        assert await engine.check_permission(members["dev"], "delete", "memory", shared_memory) is False

    @pytest.mark.asyncio
    async def test_observer_votes_and_comments_but_cannot_write(self, engine, members, shared_memory):
        """Observer write attempts are refused and audited as failures."""
        observer = members["observer"]
        assert await engine.check_permission(observer, "vote", "memory", shared_memory) is True
        assert await engine.check_permission(observer, "comment", "memory", shared_memory) is True
        assert await engine.check_permission(observer, "write", "memory", shared_memory) is False

        latest = (await engine.get_audit_logs(user_id=observer, limit=1))[0]
        assert latest.action == "permission_check"
        assert latest.success is False
        assert latest.metadata["requested_action"] == "write"
        assert latest.user_name == "Obs"

    @pytest.mark.asyncio
    async def test_private_blocks_non_creators(self, engine, members, private_memory):
        assert await engine.check_permission(members["dev"], "read", "memory", private_memory) is False
        assert await engine.check_permission(members["admin"], "read", "memory", private_memory) is False
        assert await engine.check_permission(members["dev2"], "read", "memory", private_memory) is True

    @pytest.mark.asyncio
    async def test_creator_still_bound_by_role(self, engine, members, private_memory):
        """Owning a memory passes visibility, not the role matrix."""
        assert await engine.check_permission(members["dev2"], "delete", "memory", private_memory) is False

    @pytest.mark.asyncio
    async def test_admin_has_everything_on_team_memory(self, engine, members, shared_memory):
        for action in ("read", "write", "delete", "share", "moderate", "admin"):
            assert await engine.check_permission(members["admin"], action, "memory", shared_memory)

    @pytest.mark.asyncio
    async def test_non_memory_resources_use_role_only(self, engine, members):
        assert await engine.check_permission(members["dev"], "write", "project", "p1") is True
        assert await engine.check_permission(members["observer"], "write", "project", "p1") is False

    @pytest.mark.asyncio
    async def test_member_capability_overrides(self, engine, team, members, shared_memory):
        """Capabilities stored on the member replace the role defaults."""
        writer = await team.add_team_member("w@example.com", "Writer", MemberRole.OBSERVER,
                                            permissions=["read", "write"])
        reader = await team.add_team_member("r@example.com", "Reader", MemberRole.DEVELOPER,
                                            permissions=["read"])

        assert await engine.check_permission(writer, "write", "memory", shared_memory) is True
        assert await engine.check_permission(writer, "vote", "memory", shared_memory) is False
        assert await engine.check_permission(reader, "read", "memory", shared_memory) is True
        assert await engine.check_permission(reader, "write", "memory", shared_memory) is False

    @pytest.mark.asyncio
    async def test_missing_memory_refused(self, engine, members):
        assert await engine.check_permission(members["admin"], "read", "memory", "missing") is False

    @pytest.mark.asyncio
    async def test_unknown_user_refused_and_audited(self, engine):
        assert await engine.check_permission("ghost", "read", "memory", "m1") is False

        entry = (await engine.get_audit_logs(user_id="ghost"))[0]
        assert entry.success is False
        assert entry.error_message == "User not found"
        assert entry.user_name == "Unknown"

    @pytest.mark.asyncio
    async def test_unknown_action_refused_and_audited(self, engine, members, shared_memory):
        """Even an admin is refused an action outside the capability set."""
        assert await engine.check_permission(members["admin"], "export", "memory", shared_memory) is False

        entry = (await engine.get_audit_logs(user_id=members["admin"]))[0]
        assert entry.action == "permission_check"
        assert entry.success is False
        assert entry.error_message == "Unknown action: export"
        assert entry.metadata["requested_action"] == "export"


# =============================================================================
# Explicit Rules
# =============================================================================

class TestExplicitRules:
    """Tests for explicit permission rules and their conditions."""

    @pytest.mark.asyncio
    async def test_grant_overrides_role(self, engine, members, shared_memory):
        await engine.create_permission_rule(
            "memory", members["dev"], [RulePermission("delete")], members["admin"], resource_id=shared_memory
        )
        assert await engine.check_permission(members["dev"], "delete", "memory", shared_memory) is True

    @pytest.mark.asyncio
    async def test_explicit_grant_bypasses_private_visibility(self, engine, members, private_memory):
        await engine.create_permission_rule(
            "memory", members["dev"], [RulePermission("read")], members["admin"], resource_id=private_memory
        )
        assert await engine.check_permission(members["dev"], "read", "memory", private_memory) is True

    @pytest.mark.asyncio
    async def test_refusal_overrides_role(self, engine, members, shared_memory):
        await engine.create_permission_rule(
            "memory", members["dev"], [RulePermission("read", granted=False)], members["admin"],
            resource_id=shared_memory,
        )
        assert await engine.check_permission(members["dev"], "read", "memory", shared_memory) is False

    @pytest.mark.asyncio
    async def test_wildcard_rule_applies_to_every_resource(self, engine, members, team):
        """A rule without resource id covers every resource of its type."""
        memory_a = await team.create_team_memory("lesson", "A", "a", members["admin"])
        memory_b = await team.create_team_memory("lesson", "B", "b", members["admin"])
        await engine.create_permission_rule("memory", members["observer"], [RulePermission("write")],
                                            members["admin"])

        assert await engine.check_permission(members["observer"], "write", "memory", memory_a)
        assert await engine.check_permission(members["observer"], "write", "memory", memory_b)

    @pytest.mark.asyncio
    async def test_rule_for_other_resource_ignored(self, engine, members, shared_memory, team):
        other = await team.create_team_memory("lesson", "Other", "other", members["admin"])
        await engine.create_permission_rule("memory", members["observer"], [RulePermission("write")],
                                            members["admin"], resource_id=other)

        assert await engine.check_permission(members["observer"], "write", "memory", shared_memory) is False

    @pytest.mark.asyncio
    async def test_rule_without_action_falls_through(self, engine, members, shared_memory):
        await engine.create_permission_rule("memory", members["observer"], [RulePermission("moderate")],
                                            members["admin"], resource_id=shared_memory)

        assert await engine.check_permission(members["observer"], "read", "memory", shared_memory) is True
        assert await engine.check_permission(members["observer"], "write", "memory", shared_memory) is False

    @pytest.mark.asyncio
    async def test_expired_rule_ignored(self, engine, members, shared_memory, clock):
        await engine.create_permission_rule(
            "memory", members["observer"], [RulePermission("write")], members["admin"],
            resource_id=shared_memory, expires_at=clock.now + timedelta(hours=1),
        )
        assert await engine.check_permission(members["observer"], "write", "memory", shared_memory) is True

        clock.advance(hours=2)
        assert await engine.check_permission(members["observer"], "write", "memory", shared_memory) is False

    @pytest.mark.asyncio
    async def test_time_window_condition(self, engine, members, shared_memory, clock):
        window = {"start": clock.now + timedelta(hours=1), "end": (clock.now + timedelta(hours=3)).isoformat()}
        await engine.create_permission_rule(
            "memory", members["observer"], [RulePermission("write")], members["admin"],
            resource_id=shared_memory, conditions=[RuleCondition("time_window", window)],
        )

        assert await engine.check_permission(members["observer"], "write", "memory", shared_memory) is False
        clock.advance(hours=2)
        assert await engine.check_permission(members["observer"], "write", "memory", shared_memory) is True
        clock.advance(hours=2)
        assert await engine.check_permission(members["observer"], "write", "memory", shared_memory) is False

    @pytest.mark.asyncio
    async def test_malformed_time_window_fails_condition(self, engine, members, shared_memory):
        """A window that cannot be parsed never satisfies the rule."""
        for window in ({"start": "next tuesday"}, {"end": 42}, "always"):
            await engine.create_permission_rule(
                "memory", members["observer"], [RulePermission("write")], members["admin"],
                resource_id=shared_memory, conditions=[RuleCondition("time_window", window)],
            )

        assert await engine.check_permission(members["observer"], "write", "memory", shared_memory) is False
        entry = (await engine.get_audit_logs(user_id=members["observer"]))[0]
        assert entry.success is False
        assert entry.error_message is None

    @pytest.mark.asyncio
    async def test_memory_type_condition(self, engine, members, team):
        decision = await team.create_team_memory("decision", "D", "d", members["admin"])
        lesson = await team.create_team_memory("lesson", "L", "l", members["admin"])
        await engine.create_permission_rule(
            "memory", members["observer"], [RulePermission("write")], members["admin"],
            conditions=[RuleCondition("memory_type", "decision")],
        )

        assert await engine.check_permission(members["observer"], "write", "memory", decision) is True
        assert await engine.check_permission(members["observer"], "write", "memory", lesson) is False

    @pytest.mark.asyncio
    async def test_approval_required_condition(self, engine, members, shared_memory):
        """The rule applies only once the user holds an approved request."""
        await engine.create_permission_rule(
            "memory", members["observer"], [RulePermission("write")], members["admin"],
            resource_id=shared_memory, conditions=[RuleCondition("approval_required")],
        )
        assert await engine.check_permission(members["observer"], "write", "memory", shared_memory) is False

        request_id = await engine.create_access_request(
            members["observer"], "memory", shared_memory, [RulePermission("comment")]
        )
        await engine.approve_access_request(request_id, members["admin"])

        assert await engine.check_permission(members["observer"], "write", "memory", shared_memory) is True

    @pytest.mark.asyncio
    async def test_update_and_delete_rule(self, engine, members, shared_memory):
        rule_id = await engine.create_permission_rule(
            "memory", members["observer"], [RulePermission("write")], members["admin"], resource_id=shared_memory
        )

        assert await engine.update_permission_rule(
            rule_id, members["admin"], permissions=[RulePermission("write", granted=False)]
        )
        assert await engine.check_permission(members["observer"], "write", "memory", shared_memory) is False

        assert await engine.delete_permission_rule(rule_id, members["admin"])
        rules = await engine.get_permission_rules(subject_id=members["observer"])
        assert [r.is_active for r in rules] == [False]
        assert await engine.get_permission_rules(subject_id=members["observer"], is_active=True) == []

    @pytest.mark.asyncio
    async def test_update_unknown_rule(self, engine, members):
        assert await engine.update_permission_rule("missing", members["admin"], is_active=False) is False
        assert await engine.delete_permission_rule("missing", members["admin"]) is False

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, engine, members):
        rule_id = await engine.create_permission_rule("team", members["dev"], [RulePermission("admin")],
                                                      members["admin"])
        with pytest.raises(ValueError):
            await engine.update_permission_rule(rule_id, members["admin"], subject_id="someone-else")

    @pytest.mark.asyncio
    async def test_bulk_update(self, engine, members):
        updates = [
            PermissionUpdate(members["dev"], "project", [RulePermission("admin")], resource_id="p1"),
            PermissionUpdate(members["observer"], "project", [RulePermission("write")], resource_id="p1"),
        ]
        assert await engine.bulk_update_permissions(updates, members["admin"])

        assert len(await engine.get_permission_rules(resource_type="project", resource_id="p1")) == 2
        assert await engine.check_permission(members["observer"], "write", "project", "p1") is True
        bulk = await engine.get_audit_logs(action="bulk_update_permissions")
        assert bulk[0].metadata == {"count": 2}


# =============================================================================
# Access Requests
# =============================================================================

class TestAccessRequests:
    """Tests for the pending -> approved/denied lifecycle."""

    @pytest.mark.asyncio
    async def test_approve_grants_requested_permission(self, engine, members, private_memory):
        """Approving a request makes the exact requested check pass."""
        requester = members["dev"]
        assert await engine.check_permission(requester, "read", "memory", private_memory) is False

        request_id = await engine.create_access_request(
            requester, "memory", private_memory, [RulePermission("read")], justification="on-call"
        )
        assert await engine.approve_access_request(request_id, members["dev2"]) is True

        assert await engine.check_permission(requester, "read", "memory", private_memory) is True
        request = (await engine.get_access_requests(requester_id=requester))[0]
        assert request.status == RequestStatus.APPROVED.value
        assert request.approved_by == members["dev2"]
        assert request.approved_at is not None

    @pytest.mark.asyncio
    async def test_deny_leaves_permission_refused(self, engine, members, private_memory):
        requester = members["dev"]
        request_id = await engine.create_access_request(requester, "memory", private_memory,
                                                        [RulePermission("read")])

        assert await engine.deny_access_request(request_id, members["dev2"], "not needed") is True

        assert await engine.check_permission(requester, "read", "memory", private_memory) is False
        request = (await engine.get_access_requests(status="denied"))[0]
        assert request.deny_reason == "not needed"
        assert request.denied_by == members["dev2"]

    @pytest.mark.asyncio
    async def test_transitions_are_terminal(self, engine, members, shared_memory):
        request_id = await engine.create_access_request(members["observer"], "memory", shared_memory,
                                                        [RulePermission("write")])
        await engine.deny_access_request(request_id, members["admin"])

        assert await engine.approve_access_request(request_id, members["admin"]) is False
        assert await engine.deny_access_request(request_id, members["admin"]) is False
        with pytest.raises(InvalidTransition):
            await engine.approve_access_request(request_id, members["admin"], strict=True)

        failures = await engine.get_audit_logs(action="approve_access_request")
        assert all(entry.success is False for entry in failures)
        assert "cannot move from denied to approved" in failures[0].error_message

    @pytest.mark.asyncio
    async def test_unknown_request(self, engine, members):
        assert await engine.approve_access_request("missing", members["admin"]) is False
        with pytest.raises(NotFound):
            await engine.deny_access_request("missing", members["admin"], strict=True)

    @pytest.mark.asyncio
    async def test_request_expiry_bounds_granted_rule(self, engine, members, private_memory, clock):
        request_id = await engine.create_access_request(
            members["dev"], "memory", private_memory, [RulePermission("read")],
            expires_at=clock.now + timedelta(days=1),
        )
        await engine.approve_access_request(request_id, members["dev2"])
        assert await engine.check_permission(members["dev"], "read", "memory", private_memory) is True

        clock.advance(days=2)
        assert await engine.check_permission(members["dev"], "read", "memory", private_memory) is False

    @pytest.mark.asyncio
    async def test_requests_newest_first(self, engine, members, clock):
        first = await engine.create_access_request(members["dev"], "project", "p1", [RulePermission("admin")])
        clock.advance(minutes=1)
        second = await engine.create_access_request(members["dev"], "project", "p2", [RulePermission("admin")])
        third = await engine.create_access_request(members["observer"], "project", "p3", [RulePermission("read")])

        assert [r.id for r in await engine.get_access_requests()] == [third, second, first]
        assert [r.id for r in await engine.get_access_requests(status=RequestStatus.PENDING,
                                                               requester_id=members["dev"])] == [second, first]


# =============================================================================
# Sharing
# =============================================================================

class TestSharing:
    """Tests for share_memory and revoke_memory_access."""

    @pytest.mark.asyncio
    async def test_share_creates_rules_for_recipients(self, engine, members, private_memory):
        ok = await engine.share_memory(
            private_memory, members["dev2"], [members["dev"], members["observer"]],
            [RulePermission("read")], message="have a look",
        )

        assert ok is True
        assert await engine.check_permission(members["dev"], "read", "memory", private_memory) is True
        assert await engine.check_permission(members["observer"], "read", "memory", private_memory) is True
        entry = (await engine.get_audit_logs(action="share_memory"))[0]
        assert entry.success is True
        assert entry.metadata["message"] == "have a look"

    @pytest.mark.asyncio
    async def test_share_refused_without_share_permission(self, engine, members, shared_memory):
        """An observer cannot share; the refusal is a boolean and is audited."""
        ok = await engine.share_memory(shared_memory, members["observer"], [members["dev"]],
                                       [RulePermission("delete")])

        assert ok is False
        assert await engine.get_permission_rules(subject_id=members["dev"]) == []
        entry = (await engine.get_audit_logs(action="share_memory"))[0]
        assert entry.success is False
        assert entry.error_message == "Permission denied"

    @pytest.mark.asyncio
    async def test_revoke_requires_admin(self, engine, members, shared_memory):
        await engine.share_memory(shared_memory, members["admin"], [members["observer"]], [RulePermission("write")])

        assert await engine.revoke_memory_access(shared_memory, members["dev"], members["observer"]) is False
        assert await engine.check_permission(members["observer"], "write", "memory", shared_memory) is True

        assert await engine.revoke_memory_access(shared_memory, members["admin"], members["observer"]) is True
        assert await engine.check_permission(members["observer"], "write", "memory", shared_memory) is False


# =============================================================================
# Audit Log & Compliance
# =============================================================================

class TestAudit:
    """Tests for the audit trail and compliance report."""

    @pytest.mark.asyncio
    async def test_every_check_is_audited(self, engine, members, shared_memory):
        await engine.check_permission(members["dev"], "read", "memory", shared_memory)
        await engine.check_permission(members["dev"], "delete", "memory", shared_memory)

        logs = await engine.get_audit_logs(action="permission_check")
        assert [e.success for e in logs] == [False, True]
        assert logs[0].resource_id == shared_memory

    @pytest.mark.asyncio
    async def test_audit_log_is_capped(self, team, members):
        """Only the most recent entries are kept."""
        engine = PermissionEngine(team, repository=InMemoryPermissionRepository(audit_cap=3))
        for action in ("read", "write", "vote", "comment", "share"):
            await engine.check_permission(members["dev"], action, "project", "p1")

        logs = await engine.get_audit_logs()
        assert len(logs) == 3
        assert [e.metadata["requested_action"] for e in logs] == ["share", "comment", "vote"]

    def test_audit_cap_from_config(self, temp_project):
        store = TeamMemoryStore("t", temp_project, config=MemoryConfig(audit_cap=2))
        engine = PermissionEngine(store)
        assert engine.repository._audit.maxlen == 2

    @pytest.mark.asyncio
    async def test_audit_filters(self, engine, members, clock):
        await engine.check_permission(members["dev"], "read", "project", "p1")
        clock.advance(hours=1)
        midpoint = clock.now
        await engine.check_permission(members["observer"], "read", "team", "t1")
        clock.advance(hours=1)
        await engine.check_permission(members["dev"], "write", "team", "t1")

        assert len(await engine.get_audit_logs(user_id=members["dev"])) == 2
        assert len(await engine.get_audit_logs(resource_type="team")) == 2
        assert len(await engine.get_audit_logs(start=midpoint)) == 2
        assert len(await engine.get_audit_logs(end=midpoint)) == 2
        assert len(await engine.get_audit_logs(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_compliance_report(self, engine, members, shared_memory, clock):
        start = clock.now
        await engine.check_permission(members["observer"], "write", "memory", shared_memory)
        await engine.check_permission(members["dev"], "read", "memory", shared_memory)
        rule_id = await engine.create_permission_rule("project", members["dev"], [RulePermission("admin")],
                                                      members["admin"])
        await engine.delete_permission_rule(rule_id, members["admin"])
        request_id = await engine.create_access_request(members["dev"], "project", "p1", [RulePermission("read")])
        await engine.approve_access_request(request_id, members["admin"])
        clock.advance(days=1)
        await engine.check_permission(members["dev"], "read", "project", "late")

        report = await engine.generate_compliance_report(start, start + timedelta(hours=1))

        # 2 checks, create + delete rule, request, approve, rule created on approval
        assert report.total_actions == 7
        assert report.unique_users == 3
        assert report.permission_changes == 3
        assert report.access_requests == 2
        assert report.security_events == 1
        assert report.top_actions[0] == ("create_permission_rule", 2)
        assert len(report.risk_events) == 2
        assert report.to_dict()["top_actions"][0] == {"action": "create_permission_rule", "count": 2}
