"""Policy table decisions for every role/action pair that matters."""

from __future__ import annotations

import pytest

from portal.services.access import POLICY, AccessContext, Action, Role, decide


ASSIGNED = AccessContext(assigned=True)


def test_every_action_has_a_row_for_every_role():
    for action in Action:
        assert set(POLICY[action]) == set(Role), action


def test_admin_allowed_everywhere_except_filing_change_requests():
    for action in Action:
        decision = decide(Role.ADMIN, action)
        if action is Action.CHANGE_REQUEST_CREATE:
            assert not decision.allowed
        else:
            assert decision.allowed, action


@pytest.mark.parametrize("role", [Role.EMPLOYEE, Role.WORKER])
def test_internal_roles_need_assignment_for_project_actions(role):
    assert not decide(role, Action.PROJECT_VIEW)
    assert decide(role, Action.PROJECT_VIEW, ASSIGNED)
    assert decide(role, Action.PROJECT_UPDATE, ASSIGNED)
    assert not decide(role, Action.PROJECT_DELETE, ASSIGNED)
    assert not decide(role, Action.ASSIGNMENT_MANAGE, ASSIGNED)
    assert not decide(role, Action.CHANGE_REQUEST_REVIEW, ASSIGNED)


def test_client_project_rules():
    assert decide(Role.CLIENT, Action.PROJECT_VIEW, ASSIGNED)
    assert not decide(Role.CLIENT, Action.PROJECT_VIEW)
    assert not decide(Role.CLIENT, Action.PROJECT_UPDATE, ASSIGNED)
    assert not decide(Role.CLIENT, Action.TASK_CREATE, ASSIGNED)


def test_change_request_create_needs_assignment_and_ownership():
    assert decide(Role.CLIENT, Action.CHANGE_REQUEST_CREATE, AccessContext(assigned=True, is_owner=True))
    denied = decide(Role.CLIENT, Action.CHANGE_REQUEST_CREATE, AccessContext(assigned=True))
    assert not denied
    assert denied.reason == "unmet:owner"
    assert not decide(Role.EMPLOYEE, Action.CHANGE_REQUEST_CREATE, AccessContext(assigned=True, is_owner=True))


def test_clients_never_touch_work_orders():
    for action in (Action.WORK_ORDER_LIST, Action.WORK_ORDER_VIEW, Action.WORK_ORDER_CREATE, Action.SIGNATURE_ADD):
        assert decide(Role.CLIENT, action, ASSIGNED).reason == "denied_by_policy"


def test_document_download_requires_active_share_and_permission():
    assert decide(Role.CLIENT, Action.DOCUMENT_DOWNLOAD, AccessContext(share_active=True, can_download=True))
    assert not decide(Role.CLIENT, Action.DOCUMENT_DOWNLOAD, AccessContext(share_active=True))
    assert not decide(Role.CLIENT, Action.DOCUMENT_DOWNLOAD, AccessContext(can_download=True))
    assert decide(Role.CLIENT, Action.DOCUMENT_VIEW, AccessContext(share_active=True))
    assert not decide(Role.CLIENT, Action.DOCUMENT_SHARE, AccessContext(share_active=True, can_download=True))


def test_unknown_role_and_action_are_denied():
    assert decide("superuser", Action.PROJECT_LIST).reason == "unknown_role"
    assert decide(Role.ADMIN, "project.explode").reason == "unknown_action"


def test_string_inputs_are_accepted():
    assert decide("Admin", "project.delete")
    assert decide("worker", "work_order.view", ASSIGNED)
