"""Tests for the instance status transition table."""

import pytest

from dbaas_engine.core.exceptions import IllegalTransitionError
from dbaas_engine.models.enums import InstanceStatus, TransitionEvent
from dbaas_engine.services.state_machine import TRANSITIONS, allowed_events, next_status

S = InstanceStatus
E = TransitionEvent


@pytest.mark.parametrize(
    "current, event, target",
    [
        (None, E.CREATE_REQUESTED, S.CREATING),
        (S.CREATING, E.CREATE_REQUESTED, S.CREATING),
        (S.CREATING, E.CONTAINER_STARTED, S.RUNNING),
        (S.CREATING, E.PROVISIONING_FAILED, S.DELETED),
        (S.RUNNING, E.SUSPEND_REQUESTED, S.SUSPENDED),
        (S.SUSPENDED, E.RESUME_REQUESTED, S.RUNNING),
        (S.RUNNING, E.DELETE_REQUESTED, S.DELETED),
        (S.SUSPENDED, E.DELETE_REQUESTED, S.DELETED),
    ],
)
def test_allowed_transitions(current, event, target):
    assert next_status("i", current, event) is target


def test_table_is_closed():
    assert len(TRANSITIONS) == 8


@pytest.mark.parametrize("event", list(TransitionEvent))
def test_deleted_is_terminal(event):
    with pytest.raises(IllegalTransitionError):
        next_status("i", S.DELETED, event)


@pytest.mark.parametrize(
    "current, event",
    [
        (S.RUNNING, E.CREATE_REQUESTED),
        (S.RUNNING, E.RESUME_REQUESTED),
        (S.SUSPENDED, E.SUSPEND_REQUESTED),
        (S.CREATING, E.DELETE_REQUESTED),
        (S.CREATING, E.SUSPEND_REQUESTED),
        (None, E.DELETE_REQUESTED),
    ],
)
def test_illegal_transitions(current, event):
    with pytest.raises(IllegalTransitionError) as exc_info:
        next_status("inst-9", current, event)

    assert exc_info.value.instance_id == "inst-9"
    assert exc_info.value.current == current
    assert exc_info.value.event is event
    assert event.value in str(exc_info.value)


def test_allowed_events():
    assert set(allowed_events(S.RUNNING)) == {E.SUSPEND_REQUESTED, E.DELETE_REQUESTED}
    assert allowed_events(S.DELETED) == []


def test_error_names_allowed_events():
    with pytest.raises(IllegalTransitionError) as exc_info:
        next_status("inst-9", S.SUSPENDED, E.SUSPEND_REQUESTED)

    assert set(exc_info.value.allowed) == {E.RESUME_REQUESTED, E.DELETE_REQUESTED}
    assert "resume_requested" in str(exc_info.value)
    assert "delete_requested" in str(exc_info.value)


def test_error_for_terminal_status_says_none_allowed():
    with pytest.raises(IllegalTransitionError, match=r"allowed: none"):
        next_status("inst-9", S.DELETED, E.RESUME_REQUESTED)
