"""Closed transition table for instance status."""

from ..core.exceptions import IllegalTransitionError
from ..models.enums import InstanceStatus, TransitionEvent

# (current status, event) -> next status. ``None`` is "no record yet".
TRANSITIONS: dict[tuple[InstanceStatus | None, TransitionEvent], InstanceStatus] = {
    (None, TransitionEvent.CREATE_REQUESTED): InstanceStatus.CREATING,
    # A retried create picks up a record an earlier attempt left behind
    (InstanceStatus.CREATING, TransitionEvent.CREATE_REQUESTED): InstanceStatus.CREATING,
    (InstanceStatus.CREATING, TransitionEvent.CONTAINER_STARTED): InstanceStatus.RUNNING,
    (InstanceStatus.CREATING, TransitionEvent.PROVISIONING_FAILED): InstanceStatus.DELETED,
    (InstanceStatus.RUNNING, TransitionEvent.SUSPEND_REQUESTED): InstanceStatus.SUSPENDED,
    (InstanceStatus.SUSPENDED, TransitionEvent.RESUME_REQUESTED): InstanceStatus.RUNNING,
    (InstanceStatus.RUNNING, TransitionEvent.DELETE_REQUESTED): InstanceStatus.DELETED,
    (InstanceStatus.SUSPENDED, TransitionEvent.DELETE_REQUESTED): InstanceStatus.DELETED,
}


def allowed_events(current: InstanceStatus | None) -> list[TransitionEvent]:
    return [event for (status, event) in TRANSITIONS if status == current]


def next_status(
    instance_id: str, current: InstanceStatus | None, event: TransitionEvent
) -> InstanceStatus:
    """Look up the target status or raise ``IllegalTransitionError``."""
    try:
        return TRANSITIONS[(current, event)]
    except KeyError:
        raise IllegalTransitionError(
            instance_id, current, event, allowed=allowed_events(current)
        ) from None
