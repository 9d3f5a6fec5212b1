"""Tests for data models and deadlines."""

import time

import pytest
from pydantic import ValidationError

from dbaas_engine.core.deadline import Deadline
from dbaas_engine.models.enums import InstanceStatus
from dbaas_engine.models.instance import InstanceDetails, InstanceRecord, ProvisioningRequest


def make_record(**overrides) -> InstanceRecord:
    fields = {
        "id": "inst-1",
        "user_id": "u",
        "subscription_id": "s",
        "engine": "postgresql",
        "container_name": "dbaas-postgresql-inst-1",
        "host_id": "primary",
        "port": 10000,
        "status": InstanceStatus.CREATING,
        "database_name": "db_inst1",
        "username": "user_inst1",
    }
    fields.update(overrides)
    return InstanceRecord(**fields)


class TestProvisioningRequest:
    def test_minimal_request(self):
        request = ProvisioningRequest(user_id="u", subscription_id="s", engine="redis")

        assert request.instance_id is None
        assert request.host_id is None

    @pytest.mark.parametrize("instance_id", ["-leading", "has space", "x" * 65, "a/b"])
    def test_rejects_unsafe_instance_ids(self, instance_id):
        with pytest.raises(ValidationError):
            ProvisioningRequest(user_id="u", subscription_id="s", engine="redis", instance_id=instance_id)

    def test_rejects_empty_engine(self):
        with pytest.raises(ValidationError):
            ProvisioningRequest(user_id="u", subscription_id="s", engine="")


class TestInstanceRecord:
    def test_records_are_immutable(self):
        record = make_record()

        with pytest.raises(ValidationError):
            record.status = InstanceStatus.RUNNING

    def test_with_status_returns_new_version(self):
        record = make_record()

        running = record.with_status(InstanceStatus.RUNNING)

        assert record.status is InstanceStatus.CREATING
        assert running.status is InstanceStatus.RUNNING
        assert running.updated_at >= record.updated_at
        assert running.created_at == record.created_at

    def test_with_status_applies_changes(self):
        failed = make_record().with_status(InstanceStatus.DELETED, failure_reason="boom")

        assert failed.failure_reason == "boom"

    def test_details_use_public_host(self):
        details = InstanceDetails.from_record(make_record(), "db.example.com")

        assert details.host == "db.example.com"
        assert "failure_reason" not in details.model_dump()


class TestDeadline:
    def test_never_is_unbounded(self):
        deadline = Deadline.never()

        assert deadline.remaining() is None
        assert not deadline.expired
        assert deadline.cap(5.0) == 5.0
        assert deadline.cap(None) is None

    def test_after_counts_down(self):
        deadline = Deadline.after(10)

        assert 9 < deadline.remaining() <= 10
        assert deadline.cap(30) <= 10
        assert deadline.cap(1) == 1

    def test_expired(self):
        deadline = Deadline.after(0.01)
        time.sleep(0.02)

        assert deadline.expired
        assert deadline.remaining() == 0.0
        assert deadline.cap(5) == 0.0

    def test_after_none(self):
        assert Deadline.after(None) == Deadline.never()
