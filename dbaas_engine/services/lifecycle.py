"""Instance lifecycle manager.

Every status change goes through ``next_status`` and is serialized per
instance id. A transition either finishes with the remote action done and the
new status persisted, or leaves the record in a well-defined status with the
failure raised to the caller.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog

from ..core.config_loader import EngineConfig
from ..core.deadline import Deadline
from ..core.exceptions import (
    ConflictingOperationError,
    DBaaSEngineError,
    IllegalTransitionError,
    InstanceNotFoundError,
    PlanLimitExceededError,
    ProvisioningError,
)
from ..models.container import ContainerHandle, ContainerSpec
from ..models.enums import EventType, InstanceStatus, TransitionEvent
from ..models.instance import (
    CreateInstanceResult,
    CredentialDisclosure,
    InstanceDetails,
    InstanceEvent,
    InstanceRecord,
    ProvisioningRequest,
)
from .credentials import build_disclosure, generate_password, hash_password
from .driver import RemoteContainerDriver
from .engines import BaseAdapter, database_name_for, get_adapter
from .notifications import NotificationDispatcher
from .repository import InstanceRepository
from .state_machine import next_status

logger = structlog.get_logger()

RemoteAction = Callable[[ContainerHandle, Deadline], Awaitable[None]]


class InstanceLifecycleManager:
    """Drive instances through CREATING, RUNNING, SUSPENDED and DELETED."""

    def __init__(
        self,
        config: EngineConfig,
        driver: RemoteContainerDriver,
        repository: InstanceRepository,
        notifications: NotificationDispatcher,
    ):
        self.config = config
        self.settings = config.settings
        self.driver = driver
        self.repository = repository
        self.notifications = notifications
        self._in_flight: set[str] = set()
        # Held from the plan-limit count until the new record is saved
        self._user_locks: dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def _exclusive(self, instance_id: str) -> AsyncGenerator[None, None]:
        """Reject a second transition on an instance that is mid-transition."""
        # No await between the check and the add, so this is atomic on the loop
        if instance_id in self._in_flight:
            raise ConflictingOperationError(instance_id)
        self._in_flight.add(instance_id)
        try:
            yield
        finally:
            self._in_flight.discard(instance_id)

    def is_busy(self, instance_id: str) -> bool:
        return instance_id in self._in_flight

    async def _load(self, instance_id: str) -> InstanceRecord:
        record = await self.repository.load_instance(instance_id)
        if record is None:
            raise InstanceNotFoundError(instance_id)
        return record

    def _public_host(self, record: InstanceRecord) -> str:
        host = self.config.hosts.get(record.host_id)
        return host.advertised_host if host else record.host_id

    def _details(self, record: InstanceRecord) -> InstanceDetails:
        return InstanceDetails.from_record(record, self._public_host(record))

    @staticmethod
    def handle_for(record: InstanceRecord) -> ContainerHandle:
        return ContainerHandle(host_id=record.host_id, name=record.container_name, port=record.port)

    def _emit(self, event_type: EventType, record: InstanceRecord, **details) -> None:
        self.notifications.emit(
            InstanceEvent(type=event_type, instance_id=record.id, status=record.status, details=details)
        )

    # ---- Create --------------------------------------------------------------

    async def create_instance(
        self, request: ProvisioningRequest, timeout: float | None = None
    ) -> CreateInstanceResult:
        """Provision a new instance and disclose its credential once.

        Retrying with the id of a record still in CREATING, left behind by an
        attempt that never finished, resumes that provisioning.

        Raises:
            IllegalTransitionError: A record with this id exists past CREATING
            ConflictingOperationError: The same id is being created right now
            UnsupportedEngineError: The engine is not in the catalog
            PlanLimitExceededError: The user is at ``request.max_instances``
            ProvisioningError: The container could not be brought up; the
                record is left in DELETED with the reason
        """
        instance_id = request.instance_id or uuid.uuid4().hex
        deadline = Deadline.after(timeout or self.settings.provision_timeout)

        async with self._exclusive(instance_id):
            existing = await self.repository.load_instance(instance_id)
            status = next_status(
                instance_id, existing.status if existing else None, TransitionEvent.CREATE_REQUESTED
            )
            adapter = get_adapter(request.engine)

            if existing is not None:
                if existing.engine != adapter.engine_name:
                    raise ProvisioningError(
                        f"Instance {instance_id} is already being created as {existing.engine}",
                        instance_id=instance_id,
                    )
                logger.warning(
                    "Resuming unfinished provisioning",
                    instance_id=instance_id,
                    host_id=existing.host_id,
                    port=existing.port,
                )
                return await self._provision(existing, adapter, deadline, resumed=True)

            host_id, _ = self.config.get_host(request.host_id)
            async with self._user_lock(request.user_id):
                await self._check_plan_limit(request)

                port = await self.driver.allocate_port(host_id)
                record = InstanceRecord(
                    id=instance_id,
                    user_id=request.user_id,
                    subscription_id=request.subscription_id,
                    engine=adapter.engine_name,
                    container_name=f"dbaas-{adapter.engine_name}-{instance_id}",
                    host_id=host_id,
                    port=port,
                    status=status,
                    database_name=database_name_for(instance_id, request.name),
                    username=adapter.username_for(instance_id),
                )
                try:
                    await self.repository.save_instance(record)
                finally:
                    # Persisted records now guard the port
                    await self.driver.release_port(host_id, port)

            logger.info(
                "Provisioning instance",
                instance_id=instance_id,
                engine=adapter.engine_name,
                host_id=host_id,
                port=port,
            )
            return await self._provision(record, adapter, deadline, resumed=False)

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        return lock

    async def _check_plan_limit(self, request: ProvisioningRequest) -> None:
        if request.max_instances is None:
            return
        active = await self.repository.count_active_instances(request.user_id)
        if active >= request.max_instances:
            logger.info(
                "Plan limit reached",
                user_id=request.user_id,
                active=active,
                max_instances=request.max_instances,
            )
            raise PlanLimitExceededError(request.user_id, request.max_instances)

    async def _provision(
        self, record: InstanceRecord, adapter: BaseAdapter, deadline: Deadline, resumed: bool
    ) -> CreateInstanceResult:
        """Bring a CREATING record to RUNNING, or to DELETED on failure."""
        password = generate_password()
        try:
            if resumed:
                # A leftover container carries a password nobody was given
                await self.driver.remove_container(self.handle_for(record), deadline)
            record = await self._bring_up(record, adapter, password, deadline)
        except BaseException as e:
            await self._fail_creation(record, e)
            if isinstance(e, ProvisioningError):
                raise
            if isinstance(e, Exception):
                raise ProvisioningError(
                    f"Provisioning of {record.id} failed: {e}", instance_id=record.id
                ) from e
            raise

        self._emit(EventType.CREATED, record, engine=record.engine, host_id=record.host_id)
        logger.info("Instance running", instance_id=record.id, engine=record.engine)
        return CreateInstanceResult(
            instance=self._details(record),
            credentials=build_disclosure(
                adapter,
                self._public_host(record),
                record.port or 0,
                record.database_name,
                record.username,
                password,
            ),
        )

    async def _bring_up(
        self, record: InstanceRecord, adapter: BaseAdapter, password: str, deadline: Deadline
    ) -> InstanceRecord:
        container = adapter.get_container_config(record.database_name, record.username, password)
        spec = ContainerSpec(
            instance_id=record.id,
            name=record.container_name,
            image=container.image,
            container_port=container.container_port,
            host_port=record.port,
            environment=container.env_vars,
            labels={
                "dbaas.managed": "true",
                "dbaas.instance-id": record.id,
                "dbaas.engine": record.engine,
            },
            server_args=container.command,
            secret_env=frozenset(container.secret_env),
            secret_server_args=frozenset(container.secret_command_args),
        )
        handle = await self.driver.create_container(record.host_id, spec, deadline)
        await self.driver.wait_until_ready(
            handle,
            adapter.get_readiness_command(record.database_name, record.username, password),
            deadline,
            secret_values=(password,),
        )

        # bcrypt is CPU bound; run it off the event loop
        password_hash = await asyncio.get_running_loop().run_in_executor(
            None, hash_password, password
        )
        await self.repository.save_credential(record.id, record.username, password_hash)

        running = record.with_status(
            next_status(record.id, record.status, TransitionEvent.CONTAINER_STARTED)
        )
        await self.repository.save_instance(running)
        return running

    async def _fail_creation(self, record: InstanceRecord, error: BaseException) -> None:
        """CREATING -> DELETED: remove whatever was started and record why.

        If the DELETED record cannot be saved the record stays in CREATING, and
        a retried ``create_instance`` with the same id picks it up again.
        """
        reason = str(error) or type(error).__name__
        logger.error("Provisioning failed", instance_id=record.id, error=reason)

        # The caller's deadline may be spent; cleanup gets its own
        cleanup_deadline = Deadline.after(self.settings.command_timeout)
        try:
            await self.driver.remove_container(self.handle_for(record), cleanup_deadline)
        except DBaaSEngineError as e:
            logger.error(
                "Could not remove container after failed provisioning",
                instance_id=record.id,
                container=record.container_name,
                error=str(e),
            )

        failed = record.with_status(
            next_status(record.id, record.status, TransitionEvent.PROVISIONING_FAILED),
            failure_reason=reason[:500],
        )
        try:
            await self.repository.save_instance(failed)
        except Exception as e:
            logger.error(
                "Could not persist provisioning failure", instance_id=record.id, error=str(e)
            )
            return
        self._emit(EventType.PROVISIONING_FAILED, failed, reason=failed.failure_reason)

    # ---- Suspend / resume / delete -------------------------------------------

    async def suspend_instance(self, instance_id: str, timeout: float | None = None) -> InstanceDetails:
        """RUNNING -> SUSPENDED by stopping the container."""
        return await self._transition(
            instance_id,
            TransitionEvent.SUSPEND_REQUESTED,
            EventType.SUSPENDED,
            action=self.driver.stop_container,
            compensate=self.driver.start_container,
            timeout=timeout,
        )

    async def resume_instance(self, instance_id: str, timeout: float | None = None) -> InstanceDetails:
        """SUSPENDED -> RUNNING by starting the container."""
        return await self._transition(
            instance_id,
            TransitionEvent.RESUME_REQUESTED,
            EventType.RESUMED,
            action=self.driver.start_container,
            compensate=self.driver.stop_container,
            timeout=timeout,
        )

    async def delete_instance(self, instance_id: str, timeout: float | None = None) -> InstanceDetails:
        """RUNNING or SUSPENDED -> DELETED by removing the container and its volumes."""
        return await self._transition(
            instance_id,
            TransitionEvent.DELETE_REQUESTED,
            EventType.DELETED,
            action=self.driver.remove_container,
            compensate=None,
            timeout=timeout,
        )

    async def _transition(
        self,
        instance_id: str,
        event: TransitionEvent,
        event_type: EventType,
        action: RemoteAction,
        compensate: RemoteAction | None,
        timeout: float | None,
    ) -> InstanceDetails:
        deadline = Deadline.after(timeout or self.settings.transition_timeout)

        async with self._exclusive(instance_id):
            record = await self._load(instance_id)
            target = next_status(instance_id, record.status, event)
            handle = self.handle_for(record)

            try:
                await action(handle, deadline)
            except DBaaSEngineError as e:
                logger.error(
                    "Remote action failed, status unchanged",
                    instance_id=instance_id,
                    transition=event.value,
                    status=record.status.value,
                    error=str(e),
                )
                if isinstance(e, ProvisioningError):
                    raise
                raise ProvisioningError(
                    f"{event.value} failed for {instance_id}: {e}", instance_id=instance_id
                ) from e

            updated = record.with_status(target)
            try:
                await self.repository.save_instance(updated)
            except Exception:
                logger.error(
                    "Could not persist transition, reverting remote action",
                    instance_id=instance_id,
                    transition=event.value,
                )
                if compensate is not None:
                    await self._compensate(compensate, handle, instance_id)
                raise

            self._emit(event_type, updated, previous_status=record.status.value)
            logger.info(
                "Instance transitioned",
                instance_id=instance_id,
                from_status=record.status.value,
                to_status=target.value,
            )
            return self._details(updated)

    async def _compensate(self, compensate: RemoteAction, handle: ContainerHandle, instance_id: str) -> None:
        try:
            await compensate(handle, Deadline.after(self.settings.command_timeout))
        except DBaaSEngineError as e:
            logger.error(
                "Compensating action failed; container and record may disagree",
                instance_id=instance_id,
                container=handle.name,
                error=str(e),
            )

    # ---- Credentials and reads -----------------------------------------------

    async def rotate_password(
        self, instance_id: str, current_password: str, timeout: float | None = None
    ) -> CredentialDisclosure:
        """Replace the user's password and disclose the new one once.

        ``current_password`` authenticates the change inside the container
        for engines that require it.
        """
        deadline = Deadline.after(timeout or self.settings.command_timeout)

        async with self._exclusive(instance_id):
            record = await self._load(instance_id)
            if record.status is not InstanceStatus.RUNNING:
                raise IllegalTransitionError(instance_id, record.status, "rotate_password")
            adapter = get_adapter(record.engine)
            if not adapter.supports_rotation:
                raise ProvisioningError(
                    f"{adapter.display_name} does not support password rotation",
                    instance_id=instance_id,
                )

            new_password = generate_password()
            argv = adapter.get_rotate_password_command(
                record.database_name, record.username, current_password, new_password
            )
            result = await self.driver.exec_in_container(
                self.handle_for(record), argv, deadline, secret_values=(current_password, new_password)
            )
            if not result.ok:
                raise ProvisioningError(
                    f"Password rotation failed for {instance_id} (exit {result.exit_code})",
                    instance_id=instance_id,
                )

            password_hash = await asyncio.get_running_loop().run_in_executor(
                None, hash_password, new_password
            )
            await self.repository.save_credential(instance_id, record.username, password_hash)

            self._emit(EventType.PASSWORD_ROTATED, record)
            logger.info("Password rotated", instance_id=instance_id)
            return build_disclosure(
                adapter,
                self._public_host(record),
                record.port or 0,
                record.database_name,
                record.username,
                new_password,
            )

    async def get_instance_details(self, instance_id: str) -> InstanceDetails:
        """Current instance view. Never includes a password."""
        return self._details(await self._load(instance_id))
