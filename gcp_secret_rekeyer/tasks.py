# -*- coding: utf-8 -*-
"""
Rekeying tasks and their execution.

A task asks for one managed secret to be rotated before ``expiry``. How the credential for the
providers is obtained depends on the task's confirmation type

admin signs off just in time  - token on behalf of the signed in administrator, the task runs
                                when they approve it
admin caches sign off         - token on behalf of the administrator is persisted in secure
                                storage at approval (expiring with the task) and destroyed once
                                a rotation using it succeeds
automatic / external signal   - the service's own application credential

Each execution appends an attempt to the task. Provider problems and configuration problems are
recorded in the attempt. Any other error once the task is in progress fails the task and is then
raised to the caller.
"""

import logging
import queue
import threading
import traceback

from gcp_secret_rekeyer.config import RekeyerConfiguration
from gcp_secret_rekeyer.events import EventDispatcher, SystemEvents
from gcp_secret_rekeyer.exceptions import (ConfigurationError, CredentialError,
                                           CredentialNotFound, InvalidCredential,
                                           InvalidTaskState, ObjectNotFound)
from gcp_secret_rekeyer.models import (AccessTokenCredential, ConfirmationStrategy, RekeyingTask,
                                       TaskState, WorkflowActionCollection, utcnow)
from gcp_secret_rekeyer.workflow import RotationWorkflowEngine

_STOP = object()


def initial_state(confirmation_type):
    if confirmation_type.uses_obo_tokens:
        return TaskState.PENDING_APPROVAL
    if confirmation_type == ConfirmationStrategy.EXTERNAL_SIGNAL:
        return TaskState.TRIGGERED
    return TaskState.SCHEDULED


class _ProgressWriter:
    """Persists attempt snapshots published by the engine on a separate thread.

    Only the newest snapshot waiting in the queue is written, at most once per interval.
    """

    def __init__(self, tasks, task_id, interval):
        self._tasks = tasks
        self._task_id = task_id
        self._interval = interval
        self._queue = queue.Queue()
        self._stopping = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"progress_{task_id}")
        self._thread.daemon = True

    def start(self):
        self._thread.start()
        return self

    def publish(self, snapshot):
        self._queue.put(snapshot)

    def stop(self):
        self._stopping.set()
        self._queue.put(_STOP)
        self._thread.join()

    def _latest(self, snapshot):
        while True:
            try:
                candidate = self._queue.get_nowait()
            except queue.Empty:
                return snapshot
            if candidate is _STOP:
                return _STOP
            snapshot = candidate

    def _write(self, snapshot):
        attempt = WorkflowActionCollection.from_dict(snapshot)

        def _replace(task):
            _replace_attempt(task, attempt)
        try:
            self._tasks.mutate(self._task_id, _replace)
        except Exception:
            logging.getLogger(__name__).exception(f"Writing progress for task {self._task_id}")

    def _run(self):
        while True:
            snapshot = self._queue.get()
            if snapshot is _STOP:
                return
            snapshot = self._latest(snapshot)
            if snapshot is _STOP:
                return
            self._write(snapshot)
            self._stopping.wait(self._interval)


def _replace_attempt(task, attempt):
    for index, existing in enumerate(task.attempts):
        if existing.attempt_id == attempt.attempt_id:
            task.attempts[index] = attempt
            return
    task.attempts.append(attempt)


class TaskExecutionService:
    """Creates, approves and executes rekeying tasks.

    Attributes:
        secrets (LeasedBlobDataStore): ManagedSecret store.
        tasks (LeasedBlobDataStore): RekeyingTask store.
        resources (LeasedBlobDataStore): Resource store.
        registry (ProviderRegistry): provider types available to this instance.
        identity (IdentityService): source of access tokens.
        secure_storage (SecureStorage, optional): where cached sign offs are kept.
        events (EventDispatcher, optional): notified of task life cycle events.
    """

    def __init__(self, secrets, tasks, resources, registry, identity, secure_storage=None,
                 events=None, config=None, clock=utcnow):
        self.secrets = secrets
        self.tasks = tasks
        self.resources = resources
        self.registry = registry
        self.identity = identity
        self.secure_storage = secure_storage
        self.events = events or EventDispatcher()
        self.config = config or RekeyerConfiguration()
        self._clock = clock

    @property
    def clock(self):
        return self._clock

    @staticmethod
    def _details(task, **extra):
        details = {"task_id": str(task.object_id),
                   "managed_secret_id": str(task.managed_secret_id),
                   "state": task.state.value,
                   "expiry": task.expiry.isoformat()}
        details.update(extra)
        return details

    def _secret(self, secret_or_id):
        if hasattr(secret_or_id, "object_id"):
            return secret_or_id
        return self.secrets.require(secret_or_id)

    def create_task(self, secret, confirmation_type=None, expiry=None):
        """Queues a rekeying task for a managed secret.

        Args:
            secret (ManagedSecret or uuid): the secret to rotate.
            confirmation_type (ConfirmationStrategy, optional): defaults to the secret's
                preferred strategy.
            expiry (datetime, optional): defaults to the expiry of the secret.

        Returns:
            RekeyingTask: the stored task.
        """
        secret = self._secret(secret)
        confirmation_type = confirmation_type or secret.confirmation_strategies.preferred()
        if confirmation_type == ConfirmationStrategy.NONE:
            raise ConfigurationError(f"Secret {secret.object_id} has no confirmation strategy")
        task = RekeyingTask(managed_secret_id=secret.object_id,
                            queued=self._clock(),
                            expiry=expiry or secret.expiry,
                            confirmation_type=confirmation_type)
        task.transition(initial_state(confirmation_type))
        self.tasks.create(task)
        if confirmation_type.uses_obo_tokens:
            self.events.dispatch(SystemEvents.ROTATION_TASK_CREATED_FOR_APPROVAL,
                                 "TaskExecutionService.create_task", self._details(task))
        else:
            self.events.dispatch(SystemEvents.ROTATION_TASK_CREATED_FOR_AUTOMATION,
                                 "TaskExecutionService.create_task", self._details(task))
        logging.getLogger(__name__).info(f"Created task {task.object_id} for secret "
                                         f"{secret.name} state {task.state.value}")
        return task

    def cache_credentials_for_task(self, task_id):
        """Persists the approving administrator's token for a cached sign off task."""
        task = self.tasks.require(task_id)
        if task.confirmation_type != ConfirmationStrategy.ADMIN_CACHES_SIGN_OFF:
            raise ConfigurationError(f"Task {task_id} does not persist credentials")
        if self.secure_storage is None:
            raise ConfigurationError("Caching sign off needs a secure storage")

        credential = self.identity.get_access_token_on_behalf_of_current_user()
        if credential is None:
            raise CredentialNotFound(task_id, "no user is signed in")
        if credential.is_blank:
            raise InvalidCredential(task_id)
        persisted_id = self.secure_storage.persist(task.expiry, credential.to_dict())
        user = self.identity.user_name or credential.display_user_name or credential.username

        def _approve(stored):
            stored.persisted_credential_id = persisted_id
            stored.persisted_credential_user = user
            if stored.state == TaskState.PENDING_APPROVAL:
                stored.transition(TaskState.SCHEDULED)
        task = self.tasks.mutate(task_id, _approve)
        self.events.dispatch(SystemEvents.ROTATION_TASK_APPROVED,
                             "TaskExecutionService.cache_credentials_for_task",
                             self._details(task, approved_by=user))
        return task

    def approve_task(self, task_id):
        """Approves a task waiting for an administrator.

        Cached sign off persists the administrator's token, just in time sign off executes the
        task straight away with it.
        """
        task = self.tasks.require(task_id)
        if task.confirmation_type == ConfirmationStrategy.ADMIN_CACHES_SIGN_OFF:
            return self.cache_credentials_for_task(task_id)
        if task.state != TaskState.PENDING_APPROVAL:
            raise InvalidTaskState(task_id, task.state.value, TaskState.SCHEDULED.value)
        self.events.dispatch(SystemEvents.ROTATION_TASK_APPROVED,
                             "TaskExecutionService.approve_task",
                             self._details(task, approved_by=self.identity.user_name))
        if task.confirmation_type == ConfirmationStrategy.ADMIN_SIGNS_OFF_JUST_IN_TIME:
            return self.execute_task(task_id)
        return self.tasks.mutate(task_id, lambda t: t.transition(TaskState.SCHEDULED))

    def delete_task(self, task_id):
        task = self.tasks.require(task_id)
        if task.in_progress:
            raise InvalidTaskState(task_id, task.state.value, "deleted")
        if task.persisted_credential_id and self.secure_storage is not None:
            self.secure_storage.destroy(task.persisted_credential_id)
        self.tasks.delete(task_id)
        self.events.dispatch(SystemEvents.ROTATION_TASK_DELETED,
                             "TaskExecutionService.delete_task", self._details(task))
        return task

    def _credential_for(self, task):
        strategy = task.confirmation_type
        if strategy == ConfirmationStrategy.ADMIN_CACHES_SIGN_OFF:
            if not task.persisted_credential_id:
                raise CredentialNotFound(task.object_id,
                                         "cached sign off is preferred but no credential "
                                         "was persisted")
            if self.secure_storage is None:
                raise CredentialNotFound(task.object_id, "no secure storage is configured")
            try:
                credential = AccessTokenCredential.from_dict(
                    self.secure_storage.retrieve(task.persisted_credential_id))
            except ObjectNotFound:
                raise CredentialNotFound(task.object_id,
                                         "persisted credential expired or was destroyed") \
                    from None
        elif strategy == ConfirmationStrategy.ADMIN_SIGNS_OFF_JUST_IN_TIME:
            credential = self.identity.get_access_token_on_behalf_of_current_user()
            if credential is None:
                raise CredentialNotFound(task.object_id, "no user is signed in")
        elif strategy.uses_service_principal:
            credential = self.identity.get_access_token_for_application()
        else:
            raise CredentialNotFound(task.object_id,
                                     f"no credential source for {strategy!r}")
        if credential is None or credential.is_blank or credential.is_expired(self._clock()):
            raise InvalidCredential(task.object_id)
        return credential

    def _providers_for(self, secret, credential):
        resources = self.resources.get(lambda r: r.object_id in secret.resource_ids)
        by_id = {r.object_id: r for r in resources}
        missing = [str(r) for r in secret.resource_ids if r not in by_id]
        if missing:
            raise ConfigurationError(f"Secret {secret.name} refers to missing resources "
                                     f"{missing}")
        if not secret.resource_ids:
            raise ConfigurationError(f"Secret {secret.name} has no resources")
        rekeyable = []
        applications = []
        for resource_id in secret.resource_ids:
            resource = by_id[resource_id]
            provider = self.registry.create(resource.provider_type,
                                            resource.provider_configuration,
                                            credential)
            if provider.is_rekeyable_object_provider:
                rekeyable.append(provider)
            else:
                applications.append(provider)
        if not rekeyable:
            raise ConfigurationError(f"Secret {secret.name} has no rekeyable resource")
        return rekeyable, applications

    def _finish(self, task_id, attempt, state, clear_credential=False):
        def _store(task):
            _replace_attempt(task, attempt)
            if clear_credential:
                task.persisted_credential_id = None
                task.persisted_credential_user = None
            task.transition(state)
        return self.tasks.mutate(task_id, _store)

    def _fail(self, task_id, attempt, error, message):
        attempt.outer_exception = "".join(traceback.format_exception_only(type(error), error))
        attempt.log(f"{message}: {type(error).__name__}", self._clock())
        if not attempt.sealed:
            attempt.seal(False, self._clock())
        task = self._finish(task_id, attempt, TaskState.FAILED)
        self.events.dispatch(SystemEvents.ROTATION_TASK_ATTEMPT_FAILED,
                             "TaskExecutionService.execute_task",
                             self._details(task, summary=attempt.summary()))
        return task

    def expire_task(self, task_id):
        """Marks a task that was never started as expired."""
        task = self.tasks.mutate(task_id, lambda t: t.transition(TaskState.EXPIRED))
        self.events.dispatch(SystemEvents.ROTATION_TASK_EXPIRED,
                             "TaskExecutionService.execute_task", self._details(task))
        return task

    def execute_task(self, task_id, deadline=None):
        """Runs one rotation attempt for a task.

        Args:
            task_id (uuid): the task.
            deadline (datetime, optional): no provider action starts after this time.

        Returns:
            RekeyingTask: the task as stored after the attempt.

        Raises:
            ObjectNotFound: there is no such task.
            CredentialError: no usable credential, the task is marked failed first.
            ConcurrencyTimeout: a store could not be leased.
            Exception: any other error after the task started, the task is marked failed first.
        """
        task = self.tasks.require(task_id)
        now = self._clock()
        if task.is_waiting and task.is_expired(now):
            logging.getLogger(__name__).warning(f"Task {task_id} expired before it was run")
            return self.expire_task(task_id)
        if task.failed and task.is_expired(now):
            logging.getLogger(__name__).warning(f"Task {task_id} failed and expired, not "
                                                f"retrying")
            return task

        attempt = WorkflowActionCollection(attempt_started=now)

        def _start(stored):
            stored.transition(TaskState.IN_PROGRESS)
            stored.attempts.append(attempt)
        task = self.tasks.mutate(task_id, _start)

        try:
            return self._run_attempt(task, attempt, deadline)
        except ConfigurationError as e:
            logging.getLogger(__name__).error(f"Task {task_id}: {e}")
            return self._fail(task_id, attempt, e, "Configuration error")
        except CredentialError as e:
            logging.getLogger(__name__).error(f"Task {task_id}: {e}")
            self._fail_and_keep_error(task_id, attempt, e, "Exception retrieving access token")
            raise
        except Exception as e:
            logging.getLogger(__name__).exception(f"Rekeying task {task_id}")
            self._fail_and_keep_error(task_id, attempt, e, "Error rekeying secret")
            raise

    def _fail_and_keep_error(self, task_id, attempt, error, message):
        # the caller re-raises the original error
        try:
            self._fail(task_id, attempt, error, message)
        except Exception:
            logging.getLogger(__name__).exception(f"Recording failure of task {task_id}")

    def _run_attempt(self, task, attempt, deadline):
        task_id = task.object_id
        credential = self._credential_for(task)

        attempt.user_display_name = credential.display_user_name or credential.username
        attempt.user_email = credential.display_email or credential.username
        if task.confirmation_type == ConfirmationStrategy.ADMIN_CACHES_SIGN_OFF:
            attempt.user_display_name = task.persisted_credential_user or \
                attempt.user_display_name

        secret = self.secrets.get_one(task.managed_secret_id)
        if secret is None:
            raise ConfigurationError(f"Managed secret {task.managed_secret_id} not found")
        attempt.log(f"Beginning rekeying of secret {secret.name} ({secret.object_id})",
                    self._clock())
        rekeyable, applications = self._providers_for(secret, credential)

        engine = RotationWorkflowEngine(rekeyable, applications,
                                        max_action_attempts=self.config.max_action_attempts,
                                        clock=self._clock)
        writer = _ProgressWriter(self.tasks, task_id, self.config.progress_interval_seconds)
        writer.start()
        try:
            engine.execute(secret.valid_period, collection=attempt, deadline=deadline,
                           progress=writer.publish)
        except Exception as e:
            logging.getLogger(__name__).exception(f"Executing rekeying workflow for task "
                                                  f"{task_id}")
            writer.stop()
            return self._fail(task_id, attempt, e, "Error executing rekeying workflow")
        writer.stop()

        if not attempt.is_successful_attempt:
            return self._fail_attempt(task_id, attempt)
        return self._complete(task, secret, attempt)

    def _fail_attempt(self, task_id, attempt):
        task = self._finish(task_id, attempt, TaskState.FAILED)
        self.events.dispatch(SystemEvents.ROTATION_TASK_ATTEMPT_FAILED,
                             "TaskExecutionService.execute_task",
                             self._details(task, summary=attempt.summary()))
        return task

    def _complete(self, task, secret, attempt):
        if task.persisted_credential_id and self.secure_storage is not None:
            attempt.log("Destroying persisted credential", self._clock())
            try:
                self.secure_storage.destroy(task.persisted_credential_id)
            except Exception as e:
                # the stored credential still expires with the task
                logging.getLogger(__name__).exception(f"Destroying persisted credential of "
                                                      f"task {task.object_id}")
                attempt.log(f"Could not destroy persisted credential: {type(e).__name__}",
                            self._clock())

        completed_at = self._clock()

        def _rotated(stored):
            stored.last_changed = completed_at
        self.secrets.mutate(secret.object_id, _rotated)

        attempt.log(f"Completed rekeying workflow for secret {secret.name}", completed_at)
        task = self._finish(task.object_id, attempt, TaskState.COMPLETED, clear_credential=True)

        details = self._details(task, summary=attempt.summary())
        if task.confirmation_type.uses_obo_tokens:
            self.events.dispatch(SystemEvents.ROTATION_TASK_COMPLETED_MANUALLY,
                                 "TaskExecutionService.execute_task", details)
            self.events.dispatch(SystemEvents.SECRET_ROTATED_MANUALLY,
                                 "TaskExecutionService.execute_task", details)
        else:
            self.events.dispatch(SystemEvents.ROTATION_TASK_COMPLETED_AUTOMATICALLY,
                                 "TaskExecutionService.execute_task", details)
            self.events.dispatch(SystemEvents.SECRET_ROTATED_AUTOMATICALLY,
                                 "TaskExecutionService.execute_task", details)
        logging.getLogger(__name__).info(f"Task {task.object_id} completed, secret "
                                         f"{secret.name} rotated")
        return task
