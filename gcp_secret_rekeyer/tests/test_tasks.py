# -*- coding: utf-8 -*-
"""
Tests for task execution and the scheduler, run against an in process bucket.
"""

import logging
import time
import unittest
from datetime import datetime

import pytz
from google.auth.exceptions import RefreshError

from gcp_secret_rekeyer import *
from gcp_secret_rekeyer.models import utcnow

import fakes


def setup_module():
    logging.basicConfig(level=logging.DEBUG)


class TestTaskExecutionService(unittest.TestCase):

    def setUp(self):
        del fakes.JOURNAL[:]
        self.env = fakes.Environment()
        self.service = self.env.service

    def test_automatic_task_rotates_the_secret(self):
        secret = self.env.add_secret(ConfirmationStrategy.AUTOMATIC_REKEYING_SCHEDULED)
        task = self.service.create_task(secret.object_id)
        assert task.state == TaskState.SCHEDULED, "automatic tasks are scheduled straight away"

        before = utcnow()
        task = self.service.execute_task(task.object_id)

        assert task.completed, f"task should complete, got {task.state}"
        assert len(task.attempts) == 1
        attempt = task.attempts[0]
        assert attempt.is_successful_attempt, attempt.summary()
        assert attempt.user_email == "rekeyer@example.com", "application identity is recorded"
        stored = self.env.secrets.require(secret.object_id)
        assert stored.last_changed >= before, "last changed moves to the completion time"
        assert self.env.tasks.require(task.object_id).completed, "the completed task is stored"
        names = self.env.sink.names()
        assert SystemEvents.ROTATION_TASK_CREATED_FOR_AUTOMATION in names
        assert SystemEvents.ROTATION_TASK_COMPLETED_AUTOMATICALLY in names
        assert SystemEvents.SECRET_ROTATED_AUTOMATICALLY in names
        assert "cleanup" in fakes.journal_methods()

    def test_cached_sign_off_without_credential(self):
        secret = self.env.add_secret(ConfirmationStrategy.ADMIN_CACHES_SIGN_OFF)
        task = self.service.create_task(secret)
        assert task.state == TaskState.PENDING_APPROVAL

        with self.assertRaises(CredentialNotFound):
            self.service.execute_task(task.object_id)

        stored = self.env.tasks.require(task.object_id)
        assert stored.failed and not stored.completed, "the task is failed, never completed"
        assert len(stored.attempts) == 1, "the failed attempt is recorded"
        assert "CredentialNotFound" in stored.attempts[0].outer_exception
        assert fakes.JOURNAL == [], "no provider is touched without a credential"
        assert self.env.secrets.require(secret.object_id).last_changed == secret.last_changed
        assert SystemEvents.ROTATION_TASK_ATTEMPT_FAILED in self.env.sink.names()

    def test_blank_application_token(self):
        self.env.identity.app_token = "   "
        secret = self.env.add_secret(ConfirmationStrategy.AUTOMATIC_REKEYING_AS_NEEDED)
        task = self.service.create_task(secret)

        with self.assertRaises(InvalidCredential):
            self.service.execute_task(task.object_id)
        assert self.env.tasks.require(task.object_id).failed

    def test_cached_sign_off_is_destroyed_after_success(self):
        secret = self.env.add_secret(ConfirmationStrategy.ADMIN_CACHES_SIGN_OFF)
        task = self.service.create_task(secret)

        approved = self.service.approve_task(task.object_id)
        assert approved.state == TaskState.SCHEDULED
        persisted_id = approved.persisted_credential_id
        assert persisted_id in self.env.secure_storage, "the sign off is persisted"
        assert approved.persisted_credential_user == "Ada Admin"

        task = self.service.execute_task(task.object_id)
        assert task.completed, task.attempts[-1].summary()
        assert persisted_id not in self.env.secure_storage, "the sign off is destroyed"
        assert task.persisted_credential_id is None
        assert task.attempts[0].user_display_name == "Ada Admin"
        assert SystemEvents.SECRET_ROTATED_MANUALLY in self.env.sink.names()

    def test_cached_sign_off_survives_a_failed_attempt(self):
        secret = self.env.add_secret(
            ConfirmationStrategy.ADMIN_CACHES_SIGN_OFF,
            resources=[("recording-key", '{"fail_on": "rekey"}', True)])
        task = self.service.create_task(secret)
        persisted_id = self.service.approve_task(task.object_id).persisted_credential_id

        task = self.service.execute_task(task.object_id)
        assert task.failed
        assert persisted_id in self.env.secure_storage, "kept for a retry"
        assert task.persisted_credential_id == persisted_id

        # a failed task may be retried while it has not expired
        task = self.service.execute_task(task.object_id)
        assert len(task.attempts) == 2, "every execution appends an attempt"

    def test_just_in_time_approval_executes(self):
        secret = self.env.add_secret(ConfirmationStrategy.ADMIN_SIGNS_OFF_JUST_IN_TIME)
        task = self.service.create_task(secret)
        assert task.state == TaskState.PENDING_APPROVAL

        task = self.service.approve_task(task.object_id)
        assert task.completed
        assert task.attempts[0].user_email == "ada@example.com", "the approver's token is used"
        assert SystemEvents.ROTATION_TASK_APPROVED in self.env.sink.names()

    def test_just_in_time_without_user(self):
        self.env.identity.user_token = None
        secret = self.env.add_secret(ConfirmationStrategy.ADMIN_SIGNS_OFF_JUST_IN_TIME)
        task = self.service.create_task(secret)

        with self.assertRaises(CredentialNotFound):
            self.service.approve_task(task.object_id)

    def test_configuration_errors_fail_the_task(self):
        secret = self.env.add_secret(ConfirmationStrategy.AUTOMATIC_REKEYING_SCHEDULED,
                                     resources=[("not-registered", "", True)])
        task = self.service.create_task(secret)

        task = self.service.execute_task(task.object_id)
        assert task.failed
        assert "UnknownProviderType" in task.attempts[0].outer_exception

    def test_secret_without_rekeyable_resource(self):
        secret = self.env.add_secret(ConfirmationStrategy.AUTOMATIC_REKEYING_SCHEDULED,
                                     resources=[("recording-app", "", False)])
        task = self.service.execute_task(self.service.create_task(secret).object_id)
        assert task.failed
        assert "no rekeyable resource" in task.attempts[0].outer_exception

    def test_no_confirmation_strategy(self):
        secret = self.env.add_secret(ConfirmationStrategy.NONE)
        with self.assertRaises(ConfigurationError):
            self.service.create_task(secret)

    def test_expired_task_is_not_run(self):
        secret = self.env.add_secret(ConfirmationStrategy.AUTOMATIC_REKEYING_SCHEDULED)
        task = self.service.create_task(secret, expiry=datetime(2001, 1, 1, tzinfo=pytz.UTC))

        task = self.service.execute_task(task.object_id)
        assert task.state == TaskState.EXPIRED
        assert fakes.JOURNAL == []
        assert SystemEvents.ROTATION_TASK_EXPIRED in self.env.sink.names()

    def test_delete_task(self):
        secret = self.env.add_secret(ConfirmationStrategy.ADMIN_CACHES_SIGN_OFF)
        task = self.service.create_task(secret)
        persisted_id = self.service.approve_task(task.object_id).persisted_credential_id

        self.service.delete_task(task.object_id)
        assert not self.env.tasks.contains_id(task.object_id)
        assert persisted_id not in self.env.secure_storage, "cached sign off is destroyed"
        assert SystemEvents.ROTATION_TASK_DELETED in self.env.sink.names()

    def test_progress_is_persisted_with_the_attempt(self):
        secret = self.env.add_secret(ConfirmationStrategy.AUTOMATIC_REKEYING_SCHEDULED)
        task = self.service.execute_task(self.service.create_task(secret).object_id)

        stored = self.env.tasks.require(task.object_id)
        assert len(stored.attempts) == 1, "progress writes replace the attempt in place"
        actions = stored.attempts[0].actions
        assert [a.phase for a in actions][:2] == [Phase.VALIDATE, Phase.SANITY_TEST]
        assert all(a.status == ActionStatus.SUCCEEDED for a in actions)
        assert any("key is reachable" in line for line in actions[1].log)

    def test_identity_outage_fails_the_task(self):
        env = fakes.Environment(identity=fakes.FlakyIdentity())
        secret = env.add_secret(ConfirmationStrategy.AUTOMATIC_REKEYING_SCHEDULED)
        task = env.service.create_task(secret)

        with self.assertRaises(RefreshError):
            env.service.execute_task(task.object_id)

        stored = env.tasks.require(task.object_id)
        assert stored.failed, f"the task must not be left {stored.state}"
        assert "RefreshError" in stored.attempts[0].outer_exception
        assert SystemEvents.ROTATION_TASK_ATTEMPT_FAILED in env.sink.names()
        assert fakes.JOURNAL == []

        env.identity.broken = False
        task = env.service.execute_task(task.object_id)
        assert task.completed, "the failed task is retried once the identity recovers"
        assert len(task.attempts) == 2

    def test_failure_after_rotation_leaves_task_terminal(self):
        secret = self.env.add_secret(ConfirmationStrategy.AUTOMATIC_REKEYING_SCHEDULED)
        task = self.service.create_task(secret)

        def unavailable(object_id, fn):
            raise ConcurrencyTimeout("ManagedSecret.json", 30.0)
        self.env.secrets.mutate = unavailable

        with self.assertRaises(ConcurrencyTimeout):
            self.service.execute_task(task.object_id)
        stored = self.env.tasks.require(task.object_id)
        assert stored.failed and not stored.in_progress
        assert "ConcurrencyTimeout" in stored.attempts[0].outer_exception
        assert SystemEvents.ROTATION_TASK_ATTEMPT_FAILED in self.env.sink.names()

    def test_undestroyed_credential_does_not_fail_the_rotation(self):
        secret = self.env.add_secret(ConfirmationStrategy.ADMIN_CACHES_SIGN_OFF)
        task = self.service.create_task(secret)
        self.service.approve_task(task.object_id)

        def unavailable(persisted_id):
            raise ConnectionError("secret manager unavailable")
        self.env.secure_storage.destroy = unavailable

        task = self.service.execute_task(task.object_id)
        assert task.completed, task.attempts[-1].summary()
        assert any("Could not destroy persisted credential" in line
                   for line in task.attempts[0].orchestration_log)


class TestTaskScheduler(unittest.TestCase):

    def setUp(self):
        del fakes.JOURNAL[:]
        self.env = fakes.Environment()
        self.service = self.env.service
        self.scheduler = TaskScheduler(self.service)

    def test_schedules_once_and_runs_due_tasks(self):
        secret = self.env.add_secret(ConfirmationStrategy.AUTOMATIC_REKEYING_SCHEDULED)

        created = self.scheduler.schedule_rekeying_tasks()
        assert len(created) == 1, "a task is created for the expired secret"
        assert created[0].confirmation_type == ConfirmationStrategy.AUTOMATIC_REKEYING_SCHEDULED
        assert self.scheduler.schedule_rekeying_tasks() == [], "no second task while one is open"

        results = self.scheduler.perform_auto_rekeying_tasks()
        assert len(results) == 1 and results[0].completed
        assert self.env.secrets.require(secret.object_id).is_valid()

    def test_fresh_secret_gets_no_task(self):
        self.env.add_secret(ConfirmationStrategy.AUTOMATIC_REKEYING_SCHEDULED,
                            last_changed=utcnow())
        assert self.scheduler.schedule_rekeying_tasks() == []

    def test_preferred_strategy_is_used(self):
        self.env.add_secret(ConfirmationStrategy.ADMIN_CACHES_SIGN_OFF |
                            ConfirmationStrategy.ADMIN_SIGNS_OFF_JUST_IN_TIME)

        created = self.scheduler.schedule_rekeying_tasks()
        assert [t.confirmation_type for t in created] == \
            [ConfirmationStrategy.ADMIN_CACHES_SIGN_OFF]
        assert created[0].state == TaskState.PENDING_APPROVAL
        assert self.scheduler.perform_auto_rekeying_tasks() == [], \
            "tasks waiting for approval are not run"

    def test_expire_tasks(self):
        secret = self.env.add_secret(ConfirmationStrategy.ADMIN_SIGNS_OFF_JUST_IN_TIME)
        task = self.service.create_task(secret, expiry=datetime(2001, 1, 1, tzinfo=pytz.UTC))

        expired = self.scheduler.expire_tasks()
        assert [t.object_id for t in expired] == [task.object_id]
        assert self.env.tasks.require(task.object_id).state == TaskState.EXPIRED

    def test_notifies_once_per_expiry(self):
        self.env.add_secret(ConfirmationStrategy.ADMIN_SIGNS_OFF_JUST_IN_TIME)

        sent = self.scheduler.notify_expiring_secrets()
        assert [event for _, event in sent] == [SystemEvents.SECRET_ABOUT_TO_EXPIRE]
        assert self.scheduler.notify_expiring_secrets() == [], "already notified"

    def test_run_once(self):
        self.env.add_secret(ConfirmationStrategy.AUTOMATIC_REKEYING_AS_NEEDED)

        self.scheduler.run_once()
        tasks = self.env.tasks.get()
        assert len(tasks) == 1 and tasks[0].completed, [t.state for t in tasks]

    def test_background_thread(self):
        self.env.add_secret(ConfirmationStrategy.AUTOMATIC_REKEYING_AS_NEEDED)

        self.scheduler.start(interval=3600)
        wait = 30.0
        while wait > 0.0 and not any(t.completed for t in self.env.tasks.get()):
            time.sleep(0.1)
            wait -= 0.1
        self.scheduler.stop(timeout=30.0)

        assert any(t.completed for t in self.env.tasks.get()), "the scan ran in the background"
        names = self.env.sink.names()
        assert SystemEvents.AGENT_SERVICE_STARTED in names
        assert names[-1] == SystemEvents.AGENT_SERVICE_STOPPED
