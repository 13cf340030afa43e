# -*- coding: utf-8 -*-
"""Timer driven scan that creates, runs and expires rekeying tasks.

Each scan

1. marks tasks whose expiry passed while still waiting as expired
2. creates tasks for secrets expiring within the creation lead time of their strategy
3. runs automatic and cached sign off tasks expiring within the just in time lead time
4. raises about to expire / expired events for secrets, once per expiry
"""

import logging
import threading
from datetime import timedelta

from gcp_secret_rekeyer.events import SystemEvents
from gcp_secret_rekeyer.models import ConfirmationStrategy, TaskState, utcnow

AUTOMATIC_TASK_TYPES = (ConfirmationStrategy.ADMIN_CACHES_SIGN_OFF,
                        ConfirmationStrategy.AUTOMATIC_REKEYING_AS_NEEDED,
                        ConfirmationStrategy.AUTOMATIC_REKEYING_SCHEDULED)


def _is_single(strategy):
    return bin(int(strategy)).count("1") == 1


class TaskScheduler:

    def __init__(self, service, clock=None):
        self._service = service
        self._clock = clock or service.clock or utcnow
        self._notified = {}
        self._stopping = threading.Event()
        self._thread = None

    @property
    def config(self):
        return self._service.config

    def _lead_times(self):
        return [
            (ConfirmationStrategy.ADMIN_SIGNS_OFF_JUST_IN_TIME,
             self.config.approval_required_lead_time),
            (ConfirmationStrategy.ADMIN_CACHES_SIGN_OFF,
             self.config.approval_required_lead_time),
            (ConfirmationStrategy.AUTOMATIC_REKEYING_AS_NEEDED,
             self.config.automatic_rekeyable_task_creation_lead_time),
            (ConfirmationStrategy.AUTOMATIC_REKEYING_SCHEDULED,
             self.config.automatic_rekeyable_task_creation_lead_time),
        ]

    def _has_open_task(self, secret_id, tasks):
        return any(t.managed_secret_id == secret_id and
                   t.state not in (TaskState.COMPLETED, TaskState.EXPIRED)
                   for t in tasks)

    def schedule_rekeying_tasks(self):
        """Creates tasks for secrets nearing expiry that have none open."""
        now = self._clock()
        secrets = self._service.secrets.get()
        tasks = self._service.tasks.get()
        created = []
        for strategy, lead_time in self._lead_times():
            candidates = [s for s in secrets
                          if strategy in s.confirmation_strategies and
                          s.valid_period > timedelta(0) and
                          s.expiry < now + lead_time and
                          not self._has_open_task(s.object_id, tasks) and
                          s.object_id not in {t.managed_secret_id for t in created}]
            logging.getLogger(__name__).info(f"Creating {len(candidates)} tasks for "
                                             f"{strategy.name}")
            for secret in candidates:
                preferred = secret.confirmation_strategies.preferred()
                task = self._service.create_task(
                    secret, confirmation_type=preferred if _is_single(preferred) else strategy)
                created.append(task)
        return created

    def perform_auto_rekeying_tasks(self):
        """Runs tasks that need no administrator and are due, one at a time."""
        now = self._clock()
        due = self._service.tasks.get(
            lambda t: t.confirmation_type in AUTOMATIC_TASK_TYPES and
            t.state in (TaskState.SCHEDULED, TaskState.FAILED) and
            not t.is_expired(now) and
            now + self.config.automatic_rekeyable_just_in_time_lead_time > t.expiry)
        results = []
        for task in due:
            deadline = self._clock() + timedelta(seconds=self.config.max_attempt_seconds)
            try:
                results.append(self._service.execute_task(task.object_id, deadline=deadline))
            except Exception:
                logging.getLogger(__name__).exception(f"While executing task {task.object_id}")
        return results

    def expire_tasks(self):
        now = self._clock()
        expired = []
        for task in self._service.tasks.get(lambda t: t.is_waiting and t.is_expired(now)):
            try:
                expired.append(self._service.expire_task(task.object_id))
            except Exception:
                logging.getLogger(__name__).exception(f"While expiring task {task.object_id}")
        return expired

    def notify_expiring_secrets(self):
        now = self._clock()
        sent = []
        for secret in self._service.secrets.get():
            if secret.valid_period <= timedelta(0):
                continue
            if not secret.is_valid(now):
                event = SystemEvents.SECRET_EXPIRED
            elif secret.expiry < now + self.config.approval_required_lead_time:
                event = SystemEvents.SECRET_ABOUT_TO_EXPIRE
            else:
                continue
            if self._notified.get(secret.object_id) == (event, secret.expiry):
                continue
            self._notified[secret.object_id] = (event, secret.expiry)
            self._service.events.dispatch(event, "TaskScheduler.notify_expiring_secrets",
                                          {"managed_secret_id": str(secret.object_id),
                                           "name": secret.name,
                                           "expiry": secret.expiry.isoformat(),
                                           "admin_emails": list(secret.admin_emails)})
            sent.append((secret.object_id, event))
        return sent

    def run_once(self):
        for step in (self.expire_tasks, self.schedule_rekeying_tasks,
                     self.perform_auto_rekeying_tasks, self.notify_expiring_secrets):
            try:
                step()
            except Exception:
                logging.getLogger(__name__).exception(f"Scan step {step.__name__} failed")

    def _run(self, interval):
        while not self._stopping.is_set():
            self.run_once()
            self._stopping.wait(interval)

    def start(self, interval=None):
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        interval = self.config.scan_interval_seconds if interval is None else interval
        self._stopping.clear()
        self._thread = threading.Thread(target=self._run, name="rekeying_scan", args=[interval])
        self._thread.daemon = True
        self._thread.start()
        self._service.events.dispatch(SystemEvents.AGENT_SERVICE_STARTED, "TaskScheduler.start",
                                      {"instance_id": self.config.instance_id})
        return self._thread

    def stop(self, timeout=None):
        self._stopping.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._service.events.dispatch(SystemEvents.AGENT_SERVICE_STOPPED,
                                          "TaskScheduler.stop",
                                          {"instance_id": self.config.instance_id})
        self._thread = None
