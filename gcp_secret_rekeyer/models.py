# -*- coding: utf-8 -*-
"""Entities that are persisted through the datastore.

Every model converts to and from a plain json friendly dict. Time spans are stored as
seconds and timestamps as ISO-8601 strings. Secret material never appears in ``to_dict``.
"""

import secrets
import string
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, IntFlag

from dateutil import parser

from gcp_secret_rekeyer.exceptions import InvalidTaskState

MIN_TIME = datetime.min.replace(tzinfo=timezone.utc)
MAX_TIME = datetime.max.replace(tzinfo=timezone.utc)


def utcnow():
    return datetime.now(timezone.utc)


def _format_time(value):
    if value is None:
        return None
    return value.isoformat()


def _parse_time(value):
    if value is None:
        return None
    parsed = parser.isoparse(value) if isinstance(value, str) else value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_uuid(value):
    if value is None or value == "":
        return None
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def generate_nonce(length=64, exclude_characters=None):
    """Generates a cryptographically secure random alphanumeric token."""
    letters = string.ascii_letters + string.digits
    nonce = ""
    while len(nonce) < length:
        candidate = secrets.choice(letters)
        if not exclude_characters or candidate not in exclude_characters:
            nonce = nonce + candidate
    return nonce


class ConfirmationStrategy(IntFlag):
    NONE = 0
    ADMIN_SIGNS_OFF_JUST_IN_TIME = 1
    ADMIN_CACHES_SIGN_OFF = 2
    AUTOMATIC_REKEYING_AS_NEEDED = 4
    AUTOMATIC_REKEYING_SCHEDULED = 8
    EXTERNAL_SIGNAL = 16

    @property
    def uses_obo_tokens(self):
        return bool(self & (ConfirmationStrategy.ADMIN_CACHES_SIGN_OFF |
                            ConfirmationStrategy.ADMIN_SIGNS_OFF_JUST_IN_TIME))

    @property
    def uses_service_principal(self):
        return bool(self & (ConfirmationStrategy.AUTOMATIC_REKEYING_AS_NEEDED |
                            ConfirmationStrategy.AUTOMATIC_REKEYING_SCHEDULED |
                            ConfirmationStrategy.EXTERNAL_SIGNAL))

    def preferred(self):
        """Picks the single strategy a new task uses when several are enabled."""
        if (ConfirmationStrategy.ADMIN_CACHES_SIGN_OFF in self and
                ConfirmationStrategy.ADMIN_SIGNS_OFF_JUST_IN_TIME in self):
            return ConfirmationStrategy.ADMIN_CACHES_SIGN_OFF
        if (ConfirmationStrategy.AUTOMATIC_REKEYING_AS_NEEDED in self and
                ConfirmationStrategy.AUTOMATIC_REKEYING_SCHEDULED in self):
            return ConfirmationStrategy.AUTOMATIC_REKEYING_SCHEDULED
        return self


class TaskState(str, Enum):
    CREATED = "created"
    PENDING_APPROVAL = "pending_approval"
    SCHEDULED = "scheduled"
    TRIGGERED = "triggered"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


_WAITING_STATES = (TaskState.CREATED, TaskState.PENDING_APPROVAL, TaskState.SCHEDULED,
                   TaskState.TRIGGERED)

TASK_TRANSITIONS = {
    TaskState.CREATED: {TaskState.PENDING_APPROVAL, TaskState.SCHEDULED, TaskState.TRIGGERED,
                        TaskState.EXPIRED},
    TaskState.PENDING_APPROVAL: {TaskState.SCHEDULED, TaskState.IN_PROGRESS, TaskState.EXPIRED},
    TaskState.SCHEDULED: {TaskState.IN_PROGRESS, TaskState.EXPIRED},
    TaskState.TRIGGERED: {TaskState.IN_PROGRESS, TaskState.EXPIRED},
    TaskState.IN_PROGRESS: {TaskState.COMPLETED, TaskState.FAILED},
    # failed tasks can be retried while they have not expired
    TaskState.FAILED: {TaskState.IN_PROGRESS},
    TaskState.COMPLETED: set(),
    TaskState.EXPIRED: set(),
}


class Phase(str, Enum):
    VALIDATE = "validate"
    SANITY_TEST = "sanity_test"
    GENERATE_TEMPORARY = "generate_temporary"
    DISTRIBUTE_TEMPORARY = "distribute_temporary"
    REKEY = "rekey"
    COMMIT = "commit"
    CLEANUP = "cleanup"


class ActionStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_RUN = "not_run"


@dataclass
class AccessTokenCredential:
    access_token: str
    expiry: datetime = None
    username: str = ""
    token_type: str = "Bearer"
    display_user_name: str = ""
    display_email: str = ""

    @property
    def is_blank(self):
        return not self.access_token or not self.access_token.strip()

    def is_expired(self, now=None):
        if self.expiry is None:
            return False
        return (now or utcnow()) >= self.expiry

    def __repr__(self):
        # keep bearer tokens out of logs and tracebacks
        return (f"AccessTokenCredential(username={self.username!r}, "
                f"expiry={_format_time(self.expiry)!r}, token_type={self.token_type!r})")

    def to_dict(self):
        return {
            "access_token": self.access_token,
            "expiry": _format_time(self.expiry),
            "username": self.username,
            "token_type": self.token_type,
            "display_user_name": self.display_user_name,
            "display_email": self.display_email,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(access_token=data.get("access_token", ""),
                   expiry=_parse_time(data.get("expiry")),
                   username=data.get("username", ""),
                   token_type=data.get("token_type", "Bearer"),
                   display_user_name=data.get("display_user_name", ""),
                   display_email=data.get("display_email", ""))


@dataclass
class ManagedSecret:
    name: str = ""
    description: str = ""
    valid_period: timedelta = timedelta(0)
    last_changed: datetime = MIN_TIME
    confirmation_strategies: ConfirmationStrategy = ConfirmationStrategy.NONE
    nonce: str = ""
    resource_ids: list = field(default_factory=list)
    admin_emails: list = field(default_factory=list)
    object_id: uuid.UUID = field(default_factory=uuid.uuid4)

    KIND = "ManagedSecret"

    @property
    def expiry(self):
        try:
            return self.last_changed + self.valid_period
        except OverflowError:
            return MIN_TIME if self.valid_period < timedelta(0) else MAX_TIME

    def is_valid(self, now=None):
        return (now or utcnow()) < self.expiry

    def time_remaining(self, now=None):
        now = now or utcnow()
        if not self.is_valid(now):
            return timedelta(0)
        return self.expiry - now

    def risks(self):
        """Lists configuration choices that are allowed but probably a mistake."""
        found = []
        if self.valid_period <= timedelta(0):
            found.append("ValidPeriod is zero or negative; the secret will never be "
                         "rotated automatically")
        elif self.valid_period >= timedelta.max - timedelta(days=1):
            found.append("ValidPeriod is the maximum value; the secret never expires")
        if ConfirmationStrategy.EXTERNAL_SIGNAL in self.confirmation_strategies and not self.nonce:
            found.append("External signals are enabled but the secret has no nonce")
        if not self.resource_ids:
            found.append("No resources are attached to the secret")
        return found

    def to_dict(self):
        return {
            "object_id": str(self.object_id),
            "name": self.name,
            "description": self.description,
            "valid_period": self.valid_period.total_seconds(),
            "last_changed": _format_time(self.last_changed),
            "confirmation_strategies": int(self.confirmation_strategies),
            "nonce": self.nonce,
            "resource_ids": [str(r) for r in self.resource_ids],
            "admin_emails": list(self.admin_emails),
        }

    @classmethod
    def from_dict(cls, data):
        return cls(object_id=_parse_uuid(data["object_id"]),
                   name=data.get("name", ""),
                   description=data.get("description", ""),
                   valid_period=timedelta(seconds=data.get("valid_period", 0)),
                   last_changed=_parse_time(data.get("last_changed")) or MIN_TIME,
                   confirmation_strategies=ConfirmationStrategy(
                       data.get("confirmation_strategies", 0)),
                   nonce=data.get("nonce", ""),
                   resource_ids=[_parse_uuid(r) for r in data.get("resource_ids", [])],
                   admin_emails=list(data.get("admin_emails", [])))


@dataclass
class Resource:
    name: str = ""
    description: str = ""
    provider_type: str = ""
    provider_configuration: str = ""
    is_rekeyable_object_provider: bool = False
    object_id: uuid.UUID = field(default_factory=uuid.uuid4)

    KIND = "Resource"

    def to_dict(self):
        return {
            "object_id": str(self.object_id),
            "name": self.name,
            "description": self.description,
            "provider_type": self.provider_type,
            "provider_configuration": self.provider_configuration,
            "is_rekeyable_object_provider": self.is_rekeyable_object_provider,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(object_id=_parse_uuid(data["object_id"]),
                   name=data.get("name", ""),
                   description=data.get("description", ""),
                   provider_type=data.get("provider_type", ""),
                   provider_configuration=data.get("provider_configuration", ""),
                   is_rekeyable_object_provider=bool(data.get("is_rekeyable_object_provider")))


@dataclass
class WorkflowAction:
    phase: Phase
    name: str
    provider_type: str = ""
    resource_id: str = ""
    execution_order: int = 0
    start: datetime = None
    end: datetime = None
    status: ActionStatus = ActionStatus.PENDING
    log: list = field(default_factory=list)
    error: str = None
    error_type: str = None
    # transient, holds RegeneratedSecret values and is never serialized
    result: object = field(default=None, repr=False, compare=False)

    @property
    def has_started(self):
        return self.start is not None

    @property
    def has_completed(self):
        return self.end is not None

    @property
    def has_succeeded(self):
        return self.status == ActionStatus.SUCCEEDED

    def to_dict(self):
        return {
            "phase": self.phase.value,
            "name": self.name,
            "provider_type": self.provider_type,
            "resource_id": self.resource_id,
            "execution_order": self.execution_order,
            "start": _format_time(self.start),
            "end": _format_time(self.end),
            "status": self.status.value,
            "log": list(self.log),
            "error": self.error,
            "error_type": self.error_type,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(phase=Phase(data["phase"]),
                   name=data.get("name", ""),
                   provider_type=data.get("provider_type", ""),
                   resource_id=data.get("resource_id", ""),
                   execution_order=data.get("execution_order", 0),
                   start=_parse_time(data.get("start")),
                   end=_parse_time(data.get("end")),
                   status=ActionStatus(data.get("status", ActionStatus.PENDING.value)),
                   log=list(data.get("log", [])),
                   error=data.get("error"),
                   error_type=data.get("error_type"))


@dataclass
class WorkflowActionCollection:
    """The ordered record of one execution of the rotation protocol (an attempt)."""

    attempt_id: uuid.UUID = field(default_factory=uuid.uuid4)
    actions: list = field(default_factory=list)
    orchestration_log: list = field(default_factory=list)
    user_display_name: str = ""
    user_email: str = ""
    outer_exception: str = None
    attempt_started: datetime = field(default_factory=utcnow)
    has_been_executed: bool = False
    has_been_executed_successfully: bool = False
    sealed: bool = False

    @property
    def started(self):
        starts = [a.start for a in self.actions if a.start is not None]
        return min(starts) if starts else None

    @property
    def finished(self):
        ends = [a.end for a in self.actions if a.end is not None]
        return max(ends) if ends else None

    @property
    def is_successful_attempt(self):
        return self.sealed and self.has_been_executed_successfully and not self.outer_exception

    def add(self, action):
        if not action.execution_order:
            action.execution_order = len(self.actions) + 1
        self.actions.append(action)
        return action

    def actions_for(self, phase):
        return [a for a in self.actions if a.phase == phase]

    def get_exceptions(self):
        return [a.error for a in self.actions if a.error]

    def get_last_exception(self):
        found = self.get_exceptions()
        return found[-1] if found else self.outer_exception

    def log(self, message, now=None):
        self.orchestration_log.append(f"{_format_time(now or utcnow())} {message}")

    def seal(self, success, now=None):
        """Marks the attempt finished; pending actions are recorded as never run."""
        for action in self.actions:
            if action.status == ActionStatus.PENDING:
                action.status = ActionStatus.NOT_RUN
        self.has_been_executed = True
        self.has_been_executed_successfully = bool(success)
        self.sealed = True
        self.log(f"Attempt sealed successful={bool(success)}", now)

    def summary(self):
        failed = [a for a in self.actions if a.status == ActionStatus.FAILED]
        if self.is_successful_attempt:
            return f"{len(self.actions)} actions completed successfully"
        if failed:
            first = failed[0]
            return (f"{first.phase.value} action '{first.name}' failed with "
                    f"{first.error_type or 'error'}")
        if self.outer_exception:
            return self.outer_exception.splitlines()[0]
        return "attempt did not complete"

    def to_dict(self):
        return {
            "attempt_id": str(self.attempt_id),
            "actions": [a.to_dict() for a in self.actions],
            "orchestration_log": list(self.orchestration_log),
            "user_display_name": self.user_display_name,
            "user_email": self.user_email,
            "outer_exception": self.outer_exception,
            "attempt_started": _format_time(self.attempt_started),
            "has_been_executed": self.has_been_executed,
            "has_been_executed_successfully": self.has_been_executed_successfully,
            "sealed": self.sealed,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(attempt_id=_parse_uuid(data.get("attempt_id")) or uuid.uuid4(),
                   actions=[WorkflowAction.from_dict(a) for a in data.get("actions", [])],
                   orchestration_log=list(data.get("orchestration_log", [])),
                   user_display_name=data.get("user_display_name", ""),
                   user_email=data.get("user_email", ""),
                   outer_exception=data.get("outer_exception"),
                   attempt_started=_parse_time(data.get("attempt_started")) or utcnow(),
                   has_been_executed=bool(data.get("has_been_executed")),
                   has_been_executed_successfully=bool(
                       data.get("has_been_executed_successfully")),
                   sealed=bool(data.get("sealed")))


@dataclass
class RekeyingTask:
    managed_secret_id: uuid.UUID = None
    queued: datetime = field(default_factory=utcnow)
    expiry: datetime = MAX_TIME
    confirmation_type: ConfirmationStrategy = ConfirmationStrategy.NONE
    state: TaskState = TaskState.CREATED
    persisted_credential_id: str = None
    persisted_credential_user: str = None
    attempts: list = field(default_factory=list)
    object_id: uuid.UUID = field(default_factory=uuid.uuid4)

    KIND = "RekeyingTask"

    @property
    def in_progress(self):
        return self.state == TaskState.IN_PROGRESS

    @property
    def completed(self):
        return self.state == TaskState.COMPLETED

    @property
    def failed(self):
        return self.state == TaskState.FAILED

    @property
    def is_waiting(self):
        return self.state in _WAITING_STATES

    def is_expired(self, now=None):
        if self.state == TaskState.EXPIRED:
            return True
        return self.state in _WAITING_STATES + (TaskState.FAILED,) and \
            (now or utcnow()) >= self.expiry

    def transition(self, new_state):
        if new_state not in TASK_TRANSITIONS[self.state]:
            raise InvalidTaskState(self.object_id, self.state.value, new_state.value)
        self.state = new_state
        return self

    @property
    def current_attempt(self):
        return self.attempts[-1] if self.attempts else None

    def to_dict(self):
        return {
            "object_id": str(self.object_id),
            "managed_secret_id": str(self.managed_secret_id) if self.managed_secret_id else None,
            "queued": _format_time(self.queued),
            "expiry": _format_time(self.expiry),
            "confirmation_type": int(self.confirmation_type),
            "state": self.state.value,
            "persisted_credential_id": self.persisted_credential_id,
            "persisted_credential_user": self.persisted_credential_user,
            "attempts": [a.to_dict() for a in self.attempts],
        }

    @classmethod
    def from_dict(cls, data):
        return cls(object_id=_parse_uuid(data["object_id"]),
                   managed_secret_id=_parse_uuid(data.get("managed_secret_id")),
                   queued=_parse_time(data.get("queued")) or utcnow(),
                   expiry=_parse_time(data.get("expiry")) or MAX_TIME,
                   confirmation_type=ConfirmationStrategy(data.get("confirmation_type", 0)),
                   state=TaskState(data.get("state", TaskState.CREATED.value)),
                   persisted_credential_id=data.get("persisted_credential_id"),
                   persisted_credential_user=data.get("persisted_credential_user"),
                   attempts=[WorkflowActionCollection.from_dict(a)
                             for a in data.get("attempts", [])])
