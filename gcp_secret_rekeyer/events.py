# -*- coding: utf-8 -*-
"""System events and the sinks they are dispatched to.

Dispatch never fails the caller, a sink that raises is logged and skipped.
"""

import json
import logging
from abc import ABC, abstractmethod
from enum import Enum


class SystemEvents(str, Enum):
    UNKNOWN = "Unknown"

    RESOURCE_CREATED = "ResourceCreated"
    RESOURCE_UPDATED = "ResourceUpdated"
    RESOURCE_DELETED = "ResourceDeleted"

    SECRET_CREATED = "SecretCreated"
    SECRET_UPDATED = "SecretUpdated"
    SECRET_DELETED = "SecretDeleted"

    ROTATION_TASK_COMPLETED_AUTOMATICALLY = "RotationTaskCompletedAutomatically"
    ROTATION_TASK_COMPLETED_MANUALLY = "RotationTaskCompletedManually"
    ROTATION_TASK_ATTEMPT_FAILED = "RotationTaskAttemptFailed"
    ROTATION_TASK_EXPIRED = "RotationTaskExpired"
    ROTATION_TASK_DELETED = "RotationTaskDeleted"
    ROTATION_TASK_CREATED_FOR_APPROVAL = "RotationTaskCreatedForApproval"
    ROTATION_TASK_CREATED_FOR_AUTOMATION = "RotationTaskCreatedForAutomation"
    ROTATION_TASK_APPROVED = "RotationTaskApproved"

    AGENT_SERVICE_STARTED = "AgentServiceStarted"
    AGENT_SERVICE_STOPPED = "AgentServiceStopped"
    ADMIN_SERVICE_STARTED = "AdminServiceStarted"
    ADMIN_SERVICE_STOPPED = "AdminServiceStopped"

    SECRET_ABOUT_TO_EXPIRE = "SecretAboutToExpire"
    SECRET_EXPIRED = "SecretExpired"
    SECRET_ROTATED_AUTOMATICALLY = "SecretRotatedAutomatically"
    SECRET_ROTATED_MANUALLY = "SecretRotatedManually"

    ANOMALOUS_EVENT_OCCURRED = "AnomalousEventOccurred"


class EventSink(ABC):

    @abstractmethod
    def log_event(self, system_event, source, details):
        """Records one event.

        Args:
            system_event (SystemEvents): what happened.
            source (str): component raising the event.
            details (dict or str): human readable context, never secret material.
        """


class LoggingEventSink(EventSink):
    """Writes events to the standard library logger."""

    def __init__(self, logger=None, level=logging.INFO):
        self._logger = logger or logging.getLogger(__name__)
        self._level = level

    def log_event(self, system_event, source, details):
        if not isinstance(details, str):
            details = json.dumps(details, default=str, sort_keys=True)
        level = logging.WARNING if system_event in (SystemEvents.ANOMALOUS_EVENT_OCCURRED,
                                                    SystemEvents.ROTATION_TASK_ATTEMPT_FAILED,
                                                    SystemEvents.SECRET_EXPIRED) else self._level
        self._logger.log(level, f"{system_event.value} from {source}: {details}")


class EventDispatcher:

    def __init__(self, sinks=None):
        self._sinks = list(sinks or [])

    @property
    def sinks(self):
        return list(self._sinks)

    def add_sink(self, sink):
        self._sinks.append(sink)

    def dispatch(self, system_event, source, details=None):
        for sink in self._sinks:
            try:
                sink.log_event(system_event, source, details if details is not None else {})
            except Exception:
                logging.getLogger(__name__).exception(
                    f"Event sink {type(sink).__name__} failed on {system_event.value}")
