# -*- coding: utf-8 -*-
"""
Relaying rotation work to agents running next to the resources they manage.

Messages travel in an ``AgentMessageEnvelope``. The message is json, encrypted for the target
and the envelope is signed by the originator over

    created as 8 byte little endian ticks (100ns since 0001-01-01 UTC)
    || originator || target || message type || encrypted message

A receiver checks the signature before it decrypts anything. The wire form is json with the
binary fields base64 encoded

{
    "created": "iso-8601",
    "originator": "string",
    "target": "string",
    "message_type": "AgentProviderCommandMessage",
    "message": "base64",
    "signature": "base64"
}
"""

import base64
import json
import logging
import queue
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from gcp_secret_rekeyer.events import EventDispatcher, SystemEvents
from gcp_secret_rekeyer.exceptions import (CredentialNotFound, InvalidCredential,
                                           MessageVerificationError, ObjectNotFound)
from gcp_secret_rekeyer.models import (AccessTokenCredential, WorkflowActionCollection,
                                       _parse_time, utcnow)
from gcp_secret_rekeyer.workflow import RotationWorkflowEngine

TICKS_EPOCH = datetime(1, 1, 1, tzinfo=timezone.utc)
DEFAULT_AGENT_ID = "admin-service"


def to_ticks(value):
    delta = value - TICKS_EPOCH
    return (delta.days * 86400 + delta.seconds) * 10000000 + delta.microseconds * 10


class TokenSource(str, Enum):
    UNKNOWN = "unknown"
    EXPLICIT = "explicit"
    PERSISTED = "persisted"
    SERVICE_PRINCIPAL = "service_principal"
    OBO = "obo"


@dataclass
class ProviderExecutionParameters:
    provider_type: str
    provider_configuration: str = ""
    token_source: TokenSource = TokenSource.SERVICE_PRINCIPAL
    # json credential for explicit tokens, persisted id for persisted tokens
    token_parameter: str = ""
    agent_id: str = DEFAULT_AGENT_ID
    access_token: AccessTokenCredential = field(default=None, repr=False)

    def to_dict(self):
        return {
            "provider_type": self.provider_type,
            "provider_configuration": self.provider_configuration,
            "token_source": self.token_source.value,
            "token_parameter": self.token_parameter,
            "agent_id": self.agent_id,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(provider_type=data["provider_type"],
                   provider_configuration=data.get("provider_configuration", ""),
                   token_source=TokenSource(data.get("token_source", TokenSource.UNKNOWN.value)),
                   token_parameter=data.get("token_parameter", ""),
                   agent_id=data.get("agent_id", DEFAULT_AGENT_ID))


@dataclass
class AgentProviderCommandMessage:
    providers: list = field(default_factory=list)
    valid_period: timedelta = timedelta(0)
    state: str = ""

    def to_dict(self):
        return {"providers": [p.to_dict() for p in self.providers],
                "valid_period": self.valid_period.total_seconds(),
                "state": self.state}

    @classmethod
    def from_dict(cls, data):
        return cls(providers=[ProviderExecutionParameters.from_dict(p)
                              for p in data.get("providers", [])],
                   valid_period=timedelta(seconds=data.get("valid_period", 0)),
                   state=data.get("state", ""))


@dataclass
class AgentProviderStatusMessage:
    state: str = ""
    workflow_action_collection: WorkflowActionCollection = field(
        default_factory=WorkflowActionCollection)

    def to_dict(self):
        return {"state": self.state,
                "workflow_action_collection": self.workflow_action_collection.to_dict()}

    @classmethod
    def from_dict(cls, data):
        return cls(state=data.get("state", ""),
                   workflow_action_collection=WorkflowActionCollection.from_dict(
                       data.get("workflow_action_collection", {})))


@dataclass
class AgentStatusMessage:
    current_time: datetime = field(default_factory=utcnow)

    def to_dict(self):
        return {"current_time": self.current_time.isoformat()}

    @classmethod
    def from_dict(cls, data):
        return cls(current_time=_parse_time(data.get("current_time")) or utcnow())


MESSAGE_TYPES = {cls.__name__: cls for cls in (AgentProviderCommandMessage,
                                               AgentProviderStatusMessage,
                                               AgentStatusMessage)}


def _key_name(crypto, name):
    # peers are looked up by name, anything else is addressed to ourselves
    return name if name in crypto.other_public_keys else None


@dataclass
class AgentMessageEnvelope:
    created: datetime
    originator: str
    target: str
    message_type: str
    message: bytes = b""
    signature: bytes = b""

    def signed_bytes(self):
        return b"".join([struct.pack("<q", to_ticks(self.created)),
                         self.originator.encode("utf-8"),
                         self.target.encode("utf-8"),
                         self.message_type.encode("utf-8"),
                         self.message])

    @classmethod
    def create(cls, crypto, originator, target, message, clock=utcnow):
        """Encrypts ``message`` for ``target`` and signs the envelope as ``originator``."""
        message_type = type(message).__name__
        if message_type not in MESSAGE_TYPES:
            raise ValueError(f"Unknown agent message type {message_type}")
        plaintext = json.dumps(message.to_dict()).encode("utf-8")
        envelope = cls(created=clock(),
                       originator=originator,
                       target=target,
                       message_type=message_type,
                       message=crypto.encrypt(plaintext, _key_name(crypto, target)))
        envelope.signature = crypto.sign(crypto.hash(envelope.signed_bytes()))
        return envelope

    def verify(self, crypto):
        return crypto.verify(crypto.hash(self.signed_bytes()), self.signature,
                             _key_name(crypto, self.originator))

    def verify_and_unpack(self, crypto):
        """Returns the decrypted message, or None when the signature does not verify."""
        if not self.verify(crypto):
            return None
        if self.message_type not in MESSAGE_TYPES:
            raise ValueError(f"Unknown agent message type {self.message_type}")
        data = json.loads(crypto.decrypt(self.message).decode("utf-8"))
        return MESSAGE_TYPES[self.message_type].from_dict(data)

    def to_json(self):
        return json.dumps({
            "created": self.created.isoformat(),
            "originator": self.originator,
            "target": self.target,
            "message_type": self.message_type,
            "message": base64.b64encode(self.message).decode("ascii"),
            "signature": base64.b64encode(self.signature).decode("ascii"),
        })

    @classmethod
    def from_json(cls, serialized):
        data = json.loads(serialized)
        return cls(created=_parse_time(data["created"]),
                   originator=data.get("originator", ""),
                   target=data.get("target", ""),
                   message_type=data.get("message_type", ""),
                   message=base64.b64decode(data.get("message", "")),
                   signature=base64.b64decode(data.get("signature", "")))


class AgentCommunicationProvider(ABC):

    @abstractmethod
    def send(self, envelope):
        pass

    @abstractmethod
    def try_receive(self):
        """Returns the next serialized envelope or None."""


class QueueAgentCommunicationProvider(AgentCommunicationProvider):
    """Hands envelopes between services in the same process."""

    def __init__(self, channel=None):
        self._channel = channel if channel is not None else queue.Queue()

    @property
    def channel(self):
        return self._channel

    def send(self, envelope):
        self._channel.put(envelope.to_json())

    def try_receive(self):
        try:
            return self._channel.get_nowait()
        except queue.Empty:
            return None


class AgentService:
    """Executes provider sets locally or dispatches them to the agent that owns them."""

    def __init__(self, instance_id, registry, crypto, identity=None, secure_storage=None,
                 events=None, communication=None, max_action_attempts=1, clock=utcnow):
        self.instance_id = instance_id
        self.registry = registry
        self.crypto = crypto
        self.identity = identity
        self.secure_storage = secure_storage
        self.events = events or EventDispatcher()
        self.communication = communication
        self._max_action_attempts = max_action_attempts
        self._clock = clock

    def process_message(self, serialized_message, update=None):
        """Handles one envelope received from another instance.

        Args:
            serialized_message (str): envelope in its json wire form.
            update (callable, optional): receives WorkflowActionCollection progress.

        Returns:
            The unpacked message or None when the envelope is for somebody else.

        Raises:
            MessageVerificationError: the signature does not verify.
        """
        envelope = AgentMessageEnvelope.from_json(serialized_message)
        if envelope.target != self.instance_id:
            logging.getLogger(__name__).debug(f"Ignoring message for {envelope.target}")
            return None

        message = envelope.verify_and_unpack(self.crypto)
        if message is None:
            self.events.dispatch(SystemEvents.ANOMALOUS_EVENT_OCCURRED,
                                 "AgentService.process_message",
                                 "Failed to verify agent message! This may indicate agent "
                                 "compromise.")
            raise MessageVerificationError(envelope.originator, envelope.target)

        if isinstance(message, AgentProviderCommandMessage):
            collection = self.execute(message.valid_period, update, message.providers)
            if self.communication is not None:
                self.communication.send(AgentMessageEnvelope.create(
                    self.crypto, self.instance_id, envelope.originator,
                    AgentProviderStatusMessage(state=message.state,
                                               workflow_action_collection=collection),
                    clock=self._clock))
        elif isinstance(message, AgentProviderStatusMessage):
            if update is not None:
                update(message.workflow_action_collection)
        else:
            logging.getLogger(__name__).info(f"Agent {envelope.originator} reports time "
                                             f"{message.current_time.isoformat()}")
        return message

    def dispatch_or_execute(self, valid_period, update, state, providers):
        """Sends provider sets owned by other agents to them and runs the local ones.

        Returns:
            WorkflowActionCollection or None when nothing ran locally.
        """
        remote = {}
        local = []
        for parameters in providers:
            if parameters.agent_id == self.instance_id:
                local.append(parameters)
            else:
                remote.setdefault(parameters.agent_id, []).append(parameters)

        for agent_id, agent_providers in remote.items():
            if self.communication is None:
                raise ValueError(f"Providers for agent {agent_id} but no agent communication "
                                 f"is configured")
            self.communication.send(AgentMessageEnvelope.create(
                self.crypto, self.instance_id, agent_id,
                AgentProviderCommandMessage(providers=agent_providers,
                                            valid_period=valid_period,
                                            state=state),
                clock=self._clock))
            logging.getLogger(__name__).info(f"Dispatched {len(agent_providers)} providers "
                                             f"to agent {agent_id}")

        if local:
            return self.execute(valid_period, update, local)
        return None

    def _resolve_tokens(self, providers):
        obo = None
        application = None
        for parameters in providers:
            source = parameters.token_source
            if source == TokenSource.EXPLICIT:
                parameters.access_token = AccessTokenCredential.from_dict(
                    json.loads(parameters.token_parameter))
            elif source == TokenSource.PERSISTED:
                try:
                    parameters.access_token = AccessTokenCredential.from_dict(
                        self.secure_storage.retrieve(parameters.token_parameter))
                except ObjectNotFound:
                    raise CredentialNotFound(parameters.token_parameter,
                                             "persisted token expired or was destroyed") \
                        from None
                parameters.access_token.display_email = parameters.access_token.username
                parameters.access_token.display_user_name = parameters.access_token.username
            elif source == TokenSource.OBO:
                if obo is None:
                    obo = self.identity.get_access_token_on_behalf_of_current_user()
                    if obo is None:
                        raise CredentialNotFound(parameters.provider_type, "no user is signed in")
                    obo.display_email = self.identity.user_email
                    obo.display_user_name = self.identity.user_name
                parameters.access_token = obo
            elif source == TokenSource.SERVICE_PRINCIPAL:
                if application is None:
                    application = self.identity.get_access_token_for_application()
                parameters.access_token = application
            else:
                self.events.dispatch(SystemEvents.ANOMALOUS_EVENT_OCCURRED,
                                     "AgentService.execute",
                                     f"TokenSource was unknown for a provider! "
                                     f"({parameters.provider_type})")
            if parameters.access_token is not None and parameters.access_token.is_blank:
                raise InvalidCredential(parameters.provider_type)

    def execute(self, valid_period, update, providers):
        """Runs the rotation workflow for ``providers`` on this instance."""
        providers = list(providers)
        self._resolve_tokens(providers)

        rekeyable = []
        applications = []
        for parameters in providers:
            provider = self.registry.create(parameters.provider_type,
                                            parameters.provider_configuration,
                                            parameters.access_token)
            if provider.is_rekeyable_object_provider:
                rekeyable.append(provider)
            else:
                applications.append(provider)

        def _progress(snapshot):
            if update is not None:
                update(WorkflowActionCollection.from_dict(snapshot))

        engine = RotationWorkflowEngine(rekeyable, applications,
                                        max_action_attempts=self._max_action_attempts,
                                        clock=self._clock)
        logging.getLogger(__name__).info(f"Executing workflow for {len(providers)} providers")
        collection = engine.execute(valid_period, progress=_progress)

        if collection.is_successful_attempt:
            for parameters in providers:
                if parameters.token_source == TokenSource.PERSISTED:
                    logging.getLogger(__name__).info("Cleaning up persisted token")
                    self.secure_storage.destroy(parameters.token_parameter)
        return collection
