# -*- coding: utf-8 -*-
"""
Tests for agent messages, the agent service and the cryptographic implementation.
"""

import json
import logging
import unittest
from datetime import datetime, timedelta

import pytz

from gcp_secret_rekeyer import *
from gcp_secret_rekeyer.agents import TICKS_EPOCH, to_ticks

import fakes

ADMIN_KEY = generate_private_key_pem()
AGENT_KEY = generate_private_key_pem()


def setup_module():
    logging.basicConfig(level=logging.DEBUG)


def admin_crypto():
    return DefaultCryptographicImplementation(ADMIN_KEY,
                                              {"agent-1": public_key_pem(AGENT_KEY)})


def agent_crypto():
    return DefaultCryptographicImplementation(AGENT_KEY,
                                              {"admin-service": public_key_pem(ADMIN_KEY)})


def command(valid_period=timedelta(days=7)):
    return AgentProviderCommandMessage(
        providers=[ProviderExecutionParameters(provider_type="recording-key",
                                               provider_configuration='{"user_hint": "a"}',
                                               agent_id="agent-1")],
        valid_period=valid_period,
        state="task-42")


def tampered(serialized, field):
    envelope = AgentMessageEnvelope.from_json(serialized)
    raw = bytearray(getattr(envelope, field))
    raw[len(raw) // 2] ^= 0x01
    setattr(envelope, field, bytes(raw))
    return envelope.to_json()


class TestCryptography(unittest.TestCase):

    def test_sign_and_verify(self):
        crypto = admin_crypto()
        digest = crypto.hash(b"payload")
        assert digest == crypto.hash("payload"), "str and bytes hash alike"
        signature = crypto.sign(digest)
        assert crypto.verify(digest, signature), "own signature verifies with own key"
        assert agent_crypto().verify(digest, signature, "admin-service"), \
            "a peer verifies with the registered public key"
        assert not agent_crypto().verify(crypto.hash(b"other"), signature, "admin-service")

    def test_encrypt_for_peer(self):
        ciphertext = admin_crypto().encrypt(b"top secret stuff", "agent-1")
        assert b"top secret stuff" not in ciphertext
        assert agent_crypto().decrypt(ciphertext) == b"top secret stuff"
        with self.assertRaises(ValueError):
            admin_crypto().decrypt(ciphertext)

    def test_unknown_peer(self):
        with self.assertRaises(KeyError):
            admin_crypto().encrypt(b"data", "agent-9")

    def test_random_string(self):
        value = admin_crypto().generate_random_string(32)
        assert len(value) == 32 and value.isalnum()


class TestAgentMessageEnvelope(unittest.TestCase):

    def test_ticks(self):
        assert to_ticks(TICKS_EPOCH) == 0
        assert to_ticks(datetime(2000, 1, 1, tzinfo=pytz.UTC)) == 630822816000000000

    def test_round_trip_verifies(self):
        envelope = AgentMessageEnvelope.create(admin_crypto(), "admin-service", "agent-1",
                                               command())
        received = AgentMessageEnvelope.from_json(envelope.to_json())

        assert received.message_type == "AgentProviderCommandMessage"
        assert received.verify(agent_crypto())
        message = received.verify_and_unpack(agent_crypto())
        assert message.state == "task-42"
        assert message.valid_period == timedelta(days=7)
        assert message.providers[0].provider_type == "recording-key"
        assert message.providers[0].agent_id == "agent-1"

    def test_tampering_is_detected(self):
        serialized = AgentMessageEnvelope.create(admin_crypto(), "admin-service", "agent-1",
                                                 command()).to_json()
        for field in ("message", "signature"):
            envelope = AgentMessageEnvelope.from_json(tampered(serialized, field))
            assert not envelope.verify(agent_crypto()), f"tampered {field} must not verify"
            assert envelope.verify_and_unpack(agent_crypto()) is None

        data = json.loads(serialized)
        data["target"] = "agent-2"
        assert not AgentMessageEnvelope.from_json(json.dumps(data)).verify(agent_crypto()), \
            "the routing fields are signed"

    def test_access_token_is_not_sent(self):
        parameters = ProviderExecutionParameters(
            provider_type="recording-key",
            access_token=AccessTokenCredential(access_token="bearer-value"))
        assert "bearer-value" not in json.dumps(parameters.to_dict())


class TestAgentService(unittest.TestCase):

    def setUp(self):
        del fakes.JOURNAL[:]
        self.channel = QueueAgentCommunicationProvider()
        self.sink = fakes.RecordingEventSink()
        self.identity = fakes.FakeIdentity()
        self.storage = InMemorySecureStorage()
        self.admin = AgentService("admin-service", fakes.build_registry(), admin_crypto(),
                                  identity=self.identity, secure_storage=self.storage,
                                  events=EventDispatcher([self.sink]),
                                  communication=self.channel)
        self.agent = AgentService("agent-1", fakes.build_registry(), agent_crypto(),
                                  identity=self.identity, secure_storage=self.storage,
                                  events=EventDispatcher([self.sink]),
                                  communication=self.channel)

    def test_dispatch_to_agent_and_report_back(self):
        providers = [ProviderExecutionParameters(provider_type="recording-key",
                                                 provider_configuration='{"user_hint": "a"}',
                                                 agent_id="agent-1"),
                     ProviderExecutionParameters(provider_type="recording-app",
                                                 provider_configuration='{"slot": "web"}',
                                                 agent_id="admin-service")]
        local = self.admin.dispatch_or_execute(timedelta(days=7), None, "task-42", providers)

        assert local is not None, "the provider owned by this instance ran locally"
        assert fakes.journal_methods().count("rekey") == 0, "the rekeyable ran remotely"

        collections = []
        message = self.agent.process_message(self.channel.try_receive(), collections.append)
        assert isinstance(message, AgentProviderCommandMessage)
        assert "rekey" in fakes.journal_methods(), "the agent ran the workflow"

        status = self.admin.process_message(self.channel.try_receive(), collections.append)
        assert isinstance(status, AgentProviderStatusMessage)
        assert status.state == "task-42"
        assert collections[-1].is_successful_attempt, collections[-1].summary()
        assert self.channel.try_receive() is None

    def test_message_for_another_instance_is_ignored(self):
        envelope = AgentMessageEnvelope.create(admin_crypto(), "admin-service", "agent-1",
                                               command())
        assert self.admin.process_message(envelope.to_json()) is None
        assert fakes.JOURNAL == []

    def test_unverified_message_is_rejected(self):
        serialized = AgentMessageEnvelope.create(admin_crypto(), "admin-service", "agent-1",
                                                 command()).to_json()
        with self.assertRaises(MessageVerificationError):
            self.agent.process_message(tampered(serialized, "signature"))
        assert self.sink.names() == [SystemEvents.ANOMALOUS_EVENT_OCCURRED]
        assert fakes.JOURNAL == [], "nothing runs from an unverified message"

    def test_persisted_token_is_destroyed_after_success(self):
        persisted_id = self.storage.persist(None, AccessTokenCredential(
            access_token="cached", username="ada@example.com").to_dict())
        providers = [ProviderExecutionParameters(provider_type="recording-key",
                                                 token_source=TokenSource.PERSISTED,
                                                 token_parameter=persisted_id,
                                                 agent_id="agent-1")]

        collection = self.agent.execute(timedelta(days=7), None, providers)
        assert collection.is_successful_attempt
        assert providers[0].access_token.display_email == "ada@example.com"
        assert persisted_id not in self.storage

    def test_missing_persisted_token(self):
        providers = [ProviderExecutionParameters(provider_type="recording-key",
                                                 token_source=TokenSource.PERSISTED,
                                                 token_parameter="gone",
                                                 agent_id="agent-1")]
        with self.assertRaises(CredentialNotFound):
            self.agent.execute(timedelta(days=7), None, providers)

    def test_explicit_and_obo_tokens(self):
        explicit = AccessTokenCredential(access_token="explicit-token", username="svc")
        providers = [ProviderExecutionParameters(provider_type="recording-key",
                                                 token_source=TokenSource.EXPLICIT,
                                                 token_parameter=json.dumps(explicit.to_dict())),
                     ProviderExecutionParameters(provider_type="recording-app",
                                                 token_source=TokenSource.OBO)]
        self.agent.execute(timedelta(days=7), None, providers)

        assert providers[0].access_token.access_token == "explicit-token"
        assert providers[1].access_token.access_token == "user-token"
        assert providers[1].access_token.display_user_name == "Ada Admin"

    def test_unknown_token_source_is_anomalous(self):
        providers = [ProviderExecutionParameters(provider_type="recording-key",
                                                 token_source=TokenSource.UNKNOWN)]
        self.agent.execute(timedelta(days=7), None, providers)
        assert SystemEvents.ANOMALOUS_EVENT_OCCURRED in self.sink.names()
