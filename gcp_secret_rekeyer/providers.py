# -*- coding: utf-8 -*-
"""
Provider framework for rekeying.

A configured Resource is realised as a provider instance. Providers do not implement one large
interface, instead each provider declares the capabilities it fulfils and the workflow engine
only invokes phases a provider declared.

rekeyable object   - owns secret material, typically declares REKEY and optionally
                     GENERATE_TEMPORARY_SECRET_VALUE (read the inactive key slot) and CLEANUP
                     (scramble the slot no longer in use)
application        - consumes secret material and owns a downstream configuration slot, typically
lifecycle            declares DISTRIBUTE_LONG_TERM_SECRET_VALUES and one of the unified commit
                     capabilities (e.g. a deployment slot swap)

Every provider receives its configuration as an opaque serialized string. Only the provider
parses it (see ``parse_configuration``), the engine never looks inside. The default parser
expects utf-8 json and exposes two keys understood by the framework

{
    "user_hint": "string",     # disambiguates several secrets produced in one batch
    "skip_cleanup": bool       # do not scramble the alternate credential after rotation
}

Provider classes are registered in a ``ProviderRegistry`` under their provider type string at
process start. A new instance is created for every task execution so configuration and
credentials never leak between tasks.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from gcp_secret_rekeyer.exceptions import ConfigurationError, UnknownProviderType


class Capability(str, Enum):
    REKEY = "rekey"
    GENERATE_TEMPORARY_SECRET_VALUE = "generate_temporary_secret_value"
    DISTRIBUTE_TEMPORARY_SECRET_VALUES = "distribute_temporary_secret_values"
    UNIFIED_COMMIT_FOR_TEMPORARY_SECRET_VALUES = "unified_commit_for_temporary_secret_values"
    DISTRIBUTE_LONG_TERM_SECRET_VALUES = "distribute_long_term_secret_values"
    UNIFIED_COMMIT = "unified_commit"
    CLEANUP = "cleanup"
    ENUMERATE_RESOURCE_CANDIDATES = "enumerate_resource_candidates"
    RUN_SANITY_TESTS = "run_sanity_tests"

    @property
    def method_name(self):
        return self.value


# capabilities that change state somewhere outside this process
MUTATING_CAPABILITIES = frozenset({
    Capability.REKEY,
    Capability.DISTRIBUTE_TEMPORARY_SECRET_VALUES,
    Capability.UNIFIED_COMMIT_FOR_TEMPORARY_SECRET_VALUES,
    Capability.DISTRIBUTE_LONG_TERM_SECRET_VALUES,
    Capability.UNIFIED_COMMIT,
    Capability.CLEANUP,
})


@dataclass
class RegeneratedSecret:
    """Secret material produced by a provider.

    Never persisted, ``to_dict`` leaves the values out.
    """
    new_secret_value: str
    user_hint: str = ""
    new_connection_string: str = None
    expiry: datetime = None

    def __repr__(self):
        return f"RegeneratedSecret(user_hint={self.user_hint!r}, expiry={self.expiry!r})"

    def to_dict(self):
        return {
            "user_hint": self.user_hint,
            "expiry": self.expiry.isoformat() if self.expiry else None,
            "has_connection_string": self.new_connection_string is not None,
        }


@dataclass
class ProviderResourceSuggestion:
    name: str
    provider_type: str
    serialized_configuration: str
    add_to_secret: bool = False


class Provider(ABC):
    """Base class for all providers.

    Subclasses list the capabilities they fulfil in ``CAPABILITIES`` and implement the method
    named after each capability. The instance exposes the validated set as ``capabilities``
    which is what the workflow engine consults before each phase.

    Attributes:
        provider_type (str): registry key this provider was created under.
        serialized_configuration (str): the opaque configuration blob.
        configuration: the parsed configuration.
        credential (AccessTokenCredential): bearer credential to call the vendor api with.
        logger (logging.Logger or LoggerAdapter): replaced by the engine with an action scoped
            logger while a capability runs.
    """

    PROVIDER_TYPE = None
    CAPABILITIES = frozenset()
    DISPLAY_NAME = None
    DESCRIPTION = ""

    def __init__(self, serialized_configuration="", credential=None, provider_type=None):
        self._provider_type = provider_type or self.PROVIDER_TYPE or type(self).__name__
        self._serialized_configuration = serialized_configuration or ""
        self.configuration = self.parse_configuration(self._serialized_configuration)
        self.credential = credential
        self.logger = logging.getLogger(type(self).__module__)
        self._capabilities = self._describe_capabilities()

    def _describe_capabilities(self):
        declared = frozenset(Capability(c) for c in self.CAPABILITIES)
        for capability in declared:
            if not callable(getattr(self, capability.method_name, None)):
                raise ConfigurationError(f"Provider {self.provider_type} declares "
                                         f"{capability.value} but does not implement it")
        return declared

    @classmethod
    def parse_configuration(cls, serialized_configuration):
        """Parses the opaque configuration blob, json by default.

        Raises:
            ConfigurationError: when the blob cannot be parsed.
        """
        if not serialized_configuration:
            return {}
        try:
            parsed = json.loads(serialized_configuration)
        except ValueError as e:
            raise ConfigurationError(f"Provider {cls.PROVIDER_TYPE or cls.__name__} "
                                     f"configuration is not valid json: {e}") from None
        if not isinstance(parsed, dict):
            raise ConfigurationError(f"Provider {cls.PROVIDER_TYPE or cls.__name__} "
                                     f"configuration must be a json object")
        return parsed

    @property
    def provider_type(self):
        return self._provider_type

    @property
    def serialized_configuration(self):
        return self._serialized_configuration

    @property
    def capabilities(self):
        return self._capabilities

    def supports(self, capability):
        return capability in self._capabilities

    @property
    def is_rekeyable_object_provider(self):
        return Capability.REKEY in self._capabilities

    @property
    def mutates(self):
        return bool(self._capabilities & MUTATING_CAPABILITIES)

    @property
    def user_hint(self):
        if isinstance(self.configuration, dict):
            return self.configuration.get("user_hint") or ""
        return getattr(self.configuration, "user_hint", "") or ""

    @property
    def skip_cleanup(self):
        if isinstance(self.configuration, dict):
            return bool(self.configuration.get("skip_cleanup", False))
        return bool(getattr(self.configuration, "skip_cleanup", False))

    @property
    def resource_identifier(self):
        """Identity of the downstream resource, unified commits run once per identifier."""
        return f"{self.provider_type}:{self.serialized_configuration}"

    def describe(self):
        return f"{self.DISPLAY_NAME or self.provider_type}"


class RekeyableObjectProvider(Provider):
    """A provider owning secret material which it can regenerate."""

    CAPABILITIES = frozenset({Capability.REKEY})

    @abstractmethod
    def rekey(self, requested_valid_period):
        """Regenerates the secret.

        The provider decides the actual expiry, e.g. token issuing services ignore the request
        and report the expiry of the token they issued.

        Args:
            requested_valid_period (timedelta): how long the caller would like the new value
                to be valid.

        Returns:
            RegeneratedSecret: the new secret material.
        """


class ApplicationLifecycleProvider(Provider):
    """A provider consuming secret material in a downstream application configuration."""

    CAPABILITIES = frozenset({Capability.DISTRIBUTE_LONG_TERM_SECRET_VALUES})

    @abstractmethod
    def distribute_long_term_secret_values(self, secret_values):
        """Pushes the finalised secrets into the application's durable configuration.

        Args:
            secret_values (list of RegeneratedSecret): one per rekeyed provider, told apart by
                ``user_hint`` when there are several.
        """

    @staticmethod
    def slot_name(base_name, secret):
        """Naming convention for a configuration slot that receives one of several secrets."""
        if not secret.user_hint:
            return base_name
        return f"{base_name}-{secret.user_hint}"


@dataclass
class LoadedProviderMetadata:
    provider_type: str
    provider_class: type
    display_name: str
    description: str
    capabilities: frozenset

    @property
    def is_rekeyable_object_provider(self):
        return Capability.REKEY in self.capabilities


class ProviderRegistry:
    """Static map of provider type string to provider class.

    Populate at process start, e.g.

        registry = ProviderRegistry()
        registry.register(MyKeyProvider)

        @register_provider("my-other-key", registry)
        class MyOtherKeyProvider(RekeyableObjectProvider):
            ...
    """

    def __init__(self):
        self._providers = {}

    def register(self, provider_class, provider_type=None):
        provider_type = provider_type or provider_class.PROVIDER_TYPE or provider_class.__name__
        if not issubclass(provider_class, Provider):
            raise ConfigurationError(f"{provider_class!r} is not a Provider")
        existing = self._providers.get(provider_type)
        if existing is not None and existing is not provider_class:
            raise ConfigurationError(f"Provider type {provider_type} already registered "
                                     f"to {existing.__name__}")
        self._providers[provider_type] = provider_class
        logging.getLogger(__name__).debug(f"Registered provider {provider_type} "
                                          f"-> {provider_class.__name__}")
        return provider_class

    def has_provider(self, provider_type):
        return provider_type in self._providers

    def get_provider_class(self, provider_type):
        if provider_type not in self._providers:
            raise UnknownProviderType(provider_type)
        return self._providers[provider_type]

    def create(self, provider_type, serialized_configuration="", credential=None):
        """Creates a fresh provider instance for one execution."""
        provider_class = self.get_provider_class(provider_type)
        return provider_class(serialized_configuration=serialized_configuration,
                              credential=credential,
                              provider_type=provider_type)

    def test_configuration(self, provider_type, serialized_configuration):
        try:
            self.get_provider_class(provider_type).parse_configuration(serialized_configuration)
        except ConfigurationError:
            return False
        return True

    def enumerate_resource_candidates(self, provider_type, base_configuration="",
                                      credential=None):
        provider = self.create(provider_type, base_configuration, credential)
        if not provider.supports(Capability.ENUMERATE_RESOURCE_CANDIDATES):
            return []
        return list(provider.enumerate_resource_candidates(provider.configuration))

    def loaded_providers(self):
        return [LoadedProviderMetadata(provider_type=name,
                                       provider_class=cls,
                                       display_name=cls.DISPLAY_NAME or name,
                                       description=cls.DESCRIPTION,
                                       capabilities=frozenset(Capability(c)
                                                              for c in cls.CAPABILITIES))
                for name, cls in sorted(self._providers.items())]


default_registry = ProviderRegistry()


def register_provider(provider_type=None, registry=None):
    """Class decorator registering a provider class at import time."""
    def _register(provider_class):
        return (registry or default_registry).register(provider_class, provider_type)
    return _register
