# -*- coding: utf-8 -*-

class RekeyerError(Exception):
    """Base Error class."""


class ConfigurationError(RekeyerError):
    """Missing or invalid provider configuration or secret setup."""


class UnknownProviderType(ConfigurationError):
    CUSTOM_ERROR_MESSAGE = "Provider type {} is not registered"

    def __init__(self, provider_type):
        super(UnknownProviderType, self).__init__(self.CUSTOM_ERROR_MESSAGE.format(provider_type))
        self._provider_type = provider_type

    @property
    def provider_type(self):
        return self._provider_type


class DuplicateHint(ConfigurationError):
    CUSTOM_ERROR_MESSAGE = "Secret batch for {} has missing or duplicate user hints {}"

    def __init__(self, batch_name, hints):
        super(DuplicateHint, self).__init__(self.CUSTOM_ERROR_MESSAGE.format(batch_name,
                                                                             sorted(hints)))
        self._hints = list(hints)

    @property
    def hints(self):
        return self._hints


class CredentialError(RekeyerError):
    """Missing, expired or empty credential."""


class CredentialNotFound(CredentialError):
    CUSTOM_ERROR_MESSAGE = "No credential available for task {}: {}"

    def __init__(self, task_id, reason):
        super(CredentialNotFound, self).__init__(self.CUSTOM_ERROR_MESSAGE.format(task_id, reason))
        self._task_id = task_id

    @property
    def task_id(self):
        return self._task_id


class InvalidCredential(CredentialError):
    CUSTOM_ERROR_MESSAGE = "Credential for task {} was found but is blank or expired"

    def __init__(self, task_id):
        super(InvalidCredential, self).__init__(self.CUSTOM_ERROR_MESSAGE.format(task_id))
        self._task_id = task_id

    @property
    def task_id(self):
        return self._task_id


class ProviderExecutionError(RekeyerError):
    CUSTOM_ERROR_MESSAGE = "Provider {} failed during {} error {}"

    def __init__(self, provider_type, phase, error):
        super(ProviderExecutionError, self).__init__(self.CUSTOM_ERROR_MESSAGE.format(provider_type,
                                                                                      phase,
                                                                                      str(error)))
        self._provider_type = provider_type
        self._phase = phase
        self._error = error

    @property
    def provider_type(self):
        return self._provider_type

    @property
    def phase(self):
        return self._phase

    @property
    def error(self):
        return self._error


class ConcurrencyTimeout(RekeyerError):
    CUSTOM_ERROR_MESSAGE = "Could not acquire lease on {} within {} seconds"

    def __init__(self, blob_name, waited_seconds):
        super(ConcurrencyTimeout, self).__init__(self.CUSTOM_ERROR_MESSAGE.format(blob_name,
                                                                                  waited_seconds))
        self._blob_name = blob_name

    @property
    def blob_name(self):
        return self._blob_name


class ObjectNotFound(RekeyerError, KeyError):
    CUSTOM_ERROR_MESSAGE = "{} {} not found"

    def __init__(self, kind, object_id):
        super(ObjectNotFound, self).__init__(self.CUSTOM_ERROR_MESSAGE.format(kind, object_id))
        self._kind = kind
        self._object_id = object_id

    def __str__(self):
        return self.CUSTOM_ERROR_MESSAGE.format(self._kind, self._object_id)

    @property
    def kind(self):
        return self._kind

    @property
    def object_id(self):
        return self._object_id


class DuplicateObjectId(RekeyerError, ValueError):
    CUSTOM_ERROR_MESSAGE = "{} {} already exists"

    def __init__(self, kind, object_id):
        super(DuplicateObjectId, self).__init__(self.CUSTOM_ERROR_MESSAGE.format(kind, object_id))


class InvalidTaskState(RekeyerError):
    CUSTOM_ERROR_MESSAGE = "Task {} cannot move from {} to {}"

    def __init__(self, task_id, current, requested):
        super(InvalidTaskState, self).__init__(self.CUSTOM_ERROR_MESSAGE.format(task_id,
                                                                                current,
                                                                                requested))


class SignalRejected(RekeyerError):
    """Client error raised back to an external signal caller."""


class MessageVerificationError(RekeyerError):
    CUSTOM_ERROR_MESSAGE = "Agent message from {} to {} failed signature verification"

    def __init__(self, originator, target):
        super(MessageVerificationError, self).__init__(self.CUSTOM_ERROR_MESSAGE.format(originator,
                                                                                        target))


class PayloadCorrupted(RekeyerError):
    CUSTOM_ERROR_MESSAGE = "Stored payload {} failed its crc32c check"

    def __init__(self, name):
        super(PayloadCorrupted, self).__init__(self.CUSTOM_ERROR_MESSAGE.format(name))
