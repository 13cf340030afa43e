# -*- coding: utf-8 -*-
"""
Short lived storage for credentials cached at approval time.

Each persisted object gets its own Secret Manager secret whose ``expire_time`` is the expiry of
the task it belongs to, so an unused credential disappears on its own. The payload is json,
encrypted with the service's cryptographic implementation when one is configured, and sent
with a crc32c checksum.

The credentials used need "roles/secretmanager.admin" on the project (create, access and
delete secrets).
"""

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod

import google.auth
import google_crc32c
from google.api_core import exceptions
from google.cloud import secretmanager

from gcp_secret_rekeyer.exceptions import ObjectNotFound, PayloadCorrupted

PERSISTED_KIND = "PersistedCredential"


class SecureStorage(ABC):

    @abstractmethod
    def persist(self, expiry, obj):
        """Stores a json serializable dict until ``expiry`` and returns its id."""

    @abstractmethod
    def retrieve(self, persisted_id):
        """Returns the stored dict.

        Raises:
            ObjectNotFound: nothing is stored under the id (destroyed or expired).
        """

    @abstractmethod
    def destroy(self, persisted_id):
        pass


def _checksum(data):
    crc32c = google_crc32c.Checksum()
    crc32c.update(data)
    return int(crc32c.hexdigest(), 16)


class SecretManagerSecureStorage(SecureStorage):

    def __init__(self, project_id=None, crypto=None, prefix="rekeyer-credential",
                 _credentials_callback=None):
        self._project_id = project_id
        self._crypto = crypto
        self._prefix = prefix
        self._credentials_callback = _credentials_callback
        self.ns = threading.local()

    @property
    def credentials(self):
        if not hasattr(self.ns, "_credentials"):
            if self._credentials_callback is not None:
                _credentials, _project_id = self._credentials_callback()
            else:
                _credentials, _project_id = google.auth.default()
            self.ns._credentials = _credentials
            self.ns._project_id = _project_id
        return self.ns._credentials

    @property
    def _client(self):
        if not hasattr(self.ns, "client"):
            self.ns.client = secretmanager.SecretManagerServiceClient(
                credentials=self.credentials
            )
        return self.ns.client

    @property
    def project_id(self):
        if self._project_id:
            return self._project_id
        if not hasattr(self.ns, "_project_id"):
            _ = self.credentials
        return self.ns._project_id

    def _secret_name(self, persisted_id):
        return f"projects/{self.project_id}/secrets/{persisted_id}"

    def persist(self, expiry, obj):
        persisted_id = f"{self._prefix}-{uuid.uuid4()}"
        secret = self._client.create_secret(
            request={
                "parent": f"projects/{self.project_id}",
                "secret_id": persisted_id,
                "secret": {
                    "replication": {"automatic": {}},
                    "expire_time": expiry,
                    "labels": {"managed-by": "gcp-secret-rekeyer"},
                },
            }
        )
        payload = json.dumps(obj).encode("utf8")
        if self._crypto is not None:
            payload = self._crypto.encrypt(payload)
        self._client.add_secret_version(
            request={
                "parent": secret.name,
                "payload": {"data": payload, "data_crc32c": _checksum(payload)},
            }
        )
        logging.getLogger(__name__).info(f"Persisted {persisted_id} until {expiry.isoformat()}")
        return persisted_id

    def retrieve(self, persisted_id):
        try:
            response = self._client.access_secret_version(
                request={"name": f"{self._secret_name(persisted_id)}/versions/latest"}
            )
        except exceptions.NotFound:
            raise ObjectNotFound(PERSISTED_KIND, persisted_id) from None
        payload = response.payload.data
        if response.payload.data_crc32c and response.payload.data_crc32c != _checksum(payload):
            raise PayloadCorrupted(persisted_id)
        if self._crypto is not None:
            payload = self._crypto.decrypt(payload)
        return json.loads(payload.decode("utf-8"))

    def destroy(self, persisted_id):
        try:
            self._client.delete_secret(request={"name": self._secret_name(persisted_id)})
        except exceptions.NotFound:
            logging.getLogger(__name__).warning(f"{persisted_id} was already gone")
            return
        logging.getLogger(__name__).info(f"Destroyed {persisted_id}")


class InMemorySecureStorage(SecureStorage):
    """Process local SecureStorage for single instance deployments and tests."""

    def __init__(self, clock=None):
        self._items = {}
        self._lock = threading.Lock()
        self._clock = clock

    def persist(self, expiry, obj):
        persisted_id = str(uuid.uuid4())
        with self._lock:
            self._items[persisted_id] = (expiry, json.dumps(obj))
        return persisted_id

    def retrieve(self, persisted_id):
        with self._lock:
            item = self._items.get(persisted_id)
        if item is None:
            raise ObjectNotFound(PERSISTED_KIND, persisted_id)
        expiry, payload = item
        if self._clock is not None and expiry is not None and self._clock() >= expiry:
            raise ObjectNotFound(PERSISTED_KIND, persisted_id)
        return json.loads(payload)

    def destroy(self, persisted_id):
        with self._lock:
            self._items.pop(persisted_id, None)

    def __contains__(self, persisted_id):
        return persisted_id in self._items

    def __len__(self):
        return len(self._items)
