# -*- coding: utf-8 -*-
"""
Datastore keeping each entity type as one json array in a Google Cloud Storage object.

Several executors can work on the same bucket. Writers coordinate with an advisory lease kept
in the object's custom metadata

{
    "rekeyer_lease_time": "iso-8601",   # when the lease was taken
    "rekeyer_lease_owner": "string"     # instance id plus a token unique to this lease
}

A lease older than ``lease_abandon_seconds`` is treated as abandoned. Taking the lease is a
metadata patch guarded by generation and metageneration preconditions so two writers racing for
an empty lease cannot both win. Readers never take the lease.
"""

import json
import logging
import random
import threading
import time
import uuid

import google.auth
from google.api_core.exceptions import PreconditionFailed
from google.cloud import storage

from gcp_secret_rekeyer.config import RekeyerConfiguration
from gcp_secret_rekeyer.exceptions import ConcurrencyTimeout, DuplicateObjectId, ObjectNotFound
from gcp_secret_rekeyer.models import _parse_time, utcnow

LEASE_TIME_KEY = "rekeyer_lease_time"
LEASE_OWNER_KEY = "rekeyer_lease_owner"


class LeasedBlobDataStore:
    """Stores ``model_cls`` instances in one blob.

    Args:
        model_cls: a model class with ``to_dict``, ``from_dict``, ``object_id`` and ``KIND``.
        bucket (google.cloud.storage.Bucket or str): bucket object or bucket name.
        blob_name (str, optional): defaults to ``<KIND>.json``.
        config (RekeyerConfiguration, optional): lease policy and instance id.
        clock (callable, optional): returns the current aware datetime.
        jitter (callable, optional): ``jitter(low, high)`` returns seconds to back off.
        sleep (callable, optional): ``sleep(seconds)``.
        _credentials_callback (callable, optional): A function that returns a
            tuple of (credentials, project_id). Only used when ``bucket`` is a name.
    """

    def __init__(self, model_cls, bucket, blob_name=None, config=None, clock=utcnow,
                 jitter=random.uniform, sleep=time.sleep, _credentials_callback=None):
        self._model_cls = model_cls
        self._bucket = bucket
        self._blob_name = blob_name or f"{model_cls.KIND}.json"
        self._config = config or RekeyerConfiguration()
        self._clock = clock
        self._jitter = jitter
        self._sleep = sleep
        self._credentials_callback = _credentials_callback
        self.ns = threading.local()

    @property
    def blob_name(self):
        return self._blob_name

    @property
    def kind(self):
        return self._model_cls.KIND

    @property
    def bucket(self):
        if not isinstance(self._bucket, str):
            return self._bucket
        if not hasattr(self.ns, "bucket"):
            if self._credentials_callback is not None:
                _credentials, _project_id = self._credentials_callback()
            else:
                _credentials, _project_id = google.auth.default()
            client = storage.Client(project=_project_id, credentials=_credentials)
            self.ns.bucket = client.bucket(self._bucket)
        return self.ns.bucket

    def _blob(self):
        blob = self.bucket.get_blob(self._blob_name)
        if blob is not None:
            return blob
        blob = self.bucket.blob(self._blob_name)
        try:
            blob.upload_from_string("[]", content_type="application/json",
                                    if_generation_match=0)
            logging.getLogger(__name__).info(f"Created empty collection {self._blob_name}")
        except PreconditionFailed:
            # another writer created it first
            pass
        blob.reload()
        return blob

    def _read(self, blob=None):
        blob = blob or self.bucket.get_blob(self._blob_name)
        if blob is None:
            return []
        raw = blob.download_as_bytes()
        if not raw:
            return []
        return [self._model_cls.from_dict(item) for item in json.loads(raw.decode("utf-8"))]

    def _write(self, blob, items):
        data = json.dumps([item.to_dict() for item in items])
        blob.upload_from_string(data, content_type="application/json")

    def _lease_is_free(self, metadata, now):
        leased_at = metadata.get(LEASE_TIME_KEY)
        if not leased_at:
            return True
        age = (now - _parse_time(leased_at)).total_seconds()
        return age > self._config.lease_abandon_seconds

    def _acquire_lease(self):
        started = self._clock()
        owner = f"{self._config.instance_id}:{uuid.uuid4()}"
        while True:
            blob = self._blob()
            now = self._clock()
            if self._lease_is_free(blob.metadata or {}, now):
                blob.metadata = {LEASE_TIME_KEY: now.isoformat(), LEASE_OWNER_KEY: owner}
                try:
                    blob.patch(if_generation_match=blob.generation,
                               if_metageneration_match=blob.metageneration)
                    return blob, owner
                except PreconditionFailed:
                    logging.getLogger(__name__).debug(f"Lost lease race on {self._blob_name}")
            waited = (self._clock() - started).total_seconds()
            if waited >= self._config.lease_max_wait_seconds:
                raise ConcurrencyTimeout(self._blob_name, waited)
            self._sleep(self._jitter(self._config.lease_backoff_min_seconds,
                                     self._config.lease_backoff_max_seconds))

    def _release_lease(self, blob, owner):
        blob.reload()
        metadata = blob.metadata or {}
        if metadata.get(LEASE_OWNER_KEY) != owner:
            logging.getLogger(__name__).warning(f"Lease on {self._blob_name} was taken over "
                                                f"by {metadata.get(LEASE_OWNER_KEY)}")
            return
        blob.metadata = {LEASE_TIME_KEY: None, LEASE_OWNER_KEY: None}
        blob.patch()

    def _mutate_collection(self, fn):
        """Runs ``fn(items)`` under the lease and writes ``items`` back afterwards."""
        blob, owner = self._acquire_lease()
        try:
            items = self._read(blob)
            result = fn(items)
            self._write(blob, items)
            return result
        finally:
            try:
                self._release_lease(blob, owner)
            except Exception:
                # a lease left behind is taken over after lease_abandon_seconds
                logging.getLogger(__name__).exception(f"Releasing lease on {self._blob_name}")

    @staticmethod
    def _index_of(items, object_id):
        for index, item in enumerate(items):
            if str(item.object_id) == str(object_id):
                return index
        return None

    def contains_id(self, object_id):
        return self._index_of(self._read(), object_id) is not None

    def get(self, predicate=None):
        items = self._read()
        if predicate is None:
            return items
        return [item for item in items if predicate(item)]

    def get_one(self, object_id=None, predicate=None):
        """Returns the first matching entity or None."""
        for item in self._read():
            if object_id is not None and str(item.object_id) != str(object_id):
                continue
            if predicate is not None and not predicate(item):
                continue
            return item
        return None

    def require(self, object_id):
        item = self.get_one(object_id)
        if item is None:
            raise ObjectNotFound(self.kind, object_id)
        return item

    def create(self, model):
        def _create(items):
            if self._index_of(items, model.object_id) is not None:
                raise DuplicateObjectId(self.kind, model.object_id)
            items.append(model)
            return model
        return self._mutate_collection(_create)

    def update(self, model):
        def _update(items):
            index = self._index_of(items, model.object_id)
            if index is None:
                raise ObjectNotFound(self.kind, model.object_id)
            items[index] = model
            return model
        return self._mutate_collection(_update)

    def delete(self, object_id):
        def _delete(items):
            index = self._index_of(items, object_id)
            if index is None:
                raise ObjectNotFound(self.kind, object_id)
            return items.pop(index)
        return self._mutate_collection(_delete)

    def mutate(self, object_id, fn):
        """Read-modify-write of one entity inside a single lease.

        ``fn`` receives the stored entity and returns the entity to store (or None to store
        the one it was given after changing it in place).
        """
        def _mutate(items):
            index = self._index_of(items, object_id)
            if index is None:
                raise ObjectNotFound(self.kind, object_id)
            changed = fn(items[index])
            if changed is not None:
                items[index] = changed
            return items[index]
        return self._mutate_collection(_mutate)
