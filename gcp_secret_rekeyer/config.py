# -*- coding: utf-8 -*-
"""Runtime configuration for the rekeying service.

Values can be set in three ways and are applied in this order

constructor        - plain keyword arguments, defaults below
environment        - ``RekeyerConfiguration.from_env()`` reads ``REKEYER_<FIELD NAME>``
storage object     - ``load_config(bucket, blob)`` reads a utf-8 json document from a
                     google cloud storage bucket whose keys are the field names

Lead times are expressed in hours, everything else in seconds.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from datetime import timedelta

import google.auth
from google.cloud import storage

ENV_PREFIX = "REKEYER_"


@dataclass
class RekeyerConfiguration:
    # hours before expiry that a task is created for automatic rekeying
    automatic_rekeyable_task_creation_lead_time_hours: int = 24 * 3
    # hours before expiry that an automatic task is actually executed
    automatic_rekeyable_just_in_time_lead_time_hours: int = 24 * 1
    # hours before expiry that administrators are asked to approve
    approval_required_lead_time_hours: int = 24 * 7
    # hours before expiry that an external signal will cause a rekeying
    external_signal_rekeyable_lead_time_hours: int = 24 * 2
    default_nonce_length: int = 64

    # how long an external signal caller waits before being told to retry
    external_signal_timeout_seconds: float = 30.0
    # upper bound on a single attempt for scheduled executions
    max_attempt_seconds: float = 60.0 * 30
    max_action_attempts: int = 1
    progress_interval_seconds: float = 15.0

    lease_abandon_seconds: float = 15.0
    lease_backoff_min_seconds: float = 0.25
    lease_backoff_max_seconds: float = 1.0
    lease_max_wait_seconds: float = 30.0

    instance_id: str = "admin-service"
    data_bucket: str = ""
    secure_storage_project: str = ""
    scan_interval_seconds: float = 120.0
    extra: dict = field(default_factory=dict)

    @property
    def automatic_rekeyable_task_creation_lead_time(self):
        return timedelta(hours=self.automatic_rekeyable_task_creation_lead_time_hours)

    @property
    def automatic_rekeyable_just_in_time_lead_time(self):
        return timedelta(hours=self.automatic_rekeyable_just_in_time_lead_time_hours)

    @property
    def approval_required_lead_time(self):
        return timedelta(hours=self.approval_required_lead_time_hours)

    @property
    def external_signal_rekeyable_lead_time(self):
        return timedelta(hours=self.external_signal_rekeyable_lead_time_hours)

    def merged(self, values):
        """Returns a copy with known keys of values applied and coerced to the field type.

        Unknown keys are kept in ``extra`` so provider specific settings can travel with the
        service configuration.
        """
        known = {f.name: f for f in fields(self) if f.name != "extra"}
        changes = {}
        extra = dict(self.extra)
        for key, value in values.items():
            if key in known:
                changes[key] = _coerce(known[key].type, value)
            else:
                extra[key] = value
        return replace(self, extra=extra, **changes)

    @classmethod
    def from_env(cls, environ=None, base=None):
        environ = os.environ if environ is None else environ
        base = base or cls()
        values = {}
        for f in fields(base):
            env_key = ENV_PREFIX + f.name.upper()
            if f.name != "extra" and env_key in environ:
                values[f.name] = environ[env_key]
        return base.merged(values)


def _coerce(type_name, value):
    # dataclass field types are strings or types depending on how the module was loaded
    type_name = getattr(type_name, "__name__", type_name)
    if type_name == "int":
        return int(value)
    if type_name == "float":
        return float(value)
    if type_name == "bool":
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    return value


def load_config(bucket, blob_name, base=None, _credentials_callback=None):
    """Loads a JSON configuration file from Google Cloud Storage.

    Args:
        bucket (str): The name of the GCS bucket.
        blob_name (str): The name of the object (file) in the bucket.
        base (RekeyerConfiguration, optional): configuration to apply the file on top of.
        _credentials_callback (callable, optional): A function that returns a
            tuple of (credentials, project_id). If not provided,
            `google.auth.default()` is used.

    Returns:
        RekeyerConfiguration: the merged configuration.
    """
    if _credentials_callback is not None:
        credentials, _project_id = _credentials_callback()
    else:
        credentials, _project_id = google.auth.default()
    client = storage.Client(project=_project_id, credentials=credentials)
    blob = client.get_bucket(bucket).get_blob(blob_name)
    values = json.loads(blob.download_as_bytes().decode("utf-8"))
    logging.getLogger(__name__).info(f"Loaded configuration gs://{bucket}/{blob_name} "
                                     f"keys {sorted(values)}")
    return (base or RekeyerConfiguration()).merged(values)
