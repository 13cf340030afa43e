# -*- coding: utf-8 -*-
"""
Entry point for callers that want a secret rotated now, e.g. an application that noticed its
credential stopped working.

The caller presents the secret id and the secret's nonce and gets back

0 - nothing to do, the secret is not close enough to expiry
1 - the secret was rotated before the call returned
2 - a rotation is running (or was started and did not finish in time), ask again shortly
"""

import hmac
import logging
import threading

from gcp_secret_rekeyer.exceptions import SignalRejected
from gcp_secret_rekeyer.models import ConfirmationStrategy

RETURN_NO_CHANGE = 0
RETURN_CHANGE_OCCURRED = 1
RETURN_RETRY_SHORTLY = 2


class ExternalSignalHandler:

    def __init__(self, service, timeout_seconds=None):
        self._service = service
        self._timeout_seconds = timeout_seconds

    @property
    def timeout_seconds(self):
        if self._timeout_seconds is not None:
            return self._timeout_seconds
        return self._service.config.external_signal_timeout_seconds

    def _check(self, secret_id, nonce):
        secret = self._service.secrets.get_one(secret_id)
        if secret is None:
            raise SignalRejected("Invalid managed secret id")
        if ConfirmationStrategy.EXTERNAL_SIGNAL not in secret.confirmation_strategies:
            raise SignalRejected("This managed secret cannot be used with external signals")
        if not secret.nonce or not hmac.compare_digest(str(nonce).encode("utf-8"),
                                                       secret.nonce.encode("utf-8")):
            raise SignalRejected("Nonce does not match")
        return secret

    def _execute(self, secret, outcome):
        try:
            task = self._service.create_task(secret,
                                             confirmation_type=ConfirmationStrategy.EXTERNAL_SIGNAL,
                                             expiry=secret.expiry)
            outcome["task"] = self._service.execute_task(task.object_id)
        except Exception as e:
            logging.getLogger(__name__).exception(f"External signal rotation of {secret.object_id}")
            outcome["error"] = e

    def signal(self, secret_id, nonce):
        """Handles one external signal.

        Returns:
            int: 0, 1 or 2 as described in the module documentation.

        Raises:
            SignalRejected: unknown secret, wrong nonce or a secret that does not accept
                external signals.
        """
        logging.getLogger(__name__).info(f"External signal for managed secret {secret_id}")
        secret = self._check(secret_id, nonce)

        in_progress = self._service.tasks.get(
            lambda t: t.managed_secret_id == secret.object_id and t.in_progress)
        if in_progress:
            return RETURN_RETRY_SHORTLY

        now = self._service.clock()
        lead_time = self._service.config.external_signal_rekeyable_lead_time
        if secret.is_valid(now) and secret.time_remaining(now) > lead_time:
            return RETURN_NO_CHANGE

        outcome = {}
        t = threading.Thread(target=self._execute, name=f"external_signal_{secret.object_id}",
                             args=[secret, outcome])
        t.daemon = True
        t.start()
        t.join(self.timeout_seconds)
        if t.is_alive():
            logging.getLogger(__name__).info(f"Rotation of {secret.object_id} exceeded "
                                             f"{self.timeout_seconds} seconds, still running")
            return RETURN_RETRY_SHORTLY
        task = outcome.get("task")
        if task is not None and task.completed:
            return RETURN_CHANGE_OCCURRED
        return RETURN_RETRY_SHORTLY
