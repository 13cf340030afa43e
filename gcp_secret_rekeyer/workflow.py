# -*- coding: utf-8 -*-
"""
Rotation workflow engine.

Runs the rotation protocol against a set of provider instances. Phases run strictly in
order and every provider call is recorded as one ``WorkflowAction`` in a
``WorkflowActionCollection`` (an attempt).

sanity test            - read only checks on every provider that offers them
generate temporary     - read the inactive key of every provider that has one
distribute temporary   - push temporary values to consumers and swap them live
rekey                  - regenerate the primary credential, the only mutating call against it
commit                 - push rekeyed values to consumers and swap them live
cleanup                - scramble the key slot no longer in use

Nothing is rolled back. When a call fails every action that has not run yet is recorded as
not run and the attempt is sealed as failed, so the action log always tells an operator how far
the rotation got.
"""

import logging

from gcp_secret_rekeyer.exceptions import DuplicateHint, ProviderExecutionError
from gcp_secret_rekeyer.models import (ActionStatus, Phase, WorkflowAction,
                                       WorkflowActionCollection, utcnow)
from gcp_secret_rekeyer.providers import Capability, RegeneratedSecret


class WorkflowActionLogger(logging.LoggerAdapter):
    """Logger handed to a provider while one of its actions runs.

    Everything logged is kept on the action so it is persisted with the attempt, as well as
    being passed on to the underlying logger.
    """

    def __init__(self, logger, action):
        super(WorkflowActionLogger, self).__init__(logger, {"workflow_action": action.name})
        self.action = action

    def process(self, msg, kwargs):
        return f"[{self.action.phase.value}:{self.action.provider_type}] {msg}", kwargs

    def log(self, level, msg, *args, **kwargs):
        text = msg % args if args else str(msg)
        self.action.log.append(f"{utcnow().isoformat()} {logging.getLevelName(level)} {text}")
        super(WorkflowActionLogger, self).log(level, msg, *args, **kwargs)


class _PlannedAction:
    def __init__(self, action, provider, capability, call):
        self.action = action
        self.provider = provider
        self.capability = capability
        self.call = call


def validate_user_hints(batch_name, hints):
    """Checks that a batch of more than one secret can be told apart.

    Raises:
        DuplicateHint: a hint is empty or used more than once.
    """
    hints = list(hints)
    if len(hints) <= 1:
        return
    if any(not h for h in hints) or len(set(hints)) != len(hints):
        raise DuplicateHint(batch_name, hints)


class RotationWorkflowEngine:
    """Plans and runs one attempt of the rotation protocol.

    Attributes:
        providers (list of Provider): rekeyable providers first, then application lifecycle
            providers. Instances must be fresh for this execution.
        max_action_attempts (int): how many times a single provider call is tried.
        clock (callable): returns the current aware datetime.
    """

    def __init__(self, rekeyable_providers, application_providers=(), max_action_attempts=1,
                 clock=utcnow, logger=None):
        self._providers = list(rekeyable_providers) + list(application_providers)
        self._max_action_attempts = max(1, int(max_action_attempts))
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)

    @property
    def providers(self):
        return self._providers

    @property
    def max_action_attempts(self):
        return self._max_action_attempts

    def _with(self, capability):
        return [p for p in self._providers if p.supports(capability)]

    @staticmethod
    def _unique_resources(providers):
        seen = set()
        unique = []
        for provider in providers:
            if provider.resource_identifier not in seen:
                seen.add(provider.resource_identifier)
                unique.append(provider)
        return unique

    def plan(self, valid_period, collection):
        """Adds every action this set of providers needs, in execution order."""
        planned = []
        step = max((a.execution_order for a in collection.actions), default=0)

        def group(phase, name, capability, providers, make_call):
            nonlocal step
            if not providers:
                return
            step += 1
            for provider in providers:
                action = collection.add(WorkflowAction(phase=phase,
                                                       name=name,
                                                       provider_type=provider.provider_type,
                                                       resource_id=provider.resource_identifier,
                                                       execution_order=step))
                planned.append(_PlannedAction(action, provider, capability, make_call(provider)))

        group(Phase.SANITY_TEST, "Sanity Test", Capability.RUN_SANITY_TESTS,
              self._with(Capability.RUN_SANITY_TESTS),
              lambda p: p.run_sanity_tests)

        group(Phase.GENERATE_TEMPORARY, "Generate Temporary Secrets",
              Capability.GENERATE_TEMPORARY_SECRET_VALUE,
              self._with(Capability.GENERATE_TEMPORARY_SECRET_VALUE),
              lambda p: p.generate_temporary_secret_value)

        def distribute_temporary(provider):
            def call():
                temporary = self._results(collection, Phase.GENERATE_TEMPORARY)
                if not temporary:
                    provider.logger.info("No temporary secrets were generated, nothing to "
                                         "distribute")
                    return False
                validate_user_hints("temporary secrets", [s.user_hint for s in temporary])
                return provider.distribute_temporary_secret_values(temporary)
            return call

        group(Phase.DISTRIBUTE_TEMPORARY, "Distribute Temporary Secrets",
              Capability.DISTRIBUTE_TEMPORARY_SECRET_VALUES,
              self._with(Capability.DISTRIBUTE_TEMPORARY_SECRET_VALUES),
              distribute_temporary)

        group(Phase.DISTRIBUTE_TEMPORARY, "Perform Unified Commit",
              Capability.UNIFIED_COMMIT_FOR_TEMPORARY_SECRET_VALUES,
              self._unique_resources(
                  self._with(Capability.UNIFIED_COMMIT_FOR_TEMPORARY_SECRET_VALUES)),
              lambda p: p.unified_commit_for_temporary_secret_values)

        group(Phase.REKEY, "Rekey Object", Capability.REKEY,
              self._with(Capability.REKEY),
              lambda p: lambda: p.rekey(valid_period))

        def distribute_long_term(provider):
            def call():
                rekeyed = self._results(collection, Phase.REKEY)
                validate_user_hints("rekeyed secrets", [s.user_hint for s in rekeyed])
                return provider.distribute_long_term_secret_values(rekeyed)
            return call

        group(Phase.COMMIT, "Distribute Rekeyed Secrets",
              Capability.DISTRIBUTE_LONG_TERM_SECRET_VALUES,
              self._with(Capability.DISTRIBUTE_LONG_TERM_SECRET_VALUES),
              distribute_long_term)

        group(Phase.COMMIT, "Perform Unified Commit on Rekeyed Secrets",
              Capability.UNIFIED_COMMIT,
              self._unique_resources(self._with(Capability.UNIFIED_COMMIT)),
              lambda p: p.unified_commit)

        group(Phase.CLEANUP, "Cleanup", Capability.CLEANUP,
              [p for p in self._with(Capability.CLEANUP) if not p.skip_cleanup],
              lambda p: p.cleanup)

        return planned

    @staticmethod
    def _results(collection, phase):
        return [a.result for a in collection.actions_for(phase)
                if a.has_succeeded and a.result is not None]

    def _validate(self, collection):
        """Checks declared user hints of every secret producing provider before anything runs."""
        action = collection.add(WorkflowAction(phase=Phase.VALIDATE,
                                               name="Validate Secret Batches"))
        action.start = self._clock()
        try:
            validate_user_hints("rekeyed secrets",
                                [p.user_hint for p in self._with(Capability.REKEY)])
            validate_user_hints("temporary secrets",
                                [p.user_hint for p in
                                 self._with(Capability.GENERATE_TEMPORARY_SECRET_VALUE)])
        except DuplicateHint as e:
            action.status = ActionStatus.FAILED
            action.error = str(e)
            action.error_type = type(e).__name__
            action.log.append(f"{self._clock().isoformat()} ERROR {e}")
            return False
        finally:
            action.end = self._clock()
        action.status = ActionStatus.SUCCEEDED
        return True

    def _publish(self, collection, progress):
        if progress is None:
            return
        try:
            progress(collection.to_dict())
        except Exception:
            self._logger.exception(f"Publishing progress for attempt {collection.attempt_id}")

    def _run_action(self, planned):
        action = planned.action
        provider = planned.provider
        provider.logger = WorkflowActionLogger(self._logger, action)
        action.start = self._clock()
        try:
            for attempt in range(1, self._max_action_attempts + 1):
                try:
                    action.result = planned.call()
                    if isinstance(action.result, RegeneratedSecret) and not action.result.user_hint:
                        action.result.user_hint = provider.user_hint
                    action.status = ActionStatus.SUCCEEDED
                    return True
                except Exception as e:
                    error = ProviderExecutionError(provider.provider_type, action.phase.value, e)
                    provider.logger.exception(f"Attempt {attempt} of "
                                              f"{self._max_action_attempts} failed")
                    action.error = str(error)
                    action.error_type = type(e).__name__
            action.status = ActionStatus.FAILED
            return False
        finally:
            action.end = self._clock()

    def execute(self, valid_period, collection=None, deadline=None, progress=None):
        """Runs one attempt.

        Provider failures are captured in the returned collection, only faults in the engine
        itself propagate.

        Args:
            valid_period (timedelta): requested validity of the regenerated secrets.
            collection (WorkflowActionCollection, optional): attempt record to fill in.
            deadline (datetime, optional): no further action starts after this time.
            progress (callable, optional): receives a dict snapshot of the attempt after every
                action.

        Returns:
            WorkflowActionCollection: the sealed attempt.
        """
        collection = collection or WorkflowActionCollection()
        collection.attempt_started = self._clock()
        valid = self._validate(collection)
        planned = self.plan(valid_period, collection)
        collection.log(f"Planned {len(planned)} actions over {len(self._providers)} providers",
                       self._clock())

        if not valid:
            collection.log("Secret batch validation failed, no provider was called",
                           self._clock())
            collection.seal(False, self._clock())
            self._publish(collection, progress)
            return collection

        self._publish(collection, progress)
        success = True
        for item in planned:
            now = self._clock()
            if deadline is not None and now >= deadline:
                collection.outer_exception = (f"Attempt exceeded its deadline "
                                              f"{deadline.isoformat()}")
                collection.log(collection.outer_exception, now)
                success = False
                break
            if item.action.phase == Phase.CLEANUP and not all(
                    a.has_succeeded for a in collection.actions_for(Phase.COMMIT)):
                collection.log("Commit did not succeed, skipping cleanup", now)
                success = False
                break
            collection.log(f"Starting {item.action.name} on {item.action.provider_type}", now)
            ok = self._run_action(item)
            self._publish(collection, progress)
            if not ok:
                collection.log(f"{item.action.name} on {item.action.provider_type} failed, "
                               f"remaining actions will not run", self._clock())
                success = False
                break

        collection.seal(success, self._clock())
        self._publish(collection, progress)
        self._logger.info(f"Attempt {collection.attempt_id} finished: {collection.summary()}")
        return collection
