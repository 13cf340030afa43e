# -*- coding: utf-8 -*-
"""
Tests for the rotation workflow engine.
"""

import json
import logging
import unittest
from datetime import timedelta

from gcp_secret_rekeyer import *

import fakes


def setup_module():
    logging.basicConfig(level=logging.DEBUG)


def key(hint="primary", **extra):
    configuration = dict(extra, user_hint=hint) if hint is not None else dict(extra)
    return fakes.RecordingKeyProvider(serialized_configuration=as_json(configuration))


def app(slot="web", **extra):
    return fakes.RecordingAppProvider(serialized_configuration=as_json(dict(extra, slot=slot)))


def as_json(configuration):
    return json.dumps(configuration, sort_keys=True)


class TestRotationWorkflowEngine(unittest.TestCase):

    def setUp(self):
        del fakes.JOURNAL[:]

    def test_phases_run_in_order(self):
        engine = RotationWorkflowEngine([key()], [app()])
        collection = engine.execute(timedelta(days=30))

        assert fakes.journal_methods() == ["run_sanity_tests",
                                           "generate_temporary_secret_value",
                                           "distribute_temporary_secret_values",
                                           "unified_commit_for_temporary_secret_values",
                                           "rekey",
                                           "distribute_long_term_secret_values",
                                           "unified_commit",
                                           "cleanup"], f"unexpected order {fakes.JOURNAL}"
        assert collection.is_successful_attempt, collection.summary()
        assert all(a.status == ActionStatus.SUCCEEDED for a in collection.actions)
        assert collection.actions[0].phase == Phase.VALIDATE, "validation is recorded first"
        orders = [a.execution_order for a in collection.actions]
        assert orders == sorted(orders), "execution order increases through the attempt"
        rekey_entry = [e for e in fakes.JOURNAL if e[1] == "rekey"][0]
        assert rekey_entry[2] == timedelta(days=30), "the valid period is passed to rekey"

    def test_failure_stops_the_attempt(self):
        engine = RotationWorkflowEngine([key(fail_on="rekey")], [app()])
        collection = engine.execute(timedelta(days=30))

        assert "cleanup" not in fakes.journal_methods(), "cleanup must not run after a failure"
        assert "distribute_long_term_secret_values" not in fakes.journal_methods()
        assert collection.sealed and not collection.is_successful_attempt
        failed = [a for a in collection.actions if a.status == ActionStatus.FAILED]
        assert len(failed) == 1 and failed[0].phase == Phase.REKEY
        assert "rekey exploded" in failed[0].error, "the provider error is recorded"
        assert failed[0].error_type == "RuntimeError"
        not_run = [a.phase for a in collection.actions if a.status == ActionStatus.NOT_RUN]
        assert not_run == [Phase.COMMIT, Phase.COMMIT, Phase.CLEANUP], not_run
        assert "failed" in collection.summary()

    def test_cleanup_requires_commit(self):
        engine = RotationWorkflowEngine([key()], [app(fail_on="unified_commit")])
        collection = engine.execute(timedelta(days=30))

        assert fakes.journal_methods()[-1] == "unified_commit"
        assert collection.actions_for(Phase.CLEANUP)[0].status == ActionStatus.NOT_RUN

    def test_duplicate_hints_fail_before_any_provider_call(self):
        engine = RotationWorkflowEngine([key("same"), key("same")], [app()])
        collection = engine.execute(timedelta(days=30))

        assert fakes.JOURNAL == [], f"no provider may be called, got {fakes.JOURNAL}"
        validate = collection.actions_for(Phase.VALIDATE)[0]
        assert validate.status == ActionStatus.FAILED
        assert validate.error_type == "DuplicateHint"
        assert all(a.status == ActionStatus.NOT_RUN for a in collection.actions[1:])
        assert not collection.is_successful_attempt

    def test_missing_hint_in_a_batch_is_rejected(self):
        engine = RotationWorkflowEngine([key("primary"), key(None)], [app()])
        collection = engine.execute(timedelta(days=30))

        assert fakes.JOURNAL == []
        assert not collection.is_successful_attempt

    def test_single_secret_needs_no_hint(self):
        engine = RotationWorkflowEngine([key(None)], [app()])
        collection = engine.execute(timedelta(days=30))

        assert collection.is_successful_attempt, collection.summary()

    def test_several_rekeyed_secrets_reach_the_application(self):
        engine = RotationWorkflowEngine([key("primary"), key("secondary")], [app()])
        engine.execute(timedelta(days=30))

        distributed = [e for e in fakes.JOURNAL if e[1] == "distribute_long_term_secret_values"]
        assert distributed[0][2] == ["primary", "secondary"], distributed

    def test_unified_commit_runs_once_per_resource(self):
        engine = RotationWorkflowEngine([key()], [app("web"), app("web"), app("worker")])
        collection = engine.execute(timedelta(days=30))

        assert fakes.journal_methods().count("distribute_long_term_secret_values") == 3
        assert fakes.journal_methods().count("unified_commit") == 2, \
            "identical resources commit once"
        assert fakes.journal_methods().count("unified_commit_for_temporary_secret_values") == 2
        assert collection.is_successful_attempt

    def test_skip_cleanup(self):
        engine = RotationWorkflowEngine([key(skip_cleanup=True)], [app()])
        collection = engine.execute(timedelta(days=30))

        assert "cleanup" not in fakes.journal_methods()
        assert collection.actions_for(Phase.CLEANUP) == []
        assert collection.is_successful_attempt

    def test_temporary_distribution_without_temporary_secrets(self):
        engine = RotationWorkflowEngine([fakes.RekeyOnlyProvider()], [app()])
        collection = engine.execute(timedelta(days=30))

        assert "distribute_temporary_secret_values" not in fakes.journal_methods(), \
            "nothing to distribute means the provider is not called"
        distribute = collection.actions_for(Phase.DISTRIBUTE_TEMPORARY)[0]
        assert distribute.status == ActionStatus.SUCCEEDED
        assert any("No temporary secrets" in line for line in distribute.log)
        assert collection.is_successful_attempt

    def test_provider_logging_is_kept_on_the_action(self):
        engine = RotationWorkflowEngine([key()], [app()])
        collection = engine.execute(timedelta(days=30))

        sanity = collection.actions_for(Phase.SANITY_TEST)[0]
        assert any("INFO key is reachable" in line for line in sanity.log), sanity.log
        distribute = [a for a in collection.actions_for(Phase.COMMIT)
                      if a.name == "Distribute Rekeyed Secrets"][0]
        assert any("writing key-primary" in line for line in distribute.log), distribute.log

    def test_retries_a_failing_action(self):
        engine = RotationWorkflowEngine([key(fail_on="rekey", fail_times=1)], [app()],
                                        max_action_attempts=2)
        collection = engine.execute(timedelta(days=30))

        assert fakes.journal_methods().count("rekey") == 2, "rekey should be retried once"
        assert collection.is_successful_attempt, collection.summary()

    def test_deadline_stops_before_the_next_action(self):
        clock = fakes.FakeClock()
        engine = RotationWorkflowEngine([key()], [app()], clock=clock)
        collection = engine.execute(timedelta(days=30), deadline=clock() - timedelta(seconds=1))

        assert fakes.JOURNAL == [], "no action starts after the deadline"
        assert "deadline" in collection.outer_exception
        assert not collection.is_successful_attempt

    def test_progress_snapshots(self):
        snapshots = []
        engine = RotationWorkflowEngine([key()], [app()])
        engine.execute(timedelta(days=30), progress=snapshots.append)

        assert len(snapshots) >= 9, "a snapshot per action plus planning and sealing"
        assert snapshots[-1]["sealed"], "the last snapshot is the sealed attempt"
        assert "new-primary-key" not in str(snapshots), "snapshots never carry secret values"

    def test_failing_progress_callback_does_not_fail_the_attempt(self):
        def broken(snapshot):
            raise RuntimeError("progress store offline")

        engine = RotationWorkflowEngine([key()], [app()])
        collection = engine.execute(timedelta(days=30), progress=broken)

        assert collection.is_successful_attempt


class TestValidateUserHints(unittest.TestCase):

    def test_rules(self):
        from gcp_secret_rekeyer.workflow import validate_user_hints
        validate_user_hints("batch", [])
        validate_user_hints("batch", [""])
        validate_user_hints("batch", ["a", "b"])
        with self.assertRaises(DuplicateHint):
            validate_user_hints("batch", ["a", "a"])
        with self.assertRaises(DuplicateHint):
            validate_user_hints("batch", ["a", ""])
