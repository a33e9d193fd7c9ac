# Copyright (c) Syntropy Systems
"""Tests for experiment and trial models."""

from datetime import timedelta

import pytest
from conftest import T0, make_experiment, make_trial
from pydantic import ValidationError

from knobs.errors import InvalidAssignmentError
from knobs.models.cluster import LabelSelector
from knobs.models.experiment import Experiment, PatchTemplate
from knobs.models.trial import Trial, TrialCondition, TrialConditionType


def condition(kind: TrialConditionType, status: str = "True", offset: int = 0) -> TrialCondition:
    at = T0 + timedelta(seconds=offset)
    return TrialCondition.model_validate(
        {"type": kind, "status": status, "lastProbeTime": at, "lastTransitionTime": at}
    )


class TestExperimentValidation:
    """Tests for experiment invariants."""

    def test_min_greater_than_max_rejected(self) -> None:
        with pytest.raises(ValidationError, match="greater than max"):
            make_experiment(parameters=[{"name": "replicas", "min": 5, "max": 1}])

    def test_duplicate_parameter_names_rejected(self) -> None:
        with pytest.raises(ValidationError, match="Duplicate parameter names: cpu"):
            make_experiment(
                parameters=[
                    {"name": "cpu", "min": 1, "max": 2},
                    {"name": "cpu", "min": 1, "max": 4},
                ]
            )

    def test_duplicate_metric_names_rejected(self) -> None:
        with pytest.raises(ValidationError, match="Duplicate metric names"):
            make_experiment(
                metrics=[
                    {"name": "latency", "query": "1"},
                    {"name": "latency", "query": "2"},
                ]
            )

    def test_constraint_must_reference_known_parameters(self) -> None:
        with pytest.raises(ValidationError, match="unknown parameter 'memory'"):
            make_experiment(
                constraints=[
                    {"name": "c", "order": {"lowerParameter": "replicas", "upperParameter": "memory"}}
                ]
            )

    def test_constraint_needs_exactly_one_kind(self) -> None:
        with pytest.raises(ValidationError, match="exactly one"):
            make_experiment(constraints=[{"name": "empty"}])

    def test_patch_template_needs_name_or_selector(self) -> None:
        with pytest.raises(ValidationError, match="name or a selector"):
            PatchTemplate.model_validate({"patch": "{}", "targetRef": {"kind": "Deployment"}})

    def test_camel_case_and_snake_case_both_accepted(self) -> None:
        by_alias = PatchTemplate.model_validate(
            {"patch": "{}", "targetRef": {"kind": "Deployment", "name": "web"}}
        )
        by_name = PatchTemplate.model_validate(
            {"patch": "{}", "target_ref": {"kind": "Deployment", "name": "web"}}
        )
        assert by_alias == by_name

    def test_parallelism_defaults_to_replicas(self) -> None:
        assert make_experiment(replicas=3).effective_parallelism == 3
        assert make_experiment(replicas=3, parallelism=1).effective_parallelism == 1


class TestCheckAssignments:
    """Tests for validating assignments against the search space."""

    @pytest.fixture
    def constrained(self) -> Experiment:
        return make_experiment(
            parameters=[
                {"name": "min_replicas", "min": 1, "max": 10},
                {"name": "max_replicas", "min": 1, "max": 10},
                {"name": "cpu", "min": 100, "max": 1000},
            ],
            constraints=[
                {
                    "name": "ordered",
                    "order": {"lowerParameter": "min_replicas", "upperParameter": "max_replicas"},
                },
                {
                    "name": "budget",
                    "sum": {
                        "bound": 2000,
                        "isUpperBound": True,
                        "parameters": [{"name": "cpu", "weight": 1}, {"name": "max_replicas", "weight": 100}],
                    },
                },
            ],
        )

    def test_valid_assignment(self, constrained: Experiment) -> None:
        constrained.check_assignments({"min_replicas": 2, "max_replicas": 5, "cpu": 500})

    def test_missing_parameter(self, constrained: Experiment) -> None:
        with pytest.raises(InvalidAssignmentError, match="Missing assignments for: cpu"):
            constrained.check_assignments({"min_replicas": 1, "max_replicas": 2})

    def test_unknown_parameter(self, constrained: Experiment) -> None:
        with pytest.raises(InvalidAssignmentError, match="Unknown parameters: memory"):
            constrained.check_assignments(
                {"min_replicas": 1, "max_replicas": 2, "cpu": 100, "memory": 1}
            )

    def test_out_of_bounds(self, constrained: Experiment) -> None:
        with pytest.raises(InvalidAssignmentError, match=r"outside \[100, 1000\]"):
            constrained.check_assignments({"min_replicas": 1, "max_replicas": 2, "cpu": 50})

    def test_order_constraint(self, constrained: Experiment) -> None:
        with pytest.raises(InvalidAssignmentError, match="ordered"):
            constrained.check_assignments({"min_replicas": 6, "max_replicas": 2, "cpu": 100})

    def test_sum_constraint(self, constrained: Experiment) -> None:
        with pytest.raises(InvalidAssignmentError, match="budget"):
            constrained.check_assignments({"min_replicas": 1, "max_replicas": 10, "cpu": 1001})

    def test_lower_bound_sum_constraint(self) -> None:
        experiment = make_experiment(
            constraints=[
                {"sum": {"bound": 2, "parameters": [{"name": "replicas"}]}},
            ]
        )
        experiment.check_assignments({"replicas": 2})
        with pytest.raises(InvalidAssignmentError):
            experiment.check_assignments({"replicas": 1})


class TestTrial:
    """Tests for trial helpers."""

    def test_clone_is_independent(self, experiment: Experiment) -> None:
        trial = make_trial(experiment)
        copy = trial.clone()
        copy.spec.assignments[0].value = 1
        copy.labels["extra"] = "yes"

        assert trial.spec.assignments[0].value == 3
        assert "extra" not in trial.labels

    def test_most_recent_condition_wins(self) -> None:
        trial = Trial(name="t")
        trial.status.conditions = [
            condition(TrialConditionType.FAILED, "False", 0),
            condition(TrialConditionType.FAILED, "True", 5),
        ]
        assert trial.is_finished()
        assert trial.is_failed()

    def test_unfinished_trial_has_no_expiry(self) -> None:
        trial = Trial(name="t")
        trial.spec.ttl_seconds_after_finished = 60
        assert trial.expires_at() is None

    def test_expiry_uses_failure_ttl(self) -> None:
        trial = Trial(name="t")
        trial.spec.ttl_seconds_after_finished = 60
        trial.spec.ttl_seconds_after_failure = 600
        trial.status.conditions = [condition(TrialConditionType.FAILED, offset=10)]

        assert trial.expires_at() == T0 + timedelta(seconds=610)

    def test_expiry_uses_finished_ttl(self) -> None:
        trial = Trial(name="t")
        trial.spec.ttl_seconds_after_finished = 60
        trial.status.conditions = [condition(TrialConditionType.COMPLETE)]

        assert trial.expires_at() == T0 + timedelta(seconds=60)

    def test_target_namespace_falls_back_to_trial_namespace(self) -> None:
        trial = Trial(name="t", namespace="team-a")
        assert trial.target_namespace() == "team-a"
        trial.spec.target_namespace = "sandbox"
        assert trial.target_namespace() == "sandbox"


class TestLabelSelector:
    """Tests for label selector matching."""

    def test_empty_selector_matches_everything(self) -> None:
        assert LabelSelector().matches({"app": "web"})

    def test_match_labels_and_expressions(self) -> None:
        selector = LabelSelector.model_validate(
            {
                "matchLabels": {"app": "web"},
                "matchExpressions": [
                    {"key": "tier", "operator": "In", "values": ["frontend", "edge"]},
                    {"key": "canary", "operator": "DoesNotExist"},
                ],
            }
        )
        assert selector.matches({"app": "web", "tier": "edge"})
        assert not selector.matches({"app": "web", "tier": "backend"})
        assert not selector.matches({"app": "web", "tier": "edge", "canary": "1"})
        assert not selector.matches({"app": "api", "tier": "edge"})
