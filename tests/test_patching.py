# Copyright (c) Syntropy Systems
"""Tests for patch resolution and application."""

import json

import pytest
from conftest import RecordingSleep, make_experiment, make_trial

from knobs.cluster import InMemoryCluster
from knobs.errors import AttemptsExhaustedError, PermanentError, RetryableError, SelectorError, TemplateError
from knobs.models.cluster import ClusterObject, ObjectReference
from knobs.models.experiment import PatchTemplate
from knobs.models.trial import PatchType
from knobs.patching import PatchResolver, render_patch

WEB = ObjectReference(kind="Deployment", namespace="default", name="web")


def web_cluster() -> InMemoryCluster:
    return InMemoryCluster(
        [
            ClusterObject(kind="Deployment", namespace="default", name="web", labels={"app": "web"}),
            ClusterObject(kind="Deployment", namespace="default", name="worker", labels={"app": "web"}),
            ClusterObject(kind="Deployment", namespace="default", name="db", labels={"app": "db"}),
        ]
    )


def template(patch: str, **extra: object) -> PatchTemplate:
    body: dict[str, object] = {"patch": patch, "targetRef": {"kind": "Deployment", "name": "web"}}
    body.update(extra)
    return PatchTemplate.model_validate(body)


class TestRenderPatch:
    """Tests for rendering a template to patch bytes."""

    def test_yaml_template_renders_to_compact_json(self) -> None:
        data = render_patch(template("spec:\n  replicas: {{ replicas }}\n"), {"replicas": 3})
        assert data == b'{"spec":{"replicas":3}}'

    def test_json_patch_must_be_a_list(self) -> None:
        with pytest.raises(TemplateError, match="list of operations"):
            render_patch(template('{"spec": {}}', type="json"), {})

    def test_merge_patch_must_be_an_object(self) -> None:
        with pytest.raises(TemplateError, match="must evaluate to an object"):
            render_patch(template("- 1\n- 2\n", type="merge"), {})

    def test_invalid_yaml(self) -> None:
        with pytest.raises(TemplateError, match="not valid YAML"):
            render_patch(template("spec: [unclosed"), {})


class TestResolve:
    """Tests for turning templates into patch operations."""

    @pytest.mark.asyncio
    async def test_named_target(self, no_sleep: RecordingSleep) -> None:
        experiment = make_experiment(patches=[{"patch": "spec:\n  replicas: {{ replicas }}", "targetRef": {"kind": "Deployment", "name": "web"}}])
        trial = make_trial(experiment)
        resolver = PatchResolver(web_cluster(), attempts=3, sleep=no_sleep)

        ops = await resolver.resolve(experiment.spec.patches, trial)

        assert len(ops) == 1
        assert ops[0].target_ref == WEB
        assert ops[0].attempts_remaining == 3
        assert json.loads(ops[0].data) == {"spec": {"replicas": 3}}
        assert trial.spec.patch_operations == ops

    @pytest.mark.asyncio
    async def test_selector_fans_out_to_every_match(self, no_sleep: RecordingSleep) -> None:
        experiment = make_experiment(
            patches=[
                {
                    "patch": "spec:\n  replicas: {{ replicas }}",
                    "targetRef": {"kind": "Deployment"},
                    "selector": {"matchLabels": {"app": "web"}},
                }
            ]
        )
        trial = make_trial(experiment)

        ops = await PatchResolver(web_cluster(), sleep=no_sleep).resolve(experiment.spec.patches, trial)

        assert [op.target_ref.name for op in ops] == ["web", "worker"]
        assert [op.template_index for op in ops] == [0, 0]

    @pytest.mark.asyncio
    async def test_selector_matching_nothing(self, no_sleep: RecordingSleep) -> None:
        experiment = make_experiment(
            patches=[
                {
                    "patch": "{}",
                    "targetRef": {"kind": "StatefulSet"},
                    "selector": {"matchLabels": {"app": "web"}},
                }
            ]
        )
        trial = make_trial(experiment)

        with pytest.raises(SelectorError, match="matched no StatefulSet"):
            await PatchResolver(web_cluster(), sleep=no_sleep).resolve(experiment.spec.patches, trial)

        assert [op.attempts_remaining for op in trial.spec.patch_operations] == [0]

    @pytest.mark.asyncio
    async def test_unassigned_parameter_fails_without_consulting_cluster(
        self, no_sleep: RecordingSleep
    ) -> None:
        experiment = make_experiment(
            patches=[
                {
                    "patch": "spec:\n  cpu: {{ cpu }}",
                    "targetRef": {"kind": "Deployment"},
                    "selector": {"matchLabels": {"app": "web"}},
                }
            ]
        )
        trial = make_trial(experiment)
        cluster = web_cluster()
        # Any cluster call would raise
        for method in ("get", "list", "apply_patch"):
            cluster.inject_failure(method, AssertionError(f"{method} called"), times=5)

        with pytest.raises(TemplateError, match="cpu"):
            await PatchResolver(cluster, sleep=no_sleep).resolve(experiment.spec.patches, trial)

        assert len(trial.spec.patch_operations) == 1
        assert trial.spec.patch_operations[0].attempts_remaining == 0
        assert cluster.applied == []

    @pytest.mark.asyncio
    async def test_target_namespace_defaults_to_trial(self, no_sleep: RecordingSleep) -> None:
        experiment = make_experiment(patches=[{"patch": "{}", "targetRef": {"kind": "Deployment", "name": "web"}}])
        trial = make_trial(experiment)
        trial.spec.target_namespace = "sandbox"

        ops = await PatchResolver(web_cluster(), sleep=no_sleep).resolve(experiment.spec.patches, trial)

        assert ops[0].target_ref.namespace == "sandbox"


class TestApply:
    """Tests for applying resolved operations."""

    @pytest.mark.asyncio
    async def test_apply_forces_counters_to_zero(self, no_sleep: RecordingSleep) -> None:
        experiment = make_experiment(patches=[{"patch": "spec:\n  replicas: {{ replicas }}", "targetRef": {"kind": "Deployment", "name": "web"}}])
        trial = make_trial(experiment)
        cluster = web_cluster()
        resolver = PatchResolver(cluster, sleep=no_sleep)
        await resolver.resolve(experiment.spec.patches, trial)

        await resolver.apply(trial)

        assert [op.attempts_remaining for op in trial.spec.patch_operations] == [0]
        stored = cluster.peek(WEB)
        assert stored is not None
        assert stored.spec == {"replicas": 3}

    @pytest.mark.asyncio
    async def test_transient_conflict_is_retried(self, no_sleep: RecordingSleep) -> None:
        experiment = make_experiment(patches=[{"patch": "{}", "targetRef": {"kind": "Deployment", "name": "web"}}])
        trial = make_trial(experiment)
        cluster = web_cluster()
        cluster.inject_failure("apply_patch", RetryableError("conflict"), times=1)
        resolver = PatchResolver(cluster, attempts=3, sleep=no_sleep)
        await resolver.resolve(experiment.spec.patches, trial)
        seen: list[int] = []

        await resolver.apply(trial, on_change=lambda: seen.append(trial.spec.patch_operations[0].attempts_remaining))

        assert seen == [2, 0]
        assert len(cluster.applied) == 1

    @pytest.mark.asyncio
    async def test_missing_target_exhausts_attempts(self, no_sleep: RecordingSleep) -> None:
        experiment = make_experiment(patches=[{"patch": "{}", "targetRef": {"kind": "Deployment", "name": "gone"}}])
        trial = make_trial(experiment)
        resolver = PatchResolver(web_cluster(), attempts=2, sleep=no_sleep)
        await resolver.resolve(experiment.spec.patches, trial)

        with pytest.raises(AttemptsExhaustedError):
            await resolver.apply(trial)
        assert trial.spec.patch_operations[0].attempts_remaining == 0

    @pytest.mark.asyncio
    async def test_rejected_patch_is_permanent(self, no_sleep: RecordingSleep) -> None:
        experiment = make_experiment(patches=[{"patch": "[]", "type": "json", "targetRef": {"kind": "Deployment", "name": "web"}}])
        trial = make_trial(experiment)
        cluster = web_cluster()
        cluster.inject_failure("apply_patch", PermanentError("forbidden"))
        resolver = PatchResolver(cluster, attempts=3, sleep=no_sleep)
        await resolver.resolve(experiment.spec.patches, trial)

        with pytest.raises(PermanentError, match="forbidden"):
            await resolver.apply(trial)
        assert trial.spec.patch_operations[0].attempts_remaining == 0
        assert no_sleep.delays == []

    @pytest.mark.asyncio
    async def test_applied_operations_are_skipped(self, no_sleep: RecordingSleep) -> None:
        experiment = make_experiment(patches=[{"patch": "{}", "targetRef": {"kind": "Deployment", "name": "web"}}])
        trial = make_trial(experiment)
        cluster = web_cluster()
        resolver = PatchResolver(cluster, sleep=no_sleep)
        await resolver.resolve(experiment.spec.patches, trial)
        await resolver.apply(trial)

        await resolver.apply(trial)

        assert len(cluster.applied) == 1
        assert trial.spec.patch_operations[0].patch_type == PatchType.STRATEGIC
