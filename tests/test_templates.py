# Copyright (c) Syntropy Systems
"""Tests for template evaluation."""

import pytest
from conftest import make_trial

from knobs.errors import TemplateError
from knobs.models.experiment import Experiment
from knobs.templates import assignment_context, evaluate, render


class TestRender:
    """Tests for rendering template text."""

    def test_assignments_are_top_level_and_under_parameters(self, experiment: Experiment) -> None:
        context = assignment_context(make_trial(experiment))
        assert render("{{ replicas }}/{{ parameters.replicas }}", context) == "3/3"

    def test_trial_metadata_is_available(self, experiment: Experiment) -> None:
        context = assignment_context(make_trial(experiment, name="web-007"))
        assert render("{{ trial.name }}", context) == "web-007"

    def test_percent_filter(self) -> None:
        assert render("{{ memory | percent(75) }}", {"memory": 1000}) == "750"

    def test_undefined_name_is_an_error(self) -> None:
        with pytest.raises(TemplateError, match="cpu"):
            render("{{ cpu }}m", {"replicas": 1})

    def test_syntax_error(self) -> None:
        with pytest.raises(TemplateError):
            render("{{ replicas ", {"replicas": 1})

    def test_sandbox_blocks_attribute_escape(self) -> None:
        with pytest.raises(TemplateError):
            render("{{ ''.__class__.__mro__ }}", {})

    def test_runtime_errors_are_template_errors(self) -> None:
        for source in ("{{ replicas + 'x' }}", "{{ replicas // 0 }}"):
            with pytest.raises(TemplateError, match="Template evaluation failed"):
                render(source, {"replicas": 1})


class TestEvaluate:
    """Tests for single-expression evaluation."""

    def test_expression(self) -> None:
        assert evaluate("duration * 2", {"duration": 1.5}) == 3.0

    def test_template_text_is_rendered(self) -> None:
        assert evaluate("{{ duration }}", {"duration": 4}) == "4"

    def test_undefined_expression(self) -> None:
        with pytest.raises(TemplateError):
            evaluate("missing + 1", {})

    def test_runtime_error_in_expression(self) -> None:
        with pytest.raises(TemplateError, match="duration \\+ 'x'"):
            evaluate("duration + 'x'", {"duration": 1.5})
