"""Tests for pipeline configuration, the step registry and the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from docflow.steps.base import Step


@dataclass
class FlakyStep(Step):
    """Fails a fixed number of times before succeeding."""

    step_type: str = field(init=False, default="flaky")

    async def execute(self, ctx) -> None:
        failures = self.option("failures", 0)
        calls = self.config.setdefault("_calls", 0) + 1
        self.config["_calls"] = calls
        if calls <= failures:
            raise RuntimeError(f"failure {calls}")
        ctx.step_log(self.step_id).items_out = calls


@dataclass
class EmptyingStep(Step):
    step_type: str = field(init=False, default="emptying")

    async def execute(self, ctx) -> None:
        ctx.filtered_messages = []


def _registry():
    from docflow.pipeline.orchestrator import default_registry

    registry = default_registry()
    registry.register("flaky", lambda c: FlakyStep(step_id=c.step_id, config=c.config))
    registry.register("emptying", lambda c: EmptyingStep(step_id=c.step_id, config=c.config))
    return registry


def _config(steps, **error_handling):
    from docflow.pipeline.config import ErrorHandlingConfig, PipelineConfig, StepConfig

    return PipelineConfig(
        steps=[StepConfig(**s) for s in steps],
        error_handling=ErrorHandlingConfig(retry_delay_seconds=0, **error_handling),
    )


def _ctx(messages, llm, search):
    from docflow.pipeline.context import PipelineContext

    return PipelineContext(
        stream_id="discord", batch_id="b1", messages=messages, llm=llm, search=search
    )


class TestPipelineConfig:
    """Tests for loading and validating pipeline definitions."""

    def test_default_pipeline(self, test_settings):
        from docflow.pipeline.config import default_pipeline_config

        config = default_pipeline_config(test_settings)

        assert [s.step_type for s in config.steps] == ["filter", "classify", "enrich", "generate"]
        assert config.steps[1].config["model"] == "deepseek-chat"
        assert config.error_handling.stop_on_error is True
        assert config.error_handling.retry_attempts == 0
        assert config.domain.project_name == test_settings.project_name

    def test_load_yaml(self, tmp_path):
        from docflow.pipeline.config import load_pipeline_config

        path = tmp_path / "pipeline.yaml"
        path.write_text(
            "pipeline_id: acme\n"
            "domain:\n"
            "  project_name: Acme\n"
            "  categories: [setup]\n"
            "steps:\n"
            "  - step_id: classify\n"
            "    step_type: classify\n"
            "  - step_id: enrich\n"
            "    step_type: enrich\n"
            "    enabled: false\n"
        )

        config = load_pipeline_config(path)

        assert config.pipeline_id == "acme"
        assert config.error_handling.retry_attempts == 0
        assert config.domain.categories == ["setup"]
        assert config.steps[1].enabled is False

    @pytest.mark.parametrize(
        "content",
        [
            "steps: [unclosed",
            "- just a list",
            "steps:\n  - step_id: a\n    step_type: classify\n  - step_id: a\n    step_type: enrich\n",
            "error_handling:\n  retry_attempts: -1\n",
        ],
    )
    def test_invalid_yaml(self, tmp_path, content):
        from docflow.core.errors import PipelineError
        from docflow.pipeline.config import load_pipeline_config

        path = tmp_path / "pipeline.yaml"
        path.write_text(content)

        with pytest.raises(PipelineError):
            load_pipeline_config(path)

    def test_missing_file(self, tmp_path):
        from docflow.core.errors import PipelineError
        from docflow.pipeline.config import load_pipeline_config

        with pytest.raises(PipelineError, match="not found"):
            load_pipeline_config(tmp_path / "missing.yaml")


class TestStepRegistry:
    def test_unknown_step_type(self):
        from docflow.core.errors import PipelineError
        from docflow.pipeline.orchestrator import PipelineOrchestrator

        with pytest.raises(PipelineError, match="Unknown step type 'translate'"):
            PipelineOrchestrator(_config([{"step_id": "t", "step_type": "translate"}]))

    def test_disabled_steps_skipped(self):
        from docflow.pipeline.orchestrator import PipelineOrchestrator

        orchestrator = PipelineOrchestrator(
            _config(
                [
                    {"step_id": "f", "step_type": "filter"},
                    {"step_id": "c", "step_type": "classify", "enabled": False},
                ]
            )
        )

        assert [s.step_id for s in orchestrator.steps] == ["f"]

    def test_builtin_types(self):
        from docflow.pipeline.orchestrator import default_registry

        assert default_registry().step_types == ["classify", "enrich", "filter", "generate"]


class TestOrchestrator:
    """Tests for step execution, retries and metrics."""

    async def test_full_pipeline(self, make_message, mock_llm, static_search, test_settings):
        from docflow.pipeline.config import default_pipeline_config
        from docflow.pipeline.orchestrator import PipelineOrchestrator

        ctx = _ctx([make_message(1), make_message(2, 1)], mock_llm, static_search)

        await PipelineOrchestrator(default_pipeline_config(test_settings)).execute(ctx)

        assert len(ctx.conversations) == 1
        assert ctx.proposal_count == 1
        assert ctx.errors == []
        assert ctx.metrics.total_llm_calls == 2
        assert ctx.metrics.total_tokens > 0
        assert set(ctx.metrics.steps) == {
            "keyword-filter",
            "batch-classify",
            "rag-enrich",
            "proposal-generate",
        }

    async def test_retries_then_succeeds(self, mock_llm, static_search):
        from docflow.pipeline.orchestrator import PipelineOrchestrator

        orchestrator = PipelineOrchestrator(
            _config([{"step_id": "x", "step_type": "flaky", "config": {"failures": 2}}],
                    retry_attempts=2),
            _registry(),
        )
        ctx = _ctx([], mock_llm, static_search)

        await orchestrator.execute(ctx)

        log = ctx.step_log("x")
        assert log.attempts == 3
        assert log.errors == 0
        assert ctx.errors == []

    async def test_stop_on_error_raises(self, mock_llm, static_search):
        from docflow.core.errors import StepError
        from docflow.pipeline.orchestrator import PipelineOrchestrator

        orchestrator = PipelineOrchestrator(
            _config(
                [
                    {"step_id": "x", "step_type": "flaky", "config": {"failures": 5}},
                    {"step_id": "after", "step_type": "flaky"},
                ],
                retry_attempts=1,
            ),
            _registry(),
        )
        ctx = _ctx([], mock_llm, static_search)

        with pytest.raises(StepError) as exc_info:
            await orchestrator.execute(ctx)

        assert exc_info.value.step_id == "x"
        assert ctx.step_log("x").attempts == 2
        assert "after" not in ctx.metrics.steps

    async def test_continue_on_error(self, mock_llm, static_search):
        from docflow.pipeline.orchestrator import PipelineOrchestrator

        orchestrator = PipelineOrchestrator(
            _config(
                [
                    {"step_id": "x", "step_type": "flaky", "config": {"failures": 5}},
                    {"step_id": "after", "step_type": "flaky"},
                ],
                retry_attempts=0,
                stop_on_error=False,
            ),
            _registry(),
        )
        ctx = _ctx([], mock_llm, static_search)

        await orchestrator.execute(ctx)

        assert ctx.errors == ["x: RuntimeError: failure 1"]
        assert ctx.step_log("after").items_out == 1

    async def test_everything_filtered_is_not_an_error(
        self, make_message, mock_llm, static_search, test_settings
    ):
        from docflow.pipeline.config import StepConfig, default_pipeline_config
        from docflow.pipeline.orchestrator import PipelineOrchestrator

        config = default_pipeline_config(test_settings)
        config.steps[0] = StepConfig(step_id="empty", step_type="emptying")
        ctx = _ctx([make_message(1)], mock_llm, static_search)

        await PipelineOrchestrator(config, _registry()).execute(ctx)

        assert ctx.errors == []
        assert ctx.conversations == []
        assert ctx.proposals == {}
        assert mock_llm.calls == []

    async def test_no_step_retries_by_default(self, mock_llm, static_search):
        from docflow.core.errors import StepError
        from docflow.pipeline.config import ErrorHandlingConfig, PipelineConfig, StepConfig
        from docflow.pipeline.orchestrator import PipelineOrchestrator

        config = PipelineConfig(
            steps=[StepConfig(step_id="x", step_type="flaky", config={"failures": 1})],
            error_handling=ErrorHandlingConfig(retry_delay_seconds=0),
        )
        ctx = _ctx([], mock_llm, static_search)

        with pytest.raises(StepError):
            await PipelineOrchestrator(config, _registry()).execute(ctx)

        assert ctx.step_log("x").attempts == 1
