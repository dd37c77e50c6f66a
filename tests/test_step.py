"""Tests for the processing step orchestrator."""

from __future__ import annotations

import asyncio

import pytest

from autoalt.config import StepConfig
from autoalt.step import ProcessingStep
from tests.utils.fakes import (
    UNLISTED_MODEL,
    BrokenStore,
    FakeRepository,
    ScriptedProvider,
    SleepRecorder,
)


def _run(engine: ProcessingStep, config: dict):
    return asyncio.run(engine.run_step(config))


class TestFailingItemScenario:
    """Five images, batch of two, image 3 always fails."""

    def test_progress_across_steps(self, make_engine, step_config) -> None:
        repo = FakeRepository(["img1", "img2", "img3", "img4", "img5"])
        provider = ScriptedProvider(fail_ids={"img3"})
        engine = make_engine(repo, provider)
        config = {**step_config, "batch_size": 2}

        first = _run(engine, config)
        assert first.attempted == 2
        assert first.batch_succeeded == 2
        assert first.succeeded == 2
        assert first.remaining == 3
        assert first.progress_percent == pytest.approx(40.0)
        assert first.errors == []
        assert not first.completed

        second = _run(engine, config)
        assert [e[0] for e in second.errors] == ["img3"]
        assert second.succeeded == 3
        assert second.remaining == 2
        assert second.progress_percent == pytest.approx(60.0)

        third = _run(engine, config)
        assert repo.alt["img5"] == "Alt text for img5"
        assert third.succeeded == 4
        assert third.remaining == 1
        assert third.progress_percent == pytest.approx(80.0)

        fourth = _run(engine, config)
        assert fourth.attempted == 1
        assert fourth.batch_succeeded == 0
        assert fourth.succeeded == 4
        assert fourth.remaining == 1
        assert fourth.progress_percent == pytest.approx(80.0)
        assert not fourth.completed
        assert fourth.all_failed

    def test_failed_item_retried_three_times_per_step(self, make_engine, step_config, sleeps) -> None:
        repo = FakeRepository(["img3"])
        provider = ScriptedProvider(fail_ids={"img3"})
        engine = make_engine(repo, provider)

        result = _run(engine, step_config)

        assert provider.calls_for("img3") == 3
        assert sleeps.calls == [1.0, 1.0]
        assert result.errors == [("img3", "provider rejected img3")]


class TestBatchSizing:
    def test_clamps_to_default_ceiling_then_pending(self, make_engine, step_config) -> None:
        repo = FakeRepository([f"img{i:02d}" for i in range(10)])
        provider = ScriptedProvider()
        engine = make_engine(repo, provider)

        result = _run(engine, {**step_config, "batch_size": 100})

        assert result.attempted == 10
        assert result.session_total == 10
        assert result.completed is True
        assert result.progress_percent == 100.0

    def test_rate_limit_ceiling_caps_batch(self, make_engine, step_config) -> None:
        repo = FakeRepository([f"img{i:02d}" for i in range(30)])
        engine = make_engine(repo, ScriptedProvider())

        result = _run(engine, {**step_config, "model": "gemini-2.0-flash", "batch_size": 50})

        # 15 RPM free tier: 5s spacing, 12 calls per minute
        assert result.attempted == 12

    def test_batch_is_taken_from_front(self, make_engine, step_config) -> None:
        repo = FakeRepository(["c", "a", "b", "d"])
        provider = ScriptedProvider()
        engine = make_engine(repo, provider)

        _run(engine, {**step_config, "batch_size": 2})

        assert [c[0] for c in provider.calls] == ["a", "b"]


class TestPacing:
    def test_delay_between_items_not_after_last(self, make_engine, step_config, sleeps) -> None:
        repo = FakeRepository(["a", "b", "c"])
        engine = make_engine(repo, ScriptedProvider())

        _run(engine, {**step_config, "model": "gemini-2.0-flash"})

        assert sleeps.calls == [5.0, 5.0]

    def test_no_delay_without_rate_limit(self, make_engine, step_config, sleeps) -> None:
        repo = FakeRepository(["a", "b", "c"])
        engine = make_engine(repo, ScriptedProvider())

        _run(engine, step_config)

        assert sleeps.calls == []

    def test_single_item_batch_has_no_delay(self, make_engine, step_config, sleeps) -> None:
        repo = FakeRepository(["a"])
        engine = make_engine(repo, ScriptedProvider())

        _run(engine, {**step_config, "model": "gemini-1.5-pro"})

        assert sleeps.calls == []


class TestCompletion:
    def test_empty_pending_completes_and_clears_session(self, make_engine, step_config, store) -> None:
        repo = FakeRepository([])
        engine = make_engine(repo, ScriptedProvider())

        result = _run(engine, step_config)

        assert result.completed is True
        assert result.progress_percent == 100.0
        assert result.attempted == 0
        assert result.errors == []
        assert store.get(engine.tracker.total_key) is None
        assert store.get(engine.tracker.success_key) is None

    def test_completion_reports_cumulative_success(self, make_engine, step_config, store) -> None:
        repo = FakeRepository(["a", "b", "c"])
        engine = make_engine(repo, ScriptedProvider())

        last = _run(engine, {**step_config, "batch_size": 3})
        assert last.completed is True

        final = _run(engine, step_config)
        assert final.completed is True
        assert final.attempted == 0
        assert final.succeeded == 3
        assert "3 alt tags generated" in final.message
        assert store.get(engine.tracker.total_key) is None

    def test_new_session_after_completion(self, make_engine, step_config) -> None:
        repo = FakeRepository(["a", "b"])
        engine = make_engine(repo, ScriptedProvider())
        _run(engine, step_config)
        _run(engine, step_config)  # observes empty pending, ends the session

        repo.add("c", "d", "e")
        result = _run(engine, {**step_config, "batch_size": 1})

        assert result.session_total == 3
        assert result.succeeded == 1


class TestSessionBehaviour:
    def test_session_total_stable_when_images_added(self, make_engine, step_config) -> None:
        repo = FakeRepository(["a", "b", "c", "d"])
        engine = make_engine(repo, ScriptedProvider())

        first = _run(engine, {**step_config, "batch_size": 1})
        repo.add("e", "f", "g")
        second = _run(engine, {**step_config, "batch_size": 1})

        assert first.session_total == 4
        assert second.session_total == 4

    def test_pending_shrinks_by_batch_successes(self, make_engine, step_config) -> None:
        repo = FakeRepository([f"img{i}" for i in range(8)])
        provider = ScriptedProvider(fail_ids={"img1", "img4"})
        engine = make_engine(repo, provider)

        for _ in range(4):
            before = len(repo.list_pending())
            result = _run(engine, {**step_config, "batch_size": 3})
            after = repo.list_pending()
            assert len(after) == before - result.batch_succeeded
            for image_id, _message in result.errors:
                assert image_id in after

    def test_processed_is_monotonic(self, make_engine, step_config) -> None:
        repo = FakeRepository([f"img{i}" for i in range(9)])
        provider = ScriptedProvider(fail_times={"img0": 5, "img3": 3})
        engine = make_engine(repo, provider)

        processed = []
        for _ in range(6):
            result = _run(engine, {**step_config, "batch_size": 2, "max_retries": 0})
            processed.append(result.processed)

        assert processed == sorted(processed)

    def test_resume_with_new_engine_instance(self, store, sleeps, step_config) -> None:
        repo = FakeRepository(["a", "b", "c", "d"])
        provider = ScriptedProvider()

        def _engine() -> ProcessingStep:
            return ProcessingStep(repo, store, provider_factory=lambda n, **kw: provider, sleep=sleeps)

        _run(_engine(), {**step_config, "batch_size": 2})
        resumed = _run(_engine(), {**step_config, "batch_size": 1})

        assert resumed.session_total == 4
        assert resumed.succeeded == 3
        assert resumed.progress_percent == pytest.approx(75.0)

    def test_check_session_and_start_fresh(self, make_engine, step_config) -> None:
        repo = FakeRepository(["a", "b", "c", "d"])
        engine = make_engine(repo, ScriptedProvider())

        assert engine.check_session().has_session is False
        _run(engine, {**step_config, "batch_size": 1})

        status = engine.check_session()
        assert status.has_session is True
        assert status.session_total == 4
        assert status.remaining == 3
        assert status.processed == 1

        engine.start_fresh_session()
        assert engine.check_session().has_session is False
        result = _run(engine, {**step_config, "batch_size": 1})
        assert result.session_total == 3
        assert result.succeeded == 1

    def test_check_session_clears_stale_total(self, make_engine, step_config, store) -> None:
        repo = FakeRepository(["a"])
        engine = make_engine(repo, ScriptedProvider())
        _run(engine, step_config)

        assert store.get(engine.tracker.total_key) == 1
        status = engine.check_session()
        assert status.has_session is False
        assert store.get(engine.tracker.total_key) is None


class TestStepErrors:
    def test_unavailable_provider_is_configuration_error(self, make_engine, step_config) -> None:
        repo = FakeRepository(["a"])
        provider = ScriptedProvider(available=False)
        engine = make_engine(repo, provider)

        result = _run(engine, step_config)

        assert result.error is not None
        assert "API key not configured" in result.error
        assert result.attempted == 0
        assert provider.calls == []

    def test_unknown_provider(self, make_engine, step_config) -> None:
        engine = make_engine(FakeRepository(["a"]), ScriptedProvider())

        result = _run(engine, {**step_config, "provider": "nonexistent"})

        assert result.error is not None
        assert "Unknown provider" in result.error

    def test_invalid_batch_size(self, make_engine, step_config) -> None:
        engine = make_engine(FakeRepository(["a"]), ScriptedProvider())

        result = _run(engine, {**step_config, "batch_size": 0})

        assert result.error is not None
        assert "Invalid step configuration" in result.error

    def test_store_failure_fails_step(self, make_engine, step_config) -> None:
        provider = ScriptedProvider()
        engine = make_engine(FakeRepository(["a"]), provider, store=BrokenStore())

        result = _run(engine, step_config)

        assert result.error == "state file unreadable"
        assert provider.calls == []

    def test_repository_failure_fails_step(self, make_engine, step_config) -> None:
        repo = FakeRepository(["a"])
        repo.fail_list = True
        engine = make_engine(repo, ScriptedProvider())

        result = _run(engine, step_config)

        assert result.error is not None
        assert "database unavailable" in result.error

    def test_save_failure_is_item_error(self, make_engine, step_config) -> None:
        repo = FakeRepository(["a", "b"])
        repo.fail_save = {"a"}
        engine = make_engine(repo, ScriptedProvider())

        result = _run(engine, step_config)

        assert result.error is None
        assert result.batch_succeeded == 1
        assert result.errors[0][0] == "a"
        assert "Failed to save alt text" in result.errors[0][1]

    def test_exceptions_from_provider_stay_in_batch(self, make_engine, step_config) -> None:
        repo = FakeRepository(["a", "b"])
        engine = make_engine(repo, ScriptedProvider(raise_ids={"a"}))

        result = _run(engine, step_config)

        assert result.error is None
        assert result.errors == [("a", "connection reset")]
        assert repo.alt["b"] == "Alt text for b"

    def test_total_outage_returns_normal_result(self, make_engine, step_config) -> None:
        repo = FakeRepository(["a", "b", "c"])
        engine = make_engine(repo, ScriptedProvider(fail_ids={"a", "b", "c"}))

        result = _run(engine, step_config)

        assert result.error is None
        assert result.completed is False
        assert len(result.errors) == 3
        assert result.all_failed

    def test_concurrent_step_rejected(self, store, step_config) -> None:
        repo = FakeRepository(["a", "b"])
        provider = ScriptedProvider(delay=0.05)
        engine = ProcessingStep(repo, store, provider_factory=lambda n, **kw: provider)

        async def _both():
            return await asyncio.gather(engine.run_step(step_config), engine.run_step(step_config))

        first, second = asyncio.run(_both())

        assert first.error is None
        assert first.batch_succeeded == 2
        assert second.error is not None
        assert "already running" in second.error


class TestPromptAndModel:
    def test_default_prompt_and_model(self, make_engine) -> None:
        from autoalt.providers.base import DEFAULT_PROMPT

        provider = ScriptedProvider()
        engine = make_engine(FakeRepository(["a"]), provider)

        _run(engine, {"provider": "claude"})

        _image_id, prompt, model = provider.calls[0]
        assert prompt == DEFAULT_PROMPT
        assert model == "claude-3-5-sonnet-20241022"

    def test_custom_prompt_and_step_config_object(self, make_engine) -> None:
        provider = ScriptedProvider()
        engine = make_engine(FakeRepository(["a"]), provider)

        config = StepConfig(provider="openai", model=UNLISTED_MODEL, prompt="Describe briefly.")
        _run(engine, config)

        assert provider.calls[0][1:] == ("Describe briefly.", UNLISTED_MODEL)


class TestPreviewAndConnection:
    def test_preview_does_not_save(self, make_engine, step_config, store) -> None:
        repo = FakeRepository([f"img{i}" for i in range(8)])
        provider = ScriptedProvider(fail_ids={"img2"})
        engine = make_engine(repo, provider)

        items = asyncio.run(engine.preview(step_config))

        assert [i.image_id for i in items] == ["img0", "img1", "img2", "img3", "img4"]
        assert items[0].alt_text == "Alt text for img0"
        assert items[2].error is not None
        assert repo.writes == []
        assert store.get(engine.tracker.total_key) is None

    def test_preview_requires_configured_provider(self, make_engine, step_config) -> None:
        from autoalt.errors import ConfigurationError

        engine = make_engine(FakeRepository(["a"]), ScriptedProvider(available=False))

        with pytest.raises(ConfigurationError):
            asyncio.run(engine.preview(step_config))

    def test_test_connection(self, make_engine, step_config) -> None:
        ok = make_engine(FakeRepository([]), ScriptedProvider())
        bad = make_engine(FakeRepository([]), ScriptedProvider(preflight_error="403 Forbidden"))
        missing = make_engine(FakeRepository([]), ScriptedProvider(available=False))

        assert asyncio.run(ok.test_connection(step_config)) is None
        assert asyncio.run(bad.test_connection(step_config)) == "403 Forbidden"
        assert "API key not configured" in asyncio.run(missing.test_connection(step_config))


class TestFromConfig:
    def test_builds_library_engine(self, library_dir, tmp_path) -> None:
        from autoalt.config import AutoAltConfig
        from autoalt.library import LibraryRepository
        from autoalt.store import FileStore

        cfg = AutoAltConfig.model_validate({
            "library": {"path": str(library_dir)},
            "session": {"state_file": "state/run.yaml", "namespace": "site"},
        })
        engine = ProcessingStep.from_config(cfg, base_dir=tmp_path)

        assert isinstance(engine.repository, LibraryRepository)
        assert isinstance(engine.store, FileStore)
        assert engine.store.path == tmp_path / "state" / "run.yaml"
        assert engine.tracker.total_key == "site_session_total"
        assert engine.repository.list_pending() == ["2024/c.webp", "a.jpg", "b.png"]

    def test_end_to_end_with_library_and_file_store(self, library_dir, tmp_path) -> None:
        from autoalt.library import LibraryRepository
        from autoalt.store import FileStore

        provider = ScriptedProvider(fail_ids={"a.jpg"})
        repo = LibraryRepository(library_dir)
        state = FileStore(tmp_path / "state.yaml")
        engine = ProcessingStep(
            repo, state, provider_factory=lambda n, **kw: provider, sleep=SleepRecorder(),
        )
        config = {"provider": "gemini", "model": UNLISTED_MODEL, "batch_size": 2}

        first = asyncio.run(engine.run_step(config))
        assert first.batch_succeeded == 1
        assert repo.list_pending() == ["a.jpg", "b.png"]

        # Simulate a restart: fresh store object over the same file.
        engine = ProcessingStep(
            repo, FileStore(tmp_path / "state.yaml"),
            provider_factory=lambda n, **kw: provider, sleep=SleepRecorder(),
        )
        second = asyncio.run(engine.run_step(config))
        assert second.session_total == 3
        assert second.succeeded == 2
        assert repo.alt_text("b.png") == "Alt text for b.png"
        assert repo.list_pending() == ["a.jpg"]

class TestLongRunningSession:
    def test_session_total_survives_past_ttl(self, make_engine, step_config) -> None:
        from autoalt.store import MemoryStore
        from tests.utils.fakes import ManualClock

        clock = ManualClock()
        repo = FakeRepository([f"img{i:03d}" for i in range(100)])
        engine = make_engine(repo, ScriptedProvider(), store=MemoryStore(clock=clock))

        results = []
        for _ in range(6):
            results.append(_run(engine, {**step_config, "batch_size": 10}))
            clock.advance(900)

        assert [r.session_total for r in results] == [100] * 6
        assert [r.processed for r in results] == [10, 20, 30, 40, 50, 60]
        assert results[-1].succeeded == 60
        assert results[-1].progress_percent == pytest.approx(60.0)


class TestRegenerate:
    def test_overwrites_described_images(self, make_engine, step_config, store) -> None:
        repo = FakeRepository(["img1", "img2", "img3"])
        repo.alt["img2"] = "Old text"
        engine = make_engine(repo, ScriptedProvider())

        config = {**step_config, "batch_size": 2}
        result = asyncio.run(engine.regenerate(config, ["img1", "img2", "img3"]))

        assert result.attempted == 2
        assert result.batch_succeeded == 2
        assert result.remaining == 1
        assert not result.completed
        assert repo.alt["img2"] == "Alt text for img2"
        assert repo.alt["img3"] == ""
        # Session counters are untouched.
        assert store.keys() == []

    def test_failures_reported(self, make_engine, step_config) -> None:
        repo = FakeRepository(["img1", "img2"])
        repo.alt["img1"] = "Keep me"
        engine = make_engine(repo, ScriptedProvider(fail_ids={"img1"}))

        result = asyncio.run(engine.regenerate(step_config, ["img1", "img2"]))

        assert result.completed
        assert result.errors == [("img1", "provider rejected img1")]
        assert repo.alt["img1"] == "Keep me"

    def test_empty_list_completes(self, make_engine, step_config) -> None:
        engine = make_engine(FakeRepository([]), ScriptedProvider())

        result = asyncio.run(engine.regenerate(step_config, []))

        assert result.completed
        assert result.attempted == 0
        assert result.error is None

    def test_configuration_error_returned(self, make_engine, step_config) -> None:
        engine = make_engine(FakeRepository(["img1"]), ScriptedProvider(available=False))

        result = asyncio.run(engine.regenerate(step_config, ["img1"]))

        assert result.error is not None
        assert "API key not configured" in result.error


class TestCorruptSidecar:
    def test_step_reports_library_error(self, make_engine, step_config, library_dir) -> None:
        from autoalt.library import LibraryRepository

        repo = LibraryRepository(library_dir)
        repo.sidecar_path.write_text("images: [unclosed\n", encoding="utf-8")
        engine = make_engine(repo, ScriptedProvider())

        result = _run(engine, step_config)

        assert result.error is not None
        assert "Cannot read alt text file" in result.error
        assert not result.error.startswith("Step failed")
