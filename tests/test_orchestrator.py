import asyncio

import pytest

from ddiengine.config.settings import BackendMode, Settings
from ddiengine.core.embedded import EmbeddedEngine
from ddiengine.core.errors import BackendUnavailableError, EvaluationError
from ddiengine.core.expressions import CATALOG_EXPR
from ddiengine.core.orchestrator import (
    BackendOrchestrator,
    BackendState,
    FallbackChoice,
    NoticeKind,
    remediation_message,
)
from ddiengine.core.process_manager import WorkerState

from fakes import ENGINE, FakeInterpreter, fake_worker


def _orchestrator(settings, mode="ok", missing=None, prompt=None, notify=None, engine_path=ENGINE):
    return BackendOrchestrator(
        settings,
        worker=fake_worker(mode=mode, missing=missing),
        embedded=EmbeddedEngine(FakeInterpreter, packages=[]),
        prompt=prompt,
        notify=notify,
        engine_path=engine_path,
    )


class Prompt:
    def __init__(self, answer):
        self.answer = answer
        self.notices = []

    def __call__(self, notice):
        self.notices.append(notice)
        return self.answer


def test_native_backend_loads_codebook(settings, codebook_file):
    orch = _orchestrator(settings)

    async def main():
        try:
            node = await orch.load_codebook(codebook_file)
            return node, orch.state, orch.active_backend
        finally:
            orch.shutdown()

    node, state, active = asyncio.run(main())
    assert state is BackendState.NATIVE_READY
    assert active is BackendMode.NATIVE
    assert node.name == "codeBook"
    assert node.attributes == {"version": "2.5", "engine": "native"}
    data = [c for c in node.children if c.name == "dataDscr"][0]
    assert [c.name for c in data.children] == ["var", "var"]
    assert FakeInterpreter.instances == 0


def test_missing_dependencies_default_choice_persists_embedded(settings, codebook_file):
    prompt = Prompt(FallbackChoice.DEFAULT)
    orch = _orchestrator(settings, mode="missing", missing=["DDIwR"], prompt=prompt)

    async def main():
        try:
            return await orch.load_codebook(codebook_file)
        finally:
            orch.shutdown()

    node = asyncio.run(main())
    assert node.attributes["engine"] == "embedded"
    assert len(prompt.notices) == 1
    notice = prompt.notices[0]
    assert notice.kind is NoticeKind.MISSING_DEPENDENCIES
    assert notice.missing == ["DDIwR"]
    assert 'install.packages(c("DDIwR"))' in notice.message
    assert settings.get_backend_mode() is BackendMode.EMBEDDED
    assert orch.native_available is False


def test_once_choice_does_not_persist(settings):
    orch = _orchestrator(settings, mode="error", prompt=Prompt("once"))

    async def main():
        try:
            await orch.ensure_ready()
            return orch.state
        finally:
            orch.shutdown()

    assert asyncio.run(main()) is BackendState.EMBEDDED_READY
    assert orch.notices[0].kind is NoticeKind.GENERIC
    assert "not writable" in orch.notices[0].message
    assert settings.get_backend_mode() is BackendMode.NATIVE


def test_cancel_leaves_backend_unavailable(settings, codebook_file):
    orch = _orchestrator(settings, mode="missing", prompt=Prompt(FallbackChoice.CANCEL))

    async def main():
        try:
            with pytest.raises(BackendUnavailableError):
                await orch.load_codebook(codebook_file)
            return orch.state
        finally:
            orch.embedded.shutdown()

    assert asyncio.run(main()) is BackendState.UNAVAILABLE
    assert FakeInterpreter.instances == 0


def test_headless_prompt_uses_configured_choice(settings):
    settings.save({"fallback": {"default_choice": "cancel"}})
    orch = _orchestrator(settings, mode="missing")

    async def main():
        with pytest.raises(BackendUnavailableError):
            await orch.ensure_ready()

    asyncio.run(main())
    assert orch.state is BackendState.UNAVAILABLE


def test_engine_not_found_notifies_once(settings, monkeypatch):
    monkeypatch.setattr("ddiengine.core.orchestrator.locate_engine", lambda configured=None: None)
    seen = []
    prompt = Prompt(FallbackChoice.CANCEL)
    orch = _orchestrator(settings, prompt=prompt, notify=seen.append, engine_path=None)

    async def main():
        try:
            await orch.ensure_ready()
            await orch.ensure_ready()
            return orch.state
        finally:
            orch.shutdown()

    assert asyncio.run(main()) is BackendState.EMBEDDED_READY
    assert [n.kind for n in seen] == [NoticeKind.ENGINE_NOT_FOUND]
    assert prompt.notices == []
    assert orch.native_available is False
    assert orch.worker.state is WorkerState.NOT_STARTED


def test_native_crash_falls_back_transparently(settings, tmp_path):
    crash = tmp_path / "crash_survey.xml"
    crash.write_text("<codeBook/>", encoding="utf-8")
    orch = _orchestrator(settings)

    async def main():
        try:
            await orch.ensure_ready()
            assert orch.state is BackendState.NATIVE_READY
            node = await orch.load_codebook(crash)
            return node, orch.state, orch.worker.state
        finally:
            orch.shutdown()

    node, state, worker_state = asyncio.run(main())
    assert node.attributes["engine"] == "embedded"
    assert state is BackendState.EMBEDDED_READY
    assert worker_state is WorkerState.STOPPED
    assert orch.native_available is False
    # the session preference is untouched
    assert settings.get_backend_mode() is BackendMode.NATIVE


def test_evaluation_error_does_not_fall_back(settings, tmp_path):
    broken = tmp_path / "broken.xml"
    broken.write_text("<codeBook", encoding="utf-8")
    orch = _orchestrator(settings)

    async def main():
        try:
            with pytest.raises(EvaluationError, match="not well formed"):
                await orch.load_codebook(broken)
            return orch.state
        finally:
            orch.shutdown()

    assert asyncio.run(main()) is BackendState.NATIVE_READY


def test_missing_file_is_rejected_before_evaluation(settings, tmp_path):
    orch = _orchestrator(settings)

    async def main():
        with pytest.raises(FileNotFoundError):
            await orch.load_codebook(tmp_path / "absent.xml")

    asyncio.run(main())
    assert orch.state is BackendState.IDLE


def test_embedded_preference_skips_native(settings):
    settings.set_backend_mode(BackendMode.EMBEDDED)
    orch = _orchestrator(settings)

    async def main():
        try:
            await asyncio.gather(orch.ensure_ready(), orch.ensure_ready())
            return orch.status()
        finally:
            orch.shutdown()

    status = asyncio.run(main())
    assert status["active_backend"] == "embedded"
    assert status["worker"]["state"] == "not_started"
    assert FakeInterpreter.instances == 1


def test_embedded_failure_is_unavailable(settings):
    settings.set_backend_mode("embedded")
    FakeInterpreter.fail_init = True
    orch = _orchestrator(settings)

    async def main():
        with pytest.raises(BackendUnavailableError):
            await orch.ensure_ready()
        orch.embedded.shutdown()

    asyncio.run(main())
    assert orch.state is BackendState.UNAVAILABLE
    assert orch.notices[-1].kind is NoticeKind.GENERIC


def test_catalog_cached_across_sessions(settings):
    settings.set_backend_mode("embedded")
    received = []

    def load():
        orch = _orchestrator(settings)
        orch.add_catalog_listener(received.append)

        async def main():
            try:
                first = await orch.get_catalog()
                again = await orch.get_catalog()
                assert again is first
                return first
            finally:
                orch.shutdown()

        return asyncio.run(main())

    first = load()
    assert CATALOG_EXPR in FakeInterpreter.last.evaluated
    second = load()
    assert CATALOG_EXPR not in FakeInterpreter.last.evaluated
    assert second.to_dict() == first.to_dict()
    assert first.tree.attributes == {"engine": "embedded"}
    assert len(received) == 2


def test_catalog_rebuild_and_listener_failure(settings):
    settings.set_backend_mode("embedded")
    orch = _orchestrator(settings)

    def broken_listener(catalog):
        raise RuntimeError("consumer bug")

    orch.add_catalog_listener(broken_listener)

    async def main():
        try:
            await orch.get_catalog()
            await orch.get_catalog(rebuild=True)
        finally:
            orch.shutdown()

    asyncio.run(main())
    assert FakeInterpreter.last.evaluated.count(CATALOG_EXPR) == 2


def test_remediation_message_lists_packages():
    msg = remediation_message(["DDIwR", "jsonlite"])
    assert "DDIwR, jsonlite" in msg
    assert 'install.packages(c("DDIwR", "jsonlite"))' in msg


def test_version_bump_rebuilds_catalog_after_mode_saved(settings, monkeypatch):
    settings.set_backend_mode("embedded")

    def load():
        orch = _orchestrator(settings)

        async def main():
            try:
                return await orch.get_catalog()
            finally:
                orch.shutdown()

        return asyncio.run(main())

    load()
    load()
    assert CATALOG_EXPR not in FakeInterpreter.last.evaluated
    monkeypatch.setattr("ddiengine.core.orchestrator.__version__", "9.9.9")
    load()
    assert CATALOG_EXPR in FakeInterpreter.last.evaluated


def test_unwritable_config_still_falls_back(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    settings = Settings(blocker / "ddiengine.yml")
    orch = _orchestrator(settings, mode="missing", prompt=Prompt(FallbackChoice.DEFAULT))

    async def main():
        try:
            await orch.ensure_ready()
            return orch.state
        finally:
            orch.shutdown()

    assert asyncio.run(main()) is BackendState.EMBEDDED_READY
    assert settings.get_backend_mode() is BackendMode.NATIVE


def test_failed_initialization_is_retried(settings):
    calls = []

    def flaky_prompt(notice):
        calls.append(notice.kind)
        if len(calls) == 1:
            raise RuntimeError("prompt window closed")
        return FallbackChoice.ONCE

    orch = _orchestrator(settings, mode="missing", prompt=flaky_prompt)

    async def main():
        try:
            with pytest.raises(RuntimeError, match="prompt window closed"):
                await orch.ensure_ready()
            assert orch.state is BackendState.IDLE
            await orch.ensure_ready()
            return orch.state
        finally:
            orch.shutdown()

    assert asyncio.run(main()) is BackendState.EMBEDDED_READY
    assert len(calls) == 2
