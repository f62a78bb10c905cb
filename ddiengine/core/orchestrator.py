"""BackendOrchestrator: backend selection, fallback and the consumer contract.

States: IDLE -> INITIALIZING_NATIVE -> NATIVE_READY
                      \\-> INITIALIZING_EMBEDDED -> EMBEDDED_READY
        any initialization may end in UNAVAILABLE.

Failure handling:
- no native engine on this machine: one ENGINE_NOT_FOUND notice, go embedded
- native bootstrap failed: notice (missing packages or generic), then the
  prompt decides between embedded once / embedded by default / cancel
- native crash during an operation: drop the native engine for this session
  and rerun the same expression on the embedded engine; the caller only sees
  the embedded result
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
import asyncio
import inspect
import json

from loguru import logger

from .. import __version__
from ..config.settings import BackendMode, Settings
from .embedded import EmbeddedEngine
from .engine_locator import locate_engine
from .errors import BackendUnavailableError, EvaluationError, InitError, TransportError
from .expressions import CATALOG_EXPR, ENGINE_VERSION_EXPR, load_codebook_expr
from .logging import summarize_for_log
from .normalizer import NormalizedNode, normalize_codebook
from .process_manager import NativeWorker
from .structure_cache import Catalog, StructureCache


class BackendState(str, Enum):
    IDLE = "idle"
    INITIALIZING_NATIVE = "initializing_native"
    NATIVE_READY = "native_ready"
    INITIALIZING_EMBEDDED = "initializing_embedded"
    EMBEDDED_READY = "embedded_ready"
    UNAVAILABLE = "unavailable"


class FallbackChoice(str, Enum):
    ONCE = "once"
    DEFAULT = "default"
    CANCEL = "cancel"


class NoticeKind(str, Enum):
    ENGINE_NOT_FOUND = "engine_not_found"
    MISSING_DEPENDENCIES = "missing_dependencies"
    GENERIC = "generic"


@dataclass
class FallbackNotice:
    kind: NoticeKind
    message: str
    missing: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "missing": list(self.missing)}


PromptFn = Callable[[FallbackNotice], Union[FallbackChoice, str, Awaitable[Union[FallbackChoice, str]]]]
NotifyFn = Callable[[FallbackNotice], Any]
CatalogListener = Callable[[Catalog], Any]


def remediation_message(missing: List[str]) -> str:
    pkgs = ", ".join(missing)
    vector = ", ".join(json.dumps(m) for m in missing)
    return (
        f"The native R engine is missing required packages: {pkgs}. "
        f"Install them with install.packages(c({vector})) or continue with the embedded engine."
    )


def _decode_json(text: str, what: str) -> Any:
    try:
        return json.loads(text)
    except ValueError as e:
        raise EvaluationError(f"{what}: engine returned invalid JSON ({e})") from e


class BackendOrchestrator:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        worker: Optional[NativeWorker] = None,
        embedded: Optional[EmbeddedEngine] = None,
        cache: Optional[StructureCache] = None,
        prompt: Optional[PromptFn] = None,
        notify: Optional[NotifyFn] = None,
        engine_path: Optional[str] = None,
    ):
        self.settings = settings or Settings()
        cfg = self.settings.load()
        backend_cfg = cfg.get("backend") or {}
        embedded_cfg = cfg.get("embedded") or {}
        self.worker = worker or NativeWorker(init_timeout=float(backend_cfg.get("init_timeout_s") or 8.0))
        self.embedded = embedded or EmbeddedEngine(
            interpreter_factory=embedded_cfg.get("interpreter"),
            library_archive=embedded_cfg.get("library_archive"),
            library_dir=self.settings.embedded_library_dir(),
            scripts_dir=self.settings.scripts_dir(),
            packages=embedded_cfg.get("packages") or ("DDIwR",),
        )
        self.cache = cache
        self._prompt = prompt or self._headless_prompt
        self._notify = notify
        self._engine_path = engine_path
        self._native_disabled = False
        self.native_available: Optional[bool] = None
        self._state = BackendState.IDLE
        self._init_task: Optional[asyncio.Task] = None
        self._catalog_task: Optional[asyncio.Task] = None
        self._not_found_notified = False
        self.notices: List[FallbackNotice] = []
        self._listeners: List[CatalogListener] = []

    # ------------------------------------------------------------------
    @property
    def state(self) -> BackendState:
        return self._state

    @property
    def active_backend(self) -> Optional[BackendMode]:
        if self._state is BackendState.NATIVE_READY:
            return BackendMode.NATIVE
        if self._state is BackendState.EMBEDDED_READY:
            return BackendMode.EMBEDDED
        return None

    def status(self) -> Dict[str, Any]:
        active = self.active_backend
        return {
            "state": self._state.value,
            "active_backend": active.value if active else None,
            "preferred_mode": self.settings.get_backend_mode().value,
            "native_available": self.native_available,
            "engine_path": self._engine_path,
            "worker": {"state": self.worker.state.value, "pending": self.worker.pending_count, "pid": self.worker.pid},
            "embedded_ready": self.embedded.ready,
            "notices": len(self.notices),
        }

    def set_backend_mode(self, mode: Union[BackendMode, str]) -> None:
        """Persist the preference; it takes effect at the next initialization."""
        self.settings.set_backend_mode(mode)

    def add_catalog_listener(self, listener: CatalogListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # initialization
    async def ensure_ready(self) -> None:
        if self._state in (BackendState.NATIVE_READY, BackendState.EMBEDDED_READY):
            return
        if self._init_task is None:
            self._init_task = asyncio.get_running_loop().create_task(self._initialize())
        task = self._init_task
        try:
            await asyncio.shield(task)
        except BaseException:
            # finished attempts are never replayed
            if self._init_task is task and task.done():
                self._init_task = None
                if self._state in (BackendState.INITIALIZING_NATIVE, BackendState.INITIALIZING_EMBEDDED):
                    self._state = BackendState.IDLE
            raise

    async def _initialize(self) -> None:
        mode = self.settings.get_backend_mode()
        if mode is BackendMode.NATIVE and not self._native_disabled:
            engine = self._engine_path or locate_engine(self.settings.section("backend").get("engine_path"))
            if engine is None:
                self.native_available = False
                if not self._not_found_notified:
                    self._not_found_notified = True
                    await self._emit(FallbackNotice(
                        NoticeKind.ENGINE_NOT_FOUND,
                        "No native R installation was found; using the embedded engine.",
                    ))
            else:
                self._engine_path = engine
                if await self._start_native(engine):
                    return
        await self._start_embedded()

    async def _start_native(self, engine: str) -> bool:
        self._state = BackendState.INITIALIZING_NATIVE
        logger.info(f"[orchestrator] starting native engine {engine}")
        try:
            await self.worker.start(engine, self.settings.scripts_dir())
        except InitError as e:
            self.native_available = False
            if e.missing_dependencies:
                notice = FallbackNotice(
                    NoticeKind.MISSING_DEPENDENCIES, remediation_message(e.missing_dependencies), e.missing_dependencies
                )
            else:
                notice = FallbackNotice(NoticeKind.GENERIC, f"The native R engine could not be started: {e}")
            logger.warning(f"[orchestrator] native init failed: {notice.message}")
            choice = await self._ask(notice)
            logger.info(f"[orchestrator] fallback choice={choice.value}")
            if choice is FallbackChoice.CANCEL:
                self._state = BackendState.UNAVAILABLE
                raise BackendUnavailableError(notice.message) from e
            if choice is FallbackChoice.DEFAULT:
                try:
                    self.settings.set_backend_mode(BackendMode.EMBEDDED)
                except OSError as err:
                    logger.warning(f"[orchestrator] could not persist backend mode: {err}")
            return False
        self.native_available = True
        self._state = BackendState.NATIVE_READY
        return True

    async def _start_embedded(self) -> None:
        self._state = BackendState.INITIALIZING_EMBEDDED
        try:
            await self.embedded.initialize()
        except InitError as e:
            self._state = BackendState.UNAVAILABLE
            self.notices.append(FallbackNotice(NoticeKind.GENERIC, f"The embedded engine could not be started: {e}"))
            raise BackendUnavailableError(str(e)) from e
        self._state = BackendState.EMBEDDED_READY
        logger.info("[orchestrator] embedded engine ready")

    def _begin_crash_fallback(self) -> None:
        if self._state is not BackendState.NATIVE_READY:
            return  # another caller already switched
        logger.warning("[orchestrator] native engine lost; switching to embedded engine for this session")
        self._engine_path = None
        self._native_disabled = True
        self.native_available = False
        self.worker.stop()
        self._state = BackendState.INITIALIZING_EMBEDDED
        self._init_task = asyncio.get_running_loop().create_task(self._start_embedded())

    # ------------------------------------------------------------------
    # user interaction
    async def _headless_prompt(self, notice: FallbackNotice) -> str:
        return str(self.settings.section("fallback").get("default_choice") or "once").strip().lower()

    async def _ask(self, notice: FallbackNotice) -> FallbackChoice:
        self.notices.append(notice)
        answer = self._prompt(notice)
        if inspect.isawaitable(answer):
            answer = await answer
        try:
            return FallbackChoice(answer)
        except ValueError:
            logger.warning(f"[orchestrator] unknown fallback choice {answer!r}; using embedded once")
            return FallbackChoice.ONCE

    async def _emit(self, notice: FallbackNotice) -> None:
        self.notices.append(notice)
        logger.info(f"[orchestrator] notice {notice.kind.value}: {notice.message}")
        if self._notify is None:
            return
        res = self._notify(notice)
        if inspect.isawaitable(res):
            await res

    # ------------------------------------------------------------------
    # evaluation
    async def evaluate(self, expr: str) -> str:
        """Evaluate on the active backend, falling back once on a native crash."""
        await self.ensure_ready()
        if self._state is BackendState.NATIVE_READY:
            try:
                return await self.worker.eval_string(expr)
            except TransportError as e:
                logger.warning(f"[orchestrator] native transport failure: {e}")
                self._begin_crash_fallback()
                await self.ensure_ready()
        return await self.embedded.eval_string(expr)

    async def load_codebook(self, path: Union[str, Path]) -> NormalizedNode:
        p = Path(path)
        if not p.is_file():
            raise FileNotFoundError(f"codebook not found: {p}")
        text = await self.evaluate(load_codebook_expr(p.resolve().as_posix()))
        raw = _decode_json(text, f"load_codebook({p.name})")
        logger.debug(f"[orchestrator] codebook payload {summarize_for_log(raw)}")
        return normalize_codebook(raw)

    async def _build_catalog(self) -> Catalog:
        raw = _decode_json(await self.evaluate(CATALOG_EXPR), "catalog")
        if not isinstance(raw, dict) or "tree" not in raw:
            raise EvaluationError("catalog payload lacks a tree")
        elements = raw.get("elements") or {}
        if not isinstance(elements, dict):
            raise EvaluationError("catalog elements must be a mapping")
        logger.debug(f"[orchestrator] catalog elements {summarize_for_log(elements)}")
        return Catalog(tree=normalize_codebook(raw["tree"]), elements=elements)

    async def _engine_identity(self) -> Optional[str]:
        try:
            return (await self.evaluate(ENGINE_VERSION_EXPR)) or None
        except EvaluationError as e:
            logger.debug(f"[orchestrator] engine identity unavailable: {e}")
            return None

    def _get_cache(self) -> StructureCache:
        if self.cache is None:
            self.cache = StructureCache(
                self.settings.cache_dir(),
                version=__version__,
                asset_paths=self.settings.asset_paths(),
            )
        return self.cache

    async def _load_catalog(self) -> Catalog:
        await self.ensure_ready()
        cache = self._get_cache()
        if self.settings.section("cache").get("include_engine_identity", True):
            cache.engine_identity = await self._engine_identity()
        catalog = await cache.get_or_build(self._build_catalog)
        for listener in list(self._listeners):
            try:
                res = listener(catalog)
                if inspect.isawaitable(res):
                    await res
            except Exception:  # noqa: BLE001
                logger.exception("[orchestrator] catalog listener failed")
        return catalog

    async def get_catalog(self, rebuild: bool = False) -> Catalog:
        if rebuild:
            self._get_cache().invalidate()
            if self._catalog_task is not None and self._catalog_task.done():
                self._catalog_task = None
        if self._catalog_task is None:
            self._catalog_task = asyncio.get_running_loop().create_task(self._load_catalog())
        task = self._catalog_task
        try:
            return await asyncio.shield(task)
        except Exception:
            if self._catalog_task is task:
                self._catalog_task = None
            raise

    # ------------------------------------------------------------------
    def shutdown(self) -> None:
        self.worker.stop()
        self.embedded.shutdown()
        self._state = BackendState.IDLE
        self._init_task = None
        self._catalog_task = None


__all__ = [
    "BackendOrchestrator",
    "BackendState",
    "FallbackChoice",
    "FallbackNotice",
    "NoticeKind",
    "remediation_message",
]
