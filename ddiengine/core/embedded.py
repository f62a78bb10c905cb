"""In-process engine used when the native subprocess is unavailable.

The interpreter lives on one dedicated executor thread: it is created there,
and every evaluation is submitted there in order. Initialization mounts the
bundled package archive (a ``.tar.gz`` of an R library, extracted once),
extends the interpreter's library search path, loads the packages and
sources the helper scripts. It is memoized; concurrent callers share the
in-flight task.

The default interpreter is embedded R through rpy2 (optional dependency).
Another implementation may be configured as ``"module:Class"``.
"""
from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from importlib import import_module
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Union
import asyncio
import hashlib
import tarfile

from loguru import logger

from .errors import ConfigError, EmbeddedInitError, EvaluationError
from .expressions import lib_paths_expr, source_expr
from .worker_protocol import result_text

DEFAULT_PACKAGES = ("DDIwR",)
MOUNT_MARKER = ".ddiengine-mount"


class RInterpreter:
    """Embedded R via rpy2."""

    def __init__(self):
        try:
            import rpy2.robjects as robjects  # type: ignore
        except ImportError as e:
            raise EmbeddedInitError(
                "Embedded engine requires rpy2 (pip install 'ddiengine[embedded]')"
            ) from e
        self._r = robjects.r

    def eval(self, expr: str) -> None:
        self._r(expr)

    def eval_string(self, expr: str) -> str:
        res = self._r(expr)
        if res is None or len(res) == 0:
            return ""
        values = list(res)
        return result_text(values[0] if len(values) == 1 else values)


InterpreterFactory = Callable[[], Any]


def resolve_interpreter(entry: Union[str, InterpreterFactory, None]) -> InterpreterFactory:
    """``None`` -> RInterpreter; ``"module:Class"`` -> imported class; callables pass through."""
    if entry is None:
        return RInterpreter
    if callable(entry):
        return entry
    if ":" not in entry:
        raise ConfigError(f"interpreter entry must be 'module:Class', got {entry!r}")
    module_name, class_name = entry.split(":", 1)
    mod = import_module(module_name)
    try:
        return getattr(mod, class_name)
    except AttributeError as e:
        raise ConfigError(f"{module_name} has no attribute {class_name}") from e


def _sha256(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()


def mount_archive(archive: Path, target: Path) -> bool:
    """Extract ``archive`` into ``target`` unless that exact archive is already there.

    Returns True when an extraction happened.
    """
    digest = _sha256(archive)
    marker = target / MOUNT_MARKER
    if marker.exists() and marker.read_text(encoding="utf-8").strip() == digest:
        return False
    target.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive, "r:*") as tar:
        if hasattr(tarfile, "data_filter"):
            tar.extractall(target, filter="data")
        else:  # pragma: no cover - interpreters without extraction filters
            tar.extractall(target)
    marker.write_text(digest, encoding="utf-8")
    logger.info(f"[embedded] mounted {archive.name} into {target}")
    return True


class EmbeddedEngine:
    def __init__(
        self,
        interpreter_factory: Union[str, InterpreterFactory, None] = None,
        library_archive: Optional[Union[str, Path]] = None,
        library_dir: Optional[Union[str, Path]] = None,
        scripts_dir: Optional[Union[str, Path]] = None,
        packages: Sequence[str] = DEFAULT_PACKAGES,
    ):
        self._factory_entry = interpreter_factory
        self.library_archive = Path(library_archive) if library_archive else None
        self.library_dir = Path(library_dir) if library_dir else None
        self.scripts_dir = Path(scripts_dir) if scripts_dir else None
        self.packages = list(packages)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._interp: Any = None
        self._init_task: Optional[asyncio.Task] = None

    @property
    def ready(self) -> bool:
        return self._interp is not None

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ddiengine-embedded")
        return self._executor

    # ------------------------------------------------------------------
    def _boot(self) -> Any:
        """Runs on the interpreter thread."""
        try:
            factory = resolve_interpreter(self._factory_entry)
            lib_dirs: List[Path] = []
            if self.library_archive is not None:
                if self.library_dir is None:
                    raise ConfigError("library_dir is required to mount a package archive")
                mount_archive(self.library_archive, self.library_dir)
            if self.library_dir is not None:
                lib_dirs.append(self.library_dir)
            interp = factory()
            for d in lib_dirs:
                interp.eval(lib_paths_expr(d.as_posix()))
            for pkg in self.packages:
                interp.eval(f"suppressPackageStartupMessages(library({pkg}))")
            if self.scripts_dir is not None and (self.scripts_dir / "utils.R").exists():
                interp.eval(source_expr(self.scripts_dir / "utils.R"))
            return interp
        except EmbeddedInitError:
            raise
        except Exception as e:  # noqa: BLE001
            raise EmbeddedInitError(f"Embedded engine failed to initialize: {e}") from e

    async def _initialize(self) -> None:
        loop = asyncio.get_running_loop()
        logger.info("[embedded] initializing interpreter")
        self._interp = await loop.run_in_executor(self._get_executor(), self._boot)
        logger.info("[embedded] interpreter ready")

    async def initialize(self) -> None:
        if self._interp is not None:
            return
        if self._init_task is None:
            self._init_task = asyncio.get_running_loop().create_task(self._initialize())
        task = self._init_task
        try:
            await asyncio.shield(task)
        except EmbeddedInitError:
            if self._init_task is task:
                self._init_task = None  # allow a later retry
            raise

    # ------------------------------------------------------------------
    async def _call(self, method: str, expr: str):
        await self.initialize()
        interp = self._interp

        def run():
            try:
                return getattr(interp, method)(expr)
            except Exception as e:  # noqa: BLE001
                raise EvaluationError(str(e) or type(e).__name__) from e

        return await asyncio.get_running_loop().run_in_executor(self._get_executor(), run)

    async def eval_void(self, expr: str) -> None:
        await self._call("eval", expr)

    async def eval_string(self, expr: str) -> str:
        return result_text(await self._call("eval_string", expr))

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        self._interp = None
        self._init_task = None


__all__ = ["EmbeddedEngine", "RInterpreter", "resolve_interpreter", "mount_archive"]
