"""Supervisor for the persistent native engine process.

One ``NativeWorker`` owns one subprocess at a time. Requests are written as
single-line statements on stdin and matched to JSON replies on stdout by
correlation id; stderr is diagnostics only. Lifecycle:

    NOT_STARTED -> STARTING -> READY -> STOPPED
                          \\-> FAILED_INIT

FAILED_INIT and STOPPED are terminal for the process instance; calling
``start`` again spawns a fresh one.
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Union
import asyncio
import itertools

from loguru import logger

from .errors import EvaluationError, InitError, TransportError, WorkerNotReadyError
from .worker_protocol import (
    ENGINE_FLAGS,
    InitMessage,
    RequestKind,
    ResultMessage,
    decode,
    encode_bootstrap,
    encode_eval,
    encode_void,
    result_text,
)

DEFAULT_INIT_TIMEOUT_S = 8.0
# catalog replies arrive as one (large) JSON line
DEFAULT_LINE_LIMIT = 64 * 1024 * 1024


class WorkerState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"
    FAILED_INIT = "failed_init"
    STOPPED = "stopped"


@dataclass
class ExecutionRequest:
    id: int
    kind: RequestKind
    expression: str
    future: asyncio.Future


class NativeWorker:
    def __init__(
        self,
        init_timeout: float = DEFAULT_INIT_TIMEOUT_S,
        engine_args: Sequence[str] = ENGINE_FLAGS,
        env: Optional[Mapping[str, str]] = None,
        line_limit: int = DEFAULT_LINE_LIMIT,
    ):
        self.init_timeout = init_timeout
        self.engine_args = list(engine_args)
        self.env = dict(env) if env is not None else None
        self.line_limit = line_limit
        self._state = WorkerState.NOT_STARTED
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._ready: Optional[asyncio.Future] = None
        self._generation = 0
        self._tasks: list = []
        self._pending: Dict[int, ExecutionRequest] = {}
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc is not None else None

    # ------------------------------------------------------------------
    def start(self, engine_path: Union[str, Path], library_dir: Union[str, Path]) -> asyncio.Future:
        """Spawn the engine and run the bootstrap handshake.

        Returns the shared readiness future; calling again while starting (or
        once ready) hands back the same object.
        """
        if self._ready is not None:
            return self._ready
        loop = asyncio.get_running_loop()
        self._generation += 1
        self._ids = itertools.count(1)
        self._pending.clear()
        self._state = WorkerState.STARTING
        ready = loop.create_future()
        timer = loop.call_later(self.init_timeout, self._on_init_timeout, ready)
        ready.add_done_callback(lambda fut: _on_ready_done(fut, timer))
        self._ready = ready
        loop.create_task(self._launch(str(engine_path), str(library_dir), self._generation))
        return ready

    async def _launch(self, engine_path: str, library_dir: str, generation: int) -> None:
        cmd = [engine_path, *self.engine_args]
        logger.debug(f"[native] spawn cmd={' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                limit=self.line_limit,
            )
        except OSError as e:
            if generation == self._generation:
                self._fail_init(InitError(f"Failed spawning native engine {engine_path}: {e}"))
            return
        if generation != self._generation or self._state is not WorkerState.STARTING:
            # stopped (or restarted) while the spawn was in flight
            _kill(proc)
            return
        self._proc = proc
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._read_stdout(proc)),
            loop.create_task(self._read_stderr(proc)),
        ]
        try:
            self._write(encode_bootstrap(library_dir))
        except TransportError as e:
            self._fail_init(InitError(str(e)))

    def _on_init_timeout(self, ready: asyncio.Future) -> None:
        if ready is self._ready and not ready.done():
            logger.warning(f"[native] no init message within {self.init_timeout}s")
            self._fail_init(InitError("Native engine did not initialize in time"))

    def _fail_init(self, err: InitError) -> None:
        ready = self._ready
        self._teardown(TransportError(str(err) or "Native engine failed to initialize"))
        self._state = WorkerState.FAILED_INIT
        if ready is not None and not ready.done():
            ready.set_exception(err)

    # ------------------------------------------------------------------
    async def _read_stdout(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stdout is not None
        try:
            async for raw in proc.stdout:
                if proc is not self._proc:
                    return
                self._handle_line(raw.decode("utf-8", errors="replace"))
        except (ValueError, asyncio.LimitOverrunError) as e:
            logger.error(f"[native] stdout line exceeded limit ({self.line_limit} bytes): {e}")
            _kill(proc)
        returncode = await proc.wait()
        if proc is self._proc:
            self._on_exit(returncode)

    async def _read_stderr(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stderr is not None
        try:
            async for raw in proc.stderr:
                msg = raw.decode("utf-8", errors="replace").strip()
                if msg:
                    logger.debug(f"[native stderr] {msg}")
        except (ValueError, asyncio.LimitOverrunError):
            logger.warning("[native] stderr line exceeded limit; diagnostics dropped")

    def _handle_line(self, line: str) -> None:
        msg = decode(line)
        if msg is None:
            return
        if isinstance(msg, InitMessage):
            if self._state is not WorkerState.STARTING:
                return
            if msg.ok:
                self._state = WorkerState.READY
                logger.info(f"[native] engine ready pid={self.pid}")
                if self._ready is not None and not self._ready.done():
                    self._ready.set_result(None)
            else:
                # a concrete missing list is the message; otherwise keep the engine's text
                message = "" if msg.missing else (msg.message or "Native engine initialization failed")
                logger.warning(f"[native] init failed missing={list(msg.missing)} message={msg.message!r}")
                self._fail_init(InitError(message, msg.missing))
            return
        if self._state is not WorkerState.READY:
            return
        req = self._pending.pop(msg.id, None)
        if req is None:
            logger.debug(f"[native] reply for unknown id={msg.id}")
            return
        self._resolve(req, msg)

    @staticmethod
    def _resolve(req: ExecutionRequest, msg: ResultMessage) -> None:
        if req.future.done():
            return
        if not msg.ok:
            req.future.set_exception(EvaluationError(msg.message or "Native engine error"))
        elif req.kind is RequestKind.STRING:
            req.future.set_result(result_text(msg.result))
        else:
            req.future.set_result(None)

    def _on_exit(self, returncode: Optional[int]) -> None:
        logger.info(f"[native] engine exited returncode={returncode}")
        if self._state is WorkerState.STARTING:
            self._fail_init(InitError(f"Native engine exited before initialization (code {returncode})"))
            return
        self._teardown(TransportError("Native engine session terminated"))
        self._state = WorkerState.STOPPED

    # ------------------------------------------------------------------
    def _write(self, line: str) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None or proc.stdin.is_closing():
            raise TransportError("Native engine stdin is closed")
        try:
            proc.stdin.write(line.encode("utf-8"))
        except (BrokenPipeError, ConnectionResetError) as e:
            raise TransportError(f"Failed to send expression to native engine: {e}") from e

    async def _submit(self, kind: RequestKind, expr: str):
        if self._state is not WorkerState.READY or self._proc is None:
            raise WorkerNotReadyError("Native engine session is not initialized")
        request_id = next(self._ids)
        fut = asyncio.get_running_loop().create_future()
        req = ExecutionRequest(id=request_id, kind=kind, expression=expr, future=fut)
        self._pending[request_id] = req
        line = encode_eval(expr, request_id) if kind is RequestKind.STRING else encode_void(expr, request_id)
        try:
            self._write(line)
        except TransportError:
            self._pending.pop(request_id, None)
            raise
        logger.debug(f"[native] sent id={request_id} kind={kind.value}")
        try:
            return await fut
        finally:
            self._pending.pop(request_id, None)

    async def eval_void(self, expr: str) -> None:
        await self._submit(RequestKind.VOID, expr)

    async def eval_string(self, expr: str) -> str:
        return await self._submit(RequestKind.STRING, expr)

    # ------------------------------------------------------------------
    def stop(self) -> None:
        """Kill the engine, reject everything pending and allow a new start."""
        if self._state is WorkerState.NOT_STARTED:
            return
        ready = self._ready
        if self._proc is not None:
            logger.debug(f"[native] stopping pid={self.pid}")
        self._teardown(TransportError("Native engine session stopped"))
        if ready is not None and not ready.done():
            ready.set_exception(InitError("Native engine session stopped during initialization"))
        self._state = WorkerState.STOPPED

    def _teardown(self, err: TransportError) -> None:
        self._generation += 1
        proc, self._proc = self._proc, None
        if proc is not None:
            _kill(proc)
        pending = list(self._pending.values())
        self._pending.clear()
        for req in pending:
            if not req.future.done():
                req.future.set_exception(err)
        if pending:
            logger.warning(f"[native] rejected {len(pending)} pending request(s): {err}")
        current = asyncio.current_task() if _loop_running() else None
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        self._tasks = []
        self._ready = None


def _on_ready_done(fut: asyncio.Future, timer: asyncio.TimerHandle) -> None:
    timer.cancel()
    if not fut.cancelled():
        fut.exception()  # mark retrieved; awaiting callers still see it


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


__all__ = ["NativeWorker", "WorkerState", "ExecutionRequest", "DEFAULT_INIT_TIMEOUT_S"]
