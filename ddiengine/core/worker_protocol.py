"""Line protocol spoken with the native engine process.

Outgoing (stdin), one R statement per line:
    bootstrap:  .mp_libdir <- "<dir>"; source(file.path(.mp_libdir, "dependencies.R"))
    void:       tryCatch({ invisible(eval(parse(text = "<expr>"))); cat(<{"id":N,"status":"ok"}>) }, error = ...)
    eval:       tryCatch({ .mp_res <- eval(parse(text = "<expr>")); cat(<{"id":N,"status":"ok","result":...}>) }, error = ...)

The expression travels as a string literal, so it may span lines and a
parse error is reported like any other evaluation error.

Incoming (stdout), one JSON object per line:
    {"type": "init", "status": "ok"|"error", "missing": [...], "message": "..."}
    {"id": N, "status": "ok"|"error", "result": ..., "message": "..."}

Anything else on stdout (package startup chatter, stray prints) is noise and
is dropped by ``decode``.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple, Union
import json

from loguru import logger

from .errors import ProtocolError

# R binary startup flags: no site/user profiles, no echo, no workspace.
ENGINE_FLAGS = ("--vanilla", "--quiet", "--no-save", "--no-restore", "--slave")

_OK_JSON = 'cat(jsonlite::toJSON(list(id = {id}L, status = "ok"{extra}), auto_unbox = TRUE, null = "null", digits = NA), "\\n", sep = "")'
_ERR_JSON = (
    'error = function(e) cat(jsonlite::toJSON(list(id = {id}L, status = "error", '
    'message = conditionMessage(e)), auto_unbox = TRUE), "\\n", sep = "")'
)


class RequestKind(str, Enum):
    VOID = "void"
    STRING = "string"


@dataclass(frozen=True)
class InitMessage:
    ok: bool
    missing: Tuple[str, ...] = ()
    message: Optional[str] = None


@dataclass(frozen=True)
class ResultMessage:
    id: int
    ok: bool
    result: Any = None
    message: Optional[str] = None


ProtocolMessage = Union[InitMessage, ResultMessage]


def r_string(text: str) -> str:
    """Quote ``text`` as an R string literal (JSON escapes are valid R escapes)."""
    return json.dumps(str(text), ensure_ascii=False)


def _parsed(expr: str) -> str:
    # parse errors surface inside tryCatch instead of at the REPL
    return f"eval(parse(text = {r_string(expr)}), envir = globalenv())"


def encode_bootstrap(library_dir: str) -> str:
    fallback = (
        'cat(sprintf(\'{"type":"init","status":"error","message":%s}\', '
        'encodeString(conditionMessage(e), quote = \'"\')), "\\n", sep = "")'
    )
    return (
        f".mp_libdir <- {r_string(library_dir)}; "
        f'tryCatch(source(file.path(.mp_libdir, "dependencies.R")), error = function(e) {fallback}); '
        "flush(stdout())\n"
    )


def encode_void(expr: str, request_id: int) -> str:
    ok = _OK_JSON.format(id=request_id, extra="")
    err = _ERR_JSON.format(id=request_id)
    return f"tryCatch({{ invisible({_parsed(expr)}); {ok} }}, {err}); flush(stdout())\n"


def encode_eval(expr: str, request_id: int) -> str:
    ok = _OK_JSON.format(id=request_id, extra=", result = .mp_res")
    err = _ERR_JSON.format(id=request_id)
    return f"tryCatch({{ .mp_res <- {_parsed(expr)}; {ok} }}, {err}); flush(stdout())\n"


def result_text(value: Any) -> str:
    """Text form of an engine result, shared by both backends.

    Character results come back as-is; other values are rendered as JSON
    (``TRUE`` -> ``true``, ``c(1, 2)`` -> ``[1, 2]``).
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(_plain(value), ensure_ascii=False, default=str)


def _plain(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    return value


def _as_names(raw: Any) -> Tuple[str, ...]:
    if isinstance(raw, list):
        return tuple(str(x) for x in raw)
    if isinstance(raw, str) and raw:
        return (raw,)
    return ()


def parse_line(line: str) -> ProtocolMessage:
    """Parse one stdout line; raise ProtocolError if it is not a protocol message."""
    text = line.strip()
    if not text:
        raise ProtocolError("empty line")
    try:
        payload = json.loads(text)
    except ValueError as e:
        raise ProtocolError(f"not JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ProtocolError("JSON payload is not an object")
    status = payload.get("status")
    message = payload.get("message")
    if message is not None:
        message = str(message)
    if payload.get("type") == "init":
        return InitMessage(ok=status == "ok", missing=_as_names(payload.get("missing")), message=message)
    rid = payload.get("id")
    if isinstance(rid, float) and rid.is_integer():
        rid = int(rid)
    if isinstance(rid, bool) or not isinstance(rid, int):
        raise ProtocolError("missing correlation id")
    if status not in ("ok", "error"):
        raise ProtocolError(f"unknown status {status!r}")
    return ResultMessage(id=rid, ok=status == "ok", result=payload.get("result"), message=message)


def decode(line: str) -> Optional[ProtocolMessage]:
    try:
        return parse_line(line)
    except ProtocolError as e:
        if line.strip():
            logger.debug(f"[protocol] ignoring non-protocol line ({e}): {line.strip()[:200]}")
        return None


__all__ = [
    "ENGINE_FLAGS",
    "RequestKind",
    "InitMessage",
    "ResultMessage",
    "ProtocolMessage",
    "r_string",
    "result_text",
    "encode_bootstrap",
    "encode_void",
    "encode_eval",
    "parse_line",
    "decode",
]
