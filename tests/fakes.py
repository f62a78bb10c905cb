"""In-process test doubles."""
import json
import os
import sys
from pathlib import Path

from ddiengine.core.expressions import CATALOG_EXPR, ENGINE_VERSION_EXPR
from ddiengine.core.process_manager import NativeWorker

from payloads import ENGINE_VERSION, catalog_payload, codebook_payload

FAKE_ENGINE = str(Path(__file__).resolve().parent / "fake_engine.py")


class FakeInterpreter:
    """Embedded interpreter double; records every expression it sees."""

    instances = 0
    fail_init = False
    last = None

    def __init__(self):
        type(self).instances += 1
        if type(self).fail_init:
            raise RuntimeError("R shared library not found")
        self.evaluated = []
        type(self).last = self

    def eval(self, expr):
        self.evaluated.append(expr)
        if expr.startswith("stop("):
            raise RuntimeError(json.loads(expr[5:-1]))

    def eval_string(self, expr):
        self.evaluated.append(expr)
        if expr == ENGINE_VERSION_EXPR:
            return ENGINE_VERSION
        if expr == CATALOG_EXPR:
            return json.dumps(catalog_payload("embedded"))
        if expr.startswith("ddi_json(normalize_codebook("):
            return json.dumps(codebook_payload("embedded"))
        if expr.startswith("stop("):
            raise RuntimeError(json.loads(expr[5:-1]))
        raise RuntimeError(f'could not find function "{expr}"')

    @classmethod
    def reset(cls):
        cls.instances = 0
        cls.fail_init = False
        cls.last = None


def fake_worker(mode="ok", missing=None, init_timeout=5.0):
    env = dict(os.environ)
    env["FAKE_ENGINE_MODE"] = mode
    env["PYTHONUNBUFFERED"] = "1"
    if missing:
        env["FAKE_ENGINE_MISSING"] = ",".join(missing)
    return NativeWorker(init_timeout=init_timeout, engine_args=[FAKE_ENGINE], env=env)


ENGINE = sys.executable
