"""Core engine backend components.

Modules:
  worker_protocol: line codec for the native engine (wrapped statements out, JSON lines in).
  process_manager: NativeWorker, supervisor of the native engine subprocess.
  embedded: EmbeddedEngine, in-process fallback interpreter.
  orchestrator: BackendOrchestrator, backend selection, fallback and consumer entry points.
  structure_cache: content-addressed cache for the structure catalog.
  normalizer: engine codebook output -> NormalizedNode tree.
  engine_locator: native engine discovery.
  expressions: engine expressions shared by both backends.
"""

from .errors import EngineError  # noqa: F401
from .normalizer import NormalizedNode, normalize_codebook  # noqa: F401
