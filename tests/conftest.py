import sys
from pathlib import Path

import pytest

# Make test helpers (fakes, payloads) importable from test modules
TESTS_ROOT = Path(__file__).resolve().parent
if str(TESTS_ROOT) not in sys.path:
    sys.path.insert(0, str(TESTS_ROOT))

from fakes import FakeInterpreter  # noqa: E402
from ddiengine.config.settings import Settings  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_fakes():
    FakeInterpreter.reset()
    yield
    FakeInterpreter.reset()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    s = Settings(tmp_path / "config" / "ddiengine.yml")
    s.save({"cache": {"dir": str(tmp_path / "cache")}, "embedded": {"packages": ["DDIwR"]}})
    return s


@pytest.fixture
def codebook_file(tmp_path: Path) -> Path:
    p = tmp_path / "survey.xml"
    p.write_text("<codeBook/>", encoding="utf-8")
    return p
