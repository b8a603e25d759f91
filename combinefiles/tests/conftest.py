import io
import logging
import shutil
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from combinefiles.core.sinks import ConsoleSink
from combinefiles.service.app import app, init_service, state


def make_text(prefix: str, tokens_per_line) -> str:
    """One line per entry; an entry of 0 yields a blank line."""
    lines = []
    for n, count in enumerate(tokens_per_line):
        lines.append(" ".join(f"{prefix}{n}w{i}" for i in range(count)))
    return "\n".join(lines) + "\n"


@pytest.fixture(autouse=True)
def _restore_core_logger_level():
    """JobRunner raises the core logger's level process-wide; keep that from leaking across tests."""
    core_logger = logging.getLogger("combinefiles.core")
    level = core_logger.level
    yield
    core_logger.setLevel(level)


@pytest.fixture
def src(tmp_path):
    d = tmp_path / "src"
    d.mkdir()
    return d


@pytest.fixture
def write_tokens(src):
    """write_tokens("a.txt", [10, 5]) -> absolute path of a file with those token counts per line."""
    def _write(rel: str, tokens_per_line, root: Path = None) -> str:
        p = (root or src) / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(make_text(p.stem.replace("-", "_"), tokens_per_line), encoding="utf-8")
        return str(p)
    return _write


@pytest.fixture
def console():
    return ConsoleSink(io.StringIO())


@pytest.fixture
def service_client():
    temp_dir = tempfile.mkdtemp()
    root = Path(temp_dir) / "root"
    root.mkdir()
    (root / "project").mkdir()
    (root / "project" / "main.py").write_text("print('hello world')\n", encoding="utf-8")
    (root / "project" / "README.md").write_text("# Project\n\nSome words here\n", encoding="utf-8")

    token = "test-token-123"
    init_service(root, token=token)

    client = TestClient(app)
    auth_headers = {"Authorization": f"Bearer {token}"}

    class Context:
        def __init__(self):
            self.client = client
            self.headers = auth_headers
            self.store = state.job_store
            self.root = root.resolve()
            self.output_dir = state.output_dir
            self.runner = state.runner

    yield Context()

    state.runner.shutdown(wait=True)
    shutil.rmtree(temp_dir, ignore_errors=True)
