"""
cmdgate - Test Configuration

Repo root discovery and shared fixtures.
"""

import logging
import os
import subprocess
import sys
from pathlib import Path

import pytest


def discover_repo_root() -> Path:
    """
    Discover the repository root.

    Priority:
    1. CMDGATE_REPO_ROOT environment variable
    2. Git rev-parse --show-toplevel
    3. Path traversal from conftest.py location

    Returns:
        Path to repository root

    Raises:
        RuntimeError: If repo root cannot be discovered
    """
    env_root = os.environ.get("CMDGATE_REPO_ROOT")
    if env_root:
        root = Path(env_root)
        if root.is_dir() and (root / "pyproject.toml").is_file():
            return root

    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            capture_output=True,
            text=True,
            check=True,
            cwd=Path(__file__).parent,
        )
        git_root = Path(result.stdout.strip())
        if git_root.is_dir() and (git_root / "cmdgate").is_dir():
            return git_root
    except (subprocess.CalledProcessError, FileNotFoundError):
        pass

    current = Path(__file__).resolve().parent
    for _ in range(10):
        if (current / "pyproject.toml").is_file():
            return current
        parent = current.parent
        if parent == current:
            break
        current = parent

    raise RuntimeError(
        "Could not discover repo root. Set CMDGATE_REPO_ROOT environment variable "
        "or ensure tests are run from within the repository."
    )


REPO_ROOT = discover_repo_root()

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


class FakeClock:
    """Manually advanced monotonic clock, in seconds."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000


@pytest.fixture(scope="session")
def repo_root() -> Path:
    """Fixture providing the repository root path."""
    return REPO_ROOT


@pytest.fixture(scope="session")
def config_dir(repo_root: Path) -> Path:
    """Fixture providing the shipped configuration directory."""
    return repo_root / "config"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """
    Fixture providing a populated workspace directory.

    Layout:
        notes.txt
        src/app.py
        src/util.js
        data/report.csv
        .env
    """
    root = tmp_path / "workspace"
    (root / "src").mkdir(parents=True)
    (root / "data").mkdir()
    (root / "notes.txt").write_text("alpha\nbeta\ngamma\n")
    (root / "src" / "app.py").write_text("print('hello')\n")
    (root / "src" / "util.js").write_text("module.exports = {};\n")
    (root / "data" / "report.csv").write_text("a,b\n1,2\n")
    (root / ".env").write_text("TOKEN=abc\n")
    return root


@pytest.fixture
def config(workspace: Path):
    """
    Fixture providing an engine config suited to tests.

    Tool verification is off and rate limits are generous so that
    pipeline tests are not throttled.
    """
    from cmdgate.core.config import Config

    return Config.from_dict({
        "workspace": str(workspace),
        "verify_tools": False,
        "rate_limit": {
            "max_requests": 1000,
            "burst_limit": 1000,
            "enable_anomaly_detection": False,
        },
    })


@pytest.fixture
def restore_root_logger():
    """Fixture restoring root logger handlers replaced by setup_logging."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)
