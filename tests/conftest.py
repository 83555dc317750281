"""Test fixtures and utilities for lxrenv."""

import os
import shutil
import sys
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest

import lxrenv


requires_git = pytest.mark.skipif(
    shutil.which("git") is None, reason="git is not installed"
)

requires_posix = pytest.mark.skipif(
    os.name == "nt", reason="fake tools are POSIX scripts"
)


FAKE_UPDATE_PY = """#!{python}
import os
import sys
from pathlib import Path

repo = Path(os.environ["LXR_REPO_DIR"])
data = Path(os.environ["LXR_DATA_DIR"])
with open({log!r}, "a") as log:
    log.write(f"{{repo}} {{data}}\\n")

code = int(os.environ.get("FAKE_UPDATE_EXIT", "0"))
if code:
    print("indexing exploded", file=sys.stderr)
    sys.exit(code)

data.mkdir(parents=True, exist_ok=True)
files = sorted(
    p.relative_to(repo).as_posix()
    for p in repo.rglob("*")
    if p.is_file() and ".git" not in p.relative_to(repo).parts
)
(data / "files.txt").write_text("\\n".join(files) + "\\n")
"""

FAKE_QUERY_PY = """#!{python}
import os
import sys

print(os.environ.get("LXR_DATA_DIR", ""), *sys.argv[1:])
sys.exit(int(os.environ.get("FAKE_QUERY_EXIT", "0")))
"""

FAKE_SCRIPT_SH = """#!/bin/sh
echo "$LXR_REPO_DIR" "$@"
"""


@pytest.fixture
def env_vars(monkeypatch: Any) -> Callable:
    """Manage environment variables for tests.

    Usage:
        def test_something(env_vars):
            env_vars({'ELIXIR_INSTALL': '/opt/elixir', 'LXR_DATA_DIR': None})
            # Variables are set (or removed) for this test and restored after
    """

    def _set_env(vars_dict: dict[str, str | None]) -> None:
        for key, value in vars_dict.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, value)

    return _set_env


@pytest.fixture(autouse=True)
def clean_lxr_env(monkeypatch: Any) -> None:
    """Start every test without LXR_* or ELIXIR_INSTALL variables."""
    for var in [
        "LXR_REPO_DIR",
        "LXR_DATA_DIR",
        "LXR_UPDATE_PY",
        "LXR_QUERY_PY",
        "LXR_SCRIPT_SH",
        "LXR_NO_PATH_LOOKUP",
        "LXR_PROJECTS_ROOT",
        "ELIXIR_INSTALL",
        "FAKE_UPDATE_EXIT",
        "FAKE_QUERY_EXIT",
    ]:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture(autouse=True)
def restore_logger() -> Iterator[None]:
    """Undo setup_logging() handler changes made by a test."""
    handlers, level = lxrenv.logger.handlers[:], lxrenv.logger.level
    yield
    for handler in lxrenv.logger.handlers:
        if handler not in handlers:
            handler.close()
    lxrenv.logger.handlers = handlers
    lxrenv.logger.setLevel(level)


@pytest.fixture(autouse=True)
def fake_home(tmp_path: Path, monkeypatch: Any) -> Path:
    """Point HOME at an empty directory so log files and git config stay local."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
    return home


@pytest.fixture
def elixir_install(tmp_path: Path) -> Path:
    """Create a fake Elixir checkout with executable update.py, query.py and script.sh.

    update.py appends "<repo> <data>" to update_calls.log beside the checkout
    and writes data/files.txt listing the repository files. Set
    FAKE_UPDATE_EXIT to make it fail.

    Returns:
        Path to the fake checkout.
    """
    install = tmp_path / "elixir"
    install.mkdir()
    log_path = tmp_path / "update_calls.log"

    scripts = {
        "update.py": FAKE_UPDATE_PY.format(python=sys.executable, log=str(log_path)),
        "query.py": FAKE_QUERY_PY.format(python=sys.executable),
        "script.sh": FAKE_SCRIPT_SH,
    }
    for name, content in scripts.items():
        path = install / name
        path.write_text(content)
        path.chmod(0o755)

    return install


@pytest.fixture
def update_calls(tmp_path: Path) -> Callable[[], list[tuple[str, str]]]:
    """Return a reader for the (repo, data) pairs the fake update.py saw."""
    log_path = tmp_path / "update_calls.log"

    def _read() -> list[tuple[str, str]]:
        if not log_path.exists():
            return []
        return [tuple(line.split(" ", 1)) for line in log_path.read_text().splitlines()]

    return _read


@pytest.fixture
def tool_search(elixir_install: Path) -> lxrenv.ToolSearch:
    """A tool search that only looks in the fake checkout."""
    return lxrenv.ToolSearch(install_dirs=(elixir_install,), path_lookup=False)


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    """Create a small source tree to index.

    Creates:
        <tmp_path>/src/
            a.txt
            include/linux/list.h
            kernel/sched.c
    """
    src = tmp_path / "src"
    (src / "include" / "linux").mkdir(parents=True)
    (src / "kernel").mkdir()
    (src / "a.txt").write_text("hello")
    (src / "include" / "linux" / "list.h").write_text("struct list_head;\n")
    (src / "kernel" / "sched.c").write_text("void schedule(void) {}\n")
    return src


@pytest.fixture
def lxr_env(tool_search: lxrenv.ToolSearch) -> Iterator[lxrenv.TestEnvironment]:
    """A fresh TestEnvironment using the fake tools, closed after the test."""
    with lxrenv.TestEnvironment(tool_search) as tenv:
        yield tenv
