"""
lxrenv - Elixir test environments and batch database updates

Copyright 2026 UAA Software

Permission is hereby granted, free of charge, to any person obtaining a copy of
this software and associated documentation files (the “Software”), to deal in
the Software without restriction, including without limitation the rights to
use, copy, modify, merge, publish, distribute, sublicense, and/or sell copies of
the Software, and to permit persons to whom the Software is furnished to do so,
subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED “AS IS”, WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY, FITNESS
FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR
COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER
IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN
CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE SOFTWARE.
"""

import argparse
import enum
import logging
import os
import shutil
import subprocess
import sys
import tempfile
import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, MutableMapping

from filelock import FileLock as _FileLock


# Module-level logger
logger = logging.getLogger("lxrenv")


REPO_DIR_VAR = "LXR_REPO_DIR"
DATA_DIR_VAR = "LXR_DATA_DIR"

DEFAULT_PROJECTS_ROOT = Path("/srv/elixir-data")

# Environment variable -> tool name
TOOL_OVERRIDE_VARS = {
    "update.py": "LXR_UPDATE_PY",
    "query.py": "LXR_QUERY_PY",
    "script.sh": "LXR_SCRIPT_SH",
}


# =============================================================================
# Exceptions
# =============================================================================


class LXREnvError(Exception):
    """Base class for test environment errors."""


class ToolNotFoundError(LXREnvError):
    """A required external program could not be located."""

    def __init__(self, name: str, searched: list[str]):
        where = ", ".join(searched) if searched else "(nowhere)"
        super().__init__(f"Could not find {name}; searched: {where}")
        self.name = name
        self.searched = searched


class InvalidArgumentError(LXREnvError, ValueError):
    """Bad caller input."""


class PreconditionError(LXREnvError, RuntimeError):
    """Operation invoked out of order, or on a closed environment."""


class ToolError(LXREnvError):
    """Error from an external program."""

    def __init__(
        self, message: str, returncode: int | None, stdout: str, stderr: str
    ):
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class RepositoryBuildError(ToolError):
    """A step of building the test repository failed."""

    def __init__(
        self,
        step: str,
        path: Path,
        returncode: int | None,
        stdout: str = "",
        stderr: str = "",
    ):
        message = f"{step} failed in {path}"
        if returncode is not None:
            message += f" (exit code {returncode})"
        if stderr:
            message += f": {stderr.strip()}"
        super().__init__(message, returncode, stdout, stderr)
        self.step = step
        self.path = path


class DatabaseBuildError(ToolError):
    """update.py failed to build the database."""

    def __init__(
        self,
        repo_dir: Path,
        data_dir: Path,
        returncode: int,
        stdout: str = "",
        stderr: str = "",
    ):
        message = (
            f"Could not create database from {repo_dir} in {data_dir} "
            f"(exit code {returncode})"
        )
        if stderr:
            message += f": {stderr.strip()}"
        super().__init__(message, returncode, stdout, stderr)
        self.repo_dir = repo_dir
        self.data_dir = data_dir


# =============================================================================
# Output Helpers
# =============================================================================


class Colors:
    """ANSI color codes for terminal output."""

    RESET = "\033[0m"
    RED = "\033[31m"
    YELLOW = "\033[33m"


def use_color() -> bool:
    """Check if color output should be used.

    Colors are disabled if NO_COLOR or CI is set, or stderr is not a TTY.
    """
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("CI"):
        return False
    if not sys.stderr.isatty():
        return False
    return True


def die(message: str, hint: str | None = None, exit_code: int = 1) -> int:
    """Print error message with optional hint and return the exit code."""
    error_msg = f"Error: {message}"
    if use_color():
        error_msg = f"{Colors.RED}{error_msg}{Colors.RESET}"
    print(error_msg, file=sys.stderr)

    if hint:
        hint_msg = f"Hint: {hint}"
        if use_color():
            hint_msg = f"{Colors.YELLOW}{hint_msg}{Colors.RESET}"
        print(hint_msg, file=sys.stderr)

    logger.error(f"Exited with code {exit_code}: {message}")
    return exit_code


# =============================================================================
# Logging
# =============================================================================


def setup_logging(verbosity: int = 0, log_file: bool = True) -> None:
    """Set up logging with console and file handlers.

    Args:
        verbosity: 0=INFO, 1=DEBUG, 2=DEBUG with logger names
        log_file: Whether to write to ~/.elixir/lxrenv.log
    """
    if verbosity >= 2:
        level = logging.DEBUG
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    elif verbosity >= 1:
        level = logging.DEBUG
        fmt = "%(asctime)s - %(levelname)s - %(message)s"
    else:
        level = logging.INFO
        fmt = "%(asctime)s - %(levelname)s - %(message)s"

    logger.handlers = []
    logger.setLevel(level)

    # Console handler (only warnings and above for non-verbose)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING if verbosity == 0 else level)
    console_handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(console_handler)

    if log_file:
        log_dir = Path.home() / ".elixir"
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_dir / "lxrenv.log", mode="a")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        logger.addHandler(file_handler)

        logger.debug(f"Logging initialized (verbosity={verbosity})")


# =============================================================================
# Subprocesses
# =============================================================================


def with_file_lock(path: Path, timeout: float = -1):
    """Context manager locking `path` (created if needed); -1 waits forever."""
    path.parent.mkdir(parents=True, exist_ok=True)
    return _FileLock(path, timeout=timeout)


def run_program(
    cmd: list[str],
    *,
    env: dict[str, str] | None = None,
    cwd: Path | str | None = None,
) -> subprocess.CompletedProcess:
    """Run a program to completion and capture its output.

    Args:
        cmd: Command and arguments
        env: Optional environment variables to add/override for this call only
        cwd: Optional working directory

    Returns:
        The completed process; the caller checks the return code.

    Raises:
        ToolError: If the program cannot be started at all
    """
    run_env = None
    if env:
        run_env = os.environ.copy()
        run_env.update(env)

    logger.debug(f"Running: {' '.join(str(c) for c in cmd)}")
    try:
        result = subprocess.run(
            [str(c) for c in cmd], capture_output=True, text=True, env=run_env, cwd=cwd
        )
    except OSError as exc:
        raise ToolError(f"Could not run {cmd[0]}: {exc}", 127, "", str(exc)) from exc

    if result.returncode != 0:
        logger.debug(f"{cmd[0]} exited with {result.returncode}: {result.stderr}")
    return result


def tool_command(tool: Path) -> list[str]:
    """Return the argv prefix that runs `tool`.

    Python scripts without the executable bit go through this interpreter.
    """
    if tool.suffix == ".py" and not os.access(tool, os.X_OK):
        return [sys.executable, str(tool)]
    return [str(tool)]


# =============================================================================
# Tool Discovery
# =============================================================================


@dataclass(frozen=True)
class ToolSearch:
    """Where to look for the external Elixir programs.

    Resolution order: explicit override (used verbatim), then each install
    directory in order, then the PATH.
    """

    overrides: tuple[tuple[str, Path], ...] = ()
    install_dirs: tuple[Path, ...] = ()
    path_lookup: bool = True

    # Layouts tried beneath each install dir
    SUBDIRS = (".", "script", "bin")

    def __post_init__(self):
        # Accept any mapping or pair sequence; store hashable tuples
        pairs = dict(self.overrides).items()
        object.__setattr__(
            self, "overrides", tuple((name, Path(p)) for name, p in sorted(pairs))
        )
        object.__setattr__(self, "install_dirs", tuple(Path(d) for d in self.install_dirs))

    @classmethod
    def from_env(cls, environ: MutableMapping[str, str] | None = None) -> "ToolSearch":
        """Build a search honoring LXR_* overrides and ELIXIR_INSTALL."""
        environ = os.environ if environ is None else environ

        overrides = {}
        for name, var in TOOL_OVERRIDE_VARS.items():
            if environ.get(var):
                overrides[name] = Path(environ[var])

        install_dirs = []
        if environ.get("ELIXIR_INSTALL"):
            install_dirs.append(Path(environ["ELIXIR_INSTALL"]))
        here = Path(__file__).resolve().parent
        install_dirs += [here, here.parent, Path.cwd()]

        return cls(
            overrides=overrides,
            install_dirs=tuple(install_dirs),
            path_lookup=not environ.get("LXR_NO_PATH_LOOKUP"),
        )


@dataclass(frozen=True)
class ToolPaths:
    """Resolved locations of the external programs."""

    update_py: Path
    query_py: Path
    script_sh: Path


def find_program(name: str, search: ToolSearch | None = None) -> Path:
    """Locate program `name`.

    Raises:
        ToolNotFoundError: listing every location tried
    """
    search = ToolSearch.from_env() if search is None else search
    searched = []

    overrides = dict(search.overrides)
    if name in overrides:
        override = overrides[name]
        if override.is_file():
            return override.absolute()
        raise ToolNotFoundError(name, [f"{override} (override)"])

    for install_dir in search.install_dirs:
        for subdir in ToolSearch.SUBDIRS:
            candidate = Path(install_dir) / subdir / name
            searched.append(str(candidate))
            if candidate.is_file():
                return candidate.resolve()

    if search.path_lookup:
        searched.append("$PATH")
        found = shutil.which(name)
        if found:
            return Path(found).resolve()

    raise ToolNotFoundError(name, searched)


def resolve_tools(search: ToolSearch | None = None) -> ToolPaths:
    """Resolve update.py, query.py and script.sh."""
    search = ToolSearch.from_env() if search is None else search
    return ToolPaths(
        update_py=find_program("update.py", search),
        query_py=find_program("query.py", search),
        script_sh=find_program("script.sh", search),
    )


# =============================================================================
# Test Environment
# =============================================================================


class Ownership(enum.Enum):
    """Whether the environment must delete a directory on teardown."""

    NONE = "none"
    TEMPORARY = "temporary"


def _rmtree_quietly(path: Path) -> None:
    """Remove a tree, logging instead of raising."""

    def onexc(func, failed_path, exc):
        logger.warning(f"Could not remove {failed_path}: {exc}")

    if path.exists():
        shutil.rmtree(path, onexc=onexc)


def _release(owned: list[Path]) -> None:
    # Finalizer body; must not reference the instance
    while owned:
        _rmtree_quietly(owned.pop())


class TestEnvironment:
    """An Elixir test environment: a Git repo plus a database built from it.

    Usage:
        with TestEnvironment() as tenv:
            tenv.build_repo(source_dir)   # Make a git repo
            tenv.build_db()               # Run update.py
            tenv.export_env()             # Set $LXR_* environment vars
            # Now run tests against tenv.lxr_data_dir

    Temporary directories are removed by close(), which the ``with`` block
    calls. A finalizer removes them at garbage collection or interpreter exit
    if close() was never reached.
    """

    __test__ = False  # not a pytest test class

    REPO_TAG = "v5.4"
    COMMIT_MESSAGE = "Initial commit"
    # Identity for the fixture commit; user and system git config are ignored
    GIT_ENV = {
        "GIT_AUTHOR_NAME": "Elixir Tests",
        "GIT_AUTHOR_EMAIL": "elixir-tests@localhost",
        "GIT_COMMITTER_NAME": "Elixir Tests",
        "GIT_COMMITTER_EMAIL": "elixir-tests@localhost",
        "GIT_CONFIG_NOSYSTEM": "1",
        "GIT_CONFIG_GLOBAL": os.devnull,
    }

    def __init__(self, search: ToolSearch | None = None, tools: ToolPaths | None = None):
        self.tools = tools if tools is not None else resolve_tools(search)

        self.lxr_repo_dir: Path | None = None
        self.lxr_data_dir: Path | None = None
        self.repo_ownership = Ownership.NONE
        self.data_ownership = Ownership.NONE

        self._closed = False
        self._lock = threading.Lock()
        self._owned: list[Path] = []
        self._finalizer = weakref.finalize(self, _release, self._owned)

    def __enter__(self) -> "TestEnvironment":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"TestEnvironment(repo={self.lxr_repo_dir}, data={self.lxr_data_dir}, "
            f"closed={self._closed})"
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise PreconditionError("Test environment has been closed")

    def build_repo(self, tree_src_dir: Path | str) -> "TestEnvironment":
        """Create a Git repo holding a copy of `tree_src_dir` and tag it.

        Returns the instance, for chaining.
        """
        self._check_open()
        if self.lxr_repo_dir is not None:
            raise PreconditionError(f"Repo already built at {self.lxr_repo_dir}")
        if not tree_src_dir:
            raise InvalidArgumentError("Need a source dir")
        src = Path(tree_src_dir)
        if not src.is_dir():
            raise InvalidArgumentError(f"Source dir {src} does not exist")
        if not any(src.iterdir()):
            raise InvalidArgumentError(f"Source dir {src} is empty")

        repo_dir = Path(tempfile.mkdtemp(prefix="lxr-repo-")).resolve()
        logger.info(f"Using temporary directory {repo_dir}")

        try:
            self._git("git init", ["init", str(repo_dir)], repo_dir)

            try:
                shutil.copytree(src, repo_dir, symlinks=True, dirs_exist_ok=True)
            except (OSError, shutil.Error) as exc:
                raise RepositoryBuildError(
                    f"Copying {src}", repo_dir, None, "", str(exc)
                ) from exc

            gitdir = ["-C", str(repo_dir)]
            self._git("git add", gitdir + ["add", "."], repo_dir)
            self._git(
                "git commit", gitdir + ["commit", "-am", self.COMMIT_MESSAGE], repo_dir
            )
            self._git("git tag", gitdir + ["tag", self.REPO_TAG], repo_dir)
        except BaseException:
            _rmtree_quietly(repo_dir)
            raise

        self._owned.append(repo_dir)
        self.lxr_repo_dir = repo_dir
        self.repo_ownership = Ownership.TEMPORARY
        return self

    def _git(self, step: str, args: list[str], repo_dir: Path) -> None:
        cmd = ["git", "-c", "commit.gpgsign=false"] + args
        result = run_program(cmd, env=self.GIT_ENV)
        if result.returncode != 0:
            raise RepositoryBuildError(
                step, repo_dir, result.returncode, result.stdout, result.stderr
            )

    def build_db(self, db_dir: Path | str | None = None) -> "TestEnvironment":
        """Build a test database for the repository by running update.py.

        If `db_dir` is not given, a temporary directory is created and owned
        by this environment. Returns the instance, for chaining.

        CAUTION: the contents of `db_dir` are removed unconditionally.
        """
        self._check_open()
        if self.lxr_repo_dir is None:
            raise PreconditionError("No repo dir")
        if self.lxr_data_dir is not None:
            raise PreconditionError(f"Database already built at {self.lxr_data_dir}")

        if db_dir:
            data_dir = Path(db_dir).absolute()
            if data_dir.is_dir() and not data_dir.is_symlink():
                shutil.rmtree(data_dir)
            elif data_dir.exists() or data_dir.is_symlink():
                data_dir.unlink()
            data_dir.mkdir(parents=True)
            data_dir = data_dir.resolve()
            ownership = Ownership.NONE
        else:
            data_dir = Path(tempfile.mkdtemp(prefix="lxr-data-")).resolve()
            ownership = Ownership.TEMPORARY
        logger.info(f"Building database for {self.lxr_repo_dir} in {data_dir}")

        try:
            result = run_program(
                tool_command(self.tools.update_py),
                env={REPO_DIR_VAR: str(self.lxr_repo_dir), DATA_DIR_VAR: str(data_dir)},
            )
            if result.returncode != 0:
                raise DatabaseBuildError(
                    self.lxr_repo_dir,
                    data_dir,
                    result.returncode,
                    result.stdout,
                    result.stderr,
                )
        except BaseException:
            if ownership is Ownership.TEMPORARY:
                _rmtree_quietly(data_dir)
            raise

        if ownership is Ownership.TEMPORARY:
            self._owned.append(data_dir)
        self.lxr_data_dir = data_dir
        self.data_ownership = ownership
        return self

    def env(self) -> dict[str, str]:
        """Return the LXR_* variables for the paths that are set."""
        env = {}
        if self.lxr_repo_dir:
            env[REPO_DIR_VAR] = str(self.lxr_repo_dir)
        if self.lxr_data_dir:
            env[DATA_DIR_VAR] = str(self.lxr_data_dir)
        return env

    def export_env(
        self, environ: MutableMapping[str, str] | None = None
    ) -> "TestEnvironment":
        """Set LXR_REPO_DIR and LXR_DATA_DIR in `environ` (default os.environ).

        A variable is not touched if its path is unset. Exporting into
        os.environ is last-writer-wins; do not do it from several
        environments concurrently. Returns the instance, for chaining.
        """
        environ = os.environ if environ is None else environ
        environ.update(self.env())
        return self

    @contextmanager
    def exported_env(self) -> Iterator["TestEnvironment"]:
        """Export the LXR_* variables for the duration of a ``with`` block."""
        saved = {var: os.environ.get(var) for var in (REPO_DIR_VAR, DATA_DIR_VAR)}
        self.export_env()
        try:
            yield self
        finally:
            for var, value in saved.items():
                if value is None:
                    os.environ.pop(var, None)
                else:
                    os.environ[var] = value

    def query(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run query.py against this environment."""
        return self._run_tool(self.tools.query_py, args, check)

    def script(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run script.sh against this environment."""
        return self._run_tool(self.tools.script_sh, args, check)

    def _run_tool(
        self, tool: Path, args: tuple[str, ...], check: bool
    ) -> subprocess.CompletedProcess:
        self._check_open()
        result = run_program(tool_command(tool) + list(args), env=self.env())
        if check and result.returncode != 0:
            raise ToolError(
                f"{tool.name} {' '.join(args)} failed with code {result.returncode}: "
                f"{result.stderr}",
                result.returncode,
                result.stdout,
                result.stderr,
            )
        return result

    def close(self) -> None:
        """Remove the directories this environment owns. Safe to call twice."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for path in self._owned:
                logger.debug(f"Removing {path}")
            self._finalizer()

            self.lxr_repo_dir = None
            self.lxr_data_dir = None
            self.repo_ownership = Ownership.NONE
            self.data_ownership = Ownership.NONE


# =============================================================================
# Batch Update
# =============================================================================


def get_projects_root() -> Path:
    """Return the projects root, honoring LXR_PROJECTS_ROOT."""
    override = os.environ.get("LXR_PROJECTS_ROOT")
    return Path(override) if override else DEFAULT_PROJECTS_ROOT


def update_project(project_dir: Path, update_py: Path) -> bool:
    """Run update.py for one project holding repo/ and data/. Returns success."""
    env = {
        REPO_DIR_VAR: str(project_dir / "repo"),
        DATA_DIR_VAR: str(project_dir / "data"),
    }
    with with_file_lock(project_dir / "update.lock"):
        logger.info(f"Updating {project_dir.name}")
        result = run_program(tool_command(update_py), env=env)

    if result.returncode != 0:
        logger.error(
            f"update.py failed for {project_dir.name} "
            f"(exit code {result.returncode}): {result.stderr.strip()}"
        )
        return False
    return True


def update_all(root: Path, update_py: Path) -> int:
    """Update every project under `root` in order. Returns the failure count."""
    failures = 0
    for project_dir in sorted(p for p in root.iterdir() if p.is_dir()):
        try:
            ok = update_project(project_dir, update_py)
        except ToolError as e:
            logger.error(f"{project_dir.name}: {e}")
            ok = False
        if not ok:
            failures += 1
    return failures


def main(argv: list[str] | None = None) -> int:
    """Rerun update.py for every project under the projects root."""
    parser = argparse.ArgumentParser(
        prog="lxr-update-all",
        description="Update the Elixir database of every project",
        exit_on_error=False,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use -v for DEBUG, -vv for DEBUG with logger names)",
    )

    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else 1
    except Exception:
        return 1

    setup_logging(verbosity=args.verbose, log_file=True)

    root = get_projects_root()
    if not root.is_dir():
        return die(f"{root} does not exist", hint="Set LXR_PROJECTS_ROOT")

    install_dir = os.environ.get("ELIXIR_INSTALL")
    if not install_dir:
        return die(
            "ELIXIR_INSTALL is not set",
            hint="Point ELIXIR_INSTALL at the Elixir checkout holding update.py",
        )

    try:
        update_py = find_program(
            "update.py", ToolSearch(install_dirs=(Path(install_dir),), path_lookup=False)
        )
    except ToolNotFoundError as e:
        return die(str(e))

    failures = update_all(root, update_py)
    if failures:
        logger.error(f"{failures} project(s) failed to update")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
