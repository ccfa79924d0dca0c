"""
Pytest configuration for the LyreBirdAudio version manager tests.

Version-control behaviour is tested against real throwaway repositories: a
bare "origin" plus a working clone, built under tmp_path. The service manager
is replaced by an in-memory fake with the same interface.
"""

from __future__ import annotations

import shlex
import shutil
import subprocess
from pathlib import Path

import pytest

from lyrebird_updater.config import AppConfig
from lyrebird_updater.git import GitRepository
from lyrebird_updater.service.systemd import ServiceManagerBackend
from lyrebird_updater.updates.engine import UpdateEngine, build_engine

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]

UNIT_ENV_VAR = "LYREBIRD_TEST_UNIT_PATH"

UNIT_TEMPLATE = """\
[Unit]
Description={description}
After=network.target

[Service]
Type=simple
Environment="HOME=/root"
Environment="USB_STABILIZATION_DELAY=10"
Environment="MEDIAMTX_STREAM_MODE=individual"
ExecStart=/usr/local/bin/mediamtx-stream-manager.sh start
Restart=always

[Install]
WantedBy=multi-user.target
"""

UPDATER_SCRIPT = """\
#!/bin/bash
# {label}
echo "lyrebird updater"
"""

UPDATER_MAIN = """\
import sys

print("lyrebird-updater {label}")
sys.exit(0)
"""

BROKEN_UPDATER_MAIN = """\
def main(:
    pass
"""


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests that run real git and bash commands",
    )


def generator_script(description: str, *, fail: bool = False) -> str:
    """A stand-in for ``mediamtx-stream-manager.sh install``."""
    if fail:
        # Leaves a truncated unit behind, like an install that died halfway
        return (
            "#!/bin/bash\n"
            f'echo "[Unit]" > "${UNIT_ENV_VAR}"\n'
            "echo 'generator failed' >&2\n"
            "exit 1\n"
        )
    lines = UNIT_TEMPLATE.format(description=description).splitlines()
    body = "\n".join(f"  echo {shlex.quote(line)}" for line in lines)
    return f'#!/bin/bash\n{{\n{body}\n}} > "${UNIT_ENV_VAR}"\n'


def updater_package(label: str, *, main: str | None = None) -> dict[str, str]:
    """A minimal stand-in for the updater package at ``src/lyrebird_updater``."""
    return {
        "src/lyrebird_updater/__init__.py": f'__version__ = "{label}"\n',
        "src/lyrebird_updater/__main__.py": (
            main if main is not None else UPDATER_MAIN.format(label=label)
        ),
    }


def render_unit(description: str) -> str:
    """Unit text the stand-in generator produces."""
    return UNIT_TEMPLATE.format(description=description)


# =============================================================================
# Git sandbox
# =============================================================================


class GitSandbox:
    """
    A bare origin, a seed clone used to publish commits, and the workspace.

    Attributes:
        origin: Bare repository acting as the remote.
        seed: Clone used to create upstream history.
        work: The managed workspace (clone of origin).
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.origin = root / "origin.git"
        self.seed = root / "seed"
        self.work = root / "work"

    def git(self, *args: str, cwd: Path | None = None) -> str:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd or self.work,
            check=True,
            capture_output=True,
            text=True,
        )
        return result.stdout.strip()

    def build(self) -> GitSandbox:
        self.root.mkdir(parents=True, exist_ok=True)
        subprocess.run(
            ["git", "init", "--bare", "-q", str(self.origin)], check=True, capture_output=True
        )
        self.git("symbolic-ref", "HEAD", "refs/heads/main", cwd=self.origin)

        subprocess.run(["git", "init", "-q", str(self.seed)], check=True, capture_output=True)
        self.git("symbolic-ref", "HEAD", "refs/heads/main", cwd=self.seed)
        _configure_identity(self, self.seed)
        self.git("remote", "add", "origin", str(self.origin), cwd=self.seed)

        self.publish(
            {
                "README.md": "LyreBirdAudio\n",
                "mediamtx-stream-manager.sh": generator_script("Mediamtx Audio v1"),
                "lyrebird-updater.sh": UPDATER_SCRIPT.format(label="v1"),
                **updater_package("v1"),
            },
            "Initial release",
            tag="v1.0.0",
        )

        subprocess.run(
            ["git", "clone", "-q", str(self.origin), str(self.work)],
            check=True,
            capture_output=True,
        )
        _configure_identity(self, self.work)
        return self

    def publish(
        self,
        files: dict[str, str],
        message: str,
        *,
        tag: str | None = None,
        branch: str = "main",
        delete: tuple[str, ...] = (),
    ) -> str:
        """Commit ``files`` on ``branch`` in the seed and push it to origin."""
        current = self.git("symbolic-ref", "--short", "HEAD", cwd=self.seed)
        if current != branch:
            existing = self.git("branch", "--list", branch, cwd=self.seed)
            if existing:
                self.git("checkout", "-q", branch, cwd=self.seed)
            else:
                self.git("checkout", "-q", "-b", branch, cwd=self.seed)

        for name, content in files.items():
            path = self.seed / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
            if name.endswith(".sh"):
                path.chmod(0o755)
        for name in delete:
            (self.seed / name).unlink()
        self.git("add", "-A", cwd=self.seed)
        self.git("commit", "-q", "-m", message, cwd=self.seed)
        commit = self.git("rev-parse", "HEAD", cwd=self.seed)
        self.git("push", "-q", "origin", branch, cwd=self.seed)

        if tag:
            self.git("tag", tag, cwd=self.seed)
            self.git("push", "-q", "origin", tag, cwd=self.seed)

        if branch != "main":
            self.git("checkout", "-q", "main", cwd=self.seed)
        return commit

    def head(self) -> str:
        return self.git("rev-parse", "HEAD")

    def status(self) -> str:
        return self.git("status", "--porcelain")


def _configure_identity(sandbox: GitSandbox, repo: Path) -> None:
    sandbox.git("config", "user.name", "LyreBird Test", cwd=repo)
    sandbox.git("config", "user.email", "test@lyrebird.invalid", cwd=repo)
    sandbox.git("config", "commit.gpgsign", "false", cwd=repo)
    sandbox.git("config", "tag.gpgsign", "false", cwd=repo)


@pytest.fixture
def sandbox(tmp_path: Path) -> GitSandbox:
    """A workspace cloned from a local origin with tag v1.0.0 on main."""
    if shutil.which("git") is None or shutil.which("bash") is None:
        pytest.skip("git and bash are required")
    return GitSandbox(tmp_path / "repos").build()


@pytest.fixture
def git_repo(sandbox: GitSandbox) -> GitRepository:
    """GitRepository over the sandbox workspace."""
    return GitRepository(sandbox.work, timeout=30)


# =============================================================================
# Service manager fake
# =============================================================================


class FakeServiceManager(ServiceManagerBackend):
    """In-memory service manager recording every call."""

    def __init__(
        self,
        *,
        supported: bool = True,
        active: bool = True,
        enabled: bool = True,
    ) -> None:
        self.supported = supported
        self.active = active
        self.enabled = enabled
        self.ignore_stop = False
        self.ignore_kill = False
        self.fail_start = False
        self.restart_count = "2"
        self.calls: list[str] = []

    def count(self, name: str) -> int:
        return self.calls.count(name)

    async def is_supported(self) -> bool:
        return self.supported

    async def is_active(self, service: str) -> bool:
        return self.active

    async def is_enabled(self, service: str) -> bool:
        return self.enabled

    async def start(self, service: str, timeout: float = 30.0) -> bool:
        self.calls.append("start")
        self.active = not self.fail_start
        return self.active

    async def stop(self, service: str, timeout: float = 30.0) -> bool:
        self.calls.append("stop")
        if not self.ignore_stop:
            self.active = False
        return True

    async def kill(self, service: str, signal: str = "SIGKILL") -> bool:
        self.calls.append("kill")
        if not self.ignore_kill:
            self.active = False
        return True

    async def restart(self, service: str, timeout: float = 60.0) -> bool:
        self.calls.append("restart")
        self.active = not self.fail_start
        return self.active

    async def enable(self, service: str) -> bool:
        self.calls.append("enable")
        self.enabled = True
        return True

    async def daemon_reload(self) -> bool:
        self.calls.append("daemon-reload")
        return True

    async def show_property(self, service: str, name: str) -> str | None:
        return self.restart_count if name == "NRestarts" else None


@pytest.fixture
def service_manager() -> FakeServiceManager:
    """A running, enabled fake service."""
    return FakeServiceManager()


# =============================================================================
# Engine wiring
# =============================================================================


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Directory standing in for /etc, /run and /var."""
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def unit_path(state_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Where the stand-in generator writes the service definition."""
    path = state_dir / "systemd" / "mediamtx-audio.service"
    path.parent.mkdir(parents=True)
    monkeypatch.setenv(UNIT_ENV_VAR, str(path))
    return path


@pytest.fixture
def app_config(sandbox: GitSandbox, state_dir: Path, unit_path: Path) -> AppConfig:
    """Configuration pointing every path into tmp_path, with short timeouts."""
    return AppConfig(
        repository={
            "path": str(sandbox.work),
            "expected_remote": "origin.git",
            "fetch_timeout_seconds": 30,
            "fetch_retries": 1,
            "fetch_backoff_seconds": 0,
        },
        lock={
            "path": str(state_dir / "run" / "lyrebird-updater.lock"),
            "timeout_seconds": 1,
            "poll_interval_seconds": 0.05,
        },
        service={
            "unit_path": str(unit_path),
            "cron_path": str(state_dir / "cron.d" / "mediamtx-monitor"),
            "backup_dir": str(state_dir / "backups"),
            "stop_timeout_seconds": 0.2,
            "kill_timeout_seconds": 0.2,
            "start_timeout_seconds": 0.2,
            "poll_interval_seconds": 0.05,
        },
        state={"marker_path": str(state_dir / "lib" / "update-in-progress.json")},
    )


@pytest.fixture
def engine(app_config: AppConfig, service_manager: FakeServiceManager) -> UpdateEngine:
    """Engine over the sandbox with the fake service manager."""
    return build_engine(app_config, service_manager=service_manager)


@pytest.fixture
def installed_unit(unit_path: Path) -> Path:
    """An installed v1 unit carrying one operator customisation."""
    text = render_unit("Mediamtx Audio v1").replace(
        'Environment="MEDIAMTX_STREAM_MODE=individual"\n',
        'Environment="MEDIAMTX_STREAM_MODE=individual"\n'
        'Environment="MEDIAMTX_RTSP_PORT=8654"\n',
    )
    unit_path.write_text(text)
    return unit_path


@pytest.fixture(autouse=True)
def _isolated_git_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep user and system git configuration out of the tests."""
    home = tmp_path / "home"
    home.mkdir(exist_ok=True)
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")
    monkeypatch.delenv("GIT_DIR", raising=False)
    monkeypatch.delenv("GIT_WORK_TREE", raising=False)
