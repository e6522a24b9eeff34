"""
Shared fixtures: an in-memory plugin registry served through
httpx.MockTransport, plugin archive builders and a fake pip runner.
"""

import hashlib
import io
import json
import subprocess
import tarfile
from pathlib import Path

import httpx
import pytest
from packaging.version import Version

from xaheen.config import Settings
from xaheen.plugin import loader
from xaheen.plugin.deps import DependencyInstaller
from xaheen.plugin.manager import PluginManager
from xaheen.plugin.registry import RegistryClient

REGISTRY_URL = "https://registry.test/plugins"


def plugin_source(name: str, commands: list[str]) -> str:
    lines = ["from xaheen.plugin.loader import CommandResult", ""]
    for command in commands:
        lines += [
            f"def {command.replace('-', '_')}(options):",
            f"    return CommandResult(message='{name}:{command} ' + repr(sorted(options.items())))",
            "",
        ]
    return "\n".join(lines)


def make_archive(
    name: str,
    version: str,
    commands: tuple[str, ...] = ("hello",),
    host_range: str = "^2.0.0",
    dependencies: dict[str, str] | None = None,
    wrap: bool = True,
    manifest: dict | None = None,
    extra_files: dict[str, str] | None = None,
) -> bytes:
    """Build a plugin .tgz in memory."""
    data = {
        "name": name,
        "version": version,
        "main": "main.py",
        "description": f"The {name} plugin",
        "author": "Xaheen Team",
        "xaheen": host_range,
        "commands": [
            {"name": c, "help": f"Run {c}", "handler": c.replace("-", "_")} for c in commands
        ],
    }
    if dependencies:
        data["dependencies"] = dependencies
    if manifest:
        data.update(manifest)

    files = {"manifest.json": json.dumps(data), "main.py": plugin_source(name, list(commands))}
    files.update(extra_files or {})

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for path, content in files.items():
            payload = content.encode("utf-8")
            info = tarfile.TarInfo(f"package/{path}" if wrap else path)
            info.size = len(payload)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(payload))
    return buf.getvalue()


def sha256(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


class FakeRegistry:
    """In-memory registry speaking the plugin registry HTTP API."""

    def __init__(self):
        self.plugins: dict[str, dict[str, dict]] = {}
        self.archives: dict[str, bytes] = {}
        self.requests: list[httpx.Request] = []
        self.down = False
        self.timeout = False

    def publish(
        self,
        name: str,
        version: str,
        category: str = "tool",
        certified: bool = True,
        rating: float = 4.5,
        downloads: int = 100,
        host_range: str = "^2.0.0",
        commands: tuple[str, ...] = ("hello",),
        keywords: list[str] | None = None,
        archive: bytes | None = None,
        checksum: str | None = None,
        **archive_kwargs,
    ) -> bytes:
        archive = archive or make_archive(
            name, version, commands=commands, host_range=host_range, **archive_kwargs
        )
        self.archives[f"{name}@{version}"] = archive
        self.plugins.setdefault(name, {})[version] = {
            "metadata": {
                "name": name,
                "version": version,
                "description": f"The {name} plugin",
                "author": "Xaheen Team",
                "category": category,
                "keywords": keywords or name.split("-"),
                "xaheenVersion": host_range,
                "certified": certified,
                "rating": rating,
                "downloads": downloads,
                "license": "MIT",
                "lastUpdated": "2026-01-01T00:00:00Z",
            },
            "downloadUrl": f"{REGISTRY_URL}/plugins/{name}/{version}/download",
            "checksum": checksum or sha256(archive),
        }
        return archive

    def latest(self, name: str) -> dict:
        versions = self.plugins[name]
        return versions[max(versions, key=Version)]

    @property
    def downloads(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/download")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)
        if self.timeout:
            raise httpx.ReadTimeout("timed out", request=request)

        parts = request.url.path.strip("/").split("/")[1:]

        if parts == ["search"]:
            return httpx.Response(200, json={"plugins": [self.latest(n) for n in self.plugins]})
        if parts == ["health"]:
            return httpx.Response(200, json={"status": "ok"})
        if parts == ["stats"]:
            entries = [self.latest(n)["metadata"] for n in self.plugins]
            return httpx.Response(
                200,
                json={
                    "totalPlugins": len(entries),
                    "totalDownloads": sum(e["downloads"] for e in entries),
                    "avgRating": sum(e["rating"] for e in entries) / max(len(entries), 1),
                    "certifiedCount": sum(1 for e in entries if e["certified"]),
                    "categoryCounts": {
                        c: sum(1 for e in entries if e["category"] == c)
                        for c in {e["category"] for e in entries}
                    },
                },
            )

        if len(parts) >= 2 and parts[0] == "plugins" and parts[1] in self.plugins:
            name, versions = parts[1], self.plugins[parts[1]]
            if len(parts) == 2:
                return httpx.Response(200, json=self.latest(name))
            if parts[2:] == ["versions"]:
                return httpx.Response(200, json={"versions": list(versions)})
            if len(parts) == 3 and parts[2] in versions:
                return httpx.Response(200, json=versions[parts[2]])
            if len(parts) == 4 and parts[3] == "download":
                key = f"{name}@{parts[2]}"
                if key in self.archives:
                    return httpx.Response(200, content=self.archives[key])

        return httpx.Response(404, json={"error": "not found"})


class FakePipRunner:
    """Stands in for subprocess.run when installing plugin dependencies."""

    def __init__(self, returncode: int = 0, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        self.calls: list[list[str]] = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        target = Path(cmd[cmd.index("--target") + 1])
        target.mkdir(parents=True, exist_ok=True)
        (target / "partial.txt").write_text("partial")
        return subprocess.CompletedProcess(cmd, self.returncode, stdout="", stderr=self.stderr)


@pytest.fixture(autouse=True)
def _clear_loaded_plugins():
    yield
    loader.clear_cache()


@pytest.fixture
def fake_registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def pip_runner() -> FakePipRunner:
    return FakePipRunner()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        registry_url=REGISTRY_URL,
        api_key="",
        plugins_dir=tmp_path / "project" / ".xaheen" / "plugins",
        global_plugins_dir=tmp_path / "home" / ".xaheen" / "plugins",
        cache_dir=tmp_path / "cache",
        manifest_file="installed.json",
        request_timeout=5.0,
        search_cache_ttl=300,
        max_workers=4,
        lock_timeout=1.0,
        config_file=tmp_path / "config.toml",
    )


@pytest.fixture
def make_registry_client(settings, fake_registry):
    def _make(**kwargs) -> RegistryClient:
        options = {
            "timeout": settings.request_timeout,
            "cache_dir": settings.cache_dir,
            "search_ttl": settings.search_cache_ttl,
            "transport": httpx.MockTransport(fake_registry.handler),
        }
        options.update(kwargs)
        return RegistryClient(settings.registry_url, **options)

    return _make


@pytest.fixture
def make_manager(settings, make_registry_client, pip_runner):
    def _make(host_version: str = "2.0.0") -> PluginManager:
        return PluginManager(
            settings,
            host_version=host_version,
            registry=make_registry_client(),
            dependency_installer=DependencyInstaller(runner=pip_runner),
        )

    return _make


@pytest.fixture
def manager(make_manager) -> PluginManager:
    return make_manager()


@pytest.fixture
def archive_factory():
    return make_archive
