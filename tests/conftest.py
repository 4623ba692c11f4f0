"""Shared test fixtures for artifact-fetch."""

from __future__ import annotations

import io
import re
import struct
import tarfile
import zipfile
from pathlib import Path
from typing import Any, Optional

import httpx
import pytest

from artifact_fetch.github import GitHubClient, RegistryClient
from artifact_fetch.models import FetchConfig

API = "https://api.github.com"
FILES = "https://files.example.com"
OWNER = "acme"
REPO = "widget"


# ---------------------------------------------------------------------------
# Archive builders
# ---------------------------------------------------------------------------


def make_zip(
    entries: dict[str, bytes],
    compression: int = zipfile.ZIP_DEFLATED,
    comment: bytes = b"",
) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=compression) as zf:
        for name, data in entries.items():
            if name.endswith("/"):
                zf.writestr(zipfile.ZipInfo(name), b"")
            else:
                zf.writestr(name, data)
        zf.comment = comment
    return buf.getvalue()


def break_deflate(archive: bytes) -> bytes:
    """Overwrite the first entry's deflate stream with an invalid block header."""
    data = bytearray(archive)
    name_len, extra_len = struct.unpack_from("<2H", data, 26)
    data[30 + name_len + extra_len] = 0xFF
    return bytes(data)


def make_tar(entries: dict[str, bytes], gzip: bool = False) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz" if gzip else "w") as tar:
        for name, data in entries.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Fake hosting platform
# ---------------------------------------------------------------------------


def run(run_id: int, sha: str, attempt: int = 1, status: str = "completed") -> dict[str, Any]:
    return {"id": run_id, "head_sha": sha, "run_attempt": attempt, "status": status}


def artifact(name: str, path: str) -> dict[str, Any]:
    return {
        "id": len(path),
        "name": name,
        "archive_download_url": f"{FILES}{path}",
        "updated_at": "2024-05-01T12:00:00Z",
    }


def release(tag: str, *assets: str) -> dict[str, Any]:
    return {
        "tag_name": tag,
        "assets": [
            {"name": name, "browser_download_url": f"{FILES}/releases/{tag}/{name}"}
            for name in assets
        ],
    }


class FakeHost:
    """
    In-memory stand-in for the REST API, file storage, and container registry.

    ``run_snapshots`` maps a commit to successive answers for the runs
    endpoint; the last snapshot repeats once the others are used up.
    """

    def __init__(self) -> None:
        self.releases: list[dict[str, Any]] = []
        self.run_snapshots: dict[str, list[list[dict[str, Any]]]] = {}
        self.artifacts: dict[int, list[dict[str, Any]]] = {}
        self.branches: dict[str, str] = {}
        self.parents: dict[str, list[str]] = {}
        self.files: dict[str, bytes] = {}
        self.manifests: dict[str, dict[str, Any]] = {}
        self.blobs: dict[str, bytes] = {}
        self.page_size = 100
        self.honor_ranges = True
        self.token_payload: dict[str, Any] = {"token": "pull-token"}
        self.requests: list[httpx.Request] = []

    def set_runs(self, sha: str, *snapshots: list[dict[str, Any]]) -> None:
        self.run_snapshots[sha] = list(snapshots)

    def requested_paths(self, prefix: str = "") -> list[str]:
        return [r.url.path for r in self.requests if r.url.path.startswith(prefix)]

    # -- dispatch ---------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host == "api.github.com":
            return self._api(request)
        if host == "files.example.com":
            return self._file(request)
        if host == "ghcr.io":
            return self._registry(request)
        return httpx.Response(404)

    def _page(self, request: httpx.Request, items: list[Any], key: Optional[str]) -> httpx.Response:
        page = int(request.url.params.get("page", "1"))
        start = (page - 1) * self.page_size
        chunk = items[start:start + self.page_size]
        headers = {}
        if start + self.page_size < len(items):
            next_url = request.url.copy_set_param("page", str(page + 1))
            headers["Link"] = f'<{next_url}>; rel="next"'
        body = {key: chunk, "total_count": len(items)} if key else chunk
        return httpx.Response(200, json=body, headers=headers)

    def _api(self, request: httpx.Request) -> httpx.Response:
        base = f"/repos/{OWNER}/{REPO}"
        path = request.url.path
        if not path.startswith(base):
            return httpx.Response(404)
        path = path[len(base):]

        if path == "/releases":
            return self._page(request, self.releases, None)
        if path == "/actions/runs":
            sha = request.url.params["head_sha"]
            snapshots = self.run_snapshots.get(sha, [[]])
            runs = snapshots.pop(0) if len(snapshots) > 1 else snapshots[0]
            return self._page(request, runs, "workflow_runs")
        match = re.fullmatch(r"/actions/runs/(\d+)/artifacts", path)
        if match:
            return self._page(request, self.artifacts.get(int(match.group(1)), []), "artifacts")
        match = re.fullmatch(r"/branches/(.+)", path)
        if match:
            sha = self.branches.get(match.group(1))
            if sha is None:
                return httpx.Response(404, json={"message": "Branch not found"})
            return httpx.Response(200, json={"name": match.group(1), "commit": {"sha": sha}})
        match = re.fullmatch(r"/commits/(.+)", path)
        if match:
            ref = match.group(1)
            parents = [{"sha": p} for p in self.parents.get(ref, [])]
            return httpx.Response(200, json={"sha": ref, "parents": parents})
        return httpx.Response(404)

    def _file(self, request: httpx.Request) -> httpx.Response:
        data = self.files.get(request.url.path)
        if data is None:
            return httpx.Response(404)
        if request.method == "HEAD":
            return httpx.Response(200, headers={"Content-Length": str(len(data))})
        byte_range = request.headers.get("Range")
        if byte_range and self.honor_ranges:
            start_text, _, end_text = byte_range.removeprefix("bytes=").partition("-")
            start = int(start_text)
            end = int(end_text) + 1 if end_text else len(data)
            return httpx.Response(206, content=data[start:end])
        return httpx.Response(200, content=data)

    def _registry(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/token":
            return httpx.Response(200, json=self.token_payload)
        if request.headers.get("Authorization") != "Bearer pull-token":
            return httpx.Response(401)
        match = re.fullmatch(r"/v2/.+/manifests/(.+)", path)
        if match and match.group(1) in self.manifests:
            return httpx.Response(200, json=self.manifests[match.group(1)])
        match = re.fullmatch(r"/v2/.+/blobs/(.+)", path)
        if match and match.group(1) in self.blobs:
            return httpx.Response(200, content=self.blobs[match.group(1)])
        return httpx.Response(404)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture()
def http(host: FakeHost) -> httpx.Client:
    client = httpx.Client(transport=httpx.MockTransport(host.handler), follow_redirects=True)
    yield client
    client.close()


@pytest.fixture()
def github(http: httpx.Client) -> GitHubClient:
    return GitHubClient(OWNER, REPO, "secret-token", http=http, api_url=API)


@pytest.fixture()
def registry(http: httpx.Client) -> RegistryClient:
    return RegistryClient(OWNER, "widget-image", http=http)


@pytest.fixture()
def config_factory(tmp_path: Path):
    def _make(**overrides: Any) -> FetchConfig:
        values: dict[str, Any] = {
            "owner": OWNER,
            "repo": REPO,
            "file": r"out\.bin$",
            "target": "^1.0.0",
            "token": "secret-token",
            "output_dir": tmp_path / "out",
            "poll_interval": 0,
        }
        values.update(overrides)
        return FetchConfig(**values)

    return _make


@pytest.fixture()
def no_sleep() -> list[float]:
    """Collects sleep requests instead of sleeping."""
    return []


def layer_manifest(digest: str) -> dict[str, Any]:
    return {
        "schemaVersion": 2,
        "mediaType": "application/vnd.oci.image.manifest.v1+json",
        "config": {"digest": "sha256:" + "c" * 64, "size": 2},
        "layers": [
            {
                "mediaType": "application/vnd.oci.image.layer.v1.tar+gzip",
                "digest": digest,
                "size": 1,
            }
        ],
    }


def index_manifest(digest: str) -> dict[str, Any]:
    return {
        "schemaVersion": 2,
        "mediaType": "application/vnd.oci.image.index.v1+json",
        "manifests": [
            {"mediaType": "application/vnd.oci.image.manifest.v1+json", "digest": digest, "size": 1}
        ],
    }
