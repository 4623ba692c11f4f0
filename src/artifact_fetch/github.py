"""Thin REST clients for the hosting platform and its container registry."""

from __future__ import annotations

import contextlib
import logging
from pathlib import Path
from typing import Any, Iterator, Optional

import httpx

from .errors import StructuralFailure
from .models import Artifact, ImageManifest, Release, WorkflowRun
from .ranged import RangeByteSource

__all__ = [
    "GitHubClient",
    "RegistryClient",
    "build_http_client",
]

logger = logging.getLogger(__name__)

_USER_AGENT = "artifact-fetch/0.1"
_PER_PAGE = 100
_MANIFEST_ACCEPT = ", ".join(
    [
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.docker.distribution.manifest.v2+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
    ]
)


def _json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise StructuralFailure(f"Malformed JSON from {response.request.url}") from exc


def build_http_client(timeout: float = 60.0) -> httpx.Client:
    """Create the shared HTTP client used by every remote call."""
    return httpx.Client(
        timeout=httpx.Timeout(timeout),
        follow_redirects=True,
        headers={"User-Agent": _USER_AGENT},
    )


class GitHubClient:
    """
    Access to releases, workflow runs, artifacts, and commits of one repository.

    All requests carry the bearer token. List endpoints are paginated by
    following the ``Link: rel="next"`` header.
    """

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str,
        http: Optional[httpx.Client] = None,
        api_url: str = "https://api.github.com",
    ) -> None:
        self.owner = owner
        self.repo = repo
        self.token = token
        self.http = http or build_http_client()
        self.api_url = api_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
        }

    @property
    def _repo_url(self) -> str:
        return f"{self.api_url}/repos/{self.owner}/{self.repo}"

    def _get(self, url: str, params: Optional[dict[str, Any]] = None) -> httpx.Response:
        response = self.http.get(url, params=params, headers=self._headers)
        response.raise_for_status()
        return response

    def _paginate(
        self, url: str, params: Optional[dict[str, Any]] = None, key: Optional[str] = None
    ) -> Iterator[dict[str, Any]]:
        next_url: Optional[str] = url
        query: Optional[dict[str, Any]] = dict(params or {}, per_page=_PER_PAGE)
        while next_url:
            response = self._get(next_url, params=query)
            payload = _json(response)
            items = payload.get(key, []) if key else payload
            yield from items
            next_url = response.links.get("next", {}).get("url")
            # The next link already carries the query string.
            query = None

    # ------------------------------------------------------------------
    # Releases and commits
    # ------------------------------------------------------------------

    def list_releases(self) -> list[Release]:
        return [
            Release.model_validate(item)
            for item in self._paginate(f"{self._repo_url}/releases")
        ]

    def get_branch_sha(self, branch: str) -> Optional[str]:
        """Return the head commit of *branch*, or ``None`` if it is not a branch."""
        try:
            response = self._get(f"{self._repo_url}/branches/{branch}")
        except httpx.HTTPStatusError as exc:
            logger.debug(
                "%s is not a branch (HTTP %s)", branch, exc.response.status_code
            )
            return None
        payload = _json(response)
        sha = (payload.get("commit") or {}).get("sha") if isinstance(payload, dict) else None
        if not sha:
            raise StructuralFailure(f"Branch {branch} has no head commit in the response")
        return sha

    def get_commit_parents(self, ref: str) -> list[str]:
        response = self._get(f"{self._repo_url}/commits/{ref}")
        parents = _json(response).get("parents") or []
        return [parent["sha"] for parent in parents if parent.get("sha")]

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def list_workflow_runs(self, head_sha: str) -> list[WorkflowRun]:
        return [
            WorkflowRun.model_validate(item)
            for item in self._paginate(
                f"{self._repo_url}/actions/runs",
                params={"head_sha": head_sha},
                key="workflow_runs",
            )
        ]

    def list_run_artifacts(self, run_id: int) -> list[Artifact]:
        return [
            Artifact.model_validate(item)
            for item in self._paginate(
                f"{self._repo_url}/actions/runs/{run_id}/artifacts",
                key="artifacts",
            )
        ]

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    def open_range_source(self, url: str) -> RangeByteSource:
        return RangeByteSource(self.http, url, token=self.token)

    def download(self, url: str, dest: Path) -> Path:
        """Stream *url* into *dest*."""
        dest.parent.mkdir(parents=True, exist_ok=True)
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/octet-stream",
        }
        with self.http.stream("GET", url, headers=headers) as response:
            response.raise_for_status()
            with open(dest, "wb") as fh:
                for chunk in response.iter_bytes():
                    fh.write(chunk)
        return dest


class RegistryClient:
    """Anonymous pull access to one package in an OCI container registry."""

    def __init__(
        self,
        owner: str,
        package: str,
        http: Optional[httpx.Client] = None,
        registry: str = "ghcr.io",
    ) -> None:
        self.owner = owner
        self.package = package
        self.http = http or build_http_client()
        self.base_url = f"https://{registry}"

    @property
    def repository(self) -> str:
        return f"{self.owner}/{self.package}"

    def pull_token(self) -> str:
        response = self.http.get(
            f"{self.base_url}/token",
            params={
                "service": "registry.docker.io",
                "scope": f"repository:{self.repository}:pull",
            },
        )
        response.raise_for_status()
        payload = _json(response)
        # Docker token servers may answer with either key.
        token = payload.get("token") or payload.get("access_token")
        if not token:
            raise StructuralFailure(f"Registry returned no pull token for {self.repository}")
        return token

    def manifest(self, reference: str, token: str) -> ImageManifest:
        """
        Fetch the image manifest for a tag or digest.

        An image index is followed to its first referenced manifest.
        """
        manifest = self._fetch_manifest(reference, token)
        if manifest.is_index:
            digest = manifest.manifests[0].digest
            logger.debug("Following image index %s to %s", reference, digest)
            manifest = self._fetch_manifest(digest, token)
        if not manifest.layers:
            raise StructuralFailure(
                f"Image {self.repository}:{reference} has no layers"
            )
        return manifest

    def _fetch_manifest(self, reference: str, token: str) -> ImageManifest:
        response = self.http.get(
            f"{self.base_url}/v2/{self.repository}/manifests/{reference}",
            headers={"Authorization": f"Bearer {token}", "Accept": _MANIFEST_ACCEPT},
        )
        response.raise_for_status()
        return ImageManifest.model_validate(_json(response))

    @contextlib.contextmanager
    def open_blob(self, digest: str, token: str) -> Iterator[Iterator[bytes]]:
        """Stream a blob; the connection is closed when the block exits."""
        with self.http.stream(
            "GET",
            f"{self.base_url}/v2/{self.repository}/blobs/{digest}",
            headers={"Authorization": f"Bearer {token}"},
        ) as response:
            response.raise_for_status()
            yield response.iter_bytes()
