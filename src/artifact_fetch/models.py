"""Pydantic models for artifact-fetch."""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "Artifact",
    "Asset",
    "FetchConfig",
    "FetchOutcome",
    "FetchResult",
    "ImageManifest",
    "LayerDescriptor",
    "Release",
    "WorkflowRun",
]


class Asset(BaseModel):
    """A file attached directly to a published release."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    url: str = Field(alias="browser_download_url")


class Release(BaseModel):
    """A published release and its assets, in listed order."""

    model_config = ConfigDict(populate_by_name=True)

    tag: str = Field(alias="tag_name")
    assets: list[Asset] = Field(default_factory=list)


class WorkflowRun(BaseModel):
    """One execution record of a build pipeline at a commit."""

    id: int
    head_sha: str = ""
    run_attempt: int = 1
    status: str = "completed"   # queued, in_progress, completed, ...


class Artifact(BaseModel):
    """A named zip bundle attached to a workflow run."""

    id: int = 0
    name: str
    archive_download_url: str
    updated_at: Optional[datetime] = None
    expired: bool = False


class LayerDescriptor(BaseModel):
    """A single layer reference inside an image manifest."""

    model_config = ConfigDict(populate_by_name=True)

    media_type: str = Field(
        default="application/vnd.oci.image.layer.v1.tar+gzip", alias="mediaType"
    )
    digest: str            # sha256:<hex>
    size: int = 0          # bytes


class ImageManifest(BaseModel):
    """
    OCI image manifest or image index.

    An index carries ``manifests`` instead of ``layers``; each entry then
    points at a platform-specific manifest by digest.
    """

    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str = Field(
        default="application/vnd.oci.image.manifest.v1+json", alias="mediaType"
    )
    layers: list[LayerDescriptor] = Field(default_factory=list)
    manifests: list[LayerDescriptor] = Field(default_factory=list)

    @property
    def is_index(self) -> bool:
        return not self.layers and bool(self.manifests)


class FetchConfig(BaseModel):
    """Inputs for a single fetch invocation."""

    owner: str
    repo: str
    file: re.Pattern[str]
    target: str
    token: str
    prereleases: bool = False
    artifact_name: str = ""
    container_package: str = ""
    fail_on_missing_target: bool = True
    wait_for_exact_target: bool = False
    run_id: Optional[int] = None
    output_dir: Path = Field(default_factory=Path.cwd)
    poll_interval: float = Field(default=5.0, ge=0)
    poll_timeout: Optional[float] = Field(default=None, gt=0)
    max_ancestor_depth: int = Field(default=50, ge=0)
    api_url: str = "https://api.github.com"
    registry: str = "ghcr.io"


class FetchResult(BaseModel):
    """Files written by an extractor; ``primary`` is the reported output."""

    files: list[Path] = Field(default_factory=list)
    primary: Optional[Path] = None
    source: str = ""


class FetchOutcome(BaseModel):
    """The single outcome handed back to the invocation wrapper."""

    downloaded_file: str = ""
    failed: bool = False
    message: Optional[str] = None
