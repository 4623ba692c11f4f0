"""Core logic for artifact-fetch."""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path, PurePosixPath
from typing import Callable, Optional

import httpx
from pydantic import ValidationError
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_result,
    stop_after_delay,
    stop_never,
    wait_fixed,
)

from .errors import FetchError, HardNotFound, SoftNotFound, StructuralFailure
from .github import GitHubClient, RegistryClient, build_http_client
from .locators import ArtifactLocator, WorkflowRunLocator, runs_ready
from .models import FetchConfig, FetchOutcome, FetchResult, Release, WorkflowRun
from .resolver import resolve_release
from .tarstream import ScanResult, ScanSignal, TarEntry, TarStreamReader
from .zipreader import ZipArchiveReader

__all__ = [
    "GitRefPathExtractor",
    "ReleasePathExtractor",
    "fetch_target",
    "run_pipeline",
]

logger = logging.getLogger(__name__)


def _destination(output_dir: Path, archive_path: str) -> Optional[Path]:
    """Map an archive-relative path under *output_dir*; ``None`` if it would escape."""
    rel = PurePosixPath(archive_path)
    if rel.is_absolute() or ".." in rel.parts or not rel.parts:
        logger.warning("Skipping unsafe archive path %r", archive_path)
        return None
    return output_dir.joinpath(*rel.parts)


class ReleasePathExtractor:
    """
    Retrieves the wanted file from a resolved release.

    Assets are scanned in listed order and the first name match wins. When
    no asset matches and a registry is configured, the first layer of the
    container image tagged like the release is scanned instead.
    """

    def __init__(
        self,
        github: GitHubClient,
        pattern: re.Pattern[str],
        output_dir: Path,
        registry: Optional[RegistryClient] = None,
    ) -> None:
        self.github = github
        self.pattern = pattern
        self.output_dir = output_dir
        self.registry = registry

    def extract(self, release: Release) -> FetchResult:
        for asset in release.assets:
            if not self.pattern.search(asset.name):
                continue
            dest = _destination(self.output_dir, asset.name)
            if dest is None:
                continue
            self.github.download(asset.url, dest)
            logger.info("Downloaded %s from release %s", asset.name, release.tag)
            return FetchResult(files=[dest], primary=dest, source=f"release {release.tag}")

        if self.registry is None:
            raise HardNotFound(f"No matching file found in resolved release {release.tag}")
        return self._extract_from_image(release, self.registry)

    def _extract_from_image(self, release: Release, registry: RegistryClient) -> FetchResult:
        token = registry.pull_token()
        manifest = registry.manifest(release.tag, token)
        digest = manifest.layers[0].digest
        written: list[Path] = []

        def _visit(entry: TarEntry) -> ScanSignal:
            if not self.pattern.search(entry.path):
                return ScanSignal.CONTINUE
            dest = _destination(self.output_dir, entry.path)
            if dest is None:
                return ScanSignal.CONTINUE
            entry.extract_to(dest)
            written.append(dest)
            logger.info(
                "Downloaded %s from release %s via %s",
                entry.path,
                release.tag,
                registry.package,
            )
            return ScanSignal.STOP

        with registry.open_blob(digest, token) as chunks:
            outcome = TarStreamReader(chunks).scan(_visit)
        logger.debug("Layer %s scan ended: %s", digest, outcome.value)

        if outcome is not ScanResult.STOPPED or not written:
            raise HardNotFound(
                f"Failed to find matching file in assets or package for release {release.tag}"
            )
        return FetchResult(
            files=written,
            primary=written[-1],
            source=f"release {release.tag} via {registry.package}",
        )


class GitRefPathExtractor:
    """
    Retrieves the wanted file from a workflow artifact built at a git ref.

    If the builds at the ref are not finished, either waits for them
    (``wait_for_exact_target``) or walks back through first parents until it
    reaches a commit whose builds are all finished. Every matching archive
    entry is written; the last one is reported as the primary output.
    """

    def __init__(
        self,
        github: GitHubClient,
        pattern: re.Pattern[str],
        artifact_name: str,
        output_dir: Path,
        current_run_id: Optional[int] = None,
        wait_for_exact_target: bool = False,
        poll_interval: float = 5.0,
        poll_timeout: Optional[float] = None,
        max_ancestor_depth: int = 50,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.github = github
        self.pattern = pattern
        self.artifact_name = artifact_name
        self.output_dir = output_dir
        self.runs = WorkflowRunLocator(github, current_run_id)
        self.artifacts = ArtifactLocator(github)
        self.wait_for_exact_target = wait_for_exact_target
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.max_ancestor_depth = max_ancestor_depth
        self._sleep = sleep

    def extract(self, ref: str) -> FetchResult:
        ref, runs = self.resolve_runs(ref)
        artifact = self.artifacts.locate(runs, self.artifact_name, ref=ref)[0]
        source = self.github.open_range_source(artifact.archive_download_url)
        archive = ZipArchiveReader.open(source)

        written: list[Path] = []
        for entry in archive.entries:
            if entry.is_dir or not self.pattern.search(entry.path):
                continue
            dest = _destination(self.output_dir, entry.path)
            if dest is None:
                continue
            entry.extract_to(dest)
            written.append(dest)
            logger.info(
                "Downloaded %s from %s artifact %s", entry.path, ref, self.artifact_name
            )

        if not written:
            raise HardNotFound("Failed to find file in artifact zipfile")
        return FetchResult(
            files=written,
            primary=written[-1],
            source=f"{ref} artifact {self.artifact_name}",
        )

    def resolve_runs(self, ref: str) -> tuple[str, list[WorkflowRun]]:
        """Return the ref actually used and its finished runs."""
        for depth in range(self.max_ancestor_depth + 1):
            try:
                runs = self.runs.locate(ref)
            except SoftNotFound:
                # Commits without builds are skipped once the walk has started.
                if depth == 0:
                    raise
                runs = []

            if runs and runs_ready(runs):
                return ref, runs
            if runs and self.wait_for_exact_target:
                return ref, self._wait_for_runs(ref, runs)

            parents = self.github.get_commit_parents(ref)
            if not parents:
                raise StructuralFailure(f"No parent commit for {ref}")
            logger.info("Workflows not complete on %s, trying parent...", ref)
            ref = parents[0]

        raise StructuralFailure(
            f"No completed workflows within {self.max_ancestor_depth} ancestors"
        )

    def _wait_for_runs(self, ref: str, runs: list[WorkflowRun]) -> list[WorkflowRun]:
        # The runs already seen count as the first attempt.
        pending = [runs]

        def _poll() -> list[WorkflowRun]:
            if pending:
                return pending.pop()
            return self.runs.locate(ref)

        def _log_wait(retry_state: RetryCallState) -> None:
            logger.info("Waiting for workflows at %s to complete...", ref)

        retrying = Retrying(
            retry=retry_if_result(lambda found: not runs_ready(found)),
            wait=wait_fixed(self.poll_interval),
            stop=stop_never if self.poll_timeout is None else stop_after_delay(self.poll_timeout),
            before_sleep=_log_wait,
            sleep=self._sleep,
        )
        try:
            return retrying(_poll)
        except RetryError as exc:
            raise StructuralFailure(
                f"Timed out waiting for workflows at {ref} to complete"
            ) from exc


def fetch_target(
    config: FetchConfig,
    github: GitHubClient,
    registry: Optional[RegistryClient] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> FetchResult:
    """Resolve ``config.target`` and write the matching file(s) to ``config.output_dir``."""
    release = resolve_release(config.target, github.list_releases(), config.prereleases)
    if release is not None:
        logger.debug("Resolved %s to release %s", config.target, release.tag)
        extractor = ReleasePathExtractor(github, config.file, config.output_dir, registry)
        return extractor.extract(release)

    if not config.artifact_name:
        raise SoftNotFound("No satisfying releases found and no artifact-name set")

    ref = github.get_branch_sha(config.target) or config.target
    logger.debug("Resolved %s to ref %s", config.target, ref)
    return GitRefPathExtractor(
        github,
        config.file,
        config.artifact_name,
        config.output_dir,
        current_run_id=config.run_id,
        wait_for_exact_target=config.wait_for_exact_target,
        poll_interval=config.poll_interval,
        poll_timeout=config.poll_timeout,
        max_ancestor_depth=config.max_ancestor_depth,
        sleep=sleep,
    ).extract(ref)


def run_pipeline(
    config: FetchConfig,
    github: Optional[GitHubClient] = None,
    registry: Optional[RegistryClient] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> FetchOutcome:
    """
    Run one fetch and fold every failure into a single outcome.

    A :class:`SoftNotFound` only counts as a failure when
    ``fail_on_missing_target`` is set.
    """
    owned_http: Optional[httpx.Client] = None
    if github is None:
        owned_http = build_http_client()
        github = GitHubClient(
            config.owner, config.repo, config.token, http=owned_http, api_url=config.api_url
        )
    if registry is None and config.container_package:
        registry = RegistryClient(
            config.owner, config.container_package, http=github.http, registry=config.registry
        )

    try:
        result = fetch_target(config, github, registry, sleep=sleep)
    except SoftNotFound as exc:
        logger.info("%s", exc)
        return FetchOutcome(failed=config.fail_on_missing_target, message=str(exc))
    except (FetchError, httpx.HTTPError, OSError) as exc:
        return FetchOutcome(failed=True, message=str(exc))
    except ValidationError as exc:
        return FetchOutcome(
            failed=True,
            message=f"Unexpected API response: {exc.error_count()} invalid field(s) in {exc.title}",
        )
    finally:
        if owned_http is not None:
            owned_http.close()

    primary = str(result.primary) if result.primary is not None else ""
    return FetchOutcome(downloaded_file=primary, message=None)
