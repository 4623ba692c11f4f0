"""Workflow run and artifact lookup for a commit."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from .errors import SoftNotFound
from .github import GitHubClient
from .models import Artifact, WorkflowRun

__all__ = [
    "ArtifactLocator",
    "WorkflowRunLocator",
    "runs_ready",
]

logger = logging.getLogger(__name__)

_TERMINAL = "completed"


def runs_ready(runs: Sequence[WorkflowRun]) -> bool:
    """True when every run has reached a terminal status."""
    return all(run.status == _TERMINAL for run in runs)


class WorkflowRunLocator:
    """
    Finds the workflow runs at a commit.

    The invoking run is never returned, so a job cannot pick up its own
    (necessarily incomplete) output.
    """

    def __init__(self, github: GitHubClient, current_run_id: Optional[int] = None) -> None:
        self.github = github
        self.current_run_id = current_run_id

    def locate(self, ref: str) -> list[WorkflowRun]:
        """Return runs at *ref*, highest retry attempt first."""
        runs = self.github.list_workflow_runs(ref)
        runs.sort(key=lambda run: run.run_attempt, reverse=True)
        runs = [run for run in runs if run.id != self.current_run_id]
        if not runs:
            raise SoftNotFound(f"No workflows found for {ref}")
        logger.debug("Found %d workflow run(s) at %s", len(runs), ref)
        return runs


class ArtifactLocator:
    """Collects artifacts with an exact name across a list of runs."""

    def __init__(self, github: GitHubClient) -> None:
        self.github = github

    def locate(
        self, runs: Sequence[WorkflowRun], name: str, ref: Optional[str] = None
    ) -> list[Artifact]:
        """
        Return matching artifacts in run order.

        The first element is the authoritative match; artifact timestamps
        play no part in the ordering. Expired artifacts can no longer be
        downloaded and are skipped.
        """
        matches: list[Artifact] = []
        for run in runs:
            for artifact in self.github.list_run_artifacts(run.id):
                if artifact.name != name:
                    continue
                if artifact.expired:
                    logger.debug("Skipping expired artifact %s of run %s", name, run.id)
                    continue
                matches.append(artifact)
        if not matches:
            ref = ref or (runs[0].head_sha if runs else "?")
            raise SoftNotFound(f"Failed to find artifact {name} with a ref {ref}")
        return matches
