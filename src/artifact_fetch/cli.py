"""CLI entry point for artifact-fetch.

Every option can also be supplied the way GitHub Actions passes action
inputs, through ``INPUT_<NAME>`` environment variables.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError

from .core import run_pipeline
from .github import GitHubClient, build_http_client
from .models import FetchConfig
from .resolver import resolve_release

_OUTPUT_NAME = "downloaded-file"


def _configure_logging(verbose: bool) -> None:
    logger = logging.getLogger("artifact_fetch")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def _set_output(name: str, value: str) -> None:
    """Publish an action output, or echo it when not running under Actions."""
    output_file = os.environ.get("GITHUB_OUTPUT")
    if output_file:
        with open(output_file, "a", encoding="utf-8") as fh:
            fh.write(f"{name}={value}\n")
    else:
        click.echo(f"{name}={value}")


def _run_id_from_env() -> Optional[int]:
    raw = os.environ.get("GITHUB_RUN_ID", "").strip()
    return int(raw) if raw.isdigit() else None


@click.group()
@click.version_option(package_name="artifact-fetch")
def main() -> None:
    """Fetch one file from the release or build artifact matching a target."""


@main.command("fetch")
@click.option("--owner", required=True, envvar="INPUT_OWNER", help="Repository owner.")
@click.option("--repo", required=True, envvar="INPUT_REPO", help="Repository name.")
@click.option(
    "--file",
    "file_pattern",
    required=True,
    envvar="INPUT_FILE",
    help="Regular expression matched against asset and archive entry names.",
)
@click.option(
    "--target",
    required=True,
    envvar="INPUT_TARGET",
    help="Version range, branch, tag, or commit SHA.",
)
@click.option("--token", required=True, envvar="INPUT_TOKEN", help="API access token.")
@click.option(
    "--prereleases",
    type=click.BOOL,
    default=False,
    show_default=True,
    envvar="INPUT_PRERELEASES",
    help="Let prereleases satisfy the version range.",
)
@click.option(
    "--artifact-name",
    default="",
    envvar="INPUT_ARTIFACT-NAME",
    help="Workflow artifact to search when no release satisfies the target.",
)
@click.option(
    "--container-package",
    default="",
    envvar="INPUT_CONTAINER-PACKAGE",
    help="Container image package to search when no release asset matches.",
)
@click.option(
    "--fail-on-missing-target",
    type=click.BOOL,
    default=True,
    show_default=True,
    envvar="INPUT_FAIL-ON-MISSING-TARGET",
    help="Fail when nothing matches the target at all.",
)
@click.option(
    "--wait-for-exact-target",
    type=click.BOOL,
    default=False,
    show_default=True,
    envvar="INPUT_WAIT-FOR-EXACT-TARGET",
    help="Wait for running workflows at the target instead of using an ancestor.",
)
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
    show_default=True,
    help="Directory extracted files are written to.",
)
@click.option("--poll-interval", type=float, default=5.0, show_default=True)
@click.option("--poll-timeout", type=float, default=None, help="Give up waiting after this many seconds.")
@click.option("--max-ancestor-depth", type=int, default=50, show_default=True)
@click.option(
    "--api-url",
    default="https://api.github.com",
    envvar="GITHUB_API_URL",
    show_default=True,
)
@click.option("--registry", default="ghcr.io", show_default=True)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def fetch_command(
    owner: str,
    repo: str,
    file_pattern: str,
    target: str,
    token: str,
    prereleases: bool,
    artifact_name: str,
    container_package: str,
    fail_on_missing_target: bool,
    wait_for_exact_target: bool,
    output_dir: Path,
    poll_interval: float,
    poll_timeout: Optional[float],
    max_ancestor_depth: int,
    api_url: str,
    registry: str,
    verbose: bool,
) -> None:
    """Resolve the target and write the matching file."""
    _configure_logging(verbose)
    _set_output(_OUTPUT_NAME, "")

    try:
        config = FetchConfig(
            owner=owner,
            repo=repo,
            file=file_pattern,
            target=target,
            token=token,
            prereleases=prereleases,
            artifact_name=artifact_name,
            container_package=container_package,
            fail_on_missing_target=fail_on_missing_target,
            wait_for_exact_target=wait_for_exact_target,
            run_id=_run_id_from_env(),
            output_dir=output_dir,
            poll_interval=poll_interval,
            poll_timeout=poll_timeout,
            max_ancestor_depth=max_ancestor_depth,
            api_url=api_url,
            registry=registry,
        )
    except ValidationError as exc:
        click.echo(f"Error: invalid configuration: {exc}", err=True)
        sys.exit(1)

    outcome = run_pipeline(config)
    if outcome.downloaded_file:
        _set_output(_OUTPUT_NAME, outcome.downloaded_file)
    if outcome.failed:
        click.echo(f"::error::{outcome.message}")
        sys.exit(1)


@main.command("resolve")
@click.option("--owner", required=True, envvar="INPUT_OWNER", help="Repository owner.")
@click.option("--repo", required=True, envvar="INPUT_REPO", help="Repository name.")
@click.option("--target", required=True, envvar="INPUT_TARGET")
@click.option("--token", required=True, envvar="INPUT_TOKEN")
@click.option("--prereleases", type=click.BOOL, default=False, envvar="INPUT_PRERELEASES")
@click.option("--api-url", default="https://api.github.com", envvar="GITHUB_API_URL")
def resolve_command(
    owner: str,
    repo: str,
    target: str,
    token: str,
    prereleases: bool,
    api_url: str,
) -> None:
    """Show which release a target resolves to, without downloading."""
    with build_http_client() as http:
        github = GitHubClient(owner, repo, token, http=http, api_url=api_url)
        release = resolve_release(target, github.list_releases(), prereleases)
        if release is not None:
            click.echo(f"Release : {release.tag}")
            click.echo(f"Assets  : {len(release.assets)}")
            for asset in release.assets:
                click.echo(f"  {asset.name}")
            return
        sha = github.get_branch_sha(target)

    click.echo("Release : (none)")
    click.echo(f"Git ref : {sha or target}")


if __name__ == "__main__":
    main()
