"""
artifact-fetch quickstart -- working demo of release resolution, lazy zip
reading, and early-stopping tar scans.

Run directly:

    python examples/quickstart.py

Nothing here touches the network: a local ``httpx.MockTransport`` stands in
for the file host, and everything is written to a temporary directory.
"""

from __future__ import annotations

import io
import pathlib
import tarfile
import tempfile
import zipfile


# ---------------------------------------------------------------------------
# Demo 1: Resolve a version range against a list of releases
# ---------------------------------------------------------------------------

def demo_resolve_release() -> None:
    """Pick the best release for a few targets."""
    print("\n=== Demo 1: Resolve releases ===")

    from artifact_fetch.models import Release
    from artifact_fetch.resolver import resolve_release

    releases = [Release(tag=t) for t in ("v1.0.0", "v1.2.0", "v1.3.0-beta.1", "v2.0.0-rc.1")]
    print(f"  Published tags : {[r.tag for r in releases]}")

    for target, prereleases in [("^1.0.0", False), ("^1.0.0", True), (">=2.0.0-0", True), ("main", False)]:
        chosen = resolve_release(target, releases, include_prereleases=prereleases)
        label = chosen.tag if chosen else "(none -- treated as a git ref)"
        print(f"  {target:<12} prereleases={prereleases!s:<5} -> {label}")


# ---------------------------------------------------------------------------
# Demo 2: Pull one file out of a "remote" zip with ranged reads
# ---------------------------------------------------------------------------

def demo_lazy_zip() -> None:
    """Read the central directory, then fetch a single entry."""
    print("\n=== Demo 2: Lazy zip extraction ===")

    import httpx

    from artifact_fetch.ranged import RangeByteSource
    from artifact_fetch.zipreader import ZipArchiveReader

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("docs/big-manual.pdf", b"%PDF" + b"\x00" * 2_000_000)
        zf.writestr("bin/tool", b"#!/bin/sh\necho hello\n")
    archive = buf.getvalue()
    requests: list[str] = []

    def serve(request: httpx.Request) -> httpx.Response:
        requests.append(f"{request.method} {request.headers.get('Range', '')}".strip())
        if request.method == "HEAD":
            return httpx.Response(200, headers={"Content-Length": str(len(archive))})
        start, _, end = request.headers["Range"].removeprefix("bytes=").partition("-")
        stop = int(end) + 1 if end else len(archive)
        return httpx.Response(206, content=archive[int(start):stop])

    with httpx.Client(transport=httpx.MockTransport(serve)) as http:
        source = RangeByteSource(http, "https://files.example.com/dist.zip")
        reader = ZipArchiveReader.open(source)
        print(f"  Archive size   : {source.size():,} bytes")
        for entry in reader.entries:
            print(f"  Entry          : {entry.path:<22} {entry.size:>9,} bytes")

        with tempfile.TemporaryDirectory() as tmp:
            tool = next(e for e in reader.entries if e.path == "bin/tool")
            dest = tool.extract_to(pathlib.Path(tmp) / tool.path)
            print(f"  Extracted      : {dest.read_text().splitlines()[-1]!r}")

    print(f"  Requests made  : {requests}")


# ---------------------------------------------------------------------------
# Demo 3: Scan a layer tarball and stop at the first match
# ---------------------------------------------------------------------------

def demo_tar_scan() -> None:
    """Stop reading a tar stream as soon as the wanted file is written."""
    print("\n=== Demo 3: Early-stopping tar scan ===")

    from artifact_fetch.tarstream import ScanSignal, TarEntry, TarStreamReader

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, data in [("etc/hostname", b"box\n"), ("opt/app/tool", b"binary"), ("var/cache.db", b"c" * 100_000)]:
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    layer = buf.getvalue()
    chunks = [layer[i:i + 1024] for i in range(0, len(layer), 1024)]

    with tempfile.TemporaryDirectory() as tmp:
        def visit(entry: TarEntry) -> ScanSignal:
            print(f"  Visiting       : {entry.path}")
            if entry.path.endswith("tool"):
                entry.extract_to(pathlib.Path(tmp) / entry.path)
                return ScanSignal.STOP
            return ScanSignal.CONTINUE

        outcome = TarStreamReader(iter(chunks)).scan(visit)
        print(f"  Scan outcome   : {outcome.value}")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> None:
    print("artifact-fetch quickstart demo")
    print("=" * 40)

    demo_resolve_release()
    demo_lazy_zip()
    demo_tar_scan()

    print("\n" + "=" * 40)
    print("All demos completed successfully.")


if __name__ == "__main__":
    main()
