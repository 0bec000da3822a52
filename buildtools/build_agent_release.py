#!/usr/bin/env python3
"""Build the ``shipctl-agent`` release tarball published for each tag.

The release channel of the agent installer downloads
``shipctl_agent_linux_amd64.tar.gz`` from the release matching the
workstation's version. This script produces that tarball (plus a
``.sha256`` file) from the installed ``shipctl`` sources and, when given a
tag, refuses to build if the tag does not name ``__version__`` from
``src/shipctl/__init__.py``.
"""
from __future__ import annotations

import argparse
import ast
import hashlib
import pathlib
import sys
import tarfile
import tempfile

PROJECT_ROOT = pathlib.Path(__file__).resolve().parent.parent
INIT_PATH = PROJECT_ROOT / "src" / "shipctl" / "__init__.py"
TARBALL_NAME = "shipctl_agent_linux_amd64.tar.gz"
AGENT_BINARY = "shipctl-agent"


class ReleaseBuildError(RuntimeError):
    """Raised when the release cannot be built as requested."""


def load_package_version() -> str:
    """Parse ``__version__`` from the package without importing it."""
    source = INIT_PATH.read_text(encoding="utf-8")
    module = ast.parse(source, filename=str(INIT_PATH))

    for node in module.body:
        if isinstance(node, ast.Assign):
            for target in node.targets:
                if getattr(target, "id", None) == "__version__":
                    value = getattr(node.value, "value", None)
                    if not isinstance(value, str):
                        raise ReleaseBuildError(
                            "Unable to determine __version__ from __init__.py"
                        )
                    return value
    raise ReleaseBuildError("Unable to determine __version__ from __init__.py")


def version_from_tag(tag: str) -> str:
    """Return the version named by a ``v<version>`` release tag."""
    if not tag.startswith("v") or len(tag) == 1:
        raise ReleaseBuildError(
            f"Release tags must be formatted as v<version>; received '{tag}'."
        )
    return tag[1:]


def build_tarball(output_dir: pathlib.Path, interpreter: str) -> pathlib.Path:
    """Bundle the agent zipapp into the release tarball under *output_dir*."""
    from shipctl.providers.agent_installer import build_agent_zipapp

    output_dir.mkdir(parents=True, exist_ok=True)
    tarball = output_dir / TARBALL_NAME
    with tempfile.TemporaryDirectory(prefix="shipctl-release-") as tmp:
        binary = build_agent_zipapp(
            pathlib.Path(tmp) / AGENT_BINARY,
            interpreter=interpreter,
        )
        with tarfile.open(tarball, "w:gz") as archive:
            info = archive.gettarinfo(str(binary), arcname=AGENT_BINARY)
            info.mode = 0o755
            info.uid = info.gid = 0
            info.uname = info.gname = "root"
            with binary.open("rb") as handle:
                archive.addfile(info, handle)
    digest = hashlib.sha256(tarball.read_bytes()).hexdigest()
    (output_dir / f"{TARBALL_NAME}.sha256").write_text(
        f"{digest}  {TARBALL_NAME}\n", encoding="utf-8"
    )
    return tarball


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Return parsed CLI arguments for the release build."""
    parser = argparse.ArgumentParser(description="Build the shipctl-agent release tarball.")
    parser.add_argument(
        "--output-dir",
        type=pathlib.Path,
        default=PROJECT_ROOT / "dist",
        help="Directory receiving the tarball and its checksum.",
    )
    parser.add_argument(
        "--tag",
        help="Git tag being released; must be v<version> matching the package.",
    )
    parser.add_argument(
        "--interpreter",
        default="/usr/bin/env python3",
        help="Shebang interpreter for the bundled agent.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint used by the release workflow."""
    args = parse_args(argv)
    try:
        package_version = load_package_version()
        if args.tag is not None:
            tag_version = version_from_tag(args.tag)
            if tag_version != package_version:
                raise ReleaseBuildError(
                    f"Tag version '{tag_version}' does not match package version "
                    f"'{package_version}'."
                )
        tarball = build_tarball(args.output_dir, args.interpreter)
    except ReleaseBuildError as exc:
        sys.stderr.write(f"{exc}\n")
        return 1

    sys.stdout.write(f"{tarball}\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
