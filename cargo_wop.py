#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Paul Tiffany
# Project: cargo-wop - Build single Rust files as cargo projects

"""
cargo-wop - Treat a single Rust source file as a complete cargo project.

The file's leading ``//!`` doc comment carries a fenced ```cargo manifest.
cargo-wop turns it into a normalized Cargo.toml inside a per-file cache
directory and forwards cargo subcommands against that directory.
"""

import argparse
import enum
import hashlib
import json
import logging
import os
import re
import shlex
import shutil
import signal
import subprocess
import sys
import tempfile
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import tomli_w

# Project metadata
__version__ = "0.1.0"
__license__ = "MIT"

logger = logging.getLogger("cargo_wop")

# --- Configuration ---
TOOL_SECTION = "cargo-wop"
MANIFEST_NAME = "Cargo.toml"
DEFAULT_VERSION = "0.1.0"
DEFAULT_EDITION = "2018"
CACHE_ENV = "CARGO_WOP_CACHE"
CACHE_DIRNAME = "wop-cache"
KEY_LENGTH = 16
LOG_FORMAT = "[%(levelname)s] %(message)s"

DOC_PREFIX = "//!"
FENCE = "```"
MANIFEST_TAG = "cargo"

DEPENDENCY_TABLES = ("dependencies", "dev-dependencies", "build-dependencies")

PASSTHROUGH_COMMANDS = (
    "bench",
    "check",
    "clean",
    "clippy",
    "doc",
    "fix",
    "fmt",
    "metadata",
    "test",
    "tree",
    "update",
    "verify-project",
)

# --- Errors ---


class CargoWopError(Exception):
    """Base exception for cargo-wop operations."""

    exit_code = 1


class UsageError(CargoWopError):
    """The command line does not name a source file."""

    exit_code = 2


class MissingManifest(CargoWopError):
    """The source has no ```cargo block in a leading doc comment."""

    exit_code = 3


class MalformedManifestFence(CargoWopError):
    """The ```cargo block is unterminated, nested or repeated."""

    exit_code = 4


class InvalidManifestSyntax(CargoWopError):
    """The embedded manifest is not valid TOML or has the wrong shape."""

    exit_code = 5


class ConflictingTargetDeclaration(CargoWopError):
    """A declared target points at a file other than the source."""

    exit_code = 6


class CacheWriteError(CargoWopError):
    """A manifest could not be written to disk."""

    exit_code = 7


# --- Manifest Extraction ---


def extract_manifest(text: str) -> str:
    """Return the TOML fragment fenced as ```cargo in the leading doc comment.

    The first non-empty line (after an optional shebang) must start a run of
    ``//!`` lines. Scanning stops at the first line outside that run. Other
    fenced blocks inside the run are skipped so that their closing fence is
    not mistaken for the manifest's.
    """
    lines = text.lstrip("\ufeff").splitlines()
    start = 0
    if lines and lines[0].startswith("#!") and not lines[0].startswith("#!["):
        start = 1
    while start < len(lines) and not lines[start].strip():
        start += 1
    if start == len(lines) or not lines[start].startswith(DOC_PREFIX):
        raise MissingManifest("source does not start with a //! doc comment")

    fragment: Optional[list[str]] = None
    in_manifest = False
    in_other_fence = False
    for line in lines[start:]:
        if not line.startswith(DOC_PREFIX):
            break
        body = line[len(DOC_PREFIX) :]
        marker = body.strip()

        if in_manifest:
            if marker == FENCE:
                in_manifest = False
            elif marker.startswith(FENCE):
                raise MalformedManifestFence(f"unexpected fence inside ```cargo block: {marker!r}")
            else:
                fragment.append(body[1:] if body.startswith(" ") else body)
        elif in_other_fence:
            if marker == FENCE:
                in_other_fence = False
        elif marker.startswith(FENCE):
            if marker[len(FENCE) :].strip() != MANIFEST_TAG:
                in_other_fence = True
            elif fragment is not None:
                raise MalformedManifestFence("found more than one ```cargo block")
            else:
                fragment = []
                in_manifest = True

    if in_manifest:
        raise MalformedManifestFence("unterminated ```cargo block")
    if fragment is None:
        raise MissingManifest("leading doc comment contains no ```cargo block")
    return "\n".join(fragment) + "\n"


# --- Manifest Normalization ---


@dataclass
class WopConfig:
    """Parsed ``[cargo-wop]`` table."""

    default_action: list[str] = field(default_factory=list)
    filter: dict[str, str] = field(default_factory=dict)


@dataclass
class NormalizedManifest:
    text: str
    config: WopConfig
    package_name: str
    target_names: list[str]


def package_name_for(source: Path) -> str:
    """Derive a cargo-compatible package name from the file stem."""
    name = re.sub(r"[^A-Za-z0-9_-]", "_", source.stem) or "script"
    if name[0].isdigit():
        name = "_" + name
    return name


def _manifest_relative(path: Path, manifest_dir: Path) -> str:
    """Express an absolute path relative to the manifest directory."""
    try:
        return Path(os.path.relpath(path, manifest_dir)).as_posix()
    except ValueError:
        # no relative path between different drives
        return path.as_posix()


def _parse_tool_section(raw: Any) -> WopConfig:
    """Validate the [cargo-wop] table and turn it into a WopConfig."""
    if raw is None:
        return WopConfig()
    if not isinstance(raw, dict):
        raise InvalidManifestSyntax(f"[{TOOL_SECTION}] must be a table")
    for key in sorted(set(raw) - {"default-action", "filter"}):
        logger.warning("Ignoring unknown key %r in [%s]", key, TOOL_SECTION)

    action = raw.get("default-action", [])
    if not isinstance(action, list) or not all(isinstance(token, str) for token in action):
        raise InvalidManifestSyntax("default-action must be an array of strings")
    if "default-action" in raw and not action:
        raise InvalidManifestSyntax("default-action must not be empty")
    if action and action[0] not in COMMANDS:
        raise InvalidManifestSyntax(f"default-action names unknown subcommand {action[0]!r}")

    filter_map = raw.get("filter", {})
    if not isinstance(filter_map, dict) or not all(
        isinstance(value, str) for value in filter_map.values()
    ):
        raise InvalidManifestSyntax("filter must be a table of file names to strings")
    return WopConfig(default_action=list(action), filter=dict(filter_map))


def _ensure_package(manifest: dict[str, Any], name: str) -> dict[str, Any]:
    """Fill in the package name, version, and edition when they are missing."""
    package = manifest.setdefault("package", {})
    if not isinstance(package, dict):
        raise InvalidManifestSyntax("package must be a table")
    package.setdefault("name", name)
    package.setdefault("version", DEFAULT_VERSION)
    package.setdefault("edition", DEFAULT_EDITION)
    if not isinstance(package["name"], str):
        raise InvalidManifestSyntax("package.name must be a string")
    return package


def _ensure_targets(manifest: dict[str, Any], source: Path, manifest_dir: Path) -> list[str]:
    """Point every declared target at the source, or inject a single binary."""
    lib = manifest.get("lib")
    bins = manifest.get("bin", [])
    if lib is not None and not isinstance(lib, dict):
        raise InvalidManifestSyntax("lib must be a table")
    if not isinstance(bins, list) or not all(isinstance(b, dict) for b in bins):
        raise InvalidManifestSyntax("bin must be an array of tables")
    if not bins:
        manifest.pop("bin", None)

    default_name = package_name_for(source)
    targets = [(lib, default_name.replace("-", "_"))] if lib is not None else []
    targets += [(target, default_name) for target in bins]
    if not targets:
        injected: dict[str, Any] = {}
        manifest["bin"] = [injected]
        targets = [(injected, default_name)]

    target_path = _manifest_relative(source, manifest_dir)
    names = []
    for target, name in targets:
        declared = target.get("path")
        if declared is not None and (
            not isinstance(declared, str) or (source.parent / declared).resolve() != source
        ):
            raise ConflictingTargetDeclaration(
                f"target path {declared!r} does not refer to {source.name}"
            )
        target["path"] = target_path
        target.setdefault("name", name)
        names.append(str(target["name"]))
    return names


def _dependency_tables(manifest: dict[str, Any]) -> list[Any]:
    """Collect every dependency table, including target-specific ones."""
    tables = [manifest.get(name) for name in DEPENDENCY_TABLES]
    platforms = manifest.get("target")
    if isinstance(platforms, dict):
        for platform in platforms.values():
            if isinstance(platform, dict):
                tables.extend(platform.get(name) for name in DEPENDENCY_TABLES)
    patch = manifest.get("patch")
    if isinstance(patch, dict):
        tables.extend(patch.values())
    return [table for table in tables if isinstance(table, dict)]


def _rewrite_dependency_paths(
    manifest: dict[str, Any], source_dir: Path, manifest_dir: Path
) -> None:
    for table in _dependency_tables(manifest):
        for dependency in table.values():
            if isinstance(dependency, dict) and isinstance(dependency.get("path"), str):
                resolved = (source_dir / dependency["path"]).resolve()
                dependency["path"] = _manifest_relative(resolved, manifest_dir)


def normalize_manifest(fragment: str, source: Path, manifest_dir: Path) -> NormalizedManifest:
    """Turn an embedded fragment into a complete manifest for ``manifest_dir``.

    The result only depends on the arguments, so comparing its text with the
    manifest on disk tells whether the cached project is current.
    """
    source = source.resolve()
    manifest_dir = manifest_dir.resolve()
    try:
        manifest = tomllib.loads(fragment)
    except tomllib.TOMLDecodeError as e:
        raise InvalidManifestSyntax(f"{source.name}: {e}") from e

    config = _parse_tool_section(manifest.pop(TOOL_SECTION, None))
    package = _ensure_package(manifest, package_name_for(source))
    target_names = _ensure_targets(manifest, source, manifest_dir)
    _rewrite_dependency_paths(manifest, source.parent, manifest_dir)

    ordered = {key: manifest[key] for key in ("package", "lib", "bin") if key in manifest}
    ordered.update((key, value) for key, value in manifest.items() if key not in ordered)
    return NormalizedManifest(
        text=tomli_w.dumps(ordered),
        config=config,
        package_name=package["name"],
        target_names=target_names,
    )


# --- Project Cache ---


@dataclass
class Project:
    source: Path
    directory: Path
    fragment: str
    manifest: NormalizedManifest
    refreshed: bool = False

    @property
    def manifest_path(self) -> Path:
        return self.directory / MANIFEST_NAME


def find_cache_root(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Resolve the cache root from CARGO_WOP_CACHE, CARGO_HOME or the home dir."""
    env = os.environ if environ is None else environ
    if env.get(CACHE_ENV):
        return Path(env[CACHE_ENV]).expanduser()
    if env.get("CARGO_HOME"):
        return Path(env["CARGO_HOME"]).expanduser() / CACHE_DIRNAME
    try:
        return Path.home() / ".cargo" / CACHE_DIRNAME
    except RuntimeError as e:
        raise CargoWopError("Could not determine cargo home directory") from e


def project_key(source: Path) -> str:
    """Hash the absolute source path into a short, stable key."""
    digest = hashlib.sha256(str(source).encode("utf-8", errors="surrogateescape"))
    return digest.hexdigest()[:KEY_LENGTH]


def project_dir_for(source: Path, cache_root: Path) -> Path:
    """Return the cache subdirectory owned by ``source``."""
    source = source.resolve()
    return cache_root.resolve() / f"{package_name_for(source)}-{project_key(source)}"


def read_source(source: Path) -> str:
    """Read a UTF-8 source file."""
    try:
        return source.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise CargoWopError(f"Cannot read {source}: {e}") from e


def _current_umask() -> int:
    """Read the process umask (only settable, so set it back at once)."""
    mask = os.umask(0o022)
    os.umask(mask)
    return mask


def write_if_changed(path: Path, text: str) -> bool:
    """Atomically replace ``path`` with ``text`` unless it already holds it."""
    data = text.encode("utf-8")
    try:
        if path.read_bytes() == data:
            return False
    except FileNotFoundError:
        pass
    except OSError as e:
        raise CacheWriteError(f"Error reading {path}: {e}") from e

    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
        ) as handle:
            tmp_name = handle.name
            handle.write(data)
        if path.exists():
            shutil.copymode(path, tmp_name)
        else:
            os.chmod(tmp_name, 0o666 & ~_current_umask())
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as e:
        raise CacheWriteError(f"Error writing {path}: {e}") from e
    finally:
        if tmp_name is not None:
            Path(tmp_name).unlink(missing_ok=True)
    return True


def ensure_project(source: Path, cache_root: Path) -> Project:
    """Create or refresh the cached project for ``source``.

    Extraction and normalization happen before anything touches the cache, so
    a broken manifest never leaves a half-built project directory behind. An
    unchanged manifest is left alone to keep cargo's incremental state.
    """
    source = source.resolve()
    directory = project_dir_for(source, cache_root)
    fragment = extract_manifest(read_source(source))
    manifest = normalize_manifest(fragment, source, directory)
    refreshed = write_if_changed(directory / MANIFEST_NAME, manifest.text)
    if refreshed:
        logger.debug("Wrote %s", directory / MANIFEST_NAME)
    else:
        logger.debug("Manifest for %s is up to date", source.name)
    return Project(source, directory, fragment, manifest, refreshed)


# --- Command Dispatch ---


class CommandClass(enum.Enum):
    PASSTHROUGH = "passthrough"
    RUN = "run"
    BUILD = "build"
    INSTALL = "install"
    MANIFEST = "manifest"
    WRITE_MANIFEST = "write-manifest"


@dataclass(frozen=True)
class CommandSpec:
    command_class: CommandClass
    cargo_command: str
    release: bool = False


COMMANDS: dict[str, CommandSpec] = {
    "run": CommandSpec(CommandClass.RUN, "run", release=True),
    "run-debug": CommandSpec(CommandClass.RUN, "run"),
    "build": CommandSpec(CommandClass.BUILD, "build", release=True),
    "build-debug": CommandSpec(CommandClass.BUILD, "build"),
    "install": CommandSpec(CommandClass.INSTALL, "install"),
    "manifest": CommandSpec(CommandClass.MANIFEST, "manifest"),
    "write-manifest": CommandSpec(CommandClass.WRITE_MANIFEST, "write-manifest"),
    **{name: CommandSpec(CommandClass.PASSTHROUGH, name) for name in PASSTHROUGH_COMMANDS},
}


@dataclass
class Invocation:
    command: Optional[str]
    source: Path
    args: list[str] = field(default_factory=list)


@dataclass
class CommandPlan:
    """A rewritten invocation.

    ``cargo_args`` is everything passed to cargo after the executable name.
    For MANIFEST and WRITE_MANIFEST, which never start cargo, it carries the
    flags of the internal command instead.
    """

    name: str
    command_class: CommandClass
    cargo_args: list[str] = field(default_factory=list)
    program_args: list[str] = field(default_factory=list)
    relocate_artifacts: bool = False
    unsupported: bool = False

    def argv(self) -> list[str]:
        argv = [cargo_executable(), *self.cargo_args]
        if self.program_args:
            argv += ["--", *self.program_args]
        return argv


def cargo_executable() -> str:
    # cargo exports its own path to external subcommands
    return os.environ.get("CARGO", "cargo")


def _looks_like_source(token: str) -> bool:
    """Guess whether a token names a file rather than a subcommand."""
    path = Path(token)
    return bool(path.suffix) or path.is_file()


def parse_invocation(tokens: list[str]) -> Invocation:
    """Split ``[wop] [subcommand] SOURCE [ARGS...]`` into its parts."""
    tokens = list(tokens)
    if tokens and tokens[0] == "wop":
        tokens = tokens[1:]
    if not tokens:
        raise UsageError("Need a source file")
    first = tokens[0]
    if first.startswith("-"):
        raise UsageError(f"Unexpected option {first!r}; cargo-wop options go before the source")
    if first not in COMMANDS and _looks_like_source(first):
        return Invocation(None, Path(first), tokens[1:])
    if len(tokens) < 2:
        raise UsageError(f"Need a source file after {first!r}")
    return Invocation(first, Path(tokens[1]), tokens[2:])


def resolve_default_action(invocation: Invocation, config: WopConfig) -> Invocation:
    """Fill in the subcommand from ``default-action`` when none was given."""
    if invocation.command is not None:
        return invocation
    if not config.default_action:
        return Invocation("run", invocation.source, list(invocation.args))
    command, *configured = config.default_action
    return Invocation(command, invocation.source, configured + list(invocation.args))


def _with_release(args: list[str], release: bool) -> list[str]:
    """Prepend --release unless the caller already chose a profile."""
    chooses_profile = any(
        arg in ("--release", "--profile") or arg.startswith("--profile=") for arg in args
    )
    if release and not chooses_profile:
        return ["--release", *args]
    return list(args)


def _against(project: Project, command: str) -> list[str]:
    """Start a cargo command aimed at the cached manifest."""
    return [command, "--manifest-path", str(project.manifest_path)]


def _plan_passthrough(
    name: str, spec: CommandSpec, project: Project, args: list[str]
) -> CommandPlan:
    """Hand the subcommand to cargo against the cached manifest."""
    return CommandPlan(name, spec.command_class, [*_against(project, spec.cargo_command), *args])


def _plan_run(
    name: str, spec: CommandSpec, project: Project, args: list[str]
) -> CommandPlan:
    """Split cargo options from program arguments at the first ``--``."""
    if "--" in args:
        split = args.index("--")
        cargo_args, program_args = args[:split], args[split + 1 :]
    else:
        cargo_args, program_args = [], list(args)
    cargo_args = [*_against(project, "run"), *_with_release(cargo_args, spec.release)]
    return CommandPlan(name, spec.command_class, cargo_args, program_args)


def _plan_build(
    name: str, spec: CommandSpec, project: Project, args: list[str]
) -> CommandPlan:
    cargo_args = [*_against(project, "build"), *_with_release(args, spec.release)]
    return CommandPlan(name, spec.command_class, cargo_args, relocate_artifacts=True)


def _plan_install(
    name: str, spec: CommandSpec, project: Project, args: list[str]
) -> CommandPlan:
    # cargo install has no --manifest-path
    cargo_args = ["install", "--path", str(project.directory), *args]
    return CommandPlan(name, spec.command_class, cargo_args)


def _plan_internal(
    name: str, spec: CommandSpec, project: Project, args: list[str]
) -> CommandPlan:
    return CommandPlan(name, spec.command_class, list(args))


Planner = Callable[[str, CommandSpec, Project, list[str]], CommandPlan]

PLANNERS: dict[CommandClass, Planner] = {
    CommandClass.PASSTHROUGH: _plan_passthrough,
    CommandClass.RUN: _plan_run,
    CommandClass.BUILD: _plan_build,
    CommandClass.INSTALL: _plan_install,
    CommandClass.MANIFEST: _plan_internal,
    CommandClass.WRITE_MANIFEST: _plan_internal,
}

if set(PLANNERS) != set(CommandClass):
    raise RuntimeError(
        f"No planner for {sorted(c.value for c in set(CommandClass) - set(PLANNERS))}"
    )


def plan_command(invocation: Invocation, project: Project) -> CommandPlan:
    """Rewrite an invocation into a plan against the cached project."""
    name = invocation.command or "run"
    spec = COMMANDS.get(name)
    if spec is None:
        logger.warning(
            "UnsupportedSubcommand: %r is not a cargo-wop command; passing it to cargo "
            "unchanged, behavior is not guaranteed",
            name,
        )
        plan = _plan_passthrough(
            name, CommandSpec(CommandClass.PASSTHROUGH, name), project, list(invocation.args)
        )
        plan.unsupported = True
        return plan
    return PLANNERS[spec.command_class](name, spec, project, list(invocation.args))


def run_cargo(argv: list[str]) -> int:
    """Run cargo with inherited stdio and return its exit code.

    A child killed by a signal is reported as ``128 + signal``.
    """
    logger.debug("Running %s", shlex.join(argv))
    try:
        process = subprocess.Popen(argv)
    except OSError as e:
        raise CargoWopError(f"Could not start {argv[0]}: {e}") from e
    try:
        code = process.wait()
    except KeyboardInterrupt:
        if os.name == "posix":
            process.send_signal(signal.SIGINT)
        process.wait()
        raise
    # killed by signal N: report 128 + N as a shell would
    return 128 - code if code < 0 else code


def write_manifest(project: Project, workdir: Path, force: bool = False) -> Path:
    """Write the manifest into ``workdir``, with paths relative to it."""
    manifest = normalize_manifest(project.fragment, project.source, workdir)
    path = workdir / MANIFEST_NAME
    if not force and path.is_file() and path.read_bytes() != manifest.text.encode("utf-8"):
        raise CargoWopError(f"{path} already exists; pass --force to replace it")
    write_if_changed(path, manifest.text)
    return path


def execute_plan(plan: CommandPlan, project: Project, workdir: Path) -> int:
    """Carry out a plan and return the exit code to report."""
    if plan.command_class is CommandClass.MANIFEST:
        sys.stdout.write(project.manifest.text)
        return 0
    if plan.command_class is CommandClass.WRITE_MANIFEST:
        path = write_manifest(project, workdir, force="--force" in plan.cargo_args)
        print(f"✓ Manifest written to {path}", file=sys.stderr)
        return 0
    if plan.relocate_artifacts:
        code, entries = build_and_collect(plan, project, workdir)
        report_artifacts(entries)
        return code
    return run_cargo(plan.argv())


# --- Artifact Resolution ---


@dataclass
class ArtifactEntry:
    source: Path
    destination: Optional[Path]

    @property
    def skipped(self) -> bool:
        return self.destination is None


def _target_key(name: str) -> str:
    """Cargo reports targets with dashes replaced by underscores."""
    return name.replace("-", "_")


def _option_value(args: list[str], option: str) -> Optional[str]:
    """Return the value of ``--option VALUE`` or ``--option=VALUE``."""
    for index, arg in enumerate(args):
        if arg == option and index + 1 < len(args):
            return args[index + 1]
        if arg.startswith(option + "="):
            return arg.split("=", 1)[1]
    return None


def output_dir(project: Project, cargo_args: list[str]) -> Path:
    """Locate the directory cargo places final artifacts in for these args."""
    target_dir = Path(os.environ.get("CARGO_TARGET_DIR") or project.directory / "target")
    profile = _option_value(cargo_args, "--profile")
    if profile is None:
        profile = "release" if "--release" in cargo_args else "debug"
    profile = {"dev": "debug", "test": "debug", "bench": "release"}.get(profile, profile)
    triple = _option_value(cargo_args, "--target")
    return target_dir / triple / profile if triple else target_dir / profile


def snapshot_dir(directory: Path) -> dict[str, tuple[int, int]]:
    """Map each file in ``directory`` to its mtime and size."""
    if not directory.is_dir():
        return {}
    return {
        path.name: (path.stat().st_mtime_ns, path.stat().st_size)
        for path in directory.iterdir()
        if path.is_file()
    }


def collect_from_snapshot(
    before: dict[str, tuple[int, int]],
    after: dict[str, tuple[int, int]],
    directory: Path,
    target_names: list[str],
) -> dict[str, list[str]]:
    """Attribute new or changed output files to targets by their file name.

    Used only when cargo cannot produce a build report. Files the build did
    not touch are invisible to this comparison.
    """
    changed = sorted(name for name, stamp in after.items() if before.get(name) != stamp)
    produced: dict[str, list[str]] = {}
    for target in target_names:
        key = _target_key(target)
        stems = {target, key, f"lib{key}"}
        produced[target] = [
            str(directory / name)
            for name in changed
            if name.split(".")[0] in stems and not name.endswith(".d")
        ]
    return produced


def parse_build_report(output: str, manifest_path: Path) -> dict[str, list[str]]:
    """Group the filenames of cargo's compiler-artifact messages by target.

    Only artifacts of the package defined by ``manifest_path`` are kept;
    dependencies and build scripts are ignored.
    """
    expected = manifest_path.resolve()
    produced: dict[str, list[str]] = {}
    for line in output.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping unparsable build report line: %s", line[:200])
            continue
        if message.get("reason") != "compiler-artifact":
            continue
        reported = message.get("manifest_path")
        if not isinstance(reported, str) or Path(reported).resolve() != expected:
            continue
        target = message.get("target") or {}
        if "custom-build" in target.get("kind", []):
            continue
        filenames = produced.setdefault(str(target.get("name", "")), [])
        for filename in message.get("filenames") or []:
            if filename not in filenames:
                filenames.append(filename)
    return produced


def query_build_report(plan: CommandPlan) -> Optional[str]:
    """Re-run the build in JSON message mode; None if cargo cannot report."""
    argv = [cargo_executable(), plan.cargo_args[0], "--message-format=json", *plan.cargo_args[1:]]
    logger.debug("Running %s", shlex.join(argv))
    try:
        result = subprocess.run(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=False,
        )
    except OSError as e:
        logger.debug("Build report failed to start: %s", e)
        return None
    if result.returncode != 0:
        logger.debug("Build report exited with %d: %s", result.returncode, result.stderr.strip())
        return None
    return result.stdout


def resolve_artifacts(
    produced: dict[str, list[str]],
    config: WopConfig,
    target_names: list[str],
    workdir: Path,
) -> list[ArtifactEntry]:
    """Apply the filter table to the artifacts of this build."""
    reported = {_target_key(name) for name, filenames in produced.items() if filenames}
    for target in target_names:
        if _target_key(target) not in reported:
            logger.warning("NoArtifactProduced: target %r did not produce any artifact", target)

    entries: list[ArtifactEntry] = []
    seen: set[str] = set()
    for filenames in produced.values():
        for filename in filenames:
            if filename in seen:
                continue
            seen.add(filename)
            source = Path(filename)
            destination = config.filter.get(source.name, source.name)
            entries.append(ArtifactEntry(source, workdir / destination if destination else None))

    produced_names = {entry.source.name for entry in entries}
    for name in sorted(set(config.filter) - produced_names):
        logger.warning("Filter entry %r does not match any artifact of this build", name)
    return entries


def copy_artifacts(entries: list[ArtifactEntry]) -> None:
    """Copy every non-skipped artifact to its destination."""
    for entry in entries:
        if entry.destination is None:
            continue
        try:
            entry.destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(entry.source, entry.destination)
        except OSError as e:
            raise CargoWopError(f"Error copying {entry.source} to {entry.destination}: {e}") from e


def build_and_collect(
    plan: CommandPlan, project: Project, workdir: Path
) -> tuple[int, list[ArtifactEntry]]:
    """Build, discover the artifacts, and copy them into ``workdir``.

    The second cargo run uses ``--message-format=json`` and finds everything
    fresh, so it only reports. If cargo cannot produce that report, the
    output directory is compared before and after the first run instead.
    """
    directory = output_dir(project, plan.cargo_args)
    before = snapshot_dir(directory)

    code = run_cargo(plan.argv())
    if code != 0:
        return code, []

    report = query_build_report(plan)
    if report is not None:
        produced = parse_build_report(report, project.manifest_path)
    else:
        logger.warning(
            "cargo did not produce a build report; comparing %s before and after the build",
            directory,
        )
        produced = collect_from_snapshot(
            before, snapshot_dir(directory), directory, project.manifest.target_names
        )

    entries = resolve_artifacts(
        produced, project.manifest.config, project.manifest.target_names, workdir
    )
    copy_artifacts(entries)
    return 0, entries


def report_artifacts(entries: list[ArtifactEntry]) -> None:
    """Print one line per artifact to stderr."""
    for entry in entries:
        if entry.skipped:
            print(f"- Skipped {entry.source.name}", file=sys.stderr)
        else:
            print(f"✓ {entry.source.name} -> {entry.destination}", file=sys.stderr)


# --- CLI and Main Execution ---


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Send log records to stderr; --verbose and --quiet pick the level."""
    level = logging.DEBUG if verbose else logging.ERROR if quiet else logging.WARNING
    logging.basicConfig(format=LOG_FORMAT, stream=sys.stderr)
    logger.setLevel(level)


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="cargo-wop",
        description="Build and run single Rust files with an embedded cargo manifest",
        epilog="Without a subcommand, the file's default-action (or run) is used.",
        allow_abbrev=False,
    )
    parser.add_argument(
        "--cache-root",
        type=Path,
        help=f"Directory for generated projects (default: ${CACHE_ENV} or "
        f"$CARGO_HOME/{CACHE_DIRNAME})",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug details")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log errors")
    parser.add_argument("--version", action="version", version=f"cargo-wop {__version__}")
    parser.add_argument("--about", action="store_true", help="Show project info and exit")
    parser.add_argument(
        "invocation",
        nargs=argparse.REMAINDER,
        metavar="[SUBCOMMAND] SOURCE [ARGS...]",
        help=f"One of: {', '.join(sorted(COMMANDS))}",
    )
    return parser


def main() -> int:
    """Run the main entry point."""
    parser = create_parser()
    argv = sys.argv[1:]
    # cargo runs external subcommands as `cargo-wop wop ARGS...`
    if argv[:1] == ["wop"]:
        argv = argv[1:]
    args = parser.parse_args(argv)

    if args.about:
        print(f"cargo-wop {__version__} ({__license__})")
        return 0

    setup_logging(args.verbose, args.quiet)
    try:
        invocation = parse_invocation(args.invocation)
        cache_root = args.cache_root or find_cache_root()
        project = ensure_project(invocation.source, cache_root)
        invocation = resolve_default_action(invocation, project.manifest.config)
        plan = plan_command(invocation, project)
        return execute_plan(plan, project, Path.cwd())

    except CargoWopError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code
    except KeyboardInterrupt:
        print("\nCancelled by user", file=sys.stderr)
        return 130
    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        return 1


def cli_entrypoint() -> None:
    """Console entry point (kept tiny so tests can patch sys.exit)."""
    sys.exit(main())


if __name__ == "__main__":
    cli_entrypoint()
