#!/usr/bin/env python3
"""bundlesign - inside-out code signing and universal merging of macOS bundles.

This module provides tools for:
1. Signing an application bundle so that every nested code object is sealed
   before the container that encloses it (frameworks, helper apps, XPC
   services, plug-ins and loose Mach-O images)
2. Merging two single-architecture .app bundles into one universal bundle

Signing is planned before anything is executed. The bundle is scanned once,
every independently signable container is indexed together with the primary
executable its Info.plist declares, and a signing order is computed in which
containers are always signed after everything inside them. A container's
primary executable is never signed on its own: codesign seals it as part of
signing the container, once the rest of the payload is final.

Usage (CLI):
    # Sign with a Developer ID and entitlements
    bundlesign sign MyApp.app "Jane Doe (ABCDE12345)" entitlements.plist

    # Show the signing plan without running codesign
    bundlesign sign MyApp.app - --dry-run

    # Merge an arm64 and an x86_64 build
    bundlesign merge-universal arm64/MyApp.app x86_64/MyApp.app MyApp.app

Usage (API):
    from bundlesign import Codesigner, UniversalMerger, scan_bundle

    signer = Codesigner("MyApp.app", identity="Jane Doe")
    report = signer.process()

    merger = UniversalMerger("arm64/MyApp.app", "x86_64/MyApp.app", "MyApp.app")
    merger.process()
"""

import argparse
import datetime
import enum
import logging
import os
import plistlib
import re
import shutil
import struct
import subprocess
import sys
import tomllib
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator
from xml.parsers.expat import ExpatError

from dotenv import find_dotenv, load_dotenv
from macholib import mach_o
from macholib.MachO import MachO
from macholib.util import is_platform_file

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str
ImagePredicate = Callable[[Path], bool]
ManifestReader = Callable[[Path], "str | None"]

# Environment variable names
ENV_IDENTITY = "CODESIGN_IDENTITY"

# codesign's identity for ad-hoc signatures
ADHOC_IDENTITY = "-"

# Directory suffixes of independently signable containers
FRAMEWORK_SUFFIX = ".framework"
XPC_SERVICE_SUFFIX = ".xpc"
NESTED_BUNDLE_SUFFIXES = (".app", ".appex", ".plugin", ".bundle", ".mxo")

MANIFEST_NAME = "Info.plist"
MANIFEST_EXECUTABLE_KEY = "CFBundleExecutable"

# Certificate name prefixes that are passed to codesign verbatim
IDENTITY_PREFIXES = (
    "Developer ID Application:",
    "Apple Development:",
    "Apple Distribution:",
    "Mac Developer:",
    "3rd Party Mac Developer Application:",
)

# A certificate may also be selected by its SHA-1 fingerprint
SHA1_IDENTITY_PATTERN = re.compile(r"^[0-9A-Fa-f]{40}$")

# Developer ID format: "Name" or "Name (TEAM_ID)" where TEAM_ID is 10 alphanumeric chars
DEVELOPER_ID_PATTERN = re.compile(
    r"^[A-Za-z][A-Za-z0-9\s\.\-\,\']+(?:\s+\([A-Z0-9]{10}\))?$"
)

CONFIG_FILENAMES = (".bundlesign.toml", "bundlesign.toml")

# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .bundlesign.toml in current directory
    3. bundlesign.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigurationError: If an explicit config_path does not exist

    Example .bundlesign.toml:
        [sign]
        identity = "Jane Doe (ABCDE12345)"
        entitlements = "entitlements.plist"

        [merge]
        jobs = 4
    """
    log = logging.getLogger("bundlesign")

    if config_path is not None:
        if not config_path.is_file():
            raise ConfigurationError(f"Config file not found: {config_path}")
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [cwd / name for name in CONFIG_FILENAMES]

    for path in paths_to_try:
        if not path.is_file():
            continue
        try:
            with open(path, "rb") as f:
                data: dict[str, object] = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            log.warning("ignoring unreadable config %s: %s", path, e)
            continue
        log.debug("loaded config from %s", path)
        return data

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a string value from config with section.key lookup."""
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, str):
        return value
    return default


def get_config_int(
    config: dict[str, object],
    section: str,
    key: str,
    default: int | None = None,
) -> int | None:
    """Get an integer value from config with section.key lookup."""
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    # bool is an int subclass; `jobs = true` is not a count
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return default


# ----------------------------------------------------------------------------
# Error handling


class BundleSignError(Exception):
    """Base exception class for bundlesign errors."""


class CommandError(BundleSignError):
    """Exception raised when an external command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class InputNotFoundError(BundleSignError):
    """Exception raised when an input bundle is missing or not a directory."""


class FileError(BundleSignError):
    """Exception raised when a file operation fails."""


class ConfigurationError(BundleSignError):
    """Exception raised when configuration is invalid."""


class ValidationError(BundleSignError):
    """Exception raised when validation fails."""


class ManifestError(BundleSignError):
    """Exception raised when an Info.plist cannot be read or parsed."""


class CodesignError(BundleSignError):
    """Exception raised when a signing step or verification fails.

    The partial report is attached so callers can see which units were
    signed before the failure and which were never attempted.
    """

    def __init__(self, message: str, report: "SigningReport"):
        self.report = report
        super().__init__(message)


class MergeError(BundleSignError):
    """Exception raised when one or more architecture merges failed."""

    def __init__(self, message: str, report: "MergeReport"):
        self.report = report
        super().__init__(message)


class PlanInvariantError(RuntimeError):
    """Internal inconsistency in the container index or signing plan.

    Deliberately not a BundleSignError: this signals a bug, not bad input.
    """


# ----------------------------------------------------------------------------
# Reported conditions


class Condition(enum.Enum):
    """Non-fatal (and fatal) conditions accumulated into reports."""

    SCAN_SKIPPED = "scan-skipped"
    MANIFEST_UNREADABLE = "manifest-unreadable"
    CLASSIFICATION_UNAVAILABLE = "classification-unavailable"
    EXECUTABLE_NOT_FOUND = "executable-not-found"
    MERGE_MISMATCH = "merge-mismatch"
    MERGE_OUTSIDE_OUTPUT = "merge-outside-output"
    MERGE_STEP_FAILED = "merge-step-failed"
    SIGNING_STEP_FAILED = "signing-step-failed"


@dataclass(frozen=True)
class Note:
    """A single reported condition attached to a path."""

    condition: Condition
    path: Path
    detail: str = ""

    def __str__(self) -> str:
        if self.detail:
            return f"{self.condition.value}: {self.path}: {self.detail}"
        return f"{self.condition.value}: {self.path}"


# ----------------------------------------------------------------------------
# Identity validation


def validate_developer_id(dev_id: str) -> None:
    """Validate Developer ID string format.

    Developer ID should be in one of these formats:
    - "John Doe" (name only)
    - "John Doe (ABCD123456)" (name with 10-character Team ID)

    Args:
        dev_id: The Developer ID name to validate

    Raises:
        ValidationError: If the Developer ID format is invalid
    """
    if not dev_id or not dev_id.strip():
        raise ValidationError("Developer ID cannot be empty")

    dev_id = dev_id.strip()

    if len(dev_id) < 2:
        raise ValidationError(f"Developer ID is too short: '{dev_id}'")

    if len(dev_id) > 100:
        raise ValidationError(
            f"Developer ID is too long (max 100 characters): '{dev_id}'"
        )

    if not DEVELOPER_ID_PATTERN.match(dev_id):
        raise ValidationError(
            f"Developer ID has invalid format: '{dev_id}'. "
            "Expected format: 'Name' or 'Name (TEAM_ID)' where TEAM_ID is 10 alphanumeric characters"
        )


def resolve_identity(identity: str | None) -> str:
    """Turn a user-supplied identity into the value passed to codesign.

    None, "" and "-" select ad-hoc signing. Full certificate names and
    SHA-1 fingerprints are passed through; anything else is treated as a
    Developer ID name and expanded to "Developer ID Application: <name>".

    Raises:
        ValidationError: If a bare Developer ID name is malformed
    """
    if identity is None or identity.strip() in ("", ADHOC_IDENTITY):
        return ADHOC_IDENTITY
    identity = identity.strip()
    if identity.startswith(IDENTITY_PREFIXES):
        return identity
    if SHA1_IDENTITY_PATTERN.match(identity):
        return identity
    validate_developer_id(identity)
    return f"Developer ID Application: {identity}"


# ----------------------------------------------------------------------------
# Binary classification and manifests


def is_executable_image(path: Pathlike) -> bool:
    """Check if a file is a Mach-O image (thin or universal).

    Symbolic links are never images; classify the link target instead.

    Raises:
        OSError: If the file exists but cannot be read
        struct.error: If a universal header is truncated
    """
    return is_platform_file(str(path))


def get_binary_architectures(binary_path: Pathlike) -> list[str]:
    """Get the architectures of a Mach-O binary.

    Returns:
        List of architecture names (e.g., ["arm64", "x86_64"]).
        Empty list if the file is missing or not a valid Mach-O binary.
    """
    try:
        macho = MachO(str(binary_path))
    except (OSError, ValueError, struct.error):
        return []
    archs = []
    for header in macho.headers:
        cputype = header.header.cputype
        archs.append(mach_o.CPU_TYPE_NAMES.get(cputype, str(cputype)).lower())
    return archs


def read_primary_executable_name(manifest_path: Pathlike) -> str | None:
    """Read CFBundleExecutable from an Info.plist (XML or binary).

    Returns:
        The declared executable name, or None when the key is missing,
        empty, not a string, or not a bare file name.

    Raises:
        ManifestError: If the manifest cannot be read or parsed
    """
    try:
        with open(manifest_path, "rb") as f:
            data = plistlib.load(f)
    except (OSError, ValueError, ExpatError) as e:
        raise ManifestError(f"Cannot read manifest {manifest_path}: {e}") from e

    if not isinstance(data, dict):
        return None
    name = data.get(MANIFEST_EXECUTABLE_KEY)
    if not isinstance(name, str):
        return None
    name = name.strip()
    if not name or name in (".", "..") or Path(name).name != name:
        return None
    return name


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Log formatter with elapsed time and optional level colors."""

    RESET = "\x1b[0m"
    LEVEL_COLORS = {
        logging.DEBUG: "\x1b[38;20m",
        logging.INFO: "\x1b[32;20m",
        logging.WARNING: "\x1b[33;20m",
        logging.ERROR: "\x1b[31;20m",
        logging.CRITICAL: "\x1b[31;1m",
    }
    PLAIN_FMT = "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _fmt_for(self, levelno: int) -> str:
        if not self.use_color:
            return self.PLAIN_FMT
        color = self.LEVEL_COLORS.get(levelno, self.RESET)
        return (
            f"\x1b[97;20m%(delta)s{self.RESET} - "
            f"{color}%(levelname)s{self.RESET} - "
            f"%(name)s.%(funcName)s - %(message)s"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        elapsed = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = elapsed.strftime("%H:%M:%S")
        return logging.Formatter(self._fmt_for(record.levelno)).format(record)


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
    )


# ----------------------------------------------------------------------------
# Command execution utilities


def run_command(
    command: list[str],
    dry_run: bool = False,
    log: logging.Logger | None = None,
) -> str:
    """Run a command and return its output.

    Uses shell=False; arguments are passed to the tool unmodified.

    Args:
        command: The command as a list of arguments
        dry_run: If True, log command but don't execute (default: False)
        log: Optional logger for debug/dry-run output

    Returns:
        The command stdout output

    Raises:
        CommandError: If the command fails or cannot be started
    """
    cmd_str = " ".join(command)
    if log:
        log.debug("%s", cmd_str)
    if dry_run:
        if log:
            log.info("[DRY RUN] %s", cmd_str)
        return ""
    try:
        result = subprocess.run(
            command, shell=False, check=True, text=True, capture_output=True
        )
        return result.stdout
    except subprocess.CalledProcessError as e:
        raise CommandError(cmd_str, e.returncode, e.stderr or e.output) from e
    except FileNotFoundError as e:
        raise CommandError(cmd_str, 127, str(e)) from e


# ----------------------------------------------------------------------------
# Bundle tree scanner


class EntryKind(enum.Enum):
    """Classification of a scanned filesystem entry.

    Container suffixes are inspected exactly once, here; everything
    downstream dispatches on these members.
    """

    PLAIN_FILE = "plain-file"
    EXECUTABLE_IMAGE = "executable-image"
    MANIFEST = "manifest"
    DIRECTORY = "directory"
    FRAMEWORK = "framework-container"
    NESTED_BUNDLE = "nested-bundle-container"
    XPC_SERVICE = "xpc-service-container"

    @property
    def is_container(self) -> bool:
        return self in (
            EntryKind.FRAMEWORK,
            EntryKind.NESTED_BUNDLE,
            EntryKind.XPC_SERVICE,
        )


@dataclass(frozen=True)
class Entry:
    """A file or directory found beneath a bundle root."""

    relpath: Path
    path: Path
    is_dir: bool
    kind: EntryKind

    @property
    def depth(self) -> int:
        return len(self.relpath.parts)


@dataclass(frozen=True)
class ScanResult:
    """Every entry under a root, plus the entries that could not be read."""

    root: Path
    entries: tuple[Entry, ...]
    notes: tuple[Note, ...] = ()

    def of_kind(self, *kinds: EntryKind) -> list[Entry]:
        return [e for e in self.entries if e.kind in kinds]

    @property
    def skipped(self) -> list[Path]:
        return [
            n.path for n in self.notes if n.condition is Condition.SCAN_SKIPPED
        ]


def _classify_directory(name: str) -> EntryKind:
    if name.endswith(FRAMEWORK_SUFFIX):
        return EntryKind.FRAMEWORK
    if name.endswith(XPC_SERVICE_SUFFIX):
        return EntryKind.XPC_SERVICE
    if name.endswith(NESTED_BUNDLE_SUFFIXES):
        return EntryKind.NESTED_BUNDLE
    return EntryKind.DIRECTORY


def _manifest_in_layout(owner: str, inner: tuple[str, ...]) -> bool:
    """Check whether `inner` is the manifest location inside `owner`."""
    if owner.endswith(FRAMEWORK_SUFFIX):
        # Resources/Info.plist, Versions/<v>/Resources/Info.plist, or shallow
        return (
            inner == (MANIFEST_NAME,)
            or inner == ("Resources", MANIFEST_NAME)
            or (
                len(inner) == 4
                and inner[0] == "Versions"
                and inner[2:] == ("Resources", MANIFEST_NAME)
            )
        )
    return inner == ("Contents", MANIFEST_NAME)


def _is_manifest(relpath: Path, root_name: str) -> bool:
    if relpath.name != MANIFEST_NAME:
        return False
    parts = relpath.parts
    # the nearest enclosing container (or the root) owns the manifest
    for i in range(len(parts) - 2, -1, -1):
        if _classify_directory(parts[i]).is_container:
            return _manifest_in_layout(parts[i], parts[i + 1 :])
    return _manifest_in_layout(root_name, parts)


def _classify_image(
    path: Path, is_image: ImagePredicate
) -> tuple[bool, Note | None]:
    """Run the image predicate, failing closed on unreadable files."""
    try:
        return bool(is_image(path)), None
    except (OSError, struct.error) as e:
        return False, Note(Condition.CLASSIFICATION_UNAVAILABLE, path, str(e))


def scan_bundle(
    root: Pathlike,
    is_image: ImagePredicate = is_executable_image,
    follow_symlinks: bool = False,
) -> ScanResult:
    """Recursively scan and classify everything beneath a bundle root.

    Each regular file and directory is reported once. Symbolic links are
    skipped unless follow_symlinks is set. Even then, a link resolving
    inside the bundle is skipped since its target is reported at its real
    path; links leading outside are followed, with directories deduplicated
    by inode so self-referential links cannot loop. Sockets, FIFOs and
    device nodes are ignored.

    Args:
        root: The bundle directory to scan
        is_image: Predicate deciding whether a file is an executable image
        follow_symlinks: Whether to descend into and report symlinked entries

    Returns:
        A ScanResult; directories that could not be listed and files that
        could not be classified are recorded as notes, not raised

    Raises:
        InputNotFoundError: If root does not exist or is not a directory
    """
    log = logging.getLogger("bundlesign")
    root = Path(root)
    if not root.is_dir():
        raise InputNotFoundError(
            f"Bundle does not exist or is not a directory: {root}"
        )
    root = root.resolve()

    entries: list[Entry] = []
    notes: list[Note] = []
    seen_dirs = {(root.stat().st_dev, root.stat().st_ino)}
    pending = [root]

    while pending:
        directory = pending.pop()
        try:
            with os.scandir(directory) as it:
                children = sorted(it, key=lambda d: d.name)
        except OSError as e:
            log.warning("skipping unreadable directory %s: %s", directory, e)
            notes.append(Note(Condition.SCAN_SKIPPED, directory, str(e)))
            continue

        for child in children:
            path = Path(child.path)
            try:
                is_link = child.is_symlink()
                if is_link:
                    if not follow_symlinks:
                        continue
                    # aliases inside the bundle are reported at their real path
                    if path.resolve().is_relative_to(root):
                        continue
                is_dir = child.is_dir()
                is_file = not is_dir and child.is_file()
                stat = child.stat() if is_dir and follow_symlinks else None
            except (OSError, RuntimeError) as e:
                log.warning("skipping unreadable entry %s: %s", path, e)
                notes.append(Note(Condition.SCAN_SKIPPED, path, str(e)))
                continue

            relpath = path.relative_to(root)
            if is_dir:
                if stat is not None:
                    key = (stat.st_dev, stat.st_ino)
                    if key in seen_dirs:
                        log.debug("already visited: %s", path)
                        continue
                    seen_dirs.add(key)
                entries.append(
                    Entry(relpath, path, True, _classify_directory(child.name))
                )
                pending.append(path)
            elif is_file:
                if _is_manifest(relpath, root.name):
                    kind = EntryKind.MANIFEST
                else:
                    target = path.resolve() if is_link else path
                    image, note = _classify_image(target, is_image)
                    if note:
                        log.warning("cannot classify %s: %s", path, note.detail)
                        notes.append(note)
                    kind = (
                        EntryKind.EXECUTABLE_IMAGE if image else EntryKind.PLAIN_FILE
                    )
                entries.append(Entry(relpath, path, False, kind))

    log.debug("scanned %s: %d entries", root, len(entries))
    return ScanResult(root=root, entries=tuple(entries), notes=tuple(notes))


# ----------------------------------------------------------------------------
# Container index


class ContainerKind(enum.Enum):
    ROOT = "root"
    NESTED_BUNDLE = "nested-bundle"
    XPC_SERVICE = "xpc-service"
    FRAMEWORK = "framework"


_CONTAINER_KINDS = {
    EntryKind.FRAMEWORK: ContainerKind.FRAMEWORK,
    EntryKind.NESTED_BUNDLE: ContainerKind.NESTED_BUNDLE,
    EntryKind.XPC_SERVICE: ContainerKind.XPC_SERVICE,
}


@dataclass(frozen=True)
class BundleLayout:
    """Where a container keeps its Info.plist and its primary executable."""

    manifest_paths: tuple[str, ...]
    executable_dirs: tuple[str, ...]

    def manifests(self, container: Path) -> list[Path]:
        return [container / p for p in self.manifest_paths]

    def executables(self, container: Path, name: str) -> list[Path]:
        return [container / d / name for d in self.executable_dirs]


APP_LAYOUT = BundleLayout(
    manifest_paths=("Contents/Info.plist",),
    executable_dirs=("Contents/MacOS",),
)

FRAMEWORK_LAYOUT = BundleLayout(
    manifest_paths=(
        "Resources/Info.plist",
        "Versions/Current/Resources/Info.plist",
        "Info.plist",
    ),
    executable_dirs=(".", "Versions/Current"),
)


@dataclass(frozen=True)
class Container:
    """An independently signable directory: the root or a nested bundle."""

    path: Path
    relpath: Path
    kind: ContainerKind
    depth: int
    executable: Path | None = None

    def contains(self, other: "Container") -> bool:
        return self.path in other.path.parents


@dataclass(frozen=True)
class ContainerIndex:
    containers: tuple[Container, ...]
    notes: tuple[Note, ...] = ()

    @property
    def root(self) -> Container:
        for container in self.containers:
            if container.kind is ContainerKind.ROOT:
                return container
        raise PlanInvariantError("container index has no root")

    def innermost_first(self) -> list[Container]:
        """Containers sorted deepest first; equal depths by path only."""
        return sorted(self.containers, key=_innermost_first)


def _innermost_first(container: Container) -> tuple[int, Path]:
    return (-container.depth, container.relpath)


def _resolve_primary_executable(
    container: Path,
    layout: BundleLayout,
    images: dict[Path, Entry],
    read_manifest: ManifestReader,
) -> tuple[Path | None, Note | None]:
    manifest = next((m for m in layout.manifests(container) if m.is_file()), None)
    if manifest is None:
        return None, None

    try:
        name = read_manifest(manifest)
    except ManifestError as e:
        return None, Note(Condition.MANIFEST_UNREADABLE, manifest, str(e))
    if not name:
        return None, None

    for candidate in layout.executables(container, name):
        if candidate in images:
            return candidate, None
        try:
            real = candidate.resolve()
        except (OSError, RuntimeError):
            continue
        if real in images and real.is_relative_to(container):
            return real, None

    return None, Note(
        Condition.EXECUTABLE_NOT_FOUND,
        container,
        f"declared executable '{name}' is not an image at the expected path",
    )


def index_containers(
    scan: ScanResult,
    read_manifest: ManifestReader = read_primary_executable_name,
) -> ContainerIndex:
    """Find every signable container and resolve its primary executable.

    A container whose manifest is missing, unreadable, declares nothing,
    or points at a file that is not a scanned executable image simply has
    no primary executable. That is reported, never raised.
    """
    log = logging.getLogger("bundlesign")
    images = {
        e.path: e for e in scan.entries if e.kind is EntryKind.EXECUTABLE_IMAGE
    }

    seeds = [(scan.root, Path(), ContainerKind.ROOT)]
    for entry in scan.entries:
        if entry.kind.is_container:
            seeds.append((entry.path, entry.relpath, _CONTAINER_KINDS[entry.kind]))

    containers: list[Container] = []
    notes: list[Note] = []
    for path, relpath, kind in seeds:
        layout = (
            FRAMEWORK_LAYOUT if path.name.endswith(FRAMEWORK_SUFFIX) else APP_LAYOUT
        )
        executable, note = _resolve_primary_executable(
            path, layout, images, read_manifest
        )
        if note is not None:
            log.warning("%s", note)
            notes.append(note)
        containers.append(
            Container(
                path=path,
                relpath=relpath,
                kind=kind,
                depth=len(relpath.parts),
                executable=executable,
            )
        )
        log.debug(
            "container %s (%s) executable=%s", relpath, kind.value, executable
        )

    return ContainerIndex(containers=tuple(containers), notes=tuple(notes))


# ----------------------------------------------------------------------------
# Signing order planner


class UnitKind(enum.Enum):
    IMAGE = "image"
    FRAMEWORK = "framework"
    BUNDLE = "bundle"
    ROOT = "root"


@dataclass(frozen=True)
class SigningUnit:
    """One codesign invocation in the plan.

    For container units, deferred_executable is the primary executable that
    is sealed by this unit rather than signed standalone.
    """

    ordinal: int
    path: Path
    kind: UnitKind
    deferred_executable: Path | None = None


@dataclass(frozen=True)
class SigningPlan:
    root: Path
    units: tuple[SigningUnit, ...]
    notes: tuple[Note, ...] = ()

    def __iter__(self) -> Iterator[SigningUnit]:
        return iter(self.units)

    def __len__(self) -> int:
        return len(self.units)

    @property
    def paths(self) -> list[Path]:
        return [unit.path for unit in self.units]

    @property
    def deferred(self) -> dict[Path, Path]:
        """Map of deferred executable -> container that seals it."""
        return {
            u.deferred_executable: u.path
            for u in self.units
            if u.deferred_executable is not None
        }


def _check_containers(containers: tuple[Container, ...]) -> None:
    """Fail fast on an index no scan could have produced."""
    roots = [c for c in containers if c.kind is ContainerKind.ROOT]
    if len(roots) != 1:
        raise PlanInvariantError(f"expected one root container, got {len(roots)}")
    root = roots[0]

    seen: set[Path] = set()
    for container in containers:
        if container.path in seen:
            raise PlanInvariantError(f"duplicate container: {container.path}")
        seen.add(container.path)
        if container is not root and not root.contains(container):
            raise PlanInvariantError(
                f"container outside root: {container.path}"
            )

    for outer in containers:
        for inner in containers:
            if outer.contains(inner) and inner.depth <= outer.depth:
                raise PlanInvariantError(
                    f"inconsistent depth: {inner.path} inside {outer.path}"
                )


def _containment_order(preferred: list[Container]) -> list[Container]:
    """Keep the preferred order, but never emit a container before its contents."""
    remaining = list(preferred)
    ordered: list[Container] = []
    while remaining:
        for i, candidate in enumerate(remaining):
            if not any(
                candidate.contains(other)
                for other in remaining
                if other is not candidate
            ):
                ordered.append(remaining.pop(i))
                break
        else:
            raise PlanInvariantError(
                "cyclic containment among: "
                + ", ".join(str(c.path) for c in remaining)
            )
    return ordered


def plan_signing(scan: ScanResult, index: ContainerIndex) -> SigningPlan:
    """Compute the inside-out signing order for a scanned bundle.

    1. Every executable image that is not some container's primary
       executable (dylibs, loose tools, plug-in binaries)
    2. Frameworks, deepest first
    3. Nested bundles and XPC services, deepest first
    4. The root bundle

    A container is held back until every container beneath it has been
    emitted, so a framework that embeds helper apps or XPC services is
    signed after them. Primary executables are deferred to their
    container's unit and never appear as units of their own.

    Raises:
        PlanInvariantError: If the index is internally inconsistent
    """
    _check_containers(index.containers)

    owners: dict[Path, Container] = {}
    for container in index.containers:
        if container.executable is None:
            continue
        if container.executable in owners:
            raise PlanInvariantError(
                f"{container.executable} is the primary executable of both "
                f"{owners[container.executable].path} and {container.path}"
            )
        owners[container.executable] = container

    steps: list[tuple[Path, UnitKind, Path | None]] = []

    loose = sorted(
        (
            e
            for e in scan.entries
            if e.kind is EntryKind.EXECUTABLE_IMAGE and e.path not in owners
        ),
        key=lambda e: e.relpath,
    )
    for entry in loose:
        steps.append((entry.path, UnitKind.IMAGE, None))

    frameworks = sorted(
        (c for c in index.containers if c.kind is ContainerKind.FRAMEWORK),
        key=_innermost_first,
    )
    bundles = sorted(
        (
            c
            for c in index.containers
            if c.kind in (ContainerKind.NESTED_BUNDLE, ContainerKind.XPC_SERVICE)
        ),
        key=_innermost_first,
    )
    for container in _containment_order(frameworks + bundles):
        kind = (
            UnitKind.FRAMEWORK
            if container.kind is ContainerKind.FRAMEWORK
            else UnitKind.BUNDLE
        )
        steps.append((container.path, kind, container.executable))

    root = index.root
    steps.append((root.path, UnitKind.ROOT, root.executable))

    units = tuple(
        SigningUnit(ordinal=i, path=path, kind=kind, deferred_executable=deferred)
        for i, (path, kind, deferred) in enumerate(steps, start=1)
    )
    return SigningPlan(
        root=root.path,
        units=units,
        notes=tuple(scan.notes) + tuple(index.notes),
    )


def format_plan(plan: SigningPlan) -> list[str]:
    """Render a signing plan as indented, bundle-relative lines."""

    def relative(path: Path) -> str:
        return str(path.relative_to(plan.root)) if path != plan.root else "."

    width = len(str(len(plan.units)))
    lines = []
    for unit in plan.units:
        line = f"  [{unit.ordinal:>{width}}] {unit.kind.value:<9} {relative(unit.path)}"
        if unit.deferred_executable is not None:
            line += f"  (seals {relative(unit.deferred_executable)})"
        lines.append(line)
    return lines


# ----------------------------------------------------------------------------
# Architecture merge walker


class MergeOutcome(enum.Enum):
    MERGE = "merge"
    NO_COUNTERPART = "skipped-no-counterpart"
    MISMATCH = "skipped-mismatch"
    OUTSIDE_OUTPUT = "skipped-outside-output"
    COPIED_AS_IS = "copied-as-is"


@dataclass(frozen=True)
class MergePair:
    relpath: Path
    source_a: Path
    source_b: Path
    output: Path


@dataclass(frozen=True)
class MergeWalkResult:
    pairs: tuple[MergePair, ...]
    outcomes: tuple[tuple[Path, MergeOutcome], ...]
    notes: tuple[Note, ...] = ()

    def count(self, outcome: MergeOutcome) -> int:
        return sum(1 for _, o in self.outcomes if o is outcome)

    @property
    def merged(self) -> int:
        return self.count(MergeOutcome.MERGE)

    @property
    def skipped_no_counterpart(self) -> int:
        return self.count(MergeOutcome.NO_COUNTERPART)

    @property
    def skipped_mismatch(self) -> int:
        return self.count(MergeOutcome.MISMATCH)

    @property
    def skipped_outside_output(self) -> int:
        return self.count(MergeOutcome.OUTSIDE_OUTPUT)

    @property
    def copied_as_is(self) -> int:
        return self.count(MergeOutcome.COPIED_AS_IS)


def _stays_within(root: Path, relpath: Path) -> bool:
    """True if root/relpath does not resolve through a link out of root."""
    try:
        return (root / relpath).resolve().is_relative_to(root.resolve())
    except (OSError, RuntimeError):
        return False


def walk_merge(
    source_a: Pathlike,
    source_b: Pathlike,
    output: Pathlike,
    is_image: ImagePredicate = is_executable_image,
    follow_symlinks: bool = False,
) -> MergeWalkResult:
    """Pair up the executable images of two single-architecture bundles.

    The walk is driven by source_a. Files that are not images are left as
    copied from source_a. An image with no file at the same relative path
    in source_b, or whose counterpart is not an image, is skipped. So is an
    image reached through a link that leaves source_a or the output, since
    its merged file would land outside the output bundle.

    Raises:
        InputNotFoundError: If either source is missing or not a directory
    """
    log = logging.getLogger("bundlesign")
    source_b = Path(source_b)
    output = Path(output)
    if not source_b.is_dir():
        raise InputNotFoundError(
            f"Bundle does not exist or is not a directory: {source_b}"
        )
    scan = scan_bundle(source_a, is_image=is_image, follow_symlinks=follow_symlinks)

    pairs: list[MergePair] = []
    outcomes: list[tuple[Path, MergeOutcome]] = []
    notes: list[Note] = list(scan.notes)

    for entry in sorted(scan.entries, key=lambda e: e.relpath):
        if entry.is_dir:
            continue
        if entry.kind is not EntryKind.EXECUTABLE_IMAGE:
            outcomes.append((entry.relpath, MergeOutcome.COPIED_AS_IS))
            continue

        target = output / entry.relpath
        if not _stays_within(scan.root, entry.relpath) or not _stays_within(
            output, entry.relpath
        ):
            log.warning(
                "%s is reached through a link leaving the bundle, skipping merge",
                entry.relpath,
            )
            notes.append(
                Note(
                    Condition.MERGE_OUTSIDE_OUTPUT,
                    entry.relpath,
                    f"{target} would be written outside {output}",
                )
            )
            outcomes.append((entry.relpath, MergeOutcome.OUTSIDE_OUTPUT))
            continue

        counterpart = source_b / entry.relpath
        if not counterpart.is_file():
            log.debug("no counterpart for %s", entry.relpath)
            outcomes.append((entry.relpath, MergeOutcome.NO_COUNTERPART))
            continue

        image, note = _classify_image(counterpart, is_image)
        if note:
            notes.append(note)
        if not image:
            log.warning(
                "%s is Mach-O in %s but not in %s, skipping merge",
                entry.relpath,
                scan.root.name,
                source_b.name,
            )
            notes.append(
                Note(Condition.MERGE_MISMATCH, entry.relpath, "architecture mismatch")
            )
            outcomes.append((entry.relpath, MergeOutcome.MISMATCH))
            continue

        pairs.append(
            MergePair(
                relpath=entry.relpath,
                source_a=entry.path,
                source_b=counterpart,
                output=target,
            )
        )
        outcomes.append((entry.relpath, MergeOutcome.MERGE))

    return MergeWalkResult(
        pairs=tuple(pairs), outcomes=tuple(outcomes), notes=tuple(notes)
    )


# ----------------------------------------------------------------------------
# Reports


@dataclass
class SigningReport:
    """What a signing run did, up to and including the first failure."""

    plan: SigningPlan
    signed: list[SigningUnit] = field(default_factory=list)
    failed_unit: SigningUnit | None = None
    failure_reason: str | None = None
    verified: bool = False
    notes: list[Note] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failure_reason is None

    @property
    def skipped(self) -> list[SigningUnit]:
        """Planned units that were never attempted."""
        done = len(self.signed) + (1 if self.failed_unit else 0)
        if self.ok:
            return []
        return list(self.plan.units[done:])


@dataclass
class MergeReport:
    walk: MergeWalkResult
    failures: list[tuple[MergePair, str]] = field(default_factory=list)
    main_binary: Path | None = None
    main_architectures: list[str] = field(default_factory=list)
    notes: list[Note] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def merged(self) -> int:
        return len(self.walk.pairs) - len(self.failures)

    @property
    def skipped_no_counterpart(self) -> int:
        return self.walk.skipped_no_counterpart

    @property
    def skipped_mismatch(self) -> int:
        return self.walk.skipped_mismatch

    @property
    def skipped_outside_output(self) -> int:
        return self.walk.skipped_outside_output

    @property
    def copied_as_is(self) -> int:
        return self.walk.copied_as_is


# ----------------------------------------------------------------------------
# Codesigning


class Codesigner:
    """Sign a macOS bundle from the inside out.

    The bundle is scanned and planned first (see plan_signing), then each
    unit is signed strictly in order. Signing stops at the first failure:
    later units may rely on the failed unit's signature being in place.

    Args:
        path: Path to the bundle to sign (.app, .framework, .bundle, ...)
        identity: Signing identity; None falls back to CODESIGN_IDENTITY,
            "-" or "" means ad-hoc
        entitlements: Path to an entitlements.plist applied to every unit
        dry_run: If True, log codesign commands instead of running them
        verify: If True, verify the bundle after signing
        strip_xattrs: If True, clear extended attributes before signing
        hardened_runtime: If True, sign with --options runtime
        timestamp: If True, request a secure timestamp (not for ad-hoc)
        follow_symlinks: If True, descend into symlinked directories
        is_image: Predicate used to classify files as Mach-O images
        read_manifest: Reader returning an Info.plist's CFBundleExecutable

    Environment Variables:
        CODESIGN_IDENTITY: Signing identity (fallback if identity not provided)

    Example:
        signer = Codesigner("MyApp.app", identity="Jane Doe",
                            entitlements="entitlements.plist")
        report = signer.process()
    """

    def __init__(
        self,
        path: Pathlike,
        identity: str | None = None,
        entitlements: Pathlike | None = None,
        dry_run: bool = False,
        verify: bool = True,
        strip_xattrs: bool = True,
        hardened_runtime: bool = True,
        timestamp: bool = True,
        follow_symlinks: bool = False,
        is_image: ImagePredicate = is_executable_image,
        read_manifest: ManifestReader = read_primary_executable_name,
    ) -> None:
        self.path = Path(path)
        if not self.path.is_dir():
            raise InputNotFoundError(
                f"Bundle does not exist or is not a directory: {self.path}"
            )
        self.dry_run = dry_run
        self.verify_after = verify
        self.strip_xattrs = strip_xattrs
        self.hardened_runtime = hardened_runtime
        self.timestamp = timestamp
        self.follow_symlinks = follow_symlinks
        self.is_image = is_image
        self.read_manifest = read_manifest
        self.log = logging.getLogger(self.__class__.__name__)

        if identity is None:
            identity = os.getenv(ENV_IDENTITY)
        self.identity = resolve_identity(identity)

        self.entitlements: Path | None
        if entitlements:
            self.entitlements = Path(entitlements)
            if not self.entitlements.is_file():
                raise ConfigurationError(
                    f"Entitlements file not found: {self.entitlements}"
                )
        else:
            self.entitlements = None

        self.plan: SigningPlan | None = None

    @property
    def is_adhoc(self) -> bool:
        return self.identity == ADHOC_IDENTITY

    def run_command(self, command: list[str]) -> str:
        """Run a command, honouring dry_run."""
        return run_command(command, dry_run=self.dry_run, log=self.log)

    def collect(self) -> SigningPlan:
        """Scan the bundle, index its containers and plan the signing order."""
        scan = scan_bundle(
            self.path, is_image=self.is_image, follow_symlinks=self.follow_symlinks
        )
        index = index_containers(scan, read_manifest=self.read_manifest)
        self.plan = plan_signing(scan, index)
        self.log.info(
            "planned %d signing unit(s) for %s", len(self.plan), self.path
        )
        return self.plan

    def codesign_command(self, path: Path) -> list[str]:
        """Build the codesign invocation for one target."""
        command = ["codesign", "--force", "--sign", self.identity]
        if self.hardened_runtime:
            command.extend(["--options", "runtime"])
        if self.timestamp and not self.is_adhoc:
            command.append("--timestamp")
        if self.entitlements:
            command.extend(["--entitlements", str(self.entitlements)])
        command.append(str(path))
        return command

    def sign_unit(self, unit: SigningUnit) -> None:
        """Sign a single planned unit.

        Raises:
            CommandError: If codesign fails
        """
        total = len(self.plan) if self.plan else unit.ordinal
        self.log.info(
            "signing %s [%d/%d]: %s", unit.kind.value, unit.ordinal, total, unit.path
        )
        self.run_command(self.codesign_command(unit.path))

    def strip_extended_attributes(self) -> None:
        """Remove resource forks and Finder info that codesign rejects."""
        self.log.info("stripping extended attributes: %s", self.path)
        self.run_command(["xattr", "-cr", str(self.path)])

    def verify_signature(self, path: Path | None = None) -> bool:
        """Verify the bundle's signature strictly and deeply.

        Returns:
            True if verification succeeds
        """
        if path is None:
            path = self.path
        try:
            self.run_command(
                ["codesign", "--verify", "--deep", "--strict", "--verbose=2", str(path)]
            )
        except CommandError as e:
            self.log.error("verification failed for %s: %s", path, e.output or e)
            return False
        self.log.info("verified: %s", path)
        return True

    def _section(self, *args: str) -> None:
        """Display a section header."""
        print()
        print("-" * 79)
        print(*args)

    def process(self) -> SigningReport:
        """Execute the full signing workflow.

        Returns:
            The SigningReport of a fully successful run

        Raises:
            CodesignError: On the first failed step, carrying the partial report
        """
        plan = self.plan if self.plan is not None else self.collect()
        report = SigningReport(plan=plan, notes=list(plan.notes))

        if self.strip_xattrs:
            try:
                self.strip_extended_attributes()
            except CommandError as e:
                report.failure_reason = e.output or str(e)
                report.notes.append(
                    Note(Condition.SIGNING_STEP_FAILED, self.path, report.failure_reason)
                )
                raise CodesignError(
                    f"Failed to strip extended attributes: {self.path}", report
                ) from e

        for unit in plan.units:
            try:
                self.sign_unit(unit)
            except CommandError as e:
                report.failed_unit = unit
                report.failure_reason = e.output or str(e)
                report.notes.append(
                    Note(Condition.SIGNING_STEP_FAILED, unit.path, report.failure_reason)
                )
                self.log.error(
                    "signing failed for %s; %d remaining unit(s) not attempted",
                    unit.path,
                    len(report.skipped),
                )
                raise CodesignError(f"Signing failed: {unit.path}", report) from e
            report.signed.append(unit)

        if self.verify_after and not self.dry_run:
            if not self.verify_signature():
                report.failure_reason = "signature verification failed"
                raise CodesignError(
                    f"Signature verification failed: {self.path}", report
                )
            report.verified = True

        self.log.info(
            "signed %d unit(s) in %s (%d note(s))",
            len(report.signed),
            self.path,
            len(report.notes),
        )
        return report

    def process_dry_run(self) -> SigningPlan:
        """Show what would be signed, in order, without making changes."""
        plan = self.plan if self.plan is not None else self.collect()

        self._section("PROCESSING:", str(self.path))
        self._section("IDENTITY:", self.identity)
        if self.strip_xattrs:
            print("  xattr -cr", str(self.path))

        self._section("SIGNING PLAN")
        for line in format_plan(plan):
            print(line)

        if plan.notes:
            self._section("NOTES")
            for note in plan.notes:
                print(" ", note)

        self.log.info("DONE (dry run)!")
        return plan


# ----------------------------------------------------------------------------
# Universal merging


class UniversalMerger:
    """Merge two single-architecture bundles into one universal bundle.

    The output starts as a copy of source_a. Every Mach-O image in
    source_a that has a Mach-O counterpart in source_b is replaced by the
    lipo of the two. Merges write disjoint files and run in a thread pool.
    A failed merge does not stop the others; it makes the run fail.

    Args:
        source_a: The base bundle (e.g., the arm64 build)
        source_b: The other architecture's bundle (e.g., the x86_64 build)
        output: Path of the universal bundle to create (replaced if present)
        jobs: Maximum concurrent lipo invocations (default: CPU count)
        dry_run: If True, log what would be done without doing it
        follow_symlinks: If True, descend into symlinked directories of source_a
        is_image: Predicate used to classify files as Mach-O images

    Example:
        merger = UniversalMerger("arm64/My.app", "x86_64/My.app", "My.app")
        report = merger.process()
    """

    def __init__(
        self,
        source_a: Pathlike,
        source_b: Pathlike,
        output: Pathlike,
        jobs: int | None = None,
        dry_run: bool = False,
        follow_symlinks: bool = False,
        is_image: ImagePredicate = is_executable_image,
    ) -> None:
        self.source_a = Path(source_a)
        self.source_b = Path(source_b)
        self.output = Path(output)
        self.dry_run = dry_run
        self.follow_symlinks = follow_symlinks
        self.is_image = is_image
        self.log = logging.getLogger(self.__class__.__name__)

        for source in (self.source_a, self.source_b):
            if not source.is_dir():
                raise InputNotFoundError(
                    f"Bundle does not exist or is not a directory: {source}"
                )

        out = self.output.resolve()
        for source in (self.source_a.resolve(), self.source_b.resolve()):
            if out == source or source in out.parents or out in source.parents:
                raise ConfigurationError(
                    f"Output {self.output} overlaps input {source}"
                )

        if jobs is None:
            jobs = os.cpu_count() or 1
        if jobs < 1:
            raise ConfigurationError(f"jobs must be at least 1, got {jobs}")
        self.jobs = jobs

    def run_command(self, command: list[str]) -> str:
        """Run a command, honouring dry_run."""
        return run_command(command, dry_run=self.dry_run, log=self.log)

    def prepare_output(self) -> None:
        """Replace the output with a symlink-preserving copy of source_a.

        Raises:
            FileError: If the old output cannot be removed or the copy fails
        """
        if self.dry_run:
            self.log.info(
                "[DRY RUN] Would copy %s to %s", self.source_a, self.output
            )
            return
        try:
            if self.output.is_symlink() or self.output.is_file():
                self.output.unlink()
            elif self.output.exists():
                self.log.info("Removing existing output %s", self.output)
                shutil.rmtree(self.output)
            shutil.copytree(self.source_a, self.output, symlinks=True)
        except OSError as e:
            raise FileError(f"Failed to prepare output {self.output}: {e}") from e

    def collect(self) -> MergeWalkResult:
        """Pair up the images of both sources."""
        return walk_merge(
            self.source_a,
            self.source_b,
            self.output,
            is_image=self.is_image,
            follow_symlinks=self.follow_symlinks,
        )

    def merge_pair(self, pair: MergePair) -> None:
        """Combine one pair of thin images into a universal image.

        Raises:
            CommandError: If lipo fails
        """
        self.log.debug("merging %s", pair.relpath)
        self.run_command(
            [
                "lipo",
                "-create",
                str(pair.source_a),
                str(pair.source_b),
                "-output",
                str(pair.output),
            ]
        )

    def merge_pairs(
        self, pairs: tuple[MergePair, ...]
    ) -> list[tuple[MergePair, str]]:
        """Run all merges concurrently.

        Returns:
            The failed pairs with their failure reasons
        """
        failures: list[tuple[MergePair, str]] = []
        if not pairs:
            return failures
        with ThreadPoolExecutor(
            max_workers=min(self.jobs, len(pairs)), thread_name_prefix="lipo"
        ) as executor:
            futures = {executor.submit(self.merge_pair, p): p for p in pairs}
            for future in as_completed(futures):
                pair = futures[future]
                try:
                    future.result()
                except CommandError as e:
                    reason = e.output or str(e)
                    self.log.error("merge failed for %s: %s", pair.relpath, reason)
                    failures.append((pair, reason))
        failures.sort(key=lambda f: f[0].relpath)
        return failures

    def main_binary(self) -> Path | None:
        """The output's main executable: CFBundleExecutable, else the first file."""
        macos = self.output / "Contents" / "MacOS"
        if not macos.is_dir():
            return None
        manifest = self.output / "Contents" / MANIFEST_NAME
        if manifest.is_file():
            try:
                name = read_primary_executable_name(manifest)
            except ManifestError as e:
                self.log.debug("%s", e)
                name = None
            if name and (macos / name).is_file():
                return macos / name
        for candidate in sorted(macos.iterdir()):
            if candidate.is_file() and not candidate.is_symlink():
                return candidate
        return None

    def process(self) -> MergeReport:
        """Execute the full merge workflow.

        Raises:
            MergeError: If any pair failed to merge (after all were attempted)
        """
        self.log.info(
            "Creating universal bundle %s from %s and %s",
            self.output,
            self.source_a,
            self.source_b,
        )
        self.prepare_output()
        walk = self.collect()
        failures = self.merge_pairs(walk.pairs)

        report = MergeReport(walk=walk, failures=failures, notes=list(walk.notes))
        for pair, reason in failures:
            report.notes.append(
                Note(Condition.MERGE_STEP_FAILED, pair.relpath, reason)
            )

        if not self.dry_run:
            report.main_binary = self.main_binary()
            if report.main_binary is not None:
                report.main_architectures = get_binary_architectures(report.main_binary)
                self.log.info(
                    "main binary %s: %s",
                    report.main_binary.name,
                    " ".join(report.main_architectures) or "unknown",
                )

        self.log.info(
            "merged %d, skipped %d (no counterpart), %d (mismatch), "
            "%d (outside output), "
            "copied %d non-image file(s) as-is, %d failed",
            report.merged,
            report.skipped_no_counterpart,
            report.skipped_mismatch,
            report.skipped_outside_output,
            report.copied_as_is,
            len(report.failures),
        )
        if report.failures:
            raise MergeError(
                f"{len(report.failures)} merge(s) failed in {self.output}", report
            )
        return report


# ----------------------------------------------------------------------------
# Functional API


def sign_bundle(
    path: Pathlike,
    identity: str | None = None,
    entitlements: Pathlike | None = None,
    dry_run: bool = False,
    verify: bool = True,
    strip_xattrs: bool = True,
) -> SigningReport:
    """Sign a bundle inside-out.

    Convenience wrapper creating a Codesigner and calling process() on it.

    Example:
        report = sign_bundle("MyApp.app", identity="Jane Doe")
    """
    signer = Codesigner(
        path=path,
        identity=identity,
        entitlements=entitlements,
        dry_run=dry_run,
        verify=verify,
        strip_xattrs=strip_xattrs,
    )
    return signer.process()


def merge_universal(
    source_a: Pathlike,
    source_b: Pathlike,
    output: Pathlike,
    jobs: int | None = None,
    dry_run: bool = False,
) -> MergeReport:
    """Merge two single-architecture bundles into a universal bundle."""
    merger = UniversalMerger(
        source_a=source_a,
        source_b=source_b,
        output=output,
        jobs=jobs,
        dry_run=dry_run,
    )
    return merger.process()


# ----------------------------------------------------------------------------
# Command-line interface


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    """Add common options to a parser."""
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="show what would be done without doing it",
    )
    parser.add_argument(
        "--config",
        metavar="FILE",
        help="path to a TOML config file (default: ./.bundlesign.toml)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )


def _cmd_sign(args: argparse.Namespace) -> int:
    """Handle 'sign' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("bundlesign")

    config = load_config(Path(args.config) if args.config else None)
    identity = args.identity
    if identity is None:
        identity = get_config_value(config, "sign", "identity")
    if identity is None:
        identity = os.getenv(ENV_IDENTITY)
    if identity is None:
        args.parser.error(
            f"a signing identity is required (argument, [sign] identity, or {ENV_IDENTITY})"
        )
    entitlements = args.entitlements
    if entitlements is None:
        entitlements = get_config_value(config, "sign", "entitlements")

    signer = Codesigner(
        path=args.bundle,
        identity=identity,
        entitlements=entitlements,
        dry_run=args.dry_run,
        verify=not args.no_verify,
        strip_xattrs=not args.no_strip_xattrs,
        hardened_runtime=not args.no_runtime,
        timestamp=not args.no_timestamp,
        follow_symlinks=args.follow_symlinks,
    )

    if args.dry_run:
        signer.process_dry_run()
        return 0

    try:
        signer.process()
    except CodesignError as e:
        report = e.report
        log.error(
            "%s (%d of %d unit(s) signed, %d not attempted)",
            e,
            len(report.signed),
            len(report.plan),
            len(report.skipped),
        )
        if report.failure_reason:
            log.error("reason: %s", report.failure_reason.strip())
        return 1

    log.info("Signed: %s", args.bundle)
    return 0


def _cmd_merge(args: argparse.Namespace) -> int:
    """Handle 'merge-universal' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("bundlesign")

    config = load_config(Path(args.config) if args.config else None)
    jobs = args.jobs
    if jobs is None:
        jobs = get_config_int(config, "merge", "jobs")

    merger = UniversalMerger(
        source_a=args.bundle_a,
        source_b=args.bundle_b,
        output=args.output,
        jobs=jobs,
        dry_run=args.dry_run,
    )
    try:
        merger.process()
    except MergeError as e:
        for pair, reason in e.report.failures:
            log.error("failed: %s: %s", pair.relpath, reason.strip())
        log.error("%s", e)
        return 1

    log.info("Created: %s", args.output)
    return 0


def main(argv: list[str] | None = None) -> None:
    """Command line interface for bundlesign."""
    try:
        load_dotenv(find_dotenv(usecwd=True))

        parser = argparse.ArgumentParser(
            prog="bundlesign",
            description="Sign macOS bundles inside-out and merge universal bundles.",
            epilog=(
                "Examples:\n"
                "  bundlesign sign MyApp.app 'Jane Doe (ABCDE12345)'\n"
                "  bundlesign sign MyApp.app - --dry-run\n"
                "  bundlesign merge-universal arm64/My.app x86_64/My.app My.app\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "--version", action="version", version=f"%(prog)s {__version__}"
        )

        subparsers = parser.add_subparsers(
            title="commands",
            dest="command",
            required=True,
        )

        # --- sign subcommand ---
        sign_parser = subparsers.add_parser(
            "sign",
            help="codesign a bundle inside-out",
            description=(
                "Sign every nested code object of a bundle, innermost first, "
                "then the bundle itself."
            ),
            epilog=(
                "Examples:\n"
                "  bundlesign sign MyApp.app 'Jane Doe (ABCDE12345)' entitlements.plist\n"
                "  bundlesign sign MyApp.app 'Developer ID Application: Jane Doe (ABCDE12345)'\n"
                "  bundlesign sign MyApp.app - --no-verify\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        sign_parser.add_argument(
            "bundle",
            help="path to the bundle to sign (.app, .framework, .bundle, ...)",
        )
        sign_parser.add_argument(
            "identity",
            nargs="?",
            help=f"signing identity, '-' for ad-hoc (or set {ENV_IDENTITY})",
        )
        sign_parser.add_argument(
            "entitlements",
            nargs="?",
            help="path to entitlements.plist",
        )
        sign_parser.add_argument(
            "--no-verify",
            action="store_true",
            help="skip signature verification",
        )
        sign_parser.add_argument(
            "--no-strip-xattrs",
            action="store_true",
            help="do not clear extended attributes before signing",
        )
        sign_parser.add_argument(
            "--no-runtime",
            action="store_true",
            help="do not enable the hardened runtime",
        )
        sign_parser.add_argument(
            "--no-timestamp",
            action="store_true",
            help="do not request a secure timestamp",
        )
        sign_parser.add_argument(
            "--follow-symlinks",
            action="store_true",
            help="descend into symlinked directories when scanning",
        )
        _add_common_options(sign_parser)
        sign_parser.set_defaults(func=_cmd_sign, parser=sign_parser)

        # --- merge-universal subcommand ---
        merge_parser = subparsers.add_parser(
            "merge-universal",
            help="merge two single-architecture bundles",
            description=(
                "Copy bundle A to the output and lipo every Mach-O image with "
                "its counterpart in bundle B."
            ),
            epilog=(
                "Examples:\n"
                "  bundlesign merge-universal arm64/My.app x86_64/My.app My.app\n"
                "  bundlesign merge-universal a.app b.app out.app -j 4\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        merge_parser.add_argument("bundle_a", help="base bundle (e.g., arm64)")
        merge_parser.add_argument("bundle_b", help="other bundle (e.g., x86_64)")
        merge_parser.add_argument("output", help="universal bundle to create")
        merge_parser.add_argument(
            "-j",
            "--jobs",
            type=int,
            metavar="N",
            help="maximum concurrent merges (default: CPU count)",
        )
        _add_common_options(merge_parser)
        merge_parser.set_defaults(func=_cmd_merge, parser=merge_parser)

        args = parser.parse_args(argv)
        sys.exit(args.func(args))

    except BundleSignError as e:
        logging.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logging.error("Unexpected error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
