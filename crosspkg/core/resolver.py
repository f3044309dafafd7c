"""
Recursive dependency resolver.

Given packages built for a source distribution, finds the dependencies the
target distribution lacks (or ships at an incompatible version), downloads
them from the source distribution and rebuilds them for the target under a
prefixed name. Rebuilt packages bring their own dependencies, which are
examined in the next round, until a round adds nothing new.

Each round:
    1. batch-query the frontier in the target and the source distribution
    2. classify every name: satisfied, missing or incompatible
    3. fetch + rebuild missing/incompatible names in a bounded thread pool
    4. merge the task results; unseen sub-dependencies form the next frontier
"""

import logging
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set

from .config import DEFAULT_JOBS, DEFAULT_MAX_ARTIFACT_SIZE
from .convert import convert, prefixed_name
from .depmap import DepNameMap, write_mapping
from .errors import (
    BuildFailed, CrossPkgError, FetchFailed, MalformedPackage, OversizedArtifact,
    UnsupportedFormat,
)
from .extract import inspect
from .formats import PackageFormat
from .repoquery import AvailablePackage, DistributionBackend
from .versions import compatible

logger = logging.getLogger(__name__)

# Failure causes, as grouped in the report
CAUSE_FETCH = 'fetch failed'
CAUSE_TIMEOUT = 'timed out'
CAUSE_OVERSIZED = 'oversized'
CAUSE_MALFORMED = 'malformed package'
CAUSE_BUILD = 'build failed'

# rebuilder(package_path, output_dir, work_dir) -> built artifact
Rebuilder = Callable[[Path, Path, Path], Path]


def failure_cause(error: Exception) -> str:
    """Report bucket for an error raised while handling one dependency."""
    if getattr(error, 'timed_out', False):
        return CAUSE_TIMEOUT
    if isinstance(error, OversizedArtifact):
        return CAUSE_OVERSIZED
    if isinstance(error, FetchFailed):
        return CAUSE_FETCH
    if isinstance(error, (MalformedPackage, UnsupportedFormat)):
        return CAUSE_MALFORMED
    if isinstance(error, BuildFailed) and 'timed out' in str(error):
        return CAUSE_TIMEOUT
    return CAUSE_BUILD


@dataclass
class RebuildItem:
    """A dependency scheduled for fetch + rebuild."""
    name: str                       # source naming
    reason: str                     # 'missing' or 'incompatible'
    source: AvailablePackage


@dataclass
class RebuildResult:
    """Private outcome of one rebuild task, merged after the round."""
    name: str
    prefixed: Optional[str] = None
    artifact: Optional[Path] = None
    depends: List[str] = field(default_factory=list)
    stage: str = ''
    error: Optional[str] = None
    cause: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class ResolutionState:
    """Everything carried from one round to the next."""
    checked: Set[str] = field(default_factory=set)
    mapping: Dict[str, str] = field(default_factory=dict)
    rounds: List[List[str]] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    satisfied: List[str] = field(default_factory=list)
    artifacts: List[Path] = field(default_factory=list)

    def fail(self, name: str, stage: str, error: Exception):
        cause = failure_cause(error)
        self.failures[name] = cause
        self.errors[name] = str(error)
        logger.warning(f"{name}: {stage} failed ({cause}): {error}")


@dataclass
class ResolutionReport:
    """Final result of resolve()."""
    rounds: List[List[str]]
    mapping: Dict[str, str]
    satisfied: List[str]
    artifacts: List[Path]
    failures: Dict[str, str]
    errors: Dict[str, str]

    @property
    def success(self) -> bool:
        return not self.failures

    def failures_by_cause(self) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {}
        for name, cause in sorted(self.failures.items()):
            grouped.setdefault(cause, []).append(name)
        return grouped


def _task_dir_name(name: str) -> str:
    return re.sub(r'[^A-Za-z0-9._+-]', '_', name)


class DependencyResolver:
    """Rebuild the dependency closure the target distribution is missing."""

    def __init__(self, source_distro: str, target_distro: str,
                 source_backend: DistributionBackend, target_backend: DistributionBackend,
                 output_dir: Path, work_dir: Path,
                 rebuilder: Optional[Rebuilder] = None,
                 dep_map: Optional[DepNameMap] = None,
                 prefix: Optional[str] = None,
                 jobs: int = DEFAULT_JOBS,
                 max_artifact_size: int = DEFAULT_MAX_ARTIFACT_SIZE,
                 build_timeout: Optional[int] = None,
                 progress_callback: Optional[Callable[[str, int, int], None]] = None):
        """
        Args:
            source_distro: Codename the dependencies are fetched from
            target_distro: Codename the packages are rebuilt for
            source_backend: Query/fetch access to the source distribution
            target_backend: Query access to the target distribution
            output_dir: Where rebuilt packages are written
            work_dir: Scratch space; each task gets its own subdirectory
            rebuilder: Replaces the default extract/rename/relocate/emit pipeline
            dep_map: Dependency name translation, source -> target naming
            prefix: Name prefix for rebuilt packages (default: source codename)
            jobs: Concurrent rebuild tasks
            max_artifact_size: Packages larger than this (bytes) are skipped
            build_timeout: Seconds allowed for each native archiver run
            progress_callback: Called as (name, done, total) after each task
        """
        self.source_distro = source_distro
        self.target_distro = target_distro
        self.source_backend = source_backend
        self.target_backend = target_backend
        self.output_dir = Path(output_dir)
        self.work_dir = Path(work_dir)
        self.dep_map = dep_map or DepNameMap()
        self.prefix = prefix or source_distro
        self.jobs = max(1, jobs)
        self.max_artifact_size = max_artifact_size
        self.build_timeout = build_timeout
        self.rebuilder = rebuilder or self._rebuild
        self.progress_callback = progress_callback
        self.state = ResolutionState()

    @property
    def source_format(self) -> PackageFormat:
        return self.source_backend.format

    @property
    def target_format(self) -> PackageFormat:
        return self.target_backend.format

    # -------------------------------------------------------------------------
    # Scan
    # -------------------------------------------------------------------------

    def scan(self, package_paths: Iterable[Path]) -> List[str]:
        """Collect the dependencies of the input packages.

        Dependencies satisfied by the input set itself are marked checked
        and never queried.

        Returns:
            Sorted first frontier
        """
        depends: Set[str] = set()
        for path in package_paths:
            path = Path(path)
            try:
                info = inspect(path)
            except CrossPkgError as e:
                self.state.fail(path.name, 'scan', e)
                continue
            logger.debug(f"{path.name}: {len(info.depends)} dependencies")
            depends.update(info.depends)
            self.state.checked.add(info.name)
            self.state.checked.update(info.provides)
        return sorted(depends - self.state.checked)

    # -------------------------------------------------------------------------
    # Rounds
    # -------------------------------------------------------------------------

    def classify(self, frontier: List[str]) -> List[RebuildItem]:
        """Query both distributions and pick the names needing a rebuild.

        Names already present in the target at a compatible version are
        satisfied; names the source distribution does not have cannot be
        rebuilt and are recorded as failures.
        """
        target_names = {name: self.dep_map.translate(name, self.source_format,
                                                     self.target_format)
                        for name in frontier}
        try:
            in_target = self.target_backend.query_versions(target_names.values())
            in_source = self.source_backend.query_versions(frontier)
        except FetchFailed as e:
            for name in frontier:
                self.state.fail(name, 'query', e)
            return []

        items = []
        for name in frontier:
            target_pkg = in_target.get(target_names[name])
            source_pkg = in_source.get(name)

            if source_pkg is None:
                if target_pkg is not None:
                    self.state.satisfied.append(name)
                else:
                    self.state.fail(name, 'query', FetchFailed(
                        f"{name} not available in {self.source_distro} "
                        f"nor {self.target_distro}"))
                continue

            if target_pkg is None:
                logger.info(f"{name}: missing in {self.target_distro}")
                items.append(RebuildItem(name, 'missing', source_pkg))
            elif compatible(target_pkg.version, source_pkg.version):
                logger.debug(f"{name}: {self.target_distro} has {target_pkg.version}, "
                             f"compatible with {source_pkg.version}")
                self.state.satisfied.append(name)
            else:
                logger.info(f"{name}: {self.target_distro} has {target_pkg.version}, "
                            f"need {source_pkg.version}")
                items.append(RebuildItem(name, 'incompatible', source_pkg))
        return items

    def _rebuild(self, package_path: Path, output_dir: Path, work_dir: Path) -> Path:
        return convert(package_path, output_dir, self.target_format, prefix=self.prefix,
                       dep_map=self.dep_map, work_dir=work_dir,
                       source_distro=self.source_distro, timeout=self.build_timeout)

    def rebuild_one(self, item: RebuildItem, round_dir: Path) -> RebuildResult:
        """Fetch, size-check, inspect and rebuild one dependency.

        Runs in a worker thread: touches only its own directory and returns
        everything through the result.
        """
        result = RebuildResult(name=item.name)
        task_dir = round_dir / _task_dir_name(item.name)
        try:
            result.stage = 'fetch'
            if item.source.size > self.max_artifact_size:
                raise OversizedArtifact(item.name, item.source.size, self.max_artifact_size)
            path = self.source_backend.fetch(item.name, task_dir / 'download')

            size = path.stat().st_size
            if size > self.max_artifact_size:
                path.unlink()
                raise OversizedArtifact(item.name, size, self.max_artifact_size)

            result.stage = 'inspect'
            result.depends = inspect(path).depends

            result.stage = 'rebuild'
            result.artifact = self.rebuilder(path, self.output_dir, task_dir / 'build')
            result.prefixed = prefixed_name(self.prefix, item.name)
        except (CrossPkgError, OSError) as e:
            result.error = str(e)
            result.cause = failure_cause(e)
        return result

    def run_round(self, items: List[RebuildItem], round_no: int) -> List[RebuildResult]:
        """Rebuild items concurrently; results come back sorted by name."""
        round_dir = self.work_dir / f"round-{round_no}"
        results = []
        with ThreadPoolExecutor(max_workers=self.jobs) as executor:
            futures = {executor.submit(self.rebuild_one, item, round_dir): item
                       for item in items}
            for done, future in enumerate(as_completed(futures), 1):
                item = futures[future]
                results.append(future.result())
                if self.progress_callback:
                    self.progress_callback(item.name, done, len(items))
        return sorted(results, key=lambda r: r.name)

    def merge(self, results: List[RebuildResult]) -> Set[str]:
        """Fold task results into the state; returns all sub-dependencies."""
        discovered: Set[str] = set()
        for result in results:
            if not result.success:
                self.state.failures[result.name] = result.cause
                self.state.errors[result.name] = result.error
                logger.warning(f"{result.name}: {result.stage} failed ({result.cause}): "
                               f"{result.error}")
                continue
            self.state.mapping[result.name] = result.prefixed
            self.state.artifacts.append(result.artifact)
            discovered.update(result.depends)
            logger.info(f"{result.name}: rebuilt as {result.artifact.name}")
        return discovered

    def resolve(self, package_paths: Iterable[Path]) -> ResolutionReport:
        """Resolve and rebuild the dependency closure of package_paths.

        Each name is queried at most once; the loop ends when a round
        discovers nothing that was not already checked.
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)
        frontier = self.scan(package_paths)
        logger.info(f"{len(frontier)} dependencies to check against {self.target_distro}")

        while frontier:
            round_no = len(self.state.rounds) + 1
            logger.info(f"Round {round_no}: {len(frontier)} packages")
            self.state.rounds.append(frontier)
            self.state.checked.update(frontier)

            items = self.classify(frontier)
            discovered = self.merge(self.run_round(items, round_no)) if items else set()
            frontier = sorted(discovered - self.state.checked)

        report = ResolutionReport(
            rounds=self.state.rounds,
            mapping=dict(self.state.mapping),
            satisfied=sorted(self.state.satisfied),
            artifacts=list(self.state.artifacts),
            failures=dict(self.state.failures),
            errors=dict(self.state.errors),
        )
        logger.info(
            f"Resolution finished after {len(report.rounds)} rounds: "
            f"{len(report.mapping)} rebuilt, {len(report.satisfied)} satisfied, "
            f"{len(report.failures)} failed"
        )
        return report

    def write_mapping(self, path: Path):
        """Append ``original=prefixed`` lines for every rebuilt dependency."""
        write_mapping(path, list(self.state.mapping.items()))
        logger.info(f"Wrote {len(self.state.mapping)} mappings to {path}")
