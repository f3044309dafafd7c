"""Tests for the recursive dependency resolver"""

import shutil
import threading

import pytest

from crosspkg.core.depmap import DepNameMap
from crosspkg.core.distros import Distro
from crosspkg.core.errors import BuildFailed, FetchFailed, MalformedPackage, OversizedArtifact
from crosspkg.core.extract import extract, inspect
from crosspkg.core.formats import PackageFormat
from crosspkg.core.repoquery import AvailablePackage, DistributionBackend
from crosspkg.core.resolver import (
    CAUSE_BUILD, CAUSE_FETCH, CAUSE_MALFORMED, CAUSE_OVERSIZED, CAUSE_TIMEOUT, DependencyResolver,
    ResolutionReport, failure_cause,
)

from conftest import ar_archive, tar_archive


def control(name, version, depends='', provides=''):
    text = (f"Package: {name}\nVersion: {version}\nArchitecture: arm64\n"
            f"Maintainer: Test <test@example.org>\n")
    if depends:
        text += f"Depends: {depends}\n"
    if provides:
        text += f"Provides: {provides}\n"
    return text + f"Description: {name} package\n"


class FakeBackend(DistributionBackend):
    """In-memory distribution: name -> (AvailablePackage, package file)."""

    def __init__(self, codename, fmt, packages=None, files=None, fail=None):
        super().__init__(Distro(codename, fmt, f"{codename}:latest"))
        self.packages = packages or {}
        self.files = files or {}
        self.fail = fail
        self.queries = []
        self.fetched = []
        self._lock = threading.Lock()

    def query_versions(self, names):
        names = sorted(names)
        self.queries.append(names)
        if self.fail:
            raise self.fail
        return {n: self.packages[n] for n in names if n in self.packages}

    def fetch(self, name, dest):
        with self._lock:
            self.fetched.append(name)
        if name not in self.files:
            raise FetchFailed(f"no file for {name}")
        dest.mkdir(parents=True, exist_ok=True)
        target = dest / self.files[name].name
        shutil.copy(self.files[name], target)
        return target


def fake_rebuilder(calls):
    def rebuild(path, output_dir, work_dir):
        info = inspect(path)
        calls.append(info.name)
        artifact = output_dir / f"noble-{info.name}-{info.version}.aarch64.rpm"
        artifact.write_bytes(b'rpm')
        return artifact
    return rebuild


@pytest.fixture
def chain(make_deb, tmp_path):
    """app -> libfoo1 -> libbar -> libc6, as built for noble."""
    inputs = tmp_path / 'inputs'
    inputs.mkdir()
    app = make_deb(name='app_1.0-1_arm64.deb', control=control('app', '1.0-1', 'libfoo1 (>= 1.2)'),
                   files=[], scripts={}, conffiles=())
    shutil.move(str(app), str(inputs / app.name))
    files = {
        'libfoo1': make_deb(name='libfoo1_1.2.3-1_arm64.deb',
                            control=control('libfoo1', '1.2.3-1', 'libbar (>= 2.1)'),
                            files=[('file', './usr/lib/aarch64-linux-gnu/libfoo.so.1', b'foo', 0o644)],
                            scripts={}, conffiles=()),
        'libbar': make_deb(name='libbar_2.1-1_arm64.deb',
                           control=control('libbar', '2.1-1', 'libc6'),
                           files=[('file', './usr/lib/aarch64-linux-gnu/libbar.so.2', b'bar', 0o644)],
                           scripts={}, conffiles=()),
    }
    source = FakeBackend('noble', PackageFormat.DEB, {
        'libfoo1': AvailablePackage('libfoo1', '1.2.3-1', 1000),
        'libbar': AvailablePackage('libbar', '2.1-1', 1000),
        'libc6': AvailablePackage('libc6', '2.40-1ubuntu1', 3000000),
    }, files)
    return inputs, source


def _resolver(tmp_path, source, target, **kwargs):
    return DependencyResolver(
        source_distro='noble', target_distro=target.distro.codename,
        source_backend=source, target_backend=target,
        output_dir=tmp_path / 'out', work_dir=tmp_path / 'work', **kwargs)


class TestFailureCause:
    """Tests for report buckets."""

    def test_causes(self):
        assert failure_cause(FetchFailed('x')) == CAUSE_FETCH
        assert failure_cause(FetchFailed('x', timed_out=True)) == CAUSE_TIMEOUT
        assert failure_cause(OversizedArtifact('x', 200, 100)) == CAUSE_OVERSIZED
        assert failure_cause(MalformedPackage('x')) == 'malformed package'
        assert failure_cause(BuildFailed('rpmbuild failed (exit 1)')) == CAUSE_BUILD
        assert failure_cause(BuildFailed('rpmbuild timed out after 5s')) == CAUSE_TIMEOUT

    def test_report_grouping(self):
        report = ResolutionReport([], {}, [], [], {'b': CAUSE_FETCH, 'a': CAUSE_FETCH,
                                                   'c': CAUSE_OVERSIZED}, {})
        assert not report.success
        assert report.failures_by_cause() == {CAUSE_FETCH: ['a', 'b'], CAUSE_OVERSIZED: ['c']}


class TestResolve:
    """Tests for the round loop."""

    def test_chain_to_fedora(self, chain, tmp_path):
        inputs, source = chain
        target = FakeBackend('fedora41', PackageFormat.RPM, {
            'libbar': AvailablePackage('libbar', '1.0-3.fc41'),
            'glibc': AvailablePackage('glibc', '2.40-4.fc41'),
        })
        calls = []
        dep_map = DepNameMap([{PackageFormat.DEB: 'libc6', PackageFormat.RPM: 'glibc'}])
        resolver = _resolver(tmp_path, source, target, dep_map=dep_map,
                             rebuilder=fake_rebuilder(calls))
        report = resolver.resolve(sorted(inputs.iterdir()))

        assert report.success
        assert report.rounds == [['libfoo1'], ['libbar'], ['libc6']]
        assert report.mapping == {'libfoo1': 'noble-libfoo1', 'libbar': 'noble-libbar'}
        assert report.satisfied == ['libc6']
        assert sorted(calls) == ['libbar', 'libfoo1']
        assert sorted(p.name for p in (tmp_path / 'out').iterdir()) == [
            'noble-libbar-2.1-1.aarch64.rpm', 'noble-libfoo1-1.2.3-1.aarch64.rpm']
        # every name is queried exactly once, in target naming for the target
        assert source.queries == [['libfoo1'], ['libbar'], ['libc6']]
        assert target.queries == [['libfoo1'], ['libbar'], ['glibc']]
        assert source.fetched.count('libc6') == 0

    def test_rounds_bounded_by_depth(self, chain, tmp_path):
        inputs, source = chain
        target = FakeBackend('fedora41', PackageFormat.RPM)
        source.packages['libc6'] = AvailablePackage('libc6', '2.40-1ubuntu1', 1000)
        report = _resolver(tmp_path, source, target,
                           rebuilder=fake_rebuilder([])).resolve(sorted(inputs.iterdir()))
        # app -> libfoo1 -> libbar -> libc6: depth 3
        assert len(report.rounds) <= 4
        assert report.failures == {'libc6': CAUSE_FETCH}
        assert set(report.mapping) == {'libfoo1', 'libbar'}

    def test_target_only_is_satisfied(self, make_deb, tmp_path):
        inputs = tmp_path / 'inputs'
        inputs.mkdir()
        path = make_deb(name='app_1.0_arm64.deb', control=control('app', '1.0', 'fedora-only'),
                        files=[], scripts={}, conffiles=())
        source = FakeBackend('noble', PackageFormat.DEB)
        target = FakeBackend('fedora41', PackageFormat.RPM, {
            'fedora-only': AvailablePackage('fedora-only', '1.0-1.fc41')})
        report = _resolver(tmp_path, source, target).resolve([path])
        assert report.satisfied == ['fedora-only']
        assert report.success

    def test_not_found_anywhere(self, make_deb, tmp_path):
        path = make_deb(name='app_1.0_arm64.deb', control=control('app', '1.0', 'ghost'),
                        files=[], scripts={}, conffiles=())
        source = FakeBackend('noble', PackageFormat.DEB)
        target = FakeBackend('fedora41', PackageFormat.RPM)
        report = _resolver(tmp_path, source, target).resolve([path])
        assert report.failures == {'ghost': CAUSE_FETCH}
        assert not report.success
        assert 'ghost' in report.errors

    def test_inputs_satisfy_each_other(self, make_deb, tmp_path):
        app = make_deb(name='app_1.0_arm64.deb', control=control('app', '1.0', 'libfoo, helper'),
                       files=[], scripts={}, conffiles=())
        helper = make_deb(name='helper_1.0_arm64.deb',
                          control=control('helper', '1.0', provides='libfoo'),
                          files=[], scripts={}, conffiles=())
        source = FakeBackend('noble', PackageFormat.DEB)
        target = FakeBackend('fedora41', PackageFormat.RPM)
        report = _resolver(tmp_path, source, target).resolve([app, helper])
        assert report.rounds == []
        assert source.queries == []

    def test_cycle_terminates(self, make_deb, tmp_path):
        app = make_deb(name='app_1.0_arm64.deb', control=control('app', '1.0', 'liba'),
                       files=[], scripts={}, conffiles=())
        files = {
            'liba': make_deb(name='liba_1.0_arm64.deb', control=control('liba', '1.0', 'libb'),
                             files=[], scripts={}, conffiles=()),
            'libb': make_deb(name='libb_1.0_arm64.deb', control=control('libb', '1.0', 'liba'),
                             files=[], scripts={}, conffiles=()),
        }
        source = FakeBackend('noble', PackageFormat.DEB, {
            'liba': AvailablePackage('liba', '1.0'),
            'libb': AvailablePackage('libb', '1.0'),
        }, files)
        target = FakeBackend('fedora41', PackageFormat.RPM)
        report = _resolver(tmp_path, source, target,
                           rebuilder=fake_rebuilder([])).resolve([app])
        assert report.rounds == [['liba'], ['libb']]
        assert report.mapping == {'liba': 'noble-liba', 'libb': 'noble-libb'}

    def test_query_failure(self, make_deb, tmp_path):
        path = make_deb(name='app_1.0_arm64.deb', control=control('app', '1.0', 'x, y'),
                        files=[], scripts={}, conffiles=())
        source = FakeBackend('noble', PackageFormat.DEB)
        target = FakeBackend('fedora41', PackageFormat.RPM,
                             fail=FetchFailed('container timed out', timed_out=True))
        report = _resolver(tmp_path, source, target).resolve([path])
        assert report.failures == {'x': CAUSE_TIMEOUT, 'y': CAUSE_TIMEOUT}

    def test_unreadable_input(self, tmp_path):
        path = tmp_path / 'broken_1.0_all.deb'
        path.write_bytes(b'junk')
        source = FakeBackend('noble', PackageFormat.DEB)
        target = FakeBackend('fedora41', PackageFormat.RPM)
        report = _resolver(tmp_path, source, target).resolve([path])
        assert report.failures == {'broken_1.0_all.deb': 'malformed package'}
        assert report.rounds == []

    def test_corrupt_member_recorded(self, make_deb, tmp_path):
        good = make_deb(name='app_1.0_arm64.deb', control=control('app', '1.0'),
                        files=[], scripts={}, conffiles=())
        bad = tmp_path / 'bad_1.0_arm64.deb'
        bad.write_bytes(ar_archive([
            ('debian-binary', b'2.0\n'),
            ('control.tar.xz', b'\xfd7zXZ\x00' + b'\x00corrupt' * 16),
            ('data.tar.gz', tar_archive([])),
        ]))
        source = FakeBackend('noble', PackageFormat.DEB)
        target = FakeBackend('fedora41', PackageFormat.RPM)
        report = _resolver(tmp_path, source, target).resolve([bad, good])
        assert report.failures == {'bad_1.0_arm64.deb': CAUSE_MALFORMED}
        assert report.rounds == []


class TestRebuildTask:
    """Tests for per-dependency task failures."""

    def test_oversized_declared(self, chain, tmp_path):
        inputs, source = chain
        source.packages['libfoo1'] = AvailablePackage('libfoo1', '1.2.3-1', 200 * 1024 * 1024)
        target = FakeBackend('fedora41', PackageFormat.RPM)
        report = _resolver(tmp_path, source, target,
                           rebuilder=fake_rebuilder([])).resolve(sorted(inputs.iterdir()))
        assert report.failures == {'libfoo1': CAUSE_OVERSIZED}
        assert source.fetched == []
        assert report.rounds == [['libfoo1']]

    def test_oversized_after_download(self, chain, tmp_path):
        inputs, source = chain
        # size unknown before the download
        source.packages['libfoo1'] = AvailablePackage('libfoo1', '1.2.3-1')
        target = FakeBackend('fedora41', PackageFormat.RPM)
        report = _resolver(tmp_path, source, target, max_artifact_size=10,
                           rebuilder=fake_rebuilder([])).resolve(sorted(inputs.iterdir()))
        assert report.failures == {'libfoo1': CAUSE_OVERSIZED}
        assert source.fetched == ['libfoo1']
        assert not list((tmp_path / 'work').rglob('*.deb'))

    def test_build_failure_stops_descent(self, chain, tmp_path):
        inputs, source = chain
        target = FakeBackend('fedora41', PackageFormat.RPM)

        def failing(path, output_dir, work_dir):
            raise BuildFailed('rpmbuild failed (exit 1): error')

        report = _resolver(tmp_path, source, target,
                           rebuilder=failing).resolve(sorted(inputs.iterdir()))
        assert report.failures == {'libfoo1': CAUSE_BUILD}
        assert report.mapping == {}
        assert report.rounds == [['libfoo1']]

    def test_progress_callback(self, chain, tmp_path):
        inputs, source = chain
        target = FakeBackend('fedora41', PackageFormat.RPM, {
            'glibc': AvailablePackage('glibc', '2.40-4.fc41')})
        seen = []
        dep_map = DepNameMap([{PackageFormat.DEB: 'libc6', PackageFormat.RPM: 'glibc'}])
        _resolver(tmp_path, source, target, dep_map=dep_map, rebuilder=fake_rebuilder([]),
                  progress_callback=lambda name, done, total: seen.append((name, done, total))
                  ).resolve(sorted(inputs.iterdir()))
        assert seen == [('libfoo1', 1, 1), ('libbar', 1, 1)]


class TestDefaultRebuilder:
    """End-to-end rebuild through the real convert pipeline (pacman target)."""

    def test_rebuild_for_arch(self, chain, tmp_path):
        inputs, source = chain
        target = FakeBackend('arch', PackageFormat.PACMAN, {
            'glibc': AvailablePackage('glibc', '2.40+r16-1')})
        dep_map = DepNameMap([{PackageFormat.DEB: 'libc6', PackageFormat.PACMAN: 'glibc'}])
        resolver = _resolver(tmp_path, source, target, dep_map=dep_map, jobs=2)
        report = resolver.resolve(sorted(inputs.iterdir()))

        assert report.success
        assert report.mapping == {'libfoo1': 'noble-libfoo1', 'libbar': 'noble-libbar'}
        names = sorted(p.name for p in report.artifacts)
        assert names == ['noble-libbar-2.1.1-1-aarch64.pkg.tar.zst',
                         'noble-libfoo1-1.2.3.1-1-aarch64.pkg.tar.zst']

        rebuilt = extract(tmp_path / 'out' / names[1], tmp_path / 'check')
        assert rebuilt.name == 'noble-libfoo1'
        assert 'libfoo1' in rebuilt.provides
        assert rebuilt.depends == ['libbar']
        assert (rebuilt.root / 'usr/lib/libfoo.so.1').read_bytes() == b'foo'

        mapping = tmp_path / 'mapping.txt'
        resolver.write_mapping(mapping)
        assert mapping.read_text() == 'libfoo1=noble-libfoo1\nlibbar=noble-libbar\n'
