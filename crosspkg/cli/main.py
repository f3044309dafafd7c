"""
crosspkg command line interface.

Commands:
    inspect   show metadata of a package file
    extract   unpack a package into the intermediate layout
    build     emit a native package from an intermediate directory
    convert   extract + emit in one step
    resolve   rebuild missing dependencies from another distribution
"""

import argparse
import dataclasses
import logging
import sys
from pathlib import Path

from .. import __version__
from ..core.config import load_settings
from ..core.container import Container, detect_runtime
from ..core.convert import convert, emit_package
from ..core.depmap import DepNameMap
from ..core.distros import DistroRegistry
from ..core.errors import CrossPkgError, UnsupportedFormat
from ..core.extract import extract, inspect
from ..core.formats import ARCH_AARCH64, PackageFormat, detect_format
from ..core.intermediate import IntermediatePackage
from ..core.repoquery import ContainerBackend
from ..core.resolver import DependencyResolver
from . import colors

logger = logging.getLogger(__name__)

FORMAT_CHOICES = [f.value for f in PackageFormat]


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser with all commands."""

    parser = argparse.ArgumentParser(
        prog='crosspkg',
        description='Convert packages between deb, rpm and pacman formats',
        epilog='Use "crosspkg <command> --help" for command-specific help.'
    )

    parser.add_argument(
        '--version', '-V',
        action='version',
        version=f'crosspkg {__version__}'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Verbose output'
    )

    parser.add_argument(
        '--nocolor',
        action='store_true',
        help='Disable colored output'
    )

    parser.add_argument(
        '--config',
        metavar='FILE',
        help='Settings file (default: ~/.config/crosspkg/crosspkg.conf, /etc/crosspkg.conf)'
    )

    subparsers = parser.add_subparsers(
        dest='command',
        title='commands',
        metavar='<command>'
    )

    # =========================================================================
    # inspect
    # =========================================================================
    inspect_parser = subparsers.add_parser(
        'inspect',
        help='Show name, version and dependencies of a package file'
    )
    inspect_parser.add_argument('package', help='.deb, .rpm or .pkg.tar.* file')

    # =========================================================================
    # extract
    # =========================================================================
    extract_parser = subparsers.add_parser(
        'extract',
        help='Unpack a package into an intermediate directory'
    )
    extract_parser.add_argument('package', help='.deb, .rpm or .pkg.tar.* file')
    extract_parser.add_argument('outdir', help='Intermediate directory (replaced if it exists)')
    extract_parser.add_argument(
        '--source-distro',
        metavar='CODENAME',
        help='Distribution the package comes from (recorded in the metadata)'
    )

    # =========================================================================
    # build
    # =========================================================================
    build_parser = subparsers.add_parser(
        'build',
        help='Emit a native package from an intermediate directory'
    )
    build_parser.add_argument('intdir', help='Intermediate directory')
    build_parser.add_argument('outdir', help='Output directory')
    build_parser.add_argument(
        '--format', '-f',
        required=True,
        choices=FORMAT_CHOICES,
        help='Target package format'
    )
    build_parser.add_argument(
        '--dep-map',
        metavar='FILE',
        help='Dependency name map'
    )
    build_parser.add_argument(
        '--mapping',
        metavar='FILE',
        help='Resolver mapping file (original=prefixed) applied to dependencies'
    )

    # =========================================================================
    # convert
    # =========================================================================
    convert_parser = subparsers.add_parser(
        'convert',
        help='Convert a package to another format'
    )
    convert_parser.add_argument('package', help='.deb, .rpm or .pkg.tar.* file')
    convert_parser.add_argument('outdir', help='Output directory')
    convert_parser.add_argument(
        '--to', '-t',
        dest='target',
        required=True,
        choices=FORMAT_CHOICES,
        help='Target package format'
    )
    convert_parser.add_argument(
        '--prefix',
        help='Rename the package to PREFIX-name (it keeps providing name)'
    )
    convert_parser.add_argument(
        '--dep-map',
        metavar='FILE',
        help='Dependency name map'
    )
    convert_parser.add_argument(
        '--mapping',
        metavar='FILE',
        help='Resolver mapping file (original=prefixed) applied to dependencies'
    )
    convert_parser.add_argument(
        '--source-distro',
        metavar='CODENAME',
        help='Distribution the package comes from'
    )

    # =========================================================================
    # resolve
    # =========================================================================
    resolve_parser = subparsers.add_parser(
        'resolve',
        help='Rebuild dependencies the target distribution is missing'
    )
    resolve_parser.add_argument(
        '--source-pkgs',
        required=True,
        metavar='DIR',
        help='Directory of packages whose dependencies are resolved'
    )
    resolve_parser.add_argument(
        '--source-distro',
        required=True,
        metavar='CODENAME',
        help='Distribution the dependencies are fetched from (e.g. noble)'
    )
    resolve_parser.add_argument(
        '--target-distro',
        required=True,
        metavar='CODENAME',
        help='Distribution the dependencies are rebuilt for (e.g. fedora41)'
    )
    resolve_parser.add_argument(
        '--target-format',
        choices=FORMAT_CHOICES,
        help='Override the target package format of the target distribution'
    )
    resolve_parser.add_argument(
        '--distros-config',
        metavar='YAML',
        help='Distribution registry (codename -> format, image)'
    )
    resolve_parser.add_argument(
        '--dep-map',
        metavar='FILE',
        help='Dependency name map'
    )
    resolve_parser.add_argument(
        '--output-dir',
        required=True,
        metavar='DIR',
        help='Where rebuilt packages are written'
    )
    resolve_parser.add_argument(
        '--arch',
        default=ARCH_AARCH64,
        help='Architecture to query and fetch (default: %(default)s)'
    )
    resolve_parser.add_argument(
        '--prefix',
        help='Name prefix for rebuilt packages (default: source codename)'
    )
    resolve_parser.add_argument(
        '--jobs', '-j',
        type=int,
        help='Concurrent rebuilds (default from settings)'
    )
    resolve_parser.add_argument(
        '--mapping-file',
        metavar='FILE',
        help='Append original=prefixed lines for rebuilt packages'
    )
    resolve_parser.add_argument(
        '--strict',
        action='store_true',
        help='Exit with status 1 when any dependency failed'
    )

    return parser


def _load_dep_map(args) -> DepNameMap:
    return DepNameMap.load(getattr(args, 'dep_map', None), getattr(args, 'mapping', None))


def cmd_inspect(args) -> int:
    """Handle inspect command."""
    info = inspect(args.package)
    print(f"{colors.package(info.name)} {info.version} ({info.arch}, {colors.fmt(info.source_format)})")
    if info.provides:
        print(f"  Provides: {', '.join(info.provides)}")
    if info.depends:
        print(f"  Depends:  {', '.join(info.depends)}")
    return 0


def cmd_extract(args) -> int:
    """Handle extract command."""
    pkg = extract(args.package, args.outdir, args.source_distro)
    print(f"{colors.success('Extracted')} {colors.package(pkg.name)} {pkg.version} "
          f"({colors.fmt(pkg.source_format)}) -> {args.outdir}")
    return 0


def cmd_build(args) -> int:
    """Handle build command."""
    settings = load_settings(args.config)
    pkg = IntermediatePackage.load(Path(args.intdir))
    target = PackageFormat.parse(args.format)
    path = emit_package(pkg, Path(args.outdir), target, _load_dep_map(args),
                        timeout=settings.build_timeout)
    print(f"{colors.success('Built')} {path}")
    return 0


def cmd_convert(args) -> int:
    """Handle convert command."""
    settings = load_settings(args.config)
    path = convert(
        args.package, args.outdir, args.target,
        prefix=args.prefix,
        dep_map=_load_dep_map(args),
        source_distro=args.source_distro,
        timeout=settings.build_timeout,
    )
    print(f"{colors.success('Converted')} {Path(args.package).name} -> {path}")
    return 0


def _package_files(directory: Path) -> list:
    files = []
    for path in sorted(directory.iterdir()):
        if not path.is_file():
            continue
        try:
            detect_format(path)
        except UnsupportedFormat:
            logger.debug(f"Skipping {path.name}: not a package")
            continue
        files.append(path)
    return files


def cmd_resolve(args) -> int:
    """Handle resolve command."""
    settings = load_settings(args.config)
    registry = DistroRegistry.load(args.distros_config)
    source = registry.get(args.source_distro)
    target = registry.get(args.target_distro)
    if args.target_format:
        target = dataclasses.replace(target, format=PackageFormat.parse(args.target_format))

    source_dir = Path(args.source_pkgs)
    if not source_dir.is_dir():
        print(colors.error(f"Error: {source_dir} is not a directory"), file=sys.stderr)
        return 1
    packages = _package_files(source_dir)
    if not packages:
        print(colors.warning(f"No packages found in {source_dir}"))
        return 0

    container = Container(detect_runtime(settings.runtime))
    backends = [
        ContainerBackend(distro, container, args.arch,
                         query_timeout=settings.query_timeout,
                         fetch_timeout=settings.fetch_timeout)
        for distro in (source, target)
    ]

    def progress(name, done, total):
        print(f"  [{done}/{total}] {name}")

    resolver = DependencyResolver(
        source_distro=source.codename,
        target_distro=target.codename,
        source_backend=backends[0],
        target_backend=backends[1],
        output_dir=Path(args.output_dir),
        work_dir=settings.work_dir / 'resolve' / f"{source.codename}-{target.codename}",
        dep_map=DepNameMap.load(args.dep_map),
        prefix=args.prefix,
        jobs=args.jobs or settings.jobs,
        max_artifact_size=settings.max_artifact_size,
        build_timeout=settings.build_timeout,
        progress_callback=progress,
    )

    print(f"Resolving dependencies of {colors.count(len(packages))} packages: "
          f"{colors.distro(source.codename, source.format)} ({colors.fmt(source.format)}) -> "
          f"{colors.distro(target.codename, target.format)} ({colors.fmt(target.format)})")
    report = resolver.resolve(packages)

    if args.mapping_file and report.mapping:
        resolver.write_mapping(Path(args.mapping_file))

    print()
    print(f"Rounds:    {len(report.rounds)}")
    print(f"Satisfied: {colors.count(len(report.satisfied))}")
    print(f"Rebuilt:   {colors.count(len(report.mapping))}")
    for original, prefixed in report.mapping.items():
        print(f"  {original} -> {colors.package(prefixed)}")
    if report.failures:
        print(f"Failed:    {colors.count(len(report.failures))}")
        for cause, names in report.failures_by_cause().items():
            print(f"  {colors.cause(cause)}: {', '.join(names)}")

    if args.strict and not report.success:
        return 1
    return 0


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr
    )

    colors.init(nocolor=args.nocolor)

    if not args.command:
        parser.print_help()
        return 1

    try:
        if args.command == 'inspect':
            return cmd_inspect(args)

        elif args.command == 'extract':
            return cmd_extract(args)

        elif args.command == 'build':
            return cmd_build(args)

        elif args.command == 'convert':
            return cmd_convert(args)

        elif args.command == 'resolve':
            return cmd_resolve(args)

    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130

    except CrossPkgError as e:
        if args.verbose:
            import traceback
            traceback.print_exc()
        print(colors.error(f"Error: {e}"), file=sys.stderr)
        return 1

    parser.print_help()
    return 1


if __name__ == '__main__':
    sys.exit(main())
