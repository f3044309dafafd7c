"""RPM .rpm extractor."""

import logging
import re
from pathlib import Path
from typing import List, Optional

from ..archive import extract_cpio
from ..compression import CORRUPT_STREAM_ERRORS, decompress_stream
from ..errors import MalformedPackage
from ..formats import PackageFormat
from ..intermediate import IntermediatePackage, dedupe
from ..rpmheader import RPMHeader, SCRIPTLET_TAGS, read_package_header
from .base import Extractor, PackageInfo, prepare_output

logger = logging.getLogger(__name__)

SHELL_INTERPRETERS = ('/bin/sh', '/bin/bash', '/usr/bin/sh', '/usr/bin/bash')
_ISA_RE = re.compile(r'^[a-z0-9_]+-(?:32|64)$')


def filter_requires(requires: List[str]) -> List[str]:
    """Keep package-level requirements.

    rpmlib(...) capabilities, file paths and rich dependencies are internal
    to rpm and have no meaning for other formats.
    """
    result = []
    for req in requires:
        req = req.strip()
        if not req or req.startswith(('rpmlib(', '/', '(')):
            continue
        result.append(req)
    return dedupe(result)


def _own_provides(header: RPMHeader) -> List[str]:
    """Provides minus the implicit self-provides rpmbuild always adds.

    Those are the bare name and the name qualified by arch or ISA,
    e.g. foo(aarch64), foo(x86-64), foo(aarch-64).
    """
    def is_self(provide: str) -> bool:
        if provide == header.name:
            return True
        if not (provide.startswith(header.name + '(') and provide.endswith(')')):
            return False
        qualifier = provide[len(header.name) + 1:-1]
        return qualifier == header.arch or bool(_ISA_RE.match(qualifier))

    return [p for p in dedupe(header.provides) if not is_self(p)]


class RpmExtractor(Extractor):
    """Extract binary .rpm packages (headers parsed in-process, newc payload)."""

    format = PackageFormat.RPM

    def inspect(self, path: Path) -> PackageInfo:
        with open(path, 'rb') as f:
            header = read_package_header(f)
        return PackageInfo(
            name=header.name,
            version=header.evr,
            arch=header.arch,
            source_format=self.format,
            depends=filter_requires(header.requires),
            provides=_own_provides(header),
        )

    def extract(self, path: Path, output_dir: Path,
                source_distro: Optional[str] = None) -> IntermediatePackage:
        path = Path(path)
        output_dir = Path(output_dir)
        root = prepare_output(output_dir)

        try:
            with open(path, 'rb') as f:
                header = read_package_header(f)
                logger.debug(f"{header.name}: payload compressed with {header.payload_compressor}")
                payload = decompress_stream(f)
                extract_cpio(payload, root)
        except (MalformedPackage, *CORRUPT_STREAM_ERRORS) as e:
            self._fail(output_dir, f"{path.name}: {e}")

        scripts = {}
        for tag, (_, slot) in SCRIPTLET_TAGS.items():
            body, prog = header.scriptlet(tag)
            if body is None:
                continue
            if prog.split()[0] not in SHELL_INTERPRETERS:
                logger.warning(f"{header.name}: skipping {slot} scriptlet written for {prog}")
                continue
            scripts[slot] = body if body.endswith('\n') else body + '\n'

        description = header.summary
        if header.description and header.description.strip() != header.summary:
            description = f"{header.summary}\n{header.description.rstrip()}"

        pkg = IntermediatePackage(
            name=header.name,
            version=header.evr,
            arch=header.arch,
            source_format=self.format,
            root=root,
            description=description,
            maintainer=header.packager,
            source_distro=source_distro or 'unknown',
            depends=filter_requires(header.requires),
            provides=_own_provides(header),
            conflicts=header.conflicts,
            replaces=header.obsoletes,
            conffiles=header.config_files,
            scripts=scripts,
        )
        pkg.save(output_dir)
        logger.info(f"Extracted {pkg.name} {pkg.version} ({pkg.arch}) from {path.name}")
        return pkg
