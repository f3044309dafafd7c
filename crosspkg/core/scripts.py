"""
Maintainer script translation between deb, rpm and pacman dialects.

Scripts are treated as lines of shell, not parsed: the set of idioms that
need rewriting is small and well known (package manager helpers, user
creation, initramfs/bootloader regeneration, alternatives). Those idioms
live in RULES as data; translate() only walks lines and applies them.

Cross-format translation steps:
    1. join backslash continuations into logical lines
    2. drop the shebang and ``set -e``
    3. deb sources: unwrap the ``case "$1" in`` dispatcher, keeping only the
       branches for the requested actions
    4. rpm sources: substitute ``$1`` with a literal or ``${_RPM_ARG}``
    5. apply the first matching rule to each line
    6. rewrite nologin and tool paths inside the remaining lines
    7. put ``:`` into blocks that lost all their commands
"""

import logging
import re
import shlex
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Union

from .formats import PackageFormat

logger = logging.getLogger(__name__)

DEB = PackageFormat.DEB
RPM = PackageFormat.RPM
PACMAN = PackageFormat.PACMAN

# deb maintainer script actions whose branches carry real work
DEFAULT_DEB_ACTIONS = frozenset({'configure', 'install', 'upgrade', 'remove', 'purge'})
# Branches that are always discarded, whatever actions were requested
SKIPPED_DEB_ACTIONS = ('abort-', 'failed-', 'deconfigure', 'disappear')

RPM_RUNTIME_ARG = 'runtime'
RPM_ARG_VARIABLE = '${_RPM_ARG}'

NOLOGIN = {
    DEB: '/usr/sbin/nologin',
    RPM: '/sbin/nologin',
    PACMAN: '/usr/bin/nologin',
}

INITRAMFS_TOOL = {
    DEB: '/usr/sbin/update-initramfs',
    RPM: '/usr/bin/dracut',
    PACMAN: '/usr/bin/mkinitcpio',
}

GRUB_TOOL = {
    DEB: '/usr/sbin/update-grub',
    RPM: '/usr/sbin/grub2-mkconfig',
    PACMAN: '/usr/bin/grub-mkconfig',
}

_SHEBANG_RE = re.compile(r'^#!')
_SET_E_RE = re.compile(r'^\s*set\s+-e\s*$')
_OUTER_CASE_RE = re.compile(r'''^\s*case\s+("\$1"|"\$\{1\}"|'\$1'|\$1|\$\{1\})\s+in\s*$''')
_CASE_RE = re.compile(r'^\s*case\s.*\sin\s*$')
_ESAC_RE = re.compile(r'^\s*esac\b')
_LABEL_RE = re.compile(r'^\s*\(?\s*([^()]*?)\s*\)\s*(.*)$')
_CONDITION_RE = re.compile(r'^(\s*)(if|elif|while|until)\s.*?(;\s*(?:then|do))\s*$')
_RPM_ARG_RE = re.compile(r'\$\{1\}|\$1(?![0-9])')
_NOLOGIN_RE = re.compile(r'(?:/usr)?/s?bin/nologin\b')
_INITRAMFS_PATH_RE = re.compile(
    r'(?:(?<=[\s"\'=])|^)(?:/usr)?(?:/s?bin/)?(?:update-initramfs|dracut|mkinitcpio)\b')
_GRUB_PATH_RE = re.compile(
    r'(?:(?<=[\s"\'=])|^)(?:/usr)?(?:/s?bin/)?(?:update-grub2?|grub2-mkconfig|grub-mkconfig)\b')

# Start of a simple command: line start, or after a list/pipe operator or
# a compound keyword
_CMD = r'(?:^|[;&|]\s*|\b(?:if|elif|while|until|then|do|else)\s+|!\s+)\s*(?:/usr)?(?:/s?bin/)?'


def _command(names: str) -> 're.Pattern':
    return re.compile(_CMD + r'(?:' + names + r')(?![\w.-])')


@dataclass(frozen=True)
class Rule:
    """One known idiom and what each target does with it.

    kind:
        drop     - remove the line (conditions become ``false``)
        keep     - keep the line for targets in ``native``, drop otherwise
        line     - replace the whole line with native[target]
        command  - replace the matched command word with native[target]
        handler  - call handler(indent, line, target)
    A target missing from ``native`` (or mapped to None) drops the line.
    """
    name: str
    pattern: 're.Pattern'
    kind: str
    sources: FrozenSet[PackageFormat] = frozenset({DEB, RPM, PACMAN})
    native: Dict[PackageFormat, Optional[str]] = field(default_factory=dict)
    handler: Optional[Callable[[str, str, PackageFormat], List[str]]] = None


# =============================================================================
# adduser / addgroup
# =============================================================================

_ADDUSER_VALUE_FLAGS = {
    '--home': 'home', '--shell': 'shell', '--ingroup': 'ingroup',
    '--gecos': 'gecos', '--comment': 'gecos', '--uid': 'uid', '--gid': 'gid',
    '--firstuid': None, '--lastuid': None, '--firstgid': None, '--lastgid': None,
}
_SHELL_OPERATORS = {'||', '&&', ';', '|', '&'}


def _adduser_tokens(line: str) -> List[str]:
    try:
        tokens = shlex.split(line, comments=True)
    except ValueError:
        return []
    result = []
    for token in tokens:
        if token in _SHELL_OPERATORS:
            break
        # Redirections such as >/dev/null 2>&1
        if re.match(r'^\d*[<>]', token):
            continue
        result.append(token)
    return result


def shell_word(token: str) -> str:
    """Quote a token for the generated command, keeping $VAR and `cmd` live."""
    if '$' in token or '`' in token:
        return '"' + token.replace('\\', '\\\\').replace('"', '\\"') + '"'
    return shlex.quote(token)


def translate_adduser(indent: str, line: str, target: PackageFormat) -> List[str]:
    """Rewrite Debian adduser/addgroup calls to idempotent useradd/groupadd.

    Args:
        indent: Leading whitespace to reuse
        line: The command line without indentation
        target: Target package format (selects the nologin path)

    Returns:
        Replacement lines; the original line if the form is not recognized
    """
    tokens = _adduser_tokens(line)
    if not tokens:
        return [indent + line]
    command = tokens[0].rsplit('/', 1)[-1]
    args = tokens[1:]
    q = shell_word

    if command == 'addgroup':
        names = [a for a in args if not a.startswith('-')]
        if names:
            group = names[-1]
            system = ' -r' if '--system' in args else ''
            return [f"{indent}getent group {q(group)} >/dev/null || groupadd{system} {q(group)}"]
        return [indent + line]

    positional = []
    options: Dict[str, str] = {}
    switches = set()
    i = 0
    while i < len(args):
        arg = args[i]
        if arg in _ADDUSER_VALUE_FLAGS:
            key = _ADDUSER_VALUE_FLAGS[arg]
            if key and i + 1 < len(args):
                options[key] = args[i + 1]
            i += 2
            continue
        if arg.startswith('--') and '=' in arg:
            flag, value = arg.split('=', 1)
            key = _ADDUSER_VALUE_FLAGS.get(flag)
            if key:
                options[key] = value
        elif arg.startswith('-'):
            switches.add(arg)
        else:
            positional.append(arg)
        i += 1

    # adduser USER GROUP: add an existing user to a group
    if '--system' not in switches and len(positional) == 2 and not options:
        user, group = positional
        return [f"{indent}usermod -aG {q(group)} {q(user)} 2>/dev/null || :"]

    if '--system' not in switches or len(positional) != 1:
        return [indent + line]

    user = positional[0]
    lines = []
    cmd = ['useradd', '-r']
    cmd.append('-m' if 'home' in options and '--no-create-home' not in switches else '-M')
    cmd.extend(['-s', q(_NOLOGIN_RE.sub(NOLOGIN[target], options.get('shell', NOLOGIN[target])))])
    if 'home' in options:
        cmd.extend(['-d', q(options['home'])])
    if 'uid' in options:
        cmd.extend(['-u', q(options['uid'])])
    if '--group' in switches:
        lines.append(f"{indent}getent group {q(user)} >/dev/null || groupadd -r {q(user)}")
        cmd.extend(['-g', q(user)])
    elif 'ingroup' in options:
        cmd.extend(['-g', q(options['ingroup'])])
    elif 'gid' in options:
        cmd.extend(['-g', q(options['gid'])])
    if 'gecos' in options:
        cmd.extend(['-c', q(options['gecos'])])
    cmd.append(q(user))
    lines.append(f"{indent}getent passwd {q(user)} >/dev/null || {' '.join(cmd)}")
    return lines


# =============================================================================
# Rule table
# =============================================================================

RULES: List[Rule] = [
    Rule('dpkg-compare-versions', re.compile(r'\bdpkg\s+--compare-versions\b'), 'drop',
         sources=frozenset({DEB})),
    Rule('deb-helpers', _command(
        r'dpkg-maintscript-helper|dpkg-trigger|deb-systemd-helper|deb-systemd-invoke'
        r'|update-rc\.d|invoke-rc\.d|db_\w+'), 'drop', sources=frozenset({DEB})),
    Rule('deb-helper-check', re.compile(
        r'\b(?:deb-systemd-helper|deb-systemd-invoke|dpkg-maintscript-helper|update-rc\.d'
        r'|invoke-rc\.d)\b'), 'drop', sources=frozenset({DEB})),
    Rule('debconf', re.compile(r'/usr/share/debconf/confmodule'), 'drop',
         sources=frozenset({DEB})),
    # Scripts are concatenated and wrapped in functions, a top-level exit
    # would skip whatever follows
    Rule('exit-0', re.compile(r'^exit\s+0\s*$'), 'drop'),
    Rule('adduser', _command(r'adduser|addgroup'), 'handler',
         sources=frozenset({DEB}), handler=translate_adduser),
    Rule('ldconfig', _command(r'ldconfig'), 'keep', native={DEB: None, RPM: None}),
    Rule('initramfs', _command(r'update-initramfs|dracut|mkinitcpio'), 'line', native={
        DEB: 'update-initramfs -u 2>/dev/null || :',
        RPM: 'dracut --force 2>/dev/null || :',
        PACMAN: 'mkinitcpio -P 2>/dev/null || :',
    }),
    Rule('grub', _command(r'update-grub2?|grub2-mkconfig|grub-mkconfig'), 'line', native={
        DEB: 'update-grub 2>/dev/null || :',
        RPM: 'grub2-mkconfig -o /boot/grub2/grub.cfg 2>/dev/null || :',
        PACMAN: 'grub-mkconfig -o /boot/grub/grub.cfg 2>/dev/null || :',
    }),
    Rule('alternatives', _command(r'update-alternatives|alternatives'), 'command', native={
        DEB: 'update-alternatives',
        RPM: 'alternatives',
    }),
]


# =============================================================================
# Line helpers
# =============================================================================

def _logical_lines(body: str) -> List[str]:
    """Split into lines, joining backslash-continued lines."""
    lines = []
    pending = ''
    for line in body.split('\n'):
        if line.endswith('\\') and not line.endswith('\\\\'):
            pending += line + '\n'
            continue
        lines.append(pending + line)
        pending = ''
    if pending:
        lines.append(pending.rstrip('\n'))
    return lines


def _strip_boilerplate(lines: Iterable[str]) -> List[str]:
    return [line for line in lines
            if not _SHEBANG_RE.match(line) and not _SET_E_RE.match(line)]


def _indent(line: str) -> str:
    return line[:len(line) - len(line.lstrip())]


def _dropped(line: str) -> List[str]:
    """Remove a command line, keeping shell structure intact.

    A dropped command that is the condition of if/elif/while/until turns
    into ``false`` so the block that follows still parses.
    """
    m = _CONDITION_RE.match(line)
    if m:
        return [f"{m.group(1)}{m.group(2)} false{m.group(3)}"]
    return []


_OPENERS = re.compile(r'(?:\bthen|\bdo|\belse|\{)\s*$')
_CLOSERS = re.compile(r'^\s*(?:fi|done|else|elif|\})\b')


def _fill_empty_blocks(lines: List[str]) -> List[str]:
    """Insert ``:`` where a then/do/else/{ block lost all of its commands."""
    result = []
    for line in lines:
        if _CLOSERS.match(line):
            prev = next((p for p in reversed(result)
                         if p.strip() and not p.lstrip().startswith('#')), None)
            if prev is not None and _OPENERS.search(prev):
                result.append(_indent(prev) + '    :')
        result.append(line)
    return result


def _apply_rules(line: str, source: PackageFormat, target: PackageFormat) -> Optional[List[str]]:
    """Return replacement lines for the first matching rule, None if no rule matched."""
    stripped = line.strip()
    if not stripped or stripped.startswith('#'):
        return None
    indent = _indent(line)

    for rule in RULES:
        if source not in rule.sources:
            continue
        m = rule.pattern.search(line)
        if not m:
            continue
        logger.debug(f"script rule {rule.name}: {stripped}")

        if rule.kind == 'drop':
            return _dropped(line)
        if rule.kind == 'keep':
            return [line] if target in rule.native else _dropped(line)
        if rule.kind == 'line':
            replacement = rule.native.get(target)
            if replacement is None:
                return _dropped(line)
            cond = _CONDITION_RE.match(line)
            if cond:
                # Tool used as a condition: keep the block, run the native tool
                return [f"{cond.group(1)}{cond.group(2)} {replacement}{cond.group(3)}"]
            return [indent + replacement]
        if rule.kind == 'command':
            replacement = rule.native.get(target)
            if replacement is None:
                return _dropped(line)
            head = line[:m.start()]
            matched = m.group(0)
            word_start = re.search(r'(?:/usr)?(?:/s?bin/)?[\w.-]+$', matched).start()
            return [head + matched[:word_start] + replacement + line[m.end():]]
        if rule.kind == 'handler':
            return rule.handler(indent, stripped, target)
    return None


def _rewrite_paths(line: str, target: PackageFormat) -> str:
    if 'nologin' in line:
        line = _NOLOGIN_RE.sub(NOLOGIN[target], line)
    if any(tool in line for tool in ('initramfs', 'dracut', 'mkinitcpio')):
        line = _INITRAMFS_PATH_RE.sub(INITRAMFS_TOOL[target], line)
    if 'grub' in line:
        line = _GRUB_PATH_RE.sub(GRUB_TOOL[target], line)
    return line


# =============================================================================
# deb case dispatch
# =============================================================================

def has_case_dispatch(body: str) -> bool:
    """True if a deb maintainer script dispatches on ``case "$1" in``."""
    return any(_OUTER_CASE_RE.match(line) for line in body.split('\n'))


def _branch_active(labels: str, actions: FrozenSet[str]) -> bool:
    names = [n.strip().strip('"\'') for n in labels.split('|')]
    active = False
    for name in names:
        if name == '*' or name.startswith(SKIPPED_DEB_ACTIONS):
            continue
        if name in actions:
            active = True
    return active


def unwrap_deb_case(lines: List[str], actions: FrozenSet[str] = DEFAULT_DEB_ACTIONS) -> List[str]:
    """Flatten the ``case "$1" in`` dispatcher of a deb maintainer script.

    Only bodies of branches whose labels intersect ``actions`` are kept,
    abort-*, failed-*, deconfigure, disappear and ``*)`` branches are
    always dropped. Nested case statements are tracked by depth and passed
    through untouched inside kept branches. Lines outside the dispatcher
    are kept as they are.
    """
    result = []
    in_case = False
    active = False
    depth = 0

    for line in lines:
        if not in_case:
            if _OUTER_CASE_RE.match(line):
                in_case = True
                active = False
                depth = 1
                continue
            result.append(line)
            continue

        if _CASE_RE.match(line):
            depth += 1
            if active:
                result.append(line)
            continue

        if _ESAC_RE.match(line):
            depth -= 1
            if depth == 0:
                in_case = False
                active = False
                continue
            if active:
                result.append(line)
            continue

        if depth == 1:
            stripped = line.strip()
            if stripped == ';;' or stripped.startswith(';;'):
                active = False
                continue
            label = _LABEL_RE.match(line) if not active else None
            if label and not stripped.startswith('#'):
                active = _branch_active(label.group(1), actions)
                rest = label.group(2).strip()
                if rest:
                    ends = rest.endswith(';;')
                    rest = rest[:-2].rstrip() if ends else rest
                    if active and rest:
                        result.append(_indent(line) + rest)
                    if ends:
                        active = False
                continue
            if active and stripped.endswith(';;'):
                body = line.rstrip()[:-2].rstrip()
                if body.strip():
                    result.append(body)
                active = False
                continue

        if active:
            result.append(line)

    return result


def _dedent(lines: List[str]) -> List[str]:
    """Remove the common indentation left behind by unwrapped case branches."""
    indents = [len(_indent(l)) for l in lines if l.strip()]
    if not indents:
        return lines
    cut = min(indents)
    return [l[cut:] if l.strip() else '' for l in lines]


# =============================================================================
# Entry point
# =============================================================================

def translate(body: str, source: Union[str, PackageFormat], target: Union[str, PackageFormat],
              rpm_arg: Optional[Union[int, str]] = None,
              deb_actions: Optional[Iterable[str]] = None) -> str:
    """Translate one lifecycle script body from source to target dialect.

    Args:
        body: Script text in the source dialect
        source: Format the script came from
        target: Format the script is emitted for
        rpm_arg: For rpm sources on other targets, the value substituted for
            ``$1``: an integer literal, or ``'runtime'`` to substitute
            ``${_RPM_ARG}`` (the caller prepends a preamble computing it)
        deb_actions: For deb sources, the ``$1`` actions whose case branches
            are kept (default: configure, install, upgrade, remove, purge)

    Returns:
        Translated body ending with a newline, or '' if nothing is left
    """
    source = PackageFormat.parse(source)
    target = PackageFormat.parse(target)

    lines = _strip_boilerplate(_logical_lines(body))

    if source == target:
        text = '\n'.join(lines).strip('\n')
        return text + '\n' if text.strip() else ''

    if source == DEB:
        actions = frozenset(deb_actions) if deb_actions is not None else DEFAULT_DEB_ACTIONS
        if has_case_dispatch(body):
            lines = _dedent(unwrap_deb_case(lines, actions))

    if source == RPM and rpm_arg is not None:
        value = RPM_ARG_VARIABLE if rpm_arg == RPM_RUNTIME_ARG else str(rpm_arg)
        lines = [_RPM_ARG_RE.sub(value, line) for line in lines]

    out = []
    for line in lines:
        replaced = _apply_rules(line, source, target)
        if replaced is None:
            out.append(_rewrite_paths(line, target))
        else:
            out.extend(replaced)

    out = _fill_empty_blocks(out)
    text = '\n'.join(out).strip('\n')
    if not any(l.strip() and not l.strip().startswith('#') and l.strip() != ':'
               for l in out):
        return ''
    return text + '\n'
