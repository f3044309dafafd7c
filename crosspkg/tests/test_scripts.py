"""Tests for lifecycle script translation"""

from crosspkg.core.scripts import has_case_dispatch, translate, translate_adduser
from crosspkg.core.formats import PackageFormat

from conftest import SAMPLE_POSTINST, SAMPLE_PREINST, SAMPLE_PRERM, SAMPLE_RPM_PREIN


class TestSameFormat:
    """Tests for same-format passthrough."""

    def test_boilerplate_stripped(self):
        assert translate('#!/bin/sh\nset -e\necho hi\n', 'deb', 'deb') == 'echo hi\n'

    def test_body_kept(self):
        body = translate(SAMPLE_POSTINST, 'deb', 'deb')
        assert 'adduser --system --group' in body
        assert 'case "$1" in' in body

    def test_empty(self):
        assert translate('#!/bin/sh\nset -e\n', 'rpm', 'rpm') == ''


class TestDebCaseDispatch:
    """Tests for unwrapping case "$1" in dispatchers."""

    def test_detect(self):
        assert has_case_dispatch(SAMPLE_POSTINST)
        assert not has_case_dispatch(SAMPLE_PRERM)

    def test_install_branch(self):
        body = translate(SAMPLE_PREINST, 'deb', 'rpm', deb_actions=('install',))
        assert body == 'echo fresh-install\n'

    def test_upgrade_branch(self):
        body = translate(SAMPLE_PREINST, 'deb', 'rpm', deb_actions=('upgrade',))
        assert body == 'echo upgrading-from "$2"\n'

    def test_no_matching_branch(self):
        assert translate(SAMPLE_PREINST, 'deb', 'rpm', deb_actions=('remove',)) == ''

    def test_abort_and_default_branches_dropped(self):
        body = translate(SAMPLE_POSTINST, 'deb', 'rpm', deb_actions=('configure',))
        assert 'exit 1' not in body
        assert 'unknown argument' not in body
        assert 'case' not in body
        assert 'esac' not in body

    def test_inline_labels(self):
        script = 'case "$1" in\n  configure) echo a ;;\n  remove) echo b ;;\nesac\n'
        assert translate(script, 'deb', 'pacman', deb_actions=('configure',)) == 'echo a\n'
        assert translate(script, 'deb', 'pacman', deb_actions=('remove',)) == 'echo b\n'

    def test_nested_case_kept(self):
        script = (
            'case "$1" in\n'
            '    configure)\n'
            '        case "$2" in\n'
            '            1.*) echo old ;;\n'
            '        esac\n'
            '        echo done\n'
            '    ;;\n'
            'esac\n'
        )
        body = translate(script, 'deb', 'rpm', deb_actions=('configure',))
        assert body == 'case "$2" in\n    1.*) echo old ;;\nesac\necho done\n'


class TestDebRules:
    """Tests for Debian-specific command rewriting."""

    def test_postinst_to_rpm(self):
        body = translate(SAMPLE_POSTINST, 'deb', 'rpm', deb_actions=('configure',))
        assert 'getent group foo >/dev/null || groupadd -r foo' in body
        assert ('getent passwd foo >/dev/null || '
                'useradd -r -M -s /sbin/nologin -d /var/lib/foo -g foo foo') in body
        assert 'ldconfig' in body
        assert 'adduser' not in body
        assert 'exit 0' not in body
        assert body.endswith('\n')

    def test_postinst_to_pacman(self):
        body = translate(SAMPLE_POSTINST, 'deb', 'pacman', deb_actions=('configure',))
        assert '-s /usr/bin/nologin' in body
        assert 'ldconfig' not in body

    def test_helpers_dropped_block_kept(self):
        body = translate(SAMPLE_PRERM, 'deb', 'rpm')
        assert 'deb-systemd-invoke' not in body
        assert body == ('if [ -d /run/systemd/system ] && [ "$1" = remove ]; then\n'
                        '    :\n'
                        'fi\n')

    def test_compare_versions_condition(self):
        script = 'if dpkg --compare-versions "$2" lt 1.0; then\n    echo migrate\nfi\n'
        assert translate(script, 'deb', 'rpm') == 'if false; then\n    echo migrate\nfi\n'

    def test_debconf_dropped(self):
        script = '. /usr/share/debconf/confmodule\ndb_get foo/bar\necho "$RET"\n'
        assert translate(script, 'deb', 'pacman') == 'echo "$RET"\n'

    def test_nothing_left(self):
        script = '#!/bin/sh\nset -e\ndeb-systemd-helper enable foo.service\nexit 0\n'
        assert translate(script, 'deb', 'rpm') == ''

    def test_adduser_to_group(self):
        assert translate('adduser foo dialout\n', 'deb', 'rpm') == \
            'usermod -aG dialout foo 2>/dev/null || :\n'

    def test_addgroup(self):
        assert translate('addgroup --system foo\n', 'deb', 'pacman') == \
            'getent group foo >/dev/null || groupadd -r foo\n'

    def test_adduser_variables_expand(self):
        body = translate('adduser --system --home "$HOME_DIR" "$USER_NAME"\n', 'deb', 'rpm')
        assert body == ('getent passwd "$USER_NAME" >/dev/null || '
                        'useradd -r -m -s /sbin/nologin -d "$HOME_DIR" "$USER_NAME"\n')

    def test_addgroup_variable_expands(self):
        assert translate('addgroup --system ${GROUP}\n', 'deb', 'pacman') == \
            'getent group "${GROUP}" >/dev/null || groupadd -r "${GROUP}"\n'

    def test_adduser_to_group_variables(self):
        assert translate('adduser "$SVC_USER" dialout\n', 'deb', 'rpm') == \
            'usermod -aG dialout "$SVC_USER" 2>/dev/null || :\n'

    def test_adduser_literal_still_quoted(self):
        lines = translate_adduser('', "adduser --system 'my user'", PackageFormat.RPM)
        assert lines == ["getent passwd 'my user' >/dev/null || "
                         "useradd -r -M -s /sbin/nologin 'my user'"]

    def test_adduser_unknown_form_kept(self):
        assert translate_adduser('', 'adduser', PackageFormat.RPM) == ['adduser']

    def test_adduser_shell_and_home(self):
        lines = translate_adduser(
            '  ', 'adduser --system --home /srv/foo --shell /bin/false foo', PackageFormat.RPM)
        assert lines == ['  getent passwd foo >/dev/null || '
                         'useradd -r -m -s /bin/false -d /srv/foo foo']


class TestToolRules:
    """Tests for tools with per-distro equivalents."""

    def test_initramfs(self):
        assert translate('update-initramfs -u\n', 'deb', 'pacman') == \
            'mkinitcpio -P 2>/dev/null || :\n'
        assert translate('dracut -f\n', 'rpm', 'deb') == 'update-initramfs -u 2>/dev/null || :\n'

    def test_grub(self):
        assert translate('    update-grub\n', 'deb', 'rpm') == \
            '    grub2-mkconfig -o /boot/grub2/grub.cfg 2>/dev/null || :\n'

    def test_alternatives(self):
        script = 'update-alternatives --install /usr/bin/foo foo /usr/bin/foo-1 50\n'
        assert translate(script, 'deb', 'rpm') == \
            'alternatives --install /usr/bin/foo foo /usr/bin/foo-1 50\n'
        assert translate(script, 'deb', 'pacman') == ''

    def test_ldconfig_pacman(self):
        assert translate('/sbin/ldconfig\n', 'rpm', 'pacman') == ''
        assert translate('/sbin/ldconfig\n', 'rpm', 'deb') == '/sbin/ldconfig\n'

    def test_nologin_path(self):
        assert translate('useradd -r -s /sbin/nologin foo\n', 'rpm', 'deb') == \
            'useradd -r -s /usr/sbin/nologin foo\n'
        assert translate('useradd -r -s /usr/sbin/nologin foo\n', 'deb', 'pacman') == \
            'useradd -r -s /usr/bin/nologin foo\n'

    def test_exit_zero_dropped(self):
        assert translate('echo hi\nexit 0\n', 'pacman', 'rpm') == 'echo hi\n'

    def test_heredoc_not_reindented(self):
        script = 'cat > /etc/foo <<EOF\nkey=value\nEOF\n'
        assert translate(script, 'rpm', 'pacman') == script


class TestRpmArgument:
    """Tests for $1 substitution in rpm scriptlets."""

    def test_literal(self):
        body = translate(SAMPLE_RPM_PREIN, 'rpm', 'pacman', rpm_arg=1)
        assert 'if [ 1 -eq 1 ]; then' in body
        assert 'if [ "1" -ge 2 ]; then' in body
        assert '$1' not in body

    def test_runtime(self):
        body = translate(SAMPLE_RPM_PREIN, 'rpm', 'deb', rpm_arg='runtime')
        assert 'if [ ${_RPM_ARG} -eq 1 ]; then' in body
        assert '$1 ' not in body

    def test_positional_ten_untouched(self):
        assert translate('echo $10\n', 'rpm', 'deb', rpm_arg=2) == 'echo $10\n'

    def test_no_arg_keeps_dollar_one(self):
        assert translate('echo $1\n', 'rpm', 'rpm') == 'echo $1\n'
