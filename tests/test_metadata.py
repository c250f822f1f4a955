"""Tests for metadata, tag, affinity, disk, and volume size arguments."""

import pytest

from tritoncloud.exceptions import UsageError
from tritoncloud.metadata import (affinity_rules, disks_from_args, metadata_from_opts, parse_affinity, parse_volume_size,
                                  tags_from_opts, typed_value)

DB0 = '0a0b0c0d-1111-4222-8333-444455556666'


class TestTypedValue:
    @pytest.mark.parametrize('text,expected', [
        ('true', True),
        ('false', False),
        ('42', 42),
        ('-1.5', -1.5),
        ('1e3', 1000.0),
        ('abc', 'abc'),
        ('True', 'True'),
        ('', ''),
    ])
    def test_conversion(self, text, expected):
        value = typed_value(text)
        assert value == expected
        assert type(value) is type(expected)


class TestMetadata:
    def test_later_value_wins_with_a_warning(self):
        warnings = []
        data = metadata_from_opts([('metadata', 'foo=1'), ('metadata', '{"foo": "bar", "n": 2}')], warn=warnings.append)
        assert data == {'foo': 'bar', 'n': 2}
        assert len(warnings) == 1
        assert warnings[0].startswith('warning: metadata "foo=bar" replaces')

    def test_files_and_script(self, tmp_path):
        kv = tmp_path / 'meta.txt'
        kv.write_text('a=1\n\nb=two\n')
        script = tmp_path / 'setup.sh'
        script.write_text('#!/bin/sh\necho hi\n')
        motd = tmp_path / 'motd'
        motd.write_text('welcome')
        data = metadata_from_opts([
            ('metadata', f"@{kv}"),
            ('metadata_file', f"motd={motd}"),
            ('script', str(script)),
        ])
        assert data == {'a': 1, 'b': 'two', 'motd': 'welcome', 'user-script': '#!/bin/sh\necho hi\n'}

    def test_missing_file(self, tmp_path):
        with pytest.raises(UsageError, match='not an existing file'):
            metadata_from_opts([('script', str(tmp_path / 'nope.sh'))])

    def test_nested_value_is_refused(self):
        with pytest.raises(UsageError, match='invalid metadata value type'):
            metadata_from_opts([('metadata', '{"foo": {"bar": 1}}')])

    def test_not_key_value(self):
        with pytest.raises(UsageError):
            metadata_from_opts([('metadata', 'foo')])

    def test_invalid_json(self):
        with pytest.raises(UsageError, match='not valid JSON'):
            metadata_from_opts([('metadata', '{foo')])

    def test_no_options(self):
        assert metadata_from_opts([]) == {}


class TestTags:
    def test_tags(self):
        assert tags_from_opts(['role=web', 'count=3', 'prod=true']) == {'role': 'web', 'count': 3, 'prod': True}

    def test_empty_argument(self):
        with pytest.raises(UsageError):
            tags_from_opts([''])


class TestAffinity:
    def test_operators(self):
        parsed = parse_affinity(['inst==db0', 'instance!=web1', 'db2'])
        assert [(a.op, a.strict, a.value) for a in parsed] == [('==', True, 'db0'), ('!=', True, 'web1'), ('==', True, 'db2')]

    def test_non_strict(self):
        parsed = parse_affinity(['container!=~web*', 'inst=~db0'])
        assert [a.rule() for a in parsed] == ['instance!=~web*', 'instance==~db0']

    def test_mixed_strictness(self):
        with pytest.raises(UsageError, match='mixed strict and non-strict'):
            parse_affinity(['inst==db0', 'inst!=~web1'])

    def test_empty_value(self):
        with pytest.raises(UsageError):
            parse_affinity(['inst=='])

    def test_names_are_resolved_and_patterns_are_not(self):
        seen = []

        def resolve(name):
            seen.append(name)
            return DB0

        rules = affinity_rules(parse_affinity(['inst!=db0', 'inst!=web*', 'inst!=/^api/', f"inst!={DB0}"]), resolve)
        assert rules == [f"instance!={DB0}", 'instance!=web*', 'instance!=/^api/', f"instance!={DB0}"]
        assert seen == ['db0']


class TestDisks:
    def test_sizes(self):
        disks = disks_from_args(['[{"size": 1024}, {"size": "remaining"}]', '{"size": "2048"}', '{}'])
        assert disks == [{'size': 1024}, {'size': 'remaining'}, {'size': 2048}, {}]

    def test_file(self, tmp_path):
        path = tmp_path / 'disks.json'
        path.write_text('[{"size": 512}]')
        assert disks_from_args([f"@{path}"]) == [{'size': 512}]

    def test_none(self):
        assert disks_from_args([]) is None

    @pytest.mark.parametrize('arg', [
        '[{"size": "remaining"}, {"size": "remaining"}]',
        '[{"size": 0}]',
        '[{"size": "big"}]',
        '[{"size": true}]',
        '[{"size": 1.5}]',
        '[1, 2]',
        'not json',
    ])
    def test_invalid(self, arg):
        with pytest.raises(UsageError):
            disks_from_args([arg])


class TestVolumeSize:
    @pytest.mark.parametrize('size,mib', [('20G', 20480), ('512m', 512), ('100', 100), (10, 10)])
    def test_valid(self, size, mib):
        assert parse_volume_size(size) == mib

    @pytest.mark.parametrize('size', ['0', '1.5G', '-1', '10T', ''])
    def test_invalid(self, size):
        with pytest.raises(UsageError):
            parse_volume_size(size)
