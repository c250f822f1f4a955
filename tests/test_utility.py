"""Tests for shared helpers."""

import os
import stat
from datetime import datetime, timezone

import pytest

from tritoncloud.exceptions import Canceled, UsageError
from tritoncloud.utility import (KINDS, Cancellation, bool_from_string, get_kind, human_duration, human_size_from_mib, is_uuid,
                                 long_ago, normalize_short_id, short_id, write_text_atomic)

UUID = '5e8d5d3e-9a4b-4d8a-b3a5-0f2c7d8e9f10'


class TestIds:
    def test_is_uuid(self):
        assert is_uuid(UUID)
        assert is_uuid(UUID.upper())
        assert not is_uuid(UUID[:8])
        assert not is_uuid('not-a-uuid')
        assert not is_uuid(None)

    def test_short_id(self):
        assert short_id(UUID) == '5e8d5d3e'
        assert short_id(None) is None

    def test_normalize_short_id_adds_dashes(self):
        assert normalize_short_id('5e8d5d3e9a4b') == '5e8d5d3e-9a4b'
        assert normalize_short_id('5E8D') == '5e8d'

    def test_normalize_short_id_rejects_names(self):
        assert normalize_short_id('web0') is None
        assert normalize_short_id('abc') is None
        assert normalize_short_id('my-db') is None

    def test_normalize_short_id_cuts_long_ids(self):
        docker_id = 'a' * 64
        assert normalize_short_id(docker_id).replace('-', '') == 'a' * 32


class TestKinds:
    def test_lookup_by_name_singular_and_abbreviation(self):
        assert get_kind('instances') is KINDS['instances']
        assert get_kind('instance') is KINDS['instances']
        assert get_kind('inst') is KINDS['instances']
        assert get_kind('img') is KINDS['images']
        assert get_kind('fwrule') is KINDS['fwrules']

    def test_unknown_kind(self):
        with pytest.raises(UsageError):
            get_kind('spaceships')

    def test_inactive_rules(self):
        assert KINDS['images'].is_active({'state': 'active'})
        assert not KINDS['images'].is_active({'state': 'disabled'})
        assert KINDS['packages'].is_active({})
        assert not KINDS['packages'].is_active({'active': False})
        assert KINDS['networks'].is_active({'whatever': 1})


class TestText:
    def test_bool_from_string(self):
        assert bool_from_string('1') is True
        assert bool_from_string('Yes') is True
        assert bool_from_string('') is False
        assert bool_from_string(None, default=True) is True
        with pytest.raises(UsageError):
            bool_from_string('maybe')

    def test_human_duration(self):
        assert human_duration(5) == '5s'
        assert human_duration(83) == '1m23s'
        assert human_duration(3605) == '1h0m5s'

    def test_human_size(self):
        assert human_size_from_mib(512) == '512M'
        assert human_size_from_mib(1024) == '1G'
        assert human_size_from_mib(1536) == '1.5G'
        assert human_size_from_mib(None) is None

    def test_long_ago(self):
        now = datetime(2024, 1, 10, tzinfo=timezone.utc)
        assert long_ago('2024-01-07T00:00:00Z', now=now) == '3d'
        assert long_ago('2024-01-09T23:59:30.000Z', now=now) == '30s'


class TestCancellation:
    def test_check(self):
        cancel = Cancellation()
        cancel.check()
        cancel.cancel()
        assert cancel.canceled
        with pytest.raises(Canceled):
            cancel.check("listing")

    def test_sleep_wakes_when_canceled(self):
        cancel = Cancellation()
        cancel.cancel()
        with pytest.raises(Canceled):
            cancel.sleep(60)


class TestWriteTextAtomic:
    def test_writes_private_file(self, tmp_path):
        path = tmp_path / 'sub' / 'file.json'
        write_text_atomic(path, '{}')
        assert path.read_text() == '{}'
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert [p.name for p in path.parent.iterdir()] == ['file.json']
