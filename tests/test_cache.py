"""Tests for the on-disk list cache."""

import time

from tritoncloud.cache import ListCache
from tritoncloud.config import Profile

from .conftest import KEY_ID, URL

IMAGES = [{'id': 'i1', 'name': 'base'}]


class Tick:
    def __init__(self, offset=0):
        self.offset = offset

    def __call__(self):
        return time.time() + self.offset


class TestListCache:
    def test_round_trip(self, tmp_path, profile):
        cache = ListCache(tmp_path, profile)
        assert cache.get('images') is None
        assert cache.put('images', IMAGES)
        assert cache.get('images') == IMAGES

    def test_stale_entry_is_a_miss(self, tmp_path, profile):
        clock = Tick()
        cache = ListCache(tmp_path, profile, clock=clock)
        cache.put('images', IMAGES)
        clock.offset = 3601
        assert cache.get('images') is None

    def test_uncacheable_kind(self, tmp_path, profile):
        cache = ListCache(tmp_path, profile)
        assert cache.put('instances', IMAGES) is False
        assert cache.get('instances') is None

    def test_disabled(self, tmp_path, profile):
        cache = ListCache(tmp_path, profile, enabled=False)
        assert cache.put('images', IMAGES) is False
        assert cache.get('images') is None

    def test_garbled_file_is_a_miss(self, tmp_path, profile):
        cache = ListCache(tmp_path, profile)
        cache.path('images').parent.mkdir(parents=True)
        cache.path('images').write_text('{"not": "a list"')
        assert cache.get('images') is None
        cache.path('images').write_text('{"not": "a list"}')
        assert cache.get('images') is None

    def test_invalidate(self, tmp_path, profile):
        cache = ListCache(tmp_path, profile)
        cache.put('images', IMAGES)
        assert cache.invalidate('images')
        assert cache.get('images') is None
        assert cache.invalidate('images') is False

    def test_profiles_do_not_share_entries(self, tmp_path, profile):
        ListCache(tmp_path, profile).put('images', IMAGES)
        other = Profile(name='other', url=URL, account='bob', key_id=KEY_ID)
        assert ListCache(tmp_path, other).get('images') is None

    def test_write_failure_is_swallowed(self, tmp_path, profile):
        blocker = tmp_path / 'file'
        blocker.write_text('in the way')
        cache = ListCache(blocker, profile)
        assert cache.put('images', IMAGES) is False
