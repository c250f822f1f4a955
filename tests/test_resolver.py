"""Tests for turning ids, short ids, and names into resources."""

import pytest

from tritoncloud.cache import ListCache
from tritoncloud.exceptions import AmbiguousName, AmbiguousShortId, NotFound
from tritoncloud.resolver import Resolver

WEB0 = {'id': '5e8d5d3e-9a4b-4d8a-b3a5-0f2c7d8e9f10', 'name': 'web0', 'state': 'running'}
WEB1 = {'id': '5e8d1111-9a4b-4d8a-b3a5-0f2c7d8e9f10', 'name': 'web1', 'state': 'running'}
SMALL_A = {'id': 'aaaa0000-0000-4000-8000-000000000001', 'name': 'small', 'memory': 1024}
SMALL_B = {'id': 'bbbb0000-0000-4000-8000-000000000002', 'name': 'small', 'memory': 1024}
BIG = {'id': 'cccc0000-0000-4000-8000-000000000003', 'name': 'big', 'memory': 8192, 'active': False}
BASE_OLD = {'id': '11110000-0000-4000-8000-000000000001', 'name': 'base', 'version': '1.0', 'state': 'active',
            'published_at': '2023-01-01T00:00:00Z'}
BASE_NEW = {'id': '22220000-0000-4000-8000-000000000002', 'name': 'base', 'version': '2.0', 'state': 'active',
            'published_at': '2024-01-01T00:00:00Z'}
OLD_IMAGE = {'id': '33330000-0000-4000-8000-000000000003', 'name': 'legacy', 'version': '0.1', 'state': 'disabled',
             'published_at': '2020-01-01T00:00:00Z'}
NIC = {'mac': '90:b8:d0:a1:b2:c3', 'ip': '10.0.0.5', 'state': 'running'}


class FakeCloudApi:
    """Serve resources like CloudAPI would, recording list and get calls."""

    def __init__(self, resources):
        self.resources = resources
        self.list_calls = []
        self.get_calls = []

    def list_resources(self, kind, query=None, parent_id=None):
        self.list_calls.append((kind.name, query))
        items = list(self.resources.get(kind.name, []))
        query = query or {}
        if kind.inactive == 'state' and query.get('state') != 'all':
            items = [i for i in items if i.get('state') == 'active']
        if kind.name_filter and kind.name_field in query:
            items = [i for i in items if i.get(kind.name_field) == query[kind.name_field]]
        return items

    def get_resource(self, kind, id, parent_id=None):
        self.get_calls.append((kind.name, id))
        for item in self.resources.get(kind.name, []):
            if item.get(kind.id_field) == id:
                return item
        raise NotFound(f"no {kind.name} {id}", status=404)


@pytest.fixture
def cloudapi():
    return FakeCloudApi({
        'instances': [WEB0, WEB1],
        'packages': [SMALL_A, SMALL_B, BIG],
        'images': [BASE_OLD, BASE_NEW, OLD_IMAGE],
        'nics': [NIC],
    })


@pytest.fixture
def resolver(cloudapi):
    return Resolver(cloudapi)


class TestIds:
    def test_full_uuid_is_fetched_without_listing(self, resolver, cloudapi):
        assert resolver.resolve('instances', WEB0['id'].upper()) == WEB0
        assert cloudapi.list_calls == []
        assert cloudapi.get_calls == [('instances', WEB0['id'])]

    def test_short_id(self, resolver):
        assert resolver.resolve('packages', 'cccc', include_inactive=True) == BIG
        assert resolver.resolve_id('instances', '5e8d5d3e') == WEB0['id']

    def test_ambiguous_short_id(self, resolver):
        with pytest.raises(AmbiguousShortId) as info:
            resolver.resolve('instances', '5e8d')
        assert len(info.value.matches) == 2

    def test_unknown_uuid_is_not_found(self, resolver):
        with pytest.raises(NotFound):
            resolver.resolve('packages', 'dddd0000-0000-4000-8000-000000000004')

    @pytest.mark.parametrize('kind,resource', [('images', OLD_IMAGE), ('packages', BIG)])
    def test_inactive_uuid_is_rejected(self, resolver, cloudapi, kind, resource):
        with pytest.raises(NotFound, match='is not active'):
            resolver.resolve(kind, resource['id'])
        assert cloudapi.list_calls == []
        assert resolver.resolve(kind, resource['id'], include_inactive=True) == resource


class TestNames:
    def test_server_name_filter(self, resolver, cloudapi):
        assert resolver.resolve('instances', 'web1') == WEB1
        assert cloudapi.list_calls == [('instances', {'name': 'web1'})]

    def test_missing_name_that_cannot_be_an_id_skips_the_full_listing(self, resolver, cloudapi):
        with pytest.raises(NotFound):
            resolver.resolve('instances', 'db0')
        assert len(cloudapi.list_calls) == 1

    def test_ambiguous_name(self, resolver):
        with pytest.raises(AmbiguousName) as info:
            resolver.resolve('packages', 'small')
        assert {m['id'] for m in info.value.matches} == {SMALL_A['id'], SMALL_B['id']}

    def test_inactive_package_needs_include_inactive(self, resolver):
        with pytest.raises(NotFound):
            resolver.resolve('packages', 'big')
        assert resolver.resolve('packages', 'big', include_inactive=True) == BIG

    def test_latest_image_wins(self, resolver):
        assert resolver.resolve('images', 'base') == BASE_NEW

    def test_image_name_at_version(self, resolver):
        assert resolver.resolve('images', 'base@1.0') == BASE_OLD

    def test_inactive_image(self, resolver, cloudapi):
        with pytest.raises(NotFound):
            resolver.resolve('images', 'legacy')
        assert resolver.resolve('images', 'legacy', include_inactive=True) == OLD_IMAGE
        assert cloudapi.list_calls[-1] == ('images', {'state': 'all'})

    def test_mac_with_or_without_colons(self, resolver):
        assert resolver.resolve('nics', '90b8d0a1b2c3', parent_id=WEB0['id']) == NIC
        assert resolver.resolve('nics', '90:B8:D0:A1:B2:C3', parent_id=WEB0['id']) == NIC


class TestCache:
    def test_cached_listing_is_used(self, tmp_path, profile, cloudapi):
        cache = ListCache(tmp_path, profile)
        cache.put('images', [BASE_OLD])
        resolver = Resolver(cloudapi, cache=cache)
        assert resolver.resolve('images', 'base') == BASE_OLD
        assert cloudapi.list_calls == []

    def test_miss_in_cache_lists_again(self, tmp_path, profile, cloudapi):
        cache = ListCache(tmp_path, profile)
        cache.put('images', [BASE_OLD])
        resolver = Resolver(cloudapi, cache=cache)
        assert resolver.resolve('images', '2222') == BASE_NEW
        assert cloudapi.list_calls == [('images', None)]
        assert len(cache.get('images')) == 2

    def test_inactive_listing_is_not_cached(self, tmp_path, profile, cloudapi):
        cache = ListCache(tmp_path, profile)
        resolver = Resolver(cloudapi, cache=cache)
        resolver.list_all('images', include_inactive=True)
        assert cache.get('images') is None
