"""Tests for table presenters and sorting."""

from datetime import datetime, timezone

from tritoncloud.views import View, account_summary, cell, present, sort_views

NOW = datetime(2024, 1, 4, tzinfo=timezone.utc)
IMAGE = {'id': 'ffff0000-0000-4000-8000-000000000001', 'name': 'base', 'version': '2.0', 'state': 'active',
         'public': True, 'published_at': '2023-12-01T10:00:00Z'}
INSTANCE = {'id': '5e8d5d3e-9a4b-4d8a-b3a5-0f2c7d8e9f10', 'name': 'web0', 'image': IMAGE['id'], 'brand': 'kvm',
            'firewall_enabled': True, 'created': '2024-01-01T00:00:00Z'}


class TestPresent:
    def test_instance(self):
        view = present('instances', INSTANCE, images={IMAGE['id']: IMAGE}, now=NOW)
        assert view.get('shortid') == '5e8d5d3e'
        assert view.get('img') == 'base@2.0'
        assert view.get('flags') == 'FK'
        assert view.get('age') == '3d'
        assert view.get('name') == 'web0'

    def test_instance_with_unknown_image(self):
        view = present('instances', dict(INSTANCE, firewall_enabled=False, brand='joyent'), now=NOW)
        assert view.get('img') == 'ffff0000'
        assert view.get('flags') is None

    def test_image(self):
        view = present('images', dict(IMAGE, state='disabled', origin='abc'), now=NOW)
        assert view.get('flags') == 'IPX'
        assert view.get('pubdate') == '2023-12-01'

    def test_package_sizes(self):
        pkg = {'id': 'aaaa0000-0000-4000-8000-000000000001', 'name': 'small', 'memory': 2048, 'swap': 512, 'disk': 1536 * 1024}
        view = present('packages', pkg, now=NOW)
        assert [view.get(c) for c in ('memory', 'swap', 'disk')] == ['2G', '512M', '1.5T']
        raw = present('packages', pkg, now=NOW, human=False)
        assert raw.get('memory') == 2048

    def test_policy_rule_count(self):
        view = present('policies', {'id': 'p', 'name': 'read', 'rules': ['CAN getmachine', 'CAN listmachines']})
        assert view.get('nrules') == 2

    def test_stateless_kind_without_short_ids(self):
        view = present('fabric-vlans', {'vlan_id': 2, 'name': 'default'})
        assert 'shortid' not in view.fields
        assert view.row(['vlan_id', 'name', 'description']) == [2, 'default', '-']


class TestCells:
    def test_cell(self):
        assert cell(None) == '-'
        assert cell(True) == 'true'
        assert cell(['a', None]) == 'a,-'
        assert cell({'role': 'web'}) == 'role=web'
        assert cell(3) == 3


class TestSort:
    def views(self):
        return [View(raw={'name': n, 'memory': m}) for n, m in (('b', 2048), ('a', 512), ('c', None), ('d', 2048))]

    def test_numeric_and_missing_last(self):
        assert [v.get('name') for v in sort_views(self.views(), ['memory'])] == ['a', 'b', 'd', 'c']

    def test_descending_then_name(self):
        ordered = sort_views(self.views(), ['-memory', 'name'])
        assert [v.get('name') for v in ordered if v.get('memory')] == ['b', 'd', 'a']


class TestAccountSummary:
    def test_lines(self):
        info = {
            'account': {'login': 'alice', 'firstName': 'Alice', 'lastName': 'Jones', 'email': 'alice@example.com'},
            'machines': [
                {'state': 'running', 'memory': 1024, 'disk': 25600},
                {'state': 'stopped', 'memory': 512, 'disk': 10240},
                {'state': 'running', 'memory': 512, 'disk': 25600},
            ],
        }
        assert account_summary(info, 'https://cloudapi.example.com') == [
            'alice - Alice Jones <alice@example.com>',
            'https://cloudapi.example.com',
            '',
            '3 instance(s)',
            '- 2 running',
            '- 1 stopped',
            '- 2G RAM Total',
            '- 60G Disk Total',
        ]

    def test_no_instances(self):
        info = {'account': {'login': 'alice', 'email': 'alice@example.com'}, 'machines': []}
        assert account_summary(info, 'https://cloudapi.example.com')[3:] == ['0 instance(s)', '- 0M RAM Total', '- 0M Disk Total']
