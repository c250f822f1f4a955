"""Use CloudAPI resources by id, short id, or name.

TritonApi is the context every operation runs in: it holds the resolved
profile, the logger, the transport, the cache, the resolver, the waiter, and
the cancellation signal. Its attributes named after resource kinds are small
facades with a consistent surface of list, get, create, update, delete, and
the actions of that kind.
"""

import logging
from dataclasses import dataclass

from .cache import ListCache
from .cloudapi import CloudApi
from .config import Config
from .exceptions import AmbiguousName, NotFound, UsageError
from .logger_base import get_logger
from .metadata import parse_volume_size
from .multidc import MultiDcLister
from .resolver import Resolver
from .signer import signer_from_profile
from .transport import Transport
from .utility import (DEFAULT_CONCURRENCY, DEFAULT_POLL_INTERVAL, DEFAULT_TIMEOUT, DEFAULT_WAIT_TIMEOUT, KINDS, Cancellation, Clock,
                      get_kind, is_uuid)
from .waiter import Waiter


@dataclass
class WaitOptions:
    """Whether and how long a mutating call waits for its outcome."""

    wait: bool = False
    timeout: float = DEFAULT_WAIT_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL

    def kwargs(self):
        return dict(timeout=self.timeout, poll_interval=self.poll_interval)


NO_WAIT = WaitOptions()


class Resources:
    """Operations shared by every kind."""

    kind_name = None

    def __init__(self, api):
        self.api = api
        self.kind = KINDS[self.kind_name]
        self.cloudapi = api.cloudapi
        self.resolver = api.resolver
        self.waiter = api.waiter
        self.logger = api.logger

    def list(self, filters: dict = None, include_inactive: bool = False):
        """List the kind, refreshing the cache of cacheable kinds."""
        if not filters and self.kind.cache_ttl:
            return self.resolver.list_all(self.kind, include_inactive=include_inactive, use_cache=False)
        filters = dict(filters or dict())
        if include_inactive and self.kind.inactive == 'state':
            filters.setdefault('state', 'all')
        return self.cloudapi.list_resources(self.kind, query=filters)

    def stream(self, filters: dict = None):
        """Generate the kind one resource at a time, across pages where the server pages."""
        return self.cloudapi.stream_resources(self.kind, query=filters)

    def list_all_dcs(self, filters: dict = None, dc_error=None):
        """List the kind in every datacenter of the profile.

        :returns: (items tagged with dc, MultiError or None)
        """
        if not self.kind.sharded:
            raise UsageError(f"{self.kind.name} can not be listed across datacenters")
        if not self.api.profile.dcs:
            return self.list(filters), None
        return self.api.multi_dc().list(self.kind, query=filters, dc_error=dc_error)

    def get(self, id_or_name: str, include_inactive: bool = False):
        """Resolve an id, short id, or name to the resource."""
        return self.resolver.resolve(self.kind, id_or_name, include_inactive=include_inactive)

    def resolve_id(self, id_or_name: str, **kwargs):
        """Resolve to an id, a full id is used as given without a request."""
        if self.kind.short_ids and is_uuid(id_or_name):
            return id_or_name.lower()
        return self.resolver.resolve_id(self.kind, id_or_name, **kwargs)

    def invalidate(self):
        """Drop the cached list of this kind after a mutation."""
        if self.kind.cache_ttl:
            self.api.cache.invalidate(self.kind.name)

    def role_tags(self, id_or_name: str):
        return self.cloudapi.get_role_tags(self.cloudapi.kind_path(self.kind, id=self.resolve_id(id_or_name)))

    def set_role_tags(self, id_or_name: str, tags: list):
        return self.cloudapi.set_role_tags(self.cloudapi.kind_path(self.kind, id=self.resolve_id(id_or_name)), tags)


class Instances(Resources):
    """Instances and their actions, tags, metadata, snapshots, NICs, disks, and migrations."""

    kind_name = 'instances'

    def create(self, body: dict, wait: WaitOptions = NO_WAIT):
        """Create from a prepared request body; see create_instance for the full pipeline."""
        inst = self.cloudapi.create_machine(body)
        self.logger.debug(f"created instance {inst.get('name')} ({inst.get('id')})")
        if wait.wait:
            return self.waiter.wait_for_machine_states(inst['id'], ('running', 'failed'), **wait.kwargs())
        return inst

    def delete(self, id_or_name: str, wait: WaitOptions = NO_WAIT, force: bool = False):
        """Delete an instance.

        :param force: tolerate an instance that is already gone
        """
        try:
            id = self.resolve_id(id_or_name)
            self.cloudapi.delete_machine(id)
        except NotFound:
            if force:
                self.logger.debug(f"instance {id_or_name} is already gone")
                return None
            raise
        if wait.wait:
            return self.waiter.wait_for_machine_states(id, ('deleted',), **wait.kwargs())
        return {'id': id, 'state': 'deleting'}

    def wait(self, id_or_name: str, states=('running', 'failed'), **kwargs):
        return self.waiter.wait_for_machine_states(self.resolve_id(id_or_name), states, **kwargs)

    def _action(self, id_or_name: str, action: str, wait: WaitOptions, states=None, field=None, value=None, **params):
        id = self.resolve_id(id_or_name)
        self.cloudapi.machine_action(id, action, **params)
        if not wait.wait:
            return {'id': id}
        if states:
            return self.waiter.wait_for_machine_states(id, states, **wait.kwargs())
        return self.waiter.wait_for_field('instances', id, field, value, **wait.kwargs())

    def start(self, id_or_name: str, wait: WaitOptions = NO_WAIT):
        return self._action(id_or_name, 'start', wait, states=('running',))

    def stop(self, id_or_name: str, wait: WaitOptions = NO_WAIT):
        return self._action(id_or_name, 'stop', wait, states=('stopped',))

    def reboot(self, id_or_name: str, wait: WaitOptions = NO_WAIT):
        """Reboot; waiting means a new reboot entry in the audit log and then running."""
        id = self.resolve_id(id_or_name)
        before = None
        if wait.wait:
            entries = [a['time'] for a in self.cloudapi.machine_audit(id) or list() if a.get('action') == 'reboot' and a.get('time')]
            before = max(entries) if entries else None
        self.cloudapi.machine_action(id, 'reboot')
        if not wait.wait:
            return {'id': id}
        self.waiter.wait_for_audit(id, 'reboot', after=before, **wait.kwargs())
        return self.waiter.wait_for_machine_states(id, ('running',), **wait.kwargs())

    def resize(self, id_or_name: str, package: str, wait: WaitOptions = NO_WAIT):
        pkg = self.api.packages.get(package)
        return self._action(id_or_name, 'resize', wait, field='package', value=pkg['name'], package=pkg['id'])

    def rename(self, id_or_name: str, name: str, wait: WaitOptions = NO_WAIT):
        return self._action(id_or_name, 'rename', wait, field='name', value=name, name=name)

    def enable_firewall(self, id_or_name: str, wait: WaitOptions = NO_WAIT):
        return self._action(id_or_name, 'enable_firewall', wait, field='firewall_enabled', value=True)

    def disable_firewall(self, id_or_name: str, wait: WaitOptions = NO_WAIT):
        return self._action(id_or_name, 'disable_firewall', wait, field='firewall_enabled', value=False)

    def enable_deletion_protection(self, id_or_name: str, wait: WaitOptions = NO_WAIT):
        return self._action(id_or_name, 'enable_deletion_protection', wait, field='deletion_protection', value=True)

    def disable_deletion_protection(self, id_or_name: str, wait: WaitOptions = NO_WAIT):
        return self._action(id_or_name, 'disable_deletion_protection', wait, field='deletion_protection', value=False)

    def audit(self, id_or_name: str):
        return self.cloudapi.machine_audit(self.resolve_id(id_or_name))

    def firewall_rules(self, id_or_name: str):
        return self.cloudapi.list_machine_firewall_rules(self.resolve_id(id_or_name))

    # tags

    def tags(self, id_or_name: str):
        return self.cloudapi.list_machine_tags(self.resolve_id(id_or_name))

    def get_tag(self, id_or_name: str, tag: str):
        return self.cloudapi.get_machine_tag(self.resolve_id(id_or_name), tag)

    def _wait_tags(self, id: str, done, wait: WaitOptions):
        return self.waiter.poll(fetch=lambda: self.cloudapi.list_machine_tags(id), done=done,
                                what=f"tags of instance {id}", field='tags', **wait.kwargs())

    def set_tags(self, id_or_name: str, tags: dict, wait: WaitOptions = NO_WAIT):
        """Add or update tags, leaving other tags alone."""
        id = self.resolve_id(id_or_name)
        result = self.cloudapi.add_machine_tags(id, tags)
        if wait.wait:
            return self._wait_tags(id, lambda t: all(t.get(k) == v for k, v in tags.items()), wait)
        return result

    def replace_tags(self, id_or_name: str, tags: dict, wait: WaitOptions = NO_WAIT):
        id = self.resolve_id(id_or_name)
        result = self.cloudapi.replace_machine_tags(id, tags)
        if wait.wait:
            return self._wait_tags(id, lambda t: t == tags, wait)
        return result

    def delete_tag(self, id_or_name: str, tag: str, wait: WaitOptions = NO_WAIT):
        id = self.resolve_id(id_or_name)
        self.cloudapi.delete_machine_tag(id, tag)
        if wait.wait:
            return self._wait_tags(id, lambda t: tag not in t, wait)
        return None

    def delete_tags(self, id_or_name: str, wait: WaitOptions = NO_WAIT):
        id = self.resolve_id(id_or_name)
        self.cloudapi.delete_machine_tags(id)
        if wait.wait:
            return self._wait_tags(id, lambda t: not t, wait)
        return None

    # metadata

    def metadata(self, id_or_name: str):
        return self.cloudapi.list_machine_metadata(self.resolve_id(id_or_name))

    def get_metadata(self, id_or_name: str, key: str):
        return self.cloudapi.get_machine_metadata(self.resolve_id(id_or_name), key)

    def update_metadata(self, id_or_name: str, metadata: dict):
        return self.cloudapi.update_machine_metadata(self.resolve_id(id_or_name), metadata)

    def delete_metadata(self, id_or_name: str, key: str = None):
        """Delete one metadata key, or all of them when key is None."""
        id = self.resolve_id(id_or_name)
        if key is None:
            return self.cloudapi.delete_all_machine_metadata(id)
        return self.cloudapi.delete_machine_metadata(id, key)

    # snapshots

    def snapshots(self, id_or_name: str):
        return self.cloudapi.list_machine_snapshots(self.resolve_id(id_or_name))

    def get_snapshot(self, id_or_name: str, name: str):
        return self.cloudapi.get_machine_snapshot(self.resolve_id(id_or_name), name)

    def create_snapshot(self, id_or_name: str, name: str = None, wait: WaitOptions = NO_WAIT):
        id = self.resolve_id(id_or_name)
        snapshot = self.cloudapi.create_machine_snapshot(id, name)
        if wait.wait:
            return self.waiter.wait_for_snapshot_states(id, snapshot['name'], ('created', 'failed'), **wait.kwargs())
        return snapshot

    def delete_snapshot(self, id_or_name: str, name: str, wait: WaitOptions = NO_WAIT):
        id = self.resolve_id(id_or_name)
        self.cloudapi.delete_machine_snapshot(id, name)
        if wait.wait:
            return self.waiter.wait_for_snapshot_states(id, name, ('deleted',), **wait.kwargs())
        return None

    def start_from_snapshot(self, id_or_name: str, name: str, wait: WaitOptions = NO_WAIT):
        id = self.resolve_id(id_or_name)
        self.cloudapi.start_machine_from_snapshot(id, name)
        if wait.wait:
            return self.waiter.wait_for_machine_states(id, ('running', 'failed'), **wait.kwargs())
        return {'id': id}

    # NICs

    def nics(self, id_or_name: str):
        return self.cloudapi.list_nics(self.resolve_id(id_or_name))

    def get_nic(self, id_or_name: str, mac: str):
        return self.cloudapi.get_nic(self.resolve_id(id_or_name), mac)

    def add_nic(self, id_or_name: str, network, primary: bool = None, wait: WaitOptions = NO_WAIT):
        """Attach a NIC on a network given by id, short id, or name, or as an object with ipv4_uuid and ipv4_ips."""
        id = self.resolve_id(id_or_name)
        if isinstance(network, str):
            network = self.api.networks.resolve_id(network)
        elif isinstance(network, dict) and network.get('ipv4_uuid'):
            network = dict(network, ipv4_uuid=self.api.networks.resolve_id(network['ipv4_uuid']))
        nic = self.cloudapi.add_nic(id, network, primary=primary)
        if wait.wait:
            return self.waiter.wait_for_nic_states(id, nic['mac'], ('running', 'failed'), **wait.kwargs())
        return nic

    def remove_nic(self, id_or_name: str, mac: str, wait: WaitOptions = NO_WAIT):
        id = self.resolve_id(id_or_name)
        self.cloudapi.remove_nic(id, mac)
        if wait.wait:
            return self.waiter.wait_for_nic_states(id, mac, ('deleted',), **wait.kwargs())
        return None

    # disks

    def disks(self, id_or_name: str):
        return self.cloudapi.list_machine_disks(self.resolve_id(id_or_name))

    def get_disk(self, id_or_name: str, disk: str):
        id = self.resolve_id(id_or_name)
        return self.resolver.resolve('disks', disk, parent_id=id)

    def add_disk(self, id_or_name: str, size, wait: WaitOptions = NO_WAIT):
        """Add a disk of size MiB, or "remaining"."""
        id = self.resolve_id(id_or_name)
        known = [d['id'] for d in self.cloudapi.list_machine_disks(id)] if wait.wait else list()
        disk = self.cloudapi.create_machine_disk(id, size)
        if wait.wait:
            return self.waiter.wait_for_disk_create(id, known, size=size, **wait.kwargs())
        return disk

    def resize_disk(self, id_or_name: str, disk: str, size: int, dangerous_allow_shrink: bool = False, wait: WaitOptions = NO_WAIT):
        id = self.resolve_id(id_or_name)
        disk_id = self.resolver.resolve_id('disks', disk, parent_id=id)
        result = self.cloudapi.resize_machine_disk(id, disk_id, size, dangerous_allow_shrink=dangerous_allow_shrink)
        if wait.wait:
            return self.waiter.wait_for_disk_resize(id, disk_id, size, **wait.kwargs())
        return result

    def delete_disk(self, id_or_name: str, disk: str, wait: WaitOptions = NO_WAIT):
        id = self.resolve_id(id_or_name)
        disk_id = self.resolver.resolve_id('disks', disk, parent_id=id)
        self.cloudapi.delete_machine_disk(id, disk_id)
        if wait.wait:
            return self.waiter.wait_for_disk_delete(id, disk_id, **wait.kwargs())
        return None

    # migrations

    def migrations(self):
        return self.cloudapi.list_migrations()

    def get_migration(self, id_or_name: str):
        return self.cloudapi.get_migration(self.resolve_id(id_or_name))

    def migrate(self, id_or_name: str, action: str, affinity: list = None, wait: WaitOptions = NO_WAIT):
        """Run a migration action; waiting polls until the phase the action starts completes."""
        id = self.resolve_id(id_or_name)
        migration = self.cloudapi.machine_migration(id, action, affinity=affinity)
        if wait.wait and action not in ('pause', 'finalize'):
            phase = {'automatic': None, 'abort': 'abort'}.get(action, action)
            return self.waiter.wait_for_migration(id, phase=phase, **wait.kwargs())
        return migration


class Images(Resources):
    """Images, including inactive ones on request."""

    kind_name = 'images'

    def get(self, id_or_name: str, include_inactive: bool = False, use_cache: bool = True):
        """Resolve id, short id, name, or name@version; a name shared by several images means the latest."""
        return self.resolver.resolve(self.kind, id_or_name, include_inactive=include_inactive, use_cache=use_cache)

    def create_from_instance(self, instance: str, name: str, version: str, wait: WaitOptions = NO_WAIT, **fields):
        machine = self.api.instances.resolve_id(instance)
        image = self.cloudapi.create_image_from_machine(machine, name, version, **fields)
        self.invalidate()
        if wait.wait:
            return self.waiter.wait_for_image_states(image['id'], ('active', 'failed'), **wait.kwargs())
        return image

    def update(self, id_or_name: str, **fields):
        image = self.cloudapi.update_image(self.resolve_id(id_or_name, include_inactive=True), **fields)
        self.invalidate()
        return image

    def delete(self, id_or_name: str, wait: WaitOptions = NO_WAIT, force: bool = False):
        try:
            id = self.resolve_id(id_or_name, include_inactive=True)
            self.cloudapi.delete_image(id)
        except NotFound:
            if force:
                return None
            raise
        finally:
            self.invalidate()
        if wait.wait:
            return self.waiter.wait_for_state(self.kind, id, ('deleted',), gone_statuses=(404, 410), **wait.kwargs())
        return None

    def share(self, id_or_name: str, account: str):
        """Add an account uuid to the image ACL."""
        image = self.get(id_or_name, include_inactive=True, use_cache=False)
        acl = list(image.get('acl') or list())
        if account in acl:
            return image
        return self.update(image['id'], acl=acl + [account])

    def unshare(self, id_or_name: str, account: str):
        image = self.get(id_or_name, include_inactive=True, use_cache=False)
        acl = list(image.get('acl') or list())
        if account not in acl:
            return image
        return self.update(image['id'], acl=[a for a in acl if a != account])

    def tag(self, id_or_name: str, tags: dict = None, remove: list = None):
        """Set and remove image tags, keeping the rest."""
        image = self.get(id_or_name, include_inactive=True, use_cache=False)
        merged = dict(image.get('tags') or dict())
        merged.update(tags or dict())
        for key in remove or list():
            merged.pop(key, None)
        return self.update(image['id'], tags=merged)

    def export(self, id_or_name: str, manta_path: str):
        return self.cloudapi.export_image(self.resolve_id(id_or_name, include_inactive=True), manta_path)

    def clone(self, id_or_name: str):
        image = self.cloudapi.clone_image(self.resolve_id(id_or_name))
        self.invalidate()
        return image

    def copy_from_datacenter(self, datacenter: str, id: str, wait: WaitOptions = NO_WAIT):
        image = self.cloudapi.import_image_from_datacenter(datacenter, id)
        self.invalidate()
        if wait.wait:
            return self.waiter.wait_for_image_states(image['id'], ('active', 'failed'), **wait.kwargs())
        return image

    def wait(self, id_or_name: str, states=('active', 'failed'), **kwargs):
        return self.waiter.wait_for_image_states(self.resolve_id(id_or_name, include_inactive=True), states, **kwargs)


class Packages(Resources):
    kind_name = 'packages'


class Networks(Resources):
    """Networks, their IPs, and the account's default network."""

    kind_name = 'networks'

    def ips(self, id_or_name: str):
        return self.cloudapi.list_network_ips(self.resolve_id(id_or_name))

    def get_ip(self, id_or_name: str, ip: str):
        return self.cloudapi.get_network_ip(self.resolve_id(id_or_name), ip)

    def reserve_ip(self, id_or_name: str, ip: str, reserved: bool = True):
        return self.cloudapi.update_network_ip(self.resolve_id(id_or_name), ip, reserved=reserved)

    def get_default(self):
        return self.get(self.cloudapi.get_config()['default_network'])

    def set_default(self, id_or_name: str):
        return self.cloudapi.update_config(default_network=self.resolve_id(id_or_name))


class FabricVlans(Resources):
    kind_name = 'fabric-vlans'

    def resolve_id(self, id_or_name, **kwargs):
        """VLANs are named by their numeric vlan_id or their name."""
        if isinstance(id_or_name, int) or str(id_or_name).isdigit():
            return int(id_or_name)
        vlans = [v for v in self.cloudapi.list_fabric_vlans() if v.get('name') == id_or_name]
        if len(vlans) == 1:
            return vlans[0]['vlan_id']
        elif vlans:
            raise AmbiguousName(self.kind.name, id_or_name, vlans)
        raise NotFound(f"no fabric VLAN with id or name \"{id_or_name}\" was found")

    def get(self, id_or_name, include_inactive: bool = False):
        return self.cloudapi.get_fabric_vlan(self.resolve_id(id_or_name))

    def create(self, vlan_id: int, name: str, description: str = None):
        return self.cloudapi.create_fabric_vlan(vlan_id, name, description=description)

    def update(self, id_or_name, **fields):
        return self.cloudapi.update_fabric_vlan(self.resolve_id(id_or_name), **fields)

    def delete(self, id_or_name, force: bool = False):
        try:
            return self.cloudapi.delete_fabric_vlan(self.resolve_id(id_or_name))
        except NotFound:
            if not force:
                raise

    def networks(self, id_or_name):
        return self.cloudapi.list_fabric_networks(self.resolve_id(id_or_name))

    def create_network(self, id_or_name, **fields):
        return self.cloudapi.create_fabric_network(self.resolve_id(id_or_name), **fields)

    def delete_network(self, network: str):
        """Delete a fabric network by id, short id, or name."""
        net = self.api.networks.get(network)
        if not net.get('fabric'):
            raise UsageError(f"network {net.get('name')} is not a fabric network")
        return self.cloudapi.delete_fabric_network(net['vlan_id'], net['id'])


class Vpcs(Resources):
    kind_name = 'vpcs'

    def create(self, name: str, ip4_cidr: str, description: str = None):
        return self.cloudapi.create_vpc(name, ip4_cidr, description=description)

    def update(self, id_or_name: str, **fields):
        return self.cloudapi.update_vpc(self.resolve_id(id_or_name), **fields)

    def delete(self, id_or_name: str, force: bool = False):
        try:
            return self.cloudapi.delete_vpc(self.resolve_id(id_or_name))
        except NotFound:
            if not force:
                raise

    def networks(self, id_or_name: str):
        return self.cloudapi.list_vpc_networks(self.resolve_id(id_or_name))


class FirewallRules(Resources):
    kind_name = 'fwrules'

    def create(self, rule: str, enabled: bool = None, log: bool = None, description: str = None):
        return self.cloudapi.create_firewall_rule(rule, enabled=enabled, log=log, description=description)

    def update(self, id_or_name: str, wait: WaitOptions = NO_WAIT, **fields):
        id = self.resolve_id(id_or_name)
        rule = self.cloudapi.update_firewall_rule(id, **fields)
        if wait.wait:
            return self.waiter.poll(fetch=lambda: self.cloudapi.get_firewall_rule(id),
                                    done=lambda r: all(r.get(k) == v for k, v in fields.items() if k != 'rule'),
                                    what=f"firewall rule {id} update", field='rule', **wait.kwargs())
        return rule

    def enable(self, id_or_name: str, wait: WaitOptions = NO_WAIT):
        id = self.resolve_id(id_or_name)
        rule = self.cloudapi.enable_firewall_rule(id)
        if wait.wait:
            return self.waiter.wait_for_firewall_rule_enabled(id, True, **wait.kwargs())
        return rule

    def disable(self, id_or_name: str, wait: WaitOptions = NO_WAIT):
        id = self.resolve_id(id_or_name)
        rule = self.cloudapi.disable_firewall_rule(id)
        if wait.wait:
            return self.waiter.wait_for_firewall_rule_enabled(id, False, **wait.kwargs())
        return rule

    def delete(self, id_or_name: str, force: bool = False):
        try:
            return self.cloudapi.delete_firewall_rule(self.resolve_id(id_or_name))
        except NotFound:
            if not force:
                raise

    def instances(self, id_or_name: str):
        return self.cloudapi.list_firewall_rule_machines(self.resolve_id(id_or_name))


class Keys(Resources):
    """SSH keys of the account, or of an RBAC user when user is given."""

    kind_name = 'keys'

    def list(self, filters: dict = None, include_inactive: bool = False, user: str = None):
        return self.cloudapi.list_keys(user=self._user(user))

    def get(self, name_or_fingerprint: str, include_inactive: bool = False, user: str = None):
        return self.cloudapi.get_key(name_or_fingerprint, user=self._user(user))

    def create(self, key: str, name: str = None, user: str = None):
        return self.cloudapi.create_key(key.strip(), name=name, user=self._user(user))

    def delete(self, name_or_fingerprint: str, user: str = None, force: bool = False):
        try:
            return self.cloudapi.delete_key(name_or_fingerprint, user=self._user(user))
        except NotFound:
            if not force:
                raise

    def _user(self, user: str = None):
        return self.api.users.resolve_id(user) if user else None


class Users(Resources):
    kind_name = 'users'

    def create(self, login: str, email: str, password: str, **fields):
        return self.cloudapi.create_user(login, email, password, **fields)

    def update(self, id_or_name: str, **fields):
        return self.cloudapi.update_user(self.resolve_id(id_or_name), **fields)

    def delete(self, id_or_name: str, force: bool = False):
        try:
            return self.cloudapi.delete_user(self.resolve_id(id_or_name))
        except NotFound:
            if not force:
                raise


class Roles(Resources):
    kind_name = 'roles'

    def create(self, name: str, **fields):
        return self.cloudapi.create_role(name, **fields)

    def update(self, id_or_name: str, **fields):
        return self.cloudapi.update_role(self.resolve_id(id_or_name), **fields)

    def delete(self, id_or_name: str, force: bool = False):
        try:
            return self.cloudapi.delete_role(self.resolve_id(id_or_name))
        except NotFound:
            if not force:
                raise


class Policies(Resources):
    kind_name = 'policies'

    def create(self, name: str, rules: list, description: str = None):
        return self.cloudapi.create_policy(name, rules, description=description)

    def update(self, id_or_name: str, **fields):
        return self.cloudapi.update_policy(self.resolve_id(id_or_name), **fields)

    def delete(self, id_or_name: str, force: bool = False):
        try:
            return self.cloudapi.delete_policy(self.resolve_id(id_or_name))
        except NotFound:
            if not force:
                raise


class AccessKeys(Resources):
    """Access keys of the account, or of an RBAC user when user is given."""

    kind_name = 'access-keys'

    def list(self, filters: dict = None, include_inactive: bool = False, user: str = None):
        return self.cloudapi.list_access_keys(user=self._user(user))

    def get(self, id: str, include_inactive: bool = False, user: str = None):
        return self.cloudapi.get_access_key(id, user=self._user(user))

    def create(self, description: str = None, user: str = None):
        return self.cloudapi.create_access_key(description=description, user=self._user(user))

    def update(self, id: str, user: str = None, **fields):
        return self.cloudapi.update_access_key(id, user=self._user(user), **fields)

    def delete(self, id: str, user: str = None, force: bool = False):
        try:
            return self.cloudapi.delete_access_key(id, user=self._user(user))
        except NotFound:
            if not force:
                raise

    def _user(self, user: str = None):
        return self.api.users.resolve_id(user) if user else None


class Volumes(Resources):
    kind_name = 'volumes'

    def create(self, name: str = None, size=None, type: str = None, networks: list = None, affinity: list = None,
               tags: dict = None, wait: WaitOptions = NO_WAIT):
        """Create a volume.

        :param size: MiB as a number, or a string like 20G
        :param networks: ids, short ids, or names
        :param affinity: rule strings, e.g. instance==db0
        """
        fields = dict(name=name, type=type, affinity=affinity or None, tags=tags or None)
        if size is not None:
            fields['size'] = size if isinstance(size, int) else parse_volume_size(size)
        if networks:
            fields['networks'] = [self.api.networks.resolve_id(n) for n in networks]
        volume = self.cloudapi.create_volume(**fields)
        if wait.wait:
            return self.waiter.wait_for_volume_states(volume['id'], ('ready', 'failed'), **wait.kwargs())
        return volume

    def update(self, id_or_name: str, **fields):
        return self.cloudapi.update_volume(self.resolve_id(id_or_name), **fields)

    def delete(self, id_or_name: str, wait: WaitOptions = NO_WAIT, force: bool = False):
        try:
            id = self.resolve_id(id_or_name)
            self.cloudapi.delete_volume(id)
        except NotFound:
            if force:
                return None
            raise
        if wait.wait:
            return self.waiter.wait_for_volume_states(id, ('deleted',), **wait.kwargs())
        return None

    def sizes(self, type: str = None):
        return self.cloudapi.list_volume_sizes(type=type)

    def wait(self, id_or_name: str, states=('ready', 'failed'), **kwargs):
        return self.waiter.wait_for_volume_states(self.resolve_id(id_or_name), states, **kwargs)


class Services(Resources):
    kind_name = 'services'


class Datacenters(Resources):
    kind_name = 'datacenters'


class Account:
    """The account itself, its limits, and its config."""

    def __init__(self, api):
        self.cloudapi = api.cloudapi

    def get(self):
        return self.cloudapi.get_account()

    def update(self, **fields):
        return self.cloudapi.update_account(**fields)

    def limits(self):
        return self.cloudapi.get_account_limits()

    def config(self):
        return self.cloudapi.get_config()

    def info(self):
        """The account and every instance of it, for a summary."""
        return {
            'account': self.cloudapi.get_account(),
            'machines': list(self.cloudapi.stream_machines()),
        }


FACADES = {
    'instances': Instances,
    'images': Images,
    'packages': Packages,
    'networks': Networks,
    'fabric-vlans': FabricVlans,
    'vpcs': Vpcs,
    'fwrules': FirewallRules,
    'keys': Keys,
    'users': Users,
    'roles': Roles,
    'policies': Policies,
    'access-keys': AccessKeys,
    'volumes': Volumes,
    'services': Services,
    'datacenters': Datacenters,
}


class TritonApi:
    """Resolved profile plus everything needed to call CloudAPI with it.

    :param config: the Config returned by ConfigStore.load
    :param signer: optional Signer, else one is chosen from the profile
    :param passphrase: passphrase of an encrypted private key
    :param session: optional requests Session, e.g. a mock in tests
    :param cancel: optional Cancellation shared by every request and wait
    :param clock: optional Clock for waits
    :param use_cache: False bypasses the list cache
    :param timeout: per-request timeout in seconds
    :param concurrency: most datacenters listed at once
    """

    def __init__(self,
                 config: Config,
                 signer: object = None,
                 passphrase: str = None,
                 session: object = None,
                 cancel: Cancellation = None,
                 clock: Clock = None,
                 use_cache: bool = True,
                 timeout: float = DEFAULT_TIMEOUT,
                 concurrency: int = DEFAULT_CONCURRENCY,
                 logger: logging.Logger = None):
        self.config = config
        self.profile = config.profile
        self.logger = get_logger(__name__, logger or config.logger)
        self.cancel = cancel or Cancellation()
        self.timeout = timeout
        self.concurrency = concurrency
        self.signer = signer or signer_from_profile(self.profile, passphrase=passphrase, logger=self.logger)
        self.transport = self._transport(self.profile.url, session=session)
        self.cloudapi = CloudApi(self.transport, self.profile.account, act_as_account=self.profile.act_as_account, logger=self.logger)
        self.cache = ListCache(config.cache_dir, self.profile, enabled=use_cache, logger=self.logger)
        self.resolver = Resolver(self.cloudapi, cache=self.cache, logger=self.logger)
        self.waiter = Waiter(self.cloudapi, clock=clock, cancel=self.cancel, logger=self.logger)
        for name, facade in FACADES.items():
            setattr(self, name.replace('-', '_'), facade(self))
        self.account = Account(self)

    def _transport(self, url: str, session=None):
        return Transport(url, signer=self.signer, insecure=self.profile.insecure, timeout=self.timeout,
                         session=session, cancel=self.cancel, logger=self.logger)

    def facade(self, kind):
        """Return the facade of a kind name or abbreviation."""
        kind = get_kind(kind) if isinstance(kind, str) else kind
        facade = getattr(self, kind.name.replace('-', '_'), None)
        if not isinstance(facade, Resources):
            raise UsageError(f"{kind.name} are only reachable through their {kind.parent or 'parent'}")
        return facade

    def datacenter_api(self, url: str):
        """A CloudApi for another datacenter with the same identity."""
        return CloudApi(self._transport(url), self.profile.account, act_as_account=self.profile.act_as_account, logger=self.logger)

    def multi_dc(self):
        return MultiDcLister(self.datacenter_api, self.profile.dcs, concurrency=self.concurrency, cancel=self.cancel, logger=self.logger)

    def ping(self):
        return self.cloudapi.ping()

    def close(self):
        self.transport.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False
