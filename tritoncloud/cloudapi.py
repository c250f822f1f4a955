"""Bindings for the CloudAPI REST endpoints.

One method per endpoint. Methods take canonical ids; turning names and short
ids into ids is the resolver's job. Return values are the parsed JSON bodies.
"""

import logging
from urllib.parse import quote

from packaging.version import InvalidVersion, Version

from .exceptions import UsageError
from .logger_base import get_logger
from .transport import Transport
from .utility import DEFAULT_PAGE_SIZE, KINDS, get_kind

UPDATE_ACCOUNT_FIELDS = ('email', 'companyName', 'firstName', 'lastName', 'address', 'postalCode', 'city', 'state',
                         'country', 'phone', 'triton_cns_enabled')
UPDATE_IMAGE_FIELDS = ('name', 'version', 'description', 'homepage', 'eula', 'acl', 'tags')
CREATE_IMAGE_FIELDS = ('description', 'homepage', 'eula', 'acl', 'tags')
UPDATE_FWRULE_FIELDS = ('enabled', 'log', 'rule', 'description')
UPDATE_VLAN_FIELDS = ('name', 'description')
UPDATE_VPC_FIELDS = ('name', 'description')
UPDATE_NETWORK_IP_FIELDS = ('reserved',)
UPDATE_ACCESS_KEY_FIELDS = ('status', 'description')
UPDATE_VOLUME_FIELDS = ('name',)
UPDATE_USER_FIELDS = ('login', 'email', 'companyName', 'firstName', 'lastName', 'address', 'postalCode', 'city',
                      'state', 'country', 'phone')
UPDATE_ROLE_FIELDS = ('name', 'policies', 'members', 'default_members')
UPDATE_POLICY_FIELDS = ('name', 'rules', 'description')
MACHINE_ACTIONS = ('start', 'stop', 'reboot', 'resize', 'rename', 'enable_firewall', 'disable_firewall',
                   'enable_deletion_protection', 'disable_deletion_protection')
MIGRATION_ACTIONS = ('begin', 'sync', 'pause', 'switch', 'automatic', 'abort', 'finalize')
MIGRATION_AFFINITY_ACTIONS = ('begin', 'automatic')


def check_fields(fields: dict, allowed: tuple, what: str):
    """Raise UsageError for a field that may not be updated."""
    unknown = sorted(set(fields.keys()) - set(allowed))
    if unknown:
        raise UsageError(f"cannot update {what} field(s) {', '.join(unknown)}, "
                         f"allowed fields are {', '.join(allowed)}")
    return {k: v for k, v in fields.items() if v is not None}


def mac_segment(mac: str):
    """MAC addresses are sent without colons in URL paths."""
    return mac.replace(':', '').lower()


class CloudApi:
    """Call CloudAPI endpoints on behalf of an account.

    :param transport: a Transport bound to one CloudAPI URL
    :param account: the account login that roots every path
    :param act_as_account: operators acting as another account root paths there instead
    """

    def __init__(self, transport: Transport, account: str, act_as_account: str = None, logger: logging.Logger = None):
        self.transport = transport
        self.account = act_as_account or account
        self.logger = get_logger(__name__, logger)

    def path(self, *parts):
        """Compose an absolute path below the account; each part is a quoted segment."""
        segments = [self.account] + [str(part) for part in parts]
        return '/' + '/'.join(quote(s, safe='') for s in segments)

    def kind_path(self, kind, id: str = None, parent_id: str = None):
        """Compose the collection or item path of a resource kind."""
        kind = get_kind(kind) if isinstance(kind, str) else kind
        parts = list()
        if kind.parent:
            if parent_id is None:
                raise UsageError(f"{kind.name} belong to {kind.parent}, the parent id is required")
            parts.extend(KINDS[kind.parent].path.split('/') + [parent_id])
        parts.extend(kind.path.split('/'))
        if id is not None:
            parts.append(mac_segment(id) if kind.name == 'nics' else id)
        return self.path(*parts)

    def _get(self, path: str, query: dict = None):
        return self.transport.request('GET', path, query=query).body

    def _post(self, path: str, body: dict = None, query: dict = None):
        return self.transport.request('POST', path, query=query, body=body if body is not None else dict()).body

    def _put(self, path: str, body=None):
        return self.transport.request('PUT', path, body=body).body

    def _delete(self, path: str, query: dict = None):
        return self.transport.request('DELETE', path, query=query).body

    # generic access by kind, used by the resolver, the waiter, and the facades

    def list_resources(self, kind, query: dict = None, parent_id: str = None):
        """Return the list of a kind, walking every page of paginated kinds."""
        return list(self.stream_resources(kind, query=query, parent_id=parent_id))

    def stream_resources(self, kind, query: dict = None, parent_id: str = None):
        """Generate the resources of a kind one at a time."""
        kind = get_kind(kind) if isinstance(kind, str) else kind
        if kind.name == 'services':
            return iter(self.list_services())
        elif kind.name == 'datacenters':
            return iter(self.list_datacenters())
        paginate = kind.name == 'instances'
        return self.transport.stream('GET', self.kind_path(kind, parent_id=parent_id), query=query,
                                     paginate=paginate, page_size=DEFAULT_PAGE_SIZE)

    def get_resource(self, kind, id: str, parent_id: str = None):
        return self._get(self.kind_path(kind, id=id, parent_id=parent_id))

    def delete_resource(self, kind, id: str, parent_id: str = None):
        return self._delete(self.kind_path(kind, id=id, parent_id=parent_id))

    # ping and account

    def ping(self):
        """Check liveness; the response lists the API versions the server supports."""
        return self.transport.request('GET', '/--ping', sign=False).body

    def api_versions(self):
        """Return the server's supported API versions, newest first."""
        body = self.ping() or dict()
        versions = list()
        for text in body.get('cloudapi', dict()).get('versions', list()):
            try:
                versions.append((Version(text.lstrip('~^=v')), text))
            except InvalidVersion:
                self.logger.debug(f"ignoring unparseable API version '{text}'")
        return [text for _, text in sorted(versions, reverse=True)]

    def get_account(self):
        return self._get(self.path())

    def update_account(self, **fields):
        return self._post(self.path(), check_fields(fields, UPDATE_ACCOUNT_FIELDS, 'account'))

    def get_account_limits(self):
        return self._get(self.path('limits'))

    def get_config(self):
        return self._get(self.path('config'))

    def update_config(self, **fields):
        """Update account config, e.g. default_network."""
        return self._put(self.path('config'), {k: v for k, v in fields.items() if v is not None})

    # keys, the account's or an RBAC user's

    def _keys_path(self, user: str = None, *rest):
        return self.path('users', user, 'keys', *rest) if user else self.path('keys', *rest)

    def list_keys(self, user: str = None):
        return self._get(self._keys_path(user))

    def get_key(self, name_or_fingerprint: str, user: str = None):
        return self._get(self._keys_path(user, name_or_fingerprint))

    def create_key(self, key: str, name: str = None, user: str = None):
        body = {'key': key}
        if name:
            body['name'] = name
        return self._post(self._keys_path(user), body)

    def delete_key(self, name_or_fingerprint: str, user: str = None):
        return self._delete(self._keys_path(user, name_or_fingerprint))

    # images

    def list_images(self, query: dict = None):
        return self._get(self.path('images'), query=query)

    def get_image(self, id: str):
        return self._get(self.path('images', id))

    def delete_image(self, id: str):
        return self._delete(self.path('images', id))

    def create_image_from_machine(self, machine: str, name: str, version: str, **fields):
        """Create an image from a stopped instance.

        :param machine: id of the instance
        :param fields: optional description, homepage, eula, acl, tags
        """
        body = check_fields(fields, CREATE_IMAGE_FIELDS, 'image')
        body.update({'machine': machine, 'name': name, 'version': version})
        return self._post(self.path('images'), body)

    def update_image(self, id: str, **fields):
        body = check_fields(fields, UPDATE_IMAGE_FIELDS, 'image')
        return self._post(self.path('images', id), body, query={'action': 'update'})

    def export_image(self, id: str, manta_path: str):
        return self._post(self.path('images', id), query={'action': 'export', 'manta_path': manta_path})

    def clone_image(self, id: str):
        return self._post(self.path('images', id), query={'action': 'clone'})

    def import_image_from_datacenter(self, datacenter: str, id: str):
        return self._post(self.path('images'), query={'action': 'import-from-datacenter', 'datacenter': datacenter, 'id': id})

    # packages

    def list_packages(self, query: dict = None):
        return self._get(self.path('packages'), query=query)

    def get_package(self, id: str):
        return self._get(self.path('packages', id))

    # instances

    def list_machines(self, query: dict = None):
        return self.list_resources('instances', query=query)

    def stream_machines(self, query: dict = None):
        return self.stream_resources('instances', query=query)

    def get_machine(self, id: str):
        return self._get(self.path('machines', id))

    def create_machine(self, body: dict):
        return self._post(self.path('machines'), body)

    def delete_machine(self, id: str):
        return self._delete(self.path('machines', id))

    def machine_action(self, id: str, action: str, **params):
        """Send one of the instance actions, e.g. start, or resize with package."""
        if action not in MACHINE_ACTIONS:
            raise UsageError(f"invalid instance action '{action}', expected one of {', '.join(MACHINE_ACTIONS)}")
        body = {'action': action}
        body.update({k: v for k, v in params.items() if v is not None})
        return self._post(self.path('machines', id), body)

    def machine_audit(self, id: str):
        return self._get(self.path('machines', id, 'audit'))

    # instance tags

    def list_machine_tags(self, id: str):
        return self._get(self.path('machines', id, 'tags'))

    def get_machine_tag(self, id: str, tag: str):
        return self._get(self.path('machines', id, 'tags', tag))

    def add_machine_tags(self, id: str, tags: dict):
        return self._post(self.path('machines', id, 'tags'), tags)

    def replace_machine_tags(self, id: str, tags: dict):
        return self._put(self.path('machines', id, 'tags'), tags)

    def delete_machine_tag(self, id: str, tag: str):
        return self._delete(self.path('machines', id, 'tags', tag))

    def delete_machine_tags(self, id: str):
        return self._delete(self.path('machines', id, 'tags'))

    # instance metadata

    def list_machine_metadata(self, id: str):
        return self._get(self.path('machines', id, 'metadata'))

    def get_machine_metadata(self, id: str, key: str):
        return self._get(self.path('machines', id, 'metadata', key))

    def update_machine_metadata(self, id: str, metadata: dict):
        return self._post(self.path('machines', id, 'metadata'), metadata)

    def delete_machine_metadata(self, id: str, key: str):
        return self._delete(self.path('machines', id, 'metadata', key))

    def delete_all_machine_metadata(self, id: str):
        return self._delete(self.path('machines', id, 'metadata'))

    # instance snapshots

    def list_machine_snapshots(self, id: str):
        return self._get(self.path('machines', id, 'snapshots'))

    def get_machine_snapshot(self, id: str, name: str):
        return self._get(self.path('machines', id, 'snapshots', name))

    def create_machine_snapshot(self, id: str, name: str = None):
        return self._post(self.path('machines', id, 'snapshots'), {'name': name} if name else dict())

    def delete_machine_snapshot(self, id: str, name: str):
        return self._delete(self.path('machines', id, 'snapshots', name))

    def start_machine_from_snapshot(self, id: str, name: str):
        return self._post(self.path('machines', id, 'snapshots', name))

    # NICs

    def list_nics(self, id: str):
        return self._get(self.path('machines', id, 'nics'))

    def get_nic(self, id: str, mac: str):
        return self._get(self.path('machines', id, 'nics', mac_segment(mac)))

    def add_nic(self, id: str, network, primary: bool = None):
        """Attach a NIC; network is an id or an object with ipv4_uuid and ipv4_ips."""
        body = {'network': network}
        if primary is not None:
            body['primary'] = primary
        return self._post(self.path('machines', id, 'nics'), body)

    def remove_nic(self, id: str, mac: str):
        return self._delete(self.path('machines', id, 'nics', mac_segment(mac)))

    # disks

    def list_machine_disks(self, id: str):
        return self._get(self.path('machines', id, 'disks'))

    def get_machine_disk(self, id: str, disk_id: str):
        return self._get(self.path('machines', id, 'disks', disk_id))

    def create_machine_disk(self, id: str, size):
        """Add a disk of size MiB, or "remaining" for the rest of the package quota."""
        return self._post(self.path('machines', id, 'disks'), {'size': size})

    def resize_machine_disk(self, id: str, disk_id: str, size: int, dangerous_allow_shrink: bool = False):
        body = {'size': size}
        if dangerous_allow_shrink:
            body['dangerous_allow_shrink'] = True
        return self._post(self.path('machines', id, 'disks', disk_id), body)

    def delete_machine_disk(self, id: str, disk_id: str):
        return self._delete(self.path('machines', id, 'disks', disk_id))

    # migrations

    def list_migrations(self):
        return self._get(self.path('migrations'))

    def get_migration(self, id: str):
        return self._get(self.path('migrations', id))

    def machine_migration(self, id: str, action: str, affinity: list = None):
        if action not in MIGRATION_ACTIONS:
            raise UsageError(f"invalid migration action '{action}', expected one of {', '.join(MIGRATION_ACTIONS)}")
        body = {'action': action}
        if affinity:
            if action not in MIGRATION_AFFINITY_ACTIONS:
                raise UsageError(f"affinity is only accepted for migration actions {', '.join(MIGRATION_AFFINITY_ACTIONS)}")
            body['affinity'] = affinity
        return self._post(self.path('machines', id, 'migrate'), body)

    # firewall rules

    def list_firewall_rules(self):
        return self._get(self.path('fwrules'))

    def get_firewall_rule(self, id: str):
        return self._get(self.path('fwrules', id))

    def create_firewall_rule(self, rule: str, enabled: bool = None, log: bool = None, description: str = None):
        body = check_fields(dict(enabled=enabled, log=log, description=description), UPDATE_FWRULE_FIELDS, 'firewall rule')
        body['rule'] = rule
        return self._post(self.path('fwrules'), body)

    def update_firewall_rule(self, id: str, **fields):
        return self._post(self.path('fwrules', id), check_fields(fields, UPDATE_FWRULE_FIELDS, 'firewall rule'))

    def enable_firewall_rule(self, id: str):
        return self._post(self.path('fwrules', id, 'enable'))

    def disable_firewall_rule(self, id: str):
        return self._post(self.path('fwrules', id, 'disable'))

    def delete_firewall_rule(self, id: str):
        return self._delete(self.path('fwrules', id))

    def list_firewall_rule_machines(self, id: str):
        return self._get(self.path('fwrules', id, 'machines'))

    def list_machine_firewall_rules(self, id: str):
        return self._get(self.path('machines', id, 'fwrules'))

    # networks and their IPs

    def list_networks(self, query: dict = None):
        return self._get(self.path('networks'), query=query)

    def get_network(self, id: str):
        return self._get(self.path('networks', id))

    def list_network_ips(self, id: str):
        return self._get(self.path('networks', id, 'ips'))

    def get_network_ip(self, id: str, ip: str):
        return self._get(self.path('networks', id, 'ips', ip))

    def update_network_ip(self, id: str, ip: str, **fields):
        return self._put(self.path('networks', id, 'ips', ip), check_fields(fields, UPDATE_NETWORK_IP_FIELDS, 'network IP'))

    # fabric VLANs and fabric networks

    def list_fabric_vlans(self):
        return self._get(self.path('fabrics', 'default', 'vlans'))

    def get_fabric_vlan(self, vlan_id: int):
        return self._get(self.path('fabrics', 'default', 'vlans', vlan_id))

    def create_fabric_vlan(self, vlan_id: int, name: str, description: str = None):
        body = {'vlan_id': int(vlan_id), 'name': name}
        if description:
            body['description'] = description
        return self._post(self.path('fabrics', 'default', 'vlans'), body)

    def update_fabric_vlan(self, vlan_id: int, **fields):
        return self._put(self.path('fabrics', 'default', 'vlans', vlan_id), check_fields(fields, UPDATE_VLAN_FIELDS, 'VLAN'))

    def delete_fabric_vlan(self, vlan_id: int):
        return self._delete(self.path('fabrics', 'default', 'vlans', vlan_id))

    def list_fabric_networks(self, vlan_id: int):
        return self._get(self.path('fabrics', 'default', 'vlans', vlan_id, 'networks'))

    def get_fabric_network(self, vlan_id: int, id: str):
        return self._get(self.path('fabrics', 'default', 'vlans', vlan_id, 'networks', id))

    def create_fabric_network(self, vlan_id: int, **fields):
        """Create a fabric network, e.g. name, subnet, provision_start_ip, provision_end_ip, gateway, resolvers."""
        return self._post(self.path('fabrics', 'default', 'vlans', vlan_id, 'networks'),
                          {k: v for k, v in fields.items() if v is not None})

    def delete_fabric_network(self, vlan_id: int, id: str):
        return self._delete(self.path('fabrics', 'default', 'vlans', vlan_id, 'networks', id))

    # fabric VPCs

    def list_vpcs(self):
        return self._get(self.path('vpcs'))

    def get_vpc(self, id: str):
        return self._get(self.path('vpcs', id))

    def create_vpc(self, name: str, ip4_cidr: str, description: str = None):
        body = {'name': name, 'ip4_cidr': ip4_cidr}
        if description:
            body['description'] = description
        return self._post(self.path('vpcs'), body)

    def update_vpc(self, id: str, **fields):
        return self._put(self.path('vpcs', id), check_fields(fields, UPDATE_VPC_FIELDS, 'VPC'))

    def delete_vpc(self, id: str):
        return self._delete(self.path('vpcs', id))

    def list_vpc_networks(self, id: str):
        return self._get(self.path('vpcs', id, 'networks'))

    # access keys, the account's or an RBAC user's

    def _access_keys_path(self, user: str = None, *rest):
        return self.path('users', user, 'accesskeys', *rest) if user else self.path('accesskeys', *rest)

    def list_access_keys(self, user: str = None):
        return self._get(self._access_keys_path(user))

    def get_access_key(self, id: str, user: str = None):
        return self._get(self._access_keys_path(user, id))

    def create_access_key(self, description: str = None, user: str = None):
        return self._post(self._access_keys_path(user), {'description': description} if description else dict())

    def update_access_key(self, id: str, user: str = None, **fields):
        return self._post(self._access_keys_path(user, id), check_fields(fields, UPDATE_ACCESS_KEY_FIELDS, 'access key'))

    def delete_access_key(self, id: str, user: str = None):
        return self._delete(self._access_keys_path(user, id))

    # RBAC

    def list_users(self):
        return self._get(self.path('users'))

    def get_user(self, id: str, membership: bool = False):
        return self._get(self.path('users', id), query={'membership': 'true'} if membership else None)

    def create_user(self, login: str, email: str, password: str, **fields):
        body = check_fields(fields, UPDATE_USER_FIELDS, 'user')
        body.update({'login': login, 'email': email, 'password': password})
        return self._post(self.path('users'), body)

    def update_user(self, id: str, **fields):
        return self._post(self.path('users', id), check_fields(fields, UPDATE_USER_FIELDS, 'user'))

    def delete_user(self, id: str):
        return self._delete(self.path('users', id))

    def list_roles(self):
        return self._get(self.path('roles'))

    def get_role(self, id: str):
        return self._get(self.path('roles', id))

    def create_role(self, name: str, **fields):
        body = check_fields(fields, UPDATE_ROLE_FIELDS, 'role')
        body['name'] = name
        return self._post(self.path('roles'), body)

    def update_role(self, id: str, **fields):
        return self._post(self.path('roles', id), check_fields(fields, UPDATE_ROLE_FIELDS, 'role'))

    def delete_role(self, id: str):
        return self._delete(self.path('roles', id))

    def list_policies(self):
        return self._get(self.path('policies'))

    def get_policy(self, id: str):
        return self._get(self.path('policies', id))

    def create_policy(self, name: str, rules: list, description: str = None):
        body = {'name': name, 'rules': rules}
        if description:
            body['description'] = description
        return self._post(self.path('policies'), body)

    def update_policy(self, id: str, **fields):
        return self._post(self.path('policies', id), check_fields(fields, UPDATE_POLICY_FIELDS, 'policy'))

    def delete_policy(self, id: str):
        return self._delete(self.path('policies', id))

    def get_role_tags(self, resource_path: str):
        """Read the role tags of a resource from the role-tag header of a HEAD.

        :param resource_path: absolute path of the resource, e.g. /acct/machines/<id>
        """
        res = self.transport.request('HEAD', resource_path)
        header = res.headers.get('role-tag') or ''
        return [tag.strip() for tag in header.split(',') if tag.strip()]

    def set_role_tags(self, resource_path: str, tags: list):
        return self._put(resource_path, {'role-tag': list(tags)})

    # volumes

    def list_volumes(self, query: dict = None):
        return self._get(self.path('volumes'), query=query)

    def get_volume(self, id: str):
        return self._get(self.path('volumes', id))

    def create_volume(self, **fields):
        """Create a volume from name, size (MiB), type, networks, affinity, tags."""
        return self._post(self.path('volumes'), {k: v for k, v in fields.items() if v is not None})

    def update_volume(self, id: str, **fields):
        return self._post(self.path('volumes', id), check_fields(fields, UPDATE_VOLUME_FIELDS, 'volume'))

    def delete_volume(self, id: str):
        return self._delete(self.path('volumes', id))

    def list_volume_sizes(self, type: str = None):
        return self._get(self.path('volumesizes'), query={'type': type})

    # services and datacenters

    def list_services(self):
        """Return services as a list of {name, endpoint}, the server answers with a mapping."""
        body = self._get(self.path('services')) or dict()
        return [{'name': name, 'endpoint': endpoint} for name, endpoint in sorted(body.items())]

    def list_datacenters(self):
        """Return datacenters as a list of {name, url}, the server answers with a mapping."""
        body = self._get(self.path('datacenters')) or dict()
        return [{'name': name, 'url': url} for name, url in sorted(body.items())]
