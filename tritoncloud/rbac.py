"""Bring the RBAC users, keys, policies, and roles of an account in line with a config file.

The config file (``rbac.json`` by default, JSON or YAML) looks like::

    {
        "users": [{"login": "bob", "email": "bob@example.com", "firstName": "Bob"}],
        "policies": [{"name": "read", "rules": ["CAN listmachines"]}],
        "roles": [{"name": "ops", "members": ["bob"], "default_members": ["bob"], "policies": ["read"]}]
    }

A user's ``keys`` is a list of public key lines, or the path of a file or
directory of them; a directory holds ``<login>.pub``. Without ``keys`` the
``rbac-user-keys`` directory beside the config file is used if it exists.
"""

import base64
import binascii
import logging
import secrets
from dataclasses import dataclass
from pathlib import Path

from yaml import YAMLError
from yaml import safe_load as yaml_loads

from .exceptions import ConfigError
from .logger_base import get_logger
from .signer import fingerprints_from_blob

DEFAULT_CONFIG_FILE = 'rbac.json'
DEFAULT_USER_KEYS_DIR = 'rbac-user-keys'
SECTIONS = ('users', 'policies', 'roles')
POLICY_FIELDS = ('description', 'rules')
ROLE_FIELDS = ('members', 'default_members', 'policies')
GENERATED_PASSWORD_BYTES = 15


@dataclass
class Change:
    """One step of an RBAC update plan.

    :param action: create, update, or delete
    :param type: user, key, policy, or role
    :param id: login, key fingerprint, or name of the thing
    :param diff: for updates, field -> add, update, or delete
    :param user: login owning a key
    """

    action: str
    type: str
    id: str
    have: dict = None
    want: dict = None
    diff: dict = None
    user: str = None

    @property
    def desc(self):
        if self.type == 'key':
            return f"user {self.user} key"
        return self.type

    def __str__(self):
        text = f"{self.action.capitalize()} {self.desc} {self.id}"
        if self.diff:
            text += f" ({', '.join(f'{k}={v}' for k, v in self.diff.items())})"
        return text


def parse_public_key(line: str, source: str):
    """Return the key entry of an OpenSSH public key line: fingerprint, name from the comment, and the key."""
    parts = line.split()
    if len(parts) < 2:
        raise ConfigError(f"invalid public key in {source}: '{line}'")
    try:
        blob = base64.b64decode(parts[1], validate=True)
    except binascii.Error as e:
        raise ConfigError(f"invalid public key in {source}, caught {e}", cause=e) from e
    md5_fp, _ = fingerprints_from_blob(blob)
    key = {'fingerprint': md5_fp, 'key': line}
    if len(parts) > 2:
        key['name'] = ' '.join(parts[2:])
    return key


def _user_keys(user: dict, base: Path):
    """Replace a user's keys path, or the implicit keys directory, with key entries."""
    implicit = 'keys' not in user
    keys = user.get('keys', DEFAULT_USER_KEYS_DIR)
    if not isinstance(keys, str):
        return [k if isinstance(k, dict) else parse_public_key(k, f"user {user['login']} keys") for k in keys or []]
    path = base / keys
    if path.is_dir():
        path = path / f"{user['login']}.pub"
    if not path.is_file():
        if implicit:
            return None
        raise ConfigError(f"user {user['login']} keys not found in '{path}'")
    return [parse_public_key(line, str(path)) for line in path.read_text(encoding='utf-8').splitlines() if line.strip()]


def load_rbac_config(path):
    """Read and check an RBAC config file, loading each user's public keys."""
    path = Path(path)
    try:
        config = yaml_loads(path.read_text(encoding='utf-8'))
    except OSError as e:
        raise ConfigError(f"failed to read RBAC config '{path}', caught {e}", cause=e) from e
    except YAMLError as e:
        raise ConfigError(f"RBAC config '{path}' is not valid JSON or YAML, caught {e}", cause=e) from e
    if not isinstance(config, dict):
        raise ConfigError(f"RBAC config '{path}' is not an object")
    unknown = [k for k in config if k not in SECTIONS]
    if unknown:
        raise ConfigError(f"RBAC config '{path}' has unknown sections: {', '.join(unknown)}")
    for section, id_field in (('users', 'login'), ('policies', 'name'), ('roles', 'name')):
        things = config.setdefault(section, list())
        if not isinstance(things, list) or not all(isinstance(t, dict) and t.get(id_field) for t in things):
            raise ConfigError(f"RBAC config '{path}' {section} must be a list of objects each with a {id_field}")
    for policy in config['policies']:
        if not isinstance(policy.get('rules'), list):
            raise ConfigError(f"RBAC config '{path}' policy {policy['name']} needs a list of rules")
    for user in config['users']:
        keys = _user_keys(user, path.parent)
        user.pop('keys', None)
        if keys is not None:
            user['keys'] = keys
    return config


def _role_members(role: dict):
    """Members and default members as logins, from either form CloudAPI returns."""
    members = role.get('members') or list()
    if members and isinstance(members[0], dict):
        default_members = [m['login'] for m in members if m.get('default')]
        members = [m['login'] for m in members]
    else:
        default_members = list(role.get('default_members') or list())
    return dict(role, members=list(members), default_members=default_members, policies=[
        p['name'] if isinstance(p, dict) else p for p in role.get('policies') or list()])


def load_rbac_state(cloudapi, with_keys: bool = True):
    """List the users, their keys, the policies, and the roles of the account.

    Each user gets ``roles`` and ``default_roles``, the names of the roles
    listing the user as a member and as a default member.
    """
    state = {
        'users': cloudapi.list_users(),
        'policies': cloudapi.list_policies(),
        'roles': [_role_members(r) for r in cloudapi.list_roles()],
    }
    users = {u['login']: u for u in state['users']}
    for user in state['users']:
        user['roles'] = list()
        user['default_roles'] = list()
        if with_keys:
            user['keys'] = cloudapi.list_keys(user=user['id'])
    for role in state['roles']:
        for login in role['members']:
            if login in users:
                users[login]['roles'].append(role['name'])
        for login in role['default_members']:
            if login in users:
                users[login]['default_roles'].append(role['name'])
    return state


def field_diff(have: dict, want: dict, fields: tuple):
    """Map each of the fields that differ to add, update, or delete; empty values count as absent."""
    diff = dict()
    for name in fields:
        had, wanted = have.get(name) not in (None, '', []), want.get(name) not in (None, '', [])
        if had and not wanted:
            diff[name] = 'delete'
        elif wanted and not had:
            diff[name] = 'add'
        elif wanted and have[name] != want[name]:
            diff[name] = 'update'
    return diff


def crud_changes(type: str, id_field: str, have: list, want: list, updates, creates=None, deletes=None):
    """Changes that turn the have things into the want things, matched by id_field.

    :param updates: callable(have, want) returning the changes of a thing in both
    :param creates: optional callable(want) returning the changes that add a thing
    :param deletes: optional callable(have) returning the changes that remove a thing
    """
    creates = creates or (lambda w: [Change('create', type, w[id_field], want=w)])
    deletes = deletes or (lambda h: [Change('delete', type, h[id_field], have=h)])
    have_by_id = {h[id_field]: h for h in have}
    want_ids = {w[id_field] for w in want}
    changes = list()
    for thing in want:
        if thing[id_field] in have_by_id:
            changes.extend(updates(have_by_id[thing[id_field]], thing))
        else:
            changes.extend(creates(thing))
    for thing in have:
        if thing[id_field] not in want_ids:
            changes.extend(deletes(thing))
    return changes


def _key_changes(login: str, have: list, want: list):
    def updates(h, w):
        diff = field_diff(h, w, tuple(f for f in w if f not in ('fingerprint', 'key')))
        return [Change('update', 'key', w['fingerprint'], have=h, want=w, diff=diff, user=login)] if diff else []
    changes = crud_changes('key', 'fingerprint', have, want, updates)
    for change in changes:
        change.user = login
    return changes


def _user_updates(have: dict, want: dict):
    """Users are compared loosely, on the fields the config gives."""
    changes = list()
    diff = {f: 'update' for f in want if f not in ('keys', 'password') and have.get(f) != want[f]}
    if diff:
        changes.append(Change('update', 'user', want['login'], have=have, want=want, diff=diff))
    if 'keys' in want:
        changes.extend(_key_changes(want['login'], have.get('keys') or list(), want['keys']))
    return changes


def _user_creates(want: dict):
    return [Change('create', 'user', want['login'], want=want)] + _key_changes(want['login'], list(), want.get('keys') or list())


def _user_deletes(have: dict):
    return _key_changes(have['login'], have.get('keys') or list(), list()) + [Change('delete', 'user', have['login'], have=have)]


def _sorted_fields(thing: dict, fields: tuple):
    return {k: sorted(v) if k in fields and isinstance(v, list) else v for k, v in thing.items()}


def _compare(fields: tuple, type: str, id_field: str = 'name'):
    def updates(have, want):
        diff = field_diff(_sorted_fields(have, fields), _sorted_fields(want, fields), fields)
        return [Change('update', type, want[id_field], have=have, want=want, diff=diff)] if diff else []
    return updates


def update_plan(config: dict, state: dict):
    """The changes, users then policies then roles, that make the account match the config."""
    plan = crud_changes('user', 'login', state['users'], config.get('users') or list(),
                        _user_updates, creates=_user_creates, deletes=_user_deletes)
    plan.extend(crud_changes('policy', 'name', state['policies'], config.get('policies') or list(),
                             _compare(POLICY_FIELDS, 'policy')))
    plan.extend(crud_changes('role', 'name', state['roles'], config.get('roles') or list(),
                             _compare(ROLE_FIELDS, 'role')))
    return plan


class PlanRunner:
    """Execute an RBAC update plan one change at a time.

    :param cloudapi: the CloudApi of the account
    :param say: optional callable taking a line of human progress text
    """

    def __init__(self, cloudapi, say=None, logger: logging.Logger = None):
        self.cloudapi = cloudapi
        self.say = say or (lambda line: None)
        self.logger = get_logger(__name__, logger)

    def run(self, plan: list, dry_run: bool = False):
        for change in plan:
            self.logger.debug(f"rbac change: {change}{' (dry-run)' if dry_run else ''}")
            if dry_run:
                self.say(f"[dry-run] {change.action} {change.desc} {change.id}")
                continue
            getattr(self, f"{change.action}_{change.type}")(change)

    def create_user(self, change: Change):
        fields = {k: v for k, v in change.want.items() if k not in ('login', 'email', 'password', 'keys')}
        password = change.want.get('password') or secrets.token_urlsafe(GENERATED_PASSWORD_BYTES)
        self.cloudapi.create_user(change.want['login'], change.want.get('email'), password, **fields)
        if not change.want.get('password'):
            self.logger.debug(f"user {change.id} was given a generated password")
        self.say(f"Created user {change.id}")

    def update_user(self, change: Change):
        fields = {k: change.want[k] for k in change.diff}
        self.cloudapi.update_user(change.have['id'], **fields)
        self.say(f"Updated user {change.id}: {', '.join(f'{k}={v}' for k, v in fields.items())}")

    def delete_user(self, change: Change):
        self.cloudapi.delete_user(change.have['id'])
        self.say(f"Deleted user {change.id}")

    def create_key(self, change: Change):
        key = self.cloudapi.create_key(change.want['key'], name=change.want.get('name'), user=change.user)
        name = key.get('name') or change.want.get('name')
        self.say(f"Created user {change.user} key {key.get('fingerprint', change.id)}{f' ({name})' if name else ''}")

    def update_key(self, change: Change):
        self.cloudapi.delete_key(change.have['fingerprint'], user=change.user)
        self.cloudapi.create_key(change.want['key'], name=change.want.get('name'), user=change.user)
        self.say(f"Updated user {change.user} key {change.id}: {', '.join(f'{k}={change.want.get(k)}' for k in change.diff)}")

    def delete_key(self, change: Change):
        self.cloudapi.delete_key(change.have['fingerprint'], user=change.user)
        self.say(f"Deleted user {change.user} key {change.id}")

    def create_policy(self, change: Change):
        policy = self.cloudapi.create_policy(change.want['name'], change.want['rules'], description=change.want.get('description'))
        count = len(policy.get('rules') or change.want['rules'])
        self.say(f"Created policy {change.id} ({count} rule{'' if count == 1 else 's'})")

    def update_policy(self, change: Change):
        fields = {k: change.want.get(k, '') for k in change.diff}
        self.cloudapi.update_policy(change.have['id'], **fields)
        shown = [f"{k}={';'.join(v) if isinstance(v, list) else v}" for k, v in fields.items()]
        self.say(f"Updated policy {change.id}: {', '.join(shown)}")

    def delete_policy(self, change: Change):
        self.cloudapi.delete_policy(change.have['id'])
        self.say(f"Deleted policy {change.id}")

    def create_role(self, change: Change):
        fields = {k: change.want[k] for k in ROLE_FIELDS if k in change.want}
        self.cloudapi.create_role(change.want['name'], **fields)
        count = len(fields.get('members') or list())
        self.say(f"Created role {change.id} ({count} member{'' if count == 1 else 's'})")

    def update_role(self, change: Change):
        fields = {k: change.want.get(k, list()) for k in change.diff}
        self.cloudapi.update_role(change.have['id'], **fields)
        self.say(f"Updated role {change.id}: {', '.join(f'{k}={v}' for k, v in fields.items())}")

    def delete_role(self, change: Change):
        self.cloudapi.delete_role(change.have['id'])
        self.say(f"Deleted role {change.id}")


def info_lines(state: dict):
    """Describe users with their roles, roles with their policies, and policies with their rules."""
    lines = [f"users ({len(state['users'])}):"]
    for user in sorted(state['users'], key=lambda u: u['login']):
        extra = list()
        full_name = ' '.join(n for n in (user.get('firstName'), user.get('lastName')) if n)
        if full_name:
            extra.append(full_name)
        if user.get('keys') == list():
            extra.append('no ssh keys')
        defaults = sorted(user.get('default_roles') or list())
        others = sorted(r for r in user.get('roles') or list() if r not in defaults)
        roles = ', '.join(defaults)
        if others:
            roles += f"{', ' if roles else ''}[{', '.join(others)}]"
        count = len(defaults) + len(others)
        roles = f"{'role' if count == 1 else 'roles'} {roles}" if count else 'no roles'
        extra = f" ({', '.join(extra)})" if extra else ''
        lines.append(f"    {user['login']}{extra}: {roles}")
    lines.append(f"roles ({len(state['roles'])}):")
    for role in sorted(state['roles'], key=lambda r: r['name']):
        policies = role.get('policies') or list()
        if policies:
            lines.append(f"    {role['name']}: {'policy' if len(policies) == 1 else 'policies'} {', '.join(policies)}")
        else:
            lines.append(f"    {role['name']}: no policies")
    lines.append(f"policies ({len(state['policies'])}):")
    for policy in sorted(state['policies'], key=lambda p: p['name']):
        description = f" ({policy['description']})" if policy.get('description') else ''
        lines.append(f"    {policy['name']}{description} rules:{'' if policy.get('rules') else ' no rules'}")
        lines.extend(f"        {rule}" for rule in policy.get('rules') or list())
    return lines
