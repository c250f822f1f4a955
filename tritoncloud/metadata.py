"""Parse metadata, tag, affinity, disk, and volume size arguments."""

import json
import os
import re
from dataclasses import dataclass
from json import JSONDecodeError
from pathlib import Path

from .exceptions import UsageError
from .utility import is_uuid

ALLOWED_VALUE_TYPES = (str, int, float, bool)
NUMBER_RE = re.compile(r'^\s*-?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?\s*$')
AFFINITY_RE = re.compile(r'^((instance|inst|container)(==~|!=~|==|!=|=~|=))?(.*?)$')
VOLUME_SIZE_RE = re.compile(r'^([1-9]\d*)([gGmM])?$')
MIB_PER_UNIT = {'g': 1024, 'm': 1}


def _from(source: str):
    return f" (from {source})" if source else ''


def abbreviate(value, limit: int = 10):
    """Shorten a value for a warning, e.g. 'abcdefg...'."""
    text = str(value).lower() if isinstance(value, bool) else str(value)
    return text[:7] + '...' if len(text) > limit else text


def typed_value(text: str):
    """Convert the value of key=value to true, false, a number, or leave it a string."""
    stripped = text.strip()
    if stripped == 'true':
        return True
    elif stripped == 'false':
        return False
    elif NUMBER_RE.match(text):
        number = float(text)
        return int(number) if number.is_integer() and re.match(r'^\s*-?\d+\s*$', text) else number
    return text


def read_file(path: str, what: str):
    full = Path(os.path.expanduser(path))
    if not full.is_file():
        raise UsageError(f"{what} path \"{path}\" is not an existing file")
    try:
        return full.read_text(encoding='utf-8')
    except (OSError, UnicodeDecodeError) as e:
        raise UsageError(f"failed to read {what} file \"{path}\", caught {e}", cause=e)


class KeyValues:
    """Accumulate metadata or tags; a later key replaces an earlier one with a warning.

    :param ilk: "metadata" or "tag", used in messages
    :param warn: callable taking a warning line, e.g. a logger's warning method
    """

    def __init__(self, ilk: str, warn=None):
        self.ilk = ilk
        self.warn = warn
        self.data = dict()
        self.warnings = list()

    def add(self, key: str, value, source: str = None):
        if not isinstance(value, ALLOWED_VALUE_TYPES) or value is None:
            raise UsageError(f"invalid {self.ilk} value type{_from(source)}: must be one of string, number, boolean: "
                             f"{key}={json.dumps(value)}")
        if key in self.data:
            message = f"warning: {self.ilk} \"{key}={abbreviate(value)}\"{_from(source)} replaces earlier value for \"{key}\""
            self.warnings.append(message)
            if self.warn:
                self.warn(message)
        self.data[key] = value

    def add_json(self, text: str, source: str = None):
        try:
            obj = json.loads(text)
        except JSONDecodeError as e:
            raise UsageError(f"{self.ilk}{_from(source)} is not valid JSON, caught {e}", cause=e)
        if not isinstance(obj, dict):
            raise UsageError(f"{self.ilk}{_from(source)} is not a JSON object")
        for key, value in obj.items():
            self.add(key, value, source)

    def add_kv(self, text: str, source: str = None):
        if '=' not in text:
            raise UsageError(f"invalid KEY=VALUE {self.ilk} argument: {text}")
        key, value = text.split('=', 1)
        self.add(key.strip(), typed_value(value), source)

    def add_file(self, path: str):
        """Add from a file holding a JSON object or newline-separated key=value lines."""
        text = read_file(path, self.ilk).strip()
        if text.startswith('{'):
            self.add_json(text, source=path)
        else:
            for line in text.splitlines():
                if line.strip():
                    self.add_kv(line, source=path)

    def add_arg(self, arg: str):
        """Add one -m/-t argument: key=value, a JSON object, or @file."""
        if not arg:
            raise UsageError(f"empty {self.ilk} option value")
        elif arg.startswith('{'):
            self.add_json(arg)
        elif arg.startswith('@'):
            self.add_file(arg[1:])
        else:
            self.add_kv(arg)

    def add_key_file(self, text: str):
        """Add KEY=FILE, the file contents become the string value of KEY."""
        if '=' not in text:
            raise UsageError(f"invalid KEY=FILE {self.ilk} argument: {text}")
        key, path = text.split('=', 1)
        self.add(key.strip(), read_file(path, self.ilk), source=path)


def metadata_from_opts(order: list, warn=None):
    """Build instance metadata from options in the order they were given.

    :param order: (option, value) pairs where option is metadata, metadata_file, or script
    :param warn: optional callable for duplicate-key warnings
    :returns: the metadata dict, empty if no option set any
    """
    kv = KeyValues('metadata', warn=warn)
    for option, value in order:
        if option == 'metadata':
            kv.add_arg(value)
        elif option == 'metadata_file':
            kv.add_key_file(value)
        elif option == 'script':
            kv.add('user-script', read_file(value, 'metadata'), source=value)
    return kv.data


def tags_from_opts(args: list, warn=None):
    """Build tags from -t arguments in order."""
    kv = KeyValues('tag', warn=warn)
    for arg in args or list():
        kv.add_arg(arg)
    return kv.data


@dataclass
class Affinity:
    """One parsed affinity rule."""

    raw: str
    key: str
    op: str        # == or !=
    strict: bool
    value: str

    def rule(self, value: str = None):
        """Render the rule as CloudAPI accepts it, e.g. instance!=~<id>."""
        return f"{self.key}{self.op}{'' if self.strict else '~'}{value or self.value}"


def parse_affinity(rules: list):
    """Parse affinity rules like inst==db0, container!=~web*, or a bare instance name.

    Raises UsageError for an empty value or a mix of strict and non-strict rules.
    """
    affinities = list()
    for raw in rules or list():
        match = AFFINITY_RE.match(raw)
        if not match or not match.group(4):
            raise UsageError(f"invalid affinity: \"{raw}\"")
        op = match.group(3) or '=='
        if op == '=':
            op = '=='
        strict = True
        if op.endswith('~'):
            strict = False
            op = op[:-1]
            if op == '=':
                op = '=='
        affinity = Affinity(raw=raw, key='instance', op=op, strict=strict, value=match.group(4))
        if affinities and affinities[-1].strict != strict:
            last = affinities[-1]
            raise UsageError(f"mixed strict and non-strict affinities are not supported: "
                             f"\"{last.raw}\" ({'strict' if last.strict else 'non-strict'}) and "
                             f"\"{raw}\" ({'strict' if strict else 'non-strict'})")
        affinities.append(affinity)
    return affinities


def is_pattern(value: str):
    """Globs and /regex/ values are matched by the server, not resolved here."""
    return '*' in value or (len(value) > 1 and value.startswith('/') and value.endswith('/'))


def affinity_rules(affinities: list, resolve_instance_id):
    """Render affinities for a create request, resolving instance names and short ids to ids.

    :param resolve_instance_id: callable taking a name or short id and returning an instance id
    """
    rules = list()
    for affinity in affinities:
        value = affinity.value
        if not is_uuid(value) and not is_pattern(value):
            value = resolve_instance_id(value)
        rules.append(affinity.rule(value))
    return rules


def _validate_disks(disks):
    if not isinstance(disks, list) or not all(isinstance(d, dict) for d in disks):
        raise UsageError("disks must be a JSON array of objects")
    remaining = 0
    for disk in disks:
        size = disk.get('size')
        if size is None:
            continue
        if size == 'remaining':
            remaining += 1
            continue
        try:
            number = int(size)
        except (TypeError, ValueError):
            number = -1
        if number <= 0 or isinstance(size, bool) or (isinstance(size, float) and not size.is_integer()):
            raise UsageError(f"SIZE must be a positive number or \"remaining\": '{json.dumps(disk)}'")
        disk['size'] = number
    if remaining > 1:
        raise UsageError("only one disk may have size \"remaining\"")
    return disks


def disks_from_args(args: list):
    """Parse --disks arguments: JSON arrays or objects, or a single @file holding an array."""
    if not args:
        return None
    if len(args) == 1 and args[0].startswith('@'):
        texts = [(read_file(args[0][1:], 'disks'), args[0][1:])]
    else:
        texts = [(arg, None) for arg in args]
    disks = list()
    for text, source in texts:
        try:
            parsed = json.loads(text)
        except JSONDecodeError as e:
            raise UsageError(f"{source or text} is not valid JSON, caught {e}", cause=e)
        disks.extend(parsed if isinstance(parsed, list) else [parsed])
    return _validate_disks(disks)


def parse_volume_size(size):
    """Return MiB for a volume size like 20G, 512m, or 100 (MiB)."""
    match = VOLUME_SIZE_RE.match(str(size).strip())
    if not match:
        raise UsageError(f"size \"{size}\" is not a valid volume size")
    return int(match.group(1)) * MIB_PER_UNIT[(match.group(2) or 'm').lower()]
