"""Shared helper functions, constants, and classes."""

import json
import os
import re  # regex
import tempfile
import threading  # cancellation signal
import time
import unicodedata  # case insensitive compare in Utility
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from stat import S_IRUSR, S_IWUSR, S_IXUSR
from uuid import UUID  # validate UUID strings

import inflect  # singular and plural nouns

from .exceptions import Canceled, UsageError

UUID_RE = re.compile(r'^[a-f\d]{8}(-[a-f\d]{4}){3}-[a-f\d]{12}$', re.I)
HEX_RE = re.compile(r'^[a-f\d]+$', re.I)
SHORT_ID_LEN = 8
MIN_SHORT_ID_LEN = 4

DEFAULT_TIMEOUT = 60          # seconds, per request, retries included
DEFAULT_WAIT_TIMEOUT = 120    # seconds, per waiter
DEFAULT_POLL_INTERVAL = 3     # seconds
MAX_POLL_INTERVAL = 30        # seconds
TRANSPORT_FAILURE_WINDOW = 30  # seconds of consecutive poll failures before a waiter gives up
DEFAULT_CONCURRENCY = 8       # datacenters queried in parallel
IMAGES_CACHE_TTL = 3600       # seconds
DEFAULT_PAGE_SIZE = 1000      # CloudAPI ListMachines maximum
DEFAULT_API_VERSION = '*'
DRY_RUN_INSTANCE_ID = 'beefbeef-4c0e-11e5-86cd-a7fd38d2a50b'

TRUE_STRINGS = ('1', 'true', 'yes', 'on')
FALSE_STRINGS = ('', '0', 'false', 'no', 'off')


def plural(singular):
    """Pluralize a singular form."""
    # if already plural then return, else pluralize
    p = inflect.engine()
    if singular[-1:] == 's':
        return(singular)
    else:
        return(p.plural_noun(singular))


def singular(plural):
    """Singularize a plural form, or return it unchanged if it is not plural."""
    p = inflect.engine()
    return(p.singular_noun(plural) or plural)


def normalize_caseless(text):
    """Normalize a string as lowercase unicode KD form.

    The normal form KD (NFKD) will apply the compatibility decomposition,
    i.e. replace all compatibility characters with their equivalents.
    """
    return unicodedata.normalize("NFKD", text.casefold())


def caseless_equal(left, right):
    """Compare the KD normal form of left, right strings."""
    return normalize_caseless(left) == normalize_caseless(right)


def is_uuid(string: str):
    """Test if string is a canonical 8-4-4-4-12 UUID of any version."""
    if not isinstance(string, str) or not UUID_RE.match(string):
        return False
    try:
        UUID(string)
    except ValueError:
        return False
    else:
        return True


def short_id(uuid: str):
    """Return the user-facing abbreviation of an id."""
    return uuid[:SHORT_ID_LEN] if uuid else uuid


def normalize_short_id(text: str):
    """Normalize a user-supplied id prefix to the dashed, lowercase form of an id.

    Hex strings without dashes get dashes at the canonical positions, so
    "7b5981c41889" matches "7b5981c4-1889-...". Anything longer than an
    undashed UUID, e.g. a 64-character container id, is cut to 32 digits
    first. Returns None if the text can not be an id prefix.
    """
    if not isinstance(text, str) or len(text) < MIN_SHORT_ID_LEN:
        return None
    text = text.lower()
    if '-' in text:
        return text if HEX_RE.match(text.replace('-', '')) else None
    if not HEX_RE.match(text):
        return None
    text = text[:32]
    parts = []
    for start, end in ((0, 8), (8, 12), (12, 16), (16, 20), (20, 32)):
        if len(text) > start:
            parts.append(text[start:end])
    return '-'.join(parts)


def bool_from_string(value, default: bool = False, name: str = 'value'):
    """Interpret an environment or text value as a boolean."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    normal = str(value).strip().lower()
    if normal in TRUE_STRINGS:
        return True
    elif normal in FALSE_STRINGS:
        return False
    raise UsageError(f"invalid value for \"{name}\": \"{value}\"")


def parse_timestamp(text: str):
    """Parse a CloudAPI ISO-8601 timestamp as an aware datetime."""
    if isinstance(text, datetime):
        return text
    when = datetime.fromisoformat(text.replace('Z', '+00:00'))
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when


def long_ago(when, now: datetime = None):
    """Express the time since `when` as the largest whole unit, e.g. 3d."""
    now = now or datetime.now(timezone.utc)
    seconds = round((now - parse_timestamp(when)).total_seconds())
    for unit, size in (('y', 31536000), ('mon', 2592000), ('d', 86400), ('h', 3600), ('min', 60), ('s', 1)):
        count = seconds // size
        if count > 0:
            return f"{count}{unit}"
    return '0s'


def human_duration(seconds: float):
    """Express a duration like 1m23s."""
    seconds = int(round(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    text = ''
    if hours:
        text += f"{hours}h"
    if minutes or hours:
        text += f"{minutes}m"
    return text + f"{seconds}s"


def human_size_from_mib(mib):
    """Express a size given in MiB with the largest whole-ish unit."""
    if mib is None:
        return None
    if mib >= 1024 * 1024:
        return f"{mib / 1024 / 1024:.1f}T".replace('.0T', 'T')
    if mib >= 1024:
        return f"{mib / 1024:.1f}G".replace('.0G', 'G')
    return f"{mib}M"


class Cancellation(threading.Event):
    """A cancellation signal shared by the requests, retries, and polls of one operation."""

    def __init__(self):
        super().__init__()
        self._lock = threading.Lock()
        self._callbacks = []

    def cancel(self):
        """Signal cancellation to every holder of this object and run the cancel callbacks."""
        with self._lock:
            self.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback):
        """Call callback on cancel, or now if already canceled."""
        with self._lock:
            if not self.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback):
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    @property
    def canceled(self):
        return self.is_set()

    def check(self, what: str = "operation"):
        """Raise Canceled if cancellation was signaled."""
        if self.is_set():
            raise Canceled(f"{what} canceled")

    def sleep(self, seconds: float, what: str = "operation"):
        """Sleep, waking early with Canceled if cancellation is signaled."""
        if self.wait(timeout=seconds):
            raise Canceled(f"{what} canceled")


class Clock:
    """Monotonic time source and sleeper; tests substitute a fake."""

    def now(self):
        return time.monotonic()

    def sleep(self, seconds: float, cancel: Cancellation = None):
        if cancel is not None:
            cancel.sleep(seconds)
        else:
            time.sleep(seconds)


@dataclass
class ResourceTypeParent:
    """Parent class for ResourceType class.

    The purpose of the parent class is to validate the type of child class
    attributes. Homing this logic in a parent class allows any number of child
    classes to use it.
    """
    def __post_init__(self):
        """Enforce typed fields in resource spec."""
        for (name, field_type) in self.__annotations__.items():
            if not isinstance(self.__dict__[name], field_type):
                current_type = type(self.__dict__[name])
                raise TypeError(f"The field `{name}` was assigned by `{current_type}` instead of `{field_type}`")


KINDS = dict()         # all resource kinds by plural name
KIND_ABBREV = dict()   # unique abbreviations and singular names for all kinds
CACHEABLE_KINDS = dict()
SHARDED_KINDS = dict()  # kinds that may be listed across a profile's datacenters


@dataclass(frozen=False)
class ResourceType(ResourceTypeParent):
    """Typed resource kind spec.

    Tells the resolver, cache, waiter, and command layer how to treat one kind
    of CloudAPI resource.
    """

    name: str                                               # plural form as kebab-case e.g. fabric-vlans
    path: str                                               # collection path below /<account> e.g. machines
    id_field: str = field(default='id')
    name_field: str = field(default='name')                 # empty if the kind has no human name
    name_filter: bool = field(default=False)                # server honors ?name= on list
    short_ids: bool = field(default=True)                   # ids are UUIDs that may be abbreviated
    state_field: str = field(default='state')               # empty if the kind is stateless
    inactive: str = field(default='')                       # 'state' if state != active is inactive, 'active' if active=false is
    latest_wins: bool = field(default=False)                # ambiguous names resolve to the latest published_at
    cache_ttl: int = field(default=0)                       # seconds, 0 disables the list cache
    sharded: bool = field(default=False)                    # list may fan out across datacenters
    parent: str = field(default=str())                      # kind that owns this one in the URL
    abbreviation: str = field(default='default')
    columns: str = field(default='shortid,name')             # default table columns
    long_columns: str = field(default='id,name')            # table columns with --long
    sort: str = field(default='name')

    def __post_init__(self):
        """Register the kind and its abbreviations and then check types in parent class."""
        if self.abbreviation == 'default':
            setattr(self, 'abbreviation', self.name[:3])
        for alias in {self.abbreviation, singular(self.name)}:
            if KIND_ABBREV.get(alias) and KIND_ABBREV[alias].name != self.name:
                raise RuntimeError(f"abbreviation collision for {self.name} ({alias})")
            KIND_ABBREV[alias] = self
        KINDS[self.name] = self
        if self.cache_ttl:
            CACHEABLE_KINDS[self.name] = self
        if self.sharded:
            SHARDED_KINDS[self.name] = self
        return super().__post_init__()

    def is_active(self, resource: dict):
        """Report whether a resource is in its active sub-state."""
        if self.inactive == 'state':
            return resource.get('state') == 'active'
        elif self.inactive == 'active':
            return resource.get('active', True) is not False
        return True


def get_kind(name: str):
    """Look up a kind by plural name, singular name, or abbreviation."""
    kind = KINDS.get(name) or KIND_ABBREV.get(name)
    if not kind:
        raise UsageError(f"not a valid resource kind: '{name}'. Try one of: {', '.join(KINDS.keys())}")
    return kind


RESOURCES = {
    'instances': ResourceType(
        name='instances',
        path='machines',
        name_filter=True,
        sharded=True,
        abbreviation='inst',
        columns='shortid,name,img,state,flags,age',
        long_columns='id,name,img,brand,package,state,flags,primaryIp,created',
        sort='created',
    ),
    'images': ResourceType(
        name='images',
        path='images',
        inactive='state',
        latest_wins=True,
        cache_ttl=IMAGES_CACHE_TTL,
        sharded=True,
        abbreviation='img',
        columns='shortid,name,version,flags,os,type,pubdate',
        long_columns='id,name,version,state,flags,os,type,pubdate',
        sort='published_at',
    ),
    'packages': ResourceType(
        name='packages',
        path='packages',
        state_field='',
        inactive='active',
        abbreviation='pkg',
        columns='shortid,name,memory,swap,disk,vcpus',
        long_columns='id,name,memory,swap,disk,vcpus,description',
        sort='memory',
    ),
    'networks': ResourceType(
        name='networks',
        path='networks',
        state_field='',
        sharded=True,
        abbreviation='net',
        columns='shortid,name,subnet,gateway,fabric,vlan,public',
        long_columns='id,name,subnet,gateway,fabric,vlan,public',
    ),
    'network-ips': ResourceType(
        name='network-ips',
        path='ips',
        id_field='ip',
        name_field='',
        short_ids=False,
        state_field='',
        parent='networks',
        abbreviation='ip',
        columns='ip,managed,reserved,owner_uuid,belongs_to_uuid',
        long_columns='ip,managed,reserved,owner_uuid,belongs_to_type,belongs_to_uuid',
        sort='ip',
    ),
    'fabric-vlans': ResourceType(
        name='fabric-vlans',
        path='fabrics/default/vlans',
        id_field='vlan_id',
        short_ids=False,
        state_field='',
        abbreviation='vlan',
        columns='vlan_id,name,description',
        long_columns='vlan_id,name,description',
        sort='vlan_id',
    ),
    'vpcs': ResourceType(
        name='vpcs',
        path='vpcs',
        state_field='',
        abbreviation='vpc',
        columns='shortid,name,ip4_cidr,description',
        long_columns='id,name,ip4_cidr,description',
    ),
    'nics': ResourceType(
        name='nics',
        path='nics',
        id_field='mac',
        name_field='',
        short_ids=False,
        parent='instances',
        abbreviation='nic',
        columns='ip,mac,state,network,primary',
        long_columns='ip,mac,state,network,primary,gateway,netmask',
        sort='mac',
    ),
    'disks': ResourceType(
        name='disks',
        path='disks',
        name_field='',
        parent='instances',
        abbreviation='dsk',
        columns='shortid,size,state,boot',
        long_columns='id,size,state,boot,pci_slot',
        sort='pci_slot',
    ),
    'snapshots': ResourceType(
        name='snapshots',
        path='snapshots',
        id_field='name',
        short_ids=False,
        parent='instances',
        abbreviation='snap',
        columns='name,state,created',
        long_columns='name,state,created,updated',
        sort='created',
    ),
    'fwrules': ResourceType(
        name='fwrules',
        path='fwrules',
        name_field='',
        state_field='',
        abbreviation='fw',
        columns='shortid,enabled,global,rule',
        long_columns='id,enabled,global,rule,description,log',
        sort='rule',
    ),
    'keys': ResourceType(
        name='keys',
        path='keys',
        id_field='fingerprint',
        short_ids=False,
        state_field='',
        abbreviation='key',
        columns='fingerprint,name',
        long_columns='fingerprint,name,key',
    ),
    'users': ResourceType(
        name='users',
        path='users',
        name_field='login',
        state_field='',
        abbreviation='usr',
        columns='shortid,login,email,firstName,lastName',
        long_columns='id,login,email,firstName,lastName,created',
        sort='login',
    ),
    'roles': ResourceType(
        name='roles',
        path='roles',
        state_field='',
        abbreviation='rol',
        columns='shortid,name,policies,members,default_members',
        long_columns='id,name,policies,members,default_members',
    ),
    'policies': ResourceType(
        name='policies',
        path='policies',
        state_field='',
        abbreviation='pol',
        columns='shortid,name,nrules,description',
        long_columns='id,name,rules,description',
    ),
    'access-keys': ResourceType(
        name='access-keys',
        path='accesskeys',
        id_field='accesskeyid',
        name_field='',
        short_ids=False,
        state_field='status',
        abbreviation='ak',
        columns='accesskeyid,status,description,age',
        long_columns='accesskeyid,status,description,created,updated',
        sort='created',
    ),
    'volumes': ResourceType(
        name='volumes',
        path='volumes',
        name_filter=True,
        sharded=True,
        abbreviation='vol',
        columns='shortid,name,size,type,state,age',
        long_columns='id,name,size,type,resource,state,created',
        sort='created',
    ),
    'migrations': ResourceType(
        name='migrations',
        path='migrations',
        id_field='machine',
        name_field='',
        abbreviation='mig',
        columns='shortid,phase,state,age',
        long_columns='machine,phase,state,automatic,created_timestamp',
        sort='created_timestamp',
    ),
    'services': ResourceType(
        name='services',
        path='services',
        id_field='name',
        short_ids=False,
        state_field='',
        abbreviation='svc',
        columns='name,endpoint',
        long_columns='name,endpoint',
    ),
    'datacenters': ResourceType(
        name='datacenters',
        path='datacenters',
        id_field='name',
        short_ids=False,
        state_field='',
        abbreviation='dc',
        columns='name,url',
        long_columns='name,url',
    ),
}

INSTANCE_STATES = ('provisioning', 'running', 'stopping', 'stopped', 'offline', 'failed', 'deleted', 'unknown')
IMAGE_STATES = ('active', 'unactivated', 'disabled', 'creating', 'failed')
VOLUME_STATES = ('creating', 'ready', 'deleting', 'deleted', 'failed')
RESOURCE_STATES = set(INSTANCE_STATES + IMAGE_STATES + VOLUME_STATES)



def write_text_atomic(path, text: str, mode: int = 0o600):
    """Write a file by way of a temp file in the same directory and a rename."""
    path = Path(path)
    path.parent.mkdir(mode=S_IRUSR | S_IWUSR | S_IXUSR, parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix='.tmp', dir=str(path.parent))
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as tf:
            tf.write(text)
        os.chmod(temp_name, mode)
        os.replace(temp_name, path)
    except BaseException:
        if os.path.exists(temp_name):
            os.unlink(temp_name)
        raise


def dumps_sorted(obj):
    """Serialize JSON the same way every time so saves are byte-stable."""
    return json.dumps(obj, indent=4, sort_keys=True) + '\n'
