#!/usr/bin/env python3
r"""Command-line interface to Triton CloudAPI.

Usage::
    $ triton --help
"""
import argparse
import inspect
import logging
import platform
import signal
import traceback
from functools import partial, wraps
from http import HTTPStatus
from json import dumps as json_dumps
from os import path
from sys import stderr, stdin, stdout

from milc import set_metadata  # this function needed to set metadata immediately below
from pygments import highlight
from pygments.formatters import Terminal256Formatter
from pygments.lexers import get_lexer_by_name, load_lexer_from_file
from tabulate import tabulate
from yaml import YAMLError
from yaml import dump as yaml_dumps
from yaml import safe_load as yaml_loads

from tritoncloud import __version__ as tritoncloud_version

from .client import TritonApi, WaitOptions
from .config import ENV_PROFILE_NAME, ConfigStore, Profile
from .create_instance import CreateInstanceOptions
from .create_instance import create_instance as run_create_instance
from .exceptions import Canceled, MultiError, NotFound, TritonError, UsageError
from .metadata import metadata_from_opts, read_file, tags_from_opts, typed_value
from .rbac import DEFAULT_CONFIG_FILE as RBAC_CONFIG_FILE
from .rbac import PlanRunner, load_rbac_config, load_rbac_state, update_plan
from .rbac import info_lines as rbac_info_lines
from .utility import DEFAULT_WAIT_TIMEOUT, KIND_ABBREV, KINDS, get_kind, singular
from .views import account_summary, present, sort_views

set_metadata(version=f"v{tritoncloud_version}", author="Triton", name="triton")  # must precede import milc.cli
from milc import cli, questions  # noqa: E402 this uses metadata set above
from milc.subcommand import config  # noqa: E402,F401 this creates the config subcommand

if platform.system() == 'Linux':
    # this allows the app the terminate gracefully when piped to a truncating consumer like `head`
    signal.signal(signal.SIGPIPE, signal.SIG_DFL)

KIND_CHOICES = sorted(set(KINDS.keys()) | set(KIND_ABBREV.keys()))
LIST_FIELDS = ('networks', 'affinity', 'acl', 'rules', 'policies', 'members', 'default_members')
PROFILE_FIELDS = ('url', 'account', 'keyId', 'insecure', 'actAsAccount', 'user', 'privKeyPath', 'dcs')
RAW_METHODS = ('GET', 'HEAD', 'POST', 'PUT', 'DELETE')


class StoreDictKeyPair(argparse.Action):
    """Parse key=value arguments into a dictionary."""

    def __call__(self, parser, namespace, values, option_string=None):
        """Split each key=value."""
        my_dict = {}
        for kv in values or []:
            if '=' not in kv:
                parser.error(f"invalid value '{kv}', expected one or more key=value pairs e.g. state=running")
            k, v = kv.split('=', 1)
            my_dict[k] = v
        setattr(namespace, self.dest, my_dict)


class StoreListKeys(argparse.Action):
    """Parse comma-separated strings into a list."""

    def __call__(self, parser, namespace, values, option_string=None):
        """Split comma-separated list elements."""
        setattr(namespace, self.dest, [v for v in values.split(',') if v])


class StoreOrderedMetadata(argparse.Action):
    """Collect -m, -M, and --script values in command-line order as (option, value) pairs."""

    def __call__(self, parser, namespace, values, option_string=None):
        """Append to the shared list."""
        order = getattr(namespace, self.dest, None) or []
        setattr(namespace, self.dest, order + [(self.const, values)])


def handle_errors(handler):
    """Report a TritonError as the one error line and return its exit status."""
    @wraps(handler)
    def wrapper(cli, *args, **kwargs):
        setup_logging(cli)
        try:
            return handler(cli, *args, **kwargs)
        except KeyboardInterrupt:
            return report(cli, Canceled("interrupted"))
        except TritonError as e:
            return report(cli, e)
    return wrapper


def report(cli, error: TritonError):
    """Print `triton[ SUBCMD]: error[ (CODE)]: MESSAGE` to stderr."""
    if isinstance(error, MultiError) and len(error.errors) == 1:
        error = error.first()
    prefix = f"{cli.prog_name} {cli.subcommand_name}" if cli.subcommand_name else cli.prog_name
    code = f" ({error.code})" if error.code else ''
    stderr.write(f"{prefix}: error{code}: {error}\n")
    if cli.config.general.verbose:
        for cause in [c for c in error.cause_chain()][1:]:
            stderr.write(f"    caused by: {cause!r}\n")
        traceback.print_exception(type(error), error, error.__traceback__, file=stderr)
    return error.exit_status


def setup_logging(cli):
    """Use a plain stderr handler for TRACE, the request and response lines, because milc only styles the standard levels."""
    if not cli.config.general.trace:
        return
    handler = logging.StreamHandler(stderr)
    handler.setFormatter(logging.Formatter('%(levelname)s %(name)s: %(message)s'))
    handler.setLevel(logging.TRACE)
    trace_log = logging.getLogger('tritoncloud')
    trace_log.setLevel(logging.TRACE)
    trace_log.addHandler(handler)
    trace_log.propagate = False


def api_logger(cli):
    return logging.getLogger('tritoncloud') if cli.config.general.trace else cli.log


def profile_overrides(cli):
    """Collect the profile fields given as global flags; -J is shorthand for a joyent.com URL."""
    url = cli.config.general.url
    if cli.config.general.datacenter:
        if url:
            raise UsageError("cannot use both -J and -u")
        url = f"https://{cli.config.general.datacenter}.api.joyent.com"
    return dict(
        url=url,
        account=cli.config.general.account,
        key_id=cli.config.general.key_id,
        act_as_account=cli.config.general.act_as,
        insecure=True if cli.config.general.insecure else None,
    )


def use_store(cli):
    return ConfigStore(logger=api_logger(cli))


def use_api(cli):
    """Load the profile in use and connect to its CloudAPI."""
    config = use_store(cli).load(cli.config.general.profile, overrides=profile_overrides(cli))
    cli.log.debug(f"using profile '{config.profile.name}' for {config.profile.url}")
    return TritonApi(config, use_cache=cli.config.general.cache, logger=api_logger(cli))


def wait_options(cli):
    return WaitOptions(wait=bool(cli.args.wait), timeout=float(cli.config.general.wait_timeout))


def quiet_for_json(cli):
    """Don't emit INFO messages when stdout carries JSON."""
    if cli.args.json and not cli.config.general.verbose:
        cli.log.setLevel(logging.WARN)


def progress(cli):
    """Human progress lines, silent when printing JSON."""
    if cli.args.json:
        return None
    return print


def echo(cli, text: str, lexer=None):
    """Print to stdout, highlighted only when color is enabled and stdout is a terminal."""
    if lexer is not None and cli.config.general.color and stdout.isatty():
        text = highlight(text, lexer, Terminal256Formatter(style=cli.config.general.style)).rstrip('\n')
    print(text)


def echo_object(cli, obj, compact: bool = False, as_yaml: bool = False):
    if obj is None:
        return
    elif isinstance(obj, str):
        echo(cli, obj)
    elif as_yaml:
        echo(cli, yaml_dumps(obj, indent=4, default_flow_style=False).rstrip('\n'), yaml_lexer)
    elif compact:
        print(json_dumps(obj))
    else:
        echo(cli, json_dumps(obj, indent=4), json_lexer)


def echo_table(cli, rows: list, columns: list, headers: bool = True):
    if cli.config.general.borders:
        table_borders = "presto"
    else:
        table_borders = "plain"
    table = tabulate(tabular_data=rows, headers=[c.upper() for c in columns] if headers else [], tablefmt=table_borders)
    echo(cli, table, text_lexer)


def load_object(file):
    """Parse a JSON or YAML file holding one object."""
    try:
        obj = yaml_loads(file.read())
    except YAMLError as e:
        raise UsageError(f"failed to parse {file.name} as JSON or YAML, caught {e}", cause=e)
    if not isinstance(obj, dict):
        raise UsageError(f"{file.name} does not hold an object")
    return obj


def fields_from_args(pairs: dict, file=None):
    """Merge the fields of a file with key=value arguments; @PATH reads a value from a file."""
    fields = load_object(file) if file else dict()
    for key, value in (pairs or dict()).items():
        if value.startswith('@'):
            fields[key] = read_file(value[1:], key).strip()
        elif key in LIST_FIELDS:
            fields[key] = [v for v in value.split(',') if v]
        else:
            fields[key] = typed_value(value)
    return fields


def one(values: list, name: str):
    if len(values) != 1:
        raise UsageError(f"expected one {name}, got {len(values)} values")
    return values[0]


def warn(line: str):
    stderr.write(line + "\n")


def get_spinner(cli, text):
    """
    Get a spinner.

    Enabled if stderr is a tty and log level is >= INFO, else disabled to not
    corrupt structured output.
    """
    inner_spinner = cli.spinner(text=text, spinner='dots12', placement='left', color='green', stream=stderr)
    if not stderr.isatty():
        inner_spinner.enabled = False
        cli.log.debug("spinner disabled because stderr is not a tty")
    elif cli.config.general.verbose:
        inner_spinner.enabled = False
        cli.log.debug("spinner disabled because DEBUG is enabled")
    elif cli.log.getEffectiveLevel() > logging.INFO:
        inner_spinner.enabled = False
    else:
        inner_spinner.enabled = True
    return inner_spinner


@cli.argument('-p', '--profile', help='profile name, default is the current profile (see `triton profile list`)')
@cli.argument('-a', '--account', help='account login name, overrides the profile')
@cli.argument('-A', '--act-as', help='operator accounts may act as another account')
@cli.argument('-k', '--key-id', help='SSH key fingerprint, overrides the profile')
@cli.argument('-u', '--url', help='CloudAPI URL, overrides the profile')
@cli.argument('-J', '--datacenter', help='shorthand for -u https://DATACENTER.api.joyent.com')
@cli.argument('-i', '--insecure', action='store_true', default=False, help='do not validate the CloudAPI TLS certificate')
@cli.argument('--cache', action='store_boolean', default=True, help='use the cached image list')
@cli.argument('--trace', action='store_true', default=False, help='log every request and response to stderr')
@cli.argument('--wait-timeout', type=float, default=DEFAULT_WAIT_TIMEOUT, help='seconds that -w waits before giving up')
@cli.argument('-S', '--style', help="highlighting style", default='material', choices=["bw", "rrt", "arduino", "monokai", "material", "emacs", "vim", "one-dark"])
@cli.argument('-B', '--borders', default=False, action='store_boolean', help='print cell borders in text tables')
@cli.entrypoint('manage Triton CloudAPI resources')
@handle_errors
def main(cli):
    """Show the profile in use and the API versions of its CloudAPI."""
    with use_api(cli) as api:
        versions = api.cloudapi.api_versions()
        summary_table = [
            ['profile', api.profile.name],
            ['url', api.profile.url],
            ['account', api.profile.account + (f" (as {api.profile.act_as_account})" if api.profile.act_as_account else '')],
            ['keyId', api.profile.key_id],
            ['versions', ', '.join(versions)],
        ]
        if api.profile.dcs:
            summary_table.append(['datacenters', ', '.join(api.profile.dcs)])
    echo_table(cli, summary_table, ['Setting', 'Value'])
    cli.log.info(f"try running '{cli.prog_name} list instances'")


def list_parented(api, kind, parent: str):
    """List a kind that lives below another resource."""
    if kind.name == 'nics':
        return api.instances.nics(parent)
    elif kind.name == 'disks':
        return api.instances.disks(parent)
    elif kind.name == 'snapshots':
        return api.instances.snapshots(parent)
    elif kind.name == 'network-ips':
        return api.networks.ips(parent)
    raise UsageError(f"{kind.name} have no parent")


def image_index(cli, api):
    """Images by id for the img column; failing to list them only costs the column its names."""
    try:
        return {i['id']: i for i in api.resolver.list_all('images')}
    except TritonError as e:
        cli.log.debug(f"showing image ids instead of names, caught {e}")
        return dict()


@cli.argument('filters', arg_only=True, nargs='*', action=StoreDictKeyPair, default=None, metavar='FILTER', help="filters as key=value e.g. state=running")
@cli.argument('--strict', arg_only=True, action='store_true', help="fail when any datacenter fails")
@cli.argument('--all', dest='include_inactive', arg_only=True, action='store_true', help="include inactive images and packages")
@cli.argument('--parent', arg_only=True, help="instance or network owning the resources, for nics, disks, snapshots, and network-ips")
@cli.argument('-l', '--long', arg_only=True, action='store_true', help="show the long columns")
@cli.argument('-s', '--sort-by', arg_only=True, action=StoreListKeys, help="columns to sort by as a,b,c, a leading - sorts descending")
@cli.argument('-o', '--columns', arg_only=True, action=StoreListKeys, help="columns to show as a,b,c")
@cli.argument('-H', '--no-header', arg_only=True, action='store_true', help="omit the table header row")
@cli.argument('-j', '--json', arg_only=True, action='store_true', help="print one JSON object per line")
@cli.argument('resource_type', arg_only=True, help='type of resource', metavar="RESOURCE_TYPE", choices=KIND_CHOICES)
@cli.subcommand('list resources of one kind')
@handle_errors
def list(cli):
    """List resources as a table or as JSON lines."""
    quiet_for_json(cli)
    kind = get_kind(cli.args.resource_type)
    filters = cli.args.filters or {}
    errors = None
    columns = cli.args.columns or (kind.long_columns if cli.args.long else kind.columns).split(',')
    with use_api(cli) as api:
        if kind.parent:
            if not cli.args.parent:
                raise UsageError(f"listing {kind.name} needs --parent {singular_name(kind.parent)}")
            items = list_parented(api, kind, cli.args.parent)
        elif kind.name == 'migrations':
            items = api.instances.migrations()
        elif api.profile.dcs and kind.sharded:
            items, errors = api.facade(kind).list_all_dcs(filters, dc_error=lambda dc, e: cli.log.warning(f"{dc}: {e}"))
            if not cli.args.columns:
                columns = ['dc'] + columns
        else:
            items = api.facade(kind).list(filters, include_inactive=cli.args.include_inactive)
        images = image_index(cli, api) if 'img' in columns else dict()

    views = sort_views([present(kind, item, images=images) for item in items], cli.args.sort_by or kind.sort.split(','))
    if cli.args.json:
        for view in views:
            print(json_dumps(view.raw))
    else:
        echo_table(cli, [v.row(columns) for v in views], columns, headers=not cli.args.no_header)
    if errors is not None and cli.args.strict:
        raise errors
    return 0


def singular_name(kind_name: str):
    return singular(get_kind(kind_name).name)


def get_one(api, kind, id: str, parent: str = None, include_inactive: bool = False):
    """Fetch one resource of any kind by id, short id, or name."""
    if kind.parent and not parent:
        raise UsageError(f"getting one of {kind.name} needs --parent {singular_name(kind.parent)}")
    if kind.name == 'nics':
        return api.instances.get_nic(parent, id)
    elif kind.name == 'disks':
        return api.instances.get_disk(parent, id)
    elif kind.name == 'snapshots':
        return api.instances.get_snapshot(parent, id)
    elif kind.name == 'network-ips':
        return api.networks.get_ip(parent, id)
    elif kind.name == 'migrations':
        return api.instances.get_migration(id)
    elif kind.name in ('services', 'datacenters'):
        matches = [item for item in api.facade(kind).list() if item.get('name') == id]
        if not matches:
            raise NotFound(f"no {kind.name[:-1]} named '{id}'")
        return matches[0]
    return api.facade(kind).get(id, include_inactive=include_inactive)


@cli.argument('--all', dest='include_inactive', arg_only=True, action='store_true', help="consider inactive images and packages too")
@cli.argument('--parent', arg_only=True, help="instance or network owning the resource")
@cli.argument('-Y', '--yaml', arg_only=True, action='store_true', help="print YAML")
@cli.argument('-j', '--json', arg_only=True, action='store_true', help="print compact JSON")
@cli.argument('id', arg_only=True, metavar='ID_OR_NAME', help="id, short id, or name")
@cli.argument('resource_type', arg_only=True, help='type of resource', metavar="RESOURCE_TYPE", choices=KIND_CHOICES)
@cli.subcommand('get one resource by id, short id, or name')
@handle_errors
def get(cli):
    """Get a single resource as JSON or YAML."""
    quiet_for_json(cli)
    kind = get_kind(cli.args.resource_type)
    with use_api(cli) as api:
        match = get_one(api, kind, cli.args.id, parent=cli.args.parent, include_inactive=cli.args.include_inactive)
    echo_object(cli, match, compact=cli.args.json, as_yaml=cli.args.yaml)
    return 0


def creator(api, kind, parent: str = None):
    """Return the create callable of a kind, bound to the parent for kinds that have one."""
    if kind.parent and not parent:
        raise UsageError(f"creating {kind.name} needs --parent {singular_name(kind.parent)}")
    if kind.name == 'snapshots':
        return partial(api.instances.create_snapshot, parent)
    elif kind.name == 'disks':
        return partial(api.instances.add_disk, parent)
    elif kind.name == 'nics':
        return partial(api.instances.add_nic, parent)
    elif kind.name == 'networks' and parent:
        return partial(api.fabric_vlans.create_network, parent)
    elif kind.name == 'images':
        return api.images.create_from_instance
    elif kind.name == 'instances':
        raise UsageError(f"use '{cli.prog_name} create-instance IMAGE PACKAGE' to create instances")
    create = getattr(api.facade(kind), 'create', None)
    if create is None:
        raise UsageError(f"{kind.name} can not be created")
    return create


@cli.argument('fields', arg_only=True, nargs='*', action=StoreDictKeyPair, default=None, metavar='FIELD', help="fields as key=value, @PATH reads a value from a file")
@cli.argument('-f', '--file', arg_only=True, help='JSON or YAML file of fields', type=argparse.FileType('r', encoding='UTF-8'))
@cli.argument('--parent', arg_only=True, help="instance owning snapshots, disks, and nics, or the fabric VLAN of a network")
@cli.argument('-w', '--wait', arg_only=True, action='store_true', help="wait until the resource is ready")
@cli.argument('-j', '--json', arg_only=True, action='store_true', help="print compact JSON")
@cli.argument('resource_type', arg_only=True, help='type of resource', metavar="RESOURCE_TYPE", choices=KIND_CHOICES)
@cli.subcommand('create a resource from key=value fields or a file')
@handle_errors
def create(cli):
    """Create a resource.

    e.g. `triton create fwrule rule="FROM any TO all vms ALLOW tcp PORT 22" enabled=true`
    """
    quiet_for_json(cli)
    kind = get_kind(cli.args.resource_type)
    fields = fields_from_args(cli.args.fields, cli.args.file)
    with use_api(cli) as api:
        create_resource = creator(api, kind, cli.args.parent)
        if 'wait' in inspect.signature(create_resource).parameters:
            fields['wait'] = wait_options(cli)
        elif cli.args.wait:
            cli.log.warning(f"creating {kind.name} does not support --wait")
        try:
            inspect.signature(create_resource).bind(**fields)
        except TypeError as e:
            raise UsageError(f"invalid fields for creating {kind.name}: {e}")
        spinner = get_spinner(cli, f"Creating {singular_name(kind.name)}")
        with spinner:
            resource = create_resource(**fields)
    echo_object(cli, resource, compact=cli.args.json)
    return 0


@cli.argument('image', arg_only=True, help="image id, short id, name, or name@version")
@cli.argument('package', arg_only=True, nargs='?', help="package id, short id, or name")
@cli.argument('-n', '--name', arg_only=True, help="instance name, else the server picks one")
@cli.argument('-m', '--metadata', dest='metadata', arg_only=True, action=StoreOrderedMetadata, const='metadata', default=None,
              help="KEY=VALUE, a JSON object, or @FILE of either; repeatable")
@cli.argument('-M', '--metadata-file', dest='metadata', arg_only=True, action=StoreOrderedMetadata, const='metadata_file', default=None,
              help="KEY=FILE, the contents of FILE become the value of KEY; repeatable")
@cli.argument('--script', dest='metadata', arg_only=True, action=StoreOrderedMetadata, const='script', default=None,
              help="FILE holding the user-script metadata")
@cli.argument('-t', '--tag', dest='tags', arg_only=True, action='append', default=None, help="KEY=VALUE, a JSON object, or @FILE; repeatable")
@cli.argument('-N', '--network', dest='networks', arg_only=True, action='append', default=None, help="network id, short id, or name; repeatable or comma-separated")
@cli.argument('--affinity', arg_only=True, action='append', default=None, help="placement rule e.g. inst!=db0 or inst==~web*; repeatable")
@cli.argument('--firewall', arg_only=True, action='store_true', help="enable the cloud firewall")
@cli.argument('--deletion-protection', arg_only=True, action='store_true', help="refuse deletes until disabled")
@cli.argument('--disks', arg_only=True, action='append', default=None, help="JSON array of {\"size\": MiB|\"remaining\"} or @FILE")
@cli.argument('--volume', dest='volumes', arg_only=True, action='append', default=None, help="NAME[@MOUNTPOINT[:ro|rw]]; repeatable")
@cli.argument('-b', '--brand', arg_only=True, help="instance brand e.g. bhyve or kvm")
@cli.argument('--dry-run', arg_only=True, action='store_true', help="resolve everything and build the request but do not create")
@cli.argument('-w', '--wait', arg_only=True, action='store_true', help="wait until the instance is running")
@cli.argument('-j', '--json', arg_only=True, action='store_true', help="print compact JSON")
@cli.subcommand('create an instance from an image and a package')
@handle_errors
def create_instance(cli):
    """Create an instance; -w waits for it to run."""
    quiet_for_json(cli)
    networks = [n for arg in cli.args.networks or [] for n in arg.split(',') if n]
    opts = CreateInstanceOptions(
        image=cli.args.image,
        package=cli.args.package,
        name=cli.args.name,
        metadata=cli.args.metadata or [],
        tags=cli.args.tags or [],
        networks=networks,
        affinity=cli.args.affinity or [],
        firewall=True if cli.args.firewall else None,
        deletion_protection=True if cli.args.deletion_protection else None,
        disks=cli.args.disks or [],
        brand=cli.args.brand,
        volumes=cli.args.volumes or [],
        dry_run=cli.args.dry_run,
        wait=cli.args.wait,
        wait_timeout=float(cli.config.general.wait_timeout),
    )
    with use_api(cli) as api:
        instance = run_create_instance(api, opts, progress=progress(cli), warn=warn)
    if cli.args.json:
        echo_object(cli, instance, compact=True)
    check_created(instance, waited=opts.wait)
    return 0


def check_created(instance: dict, waited: bool):
    """Raise InstanceFailed when an instance that was waited for is not running."""
    if waited and instance.get('state') != 'running':
        raise TritonError(f"failed to create instance {instance.get('name')} ({instance.get('id')})", code='InstanceFailed')
    return instance


def deleter(api, kind, parent: str = None):
    """Return a callable taking (id, wait, force) that deletes one resource of a kind."""
    if kind.parent and not parent:
        raise UsageError(f"deleting {kind.name} needs --parent {singular_name(kind.parent)}")
    if kind.name == 'nics':
        return lambda id, wait, force: api.instances.remove_nic(parent, id, wait=wait)
    elif kind.name == 'disks':
        return lambda id, wait, force: api.instances.delete_disk(parent, id, wait=wait)
    elif kind.name == 'snapshots':
        return lambda id, wait, force: api.instances.delete_snapshot(parent, id, wait=wait)
    elif kind.name == 'networks':
        return lambda id, wait, force: api.fabric_vlans.delete_network(id)
    facade = api.facade(kind)
    delete_resource = getattr(facade, 'delete', None)
    if delete_resource is None:
        raise UsageError(f"{kind.name} can not be deleted")
    if 'wait' in inspect.signature(delete_resource).parameters:
        return lambda id, wait, force: delete_resource(id, wait=wait, force=force)
    return lambda id, wait, force: delete_resource(id, force=force)


@cli.argument('ids', arg_only=True, nargs='+', metavar='ID_OR_NAME', help="ids, short ids, or names")
@cli.argument('--parent', arg_only=True, help="instance owning snapshots, disks, and nics")
@cli.argument('-f', '--force', arg_only=True, action='store_true', help="succeed when the resource is already gone")
@cli.argument('-w', '--wait', arg_only=True, action='store_true', help="wait until the resource is deleted")
@cli.argument('-j', '--json', arg_only=True, action='store_true', help="print compact JSON")
@cli.argument('resource_type', arg_only=True, help='type of resource', metavar="RESOURCE_TYPE", choices=KIND_CHOICES)
@cli.subcommand('delete resources by id, short id, or name')
@handle_errors
def delete(cli):
    """Delete one or more resources in turn."""
    quiet_for_json(cli)
    kind = get_kind(cli.args.resource_type)
    wait = wait_options(cli)
    say = progress(cli) or (lambda line: None)
    with use_api(cli) as api:
        delete_resource = deleter(api, kind, cli.args.parent)
        for id in cli.args.ids:
            say(f"Delete{'' if wait.wait else ' (async)'} {singular_name(kind.name)} {id}")
            delete_resource(id, wait, cli.args.force)
            if wait.wait:
                say(f"Deleted {singular_name(kind.name)} {id}")
    return 0


WAITERS = {
    'instances': (('running', 'failed'), lambda api, id, parent: api.instances.wait),
    'images': (('active', 'failed'), lambda api, id, parent: api.images.wait),
    'volumes': (('ready', 'failed'), lambda api, id, parent: api.volumes.wait),
    'snapshots': (('created', 'failed'), lambda api, id, parent: lambda name, states, **kw: api.waiter.wait_for_snapshot_states(
        api.instances.resolve_id(parent), name, states, **kw)),
    'nics': (('running', 'failed'), lambda api, id, parent: lambda mac, states, **kw: api.waiter.wait_for_nic_states(
        api.instances.resolve_id(parent), mac, states, **kw)),
}


@cli.argument('-s', '--states', arg_only=True, action=StoreListKeys, help="states to wait for as a,b e.g. running,failed or deleted")
@cli.argument('--parent', arg_only=True, help="instance owning snapshots and nics")
@cli.argument('-j', '--json', arg_only=True, action='store_true', help="print compact JSON")
@cli.argument('id', arg_only=True, metavar='ID_OR_NAME', help="id, short id, or name")
@cli.argument('resource_type', arg_only=True, help='type of resource', metavar="RESOURCE_TYPE", choices=KIND_CHOICES)
@cli.subcommand('wait for a resource to reach a state')
@handle_errors
def wait(cli):
    """Wait for an instance, image, volume, snapshot, or NIC; a state of failed is reported, not raised."""
    quiet_for_json(cli)
    kind = get_kind(cli.args.resource_type)
    if kind.name not in WAITERS:
        raise UsageError(f"can not wait for {kind.name}, try one of {', '.join(WAITERS.keys())}")
    if kind.parent and not cli.args.parent:
        raise UsageError(f"waiting for {kind.name} needs --parent {singular_name(kind.parent)}")
    default_states, make_waiter = WAITERS[kind.name]
    states = tuple(cli.args.states or default_states)
    with use_api(cli) as api:
        spinner = get_spinner(cli, f"Waiting for {singular_name(kind.name)} {cli.args.id} to be {'|'.join(states)}")
        with spinner:
            resource = make_waiter(api, cli.args.id, cli.args.parent)(
                cli.args.id, states, timeout=float(cli.config.general.wait_timeout))
    echo_object(cli, resource, compact=cli.args.json)
    return 0


INSTANCE_ACTIONS = {
    'start': lambda api, inst, v, w: api.instances.start(inst, w),
    'stop': lambda api, inst, v, w: api.instances.stop(inst, w),
    'reboot': lambda api, inst, v, w: api.instances.reboot(inst, w),
    'resize': lambda api, inst, v, w: api.instances.resize(inst, one(v, 'PACKAGE'), w),
    'rename': lambda api, inst, v, w: api.instances.rename(inst, one(v, 'NAME'), w),
    'enable-firewall': lambda api, inst, v, w: api.instances.enable_firewall(inst, w),
    'disable-firewall': lambda api, inst, v, w: api.instances.disable_firewall(inst, w),
    'enable-deletion-protection': lambda api, inst, v, w: api.instances.enable_deletion_protection(inst, w),
    'disable-deletion-protection': lambda api, inst, v, w: api.instances.disable_deletion_protection(inst, w),
    'audit': lambda api, inst, v, w: api.instances.audit(inst),
    'fwrules': lambda api, inst, v, w: api.instances.firewall_rules(inst),
    'ip': lambda api, inst, v, w: api.instances.get(inst).get('primaryIp'),
    'tags': lambda api, inst, v, w: api.instances.tags(inst),
    'tag-get': lambda api, inst, v, w: api.instances.get_tag(inst, one(v, 'KEY')),
    'tag-set': lambda api, inst, v, w: api.instances.set_tags(inst, tags_from_opts(v, warn=warn), w),
    'tag-replace': lambda api, inst, v, w: api.instances.replace_tags(inst, tags_from_opts(v, warn=warn), w),
    'tag-delete': lambda api, inst, v, w: [api.instances.delete_tag(inst, key, w) for key in v] and None,
    'tag-clear': lambda api, inst, v, w: api.instances.delete_tags(inst, w),
    'metadata': lambda api, inst, v, w: api.instances.metadata(inst),
    'metadata-get': lambda api, inst, v, w: api.instances.get_metadata(inst, one(v, 'KEY')),
    'metadata-set': lambda api, inst, v, w: api.instances.update_metadata(inst, metadata_from_opts([('metadata', m) for m in v], warn=warn)),
    'metadata-delete': lambda api, inst, v, w: [api.instances.delete_metadata(inst, key) for key in v] and None,
    'metadata-clear': lambda api, inst, v, w: api.instances.delete_metadata(inst),
    'snapshot-boot': lambda api, inst, v, w: api.instances.start_from_snapshot(inst, one(v, 'SNAPSHOT'), w),
    'migrate': lambda api, inst, v, w: api.instances.migrate(inst, one(v, 'ACTION'), wait=w),
    'migration': lambda api, inst, v, w: api.instances.get_migration(inst),
}

IMAGE_ACTIONS = {
    'share': lambda api, img, v, w: api.images.share(img, one(v, 'ACCOUNT')),
    'unshare': lambda api, img, v, w: api.images.unshare(img, one(v, 'ACCOUNT')),
    'tag': lambda api, img, v, w: api.images.tag(img, tags=tags_from_opts([t for t in v if not t.startswith('-')], warn=warn),
                                                 remove=[t[1:] for t in v if t.startswith('-')]),
    'update': lambda api, img, v, w: api.images.update(img, **fields_from_args(dict(kv.split('=', 1) for kv in v if '=' in kv))),
    'export': lambda api, img, v, w: api.images.export(img, one(v, 'MANTA_PATH')),
    'clone': lambda api, img, v, w: api.images.clone(img),
    'copy': lambda api, img, v, w: api.images.copy_from_datacenter(one(v, 'DATACENTER'), img, w),
    'wait': lambda api, img, v, w: api.images.wait(img, timeout=w.timeout, poll_interval=w.poll_interval),
}

FWRULE_ACTIONS = {
    'enable': lambda api, rule, v, w: api.fwrules.enable(rule, w),
    'disable': lambda api, rule, v, w: api.fwrules.disable(rule, w),
    'update': lambda api, rule, v, w: api.fwrules.update(rule, w, **fields_from_args(dict(kv.split('=', 1) for kv in v if '=' in kv))),
    'instances': lambda api, rule, v, w: api.fwrules.instances(rule),
}

NETWORK_ACTIONS = {
    'ips': lambda api, net, v, w: api.networks.ips(net),
    'ip': lambda api, net, v, w: api.networks.get_ip(net, one(v, 'IP')),
    'reserve': lambda api, net, v, w: api.networks.reserve_ip(net, one(v, 'IP'), True),
    'unreserve': lambda api, net, v, w: api.networks.reserve_ip(net, one(v, 'IP'), False),
    'set-default': lambda api, net, v, w: api.networks.set_default(net),
    'role-tags': lambda api, net, v, w: api.networks.role_tags(net),
}

VLAN_ACTIONS = {
    'networks': lambda api, vlan, v, w: api.fabric_vlans.networks(vlan),
    'update': lambda api, vlan, v, w: api.fabric_vlans.update(vlan, **fields_from_args(dict(kv.split('=', 1) for kv in v if '=' in kv))),
}

VPC_ACTIONS = {
    'networks': lambda api, vpc, v, w: api.vpcs.networks(vpc),
    'update': lambda api, vpc, v, w: api.vpcs.update(vpc, **fields_from_args(dict(kv.split('=', 1) for kv in v if '=' in kv))),
}

VOLUME_ACTIONS = {
    'update': lambda api, vol, v, w: api.volumes.update(vol, **fields_from_args(dict(kv.split('=', 1) for kv in v if '=' in kv))),
    'wait': lambda api, vol, v, w: api.volumes.wait(vol, timeout=w.timeout, poll_interval=w.poll_interval),
}


def act(cli, actions: dict, target: str):
    """Run one action of a noun subcommand and print its result."""
    quiet_for_json(cli)
    action = actions[cli.args.action]
    with use_api(cli) as api:
        spinner = get_spinner(cli, f"{cli.args.action} {target}")
        with spinner:
            result = action(api, target, cli.args.values or [], wait_options(cli))
    echo_object(cli, result, compact=cli.args.json)
    return 0


def noun_arguments(name: str, actions: dict, metavar: str):
    """Decorate a noun subcommand with its ACTION, target, and values arguments."""
    def decorate(handler):
        handler = cli.argument('-j', '--json', arg_only=True, action='store_true', help="print compact JSON")(handler)
        handler = cli.argument('-w', '--wait', arg_only=True, action='store_true', help="wait for the change to be visible")(handler)
        handler = cli.argument('values', arg_only=True, nargs='*', help="arguments of the action")(handler)
        handler = cli.argument('target', arg_only=True, metavar=metavar, help=f"{name} id, short id, or name")(handler)
        handler = cli.argument('action', arg_only=True, metavar='ACTION', choices=sorted(actions.keys()),
                               help=f"one of {', '.join(sorted(actions.keys()))}")(handler)
        return handler
    return decorate


@noun_arguments('instance', INSTANCE_ACTIONS, 'INSTANCE')
@cli.subcommand('start, stop, reboot, resize, rename, tag, and otherwise act on an instance')
@handle_errors
def instance(cli):
    """Act on an instance, e.g. `triton instance tag-set web0 role=web`."""
    return act(cli, INSTANCE_ACTIONS, cli.args.target)


@noun_arguments('image', IMAGE_ACTIONS, 'IMAGE')
@cli.subcommand('share, tag, update, export, clone, or copy an image')
@handle_errors
def image(cli):
    """Act on an image; `tag` takes KEY=VALUE to set and -KEY to remove."""
    return act(cli, IMAGE_ACTIONS, cli.args.target)


@noun_arguments('firewall rule', FWRULE_ACTIONS, 'FWRULE')
@cli.subcommand('enable, disable, or update a firewall rule')
@handle_errors
def fwrule(cli):
    return act(cli, FWRULE_ACTIONS, cli.args.target)


@noun_arguments('network', NETWORK_ACTIONS, 'NETWORK')
@cli.subcommand('list and reserve IPs of a network, or make it the default')
@handle_errors
def network(cli):
    return act(cli, NETWORK_ACTIONS, cli.args.target)


@noun_arguments('fabric VLAN', VLAN_ACTIONS, 'VLAN')
@cli.subcommand('list networks of a fabric VLAN or update it')
@handle_errors
def vlan(cli):
    return act(cli, VLAN_ACTIONS, cli.args.target)


@noun_arguments('VPC', VPC_ACTIONS, 'VPC')
@cli.subcommand('list networks of a VPC or update it')
@handle_errors
def vpc(cli):
    return act(cli, VPC_ACTIONS, cli.args.target)


@noun_arguments('volume', VOLUME_ACTIONS, 'VOLUME')
@cli.subcommand('update a volume or wait for it')
@handle_errors
def volume(cli):
    return act(cli, VOLUME_ACTIONS, cli.args.target)


@cli.argument('fields', arg_only=True, nargs='*', action=StoreDictKeyPair, default=None, metavar='FIELD', help="fields to update as key=value")
@cli.argument('-j', '--json', arg_only=True, action='store_true', help="print compact JSON")
@cli.argument('action', arg_only=True, choices=['get', 'limits', 'config', 'update'], help="what to show or change")
@cli.subcommand('show or update the account')
@handle_errors
def account(cli):
    """Show the account, its limits, or its config, or update it."""
    quiet_for_json(cli)
    with use_api(cli) as api:
        if cli.args.action == 'update':
            if not cli.args.fields:
                raise UsageError("nothing to update, give one or more key=value fields")
            result = api.account.update(**fields_from_args(cli.args.fields))
        elif cli.args.action == 'limits':
            result = api.account.limits()
        elif cli.args.action == 'config':
            result = api.account.config()
        else:
            result = api.account.get()
    echo_object(cli, result, compact=cli.args.json)
    return 0


@cli.argument('-j', '--json', arg_only=True, action='store_true', help="print the account and its instances as JSON")
@cli.subcommand('summarize the account and its instances')
@handle_errors
def info(cli):
    """Show who the profile logs in as and what its instances add up to."""
    quiet_for_json(cli)
    with use_api(cli) as api:
        summary = api.account.info()
        url = api.profile.url
    if cli.args.json:
        echo_object(cli, summary, compact=True)
    else:
        print("\n".join(account_summary(summary, url)))
    return 0


def response_head(res):
    """The status line and the headers of a response, as lines."""
    try:
        reason = HTTPStatus(res.status).phrase
    except ValueError:
        reason = ''
    return [f"HTTPS/1.1 {res.status} {reason}".rstrip()] + [f"{k}: {v}" for k, v in res.headers.items()]


@cli.argument('-i', '--headers', arg_only=True, action='store_true', help="print the response status and headers to stderr")
@cli.argument('path', arg_only=True, metavar='PATH', help="path below the CloudAPI URL, e.g. /my/machines")
@cli.argument('method', arg_only=True, metavar='METHOD', type=str.upper, choices=RAW_METHODS, help=f"one of {', '.join(RAW_METHODS)}")
@cli.subcommand('send a raw signed request to CloudAPI')
@handle_errors
def cloudapi(cli):
    """Print the JSON body of any CloudAPI path, e.g. `triton cloudapi GET /my/machines`."""
    if not cli.args.path.startswith('/'):
        raise UsageError(f"PATH must start with '/', got '{cli.args.path}'")
    with use_api(cli) as api:
        res = api.transport.request(cli.args.method, cli.args.path)
    if cli.args.headers or cli.args.method == 'HEAD':
        stderr.write("\n".join(response_head(res)) + "\n\n")
    if cli.args.method != 'HEAD':
        echo(cli, json_dumps(res.body, indent=4), json_lexer)
    return 0


def confirm_plan(cli, plan: list):
    """List the changes of an RBAC plan and ask to go ahead."""
    print("This will make the following RBAC config changes:")
    for change in plan:
        print(f"    {change}")
    if cli.args.yes:
        return True
    return confirm(f"Would you like to continue{' (dry-run)' if cli.args.dry_run else ''}?")


@cli.argument('-f', '--file', arg_only=True, default=RBAC_CONFIG_FILE, help=f"RBAC config file for apply, default is ./{RBAC_CONFIG_FILE}")
@cli.argument('-n', '--dry-run', arg_only=True, action='store_true', help="show the changes apply or reset would make, make none")
@cli.argument('-y', '--yes', arg_only=True, action='store_true', help="answer yes to the confirmation")
@cli.argument('action', arg_only=True, choices=['info', 'apply', 'reset'], help="show the RBAC state, apply a config file, or remove every user, policy, and role")
@cli.subcommand('show, apply, or reset the RBAC users, keys, policies, and roles of the account')
@handle_errors
def rbac(cli):
    """Manage RBAC as one config file, e.g. `triton rbac apply -f rbac.json`."""
    if cli.args.action == 'apply':
        rbac_config = load_rbac_config(cli.args.file)
    else:
        rbac_config = {'users': [], 'policies': [], 'roles': []}
    with use_api(cli) as api:
        state = load_rbac_state(api.cloudapi)
        if cli.args.action == 'info':
            print("\n".join(rbac_info_lines(state)))
            return 0
        plan = update_plan(rbac_config, state)
        if not plan:
            cli.log.info("RBAC config is up to date")
            return 0
        if not confirm_plan(cli, plan):
            cli.log.info("not changing the RBAC config")
            return 1
        PlanRunner(api.cloudapi, say=print, logger=api.logger).run(plan, dry_run=cli.args.dry_run)
    return 0


@cli.argument('tags', arg_only=True, nargs='*', help="role tags to set, none to show the current role tags")
@cli.argument('--clear', arg_only=True, action='store_true', help="remove every role tag")
@cli.argument('id', arg_only=True, metavar='ID_OR_NAME', help="id, short id, or name")
@cli.argument('resource_type', arg_only=True, help='type of resource', metavar="RESOURCE_TYPE", choices=KIND_CHOICES)
@cli.subcommand('show or set the RBAC role tags of a resource')
@handle_errors
def role_tags(cli):
    kind = get_kind(cli.args.resource_type)
    with use_api(cli) as api:
        facade = api.facade(kind)
        if cli.args.tags or cli.args.clear:
            facade.set_role_tags(cli.args.id, [] if cli.args.clear else cli.args.tags)
        tags = facade.role_tags(cli.args.id)
    for tag in tags:
        print(tag)
    return 0


def confirm(prompt: str, default: bool = False):
    """Ask a yes or no question; without a terminal the answer is no, so scripts pass --yes."""
    if not stdin.isatty():
        return False
    return questions.yesno(prompt, default=default)


def profile_rows(store: ConfigStore):
    current = store.current_name()
    rows = []
    for p in store.list():
        rows.append(['*' if p.name == current else '', p.name, p.account or '-', p.user or '-', p.url or '-'])
    return rows


def ask_profile(cli, name: str, template: Profile):
    """Prompt for the fields of a new profile."""
    if not stdin.isatty():
        raise UsageError("need url=, account=, and keyId= fields or a terminal to ask for them")
    name = name or questions.question('Profile name:', default=template.name if template else None)
    url = questions.question('CloudAPI URL:', default=template.url)
    account = questions.question('Account:', default=template.account)
    key_id = questions.question('SSH key fingerprint:', default=template.key_id)
    insecure = questions.yesno('Skip TLS certificate validation?', default=template.insecure)
    return Profile(name=name, url=url, account=account, key_id=key_id, insecure=insecure,
                   act_as_account=template.act_as_account, user=template.user, dcs=template.dcs)


@cli.argument('fields', arg_only=True, nargs='*', action=StoreDictKeyPair, default=None, metavar='FIELD',
              help=f"profile fields as key=value, one of {', '.join(PROFILE_FIELDS)}")
@cli.argument('--copy', arg_only=True, metavar='PROFILE', help="start a new profile from the fields of another")
@cli.argument('-y', '--yes', arg_only=True, action='store_true', help="answer yes to deleting a profile")
@cli.argument('-j', '--json', arg_only=True, action='store_true', help="print JSON")
@cli.argument('name', arg_only=True, nargs='?', help="profile name, default is the current profile; - is the previous one for set-current")
@cli.argument('action', arg_only=True, choices=['list', 'get', 'create', 'edit', 'delete', 'set-current'], help="what to do")
@cli.subcommand('list, get, create, edit, delete, or switch connection profiles')
@handle_errors
def profile(cli):
    """Manage the profiles in ~/.triton."""
    quiet_for_json(cli)
    store = use_store(cli)
    action = cli.args.action
    if action == 'list':
        if cli.args.json:
            current = store.current_name()
            for p in store.list():
                print(json_dumps(dict(p.to_dict(), curr=p.name == current)))
        else:
            echo_table(cli, profile_rows(store), ['curr', 'name', 'account', 'user', 'url'])
    elif action == 'get':
        name = cli.args.name or store.current_name()
        p = store.get(name)
        echo_object(cli, dict(p.to_dict(), curr=name == store.current_name()), compact=cli.args.json)
    elif action == 'create':
        unknown = [k for k in (cli.args.fields or {}) if k not in PROFILE_FIELDS]
        if unknown:
            raise UsageError(f"unknown profile fields: {', '.join(unknown)}")
        if cli.args.copy:
            template = store.get(cli.args.copy)
        else:
            template = Profile(name=None)
        if cli.args.fields or cli.args.copy:
            if not cli.args.name:
                raise UsageError("need a NAME for the new profile")
            data = dict(template.to_dict(with_name=False), **cli.args.fields or {})
            new_profile = Profile.from_dict(data, name=cli.args.name)
        else:
            new_profile = ask_profile(cli, cli.args.name, template)
        if store.exists(new_profile.name) and not (cli.args.yes or confirm(f"Replace profile '{new_profile.name}'?")):
            cli.log.info("not replacing the profile")
            return 1
        store.save(new_profile)
        cli.log.info(f"Saved profile '{new_profile.name}'")
        if store.current_name() != new_profile.name and (cli.args.yes or confirm(f"Make '{new_profile.name}' the current profile?", default=True)):
            store.set_current(new_profile.name)
    elif action == 'edit':
        name = cli.args.name or store.current_name()
        edited = store.edit(name, run=partial(cli.run, capture_output=False),
                            retry=lambda e: questions.yesno(f"{e}, edit again?", default=True))
        if edited:
            cli.log.info(f"Saved profile '{name}'")
        else:
            cli.log.info(f"No change to profile '{name}'")
    elif action == 'delete':
        if not cli.args.name:
            raise UsageError("need the NAME of the profile to delete")
        if not (cli.args.yes or confirm(f"Delete profile '{cli.args.name}'?")):
            cli.log.info("not deleting the profile")
            return 1
        store.delete(cli.args.name)
        cli.log.info(f"Deleted profile '{cli.args.name}'")
    elif action == 'set-current':
        if not cli.args.name:
            raise UsageError("need the NAME of the profile to make current, or -")
        name = store.set_current(cli.args.name)
        cli.log.info(f"Set '{name}' as current profile")
    return 0


@cli.argument('--unset', arg_only=True, action='store_true', help="print commands that unset the variables instead")
@cli.argument('name', arg_only=True, nargs='?', help="profile name, default is the current profile")
@cli.subcommand('print shell commands that export a profile as TRITON_* variables')
@handle_errors
def env(cli):
    """Emit `export` lines for `eval "$(triton env)"`."""
    names = ['TRITON_PROFILE', 'TRITON_URL', 'TRITON_ACCOUNT', 'TRITON_KEY_ID', 'TRITON_TLS_INSECURE']
    if cli.args.unset:
        lines = [f"unset {var}" for var in names]
    else:
        store = use_store(cli)
        name = cli.args.name or store.current_name()
        p = store.get(name)
        lines = [f'export TRITON_PROFILE="{name}"'] if name != ENV_PROFILE_NAME else []
        lines.extend([
            f'export TRITON_URL="{p.url}"',
            f'export TRITON_ACCOUNT="{p.account}"',
            f'export TRITON_KEY_ID="{p.key_id}"',
        ])
        if p.insecure:
            lines.append('export TRITON_TLS_INSECURE="1"')
        else:
            lines.append('unset TRITON_TLS_INSECURE')
    echo(cli, "\n".join(lines), bash_lexer)
    return 0


yaml_lexer = get_lexer_by_name("yaml", stripall=True)
json_lexer = get_lexer_by_name("json", stripall=True)
bash_lexer = get_lexer_by_name("bash", stripall=True)
cwd = path.dirname(__file__)
text_lexer_filename = path.join(cwd, "table_lexer.py")
text_lexer = load_lexer_from_file(text_lexer_filename, "TritonTableLexer")

if __name__ == '__main__':
    cli()
