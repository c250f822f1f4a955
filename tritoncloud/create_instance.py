"""Assemble and send an instance create request from its many option sources."""

import logging
from dataclasses import dataclass, field

from .exceptions import UsageError
from .logger_base import get_logger
from .metadata import affinity_rules, disks_from_args, metadata_from_opts, parse_affinity, tags_from_opts
from .utility import DRY_RUN_INSTANCE_ID, human_duration

DRY_RUN_NAME = 'this-is-a-dry-run'
DRY_RUN_WAIT = 5  # seconds


@dataclass
class CreateInstanceOptions:
    """Options of one instance create.

    :param image: image id, short id, name, or name@version
    :param package: package id, short id, or name
    :param metadata: (option, value) pairs in command-line order, option is one of metadata, metadata_file, script
    :param tags: -t arguments in order
    :param networks: network ids, short ids, or names
    :param affinity: rules like inst!=db0
    :param disks: --disks arguments, JSON or @file
    """

    image: str
    package: str = None
    name: str = None
    metadata: list = field(default_factory=list)
    tags: list = field(default_factory=list)
    networks: list = field(default_factory=list)
    affinity: list = field(default_factory=list)
    firewall: bool = None
    deletion_protection: bool = None
    disks: list = field(default_factory=list)
    brand: str = None
    volumes: list = field(default_factory=list)
    dry_run: bool = False
    wait: bool = False
    wait_timeout: float = None


class CreateInstance:
    """Run the create steps in order; each step adds to the request body.

    :param api: a TritonApi
    :param progress: optional callable taking a line of human progress text
    :param warn: optional callable taking a duplicate-key warning
    """

    def __init__(self, api, progress=None, warn=None, logger: logging.Logger = None):
        self.api = api
        self.progress = progress or (lambda line: None)
        self.warn = warn
        self.logger = get_logger(__name__, logger or api.logger)
        self.image = None
        self.package = None

    def request_body(self, opts: CreateInstanceOptions):
        """Build the create request without sending it."""
        metadata = metadata_from_opts(opts.metadata, warn=self.warn)
        tags = tags_from_opts(opts.tags, warn=self.warn)
        self.image = self.api.images.get(opts.image)
        self.logger.debug(f"create will use image {self.image['name']}@{self.image['version']} ({self.image['id']})")
        body = {'image': self.image['id']}
        if opts.package:
            self.package = self.api.packages.get(opts.package)
            body['package'] = self.package['id']
        if opts.name:
            body['name'] = opts.name
        if opts.networks:
            body['networks'] = [self.api.networks.resolve_id(n) for n in opts.networks]
        if opts.affinity:
            body['affinity'] = affinity_rules(parse_affinity(opts.affinity), self.api.instances.resolve_id)
        if opts.firewall is not None:
            body['firewall_enabled'] = opts.firewall
        if opts.deletion_protection is not None:
            body['deletion_protection'] = opts.deletion_protection
        if opts.brand:
            body['brand'] = opts.brand
        if opts.volumes:
            body['volumes'] = [self._volume(v) for v in opts.volumes]
        disks = disks_from_args(opts.disks)
        if disks:
            body['disks'] = disks
        for key, value in metadata.items():
            body[f"metadata.{key}"] = value
        for key, value in tags.items():
            body[f"tag.{key}"] = value
        return body

    def _volume(self, spec: str):
        """Turn NAME[@MOUNTPOINT[:MODE]] into a volume mount."""
        name, _, rest = spec.partition('@')
        if not name:
            raise UsageError(f"invalid volume: '{spec}'")
        volume = {'name': name, 'type': 'tritonnfs'}
        if rest:
            mountpoint, _, mode = rest.partition(':')
            volume['mountpoint'] = mountpoint
            if mode:
                if mode not in ('ro', 'rw'):
                    raise UsageError(f"invalid volume mode '{mode}' in '{spec}', expected ro or rw")
                volume['mode'] = mode
        return volume

    def run(self, opts: CreateInstanceOptions):
        """Create the instance; with opts.wait, return it once running or failed.

        A dry run resolves everything and builds the request but sends no POST.
        """
        clock = self.api.waiter.clock
        body = self.request_body(opts)
        start = clock.now()
        self.logger.trace(f"create instance request body: {body}")
        if opts.dry_run:
            instance = {'id': DRY_RUN_INSTANCE_ID, 'name': opts.name or DRY_RUN_NAME}
        else:
            instance = self.api.cloudapi.create_machine(body)
            self.api.instances.invalidate()
        label = f"{self.image['name']}@{self.image['version']}"
        if instance.get('package'):
            label += f", {instance['package']}"
        self.progress(f"Creating instance {instance.get('name')} ({instance.get('id')}, {label})")
        if not opts.wait:
            return instance

        if opts.dry_run:
            clock.sleep(DRY_RUN_WAIT, self.api.cancel)
            instance = dict(instance, state='running')
        else:
            kwargs = {'timeout': opts.wait_timeout} if opts.wait_timeout else dict()
            instance = self.api.waiter.wait_for_machine_states(instance['id'], ('running', 'failed'), **kwargs)
        if instance.get('state') != 'running':
            self.logger.debug(f"instance {instance.get('id')} ended in state '{instance.get('state')}'")
            return instance
        self.progress(f"Created instance {instance.get('name')} ({instance.get('id')}) in {human_duration(clock.now() - start)}")
        return instance


def create_instance(api, opts: CreateInstanceOptions, progress=None, warn=None):
    """Create an instance with the options; see CreateInstance."""
    return CreateInstance(api, progress=progress, warn=warn).run(opts)
