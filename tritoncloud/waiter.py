"""Poll resources until they reach an expected state."""

import logging

from .exceptions import NotFound, ServerError, TransportError, UsageError, WaitTimeout
from .logger_base import get_logger
from .utility import (DEFAULT_POLL_INTERVAL, DEFAULT_WAIT_TIMEOUT, MAX_POLL_INTERVAL, TRANSPORT_FAILURE_WINDOW, Cancellation, Clock, get_kind,
                      parse_timestamp)

BACKOFF_FACTOR = 1.5          # poll interval growth after a failed poll
GONE_STATUSES = (410,)        # CloudAPI answers 410 for a deleted instance
GONE_OR_MISSING = (404, 410)  # kinds whose deleted members simply vanish
MIGRATION_DONE_STATES = ('successful', 'failed')


def describe(resource, field: str):
    if resource is None:
        return 'nothing observed yet'
    return f"last {field} was '{resource.get(field)}'"


class Waiter:
    """Long-poll CloudAPI resources.

    Every wait shares one loop: fetch, test, sleep the poll interval, stop at
    the deadline. A failing poll (5xx or transport error) stretches the
    interval toward MAX_POLL_INTERVAL and the wait gives up once polls have
    failed without a break for TRANSPORT_FAILURE_WINDOW seconds.

    :param api: a CloudApi
    :param clock: time source and sleeper, tests substitute a fake
    :param cancel: Cancellation shared with the transport
    """

    def __init__(self, api, clock: Clock = None, cancel: Cancellation = None, logger: logging.Logger = None):
        self.api = api
        self.clock = clock or Clock()
        self.cancel = cancel or Cancellation()
        self.logger = get_logger(__name__, logger)

    def poll(self, fetch, done, what: str, field: str = 'state', gone=None,
             timeout: float = DEFAULT_WAIT_TIMEOUT, poll_interval: float = DEFAULT_POLL_INTERVAL,
             cancel: Cancellation = None):
        """Call fetch until done(result) is true.

        :param fetch: callable returning the current snapshot
        :param done: predicate on the snapshot
        :param what: description for logs and errors, e.g. "instance 5e8d5d3e"
        :param field: the field reported on timeout
        :param gone: optional callable taking (NotFound, last snapshot) and returning a
            final snapshot, or None to let the NotFound propagate
        :param timeout: seconds before WaitTimeout
        :param poll_interval: seconds between polls
        :param cancel: overrides the waiter's Cancellation
        """
        cancel = cancel or self.cancel
        if timeout is None or timeout <= 0:
            raise UsageError(f"wait timeout must be positive, got {timeout}")
        if poll_interval <= 0:
            raise UsageError(f"poll interval must be positive, got {poll_interval}")
        deadline = self.clock.now() + timeout
        interval = poll_interval
        failing_since = None
        last = None
        self.logger.debug(f"waiting up to {timeout}s for {what}")
        while True:
            cancel.check(f"waiting for {what}")
            try:
                current = fetch()
            except NotFound as e:
                final = gone(e, last) if gone else None
                if final is None:
                    raise
                self.logger.debug(f"{what} is gone (HTTP {e.status})")
                return final
            except (ServerError, TransportError, WaitTimeout) as e:
                if isinstance(e, ServerError) and (e.status or 0) < 500:
                    raise
                if isinstance(e, WaitTimeout) and e.code != 'RequestTimeout':
                    raise
                now = self.clock.now()
                failing_since = failing_since if failing_since is not None else now
                if now - failing_since >= TRANSPORT_FAILURE_WINDOW:
                    raise TransportError(f"gave up waiting for {what} after {TRANSPORT_FAILURE_WINDOW}s of failed polls, caught {e}", cause=e)
                interval = min(interval * BACKOFF_FACTOR, MAX_POLL_INTERVAL)
                self.logger.debug(f"poll of {what} failed, next poll in {interval:.1f}s, caught {e}")
            else:
                last = current
                failing_since = None
                interval = poll_interval
                if done(current):
                    return current
                if isinstance(current, dict):
                    self.logger.debug(f"{what} has {field} '{current.get(field)}', still waiting")

            remaining = deadline - self.clock.now()
            if remaining <= 0:
                raise WaitTimeout(f"timed out after {timeout}s waiting for {what} ({describe(last, field)})", last=last)
            self.clock.sleep(min(interval, remaining), cancel)

    def wait_for_state(self, kind, id: str, states, parent_id: str = None, gone_statuses: tuple = GONE_STATUSES, **kwargs):
        """Poll GET of one resource until its state is one of states.

        When 'deleted' is expected, a response with a status in gone_statuses
        counts as reaching it and the last snapshot is returned with state
        'deleted'. A terminal state like 'failed' is returned, not raised.
        """
        kind = get_kind(kind) if isinstance(kind, str) else kind
        states = (states,) if isinstance(states, str) else tuple(states)
        field = kind.state_field or 'state'

        def gone(error, last):
            if 'deleted' not in states or error.status not in gone_statuses:
                return None
            final = dict(last or {kind.id_field: id})
            final[field] = 'deleted'
            return final

        return self.poll(
            fetch=lambda: self.api.get_resource(kind, id, parent_id=parent_id),
            done=lambda r: r.get(field) in states,
            what=f"{kind.name} {id} to be {'|'.join(states)}",
            field=field,
            gone=gone,
            **kwargs)

    def wait_for_machine_states(self, id: str, states=('running', 'failed'), **kwargs):
        return self.wait_for_state('instances', id, states, **kwargs)

    def wait_for_image_states(self, id: str, states=('active', 'failed'), **kwargs):
        return self.wait_for_state('images', id, states, **kwargs)

    def wait_for_volume_states(self, id: str, states=('ready', 'failed'), **kwargs):
        return self.wait_for_state('volumes', id, states, gone_statuses=GONE_OR_MISSING, **kwargs)

    def wait_for_snapshot_states(self, machine_id: str, name: str, states=('created', 'failed'), **kwargs):
        return self.wait_for_state('snapshots', name, states, parent_id=machine_id, gone_statuses=GONE_OR_MISSING, **kwargs)

    def wait_for_nic_states(self, machine_id: str, mac: str, states=('running', 'failed'), **kwargs):
        return self.wait_for_state('nics', mac, states, parent_id=machine_id, gone_statuses=GONE_OR_MISSING, **kwargs)

    def wait_for_field(self, kind, id: str, field: str, value, parent_id: str = None, **kwargs):
        """Poll until a field of the resource equals value, e.g. firewall_enabled."""
        kind = get_kind(kind) if isinstance(kind, str) else kind
        return self.poll(
            fetch=lambda: self.api.get_resource(kind, id, parent_id=parent_id),
            done=lambda r: r.get(field) == value,
            what=f"{kind.name} {id} to have {field}={value}",
            field=field,
            **kwargs)

    def wait_for_firewall_enabled(self, id: str, enabled: bool = True, **kwargs):
        return self.wait_for_field('instances', id, 'firewall_enabled', enabled, **kwargs)

    def wait_for_deletion_protection(self, id: str, enabled: bool = True, **kwargs):
        return self.wait_for_field('instances', id, 'deletion_protection', enabled, **kwargs)

    def wait_for_firewall_rule_enabled(self, id: str, enabled: bool = True, **kwargs):
        return self.wait_for_field('fwrules', id, 'enabled', enabled, **kwargs)

    def wait_for_disk_create(self, machine_id: str, known_ids, size=None, **kwargs):
        """Poll the instance's disks until a disk not in known_ids is no longer creating.

        :param known_ids: ids of the disks that existed before the add
        :param size: requested size in MiB, or "remaining" to accept any size
        """
        known_ids = set(known_ids)

        def fetch():
            new = [d for d in self.api.list_machine_disks(machine_id) if d.get('id') not in known_ids]
            return new[0] if new else {'state': 'absent'}

        def done(disk):
            if disk.get('state') in ('absent', 'creating'):
                return False
            return size in (None, 'remaining') or disk.get('size') == size

        return self.poll(fetch=fetch, done=done, what=f"new disk on instance {machine_id}", **kwargs)

    def wait_for_disk_delete(self, machine_id: str, disk_id: str, **kwargs):
        """Poll until the disk is gone; NotFound is the success."""
        return self.poll(
            fetch=lambda: self.api.get_machine_disk(machine_id, disk_id),
            done=lambda d: False,
            what=f"disk {disk_id} of instance {machine_id} to be deleted",
            gone=lambda e, last: dict(last or {'id': disk_id}, state='deleted'),
            **kwargs)

    def wait_for_disk_resize(self, machine_id: str, disk_id: str, size: int, **kwargs):
        return self.poll(
            fetch=lambda: self.api.get_machine_disk(machine_id, disk_id),
            done=lambda d: d.get('size') == size and d.get('state') != 'resizing',
            what=f"disk {disk_id} of instance {machine_id} to be {size} MiB",
            **kwargs)

    def wait_for_migration(self, machine_id: str, phase: str = None, states=MIGRATION_DONE_STATES, **kwargs):
        """Poll a migration until its latest progress entry, of phase if given, is in states."""
        states = tuple(states)

        def latest(migration):
            history = [p for p in migration.get('progress_history') or list() if phase is None or p.get('phase') == phase]
            return history[-1] if history else dict()

        return self.poll(
            fetch=lambda: self.api.get_migration(machine_id),
            done=lambda m: latest(m).get('state') in states,
            what=f"migration of instance {machine_id}" + (f" phase {phase}" if phase else ''),
            **kwargs)

    def wait_for_audit(self, machine_id: str, action: str, after=None, **kwargs):
        """Poll the audit log until an entry for action newer than after appears.

        :param after: aware datetime or ISO-8601 timestamp of the latest entry seen before the action, None accepts any entry
        :returns: the audit entry
        """
        after = parse_timestamp(after) if after else None

        def fetch():
            entries = [a for a in self.api.machine_audit(machine_id) or list()
                       if a.get('action') == action and a.get('time') and (after is None or parse_timestamp(a['time']) > after)]
            return entries[0] if entries else dict()

        return self.poll(fetch=fetch, done=bool, what=f"audit of {action} on instance {machine_id}", field='action', **kwargs)
