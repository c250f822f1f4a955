"""Presenters that add computed columns to resources for tables.

A View carries the raw resource and the computed fields beside it; JSON
output keeps using the raw resource.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from .utility import get_kind, human_size_from_mib, long_ago, short_id


@dataclass
class View:
    """A resource plus computed fields like shortid, age, and flags."""

    raw: dict
    fields: dict = field(default_factory=dict)

    def get(self, column: str, default=None):
        if column in self.fields:
            return self.fields[column]
        return self.raw.get(column, default)

    def row(self, columns: list):
        return [cell(self.get(c)) for c in columns]


def cell(value):
    """Render one table cell."""
    if value is None:
        return '-'
    elif isinstance(value, bool):
        return 'true' if value else 'false'
    elif isinstance(value, list):
        return ','.join(str(cell(v)) for v in value)
    elif isinstance(value, dict):
        return ','.join(f"{k}={cell(v)}" for k, v in value.items())
    return value


def instance_flags(inst: dict):
    """D docker, F firewall enabled, K kvm brand, P deletion protection."""
    flags = ''
    if inst.get('docker'):
        flags += 'D'
    if inst.get('firewall_enabled'):
        flags += 'F'
    if inst.get('brand') == 'kvm':
        flags += 'K'
    if inst.get('deletion_protection'):
        flags += 'P'
    return flags or None


def image_flags(img: dict):
    """I incremental (has an origin), P public, X not active."""
    flags = ''
    if img.get('origin'):
        flags += 'I'
    if img.get('public'):
        flags += 'P'
    if img.get('state') != 'active':
        flags += 'X'
    return flags or None


def image_label(image: dict):
    return f"{image.get('name')}@{image.get('version')}"


def _common(kind, resource: dict, now: datetime):
    fields = dict()
    id_value = resource.get(kind.id_field)
    if kind.short_ids and isinstance(id_value, str):
        fields['shortid'] = short_id(id_value)
    created = resource.get('created') or resource.get('created_timestamp')
    if created:
        try:
            fields['age'] = long_ago(created, now=now)
        except ValueError:
            fields['age'] = None
    return fields


def present_instance(inst: dict, fields: dict, images: dict):
    fields['flags'] = instance_flags(inst)
    image = images.get(inst.get('image'))
    fields['img'] = image_label(image) if image else short_id(inst.get('image'))


def present_image(img: dict, fields: dict, images: dict):
    fields['flags'] = image_flags(img)
    if img.get('published_at'):
        fields['pubdate'] = img['published_at'][:10]


def present_package(pkg: dict, fields: dict, images: dict):
    for size in ('memory', 'swap', 'disk'):
        if isinstance(pkg.get(size), int):
            fields[size] = human_size_from_mib(pkg[size])


def present_volume(vol: dict, fields: dict, images: dict):
    if isinstance(vol.get('size'), int):
        fields['size'] = human_size_from_mib(vol['size'])


def present_disk(disk: dict, fields: dict, images: dict):
    if isinstance(disk.get('size'), int):
        fields['size'] = human_size_from_mib(disk['size'])


def present_policy(policy: dict, fields: dict, images: dict):
    fields['nrules'] = len(policy.get('rules') or list())


PRESENTERS = {
    'instances': present_instance,
    'images': present_image,
    'packages': present_package,
    'volumes': present_volume,
    'disks': present_disk,
    'policies': present_policy,
}


def present(kind, resource: dict, images: dict = None, now: datetime = None, human: bool = True):
    """Wrap a resource in a View with the computed columns of its kind.

    :param kind: a ResourceType or kind name
    :param images: optional image id -> image, used to show instance images as name@version
    :param now: reference time for age, default is now
    :param human: express sizes like memory with units instead of raw MiB
    """
    kind = get_kind(kind) if isinstance(kind, str) else kind
    now = now or datetime.now(timezone.utc)
    fields = _common(kind, resource, now)
    presenter = PRESENTERS.get(kind.name)
    if presenter:
        presenter(resource, fields, images or dict())
    if not human:
        for size in ('memory', 'swap', 'disk', 'size'):
            if size in fields and size in resource:
                fields.pop(size)
    return View(raw=resource, fields=fields)


def sort_value(view: View, column: str):
    """Order numbers numerically, everything else as text, and missing values last."""
    value = view.raw.get(column, view.get(column))
    if value is None:
        return (2, 0, '')
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, value, '')
    return (1, 0, str(value))


def sort_views(views: list, columns: list):
    """Sort views by each column in turn, a leading '-' sorts that column descending."""
    for column in reversed(columns):
        name = column.lstrip('-')
        views = sorted(views, key=lambda v: sort_value(v, name), reverse=column.startswith('-'))
    return views


def account_summary(info: dict, url: str):
    """Lines summarizing an account and its instances, as returned by Account.info.

    Instance states are counted in the order they are first seen; memory and
    disk are totalled from the MiB the instances report.
    """
    account = info['account']
    machines = info['machines']
    full_name = ' '.join(n for n in (account.get('firstName'), account.get('lastName')) if n)
    lines = [
        f"{account.get('login')} - {full_name} <{account.get('email')}>",
        url,
        '',
        f"{len(machines)} instance(s)",
    ]
    states = dict()
    for machine in machines:
        states[machine.get('state')] = states.get(machine.get('state'), 0) + 1
    for state, count in states.items():
        lines.append(f"- {count} {state}")
    lines.append(f"- {human_size_from_mib(sum(m.get('memory') or 0 for m in machines))} RAM Total")
    lines.append(f"- {human_size_from_mib(sum(m.get('disk') or 0 for m in machines))} Disk Total")
    return lines
