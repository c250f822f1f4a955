"""Turn a user-supplied identifier into one resource.

Identifiers are tried in this order: a full UUID fetched directly, an exact
name through the server-side name filter, then name and short id matches in
a full listing of the kind.
"""

import logging

from .cache import ListCache
from .exceptions import AmbiguousName, AmbiguousShortId, NotFound
from .logger_base import get_logger
from .utility import get_kind, is_uuid, normalize_short_id, singular


def published_at(resource: dict):
    return resource.get('published_at') or ''


def id_key(kind, value):
    """Compare ids as text; MAC addresses with or without colons are the same id."""
    if kind.name == 'nics':
        return str(value).replace(':', '').lower()
    return str(value)


class Resolver:
    """Resolve ids, short ids, and names of any resource kind.

    :param api: a CloudApi
    :param cache: optional ListCache for cacheable kinds
    """

    def __init__(self, api, cache: ListCache = None, logger: logging.Logger = None):
        self.api = api
        self.cache = cache
        self.logger = get_logger(__name__, logger)

    def list_all(self, kind, include_inactive: bool = False, use_cache: bool = True, parent_id: str = None):
        """List every resource of a kind, by way of the cache where the kind allows it.

        Images are listed with state=all when inactive images are wanted; only
        the default listing is cached.
        """
        return self._list(kind, include_inactive=include_inactive, use_cache=use_cache, parent_id=parent_id)[0]

    def _list(self, kind, include_inactive: bool, use_cache: bool, parent_id: str):
        kind = get_kind(kind) if isinstance(kind, str) else kind
        query = None
        if include_inactive and kind.inactive == 'state':
            query = {'state': 'all'}
        cacheable = self.cache is not None and query is None and parent_id is None and kind.cache_ttl
        if cacheable and use_cache:
            cached = self.cache.get(kind.name)
            if cached is not None:
                return cached, True
        items = self.api.list_resources(kind, query=query, parent_id=parent_id)
        if cacheable:
            self.cache.put(kind.name, items)
        return items, False

    def resolve(self, kind, user_input: str, include_inactive: bool = False, use_cache: bool = True, parent_id: str = None):
        """Find exactly one resource for an id, short id, or name.

        :param kind: a ResourceType or a kind name e.g. images
        :param user_input: full id, short id prefix of at least four characters, or exact name
        :param include_inactive: consider inactive images and packages too
        :param use_cache: allow a cached listing; a miss there is retried against the server
        :param parent_id: id of the owning resource for kinds like nics and disks
        """
        kind = get_kind(kind) if isinstance(kind, str) else kind
        user_input = str(user_input).strip()

        if kind.short_ids and is_uuid(user_input):
            try:
                resource = self.api.get_resource(kind, user_input.lower(), parent_id=parent_id)
            except NotFound:
                self.logger.debug(f"no {kind.name} has id {user_input}, trying names")
            else:
                if include_inactive or kind.is_active(resource):
                    return resource
                raise NotFound(f"{singular(kind.name)} {user_input} is not active")

        if kind.name_filter:
            matches = [r for r in self.api.list_resources(kind, query={kind.name_field: user_input}, parent_id=parent_id)
                       if r.get(kind.name_field) == user_input and (include_inactive or kind.is_active(r))]
            if len(matches) == 1:
                return matches[0]
            elif len(matches) > 1 and not kind.latest_wins:
                raise AmbiguousName(kind.name, user_input, matches)
            elif kind.short_ids and normalize_short_id(user_input) is None:
                # the name filter already saw every name match
                raise NotFound(f"no {kind.name} with name or short id \"{user_input}\" was found")

        items, cached = self._list(kind, include_inactive=include_inactive, use_cache=use_cache, parent_id=parent_id)
        try:
            return self._match(kind, user_input, items, include_inactive=include_inactive)
        except NotFound:
            if not cached:
                raise
        self.logger.debug(f"{user_input} not found in cached {kind.name}, listing again")
        items, _ = self._list(kind, include_inactive=include_inactive, use_cache=False, parent_id=parent_id)
        return self._match(kind, user_input, items, include_inactive=include_inactive)

    def _match(self, kind, user_input: str, items: list, include_inactive: bool):
        if not include_inactive:
            items = [r for r in items if kind.is_active(r)]

        name_matches = list()
        if kind.name_field:
            if kind.latest_wins and '@' in user_input:
                name, version = user_input.rsplit('@', 1)
                name_matches = [r for r in items if r.get(kind.name_field) == name and r.get('version') == version]
            else:
                name_matches = [r for r in items if r.get(kind.name_field) == user_input]
        if len(name_matches) == 1:
            return name_matches[0]
        elif len(name_matches) > 1:
            if kind.latest_wins:
                latest = sorted(name_matches, key=published_at)[-1]
                self.logger.debug(f"{len(name_matches)} {kind.name} named {user_input}, using the latest {latest.get(kind.id_field)}")
                return latest
            raise AmbiguousName(kind.name, user_input, name_matches)

        if not kind.short_ids:
            wanted = id_key(kind, user_input)
            id_matches = [r for r in items if id_key(kind, r.get(kind.id_field)) == wanted]
            if id_matches:
                return id_matches[0]
            raise NotFound(f"no {kind.name} with id \"{user_input}\" was found")

        prefix = normalize_short_id(user_input)
        short_matches = list()
        if prefix:
            short_matches = [r for r in items if str(r.get(kind.id_field, '')).lower().startswith(prefix)]
        if len(short_matches) == 1:
            return short_matches[0]
        elif len(short_matches) > 1:
            raise AmbiguousShortId(kind.name, user_input, short_matches)
        raise NotFound(f"no {kind.name} with name or short id \"{user_input}\" was found")

    def resolve_id(self, kind, user_input: str, **kwargs):
        """Resolve and return only the id."""
        kind = get_kind(kind) if isinstance(kind, str) else kind
        return self.resolve(kind, user_input, **kwargs)[kind.id_field]
