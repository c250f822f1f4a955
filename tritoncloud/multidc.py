"""List resources across several datacenters in parallel."""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from urllib.parse import urlparse

from .exceptions import Canceled, MultiError, TritonError
from .logger_base import get_logger
from .utility import DEFAULT_CONCURRENCY, Cancellation, get_kind


def datacenter_name(url: str):
    """Name a datacenter by the first label of its endpoint host, e.g. us-east-1."""
    host = urlparse(url).hostname or url
    return host.split('.')[0]


class MultiDcLister:
    """Fan a list call out to every datacenter of a profile.

    Items come back tagged with the ``dc`` they were listed from. A failing
    datacenter never costs the items of the others: its error is collected
    into a MultiError returned beside the items.

    :param make_api: callable taking a datacenter URL and returning a CloudApi for it
    :param dcs: datacenter endpoint URLs
    :param concurrency: most datacenters listed at once
    :param cancel: Cancellation shared with the transports of make_api
    """

    def __init__(self, make_api, dcs: list, concurrency: int = DEFAULT_CONCURRENCY, cancel: Cancellation = None,
                 logger: logging.Logger = None):
        self.make_api = make_api
        self.dcs = list(dcs)
        self.concurrency = max(1, concurrency)
        self.cancel = cancel or Cancellation()
        self.logger = get_logger(__name__, logger)

    def _list_one(self, dc: str, kind, query: dict):
        self.cancel.check(f"listing {kind.name} in {dc}")
        api = self.make_api(dc)
        try:
            return api.list_resources(kind, query=query)
        finally:
            api.transport.close()

    def list(self, kind, query: dict = None, dc_error=None):
        """List a kind in every datacenter.

        :param kind: a ResourceType or kind name
        :param query: list filters sent to every datacenter
        :param dc_error: optional callback(dc name, error) called as each datacenter fails
        :returns: (items in datacenter order, MultiError or None)
        """
        kind = get_kind(kind) if isinstance(kind, str) else kind
        per_dc = dict()
        errors = list()
        if not self.dcs:
            return list(), None
        with ThreadPoolExecutor(max_workers=min(self.concurrency, len(self.dcs))) as executor:
            futures = {executor.submit(self._list_one, dc, kind, query): dc for dc in self.dcs}
            for future in as_completed(futures):
                dc = futures[future]
                name = datacenter_name(dc)
                try:
                    items = future.result()
                except Canceled:
                    for other in futures:
                        other.cancel()
                    raise
                except TritonError as e:
                    e.dc = name
                    errors.append(e)
                    self.logger.debug(f"listing {kind.name} in {name} failed, caught {e}")
                    if dc_error:
                        dc_error(name, e)
                    continue
                for item in items:
                    item['dc'] = name
                per_dc[dc] = items
                self.logger.debug(f"listed {len(items)} {kind.name} in {name}")
        merged = list()
        for dc in self.dcs:
            merged.extend(per_dc.get(dc, list()))
        return merged, (MultiError(errors) if errors else None)
