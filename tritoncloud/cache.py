"""Best-effort on-disk cache of slow-changing list payloads.

Entries live at ``<cache root>/<profile digest>/<kind>.json`` and hold the
full list returned by a list call. The file mtime is the TTL reference. A
missing, stale, or garbled file is a miss; write failures are logged and
swallowed.
"""

import hashlib
import json
import logging
import time
from json import JSONDecodeError
from pathlib import Path

from .logger_base import get_logger
from .utility import RESOURCES, write_text_atomic


def profile_digest(url: str, account: str, key_id: str):
    """Namespace cache entries by endpoint and identity."""
    return hashlib.sha1(f"{url}\n{account}\n{key_id}".encode('utf-8')).hexdigest()


class ListCache:
    """Per-profile, per-kind list cache.

    :param root: cache root, e.g. ~/.triton/cache
    :param profile: the Profile whose url, account, and keyId key the namespace
    :param ttls: optional kind -> seconds overrides, 0 disables a kind
    :param enabled: False turns every get into a miss and every put into a no-op
    """

    def __init__(self, root, profile, ttls: dict = None, enabled: bool = True, logger: logging.Logger = None, clock=time.time):
        self.logger = get_logger(__name__, logger)
        self.dir = Path(root) / profile_digest(profile.url, profile.account, profile.key_id)
        self.ttls = {name: kind.cache_ttl for name, kind in RESOURCES.items()}
        self.ttls.update(ttls or dict())
        self.enabled = enabled
        self.clock = clock

    def path(self, kind: str):
        return self.dir / f"{kind}.json"

    def get(self, kind: str):
        """Return the cached list, or None on a miss."""
        ttl = self.ttls.get(kind, 0)
        if not self.enabled or not ttl:
            return None
        path = self.path(kind)
        try:
            age = self.clock() - path.stat().st_mtime
            if age > ttl:
                self.logger.debug(f"cache for {kind} is stale ({age:.0f}s > {ttl}s)")
                return None
            data = json.loads(path.read_text(encoding='utf-8'))
        except FileNotFoundError:
            return None
        except (OSError, JSONDecodeError, UnicodeDecodeError) as e:
            self.logger.debug(f"ignoring unreadable cache file {path}, caught {e}")
            return None
        if not isinstance(data, list):
            self.logger.debug(f"ignoring cache file {path} that does not hold a list")
            return None
        self.logger.debug(f"cache hit for {kind} ({len(data)} items)")
        return data

    def put(self, kind: str, items: list):
        """Store a list payload; failures are logged and ignored."""
        if not self.enabled or not self.ttls.get(kind, 0):
            return False
        try:
            write_text_atomic(self.path(kind), json.dumps(items))
        except (OSError, TypeError, ValueError) as e:
            self.logger.warning(f"failed to write cache for {kind}, caught {e}")
            return False
        self.logger.debug(f"cached {len(items)} {kind} in {self.path(kind)}")
        return True

    def invalidate(self, kind: str):
        """Drop the entry for a kind after a mutation."""
        try:
            self.path(kind).unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            self.logger.warning(f"failed to invalidate cache for {kind}, caught {e}")
            return False
        self.logger.debug(f"invalidated cache for {kind}")
        return True
