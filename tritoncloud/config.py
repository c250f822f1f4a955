"""Load, save, and edit named CloudAPI connection profiles.

On-disk layout, rooted at the config dir (default ``~/.triton``)::

    config.json              {"profile": "<current name>", "oldProfile": ..., ...}
    profiles.d/<name>.json   one profile per file
    cache/<digest>/...       see cache.py

The profile named ``env`` is synthetic: it is assembled from TRITON_* (or
legacy SDC_*) environment variables and is never written to disk.
"""

import json
import logging
import os
import re
import subprocess
import tempfile
from dataclasses import dataclass, field
from json import JSONDecodeError
from pathlib import Path
from stat import S_IRUSR, S_IWUSR, S_IXUSR
from urllib.parse import urlparse

from platformdirs import user_config_path

from .exceptions import ConfigError, NotFound, UsageError
from .logger_base import get_logger
from .utility import bool_from_string, dumps_sorted, write_text_atomic

ENV_PROFILE_NAME = 'env'
DEFAULT_PROFILE_NAME = ENV_PROFILE_NAME
PROFILE_NAME_RE = re.compile(r'^[A-Za-z0-9._-]+$')
MD5_FINGERPRINT_RE = re.compile(r'^(MD5:)?([0-9a-f]{2}:){15}[0-9a-f]{2}$', re.I)
SHA256_FINGERPRINT_RE = re.compile(r'^SHA256:[A-Za-z0-9+/]{43}=?$')

# profile attribute -> key in profiles.d/<name>.json
PROFILE_KEYS = {
    'url': 'url',
    'account': 'account',
    'key_id': 'keyId',
    'act_as_account': 'actAsAccount',
    'priv_key_path': 'privKeyPath',
    'user': 'user',
    'insecure': 'insecure',
    'dcs': 'dcs',
}
# env var names in order of precedence for each attribute
ENV_VARS = {
    'url': ('TRITON_URL', 'SDC_URL'),
    'account': ('TRITON_ACCOUNT', 'SDC_ACCOUNT'),
    'key_id': ('TRITON_KEY_ID', 'SDC_KEY_ID'),
    'user': ('TRITON_USER', 'SDC_USER'),
    'insecure': ('TRITON_TLS_INSECURE', 'SDC_TLS_INSECURE', 'SDC_TESTING'),
}
REQUIRED_ATTRS = ('url', 'account', 'key_id')


def default_config_dir(env: dict = None):
    """Find the config dir, ~/.triton unless HOME is unset."""
    env = os.environ if env is None else env
    if env.get('HOME'):
        return Path(env['HOME']) / '.triton'
    return user_config_path(appname='triton')


def is_valid_key_id(key_id: str):
    """Test if string is an MD5 (colon-separated hex) or SHA256 key fingerprint."""
    return bool(key_id and (MD5_FINGERPRINT_RE.match(key_id) or SHA256_FINGERPRINT_RE.match(key_id)))


@dataclass
class Profile:
    """A named CloudAPI endpoint and caller identity.

    :param name: unique profile name, ``env`` is reserved for the environment profile
    :param url: absolute https URL of CloudAPI
    :param account: login of the account that owns the resources
    :param key_id: fingerprint of the signing key
    :param act_as_account: operators may act as another account
    :param priv_key_path: path to the PEM private key, else the ssh-agent is used
    :param user: optional RBAC sub-user login
    :param insecure: skip TLS certificate validation
    :param dcs: optional ordered datacenter endpoint URLs for multi-DC listing
    """

    name: str
    url: str = None
    account: str = None
    key_id: str = None
    act_as_account: str = None
    priv_key_path: str = None
    user: str = None
    insecure: bool = False
    dcs: list = field(default_factory=list)
    extra: dict = field(default_factory=dict)   # unrecognized keys, preserved on save

    @classmethod
    def from_dict(cls, data: dict, name: str = None):
        """Build a profile from the JSON form."""
        if not isinstance(data, dict):
            raise ConfigError(f"profile '{name}' is not a JSON object")
        data = dict(data)
        name = name or data.get('name')
        data.pop('name', None)
        data.pop('curr', None)
        kwargs = dict()
        for attr, key in PROFILE_KEYS.items():
            if key in data:
                kwargs[attr] = data.pop(key)
        if 'insecure' in kwargs:
            try:
                kwargs['insecure'] = bool_from_string(kwargs['insecure'], name='insecure')
            except UsageError as e:
                raise ConfigError(f"invalid profile '{name}': {e}")
        if kwargs.get('dcs') is None:
            kwargs.pop('dcs', None)
        elif isinstance(kwargs['dcs'], str):
            kwargs['dcs'] = [dc.strip() for dc in kwargs['dcs'].split(',') if dc.strip()]
        return cls(name=name, extra=data, **kwargs)

    def to_dict(self, with_name: bool = True):
        """Render the JSON form, omitting unset attributes."""
        data = dict(self.extra)
        if with_name:
            data['name'] = self.name
        for attr, key in PROFILE_KEYS.items():
            value = getattr(self, attr)
            if value in (None, [], ''):
                continue
            if attr == 'insecure' and value is False:
                continue
            data[key] = value
        return data

    def validate(self):
        """Raise ConfigError unless this profile can be used to connect."""
        if not self.name or not PROFILE_NAME_RE.match(self.name):
            raise ConfigError(f"invalid profile name: '{self.name}'")
        missing = [PROFILE_KEYS[a] for a in REQUIRED_ATTRS if not getattr(self, a)]
        if missing:
            raise ConfigError(f"profile '{self.name}' is missing {', '.join(missing)}")
        url = urlparse(self.url)
        if url.scheme != 'https' or not url.netloc:
            raise ConfigError(f"profile '{self.name}' url is not an absolute https URL: '{self.url}'")
        if not is_valid_key_id(self.key_id):
            raise ConfigError(f"profile '{self.name}' keyId is not a key fingerprint: '{self.key_id}'")
        for dc in self.dcs:
            if not urlparse(dc).netloc:
                raise ConfigError(f"profile '{self.name}' datacenter is not an absolute URL: '{dc}'")
        return self

    def to_text(self):
        """Render the line-oriented key=value form used for editing."""
        lines = list()
        for key, value in sorted(self.to_dict(with_name=False).items()):
            if isinstance(value, list):
                value = ','.join(str(v) for v in value)
            elif isinstance(value, bool):
                value = 'true' if value else 'false'
            lines.append(f"{key}={value}")
        return '\n'.join(lines) + '\n'

    @classmethod
    def from_text(cls, text: str, name: str):
        """Parse the key=value form; '#' starts a comment."""
        data = dict()
        for lineno, line in enumerate(text.splitlines(), start=1):
            line = line.split('#', 1)[0].strip()
            if not line:
                continue
            if '=' not in line:
                raise ConfigError(f"line {lineno}: expected key=value, got '{line}'")
            key, value = line.split('=', 1)
            key, value = key.strip(), value.strip()
            if not key:
                raise ConfigError(f"line {lineno}: empty key")
            if key in ('name', 'curr'):
                continue
            data[key] = value
        return cls.from_dict(data, name=name)


@dataclass
class Config:
    """Process-wide resolved configuration handed to the client."""

    profile: Profile
    config_dir: Path
    logger: logging.Logger = None

    @property
    def cache_dir(self):
        return self.config_dir / 'cache'


class ConfigStore:
    """Named profiles and the current-profile pointer kept in a config dir.

    Not safe for concurrent writers; the CLI is single-user and takes no lock.

    :param config_dir: defaults to ~/.triton
    :param env: environment mapping, defaults to os.environ
    :param logger: optional logger, else a silent module logger
    """

    def __init__(self, config_dir=None, env: dict = None, logger: logging.Logger = None):
        self.env = os.environ if env is None else env
        self.config_dir = Path(config_dir) if config_dir else default_config_dir(self.env)
        self.logger = get_logger(__name__, logger)
        self.config_path = self.config_dir / 'config.json'
        self.profiles_dir = self.config_dir / 'profiles.d'

    def _ensure_dirs(self):
        try:
            for d in (self.config_dir, self.profiles_dir):
                d.mkdir(mode=S_IRUSR | S_IWUSR | S_IXUSR, parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"failed to create config dir '{self.config_dir}', caught {e}", cause=e)

    def _read_json(self, path: Path):
        try:
            return json.loads(path.read_text(encoding='utf-8'))
        except FileNotFoundError:
            return None
        except JSONDecodeError as e:
            raise ConfigError(f"failed to parse '{path}' as JSON, caught {e}", cause=e)
        except OSError as e:
            raise ConfigError(f"failed to read '{path}', caught {e}", cause=e)

    def load_config(self):
        """Return the global config.json object, empty if absent."""
        config = self._read_json(self.config_path)
        if config is None:
            return dict()
        if not isinstance(config, dict):
            raise ConfigError(f"'{self.config_path}' is not a JSON object")
        return config

    def set_config_vars(self, **kwargs):
        """Update keys of config.json; a None value removes the key."""
        config = self.load_config()
        for key, value in kwargs.items():
            if value is None:
                config.pop(key, None)
            else:
                config[key] = value
        self._ensure_dirs()
        write_text_atomic(self.config_path, dumps_sorted(config))
        self.logger.debug(f"updated {', '.join(kwargs.keys())} in {self.config_path}")

    def _profile_path(self, name: str):
        if not PROFILE_NAME_RE.match(name or ''):
            raise UsageError(f"invalid profile name: '{name}'")
        return self.profiles_dir / f"{name}.json"

    def env_profile(self):
        """Build the synthetic profile from environment variables."""
        kwargs = dict()
        for attr, names in ENV_VARS.items():
            for var in names:
                if self.env.get(var):
                    kwargs[attr] = self.env[var]
                    break
        if 'insecure' in kwargs:
            try:
                kwargs['insecure'] = bool_from_string(kwargs['insecure'], name='TRITON_TLS_INSECURE')
            except UsageError as e:
                raise ConfigError(str(e))
        if self.env.get('TRITON_DCS'):
            kwargs['dcs'] = [dc.strip() for dc in self.env['TRITON_DCS'].split(',') if dc.strip()]
        return Profile(name=ENV_PROFILE_NAME, **kwargs)

    def names(self):
        """Return the names of persisted profiles, sorted."""
        if not self.profiles_dir.is_dir():
            return list()
        return sorted(p.stem for p in self.profiles_dir.glob('*.json') if p.stem != ENV_PROFILE_NAME)

    def list(self):
        """Return every profile, the environment profile first if the environment defines one."""
        profiles = list()
        env_profile = self.env_profile()
        if env_profile.url or env_profile.account or env_profile.key_id:
            profiles.append(env_profile)
        for name in self.names():
            profiles.append(self.get(name))
        return profiles

    def get(self, name: str):
        """Load a profile by name."""
        if name == ENV_PROFILE_NAME:
            return self.env_profile()
        data = self._read_json(self._profile_path(name))
        if data is None:
            raise NotFound(f"no such profile: '{name}'", code='ProfileNotFound')
        return Profile.from_dict(data, name=name)

    def exists(self, name: str):
        return name == ENV_PROFILE_NAME or self._profile_path(name).is_file()

    def current_name(self):
        """Resolve the current profile: TRITON_PROFILE, else config.json, else env."""
        return self.env.get('TRITON_PROFILE') or self.load_config().get('profile') or DEFAULT_PROFILE_NAME

    def save(self, profile: Profile, set_current: bool = False):
        """Persist a profile atomically, optionally making it current."""
        if profile.name == ENV_PROFILE_NAME:
            raise UsageError(f"cannot save the '{ENV_PROFILE_NAME}' profile, it is read from the environment")
        profile.validate()
        self._ensure_dirs()
        path = self._profile_path(profile.name)
        write_text_atomic(path, dumps_sorted(profile.to_dict(with_name=False)))
        self.logger.debug(f"saved profile '{profile.name}' to {path}")
        if set_current:
            self.set_current(profile.name)
        return path

    def delete(self, name: str, force: bool = False):
        """Delete a persisted profile; if it was current, env becomes current.

        :param force: tolerate a profile that does not exist
        """
        if name == ENV_PROFILE_NAME:
            raise UsageError(f"cannot delete the '{ENV_PROFILE_NAME}' profile")
        path = self._profile_path(name)
        if not path.exists():
            if force:
                self.logger.debug(f"no profile '{name}' to delete")
                return False
            raise NotFound(f"no such profile: '{name}'", code='ProfileNotFound')
        if self.load_config().get('profile') == name:
            self.set_config_vars(profile=ENV_PROFILE_NAME, oldProfile=None)
            self.logger.debug(f"profile '{name}' was current, current is now '{ENV_PROFILE_NAME}'")
        try:
            path.unlink()
        except OSError as e:
            raise ConfigError(f"failed to delete '{path}', caught {e}", cause=e)
        return True

    def set_current(self, name: str):
        """Make a profile current; '-' means the previously current profile.

        :returns: the name of the now-current profile
        """
        config = self.load_config()
        if name == '-':
            if not config.get('oldProfile'):
                raise ConfigError('"oldProfile" is not set in config')
            name = config['oldProfile']
        if not self.exists(name):
            raise NotFound(f"no such profile: '{name}'", code='ProfileNotFound')
        previous = config.get('profile')
        if previous == name:
            return name
        self.set_config_vars(profile=name, oldProfile=previous)
        return name

    def edit(self, name: str, editor: str = None, run=subprocess.run, retry=None):
        """Edit a profile as key=value text in an external editor.

        :param editor: command line of the editor, default $EDITOR or vi
        :param run: callable with the signature of subprocess.run, e.g. milc's cli.run
        :param retry: callable taking the parse error and returning True to re-edit the buffer, else the edit is abandoned
        :returns: the saved profile, or None if nothing changed or the edit was abandoned
        """
        if name == ENV_PROFILE_NAME:
            raise UsageError(f"cannot edit the '{ENV_PROFILE_NAME}' profile")
        profile = self.get(name)
        editor = editor or self.env.get('EDITOR') or 'vi'
        original = profile.to_text()
        text = original
        while True:
            with tempfile.NamedTemporaryFile('w+', prefix=f"profile-{name}-", suffix='.txt', delete=False, encoding='utf-8') as tf:
                tf.write(text)
                temp_name = tf.name
            try:
                completed = run(editor.split() + [temp_name])
                if getattr(completed, 'returncode', 0):
                    raise ConfigError(f"editor '{editor}' exited with status {completed.returncode}")
                text = Path(temp_name).read_text(encoding='utf-8')
            finally:
                os.unlink(temp_name)
            if text == original:
                self.logger.debug(f"no change to profile '{name}'")
                return None
            try:
                edited = Profile.from_text(text, name=name).validate()
            except ConfigError as e:
                if retry is not None and retry(e):
                    continue
                return None
            if edited.to_text() == original:
                return None
            self.save(edited)
            return edited

    def load(self, name: str = None, overrides: dict = None):
        """Resolve the profile to use and return the process-wide Config.

        Precedence, highest first: ``overrides`` (e.g. CLI flags), TRITON_*/SDC_*
        environment variables, the named profile file.

        :param name: profile name, default is the current profile
        :param overrides: attribute -> value, None values are ignored
        """
        name = name or self.current_name()
        profile = self.get(name)
        if name != ENV_PROFILE_NAME:
            env_profile = self.env_profile()
            for attr, names in ENV_VARS.items():
                # a variable set to e.g. TRITON_TLS_INSECURE=0 overrides too
                if any(self.env.get(var) for var in names):
                    self.logger.debug(f"environment overrides '{attr}' of profile '{name}'")
                    setattr(profile, attr, getattr(env_profile, attr))
        for attr, value in (overrides or dict()).items():
            if value is not None:
                setattr(profile, attr, value)
        profile.validate()
        return Config(profile=profile, config_dir=self.config_dir, logger=self.logger)
