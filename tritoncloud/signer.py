"""Sign CloudAPI requests with the HTTP Signature scheme.

The signing string covers ``(request-target)`` and ``date``. The algorithm
follows the key type: rsa-sha256, ecdsa-sha256 (or -sha384/-sha512 for the
larger curves), ed25519-sha512. Keys come from a PEM/OpenSSH private key
file or from a running ssh-agent.
"""

import base64
import hashlib
import logging
import os
import socket
from pathlib import Path

import paramiko
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from .exceptions import AuthError
from .logger_base import get_logger

SIGNED_HEADERS = '(request-target) date'
EC_HASHES = {
    'secp256r1': (hashes.SHA256, 'ecdsa-sha256'),
    'secp384r1': (hashes.SHA384, 'ecdsa-sha384'),
    'secp521r1': (hashes.SHA512, 'ecdsa-sha512'),
}


def fingerprints_from_blob(blob: bytes):
    """Return the MD5 (colon hex) and SHA256 (base64) fingerprints of an SSH public key blob."""
    md5 = hashlib.md5(blob).hexdigest()
    md5_fp = ':'.join(md5[i:i+2] for i in range(0, len(md5), 2))
    sha256_fp = 'SHA256:' + base64.b64encode(hashlib.sha256(blob).digest()).decode().rstrip('=')
    return md5_fp, sha256_fp


def public_key_blob(public_key):
    """Encode a cryptography public key in SSH wire format."""
    openssh = public_key.public_bytes(serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH)
    return base64.b64decode(openssh.split()[1])


def fingerprint_matches(key_id: str, blob: bytes):
    """Test a key id, as either fingerprint form, against a public key blob."""
    md5_fp, sha256_fp = fingerprints_from_blob(blob)
    key_id = key_id.strip()
    if key_id.upper().startswith('MD5:'):
        key_id = key_id[4:]
    return key_id.lower() == md5_fp or key_id == sha256_fp


def signing_string(method: str, path: str, date: str):
    """Compose the text covered by the signature."""
    return f"(request-target): {method.lower()} {path}\ndate: {date}"


class Signer:
    """Base for request signers.

    :param key_id: fingerprint of the key, either form
    :param account: login of the account the key belongs to
    :param user: optional RBAC sub-user login owning the key
    """

    algorithm = None

    def __init__(self, key_id: str, account: str, user: str = None, logger: logging.Logger = None):
        self.key_id = key_id
        self.account = account
        self.user = user
        self.logger = get_logger(__name__, logger)

    @property
    def fingerprint(self):
        """The MD5 fingerprint CloudAPI expects in the keyId parameter."""
        raise NotImplementedError

    @property
    def key_path(self):
        """The keyId parameter of the Authorization header."""
        if self.user:
            return f"/{self.account}/users/{self.user}/keys/{self.fingerprint}"
        return f"/{self.account}/keys/{self.fingerprint}"

    def sign(self, data: bytes):
        """Return (algorithm, raw signature bytes) for data."""
        raise NotImplementedError

    def authorization(self, method: str, path: str, date: str):
        """Compose the Authorization header value for one request.

        :param method: HTTP method
        :param path: request path including any query string
        :param date: the exact value of the Date header
        """
        algorithm, signature = self.sign(signing_string(method, path, date).encode('utf-8'))
        return (f'Signature keyId="{self.key_path}",algorithm="{algorithm}",'
                f'headers="{SIGNED_HEADERS}",signature="{base64.b64encode(signature).decode()}"')


class KeySigner(Signer):
    """Sign with an in-memory private key.

    :param private_key: a cryptography private key object
    """

    def __init__(self, private_key, key_id: str, account: str, user: str = None, logger: logging.Logger = None):
        super().__init__(key_id=key_id, account=account, user=user, logger=logger)
        self.private_key = private_key
        blob = public_key_blob(private_key.public_key())
        if not fingerprint_matches(key_id, blob):
            raise AuthError(f"private key does not match keyId '{key_id}'")
        self._fingerprint = fingerprints_from_blob(blob)[0]

    @classmethod
    def from_file(cls, path, key_id: str, account: str, user: str = None, passphrase: bytes = None, logger: logging.Logger = None):
        """Load a PEM or OpenSSH private key file."""
        path = Path(os.path.expanduser(str(path)))
        try:
            data = path.read_bytes()
        except OSError as e:
            raise AuthError(f"failed to read private key '{path}', caught {e}", cause=e)
        private_key = load_private_key(data, passphrase=passphrase, source=str(path))
        return cls(private_key, key_id=key_id, account=account, user=user, logger=logger)

    @property
    def fingerprint(self):
        return self._fingerprint

    def sign(self, data: bytes):
        key = self.private_key
        if isinstance(key, rsa.RSAPrivateKey):
            return 'rsa-sha256', key.sign(data, padding.PKCS1v15(), hashes.SHA256())
        elif isinstance(key, ec.EllipticCurvePrivateKey):
            hash_class, algorithm = EC_HASHES.get(key.curve.name, (None, None))
            if not hash_class:
                raise AuthError(f"unsupported elliptic curve '{key.curve.name}'")
            return algorithm, key.sign(data, ec.ECDSA(hash_class()))
        elif isinstance(key, ed25519.Ed25519PrivateKey):
            return 'ed25519-sha512', key.sign(data)
        raise AuthError(f"unsupported private key type '{type(key).__name__}'")


def load_private_key(data: bytes, passphrase: bytes = None, source: str = 'key'):
    """Deserialize a private key, raising AuthError if it is encrypted and no passphrase was given."""
    if isinstance(passphrase, str):
        passphrase = passphrase.encode('utf-8')
    if b'BEGIN OPENSSH PRIVATE KEY' in data:
        loader = serialization.load_ssh_private_key
    else:
        loader = serialization.load_pem_private_key
    try:
        return loader(data, password=passphrase)
    except TypeError as e:
        # raised for an encrypted key without a password, or a password for an unencrypted key
        raise AuthError(f"private key {source} is encrypted and no passphrase was provided", cause=e)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise AuthError(f"failed to load private key {source}, caught {e}", cause=e)


class SocketAgent(paramiko.agent.AgentSSH):
    """An ssh-agent client connected to an explicit socket path."""

    def __init__(self, path: str):
        super().__init__()
        conn = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        conn.connect(path)
        self._connect(conn)

    def close(self):
        self._close()


class AgentSigner(Signer):
    """Sign with a key held by ssh-agent.

    Connects to the agent for each signature and holds no state between
    requests.

    :param socket_path: agent socket, default $SSH_AUTH_SOCK
    """

    def __init__(self, key_id: str, account: str, user: str = None, socket_path: str = None, logger: logging.Logger = None):
        super().__init__(key_id=key_id, account=account, user=user, logger=logger)
        self.socket_path = socket_path
        self._fingerprint = None

    def _agent(self):
        try:
            if self.socket_path:
                return SocketAgent(self.socket_path)
            return paramiko.Agent()
        except (OSError, paramiko.SSHException) as e:
            raise AuthError(f"failed to connect to ssh-agent, caught {e}", cause=e)

    def _find_key(self, agent):
        keys = agent.get_keys()
        if not keys:
            raise AuthError("no keys in ssh-agent (is SSH_AUTH_SOCK set?)")
        for key in keys:
            if fingerprint_matches(self.key_id, key.asbytes()):
                return key
        raise AuthError(f"no key in ssh-agent matches keyId '{self.key_id}'")

    @property
    def fingerprint(self):
        if self._fingerprint is None:
            agent = self._agent()
            try:
                key = self._find_key(agent)
                self._fingerprint = fingerprints_from_blob(key.asbytes())[0]
            finally:
                agent.close()
        return self._fingerprint

    def sign(self, data: bytes):
        agent = self._agent()
        try:
            key = self._find_key(agent)
            self._fingerprint = fingerprints_from_blob(key.asbytes())[0]
            key_type = key.get_name()
            try:
                if key_type == 'ssh-rsa':
                    sig_blob = key.sign_ssh_data(data, algorithm='rsa-sha2-256')
                else:
                    sig_blob = key.sign_ssh_data(data)
            except paramiko.SSHException as e:
                raise AuthError(f"ssh-agent refused to sign, caught {e}", cause=e)
        finally:
            agent.close()
        return agent_signature(key_type, sig_blob)


def agent_signature(key_type: str, sig_blob: bytes):
    """Convert an SSH signature message from the agent to (algorithm, signature bytes)."""
    msg = paramiko.Message(sig_blob)
    sig_format = msg.get_text()
    sig = msg.get_binary()
    if key_type == 'ssh-rsa':
        if sig_format != 'rsa-sha2-256':
            raise AuthError(f"ssh-agent signed with '{sig_format}' instead of rsa-sha2-256")
        return 'rsa-sha256', sig
    elif key_type.startswith('ecdsa-sha2-'):
        inner = paramiko.Message(sig)
        r, s = inner.get_mpint(), inner.get_mpint()
        bits = key_type.rsplit('nistp', 1)[-1]
        algorithm = {'256': 'ecdsa-sha256', '384': 'ecdsa-sha384', '521': 'ecdsa-sha512'}.get(bits)
        if not algorithm:
            raise AuthError(f"unsupported agent key type '{key_type}'")
        return algorithm, encode_dss_signature(r, s)
    elif key_type == 'ssh-ed25519':
        return 'ed25519-sha512', sig
    raise AuthError(f"unsupported agent key type '{key_type}'")


def find_key_file(key_id: str, ssh_dir=None):
    """Find the private key in ~/.ssh whose .pub file matches the key id."""
    ssh_dir = Path(ssh_dir or Path.home() / '.ssh')
    if not ssh_dir.is_dir():
        return None
    for pub in sorted(ssh_dir.glob('*.pub')):
        try:
            parts = pub.read_text(encoding='utf-8').split()
            blob = base64.b64decode(parts[1])
        except (OSError, IndexError, ValueError):
            continue
        if fingerprint_matches(key_id, blob):
            private = pub.with_suffix('')
            if private.exists():
                return private
    return None


def signer_from_profile(profile, passphrase: bytes = None, socket_path: str = None, logger: logging.Logger = None):
    """Choose a signer for a profile.

    An explicit privKeyPath wins. Otherwise the ssh-agent is used when one is
    running, else a key file in ~/.ssh whose public half matches keyId.
    """
    kwargs = dict(key_id=profile.key_id, account=profile.account, user=profile.user, logger=logger)
    if profile.priv_key_path:
        return KeySigner.from_file(profile.priv_key_path, passphrase=passphrase, **kwargs)
    if socket_path or os.environ.get('SSH_AUTH_SOCK'):
        return AgentSigner(socket_path=socket_path, **kwargs)
    key_file = find_key_file(profile.key_id)
    if key_file:
        return KeySigner.from_file(key_file, passphrase=passphrase, **kwargs)
    raise AuthError(f"no ssh-agent is running and no key file in ~/.ssh matches keyId '{profile.key_id}'")
