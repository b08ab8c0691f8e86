"""Signing credentials for node-managed accounts.

Each source address is protected by one versioned envelope: the account's
unlock passphrase sealed with AES-GCM under a scrypt-derived key. The envelope
format is explicit (``version``, ``algorithm``, ``kdf``); anything else is
rejected rather than guessed at. The opened passphrase is handed to the node
through ``personal_signTransaction`` so private keys never leave the node.
"""

from __future__ import annotations

import base64
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol

import yaml
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from . import abi
from .errors import CredentialError
from .ledger import SignedTransaction, classify_rpc_error
from .rpc_client import RPCError, RPCTransportError

logger = logging.getLogger(__name__)

ENVELOPE_VERSION = 1
ENVELOPE_ALGORITHM = "aes-256-gcm"
ENVELOPE_KDF = "scrypt"

_AESGCM_NONCE_SIZE = 12
_SCRYPT_SALT_SIZE = 16
_SCRYPT_KEY_LENGTH = 32
_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1


@dataclass
class CredentialEnvelope:
    """Serialized sealed credential."""

    version: int
    algorithm: str
    kdf: str
    salt: str
    nonce: str
    ciphertext: str

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CredentialEnvelope":
        try:
            envelope = cls(
                version=int(data["version"]),
                algorithm=str(data["algorithm"]),
                kdf=str(data["kdf"]),
                salt=str(data["salt"]),
                nonce=str(data["nonce"]),
                ciphertext=str(data["ciphertext"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise CredentialError(f"Malformed credential envelope: {exc}") from exc
        envelope.check_format()
        return envelope

    def to_mapping(self) -> dict[str, Any]:
        return asdict(self)

    def check_format(self) -> None:
        if self.version != ENVELOPE_VERSION:
            raise CredentialError(f"Unsupported credential envelope version: {self.version}")
        if self.algorithm != ENVELOPE_ALGORITHM:
            raise CredentialError(f"Unsupported credential algorithm: {self.algorithm}")
        if self.kdf != ENVELOPE_KDF:
            raise CredentialError(f"Unsupported credential KDF: {self.kdf}")


def _derive_key(master_passphrase: str, salt: bytes) -> bytes:
    kdf = Scrypt(
        salt=salt,
        length=_SCRYPT_KEY_LENGTH,
        n=_SCRYPT_N,
        r=_SCRYPT_R,
        p=_SCRYPT_P,
    )
    return kdf.derive(master_passphrase.encode("utf-8"))


def _associated_data(address: str) -> bytes:
    return address.lower().encode("ascii")


def seal_credential(address: str, secret: str, master_passphrase: str) -> CredentialEnvelope:
    """Seal ``secret`` (the account unlock passphrase) for ``address``.

    The lower-cased address is bound as associated data, so an envelope copied
    onto another address fails to open.
    """

    if not abi.is_address(address):
        raise CredentialError(f"Invalid address: {address}")
    salt = os.urandom(_SCRYPT_SALT_SIZE)
    nonce = os.urandom(_AESGCM_NONCE_SIZE)
    ciphertext = AESGCM(_derive_key(master_passphrase, salt)).encrypt(
        nonce, secret.encode("utf-8"), _associated_data(address)
    )
    return CredentialEnvelope(
        version=ENVELOPE_VERSION,
        algorithm=ENVELOPE_ALGORITHM,
        kdf=ENVELOPE_KDF,
        salt=base64.b64encode(salt).decode("ascii"),
        nonce=base64.b64encode(nonce).decode("ascii"),
        ciphertext=base64.b64encode(ciphertext).decode("ascii"),
    )


def open_credential(envelope: CredentialEnvelope, address: str, master_passphrase: str) -> str:
    """Open an envelope sealed for ``address``."""

    envelope.check_format()
    try:
        salt = base64.b64decode(envelope.salt.encode("ascii"), validate=True)
        nonce = base64.b64decode(envelope.nonce.encode("ascii"), validate=True)
        ciphertext = base64.b64decode(envelope.ciphertext.encode("ascii"), validate=True)
    except ValueError as exc:
        raise CredentialError(f"Credential envelope for {address} is not valid base64") from exc
    try:
        plaintext = AESGCM(_derive_key(master_passphrase, salt)).decrypt(
            nonce, ciphertext, _associated_data(address)
        )
    except InvalidTag as exc:
        raise CredentialError(
            f"Failed to open credential for {address}; wrong passphrase or envelope"
        ) from exc
    return plaintext.decode("utf-8")


class Signer(Protocol):
    """Opaque signer handed to the execution engines."""

    address: str

    def sign_transaction(self, tx: dict[str, Any]) -> SignedTransaction: ...


class NodeAccountSigner:
    """Sign transactions with an account held by the node.

    With a passphrase the signer uses ``personal_signTransaction``; without one
    it relies on the account already being unlocked and calls
    ``eth_signTransaction``.
    """

    def __init__(self, rpc: Any, address: str, passphrase: str | None = None) -> None:
        self.rpc = rpc
        self.address = address
        self._passphrase = passphrase

    def __repr__(self) -> str:
        return f"NodeAccountSigner(address={self.address!r})"

    def sign_transaction(self, tx: dict[str, Any]) -> SignedTransaction:
        if not abi.same_address(tx.get("from"), self.address):
            raise CredentialError(
                f"Signer for {self.address} cannot sign a transaction from {tx.get('from')}"
            )
        try:
            if self._passphrase is not None:
                result = self.rpc.personal_sign_transaction(tx, self._passphrase)
            else:
                result = self.rpc.sign_transaction(tx)
        except (RPCError, RPCTransportError) as exc:
            message = str(exc).lower()
            if "authentication needed" in message or "could not decrypt" in message:
                raise CredentialError(f"Node refused to sign for {self.address}: {exc}") from exc
            raise classify_rpc_error(exc) from exc
        if isinstance(result, str):
            return SignedTransaction(raw=result)
        if not isinstance(result, dict) or not result.get("raw"):
            raise CredentialError(f"Node returned no signed transaction for {self.address}")
        tx_hash = (result.get("tx") or {}).get("hash")
        return SignedTransaction(raw=str(result["raw"]), tx_hash=tx_hash)


def load_keystore(path: str | Path) -> dict[str, CredentialEnvelope]:
    """Load ``address -> envelope`` entries from a YAML keystore file."""

    path = Path(path).expanduser()
    if not path.exists():
        raise CredentialError(f"Keystore not found: {path}")
    try:
        loaded = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise CredentialError(f"Invalid YAML in keystore {path}: {exc}") from exc
    accounts = loaded.get("accounts", loaded) if isinstance(loaded, dict) else None
    if not isinstance(accounts, dict):
        raise CredentialError(f"Expected {path} to contain an 'accounts' mapping")
    return {
        str(address).lower(): CredentialEnvelope.from_mapping(entry)
        for address, entry in accounts.items()
    }


def save_keystore(path: str | Path, envelopes: Mapping[str, CredentialEnvelope]) -> None:
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {"accounts": {address.lower(): env.to_mapping() for address, env in envelopes.items()}}
    path.write_text(yaml.safe_dump(data, sort_keys=True))
    os.chmod(path, 0o600)


class KeystoreCredentialProvider:
    """Resolve source addresses to signers using sealed keystore envelopes."""

    def __init__(
        self,
        rpc: Any,
        envelopes: Mapping[str, CredentialEnvelope],
        master_passphrase: str,
        *,
        unlocked_accounts: Iterable[str] = (),
    ) -> None:
        self.rpc = rpc
        self._envelopes = {address.lower(): env for address, env in envelopes.items()}
        self._master_passphrase = master_passphrase
        self._unlocked = {address.lower() for address in unlocked_accounts}

    @classmethod
    def from_file(
        cls,
        rpc: Any,
        path: str | Path,
        master_passphrase: str,
        *,
        unlocked_accounts: Iterable[str] = (),
    ) -> "KeystoreCredentialProvider":
        return cls(rpc, load_keystore(path), master_passphrase, unlocked_accounts=unlocked_accounts)

    def get_signing_credential(self, source_address: str) -> NodeAccountSigner:
        key = source_address.lower()
        envelope = self._envelopes.get(key)
        if envelope is None:
            if key in self._unlocked:
                return NodeAccountSigner(self.rpc, source_address)
            raise CredentialError(f"No credential stored for {source_address}")
        passphrase = open_credential(envelope, source_address, self._master_passphrase)
        logger.debug("Opened credential for %s", source_address)
        return NodeAccountSigner(self.rpc, source_address, passphrase)
