"""Unit tests for sealed signing credentials and node-side signers."""

from __future__ import annotations

import os
import stat

import pytest

from paycadence.credentials import (
    CredentialEnvelope,
    KeystoreCredentialProvider,
    NodeAccountSigner,
    load_keystore,
    open_credential,
    save_keystore,
    seal_credential,
)
from paycadence.errors import CredentialError
from paycadence.rpc_client import RPCError

ADDRESS = "0x" + "1" * 40
OTHER = "0x" + "4" * 40


class StubRPC:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls = []

    def personal_sign_transaction(self, tx, passphrase):
        self.calls.append(("personal_signTransaction", passphrase))
        if self.error is not None:
            raise self.error
        return {"raw": "0x02abcd", "tx": {"hash": "0xhash"}}

    def sign_transaction(self, tx):
        self.calls.append(("eth_signTransaction", None))
        return {"raw": "0x02beef", "tx": {"hash": "0xother"}}


def test_seal_and_open_round_trip() -> None:
    envelope = seal_credential(ADDRESS, "account-secret", "master")

    assert envelope.version == 1
    assert envelope.algorithm == "aes-256-gcm"
    assert envelope.kdf == "scrypt"
    assert open_credential(envelope, ADDRESS, "master") == "account-secret"


def test_open_rejects_wrong_master_passphrase() -> None:
    envelope = seal_credential(ADDRESS, "account-secret", "master")

    with pytest.raises(CredentialError):
        open_credential(envelope, ADDRESS, "not-the-master")


def test_envelope_is_bound_to_its_address() -> None:
    envelope = seal_credential(ADDRESS, "account-secret", "master")

    with pytest.raises(CredentialError):
        open_credential(envelope, OTHER, "master")


def test_unknown_envelope_formats_are_rejected() -> None:
    data = seal_credential(ADDRESS, "account-secret", "master").to_mapping()

    with pytest.raises(CredentialError):
        CredentialEnvelope.from_mapping({**data, "version": 2})
    with pytest.raises(CredentialError):
        CredentialEnvelope.from_mapping({**data, "algorithm": "chacha20"})
    with pytest.raises(CredentialError):
        CredentialEnvelope.from_mapping({k: v for k, v in data.items() if k != "nonce"})


def test_keystore_round_trip_is_private(tmp_path) -> None:
    path = tmp_path / "keys" / "keystore.yaml"
    save_keystore(path, {ADDRESS: seal_credential(ADDRESS, "account-secret", "master")})

    loaded = load_keystore(path)

    assert list(loaded) == [ADDRESS.lower()]
    assert open_credential(loaded[ADDRESS.lower()], ADDRESS, "master") == "account-secret"
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600


def test_provider_signs_with_opened_passphrase() -> None:
    rpc = StubRPC()
    envelopes = {ADDRESS: seal_credential(ADDRESS, "account-secret", "master")}
    provider = KeystoreCredentialProvider(rpc, envelopes, "master")

    signer = provider.get_signing_credential(ADDRESS)
    signed = signer.sign_transaction({"from": ADDRESS, "to": OTHER})

    assert signer.address == ADDRESS
    assert signed.raw == "0x02abcd"
    assert signed.tx_hash == "0xhash"
    assert rpc.calls == [("personal_signTransaction", "account-secret")]
    assert "account-secret" not in repr(signer)


def test_provider_uses_unlocked_accounts_without_envelope() -> None:
    rpc = StubRPC()
    provider = KeystoreCredentialProvider(rpc, {}, "master", unlocked_accounts=[ADDRESS])

    signed = provider.get_signing_credential(ADDRESS).sign_transaction({"from": ADDRESS})

    assert signed.tx_hash == "0xother"
    assert rpc.calls == [("eth_signTransaction", None)]
    with pytest.raises(CredentialError):
        provider.get_signing_credential(OTHER)


def test_signer_refuses_foreign_sender() -> None:
    signer = NodeAccountSigner(StubRPC(), ADDRESS, "secret")

    with pytest.raises(CredentialError):
        signer.sign_transaction({"from": OTHER})


def test_locked_account_is_a_credential_error() -> None:
    signer = NodeAccountSigner(StubRPC(RPCError(-32000, "authentication needed: password or unlock")), ADDRESS, "x")

    with pytest.raises(CredentialError):
        signer.sign_transaction({"from": ADDRESS})
