import pytest

from paycadence import abi

ALICE = "0x" + "11" * 20
BOB = "0x" + "22" * 20
TOKEN = "0x" + "aB" * 20


def _words(data: str) -> list[str]:
    body = data[10:]
    return [body[i : i + 64] for i in range(0, len(body), 64)]


def test_encode_transfer_layout() -> None:
    data = abi.encode_transfer(BOB, 1_000)

    assert data.startswith("0x" + abi.SELECTOR_TRANSFER)
    assert _words(data) == ["0" * 24 + "22" * 20, f"{1_000:064x}"]


def test_address_words_are_lower_case() -> None:
    data = abi.encode_balance_of(TOKEN)
    assert _words(data) == ["0" * 24 + "ab" * 20]


def test_batch_eth_transfer_offsets() -> None:
    data = abi.encode_batch_eth_transfer([ALICE, BOB], [5, 7], deadline=1_700_000_000)
    words = _words(data)

    assert data.startswith("0x" + abi.SELECTOR_BATCH_ETH)
    assert int(words[0], 16) == 0x60
    # recipients array: length word plus two addresses
    assert int(words[1], 16) == 0x60 + 3 * 32
    assert int(words[2], 16) == 1_700_000_000
    assert int(words[3], 16) == 2
    assert int(words[7], 16) == 5
    assert int(words[8], 16) == 7


def test_batch_mixed_transfer_inlines_tuples() -> None:
    data = abi.encode_batch_mixed_transfer(
        [(ALICE, TOKEN, 3), (BOB, "0x" + "0" * 40, 4)], deadline=99
    )
    words = _words(data)

    assert len(words) == 2 + 1 + 6
    assert int(words[0], 16) == 0x40
    assert int(words[1], 16) == 99
    assert int(words[2], 16) == 2
    assert words[4] == "0" * 24 + "ab" * 20
    assert int(words[8], 16) == 4


def test_estimate_gas_savings_encodes_string() -> None:
    words = _words(abi.encode_estimate_gas_savings(3, "ERC20"))

    assert int(words[0], 16) == 3
    assert int(words[1], 16) == 0x40
    assert int(words[2], 16) == 5
    assert words[3] == b"ERC20".hex().ljust(64, "0")


def test_invalid_values_raise() -> None:
    with pytest.raises(abi.ABIError):
        abi.encode_transfer("0x1234", 1)
    with pytest.raises(abi.ABIError):
        abi.encode_uint(-1)
    with pytest.raises(abi.ABIError):
        abi.decode_words("0x1234")


def test_address_helpers() -> None:
    assert abi.is_address(TOKEN)
    assert not abi.is_address("0x" + "g" * 40)
    assert not abi.is_address(None)
    assert abi.same_address(TOKEN, TOKEN.lower())
    assert not abi.same_address(TOKEN, None)


def test_decode_uint_reads_first_word() -> None:
    assert abi.decode_uint("0x" + abi.encode_uint(42) + abi.encode_uint(7)) == 42
