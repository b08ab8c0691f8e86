"""Minimal ABI encoding for the ERC-20 and batch-transfer calls we make.

Only static ``address``/``uint256`` words, dynamic arrays of them, and arrays
of ``(address,address,uint256)`` tuples are needed, so the encoder covers
exactly that. Selectors are the first four bytes of the Keccak-256 hash of each
canonical signature.
"""

from __future__ import annotations

import re
from typing import Iterable, Sequence

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
WORD_BYTES = 32
MAX_UINT256 = 2**256 - 1

# ERC-20
SELECTOR_TRANSFER = "a9059cbb"  # transfer(address,uint256)
SELECTOR_APPROVE = "095ea7b3"  # approve(address,uint256)
SELECTOR_ALLOWANCE = "dd62ed3e"  # allowance(address,address)
SELECTOR_BALANCE_OF = "70a08231"  # balanceOf(address)

# Batch payment contract
SELECTOR_BATCH_ETH = "f3c50e6a"  # batchETHTransfer(address[],uint256[],uint256)
SELECTOR_BATCH_ERC20 = "dbb1b1d0"  # batchERC20Transfer(address,address[],uint256[],uint256)
SELECTOR_BATCH_MIXED = "78f1b167"  # batchMixedTransfer((address,address,uint256)[],uint256)
SELECTOR_ESTIMATE_SAVINGS = "84b422a0"  # estimateGasSavings(uint256,string)


class ABIError(ValueError):
    """Raised when a value cannot be ABI encoded or decoded."""


def is_address(value: str | None) -> bool:
    return bool(value) and bool(ADDRESS_RE.match(str(value)))


def same_address(left: str | None, right: str | None) -> bool:
    return bool(left) and bool(right) and str(left).lower() == str(right).lower()


def encode_uint(value: int) -> str:
    value = int(value)
    if value < 0 or value > MAX_UINT256:
        raise ABIError(f"uint256 out of range: {value}")
    return f"{value:064x}"


def encode_address(address: str) -> str:
    if not is_address(address):
        raise ABIError(f"Invalid address: {address}")
    return address[2:].lower().rjust(64, "0")


def encode_string(value: str) -> str:
    raw = value.encode("utf-8")
    padded_len = -(-len(raw) // WORD_BYTES) * WORD_BYTES
    return encode_uint(len(raw)) + raw.hex().ljust(padded_len * 2, "0")


def _encode_array(words: Iterable[str]) -> str:
    words = list(words)
    return encode_uint(len(words)) + "".join(words)


def _encode_call(selector: str, heads: Sequence[str | None], tails: Sequence[str]) -> str:
    """Assemble ``selector || heads || tails``; ``None`` heads are dynamic offsets."""

    offset = WORD_BYTES * len(heads)
    encoded_heads: list[str] = []
    tail_iter = iter(tails)
    tail_parts: list[str] = []
    for head in heads:
        if head is not None:
            encoded_heads.append(head)
            continue
        tail = next(tail_iter)
        encoded_heads.append(encode_uint(offset))
        tail_parts.append(tail)
        offset += len(tail) // 2
    return "0x" + selector + "".join(encoded_heads) + "".join(tail_parts)


def encode_transfer(recipient: str, amount: int) -> str:
    return _encode_call(SELECTOR_TRANSFER, [encode_address(recipient), encode_uint(amount)], [])


def encode_approve(spender: str, amount: int) -> str:
    return _encode_call(SELECTOR_APPROVE, [encode_address(spender), encode_uint(amount)], [])


def encode_allowance(owner: str, spender: str) -> str:
    return _encode_call(SELECTOR_ALLOWANCE, [encode_address(owner), encode_address(spender)], [])


def encode_balance_of(owner: str) -> str:
    return _encode_call(SELECTOR_BALANCE_OF, [encode_address(owner)], [])


def encode_batch_eth_transfer(recipients: Sequence[str], amounts: Sequence[int], deadline: int) -> str:
    return _encode_call(
        SELECTOR_BATCH_ETH,
        [None, None, encode_uint(deadline)],
        [
            _encode_array(encode_address(r) for r in recipients),
            _encode_array(encode_uint(a) for a in amounts),
        ],
    )


def encode_batch_erc20_transfer(
    token: str, recipients: Sequence[str], amounts: Sequence[int], deadline: int
) -> str:
    return _encode_call(
        SELECTOR_BATCH_ERC20,
        [encode_address(token), None, None, encode_uint(deadline)],
        [
            _encode_array(encode_address(r) for r in recipients),
            _encode_array(encode_uint(a) for a in amounts),
        ],
    )


def encode_batch_mixed_transfer(
    payments: Sequence[tuple[str, str, int]], deadline: int
) -> str:
    """Encode ``batchMixedTransfer`` for ``(recipient, token, amount)`` tuples.

    The tuple is fully static, so each element is encoded inline as three words.
    """

    elements = (
        encode_address(recipient) + encode_address(token) + encode_uint(amount)
        for recipient, token, amount in payments
    )
    return _encode_call(
        SELECTOR_BATCH_MIXED,
        [None, encode_uint(deadline)],
        [_encode_array(elements)],
    )


def encode_estimate_gas_savings(batch_size: int, transfer_type: str) -> str:
    return _encode_call(
        SELECTOR_ESTIMATE_SAVINGS,
        [encode_uint(batch_size), None],
        [encode_string(transfer_type)],
    )


def decode_words(data: str) -> list[int]:
    """Decode a return payload made only of static ``uint256`` words."""

    payload = data[2:] if data.startswith("0x") else data
    if len(payload) % 64:
        raise ABIError(f"Return data is not word aligned: {data}")
    return [int(payload[i : i + 64], 16) for i in range(0, len(payload), 64)]


def decode_uint(data: str) -> int:
    words = decode_words(data)
    if not words:
        raise ABIError("Empty return data")
    return words[0]
