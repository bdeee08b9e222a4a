"""Minimal ABI codec for the fixed set of contract calls the engine makes.

Call data layout: ``selector (4 bytes) || arguments``. Static arguments
(address, uint256, bytes32) occupy one 32-byte word each. Dynamic arguments
(string, bytes) put an offset in the head and ``length || data`` in the tail,
with data right-padded to a multiple of 32 bytes.

Decoders are lenient: ``"0x"`` or truncated payloads decode to an empty
string / zero instead of raising. All hex values handled here are
``0x``-prefixed lowercase strings.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Union

from eth_utils import is_hex_address, keccak

from chainvault.errors import InvalidAddressError, InvalidInputError, UnknownSelectorError

logger = logging.getLogger(__name__)

WORD_SIZE = 32
UINT256_MAX = 2**256 - 1

# Bit-exact selectors of the deployed contracts
SELECTORS: dict[str, str] = {
    # ERC-20
    "balanceOf(address)": "0x70a08231",
    "name()": "0x06fdde03",
    "symbol()": "0x95d89b41",
    "decimals()": "0x313ce567",
    "transfer(address,uint256)": "0xa9059cbb",
    # ERC-8004 identity registry
    "registerAgent(string,string,bytes32)": "0x2b3ce0bf",
    "getAgent(address)": "0xfb3551ff",
    "getTotalAgents()": "0x3731a16f",
}

REGISTER_AGENT = "registerAgent(string,string,bytes32)"
GET_AGENT = "getAgent(address)"

STATIC_TYPES = ("address", "uint256", "bytes32", "bool")
DYNAMIC_TYPES = ("string", "bytes")


@dataclass
class AgentRecord:
    """Decoded ``getAgent`` result."""

    name: str
    description: str


@dataclass
class RegisterAgentCall:
    """Decoded ``registerAgent`` call data."""

    name: str
    description: str
    identity_hash: bytes


def strip_hex(value: str) -> str:
    """Remove an optional 0x prefix and lowercase."""
    if value.startswith(("0x", "0X")):
        value = value[2:]
    return value.lower()


# ======================
# Encoding
# ======================


def encode_uint256(value: int) -> str:
    """Encode an unsigned integer as one 32-byte word (hex, no prefix)."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"uint256 expects an int, got {type(value).__name__}")
    if value < 0 or value > UINT256_MAX:
        raise InvalidInputError("uint256 value out of range")
    return f"{value:064x}"


def encode_address(address: str) -> str:
    """Encode an address, left-padded to 32 bytes."""
    if not isinstance(address, str) or not is_hex_address(address):
        raise InvalidAddressError(f"Invalid address: {address!r}")
    return strip_hex(address).rjust(64, "0")


def encode_bytes32(value: Union[bytes, str]) -> str:
    """Encode a fixed 32-byte value, right-padded with zeros."""
    raw = bytes.fromhex(strip_hex(value)) if isinstance(value, str) else bytes(value)
    if len(raw) > WORD_SIZE:
        raise InvalidInputError("bytes32 value longer than 32 bytes")
    return raw.hex().ljust(64, "0")


def encode_bytes(data: bytes) -> str:
    """Encode the tail of a dynamic value: ``length || data`` padded to a word."""
    padded_len = -(-len(data) // WORD_SIZE) * WORD_SIZE
    return encode_uint256(len(data)) + data.hex().ljust(padded_len * 2, "0")


def encode_string(value: str) -> str:
    """Encode a UTF-8 string tail."""
    return encode_bytes(value.encode("utf-8"))


def _encode_static(abi_type: str, value: Any) -> str:
    if abi_type == "address":
        return encode_address(value)
    if abi_type == "uint256":
        return encode_uint256(value)
    if abi_type == "bytes32":
        return encode_bytes32(value)
    if abi_type == "bool":
        return encode_uint256(1 if value else 0)
    raise InvalidInputError(f"Unsupported static type: {abi_type}")


def _encode_dynamic(abi_type: str, value: Any) -> str:
    if abi_type == "string":
        if not isinstance(value, str):
            raise InvalidInputError("string argument expects str")
        return encode_string(value)
    raw = bytes.fromhex(strip_hex(value)) if isinstance(value, str) else bytes(value)
    return encode_bytes(raw)


def encode_arguments(types: Sequence[str], values: Sequence[Any]) -> str:
    """Encode an argument tuple using the head/tail scheme.

    Returns:
        Hex string without 0x prefix
    """
    if len(types) != len(values):
        raise InvalidInputError(f"Expected {len(types)} arguments, got {len(values)}")

    head_size = WORD_SIZE * len(types)
    head: list[str] = []
    tail = ""

    for abi_type, value in zip(types, values):
        if abi_type in DYNAMIC_TYPES:
            head.append(encode_uint256(head_size + len(tail) // 2))
            tail += _encode_dynamic(abi_type, value)
        elif abi_type in STATIC_TYPES:
            head.append(_encode_static(abi_type, value))
        else:
            raise InvalidInputError(f"Unsupported ABI type: {abi_type}")

    return "".join(head) + tail


def argument_types(signature: str) -> list[str]:
    """Extract the argument types from a canonical function signature."""
    inner = signature[signature.index("(") + 1 : signature.rindex(")")]
    return [t.strip() for t in inner.split(",")] if inner else []


def get_selector(signature: str) -> str:
    """Look up the 4-byte selector of a known function.

    Raises:
        UnknownSelectorError: If the signature is not in the selector table
    """
    try:
        return SELECTORS[signature]
    except KeyError:
        raise UnknownSelectorError(f"Unknown function: {signature}") from None


def encode_call(signature: str, *args: Any) -> str:
    """Encode a full call: selector followed by the ABI-encoded arguments."""
    selector = get_selector(signature)
    return selector + encode_arguments(argument_types(signature), args)


def encode_balance_of(owner: str) -> str:
    return encode_call("balanceOf(address)", owner)


def encode_transfer(to: str, amount: int) -> str:
    """Encode ``transfer(address,uint256)`` call data."""
    return encode_call("transfer(address,uint256)", to, amount)


def encode_get_agent(address: str) -> str:
    return encode_call(GET_AGENT, address)


def identity_hash(address: str) -> bytes:
    """Fixed-size identity hash for a registrant: keccak-256 of the raw address bytes."""
    if not is_hex_address(address):
        raise InvalidAddressError(f"Invalid address: {address!r}")
    return keccak(bytes.fromhex(strip_hex(address)))


def encode_register_agent(name: str, description: str, id_hash: bytes) -> str:
    """Encode ``registerAgent(string name, string description, bytes32 hash)``."""
    return encode_call(REGISTER_AGENT, name, description, id_hash)


# ======================
# Decoding
# ======================


def _read_word(data: str, offset: int) -> Optional[int]:
    """Read the word at a byte offset, or None when the payload is too short."""
    chunk = data[offset * 2 : offset * 2 + 64]
    if len(chunk) < 64:
        return None
    try:
        return int(chunk, 16)
    except ValueError:
        return None


def _read_dynamic(data: str, offset: int) -> Optional[bytes]:
    """Read ``length || data`` at a byte offset."""
    length = _read_word(data, offset)
    if length is None:
        return None
    start = (offset + WORD_SIZE) * 2
    end = start + length * 2
    if end > len(data):
        return None
    try:
        return bytes.fromhex(data[start:end])
    except ValueError:
        return None


def decode_uint256(hex_data: Optional[str]) -> int:
    """Decode a single uint256 return value; empty or truncated data is 0."""
    if not hex_data:
        return 0
    value = _read_word(strip_hex(hex_data), 0)
    return value if value is not None else 0


def decode_uint8(hex_data: Optional[str], default: int = 18) -> int:
    """Decode a small integer (e.g. ``decimals()``), with a default for empty data."""
    if not hex_data or strip_hex(hex_data) == "":
        return default
    value = _read_word(strip_hex(hex_data), 0)
    if value is None or value > 255:
        return default
    return value


def decode_string(hex_data: Optional[str]) -> str:
    """Decode a single dynamic string return value.

    Some legacy tokens return ``bytes32`` instead of ``string`` for name and
    symbol; a lone 32-byte word is read as a NUL-padded string.
    """
    if not hex_data:
        return ""
    data = strip_hex(hex_data)
    if not data:
        return ""

    if len(data) == 64:
        try:
            return bytes.fromhex(data).rstrip(b"\x00").decode("utf-8", errors="replace")
        except ValueError:
            return ""

    offset = _read_word(data, 0)
    if offset is None or offset * 2 >= len(data):
        return ""
    raw = _read_dynamic(data, offset)
    if raw is None:
        return ""
    return raw.decode("utf-8", errors="replace")


def decode_agent(hex_data: Optional[str]) -> Optional[AgentRecord]:
    """Decode a ``getAgent`` result (name, description, ...).

    Returns None when the address has no registration (empty name).
    """
    if not hex_data:
        return None
    data = strip_hex(hex_data)
    name_offset = _read_word(data, 0)
    desc_offset = _read_word(data, WORD_SIZE)
    if name_offset is None or desc_offset is None or name_offset * 2 >= len(data):
        return None

    name_raw = _read_dynamic(data, name_offset)
    if not name_raw:
        return None

    description = ""
    if desc_offset * 2 < len(data):
        desc_raw = _read_dynamic(data, desc_offset)
        if desc_raw:
            description = desc_raw.decode("utf-8", errors="replace")

    return AgentRecord(name=name_raw.decode("utf-8", errors="replace"), description=description)


def decode_register_agent(calldata: str) -> Optional[RegisterAgentCall]:
    """Decode ``registerAgent`` call data back into its arguments.

    Returns None if the selector does not match. Truncated tails decode to
    empty strings.
    """
    selector = strip_hex(SELECTORS[REGISTER_AGENT])
    data = strip_hex(calldata)
    if not data.startswith(selector):
        return None
    body = data[len(selector):]

    name_offset = _read_word(body, 0)
    desc_offset = _read_word(body, WORD_SIZE)
    hash_word = body[WORD_SIZE * 4 : WORD_SIZE * 6]

    name_raw = _read_dynamic(body, name_offset) if name_offset is not None else None
    desc_raw = _read_dynamic(body, desc_offset) if desc_offset is not None else None

    return RegisterAgentCall(
        name=name_raw.decode("utf-8", errors="replace") if name_raw else "",
        description=desc_raw.decode("utf-8", errors="replace") if desc_raw else "",
        identity_hash=bytes.fromhex(hash_word) if len(hash_word) == 64 else b"",
    )
