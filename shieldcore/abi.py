"""shieldcore.abi

Minimal contract ABI codec: enough of the Solidity ABI to encode the pool's
``shield``/``transact`` calldata and bound parameters, and to decode the pool's
event data.

Supported types: ``uint<N>``, ``bool``, ``address``, ``bytes<N>``, ``bytes``,
``string``, tuples ``(T1,T2,...)``, dynamic arrays ``T[]`` and fixed arrays
``T[k]``.

Decoding is strict: out-of-range pointers, truncated data, dirty padding in
``address``/``uint<N>`` words and non-canonical booleans raise
``AbiDecodeError``. Callers treat that as a malformed log.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Sequence, Tuple

from shieldcore.field import keccak256

WORD = 32


class AbiDecodeError(ValueError):
    """Data does not decode under the given ABI types."""


class AbiEncodeError(ValueError):
    """Value cannot be encoded under the given ABI type."""


@dataclass(frozen=True)
class AbiType:
    kind: str  # uint, bool, address, fixedbytes, bytes, string, tuple, array
    size: int = 0  # bit width for uint, byte width for fixedbytes, length for fixed arrays
    components: Tuple["AbiType", ...] = ()
    dynamic_length: bool = False

    @property
    def is_dynamic(self) -> bool:
        if self.kind in ("bytes", "string"):
            return True
        if self.kind == "array":
            return self.dynamic_length or self.components[0].is_dynamic
        if self.kind == "tuple":
            return any(c.is_dynamic for c in self.components)
        return False

    @property
    def head_size(self) -> int:
        if self.is_dynamic:
            return WORD
        if self.kind == "tuple":
            return sum(c.head_size for c in self.components)
        if self.kind == "array":
            return self.size * self.components[0].head_size
        return WORD


# =============================================================================
# TYPE PARSING
# =============================================================================

def _split_top_level(inner: str) -> List[str]:
    parts: List[str] = []
    depth = 0
    start = 0
    for i, ch in enumerate(inner):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "," and depth == 0:
            parts.append(inner[start:i])
            start = i + 1
    if inner:
        parts.append(inner[start:])
    return parts


def parse_type(text: str) -> AbiType:
    text = text.strip()
    if text.endswith("]"):
        open_idx = text.rindex("[")
        element = parse_type(text[:open_idx])
        length = text[open_idx + 1:-1]
        if length == "":
            return AbiType("array", components=(element,), dynamic_length=True)
        return AbiType("array", size=int(length), components=(element,))

    if text.startswith("("):
        if not text.endswith(")"):
            raise ValueError(f"Unbalanced tuple type: {text}")
        return AbiType("tuple", components=tuple(parse_type(p) for p in _split_top_level(text[1:-1])))

    if text in ("address", "bool", "bytes", "string"):
        return AbiType(text)
    if text.startswith("uint"):
        bits = int(text[4:] or 256)
        if bits % 8 or not 8 <= bits <= 256:
            raise ValueError(f"Invalid uint width: {text}")
        return AbiType("uint", size=bits)
    if text.startswith("bytes"):
        width = int(text[5:])
        if not 1 <= width <= 32:
            raise ValueError(f"Invalid fixed bytes width: {text}")
        return AbiType("fixedbytes", size=width)
    raise ValueError(f"Unsupported ABI type: {text}")


def parse_signature(signature: str) -> Tuple[str, List[AbiType]]:
    """Split ``name(T1,T2)`` into its name and parsed argument types."""
    open_idx = signature.index("(")
    name = signature[:open_idx]
    args = parse_type(signature[open_idx:])
    return name, list(args.components)


# =============================================================================
# ENCODING
# =============================================================================

def _encode_uint(value: int, bits: int = 256) -> bytes:
    if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value < (1 << bits):
        raise AbiEncodeError(f"Value {value!r} does not fit uint{bits}")
    return value.to_bytes(WORD, "big")


def _address_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str):
        raw = bytes.fromhex(value[2:] if value.startswith("0x") else value)
    else:
        raise AbiEncodeError(f"Invalid address {value!r}")
    if len(raw) != 20:
        raise AbiEncodeError(f"Address must be 20 bytes, got {len(raw)}")
    return raw


def _pad_right(data: bytes) -> bytes:
    remainder = len(data) % WORD
    return data + b"\x00" * ((WORD - remainder) % WORD)


def _encode_value(t: AbiType, value: Any) -> bytes:
    if t.kind == "uint":
        return _encode_uint(value, t.size)
    if t.kind == "bool":
        return _encode_uint(1 if value else 0)
    if t.kind == "address":
        return b"\x00" * 12 + _address_bytes(value)
    if t.kind == "fixedbytes":
        if isinstance(value, int):
            value = value.to_bytes(t.size, "big")
        if len(value) != t.size:
            raise AbiEncodeError(f"bytes{t.size} value has length {len(value)}")
        return _pad_right(bytes(value))
    if t.kind in ("bytes", "string"):
        data = value.encode("utf-8") if t.kind == "string" else bytes(value)
        return _encode_uint(len(data)) + _pad_right(data)
    if t.kind == "tuple":
        return _encode_sequence(list(t.components), list(value))
    if t.kind == "array":
        items = list(value)
        element = t.components[0]
        if t.dynamic_length:
            return _encode_uint(len(items)) + _encode_sequence([element] * len(items), items)
        if len(items) != t.size:
            raise AbiEncodeError(f"Fixed array expects {t.size} items, got {len(items)}")
        return _encode_sequence([element] * t.size, items)
    raise AbiEncodeError(f"Unsupported ABI type kind {t.kind}")


def _encode_sequence(types: Sequence[AbiType], values: Sequence[Any]) -> bytes:
    if len(types) != len(values):
        raise AbiEncodeError(f"Expected {len(types)} values, got {len(values)}")

    head_length = sum(t.head_size for t in types)
    heads: List[bytes] = []
    tails: List[bytes] = []
    tail_offset = head_length
    for t, v in zip(types, values):
        encoded = _encode_value(t, v)
        if t.is_dynamic:
            heads.append(_encode_uint(tail_offset))
            tails.append(encoded)
            tail_offset += len(encoded)
        else:
            heads.append(encoded)
    return b"".join(heads) + b"".join(tails)


def encode(types: Sequence[str], values: Sequence[Any]) -> bytes:
    """ABI-encode values as a top-level parameter list."""
    return _encode_sequence([parse_type(t) for t in types], values)


def function_selector(signature: str) -> bytes:
    return keccak256(signature.encode("ascii"))[:4]


def event_topic(signature: str) -> bytes:
    return keccak256(signature.encode("ascii"))


def encode_call(signature: str, values: Sequence[Any]) -> bytes:
    """Selector followed by encoded arguments."""
    _, types = parse_signature(signature)
    return function_selector(signature) + _encode_sequence(types, values)


# =============================================================================
# DECODING
# =============================================================================

def _read_word(data: bytes, offset: int) -> bytes:
    if offset < 0 or offset + WORD > len(data):
        raise AbiDecodeError(f"Read past end of data at offset {offset}")
    return data[offset:offset + WORD]


def _read_uint(data: bytes, offset: int, bits: int = 256) -> int:
    value = int.from_bytes(_read_word(data, offset), "big")
    if value >> bits:
        raise AbiDecodeError(f"Dirty high bits in uint{bits} at offset {offset}")
    return value


def _read_length(data: bytes, offset: int, unit: int = 1) -> int:
    length = _read_uint(data, offset)
    if length * unit > len(data):
        raise AbiDecodeError(f"Implausible length {length} at offset {offset}")
    return length


def _decode_value(t: AbiType, data: bytes, offset: int) -> Any:
    if t.kind == "uint":
        return _read_uint(data, offset, t.size)
    if t.kind == "bool":
        value = _read_uint(data, offset)
        if value not in (0, 1):
            raise AbiDecodeError(f"Non-canonical bool at offset {offset}")
        return bool(value)
    if t.kind == "address":
        word = _read_word(data, offset)
        if any(word[:12]):
            raise AbiDecodeError(f"Dirty address padding at offset {offset}")
        return "0x" + word[12:].hex()
    if t.kind == "fixedbytes":
        return _read_word(data, offset)[:t.size]
    if t.kind in ("bytes", "string"):
        length = _read_length(data, offset)
        start = offset + WORD
        if start + length > len(data):
            raise AbiDecodeError(f"Byte string overruns data at offset {offset}")
        raw = data[start:start + length]
        if t.kind == "string":
            try:
                return raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise AbiDecodeError(f"Invalid UTF-8 string at offset {offset}") from e
        return raw
    if t.kind == "tuple":
        return tuple(_decode_sequence(list(t.components), data, offset))
    if t.kind == "array":
        element = t.components[0]
        if t.dynamic_length:
            count = _read_length(data, offset, unit=WORD)
            return _decode_sequence([element] * count, data, offset + WORD)
        return _decode_sequence([element] * t.size, data, offset)
    raise AbiDecodeError(f"Unsupported ABI type kind {t.kind}")


def _decode_sequence(types: Sequence[AbiType], data: bytes, base: int) -> List[Any]:
    values: List[Any] = []
    head = base
    for t in types:
        if t.is_dynamic:
            pointer = _read_uint(data, head)
            values.append(_decode_value(t, data, base + pointer))
        else:
            values.append(_decode_value(t, data, head))
        head += t.head_size
    return values


def decode(types: Sequence[str], data: bytes, offset: int = 0) -> List[Any]:
    """Decode a top-level parameter list."""
    try:
        return _decode_sequence([parse_type(t) for t in types], bytes(data), offset)
    except RecursionError as e:
        raise AbiDecodeError("ABI data nests too deeply") from e


def decode_call(signature: str, calldata: bytes) -> List[Any]:
    """Decode calldata produced by ``encode_call``; the selector must match."""
    if bytes(calldata[:4]) != function_selector(signature):
        raise AbiDecodeError(f"Selector mismatch for {signature}")
    _, types = parse_signature(signature)
    return _decode_sequence(types, bytes(calldata), 4)
