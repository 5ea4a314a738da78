"""EVM bytecode kinds and their storable counterparts.

Executable bytecode comes in four shapes: raw legacy code, analysed legacy
code with a jump table, EIP-7702 delegation designators and EOF containers.
The storable forms keep only what is needed to rebuild them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

EIP7702_MAGIC_BYTES = b"\xef\x01"
EIP7702_VERSION = 0
_EIP7702_RAW_LEN = len(EIP7702_MAGIC_BYTES) + 1 + 20

_JUMPDEST = 0x5B
_PUSH1 = 0x60
_PUSH32 = 0x7F
# Enough zero bytes to terminate a trailing PUSH32 with a STOP.
_LEGACY_PADDING = 33

_EOF_MAGIC = 0xEF00
_EOF_VERSION = 0x01
_KIND_TERMINAL = 0x00
_KIND_TYPES = 0x01
_KIND_CODE = 0x02
_KIND_CONTAINER = 0x03
_KIND_DATA = 0x04
_MAX_CODE_SECTIONS = 0x0400
_MAX_CONTAINER_SECTIONS = 0x0100


class BytecodeConversionError(ValueError):
    """Raised when stored code cannot be turned into executable bytecode."""


def analyze_jump_table(code: bytes) -> frozenset[int]:
    """Return the offsets of valid JUMPDEST instructions, skipping PUSH data."""
    jumpdests: set[int] = set()
    pc = 0
    end = len(code)
    while pc < end:
        opcode = code[pc]
        if opcode == _JUMPDEST:
            jumpdests.add(pc)
            pc += 1
        elif _PUSH1 <= opcode <= _PUSH32:
            pc += opcode - _PUSH1 + 2
        else:
            pc += 1
    return frozenset(jumpdests)


@dataclass(frozen=True)
class LegacyRawBytecode:
    """Legacy code that has not been analysed yet."""

    code: bytes


@dataclass(frozen=True)
class LegacyAnalyzedBytecode:
    """Zero-padded legacy code with its jump table."""

    bytecode: bytes = b"\x00"
    original_len: int = 0
    jump_table: frozenset[int] = field(default_factory=frozenset)


@dataclass(frozen=True)
class Eip7702Bytecode:
    """An EIP-7702 delegation designator."""

    delegated_address: bytes
    version: int
    raw: bytes

    @classmethod
    def from_address(cls, delegated_address: bytes) -> Eip7702Bytecode:
        """Build the designator delegating to an address."""
        address = bytes(delegated_address)
        if len(address) != 20:
            raise ValueError("delegated address must be 20 bytes")
        raw = EIP7702_MAGIC_BYTES + bytes([EIP7702_VERSION]) + address
        return cls(address, EIP7702_VERSION, raw)

    @classmethod
    def from_raw(cls, raw: bytes) -> Eip7702Bytecode:
        """Parse a raw designator, checking length, magic and version."""
        raw = bytes(raw)
        if len(raw) != _EIP7702_RAW_LEN:
            raise ValueError("EIP-7702: invalid length")
        if not raw.startswith(EIP7702_MAGIC_BYTES):
            raise ValueError("EIP-7702: invalid magic")
        if raw[2] != EIP7702_VERSION:
            raise ValueError("EIP-7702: unsupported version")
        return cls(raw[3:], EIP7702_VERSION, raw)


class _EofReader:
    """Sequential big-endian reader over an EOF container."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self.offset = 0

    def take(self, size: int) -> bytes:
        end = self.offset + size
        if end > len(self._data):
            raise ValueError("EOF: missing input")
        chunk = self._data[self.offset:end]
        self.offset = end
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u16(self) -> int:
        return int.from_bytes(self.take(2), "big")

    def section_sizes(self) -> tuple[int, ...]:
        count = self.u16()
        if count == 0:
            raise ValueError("EOF: section without sizes")
        if self.offset + 2 * count > len(self._data):
            raise ValueError("EOF: short input for sizes")
        sizes = tuple(self.u16() for _ in range(count))
        if 0 in sizes:
            raise ValueError("EOF: zero section size")
        return sizes

    def types_section(self) -> tuple[int, int, int]:
        inputs, outputs, max_stack_size = self.u8(), self.u8(), self.u16()
        if inputs > 0x7F or outputs > 0x80 or max_stack_size > 0x03FF:
            raise ValueError("EOF: invalid types section")
        if inputs > max_stack_size:
            raise ValueError("EOF: invalid types section")
        return inputs, outputs, max_stack_size

    def rest(self) -> bytes:
        return self._data[self.offset:]


@dataclass(frozen=True)
class Eof:
    """A decoded EOF container."""

    raw: bytes
    types_sections: tuple[tuple[int, int, int], ...]
    code_sections: tuple[bytes, ...]
    container_sections: tuple[bytes, ...]
    data_section: bytes
    data_size: int

    @classmethod
    def decode(cls, raw: bytes) -> Eof:
        """Decode an EOF container, raising ValueError on malformed input."""
        raw = bytes(raw)
        reader = _EofReader(raw)
        if reader.u16() != _EOF_MAGIC:
            raise ValueError("EOF: invalid magic number")
        if reader.u8() != _EOF_VERSION:
            raise ValueError("EOF: invalid version")
        if reader.u8() != _KIND_TYPES:
            raise ValueError("EOF: invalid types kind")
        types_size = reader.u16()
        if types_size % 4:
            raise ValueError("EOF: invalid types section")
        if reader.u8() != _KIND_CODE:
            raise ValueError("EOF: invalid code kind")
        code_sizes = reader.section_sizes()
        if len(code_sizes) > _MAX_CODE_SECTIONS:
            raise ValueError("EOF: too many code sections")
        if len(code_sizes) != types_size // 4:
            raise ValueError("EOF: code and types sizes mismatch")

        container_sizes: tuple[int, ...] = ()
        kind = reader.u8()
        if kind == _KIND_CONTAINER:
            container_sizes = reader.section_sizes()
            if len(container_sizes) > _MAX_CONTAINER_SECTIONS:
                raise ValueError("EOF: too many container sections")
            if reader.u8() != _KIND_DATA:
                raise ValueError("EOF: invalid data kind")
        elif kind != _KIND_DATA:
            raise ValueError("EOF: invalid kind after code")
        data_size = reader.u16()
        if reader.u8() != _KIND_TERMINAL:
            raise ValueError("EOF: invalid terminal byte")

        header_len = reader.offset
        partial_body_len = sum(code_sizes) + sum(container_sizes) + types_size
        if len(raw) < header_len + partial_body_len:
            raise ValueError("EOF: missing body")
        if len(raw) > header_len + partial_body_len + data_size:
            raise ValueError("EOF: dangling data")

        types_sections = tuple(reader.types_section() for _ in range(types_size // 4))
        code_sections = tuple(reader.take(size) for size in code_sizes)
        container_sections = tuple(reader.take(size) for size in container_sizes)
        return cls(
            raw=raw,
            types_sections=types_sections,
            code_sections=code_sections,
            container_sections=container_sections,
            data_section=reader.rest(),
            data_size=data_size,
        )


@dataclass(frozen=True)
class EofBytecode:
    """Executable EOF bytecode."""

    eof: Eof


Bytecode = Union[LegacyRawBytecode, LegacyAnalyzedBytecode, Eip7702Bytecode, EofBytecode]


@dataclass(frozen=True)
class LegacyCode:
    """Stored analysed legacy code."""

    bytecode: bytes
    original_len: int
    jump_table: frozenset[int]


@dataclass(frozen=True)
class Eip7702Code:
    """Stored EIP-7702 delegation."""

    delegated_address: bytes
    version: int


@dataclass(frozen=True)
class EofCode:
    """Stored raw EOF container."""

    raw: bytes


EvmCode = Union[LegacyCode, Eip7702Code, EofCode]


def to_analysed(bytecode: Bytecode) -> Bytecode:
    """Pad and analyse raw legacy code; return any other bytecode unchanged."""
    if not isinstance(bytecode, LegacyRawBytecode):
        return bytecode
    code = bytes(bytecode.code)
    padded = code + bytes(_LEGACY_PADDING)
    return LegacyAnalyzedBytecode(padded, len(code), analyze_jump_table(padded))


def evm_code_from_bytecode(code: Bytecode) -> EvmCode:
    """Turn executable bytecode into its storable form."""
    match code:
        case LegacyRawBytecode():
            return evm_code_from_bytecode(to_analysed(code))
        case LegacyAnalyzedBytecode(bytecode=bytecode, original_len=length, jump_table=table):
            return LegacyCode(bytecode, length, table)
        case Eip7702Bytecode(delegated_address=address, version=version):
            return Eip7702Code(address, version)
        case EofBytecode(eof=eof):
            return EofCode(eof.raw)
    raise TypeError(f"unsupported bytecode: {type(code).__name__}")


def bytecode_from_evm_code(code: EvmCode) -> Bytecode:
    """Rebuild executable bytecode from its storable form."""
    match code:
        case LegacyCode(bytecode=bytecode, original_len=length, jump_table=table):
            return LegacyAnalyzedBytecode(bytecode, length, table)
        case Eip7702Code(delegated_address=address, version=version):
            raw = EIP7702_MAGIC_BYTES + bytes([version]) + bytes(address)
            return Eip7702Bytecode(address, version, raw)
        case EofCode(raw=raw):
            try:
                return EofBytecode(Eof.decode(raw))
            except ValueError as err:
                raise BytecodeConversionError("EOF decoding error") from err
    raise TypeError(f"unsupported code: {type(code).__name__}")