"""
QFS (RefPack) decompression for SimCity 4 DBPF payloads.

QFS is an LZ77 variant. A compressed payload starts with a 9-byte prefix
(compressed size, 0x10FB magic, decompressed size) which is owned by the
container layer and skipped here. The rest is a sequence of opcodes, each
selected by the value range of its first (control) byte:

- 0x00-0x7F: short copy,  2 header bytes, 0-3 literals,  offset <= 1024,   length 3-10
- 0x80-0xBF: medium copy, 3 header bytes, 0-3 literals,  offset <= 16384,  length 4-67
- 0xC0-0xDF: long copy,   4 header bytes, 0-3 literals,  offset <= 131072, length 5-1028
- 0xE0-0xFB: literal run, 1 header byte,  4-112 literals (multiple of 4)
- 0xFC-0xFF: end of stream, 1 header byte, 0-3 trailing literals

Literals always follow the header and are written before the back-reference.
Back-references copy from already decoded output and may overlap the bytes
being written (offset < length repeats a period of the output).
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Iterator, List, Optional, Union

__all__ = [
    'PREFIX_SIZE', 'MAX_DECOMPRESSED_SIZE',
    'QfsError', 'LengthMismatch', 'OutOfRangeReference', 'BoundsViolation',
    'ReadCursor', 'WriteCursor',
    'OpcodeKind', 'Opcode', 'classify',
    'emit_literals', 'copy_back_reference',
    'QfsDecoder', 'OpcodeIterator',
    'decompress', 'decompress_bytes', 'disassemble',
]

PREFIX_SIZE = 9
MAX_DECOMPRESSED_SIZE = 0xFFFFFF  # 3-byte size field in the prefix

Buffer = Union[bytes, bytearray, memoryview]


class QfsError(ValueError):
    """Base class for corrupt or inconsistent QFS streams."""


class LengthMismatch(QfsError):
    """The stream ended but did not fill the destination exactly."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Decoded {actual} bytes, expected {expected}")
        self.expected = expected
        self.actual = actual


class OutOfRangeReference(QfsError):
    """A back-reference points before the start of the output."""

    def __init__(self, offset: int, position: int):
        super().__init__(
            f"Back-reference offset {offset} at output position {position} "
            f"points before start of output")
        self.offset = offset
        self.position = position


class BoundsViolation(QfsError):
    """A cursor would move past the end of its buffer."""

    def __init__(self, buffer_name: str, position: int, requested: int, limit: int):
        super().__init__(
            f"Cannot access {requested} byte(s) of {buffer_name} at position "
            f"{position} (size {limit})")
        self.buffer_name = buffer_name
        self.position = position
        self.requested = requested
        self.limit = limit


class ReadCursor:
    """Read position over compressed input, checked on every access."""

    def __init__(self, data: Buffer, position: int = PREFIX_SIZE):
        self.data = data
        self.position = position

    @property
    def exhausted(self) -> bool:
        return self.position >= len(self.data)

    def _require(self, count: int):
        if self.position + count > len(self.data):
            raise BoundsViolation('input', self.position, count, len(self.data))

    def read_byte(self) -> int:
        self._require(1)
        value = self.data[self.position]
        self.position += 1
        return value

    def read(self, count: int) -> Buffer:
        self._require(count)
        chunk = self.data[self.position:self.position + count]
        self.position += count
        return chunk

    def skip(self, count: int):
        self._require(count)
        self.position += count


class WriteCursor:
    """Write position over a fixed-size output buffer."""

    def __init__(self, buffer: Union[bytearray, memoryview]):
        self.buffer = buffer
        self.position = 0

    @property
    def capacity(self) -> int:
        return len(self.buffer)

    @property
    def remaining(self) -> int:
        return self.capacity - self.position

    def require(self, count: int):
        """Raise BoundsViolation unless `count` more bytes fit."""
        if count > self.remaining:
            raise BoundsViolation('output', self.position, count, self.capacity)

    def write(self, chunk: Buffer):
        count = len(chunk)
        self.require(count)
        self.buffer[self.position:self.position + count] = chunk
        self.position += count


class OpcodeKind(IntEnum):
    """Opcode shapes, valued by the lowest control byte of their range."""
    SHORT_COPY = 0x00
    MEDIUM_COPY = 0x80
    LONG_COPY = 0xC0
    LITERAL_RUN = 0xE0
    END = 0xFC

    @classmethod
    def from_control_byte(cls, value: int) -> 'OpcodeKind':
        if not 0 <= value <= 0xFF:
            raise ValueError(f"Control byte out of range: {value}")
        if value < 0x80:
            return cls.SHORT_COPY
        if value < 0xC0:
            return cls.MEDIUM_COPY
        if value < 0xE0:
            return cls.LONG_COPY
        if value < 0xFC:
            return cls.LITERAL_RUN
        return cls.END

    @property
    def header_size(self) -> int:
        return _HEADER_SIZES[self]

    @property
    def has_back_reference(self) -> bool:
        return self in (OpcodeKind.SHORT_COPY, OpcodeKind.MEDIUM_COPY, OpcodeKind.LONG_COPY)


_HEADER_SIZES = {
    OpcodeKind.SHORT_COPY: 2,
    OpcodeKind.MEDIUM_COPY: 3,
    OpcodeKind.LONG_COPY: 4,
    OpcodeKind.LITERAL_RUN: 1,
    OpcodeKind.END: 1,
}


@dataclass(frozen=True)
class Opcode:
    """A decoded opcode header. offset and copy_length are 0 without a back-reference."""
    kind: OpcodeKind
    position: int  # offset of the control byte in the compressed stream
    literal_count: int
    offset: int = 0
    copy_length: int = 0

    @property
    def size(self) -> int:
        """Header bytes consumed, excluding literals."""
        return self.kind.header_size

    @property
    def has_back_reference(self) -> bool:
        return self.kind.has_back_reference

    @property
    def is_end(self) -> bool:
        return self.kind is OpcodeKind.END

    @property
    def output_size(self) -> int:
        """Bytes this opcode appends to the output."""
        return self.literal_count + self.copy_length

    def __repr__(self) -> str:
        if self.has_back_reference:
            return (f"Opcode({self.position:06X}: {self.kind.name} literals={self.literal_count} "
                    f"offset={self.offset} length={self.copy_length})")
        return f"Opcode({self.position:06X}: {self.kind.name} literals={self.literal_count})"


def classify(cursor: ReadCursor) -> Opcode:
    """
    Read one opcode header and decode its operand fields.

    Advances the cursor past the header bytes only; literals that follow
    are left for the caller.

    Raises:
        BoundsViolation: If the header is truncated
    """
    position = cursor.position
    b0 = cursor.read_byte()
    kind = OpcodeKind.from_control_byte(b0)

    if kind is OpcodeKind.SHORT_COPY:
        b1 = cursor.read_byte()
        return Opcode(kind, position,
                      literal_count=b0 & 0x03,
                      offset=((b0 & 0x60) << 3) + b1 + 1,
                      copy_length=((b0 & 0x1C) >> 2) + 3)

    if kind is OpcodeKind.MEDIUM_COPY:
        b1 = cursor.read_byte()
        b2 = cursor.read_byte()
        return Opcode(kind, position,
                      literal_count=(b1 >> 6) & 0x03,
                      offset=((b1 & 0x3F) << 8) + b2 + 1,
                      copy_length=(b0 & 0x3F) + 4)

    if kind is OpcodeKind.LONG_COPY:
        b1 = cursor.read_byte()
        b2 = cursor.read_byte()
        b3 = cursor.read_byte()
        return Opcode(kind, position,
                      literal_count=b0 & 0x03,
                      offset=((b0 & 0x10) << 12) + (b1 << 8) + b2 + 1,
                      copy_length=((b0 & 0x0C) << 6) + b3 + 5)

    if kind is OpcodeKind.LITERAL_RUN:
        return Opcode(kind, position, literal_count=((b0 & 0x1F) << 2) + 4)

    return Opcode(kind, position, literal_count=b0 & 0x03)


def emit_literals(source: ReadCursor, sink: WriteCursor, count: int):
    """Copy `count` bytes verbatim from the compressed stream to the output."""
    sink.write(source.read(count))


def copy_back_reference(sink: WriteCursor, offset: int, length: int):
    """
    Append `length` bytes copied from `offset` bytes behind the write position.

    The copy runs one byte at a time: when offset < length the source range
    reaches into bytes written by this same copy.

    Raises:
        OutOfRangeReference: If the source starts before the output
        BoundsViolation: If the copy would overflow the output
    """
    source = sink.position - offset
    if source < 0:
        raise OutOfRangeReference(offset, sink.position)
    sink.require(length)

    buffer = sink.buffer
    dest = sink.position
    for i in range(length):
        buffer[dest + i] = buffer[source + i]
    sink.position += length


class QfsDecoder:
    """
    One-shot QFS decoder.

    Each call to decode() uses fresh cursors; the only state kept on the
    instance is opcodes_decoded, the opcode count of the last call.

    Usage:
        decoder = QfsDecoder()
        output = bytearray(expected_size)
        decoder.decode(compressed, output)
    """

    def __init__(self):
        self.opcodes_decoded = 0

    def decode(self, compressed: Buffer, destination: Union[bytearray, memoryview]) -> None:
        """
        Decode a QFS stream into a preallocated buffer.

        Args:
            compressed: Compressed payload including its 9-byte prefix
            destination: Writable buffer whose size in bytes is the exact decompressed size

        Raises:
            TypeError: If destination is read-only or not contiguous
            ValueError: If destination is larger than a QFS stream can describe
            LengthMismatch: If the stream does not fill destination exactly
            OutOfRangeReference: If a back-reference precedes the output start
            BoundsViolation: If the stream reads or writes out of bounds
        """
        self.opcodes_decoded = 0

        # capacity is counted in bytes whatever the item size of destination
        with memoryview(destination) as raw, raw.cast('B') as view:
            if view.readonly:
                raise TypeError("Destination buffer must be writable")
            if view.nbytes > MAX_DECOMPRESSED_SIZE:
                raise ValueError(
                    f"Destination size {view.nbytes} exceeds QFS maximum {MAX_DECOMPRESSED_SIZE}")

            source = ReadCursor(compressed)
            sink = WriteCursor(view)

            while not source.exhausted:
                opcode = classify(source)
                self.opcodes_decoded += 1

                emit_literals(source, sink, opcode.literal_count)
                if opcode.has_back_reference:
                    copy_back_reference(sink, opcode.offset, opcode.copy_length)
                if opcode.is_end:
                    break

            if sink.position != sink.capacity:
                raise LengthMismatch(sink.capacity, sink.position)


class OpcodeIterator:
    """
    Walks the opcodes of a QFS stream without producing output.

    Literal runs are skipped and iteration stops after the END opcode or
    when the input runs out, matching the decode loop. Back-references are
    not checked against an output buffer.

    Usage:
        for opcode in OpcodeIterator(compressed):
            print(opcode)
    """

    def __init__(self, compressed: Buffer, start_offset: int = PREFIX_SIZE):
        self._cursor = ReadCursor(compressed, start_offset)
        self._finished = False
        self.output_size = 0

    @property
    def offset(self) -> int:
        """Current byte offset in the compressed stream."""
        return self._cursor.position

    def has_more(self) -> bool:
        return not self._finished and not self._cursor.exhausted

    def next(self) -> Optional[Opcode]:
        """
        Decode the next opcode header and skip its literals.

        Returns:
            Next Opcode, or None at the end of the stream

        Raises:
            BoundsViolation: If the header or its literals are truncated
        """
        if not self.has_more():
            return None

        opcode = classify(self._cursor)
        self._cursor.skip(opcode.literal_count)
        self.output_size += opcode.output_size
        if opcode.is_end:
            self._finished = True
        return opcode

    def __iter__(self) -> Iterator[Opcode]:
        return self

    def __next__(self) -> Opcode:
        opcode = self.next()
        if opcode is None:
            raise StopIteration
        return opcode


def decompress(compressed: Buffer, destination: Union[bytearray, memoryview]) -> None:
    """
    Decompress a QFS payload into `destination`.

    Args:
        compressed: Compressed payload including its 9-byte prefix
        destination: Writable buffer of the exact decompressed size. Its
            contents are undefined if an exception is raised.
    """
    QfsDecoder().decode(compressed, destination)


def decompress_bytes(compressed: Buffer, size: int) -> bytes:
    """
    Convenience function to decompress a QFS payload of known size.

    Args:
        compressed: Compressed payload including its 9-byte prefix
        size: Exact decompressed size

    Returns:
        Decompressed bytes
    """
    if size < 0:
        raise ValueError(f"Negative decompressed size: {size}")
    output = bytearray(size)
    decompress(compressed, output)
    return bytes(output)


def disassemble(compressed: Buffer, limit: Optional[int] = None) -> List[Opcode]:
    """List the opcodes of a QFS stream, at most `limit` of them."""
    opcodes = []
    iterator = OpcodeIterator(compressed)
    while limit is None or len(opcodes) < limit:
        opcode = iterator.next()
        if opcode is None:
            break
        opcodes.append(opcode)
    return opcodes


def main(argv: Optional[List[str]] = None):
    """CLI interface for the QFS decoder."""
    import argparse
    import sys
    from pathlib import Path

    parser = argparse.ArgumentParser(
        description='SimCity 4 QFS payload decompressor',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Decompress a payload whose index entry says it unpacks to 4096 bytes
  python -m scdbpf.qfs payload.qfs --size 4096 -o payload.bin

  # Check a payload without writing anything
  python -m scdbpf.qfs payload.qfs --size 4096

  # List the opcodes of a payload
  python -m scdbpf.qfs payload.qfs --dump -n 50
"""
    )
    parser.add_argument('input', help='Compressed payload, including its 9-byte prefix')
    parser.add_argument('-s', '--size', type=int, help='Exact decompressed size in bytes')
    parser.add_argument('-o', '--output', help='Write decompressed data to this file')
    parser.add_argument('-d', '--dump', action='store_true', help='List opcodes instead of decoding')
    parser.add_argument('-n', '--limit', type=int, default=100, help='Max opcodes to list (default: 100)')

    args = parser.parse_args(argv)

    if not args.dump and args.size is None:
        parser.error("--size is required unless using --dump")

    try:
        data = Path(args.input).read_bytes()

        if args.dump:
            iterator = OpcodeIterator(data)
            shown = 0
            for opcode in iterator:
                if shown < args.limit:
                    print(f"  {opcode}")
                shown += 1
            if shown > args.limit:
                print(f"  ... {shown - args.limit} more")
            print(f"{shown} opcodes, {iterator.output_size} output bytes")
            return

        output = decompress_bytes(data, args.size)
        if args.output:
            out_path = Path(args.output)
            out_path.parent.mkdir(parents=True, exist_ok=True)
            out_path.write_bytes(output)
            print(f"Wrote {len(output)} bytes to: {out_path}")
        else:
            print(f"Decoded {len(output)} bytes from {len(data)} compressed bytes")

    except (OSError, ValueError, TypeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
