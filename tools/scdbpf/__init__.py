"""
SimCity 4 DBPF Payload Library

Decodes QFS (RefPack) compressed payloads found in SimCity 4 DBPF
archives. Locating entries and reading their declared sizes is left to
the archive layer; this package turns one compressed payload into its
decompressed bytes.

Simple Usage:
    from scdbpf import decompress_bytes

    # size comes from the archive's index for this entry
    data = decompress_bytes(payload, size)

Advanced Usage:
    from scdbpf import QfsDecoder, OpcodeIterator, QfsError

    # Decode into a caller-owned buffer
    output = bytearray(size)
    try:
        QfsDecoder().decode(payload, output)
    except QfsError as e:
        print(f"Corrupt entry: {e}")

    # Inspect the opcode stream
    for opcode in OpcodeIterator(payload):
        print(opcode)
"""

from .qfs import (
    PREFIX_SIZE, MAX_DECOMPRESSED_SIZE,
    QfsError, LengthMismatch, OutOfRangeReference, BoundsViolation,
    ReadCursor, WriteCursor,
    OpcodeKind, Opcode, classify,
    emit_literals, copy_back_reference,
    QfsDecoder, OpcodeIterator,
    decompress, decompress_bytes, disassemble,
)

__all__ = [
    # Format constants
    'PREFIX_SIZE',
    'MAX_DECOMPRESSED_SIZE',

    # Errors
    'QfsError',
    'LengthMismatch',
    'OutOfRangeReference',
    'BoundsViolation',

    # Decoder building blocks
    'ReadCursor',
    'WriteCursor',
    'OpcodeKind',
    'Opcode',
    'classify',
    'emit_literals',
    'copy_back_reference',

    # Decoding
    'QfsDecoder',
    'OpcodeIterator',
    'decompress',
    'decompress_bytes',
    'disassemble',
]

__version__ = '1.0.0'
