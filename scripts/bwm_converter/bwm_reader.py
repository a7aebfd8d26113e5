#!/usr/bin/env python3
"""
bwm_reader.py
=============

Pure Python reader for Lionhead BWM model files (Black & White 2 engine).

The file is consumed in a single forward pass:

    header -> materials -> mesh descriptions -> material refs (per mesh)
    -> bones (skipped) -> entities -> unknown blocks (skipped)
    -> stride definitions -> vertices -> indices -> cleave points (v6)

The vertex record size is not fixed; it is resolved from an embedded stride
definition (a small table of format codes) before the vertex block is read.

Usage:
    from bwm_reader import read_bwm
    model = read_bwm(Path("Data/Art/models/m_tree.bwm"))
"""

from __future__ import annotations

import io
import logging
import struct
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import BinaryIO, List, Optional, Tuple


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class BwmParseError(Exception):
    """Base class for every decode failure. ``offset`` is the byte position."""

    def __init__(self, message: str, offset: Optional[int] = None) -> None:
        self.offset = offset
        if offset is not None:
            message = f"{message} (at offset {offset})"
        super().__init__(message)


class BadMagicError(BwmParseError):
    pass


class BadHeaderError(BwmParseError):
    pass


class UnsupportedVersionError(BwmParseError):
    pass


class UnexpectedEndOfDataError(BwmParseError):
    pass


class UnknownStrideFormatError(BwmParseError):
    pass


class MultipleStridesUnsupportedError(BwmParseError):
    pass


class StrideTooSmallError(BwmParseError):
    pass


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAGIC_FILE_IDENTIFIER = b"LiOnHeAdMODEL"
MAGIC_NUMBER_IDENTIFIER = 0x2B00B1E5

# Bytes preceding the payload size field; payload size should equal
# file length minus this.
HEADER_PREFIX_SIZE = 44

# On-disk record sizes
SIZEOF_TEXT_FIELD = 64
SIZEOF_ENTITY_NAME = 256
SIZEOF_MESH_RESERVED = 124
SIZEOF_MATERIAL_REF = 32
SIZEOF_BONE = 48
SIZEOF_UNKNOWN_BLOCK = 12
SIZEOF_STRIDE_DEFINITION = 136
SIZEOF_DECODED_VERTEX = 32  # position(12) + normal(12) + u(4) + v(4)

# Largest single read issued to the stream; declared sizes are not trusted.
READ_CHUNK_SIZE = 1 << 20

# Byte size per stride format code.
STRIDE_FORMAT_SIZES: Tuple[int, ...] = (4, 8, 12, 4, 1)

_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")
_POINT = struct.Struct("<3f")
_VERTEX = struct.Struct("<8f")
_MATERIAL_REF = struct.Struct("<8I")
_HEADER_COUNTS = struct.Struct("<6I20x4I")


# ---------------------------------------------------------------------------
# BWM data structures
# ---------------------------------------------------------------------------

class FormatVersion(IntEnum):
    BWM5 = 5
    BWM6 = 6


@dataclass(frozen=True)
class Point:
    x: float
    y: float
    z: float

    def as_tuple(self) -> Tuple[float, float, float]:
        return (self.x, self.y, self.z)


@dataclass(frozen=True)
class MaterialDefinition:
    diffuse_map: str
    light_map: str
    unknown3: str
    specular_map: str
    unknown5: str
    normal_map: str
    type: str


@dataclass(frozen=True)
class MaterialRef:
    material_definition: int
    indices_offset: int
    indices_size: int
    vertex_offset: int
    vertex_size: int
    faces_offset: int
    faces_size: int
    unknown: int


@dataclass(frozen=True)
class MeshDescription:
    id: int
    name: str
    faces_count: int
    indices_pointer: int
    material_refs: Tuple[MaterialRef, ...]


@dataclass(frozen=True)
class Entity:
    name: str
    position: Point
    unknown1: Point
    unknown2: Point
    unknown3: Point


@dataclass(frozen=True)
class StrideField:
    id: int
    format: int
    size: int


@dataclass(frozen=True)
class Vertex:
    position: Point
    normal: Point
    u: float
    v: float
    # Declared by the format but never populated; remaining stride bytes
    # are skipped as padding.
    u1: Optional[float] = None
    u2: Optional[float] = None
    u3: Optional[float] = None
    u4: Optional[float] = None


@dataclass(frozen=True)
class ModelHeader:
    version: FormatVersion
    payload_size: int
    payload_size_2: int
    material_count: int
    mesh_count: int
    bone_count: int
    entity_count: int
    unknown_a_count: int
    unknown_b_count: int
    vertex_count: int
    stride_count: int
    index_count: int


@dataclass(frozen=True)
class Model:
    version: FormatVersion
    payload_size: int
    payload_size_2: int
    materials: Tuple[MaterialDefinition, ...]
    meshes: Tuple[MeshDescription, ...]
    bone_count: int
    entities: Tuple[Entity, ...]
    unknown_a_count: int
    unknown_b_count: int
    vertex_stride: int
    stride_fields: Tuple[StrideField, ...]
    vertices: Tuple[Vertex, ...]
    indices: Tuple[int, ...]
    cleave_points: Optional[Tuple[Point, ...]] = None


# ---------------------------------------------------------------------------
# Byte cursor
# ---------------------------------------------------------------------------

class _Cursor:
    """Forward-only reader over a binary stream or a bytes buffer."""

    def __init__(self, stream: BinaryIO, start: int = 0) -> None:
        self._stream = stream
        self.offset = start

    def read(self, size: int) -> bytes:
        # Raw and socket streams may return short reads before EOF.
        parts: List[bytes] = []
        received = 0
        while received < size:
            chunk = self._stream.read(min(size - received, READ_CHUNK_SIZE))
            if not chunk:
                raise UnexpectedEndOfDataError(
                    f"Needed {size} bytes, only {received} available", self.offset
                )
            parts.append(chunk)
            received += len(chunk)
        self.offset += size
        return b"".join(parts)

    def skip(self, size: int) -> None:
        # read() instead of seek() so non-seekable streams work too
        self.read(size)

    def u32(self) -> int:
        return _U32.unpack(self.read(4))[0]

    def point(self) -> Point:
        return Point(*_POINT.unpack(self.read(12)))

    def text(self, size: int) -> str:
        return decode_fixed_string(self.read(size))


def decode_fixed_string(raw: bytes) -> str:
    """Decode a NUL-padded fixed-length text field."""
    null_pos = raw.find(b"\x00")
    if null_pos >= 0:
        raw = raw[:null_pos]
    return raw.decode("ascii", errors="replace")


# ---------------------------------------------------------------------------
# Stride definitions
# ---------------------------------------------------------------------------

def stride_in_bytes_from_format(format_code: int, offset: Optional[int] = None) -> int:
    if not 0 <= format_code < len(STRIDE_FORMAT_SIZES):
        raise UnknownStrideFormatError(f"Unknown stride format code {format_code}", offset)
    return STRIDE_FORMAT_SIZES[format_code]


def parse_stride_definition(data: bytes, base_offset: int = 0) -> List[StrideField]:
    """Parse one stride definition: a u32 entry count then (id, format) pairs."""
    cursor = _Cursor(io.BytesIO(data), start=base_offset)
    count = cursor.u32()
    fields: List[StrideField] = []
    for _ in range(count):
        field_id = cursor.u32()
        format_offset = cursor.offset
        format_code = cursor.u32()
        size = stride_in_bytes_from_format(format_code, format_offset)
        fields.append(StrideField(id=field_id, format=format_code, size=size))
    return fields


def stride_in_bytes(data: bytes, base_offset: int = 0) -> int:
    """Return the per-vertex byte size described by a stride definition."""
    return sum(f.size for f in parse_stride_definition(data, base_offset))


# ---------------------------------------------------------------------------
# Section readers
# ---------------------------------------------------------------------------

def _read_header(cursor: _Cursor) -> ModelHeader:
    magic = cursor.read(len(MAGIC_FILE_IDENTIFIER))
    if magic != MAGIC_FILE_IDENTIFIER:
        raise BadMagicError(f"Not a Lionhead model file (magic: {magic!r})", 0)
    cursor.skip(27)

    payload_size = cursor.u32()

    magic_offset = cursor.offset
    magic_number = cursor.u32()
    if magic_number != MAGIC_NUMBER_IDENTIFIER:
        raise BadHeaderError(
            f"Lionhead header mismatch (magic number: 0x{magic_number:08X})", magic_offset
        )

    version_offset = cursor.offset
    raw_version = cursor.u32()
    if raw_version not in (FormatVersion.BWM5, FormatVersion.BWM6):
        raise UnsupportedVersionError(
            f"Unsupported BWM version: {raw_version}", version_offset
        )

    payload_size_2 = cursor.u32()
    cursor.skip(68)

    (
        material_count, mesh_count, bone_count, entity_count,
        unknown_a_count, unknown_b_count,
        vertex_count, stride_count, _reserved, index_count,
    ) = _HEADER_COUNTS.unpack(cursor.read(_HEADER_COUNTS.size))

    header = ModelHeader(
        version=FormatVersion(raw_version),
        payload_size=payload_size,
        payload_size_2=payload_size_2,
        material_count=material_count,
        mesh_count=mesh_count,
        bone_count=bone_count,
        entity_count=entity_count,
        unknown_a_count=unknown_a_count,
        unknown_b_count=unknown_b_count,
        vertex_count=vertex_count,
        stride_count=stride_count,
        index_count=index_count,
    )
    logging.debug(
        "BWM v%d: materials=%d meshes=%d bones=%d entities=%d vertices=%d strides=%d indices=%d",
        header.version, material_count, mesh_count, bone_count, entity_count,
        vertex_count, stride_count, index_count,
    )
    return header


def _read_material(cursor: _Cursor) -> MaterialDefinition:
    return MaterialDefinition(
        diffuse_map=cursor.text(SIZEOF_TEXT_FIELD),
        light_map=cursor.text(SIZEOF_TEXT_FIELD),
        unknown3=cursor.text(SIZEOF_TEXT_FIELD),
        specular_map=cursor.text(SIZEOF_TEXT_FIELD),
        unknown5=cursor.text(SIZEOF_TEXT_FIELD),
        normal_map=cursor.text(SIZEOF_TEXT_FIELD),
        type=cursor.text(SIZEOF_TEXT_FIELD),
    )


def _read_mesh_description(cursor: _Cursor) -> Tuple[int, str, int, int, int]:
    """Return (id, name, faces_count, indices_pointer, material_ref_count)."""
    faces_count = cursor.u32()
    indices_pointer = cursor.u32()
    cursor.skip(SIZEOF_MESH_RESERVED)
    cursor.u32()
    material_ref_count = cursor.u32()
    cursor.u32()
    mesh_id = cursor.u32()
    name = cursor.text(SIZEOF_TEXT_FIELD)
    cursor.skip(8)
    return mesh_id, name, faces_count, indices_pointer, material_ref_count


def _read_material_ref(cursor: _Cursor) -> MaterialRef:
    return MaterialRef(*_MATERIAL_REF.unpack(cursor.read(SIZEOF_MATERIAL_REF)))


def _read_entity(cursor: _Cursor) -> Entity:
    unknown1 = cursor.point()
    unknown2 = cursor.point()
    unknown3 = cursor.point()
    position = cursor.point()
    name = cursor.text(SIZEOF_ENTITY_NAME)
    return Entity(
        name=name,
        position=position,
        unknown1=unknown1,
        unknown2=unknown2,
        unknown3=unknown3,
    )


def _skip_records(cursor: _Cursor, count: int, record_size: int) -> None:
    for _ in range(count):
        cursor.skip(record_size)


def _read_vertices(cursor: _Cursor, count: int, stride: int) -> List[Vertex]:
    if count == 0:
        return []
    if stride < SIZEOF_DECODED_VERTEX:
        raise StrideTooSmallError(
            f"Vertex stride {stride} is smaller than the {SIZEOF_DECODED_VERTEX} "
            "decoded bytes per vertex",
            cursor.offset,
        )

    padding = stride - SIZEOF_DECODED_VERTEX
    if padding:
        logging.debug("Skipping %d padding bytes per vertex (stride=%d)", padding, stride)

    vertices: List[Vertex] = []
    for _ in range(count):
        px, py, pz, nx, ny, nz, u, v = _VERTEX.unpack(cursor.read(SIZEOF_DECODED_VERTEX))
        if padding:
            cursor.skip(padding)
        vertices.append(Vertex(
            position=Point(px, py, pz),
            normal=Point(nx, ny, nz),
            u=u,
            v=v,
        ))
    return vertices


def _read_indices(cursor: _Cursor, count: int) -> Tuple[int, ...]:
    if count == 0:
        return ()
    return struct.unpack(f"<{count}H", cursor.read(count * _U16.size))


def _read_cleave_points(cursor: _Cursor) -> Tuple[Point, ...]:
    count = cursor.u32()
    return tuple(cursor.point() for _ in range(count))


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def read_bwm_stream(stream: BinaryIO) -> Model:
    """Decode a BWM model from an open binary stream positioned at its start."""
    cursor = _Cursor(stream)
    header = _read_header(cursor)

    materials = tuple(_read_material(cursor) for _ in range(header.material_count))

    mesh_headers = [_read_mesh_description(cursor) for _ in range(header.mesh_count)]
    meshes: List[MeshDescription] = []
    for mesh_id, name, faces_count, indices_pointer, ref_count in mesh_headers:
        refs = tuple(_read_material_ref(cursor) for _ in range(ref_count))
        meshes.append(MeshDescription(
            id=mesh_id,
            name=name,
            faces_count=faces_count,
            indices_pointer=indices_pointer,
            material_refs=refs,
        ))

    _skip_records(cursor, header.bone_count, SIZEOF_BONE)
    entities = tuple(_read_entity(cursor) for _ in range(header.entity_count))
    _skip_records(cursor, header.unknown_a_count, SIZEOF_UNKNOWN_BLOCK)
    _skip_records(cursor, header.unknown_b_count, SIZEOF_UNKNOWN_BLOCK)

    stride_offset = cursor.offset
    definitions = [cursor.read(SIZEOF_STRIDE_DEFINITION) for _ in range(header.stride_count)]
    if len(definitions) > 1:
        raise MultipleStridesUnsupportedError(
            f"Found {len(definitions)} stride definitions; only one is supported",
            stride_offset + SIZEOF_STRIDE_DEFINITION,
        )

    stride_fields: List[StrideField] = []
    if definitions:
        stride_fields = parse_stride_definition(definitions[0], base_offset=stride_offset)
    vertex_stride = sum(f.size for f in stride_fields)
    logging.debug(
        "Resolved vertex stride %d from %d stride fields", vertex_stride, len(stride_fields)
    )

    vertices = _read_vertices(cursor, header.vertex_count, vertex_stride)
    indices = _read_indices(cursor, header.index_count)

    cleave_points = None
    if header.version == FormatVersion.BWM6:
        cleave_points = _read_cleave_points(cursor)

    return Model(
        version=header.version,
        payload_size=header.payload_size,
        payload_size_2=header.payload_size_2,
        materials=materials,
        meshes=tuple(meshes),
        bone_count=header.bone_count,
        entities=entities,
        unknown_a_count=header.unknown_a_count,
        unknown_b_count=header.unknown_b_count,
        vertex_stride=vertex_stride,
        stride_fields=tuple(stride_fields),
        vertices=tuple(vertices),
        indices=indices,
        cleave_points=cleave_points,
    )


def read_bwm(file_path: Path) -> Model:
    """Open and decode a BWM file."""
    with open(file_path, "rb") as f:
        return read_bwm_stream(f)
