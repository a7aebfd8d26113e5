"""Synthetic BWM file builder shared by the test suites."""

from __future__ import annotations

import struct
from typing import List, Optional, Sequence, Tuple

Vec3 = Tuple[float, float, float]

MAGIC = b"LiOnHeAdMODEL"
MAGIC_NUMBER = 0x2B00B1E5


def text(value: str, size: int = 64) -> bytes:
    return value.encode("ascii").ljust(size, b"\x00")


def material(
    diffuse: str = "",
    light: str = "",
    unknown3: str = "",
    specular: str = "",
    unknown5: str = "",
    normal: str = "",
    type_: str = "",
) -> bytes:
    return b"".join(text(v) for v in (diffuse, light, unknown3, specular, unknown5, normal, type_))


def mesh_description(
    name: str,
    ref_count: int,
    mesh_id: int = 0,
    faces_count: int = 0,
    indices_pointer: int = 0,
) -> bytes:
    return (
        struct.pack("<II", faces_count, indices_pointer)
        + b"\xEE" * 124
        + struct.pack("<4I", 0xDEAD, ref_count, 0xBEEF, mesh_id)
        + text(name)
        + struct.pack("<II", 0, 0)
    )


def material_ref(
    material_definition: int,
    indices_offset: int = 0,
    indices_size: int = 0,
    vertex_offset: int = 0,
    vertex_size: int = 0,
    faces_offset: int = 0,
    faces_size: int = 0,
    unknown: int = 0,
) -> bytes:
    return struct.pack(
        "<8I",
        material_definition, indices_offset, indices_size,
        vertex_offset, vertex_size, faces_offset, faces_size, unknown,
    )


def entity(name: str, position: Vec3, unknown1: Vec3 = (0.0, 0.0, 0.0),
           unknown2: Vec3 = (0.0, 0.0, 0.0), unknown3: Vec3 = (0.0, 0.0, 0.0)) -> bytes:
    return struct.pack("<12f", *unknown1, *unknown2, *unknown3, *position) + text(name, 256)


def stride_definition(fields: Sequence[Tuple[int, int]]) -> bytes:
    raw = struct.pack("<I", len(fields))
    raw += b"".join(struct.pack("<II", field_id, fmt) for field_id, fmt in fields)
    return raw.ljust(136, b"\x00")


def vertex(position: Vec3, normal: Vec3 = (0.0, 0.0, 1.0), u: float = 0.0, v: float = 0.0,
           padding: int = 0) -> bytes:
    return struct.pack("<8f", *position, *normal, u, v) + b"\x7F" * padding


# 8 float stride (position, normal, uv) = 12 + 12 + 8
DEFAULT_STRIDE = [(0, 2), (1, 2), (2, 1)]


def build_bwm(
    version: int = 6,
    materials: Sequence[bytes] = (),
    meshes: Sequence[Tuple[bytes, Sequence[bytes]]] = (),
    bone_count: int = 0,
    entities: Sequence[bytes] = (),
    unknown_a_count: int = 0,
    unknown_b_count: int = 0,
    strides: Optional[Sequence[Sequence[Tuple[int, int]]]] = None,
    vertices: Sequence[bytes] = (),
    vertex_count: Optional[int] = None,
    indices: Sequence[int] = (),
    cleave_points: Sequence[Vec3] = (),
    magic: bytes = MAGIC,
    magic_number: int = MAGIC_NUMBER,
    payload_size_2: int = 0x1234,
) -> bytes:
    """Assemble a BWM file. ``meshes`` is a list of (description, [refs])."""
    if strides is None:
        strides = [DEFAULT_STRIDE]
    if vertex_count is None:
        vertex_count = len(vertices)

    body: List[bytes] = [
        struct.pack("<III", magic_number, version, payload_size_2),
        b"\x00" * 68,
        struct.pack(
            "<6I", len(materials), len(meshes), bone_count, len(entities),
            unknown_a_count, unknown_b_count,
        ),
        b"\x00" * 20,
        struct.pack("<4I", vertex_count, len(strides), 2, len(indices)),
    ]
    body.extend(materials)
    body.extend(description for description, _ in meshes)
    for _, refs in meshes:
        body.extend(refs)
    body.append(b"\xAB" * 48 * bone_count)
    body.extend(entities)
    body.append(b"\xCD" * 12 * (unknown_a_count + unknown_b_count))
    body.extend(stride_definition(s) for s in strides)
    body.extend(vertices)
    if indices:
        body.append(struct.pack(f"<{len(indices)}H", *indices))
    if version == 6:
        body.append(struct.pack("<I", len(cleave_points)))
        body.extend(struct.pack("<3f", *p) for p in cleave_points)

    payload = b"".join(body)
    prefix = magic + b"\x00" * 27
    return prefix + struct.pack("<I", len(payload)) + payload


def triangle_model(version: int = 6, **overrides) -> bytes:
    """One material, one mesh with one ref covering a single triangle."""
    kwargs = dict(
        version=version,
        materials=[material(diffuse="Data\\Textures\\bark.dds", type_="Tree")],
        meshes=[(
            mesh_description("trunk", 1, mesh_id=7, faces_count=1),
            [material_ref(0, indices_offset=0, indices_size=3, vertex_size=3, faces_size=1)],
        )],
        entities=[entity("anchor", (1.0, 2.0, 3.0))],
        vertices=[
            vertex((0.0, 0.0, 0.0), u=0.0, v=0.0),
            vertex((1.0, 0.0, 0.0), u=1.0, v=0.0),
            vertex((0.0, 1.0, 0.0), u=0.0, v=1.0),
        ],
        indices=[0, 1, 2],
        cleave_points=[(5.0, 6.0, 7.0)] if version == 6 else [],
    )
    kwargs.update(overrides)
    return build_bwm(**kwargs)
