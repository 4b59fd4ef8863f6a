"""
geoconv Format Registry
Static capability table: format id -> family, encoding, direction support, companion files.
Both pipelines consult this before any file is touched.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from geoconv_errors import UnsupportedFormatError


class FormatFamily(Enum):
    """Groups of formats sharing one conversion backend."""
    MESH = "mesh"                # polygon/triangle interchange formats (trimesh)
    BREP = "brep"                # parametric solids, tessellated on import (OpenCASCADE)
    SPECIALIZED = "specialized"  # bespoke readers: canonical glTF, DirectX, Draco, Rhino


@dataclass(frozen=True)
class FormatDescriptor:
    id: str
    name: str
    family: FormatFamily
    is_binary: bool
    is_input_supported: bool
    is_output_supported: bool
    companion_extensions: Tuple[str, ...] = ()
    # Leading bytes every valid payload starts with; enables sniffing and identity pass-through
    magic: Optional[bytes] = None
    # Whether the format stores one vertex shared by adjacent faces
    shared_topology: bool = True


CANONICAL_FORMAT = "glb"
GLTF_MAGIC = b"glTF"


def _fmt(format_id: str, name: str, family: FormatFamily, is_binary: bool,
         read: bool = False, write: bool = False, companions: Tuple[str, ...] = (),
         magic: Optional[bytes] = None, shared_topology: bool = True) -> FormatDescriptor:
    return FormatDescriptor(
        id=format_id,
        name=name,
        family=family,
        is_binary=is_binary,
        is_input_supported=read,
        is_output_supported=write,
        companion_extensions=companions,
        magic=magic,
        shared_topology=shared_topology,
    )


_MESH = FormatFamily.MESH
_BREP = FormatFamily.BREP
_SPECIAL = FormatFamily.SPECIALIZED

_DESCRIPTORS = [
    # Mesh interchange, handled by trimesh
    _fmt("obj", "Wavefront Object (OBJ)", _MESH, False, read=True, write=True, companions=("mtl",)),
    _fmt("stl", "Stereolithography (STL)", _MESH, True, read=True, write=True, shared_topology=False),
    _fmt("ply", "Polygon File Format (PLY)", _MESH, True, read=True, write=True),
    _fmt("off", "Object File Format (OFF)", _MESH, False, read=True, write=True),
    _fmt("3mf", "3D Manufacturing Format (3MF)", _MESH, True, read=True, write=True, magic=b"PK\x03\x04"),
    _fmt("dae", "COLLADA (DAE)", _MESH, False, read=True, write=True),

    # Mesh interchange ids recognised but without a Python backend
    _fmt("3ds", "3D Studio (3DS)", _MESH, True),
    _fmt("ac", "AC3D (AC)", _MESH, False),
    _fmt("ase", "Autodesk ASCII (ASE)", _MESH, False),
    _fmt("amf", "Additive Manufacturing (AMF)", _MESH, False),
    _fmt("bvh", "Biovision Hierarchy (BVH)", _MESH, False),
    _fmt("cob", "Caligari Object (COB)", _MESH, True),
    _fmt("dxf", "Drawing Exchange Format (DXF)", _MESH, False),
    _fmt("fbx", "Filmbox (FBX)", _MESH, True),
    _fmt("ifc", "Industry Foundation Classes (IFC)", _MESH, False),
    _fmt("lwo", "LightWave Object (LWO)", _MESH, True),
    _fmt("md2", "Quake 2 Model (MD2)", _MESH, True),
    _fmt("md5mesh", "Doom 3 Model (MD5MESH)", _MESH, False),
    _fmt("mesh.xml", "Ogre Mesh XML", _MESH, False),
    _fmt("nff", "Neutral File Format (NFF)", _MESH, False),
    _fmt("ogex", "Open Game Engine Exchange (OGEX)", _MESH, False),
    _fmt("smd", "Source Engine Model (SMD)", _MESH, False),
    _fmt("usda", "Universal Scene Description ASCII (USDA)", _MESH, False),
    _fmt("usdc", "Universal Scene Description Crate (USDC)", _MESH, True),
    _fmt("usdz", "Universal Scene Description ZIP (USDZ)", _MESH, True),
    _fmt("wrl", "Virtual Reality Modeling Language (WRL)", _MESH, False),
    _fmt("x3d", "Extensible 3D (X3D)", _MESH, False),
    _fmt("x3db", "Extensible 3D Binary (X3DB)", _MESH, True),
    _fmt("x3dv", "Extensible 3D VRML (X3DV)", _MESH, False),
    _fmt("xgl", "XGL", _MESH, False),

    # Boundary representation CAD, tessellated through OpenCASCADE
    _fmt("step", "STEP", _BREP, False, read=True),
    _fmt("stp", "STEP (STP)", _BREP, False, read=True),
    _fmt("iges", "Initial Graphics Exchange Specification (IGES)", _BREP, False, read=True),
    _fmt("igs", "Initial Graphics Exchange Specification (IGS)", _BREP, False, read=True),
    _fmt("brep", "OpenCASCADE BREP", _BREP, False, read=True),

    # Bespoke readers
    _fmt("glb", "GL Transmission Format Binary (GLB)", _SPECIAL, True, read=True, write=True, magic=GLTF_MAGIC),
    _fmt("gltf", "GL Transmission Format (GLTF)", _SPECIAL, False, read=True, write=True, companions=("bin",)),
    _fmt("x", "DirectX (X)", _SPECIAL, True, read=True, magic=b"xof "),
    _fmt("drc", "Draco (DRC)", _SPECIAL, True, read=True, write=True, magic=b"DRACO"),
    _fmt("3dm", "Rhino 3D Model (3DM)", _SPECIAL, True, read=True, magic=b"3D Geometry File Format"),
]


def _build_table(descriptors: List[FormatDescriptor]) -> Mapping[str, FormatDescriptor]:
    table: Dict[str, FormatDescriptor] = {}
    for descriptor in descriptors:
        if descriptor.id != descriptor.id.lower():
            raise ValueError(f"Format id must be lowercase: {descriptor.id}")
        if descriptor.id in table:
            raise ValueError(f"Duplicate format id: {descriptor.id}")
        if not isinstance(descriptor.family, FormatFamily):
            raise ValueError(f"Format {descriptor.id} has no family")
        table[descriptor.id] = descriptor
    if not table[CANONICAL_FORMAT].is_input_supported or not table[CANONICAL_FORMAT].is_output_supported:
        raise ValueError("Canonical format must be readable and writable")
    return MappingProxyType(table)


FORMATS: Mapping[str, FormatDescriptor] = _build_table(_DESCRIPTORS)


def normalize_format(format_id: str) -> str:
    """Lowercase a format id and strip a leading dot ('.OBJ' -> 'obj')."""
    return format_id.strip().lower().lstrip(".")


def describe(format_id: str) -> Optional[FormatDescriptor]:
    return FORMATS.get(normalize_format(format_id))


def is_input_supported(format_id: str) -> bool:
    descriptor = describe(format_id)
    return descriptor is not None and descriptor.is_input_supported


def is_output_supported(format_id: str) -> bool:
    descriptor = describe(format_id)
    return descriptor is not None and descriptor.is_output_supported


def list_input_formats() -> List[str]:
    return [fid for fid, d in FORMATS.items() if d.is_input_supported]


def list_output_formats() -> List[str]:
    return [fid for fid, d in FORMATS.items() if d.is_output_supported]


def require_input(format_id: str) -> FormatDescriptor:
    """Return the descriptor for a readable format or raise UnsupportedFormatError."""
    descriptor = describe(format_id)
    if descriptor is None or not descriptor.is_input_supported:
        raise UnsupportedFormatError(format_id, "input")
    return descriptor


def require_output(format_id: str) -> FormatDescriptor:
    """Return the descriptor for a writable format or raise UnsupportedFormatError."""
    descriptor = describe(format_id)
    if descriptor is None or not descriptor.is_output_supported:
        raise UnsupportedFormatError(format_id, "output")
    return descriptor


def format_from_filename(filename: str) -> Optional[str]:
    """Match a filename against known ids, preferring compound extensions like 'mesh.xml'."""
    lowered = filename.lower()
    matches = [fid for fid in FORMATS if lowered.endswith("." + fid)]
    if not matches:
        return None
    return max(matches, key=len)


def has_magic(descriptor: FormatDescriptor, data: bytes) -> bool:
    return descriptor.magic is not None and data[:len(descriptor.magic)] == descriptor.magic
