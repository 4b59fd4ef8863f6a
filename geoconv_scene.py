"""
geoconv Canonical Scene
In-memory node/mesh/material graph at the hub of every conversion, and its GLB encoding.
Every import produces a Scene, every export consumes one.
"""

import io
import json
import logging
import struct
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import unquote

import numpy as np
import trimesh
from trimesh.exchange.gltf import export_glb, export_gltf
from trimesh.resolvers import ZipResolver
from trimesh.visual import TextureVisuals
from trimesh.visual.color import to_float
from trimesh.visual.material import PBRMaterial

from geoconv_config import ConversionSettings
from geoconv_errors import ConversionError, InvalidContainerError, MissingCompanionFileError
from geoconv_formats import GLTF_MAGIC
from geoconv_mesh import Mesh, PolygonSoup, assemble_mesh

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Material:
    name: str
    base_color: Tuple[float, float, float, float] = (0.8, 0.8, 0.8, 1.0)
    metallic: float = 0.0
    roughness: float = 1.0


@dataclass
class Node:
    name: str
    matrix: np.ndarray = field(default_factory=lambda: np.eye(4))
    mesh: Optional[int] = None
    children: List["Node"] = field(default_factory=list)


@dataclass
class Scene:
    nodes: List[Node] = field(default_factory=list)
    meshes: List[Mesh] = field(default_factory=list)
    materials: List[Material] = field(default_factory=list)

    def iter_nodes(self) -> Iterator[Node]:
        stack = list(reversed(self.nodes))
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    @property
    def node_count(self) -> int:
        return sum(1 for _ in self.iter_nodes())

    def instances(self) -> Iterator[Tuple[np.ndarray, int]]:
        """Yield (world matrix, mesh index) for every node carrying a mesh."""
        stack = [(node, np.eye(4)) for node in reversed(self.nodes)]
        while stack:
            node, parent = stack.pop()
            world = parent @ node.matrix
            if node.mesh is not None:
                yield world, node.mesh
            stack.extend((child, world) for child in reversed(node.children))


@dataclass
class RawNode:
    """Backend output before assembly: a node whose geometry is still in source form."""
    name: str
    matrix: np.ndarray = field(default_factory=lambda: np.eye(4))
    geometry: Any = None
    material: Optional[Material] = None
    children: List["RawNode"] = field(default_factory=list)


@dataclass
class SceneReport:
    node_count: int
    root_count: int
    mesh_count: int
    material_count: int
    vertex_count: int
    face_count: int
    bounds: Optional[np.ndarray]

    @property
    def size(self) -> np.ndarray:
        if self.bounds is None:
            return np.zeros(3)
        return self.bounds[1] - self.bounds[0]

    @property
    def center(self) -> np.ndarray:
        if self.bounds is None:
            return np.zeros(3)
        return self.bounds.mean(axis=0)


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------

def assemble_scene(roots: Sequence[RawNode], weld: bool = False) -> Scene:
    """Run the mesh assembler over every leaf geometry, depth first, and build a Scene."""
    scene = Scene()
    material_index: Dict[Material, int] = {}
    counter = [0]

    def build(raw: RawNode) -> Node:
        node = Node(name=raw.name, matrix=np.asarray(raw.matrix, dtype=np.float64).reshape(4, 4))
        if raw.geometry is not None:
            index = counter[0]
            counter[0] += 1
            material = None
            if raw.material is not None:
                if raw.material not in material_index:
                    material_index[raw.material] = len(scene.materials)
                    scene.materials.append(raw.material)
                material = material_index[raw.material]
            mesh = assemble_mesh(raw.geometry, index, weld=weld, material=material, name=raw.name)
            if mesh.face_count == 0:
                logger.warning(f"Geometry #{index} '{raw.name}' has no faces, dropping it")
            else:
                node.mesh = len(scene.meshes)
                scene.meshes.append(mesh)
        node.children = [build(child) for child in raw.children]
        return node

    scene.nodes = [build(root) for root in roots]
    return scene


def from_meshes(meshes: Sequence[Mesh], materials: Sequence[Material] = ()) -> Scene:
    """One root node per mesh."""
    nodes = [Node(name=mesh.name or f"mesh_{i}", mesh=i) for i, mesh in enumerate(meshes)]
    return Scene(nodes=nodes, meshes=list(meshes), materials=list(materials))


def to_meshes(scene: Scene) -> List[Mesh]:
    """Every mesh instance with its world transform baked into the vertices."""
    return [scene.meshes[index].transformed(world) for world, index in scene.instances()]


def inspect_scene(scene: Scene) -> SceneReport:
    corners = [m.bounds() for m in to_meshes(scene)]
    corners = [c for c in corners if c is not None]
    bounds = None
    if corners:
        stacked = np.vstack(corners)
        bounds = np.array([stacked.min(axis=0), stacked.max(axis=0)])
    return SceneReport(
        node_count=scene.node_count,
        root_count=len(scene.nodes),
        mesh_count=len(scene.meshes),
        material_count=len(scene.materials),
        vertex_count=sum(m.vertex_count for m in scene.meshes),
        face_count=sum(m.face_count for m in scene.meshes),
        bounds=bounds,
    )


# ---------------------------------------------------------------------------
# trimesh scene graph bridge
# ---------------------------------------------------------------------------

def _unique_name(name: str, taken: set) -> str:
    candidate = name
    counter = 1
    while candidate in taken:
        candidate = f"{name}_{counter}"
        counter += 1
    taken.add(candidate)
    return candidate


def _mesh_normals(mesh: Mesh) -> np.ndarray:
    if mesh.normals is not None:
        return mesh.normals
    # Keep shared vertices so decoding reproduces the same vertex count
    return np.asarray(trimesh.Trimesh(mesh.vertices, mesh.indices, process=False).vertex_normals)


def _pbr_material(material: Material) -> PBRMaterial:
    return PBRMaterial(
        name=material.name,
        baseColorFactor=list(material.base_color),
        metallicFactor=float(material.metallic),
        roughnessFactor=float(material.roughness),
    )


def to_trimesh_geometry(mesh: Mesh, materials: Sequence[Material] = ()) -> trimesh.Trimesh:
    visual = None
    if mesh.material is not None and mesh.material < len(materials):
        visual = TextureVisuals(material=_pbr_material(materials[mesh.material]))
    return trimesh.Trimesh(
        vertices=mesh.vertices,
        faces=mesh.indices,
        vertex_normals=_mesh_normals(mesh),
        visual=visual,
        process=False,
    )


def to_trimesh_scene(scene: Scene) -> trimesh.Scene:
    """Mirror the node hierarchy into a trimesh.Scene, sharing geometry between instances."""
    tm_scene = trimesh.Scene()
    base = tm_scene.graph.base_frame
    geometry_names: Dict[int, str] = {}
    taken_geometry: set = set()
    for i, mesh in enumerate(scene.meshes):
        if mesh.face_count == 0:
            continue
        name = _unique_name(mesh.name or f"mesh_{i}", taken_geometry)
        tm_scene.geometry[name] = to_trimesh_geometry(mesh, scene.materials)
        geometry_names[i] = name

    taken_frames = {base}

    def add(node: Node, parent: str):
        frame = _unique_name(node.name or "node", taken_frames)
        kwargs = {"frame_to": frame, "frame_from": parent, "matrix": node.matrix}
        if node.mesh in geometry_names:
            kwargs["geometry"] = geometry_names[node.mesh]
        tm_scene.graph.update(**kwargs)
        for child in node.children:
            add(child, frame)

    for root in scene.nodes:
        add(root, base)
    return tm_scene


def _trimesh_material(geometry: Any) -> Optional[Material]:
    source = getattr(getattr(geometry, "visual", None), "material", None)
    if source is None:
        return None
    if hasattr(source, "to_pbr"):
        source = source.to_pbr()
    color = (1.0, 1.0, 1.0, 1.0)
    if getattr(source, "baseColorFactor", None) is not None:
        color = tuple(float(c) for c in to_float(source.baseColorFactor).reshape(-1)[:4])
    metallic = source.metallicFactor if getattr(source, "metallicFactor", None) is not None else 0.0
    roughness = source.roughnessFactor if getattr(source, "roughnessFactor", None) is not None else 1.0
    return Material(name=source.name or "material", base_color=color,
                    metallic=float(metallic), roughness=float(roughness))


def _raw_geometry(geometry: Any, keep_normals: bool) -> Any:
    """Trimesh geometry as a PolygonSoup; other kinds are left for the assembler to reject."""
    if not isinstance(geometry, trimesh.Trimesh):
        return geometry
    normals = np.asarray(geometry.vertex_normals) if keep_normals else None
    return PolygonSoup(np.asarray(geometry.vertices), np.asarray(geometry.faces), normals,
                       geometry.metadata.get("name") if geometry.metadata else None)


def from_trimesh_scene(tm_scene: trimesh.Scene, keep_normals: bool = False) -> List[RawNode]:
    """Walk a trimesh scene graph from its base frame into raw nodes.

    keep_normals says the source file stored per-vertex normals; otherwise
    trimesh would hand back smoothed normals it computed itself.
    """
    children: Dict[Any, List[Tuple[Any, dict]]] = {}
    for parent, child, attr in tm_scene.graph.to_edgelist():
        children.setdefault(parent, []).append((child, attr))

    def build(frame, attr: dict) -> RawNode:
        matrix = attr.get("matrix")
        node = RawNode(name=str(frame), matrix=np.eye(4) if matrix is None else np.array(matrix, dtype=np.float64))
        geometry_name = attr.get("geometry")
        if geometry_name is not None and geometry_name in tm_scene.geometry:
            geometry = tm_scene.geometry[geometry_name]
            node.geometry = _raw_geometry(geometry, keep_normals)
            node.material = _trimesh_material(geometry)
        node.children = [build(c, a) for c, a in children.get(frame, [])]
        return node

    return [build(c, a) for c, a in children.get(tm_scene.graph.base_frame, [])]


# ---------------------------------------------------------------------------
# glTF axis and unit conventions
# ---------------------------------------------------------------------------

# Rotates +Y onto +Z: (x, y, z) -> (x, -z, y)
Y_UP_TO_Z_UP = np.array([
    [1.0, 0.0, 0.0, 0.0],
    [0.0, 0.0, -1.0, 0.0],
    [0.0, 1.0, 0.0, 0.0],
    [0.0, 0.0, 0.0, 1.0],
])
METERS_TO_MILLIMETERS = np.diag([1000.0, 1000.0, 1000.0, 1.0])


def gltf_import_matrix(settings: ConversionSettings) -> Optional[np.ndarray]:
    """Transform applied to glTF input, or None when the settings keep glTF conventions."""
    if not settings.transforms_gltf:
        return None
    matrix = np.eye(4)
    if settings.gltf_y_up_to_z_up:
        matrix = Y_UP_TO_Z_UP @ matrix
    if settings.gltf_meters_to_millimeters:
        matrix = METERS_TO_MILLIMETERS @ matrix
    return matrix


def gltf_export_matrix(settings: ConversionSettings) -> Optional[np.ndarray]:
    matrix = gltf_import_matrix(settings)
    return None if matrix is None else np.linalg.inv(matrix)


def transform_roots(roots: Sequence[RawNode], matrix: np.ndarray) -> List[RawNode]:
    return [replace(root, matrix=matrix @ np.asarray(root.matrix, dtype=np.float64).reshape(4, 4))
            for root in roots]


def transform_scene(scene: Scene, matrix: np.ndarray) -> Scene:
    """Copy of the scene with every root node moved by matrix. Meshes are shared, not copied."""
    nodes = [replace(node, matrix=matrix @ node.matrix) for node in scene.nodes]
    return Scene(nodes=nodes, meshes=scene.meshes, materials=scene.materials)


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def serialize_binary(scene: Scene) -> bytes:
    """Encode a Scene as GLB, the canonical container."""
    data = export_glb(to_trimesh_scene(scene), include_normals=True)
    logger.debug(f"Serialized scene: {len(scene.meshes)} meshes, {len(data)} bytes")
    return data


def serialize_gltf(scene: Scene) -> bytes:
    """Encode a Scene as a single JSON glTF file with an embedded data-URI buffer."""
    files = export_gltf(to_trimesh_scene(scene), include_normals=True,
                        merge_buffers=True, embed_buffers=True)
    return files["model.gltf"]


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

# Chunk type of the JSON chunk that opens every GLB body
GLB_JSON_CHUNK = 0x4E4F534A


def _glb_document(data: bytes) -> dict:
    """Read the JSON chunk of a GLB payload without touching its binary chunk."""
    if len(data) < 20:
        raise InvalidContainerError("glb", "truncated header")
    length, chunk_type = struct.unpack_from("<II", data, 12)
    if chunk_type != GLB_JSON_CHUNK:
        raise InvalidContainerError("glb", "first chunk is not JSON")
    try:
        document = json.loads(data[20:20 + length].decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise InvalidContainerError("glb", f"unreadable JSON chunk: {e}") from e
    if not isinstance(document, dict):
        raise InvalidContainerError("glb", "JSON chunk is not an object")
    return document


def gltf_declares_normals(document: Mapping) -> bool:
    """True when the document has primitives and every one of them stores a NORMAL attribute."""
    primitives = [p for mesh in document.get("meshes", []) for p in mesh.get("primitives", [])]
    return bool(primitives) and all("NORMAL" in p.get("attributes", {}) for p in primitives)


def decode_glb(data: bytes) -> List[RawNode]:
    """Parse a GLB payload into raw nodes."""
    if data[:4] != GLTF_MAGIC:
        raise InvalidContainerError("glb", "missing glTF magic tag")
    document = _glb_document(data)
    try:
        tm_scene = trimesh.load_scene(io.BytesIO(data), file_type="glb")
    except ConversionError:
        raise
    except Exception as e:
        raise InvalidContainerError("glb", str(e)) from e
    return from_trimesh_scene(tm_scene, keep_normals=gltf_declares_normals(document))


def _external_buffers(document: dict, resources: Mapping[str, bytes]) -> Dict[str, bytes]:
    """Resolve every non-embedded buffer URI against the companion files."""
    resolved = {}
    for buffer in document.get("buffers", []):
        uri = buffer.get("uri")
        if not uri or uri.startswith("data:"):
            continue
        name = unquote(uri)
        payload = resources.get(name)
        if payload is None:
            payload = resources.get(name.replace("\\", "/").rsplit("/", 1)[-1])
        if payload is None:
            raise MissingCompanionFileError("gltf", name)
        resolved[uri] = payload
        resolved[name] = payload
    return resolved


def parse_gltf(data: bytes, resources: Mapping[str, bytes]) -> List[RawNode]:
    """Parse a JSON glTF file, resolving external buffers from companion files."""
    try:
        document = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise InvalidContainerError("gltf", f"not a JSON document: {e}") from e
    if not isinstance(document, dict):
        raise InvalidContainerError("gltf", "top level is not an object")

    archive = dict(resources)
    archive.update(_external_buffers(document, resources))
    try:
        tm_scene = trimesh.load_scene(io.BytesIO(data), file_type="gltf",
                                      resolver=ZipResolver(archive))
    except ConversionError:
        raise
    except Exception as e:
        raise InvalidContainerError("gltf", str(e)) from e
    return from_trimesh_scene(tm_scene, keep_normals=gltf_declares_normals(document))


def deserialize_binary(data: bytes) -> Scene:
    """Decode the canonical GLB container back into a Scene."""
    return assemble_scene(decode_glb(data))
