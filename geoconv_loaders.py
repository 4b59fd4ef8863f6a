"""
geoconv Family Loaders
Read a primary file (plus companions) into RawNode trees, one loader per family.
Mesh interchange goes through trimesh, B-Rep CAD through OpenCASCADE,
the specialized formats through their own readers.
"""

import io
import logging
import os
import re
import tempfile
from typing import Callable, Dict, List, Sequence

import numpy as np
import trimesh
from trimesh.resolvers import ZipResolver

from geoconv_backends import Backends
from geoconv_config import ConversionSettings
from geoconv_errors import ConversionError, GeometryConversionError, InvalidContainerError
from geoconv_formats import FormatDescriptor, FormatFamily
from geoconv_job import InputFile, resource_map
from geoconv_mesh import PolygonSoup
from geoconv_scene import (
    Material,
    RawNode,
    decode_glb,
    from_trimesh_scene,
    gltf_import_matrix,
    parse_gltf,
    transform_roots,
)
from geoconv_xfile_parser import parse_xfile

logger = logging.getLogger(__name__)

Loader = Callable[[FormatDescriptor, InputFile, Sequence[InputFile], ConversionSettings, Backends], List[RawNode]]

# Nested instance definitions deeper than this are treated as cyclic
MAX_INSTANCE_DEPTH = 32


def _read_error(descriptor: FormatDescriptor, primary: InputFile, e: Exception) -> ConversionError:
    return ConversionError(f"Failed to read .{descriptor.id} file '{primary.name}': {e}")


# ---------------------------------------------------------------------------
# Mesh interchange (trimesh)
# ---------------------------------------------------------------------------

def load_trimesh_scene(descriptor: FormatDescriptor, primary: InputFile, companions: Sequence[InputFile],
                       backends: Backends) -> trimesh.Scene:
    """Parse a mesh-interchange payload with companions served from memory."""
    if descriptor.id == "dae":
        backends.collada.load()
    resources = resource_map(companions)
    if descriptor.id == "obj" and b"mtllib" in primary.data and not any(n.lower().endswith(".mtl") for n in resources):
        logger.warning(f"{primary.name} references a material library but no .mtl file was supplied")
    try:
        return trimesh.load_scene(io.BytesIO(primary.data), file_type=descriptor.id,
                                  resolver=ZipResolver(resources), process=False)
    except ConversionError:
        raise
    except Exception as e:
        raise _read_error(descriptor, primary, e) from e


def declares_vertex_normals(descriptor: FormatDescriptor, data: bytes) -> bool:
    """Whether a mesh-interchange payload stores its own per-vertex normals."""
    if descriptor.id == "obj":
        return re.search(rb"^\s*vn\s", data, re.MULTILINE) is not None
    if descriptor.id == "ply":
        header = data.split(b"end_header", 1)[0]
        return re.search(rb"property\s+(float|double|float32|float64)\s+nx\b", header) is not None
    if descriptor.id == "dae":
        return b'semantic="NORMAL"' in data
    return False


def load_mesh_family(descriptor: FormatDescriptor, primary: InputFile, companions: Sequence[InputFile],
                     settings: ConversionSettings, backends: Backends) -> List[RawNode]:
    tm_scene = load_trimesh_scene(descriptor, primary, companions, backends)
    roots = from_trimesh_scene(tm_scene, keep_normals=declares_vertex_normals(descriptor, primary.data))
    logger.debug(f"trimesh read {len(tm_scene.geometry)} geometries from {primary.name}")
    return roots


# ---------------------------------------------------------------------------
# Boundary representation (OpenCASCADE via OCP)
# ---------------------------------------------------------------------------

def _read_brep_shape(modules, format_id: str, path: str):
    if format_id in ("step", "stp", "iges", "igs"):
        if format_id in ("step", "stp"):
            reader = modules["OCP.STEPControl"].STEPControl_Reader()
        else:
            reader = modules["OCP.IGESControl"].IGESControl_Reader()
        status = reader.ReadFile(path)
        if status != modules["OCP.IFSelect"].IFSelect_RetDone:
            raise InvalidContainerError(format_id, f"reader returned status {status}")
        reader.TransferRoots()
        shape = reader.OneShape()
    else:
        shape = modules["OCP.TopoDS"].TopoDS_Shape()
        builder = modules["OCP.BRep"].BRep_Builder()
        if not modules["OCP.BRepTools"].BRepTools.Read_s(shape, path, builder):
            raise InvalidContainerError(format_id, "BRepTools could not read the shape")
    if shape is None or shape.IsNull():
        raise InvalidContainerError(format_id, "file contains no shape")
    return shape


def _tessellate_shape(modules, shape, index: int) -> PolygonSoup:
    """Collect the triangulation of every face, flipping the winding of reversed faces."""
    TopExp_Explorer = modules["OCP.TopExp"].TopExp_Explorer
    TopAbs = modules["OCP.TopAbs"]
    BRep_Tool = modules["OCP.BRep"].BRep_Tool
    TopoDS = modules["OCP.TopoDS"].TopoDS
    TopLoc_Location = modules["OCP.TopLoc"].TopLoc_Location

    positions = []
    faces = []
    explorer = TopExp_Explorer(shape, TopAbs.TopAbs_FACE)
    while explorer.More():
        face = TopoDS.Face_s(explorer.Current())
        location = TopLoc_Location()
        triangulation = BRep_Tool.Triangulation_s(face, location)
        if triangulation is not None:
            transform = location.Transformation()
            offset = len(positions)
            for i in range(1, triangulation.NbNodes() + 1):
                point = triangulation.Node(i).Transformed(transform)
                positions.append((point.X(), point.Y(), point.Z()))
            reversed_face = face.Orientation() == TopAbs.TopAbs_REVERSED
            for i in range(1, triangulation.NbTriangles() + 1):
                a, b, c = triangulation.Triangle(i).Get()
                if reversed_face:
                    b, c = c, b
                faces.append((offset + a - 1, offset + b - 1, offset + c - 1))
        explorer.Next()
    if not faces:
        raise GeometryConversionError(index, type(shape).__name__, "shape produced no triangulated faces")
    return PolygonSoup(np.array(positions), np.array(faces, dtype=np.int64))


def load_brep(descriptor: FormatDescriptor, primary: InputFile, companions: Sequence[InputFile],
              settings: ConversionSettings, backends: Backends) -> List[RawNode]:
    modules = backends.brep.load()
    tessellation = settings.tessellation
    # OpenCASCADE readers only take paths
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, f"input.{descriptor.id}")
        with open(path, "wb") as f:
            f.write(primary.data)
        try:
            shape = _read_brep_shape(modules, descriptor.id, path)
        except ConversionError:
            raise
        except Exception as e:
            raise _read_error(descriptor, primary, e) from e

    try:
        modules["OCP.BRepMesh"].BRepMesh_IncrementalMesh(
            shape, tessellation.linear_tolerance, False, tessellation.angular_tolerance, True)

        TopAbs = modules["OCP.TopAbs"]
        solids = []
        explorer = modules["OCP.TopExp"].TopExp_Explorer(shape, TopAbs.TopAbs_SOLID)
        while explorer.More():
            solids.append(explorer.Current())
            explorer.Next()
        if not solids:
            # Open shells and loose faces
            solids = [shape]

        logger.info(f"Tessellating {len(solids)} solids from {primary.name} "
                    f"(linear={tessellation.linear_tolerance}, angular={tessellation.angular_tolerance:.4f} rad)")
        return [RawNode(name=f"solid_{i}", geometry=_tessellate_shape(modules, solid, i))
                for i, solid in enumerate(solids)]
    except ConversionError:
        raise
    except Exception as e:
        raise _read_error(descriptor, primary, e) from e


# ---------------------------------------------------------------------------
# Specialized formats
# ---------------------------------------------------------------------------

def _from_gltf_conventions(roots: List[RawNode], settings: ConversionSettings) -> List[RawNode]:
    matrix = gltf_import_matrix(settings)
    return roots if matrix is None else transform_roots(roots, matrix)


def load_glb(descriptor, primary, companions, settings, backends) -> List[RawNode]:
    return _from_gltf_conventions(decode_glb(primary.data), settings)


def load_gltf(descriptor, primary, companions, settings, backends) -> List[RawNode]:
    return _from_gltf_conventions(parse_gltf(primary.data, resource_map(companions)), settings)


def load_xfile(descriptor, primary, companions, settings, backends) -> List[RawNode]:
    return parse_xfile(primary.data)


def load_draco(descriptor, primary, companions, settings, backends) -> List[RawNode]:
    DracoPy = backends.draco.module("DracoPy")
    try:
        decoded = DracoPy.decode(primary.data)
    except Exception as e:
        raise _read_error(descriptor, primary, e) from e
    faces = getattr(decoded, "faces", None)
    if faces is None or len(faces) == 0:
        raise GeometryConversionError(0, "DracoPointCloud", "point clouds have no faces")
    normals = getattr(decoded, "normals", None)
    points = np.asarray(decoded.points, dtype=np.float64).reshape(-1, 3)
    if normals is not None and len(normals) != len(points):
        normals = None
    soup = PolygonSoup(points, np.asarray(faces, dtype=np.int64).reshape(-1, 3), normals)
    return [RawNode(name=os.path.splitext(primary.name)[0] or "draco", geometry=soup)]


def _rhino_matrix(xform) -> np.ndarray:
    return np.array([[getattr(xform, f"M{r}{c}") for c in range(4)] for r in range(4)], dtype=np.float64)


def _rhino_mesh_soup(mesh) -> PolygonSoup:
    positions = [(v.X, v.Y, v.Z) for v in (mesh.Vertices[i] for i in range(len(mesh.Vertices)))]
    faces = []
    for i in range(len(mesh.Faces)):
        a, b, c, d = mesh.Faces[i]
        faces.append([a, b, c] if c == d else [a, b, c, d])
    normals = None
    if len(mesh.Normals) == len(positions):
        normals = [(n.X, n.Y, n.Z) for n in (mesh.Normals[i] for i in range(len(mesh.Normals)))]
    return PolygonSoup(positions, faces, normals)


def _rhino_render_meshes(rhino3dm, geometry) -> List:
    """Render meshes stored alongside a Brep or Extrusion."""
    if isinstance(geometry, rhino3dm.Extrusion):
        mesh = geometry.GetMesh(rhino3dm.MeshType.Any)
        return [mesh] if mesh is not None else []
    meshes = []
    for i in range(len(geometry.Faces)):
        mesh = geometry.Faces[i].GetMesh(rhino3dm.MeshType.Any)
        if mesh is not None:
            meshes.append(mesh)
    return meshes


def _rhino_material(rhino3dm, model, attributes) -> Material:
    if attributes.ColorSource == rhino3dm.ObjectColorSource.ColorFromObject or \
            not 0 <= attributes.LayerIndex < len(model.Layers):
        r, g, b, a = attributes.ObjectColor
    else:
        r, g, b, a = model.Layers[attributes.LayerIndex].Color
    name = f"rgb_{r}_{g}_{b}"
    return Material(name=name, base_color=(r / 255.0, g / 255.0, b / 255.0, a / 255.0 if a else 1.0))


def rhino_nodes(rhino3dm, model) -> List[RawNode]:
    """Walk a File3dm's top-level objects, expanding instance references into child nodes."""
    objects_by_id = {str(obj.Attributes.Id): obj for obj in model.Objects}
    definitions = {str(d.Id): d for d in model.InstanceDefinitions}
    counter = [0]

    def object_node(obj, depth: int):
        geometry = obj.Geometry
        attributes = obj.Attributes
        index = counter[0]
        name = attributes.Name or f"{type(geometry).__name__.lower()}_{index}"
        if isinstance(geometry, rhino3dm.InstanceReference):
            definition = definitions.get(str(geometry.ParentIdefId))
            if definition is None or depth >= MAX_INSTANCE_DEPTH:
                logger.warning(f"Skipping unresolvable instance reference '{name}'")
                return None
            node = RawNode(name=name, matrix=_rhino_matrix(geometry.Xform))
            for member_id in definition.GetObjectIds():
                member = objects_by_id.get(str(member_id))
                if member is not None:
                    child = object_node(member, depth + 1)
                    if child is not None:
                        node.children.append(child)
            return node

        if isinstance(geometry, rhino3dm.Mesh):
            meshes = [geometry]
        elif isinstance(geometry, (rhino3dm.Brep, rhino3dm.Extrusion)):
            meshes = _rhino_render_meshes(rhino3dm, geometry)
            if not meshes:
                raise GeometryConversionError(index, type(geometry).__name__, "no render mesh stored in file")
        else:
            logger.debug(f"Ignoring {type(geometry).__name__} object '{name}'")
            return None

        counter[0] += 1
        material = _rhino_material(rhino3dm, model, attributes)
        if len(meshes) == 1:
            return RawNode(name=name, geometry=_rhino_mesh_soup(meshes[0]), material=material)
        node = RawNode(name=name)
        node.children = [RawNode(name=f"{name}_{i}", geometry=_rhino_mesh_soup(m), material=material)
                         for i, m in enumerate(meshes)]
        return node

    roots = []
    for obj in model.Objects:
        if obj.Attributes.IsInstanceDefinitionObject:
            continue
        node = object_node(obj, 0)
        if node is not None:
            roots.append(node)
    return roots


def load_rhino(descriptor, primary, companions, settings, backends) -> List[RawNode]:
    rhino3dm = backends.rhino.module("rhino3dm")
    try:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "input.3dm")
            with open(path, "wb") as f:
                f.write(primary.data)
            model = rhino3dm.File3dm.Read(path)
        if model is None:
            raise InvalidContainerError("3dm", "rhino3dm could not read the file")
        return rhino_nodes(rhino3dm, model)
    except ConversionError:
        raise
    except Exception as e:
        raise _read_error(descriptor, primary, e) from e


LOADERS: Dict[str, Loader] = {
    "glb": load_glb,
    "gltf": load_gltf,
    "x": load_xfile,
    "drc": load_draco,
    "3dm": load_rhino,
}

FAMILY_LOADERS: Dict[FormatFamily, Loader] = {
    FormatFamily.MESH: load_mesh_family,
    FormatFamily.BREP: load_brep,
}


def load(descriptor: FormatDescriptor, primary: InputFile, companions: Sequence[InputFile],
         settings: ConversionSettings, backends: Backends) -> List[RawNode]:
    """Run the loader for a format: its own reader if it has one, else its family's."""
    loader = LOADERS.get(descriptor.id) or FAMILY_LOADERS.get(descriptor.family)
    if loader is None:
        raise ConversionError(f"No loader registered for .{descriptor.id}")
    return loader(descriptor, primary, companions, settings, backends)
